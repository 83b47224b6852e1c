"""Settlement lifecycle models: case, ledger entry, snapshot, transition tables.

The settlement ledger is the source of truth for a case.  ``SettlementCase``
is a projection that must never contradict the ledger; the lifecycle machine
checks the two against each other before every action.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from aurumshield.models.risk import ApprovalTier, CheckStatus


class SettlementStatus(str, Enum):
    DRAFT = "DRAFT"
    ESCROW_OPEN = "ESCROW_OPEN"
    AWAITING_FUNDS = "AWAITING_FUNDS"
    AWAITING_GOLD = "AWAITING_GOLD"
    AWAITING_VERIFICATION = "AWAITING_VERIFICATION"
    READY_TO_SETTLE = "READY_TO_SETTLE"
    AUTHORIZED = "AUTHORIZED"
    SETTLED = "SETTLED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    AMBIGUOUS_STATE = "AMBIGUOUS_STATE"


TERMINAL_STATUSES: frozenset[SettlementStatus] = frozenset(
    {SettlementStatus.SETTLED, SettlementStatus.FAILED, SettlementStatus.CANCELLED}
)

_EXITS = {SettlementStatus.FAILED, SettlementStatus.CANCELLED}
_EXITS_OR_AMBIGUOUS = _EXITS | {SettlementStatus.AMBIGUOUS_STATE}

# Structural transition table.  Terminal states have no outgoing edges;
# AMBIGUOUS_STATE only leaves through operator resolution, fail, or cancel.
VALID_TRANSITIONS: dict[SettlementStatus, set[SettlementStatus]] = {
    SettlementStatus.DRAFT: {SettlementStatus.ESCROW_OPEN} | _EXITS_OR_AMBIGUOUS,
    SettlementStatus.ESCROW_OPEN: {SettlementStatus.AWAITING_FUNDS} | _EXITS_OR_AMBIGUOUS,
    SettlementStatus.AWAITING_FUNDS: {SettlementStatus.AWAITING_GOLD} | _EXITS_OR_AMBIGUOUS,
    SettlementStatus.AWAITING_GOLD: {SettlementStatus.AWAITING_VERIFICATION} | _EXITS_OR_AMBIGUOUS,
    SettlementStatus.AWAITING_VERIFICATION: {SettlementStatus.READY_TO_SETTLE} | _EXITS_OR_AMBIGUOUS,
    SettlementStatus.READY_TO_SETTLE: {SettlementStatus.AUTHORIZED} | _EXITS_OR_AMBIGUOUS,
    SettlementStatus.AUTHORIZED: {SettlementStatus.SETTLED} | _EXITS_OR_AMBIGUOUS,
    SettlementStatus.AMBIGUOUS_STATE: {SettlementStatus.ESCROW_OPEN} | _EXITS,
    SettlementStatus.SETTLED: set(),  # terminal
    SettlementStatus.FAILED: set(),  # terminal
    SettlementStatus.CANCELLED: set(),  # terminal
}


class UserRole(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"
    TREASURY = "treasury"
    VAULT_OPS = "vault_ops"
    COMPLIANCE = "compliance"
    DESK_HEAD = "desk_head"
    CREDIT_COMMITTEE = "credit_committee"
    BOARD = "board"
    SYSTEM = "system"


class SettlementAction(str, Enum):
    OPEN_SETTLEMENT = "OPEN_SETTLEMENT"
    REQUEST_FUNDS = "REQUEST_FUNDS"
    CONFIRM_FUNDS_FINAL = "CONFIRM_FUNDS_FINAL"
    ALLOCATE_GOLD = "ALLOCATE_GOLD"
    MARK_VERIFICATION_CLEARED = "MARK_VERIFICATION_CLEARED"
    AUTHORIZE_SETTLEMENT = "AUTHORIZE_SETTLEMENT"
    EXECUTE_DVP = "EXECUTE_DVP"
    FAIL_SETTLEMENT = "FAIL_SETTLEMENT"
    CANCEL_SETTLEMENT = "CANCEL_SETTLEMENT"
    RESOLVE_AMBIGUOUS = "RESOLVE_AMBIGUOUS"


ACTION_ROLE_MAP: dict[SettlementAction, frozenset[UserRole]] = {
    SettlementAction.OPEN_SETTLEMENT: frozenset({UserRole.ADMIN, UserRole.TREASURY}),
    SettlementAction.REQUEST_FUNDS: frozenset({UserRole.ADMIN, UserRole.TREASURY}),
    SettlementAction.CONFIRM_FUNDS_FINAL: frozenset({UserRole.ADMIN, UserRole.TREASURY}),
    SettlementAction.ALLOCATE_GOLD: frozenset({UserRole.ADMIN, UserRole.VAULT_OPS}),
    SettlementAction.MARK_VERIFICATION_CLEARED: frozenset(
        {UserRole.ADMIN, UserRole.COMPLIANCE}
    ),
    SettlementAction.AUTHORIZE_SETTLEMENT: frozenset(
        {UserRole.ADMIN, UserRole.DESK_HEAD, UserRole.CREDIT_COMMITTEE, UserRole.BOARD}
    ),
    SettlementAction.EXECUTE_DVP: frozenset({UserRole.ADMIN, UserRole.TREASURY}),
    SettlementAction.FAIL_SETTLEMENT: frozenset({UserRole.ADMIN}),
    SettlementAction.CANCEL_SETTLEMENT: frozenset({UserRole.ADMIN}),
    SettlementAction.RESOLVE_AMBIGUOUS: frozenset({UserRole.ADMIN, UserRole.TREASURY}),
}

# Highest approval tier each approver role may sign off.
APPROVER_AUTHORITY: dict[UserRole, ApprovalTier] = {
    UserRole.ADMIN: ApprovalTier.AUTO,
    UserRole.DESK_HEAD: ApprovalTier.DESK_HEAD,
    UserRole.CREDIT_COMMITTEE: ApprovalTier.CREDIT_COMMITTEE,
    UserRole.BOARD: ApprovalTier.BOARD,
}


class LedgerEntryType(str, Enum):
    ESCROW_OPENED = "ESCROW_OPENED"
    FUNDING_REQUESTED = "FUNDING_REQUESTED"
    FUNDS_CONFIRMED = "FUNDS_CONFIRMED"
    GOLD_ALLOCATED = "GOLD_ALLOCATED"
    VERIFICATION_CLEARED = "VERIFICATION_CLEARED"
    AUTHORIZATION = "AUTHORIZATION"
    POLICY_BLOCKED = "POLICY_BLOCKED"
    LOGISTICS_WARNING = "LOGISTICS_WARNING"
    DVP_EXECUTED = "DVP_EXECUTED"
    SETTLEMENT_FAILED = "SETTLEMENT_FAILED"
    SETTLEMENT_CANCELLED = "SETTLEMENT_CANCELLED"
    AMBIGUOUS_STATE_DETECTED = "AMBIGUOUS_STATE_DETECTED"
    AMBIGUOUS_RESOLVED = "AMBIGUOUS_RESOLVED"


# Forward actions: (required current status, resulting status, entry type).
FORWARD_ACTIONS: dict[
    SettlementAction, tuple[SettlementStatus, SettlementStatus, LedgerEntryType]
] = {
    SettlementAction.OPEN_SETTLEMENT: (
        SettlementStatus.DRAFT,
        SettlementStatus.ESCROW_OPEN,
        LedgerEntryType.ESCROW_OPENED,
    ),
    SettlementAction.REQUEST_FUNDS: (
        SettlementStatus.ESCROW_OPEN,
        SettlementStatus.AWAITING_FUNDS,
        LedgerEntryType.FUNDING_REQUESTED,
    ),
    SettlementAction.CONFIRM_FUNDS_FINAL: (
        SettlementStatus.AWAITING_FUNDS,
        SettlementStatus.AWAITING_GOLD,
        LedgerEntryType.FUNDS_CONFIRMED,
    ),
    SettlementAction.ALLOCATE_GOLD: (
        SettlementStatus.AWAITING_GOLD,
        SettlementStatus.AWAITING_VERIFICATION,
        LedgerEntryType.GOLD_ALLOCATED,
    ),
    SettlementAction.MARK_VERIFICATION_CLEARED: (
        SettlementStatus.AWAITING_VERIFICATION,
        SettlementStatus.READY_TO_SETTLE,
        LedgerEntryType.VERIFICATION_CLEARED,
    ),
    SettlementAction.AUTHORIZE_SETTLEMENT: (
        SettlementStatus.READY_TO_SETTLE,
        SettlementStatus.AUTHORIZED,
        LedgerEntryType.AUTHORIZATION,
    ),
    SettlementAction.EXECUTE_DVP: (
        SettlementStatus.AUTHORIZED,
        SettlementStatus.SETTLED,
        LedgerEntryType.DVP_EXECUTED,
    ),
    SettlementAction.RESOLVE_AMBIGUOUS: (
        SettlementStatus.AMBIGUOUS_STATE,
        SettlementStatus.ESCROW_OPEN,
        LedgerEntryType.AMBIGUOUS_RESOLVED,
    ),
}


def _new_settlement_id() -> str:
    return f"stl-{uuid.uuid4().hex[:16]}"


class SettlementCase(BaseModel):
    """One order's settlement.  Frozen; updates go through ``model_copy``."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_settlement_id)
    order_id: str
    buyer_org_id: str
    seller_org_id: str
    buyer_user_id: str = ""
    seller_user_id: str = ""
    seller_account_id: str = ""
    counterparty_id: str
    corridor_id: str
    hub_id: str
    vault_hub_id: str = ""
    weight_oz: float = Field(gt=0)
    price_per_oz_locked: float = Field(gt=0)
    notional_usd: float = Field(gt=0)
    currency: str = "USD"
    rail: str | None = None
    status: SettlementStatus = SettlementStatus.DRAFT
    funds_confirmed: bool = False
    gold_allocated: bool = False
    verification_cleared: bool = False
    opened_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def notional_cents(self) -> int:
        return int(round(self.notional_usd * 100))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class LedgerEntrySnapshot(BaseModel):
    """Risk state frozen at the moment a ledger entry is written."""

    model_config = ConfigDict(frozen=True)

    checks_status: CheckStatus = CheckStatus.PASS
    funds_confirmed: bool = False
    gold_allocated: bool = False
    verification_cleared: bool = False
    ecr_at_action: float = 0.0
    hardstop_at_action: float = 0.0
    blockers: list[str] = []
    warnings: list[str] = []


class LedgerEntry(BaseModel):
    """A single entry in a settlement's append-only, hash-chained ledger.

    ``from_status``/``to_status`` record the case status around the entry.
    They differ on transitions, are equal on policy rejections and terminal
    reconciliations, and are ``None`` on logistics warnings.
    ``sequence``, ``previous_entry_hash`` and ``entry_hash`` are assigned by
    the ledger at append time.
    """

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    settlement_id: str
    sequence: int = 0
    type: LedgerEntryType
    actor: str = "system"
    actor_user_id: str = ""
    actor_role: UserRole = UserRole.SYSTEM
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    from_status: SettlementStatus | None = None
    to_status: SettlementStatus | None = None
    detail: str = ""
    snapshot: LedgerEntrySnapshot = LedgerEntrySnapshot()
    metadata: dict[str, Any] = {}
    previous_entry_hash: str = ""
    entry_hash: str = ""

    @property
    def is_transition(self) -> bool:
        return self.to_status is not None and self.from_status != self.to_status


class Actor(BaseModel):
    """Who is performing a lifecycle action."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    role: UserRole
    display_name: str = ""

    @property
    def label(self) -> str:
        return self.display_name or self.user_id
