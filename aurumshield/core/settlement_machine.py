"""Settlement lifecycle state machine.

Enforces:
- Valid transitions only (``VALID_TRANSITIONS``), one role-gated action each
- Authorization requires clear blockers and an approver with enough authority
- Every transition appends exactly one ledger entry with a fresh snapshot
- Case status and ledger replay must agree; disagreement halts automation in
  AMBIGUOUS_STATE until an operator resolves it
- Transitions on one settlement are serialized; different settlements run
  in parallel
- DvP execution re-validates policy, routes funds once, then ships; it always
  finishes in SETTLED or FAILED even if the caller is cancelled
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict

from aurumshield.adapters import (
    CapitalSnapshotProvider,
    LogisticsRouter,
    PolicyContextProvider,
)
from aurumshield.config import ClearingConfig
from aurumshield.core.policy_engine import (
    approver_can_sign,
    build_entry_snapshot,
    evaluate_transaction,
)
from aurumshield.core.rail_router import SettlementRailRouter
from aurumshield.core.settlement_ledger import SettlementLedger, replay_status
from aurumshield.core.settlement_store import SettlementStore
from aurumshield.models.payments import (
    SettlementPayoutRequest,
    SettlementPayoutResult,
    ShipmentResult,
)
from aurumshield.models.risk import (
    BlockerSeverity,
    CapitalSnapshot,
    CheckStatus,
    ControlAction,
    PolicyEvaluation,
    RiskConfiguration,
)
from aurumshield.models.settlement import (
    ACTION_ROLE_MAP,
    APPROVER_AUTHORITY,
    FORWARD_ACTIONS,
    TERMINAL_STATUSES,
    VALID_TRANSITIONS,
    Actor,
    LedgerEntry,
    LedgerEntrySnapshot,
    LedgerEntryType,
    SettlementAction,
    SettlementCase,
    SettlementStatus,
    UserRole,
)

logger = logging.getLogger(__name__)

# Actions an operator may still take on a case in AMBIGUOUS_STATE.
_OPERATOR_ACTIONS = frozenset(
    {
        SettlementAction.RESOLVE_AMBIGUOUS,
        SettlementAction.FAIL_SETTLEMENT,
        SettlementAction.CANCEL_SETTLEMENT,
    }
)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class InvalidTransitionError(RuntimeError):
    """Raised when a requested settlement transition is not valid."""

    def __init__(
        self,
        settlement_id: str,
        current: SettlementStatus,
        target: SettlementStatus,
    ) -> None:
        self.settlement_id = settlement_id
        self.current = current
        self.target = target
        allowed = sorted(s.value for s in VALID_TRANSITIONS.get(current, set()))
        super().__init__(
            f"Cannot transition {settlement_id} from {current.value} to "
            f"{target.value}. Allowed: {allowed}"
        )


class ForbiddenRoleError(RuntimeError):
    """Raised when the actor's role may not perform the action."""

    def __init__(self, settlement_id: str, action: SettlementAction, role: UserRole) -> None:
        self.settlement_id = settlement_id
        self.action = action
        self.role = role
        super().__init__(
            f"Role {role.value} may not perform {action.value} on {settlement_id}"
        )


class InsufficientAuthorityError(ForbiddenRoleError):
    """Raised when an approver's authority is below the required approval tier."""


class AmbiguousStateError(RuntimeError):
    """Raised when a case contradicts its own ledger.

    Automation must stop; only operator resolution, fail, or cancel may act
    on the settlement afterwards.
    """

    def __init__(
        self,
        settlement_id: str,
        case_status: SettlementStatus,
        ledger_status: SettlementStatus,
        reason: str,
    ) -> None:
        self.settlement_id = settlement_id
        self.case_status = case_status
        self.ledger_status = ledger_status
        self.reason = reason
        super().__init__(
            f"Settlement {settlement_id} is ambiguous (case={case_status.value}, "
            f"ledger={ledger_status.value}): {reason}"
        )


class StaleSnapshotError(RuntimeError):
    """Raised when the capital snapshot is too old for a risk decision."""


# ---------------------------------------------------------------------------
# Outcome
# ---------------------------------------------------------------------------


class TransitionOutcome(BaseModel):
    """Result of one lifecycle action.

    ``accepted`` is False for policy rejections and failed DvP executions;
    the ledger entry recording the rejection or failure is still returned.
    """

    model_config = ConfigDict(frozen=True)

    accepted: bool
    settlement: SettlementCase
    entry: LedgerEntry
    evaluation: PolicyEvaluation | None = None
    payout: SettlementPayoutResult | None = None
    shipment: ShipmentResult | None = None
    reason: str = ""


def build_clearing_journal(
    case: SettlementCase, payout: SettlementPayoutResult
) -> dict[str, Any]:
    """Balanced double-entry journal for the funds leg of a DvP."""
    lines = [
        {"account": "SETTLEMENT_ESCROW", "direction": "DEBIT", "amount_cents": case.notional_cents},
        {"account": "SELLER_PROCEEDS", "direction": "CREDIT", "amount_cents": payout.seller_payout_cents},
    ]
    if payout.platform_fee_cents > 0:
        lines.append(
            {"account": "PLATFORM_FEE", "direction": "CREDIT", "amount_cents": payout.platform_fee_cents}
        )
    debits = sum(line["amount_cents"] for line in lines if line["direction"] == "DEBIT")
    credits = sum(line["amount_cents"] for line in lines if line["direction"] == "CREDIT")
    return {
        "currency": case.currency,
        "lines": lines,
        "debits_cents": debits,
        "credits_cents": credits,
        "balanced": debits == credits,
    }


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SettlementLifecycle:
    """Advances settlement cases through escrow, funding, and DvP.

    Parameters
    ----------
    store:
        Case table (projection of the ledger).
    ledger:
        Append-only settlement ledger; the source of truth.
    router:
        Dual-rail payout router used exactly once per DvP.
    logistics:
        Carrier collaborator for the physical leg.
    capital_provider:
        Source of the fresh capital snapshot for every evaluation.
    context_provider:
        Resolves counterparty, corridor, hub and evidence for a case.
    """

    def __init__(
        self,
        *,
        store: SettlementStore,
        ledger: SettlementLedger,
        router: SettlementRailRouter,
        logistics: LogisticsRouter,
        capital_provider: CapitalSnapshotProvider,
        context_provider: PolicyContextProvider,
        risk_config: RiskConfiguration | None = None,
        snapshot_max_age_seconds: float = 5.0,
        adapter_timeout_seconds: float = 30.0,
        platform_fee_bps: int = 0,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._router = router
        self._logistics = logistics
        self._capital_provider = capital_provider
        self._context_provider = context_provider
        self._risk_config = risk_config or RiskConfiguration()
        self._snapshot_max_age_seconds = snapshot_max_age_seconds
        self._adapter_timeout_seconds = adapter_timeout_seconds
        self._platform_fee_bps = platform_fee_bps
        # settlement id -> (lock, callers holding or awaiting it)
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}
        self._dvp_tasks: set[asyncio.Task] = set()

    @classmethod
    def from_config(
        cls,
        config: ClearingConfig,
        *,
        router: SettlementRailRouter,
        logistics: LogisticsRouter,
        capital_provider: CapitalSnapshotProvider,
        context_provider: PolicyContextProvider,
    ) -> SettlementLifecycle:
        return cls(
            store=SettlementStore(config.ledger_path),
            ledger=SettlementLedger(config.ledger_path),
            router=router,
            logistics=logistics,
            capital_provider=capital_provider,
            context_provider=context_provider,
            risk_config=config.risk,
            snapshot_max_age_seconds=config.capital_snapshot_max_age_seconds,
            adapter_timeout_seconds=config.adapter_timeout_seconds,
            platform_fee_bps=config.platform_fee_bps,
        )

    @property
    def ledger(self) -> SettlementLedger:
        return self._ledger

    @property
    def store(self) -> SettlementStore:
        return self._store

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def get_settlement(self, settlement_id: str) -> SettlementCase:
        return self._store.get(settlement_id)

    def get_ledger(self, settlement_id: str) -> list[LedgerEntry]:
        return self._ledger.get_entries(settlement_id)

    def get_entries_since(self, settlement_id: str, sequence: int) -> list[LedgerEntry]:
        return self._ledger.get_entries_since(settlement_id, sequence)

    def verify_chain(self, settlement_id: str) -> bool:
        return self._ledger.verify_chain(settlement_id)

    def settlement_record(
        self, settlement_id: str
    ) -> tuple[SettlementCase, list[LedgerEntry]]:
        """The case and its full ledger, as needed to build a certificate."""
        return self._store.get(settlement_id), self._ledger.get_entries(settlement_id)

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def open_settlement(self, case: SettlementCase, actor: Actor) -> TransitionOutcome:
        """Open escrow for a confirmed order (DRAFT -> ESCROW_OPEN).

        The capital snapshot and policy evaluation are frozen into the
        opening ledger entry.  A BLOCK-level policy result leaves the case in
        DRAFT and is recorded as a POLICY_BLOCKED entry.
        """
        self._require_role(case.id, SettlementAction.OPEN_SETTLEMENT, actor)
        async with self._serialized(case.id):
            existing = self._store.find_by_order(case.order_id)
            if existing is None:
                self._store.insert(case.model_copy(update={"status": SettlementStatus.DRAFT}))
                existing = self._store.get(case.id)
            elif existing.status != SettlementStatus.DRAFT:
                raise InvalidTransitionError(
                    existing.id, existing.status, SettlementStatus.ESCROW_OPEN
                )

            current, _ = self._load_consistent(existing.id)
            snapshot = self._fresh_snapshot()
            evaluation = self._evaluate(current, snapshot, ControlAction.OPEN_SETTLEMENT)
            if evaluation.blocked:
                return self._reject(current, actor, evaluation, "Escrow opening")

            metadata = {
                "capital_snapshot": snapshot.model_dump(mode="json"),
                "tri_score": evaluation.tri.score,
                "tri_band": evaluation.tri.band.value,
                "approval_tier": evaluation.approval.tier.value,
                "control_mode": evaluation.controls.mode.value,
            }
            opened = current.model_copy(
                update={"status": SettlementStatus.ESCROW_OPEN, "updated_at": _now()}
            )
            entry = self._commit(
                current,
                opened,
                LedgerEntryType.ESCROW_OPENED,
                actor,
                f"Escrow opened for order {current.order_id}: "
                f"{current.weight_oz}oz @ ${current.price_per_oz_locked:,.2f}/oz "
                f"(TRI {evaluation.tri.score}, ECR {evaluation.capital.post_txn_ecr:.2f}x)",
                build_entry_snapshot(evaluation, opened),
                metadata,
            )
            return TransitionOutcome(
                accepted=True, settlement=opened, entry=entry, evaluation=evaluation
            )

    async def request_funds(self, settlement_id: str, actor: Actor) -> TransitionOutcome:
        return await self._advance(
            settlement_id,
            SettlementAction.REQUEST_FUNDS,
            actor,
            detail="Buyer funding requested into escrow",
        )

    async def confirm_funds(
        self, settlement_id: str, actor: Actor, *, reference: str = ""
    ) -> TransitionOutcome:
        return await self._advance(
            settlement_id,
            SettlementAction.CONFIRM_FUNDS_FINAL,
            actor,
            detail=f"Funds confirmed final{f' (ref {reference})' if reference else ''}",
            updates={"funds_confirmed": True},
        )

    async def allocate_gold(
        self, settlement_id: str, actor: Actor, *, allocation_ref: str = ""
    ) -> TransitionOutcome:
        return await self._advance(
            settlement_id,
            SettlementAction.ALLOCATE_GOLD,
            actor,
            detail=f"Gold allocated in vault{f' (ref {allocation_ref})' if allocation_ref else ''}",
            updates={"gold_allocated": True},
        )

    async def clear_verification(self, settlement_id: str, actor: Actor) -> TransitionOutcome:
        return await self._advance(
            settlement_id,
            SettlementAction.MARK_VERIFICATION_CLEARED,
            actor,
            detail="Assay and chain-of-custody verification cleared",
            updates={"verification_cleared": True},
        )

    async def authorize(self, settlement_id: str, actor: Actor) -> TransitionOutcome:
        """Authorize DvP (READY_TO_SETTLE -> AUTHORIZED).

        Blockers are re-evaluated on a fresh snapshot; any BLOCK rejects the
        authorization.  Otherwise the actor's approval authority must meet
        the required tier.

        Raises
        ------
        InsufficientAuthorityError
            If the approver's authority is below the required tier.
        """
        action = SettlementAction.AUTHORIZE_SETTLEMENT
        self._require_role(settlement_id, action, actor)
        async with self._serialized(settlement_id):
            case, _ = self._load_consistent(settlement_id)
            self._require_status(case, action)

            evaluation = self._evaluate(case, self._fresh_snapshot())
            if evaluation.blocked:
                return self._reject(case, actor, evaluation, "Authorization")

            required = evaluation.approval.tier
            authority = APPROVER_AUTHORITY[actor.role]
            if not approver_can_sign(authority, required):
                logger.warning(
                    "Settlement %s: %s (%s) lacks authority for %s approval",
                    settlement_id,
                    actor.user_id,
                    actor.role.value,
                    required.value,
                )
                raise InsufficientAuthorityError(settlement_id, action, actor.role)

            authorized = case.model_copy(
                update={"status": SettlementStatus.AUTHORIZED, "updated_at": _now()}
            )
            entry = self._commit(
                case,
                authorized,
                LedgerEntryType.AUTHORIZATION,
                actor,
                f"DvP authorized by {actor.label} ({actor.role.value}) at "
                f"{evaluation.approval.label}: {evaluation.approval.reason}",
                build_entry_snapshot(evaluation, authorized),
                {
                    "approval_tier": required.value,
                    "tri_score": evaluation.tri.score,
                    "post_txn_ecr": evaluation.capital.post_txn_ecr,
                    "post_txn_hardstop_util": evaluation.capital.post_txn_hardstop_util,
                },
            )
            return TransitionOutcome(
                accepted=True, settlement=authorized, entry=entry, evaluation=evaluation
            )

    async def execute_dvp(
        self, settlement_id: str, actor: Actor, *, delivery_address: str = ""
    ) -> TransitionOutcome:
        """Execute Delivery-versus-Payment (AUTHORIZED -> SETTLED or FAILED).

        Runs in a shielded task: cancelling the caller does not interrupt
        the execution, which always reaches a definite outcome.
        """
        self._require_role(settlement_id, SettlementAction.EXECUTE_DVP, actor)
        task = asyncio.ensure_future(self._run_dvp(settlement_id, actor, delivery_address))
        self._dvp_tasks.add(task)
        task.add_done_callback(self._dvp_tasks.discard)
        return await asyncio.shield(task)

    async def fail(self, settlement_id: str, actor: Actor, reason: str) -> TransitionOutcome:
        return await self._exit(
            settlement_id,
            SettlementAction.FAIL_SETTLEMENT,
            SettlementStatus.FAILED,
            LedgerEntryType.SETTLEMENT_FAILED,
            actor,
            reason,
        )

    async def cancel(self, settlement_id: str, actor: Actor, reason: str) -> TransitionOutcome:
        return await self._exit(
            settlement_id,
            SettlementAction.CANCEL_SETTLEMENT,
            SettlementStatus.CANCELLED,
            LedgerEntryType.SETTLEMENT_CANCELLED,
            actor,
            reason,
        )

    async def resolve_ambiguous(
        self, settlement_id: str, actor: Actor, reason: str
    ) -> TransitionOutcome:
        """Operator reconciliation of an AMBIGUOUS_STATE case.

        When the ledger is sealed at a terminal status the case row adopts
        that status, so a settled case can still be certified.  Otherwise the
        case returns to ESCROW_OPEN with its progress flags reset and must be
        re-funded, re-allocated and re-verified.
        """
        if not reason.strip():
            raise ValueError("A reconciliation reason is required to resolve ambiguity")
        action = SettlementAction.RESOLVE_AMBIGUOUS
        self._require_role(settlement_id, action, actor)
        async with self._serialized(settlement_id):
            case = self._store.get(settlement_id)
            entries = self._ledger.get_entries(settlement_id)
            ledger_status = replay_status(entries)
            if ledger_status in TERMINAL_STATUSES:
                if case.status == ledger_status:
                    raise InvalidTransitionError(
                        settlement_id, case.status, SettlementStatus.ESCROW_OPEN
                    )
                return self._adopt_ledger_terminal(case, entries, ledger_status, actor, reason)

            case, _ = self._load_consistent(settlement_id)
            self._require_status(case, action)
            return self._apply(
                case,
                action,
                actor,
                detail=f"AMBIGUOUS_STATE resolved: {reason}. "
                "Returned to ESCROW_OPEN for re-processing",
                updates={
                    "funds_confirmed": False,
                    "gold_allocated": False,
                    "verification_cleared": False,
                },
                tolerate_stale_capital=True,
            )

    def _adopt_ledger_terminal(
        self,
        case: SettlementCase,
        entries: list[LedgerEntry],
        ledger_status: SettlementStatus,
        actor: Actor,
        reason: str,
    ) -> TransitionOutcome:
        """Bring a drifted case row back to the status its sealed ledger holds."""
        terminal = next(
            e for e in reversed(entries) if e.is_transition and e.to_status == ledger_status
        )
        updates: dict[str, Any] = {
            "status": ledger_status,
            "funds_confirmed": terminal.snapshot.funds_confirmed,
            "gold_allocated": terminal.snapshot.gold_allocated,
            "verification_cleared": terminal.snapshot.verification_cleared,
            "updated_at": _now(),
        }
        if terminal.metadata.get("rail_used"):
            updates["rail"] = terminal.metadata["rail_used"]
        adopted = case.model_copy(update=updates)

        entry = self._ledger.append(
            LedgerEntry(
                settlement_id=case.id,
                type=LedgerEntryType.AMBIGUOUS_RESOLVED,
                actor=actor.label,
                actor_user_id=actor.user_id,
                actor_role=actor.role,
                from_status=ledger_status,
                to_status=ledger_status,
                detail=f"AMBIGUOUS_STATE resolved: {reason}. Case row restored to "
                f"{ledger_status.value} from ledger entry {terminal.sequence}",
                snapshot=self._bare_snapshot(adopted, CheckStatus.WARN),
                metadata={
                    "case_status": case.status.value,
                    "terminal_entry_id": terminal.entry_id,
                },
            )
        )
        if not self._store.reconcile(adopted, case.status):
            raise AmbiguousStateError(
                case.id,
                case.status,
                ledger_status,
                "case row was modified concurrently with reconciliation",
            )
        logger.warning(
            "Settlement %s: case row %s reconciled to ledger status %s by %s",
            case.id,
            case.status.value,
            ledger_status.value,
            actor.user_id,
        )
        return TransitionOutcome(accepted=True, settlement=adopted, entry=entry, reason=reason)

    # ------------------------------------------------------------------
    # DvP internals
    # ------------------------------------------------------------------

    async def _run_dvp(
        self, settlement_id: str, actor: Actor, delivery_address: str
    ) -> TransitionOutcome:
        async with self._serialized(settlement_id):
            case, entries = self._load_consistent(settlement_id)
            self._require_status(case, SettlementAction.EXECUTE_DVP)

            # Policy may have changed since authorization; re-check it.
            try:
                evaluation = self._evaluate(
                    case, self._fresh_snapshot(), ControlAction.EXECUTE_DVP
                )
            except Exception as exc:  # noqa: BLE001
                return self._fail_dvp(
                    case, actor, f"Re-validation unavailable at execution: {exc}", None
                )
            if evaluation.blocked:
                titles = ", ".join(
                    b.title for b in evaluation.blockers if b.severity == BlockerSeverity.BLOCK
                )
                return self._fail_dvp(
                    case, actor, f"Re-validation at execution found BLOCK: {titles}", evaluation
                )

            request = self._payout_request(case)
            try:
                payout = await self._router.route_settlement(request)
            except Exception as exc:  # noqa: BLE001
                return self._fail_dvp(case, actor, f"Rail router error: {exc}", evaluation)
            if not payout.success:
                return self._fail_dvp(
                    case, actor, f"Funds routing failed: {payout.error}", evaluation, payout
                )

            shipment = await self._ship(case, delivery_address)
            if not shipment.success:
                logger.warning(
                    "Settlement %s: logistics failed (%s); settlement proceeds",
                    settlement_id,
                    shipment.error,
                )
                self._ledger.append(
                    LedgerEntry(
                        settlement_id=settlement_id,
                        type=LedgerEntryType.LOGISTICS_WARNING,
                        actor="system",
                        actor_role=UserRole.SYSTEM,
                        detail=f"Shipment via {shipment.carrier} not initiated: {shipment.error}",
                        snapshot=build_entry_snapshot(evaluation, case),
                        metadata={"carrier": shipment.carrier, "error": shipment.error},
                    )
                )

            authorization = next(
                e for e in reversed(entries) if e.type == LedgerEntryType.AUTHORIZATION
            )
            settled = case.model_copy(
                update={
                    "status": SettlementStatus.SETTLED,
                    "rail": payout.rail_used,
                    "updated_at": _now(),
                }
            )
            entry = self._commit(
                case,
                settled,
                LedgerEntryType.DVP_EXECUTED,
                actor,
                f"DvP executed atomically: ${case.notional_usd:,.2f} released to "
                f"{case.seller_org_id} via {payout.rail_used}"
                f"{' (fallback)' if payout.is_fallback else ''}; "
                f"{case.weight_oz}oz title transferred to {case.buyer_org_id}",
                build_entry_snapshot(evaluation, settled),
                {
                    "authorization_entry_id": authorization.entry_id,
                    "rail_used": payout.rail_used,
                    "is_fallback": payout.is_fallback,
                    "external_ids": list(payout.external_ids),
                    "idempotency_key": payout.idempotency_key,
                    "carrier": shipment.carrier,
                    "tracking_number": shipment.tracking_number,
                    "clearing_journal": build_clearing_journal(case, payout),
                },
            )
            logger.info(
                "Settlement %s SETTLED via %s (fallback=%s)",
                settlement_id,
                payout.rail_used,
                payout.is_fallback,
            )
            return TransitionOutcome(
                accepted=True,
                settlement=settled,
                entry=entry,
                evaluation=evaluation,
                payout=payout,
                shipment=shipment,
            )

    def _payout_request(self, case: SettlementCase) -> SettlementPayoutRequest:
        total = case.notional_cents
        fee = total * self._platform_fee_bps // 10_000
        return SettlementPayoutRequest(
            settlement_id=case.id,
            payee_id=case.seller_account_id or case.seller_org_id,
            payee_name=case.seller_org_id,
            total_amount_cents=total,
            seller_payout_cents=total - fee,
            platform_fee_cents=fee,
            currency=case.currency,
            action=SettlementAction.EXECUTE_DVP.value,
        )

    async def _ship(self, case: SettlementCase, address: str) -> ShipmentResult:
        try:
            return await asyncio.wait_for(
                self._logistics.create_shipment(
                    case.id, case.order_id, case.notional_cents, case.weight_oz, address
                ),
                timeout=self._adapter_timeout_seconds,
            )
        except asyncio.TimeoutError:
            return ShipmentResult(
                carrier="unassigned",
                error=f"logistics timed out after {self._adapter_timeout_seconds}s",
            )
        except Exception as exc:  # noqa: BLE001
            return ShipmentResult(carrier="unassigned", error=f"logistics error: {exc}")

    def _fail_dvp(
        self,
        case: SettlementCase,
        actor: Actor,
        reason: str,
        evaluation: PolicyEvaluation | None,
        payout: SettlementPayoutResult | None = None,
    ) -> TransitionOutcome:
        logger.error("Settlement %s DvP failed: %s", case.id, reason)
        failed = case.model_copy(
            update={"status": SettlementStatus.FAILED, "updated_at": _now()}
        )
        if evaluation is not None:
            snapshot = build_entry_snapshot(evaluation, failed)
        else:
            snapshot = self._bare_snapshot(failed, CheckStatus.FAIL)
        metadata: dict[str, Any] = {"stage": "EXECUTE_DVP"}
        if payout is not None:
            metadata["rail_attempts"] = [a.model_dump(mode="json") for a in payout.attempts]
            metadata["idempotency_key"] = payout.idempotency_key
        entry = self._commit(
            case, failed, LedgerEntryType.SETTLEMENT_FAILED, actor, reason, snapshot, metadata
        )
        return TransitionOutcome(
            accepted=False,
            settlement=failed,
            entry=entry,
            evaluation=evaluation,
            payout=payout,
            reason=reason,
        )

    # ------------------------------------------------------------------
    # Shared transition machinery
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _serialized(self, settlement_id: str) -> AsyncIterator[None]:
        """Hold the settlement's lock; the lock is dropped once no caller needs it."""
        lock, users = self._locks.get(settlement_id, (asyncio.Lock(), 0))
        self._locks[settlement_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[settlement_id]
            if users == 1:
                del self._locks[settlement_id]
            else:
                self._locks[settlement_id] = (lock, users - 1)

    @staticmethod
    def _require_role(settlement_id: str, action: SettlementAction, actor: Actor) -> None:
        if actor.role not in ACTION_ROLE_MAP[action]:
            raise ForbiddenRoleError(settlement_id, action, actor.role)

    @staticmethod
    def _require_status(case: SettlementCase, action: SettlementAction) -> None:
        required, target, _ = FORWARD_ACTIONS[action]
        if (
            case.status == SettlementStatus.AMBIGUOUS_STATE
            and action not in _OPERATOR_ACTIONS
        ):
            raise AmbiguousStateError(
                case.id,
                case.status,
                case.status,
                f"{action.value} refused; operator reconciliation required",
            )
        if case.status != required:
            raise InvalidTransitionError(case.id, case.status, target)

    async def _advance(
        self,
        settlement_id: str,
        action: SettlementAction,
        actor: Actor,
        *,
        detail: str,
        updates: dict[str, Any] | None = None,
        tolerate_stale_capital: bool = False,
    ) -> TransitionOutcome:
        self._require_role(settlement_id, action, actor)
        async with self._serialized(settlement_id):
            case, _ = self._load_consistent(settlement_id)
            self._require_status(case, action)
            return self._apply(
                case,
                action,
                actor,
                detail=detail,
                updates=updates,
                tolerate_stale_capital=tolerate_stale_capital,
            )

    def _apply(
        self,
        case: SettlementCase,
        action: SettlementAction,
        actor: Actor,
        *,
        detail: str,
        updates: dict[str, Any] | None = None,
        tolerate_stale_capital: bool = False,
    ) -> TransitionOutcome:
        """Commit a forward action on a case loaded under its lock."""
        _, target, entry_type = FORWARD_ACTIONS[action]
        advanced = case.model_copy(
            update={**(updates or {}), "status": target, "updated_at": _now()}
        )
        evaluation = self._snapshot_evaluation(case, tolerate_stale_capital)
        if evaluation is not None:
            snapshot = build_entry_snapshot(evaluation, advanced)
        else:
            snapshot = self._bare_snapshot(advanced, CheckStatus.WARN)
        entry = self._commit(case, advanced, entry_type, actor, detail, snapshot)
        return TransitionOutcome(
            accepted=True, settlement=advanced, entry=entry, evaluation=evaluation
        )

    async def _exit(
        self,
        settlement_id: str,
        action: SettlementAction,
        target: SettlementStatus,
        entry_type: LedgerEntryType,
        actor: Actor,
        reason: str,
    ) -> TransitionOutcome:
        if not reason.strip():
            raise ValueError(f"A reason is required for {action.value}")
        self._require_role(settlement_id, action, actor)
        async with self._serialized(settlement_id):
            case, _ = self._load_consistent(settlement_id)
            if target not in VALID_TRANSITIONS[case.status]:
                raise InvalidTransitionError(settlement_id, case.status, target)

            closed = case.model_copy(update={"status": target, "updated_at": _now()})
            evaluation = self._snapshot_evaluation(case, tolerate_failure=True)
            if evaluation is not None:
                snapshot = build_entry_snapshot(evaluation, closed)
            else:
                snapshot = self._bare_snapshot(closed, CheckStatus.WARN)
            entry = self._commit(
                case,
                closed,
                entry_type,
                actor,
                f"Settlement {target.value.lower()} by {actor.label}: {reason}",
                snapshot,
            )
            return TransitionOutcome(
                accepted=True, settlement=closed, entry=entry, evaluation=evaluation, reason=reason
            )

    def _reject(
        self,
        case: SettlementCase,
        actor: Actor,
        evaluation: PolicyEvaluation,
        stage: str,
    ) -> TransitionOutcome:
        """Record a policy rejection; the entry restates the unchanged status."""
        blocks = [b for b in evaluation.blockers if b.severity == BlockerSeverity.BLOCK]
        reason = f"{stage} blocked by policy: " + "; ".join(
            f"{b.title} ({b.detail})" for b in blocks
        )
        logger.warning("Settlement %s: %s", case.id, reason)
        entry = self._ledger.append(
            LedgerEntry(
                settlement_id=case.id,
                type=LedgerEntryType.POLICY_BLOCKED,
                actor=actor.label,
                actor_user_id=actor.user_id,
                actor_role=actor.role,
                from_status=case.status,
                to_status=case.status,
                detail=reason,
                snapshot=build_entry_snapshot(evaluation, case),
                metadata={"blockers": [b.id.value for b in blocks]},
            )
        )
        return TransitionOutcome(
            accepted=False, settlement=case, entry=entry, evaluation=evaluation, reason=reason
        )

    def _commit(
        self,
        case: SettlementCase,
        updated: SettlementCase,
        entry_type: LedgerEntryType,
        actor: Actor,
        detail: str,
        snapshot: LedgerEntrySnapshot,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerEntry:
        """Append the transition entry, then move the case row to match it."""
        if updated.status not in VALID_TRANSITIONS[case.status]:
            raise InvalidTransitionError(case.id, case.status, updated.status)

        sealed = self._ledger.append(
            LedgerEntry(
                settlement_id=case.id,
                type=entry_type,
                actor=actor.label,
                actor_user_id=actor.user_id,
                actor_role=actor.role,
                from_status=case.status,
                to_status=updated.status,
                detail=detail,
                snapshot=snapshot,
                metadata=metadata or {},
            )
        )
        if not self._store.compare_and_swap(updated, case.status):
            logger.critical(
                "Settlement %s: case row changed underneath %s; ledger is ahead",
                case.id,
                entry_type.value,
            )
            raise AmbiguousStateError(
                case.id,
                case.status,
                updated.status,
                "case row was modified concurrently with a ledger append",
            )
        logger.info(
            "Settlement %s: %s -> %s (%s by %s)",
            case.id,
            case.status.value,
            updated.status.value,
            entry_type.value,
            actor.user_id,
        )
        return sealed

    def _load_consistent(
        self, settlement_id: str
    ) -> tuple[SettlementCase, list[LedgerEntry]]:
        """Load a case and its ledger, flagging AMBIGUOUS_STATE on disagreement."""
        case = self._store.get(settlement_id)
        entries = self._ledger.get_entries(settlement_id)
        ledger_status = replay_status(entries)

        problem = _lifecycle_violation(case, entries, ledger_status)
        if problem is None:
            return case, entries

        self._flag_ambiguous(case, ledger_status, problem)
        raise AmbiguousStateError(settlement_id, case.status, ledger_status, problem)

    def _flag_ambiguous(
        self,
        case: SettlementCase,
        ledger_status: SettlementStatus,
        problem: str,
    ) -> None:
        logger.critical(
            "Settlement %s AMBIGUOUS (case=%s ledger=%s): %s",
            case.id,
            case.status.value,
            ledger_status.value,
            problem,
        )
        if ledger_status not in TERMINAL_STATUSES and ledger_status != SettlementStatus.AMBIGUOUS_STATE:
            self._ledger.append(
                LedgerEntry(
                    settlement_id=case.id,
                    type=LedgerEntryType.AMBIGUOUS_STATE_DETECTED,
                    actor="system",
                    actor_role=UserRole.SYSTEM,
                    from_status=ledger_status,
                    to_status=SettlementStatus.AMBIGUOUS_STATE,
                    detail=problem,
                    snapshot=self._bare_snapshot(case, CheckStatus.FAIL),
                    metadata={"case_status": case.status.value},
                )
            )
        if case.status not in TERMINAL_STATUSES and case.status != SettlementStatus.AMBIGUOUS_STATE:
            self._store.compare_and_swap(
                case.model_copy(
                    update={"status": SettlementStatus.AMBIGUOUS_STATE, "updated_at": _now()}
                ),
                case.status,
            )

    def _fresh_snapshot(self) -> CapitalSnapshot:
        snapshot = self._capital_provider.get_snapshot()
        age = (_now() - snapshot.as_of).total_seconds()
        if age > self._snapshot_max_age_seconds:
            raise StaleSnapshotError(
                f"Capital snapshot is {age:.1f}s old; "
                f"maximum is {self._snapshot_max_age_seconds:.1f}s"
            )
        return snapshot

    def _evaluate(
        self,
        case: SettlementCase,
        snapshot: CapitalSnapshot,
        action: ControlAction | None = None,
    ) -> PolicyEvaluation:
        context = self._context_provider.get_context(case)
        return evaluate_transaction(
            context, case.notional_usd, snapshot, config=self._risk_config, action=action
        )

    def _snapshot_evaluation(
        self, case: SettlementCase, tolerate_failure: bool
    ) -> PolicyEvaluation | None:
        """Evaluate for the ledger snapshot; operator exits proceed without one."""
        if not tolerate_failure:
            return self._evaluate(case, self._fresh_snapshot())
        try:
            return self._evaluate(case, self._fresh_snapshot())
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Settlement %s: recording operator action without risk snapshot: %s",
                case.id,
                exc,
            )
            return None

    @staticmethod
    def _bare_snapshot(case: SettlementCase, status: CheckStatus) -> LedgerEntrySnapshot:
        return LedgerEntrySnapshot(
            checks_status=status,
            funds_confirmed=case.funds_confirmed,
            gold_allocated=case.gold_allocated,
            verification_cleared=case.verification_cleared,
        )


def _lifecycle_violation(
    case: SettlementCase,
    entries: list[LedgerEntry],
    ledger_status: SettlementStatus,
) -> str | None:
    """Describe how a case contradicts its ledger, or None if it does not."""
    if case.status != ledger_status:
        return (
            f"case status {case.status.value} contradicts ledger status "
            f"{ledger_status.value}"
        )

    authorized = False
    for entry in entries:
        if entry.type == LedgerEntryType.AUTHORIZATION:
            authorized = True
        elif entry.type == LedgerEntryType.AMBIGUOUS_RESOLVED:
            authorized = False
        elif entry.type == LedgerEntryType.DVP_EXECUTED and not authorized:
            return f"DVP_EXECUTED entry {entry.entry_id} has no preceding AUTHORIZATION"

    if ledger_status == SettlementStatus.AUTHORIZED and not authorized:
        return "status AUTHORIZED without an AUTHORIZATION entry"
    return None
