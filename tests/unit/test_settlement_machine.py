"""Tests for the settlement lifecycle state machine.

Async actions are driven with ``asyncio.run`` so each test owns its own
event loop.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from aurumshield.adapters.simulated import (
    SimulatedLogistics,
    SimulatedRail,
    StaticCapitalProvider,
)
from aurumshield.config import ClearingConfig
from aurumshield.core.rail_router import SettlementRailRouter
from aurumshield.core.settlement_machine import (
    ForbiddenRoleError,
    InsufficientAuthorityError,
    InvalidTransitionError,
    SettlementLifecycle,
    StaleSnapshotError,
    build_clearing_journal,
)
from aurumshield.models.payments import SettlementPayoutResult
from aurumshield.models.risk import (
    BlockerKind,
    BreachEvent,
    BreachEventType,
    BreachLevel,
    CapitalSnapshot,
    ControlMode,
    CorridorStatus,
    CounterpartyStatus,
    RiskLevel,
)
from aurumshield.models.settlement import (
    Actor,
    LedgerEntryType,
    SettlementStatus,
    UserRole,
)


def _lifecycle_with(store, settlement_ledger, context_provider, capital_provider, *, rails, logistics=None):
    return SettlementLifecycle(
        store=store,
        ledger=settlement_ledger,
        router=SettlementRailRouter(list(rails.values()), timeout_seconds=1.0),
        logistics=logistics or SimulatedLogistics(),
        capital_provider=capital_provider,
        context_provider=context_provider,
        adapter_timeout_seconds=1.0,
    )


class TestHappyPath:
    def test_full_lifecycle_settles(self, lifecycle, make_case, advance_to):
        case = make_case()
        settled = asyncio.run(advance_to(case, SettlementStatus.SETTLED))
        assert settled.status == SettlementStatus.SETTLED
        assert settled.rail == "modern_treasury"
        assert settled.funds_confirmed and settled.gold_allocated and settled.verification_cleared

        entries = lifecycle.get_ledger(case.id)
        assert [e.type for e in entries] == [
            LedgerEntryType.ESCROW_OPENED,
            LedgerEntryType.FUNDING_REQUESTED,
            LedgerEntryType.FUNDS_CONFIRMED,
            LedgerEntryType.GOLD_ALLOCATED,
            LedgerEntryType.VERIFICATION_CLEARED,
            LedgerEntryType.AUTHORIZATION,
            LedgerEntryType.DVP_EXECUTED,
        ]
        assert lifecycle.verify_chain(case.id) is True
        assert lifecycle.get_settlement(case.id).status == SettlementStatus.SETTLED

    def test_open_freezes_capital_snapshot(self, lifecycle, make_case, treasury):
        outcome = asyncio.run(lifecycle.open_settlement(make_case(), treasury))
        assert outcome.accepted is True
        assert outcome.entry.from_status == SettlementStatus.DRAFT
        assert outcome.entry.to_status == SettlementStatus.ESCROW_OPEN
        assert outcome.entry.metadata["capital_snapshot"]["capital_base"] == 25_000_000.0
        assert outcome.entry.metadata["approval_tier"] == "auto"
        assert outcome.entry.snapshot.ecr_at_action == pytest.approx(0.24)

    def test_dvp_entry_links_authorization(self, lifecycle, make_case, advance_to):
        case = make_case()
        asyncio.run(advance_to(case, SettlementStatus.SETTLED))
        entries = lifecycle.get_ledger(case.id)
        authorization = next(e for e in entries if e.type == LedgerEntryType.AUTHORIZATION)
        dvp = entries[-1]
        assert dvp.metadata["authorization_entry_id"] == authorization.entry_id
        assert dvp.metadata["rail_used"] == "modern_treasury"
        assert dvp.metadata["is_fallback"] is False
        assert dvp.metadata["carrier"] == "brinks"
        assert dvp.metadata["clearing_journal"]["balanced"] is True

    def test_progress_flags_are_recorded_in_snapshots(self, lifecycle, make_case, advance_to):
        case = make_case()
        asyncio.run(advance_to(case, SettlementStatus.AWAITING_VERIFICATION))
        latest = lifecycle.ledger.get_latest(case.id)
        assert latest.snapshot.funds_confirmed is True
        assert latest.snapshot.gold_allocated is True
        assert latest.snapshot.verification_cleared is False


class TestRoles:
    def test_buyer_cannot_open(self, lifecycle, make_case, buyer):
        with pytest.raises(ForbiddenRoleError):
            asyncio.run(lifecycle.open_settlement(make_case(), buyer))

    def test_vault_ops_cannot_confirm_funds(self, lifecycle, make_case, advance_to, vault_ops):
        case = make_case()
        asyncio.run(advance_to(case, SettlementStatus.AWAITING_FUNDS))
        with pytest.raises(ForbiddenRoleError):
            asyncio.run(lifecycle.confirm_funds(case.id, vault_ops))
        assert lifecycle.get_settlement(case.id).status == SettlementStatus.AWAITING_FUNDS

    def test_treasury_cannot_cancel(self, lifecycle, make_case, advance_to, treasury):
        case = make_case()
        asyncio.run(advance_to(case, SettlementStatus.ESCROW_OPEN))
        with pytest.raises(ForbiddenRoleError):
            asyncio.run(lifecycle.cancel(case.id, treasury, "customer request"))

    def test_compliance_cannot_authorize(
        self, lifecycle, make_case, advance_to, compliance_officer
    ):
        case = make_case()
        asyncio.run(advance_to(case, SettlementStatus.READY_TO_SETTLE))
        with pytest.raises(ForbiddenRoleError):
            asyncio.run(lifecycle.authorize(case.id, compliance_officer))


class TestAuthorization:
    def test_admin_lacks_authority_for_desk_head_tier(
        self, lifecycle, make_case, advance_to, admin, context_provider
    ):
        context = context_provider.context
        context_provider.context = context.model_copy(
            update={
                "counterparty": context.counterparty.model_copy(
                    update={"risk_level": RiskLevel.HIGH}
                ),
                "corridor": context.corridor.model_copy(update={"risk_level": RiskLevel.HIGH}),
            }
        )
        case = make_case()
        asyncio.run(advance_to(case, SettlementStatus.READY_TO_SETTLE))

        with pytest.raises(InsufficientAuthorityError):
            asyncio.run(lifecycle.authorize(case.id, admin))

        desk_head = Actor(user_id="u-desk", role=UserRole.DESK_HEAD)
        outcome = asyncio.run(lifecycle.authorize(case.id, desk_head))
        assert outcome.accepted is True
        assert outcome.entry.metadata["approval_tier"] == "desk-head"

    def test_desk_head_lacks_authority_for_credit_committee_tier(
        self, lifecycle, make_case, advance_to, context_provider
    ):
        context = context_provider.context
        context_provider.context = context.model_copy(
            update={
                "counterparty": context.counterparty.model_copy(
                    update={"risk_level": RiskLevel.CRITICAL}
                ),
                "corridor": context.corridor.model_copy(
                    update={"risk_level": RiskLevel.CRITICAL}
                ),
            }
        )
        case = make_case()
        asyncio.run(advance_to(case, SettlementStatus.READY_TO_SETTLE))

        desk_head = Actor(user_id="u-desk", role=UserRole.DESK_HEAD)
        with pytest.raises(InsufficientAuthorityError):
            asyncio.run(lifecycle.authorize(case.id, desk_head))
        committee = Actor(user_id="u-cc", role=UserRole.CREDIT_COMMITTEE)
        assert asyncio.run(lifecycle.authorize(case.id, committee)).accepted is True

    def test_block_at_authorization_is_rejected(
        self, lifecycle, make_case, advance_to, admin, context_provider
    ):
        case = make_case()
        asyncio.run(advance_to(case, SettlementStatus.READY_TO_SETTLE))
        context = context_provider.context
        context_provider.context = context.model_copy(
            update={
                "counterparty": context.counterparty.model_copy(
                    update={"status": CounterpartyStatus.SUSPENDED}
                )
            }
        )
        outcome = asyncio.run(lifecycle.authorize(case.id, admin))
        assert outcome.accepted is False
        assert outcome.entry.type == LedgerEntryType.POLICY_BLOCKED
        assert "cp-suspended" in outcome.entry.metadata["blockers"]
        assert outcome.entry.from_status == SettlementStatus.READY_TO_SETTLE
        assert outcome.entry.to_status == SettlementStatus.READY_TO_SETTLE
        assert lifecycle.ledger.current_status(case.id) == SettlementStatus.READY_TO_SETTLE
        assert lifecycle.get_settlement(case.id).status == SettlementStatus.READY_TO_SETTLE


class TestPolicyBlockAtOpen:
    def test_block_leaves_case_in_draft(self, lifecycle, make_case, treasury, context_provider):
        context = context_provider.context
        context_provider.context = context.model_copy(
            update={"corridor": context.corridor.model_copy(update={"status": CorridorStatus.SUSPENDED})}
        )
        case = make_case()
        outcome = asyncio.run(lifecycle.open_settlement(case, treasury))
        assert outcome.accepted is False
        assert outcome.settlement.status == SettlementStatus.DRAFT
        assert outcome.entry.type == LedgerEntryType.POLICY_BLOCKED
        assert outcome.entry.is_transition is False
        assert outcome.entry.from_status == SettlementStatus.DRAFT
        assert outcome.entry.to_status == SettlementStatus.DRAFT
        assert outcome.evaluation.approval.tier.value == "board"
        assert lifecycle.get_settlement(case.id).status == SettlementStatus.DRAFT

    def test_blocked_case_can_be_reopened_once_clear(
        self, lifecycle, make_case, treasury, context_provider
    ):
        original = context_provider.context
        context_provider.context = original.model_copy(update={"evidence": None})
        case = make_case()
        assert asyncio.run(lifecycle.open_settlement(case, treasury)).accepted is False

        context_provider.context = original
        outcome = asyncio.run(lifecycle.open_settlement(case, treasury))
        assert outcome.accepted is True
        assert outcome.settlement.status == SettlementStatus.ESCROW_OPEN

    def test_notional_over_hardstop_blocks(self, lifecycle, make_case, treasury):
        case = make_case(weight_oz=20_000.0, price_per_oz_locked=2_500.0)  # $50M
        outcome = asyncio.run(lifecycle.open_settlement(case, treasury))
        assert outcome.accepted is False
        assert "hardstop-remaining" in outcome.entry.metadata["blockers"]


class TestTransitions:
    def test_skipping_steps_is_invalid(self, lifecycle, make_case, advance_to, admin):
        case = make_case()
        asyncio.run(advance_to(case, SettlementStatus.ESCROW_OPEN))
        with pytest.raises(InvalidTransitionError):
            asyncio.run(lifecycle.authorize(case.id, admin))

    def test_reopening_opened_order_is_invalid(self, lifecycle, make_case, advance_to, treasury):
        case = make_case()
        asyncio.run(advance_to(case, SettlementStatus.ESCROW_OPEN))
        with pytest.raises(InvalidTransitionError):
            asyncio.run(lifecycle.open_settlement(case, treasury))

    def test_cancel_requires_reason(self, lifecycle, make_case, advance_to, admin):
        case = make_case()
        asyncio.run(advance_to(case, SettlementStatus.ESCROW_OPEN))
        with pytest.raises(ValueError):
            asyncio.run(lifecycle.cancel(case.id, admin, "   "))

    def test_fail_requires_reason(self, lifecycle, make_case, advance_to, admin):
        case = make_case()
        asyncio.run(advance_to(case, SettlementStatus.ESCROW_OPEN))
        with pytest.raises(ValueError):
            asyncio.run(lifecycle.fail(case.id, admin, ""))

    def test_cancel_is_terminal(self, lifecycle, make_case, advance_to, admin, treasury):
        case = make_case()
        asyncio.run(advance_to(case, SettlementStatus.AWAITING_FUNDS))
        outcome = asyncio.run(lifecycle.cancel(case.id, admin, "buyer withdrew"))
        assert outcome.settlement.status == SettlementStatus.CANCELLED
        assert "buyer withdrew" in outcome.entry.detail
        with pytest.raises(InvalidTransitionError):
            asyncio.run(lifecycle.confirm_funds(case.id, treasury))
        with pytest.raises(InvalidTransitionError):
            asyncio.run(lifecycle.fail(case.id, admin, "too late"))

    def test_entries_since(self, lifecycle, make_case, advance_to):
        case = make_case()
        asyncio.run(advance_to(case, SettlementStatus.AWAITING_GOLD))
        since = lifecycle.get_entries_since(case.id, 1)
        assert [e.sequence for e in since] == [2, 3]


class TestExecuteDvp:
    def test_fallback_rail_is_recorded(
        self, store, settlement_ledger, context_provider, capital_provider, make_case,
        treasury, vault_ops, compliance_officer, admin,
    ):
        # A $1M case is above the low-cost threshold, so modern_treasury is primary.
        rails = {
            "moov": SimulatedRail("moov"),
            "modern_treasury": SimulatedRail("modern_treasury", fail=True),
        }
        lifecycle = _lifecycle_with(
            store, settlement_ledger, context_provider, capital_provider, rails=rails
        )
        case = make_case()

        async def scenario():
            await lifecycle.open_settlement(case, treasury)
            await lifecycle.request_funds(case.id, treasury)
            await lifecycle.confirm_funds(case.id, treasury)
            await lifecycle.allocate_gold(case.id, vault_ops)
            await lifecycle.clear_verification(case.id, compliance_officer)
            await lifecycle.authorize(case.id, admin)
            return await lifecycle.execute_dvp(case.id, treasury)

        outcome = asyncio.run(scenario())
        assert outcome.accepted is True
        assert outcome.settlement.rail == "moov"
        assert outcome.entry.metadata["is_fallback"] is True
        assert "(fallback)" in outcome.entry.detail

    def test_all_rails_failing_fails_settlement(
        self, store, settlement_ledger, context_provider, capital_provider, make_case,
        treasury, vault_ops, compliance_officer, admin,
    ):
        rails = {
            "moov": SimulatedRail("moov", fail=True),
            "modern_treasury": SimulatedRail("modern_treasury", raise_error=True),
        }
        logistics = SimulatedLogistics()
        lifecycle = _lifecycle_with(
            store, settlement_ledger, context_provider, capital_provider,
            rails=rails, logistics=logistics,
        )
        case = make_case()

        async def scenario():
            await lifecycle.open_settlement(case, treasury)
            await lifecycle.request_funds(case.id, treasury)
            await lifecycle.confirm_funds(case.id, treasury)
            await lifecycle.allocate_gold(case.id, vault_ops)
            await lifecycle.clear_verification(case.id, compliance_officer)
            await lifecycle.authorize(case.id, admin)
            return await lifecycle.execute_dvp(case.id, treasury)

        outcome = asyncio.run(scenario())
        assert outcome.accepted is False
        assert outcome.settlement.status == SettlementStatus.FAILED
        assert outcome.entry.type == LedgerEntryType.SETTLEMENT_FAILED
        assert len(outcome.entry.metadata["rail_attempts"]) == 2
        assert logistics.shipments == []
        assert lifecycle.get_settlement(case.id).status == SettlementStatus.FAILED

    def test_logistics_failure_does_not_block_settlement(
        self, store, settlement_ledger, context_provider, capital_provider, rails, make_case,
        treasury, vault_ops, compliance_officer, admin,
    ):
        lifecycle = _lifecycle_with(
            store, settlement_ledger, context_provider, capital_provider,
            rails=rails, logistics=SimulatedLogistics(raise_error=True),
        )
        case = make_case()

        async def scenario():
            await lifecycle.open_settlement(case, treasury)
            await lifecycle.request_funds(case.id, treasury)
            await lifecycle.confirm_funds(case.id, treasury)
            await lifecycle.allocate_gold(case.id, vault_ops)
            await lifecycle.clear_verification(case.id, compliance_officer)
            await lifecycle.authorize(case.id, admin)
            return await lifecycle.execute_dvp(case.id, treasury)

        outcome = asyncio.run(scenario())
        assert outcome.accepted is True
        assert outcome.settlement.status == SettlementStatus.SETTLED
        types = [e.type for e in lifecycle.get_ledger(case.id)]
        assert types[-2:] == [LedgerEntryType.LOGISTICS_WARNING, LedgerEntryType.DVP_EXECUTED]
        assert outcome.entry.metadata["tracking_number"] is None
        assert lifecycle.verify_chain(case.id) is True

    def test_revalidation_block_fails_settlement(
        self, lifecycle, make_case, advance_to, treasury, context_provider, rails
    ):
        case = make_case()
        asyncio.run(advance_to(case, SettlementStatus.AUTHORIZED))
        context = context_provider.context
        context_provider.context = context.model_copy(
            update={"corridor": context.corridor.model_copy(update={"status": CorridorStatus.SUSPENDED})}
        )
        outcome = asyncio.run(lifecycle.execute_dvp(case.id, treasury))
        assert outcome.accepted is False
        assert outcome.settlement.status == SettlementStatus.FAILED
        assert "Re-validation" in outcome.reason
        assert rails["moov"].requests == []
        assert rails["modern_treasury"].requests == []

    def test_dvp_requires_authorization(self, lifecycle, make_case, advance_to, treasury):
        case = make_case()
        asyncio.run(advance_to(case, SettlementStatus.READY_TO_SETTLE))
        with pytest.raises(InvalidTransitionError):
            asyncio.run(lifecycle.execute_dvp(case.id, treasury))

    def test_dvp_survives_caller_cancellation(self, lifecycle, make_case, advance_to, treasury, rails):
        rails["modern_treasury"].delay_seconds = 0.1
        case = make_case()

        async def scenario():
            await advance_to(case, SettlementStatus.AUTHORIZED)
            caller = asyncio.ensure_future(lifecycle.execute_dvp(case.id, treasury))
            await asyncio.sleep(0.02)
            caller.cancel()
            with pytest.raises(asyncio.CancelledError):
                await caller
            await asyncio.sleep(0.3)

        asyncio.run(scenario())
        assert lifecycle.get_settlement(case.id).status == SettlementStatus.SETTLED


class TestStaleSnapshot:
    def test_stale_capital_snapshot_refuses_action(
        self, store, settlement_ledger, context_provider, rails, make_case, treasury
    ):
        stale = StaticCapitalProvider(
            CapitalSnapshot(
                capital_base=25_000_000.0,
                gross_exposure_notional=5_000_000.0,
                hardstop_limit=50_000_000.0,
                as_of=datetime.now(timezone.utc) - timedelta(minutes=5),
            ),
            restamp=False,
        )
        lifecycle = _lifecycle_with(store, settlement_ledger, context_provider, stale, rails=rails)
        with pytest.raises(StaleSnapshotError):
            asyncio.run(lifecycle.open_settlement(make_case(), treasury))


class TestConcurrency:
    def test_parallel_settlements_both_settle(self, lifecycle, make_case, advance_to):
        first, second = make_case(), make_case()

        async def scenario():
            return await asyncio.gather(
                advance_to(first, SettlementStatus.SETTLED),
                advance_to(second, SettlementStatus.SETTLED),
            )

        results = asyncio.run(scenario())
        assert all(r.status == SettlementStatus.SETTLED for r in results)
        assert lifecycle.verify_chain(first.id) and lifecycle.verify_chain(second.id)

    def test_duplicate_action_on_one_settlement_applies_once(
        self, lifecycle, make_case, advance_to, treasury
    ):
        case = make_case()

        async def scenario():
            await advance_to(case, SettlementStatus.ESCROW_OPEN)
            return await asyncio.gather(
                lifecycle.request_funds(case.id, treasury),
                lifecycle.request_funds(case.id, treasury),
                return_exceptions=True,
            )

        results = asyncio.run(scenario())
        accepted = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, InvalidTransitionError)]
        assert len(accepted) == 1
        assert len(rejected) == 1
        funding = [
            e for e in lifecycle.get_ledger(case.id)
            if e.type == LedgerEntryType.FUNDING_REQUESTED
        ]
        assert len(funding) == 1

    def test_locks_are_released_when_idle(self, lifecycle, make_case, advance_to, treasury):
        first, second = make_case(), make_case()

        async def scenario():
            await asyncio.gather(
                advance_to(first, SettlementStatus.SETTLED),
                advance_to(second, SettlementStatus.AWAITING_FUNDS),
                lifecycle.request_funds(second.id, treasury),
                return_exceptions=True,
            )

        asyncio.run(scenario())
        assert lifecycle._locks == {}


class TestClearingJournal:
    def test_fee_split_balances(self, make_case):
        case = make_case()
        payout = SettlementPayoutResult(
            success=True,
            rail_used="moov",
            seller_payout_cents=case.notional_cents - 5_000,
            platform_fee_cents=5_000,
        )
        journal = build_clearing_journal(case, payout)
        assert journal["balanced"] is True
        assert journal["debits_cents"] == case.notional_cents
        assert [line["account"] for line in journal["lines"]] == [
            "SETTLEMENT_ESCROW",
            "SELLER_PROCEEDS",
            "PLATFORM_FEE",
        ]


def _halted(capital_provider: StaticCapitalProvider) -> CapitalSnapshot:
    return capital_provider.snapshot.model_copy(
        update={
            "recent_breach_events": [
                BreachEvent(
                    type=BreachEventType.BUFFER_NEGATIVE,
                    occurred_at=datetime.now(timezone.utc) - timedelta(minutes=1),
                )
            ]
        }
    )


class TestCapitalControls:
    def test_open_records_control_mode(self, lifecycle, make_case, treasury):
        outcome = asyncio.run(lifecycle.open_settlement(make_case(), treasury))
        assert outcome.entry.metadata["control_mode"] == "NORMAL"
        assert outcome.evaluation.controls.mode == ControlMode.NORMAL

    def test_emergency_halt_blocks_open(self, lifecycle, make_case, treasury, capital_provider):
        capital_provider.snapshot = _halted(capital_provider)
        case = make_case()
        outcome = asyncio.run(lifecycle.open_settlement(case, treasury))
        assert outcome.accepted is False
        assert "capital-control-block" in outcome.entry.metadata["blockers"]
        assert lifecycle.get_settlement(case.id).status == SettlementStatus.DRAFT

    def test_emergency_halt_fails_dvp_before_routing(
        self, lifecycle, make_case, advance_to, treasury, capital_provider, rails
    ):
        case = make_case()
        asyncio.run(advance_to(case, SettlementStatus.AUTHORIZED))
        capital_provider.snapshot = _halted(capital_provider)

        outcome = asyncio.run(lifecycle.execute_dvp(case.id, treasury))
        assert outcome.accepted is False
        assert outcome.settlement.status == SettlementStatus.FAILED
        assert "Blocked by Capital Controls" in outcome.reason
        assert all(rail.requests == [] for rail in rails.values())

    def test_marketplace_freeze_only_warns_settlement(
        self, lifecycle, make_case, advance_to, capital_provider
    ):
        capital_provider.snapshot = capital_provider.snapshot.model_copy(
            update={"breach_level": BreachLevel.BREACH}
        )
        case = make_case()
        settled = asyncio.run(advance_to(case, SettlementStatus.SETTLED))
        assert settled.status == SettlementStatus.SETTLED
        opened = lifecycle.get_ledger(case.id)[0]
        assert opened.metadata["control_mode"] == "FREEZE_MARKETPLACE"
        assert any(
            w.startswith(BlockerKind.CAPITAL_CONTROL_ACTIVE.value) for w in opened.snapshot.warnings
        )


class TestFromConfig:
    def test_builds_lifecycle_from_config(
        self, db_path, router, logistics, capital_provider, context_provider,
        make_case, treasury,
    ):
        config = ClearingConfig(ledger_path=db_path, platform_fee_bps=25)
        lifecycle = SettlementLifecycle.from_config(
            config,
            router=router,
            logistics=logistics,
            capital_provider=capital_provider,
            context_provider=context_provider,
        )
        case = make_case()
        outcome = asyncio.run(lifecycle.open_settlement(case, treasury))
        assert outcome.accepted is True
        assert lifecycle.ledger.current_status(case.id) == SettlementStatus.ESCROW_OPEN
        assert lifecycle._payout_request(case).platform_fee_cents == case.notional_cents * 25 // 10_000
