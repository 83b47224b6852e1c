"""Tests for the frozen data models and their transition tables."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from aurumshield.models.compliance import (
    ALLOWED_TRANSITIONS,
    ComplianceCaseStatus,
    is_valid_transition,
)
from aurumshield.models.risk import CapitalSnapshot
from aurumshield.models.settlement import (
    ACTION_ROLE_MAP,
    FORWARD_ACTIONS,
    TERMINAL_STATUSES,
    VALID_TRANSITIONS,
    Actor,
    LedgerEntry,
    LedgerEntryType,
    SettlementAction,
    SettlementStatus,
    UserRole,
)


class TestSettlementModels:
    def test_case_is_frozen(self, make_case):
        case = make_case()
        with pytest.raises(ValidationError):
            case.status = SettlementStatus.SETTLED

    def test_case_ids_are_prefixed(self, make_case):
        assert make_case().id.startswith("stl-")

    def test_notional_cents(self, make_case):
        case = make_case(weight_oz=1.0, price_per_oz_locked=2_345.67)
        assert case.notional_cents == 234_567

    def test_weight_must_be_positive(self, make_case):
        with pytest.raises(ValidationError):
            make_case(weight_oz=0.0, notional_usd=1.0)

    def test_actor_label_falls_back_to_user_id(self):
        assert Actor(user_id="u-1", role=UserRole.ADMIN).label == "u-1"
        assert Actor(user_id="u-1", role=UserRole.ADMIN, display_name="Ops").label == "Ops"

    def test_informational_entry_is_not_a_transition(self):
        entry = LedgerEntry(settlement_id="stl-1", type=LedgerEntryType.POLICY_BLOCKED)
        assert entry.is_transition is False

    def test_status_restating_entry_is_not_a_transition(self):
        entry = LedgerEntry(
            settlement_id="stl-1",
            type=LedgerEntryType.POLICY_BLOCKED,
            from_status=SettlementStatus.DRAFT,
            to_status=SettlementStatus.DRAFT,
        )
        assert entry.is_transition is False


class TestSettlementTransitionTable:
    def test_every_status_has_an_entry(self):
        assert set(VALID_TRANSITIONS) == set(SettlementStatus)

    def test_terminal_statuses_have_no_exits(self):
        for status in TERMINAL_STATUSES:
            assert VALID_TRANSITIONS[status] == set()

    def test_every_non_terminal_can_fail_cancel_or_go_ambiguous(self):
        for status, targets in VALID_TRANSITIONS.items():
            if status in TERMINAL_STATUSES:
                continue
            assert {SettlementStatus.FAILED, SettlementStatus.CANCELLED} <= targets
            if status != SettlementStatus.AMBIGUOUS_STATE:
                assert SettlementStatus.AMBIGUOUS_STATE in targets

    def test_ambiguous_only_resolves_to_escrow_open(self):
        assert VALID_TRANSITIONS[SettlementStatus.AMBIGUOUS_STATE] == {
            SettlementStatus.ESCROW_OPEN,
            SettlementStatus.FAILED,
            SettlementStatus.CANCELLED,
        }

    def test_forward_actions_follow_valid_edges(self):
        for required, target, _ in FORWARD_ACTIONS.values():
            assert target in VALID_TRANSITIONS[required]

    def test_every_action_has_roles(self):
        assert set(ACTION_ROLE_MAP) == set(SettlementAction)
        for roles in ACTION_ROLE_MAP.values():
            assert UserRole.BUYER not in roles
            assert UserRole.SELLER not in roles


class TestComplianceTransitionTable:
    def test_every_status_has_an_entry(self):
        assert set(ALLOWED_TRANSITIONS) == set(ComplianceCaseStatus)

    def test_approved_and_closed_are_terminal(self):
        assert ALLOWED_TRANSITIONS[ComplianceCaseStatus.APPROVED] == frozenset()
        assert ALLOWED_TRANSITIONS[ComplianceCaseStatus.CLOSED] == frozenset()

    def test_open_cannot_jump_to_approved(self):
        assert not is_valid_transition(ComplianceCaseStatus.OPEN, ComplianceCaseStatus.APPROVED)

    def test_rejected_reopens(self):
        assert is_valid_transition(ComplianceCaseStatus.REJECTED, ComplianceCaseStatus.OPEN)


class TestCapitalSnapshot:
    def test_ratios(self, capital_snapshot: CapitalSnapshot):
        assert capital_snapshot.ecr == pytest.approx(0.5)
        assert capital_snapshot.hardstop_utilization == pytest.approx(0.625)

    def test_negative_exposure_rejected(self):
        with pytest.raises(ValidationError):
            CapitalSnapshot(capital_base=1.0, gross_exposure_notional=-1.0, hardstop_limit=1.0)

    def test_naive_as_of_rejected(self):
        with pytest.raises(ValidationError):
            CapitalSnapshot(
                capital_base=1.0,
                gross_exposure_notional=0.0,
                hardstop_limit=1.0,
                as_of=datetime(2026, 1, 5, 12, 0),
            )

    def test_aware_as_of_accepted(self):
        as_of = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)
        snapshot = CapitalSnapshot(
            capital_base=1.0, gross_exposure_notional=0.0, hardstop_limit=1.0, as_of=as_of
        )
        assert snapshot.as_of == as_of
