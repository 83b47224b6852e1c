"""Tests for the compare-and-swap compliance case store."""

from __future__ import annotations

import threading

import pytest

from aurumshield.core.compliance_store import (
    ComplianceCaseNotFoundError,
    ComplianceStore,
    StateTransitionConflictError,
)
from aurumshield.models.compliance import (
    ComplianceCase,
    ComplianceCaseStatus,
    ComplianceTier,
    ConflictReason,
    EventActor,
)


@pytest.fixture
def open_case(compliance_store: ComplianceStore) -> ComplianceCase:
    case, _ = compliance_store.upsert_case(ComplianceCase(user_id="user-1"))
    return case


def _to_pending_provider(store: ComplianceStore, case_id: str) -> None:
    store.update_status(case_id, ComplianceCaseStatus.PENDING_USER, ComplianceCaseStatus.OPEN)
    store.update_status(
        case_id, ComplianceCaseStatus.PENDING_PROVIDER, ComplianceCaseStatus.PENDING_USER
    )


class TestUpsert:
    def test_creates_case_with_opening_event(self, compliance_store, open_case):
        assert open_case.status == ComplianceCaseStatus.OPEN
        assert open_case.tier == ComplianceTier.BROWSE
        (event,) = compliance_store.get_events(open_case.id)
        assert event.action == "CASE_OPENED"
        assert event.actor == EventActor.USER

    def test_one_case_per_user(self, compliance_store, open_case):
        again, created = compliance_store.upsert_case(ComplianceCase(user_id="user-1"))
        assert created is False
        assert again.id == open_case.id
        assert len(compliance_store.get_events(open_case.id)) == 1

    def test_lookup_by_user(self, compliance_store, open_case):
        assert compliance_store.get_case_by_user("user-1").id == open_case.id
        assert compliance_store.get_case_by_user("user-unknown") is None

    def test_missing_case_raises(self, compliance_store):
        with pytest.raises(ComplianceCaseNotFoundError):
            compliance_store.get_case("cc-missing")


class TestUpdateStatus:
    def test_valid_transition_writes_event(self, compliance_store, open_case):
        updated = compliance_store.update_status(
            open_case.id,
            ComplianceCaseStatus.PENDING_USER,
            ComplianceCaseStatus.OPEN,
            actor=EventActor.SYSTEM,
            action="DOCUMENTS_REQUESTED",
        )
        assert updated.status == ComplianceCaseStatus.PENDING_USER
        event = compliance_store.get_events(open_case.id)[-1]
        assert event.action == "DOCUMENTS_REQUESTED"
        assert event.details == {"from": "OPEN", "to": "PENDING_USER"}

    def test_invalid_edge_is_refused(self, compliance_store, open_case):
        with pytest.raises(StateTransitionConflictError) as exc_info:
            compliance_store.update_status(
                open_case.id, ComplianceCaseStatus.APPROVED, ComplianceCaseStatus.OPEN
            )
        assert exc_info.value.reason == ConflictReason.INVALID_TRANSITION
        assert compliance_store.get_case(open_case.id).status == ComplianceCaseStatus.OPEN

    def test_stale_expected_status_conflicts(self, compliance_store, open_case):
        compliance_store.update_status(
            open_case.id, ComplianceCaseStatus.PENDING_USER, ComplianceCaseStatus.OPEN
        )
        with pytest.raises(StateTransitionConflictError) as exc_info:
            compliance_store.update_status(
                open_case.id, ComplianceCaseStatus.CLOSED, ComplianceCaseStatus.OPEN
            )
        assert exc_info.value.reason == ConflictReason.CONCURRENT_CONFLICT

    def test_unknown_case_raises_not_found(self, compliance_store):
        with pytest.raises(ComplianceCaseNotFoundError):
            compliance_store.update_status(
                "cc-missing", ComplianceCaseStatus.PENDING_USER, ComplianceCaseStatus.OPEN
            )

    def test_tier_set_with_approval(self, compliance_store, open_case):
        _to_pending_provider(compliance_store, open_case.id)
        approved = compliance_store.update_status(
            open_case.id,
            ComplianceCaseStatus.APPROVED,
            ComplianceCaseStatus.PENDING_PROVIDER,
            ComplianceTier.EXECUTE,
        )
        assert approved.tier == ComplianceTier.EXECUTE
        assert compliance_store.get_events(open_case.id)[-1].details["tier"] == "EXECUTE"

    def test_provider_inquiry_is_linked(self, compliance_store, open_case):
        linked = compliance_store.set_provider_inquiry(open_case.id, "inq_123")
        assert linked.provider_inquiry_id == "inq_123"
        assert linked.status == ComplianceCaseStatus.OPEN


class TestConcurrentWriters:
    def test_exactly_one_racing_writer_wins(self, compliance_store, open_case):
        _to_pending_provider(compliance_store, open_case.id)
        targets = [
            ComplianceCaseStatus.APPROVED,
            ComplianceCaseStatus.REJECTED,
            ComplianceCaseStatus.UNDER_REVIEW,
            ComplianceCaseStatus.APPROVED,
        ]
        wins: list[ComplianceCaseStatus] = []
        conflicts: list[StateTransitionConflictError] = []
        barrier = threading.Barrier(len(targets))
        guard = threading.Lock()

        def writer(target: ComplianceCaseStatus) -> None:
            barrier.wait()
            try:
                compliance_store.update_status(
                    open_case.id, target, ComplianceCaseStatus.PENDING_PROVIDER
                )
            except StateTransitionConflictError as exc:
                with guard:
                    conflicts.append(exc)
            else:
                with guard:
                    wins.append(target)

        threads = [threading.Thread(target=writer, args=(t,)) for t in targets]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(wins) == 1
        assert len(conflicts) == len(targets) - 1
        assert all(c.reason == ConflictReason.CONCURRENT_CONFLICT for c in conflicts)
        assert compliance_store.get_case(open_case.id).status == wins[0]
