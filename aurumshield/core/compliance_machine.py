"""Compliance case workflow driven by user actions and provider outcomes.

Every status change goes through ``ComplianceStore.update_status`` (the
compare-and-swap transition), so a duplicate provider webhook racing a
reviewer decision can never double-apply an outcome: the loser receives a
``StateTransitionConflictError`` and must re-fetch.
"""

from __future__ import annotations

import asyncio
import logging

from aurumshield.adapters import AmlAdapter, KycAdapter
from aurumshield.core.compliance_store import ComplianceStore
from aurumshield.core.tiering import compute_tier_for_profile
from aurumshield.models.compliance import (
    AmlOutcome,
    ComplianceCase,
    ComplianceCaseStatus,
    ComplianceEvent,
    ComplianceTier,
    EntityType,
    EventActor,
    KycOutcome,
)

logger = logging.getLogger(__name__)


class CaseNotAwaitingProviderError(RuntimeError):
    """Raised when provider checks are requested for a case not in PENDING_PROVIDER."""

    def __init__(self, case_id: str, status: ComplianceCaseStatus) -> None:
        self.case_id = case_id
        self.status = status
        super().__init__(
            f"Compliance case {case_id} is {status.value}; provider checks need "
            f"{ComplianceCaseStatus.PENDING_PROVIDER.value}"
        )


class ProviderUnavailableError(RuntimeError):
    """Raised when a KYC/AML provider call fails or times out.

    The case is left in its current status; an audit event records the
    failure.
    """

    def __init__(self, case_id: str, detail: str) -> None:
        self.case_id = case_id
        self.detail = detail
        super().__init__(f"Compliance provider unavailable for case {case_id}: {detail}")


def resolve_provider_outcome(kyc: KycOutcome, aml: AmlOutcome) -> ComplianceCaseStatus:
    """Map provider results to the case status they drive.

    A hard failure on either side rejects; any uncertainty goes to manual
    review; only a clean pass on both approves.
    """
    if kyc == KycOutcome.FAIL or aml == AmlOutcome.CONFIRMED_MATCH:
        return ComplianceCaseStatus.REJECTED
    if kyc == KycOutcome.REVIEW or aml == AmlOutcome.POSSIBLE_MATCH:
        return ComplianceCaseStatus.UNDER_REVIEW
    return ComplianceCaseStatus.APPROVED


class ComplianceCaseMachine:
    """Drives a user's KYC/KYB case through the fixed transition graph.

    Parameters
    ----------
    store:
        The CAS-backed compliance store.
    kyc, aml:
        Identity verification and sanctions screening providers.
    timeout_seconds:
        Bound on the combined provider call.
    """

    def __init__(
        self,
        store: ComplianceStore,
        kyc: KycAdapter,
        aml: AmlAdapter,
        *,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._store = store
        self._kyc = kyc
        self._aml = aml
        self._timeout_seconds = timeout_seconds

    @property
    def store(self) -> ComplianceStore:
        return self._store

    # ------------------------------------------------------------------
    # User-driven steps
    # ------------------------------------------------------------------

    def open_case(
        self,
        user_id: str,
        *,
        org_id: str | None = None,
        entity_type: EntityType = EntityType.INDIVIDUAL,
        jurisdiction: str = "",
    ) -> ComplianceCase:
        """Open the user's case; returns the existing case if there is one."""
        case, created = self._store.upsert_case(
            ComplianceCase(
                user_id=user_id,
                org_id=org_id,
                entity_type=entity_type,
                jurisdiction=jurisdiction,
            )
        )
        if created:
            logger.info("Opened compliance case %s for user %s", case.id, user_id)
        return case

    def request_user_documents(self, case_id: str) -> ComplianceCase:
        return self._store.update_status(
            case_id,
            ComplianceCaseStatus.PENDING_USER,
            ComplianceCaseStatus.OPEN,
            actor=EventActor.SYSTEM,
            action="DOCUMENTS_REQUESTED",
        )

    def submit_user_documents(
        self, case_id: str, *, provider_inquiry_id: str | None = None
    ) -> ComplianceCase:
        case = self._store.update_status(
            case_id,
            ComplianceCaseStatus.PENDING_PROVIDER,
            ComplianceCaseStatus.PENDING_USER,
            actor=EventActor.USER,
            action="DOCUMENTS_SUBMITTED",
        )
        if provider_inquiry_id:
            case = self._store.set_provider_inquiry(case_id, provider_inquiry_id)
        return case

    def request_more_information(self, case_id: str, reason: str) -> ComplianceCase:
        return self._store.update_status(
            case_id,
            ComplianceCaseStatus.PENDING_USER,
            ComplianceCaseStatus.PENDING_PROVIDER,
            actor=EventActor.PROVIDER,
            action="MORE_INFORMATION_REQUESTED",
            details={"reason": reason},
        )

    def reapply(self, case_id: str) -> ComplianceCase:
        return self._store.update_status(
            case_id,
            ComplianceCaseStatus.OPEN,
            ComplianceCaseStatus.REJECTED,
            actor=EventActor.USER,
            action="REAPPLIED",
        )

    def close_case(self, case_id: str, reason: str) -> ComplianceCase:
        current = self._store.get_case(case_id)
        return self._store.update_status(
            case_id,
            ComplianceCaseStatus.CLOSED,
            current.status,
            actor=EventActor.SYSTEM,
            action="CASE_CLOSED",
            details={"reason": reason},
        )

    # ------------------------------------------------------------------
    # Provider-driven steps
    # ------------------------------------------------------------------

    async def run_provider_checks(
        self, case_id: str, *, transaction_amount_usd: float | None = None
    ) -> ComplianceCase:
        """Call KYC and AML providers concurrently and apply their outcome.

        Raises
        ------
        CaseNotAwaitingProviderError
            If the case is not in PENDING_PROVIDER; no provider is called.
        ProviderUnavailableError
            If either provider raises or the pair exceeds the timeout.
        """
        case = self._store.get_case(case_id)
        if case.status != ComplianceCaseStatus.PENDING_PROVIDER:
            raise CaseNotAwaitingProviderError(case_id, case.status)
        try:
            kyc, aml = await asyncio.wait_for(
                asyncio.gather(self._kyc.verify(case), self._aml.screen(case)),
                timeout=self._timeout_seconds,
            )
        except asyncio.TimeoutError:
            detail = f"providers timed out after {self._timeout_seconds}s"
            self._record_provider_failure(case_id, detail)
            raise ProviderUnavailableError(case_id, detail) from None
        except Exception as exc:
            self._record_provider_failure(case_id, str(exc))
            raise ProviderUnavailableError(case_id, str(exc)) from exc

        return self.apply_provider_outcome(
            case_id, kyc, aml, transaction_amount_usd=transaction_amount_usd
        )

    def apply_provider_outcome(
        self,
        case_id: str,
        kyc: KycOutcome,
        aml: AmlOutcome,
        *,
        transaction_amount_usd: float | None = None,
    ) -> ComplianceCase:
        """Apply provider results to a case awaiting the provider.

        Also the entry point for provider webhooks.  A duplicate delivery
        loses the compare-and-swap and raises ``StateTransitionConflictError``.
        """
        case = self._store.get_case(case_id)
        target = resolve_provider_outcome(kyc, aml)
        tier = None
        if target == ComplianceCaseStatus.APPROVED:
            tier = compute_tier_for_profile(
                case.entity_type, case.jurisdiction, transaction_amount_usd
            )
        updated = self._store.update_status(
            case_id,
            target,
            ComplianceCaseStatus.PENDING_PROVIDER,
            tier,
            actor=EventActor.PROVIDER,
            action="PROVIDER_OUTCOME",
            details={"kyc": kyc.value, "aml": aml.value},
        )
        logger.info(
            "Compliance case %s: provider outcome kyc=%s aml=%s -> %s",
            case_id,
            kyc.value,
            aml.value,
            target.value,
        )
        return updated

    def record_review_decision(
        self,
        case_id: str,
        *,
        approve: bool,
        reviewer_id: str,
        tier: ComplianceTier | None = None,
        notes: str = "",
    ) -> ComplianceCase:
        """Resolve an UNDER_REVIEW case by manual decision."""
        target = ComplianceCaseStatus.APPROVED if approve else ComplianceCaseStatus.REJECTED
        if approve and tier is None:
            case = self._store.get_case(case_id)
            tier = compute_tier_for_profile(case.entity_type, case.jurisdiction)
        return self._store.update_status(
            case_id,
            target,
            ComplianceCaseStatus.UNDER_REVIEW,
            tier if approve else None,
            actor=EventActor.SYSTEM,
            action="REVIEW_DECISION",
            details={"reviewer_id": reviewer_id, "notes": notes},
        )

    def return_to_provider(self, case_id: str, reason: str) -> ComplianceCase:
        """Send an UNDER_REVIEW case back to the provider for re-screening."""
        return self._store.update_status(
            case_id,
            ComplianceCaseStatus.PENDING_PROVIDER,
            ComplianceCaseStatus.UNDER_REVIEW,
            actor=EventActor.SYSTEM,
            action="RETURNED_TO_PROVIDER",
            details={"reason": reason},
        )

    def _record_provider_failure(self, case_id: str, detail: str) -> None:
        logger.error("Compliance case %s: provider failure: %s", case_id, detail)
        self._store.append_event(
            ComplianceEvent(
                case_id=case_id,
                actor=EventActor.SYSTEM,
                action="PROVIDER_UNAVAILABLE",
                details={"error": detail},
            )
        )
