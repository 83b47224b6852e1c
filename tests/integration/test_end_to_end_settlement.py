"""End-to-end: compliance onboarding gates a settlement that clears and is certified."""

from __future__ import annotations

import asyncio

import pytest

from aurumshield.adapters.simulated import SimulatedAml, SimulatedKyc
from aurumshield.core.certificate_engine import (
    generate_signing_keypair,
    issue_certificate,
    verify_certificate,
)
from aurumshield.core.compliance_machine import ComplianceCaseMachine
from aurumshield.core.tiering import Capability, CapabilityDeniedError, require_capability
from aurumshield.models.compliance import AmlOutcome, ComplianceCaseStatus, EntityType
from aurumshield.models.settlement import LedgerEntryType, SettlementStatus


class TestEndToEndSettlement:
    def test_onboarded_buyer_settles_and_receives_certificate(
        self,
        compliance_machine,
        lifecycle,
        make_case,
        treasury,
        vault_ops,
        compliance_officer,
        admin,
    ):
        private_key, public_key = generate_signing_keypair()

        # Buyer organisation completes KYB before it may settle.
        case = compliance_machine.open_case(
            "user-buyer", org_id="org-buyer", entity_type=EntityType.COMPANY, jurisdiction="CH"
        )
        with pytest.raises(CapabilityDeniedError):
            require_capability("user-buyer", case, Capability.SETTLE)

        compliance_machine.request_user_documents(case.id)
        compliance_machine.submit_user_documents(case.id, provider_inquiry_id="inq_e2e")
        approved = asyncio.run(compliance_machine.run_provider_checks(case.id))
        assert approved.status == ComplianceCaseStatus.APPROVED
        require_capability("user-buyer", approved, Capability.SETTLE)

        settlement = make_case(buyer_user_id="user-buyer")

        async def scenario():
            outcomes = [await lifecycle.open_settlement(settlement, treasury)]
            outcomes.append(await lifecycle.request_funds(settlement.id, treasury))
            outcomes.append(
                await lifecycle.confirm_funds(settlement.id, treasury, reference="WIRE-E2E")
            )
            outcomes.append(
                await lifecycle.allocate_gold(settlement.id, vault_ops, allocation_ref="BARS-E2E")
            )
            outcomes.append(await lifecycle.clear_verification(settlement.id, compliance_officer))
            outcomes.append(await lifecycle.authorize(settlement.id, admin))
            outcomes.append(
                await lifecycle.execute_dvp(
                    settlement.id, treasury, delivery_address="Vault 7, New York"
                )
            )
            return outcomes

        outcomes = asyncio.run(scenario())
        assert all(o.accepted for o in outcomes)
        final = outcomes[-1]
        assert final.settlement.status == SettlementStatus.SETTLED
        assert final.payout.success is True
        assert final.shipment.tracking_number.startswith("BRINKS-")

        record, entries = lifecycle.settlement_record(settlement.id)
        assert lifecycle.verify_chain(settlement.id) is True
        assert [e.sequence for e in entries] == list(range(1, len(entries) + 1))
        assert all(a.timestamp < b.timestamp for a, b in zip(entries, entries[1:]))
        assert entries[-1].type == LedgerEntryType.DVP_EXECUTED

        certificate = issue_certificate(record, entries, signing_key=private_key)
        assert verify_certificate(certificate, public_key) is True
        assert certificate.settlement_id == settlement.id
        assert certificate == issue_certificate(record, entries, signing_key=private_key)

    def test_rejected_buyer_is_denied(self, compliance_store):
        machine = ComplianceCaseMachine(
            compliance_store, SimulatedKyc(), SimulatedAml(AmlOutcome.CONFIRMED_MATCH),
            timeout_seconds=1.0,
        )
        case = machine.open_case("user-sanctioned")
        machine.request_user_documents(case.id)
        machine.submit_user_documents(case.id)
        rejected = asyncio.run(machine.run_provider_checks(case.id))
        assert rejected.status == ComplianceCaseStatus.REJECTED
        with pytest.raises(CapabilityDeniedError) as exc_info:
            require_capability("user-sanctioned", rejected, Capability.QUOTE)
        assert exc_info.value.reason == "COMPLIANCE_NOT_APPROVED"
