"""
Test suite for the contract signature workflow
"""

import threading
import time
from datetime import timedelta

import pytest

from loan_lifecycle.contracts import ContractStatus
from loan_lifecycle.loans import LoanStatus
from loan_lifecycle.notifications import NotificationStatus
from loan_lifecycle.users import UserRole
from loan_lifecycle.errors import (
    DuplicateContract, InvalidTransition, PermissionDenied
)


@pytest.fixture
def draft(orchestrator, approved_loan):
    return orchestrator.generate(approved_loan.id, actor_id="admin-1")


@pytest.fixture
def sent(orchestrator, draft):
    return orchestrator.send(draft.id, actor_id="admin-1")


class TestGenerate:
    """Test contract generation"""

    def test_generate_draft(self, draft, approved_loan, config):
        assert draft.status == ContractStatus.DRAFT
        assert draft.id.startswith("CONTRACT-")
        assert draft.loan_id == approved_loan.id
        assert draft.user_id == approved_loan.user_id
        assert draft.download_url == f"{config.contract_document_path}/{draft.id}.pdf"
        assert draft.signature_url is None

    def test_one_open_contract_per_loan(self, orchestrator, draft):
        with pytest.raises(DuplicateContract) as exc_info:
            orchestrator.generate(draft.loan_id)
        assert exc_info.value.existing_contract_id == draft.id

    def test_loan_must_be_approved(self, orchestrator, approved_loan):
        orchestrator.loans.reject(approved_loan.id, actor_id="admin-1")
        with pytest.raises(InvalidTransition):
            orchestrator.generate(approved_loan.id)

    def test_replacement_after_decline(self, orchestrator, sent):
        orchestrator.decline(sent.id, UserRole.USER, actor_id=sent.user_id, reason="Wrong amount")
        replacement = orchestrator.generate(sent.loan_id)

        assert replacement.id != sent.id
        assert [c.id for c in orchestrator.contracts.list_for_loan(sent.loan_id)] == [sent.id, replacement.id]
        assert {c.id for c in orchestrator.contracts.list_for_user(sent.user_id)} == {sent.id, replacement.id}


class TestSendAndView:
    """Test dispatching the signature request"""

    def test_send(self, sent, config):
        assert sent.status == ContractStatus.SENT
        assert sent.date_expires == sent.date_sent + timedelta(days=config.contract_expiry_days)
        assert sent.signature_request_id.startswith("SIG-")
        assert sent.signature_url == f"{config.contract_base_url}/sign/{sent.signature_request_id}"

    def test_send_sms_contains_link(self, orchestrator, sent, sender):
        orchestrator.notifier.flush(timeout=5)
        assert any(sent.signature_url in body for body in sender.bodies())

    def test_send_only_from_draft(self, orchestrator, sent):
        with pytest.raises(InvalidTransition):
            orchestrator.send(sent.id)

    def test_view(self, orchestrator, sent):
        viewed = orchestrator.view(sent.id, actor_id=sent.user_id)
        assert viewed.status == ContractStatus.VIEWED
        assert viewed.date_viewed is not None

    def test_view_is_idempotent(self, orchestrator, sent):
        first = orchestrator.view(sent.id)
        again = orchestrator.view(sent.id)
        assert again.version == first.version
        assert again.date_viewed == first.date_viewed

    def test_view_of_draft_is_invalid(self, orchestrator, draft):
        with pytest.raises(InvalidTransition):
            orchestrator.view(draft.id)


class TestSign:
    """Test signature and loan activation"""

    def test_sign_activates_loan(self, orchestrator, sent):
        signed = orchestrator.sign(sent.id, actor_id=sent.user_id)

        assert signed.status == ContractStatus.SIGNED
        assert signed.date_signed is not None
        loan = orchestrator.get_loan(sent.loan_id)
        assert loan.status == LoanStatus.ACTIVE
        assert loan.next_payment_due is not None

    def test_sign_after_view(self, orchestrator, sent):
        orchestrator.view(sent.id)
        assert orchestrator.sign(sent.id).status == ContractStatus.SIGNED

    def test_draft_cannot_be_signed(self, orchestrator, draft):
        with pytest.raises(InvalidTransition):
            orchestrator.sign(draft.id)
        assert orchestrator.get_loan(draft.loan_id).status == LoanStatus.APPROVED

    def test_overdue_contract_cannot_be_signed(self, orchestrator, sent):
        late = sent.date_expires + timedelta(seconds=1)
        with pytest.raises(InvalidTransition):
            orchestrator.contracts.sign(sent.id, now=late)

        assert orchestrator.contracts.get(sent.id).status == ContractStatus.SENT
        assert orchestrator.get_loan(sent.loan_id).status == LoanStatus.APPROVED

    def test_signed_contract_is_final(self, orchestrator, sent):
        orchestrator.sign(sent.id)
        with pytest.raises(InvalidTransition):
            orchestrator.cancel(sent.id, UserRole.ADMIN)
        with pytest.raises(InvalidTransition):
            orchestrator.decline(sent.id, UserRole.ADMIN)

    def test_concurrent_signatures_activate_once(self, orchestrator, sent):
        results = []

        def attempt():
            try:
                orchestrator.sign(sent.id)
                results.append("signed")
            except InvalidTransition:
                results.append("rejected")

        threads = [threading.Thread(target=attempt) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(results) == ["rejected", "rejected", "rejected", "signed"]
        history = orchestrator.get_loan(sent.loan_id).processing_history
        assert [s.status for s in history].count(LoanStatus.ACTIVE) == 1

    def test_signed_sms(self, orchestrator, sent, sender):
        orchestrator.sign(sent.id)
        orchestrator.notifier.flush(timeout=5)
        assert any(f"(Ref: {sent.id})" in body and "R12,000" in body for body in sender.bodies())


class TestCancelDeclineResend:
    """Test the withdrawal paths"""

    def test_cancel_requires_admin(self, orchestrator, sent):
        with pytest.raises(PermissionDenied):
            orchestrator.cancel(sent.id, UserRole.USER, actor_id=sent.user_id)

    def test_cancel_returns_to_draft(self, orchestrator, sent):
        orchestrator.view(sent.id)
        draft = orchestrator.cancel(sent.id, "admin", actor_id="admin-1")

        assert draft.status == ContractStatus.DRAFT
        assert draft.signature_request_id is None
        assert draft.signature_url is None
        assert draft.date_expires is None
        assert draft.date_sent is None
        assert draft.date_viewed is None

        resent = orchestrator.send(draft.id)
        assert resent.status == ContractStatus.SENT

    def test_cancel_draft_is_invalid(self, orchestrator, draft):
        with pytest.raises(InvalidTransition):
            orchestrator.cancel(draft.id, UserRole.ADMIN)

    def test_decline_keeps_reason(self, orchestrator, sent):
        declined = orchestrator.decline(sent.id, UserRole.USER, actor_id=sent.user_id, reason="Changed my mind")
        assert declined.status == ContractStatus.DECLINED
        assert declined.notes == "Changed my mind"
        assert orchestrator.get_loan(sent.loan_id).status == LoanStatus.APPROVED

    def test_decline_unknown_role(self, orchestrator, sent):
        with pytest.raises(PermissionDenied):
            orchestrator.decline(sent.id, "auditor")

    def test_resend_issues_new_link(self, orchestrator, sent):
        resent = orchestrator.resend(sent.id, actor_id="admin-1")

        assert resent.status == ContractStatus.SENT
        assert resent.signature_request_id != sent.signature_request_id
        assert resent.date_expires == sent.date_expires

    def test_resend_draft_keeps_status(self, orchestrator, draft, sender):
        first = orchestrator.resend(draft.id, actor_id="admin-1")
        second = orchestrator.resend(draft.id, actor_id="admin-1")
        orchestrator.notifier.flush(timeout=5)

        assert second.status == ContractStatus.DRAFT
        assert second.date_sent is None and second.date_expires is None
        assert first.signature_request_id and second.signature_request_id != first.signature_request_id
        assert any(body.endswith(f"Sign it here: {second.signature_url}") for body in sender.bodies())

    def test_resend_terminal_is_invalid(self, orchestrator, sent):
        orchestrator.decline(sent.id, UserRole.USER, actor_id=sent.user_id)
        with pytest.raises(InvalidTransition):
            orchestrator.resend(sent.id)


class TestUnreliableGateway:
    """Transitions succeed and return promptly while the SMS gateway fails"""

    @pytest.fixture
    def sender(self, unreliable_sender):
        return unreliable_sender

    @pytest.fixture
    def config(self, unreliable_config):
        return unreliable_config

    def test_send_resend_sign_do_not_wait_for_sms(self, orchestrator, draft, sender):
        started = time.monotonic()
        orchestrator.send(draft.id, actor_id="admin-1")
        orchestrator.resend(draft.id, actor_id="admin-1")
        signed = orchestrator.sign(draft.id, actor_id=draft.user_id)
        elapsed = time.monotonic() - started

        assert elapsed < 1.0
        assert signed.status == ContractStatus.SIGNED
        assert orchestrator.get_loan(draft.loan_id).status == LoanStatus.ACTIVE

        assert orchestrator.notifier.flush(timeout=30)
        outcomes = {
            n.template_id: n for n in orchestrator.notifier.list_for_user(draft.user_id)
            if n.template_id in ("contract_sent", "contract_signed")
        }
        assert set(outcomes) == {"contract_sent", "contract_signed"}
        for notification in outcomes.values():
            assert notification.status == NotificationStatus.FAILED
            assert "timed out" in notification.failed_reason
        assert sender.calls > 0


class TestExpiry:
    """Test signature window expiry"""

    def test_expire_before_deadline_is_invalid(self, orchestrator, sent):
        with pytest.raises(InvalidTransition):
            orchestrator.expire(sent.id)

    def test_expire_overdue(self, orchestrator, sent):
        later = sent.date_expires + timedelta(minutes=1)

        assert orchestrator.expire_overdue(later) == [sent.id]
        assert orchestrator.contracts.get(sent.id).status == ContractStatus.EXPIRED
        assert orchestrator.expire_overdue(later) == []

    def test_expire_overdue_skips_drafts_and_fresh_contracts(self, orchestrator, draft):
        assert orchestrator.expire_overdue() == []
        assert orchestrator.contracts.get(draft.id).status == ContractStatus.DRAFT

    def test_expired_contract_can_be_replaced(self, orchestrator, sent):
        orchestrator.expire(sent.id, sent.date_expires + timedelta(days=1))
        replacement = orchestrator.generate(sent.loan_id)
        assert replacement.status == ContractStatus.DRAFT


class TestCompletion:
    """Test archiving with the loan"""

    def test_complete_requires_completed_loan(self, orchestrator, sent):
        orchestrator.sign(sent.id)
        with pytest.raises(InvalidTransition):
            orchestrator.contracts.complete(sent.id)

    def test_contract_completes_with_loan(self, orchestrator, sent):
        orchestrator.sign(sent.id)
        loan = orchestrator.get_loan(sent.loan_id)

        orchestrator.record_payment(loan.id, loan.total_repayment)

        contract = orchestrator.contracts.get(sent.id)
        assert contract.status == ContractStatus.COMPLETED
        assert contract.date_completed is not None
