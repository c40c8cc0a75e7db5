"""
End-to-end tests of the loan lifecycle orchestrator
"""

import json
import logging
import sys
from decimal import Decimal

import pytest

from loan_lifecycle.config import LendflowConfig
from loan_lifecycle.orchestrator import LoanLifecycleOrchestrator
from loan_lifecycle.storage import InMemoryStorage, SQLiteStorage
from loan_lifecycle.applications import ApplicationStatus
from loan_lifecycle.contracts import ContractStatus
from loan_lifecycle.loans import LoanStatus
from loan_lifecycle.notifications import NotificationStatus, LogSMSSender
from loan_lifecycle.logging_config import JSONFormatter, log_action, setup_logging
from loan_lifecycle.errors import NotFound


class TestFullLifecycle:
    """Test an application all the way to a repaid loan"""

    def test_application_to_completed_contract(self, orchestrator, applicant, application_sections, sender):
        application = orchestrator.submit_application(applicant.id, **application_sections)

        for doc_type in ("id", "proof_of_residence", "bank_statement", "payslip"):
            document = orchestrator.upload_document(applicant.id, doc_type, f"{doc_type}.pdf",
                                                    file_type="application/pdf", file_size=1024)
            orchestrator.verify(document.id, "verified", actor_id="admin-1")
        assert orchestrator.is_satisfied(applicant.id)
        assert orchestrator.score(applicant.id) == 100
        assert orchestrator.missing_items(applicant.id) == []

        while orchestrator.get_application(application.id).status != ApplicationStatus.FINAL_DECISION:
            orchestrator.advance(application.id, actor_id="admin-1")
        application = orchestrator.decide(application.id, "approved", actor_id="admin-1")

        contract = orchestrator.generate(application.loan_id, actor_id="admin-1")
        orchestrator.send(contract.id, actor_id="admin-1")
        orchestrator.view(contract.id, actor_id=applicant.id)
        orchestrator.sign(contract.id, actor_id=applicant.id)

        loan = orchestrator.get_loan(application.loan_id)
        assert loan.status == LoanStatus.ACTIVE

        for _ in range(loan.term - 1):
            loan = orchestrator.record_payment(loan.id, loan.monthly_payment, actor_id=applicant.id)
        loan = orchestrator.record_payment(loan.id, loan.outstanding, actor_id=applicant.id)

        assert loan.status == LoanStatus.COMPLETED
        assert loan.paid_amount == loan.total_repayment
        assert orchestrator.contracts.get(contract.id).status == ContractStatus.COMPLETED

        assert orchestrator.notifier.flush(timeout=10)
        templates = [n.template_id for n in orchestrator.notifier.list_for_user(applicant.id)]
        assert templates[0] == "application_received"
        assert templates.count("application_status") == 5
        assert "application_approved" in templates
        assert "contract_sent" in templates
        assert "contract_signed" in templates
        assert templates.count("payment_received") == loan.term
        assert all(n.status == NotificationStatus.SENT
                   for n in orchestrator.notifier.list_for_user(applicant.id))

        assert orchestrator.audit_trail.verify_integrity()["valid"]

    def test_lifecycle_on_sqlite(self, tmp_path, config, sender):
        storage = SQLiteStorage(tmp_path / "lendflow.db")
        system = LoanLifecycleOrchestrator(storage, config, sender)
        try:
            user = system.register_user("Bongani", "Mthembu", "bongani@example.co.za", phone="0611234567")
            application = system.submit_application(
                user.id,
                personal_info={"first_name": "Bongani", "last_name": "Mthembu",
                               "email": "bongani@example.co.za", "phone": "0611234567"},
                employment_info={"employment_status": "self-employed", "monthly_income": "18000"},
                financial_info={"monthly_debt": "0"},
                loan_details={"amount": "5000", "term_months": 6}
            )
            for doc_type in config.required_document_types:
                document = system.upload_document(user.id, doc_type, f"{doc_type}.pdf")
                system.verify(document.id, "verified", actor_id="admin-1")
            while system.get_application(application.id).status != ApplicationStatus.FINAL_DECISION:
                system.advance(application.id, actor_id="admin-1")
            approved = system.decide(application.id, "approved", actor_id="admin-1")

            loan = system.get_loan(approved.loan_id)
            assert loan.monthly_payment == system.schedule("5000", 6).monthly_payment
            assert system.audit_trail.verify_integrity()["valid"]
        finally:
            system.close()


class TestPurge:
    """Test the explicit cascade delete"""

    def test_purge_removes_everything(self, orchestrator, approved_loan):
        user_id = approved_loan.user_id
        orchestrator.generate(approved_loan.id)

        removed = orchestrator.purge_user(user_id, actor_id="admin-1")

        assert removed["users"] == 1
        assert removed["loans"] == 1
        assert removed["contracts"] == 1
        assert removed["applications"] == 1
        assert removed["documents"] == 4
        assert removed["notifications"] >= 1
        with pytest.raises(NotFound):
            orchestrator.users.get(user_id)
        assert orchestrator.loans.list_for_user(user_id) == []
        assert orchestrator.storage.count("notifications") == 0

    def test_purge_is_audited_and_keeps_chain(self, orchestrator, applicant):
        orchestrator.purge_user(applicant.id, actor_id="admin-1")
        events = orchestrator.audit_trail.get_events_for_entity("user", applicant.id)
        assert events[-1].metadata["users"] == 1
        assert orchestrator.audit_trail.verify_integrity()["valid"]

    def test_purge_unknown_user(self, orchestrator):
        with pytest.raises(NotFound):
            orchestrator.purge_user("nobody")

    def test_deactivation_keeps_records(self, orchestrator, approved_loan):
        orchestrator.deactivate_user(approved_loan.user_id)
        assert orchestrator.get_loan(approved_loan.id).status == LoanStatus.APPROVED
        assert not orchestrator.users.get(approved_loan.user_id).is_active


class TestScheduleAndScoring:
    """Test the calculator and scorer facades"""

    def test_schedule_uses_default_rate(self, orchestrator):
        default = orchestrator.schedule("12000", 12)
        explicit = orchestrator.schedule("12000", 12, "28.75")
        assert default.monthly_payment == explicit.monthly_payment
        assert default.entries == []

    def test_schedule_breakdown(self, orchestrator):
        schedule = orchestrator.schedule(10000, 12, 12, include_breakdown=True)
        assert schedule.monthly_payment == Decimal("888.49")
        assert len(schedule.entries) == 12

    def test_missing_items_for_new_user(self, orchestrator):
        user = orchestrator.register_user("New", "Person", "new@example.co.za")
        items = orchestrator.missing_items(user.id)
        assert items[0] == "Complete personal information"
        assert "Upload Latest Payslip" in items
        assert orchestrator.score(user.id) == 13


class TestConfiguration:
    """Test environment-driven configuration"""

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("LENDFLOW_DATABASE_URL", "memory://")
        monkeypatch.setenv("LENDFLOW_SMS_ENABLED", "false")
        monkeypatch.setenv("LENDFLOW_CONTRACT_EXPIRY_DAYS", "3")
        monkeypatch.setenv("LENDFLOW_REQUIRED_DOCUMENT_TYPES", '["id", "payslip"]')

        config = LendflowConfig(_env_file=None)
        assert config.sms_enabled is False
        assert config.contract_expiry_days == 3
        assert config.required_document_types == ["id", "payslip"]

        system = LoanLifecycleOrchestrator.from_config(config)
        try:
            assert isinstance(system.storage, InMemoryStorage)
            assert isinstance(system.notifier.sender, LogSMSSender)
            assert system.contracts.expiry_days == 3
        finally:
            system.close()

    def test_disabled_sms_is_recorded_as_skipped(self, storage, sender):
        config = LendflowConfig(_env_file=None, database_url="memory://", sms_enabled=False)
        system = LoanLifecycleOrchestrator(storage, config, sender)
        try:
            user = system.register_user("Quiet", "User", "quiet@example.co.za", phone="0820000000")
            system.submit_application(
                user.id,
                personal_info={"first_name": "Quiet", "last_name": "User",
                               "email": "quiet@example.co.za", "phone": "0820000000"},
                employment_info={"employment_status": "employed", "monthly_income": "10000"},
                financial_info={},
                loan_details={"amount": "2000", "term_months": 3}
            )
            statuses = [n.status for n in system.notifier.list_for_user(user.id)]
        finally:
            system.close()

        assert statuses == [NotificationStatus.SKIPPED]
        assert sender.sent == []

    def test_custom_required_documents(self, storage, sender):
        config = LendflowConfig(_env_file=None, database_url="memory://", required_document_types=["id"])
        system = LoanLifecycleOrchestrator(storage, config, sender)
        try:
            user = system.register_user("Few", "Docs", "few@example.co.za")
            document = system.upload_document(user.id, "id", "id.pdf")
            system.verify(document.id, "verified")
            assert system.is_satisfied(user.id)
        finally:
            system.close()


class TestLogging:
    """Test structured logging of lifecycle actions"""

    def test_json_formatter_includes_action_fields(self):
        logger = logging.getLogger("lendflow.test")
        record = logger.makeRecord(logger.name, logging.INFO, __file__, 1, "Loan L1 approved -> active", (), None)
        record.user_id = "admin-1"
        record.action = "loan.transition"
        record.resource = "loan:L1"

        entry = json.loads(JSONFormatter().format(record))
        assert entry["message"] == "Loan L1 approved -> active"
        assert entry["action"] == "loan.transition"
        assert entry["resource"] == "loan:L1"
        assert "correlation_id" not in entry

    def test_log_action_respects_level(self, caplog):
        logger = logging.getLogger("lendflow.test.level")
        logger.setLevel(logging.WARNING)
        with caplog.at_level(logging.WARNING, logger="lendflow.test.level"):
            log_action(logger, "info", "hidden")
            log_action(logger, "warning", "shown", action="contract.expire")
        assert [r.getMessage() for r in caplog.records] == ["shown"]
        assert caplog.records[0].action == "contract.expire"

    def test_setup_logging_to_file(self, tmp_path):
        path = tmp_path / "lendflow.log"
        logger = setup_logging("DEBUG", logger_name="lendflow.filetest", log_file=str(path))
        log_action(logger, "info", "Sweeper started", action="sweeper.start")
        for handler in logger.handlers:
            handler.close()

        entry = json.loads(path.read_text().strip())
        assert entry["message"] == "Sweeper started"
        assert entry["logger"] == "lendflow.filetest"

    def test_setup_logging_defaults_to_stderr(self):
        logger = setup_logging("INFO", logger_name="lendflow.streamtest", log_format="text")
        try:
            assert LendflowConfig(_env_file=None).log_file is None
            assert [h.stream for h in logger.handlers] == [sys.stderr]
        finally:
            for handler in logger.handlers[:]:
                logger.removeHandler(handler)
