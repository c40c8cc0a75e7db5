"""
Shared fixtures for the loan lifecycle test suite
"""

import threading
import time

import pytest

from loan_lifecycle.storage import InMemoryStorage
from loan_lifecycle.audit import AuditTrail
from loan_lifecycle.config import LendflowConfig
from loan_lifecycle.notifications import SMSSender, SendResult
from loan_lifecycle.orchestrator import LoanLifecycleOrchestrator
from loan_lifecycle.applications import ApplicationStatus
from loan_lifecycle.documents import REQUIRED_DOCUMENT_TYPES


class RecordingSender(SMSSender):
    """SMS sender that records messages instead of sending them"""

    def __init__(self, should_succeed: bool = True):
        self.should_succeed = should_succeed
        self.sent = []
        self._lock = threading.Lock()

    def send(self, to_e164: str, body: str) -> SendResult:
        with self._lock:
            self.sent.append((to_e164, body))
            count = len(self.sent)
        if not self.should_succeed:
            return SendResult(ok=False, error="provider unavailable")
        return SendResult(ok=True, message_id=f"SM{count:04d}")

    def bodies(self):
        with self._lock:
            return [body for _, body in self.sent]


class UnreliableSender(SMSSender):
    """SMS sender that stalls and then raises, like a gateway timing out"""

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.calls = 0
        self._lock = threading.Lock()

    def send(self, to_e164: str, body: str) -> SendResult:
        with self._lock:
            self.calls += 1
        time.sleep(self.delay)
        raise ConnectionError("SMS gateway timed out")


@pytest.fixture
def storage():
    """Create in-memory storage for testing"""
    return InMemoryStorage()


@pytest.fixture
def audit_trail(storage):
    """Create audit trail for testing"""
    return AuditTrail(storage)


@pytest.fixture
def config():
    """Configuration isolated from the environment and .env files"""
    return LendflowConfig(
        _env_file=None,
        database_url="memory://",
        sms_provider="log",
        sms_max_retries=1,
        notification_workers=2
    )


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def failing_sender():
    return RecordingSender(should_succeed=False)


@pytest.fixture(params=[0.0, 1.0], ids=["raising", "stalling"])
def unreliable_sender(request):
    return UnreliableSender(delay=request.param)


@pytest.fixture
def unreliable_config():
    """Single attempt per message so a stalled gateway does not hold up teardown"""
    return LendflowConfig(
        _env_file=None,
        database_url="memory://",
        sms_provider="log",
        sms_max_retries=0,
        notification_workers=4
    )


@pytest.fixture
def orchestrator(storage, config, sender):
    """Fully wired orchestrator over in-memory storage"""
    system = LoanLifecycleOrchestrator(storage, config, sender)
    yield system
    system.notifier.shutdown()


@pytest.fixture
def applicant(orchestrator):
    """Registered user with a complete profile"""
    return orchestrator.register_user(
        "Thandi", "Nkosi", "thandi@example.co.za",
        phone="082 123 4567",
        id_number="9001010000080",
        date_of_birth="1990-01-01",
        address="12 Long Street",
        suburb="Gardens",
        city="Cape Town",
        state="Western Cape",
        zip_code="8001",
        employment_status="employed",
        employer_name="Acme",
        job_title="Engineer",
        years_employed=4,
        monthly_income="35000",
        bank_name="FNB",
        account_type="cheque",
        credit_score=710,
        monthly_debt="2500"
    )


@pytest.fixture
def application_sections():
    """Valid application sections as plain dicts"""
    return dict(
        personal_info={
            "first_name": "Thandi", "last_name": "Nkosi",
            "email": "thandi@example.co.za", "phone": "0821234567"
        },
        employment_info={"employment_status": "employed", "monthly_income": "35000", "employer_name": "Acme"},
        financial_info={"monthly_debt": "2500", "bank_name": "FNB"},
        loan_details={"amount": "12000", "term_months": 12, "purpose": "Car repairs"}
    )


@pytest.fixture
def verify_required_documents(orchestrator):
    """Upload and verify every required document type for a user"""
    def _verify(user_id, types=REQUIRED_DOCUMENT_TYPES):
        documents = []
        for doc_type in types:
            document = orchestrator.upload_document(user_id, doc_type, f"{doc_type.value}.pdf")
            documents.append(orchestrator.verify(document.id, "verified", actor_id="admin-1"))
        return documents
    return _verify


@pytest.fixture
def drive_to(orchestrator):
    """Advance an application until it reaches the requested status"""
    def _drive(application_id, status):
        application = orchestrator.get_application(application_id)
        while application.status != status:
            application = orchestrator.advance(application_id, actor_id="admin-1")
        return application
    return _drive


@pytest.fixture
def approved_loan(orchestrator, applicant, application_sections, verify_required_documents, drive_to):
    """Loan issued from an approved application"""
    verify_required_documents(applicant.id)
    application = orchestrator.submit_application(applicant.id, **application_sections)
    drive_to(application.id, ApplicationStatus.FINAL_DECISION)
    application = orchestrator.decide(application.id, "approved", actor_id="admin-1")
    return orchestrator.get_loan(application.loan_id)
