"""
Loan Lifecycle Orchestrator

Wires storage, audit, events, locks and the notification dispatcher into
the lifecycle components and exposes the narrow operation set used by the
transport layer. Inputs are ids, primitives and section dataclasses;
outputs are records or typed LendflowError subclasses.
"""

from datetime import date, datetime
from typing import Any, Dict, List, Optional, Union
import logging

from .config import LendflowConfig, get_config
from .storage import StorageInterface, create_storage
from .audit import AuditTrail, AuditEventType
from .events import EventDispatcher, DomainEvent
from .locking import EntityLockRegistry
from .users import User, UserDirectory, UserRole
from .documents import Document, DocumentVerificationGate, DocumentTypeLike, VerificationStatus
from .scoring import ProfileCompletionScorer
from .amortization import AmortizationCalculator, AmortizationSchedule, Number
from .loans import Loan, LoanIssuer
from .applications import Application, ApplicationStateMachine, ApplicationStatus, SectionLike
from .contracts import Contract, ContractStateMachine
from .notifications import NotificationDispatcher, SMSSender, build_sender

logger = logging.getLogger("lendflow.orchestrator")


class LoanLifecycleOrchestrator:
    """Loan lifecycle system with all components initialized"""

    def __init__(
        self,
        storage: StorageInterface,
        config: Optional[LendflowConfig] = None,
        sender: Optional[SMSSender] = None
    ):
        self.config = config or get_config()
        self.storage = storage

        self.audit_trail = AuditTrail(storage, enabled=self.config.enable_audit_logging)
        self.events = EventDispatcher()
        self.locks = EntityLockRegistry()

        self.users = UserDirectory(storage, self.audit_trail)
        self.notifier = NotificationDispatcher(
            storage, self.users,
            sender=sender or build_sender(self.config),
            audit_trail=self.audit_trail,
            max_retries=self.config.sms_max_retries,
            workers=self.config.notification_workers,
            company_name=self.config.company_name,
            enabled=self.config.sms_enabled
        )
        self.calculator = AmortizationCalculator()
        self.scorer = ProfileCompletionScorer(self.config.required_document_types)

        self.documents = DocumentVerificationGate(storage, self.audit_trail, self.users, self.events, self.locks)
        self.loans = LoanIssuer(
            storage, self.audit_trail, self.users, self.events, self.locks,
            notifier=self.notifier, calculator=self.calculator
        )
        self.applications = ApplicationStateMachine(
            storage, self.audit_trail, self.users, self.documents, self.loans,
            scorer=self.scorer, events=self.events, locks=self.locks, notifier=self.notifier,
            required_types=self.config.required_document_types
        )
        self.contracts = ContractStateMachine(
            storage, self.audit_trail, self.loans, self.events, self.locks,
            notifier=self.notifier,
            expiry_days=self.config.contract_expiry_days,
            decline_roles=self.config.contract_decline_roles,
            cancel_roles=self.config.contract_cancel_roles,
            base_url=self.config.contract_base_url,
            document_path=self.config.contract_document_path
        )

        self.events.subscribe(DomainEvent.DOCUMENT_VERIFIED, self.applications.on_document_verified)
        self.events.subscribe(DomainEvent.LOAN_COMPLETED, self.contracts.on_loan_completed)

    @classmethod
    def from_config(cls, config: Optional[LendflowConfig] = None,
                    sender: Optional[SMSSender] = None) -> 'LoanLifecycleOrchestrator':
        """Build the orchestrator with the storage backend named by database_url"""
        config = config or get_config()
        storage = create_storage(config.database_url, timeout=config.database_timeout_seconds)
        logger.info(f"Loan lifecycle orchestrator using {config.database_url}")
        return cls(storage, config, sender)

    # Users

    def register_user(self, first_name: str, last_name: str, email: str,
                      phone: Optional[str] = None, role: UserRole = UserRole.USER,
                      **profile: Any) -> User:
        return self.users.register(first_name, last_name, email, phone=phone, role=role, **profile)

    def update_profile(self, user_id: str, actor_id: Optional[str] = None, **changes: Any) -> User:
        user = self.users.update_profile(user_id, actor_id, **changes)
        self.applications.refresh_completion(user_id)
        return user

    def deactivate_user(self, user_id: str, actor_id: Optional[str] = None) -> User:
        return self.users.deactivate(user_id, actor_id)

    def purge_user(self, user_id: str, actor_id: Optional[str] = None) -> Dict[str, int]:
        """
        Physically remove a user and everything that references them.

        This is the only cascade delete in the system and it is never
        triggered implicitly.

        Returns:
            Count of removed records per collection
        """
        self.users.get(user_id)
        self.notifier.flush(timeout=self.config.sms_timeout_seconds * (self.config.sms_max_retries + 1))

        with self.storage.atomic():
            removed = {
                "contracts": self.contracts.delete_for_user(user_id),
                "loans": self.loans.delete_for_user(user_id),
                "applications": self.applications.delete_for_user(user_id),
                "documents": self.documents.delete_for_user(user_id),
                "notifications": self.notifier.delete_for_user(user_id),
                "users": int(self.users.delete(user_id)),
            }
            self.audit_trail.log_event(AuditEventType.USER_PURGED, "user", user_id, removed, actor_id)

        logger.warning(f"Purged user {user_id}: {removed}")
        return removed

    # Applications

    def submit_application(self, user_id: str, personal_info: SectionLike, employment_info: SectionLike,
                           financial_info: SectionLike, loan_details: SectionLike,
                           actor_id: Optional[str] = None) -> Application:
        if isinstance(loan_details, dict) and loan_details.get("interest_rate") is None:
            loan_details = dict(loan_details, interest_rate=self.config.default_interest_rate)
        return self.applications.submit(
            user_id, personal_info, employment_info, financial_info, loan_details, actor_id
        )

    def advance(self, application_id: str, actor_id: Optional[str] = None, note: Optional[str] = None,
                expected_status: Optional[Union[ApplicationStatus, str]] = None) -> Application:
        return self.applications.advance(application_id, actor_id, note, expected_status)

    def decide(self, application_id: str, outcome: Union[ApplicationStatus, str],
               actor_id: Optional[str] = None, note: Optional[str] = None) -> Application:
        return self.applications.decide(application_id, outcome, actor_id, note)

    def require_action(self, application_id: str, description: str,
                       actor_id: Optional[str] = None) -> Application:
        return self.applications.require_action(application_id, description, actor_id)

    def add_note(self, application_id: str, actor_id: Optional[str], text: str) -> Application:
        return self.applications.add_note(application_id, actor_id, text)

    def get_application(self, application_id: str) -> Application:
        return self.applications.get(application_id)

    # Documents

    def upload_document(self, user_id: str, doc_type: DocumentTypeLike, name: str,
                        file_type: Optional[str] = None, file_size: Optional[int] = None) -> Document:
        return self.documents.upload(user_id, doc_type, name, file_type, file_size)

    def verify(self, document_id: str, outcome: Union[VerificationStatus, str],
               actor_id: Optional[str] = None, note: Optional[str] = None) -> Document:
        return self.documents.verify(document_id, outcome, actor_id, note)

    def is_satisfied(self, user_id: str, required_types: Optional[List[DocumentTypeLike]] = None) -> bool:
        return self.documents.is_satisfied(user_id, required_types or self.config.required_document_types)

    # Contracts

    def generate(self, loan_id: str, actor_id: Optional[str] = None) -> Contract:
        return self.contracts.generate(loan_id, actor_id)

    def send(self, contract_id: str, actor_id: Optional[str] = None) -> Contract:
        return self.contracts.send(contract_id, actor_id)

    def view(self, contract_id: str, actor_id: Optional[str] = None) -> Contract:
        return self.contracts.view(contract_id, actor_id)

    def sign(self, contract_id: str, actor_id: Optional[str] = None) -> Contract:
        return self.contracts.sign(contract_id, actor_id)

    def cancel(self, contract_id: str, actor_role: Union[UserRole, str],
               actor_id: Optional[str] = None) -> Contract:
        return self.contracts.cancel(contract_id, actor_role, actor_id)

    def decline(self, contract_id: str, actor_role: Union[UserRole, str],
                actor_id: Optional[str] = None, reason: Optional[str] = None) -> Contract:
        return self.contracts.decline(contract_id, actor_role, actor_id, reason)

    def resend(self, contract_id: str, actor_id: Optional[str] = None) -> Contract:
        return self.contracts.resend(contract_id, actor_id)

    def expire(self, contract_id: str, now: Optional[datetime] = None) -> Contract:
        return self.contracts.expire(contract_id, now)

    def expire_overdue(self, now: Optional[datetime] = None) -> List[str]:
        return self.contracts.expire_overdue(now)

    # Loans

    def record_payment(self, loan_id: str, amount: Number, actor_id: Optional[str] = None) -> Loan:
        return self.loans.record_payment(loan_id, amount, actor_id)

    def send_payment_reminders(self, as_of: Optional[date] = None, days_ahead: int = 3) -> List[str]:
        return self.loans.send_payment_reminders(as_of, days_ahead)

    def get_loan(self, loan_id: str) -> Loan:
        return self.loans.get(loan_id)

    def schedule(self, principal: Number, term_months: int,
                 annual_rate_percent: Optional[Number] = None,
                 include_breakdown: bool = False) -> AmortizationSchedule:
        rate = self.config.default_interest_rate if annual_rate_percent is None else annual_rate_percent
        return self.calculator.schedule(principal, rate, term_months, include_breakdown)

    # Profile completion

    def score(self, user_id: str) -> int:
        return self.scorer.score(self.users.get(user_id), self.documents.list_for_user(user_id))

    def missing_items(self, user_id: str) -> List[str]:
        return self.scorer.missing_items(self.users.get(user_id), self.documents.list_for_user(user_id))

    def close(self) -> None:
        """Drain notifications and release the store"""
        self.notifier.flush(timeout=self.config.sms_timeout_seconds)
        self.notifier.shutdown()
        self.storage.close()
