"""
Loan Application Workflow Module

Moves a loan application through the fixed review sequence

    submitted -> initial_screening -> document_review -> credit_assessment
              -> income_verification -> final_decision -> approved | rejected

Every transition re-reads the application under its entity lock, appends to
the status history, and commits together with its audit entry. Events and
SMS notifications go out only after the commit.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Union
from enum import Enum
import logging
import uuid

from .storage import StorageInterface, StorageRecord, parse_datetime
from .audit import AuditTrail, AuditEventType
from .events import EventDispatcher, EventPayload, DomainEvent
from .locking import EntityLockRegistry
from .users import UserDirectory
from .documents import DocumentVerificationGate, DocumentTypeLike, REQUIRED_DOCUMENT_TYPES, as_document_types
from .scoring import ProfileCompletionScorer
from .loans import LoanIssuer, Loan
from .notifications import NotificationDispatcher, NotificationTemplate
from .errors import (
    Conflict, GateNotSatisfied, InvalidLoanTerms, InvalidTransition, NotFound, ValidationError
)
from .logging_config import log_action

logger = logging.getLogger("lendflow.applications")


class ApplicationStatus(Enum):
    """Application workflow states"""
    SUBMITTED = "submitted"
    INITIAL_SCREENING = "initial_screening"
    DOCUMENT_REVIEW = "document_review"
    CREDIT_ASSESSMENT = "credit_assessment"
    INCOME_VERIFICATION = "income_verification"
    FINAL_DECISION = "final_decision"
    APPROVED = "approved"
    REJECTED = "rejected"

    @property
    def label(self) -> str:
        return self.value.replace("_", " ").title()


WORKFLOW_SEQUENCE = (
    ApplicationStatus.SUBMITTED,
    ApplicationStatus.INITIAL_SCREENING,
    ApplicationStatus.DOCUMENT_REVIEW,
    ApplicationStatus.CREDIT_ASSESSMENT,
    ApplicationStatus.INCOME_VERIFICATION,
    ApplicationStatus.FINAL_DECISION,
)

TERMINAL_STATUSES = frozenset({ApplicationStatus.APPROVED, ApplicationStatus.REJECTED})

# Static transition table; never mutated at runtime
APPLICATION_TRANSITIONS: Dict[ApplicationStatus, frozenset] = {
    ApplicationStatus.SUBMITTED: frozenset({ApplicationStatus.INITIAL_SCREENING}),
    ApplicationStatus.INITIAL_SCREENING: frozenset({ApplicationStatus.DOCUMENT_REVIEW}),
    ApplicationStatus.DOCUMENT_REVIEW: frozenset({ApplicationStatus.CREDIT_ASSESSMENT}),
    ApplicationStatus.CREDIT_ASSESSMENT: frozenset({ApplicationStatus.INCOME_VERIFICATION}),
    ApplicationStatus.INCOME_VERIFICATION: frozenset({ApplicationStatus.FINAL_DECISION}),
    ApplicationStatus.FINAL_DECISION: frozenset({ApplicationStatus.APPROVED, ApplicationStatus.REJECTED}),
    ApplicationStatus.APPROVED: frozenset(),
    ApplicationStatus.REJECTED: frozenset(),
}

# Steps between submitted (index 0) and a terminal decision (index 6)
TOTAL_STEPS = len(WORKFLOW_SEQUENCE)


def completion_for(status: ApplicationStatus) -> int:
    """Workflow completion percentage reached by entering a status"""
    if status in TERMINAL_STATUSES:
        return 100
    step_index = WORKFLOW_SEQUENCE.index(status)
    percentage = (Decimal(100 * step_index) / Decimal(TOTAL_STEPS)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return min(100, int(percentage))


def _money(value: Any, name: str) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{name} must be numeric, got {value!r}")
    if not result.is_finite():
        raise ValidationError(f"{name} must be a finite number, got {value!r}")
    return result


# Typed application sections

@dataclass
class PersonalInfo:
    """Applicant identity and contact details at submission time"""
    first_name: str
    last_name: str
    email: str
    phone: str
    id_number: Optional[str] = None
    date_of_birth: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    zip_code: Optional[str] = None

    def __post_init__(self):
        for name in ("first_name", "last_name", "email", "phone"):
            if not (getattr(self, name) or "").strip():
                raise ValidationError(f"personal_info.{name} is required")
        if "@" not in self.email:
            raise ValidationError(f"Invalid email format: {self.email!r}")


@dataclass
class EmploymentInfo:
    """Employment details"""
    employment_status: str
    monthly_income: Decimal
    employer_name: Optional[str] = None
    job_title: Optional[str] = None
    years_employed: Optional[int] = None

    def __post_init__(self):
        if not (self.employment_status or "").strip():
            raise ValidationError("employment_info.employment_status is required")
        self.monthly_income = _money(self.monthly_income, "monthly_income")
        if self.monthly_income is None or self.monthly_income < 0:
            raise ValidationError("Monthly income cannot be negative")
        if self.years_employed is not None and self.years_employed < 0:
            raise ValidationError("Years employed cannot be negative")


@dataclass
class FinancialInfo:
    """Banking details and existing obligations"""
    monthly_debt: Decimal = Decimal("0")
    bank_name: Optional[str] = None
    account_type: Optional[str] = None
    credit_score: Optional[int] = None

    def __post_init__(self):
        self.monthly_debt = _money(self.monthly_debt, "monthly_debt") or Decimal("0")
        if self.monthly_debt < 0:
            raise ValidationError("Monthly debt cannot be negative")
        if self.credit_score is not None and not 0 <= self.credit_score <= 999:
            raise ValidationError(f"Credit score out of range: {self.credit_score}")


@dataclass
class LoanDetails:
    """Requested loan terms"""
    amount: Decimal
    term_months: int
    purpose: Optional[str] = None
    interest_rate: Decimal = Decimal("28.75")  # Annual percentage

    def __post_init__(self):
        try:
            self.amount = Decimal(str(self.amount))
            self.interest_rate = Decimal(str(self.interest_rate))
        except (InvalidOperation, ValueError):
            raise InvalidLoanTerms("Loan amount and interest rate must be numeric")
        if not (self.amount.is_finite() and self.interest_rate.is_finite()):
            raise InvalidLoanTerms("Loan amount and interest rate must be finite")
        if self.amount <= 0:
            raise InvalidLoanTerms(f"Loan amount must be positive, got {self.amount}")
        if isinstance(self.term_months, bool) or not isinstance(self.term_months, int) or self.term_months <= 0:
            raise InvalidLoanTerms(f"Loan term must be a positive number of months, got {self.term_months!r}")
        if self.interest_rate < 0:
            raise InvalidLoanTerms(f"Interest rate cannot be negative, got {self.interest_rate}")


@dataclass
class StatusHistoryEntry:
    status: ApplicationStatus
    timestamp: datetime
    actor: Optional[str] = None
    note: Optional[str] = None


@dataclass
class ApplicationNote:
    actor: Optional[str]
    text: str
    timestamp: datetime


SectionLike = Union[PersonalInfo, EmploymentInfo, FinancialInfo, LoanDetails, Dict[str, Any]]


def _section(cls, value: SectionLike):
    """Accept a section instance or a plain dict of its fields"""
    if isinstance(value, cls):
        return value
    if isinstance(value, dict):
        try:
            return cls(**value)
        except TypeError as e:
            raise ValidationError(f"Invalid {cls.__name__}: {e}")
    raise ValidationError(f"Expected {cls.__name__}, got {type(value).__name__}")


@dataclass
class Application(StorageRecord):
    """Loan application"""
    user_id: str
    personal_info: PersonalInfo
    employment_info: EmploymentInfo
    financial_info: FinancialInfo
    loan_details: LoanDetails
    status: ApplicationStatus = ApplicationStatus.SUBMITTED
    completion: int = 0
    profile_completion: int = 0
    status_history: List[StatusHistoryEntry] = field(default_factory=list)
    notes: List[ApplicationNote] = field(default_factory=list)
    required_action: Optional[str] = None
    loan_id: Optional[str] = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Application':
        data = dict(data)
        data['personal_info'] = PersonalInfo(**data['personal_info'])
        data['employment_info'] = EmploymentInfo(**data['employment_info'])
        data['financial_info'] = FinancialInfo(**data['financial_info'])
        data['loan_details'] = LoanDetails(**data['loan_details'])
        data['status'] = ApplicationStatus(data['status'])
        data['status_history'] = [
            StatusHistoryEntry(
                status=ApplicationStatus(h['status']),
                timestamp=parse_datetime(h['timestamp']),
                actor=h.get('actor'),
                note=h.get('note')
            )
            for h in data.get('status_history', [])
        ]
        data['notes'] = [
            ApplicationNote(actor=n.get('actor'), text=n['text'], timestamp=parse_datetime(n['timestamp']))
            for n in data.get('notes', [])
        ]
        return super().from_dict(data)


class ApplicationStateMachine:
    """
    Drives applications through the review workflow
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        users: UserDirectory,
        documents: DocumentVerificationGate,
        loans: LoanIssuer,
        scorer: Optional[ProfileCompletionScorer] = None,
        events: Optional[EventDispatcher] = None,
        locks: Optional[EntityLockRegistry] = None,
        notifier: Optional[NotificationDispatcher] = None,
        required_types: Optional[List[DocumentTypeLike]] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.users = users
        self.documents = documents
        self.loans = loans
        self.required_types = as_document_types(required_types or REQUIRED_DOCUMENT_TYPES)
        self.scorer = scorer or ProfileCompletionScorer(self.required_types)
        self.events = events or EventDispatcher()
        self.locks = locks or EntityLockRegistry()
        self.notifier = notifier
        self.table_name = "applications"

    def submit(
        self,
        user_id: str,
        personal_info: SectionLike,
        employment_info: SectionLike,
        financial_info: SectionLike,
        loan_details: SectionLike,
        actor_id: Optional[str] = None
    ) -> Application:
        """
        Submit a new loan application

        Args:
            user_id: Applicant
            personal_info: PersonalInfo or dict
            employment_info: EmploymentInfo or dict
            financial_info: FinancialInfo or dict
            loan_details: LoanDetails or dict
            actor_id: Who submitted it (defaults to the applicant)

        Returns:
            Application in 'submitted' state
        """
        sections = dict(
            personal_info=_section(PersonalInfo, personal_info),
            employment_info=_section(EmploymentInfo, employment_info),
            financial_info=_section(FinancialInfo, financial_info),
            loan_details=_section(LoanDetails, loan_details),
        )

        user = self.users.get(user_id)
        if not user.is_active:
            raise ValidationError(f"User {user_id} is inactive")

        actor_id = actor_id or user_id
        now = datetime.now(timezone.utc)
        application = Application(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            status=ApplicationStatus.SUBMITTED,
            completion=completion_for(ApplicationStatus.SUBMITTED),
            profile_completion=self.scorer.score(user, self.documents.list_for_user(user_id)),
            status_history=[StatusHistoryEntry(ApplicationStatus.SUBMITTED, now, actor_id, "Application submitted")],
            **sections
        )

        with self.storage.atomic():
            self.storage.compare_and_save(self.table_name, application.id, application.to_dict(), None)
            self.users.link(user_id, "application_ids", application.id)
            self.audit_trail.log_event(
                AuditEventType.APPLICATION_SUBMITTED, "application", application.id,
                {"user_id": user_id, "amount": application.loan_details.amount,
                 "term_months": application.loan_details.term_months},
                actor_id
            )

        log_action(logger, "info", f"Application {application.id} submitted",
                   user_id=actor_id, action="application.submit", resource=f"application:{application.id}")
        self.events.emit(DomainEvent.APPLICATION_SUBMITTED, "application", application.id, {"user_id": user_id})
        self._notify(user_id, NotificationTemplate.APPLICATION_RECEIVED, {"application_id": application.id})
        return application

    def advance(
        self,
        application_id: str,
        actor_id: Optional[str] = None,
        note: Optional[str] = None,
        expected_status: Optional[Union[ApplicationStatus, str]] = None
    ) -> Application:
        """
        Move an application to the next review stage

        A caller that loses a race waits for the lock, then advances from
        whatever state the winner left behind. Pass expected_status to get a
        Conflict instead.

        Raises:
            InvalidTransition: terminal application, or final_decision (use decide)
            GateNotSatisfied: leaving document_review without every required
                document verified
            Conflict: expected_status no longer matches
        """
        with self.locks.hold("application", application_id):
            with self.storage.atomic():
                application = self._load_expecting(application_id, expected_status)
                current = application.status

                if current in TERMINAL_STATUSES or current == ApplicationStatus.FINAL_DECISION:
                    logger.debug(f"Rejected advance of application {application_id} from {current.value}")
                    raise InvalidTransition(
                        "application", application_id, current.value, "next",
                        f"Application {application_id} is {current.value}; "
                        + ("use decide()" if current == ApplicationStatus.FINAL_DECISION else "no further steps")
                    )

                target = WORKFLOW_SEQUENCE[WORKFLOW_SEQUENCE.index(current) + 1]

                if current == ApplicationStatus.DOCUMENT_REVIEW:
                    missing = self.documents.missing_types(application.user_id, self.required_types)
                    if missing:
                        logger.debug(f"Document gate closed for application {application_id}")
                        raise GateNotSatisfied(application.user_id, [t.value for t in missing])

                self._apply_status(application, target, actor_id, note)

        self._announce(application, current, actor_id)
        return application

    def decide(
        self,
        application_id: str,
        outcome: Union[ApplicationStatus, str],
        actor_id: Optional[str] = None,
        note: Optional[str] = None
    ) -> Application:
        """
        Approve or reject an application in final_decision

        Approval creates the Loan in the same storage transaction; if loan
        creation fails the application stays in final_decision.
        """
        try:
            outcome = ApplicationStatus(outcome)
        except ValueError:
            raise ValidationError(f"Unknown decision: {outcome!r}")
        if outcome not in TERMINAL_STATUSES:
            raise ValidationError(f"Decision must be 'approved' or 'rejected', got {outcome.value!r}")

        loan: Optional[Loan] = None
        with self.locks.hold("application", application_id):
            with self.storage.atomic():
                application = self.get(application_id)
                current = application.status
                if current != ApplicationStatus.FINAL_DECISION:
                    logger.debug(f"Rejected decide on application {application_id} in {current.value}")
                    raise InvalidTransition("application", application_id, current.value, outcome.value)

                if outcome == ApplicationStatus.APPROVED:
                    loan = self.loans.create(application, actor_id)
                    application.loan_id = loan.id

                self._apply_status(application, outcome, actor_id, note)
                self.audit_trail.log_event(
                    AuditEventType.APPLICATION_DECIDED, "application", application_id,
                    {"outcome": outcome.value, "loan_id": application.loan_id, "note": note}, actor_id
                )

        self._announce(application, current, actor_id)
        if loan:
            self.events.emit(DomainEvent.LOAN_ISSUED, "loan", loan.id, {
                "user_id": loan.user_id, "application_id": application_id, "amount": str(loan.amount)
            })
        return application

    def require_action(self, application_id: str, description: str,
                       actor_id: Optional[str] = None) -> Application:
        """Set (overwrite) the action the applicant must take; status is untouched"""
        with self.locks.hold("application", application_id):
            with self.storage.atomic():
                application = self.get(application_id)
                if application.required_action == description:
                    return application
                application.required_action = description
                application.touch()
                self._save(application)
                self.audit_trail.log_event(
                    AuditEventType.APPLICATION_ACTION_REQUIRED, "application", application_id,
                    {"description": description}, actor_id
                )
        logger.info(f"Action required on application {application_id}")
        return application

    def add_note(self, application_id: str, actor_id: Optional[str], text: str) -> Application:
        """Append a note; allowed in any status"""
        if not (text or "").strip():
            raise ValidationError("Note text is required")

        with self.locks.hold("application", application_id):
            with self.storage.atomic():
                application = self.get(application_id)
                now = application.touch()
                application.notes.append(ApplicationNote(actor=actor_id, text=text, timestamp=now))
                self._save(application)
                self.audit_trail.log_event(
                    AuditEventType.APPLICATION_NOTE_ADDED, "application", application_id,
                    {"length": len(text)}, actor_id
                )
        return application

    def refresh_completion(self, user_id: str) -> List[Application]:
        """
        Recompute profile completion for the user's open applications and
        reassert workflow completion. Completion never decreases.

        Returns:
            Applications whose stored values changed
        """
        user = self.users.find(user_id)
        if user is None:
            return []

        changed = []
        for application_id in [a.id for a in self.list_for_user(user_id) if not a.is_terminal]:
            with self.locks.hold("application", application_id):
                with self.storage.atomic():
                    application = self.get(application_id)
                    if application.is_terminal:
                        continue
                    profile = self.scorer.score(user, self.documents.list_for_user(user_id))
                    completion = max(application.completion, completion_for(application.status))
                    if (profile, completion) == (application.profile_completion, application.completion):
                        continue
                    application.profile_completion = profile
                    application.completion = completion
                    application.touch()
                    self._save(application)
                    changed.append(application)

        if changed:
            logger.info(f"Refreshed completion of {len(changed)} application(s) for user {user_id}")
        return changed

    def on_document_verified(self, event: EventPayload) -> None:
        """DOCUMENT_VERIFIED subscriber"""
        self.refresh_completion(event.data["user_id"])

    # Queries

    def get(self, application_id: str) -> Application:
        """Get application by ID (NotFound when missing)"""
        data = self.storage.load(self.table_name, application_id)
        if not data:
            raise NotFound("application", application_id)
        return Application.from_dict(data)

    def list_for_user(self, user_id: str) -> List[Application]:
        applications = [Application.from_dict(d) for d in self.storage.find(self.table_name, {"user_id": user_id})]
        applications.sort(key=lambda a: a.created_at)
        return applications

    def list_by_status(self, status: Union[ApplicationStatus, str]) -> List[Application]:
        status = ApplicationStatus(status) if isinstance(status, str) else status
        applications = [Application.from_dict(d) for d in self.storage.find(self.table_name, {"status": status.value})]
        applications.sort(key=lambda a: a.created_at)
        return applications

    def delete_for_user(self, user_id: str) -> int:
        removed = 0
        for data in self.storage.find(self.table_name, {"user_id": user_id}):
            if self.storage.delete(self.table_name, data['id']):
                removed += 1
        return removed

    # Internals

    def _load_expecting(self, application_id: str,
                        expected_status: Optional[Union[ApplicationStatus, str]]) -> Application:
        application = self.get(application_id)
        if expected_status is not None:
            expected = ApplicationStatus(expected_status) if isinstance(expected_status, str) else expected_status
            if application.status != expected:
                raise Conflict(
                    f"Application {application_id} is {application.status.value}, expected {expected.value}"
                )
        return application

    def _apply_status(self, application: Application, target: ApplicationStatus,
                      actor_id: Optional[str], note: Optional[str]) -> None:
        """Record a status change; caller holds the lock and an open transaction"""
        previous = application.status
        if target not in APPLICATION_TRANSITIONS[previous]:
            raise InvalidTransition("application", application.id, previous.value, target.value)

        now = application.touch()
        application.status = target
        application.status_history.append(StatusHistoryEntry(target, now, actor_id, note))
        application.completion = max(application.completion, completion_for(target))
        self._save(application)

        self.audit_trail.log_event(
            AuditEventType.APPLICATION_STATUS_CHANGED, "application", application.id,
            {"from": previous.value, "to": target.value, "completion": application.completion, "note": note},
            actor_id
        )

    def _announce(self, application: Application, previous: ApplicationStatus,
                  actor_id: Optional[str]) -> None:
        status = application.status
        log_action(logger, "info", f"Application {application.id} {previous.value} -> {status.value}",
                   user_id=actor_id, action="application.transition", resource=f"application:{application.id}")

        self.events.emit(DomainEvent.APPLICATION_STATUS_CHANGED, "application", application.id, {
            "user_id": application.user_id, "from": previous.value, "to": status.value
        })

        params = {"application_id": application.id, "status": status.label}
        if status == ApplicationStatus.APPROVED:
            self.events.emit(DomainEvent.APPLICATION_APPROVED, "application", application.id,
                             {"user_id": application.user_id, "loan_id": application.loan_id})
            self._notify(application.user_id, NotificationTemplate.APPLICATION_APPROVED, params)
        elif status == ApplicationStatus.REJECTED:
            self.events.emit(DomainEvent.APPLICATION_REJECTED, "application", application.id,
                             {"user_id": application.user_id})
            self._notify(application.user_id, NotificationTemplate.APPLICATION_REJECTED, params)
        else:
            self._notify(application.user_id, NotificationTemplate.APPLICATION_STATUS, params)

    def _notify(self, user_id: str, template: NotificationTemplate, params: Dict[str, Any]) -> None:
        if self.notifier:
            self.notifier.dispatch(user_id, template, params)

    def _save(self, application: Application) -> None:
        expected = application.version
        application.version += 1
        self.storage.compare_and_save(self.table_name, application.id, application.to_dict(), expected)
