"""
Loan Module

Turns an approved application into a Loan with a computed repayment
schedule, and owns every Loan status change afterwards: activation on
contract signature, payments, completion and rejection.
"""

from decimal import Decimal
from datetime import datetime, timezone, date, timedelta
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Tuple, TYPE_CHECKING
from enum import Enum
import calendar
import logging
import uuid

from .storage import StorageInterface, StorageRecord, parse_date, parse_datetime, parse_decimal
from .audit import AuditTrail, AuditEventType
from .events import EventDispatcher, DomainEvent
from .locking import EntityLockRegistry
from .users import UserDirectory
from .notifications import NotificationDispatcher, NotificationTemplate, format_rand
from .amortization import AmortizationCalculator, AmortizationSchedule, to_cents
from .errors import Conflict, InvalidTransition, NotFound, ValidationError
from .logging_config import log_action

if TYPE_CHECKING:
    from .applications import Application

logger = logging.getLogger("lendflow.loans")


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"        # Created, awaiting approval
    APPROVED = "approved"      # Approved, awaiting contract signature
    ACTIVE = "active"          # Contract signed, in repayment
    COMPLETED = "completed"    # Fully repaid or settled
    REJECTED = "rejected"      # Declined or written off


LOAN_TRANSITIONS: Dict[LoanStatus, frozenset] = {
    LoanStatus.PENDING: frozenset({LoanStatus.APPROVED, LoanStatus.REJECTED}),
    LoanStatus.APPROVED: frozenset({LoanStatus.ACTIVE, LoanStatus.REJECTED}),
    LoanStatus.ACTIVE: frozenset({LoanStatus.COMPLETED, LoanStatus.REJECTED}),
    LoanStatus.COMPLETED: frozenset(),
    LoanStatus.REJECTED: frozenset(),
}

_STATUS_EVENTS = {
    LoanStatus.ACTIVE: DomainEvent.LOAN_ACTIVATED,
    LoanStatus.COMPLETED: DomainEvent.LOAN_COMPLETED,
    LoanStatus.REJECTED: DomainEvent.LOAN_REJECTED,
}


def add_months(start_date: date, months: int) -> date:
    """Add calendar months, clamping the day to the target month's length"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


@dataclass
class ProcessingStep:
    """One entry of a loan's processing history"""
    status: LoanStatus
    date: datetime
    notes: Optional[str] = None
    processed_by: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ProcessingStep':
        return cls(
            status=LoanStatus(data['status']),
            date=parse_datetime(data['date']),
            notes=data.get('notes'),
            processed_by=data.get('processed_by')
        )


@dataclass
class Loan(StorageRecord):
    """Loan issued from an approved application"""
    user_id: str
    application_id: str
    amount: Decimal
    interest_rate: Decimal     # Annual percentage, e.g. 28.75
    term: int                  # Months
    monthly_payment: Decimal
    total_repayment: Decimal
    status: LoanStatus = LoanStatus.PENDING
    purpose: Optional[str] = None
    paid_amount: Decimal = Decimal('0.00')
    paid_months: int = 0
    date_issued: Optional[datetime] = None
    next_payment_due: Optional[date] = None
    processing_history: List[ProcessingStep] = field(default_factory=list)
    version: int = 0

    @property
    def outstanding(self) -> Decimal:
        return max(self.total_repayment - self.paid_amount, Decimal('0.00'))

    @property
    def is_terminal(self) -> bool:
        return not LOAN_TRANSITIONS[self.status]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        data = dict(data)
        data['status'] = LoanStatus(data['status'])
        for name in ('amount', 'interest_rate', 'monthly_payment', 'total_repayment', 'paid_amount'):
            data[name] = parse_decimal(data[name])
        data['date_issued'] = parse_datetime(data.get('date_issued'))
        data['next_payment_due'] = parse_date(data.get('next_payment_due'))
        data['processing_history'] = [ProcessingStep.from_dict(s) for s in data.get('processing_history', [])]
        return super().from_dict(data)


class LoanIssuer:
    """
    Creates loans from approved applications and manages their status
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        users: UserDirectory,
        events: Optional[EventDispatcher] = None,
        locks: Optional[EntityLockRegistry] = None,
        notifier: Optional[NotificationDispatcher] = None,
        calculator: Optional[AmortizationCalculator] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.users = users
        self.events = events or EventDispatcher()
        self.locks = locks or EntityLockRegistry()
        self.notifier = notifier
        self.calculator = calculator or AmortizationCalculator()
        self.table_name = "loans"

    # Creation

    def create(self, application: 'Application', actor_id: Optional[str] = None,
               status: LoanStatus = LoanStatus.APPROVED) -> Loan:
        """
        Create the Loan for an approved application.

        Runs inside the caller's storage transaction (ApplicationStateMachine.decide)
        so a failure here rolls back the approval too. Publishing LOAN_ISSUED
        is left to the caller once that transaction has committed.

        Raises:
            Conflict: the application already has a loan
            InvalidLoanTerms: the requested terms cannot be amortized
        """
        if status not in (LoanStatus.PENDING, LoanStatus.APPROVED):
            raise ValueError(f"Loans start as pending or approved, not {status.value}")

        existing = self.find_for_application(application.id)
        if existing:
            raise Conflict(f"Application {application.id} already has loan {existing.id}")

        details = application.loan_details
        schedule = self.calculator.schedule(details.amount, details.interest_rate, details.term_months)

        now = datetime.now(timezone.utc)
        history = [ProcessingStep(LoanStatus.PENDING, now, f"Created from application {application.id}", actor_id)]
        if status == LoanStatus.APPROVED:
            history.append(ProcessingStep(LoanStatus.APPROVED, now, "Application approved", actor_id))

        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=application.user_id,
            application_id=application.id,
            amount=schedule.principal,
            interest_rate=schedule.annual_rate_percent,
            term=schedule.term_months,
            monthly_payment=schedule.monthly_payment,
            total_repayment=schedule.total_repayment,
            status=status,
            purpose=details.purpose,
            processing_history=history
        )

        with self.storage.atomic():
            self.storage.compare_and_save(self.table_name, loan.id, loan.to_dict(), None)
            self.users.link(loan.user_id, "existing_loan_ids", loan.id)
            self.audit_trail.log_event(
                AuditEventType.LOAN_ISSUED, "loan", loan.id,
                {
                    "application_id": application.id,
                    "amount": loan.amount,
                    "interest_rate": loan.interest_rate,
                    "term": loan.term,
                    "monthly_payment": loan.monthly_payment
                },
                actor_id
            )

        return loan

    def schedule_for(self, loan_id: str, include_breakdown: bool = True) -> AmortizationSchedule:
        """Recompute the repayment schedule of an existing loan"""
        loan = self.get(loan_id)
        return self.calculator.schedule(loan.amount, loan.interest_rate, loan.term, include_breakdown)

    # Status transitions

    def approve(self, loan_id: str, actor_id: Optional[str] = None, note: Optional[str] = None) -> Loan:
        """pending -> approved"""
        return self._transition(loan_id, LoanStatus.APPROVED, actor_id, note)

    def reject(self, loan_id: str, actor_id: Optional[str] = None, note: Optional[str] = None) -> Loan:
        """pending|approved|active -> rejected (active loans: default write-off)"""
        return self._transition(loan_id, LoanStatus.REJECTED, actor_id, note)

    def activate(self, loan_id: str, actor_id: Optional[str] = None, note: Optional[str] = None) -> Loan:
        """approved -> active"""
        return self._transition(loan_id, LoanStatus.ACTIVE, actor_id, note)

    def complete(self, loan_id: str, actor_id: Optional[str] = None, note: Optional[str] = None) -> Loan:
        """active -> completed (settlement outside the payment flow)"""
        return self._transition(loan_id, LoanStatus.COMPLETED, actor_id, note or "Marked as completed")

    def _transition(self, loan_id: str, target: LoanStatus, actor_id: Optional[str],
                    note: Optional[str]) -> Loan:
        with self.locks.hold("loan", loan_id):
            with self.storage.atomic():
                loan, previous = self.apply_transition(loan_id, target, actor_id, note)
        self.announce(loan, previous, actor_id)
        return loan

    def apply_transition(self, loan_id: str, target: LoanStatus, actor_id: Optional[str] = None,
                         note: Optional[str] = None) -> Tuple[Loan, LoanStatus]:
        """
        Change a loan's status and persist it.

        The caller must hold the loan lock and an open storage.atomic()
        block, and must call announce() after the block commits. Used
        directly by contract signature so activation commits together with
        the contract.

        Returns:
            (updated loan, previous status)
        """
        loan = self.get(loan_id)
        previous = loan.status
        if target not in LOAN_TRANSITIONS[previous]:
            logger.debug(f"Rejected loan transition {loan_id}: {previous.value} -> {target.value}")
            raise InvalidTransition("loan", loan_id, previous.value, target.value)

        now = loan.touch()
        loan.status = target
        if target == LoanStatus.ACTIVE:
            loan.date_issued = now
            loan.next_payment_due = add_months(now.date(), 1)
        elif target == LoanStatus.COMPLETED:
            loan.paid_months = loan.term
            loan.next_payment_due = None
        elif target == LoanStatus.REJECTED:
            loan.next_payment_due = None

        loan.processing_history.append(ProcessingStep(target, now, note, actor_id))
        self._save(loan)

        self.audit_trail.log_event(
            AuditEventType.LOAN_STATUS_CHANGED, "loan", loan_id,
            {"from": previous.value, "to": target.value, "note": note}, actor_id
        )
        return loan, previous

    def announce(self, loan: Loan, previous: LoanStatus, actor_id: Optional[str] = None) -> None:
        """Post-commit side effects of a status change"""
        log_action(logger, "info", f"Loan {loan.id} {previous.value} -> {loan.status.value}",
                   user_id=actor_id, action="loan.transition", resource=f"loan:{loan.id}")
        event = _STATUS_EVENTS.get(loan.status)
        if event:
            self.events.emit(event, "loan", loan.id, {
                "user_id": loan.user_id,
                "application_id": loan.application_id,
                "from": previous.value,
                "to": loan.status.value
            })

    # Payments

    def record_payment(self, loan_id: str, amount: Any, actor_id: Optional[str] = None) -> Loan:
        """
        Record a repayment against an active loan

        paid_amount and paid_months only ever grow. The loan completes
        automatically once paid_amount reaches total_repayment.

        Args:
            loan_id: Loan being repaid
            amount: Payment amount (> 0, at most the outstanding balance)
            actor_id: Admin or user recording the payment

        Returns:
            Updated Loan
        """
        try:
            value = Decimal(str(amount))
        except ArithmeticError:
            raise ValidationError(f"Invalid payment amount: {amount!r}")
        if not value.is_finite():
            raise ValidationError(f"Invalid payment amount: {amount!r}")
        amount = to_cents(value)
        if amount <= 0:
            raise ValidationError("Payment amount must be positive")

        completed = False
        with self.locks.hold("loan", loan_id):
            with self.storage.atomic():
                loan = self.get(loan_id)
                if loan.status != LoanStatus.ACTIVE:
                    raise InvalidTransition("loan", loan_id, loan.status.value, "payment",
                                            f"Loan {loan_id} is {loan.status.value}; payments need an active loan")
                if amount > loan.outstanding:
                    raise ValidationError(f"Payment {amount} exceeds outstanding balance {loan.outstanding}")

                now = loan.touch()
                loan.paid_amount += amount
                loan.paid_months = min(loan.term, int(loan.paid_amount // loan.monthly_payment))
                start = (loan.date_issued or now).date()
                loan.next_payment_due = add_months(start, loan.paid_months + 1)
                self._save(loan)

                self.audit_trail.log_event(
                    AuditEventType.LOAN_PAYMENT_RECORDED, "loan", loan_id,
                    {"amount": amount, "paid_amount": loan.paid_amount, "paid_months": loan.paid_months},
                    actor_id
                )

                if loan.paid_amount >= loan.total_repayment:
                    loan, _ = self.apply_transition(loan_id, LoanStatus.COMPLETED, actor_id, "Fully repaid")
                    completed = True

        log_action(logger, "info", f"Payment of {amount} recorded on loan {loan_id}",
                   user_id=actor_id, action="loan.payment", resource=f"loan:{loan_id}")
        self.events.emit(DomainEvent.LOAN_PAYMENT, "loan", loan_id, {
            "user_id": loan.user_id, "amount": str(amount), "paid_amount": str(loan.paid_amount)
        })
        if self.notifier:
            self.notifier.dispatch(loan.user_id, NotificationTemplate.PAYMENT_RECEIVED,
                                   {"amount": format_rand(amount), "loan_id": loan_id})
        if completed:
            self.announce(loan, LoanStatus.ACTIVE, actor_id)
        return loan

    def send_payment_reminders(self, as_of: Optional[date] = None, days_ahead: int = 3) -> List[str]:
        """
        Remind borrowers whose next installment falls due within days_ahead

        Returns:
            Ids of the loans a reminder was dispatched for
        """
        if self.notifier is None:
            logger.warning("No notifier configured, skipping payment reminders")
            return []

        as_of = as_of or datetime.now(timezone.utc).date()
        horizon = as_of + timedelta(days=days_ahead)
        reminded = []
        for loan in self.list_by_status(LoanStatus.ACTIVE):
            if loan.next_payment_due is None or not (as_of <= loan.next_payment_due <= horizon):
                continue
            self.notifier.dispatch(loan.user_id, NotificationTemplate.PAYMENT_REMINDER, {
                "amount": format_rand(min(loan.monthly_payment, loan.outstanding)),
                "due_date": loan.next_payment_due.isoformat(),
                "loan_id": loan.id
            })
            reminded.append(loan.id)

        logger.info(f"Dispatched {len(reminded)} payment reminders for {as_of.isoformat()}")
        return reminded

    # Queries

    def get(self, loan_id: str) -> Loan:
        """Get loan by ID (NotFound when missing)"""
        data = self.storage.load(self.table_name, loan_id)
        if not data:
            raise NotFound("loan", loan_id)
        return Loan.from_dict(data)

    def find_for_application(self, application_id: str) -> Optional[Loan]:
        found = self.storage.find(self.table_name, {"application_id": application_id})
        return Loan.from_dict(found[0]) if found else None

    def list_for_user(self, user_id: str) -> List[Loan]:
        loans = [Loan.from_dict(d) for d in self.storage.find(self.table_name, {"user_id": user_id})]
        loans.sort(key=lambda l: l.created_at)
        return loans

    def list_by_status(self, status: LoanStatus) -> List[Loan]:
        return [Loan.from_dict(d) for d in self.storage.find(self.table_name, {"status": status.value})]

    def delete_for_user(self, user_id: str) -> int:
        removed = 0
        for data in self.storage.find(self.table_name, {"user_id": user_id}):
            if self.storage.delete(self.table_name, data['id']):
                removed += 1
        return removed

    def _save(self, loan: Loan) -> None:
        expected = loan.version
        loan.version += 1
        self.storage.compare_and_save(self.table_name, loan.id, loan.to_dict(), expected)
