"""
Contract Signature Module

Signature lifecycle of the loan contract:

    draft -> sent -> viewed -> signed -> completed
    sent | viewed -> expired      (date_expires passed)
    sent | viewed -> declined     (borrower or admin action)
    sent | viewed -> draft        (cancel)

resend() reissues the signature link of any non-terminal contract without
changing its status.

signed, completed, expired and declined are terminal. The only mutation of
a terminal contract is archiving a signed contract as completed once its
loan is fully repaid. A loan whose contract expired or was declined gets a
replacement through generate().
"""

from datetime import datetime, timezone, timedelta
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Any, Union
from enum import Enum
import logging
import uuid

from .storage import StorageInterface, StorageRecord, parse_datetime
from .audit import AuditTrail, AuditEventType
from .events import EventDispatcher, EventPayload, DomainEvent
from .locking import EntityLockRegistry
from .loans import LoanIssuer, LoanStatus
from .users import UserRole
from .notifications import NotificationDispatcher, NotificationTemplate, format_rand
from .errors import DuplicateContract, InvalidTransition, NotFound, PermissionDenied
from .logging_config import log_action

logger = logging.getLogger("lendflow.contracts")


class ContractStatus(Enum):
    """Contract signature states"""
    DRAFT = "draft"
    SENT = "sent"
    VIEWED = "viewed"
    SIGNED = "signed"
    COMPLETED = "completed"
    EXPIRED = "expired"
    DECLINED = "declined"


CONTRACT_TRANSITIONS: Dict[ContractStatus, frozenset] = {
    ContractStatus.DRAFT: frozenset({ContractStatus.SENT}),
    ContractStatus.SENT: frozenset({
        ContractStatus.VIEWED, ContractStatus.SIGNED, ContractStatus.EXPIRED,
        ContractStatus.DECLINED, ContractStatus.DRAFT
    }),
    ContractStatus.VIEWED: frozenset({
        ContractStatus.SIGNED, ContractStatus.EXPIRED, ContractStatus.DECLINED, ContractStatus.DRAFT
    }),
    ContractStatus.SIGNED: frozenset({ContractStatus.COMPLETED}),
    ContractStatus.COMPLETED: frozenset(),
    ContractStatus.EXPIRED: frozenset(),
    ContractStatus.DECLINED: frozenset(),
}

TERMINAL_STATUSES = frozenset({
    ContractStatus.SIGNED, ContractStatus.COMPLETED, ContractStatus.EXPIRED, ContractStatus.DECLINED
})

AWAITING_SIGNATURE = (ContractStatus.SENT, ContractStatus.VIEWED)


@dataclass
class Contract(StorageRecord):
    """Loan contract and its signature artifacts"""
    loan_id: str
    user_id: str
    status: ContractStatus
    date_created: datetime
    download_url: str
    date_sent: Optional[datetime] = None
    date_viewed: Optional[datetime] = None
    date_signed: Optional[datetime] = None
    date_expires: Optional[datetime] = None
    date_completed: Optional[datetime] = None
    signature_request_id: Optional[str] = None
    signature_url: Optional[str] = None
    notes: Optional[str] = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_overdue(self, now: datetime) -> bool:
        return (self.status in AWAITING_SIGNATURE
                and self.date_expires is not None
                and now > self.date_expires)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Contract':
        data = dict(data)
        data['status'] = ContractStatus(data['status'])
        for name in ('date_created', 'date_sent', 'date_viewed', 'date_signed', 'date_expires', 'date_completed'):
            data[name] = parse_datetime(data.get(name))
        return super().from_dict(data)


def _role_value(role: Union[UserRole, str]) -> str:
    return role.value if isinstance(role, UserRole) else str(role)


class ContractStateMachine:
    """
    Generates contracts for approved loans and drives their signature flow
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        loans: LoanIssuer,
        events: Optional[EventDispatcher] = None,
        locks: Optional[EntityLockRegistry] = None,
        notifier: Optional[NotificationDispatcher] = None,
        expiry_days: int = 7,
        decline_roles: Iterable[str] = ("user", "admin"),
        cancel_roles: Iterable[str] = ("admin",),
        base_url: str = "https://sign.lendflow.local",
        document_path: str = "/documents/contracts"
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.loans = loans
        self.events = events or EventDispatcher()
        self.locks = locks or EntityLockRegistry()
        self.notifier = notifier
        self.expiry_days = expiry_days
        self.decline_roles = frozenset(decline_roles)
        self.cancel_roles = frozenset(cancel_roles)
        self.base_url = base_url.rstrip("/")
        self.document_path = document_path.rstrip("/")
        self.table_name = "contracts"

    def generate(self, loan_id: str, actor_id: Optional[str] = None) -> Contract:
        """
        Create a draft contract for an approved loan

        Raises:
            InvalidTransition: the loan is not approved
            DuplicateContract: the loan already has a non-terminal contract
        """
        with self.locks.hold("loan", loan_id):
            with self.storage.atomic():
                loan = self.loans.get(loan_id)
                if loan.status != LoanStatus.APPROVED:
                    raise InvalidTransition(
                        "loan", loan_id, loan.status.value, "contract",
                        f"Loan {loan_id} is {loan.status.value}; contracts need an approved loan"
                    )

                existing = self.open_contract_for(loan_id)
                if existing:
                    raise DuplicateContract(loan_id, existing.id)

                now = datetime.now(timezone.utc)
                contract_id = f"CONTRACT-{uuid.uuid4().hex[:12].upper()}"
                contract = Contract(
                    id=contract_id,
                    created_at=now,
                    updated_at=now,
                    loan_id=loan_id,
                    user_id=loan.user_id,
                    status=ContractStatus.DRAFT,
                    date_created=now,
                    download_url=f"{self.document_path}/{contract_id}.pdf"
                )
                self.storage.compare_and_save(self.table_name, contract.id, contract.to_dict(), None)
                self.audit_trail.log_event(
                    AuditEventType.CONTRACT_GENERATED, "contract", contract.id,
                    {"loan_id": loan_id}, actor_id
                )

        log_action(logger, "info", f"Contract {contract.id} generated for loan {loan_id}",
                   user_id=actor_id, action="contract.generate", resource=f"contract:{contract.id}")
        self.events.emit(DomainEvent.CONTRACT_GENERATED, "contract", contract.id,
                         {"loan_id": loan_id, "user_id": contract.user_id})
        return contract

    def send(self, contract_id: str, actor_id: Optional[str] = None) -> Contract:
        """draft -> sent; starts the expiry window and issues the signature request"""
        with self.locks.hold("contract", contract_id):
            with self.storage.atomic():
                contract = self._load_for(contract_id, ContractStatus.SENT)
                now = contract.touch()
                contract.status = ContractStatus.SENT
                contract.date_sent = now
                contract.date_expires = now + timedelta(days=self.expiry_days)
                self._issue_signature_request(contract)
                self._save(contract)
                self.audit_trail.log_event(
                    AuditEventType.CONTRACT_SENT, "contract", contract_id,
                    {"date_expires": contract.date_expires, "signature_request_id": contract.signature_request_id},
                    actor_id
                )

        self._announce(contract, ContractStatus.DRAFT, actor_id, DomainEvent.CONTRACT_SENT)
        self._notify_signature_request(contract)
        return contract

    def view(self, contract_id: str, actor_id: Optional[str] = None) -> Contract:
        """sent -> viewed; no-op once viewed, signed or completed"""
        with self.locks.hold("contract", contract_id):
            with self.storage.atomic():
                contract = self.get(contract_id)
                if contract.status in (ContractStatus.VIEWED, ContractStatus.SIGNED, ContractStatus.COMPLETED):
                    return contract
                contract = self._load_for(contract_id, ContractStatus.VIEWED)
                now = contract.touch()
                contract.status = ContractStatus.VIEWED
                contract.date_viewed = now
                self._save(contract)
                self.audit_trail.log_event(AuditEventType.CONTRACT_VIEWED, "contract", contract_id, {}, actor_id)

        self._announce(contract, ContractStatus.SENT, actor_id)
        return contract

    def sign(self, contract_id: str, actor_id: Optional[str] = None,
             now: Optional[datetime] = None) -> Contract:
        """
        sent|viewed -> signed, activating the loan in the same transaction

        An overdue contract cannot be signed even before the expiry sweep
        has marked it expired.
        """
        now = now or datetime.now(timezone.utc)
        loan_id = self.get(contract_id).loan_id

        with self.locks.hold("contract", contract_id), self.locks.hold("loan", loan_id):
            with self.storage.atomic():
                contract = self._load_for(contract_id, ContractStatus.SIGNED)
                previous = contract.status
                if contract.is_overdue(now):
                    raise InvalidTransition(
                        "contract", contract_id, previous.value, ContractStatus.SIGNED.value,
                        f"Contract {contract_id} expired at {contract.date_expires.isoformat()}"
                    )

                contract.touch()
                contract.status = ContractStatus.SIGNED
                contract.date_signed = now
                self._save(contract)
                self.audit_trail.log_event(
                    AuditEventType.CONTRACT_SIGNED, "contract", contract_id,
                    {"loan_id": loan_id, "signature_request_id": contract.signature_request_id}, actor_id
                )

                loan, loan_previous = self.loans.apply_transition(
                    loan_id, LoanStatus.ACTIVE, actor_id, f"Contract {contract_id} signed"
                )

        self._announce(contract, previous, actor_id, DomainEvent.CONTRACT_SIGNED)
        self.loans.announce(loan, loan_previous, actor_id)
        self._notify(contract.user_id, NotificationTemplate.CONTRACT_SIGNED,
                     {"contract_id": contract_id, "amount": format_rand(loan.amount)})
        return contract

    def cancel(self, contract_id: str, actor_role: Union[UserRole, str],
               actor_id: Optional[str] = None) -> Contract:
        """sent|viewed -> draft, withdrawing the signature request"""
        self._authorize(actor_role, self.cancel_roles, "cancel", contract_id)

        with self.locks.hold("contract", contract_id):
            with self.storage.atomic():
                contract = self._load_for(contract_id, ContractStatus.DRAFT)
                previous = contract.status
                contract.touch()
                contract.status = ContractStatus.DRAFT
                contract.signature_request_id = None
                contract.signature_url = None
                contract.date_expires = None
                contract.date_sent = None
                contract.date_viewed = None
                self._save(contract)
                self.audit_trail.log_event(
                    AuditEventType.CONTRACT_CANCELLED, "contract", contract_id,
                    {"from": previous.value, "role": _role_value(actor_role)}, actor_id
                )

        self._announce(contract, previous, actor_id)
        return contract

    def decline(self, contract_id: str, actor_role: Union[UserRole, str],
                actor_id: Optional[str] = None, reason: Optional[str] = None) -> Contract:
        """sent|viewed -> declined"""
        self._authorize(actor_role, self.decline_roles, "decline", contract_id)

        with self.locks.hold("contract", contract_id):
            with self.storage.atomic():
                contract = self._load_for(contract_id, ContractStatus.DECLINED)
                previous = contract.status
                contract.touch()
                contract.status = ContractStatus.DECLINED
                if reason:
                    contract.notes = reason
                self._save(contract)
                self.audit_trail.log_event(
                    AuditEventType.CONTRACT_DECLINED, "contract", contract_id,
                    {"role": _role_value(actor_role), "reason": reason}, actor_id
                )

        self._announce(contract, previous, actor_id, DomainEvent.CONTRACT_DECLINED)
        return contract

    def resend(self, contract_id: str, actor_id: Optional[str] = None) -> Contract:
        """Issue a fresh signature link for any non-terminal contract; status and expiry are unchanged"""
        with self.locks.hold("contract", contract_id):
            with self.storage.atomic():
                contract = self.get(contract_id)
                if contract.is_terminal:
                    logger.debug(f"Rejected resend of contract {contract_id} in {contract.status.value}")
                    raise InvalidTransition("contract", contract_id, contract.status.value, "resend")
                contract.touch()
                self._issue_signature_request(contract)
                self._save(contract)
                self.audit_trail.log_event(
                    AuditEventType.CONTRACT_RESENT, "contract", contract_id,
                    {"signature_request_id": contract.signature_request_id}, actor_id
                )

        logger.info(f"Contract {contract_id} resent")
        self._notify_signature_request(contract)
        return contract

    def expire(self, contract_id: str, now: Optional[datetime] = None) -> Contract:
        """sent|viewed -> expired, only once date_expires has passed"""
        now = now or datetime.now(timezone.utc)
        with self.locks.hold("contract", contract_id):
            with self.storage.atomic():
                contract = self._load_for(contract_id, ContractStatus.EXPIRED)
                previous = contract.status
                if not contract.is_overdue(now):
                    raise InvalidTransition(
                        "contract", contract_id, previous.value, ContractStatus.EXPIRED.value,
                        f"Contract {contract_id} does not expire until {contract.date_expires.isoformat()}"
                    )
                contract.touch()
                contract.status = ContractStatus.EXPIRED
                self._save(contract)
                self.audit_trail.log_event(
                    AuditEventType.CONTRACT_EXPIRED, "contract", contract_id,
                    {"date_expires": contract.date_expires}
                )

        self._announce(contract, previous, None, DomainEvent.CONTRACT_EXPIRED)
        return contract

    def expire_overdue(self, now: Optional[datetime] = None) -> List[str]:
        """Expire every overdue contract; returns the expired ids"""
        now = now or datetime.now(timezone.utc)
        candidates = [
            Contract.from_dict(d) for d in self.storage.find(
                self.table_name, {"status": [s.value for s in AWAITING_SIGNATURE]}
            )
        ]

        expired = []
        for contract in candidates:
            if not contract.is_overdue(now):
                continue
            try:
                self.expire(contract.id, now)
                expired.append(contract.id)
            except InvalidTransition:
                # Signed, cancelled or declined since the scan
                logger.debug(f"Contract {contract.id} changed before it could be expired")

        if expired:
            logger.info(f"Expired {len(expired)} overdue contract(s)")
        return expired

    def complete(self, contract_id: str, actor_id: Optional[str] = None) -> Contract:
        """Archive a signed contract once its loan is completed"""
        with self.locks.hold("contract", contract_id):
            with self.storage.atomic():
                contract = self._load_for(contract_id, ContractStatus.COMPLETED)
                loan = self.loans.get(contract.loan_id)
                if loan.status != LoanStatus.COMPLETED:
                    raise InvalidTransition(
                        "contract", contract_id, contract.status.value, ContractStatus.COMPLETED.value,
                        f"Loan {loan.id} is {loan.status.value}; contract completes with the loan"
                    )
                now = contract.touch()
                contract.status = ContractStatus.COMPLETED
                contract.date_completed = now
                self._save(contract)
                self.audit_trail.log_event(
                    AuditEventType.CONTRACT_COMPLETED, "contract", contract_id, {"loan_id": loan.id}, actor_id
                )

        self._announce(contract, ContractStatus.SIGNED, actor_id)
        return contract

    def on_loan_completed(self, event: EventPayload) -> None:
        """LOAN_COMPLETED subscriber: archive the loan's signed contracts"""
        for contract in self.list_for_loan(event.entity_id):
            if contract.status == ContractStatus.SIGNED:
                self.complete(contract.id)

    # Queries

    def get(self, contract_id: str) -> Contract:
        """Get contract by ID (NotFound when missing)"""
        data = self.storage.load(self.table_name, contract_id)
        if not data:
            raise NotFound("contract", contract_id)
        return Contract.from_dict(data)

    def open_contract_for(self, loan_id: str) -> Optional[Contract]:
        """The loan's non-terminal contract, if any"""
        for contract in self.list_for_loan(loan_id):
            if not contract.is_terminal:
                return contract
        return None

    def list_for_loan(self, loan_id: str) -> List[Contract]:
        contracts = [Contract.from_dict(d) for d in self.storage.find(self.table_name, {"loan_id": loan_id})]
        contracts.sort(key=lambda c: c.date_created)
        return contracts

    def list_for_user(self, user_id: str) -> List[Contract]:
        contracts = [Contract.from_dict(d) for d in self.storage.find(self.table_name, {"user_id": user_id})]
        contracts.sort(key=lambda c: c.date_created)
        return contracts

    def delete_for_user(self, user_id: str) -> int:
        removed = 0
        for data in self.storage.find(self.table_name, {"user_id": user_id}):
            if self.storage.delete(self.table_name, data['id']):
                removed += 1
        return removed

    # Internals

    def _load_for(self, contract_id: str, target: ContractStatus) -> Contract:
        """Load a contract and check that target is reachable from its status"""
        contract = self.get(contract_id)
        if target not in CONTRACT_TRANSITIONS[contract.status]:
            logger.debug(f"Rejected contract transition {contract_id}: "
                         f"{contract.status.value} -> {target.value}")
            raise InvalidTransition("contract", contract_id, contract.status.value, target.value)
        return contract

    def _authorize(self, actor_role: Union[UserRole, str], allowed: frozenset,
                   action: str, contract_id: str) -> None:
        role = _role_value(actor_role)
        if role not in allowed:
            raise PermissionDenied(f"Role '{role}' may not {action} contract {contract_id}")

    def _issue_signature_request(self, contract: Contract) -> None:
        contract.signature_request_id = f"SIG-{uuid.uuid4().hex[:16].upper()}"
        contract.signature_url = f"{self.base_url}/sign/{contract.signature_request_id}"

    def _announce(self, contract: Contract, previous: ContractStatus, actor_id: Optional[str],
                  event: Optional[DomainEvent] = None) -> None:
        log_action(logger, "info", f"Contract {contract.id} {previous.value} -> {contract.status.value}",
                   user_id=actor_id, action="contract.transition", resource=f"contract:{contract.id}")
        if event:
            self.events.emit(event, "contract", contract.id, {
                "loan_id": contract.loan_id,
                "user_id": contract.user_id,
                "from": previous.value,
                "to": contract.status.value
            })

    def _notify_signature_request(self, contract: Contract) -> None:
        params = {"contract_id": contract.id, "signature_url": contract.signature_url}
        if contract.date_expires is None:
            # draft contracts have no signature window yet
            self._notify(contract.user_id, NotificationTemplate.CONTRACT_READY, params)
            return
        params["date_expires"] = contract.date_expires.date().isoformat()
        self._notify(contract.user_id, NotificationTemplate.CONTRACT_SENT, params)

    def _notify(self, user_id: str, template: NotificationTemplate, params: Dict[str, Any]) -> None:
        if self.notifier:
            self.notifier.dispatch(user_id, template, params)

    def _save(self, contract: Contract) -> None:
        expected = contract.version
        contract.version += 1
        self.storage.compare_and_save(self.table_name, contract.id, contract.to_dict(), expected)
