"""
Document Verification Module

Tracks supporting documents and their verification status, and answers the
gate question used by the application workflow: does this user have a
verified document of every required type?
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Any, Union
from enum import Enum
import logging
import uuid

from .storage import StorageInterface, StorageRecord, parse_datetime
from .audit import AuditTrail, AuditEventType
from .events import EventDispatcher, DomainEvent
from .locking import EntityLockRegistry
from .users import UserDirectory
from .errors import NotFound, ValidationError
from .logging_config import log_action

logger = logging.getLogger("lendflow.documents")


class DocumentType(Enum):
    """Supported document types"""
    # Required for loan eligibility
    ID = "id"
    PROOF_OF_RESIDENCE = "proof_of_residence"
    BANK_STATEMENT = "bank_statement"
    PAYSLIP = "payslip"
    # Optional supporting documents
    PROOF_OF_INCOME = "proof_of_income"
    EMPLOYMENT_VERIFICATION = "employment_verification"
    OTHER = "other"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES.get(self, self.value.replace("_", " ").title())


_DISPLAY_NAMES = {
    DocumentType.ID: "ID Document",
    DocumentType.PROOF_OF_RESIDENCE: "Proof of Residence",
    DocumentType.BANK_STATEMENT: "Bank Statements",
    DocumentType.PAYSLIP: "Latest Payslip",
    DocumentType.PROOF_OF_INCOME: "Proof of Income",
    DocumentType.EMPLOYMENT_VERIFICATION: "Employment Verification",
}

REQUIRED_DOCUMENT_TYPES = (
    DocumentType.ID,
    DocumentType.PROOF_OF_RESIDENCE,
    DocumentType.BANK_STATEMENT,
    DocumentType.PAYSLIP,
)


class VerificationStatus(Enum):
    """Verification status of a document"""
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


DocumentTypeLike = Union[DocumentType, str]


def as_document_types(types: Iterable[DocumentTypeLike]) -> List[DocumentType]:
    """Coerce strings to DocumentType, preserving order and dropping duplicates"""
    result = []
    for t in types:
        try:
            doc_type = t if isinstance(t, DocumentType) else DocumentType(t)
        except ValueError:
            raise ValidationError(f"Unknown document type: {t!r}")
        if doc_type not in result:
            result.append(doc_type)
    return result


@dataclass
class Document(StorageRecord):
    """Uploaded supporting document. type and user_id never change after creation."""
    user_id: str
    type: DocumentType
    name: str
    date_uploaded: datetime
    verification_status: VerificationStatus = VerificationStatus.PENDING
    notes: Optional[str] = None
    file_type: Optional[str] = None
    file_size: Optional[int] = None
    verified_by: Optional[str] = None
    verified_at: Optional[datetime] = None

    @property
    def is_verified(self) -> bool:
        return self.verification_status == VerificationStatus.VERIFIED

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Document':
        data = dict(data)
        data['type'] = DocumentType(data['type'])
        data['verification_status'] = VerificationStatus(data['verification_status'])
        data['date_uploaded'] = parse_datetime(data['date_uploaded'])
        data['verified_at'] = parse_datetime(data.get('verified_at'))
        return super().from_dict(data)


class DocumentVerificationGate:
    """
    Document uploads, admin verification, and the required-document gate
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        users: UserDirectory,
        events: Optional[EventDispatcher] = None,
        locks: Optional[EntityLockRegistry] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.users = users
        self.events = events or EventDispatcher()
        self.locks = locks or EntityLockRegistry()
        self.table_name = "documents"

    def upload(
        self,
        user_id: str,
        doc_type: DocumentTypeLike,
        name: str,
        file_type: Optional[str] = None,
        file_size: Optional[int] = None
    ) -> Document:
        """
        Register an uploaded document in pending state

        Args:
            user_id: Owning user
            doc_type: DocumentType or its string value
            name: Original file name
            file_type: MIME type, if known
            file_size: Size in bytes, if known

        Returns:
            Created Document
        """
        doc_type = as_document_types([doc_type])[0]
        self.users.get(user_id)

        now = datetime.now(timezone.utc)
        document = Document(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            type=doc_type,
            name=name,
            date_uploaded=now,
            file_type=file_type,
            file_size=file_size
        )

        with self.storage.atomic():
            self._save(document)
            self.users.link(user_id, "document_ids", document.id)
            self.audit_trail.log_event(
                AuditEventType.DOCUMENT_UPLOADED, "document", document.id,
                {"user_id": user_id, "type": doc_type.value}, user_id
            )

        self.events.emit(DomainEvent.DOCUMENT_UPLOADED, "document", document.id,
                         {"user_id": user_id, "type": doc_type.value})
        return document

    def get(self, document_id: str) -> Document:
        """Get document by ID (NotFound when missing)"""
        data = self.storage.load(self.table_name, document_id)
        if not data:
            raise NotFound("document", document_id)
        return Document.from_dict(data)

    def list_for_user(self, user_id: str) -> List[Document]:
        """All documents owned by a user, oldest first"""
        documents = [Document.from_dict(d) for d in self.storage.find(self.table_name, {"user_id": user_id})]
        documents.sort(key=lambda d: d.date_uploaded)
        return documents

    def verify(
        self,
        document_id: str,
        outcome: Union[VerificationStatus, str],
        actor_id: Optional[str] = None,
        note: Optional[str] = None
    ) -> Document:
        """
        Record an admin verification decision

        Re-verifying an already decided document overwrites its status. Every
        call publishes DOCUMENT_VERIFIED so completion is recomputed for the
        owner and their open applications.

        Args:
            document_id: Document to verify
            outcome: VERIFIED or REJECTED
            actor_id: Admin performing the verification
            note: Reason; mandatory for rejection

        Returns:
            Updated Document
        """
        try:
            outcome = VerificationStatus(outcome)
        except ValueError:
            raise ValidationError(f"Unknown verification outcome: {outcome!r}")
        if outcome == VerificationStatus.PENDING:
            raise ValidationError("Verification outcome must be 'verified' or 'rejected'")
        if outcome == VerificationStatus.REJECTED and not (note and note.strip()):
            raise ValidationError("A note is required when rejecting a document")

        with self.locks.hold("document", document_id):
            with self.storage.atomic():
                document = self.get(document_id)
                previous = document.verification_status

                now = document.touch()
                document.verification_status = outcome
                document.notes = note if note is not None else document.notes
                document.verified_by = actor_id
                document.verified_at = now
                self._save(document)

                self.audit_trail.log_event(
                    AuditEventType.DOCUMENT_VERIFIED, "document", document_id,
                    {"from": previous.value, "to": outcome.value, "note": note}, actor_id
                )

        log_action(logger, "info", f"Document {document_id} {outcome.value}",
                   user_id=actor_id, action="document.verify", resource=f"document:{document_id}")

        self.events.emit(DomainEvent.DOCUMENT_VERIFIED, "document", document_id, {
            "user_id": document.user_id,
            "type": document.type.value,
            "status": outcome.value
        })
        return document

    def is_satisfied(self, user_id: str, required_types: Iterable[DocumentTypeLike] = REQUIRED_DOCUMENT_TYPES) -> bool:
        """True iff every required type has at least one verified document of the user"""
        return not self.missing_types(user_id, required_types)

    def missing_types(self, user_id: str,
                      required_types: Iterable[DocumentTypeLike] = REQUIRED_DOCUMENT_TYPES) -> List[DocumentType]:
        """Required types without a verified document, in the order given"""
        verified = {
            d.type for d in self.list_for_user(user_id)
            if d.verification_status == VerificationStatus.VERIFIED
        }
        return [t for t in as_document_types(required_types) if t not in verified]

    def delete_for_user(self, user_id: str) -> int:
        """Remove every document of a user (explicit purge only)"""
        removed = 0
        for data in self.storage.find(self.table_name, {"user_id": user_id}):
            if self.storage.delete(self.table_name, data['id']):
                removed += 1
        return removed

    def _save(self, document: Document) -> None:
        self.storage.save(self.table_name, document.id, document.to_dict())
