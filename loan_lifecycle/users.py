"""
User Directory Module

Manages applicant profiles: contact details used for notifications, the
employment and financial attributes that feed profile completion scoring,
and the id references to the user's documents, applications and loans.
Users are never physically deleted in normal flow; they are deactivated.
"""

from decimal import Decimal, InvalidOperation
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
import logging
import re
import uuid

from .storage import StorageInterface, StorageRecord, parse_decimal
from .audit import AuditTrail, AuditEventType
from .errors import NotFound, ValidationError

logger = logging.getLogger("lendflow.users")


class UserRole(Enum):
    """Caller roles resolved by the authentication layer"""
    USER = "user"
    ADMIN = "admin"


class AccountStatus(Enum):
    """Account status (soft deactivation)"""
    ACTIVE = "active"
    INACTIVE = "inactive"


# Attributes an applicant may edit through update_profile
PROFILE_FIELDS = (
    "first_name", "last_name", "email", "phone", "id_number", "date_of_birth",
    "address", "suburb", "city", "state", "zip_code",
    "employment_status", "employer_name", "job_title", "years_employed", "monthly_income",
    "bank_name", "account_type", "credit_score", "monthly_debt",
)

_DECIMAL_FIELDS = ("monthly_income", "monthly_debt")


def _profile_amount(name: str, value: Any) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{name} must be numeric, got {value!r}")
    if not amount.is_finite():
        raise ValidationError(f"{name} must be a finite number, got {value!r}")
    return amount


@dataclass
class User(StorageRecord):
    """
    Applicant profile (root aggregate, holds references only)
    """
    first_name: str
    last_name: str
    email: str
    phone: Optional[str] = None
    id_number: Optional[str] = None
    date_of_birth: Optional[str] = None  # ISO date

    # Address
    address: Optional[str] = None
    suburb: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None

    # Employment
    employment_status: Optional[str] = None
    employer_name: Optional[str] = None
    job_title: Optional[str] = None
    years_employed: Optional[int] = None
    monthly_income: Optional[Decimal] = None

    # Financial
    bank_name: Optional[str] = None
    account_type: Optional[str] = None
    credit_score: Optional[int] = None
    monthly_debt: Optional[Decimal] = None

    role: UserRole = UserRole.USER
    account_status: AccountStatus = AccountStatus.ACTIVE

    existing_loan_ids: List[str] = field(default_factory=list)
    document_ids: List[str] = field(default_factory=list)
    application_ids: List[str] = field(default_factory=list)

    def __post_init__(self):
        email_pattern = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'
        if not re.match(email_pattern, self.email or ""):
            raise ValidationError(f"Invalid email format: {self.email!r}")
        if self.monthly_income is not None and self.monthly_income < 0:
            raise ValidationError("Monthly income cannot be negative")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    @property
    def is_active(self) -> bool:
        return self.account_status == AccountStatus.ACTIVE

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'User':
        data = dict(data)
        data['role'] = UserRole(data.get('role', UserRole.USER.value))
        data['account_status'] = AccountStatus(data.get('account_status', AccountStatus.ACTIVE.value))
        for name in _DECIMAL_FIELDS:
            data[name] = parse_decimal(data.get(name))
        return super().from_dict(data)


class UserDirectory:
    """
    Registers users and maintains their reference lists
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "users"

    def register(self, first_name: str, last_name: str, email: str,
                 phone: Optional[str] = None, role: UserRole = UserRole.USER,
                 user_id: Optional[str] = None, **profile: Any) -> User:
        """
        Register a new user

        Args:
            first_name: Given name
            last_name: Family name
            email: Email address (must be unique)
            phone: Local or international phone number used for SMS
            role: USER or ADMIN
            user_id: Optional caller-chosen id
            **profile: Any further PROFILE_FIELDS values

        Returns:
            Created User
        """
        unknown = set(profile) - set(PROFILE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown profile fields: {', '.join(sorted(unknown))}")

        if self.storage.find(self.table_name, {"email": email}):
            raise ValidationError(f"Email already in use: {email}")

        now = datetime.now(timezone.utc)
        for name in _DECIMAL_FIELDS:
            if profile.get(name) is not None:
                profile[name] = _profile_amount(name, profile[name])

        user = User(
            id=user_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            first_name=first_name,
            last_name=last_name,
            email=email,
            phone=phone,
            role=role,
            **profile
        )

        with self.storage.atomic():
            self._save(user)
            self.audit_trail.log_event(
                AuditEventType.USER_REGISTERED, "user", user.id,
                {"email": email, "role": role.value}
            )

        logger.info(f"Registered user {user.id}")
        return user

    def get(self, user_id: str) -> User:
        """Get user by ID (NotFound when missing)"""
        data = self.storage.load(self.table_name, user_id)
        if not data:
            raise NotFound("user", user_id)
        return User.from_dict(data)

    def find(self, user_id: str) -> Optional[User]:
        """Get user by ID or None"""
        data = self.storage.load(self.table_name, user_id)
        return User.from_dict(data) if data else None

    def update_profile(self, user_id: str, actor_id: Optional[str] = None, **changes: Any) -> User:
        """Update editable profile fields"""
        unknown = set(changes) - set(PROFILE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown profile fields: {', '.join(sorted(unknown))}")

        with self.storage.atomic():
            user = self.get(user_id)
            for name, value in changes.items():
                if name in _DECIMAL_FIELDS and value is not None:
                    value = _profile_amount(name, value)
                setattr(user, name, value)
            # Re-run field validation on the edited record
            user.__post_init__()
            user.touch()
            self._save(user)
            self.audit_trail.log_event(
                AuditEventType.USER_UPDATED, "user", user_id,
                {"fields": sorted(changes)}, actor_id
            )
        return user

    def deactivate(self, user_id: str, actor_id: Optional[str] = None) -> User:
        """Soft-deactivate a user"""
        with self.storage.atomic():
            user = self.get(user_id)
            user.account_status = AccountStatus.INACTIVE
            user.touch()
            self._save(user)
            self.audit_trail.log_event(AuditEventType.USER_DEACTIVATED, "user", user_id, {}, actor_id)
        logger.info(f"Deactivated user {user_id}")
        return user

    def link(self, user_id: str, list_name: str, entity_id: str) -> None:
        """Append an entity id to one of the user's reference lists"""
        if list_name not in ("existing_loan_ids", "document_ids", "application_ids"):
            raise ValueError(f"Unknown reference list: {list_name}")
        with self.storage.atomic():
            user = self.get(user_id)
            refs = getattr(user, list_name)
            if entity_id not in refs:
                refs.append(entity_id)
                user.touch()
                self._save(user)

    def delete(self, user_id: str) -> bool:
        """Physically remove the user record (explicit purge only)"""
        return self.storage.delete(self.table_name, user_id)

    def _save(self, user: User) -> None:
        self.storage.save(self.table_name, user.id, user.to_dict())

