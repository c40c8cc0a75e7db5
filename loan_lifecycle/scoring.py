"""
Profile Completion Scoring

Scores how complete a user's profile is, counting one point per filled
profile field and up to one point per required document type.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, List, Optional, Tuple

from .documents import (
    Document, DocumentType, DocumentTypeLike, VerificationStatus,
    REQUIRED_DOCUMENT_TYPES, as_document_types
)
from .users import User


# (fields, message shown when any field is missing)
PROFILE_CATEGORIES: Dict[str, Tuple[Tuple[str, ...], str]] = {
    "personal": (
        ("first_name", "last_name", "email", "phone", "id_number", "date_of_birth"),
        "Complete personal information",
    ),
    "address": (
        ("address", "suburb", "city", "state", "zip_code"),
        "Add your address details",
    ),
    "employment": (
        ("employment_status", "employer_name", "job_title", "years_employed", "monthly_income"),
        "Complete employment details",
    ),
    "financial": (
        ("bank_name", "account_type", "credit_score", "monthly_debt"),
        "Add financial information",
    ),
}

VERIFIED_POINTS = Decimal("1")
PENDING_POINTS = Decimal("0.5")


def _is_present(value) -> bool:
    # Zero is a real answer for numeric fields such as monthly_debt
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


class ProfileCompletionScorer:
    """
    Computes the 0-100 profile completion score and the list of items the
    applicant still has to provide.
    """

    def __init__(self, required_types: Optional[Iterable[DocumentTypeLike]] = None):
        self.required_types = as_document_types(required_types or REQUIRED_DOCUMENT_TYPES)

    def score(self, user: User, documents: Iterable[Document]) -> int:
        """
        Score a profile

        Args:
            user: User being scored
            documents: The user's documents (any status)

        Returns:
            Integer percentage, rounded half-up and clamped to [0, 100]
        """
        earned = Decimal("0")
        total = 0

        for fields, _ in PROFILE_CATEGORIES.values():
            total += len(fields)
            earned += sum(1 for name in fields if _is_present(getattr(user, name, None)))

        statuses = self._statuses_by_type(documents)
        total += len(self.required_types)
        for doc_type in self.required_types:
            found = statuses.get(doc_type, set())
            if VerificationStatus.VERIFIED in found:
                earned += VERIFIED_POINTS
            elif VerificationStatus.PENDING in found:
                earned += PENDING_POINTS

        if total == 0:
            return 100

        percentage = (earned * 100 / Decimal(total)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        return max(0, min(100, int(percentage)))

    def missing_items(self, user: User, documents: Iterable[Document]) -> List[str]:
        """Human-readable list of what is still missing, category order first"""
        items = []
        for fields, message in PROFILE_CATEGORIES.values():
            if any(not _is_present(getattr(user, name, None)) for name in fields):
                items.append(message)

        statuses = self._statuses_by_type(documents)
        for doc_type in self.required_types:
            found = statuses.get(doc_type)
            if not found:
                items.append(f"Upload {doc_type.display_name}")
            elif found == {VerificationStatus.REJECTED}:
                items.append(f"Reupload {doc_type.display_name} (rejected)")

        return items

    @staticmethod
    def _statuses_by_type(documents: Iterable[Document]) -> Dict[DocumentType, set]:
        statuses: Dict[DocumentType, set] = {}
        for document in documents:
            statuses.setdefault(document.type, set()).add(document.verification_status)
        return statuses
