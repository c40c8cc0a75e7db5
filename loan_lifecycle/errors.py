"""
Lifecycle Errors

Typed failures returned to the direct caller of every orchestrator operation.
The transport layer decides how to present them; nothing here knows about HTTP.
"""

from typing import Iterable, List, Optional


class LendflowError(Exception):
    """Base exception for all lifecycle errors"""

    error_code = "lendflow_error"

    def __init__(self, message: str, error_code: Optional[str] = None):
        self.message = message
        if error_code:
            self.error_code = error_code
        super().__init__(self.message)


class InvalidTransition(LendflowError):
    """Raised when an illegal state change is requested"""

    error_code = "invalid_transition"

    def __init__(self, entity_type: str, entity_id: str, current: str, requested: str,
                 message: Optional[str] = None):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.current = current
        self.requested = requested
        super().__init__(
            message or f"Cannot move {entity_type} {entity_id} from '{current}' to '{requested}'"
        )


class GateNotSatisfied(LendflowError):
    """Raised when required documents are missing or unverified"""

    error_code = "gate_not_satisfied"

    def __init__(self, user_id: str, missing_types: Iterable[str]):
        self.user_id = user_id
        self.missing_types: List[str] = list(missing_types)
        super().__init__(
            f"User {user_id} has no verified document of type(s): {', '.join(self.missing_types)}"
        )


class Conflict(LendflowError):
    """Raised when a stale-state race is detected; retry after re-reading"""

    error_code = "conflict"


class DuplicateContract(LendflowError):
    """Raised when a loan already has a non-terminal contract"""

    error_code = "duplicate_contract"

    def __init__(self, loan_id: str, existing_contract_id: str):
        self.loan_id = loan_id
        self.existing_contract_id = existing_contract_id
        super().__init__(
            f"Loan {loan_id} already has open contract {existing_contract_id}"
        )


class InvalidLoanTerms(LendflowError):
    """Raised for principal, rate or term values that cannot be amortized"""

    error_code = "invalid_loan_terms"


class NotFound(LendflowError):
    """Raised when a referenced entity does not exist"""

    error_code = "not_found"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type.capitalize()} {entity_id} not found")


class ValidationError(LendflowError):
    """Raised when operation input is malformed"""

    error_code = "validation_error"


class PermissionDenied(LendflowError):
    """Raised when the resolved caller role may not perform an action"""

    error_code = "permission_denied"
