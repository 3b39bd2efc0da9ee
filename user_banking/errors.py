"""
Error Taxonomy Module

Maps every domain failure onto a small set of structured error kinds. Each
named error carries a stable machine-readable code, a human-readable message
and an optional field-level detail map.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(Enum):
    """Structured error kinds exposed to callers"""
    BAD_REQUEST = ("bad_request", 400)
    UNAUTHENTICATED = ("unauthenticated", 401)
    PERMISSION_DENIED = ("permission_denied", 403)
    NOT_FOUND = ("not_found", 404)
    CONFLICT = ("conflict", 409)
    CANCELED = ("canceled", 499)
    INTERNAL = ("internal", 500)
    DEADLINE_EXCEEDED = ("deadline_exceeded", 504)

    def __init__(self, label: str, http_status: int):
        self.label = label
        self.http_status = http_status


class ServiceError(Exception):
    """Base class for every error surfaced to callers"""
    kind: ErrorKind = ErrorKind.INTERNAL
    code: str = "internal"
    default_message: str = "internal server error"
    default_details: Dict[str, str] = {}

    def __init__(self, message: Optional[str] = None,
                 details: Optional[Dict[str, str]] = None):
        self.message = message or self.default_message
        self.details = dict(self.default_details if details is None else details)
        super().__init__(self.message)

    @property
    def http_status(self) -> int:
        return self.kind.http_status

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for the transport layer"""
        result: Dict[str, Any] = {
            "kind": self.kind.label,
            "code": self.code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


# Kinds

class BadRequest(ServiceError):
    kind = ErrorKind.BAD_REQUEST
    code = "bad_request"
    default_message = "bad request"


class Unauthenticated(ServiceError):
    kind = ErrorKind.UNAUTHENTICATED
    code = "unauthenticated"
    default_message = "unauthenticated"


class PermissionDenied(ServiceError):
    kind = ErrorKind.PERMISSION_DENIED
    code = "permission_denied"
    default_message = "permission denied"


class NotFound(ServiceError):
    kind = ErrorKind.NOT_FOUND
    code = "not_found"
    default_message = "not found"


class Conflict(ServiceError):
    kind = ErrorKind.CONFLICT
    code = "conflict"
    default_message = "conflict"


class Internal(ServiceError):
    """Opaque internal failure; never carries internal identifiers"""
    kind = ErrorKind.INTERNAL
    code = "internal"
    default_message = "internal server error"

    def __init__(self, message: Optional[str] = None,
                 details: Optional[Dict[str, str]] = None):
        # Callers always see the generic message
        super().__init__(self.default_message, {})


class Canceled(ServiceError):
    kind = ErrorKind.CANCELED
    code = "canceled"
    default_message = "call canceled by caller"


class DeadlineExceeded(ServiceError):
    kind = ErrorKind.DEADLINE_EXCEEDED
    code = "deadline_exceeded"
    default_message = "call deadline exceeded"


# Users

class MissingEmail(BadRequest):
    code = "missing_email"
    default_message = "Email is required"
    default_details = {"email": "Missing email"}


class InvalidEmail(BadRequest):
    code = "invalid_email"
    default_message = "Invalid email"
    default_details = {"email": "The email provided is invalid"}


class DuplicateEmail(Conflict):
    code = "duplicate_email"
    default_message = "Duplicate email"
    default_details = {"email": "A user with this email address already exists"}


class InvalidPassword(BadRequest):
    code = "invalid_password"
    default_message = "Invalid password"
    default_details = {"password": "Password must be at least 8 characters long"}


class IncorrectPassword(Unauthenticated):
    code = "incorrect_password"
    default_message = "Email or password is incorrect"
    default_details = {"password": "Email or password is incorrect"}


class MissingUserID(BadRequest):
    code = "missing_user_id"
    default_message = "Missing user id"
    default_details = {"user_id": "Missing user id"}


class UserNotFound(NotFound):
    code = "user_not_found"
    default_message = "Not found user"
    default_details = {"user": "User not found"}


# Accounts

class MissingAccountID(BadRequest):
    code = "missing_account_id"
    default_message = "Missing account id"
    default_details = {"account_id": "Missing account id"}


class InvalidAccountBalance(BadRequest):
    code = "invalid_account_balance"
    default_message = "Invalid account balance"
    default_details = {"balance": "Balance must not be negative"}


class AccountNotFound(NotFound):
    code = "account_not_found"
    default_message = "Not found account"
    default_details = {"account": "Account not found"}


# Transactions

class MissingTransactionID(BadRequest):
    code = "missing_transaction_id"
    default_message = "Missing transaction id"
    default_details = {"transaction_id": "Missing transaction id"}


class InvalidTransactionAmount(BadRequest):
    code = "invalid_transaction_amount"
    default_message = "Invalid transaction amount"
    default_details = {"amount": "Amount must be greater than zero"}


class InvalidWithdrawAmount(BadRequest):
    code = "invalid_withdraw_amount"
    default_message = "Invalid withdraw amount"
    default_details = {"amount": "Withdraw amount exceeds account balance"}


class InsufficientBalance(BadRequest):
    code = "insufficient_balance"
    default_message = "Account balance would become negative"
    default_details = {"balance": "Removing these transactions leaves a negative balance"}


class TransactionNotFound(NotFound):
    code = "transaction_not_found"
    default_message = "Not found transaction"
    default_details = {"transaction": "Transaction not found"}


# Update masks

class ImmutableField(BadRequest):
    code = "immutable_field"
    default_message = "Cannot update immutable field"


class InvalidUpdateMask(BadRequest):
    code = "invalid_update_mask"
    default_message = "Invalid field specified"


class ValidationFailed(BadRequest):
    code = "validation_failed"
    default_message = "validate failed"


# Tokens

class MissingToken(BadRequest):
    code = "missing_token"
    default_message = "Token missing"
    default_details = {"token": "Missing token"}


class TokenInvalid(Unauthenticated):
    code = "token_invalid"
    default_message = "Invalid token"
    default_details = {"token": "Token invalid"}


class TokenExpired(Unauthenticated):
    code = "token_expired"
    default_message = "Token expired"
    default_details = {"token": "Token expired"}


# Storage

class StorageFailure(Internal):
    code = "storage_failure"


def immutable_field(field_name: str) -> ImmutableField:
    """Build the error for an update mask naming an immutable field"""
    return ImmutableField(
        f"cannot update {field_name}",
        {"update_mask": f"cannot update {field_name} field"},
    )


def invalid_update_mask(entity: str, field_name: str) -> InvalidUpdateMask:
    """Build the error for an update mask naming an unknown field"""
    return InvalidUpdateMask(
        details={"update_mask": f"The {entity} message type does not have a field called {field_name!r}"},
    )
