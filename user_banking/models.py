"""
Domain Models Module

Users own accounts and accounts own transactions. The hierarchy is stored as
flat tables keyed by the parent id (``user_id``, ``account_id``); records never
hold references back to their parents.
"""

import re
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict

from .storage import StorageRecord


USERS_TABLE = "users"
ACCOUNTS_TABLE = "accounts"
TRANSACTIONS_TABLE = "transactions"

EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*$")
MAX_EMAIL_LENGTH = 254


class Role(Enum):
    """Caller roles, ordered by privilege"""
    USER = "USER"
    ADMIN = "ADMIN"
    ROOT = "ROOT"


class Bank(Enum):
    """Banks an account can be held at"""
    ACB = "ACB"
    VCB = "VCB"
    VIB = "VIB"


class TransactionType(Enum):
    """Direction of a transaction's effect on its account"""
    DEPOSIT = "DEPOSIT"
    WITHDRAW = "WITHDRAW"


@dataclass
class User(StorageRecord):
    """Registered user; ``password`` holds the digest, never the raw secret"""
    email: str
    password: str
    role: Role = Role.USER

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'User':
        data = dict(data)
        data['role'] = Role(data.get('role', Role.USER.value))
        return super().from_dict(data)

    def to_public_dict(self) -> Dict[str, Any]:
        """Outward representation without the password digest"""
        return {
            "id": self.id,
            "email": self.email,
            "role": self.role.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class Account(StorageRecord):
    """
    Bank account owned by exactly one user.

    ``balance`` always equals the net effect of the account's existing
    transactions and is never negative in a committed state.
    """
    user_id: int
    name: str
    bank: Bank
    balance: Decimal

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        data = dict(data)
        data['bank'] = Bank(data['bank'])
        data['balance'] = Decimal(str(data['balance']))
        return super().from_dict(data)

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "bank": self.bank.value,
            "balance": str(self.balance),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class Transaction(StorageRecord):
    """Positive amount plus a type tag; type and account never change"""
    account_id: int
    amount: Decimal
    transaction_type: TransactionType

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        data = dict(data)
        data['amount'] = Decimal(str(data['amount']))
        data['transaction_type'] = TransactionType(data['transaction_type'])
        return super().from_dict(data)

    @property
    def effect(self) -> Decimal:
        """Signed change this transaction applies to its account balance"""
        if self.transaction_type == TransactionType.WITHDRAW:
            return -self.amount
        return self.amount

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "amount": str(self.amount),
            "transaction_type": self.transaction_type.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class TransactionListing:
    """Row of a transaction listing, joined with the owning account's bank"""
    id: int
    account_id: int
    bank: Bank
    amount: Decimal
    transaction_type: TransactionType
    created_at: datetime

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "bank": self.bank.value,
            "amount": str(self.amount),
            "transaction_type": self.transaction_type.value,
            "created_at": self.created_at.isoformat(),
        }


# Field validation

def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def is_valid_email(email: str) -> bool:
    if not email or len(email) > MAX_EMAIL_LENGTH:
        return False
    return EMAIL_PATTERN.match(email) is not None


def is_valid_password(password: str, min_length: int = 8) -> bool:
    return bool(password) and len(password) >= min_length


def validate_user(user: User) -> Dict[str, str]:
    """Field errors for a user about to be written"""
    errors = {}
    if not user.email:
        errors['email'] = "zero value"
    elif not is_valid_email(user.email):
        errors['email'] = "invalid format"
    if not user.password:
        errors['password'] = "zero value"
    return errors


def validate_account(account: Account) -> Dict[str, str]:
    """Field errors for an account about to be written"""
    errors = {}
    if not account.user_id:
        errors['user_id'] = "zero value"
    if len(account.name) > 100:
        errors['name'] = "greater than max"
    if account.balance < 0:
        errors['balance'] = "less than min"
    return errors


def validate_transaction(transaction: Transaction) -> Dict[str, str]:
    """Field errors for a transaction about to be written"""
    errors = {}
    if not transaction.account_id:
        errors['account_id'] = "zero value"
    if transaction.amount <= 0:
        errors['amount'] = "less than min"
    return errors
