"""
Ledger Service Module

User, account and transaction lifecycle. Every mutating operation runs as one
atomic unit of work (begin, validate, read, compute, write, commit) so an
account balance always equals the net effect of its existing transactions and
never goes negative. Validation failures are raised before any write; a
failure after a write rolls back the whole unit.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from .cache import UserCache
from .currency import Currency, Money, Number, to_decimal
from .errors import (
    AccountNotFound, DuplicateEmail, InsufficientBalance, InvalidAccountBalance,
    InvalidEmail, InvalidPassword, InvalidTransactionAmount, InvalidWithdrawAmount,
    MissingAccountID, MissingEmail, MissingToken, MissingTransactionID,
    MissingUserID, IncorrectPassword, ServiceError, StorageFailure, TokenInvalid,
    TransactionNotFound, UserNotFound, ValidationFailed, immutable_field,
    invalid_update_mask
)
from .logging_config import get_logger, log_action
from .models import (
    ACCOUNTS_TABLE, TRANSACTIONS_TABLE, USERS_TABLE, Account, Bank, Role,
    Transaction, TransactionListing, TransactionType, User, is_valid_email,
    is_valid_password, normalize_email, validate_account, validate_transaction,
    validate_user
)
from .passwords import PasswordHasher
from .storage import StorageError, StorageInterface, UniqueConstraintError
from .tokens import ClaimsCodec


USER_MUTABLE_FIELDS = ("email", "password")
TRANSACTION_MUTABLE_FIELDS = ("amount",)
TRANSACTION_IMMUTABLE_FIELDS = ("id", "account_id", "transaction_type")


@dataclass
class AuthResult:
    """User plus a freshly issued token"""
    user: User
    token: str
    created: bool = False


@dataclass
class AccountResult:
    account: Account
    opening_transaction: Optional[Transaction] = None
    created: bool = True


@dataclass
class TransactionResult:
    """Transaction together with its account's balance after the write"""
    transaction: Transaction
    balance: Decimal
    created: bool = False


@dataclass
class DeleteResult:
    ids: List[int]
    balances: Dict[int, Decimal] = field(default_factory=dict)


@dataclass
class ReconcileResult:
    account_id: int
    stored_balance: Decimal
    derived_balance: Decimal

    @property
    def consistent(self) -> bool:
        return self.stored_balance == self.derived_balance


def _require_id(value: Any, error_cls) -> int:
    """Coerce an identifier to a positive int or raise ``error_cls``"""
    if value is None or isinstance(value, bool):
        raise error_cls()
    try:
        ident = int(value)
    except (TypeError, ValueError):
        raise error_cls()
    if ident <= 0:
        raise error_cls()
    return ident


def _optional_id(value: Any, error_cls) -> Optional[int]:
    if value is None:
        return None
    return _require_id(value, error_cls)


class LedgerService:
    """User, account and transaction operations with balance invariants"""

    def __init__(self, storage: StorageInterface, codec: ClaimsCodec,
                 hasher: Optional[PasswordHasher] = None,
                 currency: Currency = Currency.VND,
                 password_min_length: int = 8,
                 cache: Optional[UserCache] = None,
                 logger: Optional[logging.Logger] = None):
        self.storage = storage
        self.codec = codec
        self.hasher = hasher or PasswordHasher()
        self.currency = currency
        self.password_min_length = password_min_length
        self.cache = cache
        self.logger = logger or get_logger("user_banking.ledger")

        self.storage.add_unique_constraint(USERS_TABLE, "email")

    # Units of work

    @contextmanager
    def _unit(self, action: str):
        """Atomic unit of work; store faults surface as StorageFailure"""
        try:
            with self.storage.atomic():
                yield
        except ServiceError:
            raise
        except StorageError as e:
            log_action(self.logger, "error", f"storage failure during {action}",
                       action=action, resource="storage", extra={"error": str(e)},
                       exc_info=True)
            raise StorageFailure() from e

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _money(self, value: Number) -> Money:
        return Money(to_decimal(value), self.currency)

    def _parse_amount(self, value: Any, error_cls) -> Money:
        if value is None:
            raise error_cls()
        try:
            return self._money(value)
        except ValueError:
            raise error_cls()

    def _shift(self, balance: Money, delta: Money, error_cls) -> Money:
        """``balance + delta``; ``error_cls`` when the result overflows decimal precision"""
        try:
            return balance + delta
        except ValueError:
            raise error_cls()

    def _check_password(self, password: str) -> None:
        if not is_valid_password(password, self.password_min_length):
            raise InvalidPassword(details={
                "password": f"Password must be at least {self.password_min_length} characters long"
            })

    def _raise_if_invalid(self, errors: Dict[str, str]) -> None:
        if errors:
            raise ValidationFailed(details=errors)

    # Lookups

    def _load_user(self, user_id: int) -> Optional[User]:
        data = self.storage.load(USERS_TABLE, user_id)
        return User.from_dict(data) if data else None

    def _find_account(self, user_id: int, account_id: int) -> Optional[Account]:
        """Account ``account_id`` if it belongs to ``user_id``"""
        data = self.storage.load(ACCOUNTS_TABLE, account_id)
        if not data or data.get('user_id') != user_id:
            return None
        return Account.from_dict(data)

    def _user_accounts(self, user_id: int, account_id: Optional[int] = None) -> List[Account]:
        filters: Dict[str, Any] = {'user_id': user_id}
        if account_id is not None:
            filters['id'] = account_id
        return [Account.from_dict(data) for data in self.storage.find(ACCOUNTS_TABLE, filters)]

    def _account_transactions(self, account_id: int) -> List[Transaction]:
        return [Transaction.from_dict(data)
                for data in self.storage.find(TRANSACTIONS_TABLE, {'account_id': account_id})]

    def _save(self, table: str, record) -> None:
        self.storage.save(table, record.id, record.to_dict())

    # Users

    def create_user(self, email: str, password: str, role: Role = Role.USER) -> AuthResult:
        """
        Sign up a user and issue their first token.

        Raises:
            InvalidEmail: Missing or malformed email
            InvalidPassword: Password shorter than the configured minimum
            DuplicateEmail: Email already registered
        """
        email = normalize_email(email)
        if not is_valid_email(email):
            raise InvalidEmail()
        self._check_password(password)
        digest = self.hasher.hash(password)

        with self._unit("create_user"):
            now = self._now()
            user = User(
                id=self.storage.next_id(USERS_TABLE),
                created_at=now,
                updated_at=now,
                email=email,
                password=digest,
                role=role
            )
            self._raise_if_invalid(validate_user(user))
            try:
                self._save(USERS_TABLE, user)
            except UniqueConstraintError:
                raise DuplicateEmail()
            token = self.codec.issue(user)
            if self.cache:
                self.cache.set(user)
        log_action(self.logger, "info", "user created", user_id=user.id,
                   action="create_user", resource="user")
        return AuthResult(user=user, token=token, created=True)

    def login(self, email: str, password: str) -> AuthResult:
        """
        Exchange email and password for a fresh token.

        Raises:
            MissingEmail, InvalidEmail, InvalidPassword: Malformed input
            UserNotFound: No user with that email (case-insensitive)
            IncorrectPassword: Password does not match the stored digest
        """
        if not email:
            raise MissingEmail()
        email = normalize_email(email)
        if not is_valid_email(email):
            raise InvalidEmail()
        if not password:
            raise InvalidPassword()

        rows = self.storage.find(USERS_TABLE, {'email': email})
        if not rows:
            raise UserNotFound()
        user = User.from_dict(rows[0])

        if not self.hasher.verify(user.password, password):
            log_action(self.logger, "warning", "login failed", user_id=user.id,
                       action="login", resource="auth", extra={"reason": "incorrect_password"})
            raise IncorrectPassword()

        token = self.codec.issue(user)
        log_action(self.logger, "info", "user authenticated", user_id=user.id,
                   action="login", resource="auth")
        return AuthResult(user=user, token=token)

    def get_user(self, user_id: int) -> User:
        """Look up a user, reading through the cache when one is configured"""
        user_id = _require_id(user_id, MissingUserID)
        if self.cache:
            cached = self.cache.get(user_id)
            if cached is not None:
                return cached

        # Fill under the unit lock; updates evict under it too
        with self._unit("get_user"):
            user = self._load_user(user_id)
            if user is None:
                raise UserNotFound()
            if self.cache:
                self.cache.set(user)
        return user

    def list_users(self, user_id: Optional[int] = None, email: Optional[str] = None) -> List[User]:
        """Users matching an id and/or email substring, newest first"""
        if user_id is not None:
            rows = self.storage.find(USERS_TABLE, {'id': _require_id(user_id, MissingUserID)})
        else:
            rows = self.storage.load_all(USERS_TABLE)
        users = [User.from_dict(data) for data in rows]

        if email:
            needle = email.strip().lower()
            users = [u for u in users if needle in u.email]

        if not users:
            raise UserNotFound()
        return sorted(users, key=lambda u: (u.created_at, u.id), reverse=True)

    def update_user(self, user_id: int, fields: Optional[Mapping[str, Any]] = None,
                    update_mask: Optional[Sequence[str]] = None) -> User:
        """
        Update a user's email and/or password.

        Without a mask every mutable field is replaced; with a mask only the
        named fields are applied. The merged user is re-validated before the
        write.

        Raises:
            MissingUserID: No user id given
            ImmutableField: Mask names ``id``
            InvalidUpdateMask: Mask names an unknown field
            UserNotFound, InvalidEmail, InvalidPassword, DuplicateEmail
        """
        user_id = _require_id(user_id, MissingUserID)
        fields = dict(fields or {})

        paths = list(update_mask or [])
        for path in paths:
            if path == "id":
                raise immutable_field("id")
            if path not in USER_MUTABLE_FIELDS:
                raise invalid_update_mask("user", path)
        if not paths:
            paths = list(USER_MUTABLE_FIELDS)

        changes: Dict[str, str] = {}
        if "email" in paths:
            email = normalize_email(fields.get("email"))
            if not is_valid_email(email):
                raise InvalidEmail()
            changes["email"] = email
        if "password" in paths:
            password = fields.get("password") or ""
            self._check_password(password)
            changes["password"] = self.hasher.hash(password)

        with self._unit("update_user"):
            user = self._load_user(user_id)
            if user is None:
                raise UserNotFound()
            for name, value in changes.items():
                setattr(user, name, value)
            user.updated_at = self._now()
            self._raise_if_invalid(validate_user(user))
            try:
                self._save(USERS_TABLE, user)
            except UniqueConstraintError:
                raise DuplicateEmail()
            if self.cache:
                self.cache.delete(user_id)

        log_action(self.logger, "info", "user updated", user_id=user_id,
                   action="update_user", resource="user", extra={"fields": sorted(changes)})
        return user

    def delete_user(self, user_id: int) -> int:
        """Delete a user together with their accounts and transactions"""
        user_id = _require_id(user_id, MissingUserID)

        with self._unit("delete_user"):
            if not self.storage.exists(USERS_TABLE, user_id):
                raise UserNotFound()
            for account in self._user_accounts(user_id):
                for transaction in self._account_transactions(account.id):
                    self.storage.delete(TRANSACTIONS_TABLE, transaction.id)
                self.storage.delete(ACCOUNTS_TABLE, account.id)
            self.storage.delete(USERS_TABLE, user_id)
            if self.cache:
                self.cache.delete(user_id)

        log_action(self.logger, "info", "user deleted", user_id=user_id,
                   action="delete_user", resource="user")
        return user_id

    def logout(self, user_id: int) -> int:
        """Forget cached state for a user; tokens simply run out"""
        user_id = _require_id(user_id, MissingUserID)
        if self.cache:
            self.cache.delete(user_id)
        log_action(self.logger, "info", "user logged out", user_id=user_id,
                   action="logout", resource="auth")
        return user_id

    def validate_token(self, token: str) -> User:
        """Verify a token and return the user it was issued to"""
        if not token:
            raise MissingToken()
        identity = self.codec.verify(token)
        try:
            return self.get_user(identity.subject_id)
        except UserNotFound:
            raise TokenInvalid()

    def bootstrap_root(self, email: str, password: str) -> User:
        """Create the ROOT user unless a user with that email already exists"""
        rows = self.storage.find(USERS_TABLE, {'email': normalize_email(email)})
        if rows:
            return User.from_dict(rows[0])
        try:
            return self.create_user(email, password, role=Role.ROOT).user
        except DuplicateEmail:
            rows = self.storage.find(USERS_TABLE, {'email': normalize_email(email)})
            return User.from_dict(rows[0])

    # Accounts

    def create_account(self, user_id: int, name: str = "",
                       bank: Union[Bank, str] = Bank.ACB,
                       balance: Number = 0) -> AccountResult:
        """
        Open an account for a user.

        A positive opening balance is booked as a DEPOSIT transaction in the
        same unit, so the balance matches the transaction history from the
        start.

        Raises:
            MissingUserID, UserNotFound
            InvalidAccountBalance: Opening balance is negative or not a number
        """
        user_id = _require_id(user_id, MissingUserID)
        try:
            bank = Bank(bank)
        except ValueError:
            raise ValidationFailed(details={"bank": f"unknown bank {bank!r}"})
        opening = self._parse_amount(balance, InvalidAccountBalance)
        if opening.is_negative():
            raise InvalidAccountBalance()

        with self._unit("create_account"):
            if not self.storage.exists(USERS_TABLE, user_id):
                raise UserNotFound()

            now = self._now()
            account = Account(
                id=self.storage.next_id(ACCOUNTS_TABLE),
                created_at=now,
                updated_at=now,
                user_id=user_id,
                name=name or "",
                bank=bank,
                balance=opening.amount
            )
            self._raise_if_invalid(validate_account(account))
            self._save(ACCOUNTS_TABLE, account)

            opening_transaction = None
            if opening.is_positive():
                opening_transaction = Transaction(
                    id=self.storage.next_id(TRANSACTIONS_TABLE),
                    created_at=now,
                    updated_at=now,
                    account_id=account.id,
                    amount=opening.amount,
                    transaction_type=TransactionType.DEPOSIT
                )
                self._save(TRANSACTIONS_TABLE, opening_transaction)

        log_action(self.logger, "info", "account created", user_id=user_id,
                   action="create_account", resource="account",
                   extra={"account_id": account.id, "bank": bank.value,
                          "balance": str(account.balance)})
        return AccountResult(account=account, opening_transaction=opening_transaction)

    def list_accounts(self, user_id: int, account_id: Optional[int] = None) -> List[Account]:
        """
        Accounts of a user, optionally narrowed to one account.

        Raises:
            UserNotFound: No such user
            AccountNotFound: The account filter matched nothing
        """
        user_id = _require_id(user_id, MissingUserID)
        account_id = _optional_id(account_id, MissingAccountID)

        if not self.storage.exists(USERS_TABLE, user_id):
            raise UserNotFound()
        accounts = self._user_accounts(user_id, account_id)
        if account_id is not None and not accounts:
            raise AccountNotFound()
        return accounts

    def reconcile_account(self, user_id: int, account_id: int) -> ReconcileResult:
        """Compare the stored balance with the balance derived from history"""
        user_id = _require_id(user_id, MissingUserID)
        account_id = _require_id(account_id, MissingAccountID)

        with self._unit("reconcile_account"):
            account = self._find_account(user_id, account_id)
            if account is None:
                raise AccountNotFound()
            derived = Money.zero(self.currency)
            for transaction in self._account_transactions(account_id):
                derived = derived + self._money(transaction.effect)

        return ReconcileResult(
            account_id=account_id,
            stored_balance=account.balance,
            derived_balance=derived.amount
        )

    # Transactions

    def create_transaction(self, user_id: int, account_id: int, amount: Number,
                           transaction_type: Union[TransactionType, str]) -> TransactionResult:
        """
        Record a deposit or withdrawal and apply it to the account balance.

        Raises:
            MissingUserID, MissingAccountID
            InvalidTransactionAmount: Amount is not greater than zero
            AccountNotFound: Account missing or owned by another user
            InvalidWithdrawAmount: Withdrawal exceeds the current balance
        """
        user_id = _require_id(user_id, MissingUserID)
        account_id = _require_id(account_id, MissingAccountID)
        try:
            transaction_type = TransactionType(transaction_type)
        except ValueError:
            raise ValidationFailed(details={
                "transaction_type": f"unknown transaction type {transaction_type!r}"
            })
        money = self._parse_amount(amount, InvalidTransactionAmount)
        if not money.is_positive():
            raise InvalidTransactionAmount()

        with self._unit("create_transaction"):
            account = self._find_account(user_id, account_id)
            if account is None:
                raise AccountNotFound()

            balance = self._money(account.balance)
            if transaction_type == TransactionType.WITHDRAW:
                balance = self._shift(balance, -money, InvalidWithdrawAmount)
                if balance.is_negative():
                    raise InvalidWithdrawAmount()
            else:
                balance = self._shift(balance, money, InvalidTransactionAmount)

            now = self._now()
            transaction = Transaction(
                id=self.storage.next_id(TRANSACTIONS_TABLE),
                created_at=now,
                updated_at=now,
                account_id=account.id,
                amount=money.amount,
                transaction_type=transaction_type
            )
            self._raise_if_invalid(validate_transaction(transaction))
            self._save(TRANSACTIONS_TABLE, transaction)

            account.balance = balance.amount
            account.updated_at = now
            self._save(ACCOUNTS_TABLE, account)

        log_action(self.logger, "info", "transaction created", user_id=user_id,
                   action="create_transaction", resource="transaction",
                   extra={"account_id": account_id, "transaction_id": transaction.id,
                          "type": transaction_type.value, "amount": str(money.amount)})
        return TransactionResult(transaction=transaction, balance=account.balance, created=True)

    def update_transaction(self, user_id: int, account_id: int, transaction_id: int,
                           amount: Optional[Number] = None,
                           update_mask: Optional[Sequence[str]] = None) -> TransactionResult:
        """
        Correct a transaction's amount and move the balance by the difference.

        The difference between the new and old amount is added for a deposit
        and subtracted for a withdrawal. Type and account are immutable.

        Raises:
            MissingUserID, MissingAccountID, MissingTransactionID
            ImmutableField: Mask names ``id``, ``account_id`` or ``transaction_type``
            InvalidUpdateMask: Mask names an unknown field
            AccountNotFound, TransactionNotFound
            InvalidTransactionAmount: New amount not greater than zero, or a
                smaller deposit would leave a negative balance
            InvalidWithdrawAmount: A larger withdrawal would leave a negative balance
        """
        user_id = _require_id(user_id, MissingUserID)
        account_id = _require_id(account_id, MissingAccountID)
        transaction_id = _require_id(transaction_id, MissingTransactionID)

        paths = sorted(update_mask or [])
        for path in paths:
            if path in TRANSACTION_IMMUTABLE_FIELDS:
                raise immutable_field(path)
            if path not in TRANSACTION_MUTABLE_FIELDS:
                raise invalid_update_mask("transaction", path)

        new_amount = None
        if not paths or "amount" in paths:
            new_amount = self._parse_amount(amount, InvalidTransactionAmount)
            if not new_amount.is_positive():
                raise InvalidTransactionAmount()

        with self._unit("update_transaction"):
            account = self._find_account(user_id, account_id)
            if account is None:
                raise AccountNotFound()
            data = self.storage.load(TRANSACTIONS_TABLE, transaction_id)
            if not data or data.get('account_id') != account.id:
                raise TransactionNotFound()
            transaction = Transaction.from_dict(data)

            if new_amount is not None:
                delta = new_amount - self._money(transaction.amount)
                balance = self._money(account.balance)
                if transaction.transaction_type == TransactionType.WITHDRAW:
                    balance = self._shift(balance, -delta, InvalidWithdrawAmount)
                    if balance.is_negative():
                        raise InvalidWithdrawAmount()
                else:
                    balance = self._shift(balance, delta, InvalidTransactionAmount)
                    if balance.is_negative():
                        raise InvalidTransactionAmount()

                now = self._now()
                transaction.amount = new_amount.amount
                transaction.updated_at = now
                self._raise_if_invalid(validate_transaction(transaction))
                self._save(TRANSACTIONS_TABLE, transaction)

                account.balance = balance.amount
                account.updated_at = now
                self._save(ACCOUNTS_TABLE, account)

        log_action(self.logger, "info", "transaction updated", user_id=user_id,
                   action="update_transaction", resource="transaction",
                   extra={"account_id": account_id, "transaction_id": transaction_id,
                          "amount": str(transaction.amount)})
        return TransactionResult(transaction=transaction, balance=account.balance)

    def list_transactions(self, user_id: int,
                          account_id: Optional[int] = None) -> List[TransactionListing]:
        """
        Transactions of a user, optionally narrowed to one account.

        Raises:
            UserNotFound: No such user
            TransactionNotFound: Nothing matched the filters
        """
        user_id = _require_id(user_id, MissingUserID)
        account_id = _optional_id(account_id, MissingAccountID)

        if not self.storage.exists(USERS_TABLE, user_id):
            raise UserNotFound()

        listings = []
        for account in self._user_accounts(user_id, account_id):
            for transaction in self._account_transactions(account.id):
                listings.append(TransactionListing(
                    id=transaction.id,
                    account_id=account.id,
                    bank=account.bank,
                    amount=transaction.amount,
                    transaction_type=transaction.transaction_type,
                    created_at=transaction.created_at
                ))
        if not listings:
            raise TransactionNotFound()
        return listings

    def delete_transaction(self, user_id: int, account_id: Optional[int] = None,
                           transaction_id: Optional[int] = None) -> DeleteResult:
        """
        Delete one transaction, all of an account's, or all of a user's.

        Each owning account's balance loses the deleted transactions' effect
        in the same unit.

        Raises:
            MissingUserID
            TransactionNotFound: Nothing matched the filters
            InsufficientBalance: Removing the transactions would leave an
                account balance negative; nothing is deleted
        """
        user_id = _require_id(user_id, MissingUserID)
        account_id = _optional_id(account_id, MissingAccountID)
        transaction_id = _optional_id(transaction_id, MissingTransactionID)

        with self._unit("delete_transaction"):
            doomed: Dict[int, List[Transaction]] = {}
            accounts = {a.id: a for a in self._user_accounts(user_id, account_id)}
            for account in accounts.values():
                matched = [t for t in self._account_transactions(account.id)
                           if transaction_id is None or t.id == transaction_id]
                if matched:
                    doomed[account.id] = matched
            if not doomed:
                raise TransactionNotFound()

            now = self._now()
            deleted_ids: List[int] = []
            balances: Dict[int, Decimal] = {}
            for acc_id, transactions in doomed.items():
                account = accounts[acc_id]
                balance = self._money(account.balance)
                for transaction in transactions:
                    balance = self._shift(balance, -self._money(transaction.effect),
                                          InvalidAccountBalance)
                if balance.is_negative():
                    raise InsufficientBalance()

                for transaction in transactions:
                    self.storage.delete(TRANSACTIONS_TABLE, transaction.id)
                    deleted_ids.append(transaction.id)
                account.balance = balance.amount
                account.updated_at = now
                self._save(ACCOUNTS_TABLE, account)
                balances[acc_id] = account.balance

        log_action(self.logger, "info", "transactions deleted", user_id=user_id,
                   action="delete_transaction", resource="transaction",
                   extra={"ids": deleted_ids})
        return DeleteResult(ids=deleted_ids, balances=balances)
