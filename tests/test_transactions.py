"""
Test suite for transactions

Covers deposits, withdrawals, amount corrections and deletions, checking after
every step that the account balance equals the net effect of its existing
transactions and never goes negative.
"""

import random
import pytest
from datetime import timedelta
from decimal import Decimal

from user_banking.errors import (
    AccountNotFound, ImmutableField, InsufficientBalance, InvalidAccountBalance,
    InvalidTransactionAmount, InvalidUpdateMask, InvalidWithdrawAmount, MissingAccountID,
    MissingTransactionID, MissingUserID, ServiceError, TransactionNotFound, UserNotFound,
    ValidationFailed
)
from user_banking.ledger import LedgerService
from user_banking.models import (
    ACCOUNTS_TABLE, TRANSACTIONS_TABLE, Account, Bank, Transaction, TransactionType
)
from user_banking.passwords import PasswordHasher
from user_banking.storage import InMemoryStorage, SQLiteStorage
from user_banking.tokens import ClaimsCodec


def stored_balance(storage, account_id):
    return Account.from_dict(storage.load(ACCOUNTS_TABLE, account_id)).balance


def derived_balance(storage, account_id):
    rows = storage.find(TRANSACTIONS_TABLE, {"account_id": account_id})
    return sum((Transaction.from_dict(row).effect for row in rows), Decimal("0"))


def assert_balance_invariant(storage, account_id):
    balance = stored_balance(storage, account_id)
    assert balance == derived_balance(storage, account_id)
    assert balance >= 0


@pytest.fixture(params=["memory", "sqlite"])
def storage(request, tmp_path):
    if request.param == "memory":
        backend = InMemoryStorage()
    else:
        backend = SQLiteStorage(tmp_path / "ledger.db")
    yield backend
    backend.close()


@pytest.fixture
def service(storage):
    codec = ClaimsCodec("ledger-transaction-tests-secret-0123456789", "user-banking-test",
                        timedelta(minutes=5))
    return LedgerService(storage, codec, hasher=PasswordHasher(n=1024))


@pytest.fixture
def user(service):
    return service.create_user("a@x.com", "secret12").user


@pytest.fixture
def account(service, user):
    return service.create_account(user.id, "Main", "ACB").account


class TestScenario:

    def test_deposit_withdraw_and_correct(self, service, storage):
        signup = service.create_user("a@x.com", "secret12")
        assert signup.token
        user_id = signup.user.id

        account = service.create_account(user_id, "", Bank.ACB, 0).account

        deposit = service.create_transaction(user_id, account.id, 50000, "DEPOSIT")
        assert deposit.balance == Decimal("50000")

        with pytest.raises(InvalidWithdrawAmount):
            service.create_transaction(user_id, account.id, 60000, "WITHDRAW")
        assert stored_balance(storage, account.id) == Decimal("50000")

        updated = service.update_transaction(user_id, account.id, deposit.transaction.id, 10000)
        assert updated.balance == Decimal("10000")
        assert stored_balance(storage, account.id) == Decimal("10000")
        assert_balance_invariant(storage, account.id)


class TestCreateTransaction:

    def test_deposit(self, service, storage, user, account):
        result = service.create_transaction(user.id, account.id, "1500", TransactionType.DEPOSIT)

        assert result.created
        assert result.transaction.amount == Decimal("1500")
        assert result.balance == Decimal("1500")
        assert_balance_invariant(storage, account.id)

    def test_withdraw(self, service, storage, user, account):
        service.create_transaction(user.id, account.id, 1000, "DEPOSIT")
        result = service.create_transaction(user.id, account.id, 400, "WITHDRAW")
        assert result.balance == Decimal("600")
        assert_balance_invariant(storage, account.id)

    def test_withdraw_entire_balance(self, service, storage, user, account):
        service.create_transaction(user.id, account.id, 1000, "DEPOSIT")
        result = service.create_transaction(user.id, account.id, 1000, "WITHDRAW")
        assert result.balance == Decimal("0")

    def test_overdraw_commits_nothing(self, service, storage, user, account):
        service.create_transaction(user.id, account.id, 100, "DEPOSIT")
        with pytest.raises(InvalidWithdrawAmount):
            service.create_transaction(user.id, account.id, 101, "WITHDRAW")

        assert stored_balance(storage, account.id) == Decimal("100")
        assert len(storage.find(TRANSACTIONS_TABLE, {"account_id": account.id})) == 1

    @pytest.mark.parametrize("amount", [0, -5, "abc", None])
    def test_invalid_amount(self, service, user, account, amount):
        with pytest.raises(InvalidTransactionAmount):
            service.create_transaction(user.id, account.id, amount, "DEPOSIT")

    def test_amount_rounding_to_zero(self, service, user, account):
        with pytest.raises(InvalidTransactionAmount):
            service.create_transaction(user.id, account.id, "0.2", "DEPOSIT")

    def test_unknown_type(self, service, user, account):
        with pytest.raises(ValidationFailed):
            service.create_transaction(user.id, account.id, 10, "TRANSFER")

    def test_missing_ids(self, service, user, account):
        with pytest.raises(MissingUserID):
            service.create_transaction(0, account.id, 10, "DEPOSIT")
        with pytest.raises(MissingAccountID):
            service.create_transaction(user.id, None, 10, "DEPOSIT")

    def test_foreign_account(self, service, user):
        other = service.create_user("b@x.com", "secret12").user
        foreign = service.create_account(other.id, "Theirs", "VIB").account
        with pytest.raises(AccountNotFound):
            service.create_transaction(user.id, foreign.id, 10, "DEPOSIT")


class TestUpdateTransaction:

    def test_increase_deposit(self, service, storage, user, account):
        txn = service.create_transaction(user.id, account.id, 100, "DEPOSIT").transaction
        result = service.update_transaction(user.id, account.id, txn.id, 250, ["amount"])
        assert result.transaction.amount == Decimal("250")
        assert result.balance == Decimal("250")
        assert not result.created
        assert_balance_invariant(storage, account.id)

    def test_increase_withdrawal(self, service, storage, user, account):
        service.create_transaction(user.id, account.id, 1000, "DEPOSIT")
        txn = service.create_transaction(user.id, account.id, 100, "WITHDRAW").transaction
        result = service.update_transaction(user.id, account.id, txn.id, 300)
        assert result.balance == Decimal("700")
        assert_balance_invariant(storage, account.id)

    def test_withdrawal_growing_past_balance(self, service, storage, user, account):
        service.create_transaction(user.id, account.id, 500, "DEPOSIT")
        txn = service.create_transaction(user.id, account.id, 100, "WITHDRAW").transaction
        with pytest.raises(InvalidWithdrawAmount):
            service.update_transaction(user.id, account.id, txn.id, 600)
        assert stored_balance(storage, account.id) == Decimal("400")
        assert_balance_invariant(storage, account.id)

    def test_shrinking_spent_deposit(self, service, storage, user, account):
        txn = service.create_transaction(user.id, account.id, 500, "DEPOSIT").transaction
        service.create_transaction(user.id, account.id, 400, "WITHDRAW")
        with pytest.raises(InvalidTransactionAmount):
            service.update_transaction(user.id, account.id, txn.id, 100)
        assert stored_balance(storage, account.id) == Decimal("100")

    @pytest.mark.parametrize("mask", [["id"], ["transaction_type"], ["amount", "id"]])
    def test_immutable_fields(self, service, storage, user, account, mask):
        txn = service.create_transaction(user.id, account.id, 100, "DEPOSIT").transaction
        with pytest.raises(ImmutableField):
            service.update_transaction(user.id, account.id, txn.id, 999, mask)

        stored = Transaction.from_dict(storage.load(TRANSACTIONS_TABLE, txn.id))
        assert stored.amount == Decimal("100")
        assert stored_balance(storage, account.id) == Decimal("100")

    def test_unknown_mask_field(self, service, user, account):
        txn = service.create_transaction(user.id, account.id, 100, "DEPOSIT").transaction
        with pytest.raises(InvalidUpdateMask):
            service.update_transaction(user.id, account.id, txn.id, 5, ["memo"])

    def test_non_positive_amount(self, service, user, account):
        txn = service.create_transaction(user.id, account.id, 100, "DEPOSIT").transaction
        with pytest.raises(InvalidTransactionAmount):
            service.update_transaction(user.id, account.id, txn.id, 0)

    def test_transaction_of_other_account(self, service, user, account):
        other_account = service.create_account(user.id, "Second", "VCB").account
        txn = service.create_transaction(user.id, other_account.id, 100, "DEPOSIT").transaction
        with pytest.raises(TransactionNotFound):
            service.update_transaction(user.id, account.id, txn.id, 50)

    def test_missing_transaction_id(self, service, user, account):
        with pytest.raises(MissingTransactionID):
            service.update_transaction(user.id, account.id, None, 50)

    def test_unknown_account(self, service, user):
        with pytest.raises(AccountNotFound):
            service.update_transaction(user.id, 999, 1, 50)


class TestListTransactions:

    def test_lists_with_bank(self, service, user, account):
        second = service.create_account(user.id, "Second", "VIB").account
        service.create_transaction(user.id, account.id, 100, "DEPOSIT")
        service.create_transaction(user.id, second.id, 200, "DEPOSIT")

        listings = service.list_transactions(user.id)
        assert [(t.account_id, t.bank) for t in listings] == [
            (account.id, Bank.ACB), (second.id, Bank.VIB)
        ]

    def test_account_filter(self, service, user, account):
        second = service.create_account(user.id, "Second", "VIB").account
        service.create_transaction(user.id, account.id, 100, "DEPOSIT")
        service.create_transaction(user.id, second.id, 200, "DEPOSIT")

        listings = service.list_transactions(user.id, second.id)
        assert [t.amount for t in listings] == [Decimal("200")]

    def test_empty(self, service, user, account):
        with pytest.raises(TransactionNotFound):
            service.list_transactions(user.id)

    def test_unknown_user(self, service):
        with pytest.raises(UserNotFound):
            service.list_transactions(31)


class TestDeleteTransaction:

    def test_delete_one_reverses_effect(self, service, storage, user, account):
        first = service.create_transaction(user.id, account.id, 300, "DEPOSIT").transaction
        service.create_transaction(user.id, account.id, 200, "DEPOSIT")

        result = service.delete_transaction(user.id, account.id, first.id)
        assert result.ids == [first.id]
        assert result.balances == {account.id: Decimal("200")}
        assert_balance_invariant(storage, account.id)

    def test_delete_withdrawal_restores_funds(self, service, storage, user, account):
        service.create_transaction(user.id, account.id, 300, "DEPOSIT")
        withdrawal = service.create_transaction(user.id, account.id, 100, "WITHDRAW").transaction

        service.delete_transaction(user.id, account.id, withdrawal.id)
        assert stored_balance(storage, account.id) == Decimal("300")

    def test_delete_spent_deposit_refused(self, service, storage, user, account):
        deposit = service.create_transaction(user.id, account.id, 300, "DEPOSIT").transaction
        service.create_transaction(user.id, account.id, 250, "WITHDRAW")

        with pytest.raises(InsufficientBalance):
            service.delete_transaction(user.id, account.id, deposit.id)
        assert storage.exists(TRANSACTIONS_TABLE, deposit.id)
        assert stored_balance(storage, account.id) == Decimal("50")

    def test_delete_all_of_account(self, service, storage, user, account):
        service.create_transaction(user.id, account.id, 300, "DEPOSIT")
        service.create_transaction(user.id, account.id, 100, "WITHDRAW")

        result = service.delete_transaction(user.id, account.id)
        assert len(result.ids) == 2
        assert stored_balance(storage, account.id) == Decimal("0")

    def test_delete_all_of_user(self, service, storage, user, account):
        second = service.create_account(user.id, "Second", "VIB", 700).account
        service.create_transaction(user.id, account.id, 300, "DEPOSIT")

        result = service.delete_transaction(user.id)
        assert len(result.ids) == 2
        assert stored_balance(storage, account.id) == Decimal("0")
        assert stored_balance(storage, second.id) == Decimal("0")

    def test_nothing_to_delete(self, service, user, account):
        with pytest.raises(TransactionNotFound):
            service.delete_transaction(user.id, account.id)

    def test_other_users_transaction(self, service, user, account):
        other = service.create_user("b@x.com", "secret12").user
        theirs = service.create_account(other.id, "Theirs", "ACB", 100).account
        txn = service.list_transactions(other.id, theirs.id)[0]
        with pytest.raises(TransactionNotFound):
            service.delete_transaction(user.id, None, txn.id)


class TestOversizedAmounts:
    """Amounts beyond decimal precision are rejected as bad input"""

    def test_oversized_deposit(self, service, storage, user, account):
        with pytest.raises(InvalidTransactionAmount):
            service.create_transaction(user.id, account.id, "1e30", "DEPOSIT")
        assert storage.find(TRANSACTIONS_TABLE, {"account_id": account.id}) == []

    def test_deposit_overflowing_balance(self, service, storage, user):
        huge = "9" * 28
        account = service.create_account(user.id, "Huge", "ACB", huge).account

        with pytest.raises(InvalidTransactionAmount):
            service.create_transaction(user.id, account.id, huge, "DEPOSIT")
        assert stored_balance(storage, account.id) == Decimal(huge)
        assert_balance_invariant(storage, account.id)

    def test_update_overflowing_balance(self, service, storage, user):
        huge = "9" * 28
        account = service.create_account(user.id, "Huge", "ACB", huge).account
        withdrawal = service.create_transaction(user.id, account.id, 2, "WITHDRAW").transaction
        deposit = service.create_transaction(user.id, account.id, 2, "DEPOSIT").transaction

        with pytest.raises(InvalidTransactionAmount):
            service.update_transaction(user.id, account.id, deposit.id, 5)
        with pytest.raises(InvalidWithdrawAmount):
            service.update_transaction(user.id, account.id, withdrawal.id, 1)
        with pytest.raises(InvalidTransactionAmount):
            service.update_transaction(user.id, account.id, withdrawal.id, "1e30")
        assert stored_balance(storage, account.id) == Decimal(huge)
        assert_balance_invariant(storage, account.id)

    def test_delete_overflowing_balance(self, service, storage, user):
        huge = "9" * 28
        account = service.create_account(user.id, "Huge", "ACB", huge).account
        withdrawal = service.create_transaction(user.id, account.id, 1, "WITHDRAW").transaction
        service.create_transaction(user.id, account.id, 1, "DEPOSIT")

        with pytest.raises(InvalidAccountBalance):
            service.delete_transaction(user.id, account.id, withdrawal.id)
        assert len(storage.find(TRANSACTIONS_TABLE, {"account_id": account.id})) == 3
        assert_balance_invariant(storage, account.id)


class TestBalanceInvariant:
    """Random operation sequences never break the balance invariant"""

    def test_random_operations(self, service, storage, user, account):
        rng = random.Random(1234)
        live = []
        for _ in range(120):
            op = rng.choice(["deposit", "withdraw", "update", "delete"])
            amount = rng.randint(1, 500)
            try:
                if op == "deposit":
                    live.append(service.create_transaction(
                        user.id, account.id, amount, "DEPOSIT").transaction.id)
                elif op == "withdraw":
                    live.append(service.create_transaction(
                        user.id, account.id, amount, "WITHDRAW").transaction.id)
                elif op == "update" and live:
                    service.update_transaction(user.id, account.id, rng.choice(live), amount)
                elif op == "delete" and live:
                    target = rng.choice(live)
                    service.delete_transaction(user.id, account.id, target)
                    live.remove(target)
            except ServiceError:
                pass
            assert_balance_invariant(storage, account.id)
