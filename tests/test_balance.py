"""Tests for point-in-time balances."""

from datetime import date
from decimal import Decimal

from fincontrol.engines.balance import balance_as_of, balance_movement, balances_as_of
from fincontrol.models.ledger import (
    Account,
    AccountType,
    FlowType,
    OperationType,
    Transaction,
)


def tx(account_id, on, amount, operation_type, flow):
    return Transaction(
        date=on,
        account_id=account_id,
        flow=flow,
        operation_type=operation_type,
        amount=Decimal(amount),
    )


CHECKING = Account(id="acc_checking", name="Conta", account_type=AccountType.CHECKING)
CARD = Account(id="acc_card", name="Cartão", account_type=AccountType.CREDIT_CARD)


class TestBalanceAsOf:
    """Tests for single-account balances."""

    def test_inflows_add_outflows_subtract(self):
        txs = [
            tx(CHECKING.id, date(2024, 1, 1), "1000", OperationType.REVENUE, FlowType.IN),
            tx(CHECKING.id, date(2024, 1, 5), "200", OperationType.EXPENSE, FlowType.OUT),
            tx(CHECKING.id, date(2024, 1, 6), "50", OperationType.TRANSFER, FlowType.TRANSFER_OUT),
        ]
        assert balance_as_of(CHECKING.id, date(2024, 1, 31), txs, [CHECKING]) == Decimal("750")

    def test_as_of_is_inclusive(self):
        txs = [
            tx(CHECKING.id, date(2024, 1, 1), "100", OperationType.REVENUE, FlowType.IN),
            tx(CHECKING.id, date(2024, 1, 10), "40", OperationType.EXPENSE, FlowType.OUT),
        ]
        assert balance_as_of(CHECKING.id, date(2024, 1, 9), txs, [CHECKING]) == Decimal("100")
        assert balance_as_of(CHECKING.id, date(2024, 1, 10), txs, [CHECKING]) == Decimal("60")

    def test_unknown_account_is_zero(self):
        txs = [tx(CHECKING.id, date(2024, 1, 1), "100", OperationType.REVENUE, FlowType.IN)]
        assert balance_as_of("acc_missing", date(2024, 12, 31), txs, [CHECKING]) == Decimal("0")

    def test_credit_card_expense_is_debt(self):
        """Expenses always increase what is owed; transfers always pay it down."""
        txs = [
            tx(CARD.id, date(2024, 1, 3), "300", OperationType.EXPENSE, FlowType.OUT),
            tx(CARD.id, date(2024, 1, 20), "100", OperationType.TRANSFER, FlowType.IN),
        ]
        assert balance_as_of(CARD.id, date(2024, 1, 31), txs, [CARD]) == Decimal("-200")

    def test_credit_card_refund_follows_flow(self):
        txs = [tx(CARD.id, date(2024, 1, 3), "30", OperationType.REVENUE, FlowType.IN)]
        assert balance_as_of(CARD.id, date(2024, 1, 31), txs, [CARD]) == Decimal("30")


class TestBalancesAsOf:
    """Tests for whole-snapshot balances."""

    def test_every_account_reported(self, household):
        store = household.store
        accounts = household.accounts
        store.add_transaction(store.make_transaction(
            accounts.checking.id, date(2024, 1, 1), Decimal("1000"), OperationType.REVENUE,
            category_id=household.categories.salary.id,
        ))
        store.add_transfer(accounts.checking.id, accounts.savings.id, Decimal("400"), date(2024, 1, 2))

        balances = balances_as_of(date(2024, 1, 31), store.snapshot)
        assert balances[accounts.checking.id] == Decimal("600")
        assert balances[accounts.savings.id] == Decimal("400")
        assert balances[accounts.card.id] == Decimal("0")
        assert set(balances) == {a.id for a in store.snapshot.accounts}

    def test_movement_excludes_start_date(self, household):
        store = household.store
        checking = household.accounts.checking.id
        for day in (1, 15, 31):
            store.add_transaction(store.make_transaction(
                checking, date(2024, 1, day), Decimal("10"), OperationType.REVENUE,
                category_id=household.categories.salary.id,
            ))
        movement = balance_movement(
            checking, date(2024, 1, 1), date(2024, 1, 31),
            store.snapshot.transactions, store.snapshot.accounts,
        )
        assert movement == Decimal("20")
