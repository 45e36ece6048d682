"""Tests for the ledger store: mutations, integrity, atomicity and persistence."""

import pytest
from datetime import date
from decimal import Decimal

from fincontrol.engines.balance import balance_as_of
from fincontrol.errors import NotFoundError, ReferentialIntegrityError, ValidationError
from fincontrol.models.audit import AuditEventType
from fincontrol.models.ledger import (
    Account,
    AccountType,
    Category,
    CategoryNature,
    FlowType,
    InsurancePolicy,
    LedgerSnapshot,
    OperationType,
    StandardizationRule,
    Transaction,
)
from fincontrol.services.storage import CorruptSnapshotError, InMemorySnapshotStorage
from fincontrol.store import LedgerStore, TransactionFilter


def expense(store, household, amount, on, category=None, account=None):
    return store.add_transaction(store.make_transaction(
        (account or household.accounts.checking).id,
        on,
        Decimal(amount),
        OperationType.EXPENSE,
        category_id=(category or household.categories.market).id,
        description="Compra",
    ))


class TestTransactions:
    """Tests for transaction mutations."""

    def test_add_transaction_bumps_version(self, household):
        store = household.store
        before = store.version
        tx = expense(store, household, "50", date(2024, 1, 5))
        assert store.version == before + 1
        assert store.get_transaction(tx.id) == tx

    def test_incompatible_category_rejected(self, household):
        """A revenue category on an expense is rejected and nothing changes."""
        store = household.store
        before = store.snapshot
        with pytest.raises(ValidationError, match="cannot be used"):
            expense(store, household, "50", date(2024, 1, 5), category=household.categories.salary)
        assert store.snapshot is before

    def test_unknown_account_rejected(self, household):
        store = household.store
        with pytest.raises(ValidationError, match="does not exist"):
            store.add_transaction(store.make_transaction(
                "acc_ghost", date(2024, 1, 1), Decimal("10"), OperationType.REVENUE,
            ))

    def test_paired_operation_needs_pair(self, household):
        store = household.store
        with pytest.raises(ValidationError, match="pair"):
            store.add_transaction(store.make_transaction(
                household.accounts.checking.id, date(2024, 1, 1), Decimal("10"), OperationType.TRANSFER,
            ))

    def test_transfer_creates_two_legs(self, household):
        store = household.store
        accounts = household.accounts
        out_leg, in_leg = store.add_transfer(
            accounts.checking.id, accounts.savings.id, Decimal("250"), date(2024, 2, 1), "Reserva",
        )
        assert out_leg.links.transfer_group_id == in_leg.links.transfer_group_id
        assert out_leg.flow == FlowType.TRANSFER_OUT
        assert in_leg.flow == FlowType.TRANSFER_IN
        assert len(store.snapshot.transfer_legs(out_leg.links.transfer_group_id)) == 2

    def test_transfer_to_card_pays_it_down(self, household):
        store = household.store
        accounts = household.accounts
        expense(store, household, "300", date(2024, 2, 1), account=accounts.card)
        _, in_leg = store.add_transfer(accounts.checking.id, accounts.card.id, Decimal("300"), date(2024, 2, 10))
        assert in_leg.flow == FlowType.IN
        snap = store.snapshot
        assert balance_as_of(accounts.card.id, date(2024, 2, 28), snap.transactions, snap.accounts) == Decimal("0")

    def test_investment_move(self, household):
        store = household.store
        accounts = household.accounts
        out_leg, in_leg = store.add_investment_move(
            accounts.checking.id, accounts.cdb.id, Decimal("1000"), date(2024, 3, 1),
        )
        assert out_leg.account_id == accounts.checking.id
        assert in_leg.account_id == accounts.cdb.id
        assert in_leg.links.investment_id == accounts.cdb.id

        out_leg, in_leg = store.add_investment_move(
            accounts.checking.id, accounts.cdb.id, Decimal("400"), date(2024, 4, 1), withdrawal=True,
        )
        assert out_leg.account_id == accounts.cdb.id
        assert out_leg.operation_type == OperationType.INVESTMENT_WITHDRAWAL
        snap = store.snapshot
        assert balance_as_of(accounts.cdb.id, date(2024, 4, 30), snap.transactions, snap.accounts) == Decimal("600")

    def test_update_propagates_to_pair(self, household):
        """Amount and date edits on one leg move the other leg too."""
        store = household.store
        accounts = household.accounts
        out_leg, in_leg = store.add_transfer(accounts.checking.id, accounts.savings.id, Decimal("100"), date(2024, 1, 1))
        store.update_transaction(out_leg.id, amount=Decimal("120"), date=date(2024, 1, 2))
        other = store.get_transaction(in_leg.id)
        assert other.amount == Decimal("120")
        assert other.date == date(2024, 1, 2)
        assert store.get_transaction(out_leg.id).meta.updated_at is not None

    def test_update_rejects_structural_fields(self, household):
        store = household.store
        tx = expense(store, household, "10", date(2024, 1, 1))
        with pytest.raises(ValidationError, match="cannot be edited"):
            store.update_transaction(tx.id, account_id=household.accounts.savings.id)

    def test_delete_removes_both_legs(self, household):
        store = household.store
        accounts = household.accounts
        out_leg, in_leg = store.add_transfer(accounts.checking.id, accounts.savings.id, Decimal("100"), date(2024, 1, 1))
        removed = store.delete_transaction(in_leg.id)
        assert set(removed) == {out_leg.id, in_leg.id}
        assert store.snapshot.transaction(out_leg.id) is None

    def test_delete_unknown(self, household):
        with pytest.raises(NotFoundError):
            household.store.delete_transaction("tx_missing")

    def test_list_transactions_filters_and_sorts(self, household):
        store = household.store
        late = expense(store, household, "30", date(2024, 1, 20))
        early = expense(store, household, "10", date(2024, 1, 2))
        expense(store, household, "99", date(2024, 2, 2))

        found = store.list_transactions(date_from=date(2024, 1, 1), date_to=date(2024, 1, 31))
        assert [t.id for t in found] == [early.id, late.id]

        criteria = TransactionFilter(operation_types=[OperationType.EXPENSE], text="compra")
        assert len(store.list_transactions(criteria)) == 3


class TestAccountsAndCategories:
    """Tests for account and category lifecycle."""

    def test_opening_balance_transaction(self, store):
        account = store.add_account(
            Account(name="Conta", account_type=AccountType.CHECKING),
            opening_balance=Decimal("1500"),
            opening_date=date(2024, 1, 1),
        )
        (opening,) = store.snapshot.transactions
        assert opening.operation_type == OperationType.INITIAL_BALANCE
        assert opening.account_id == account.id
        snap = store.snapshot
        assert balance_as_of(account.id, date(2024, 1, 1), snap.transactions, snap.accounts) == Decimal("1500")

    def test_negative_opening_balance_flows_out(self, store):
        account = store.add_account(
            Account(name="Cheque especial", account_type=AccountType.CHECKING),
            opening_balance=Decimal("-200"),
            opening_date=date(2024, 1, 1),
        )
        snap = store.snapshot
        assert balance_as_of(account.id, date(2024, 1, 1), snap.transactions, snap.accounts) == Decimal("-200")

    def test_delete_account_in_use_rejected(self, household):
        store = household.store
        expense(store, household, "10", date(2024, 1, 1))
        with pytest.raises(ReferentialIntegrityError) as exc:
            store.delete_account(household.accounts.checking.id)
        assert "transactions" in exc.value.dependents

    def test_delete_unused_account(self, household):
        store = household.store
        store.delete_account(household.accounts.savings.id)
        assert store.snapshot.account(household.accounts.savings.id) is None

    def test_delete_category_in_use_rejected(self, household):
        store = household.store
        expense(store, household, "10", date(2024, 1, 1))
        with pytest.raises(ReferentialIntegrityError):
            store.delete_category(household.categories.market.id)

    def test_category_nature_change_checked_against_usage(self, household):
        store = household.store
        expense(store, household, "10", date(2024, 1, 1))
        with pytest.raises(ValidationError):
            store.update_category(household.categories.market.id, nature=CategoryNature.REVENUE)
        updated = store.update_category(household.categories.market.id, nature=CategoryNature.FIXED_EXPENSE)
        assert updated.nature == CategoryNature.FIXED_EXPENSE

    def test_rule_category_must_match(self, household):
        with pytest.raises(ValidationError):
            household.store.add_rule(StandardizationRule(
                pattern="salario",
                operation_type=OperationType.EXPENSE,
                category_id=household.categories.salary.id,
            ))


class TestInsuranceCascade:
    """Tests for insurance installments and delete cascades."""

    def test_installments_generated(self, household):
        policy = household.store.add_insurance_policy(
            InsurancePolicy(
                insurer="Porto",
                total_premium=Decimal("1000.00"),
                coverage_start=date(2024, 1, 1),
                coverage_end=date(2024, 12, 31),
                account_id=household.accounts.checking.id,
                category_id=household.categories.insurance.id,
            ),
            installment_count=3,
        )
        amounts = [i.amount for i in policy.installments]
        assert amounts == [Decimal("333.33"), Decimal("333.33"), Decimal("333.34")]
        assert policy.installments[2].due_date == date(2024, 3, 1)

    def test_deleting_payment_unmarks_installment(self, household):
        store = household.store
        policy = store.add_insurance_policy(
            InsurancePolicy(
                insurer="Porto",
                total_premium=Decimal("1200.00"),
                coverage_start=date(2024, 1, 1),
                coverage_end=date(2024, 12, 31),
                account_id=household.accounts.checking.id,
                category_id=household.categories.insurance.id,
            ),
            installment_count=12,
        )
        tx = store.mark_insurance_installment_paid(policy.id, 1, date(2024, 1, 3))
        assert store.get_insurance_policy(policy.id).installment(1).paid

        store.delete_transaction(tx.id)
        inst = store.get_insurance_policy(policy.id).installment(1)
        assert inst.paid is False
        assert inst.transaction_id is None

    def test_policy_with_payments_cannot_be_deleted(self, household):
        store = household.store
        policy = store.add_insurance_policy(
            InsurancePolicy(
                insurer="Porto",
                total_premium=Decimal("100.00"),
                coverage_start=date(2024, 1, 1),
                coverage_end=date(2024, 12, 31),
                account_id=household.accounts.checking.id,
            ),
            installment_count=1,
        )
        store.mark_insurance_installment_paid(policy.id, 1, date(2024, 1, 3))
        with pytest.raises(ReferentialIntegrityError):
            store.delete_insurance_policy(policy.id)


class TestAtomic:
    """Tests for all-or-nothing groups of mutations."""

    def test_rollback_restores_snapshot(self, household):
        store = household.store
        before = store.snapshot
        with pytest.raises(RuntimeError):
            with store.atomic():
                expense(store, household, "10", date(2024, 1, 1))
                raise RuntimeError("stop")
        assert store.snapshot is before

    def test_versions_never_reused(self, household):
        store = household.store
        start = store.version
        with pytest.raises(RuntimeError):
            with store.atomic():
                expense(store, household, "10", date(2024, 1, 1))
                raise RuntimeError("stop")
        assert store.version == start
        expense(store, household, "10", date(2024, 1, 1))
        assert store.version == start + 2

    def test_events_share_correlation_id(self, household, audit_storage):
        store = household.store
        audit_storage.events.clear()
        with store.atomic():
            expense(store, household, "10", date(2024, 1, 1))
            expense(store, household, "20", date(2024, 1, 2))
            assert audit_storage.events == []
        created = [e for e in audit_storage.events if e.event_type == AuditEventType.TRANSACTION_CREATED]
        assert len(created) == 2
        assert created[0].correlation_id is not None
        assert created[0].correlation_id == created[1].correlation_id

    def test_rollback_is_audited(self, household, audit_storage):
        store = household.store
        audit_storage.events.clear()
        with pytest.raises(RuntimeError):
            with store.atomic():
                expense(store, household, "10", date(2024, 1, 1))
                raise RuntimeError("stop")
        types = [e.event_type for e in audit_storage.events]
        assert types == [AuditEventType.COMMIT_ROLLED_BACK]


class TestPersistence:
    """Tests for snapshot save/load."""

    def test_round_trip(self, household):
        store = household.store
        expense(store, household, "10.50", date(2024, 1, 1))
        storage = InMemorySnapshotStorage()
        store.save(storage)

        loaded = LedgerStore.load(storage)
        assert loaded.version == store.version
        assert len(loaded.snapshot.transactions) == 1
        assert loaded.snapshot.transactions[0].amount == Decimal("10.50")
        assert {a.id for a in loaded.snapshot.accounts} == {a.id for a in store.snapshot.accounts}

    def test_load_without_saved_data(self):
        store = LedgerStore.load(InMemorySnapshotStorage())
        assert store.version == 0
        assert store.snapshot.transactions == ()

    def test_load_inconsistent_snapshot(self):
        storage = InMemorySnapshotStorage()
        storage.save_snapshot(LedgerSnapshot(transactions=(Transaction(
            date=date(2024, 1, 1),
            account_id="acc_ghost",
            flow=FlowType.IN,
            operation_type=OperationType.REVENUE,
            amount=Decimal("10"),
        ),)))
        with pytest.raises(CorruptSnapshotError):
            LedgerStore.load(storage)

    def test_dict_layout_is_camel_case(self, household):
        data = household.store.to_dict()
        assert "insurancePolicies" in data
        assert data["accounts"][0]["accountType"] == "corrente"
        restored = LedgerStore.from_dict(data)
        assert len(restored.snapshot.categories) == len(household.store.snapshot.categories)

    def test_from_dict_rejects_malformed(self):
        with pytest.raises(ValidationError):
            LedgerStore.from_dict({"accounts": [{"name": "x"}]})
