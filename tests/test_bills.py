"""Tests for the monthly bills list and its commit."""

import pytest
from datetime import date
from decimal import Decimal

from fincontrol.engines import amortization, bills
from fincontrol.errors import ValidationError
from fincontrol.models.audit import AuditEventType
from fincontrol.models.ledger import (
    BillSourceType,
    BillTracker,
    FlowType,
    OperationType,
    TransactionSource,
)


def find(month_list, bill_id):
    return next(b for b in month_list if b.id == bill_id)


@pytest.fixture
def ad_hoc(household):
    return household.store.add_bill(BillTracker(
        id="bill_repair",
        description="Conserto da geladeira",
        due_date=date(2024, 5, 10),
        expected_amount=Decimal("500.00"),
        suggested_account_id=household.accounts.checking.id,
        suggested_category_id=household.categories.market.id,
    ))


class TestGeneration:
    """Tests for building a month's payable list."""

    def test_template_due_day_clamped(self, household):
        """A day-31 template falls on the last day of shorter months."""
        month = bills.generate_month_list(household.store.snapshot, date(2024, 2, 1))
        rent_id = bills.template_bill_id(BillSourceType.FIXED_EXPENSE, household.categories.rent.id, date(2024, 2, 1))
        rent = find(month, rent_id)
        assert rent.due_date == date(2024, 2, 29)
        assert rent.expected_amount == Decimal("1500.00")
        assert rent.is_paid is False

    def test_templates_optional(self, household):
        month = bills.generate_month_list(household.store.snapshot, date(2024, 2, 1), include_templates=False)
        assert not any(b.source_type == BillSourceType.FIXED_EXPENSE for b in month)

    def test_stored_entries_in_their_month(self, household, ad_hoc):
        may = bills.generate_month_list(household.store.snapshot, date(2024, 5, 1))
        june = bills.generate_month_list(household.store.snapshot, date(2024, 6, 1))
        assert ad_hoc.id in {b.id for b in may}
        assert ad_hoc.id not in {b.id for b in june}

    def test_loan_installments_listed(self, household, price_loan):
        month = bills.generate_month_list(household.store.snapshot, date(2024, 3, 1))
        (row,) = [b for b in month if b.source_type == BillSourceType.LOAN_INSTALLMENT]
        assert row.id == f"loan_installment:{price_loan.id}:3"
        assert row.parcela_number == 3
        assert row.expected_amount == Decimal("1134.72")
        assert row.suggested_account_id == household.accounts.checking.id

    def test_external_payments_read_only(self, household):
        """Expenses paid outside the tracker show up as paid external rows, listed last."""
        store = household.store
        tx = store.add_transaction(store.make_transaction(
            household.accounts.checking.id, date(2024, 2, 3), Decimal("80"), OperationType.EXPENSE,
            category_id=household.categories.market.id, description="Padaria",
        ))
        month = bills.generate_month_list(store.snapshot, date(2024, 2, 1))
        external = month[-1]
        assert external.id == f"external_paid:{tx.id}"
        assert external.is_external
        assert external.is_paid
        assert external.transaction_id == tx.id

    def test_loan_payment_outside_tracker_listed(self, household, price_loan):
        """An installment paid early shows up as an external row in the month it was paid."""
        store = household.store
        tx = store.mark_installment_paid(
            price_loan.id, Decimal("1134.72"), date(2024, 2, 10), installment_number=5,
        )
        month = bills.generate_month_list(store.snapshot, date(2024, 2, 1))
        external = find(month, f"external_paid:{tx.id}")
        assert external.is_paid
        assert external.expected_amount == Decimal("1134.72")
        may = bills.generate_month_list(store.snapshot, date(2024, 5, 1))
        assert not any(b.is_external for b in may)
        assert find(may, f"loan_installment:{price_loan.id}:5").transaction_id == tx.id

    def test_month_totals(self, household, ad_hoc):
        month = bills.generate_month_list(household.store.snapshot, date(2024, 5, 1))
        totals = bills.month_totals(month)
        assert totals["pending"] == Decimal("2000.00")
        assert totals["paid"] == Decimal("0")

    def test_purchase_installments(self, household):
        created = household.store.add_purchase_installments(
            "Notebook", Decimal("1000.00"), 3, date(2024, 1, 20),
            suggested_account_id=household.accounts.card.id,
            suggested_category_id=household.categories.market.id,
        )
        assert [b.expected_amount for b in created] == [Decimal("333.33"), Decimal("333.33"), Decimal("333.34")]
        assert [b.due_date for b in created] == [date(2024, 1, 20), date(2024, 2, 20), date(2024, 3, 20)]
        assert created[1].description == "Notebook (2/3)"
        assert all(b.source_type == BillSourceType.PURCHASE_INSTALLMENT for b in created)

    def test_generated_sources_never_stored(self, household):
        with pytest.raises(ValidationError, match="never stored"):
            household.store.add_bill(BillTracker(
                description="Aluguel",
                due_date=date(2024, 5, 5),
                expected_amount=Decimal("1"),
                source_type=BillSourceType.FIXED_EXPENSE,
            ))


class TestCommit:
    """Tests for committing a reviewed month list."""

    def test_pay_and_unpay_ad_hoc(self, household, ad_hoc):
        """Paying creates one dated outflow; un-paying removes it and reopens the entry."""
        store = household.store
        month = bills.generate_month_list(store.snapshot, date(2024, 5, 1))
        paid = [
            b.model_copy(update={"is_paid": True, "payment_date": date(2024, 5, 9)})
            if b.id == ad_hoc.id else b
            for b in month
        ]
        before = len(store.snapshot.transactions)
        result = bills.commit_month(store, paid)

        assert len(result.created_transaction_ids) == 1
        assert len(store.snapshot.transactions) == before + 1
        tx = store.get_transaction(result.created_transaction_ids[0])
        assert tx.date == date(2024, 5, 9)
        assert tx.amount == Decimal("500.00")
        assert tx.flow == FlowType.OUT
        assert tx.meta.source == TransactionSource.BILLS
        assert tx.meta.bill_key == ad_hoc.id
        stored = store.get_bill(ad_hoc.id)
        assert stored.is_paid and stored.transaction_id == tx.id

        month = bills.generate_month_list(store.snapshot, date(2024, 5, 1))
        assert not any(b.is_external for b in month)
        unpaid = [
            b.model_copy(update={"is_paid": False, "payment_date": None}) if b.id == ad_hoc.id else b
            for b in month
        ]
        result = bills.commit_month(store, unpaid)
        assert result.deleted_transaction_ids == [tx.id]
        assert store.snapshot.transaction(tx.id) is None
        stored = store.get_bill(ad_hoc.id)
        assert stored.is_paid is False
        assert stored.transaction_id is None

    def test_payment_date_defaults_to_due_date(self, household, ad_hoc):
        store = household.store
        result = bills.commit_month(store, [ad_hoc.model_copy(update={"is_paid": True})])
        assert store.get_transaction(result.created_transaction_ids[0]).date == date(2024, 5, 10)

    def test_template_payment_read_back(self, household):
        store = household.store
        month = bills.generate_month_list(store.snapshot, date(2024, 2, 1))
        rent = next(b for b in month if b.source_ref == household.categories.rent.id)
        bills.commit_month(store, [rent.model_copy(update={
            "is_paid": True,
            "suggested_account_id": household.accounts.checking.id,
        })])

        again = find(bills.generate_month_list(store.snapshot, date(2024, 2, 1)), rent.id)
        assert again.is_paid
        tx = store.get_transaction(again.transaction_id)
        assert tx.category_id == household.categories.rent.id
        assert tx.date == date(2024, 2, 29)
        assert not store.snapshot.bills

    def test_missing_account_rejects_whole_commit(self, household, ad_hoc):
        """One unpayable entry stops the commit before anything changes."""
        store = household.store
        month = bills.generate_month_list(store.snapshot, date(2024, 5, 1))
        everything_paid = [b.model_copy(update={"is_paid": True}) for b in month]
        before = store.snapshot
        with pytest.raises(ValidationError, match="needs an account"):
            bills.commit_month(store, everything_paid)
        assert store.snapshot is before

    def test_loan_installment_commit(self, household, price_loan):
        store = household.store
        month = bills.generate_month_list(store.snapshot, date(2024, 1, 1))
        row = next(b for b in month if b.source_type == BillSourceType.LOAN_INSTALLMENT)
        result = bills.commit_month(store, [row.model_copy(update={"is_paid": True})])

        tx = store.get_transaction(result.created_transaction_ids[0])
        assert tx.operation_type == OperationType.LOAN_PAYMENT
        assert tx.links.loan_id == price_loan.id
        assert tx.links.parcela_id == "1"
        assert find(bills.generate_month_list(store.snapshot, date(2024, 1, 1)), row.id).is_paid

    def test_unchanged_legacy_rows_create_nothing(self, household, price_loan):
        """Installments covered by the legacy paid count stay paid without a new payment."""
        store = household.store
        loan = store.update_loan(price_loan.id, legacy_paid_count=3)
        month = bills.generate_month_list(store.snapshot, date(2024, 2, 1))
        row = find(month, f"loan_installment:{loan.id}:2")
        assert row.is_paid

        before = len(store.snapshot.transactions)
        result = bills.commit_month(store, month)
        assert not result.created_transaction_ids
        assert len(store.snapshot.transactions) == before
        assert amortization.paid_installments_as_of(
            store.get_loan(loan.id), date(2024, 12, 31), store.snapshot.transactions
        ) == 3

    def test_excluded_and_external_rows_ignored(self, household):
        store = household.store
        store.add_transaction(store.make_transaction(
            household.accounts.checking.id, date(2024, 2, 3), Decimal("80"), OperationType.EXPENSE,
            category_id=household.categories.market.id,
        ))
        month = bills.generate_month_list(store.snapshot, date(2024, 2, 1))
        reviewed = [
            b.model_copy(update={"is_excluded": True}) if not b.is_external else b
            for b in month
        ]
        before = len(store.snapshot.transactions)
        result = bills.commit_month(store, reviewed)
        assert not result.created_transaction_ids
        assert len(store.snapshot.transactions) == before
        assert len(result.ignored_bill_ids) == len(month)

    def test_commit_is_audited(self, household, ad_hoc, audit_storage):
        store = household.store
        bills.commit_month(store, [ad_hoc.model_copy(update={"is_paid": True})])
        committed = [e for e in audit_storage.events if e.event_type == AuditEventType.BILLS_COMMITTED]
        assert len(committed) == 1
        assert committed[0].correlation_id is not None

    def test_new_ad_hoc_entry_is_stored(self, household):
        store = household.store
        new = BillTracker(
            description="Presente",
            due_date=date(2024, 7, 1),
            expected_amount=Decimal("120"),
            suggested_account_id=household.accounts.checking.id,
            suggested_category_id=household.categories.market.id,
        )
        result = bills.commit_month(store, [new])
        assert result.saved_bill_ids == [new.id]
        assert store.get_bill(new.id).is_paid is False
