"""
Tests for the ledger, report and audit models.

Test strategy:
1. Unit tests for individual components (models, tables, engines)
2. Integration tests for flows through the store and the service facade
3. No files outside pytest's tmp_path (use the in-memory backends)
"""

import pytest
from datetime import date
from decimal import Decimal
from uuid import uuid4

from fincontrol.models.ledger import (
    BillSourceType,
    BillTracker,
    Category,
    CategoryNature,
    FlowType,
    ImportedStatement,
    ImportedTransaction,
    InsuranceInstallment,
    InsurancePolicy,
    Loan,
    LoanStatus,
    OperationType,
    StandardizationRule,
    StatementStatus,
    Transaction,
    TransactionDomain,
    TransactionLinks,
    VehicleOperation,
)
from fincontrol.models.operations import (
    CategoryPolarity,
    CATEGORY_POLARITY,
    RequiredLinkage,
    category_compatible,
    default_flow,
    required_linkage,
)
from fincontrol.models.reports import DateRange, Indicator, RatioSentinel
from fincontrol.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)


class TestLedgerModels:
    """Tests for ledger entity models."""

    def test_transaction_derives_domain(self):
        """Domain is filled from the operation type when omitted."""
        tx = Transaction(
            date=date(2024, 3, 1),
            account_id="acc_1",
            flow=FlowType.OUT,
            operation_type=OperationType.LOAN_PAYMENT,
            amount=Decimal("100.00"),
        )
        assert tx.domain == TransactionDomain.FINANCING
        assert tx.id.startswith("tx_")

    def test_transaction_rejects_negative_amount(self):
        """The sign lives in the flow, never in the amount."""
        with pytest.raises(ValueError):
            Transaction(
                date=date(2024, 3, 1),
                account_id="acc_1",
                flow=FlowType.OUT,
                operation_type=OperationType.EXPENSE,
                amount=Decimal("-10"),
            )

    def test_transaction_is_frozen(self):
        tx = Transaction(
            date=date(2024, 3, 1),
            account_id="acc_1",
            flow=FlowType.IN,
            operation_type=OperationType.REVENUE,
            amount=Decimal("10"),
        )
        with pytest.raises(ValueError):
            tx.amount = Decimal("20")

    def test_transaction_dumps_camel_case(self):
        """Persisted layout uses camelCase keys and loads back by alias."""
        tx = Transaction(
            date=date(2024, 3, 1),
            account_id="acc_1",
            flow=FlowType.IN,
            operation_type=OperationType.REVENUE,
            amount=Decimal("10.50"),
            links=TransactionLinks(transfer_group_id="tg_1"),
        )
        data = tx.model_dump(mode="json", by_alias=True)
        assert data["accountId"] == "acc_1"
        assert data["operationType"] == "receita"
        assert data["links"]["transferGroupId"] == "tg_1"
        assert Transaction.model_validate(data) == tx

    def test_installment_number_parses_parcela_id(self):
        assert TransactionLinks(parcela_id="3").installment_number == 3
        assert TransactionLinks(parcela_id="x").installment_number is None
        assert TransactionLinks().installment_number is None

    def test_revenue_category_cannot_be_recurring(self):
        with pytest.raises(ValueError, match="Only expense categories"):
            Category(label="Salário", nature=CategoryNature.REVENUE, is_recurring=True)

    def test_pending_loan_has_no_terms(self):
        """A loan awaiting configuration carries zero term, rate and installment."""
        loan = Loan(contrato="Empréstimo", valor_total=Decimal("5000"))
        assert loan.status == LoanStatus.PENDING_CONFIGURATION
        assert loan.is_configured is False
        with pytest.raises(ValueError, match="pending configuration"):
            Loan(contrato="Empréstimo", valor_total=Decimal("5000"), meses=10)

    def test_configured_loan_needs_start_date(self):
        with pytest.raises(ValueError, match="start date"):
            Loan(
                contrato="Empréstimo",
                valor_total=Decimal("5000"),
                meses=10,
                status=LoanStatus.ACTIVE,
            )

    def test_bill_cannot_be_paid_and_excluded(self):
        with pytest.raises(ValueError, match="both paid and excluded"):
            BillTracker(
                description="Luz",
                due_date=date(2024, 5, 10),
                expected_amount=Decimal("100"),
                is_paid=True,
                is_excluded=True,
            )

    def test_only_ad_hoc_and_purchase_bills_persist(self):
        def bill(source_type):
            return BillTracker(
                description="x",
                due_date=date(2024, 5, 10),
                expected_amount=Decimal("1"),
                source_type=source_type,
            )
        assert bill(BillSourceType.AD_HOC).is_persistent
        assert bill(BillSourceType.PURCHASE_INSTALLMENT).is_persistent
        assert not bill(BillSourceType.LOAN_INSTALLMENT).is_persistent
        assert not bill(BillSourceType.FIXED_EXPENSE).is_persistent
        assert bill(BillSourceType.EXTERNAL_PAID).is_external

    def test_insurance_coverage_order(self):
        with pytest.raises(ValueError, match="Coverage end"):
            InsurancePolicy(
                insurer="Porto",
                total_premium=Decimal("1200"),
                coverage_start=date(2024, 6, 1),
                coverage_end=date(2024, 1, 1),
            )

    def test_insurance_installment_numbers_unique(self):
        inst = InsuranceInstallment(number=1, due_date=date(2024, 1, 1), amount=Decimal("10"))
        with pytest.raises(ValueError, match="unique"):
            InsurancePolicy(
                insurer="Porto",
                total_premium=Decimal("20"),
                coverage_start=date(2024, 1, 1),
                coverage_end=date(2024, 12, 31),
                installments=(inst, inst),
            )

    def test_statement_status_follows_lines(self):
        """Pending with nothing posted, partial midway, complete at the end."""
        lines = tuple(
            ImportedTransaction(account_id="acc_1", date=date(2024, 1, d), amount=Decimal("1"))
            for d in (1, 2)
        )
        statement = ImportedStatement(account_id="acc_1", raw_transactions=lines)
        assert statement.computed_status() == StatementStatus.PENDING

        partial = statement.model_copy(update={"raw_transactions": (
            lines[0].model_copy(update={"is_contabilized": True}), lines[1],
        )})
        assert partial.computed_status() == StatementStatus.PARTIAL

        done = statement.model_copy(update={"raw_transactions": tuple(
            l.model_copy(update={"is_contabilized": True}) for l in lines
        )})
        assert done.computed_status() == StatementStatus.COMPLETE

    def test_rule_matches_case_insensitive(self):
        rule = StandardizationRule(pattern="uber", operation_type=OperationType.EXPENSE)
        assert rule.matches("PIX UBER *TRIP")
        assert not rule.matches("IFOOD")


class TestOperationTables:
    """Tests for the per-operation behavior tables."""

    def test_every_operation_has_a_polarity(self):
        assert set(CATEGORY_POLARITY) == set(OperationType)

    def test_category_polarity(self):
        salary = Category(label="Salário", nature=CategoryNature.REVENUE)
        rent = Category(label="Aluguel", nature=CategoryNature.FIXED_EXPENSE)
        assert category_compatible(OperationType.REVENUE, salary)
        assert not category_compatible(OperationType.REVENUE, rent)
        assert category_compatible(OperationType.EXPENSE, rent)
        assert category_compatible(OperationType.LOAN_PAYMENT, rent)
        assert not category_compatible(OperationType.TRANSFER, rent)
        assert category_compatible(OperationType.TRANSFER, None)
        assert CATEGORY_POLARITY[OperationType.YIELD] == CategoryPolarity.INCOME

    def test_vehicle_sale_flows_in(self):
        assert default_flow(OperationType.VEHICLE) == FlowType.OUT
        assert default_flow(OperationType.VEHICLE, VehicleOperation.SELL) == FlowType.IN

    def test_statement_linkage(self):
        assert required_linkage(OperationType.EXPENSE) == RequiredLinkage.CATEGORY
        assert required_linkage(OperationType.TRANSFER) == RequiredLinkage.DESTINATION_ACCOUNT
        assert required_linkage(OperationType.LOAN_PAYMENT) == RequiredLinkage.LOAN
        assert required_linkage(OperationType.INITIAL_BALANCE) == RequiredLinkage.NOT_IMPORTABLE


class TestReportModels:
    """Tests for report helpers."""

    def test_date_range_order(self):
        with pytest.raises(ValueError, match="before range start"):
            DateRange(date_from=date(2024, 2, 1), date_to=date(2024, 1, 1))

    def test_month_count(self):
        assert DateRange(date_from=date(2024, 1, 1), date_to=date(2024, 3, 31)).month_count == 3
        assert DateRange(date_from=date(2024, 1, 1), date_to=date(2024, 1, 1)).month_count == 1
        assert DateRange(date_from=date(2024, 1, 15), date_to=date(2024, 2, 5)).month_count == 2
        assert DateRange(date_from=date(2024, 1, 31), date_to=date(2024, 3, 1)).month_count == 3
        assert DateRange(date_from=date(2023, 12, 20), date_to=date(2024, 1, 10)).month_count == 2

    def test_for_month_handles_leap_year(self):
        period = DateRange.for_month(date(2024, 2, 15))
        assert period.date_from == date(2024, 2, 1)
        assert period.date_to == date(2024, 2, 29)

    def test_indicator_display(self):
        def indicator(**kwargs):
            return Indicator(key="k", label="K", group="g", green=1, yellow=0.5, **kwargs)
        assert indicator(value=1.234).display == "1.23"
        assert indicator(value=12.34, unit="%").display == "12.3%"
        assert indicator(sentinel=RatioSentinel.INFINITE).display == "∞"


class TestAuditModels:
    """Tests for audit-related models."""

    def test_audit_event_creation(self):
        event = AuditEvent(
            event_type=AuditEventType.TRANSACTION_CREATED,
            description="Test transaction",
        )
        assert event.severity == AuditSeverity.INFO

    def test_audit_event_to_log_dict(self):
        correlation_id = uuid4()
        event = AuditEvent(
            event_type=AuditEventType.BILLS_COMMITTED,
            description="Bills committed",
            correlation_id=correlation_id,
            details={"paid": 2},
        )
        log_dict = event.to_log_dict()
        assert log_dict["event_type"] == "bills_committed"
        assert log_dict["correlation_id"] == str(correlation_id)
        assert log_dict["details"]["paid"] == 2

    def test_rejected_builder(self):
        event = AuditEventBuilder.rejected("integrity", "still referenced")
        assert event.event_type == AuditEventType.INTEGRITY_REJECTED
        assert event.severity == AuditSeverity.WARNING
        assert event.error_message == "still referenced"

    def test_rolled_back_builder(self):
        event = AuditEventBuilder.rolled_back(ValueError("boom"))
        assert event.event_type == AuditEventType.COMMIT_ROLLED_BACK
        assert event.error_code == "ValueError"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
