"""
Finance Service

The facade collaborators (UI, importers, schedulers) talk to. It ties the
ledger store, the engines, persistence and audit together.

DESIGN DECISION: Every read is a pure function of (snapshot, parameters),
so reads are memoized on (snapshot version, operation, parameters). Any
mutation produces a new snapshot version, which drops the whole cache at
the next read. There is no other invalidation path.

Mutations go straight to the LedgerStore; the facade never edits a
snapshot itself.
"""

from collections.abc import Callable, Hashable, Iterable
from datetime import date
from decimal import Decimal
from typing import Any, Optional

from fincontrol.audit import AuditLogger, get_logger
from fincontrol.config import Settings, get_settings
from fincontrol.engines import amortization, bills, ratios, reporting, statements
from fincontrol.engines.balance import balance_as_of, balances_as_of
from fincontrol.models.ledger import (
    Account,
    BillTracker,
    Category,
    ImportedStatement,
    ImportedTransaction,
    InsurancePolicy,
    LedgerSnapshot,
    Loan,
    LoanInstallment,
    StandardizationRule,
    Transaction,
    Vehicle,
)
from fincontrol.models.reports import (
    BalanceSheetReport,
    BillsCommitResult,
    DateRange,
    IncomeStatementReport,
    LoanSummary,
    RatiosReport,
    ReviewCommitResult,
)
from fincontrol.services.storage import (
    InMemoryAuditStorage,
    InMemorySnapshotStorage,
    JsonFileSnapshotStorage,
    JsonLinesAuditStorage,
    SnapshotStorageInterface,
)
from fincontrol.store import LedgerStore, SnapshotCache, TransactionFilter

logger = get_logger(__name__)


class FinanceService:
    """
    External interface of the financial core.

    Usage:
        service = create_finance_service()
        service.add_account(Account(name="Conta", account_type=AccountType.CHECKING))
        report = service.income_statement(DateRange.for_month(date.today()))
        service.save()
    """

    def __init__(
        self,
        store: Optional[LedgerStore] = None,
        settings: Optional[Settings] = None,
        audit_logger: Optional[AuditLogger] = None,
        storage: Optional[SnapshotStorageInterface] = None,
    ):
        self._settings = settings or get_settings()
        self._audit_logger = audit_logger
        self._store = store or LedgerStore(
            settings=self._settings.ledger,
            audit_logger=audit_logger,
        )
        self._storage = storage
        self._cache = SnapshotCache(self._settings.ledger.cache_max_entries)

    @property
    def store(self) -> LedgerStore:
        return self._store

    @property
    def snapshot(self) -> LedgerSnapshot:
        return self._store.snapshot

    @property
    def cache(self) -> SnapshotCache:
        return self._cache

    def _cached(self, operation: str, params: tuple[Hashable, ...], compute: Callable[[], Any]) -> Any:
        return self._cache.get_or_compute(self._store.version, operation, params, compute)

    # =========================================================================
    # LEDGER
    # =========================================================================

    def add_transaction(self, tx: Transaction) -> Transaction:
        return self._store.add_transaction(tx)

    def add_transfer(self, from_account_id: str, to_account_id: str, amount: Decimal, on: date, description: str = "") -> tuple[Transaction, Transaction]:
        return self._store.add_transfer(from_account_id, to_account_id, amount, on, description)

    def add_investment_move(
        self,
        account_id: str,
        investment_account_id: str,
        amount: Decimal,
        on: date,
        withdrawal: bool = False,
        description: str = "",
    ) -> tuple[Transaction, Transaction]:
        return self._store.add_investment_move(
            account_id, investment_account_id, amount, on,
            withdrawal=withdrawal, description=description,
        )

    def update_transaction(self, tx_id: str, **changes) -> Transaction:
        return self._store.update_transaction(tx_id, **changes)

    def delete_transaction(self, tx_id: str) -> list[str]:
        return self._store.delete_transaction(tx_id)

    def list_transactions(self, filter: Optional[TransactionFilter] = None, **criteria) -> list[Transaction]:
        if filter is None:
            filter = TransactionFilter(**criteria)
        elif criteria:
            filter = filter.model_copy(update=criteria)
        found = self._cached(
            "list_transactions",
            (filter.model_dump_json(),),
            lambda: tuple(self._store.list_transactions(filter)),
        )
        return list(found)

    def balance_as_of(self, account_id: str, as_of: date) -> Decimal:
        snap = self.snapshot
        return self._cached(
            "balance_as_of",
            (account_id, as_of),
            lambda: balance_as_of(account_id, as_of, snap.transactions, snap.accounts),
        )

    def balances_as_of(self, as_of: date) -> dict[str, Decimal]:
        found = self._cached("balances_as_of", (as_of,), lambda: balances_as_of(as_of, self.snapshot))
        return dict(found)

    # =========================================================================
    # ACCOUNTS & CATEGORIES
    # =========================================================================

    def add_account(self, account: Account, opening_balance: Optional[Decimal] = None, opening_date: Optional[date] = None) -> Account:
        return self._store.add_account(account, opening_balance, opening_date)

    def update_account(self, account_id: str, **changes) -> Account:
        return self._store.update_account(account_id, **changes)

    def delete_account(self, account_id: str) -> None:
        self._store.delete_account(account_id)

    def add_category(self, category: Category) -> Category:
        return self._store.add_category(category)

    def update_category(self, category_id: str, **changes) -> Category:
        return self._store.update_category(category_id, **changes)

    def delete_category(self, category_id: str) -> None:
        self._store.delete_category(category_id)

    # =========================================================================
    # LOANS
    # =========================================================================

    def add_loan(self, loan: Loan) -> Loan:
        return self._store.add_loan(loan)

    def update_loan(self, loan_id: str, **changes) -> Loan:
        return self._store.update_loan(loan_id, **changes)

    def configure_loan(self, loan_id: str, meses: int, taxa_mensal: Decimal, data_inicio: date, parcela: Optional[Decimal] = None) -> Loan:
        return self._store.configure_loan(loan_id, meses, taxa_mensal, data_inicio, parcela)

    def delete_loan(self, loan_id: str) -> None:
        self._store.delete_loan(loan_id)

    def schedule(self, loan_id: str, as_of: Optional[date] = None) -> list[LoanInstallment]:
        """Amortization schedule annotated with payments from the ledger."""
        loan = self._store.get_loan(loan_id)
        rows = self._cached(
            "schedule",
            (loan_id, as_of),
            lambda: tuple(amortization.annotated_schedule(loan, self.snapshot.transactions, as_of)),
        )
        return list(rows)

    def paid_installments_as_of(self, loan_id: str, as_of: date) -> int:
        loan = self._store.get_loan(loan_id)
        return self._cached(
            "paid_installments_as_of",
            (loan_id, as_of),
            lambda: amortization.paid_installments_as_of(loan, as_of, self.snapshot.transactions),
        )

    def principal_remaining(self, loan_id: str, as_of: date) -> Decimal:
        loan = self._store.get_loan(loan_id)
        return self._cached(
            "principal_remaining",
            (loan_id, as_of),
            lambda: amortization.principal_remaining(loan, as_of, self.snapshot.transactions),
        )

    def loan_summary(self, loan_id: str, as_of: date) -> LoanSummary:
        loan = self._store.get_loan(loan_id)
        return self._cached(
            "loan_summary",
            (loan_id, as_of),
            lambda: amortization.loan_summary(loan, as_of, self.snapshot.transactions),
        )

    def mark_installment_paid(
        self,
        loan_id: str,
        amount: Decimal,
        payment_date: date,
        installment_number: Optional[int] = None,
        account_id: Optional[str] = None,
    ) -> Transaction:
        return self._store.mark_installment_paid(
            loan_id, amount, payment_date,
            installment_number=installment_number,
            account_id=account_id,
        )

    def unmark_installment_paid(self, loan_id: str, installment_number: Optional[int] = None) -> Optional[str]:
        return self._store.unmark_installment_paid(loan_id, installment_number)

    # =========================================================================
    # INSURANCE & VEHICLES
    # =========================================================================

    def add_insurance_policy(
        self,
        policy: InsurancePolicy,
        installment_count: Optional[int] = None,
        first_due: Optional[date] = None,
    ) -> InsurancePolicy:
        return self._store.add_insurance_policy(policy, installment_count, first_due)

    def mark_insurance_installment_paid(self, policy_id: str, number: int, payment_date: date, account_id: Optional[str] = None) -> Transaction:
        return self._store.mark_insurance_installment_paid(
            policy_id, number, payment_date, account_id=account_id,
        )

    def unmark_insurance_installment_paid(self, policy_id: str, number: int) -> Optional[str]:
        return self._store.unmark_insurance_installment_paid(policy_id, number)

    def add_vehicle(self, vehicle: Vehicle) -> Vehicle:
        return self._store.add_vehicle(vehicle)

    # =========================================================================
    # BILLS
    # =========================================================================

    def generate_month_list(self, month_date: date, include_templates: bool = True) -> list[BillTracker]:
        month = month_date.replace(day=1)
        found = self._cached(
            "generate_month_list",
            (month, include_templates),
            lambda: tuple(bills.generate_month_list(
                self.snapshot, month, include_templates, self._settings.ledger,
            )),
        )
        return list(found)

    def commit_month(self, local_list: Iterable[BillTracker]) -> BillsCommitResult:
        return bills.commit_month(self._store, local_list)

    def add_bill(self, bill: BillTracker) -> BillTracker:
        return self._store.add_bill(bill)

    def add_purchase_installments(
        self,
        description: str,
        total: Decimal,
        count: int,
        first_due: date,
        suggested_account_id: Optional[str] = None,
        suggested_category_id: Optional[str] = None,
    ) -> list[BillTracker]:
        return self._store.add_purchase_installments(
            description, total, count, first_due,
            suggested_account_id, suggested_category_id,
        )

    # =========================================================================
    # STATEMENT REVIEW
    # =========================================================================

    def import_statement(self, statement: ImportedStatement) -> ImportedStatement:
        return self._store.add_statement(statement)

    def add_rule(self, rule: StandardizationRule) -> StandardizationRule:
        return self._store.add_rule(rule)

    def consolidate_for_review(self, account_id: str, date_from: date, date_to: date) -> list[ImportedTransaction]:
        found = self._cached(
            "consolidate_for_review",
            (account_id, date_from, date_to),
            lambda: tuple(statements.consolidate_for_review(
                self.snapshot, account_id, date_from, date_to, self._settings.ledger,
            )),
        )
        return list(found)

    def commit_review(self, reviewed_lines: Iterable[ImportedTransaction]) -> ReviewCommitResult:
        return statements.commit_review(self._store, reviewed_lines)

    # =========================================================================
    # REPORTING
    # =========================================================================

    def income_statement(self, period: DateRange, comparison: Optional[DateRange] = None) -> IncomeStatementReport:
        return self._cached(
            "income_statement",
            (period, comparison),
            lambda: reporting.income_statement_report(self.snapshot, period, comparison),
        )

    def balance_sheet(self, period: DateRange, comparison: Optional[DateRange] = None) -> BalanceSheetReport:
        return self._cached(
            "balance_sheet",
            (period, comparison),
            lambda: reporting.balance_sheet_report(
                self.snapshot, period, comparison, self._settings.ledger,
            ),
        )

    def ratios(self, period: DateRange, comparison: Optional[DateRange] = None) -> RatiosReport:
        return self._cached(
            "ratios",
            (period, comparison),
            lambda: ratios.financial_ratios(
                self.snapshot, period, comparison, self._settings.ledger,
            ),
        )

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def save(self, storage: Optional[SnapshotStorageInterface] = None) -> None:
        target = storage or self._storage
        if target is None:
            raise ValueError("No snapshot storage configured")
        self._store.save(target)
        logger.info("snapshot_saved", version=self._store.version, location=target.location)


def create_finance_service(
    settings: Optional[Settings] = None,
    in_memory: bool = False,
) -> FinanceService:
    """
    Factory wiring storage, audit and the store from settings.

    Args:
        in_memory: Keep snapshot and audit log in memory (tests, demos).
    """
    settings = settings or get_settings()
    if in_memory:
        snapshot_storage = InMemorySnapshotStorage()
        audit_logger = AuditLogger(InMemoryAuditStorage())
    else:
        snapshot_storage = JsonFileSnapshotStorage(settings=settings.storage)
        audit_logger = AuditLogger(JsonLinesAuditStorage(settings=settings.storage))

    store = LedgerStore.load(
        snapshot_storage,
        settings=settings.ledger,
        audit_logger=audit_logger,
    )
    logger.info(
        "finance_service_ready",
        location=snapshot_storage.location,
        version=store.version,
    )
    return FinanceService(
        store=store,
        settings=settings,
        audit_logger=audit_logger,
        storage=snapshot_storage,
    )
