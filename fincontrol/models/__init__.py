"""
Data Models Package

All data flowing through the financial core conforms to these schemas.
Ledger entities are immutable; report models are derived outputs.
"""

from fincontrol.models.ledger import (
    Account,
    AccountType,
    BillSourceType,
    BillTracker,
    Category,
    CategoryNature,
    FlowType,
    ImportedStatement,
    ImportedTransaction,
    InsuranceInstallment,
    InsurancePolicy,
    LedgerSnapshot,
    Loan,
    LoanInstallment,
    LoanStatus,
    OperationType,
    StandardizationRule,
    StatementStatus,
    Transaction,
    TransactionDomain,
    TransactionLinks,
    TransactionMeta,
    TransactionSource,
    Vehicle,
    VehicleOperation,
    VehicleStatus,
)
from fincontrol.models.operations import CategoryPolarity, RequiredLinkage
from fincontrol.models.validation import ValidationIssue, ValidationResult
from fincontrol.models.reports import (
    BalanceSheet,
    BalanceSheetReport,
    BillsCommitResult,
    DateRange,
    IncomeStatement,
    IncomeStatementReport,
    Indicator,
    IndicatorStatus,
    LoanSummary,
    RatioSentinel,
    RatiosReport,
    ReviewCommitResult,
    Trend,
)
from fincontrol.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Ledger models
    "Account",
    "AccountType",
    "BillSourceType",
    "BillTracker",
    "Category",
    "CategoryNature",
    "FlowType",
    "ImportedStatement",
    "ImportedTransaction",
    "InsuranceInstallment",
    "InsurancePolicy",
    "LedgerSnapshot",
    "Loan",
    "LoanInstallment",
    "LoanStatus",
    "OperationType",
    "StandardizationRule",
    "StatementStatus",
    "Transaction",
    "TransactionDomain",
    "TransactionLinks",
    "TransactionMeta",
    "TransactionSource",
    "Vehicle",
    "VehicleOperation",
    "VehicleStatus",
    # Operation tables
    "CategoryPolarity",
    "RequiredLinkage",
    # Validation
    "ValidationIssue",
    "ValidationResult",
    # Reports
    "BalanceSheet",
    "BalanceSheetReport",
    "BillsCommitResult",
    "DateRange",
    "IncomeStatement",
    "IncomeStatementReport",
    "Indicator",
    "IndicatorStatus",
    "LoanSummary",
    "RatioSentinel",
    "RatiosReport",
    "ReviewCommitResult",
    "Trend",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
