"""
Operation Type Behavior Tables

Every behavior that depends on the operation type of a transaction lives
in one table here, keyed by OperationType:

- default flow direction
- domain (operational / investment / financing)
- category polarity (which category natures are acceptable)
- fixed sign on credit-card accounts
- linkage required before an imported statement line can be committed

DESIGN DECISION: Tables are checked for exhaustiveness at import time.
Adding a member to OperationType without updating every table fails as
soon as the package is imported, instead of silently falling through a
default branch somewhere in an engine.
"""

from enum import Enum
from typing import Optional

from fincontrol.models.ledger import (
    Category,
    CategoryNature,
    FlowType,
    OperationType,
    TransactionDomain,
    VehicleOperation,
)


class CategoryPolarity(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"
    NONE = "none"  # category must be absent


class RequiredLinkage(str, Enum):
    """What a statement line needs before it is ready to commit."""
    CATEGORY = "category"
    DESTINATION_ACCOUNT = "destination_account"
    INVESTMENT_ACCOUNT = "investment_account"
    LOAN = "loan"
    VEHICLE_OPERATION = "vehicle_operation"
    NOTHING = "nothing"
    NOT_IMPORTABLE = "not_importable"


# =============================================================================
# TABLES
# =============================================================================

DEFAULT_FLOW: dict[OperationType, FlowType] = {
    OperationType.REVENUE: FlowType.IN,
    OperationType.EXPENSE: FlowType.OUT,
    OperationType.TRANSFER: FlowType.TRANSFER_OUT,
    OperationType.INVESTMENT_CONTRIBUTION: FlowType.OUT,
    OperationType.INVESTMENT_WITHDRAWAL: FlowType.IN,
    OperationType.LOAN_DISBURSEMENT: FlowType.IN,
    OperationType.LOAN_PAYMENT: FlowType.OUT,
    OperationType.VEHICLE: FlowType.OUT,  # purchase; a sale flows in
    OperationType.YIELD: FlowType.IN,
    OperationType.INITIAL_BALANCE: FlowType.IN,
}

DOMAIN: dict[OperationType, TransactionDomain] = {
    OperationType.REVENUE: TransactionDomain.OPERATIONAL,
    OperationType.EXPENSE: TransactionDomain.OPERATIONAL,
    OperationType.TRANSFER: TransactionDomain.OPERATIONAL,
    OperationType.INVESTMENT_CONTRIBUTION: TransactionDomain.INVESTMENT,
    OperationType.INVESTMENT_WITHDRAWAL: TransactionDomain.INVESTMENT,
    OperationType.LOAN_DISBURSEMENT: TransactionDomain.FINANCING,
    OperationType.LOAN_PAYMENT: TransactionDomain.FINANCING,
    OperationType.VEHICLE: TransactionDomain.OPERATIONAL,
    OperationType.YIELD: TransactionDomain.INVESTMENT,
    OperationType.INITIAL_BALANCE: TransactionDomain.OPERATIONAL,
}

CATEGORY_POLARITY: dict[OperationType, CategoryPolarity] = {
    OperationType.REVENUE: CategoryPolarity.INCOME,
    OperationType.EXPENSE: CategoryPolarity.EXPENSE,
    OperationType.TRANSFER: CategoryPolarity.NONE,
    OperationType.INVESTMENT_CONTRIBUTION: CategoryPolarity.NONE,
    OperationType.INVESTMENT_WITHDRAWAL: CategoryPolarity.NONE,
    OperationType.LOAN_DISBURSEMENT: CategoryPolarity.NONE,
    OperationType.LOAN_PAYMENT: CategoryPolarity.EXPENSE,
    OperationType.VEHICLE: CategoryPolarity.EXPENSE,
    OperationType.YIELD: CategoryPolarity.INCOME,
    OperationType.INITIAL_BALANCE: CategoryPolarity.NONE,
}

# Sign applied on credit-card accounts regardless of flow. None = use flow.
CREDIT_CARD_SIGN: dict[OperationType, Optional[int]] = {
    OperationType.REVENUE: None,
    OperationType.EXPENSE: -1,
    OperationType.TRANSFER: 1,
    OperationType.INVESTMENT_CONTRIBUTION: None,
    OperationType.INVESTMENT_WITHDRAWAL: None,
    OperationType.LOAN_DISBURSEMENT: None,
    OperationType.LOAN_PAYMENT: None,
    OperationType.VEHICLE: None,
    OperationType.YIELD: None,
    OperationType.INITIAL_BALANCE: None,
}

STATEMENT_LINKAGE: dict[OperationType, RequiredLinkage] = {
    OperationType.REVENUE: RequiredLinkage.CATEGORY,
    OperationType.EXPENSE: RequiredLinkage.CATEGORY,
    OperationType.TRANSFER: RequiredLinkage.DESTINATION_ACCOUNT,
    OperationType.INVESTMENT_CONTRIBUTION: RequiredLinkage.INVESTMENT_ACCOUNT,
    OperationType.INVESTMENT_WITHDRAWAL: RequiredLinkage.INVESTMENT_ACCOUNT,
    OperationType.LOAN_DISBURSEMENT: RequiredLinkage.NOTHING,
    OperationType.LOAN_PAYMENT: RequiredLinkage.LOAN,
    OperationType.VEHICLE: RequiredLinkage.VEHICLE_OPERATION,
    OperationType.YIELD: RequiredLinkage.NOTHING,
    OperationType.INITIAL_BALANCE: RequiredLinkage.NOT_IMPORTABLE,
}

# Operations that only exist as two legs sharing a transfer group
PAIRED_OPERATIONS = frozenset({
    OperationType.TRANSFER,
    OperationType.INVESTMENT_CONTRIBUTION,
    OperationType.INVESTMENT_WITHDRAWAL,
})


def _check_exhaustive() -> None:
    tables = {
        "DEFAULT_FLOW": DEFAULT_FLOW,
        "DOMAIN": DOMAIN,
        "CATEGORY_POLARITY": CATEGORY_POLARITY,
        "CREDIT_CARD_SIGN": CREDIT_CARD_SIGN,
        "STATEMENT_LINKAGE": STATEMENT_LINKAGE,
    }
    for name, table in tables.items():
        missing = set(OperationType) - set(table)
        if missing:
            raise RuntimeError(
                f"Operation table {name} is missing: "
                f"{sorted(op.value for op in missing)}"
            )


_check_exhaustive()


# =============================================================================
# LOOKUPS
# =============================================================================

def domain_for(operation_type: OperationType) -> TransactionDomain:
    return DOMAIN[operation_type]


def default_flow(
    operation_type: OperationType,
    vehicle_operation: Optional[VehicleOperation] = None,
) -> FlowType:
    if operation_type == OperationType.VEHICLE and vehicle_operation == VehicleOperation.SELL:
        return FlowType.IN
    return DEFAULT_FLOW[operation_type]


def is_paired(operation_type: OperationType) -> bool:
    return operation_type in PAIRED_OPERATIONS


def category_compatible(
    operation_type: OperationType,
    category: Optional[Category],
) -> bool:
    """
    Check a category against the operation's income/expense polarity.

    A missing category is always compatible; the statement engine decides
    separately whether a category is required.
    """
    if category is None:
        return True
    polarity = CATEGORY_POLARITY[operation_type]
    if polarity == CategoryPolarity.NONE:
        return False
    if polarity == CategoryPolarity.INCOME:
        return category.nature == CategoryNature.REVENUE
    return category.nature in (
        CategoryNature.FIXED_EXPENSE,
        CategoryNature.VARIABLE_EXPENSE,
    )


def required_linkage(operation_type: OperationType) -> RequiredLinkage:
    return STATEMENT_LINKAGE[operation_type]
