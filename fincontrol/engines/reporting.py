"""
Accrual Reporting Engine

Income statement (DRE) for a period and balance sheet at a date, both
derived from one LedgerSnapshot.

Bases:
- revenue, operating expenses and loan payments: cash (ledger transactions)
- insurance: accrual. The premium is spread over the coverage months and
  recognized month by month; insurance cash payments are left out of the
  expense lines so nothing is counted twice
- loan interest: the scheduled interest component of each payment in the
  period, never the whole installment (which also repays principal)

DESIGN DECISION: Expenses and liabilities are reported as positive
magnitudes. Results are computed by successive subtraction:
    gross = revenue - fixed
    operating = gross - variable
    net = operating - loan interest
"""

from collections import defaultdict
from datetime import date
from decimal import Decimal
from typing import Optional

from fincontrol.config import LedgerSettings, get_settings
from fincontrol.engines import amortization, insurance
from fincontrol.engines.balance import balances_as_of
from fincontrol.engines.indicators import (
    IndicatorSpec,
    build_indicator,
    compare_amounts,
    compare_indicator,
    safe_ratio,
)
from fincontrol.engines.money import ZERO
from fincontrol.models.ledger import (
    AccountType,
    CategoryNature,
    FlowType,
    LedgerSnapshot,
    LoanStatus,
    OperationType,
    Transaction,
    VehicleStatus,
)
from fincontrol.models.reports import (
    BalanceSheet,
    BalanceSheetReport,
    DateRange,
    IncomeStatement,
    IncomeStatementReport,
    Indicator,
    LineItem,
)

CASH_ACCOUNTS = frozenset({
    AccountType.CHECKING,
    AccountType.SAVINGS,
    AccountType.EMERGENCY_RESERVE,
})
INVESTMENT_ACCOUNTS = frozenset({
    AccountType.FIXED_INCOME,
    AccountType.CRYPTO,
    AccountType.GOAL,
})
REVENUE_OPERATIONS = frozenset({OperationType.REVENUE, OperationType.YIELD})
EXPENSE_OPERATIONS = frozenset({OperationType.EXPENSE, OperationType.VEHICLE})

INSURANCE_LINE_KEY = "insurance_accrual"

DRE_KPIS = (
    IndicatorSpec("gross_margin", "Margem bruta", "dre", "%", 40, 20),
    IndicatorSpec("operating_margin", "Margem operacional", "dre", "%", 20, 10),
    IndicatorSpec("net_margin", "Margem líquida", "dre", "%", 15, 5),
    IndicatorSpec("efficiency_index", "Índice de eficiência", "dre", "%", 70, 85, inverse=True),
    IndicatorSpec("fixed_commitment", "Comprometimento fixo", "dre", "%", 40, 60, inverse=True),
)


# =============================================================================
# INCOME STATEMENT
# =============================================================================

def _insurance_transaction_ids(snapshot: LedgerSnapshot) -> set[str]:
    ids = set()
    keys = set()
    for policy in snapshot.insurance_policies:
        for inst in policy.installments:
            keys.add(f"{policy.id}_{inst.number}")
            if inst.transaction_id:
                ids.add(inst.transaction_id)
    for tx in snapshot.transactions:
        if tx.links.vehicle_transaction_id in keys:
            ids.add(tx.id)
    return ids


def _line_items(totals: dict[str, Decimal], labels: dict[str, str]) -> list[LineItem]:
    items = [
        LineItem(key=key, label=labels.get(key, key), amount=amount)
        for key, amount in totals.items()
    ]
    items.sort(key=lambda i: (-i.amount, i.label))
    return items


def loan_interest_in_period(
    snapshot: LedgerSnapshot,
    period: DateRange,
) -> Decimal:
    """Scheduled interest of every loan payment dated inside the period."""
    total = ZERO
    for loan in snapshot.loans:
        if not loan.is_configured:
            continue
        for tx in amortization.linked_payments(loan, snapshot.transactions):
            if not period.contains(tx.date):
                continue
            row = amortization.installment_for_payment(loan, tx, snapshot.transactions)
            if row is not None:
                total += row.interest
    return total


def income_statement(snapshot: LedgerSnapshot, period: DateRange) -> IncomeStatement:
    categories = {c.id: c for c in snapshot.categories}
    insurance_txs = _insurance_transaction_ids(snapshot)

    revenue = defaultdict(lambda: ZERO)
    fixed = defaultdict(lambda: ZERO)
    variable = defaultdict(lambda: ZERO)
    labels = {
        "uncategorized": "Sem categoria",
        "yield": "Rendimentos",
        INSURANCE_LINE_KEY: "Seguros (competência)",
    }
    loan_payments = ZERO

    in_period: list[Transaction] = [
        t for t in snapshot.transactions if period.contains(t.date)
    ]
    for tx in in_period:
        category = categories.get(tx.category_id)
        if category is not None:
            labels[category.id] = category.label

        if tx.operation_type in REVENUE_OPERATIONS:
            if category is not None:
                key = category.id
            else:
                key = "yield" if tx.operation_type == OperationType.YIELD else "uncategorized"
            revenue[key] += tx.amount

        elif tx.operation_type in EXPENSE_OPERATIONS and tx.flow == FlowType.OUT:
            if tx.id in insurance_txs or (category is not None and category.is_insurance):
                continue
            key = category.id if category is not None else "uncategorized"
            if category is not None and category.nature == CategoryNature.FIXED_EXPENSE:
                fixed[key] += tx.amount
            else:
                variable[key] += tx.amount

        elif tx.operation_type == OperationType.LOAN_PAYMENT:
            loan_payments += tx.amount

    insurance_expense = insurance.total_accrued(
        snapshot.insurance_policies, period.date_from, period.date_to
    )
    if insurance_expense:
        fixed[INSURANCE_LINE_KEY] += insurance_expense

    total_revenue = sum(revenue.values(), ZERO)
    total_fixed = sum(fixed.values(), ZERO)
    total_variable = sum(variable.values(), ZERO)
    interest = loan_interest_in_period(snapshot, period)

    gross = total_revenue - total_fixed
    operating = gross - total_variable
    return IncomeStatement(
        period=period,
        revenue=total_revenue,
        revenue_by_category=_line_items(revenue, labels),
        fixed_expense=total_fixed,
        fixed_by_category=_line_items(fixed, labels),
        insurance_expense=insurance_expense,
        variable_expense=total_variable,
        variable_by_category=_line_items(variable, labels),
        loan_interest=interest,
        gross_result=gross,
        operating_result=operating,
        net_result=operating - interest,
        loan_payments=loan_payments,
    )


def income_statement_kpis(dre: IncomeStatement) -> list[Indicator]:
    total_expense = dre.fixed_expense + dre.variable_expense + dre.loan_interest
    values = {
        "gross_margin": safe_ratio(dre.gross_result, dre.revenue, 100),
        "operating_margin": safe_ratio(dre.operating_result, dre.revenue, 100),
        "net_margin": safe_ratio(dre.net_result, dre.revenue, 100),
        "efficiency_index": safe_ratio(total_expense, dre.revenue, 100),
        "fixed_commitment": safe_ratio(dre.fixed_expense, dre.revenue, 100),
    }
    return [build_indicator(spec, values[spec.key]) for spec in DRE_KPIS]


def income_statement_report(
    snapshot: LedgerSnapshot,
    period: DateRange,
    comparison: Optional[DateRange] = None,
) -> IncomeStatementReport:
    current = income_statement(snapshot, period)
    kpis = income_statement_kpis(current)
    if comparison is None:
        return IncomeStatementReport(current=current, kpis=kpis)

    previous = income_statement(snapshot, comparison)
    previous_kpis = {k.key: k for k in income_statement_kpis(previous)}
    return IncomeStatementReport(
        current=current,
        previous=previous,
        kpis=[compare_indicator(k, previous_kpis.get(k.key)) for k in kpis],
        comparisons=[
            compare_amounts(field, getattr(current, field), getattr(previous, field))
            for field in (
                "revenue",
                "fixed_expense",
                "insurance_expense",
                "variable_expense",
                "loan_interest",
                "gross_result",
                "operating_result",
                "net_result",
            )
        ],
    )


# =============================================================================
# BALANCE SHEET
# =============================================================================

def _loan_outstanding(snapshot: LedgerSnapshot, as_of: date, horizon_months: int) -> tuple[Decimal, Decimal]:
    """(short-term, long-term) principal owed at `as_of`."""
    short_term = ZERO
    long_term = ZERO
    for loan in snapshot.loans:
        disbursement = snapshot.transaction(loan.liberacao_transaction_id)
        taken_on = disbursement.date if disbursement else loan.data_inicio
        if taken_on is not None and taken_on > as_of:
            continue
        if loan.status == LoanStatus.PENDING_CONFIGURATION:
            # No schedule yet: the whole principal, with no maturity split
            long_term += loan.valor_total
            continue
        remaining = amortization.principal_remaining(loan, as_of, snapshot.transactions)
        due_soon = min(
            remaining,
            amortization.principal_due_in_next_months(
                loan, as_of, horizon_months, snapshot.transactions
            ),
        )
        short_term += due_soon
        long_term += remaining - due_soon
    return short_term, long_term


def balance_sheet(
    snapshot: LedgerSnapshot,
    as_of: date,
    settings: Optional[LedgerSettings] = None,
) -> BalanceSheet:
    settings = settings or get_settings().ledger
    horizon = settings.short_term_horizon_months
    balances = balances_as_of(as_of, snapshot)

    cash = investments = fixed_income = ZERO
    card_debt = overdraft = ZERO
    for account in snapshot.accounts:
        balance = balances.get(account.id, ZERO)
        if account.account_type in CASH_ACCOUNTS:
            if balance >= 0:
                cash += balance
            else:
                overdraft -= balance
        elif account.account_type in INVESTMENT_ACCOUNTS:
            investments += balance
            if account.account_type == AccountType.FIXED_INCOME:
                fixed_income += balance
        elif account.is_credit_card:
            if balance < 0:
                card_debt -= balance
            else:
                cash += balance

    vehicles = sum(
        (
            v.book_value for v in snapshot.vehicles
            if v.status != VehicleStatus.SOLD
            and (v.purchase_date is None or v.purchase_date <= as_of)
        ),
        ZERO,
    )
    policies = snapshot.insurance_policies
    prepaid = sum((insurance.prepaid_premium(p, as_of) for p in policies), ZERO)
    unpaid = sum((insurance.unpaid_premium(p, as_of) for p in policies), ZERO)
    unpaid_short = sum(
        (insurance.unpaid_due_within(p, as_of, horizon) for p in policies), ZERO
    )
    loans_short, loans_long = _loan_outstanding(snapshot, as_of, horizon)

    total_assets = cash + investments + vehicles + prepaid
    total_liabilities = loans_short + loans_long + card_debt + overdraft + unpaid
    return BalanceSheet(
        as_of=as_of,
        cash=cash,
        investments=investments,
        vehicles=vehicles,
        prepaid_insurance=prepaid,
        total_assets=total_assets,
        current_assets=cash + fixed_income,
        loans_short_term=loans_short,
        loans_long_term=loans_long,
        credit_card_debt=card_debt,
        overdraft=overdraft,
        unpaid_insurance=unpaid,
        unpaid_insurance_short_term=min(unpaid, unpaid_short),
        total_liabilities=total_liabilities,
        current_liabilities=loans_short + min(unpaid, unpaid_short) + card_debt + overdraft,
        equity=total_assets - total_liabilities,
        account_balances=tuple(
            LineItem(key=a.id, label=a.name, amount=balances.get(a.id, ZERO))
            for a in snapshot.accounts
        ),
    )


def balance_sheet_report(
    snapshot: LedgerSnapshot,
    period: DateRange,
    comparison: Optional[DateRange] = None,
    settings: Optional[LedgerSettings] = None,
) -> BalanceSheetReport:
    """Balance sheet at the end of `period`, optionally against `comparison`'s end."""
    current = balance_sheet(snapshot, period.date_to, settings)
    if comparison is None:
        return BalanceSheetReport(current=current)
    previous = balance_sheet(snapshot, comparison.date_to, settings)
    comparisons = [
        compare_amounts(field, getattr(current, field), getattr(previous, field))
        for field in (
            "cash",
            "investments",
            "vehicles",
            "prepaid_insurance",
            "total_assets",
            "credit_card_debt",
            "unpaid_insurance",
            "total_liabilities",
            "equity",
        )
    ]
    comparisons.append(compare_amounts("loans_total", current.loans_total, previous.loans_total))
    return BalanceSheetReport(current=current, previous=previous, comparisons=comparisons)
