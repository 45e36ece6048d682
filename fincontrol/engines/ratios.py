"""
Financial Health Ratios

Indicators derived from the balance sheet at the end of a period and the
period's flows, grouped as liquidity, leverage, profitability, efficiency
and personal.

Every indicator carries its success/warning thresholds and an `inverse`
flag (lower is healthier). A zero denominator never raises: the value is
replaced by a sentinel, infinite when the numerator is positive and
undefined otherwise. Ratios over equity also treat a non-positive equity
as a missing denominator.
"""

from decimal import Decimal
from typing import Optional

from fincontrol.config import LedgerSettings, get_settings
from fincontrol.engines.indicators import (
    IndicatorSpec,
    build_indicator,
    compare_indicator,
    safe_ratio,
)
from fincontrol.engines.money import ZERO
from fincontrol.engines.reporting import balance_sheet, income_statement
from fincontrol.models.ledger import AccountType, LedgerSnapshot, OperationType
from fincontrol.models.reports import (
    BalanceSheet,
    DateRange,
    IncomeStatement,
    Indicator,
    RatiosReport,
)

# Cash-basis outflows counted as spending (investment moves and transfers excluded)
SPENDING_OPERATIONS = frozenset({
    OperationType.EXPENSE,
    OperationType.VEHICLE,
    OperationType.LOAN_PAYMENT,
})

DAYS_PER_MONTH = Decimal("30")

RATIOS = (
    # Liquidity
    IndicatorSpec("current_liquidity", "Liquidez corrente", "liquidity", "x", 1.5, 1),
    IndicatorSpec("quick_liquidity", "Liquidez seca", "liquidity", "x", 1, 0.8),
    IndicatorSpec("general_liquidity", "Liquidez geral", "liquidity", "x", 2, 1.2),
    IndicatorSpec("immediate_solvency", "Solvência imediata", "liquidity", "x", 1, 0.5),
    # Leverage
    IndicatorSpec("total_debt", "Endividamento total", "leverage", "%", 30, 50, inverse=True),
    IndicatorSpec("debt_to_equity", "Dívida / PL", "leverage", "%", 50, 80, inverse=True),
    IndicatorSpec("fixed_asset_to_equity", "Imobilização do PL", "leverage", "%", 30, 45, inverse=True),
    IndicatorSpec("short_term_composition", "Composição do endividamento", "leverage", "%", 30, 50, inverse=True),
    # Profitability
    IndicatorSpec("net_margin", "Margem líquida", "profitability", "%", 20, 10),
    IndicatorSpec("financial_freedom", "Liberdade financeira", "profitability", "%", 100, 20),
    IndicatorSpec("roa", "ROA", "profitability", "%", 5, 2),
    IndicatorSpec("roe", "ROE", "profitability", "%", 10, 5),
    # Efficiency
    IndicatorSpec("fixed_share", "Participação das fixas", "efficiency", "%", 40, 60, inverse=True),
    IndicatorSpec("burn_rate", "Burn rate", "efficiency", "%", 70, 90, inverse=True),
    # Personal
    IndicatorSpec("survival_months", "Meses de sobrevivência", "personal", "months", 6, 3),
    IndicatorSpec("safety_margin", "Margem de segurança", "personal", "%", 20, 10),
)


def period_flows(snapshot: LedgerSnapshot, period: DateRange) -> dict[str, Decimal]:
    """Cash-basis revenue, spending and investment yield of the period."""
    flows = {"revenue": ZERO, "spending": ZERO, "yield": ZERO}
    for tx in snapshot.transactions:
        if not period.contains(tx.date):
            continue
        if tx.operation_type in (OperationType.REVENUE, OperationType.YIELD):
            flows["revenue"] += tx.amount
            if tx.operation_type == OperationType.YIELD:
                flows["yield"] += tx.amount
        elif tx.operation_type in SPENDING_OPERATIONS and not tx.is_inflow:
            flows["spending"] += tx.amount
    return flows


def compute_ratios(
    snapshot: LedgerSnapshot,
    period: DateRange,
    sheet: BalanceSheet,
    dre: IncomeStatement,
) -> list[Indicator]:
    flows = period_flows(snapshot, period)
    revenue = flows["revenue"]
    spending = flows["spending"]
    profit = revenue - spending
    monthly_spending = spending / period.month_count
    daily_spending = monthly_spending / DAYS_PER_MONTH

    checking = sum(
        (
            max(ZERO, sheet.balance(a.id))
            for a in snapshot.accounts
            if a.account_type == AccountType.CHECKING
        ),
        ZERO,
    )
    liquid = sheet.current_assets

    values = {
        "current_liquidity": safe_ratio(liquid, sheet.current_liabilities),
        "quick_liquidity": safe_ratio(sheet.cash, sheet.current_liabilities),
        "general_liquidity": safe_ratio(sheet.total_assets, sheet.total_liabilities),
        "immediate_solvency": safe_ratio(checking, daily_spending),
        "total_debt": safe_ratio(sheet.total_liabilities, sheet.total_assets, 100),
        "debt_to_equity": safe_ratio(sheet.loans_total, sheet.equity, 100, positive_denominator=True),
        "fixed_asset_to_equity": safe_ratio(sheet.vehicles, sheet.equity, 100, positive_denominator=True),
        "short_term_composition": safe_ratio(sheet.current_liabilities, sheet.total_liabilities, 100),
        "net_margin": safe_ratio(dre.net_result, dre.revenue, 100),
        "financial_freedom": safe_ratio(flows["yield"], spending, 100),
        "roa": safe_ratio(profit, sheet.total_assets, 100),
        "roe": safe_ratio(profit, sheet.equity, 100, positive_denominator=True),
        "fixed_share": safe_ratio(dre.fixed_expense, revenue, 100),
        "burn_rate": safe_ratio(spending, revenue, 100),
        "survival_months": safe_ratio(liquid, monthly_spending),
        "safety_margin": safe_ratio(profit, revenue, 100),
    }
    return [build_indicator(spec, values[spec.key]) for spec in RATIOS]


def _ratios_for(snapshot, period, settings) -> list[Indicator]:
    sheet = balance_sheet(snapshot, period.date_to, settings)
    dre = income_statement(snapshot, period)
    return compute_ratios(snapshot, period, sheet, dre)


def financial_ratios(
    snapshot: LedgerSnapshot,
    period: DateRange,
    comparison: Optional[DateRange] = None,
    settings: Optional[LedgerSettings] = None,
) -> RatiosReport:
    """All indicators for `period`, with trends against `comparison` when given."""
    settings = settings or get_settings().ledger
    indicators = _ratios_for(snapshot, period, settings)
    if comparison is not None:
        previous = {i.key: i for i in _ratios_for(snapshot, comparison, settings)}
        indicators = [compare_indicator(i, previous.get(i.key)) for i in indicators]
    return RatiosReport(
        period=period,
        comparison_period=comparison,
        indicators=indicators,
    )
