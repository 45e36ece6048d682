"""
Report and Result Models

Output shapes of the engines: loan summaries, commit results, financial
statements and ratio indicators. All are derived values, never persisted.
"""

from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Optional

from dateutil.relativedelta import relativedelta
from pydantic import BaseModel, ConfigDict, Field, model_validator


class ReportModel(BaseModel):
    model_config = ConfigDict(frozen=True)


class DateRange(ReportModel):
    """Closed date interval [date_from, date_to]."""

    date_from: date
    date_to: date

    @model_validator(mode='after')
    def validate_order(self) -> 'DateRange':
        if self.date_to < self.date_from:
            raise ValueError("Range end cannot be before range start")
        return self

    def contains(self, d: date) -> bool:
        return self.date_from <= d <= self.date_to

    @property
    def month_count(self) -> int:
        """Calendar months touched by the range (at least 1)."""
        return (
            (self.date_to.year - self.date_from.year) * 12
            + self.date_to.month - self.date_from.month + 1
        )

    @classmethod
    def for_month(cls, any_day: date) -> 'DateRange':
        start = any_day.replace(day=1)
        return cls(date_from=start, date_to=start + relativedelta(months=1, days=-1))


# =============================================================================
# LOANS
# =============================================================================

class LoanSummary(ReportModel):
    loan_id: str
    installment: Decimal
    total_cost: Decimal = Field(..., description="Sum of all scheduled installments")
    total_interest: Decimal
    paid_count: int
    remaining_count: int
    interest_paid: Decimal
    interest_remaining: Decimal
    principal_remaining: Decimal
    percent_settled: float
    effective_cost_percent: float = Field(
        ...,
        description="Total interest as a percentage of the principal"
    )


# =============================================================================
# COMMIT RESULTS
# =============================================================================

class BillsCommitResult(ReportModel):
    created_transaction_ids: list[str] = Field(default_factory=list)
    deleted_transaction_ids: list[str] = Field(default_factory=list)
    saved_bill_ids: list[str] = Field(default_factory=list)
    ignored_bill_ids: list[str] = Field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(
            self.created_transaction_ids
            or self.deleted_transaction_ids
            or self.saved_bill_ids
        )


class ReviewCommitResult(ReportModel):
    committed_line_ids: list[str] = Field(default_factory=list)
    created_transaction_ids: list[str] = Field(default_factory=list)
    created_loan_ids: list[str] = Field(default_factory=list)
    created_vehicle_ids: list[str] = Field(default_factory=list)
    skipped: dict[str, str] = Field(
        default_factory=dict,
        description="line id -> reason it was not committed"
    )


# =============================================================================
# FINANCIAL STATEMENTS
# =============================================================================

class LineItem(ReportModel):
    key: str
    label: str
    amount: Decimal


class IncomeStatement(ReportModel):
    """DRE for one period. Expenses are positive magnitudes."""

    period: DateRange
    revenue: Decimal
    revenue_by_category: tuple[LineItem, ...] = ()
    fixed_expense: Decimal
    fixed_by_category: tuple[LineItem, ...] = ()
    insurance_expense: Decimal = Field(
        ...,
        description="Accrued insurance (already included in fixed_expense)"
    )
    variable_expense: Decimal
    variable_by_category: tuple[LineItem, ...] = ()
    loan_interest: Decimal
    gross_result: Decimal
    operating_result: Decimal
    net_result: Decimal
    loan_payments: Decimal = Field(
        default=Decimal("0"),
        description="Cash paid on loans in the period (principal + interest)"
    )


class BalanceSheet(ReportModel):
    """Position at `as_of`. Liabilities are positive magnitudes."""

    as_of: date
    cash: Decimal
    investments: Decimal
    vehicles: Decimal
    prepaid_insurance: Decimal
    total_assets: Decimal
    current_assets: Decimal
    loans_short_term: Decimal
    loans_long_term: Decimal
    credit_card_debt: Decimal
    overdraft: Decimal
    unpaid_insurance: Decimal
    unpaid_insurance_short_term: Decimal
    total_liabilities: Decimal
    current_liabilities: Decimal
    equity: Decimal
    account_balances: tuple[LineItem, ...] = ()

    @property
    def loans_total(self) -> Decimal:
        return self.loans_short_term + self.loans_long_term

    def balance(self, account_id: str) -> Decimal:
        return next((b.amount for b in self.account_balances if b.key == account_id), Decimal("0"))


# =============================================================================
# INDICATORS
# =============================================================================

class RatioSentinel(str, Enum):
    INFINITE = "∞"
    UNDEFINED = "undefined"


class IndicatorStatus(str, Enum):
    SUCCESS = "success"
    WARNING = "warning"
    DANGER = "danger"
    NEUTRAL = "neutral"


class Trend(str, Enum):
    UP = "up"
    DOWN = "down"
    STABLE = "stable"


class Indicator(ReportModel):
    """
    One ratio or KPI with its threshold band.

    `green`/`yellow` are the success/warning thresholds. For inverse
    indicators lower is healthier and the comparison flips.
    """

    key: str
    label: str
    group: str
    unit: str = "x"  # "x" (times), "%" or "months"
    value: Optional[float] = None
    sentinel: Optional[RatioSentinel] = None
    green: float
    yellow: float
    inverse: bool = False
    status: IndicatorStatus = IndicatorStatus.NEUTRAL

    previous_value: Optional[float] = None
    previous_sentinel: Optional[RatioSentinel] = None
    change_percent: Optional[float] = None
    trend: Optional[Trend] = None
    is_improvement: Optional[bool] = None

    @property
    def display(self) -> str:
        if self.sentinel is not None:
            return self.sentinel.value
        if self.unit == "%":
            return f"{self.value:.1f}%"
        if self.unit == "months":
            return f"{self.value:.1f}"
        return f"{self.value:.2f}"


class Comparison(ReportModel):
    key: str
    current: Decimal
    previous: Decimal
    change_percent: Optional[float] = None
    trend: Trend = Trend.STABLE


class IncomeStatementReport(ReportModel):
    current: IncomeStatement
    previous: Optional[IncomeStatement] = None
    kpis: tuple[Indicator, ...] = ()
    comparisons: tuple[Comparison, ...] = ()


class BalanceSheetReport(ReportModel):
    current: BalanceSheet
    previous: Optional[BalanceSheet] = None
    comparisons: tuple[Comparison, ...] = ()


class RatiosReport(ReportModel):
    period: DateRange
    comparison_period: Optional[DateRange] = None
    indicators: tuple[Indicator, ...] = ()

    def get(self, key: str) -> Optional[Indicator]:
        return next((i for i in self.indicators if i.key == key), None)

    def by_group(self, group: str) -> list[Indicator]:
        return [i for i in self.indicators if i.group == group]
