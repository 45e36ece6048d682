"""
Loan Amortization Engine (Price / French method)

The schedule is a pure function of the loan contract; paid state is a pure
function of the ledger. The two are joined only when annotating a schedule.

ROUNDING POLICY:
- money is rounded to cents with ROUND_HALF_UP
- interest of each period = round(balance x rate)
- amortization = installment - interest
- the last installment absorbs the residual: its amortization is the whole
  remaining balance and its interest is installment - amortization

So interest + amortization == installment on every row, and the sum of
amortizations equals the principal exactly.

FAILURE POLICY: loans pending configuration (no start date or no term)
produce an empty schedule and zero for every derived quantity. Nothing in
this module raises for a loan that is simply not set up yet.
"""

from collections.abc import Iterable
from datetime import date
from decimal import Decimal
from functools import lru_cache
from typing import Optional

from dateutil.relativedelta import relativedelta

from fincontrol.models.ledger import (
    Loan,
    LoanInstallment,
    OperationType,
    Transaction,
)
from fincontrol.engines.money import HUNDRED, ZERO, to_cents
from fincontrol.models.reports import LoanSummary


def price_installment(
    principal: Decimal,
    monthly_rate_percent: Decimal,
    months: int,
) -> Decimal:
    """
    Fixed Price installment: P * i * (1+i)^n / ((1+i)^n - 1).

    `monthly_rate_percent` is a percentage (2 means 2% a month).
    Zero rate degenerates to P / n.
    """
    if months <= 0 or principal <= 0:
        return ZERO
    rate = Decimal(monthly_rate_percent) / HUNDRED
    if rate == 0:
        return to_cents(Decimal(principal) / months)
    factor = (1 + rate) ** months
    return to_cents(Decimal(principal) * rate * factor / (factor - 1))


def effective_installment(loan: Loan) -> Decimal:
    """Contract installment, or the computed Price installment when unset."""
    if not loan.is_configured:
        return ZERO
    if loan.parcela > 0:
        return loan.parcela
    return price_installment(loan.valor_total, loan.taxa_mensal, loan.meses)


@lru_cache(maxsize=256)
def _build_schedule(
    principal: Decimal,
    installment: Decimal,
    rate_percent: Decimal,
    months: int,
    start: date,
) -> tuple[LoanInstallment, ...]:
    rate = rate_percent / HUNDRED
    balance = principal
    rows = []
    for number in range(1, months + 1):
        if number < months:
            interest = to_cents(balance * rate)
            amortization = installment - interest
        else:
            amortization = balance
            interest = installment - amortization
        balance = balance - amortization
        rows.append(LoanInstallment(
            number=number,
            due_date=start + relativedelta(months=number - 1),
            payment=installment,
            interest=interest,
            amortization=amortization,
            remaining_balance=balance,
        ))
    return tuple(rows)


def schedule(loan: Loan) -> list[LoanInstallment]:
    """Scheduled installments 1..meses; empty for unconfigured loans."""
    if not loan.is_configured:
        return []
    return list(_build_schedule(
        to_cents(loan.valor_total),
        effective_installment(loan),
        Decimal(loan.taxa_mensal),
        loan.meses,
        loan.data_inicio,
    ))


def installment(loan: Loan, number: int) -> Optional[LoanInstallment]:
    """Schedule row `number`, or None when out of range or unconfigured."""
    rows = schedule(loan)
    if 1 <= number <= len(rows):
        return rows[number - 1]
    return None


# =============================================================================
# LEDGER RECONCILIATION
# =============================================================================

def linked_payments(loan: Loan, transactions: Iterable[Transaction]) -> list[Transaction]:
    """Payments linked to the loan, in payment order."""
    payments = [
        t for t in transactions
        if t.operation_type == OperationType.LOAN_PAYMENT and t.links.loan_id == loan.id
    ]
    payments.sort(key=lambda t: (t.date, t.meta.created_at, t.id))
    return payments


def installments_due_count(loan: Loan, as_of: date) -> int:
    return sum(1 for row in schedule(loan) if row.due_date <= as_of)


def paid_installments_as_of(
    loan: Loan,
    as_of: date,
    transactions: Iterable[Transaction],
) -> int:
    """
    Number of installments paid by `as_of`.

    Counts linked loan payments dated on or before `as_of`. The legacy
    paid count applies only while the loan has no linked payment at all,
    and never exceeds the installments already due.
    """
    if not loan.is_configured:
        return 0
    payments = linked_payments(loan, transactions)
    if payments:
        count = sum(1 for t in payments if t.date <= as_of)
    else:
        count = min(loan.legacy_paid_count, installments_due_count(loan, as_of))
    return min(count, loan.meses)


def principal_remaining(
    loan: Loan,
    as_of: date,
    transactions: Iterable[Transaction],
) -> Decimal:
    if not loan.is_configured:
        return ZERO
    paid = paid_installments_as_of(loan, as_of, transactions)
    if paid == 0:
        return to_cents(loan.valor_total)
    return schedule(loan)[paid - 1].remaining_balance


def installment_for_payment(
    loan: Loan,
    payment: Transaction,
    transactions: Iterable[Transaction],
) -> Optional[LoanInstallment]:
    """
    Schedule row a payment settles: its explicit installment number, or
    its ordinal position among the loan's payments when none is recorded.
    """
    number = payment.links.installment_number
    if number is None:
        ids = [t.id for t in linked_payments(loan, transactions)]
        if payment.id not in ids:
            return None
        number = ids.index(payment.id) + 1
    return installment(loan, number)


def paid_installment_numbers(
    loan: Loan,
    transactions: Iterable[Transaction],
) -> dict[int, Transaction]:
    """Installment number -> settling payment, for every linked payment."""
    transactions = list(transactions)
    result = {}
    for tx in linked_payments(loan, transactions):
        row = installment_for_payment(loan, tx, transactions)
        if row is not None and row.number not in result:
            result[row.number] = tx
    return result


def legacy_paid_numbers(
    loan: Loan,
    transactions: Iterable[Transaction],
) -> set[int]:
    """Installments the legacy paid count covers; empty once any payment is linked."""
    if not loan.is_configured or linked_payments(loan, transactions):
        return set()
    return set(range(1, min(loan.legacy_paid_count, loan.meses) + 1))


def next_unpaid_installment(
    loan: Loan,
    transactions: Iterable[Transaction],
) -> Optional[int]:
    """Lowest installment number without a settling payment."""
    if not loan.is_configured:
        return None
    transactions = list(transactions)
    taken = set(paid_installment_numbers(loan, transactions))
    taken |= legacy_paid_numbers(loan, transactions)
    for number in range(1, loan.meses + 1):
        if number not in taken:
            return number
    return None


def annotated_schedule(
    loan: Loan,
    transactions: Iterable[Transaction],
    as_of: Optional[date] = None,
) -> list[LoanInstallment]:
    """Schedule with paid flags, dates and amounts taken from the ledger."""
    transactions = list(transactions)
    rows = schedule(loan)
    if not rows:
        return []
    paid = paid_installment_numbers(loan, transactions)
    if as_of is not None:
        paid = {n: t for n, t in paid.items() if t.date <= as_of}
    annotated = []
    if not linked_payments(loan, transactions):
        legacy = min(loan.legacy_paid_count, len(rows))
        if as_of is not None:
            legacy = min(legacy, installments_due_count(loan, as_of))
        for row in rows:
            annotated.append(row.model_copy(update={"paid": row.number <= legacy}))
        return annotated
    for row in rows:
        tx = paid.get(row.number)
        if tx is None:
            annotated.append(row)
        else:
            annotated.append(row.model_copy(update={
                "paid": True,
                "paid_date": tx.date,
                "paid_amount": tx.amount,
                "transaction_id": tx.id,
            }))
    return annotated


def interest_paid_to_date(
    loan: Loan,
    as_of: date,
    transactions: Iterable[Transaction],
) -> Decimal:
    """Scheduled interest component of every installment paid by `as_of`."""
    transactions = list(transactions)
    if not loan.is_configured:
        return ZERO
    payments = linked_payments(loan, transactions)
    if not payments:
        count = paid_installments_as_of(loan, as_of, transactions)
        return sum((row.interest for row in schedule(loan)[:count]), ZERO)
    total = ZERO
    for tx in payments:
        if tx.date > as_of:
            continue
        row = installment_for_payment(loan, tx, transactions)
        if row is not None:
            total += row.interest
    return total


def principal_due_in_next_months(
    loan: Loan,
    as_of: date,
    months: int,
    transactions: Iterable[Transaction],
) -> Decimal:
    """
    Amortization of unpaid installments due up to `as_of + months`
    (overdue installments included).
    """
    if not loan.is_configured:
        return ZERO
    paid = paid_installments_as_of(loan, as_of, transactions)
    horizon = as_of + relativedelta(months=months)
    return sum(
        (row.amortization for row in schedule(loan)[paid:] if row.due_date <= horizon),
        ZERO,
    )


def loan_summary(
    loan: Loan,
    as_of: date,
    transactions: Iterable[Transaction],
) -> LoanSummary:
    transactions = list(transactions)
    rows = schedule(loan)
    total_interest = sum((r.interest for r in rows), ZERO)
    paid = paid_installments_as_of(loan, as_of, transactions)
    interest_paid = interest_paid_to_date(loan, as_of, transactions)
    principal = to_cents(loan.valor_total)
    return LoanSummary(
        loan_id=loan.id,
        installment=effective_installment(loan),
        total_cost=sum((r.payment for r in rows), ZERO),
        total_interest=total_interest,
        paid_count=paid,
        remaining_count=len(rows) - paid,
        interest_paid=interest_paid,
        interest_remaining=total_interest - interest_paid,
        principal_remaining=principal_remaining(loan, as_of, transactions),
        percent_settled=(paid / len(rows) * 100) if rows else 0.0,
        effective_cost_percent=(
            float(total_interest / principal * HUNDRED) if rows and principal else 0.0
        ),
    )
