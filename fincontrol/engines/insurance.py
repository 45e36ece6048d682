"""
Insurance Accrual

A policy has two independent sides:
- expense side: the premium is spread evenly over the coverage months and
  recognized month by month, whatever the payment schedule
- cash side: installments paid to the insurer

The balance sheet carries the unexpired premium as an asset (prepaid) and
the premium not yet paid as a liability.
"""

from collections.abc import Iterable
from datetime import date, timedelta
from decimal import Decimal

from dateutil.relativedelta import relativedelta

from fincontrol.engines.money import ZERO, split_evenly
from fincontrol.models.ledger import InsuranceInstallment, InsurancePolicy


def coverage_months(policy: InsurancePolicy) -> int:
    """Whole coverage months, end date inclusive; a partial month counts as one."""
    delta = relativedelta(policy.coverage_end + timedelta(days=1), policy.coverage_start)
    months = delta.years * 12 + delta.months + (1 if delta.days else 0)
    return max(1, months)


def monthly_accrual(policy: InsurancePolicy) -> list[tuple[date, Decimal]]:
    """(coverage month start, recognized premium) for every coverage month."""
    months = coverage_months(policy)
    shares = split_evenly(policy.total_premium, months)
    return [
        (policy.coverage_start + relativedelta(months=k), share)
        for k, share in enumerate(shares)
    ]


def accrued_expense(policy: InsurancePolicy, date_from: date, date_to: date) -> Decimal:
    """Premium recognized for coverage months starting inside the range."""
    return sum(
        (share for start, share in monthly_accrual(policy) if date_from <= start <= date_to),
        ZERO,
    )


def accrued_to_date(policy: InsurancePolicy, as_of: date) -> Decimal:
    return sum(
        (share for start, share in monthly_accrual(policy) if start <= as_of),
        ZERO,
    )


def is_contracted(policy: InsurancePolicy, as_of: date) -> bool:
    """A policy enters the balance sheet at coverage start or first due date."""
    first = policy.coverage_start
    if policy.installments:
        first = min(first, min(i.due_date for i in policy.installments))
    return as_of >= first


def paid_to_date(policy: InsurancePolicy, as_of: date) -> Decimal:
    return sum(
        (
            i.amount for i in policy.installments
            if i.paid and (i.paid_date is None or i.paid_date <= as_of)
        ),
        ZERO,
    )


def prepaid_premium(policy: InsurancePolicy, as_of: date) -> Decimal:
    """Unexpired premium (asset side)."""
    if not is_contracted(policy, as_of):
        return ZERO
    return policy.total_premium - accrued_to_date(policy, as_of)


def unpaid_premium(policy: InsurancePolicy, as_of: date) -> Decimal:
    """Premium not yet paid (liability side)."""
    if not is_contracted(policy, as_of):
        return ZERO
    return max(ZERO, policy.total_premium - paid_to_date(policy, as_of))


def installments_due_between(
    policy: InsurancePolicy,
    date_from: date,
    date_to: date,
) -> list[InsuranceInstallment]:
    return [i for i in policy.installments if date_from <= i.due_date <= date_to]


def unpaid_due_within(policy: InsurancePolicy, as_of: date, months: int) -> Decimal:
    """Unpaid installments due by `as_of + months` (overdue included)."""
    if not is_contracted(policy, as_of):
        return ZERO
    horizon = as_of + relativedelta(months=months)
    return sum(
        (
            i.amount for i in policy.installments
            if i.due_date <= horizon
            and not (i.paid and (i.paid_date is None or i.paid_date <= as_of))
        ),
        ZERO,
    )


def build_installments(
    total: Decimal,
    count: int,
    first_due: date,
) -> tuple[InsuranceInstallment, ...]:
    """Even monthly installments starting at `first_due`."""
    return tuple(
        InsuranceInstallment(
            number=n,
            due_date=first_due + relativedelta(months=n - 1),
            amount=amount,
        )
        for n, amount in enumerate(split_evenly(total, count), start=1)
    )


def total_accrued(
    policies: Iterable[InsurancePolicy],
    date_from: date,
    date_to: date,
) -> Decimal:
    return sum((accrued_expense(p, date_from, date_to) for p in policies), ZERO)
