"""
Balance Calculator

Point-in-time account balances derived from the transaction log.

Sign rules:
- `in` / `transfer_in` add, `out` / `transfer_out` subtract.
- On credit-card accounts the sign of expenses and transfers is fixed by
  the operation type (see models.operations.CREDIT_CARD_SIGN): an expense
  always increases what is owed and a transfer always pays it down. A card
  balance is therefore negative while money is owed.

All functions are pure; the caller passes the collections explicitly.
"""

from collections.abc import Iterable
from datetime import date
from decimal import Decimal
from typing import Optional

from fincontrol.models.ledger import (
    Account,
    LedgerSnapshot,
    Transaction,
)
from fincontrol.models.operations import CREDIT_CARD_SIGN

ZERO = Decimal("0")


def signed_amount(tx: Transaction, account: Optional[Account] = None) -> Decimal:
    """Amount of `tx` with the sign it contributes to `account`'s balance."""
    if account is not None and account.is_credit_card:
        fixed = CREDIT_CARD_SIGN[tx.operation_type]
        if fixed is not None:
            return tx.amount * fixed
    return tx.amount if tx.is_inflow else -tx.amount


def balance_as_of(
    account_id: str,
    as_of: date,
    transactions: Iterable[Transaction],
    accounts: Iterable[Account],
) -> Decimal:
    """
    Balance of an account including every transaction dated on or before
    `as_of`. Unknown accounts have a zero balance.
    """
    account = next((a for a in accounts if a.id == account_id), None)
    if account is None:
        return ZERO
    total = ZERO
    for tx in transactions:
        if tx.account_id == account_id and tx.date <= as_of:
            total += signed_amount(tx, account)
    return total


def balance_movement(
    account_id: str,
    date_from: date,
    date_to: date,
    transactions: Iterable[Transaction],
    accounts: Iterable[Account],
) -> Decimal:
    """Net signed movement on an account with date_from < date <= date_to."""
    account = next((a for a in accounts if a.id == account_id), None)
    if account is None:
        return ZERO
    total = ZERO
    for tx in transactions:
        if tx.account_id == account_id and date_from < tx.date <= date_to:
            total += signed_amount(tx, account)
    return total


def balances_as_of(as_of: date, snapshot: LedgerSnapshot) -> dict[str, Decimal]:
    """Balances of every account in the snapshot, in one pass over the log."""
    by_id = {a.id: a for a in snapshot.accounts}
    totals = {account_id: ZERO for account_id in by_id}
    for tx in snapshot.transactions:
        account = by_id.get(tx.account_id)
        if account is None or tx.date > as_of:
            continue
        totals[tx.account_id] += signed_amount(tx, account)
    return totals
