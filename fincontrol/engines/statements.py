"""
Statement Import Reconciliation

Turns reviewed bank statement lines into ledger transactions.

Two stages, mirroring the review screen:

STAGE 1: Consolidation (read only)
- Collect the account's pending lines in a date range across statements
- Drop lines imported twice by overlapping statements
- Pre-classify with standardization rules, else by direction
- Flag lines that look like something already in the ledger

STAGE 2: Commit (atomic, idempotent)
- Expand each ready line into one transaction, a transfer pair, an
  investment pair, a loan disbursement (plus a loan awaiting
  configuration), a loan payment or a vehicle purchase (plus a vehicle
  awaiting registration)
- Flag the raw line contabilized and recompute statement status

DESIGN DECISION: Lines flagged as potential duplicates never commit. The
reviewer clears the flag explicitly when the match is a false positive.
"""

import re
from collections.abc import Iterable
from datetime import date, timedelta
from typing import TYPE_CHECKING, Optional

from fincontrol.audit import get_logger
from fincontrol.config import LedgerSettings, get_settings
from fincontrol.engines import amortization
from fincontrol.models.audit import AuditEventBuilder, AuditEventType
from fincontrol.models.ledger import (
    FlowType,
    ImportedTransaction,
    LedgerSnapshot,
    Loan,
    LoanStatus,
    OperationType,
    StandardizationRule,
    TransactionLinks,
    TransactionSource,
    Vehicle,
    VehicleOperation,
    VehicleStatus,
)
from fincontrol.models.operations import RequiredLinkage, category_compatible, required_linkage
from fincontrol.models.reports import ReviewCommitResult

if TYPE_CHECKING:
    from fincontrol.models.ledger import Transaction
    from fincontrol.store import LedgerStore

logger = get_logger(__name__)

_WHITESPACE = re.compile(r"\s+")


def normalize_description(text: str) -> str:
    return _WHITESPACE.sub(" ", (text or "").strip()).casefold()


# =============================================================================
# STAGE 1: CONSOLIDATION
# =============================================================================

def apply_rules(
    line: ImportedTransaction,
    rules: Iterable[StandardizationRule],
) -> ImportedTransaction:
    """
    Pre-fill staging fields from the first matching rule.

    Lines the reviewer already classified are left untouched.
    """
    if line.operation_type is not None:
        return line
    rule = next((r for r in rules if r.matches(line.original_description)), None)
    if rule is None:
        return line
    updates = {"operation_type": rule.operation_type}
    if rule.category_id:
        updates["category_id"] = rule.category_id
    if rule.description_template:
        updates["description"] = rule.description_template.replace(
            "{original}", line.original_description
        )
    return line.model_copy(update=updates)


def _duplicate_key(line: ImportedTransaction) -> tuple:
    return (line.date, line.amount, line.is_credit, normalize_description(line.original_description))


def find_ledger_match(
    line: ImportedTransaction,
    snapshot: LedgerSnapshot,
    window_days: int,
) -> Optional[str]:
    """Id of a ledger transaction on the same account, same amount, close in date."""
    window = timedelta(days=window_days)
    for tx in snapshot.transactions:
        if (
            tx.account_id == line.account_id
            and tx.amount == line.amount
            and abs(tx.date - line.date) <= window
        ):
            return tx.id
    return None


def consolidate_for_review(
    snapshot: LedgerSnapshot,
    account_id: str,
    date_from: date,
    date_to: date,
    settings: Optional[LedgerSettings] = None,
) -> list[ImportedTransaction]:
    """Pending lines of an account in [date_from, date_to], ready for review."""
    settings = settings or get_settings().ledger
    seen = set()
    consolidated = []
    for statement in snapshot.statements:
        for line in statement.raw_transactions:
            if (
                line.account_id != account_id
                or line.is_contabilized
                or not date_from <= line.date <= date_to
            ):
                continue
            key = _duplicate_key(line)
            if key in seen:
                continue
            seen.add(key)

            line = apply_rules(line, snapshot.rules)
            if line.operation_type is None:
                line = line.model_copy(update={
                    "operation_type": (
                        OperationType.REVENUE if line.is_credit else OperationType.EXPENSE
                    ),
                })
            if not line.description:
                line = line.model_copy(update={"description": line.original_description})

            match = find_ledger_match(line, snapshot, settings.duplicate_window_days)
            consolidated.append(line.model_copy(update={
                "is_potential_duplicate": match is not None,
                "duplicate_of_transaction_id": match,
            }))

    consolidated.sort(key=lambda l: (l.date, l.id))
    logger.debug(
        "statement_lines_consolidated",
        account_id=account_id,
        lines=len(consolidated),
        duplicates=sum(1 for l in consolidated if l.is_potential_duplicate),
    )
    return consolidated


def is_ready(line: ImportedTransaction) -> bool:
    """The line carries the linkage its operation type requires."""
    if line.operation_type is None:
        return False
    linkage = required_linkage(line.operation_type)
    if linkage == RequiredLinkage.CATEGORY:
        return bool(line.category_id)
    if linkage == RequiredLinkage.DESTINATION_ACCOUNT:
        return bool(line.destination_account_id) and line.destination_account_id != line.account_id
    if linkage == RequiredLinkage.INVESTMENT_ACCOUNT:
        return bool(line.temp_investment_id)
    if linkage == RequiredLinkage.LOAN:
        return bool(line.temp_loan_id)
    if linkage == RequiredLinkage.VEHICLE_OPERATION:
        return line.temp_vehicle_operation is not None
    return linkage == RequiredLinkage.NOTHING


def _unresolved(line: ImportedTransaction, snapshot: LedgerSnapshot) -> Optional[str]:
    """Reason a ready line still cannot commit against this snapshot."""
    if snapshot.account(line.account_id) is None:
        return "unknown_account"
    if line.category_id:
        category = snapshot.category(line.category_id)
        if category is None or not category_compatible(line.operation_type, category):
            return "incompatible_category"
    linkage = required_linkage(line.operation_type)
    if linkage == RequiredLinkage.DESTINATION_ACCOUNT and snapshot.account(line.destination_account_id) is None:
        return "unknown_destination_account"
    if linkage == RequiredLinkage.INVESTMENT_ACCOUNT and snapshot.account(line.temp_investment_id) is None:
        return "unknown_investment_account"
    if linkage == RequiredLinkage.LOAN and snapshot.loan(line.temp_loan_id) is None:
        return "unknown_loan"
    return None


# =============================================================================
# STAGE 2: COMMIT
# =============================================================================

def _expand(
    store: "LedgerStore",
    line: ImportedTransaction,
    result: dict[str, list[str]],
) -> "Transaction":
    """Post one line to the ledger; returns the transaction on the line's account."""
    op = line.operation_type
    description = line.description or line.original_description
    meta = {
        "source": TransactionSource.IMPORT,
        "original_description": line.original_description,
    }

    if op == OperationType.TRANSFER:
        if line.is_credit:
            out_leg, in_leg = store.add_transfer(
                line.destination_account_id, line.account_id, line.amount, line.date,
                description, **meta,
            )
            return in_leg
        out_leg, in_leg = store.add_transfer(
            line.account_id, line.destination_account_id, line.amount, line.date,
            description, **meta,
        )
        return out_leg

    if op in (OperationType.INVESTMENT_CONTRIBUTION, OperationType.INVESTMENT_WITHDRAWAL):
        withdrawal = op == OperationType.INVESTMENT_WITHDRAWAL
        out_leg, in_leg = store.add_investment_move(
            line.account_id, line.temp_investment_id, line.amount, line.date,
            withdrawal=withdrawal, description=description, **meta,
        )
        return in_leg if withdrawal else out_leg

    if op == OperationType.LOAN_PAYMENT:
        loan = store.get_loan(line.temp_loan_id)
        if loan.is_configured and amortization.next_unpaid_installment(
            loan, store.snapshot.transactions
        ) is not None:
            return store.mark_installment_paid(
                loan.id, line.amount, line.date,
                account_id=line.account_id,
                category_id=line.category_id,
                description=description,
                **meta,
            )
        return store.add_transaction(store.make_transaction(
            line.account_id, line.date, line.amount, op,
            category_id=line.category_id,
            description=description,
            links=TransactionLinks(loan_id=loan.id),
            **meta,
        ))

    if op == OperationType.VEHICLE:
        tx = store.add_transaction(store.make_transaction(
            line.account_id, line.date, line.amount, op,
            category_id=line.category_id,
            description=description,
            vehicle_operation=line.temp_vehicle_operation,
            **meta,
        ))
        if line.temp_vehicle_operation == VehicleOperation.BUY:
            vehicle = store.add_vehicle(Vehicle(
                model=description,
                purchase_date=line.date,
                purchase_value=line.amount,
                status=VehicleStatus.PENDING_REGISTRATION,
                purchase_transaction_id=tx.id,
            ))
            result["vehicles"].append(vehicle.id)
        return tx

    tx = store.add_transaction(store.make_transaction(
        line.account_id, line.date, line.amount, op,
        category_id=line.category_id,
        description=description,
        **meta,
    ))
    if op == OperationType.LOAN_DISBURSEMENT:
        loan = store.add_loan(Loan(
            contrato=description,
            valor_total=line.amount,
            status=LoanStatus.PENDING_CONFIGURATION,
            conta_corrente_id=line.account_id,
            liberacao_transaction_id=tx.id,
        ))
        result["loans"].append(loan.id)
    return tx


def commit_review(
    store: "LedgerStore",
    reviewed_lines: Iterable[ImportedTransaction],
) -> ReviewCommitResult:
    """
    Commit reviewed lines. Duplicates, lines that are not ready and lines
    already contabilized are skipped (and reported); running the same
    review twice commits nothing the second time.
    """
    snapshot = store.snapshot
    stored_lines = {
        line.id: line
        for statement in snapshot.statements
        for line in statement.raw_transactions
    }

    skipped: dict[str, str] = {}
    ready = []
    for line in reviewed_lines:
        stored = stored_lines.get(line.id)
        if stored is None:
            skipped[line.id] = "unknown_line"
        elif stored.is_contabilized or line.id in {l.id for l in ready}:
            skipped[line.id] = "already_contabilized"
        elif line.is_potential_duplicate:
            skipped[line.id] = "potential_duplicate"
        elif not is_ready(line):
            skipped[line.id] = "not_ready"
        else:
            reason = _unresolved(line, snapshot)
            if reason:
                skipped[line.id] = reason
            else:
                ready.append(line.model_copy(update={"statement_id": stored.statement_id}))

    created = {"transactions": [], "loans": [], "vehicles": []}
    contabilized = []
    with store.atomic():
        for line in ready:
            before = {t.id for t in store.snapshot.transactions}
            anchor = _expand(store, line, created)
            created["transactions"].extend(
                t.id for t in store.snapshot.transactions if t.id not in before
            )
            contabilized.append(line.model_copy(update={
                "is_contabilized": True,
                "contabilized_transaction_id": anchor.id,
            }))
        if contabilized:
            store.update_statement_lines(contabilized)
            store.log_event(AuditEventBuilder.commit_completed(
                AuditEventType.STATEMENT_COMMITTED,
                "statement",
                f"Statement review committed: {len(contabilized)} line(s)",
                {
                    "line_ids": [l.id for l in contabilized],
                    "transaction_ids": created["transactions"],
                    "skipped": skipped,
                },
            ))

    logger.info(
        "statement_review_committed",
        committed=len(contabilized),
        skipped=len(skipped),
        version=store.version,
    )
    return ReviewCommitResult(
        committed_line_ids=[l.id for l in contabilized],
        created_transaction_ids=created["transactions"],
        created_loan_ids=created["loans"],
        created_vehicle_ids=created["vehicles"],
        skipped=skipped,
    )
