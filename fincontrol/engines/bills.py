"""
Bills / Accounts Payable Tracker

Builds the payable list of one month and commits the reviewed list back
into the ledger.

Item lifecycle:
    generated -> pending -> paid | excluded
    paid -> pending (un-pay) is allowed; excluded is final for the instance.

DESIGN DECISION: Generated entries (recurring templates, loan and insurance
installments) are never stored. Their ids are deterministic and their paid
state is read back from the ledger every time the list is built:
- loan installments from linked loan payments
- insurance installments from the policy's installment marks
- templates from `meta.bill_key` on the paying transaction
Only ad-hoc and purchase installment entries live in the snapshot.
"""

import calendar
from collections.abc import Iterable
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from fincontrol.audit import get_logger
from fincontrol.config import LedgerSettings, get_settings
from fincontrol.engines import amortization
from fincontrol.engines.money import ZERO
from fincontrol.errors import ValidationError
from fincontrol.models.audit import AuditEventBuilder, AuditEventType
from fincontrol.models.ledger import (
    BillSourceType,
    BillTracker,
    CategoryNature,
    FlowType,
    LedgerSnapshot,
    LoanStatus,
    OperationType,
    TransactionSource,
)
from fincontrol.models.reports import BillsCommitResult
from fincontrol.models.validation import ValidationIssue

if TYPE_CHECKING:
    from fincontrol.store import LedgerStore

logger = get_logger(__name__)

# Non-payment fields a reviewer may change on stored entries
EDITABLE_BILL_FIELDS = (
    "description",
    "due_date",
    "expected_amount",
    "suggested_account_id",
    "suggested_category_id",
    "is_excluded",
)


# =============================================================================
# GENERATION
# =============================================================================

def month_bounds(month_date: date) -> tuple[date, date]:
    last_day = calendar.monthrange(month_date.year, month_date.month)[1]
    return month_date.replace(day=1), month_date.replace(day=last_day)


def due_in_month(month_date: date, day: int) -> date:
    """Day of the month, clamped to the month's last day (31 -> 28/29/30)."""
    last_day = calendar.monthrange(month_date.year, month_date.month)[1]
    return month_date.replace(day=min(day, last_day))


def template_bill_id(source_type: BillSourceType, category_id: str, month_date: date) -> str:
    return f"{source_type.value}:{category_id}:{month_date:%Y-%m}"


def installment_bill_id(source_type: BillSourceType, source_ref: str, number: int) -> str:
    return f"{source_type.value}:{source_ref}:{number}"


def _template_entries(
    snapshot: LedgerSnapshot,
    month_date: date,
    settings: LedgerSettings,
) -> list[BillTracker]:
    paid_by_key = {
        tx.meta.bill_key: tx for tx in snapshot.transactions if tx.meta.bill_key
    }
    entries = []
    for category in snapshot.categories:
        if not category.is_recurring:
            continue
        source_type = (
            BillSourceType.FIXED_EXPENSE
            if category.nature == CategoryNature.FIXED_EXPENSE
            else BillSourceType.VARIABLE_EXPENSE
        )
        bill_id = template_bill_id(source_type, category.id, month_date)
        paid_tx = paid_by_key.get(bill_id)
        entries.append(BillTracker(
            id=bill_id,
            description=category.label,
            due_date=due_in_month(
                month_date, category.recurring_due_day or settings.default_due_day
            ),
            expected_amount=category.recurring_amount or ZERO,
            source_type=source_type,
            source_ref=category.id,
            suggested_category_id=category.id,
            is_paid=paid_tx is not None,
            payment_date=paid_tx.date if paid_tx else None,
            transaction_id=paid_tx.id if paid_tx else None,
        ))
    return entries


def _loan_entries(snapshot: LedgerSnapshot, first: date, last: date) -> list[BillTracker]:
    entries = []
    for loan in snapshot.loans:
        if loan.status == LoanStatus.PENDING_CONFIGURATION or not loan.is_configured:
            continue
        for row in amortization.annotated_schedule(loan, snapshot.transactions):
            if not first <= row.due_date <= last:
                continue
            entries.append(BillTracker(
                id=installment_bill_id(BillSourceType.LOAN_INSTALLMENT, loan.id, row.number),
                description=f"{loan.contrato} - parcela {row.number}/{loan.meses}",
                due_date=row.due_date,
                expected_amount=row.payment,
                source_type=BillSourceType.LOAN_INSTALLMENT,
                source_ref=loan.id,
                parcela_number=row.number,
                suggested_account_id=loan.conta_corrente_id,
                is_paid=row.paid,
                payment_date=row.paid_date,
                transaction_id=row.transaction_id,
            ))
    return entries


def _insurance_entries(snapshot: LedgerSnapshot, first: date, last: date) -> list[BillTracker]:
    entries = []
    for policy in snapshot.insurance_policies:
        count = len(policy.installments)
        for inst in policy.installments:
            if not first <= inst.due_date <= last:
                continue
            entries.append(BillTracker(
                id=installment_bill_id(
                    BillSourceType.INSURANCE_INSTALLMENT, policy.id, inst.number
                ),
                description=f"Seguro {policy.insurer} - parcela {inst.number}/{count}",
                due_date=inst.due_date,
                expected_amount=inst.amount,
                source_type=BillSourceType.INSURANCE_INSTALLMENT,
                source_ref=policy.id,
                parcela_number=inst.number,
                suggested_account_id=policy.account_id,
                suggested_category_id=policy.category_id,
                is_paid=inst.paid,
                payment_date=inst.paid_date,
                transaction_id=inst.transaction_id,
            ))
    return entries


def _external_entries(
    snapshot: LedgerSnapshot,
    first: date,
    last: date,
    tracked_transaction_ids: set[str],
) -> list[BillTracker]:
    """Expenses and loan payments of the month made outside the tracker, shown read-only."""
    entries = []
    for tx in snapshot.transactions:
        if (
            tx.operation_type not in (OperationType.EXPENSE, OperationType.LOAN_PAYMENT)
            or tx.flow != FlowType.OUT
            or not first <= tx.date <= last
            or tx.id in tracked_transaction_ids
            or tx.meta.bill_key
            or tx.links.vehicle_transaction_id
        ):
            continue
        entries.append(BillTracker(
            id=f"{BillSourceType.EXTERNAL_PAID.value}:{tx.id}",
            description=tx.description or tx.meta.original_description or "Despesa",
            due_date=tx.date,
            expected_amount=tx.amount,
            source_type=BillSourceType.EXTERNAL_PAID,
            source_ref=tx.id,
            suggested_account_id=tx.account_id,
            suggested_category_id=tx.category_id,
            is_paid=True,
            payment_date=tx.date,
            transaction_id=tx.id,
        ))
    return entries


def generate_month_list(
    snapshot: LedgerSnapshot,
    month_date: date,
    include_templates: bool = True,
    settings: Optional[LedgerSettings] = None,
) -> list[BillTracker]:
    """
    Payable list for the month containing `month_date`.

    Merges stored entries, recurring templates (optional), loan and insurance
    installments and read-only external payments. Entries sharing a
    (source type, source ref, installment) key are deduplicated and a
    stored entry always wins over a generated one.
    """
    settings = settings or get_settings().ledger
    first, last = month_bounds(month_date)

    merged: dict[tuple, BillTracker] = {}
    for bill in snapshot.bills:
        if first <= bill.due_date <= last:
            key = bill.dedupe_key if bill.source_ref else ("id", bill.id)
            merged.setdefault(key, bill)

    generated = []
    if include_templates:
        generated.extend(_template_entries(snapshot, month_date, settings))
    generated.extend(_loan_entries(snapshot, first, last))
    generated.extend(_insurance_entries(snapshot, first, last))
    for bill in generated:
        merged.setdefault(bill.dedupe_key, bill)

    tracked = {b.transaction_id for b in merged.values() if b.transaction_id}
    tracked.update(b.transaction_id for b in snapshot.bills if b.transaction_id)
    for bill in _external_entries(snapshot, first, last, tracked):
        merged.setdefault(bill.dedupe_key, bill)

    return sorted(
        merged.values(),
        key=lambda b: (b.is_external, b.due_date, b.description.casefold(), b.id),
    )


def month_totals(bills: Iterable[BillTracker]) -> dict[str, Decimal]:
    """Pending, paid and excluded totals of a month list."""
    totals = {"pending": ZERO, "paid": ZERO, "excluded": ZERO}
    for bill in bills:
        if bill.is_excluded:
            totals["excluded"] += bill.expected_amount
        elif bill.is_paid:
            totals["paid"] += bill.expected_amount
        else:
            totals["pending"] += bill.expected_amount
    return totals


# =============================================================================
# COMMIT
# =============================================================================

def current_payment(snapshot: LedgerSnapshot, bill: BillTracker) -> tuple[bool, Optional[str]]:
    """(is paid, paying transaction id) of an entry as the ledger sees it now."""
    if bill.source_type == BillSourceType.LOAN_INSTALLMENT:
        loan = snapshot.loan(bill.source_ref)
        if loan is None or bill.parcela_number is None:
            return False, None
        tx = amortization.paid_installment_numbers(loan, snapshot.transactions).get(
            bill.parcela_number
        )
        if tx is None and bill.parcela_number in amortization.legacy_paid_numbers(
            loan, snapshot.transactions
        ):
            return True, None
        return tx is not None, tx.id if tx else None

    if bill.source_type == BillSourceType.INSURANCE_INSTALLMENT:
        policy = snapshot.insurance_policy(bill.source_ref)
        inst = policy.installment(bill.parcela_number) if policy and bill.parcela_number else None
        if inst is None:
            return False, None
        return inst.paid, inst.transaction_id

    if bill.is_persistent:
        stored = snapshot.bill(bill.id)
        if stored is None:
            return False, None
        return stored.is_paid, stored.transaction_id

    tx = next((t for t in snapshot.transactions if t.meta.bill_key == bill.id), None)
    return tx is not None, tx.id if tx else None


def _payment_issues(bill: BillTracker) -> list[ValidationIssue]:
    issues = []
    if not bill.suggested_account_id:
        issues.append(ValidationIssue(
            field="suggested_account_id",
            issue_type="missing",
            message=f"'{bill.description}' needs an account to be paid from",
            entity_id=bill.id,
        ))
    needs_category = bill.source_type not in (
        BillSourceType.LOAN_INSTALLMENT,
        BillSourceType.INSURANCE_INSTALLMENT,
    )
    if needs_category and not bill.suggested_category_id:
        issues.append(ValidationIssue(
            field="suggested_category_id",
            issue_type="missing",
            message=f"'{bill.description}' needs a category to be paid",
            entity_id=bill.id,
        ))
    return issues


def _pay(store: "LedgerStore", bill: BillTracker) -> str:
    """Create the ledger consequence of paying an entry; returns the transaction id."""
    paid_on = bill.payment_date or bill.due_date
    if bill.source_type == BillSourceType.LOAN_INSTALLMENT:
        tx = store.mark_installment_paid(
            bill.source_ref,
            bill.expected_amount,
            paid_on,
            installment_number=bill.parcela_number,
            account_id=bill.suggested_account_id,
            category_id=bill.suggested_category_id,
            description=bill.description,
            source=TransactionSource.BILLS,
            bill_key=bill.id,
        )
    elif bill.source_type == BillSourceType.INSURANCE_INSTALLMENT:
        tx = store.mark_insurance_installment_paid(
            bill.source_ref,
            bill.parcela_number,
            paid_on,
            account_id=bill.suggested_account_id,
            amount=bill.expected_amount,
            category_id=bill.suggested_category_id,
            description=bill.description,
            source=TransactionSource.BILLS,
            bill_key=bill.id,
        )
    else:
        tx = store.add_transaction(store.make_transaction(
            bill.suggested_account_id,
            paid_on,
            bill.expected_amount,
            OperationType.EXPENSE,
            flow=FlowType.OUT,
            category_id=bill.suggested_category_id,
            description=bill.description,
            source=TransactionSource.BILLS,
            bill_key=bill.id,
        ))
        if bill.is_persistent:
            store.save_bill(store.get_bill(bill.id).model_copy(update={
                "is_paid": True,
                "payment_date": paid_on,
                "transaction_id": tx.id,
            }))
    return tx.id


def commit_month(
    store: "LedgerStore",
    local_list: Iterable[BillTracker],
) -> BillsCommitResult:
    """
    Apply a reviewed month list to the ledger ("save and close").

    - pending -> paid: one `out` transaction (loan payment for loan
      installments, expense otherwise) dated at the payment date or, by
      default, the due date
    - paid -> pending: the paying transaction is deleted and the delete
      cascade reverses the installment marks
    - edits are stored only for ad-hoc and purchase installment entries
    - external rows are ignored

    All or nothing: a missing account (or category, for non-loan entries)
    on any newly paid entry raises ValidationError before anything changes.
    """
    local = list(local_list)
    snapshot = store.snapshot

    plan = []
    issues = []
    ignored = []
    for bill in local:
        if bill.is_external:
            ignored.append(bill.id)
            continue
        was_paid, tx_id = current_payment(snapshot, bill)
        if bill.is_paid and not was_paid:
            issues.extend(_payment_issues(bill))
        plan.append((bill, was_paid, tx_id))
    if issues:
        logger.warning("bills_commit_rejected", issues=[str(i) for i in issues])
        raise ValidationError(issues)

    created, deleted, saved = [], [], []
    with store.atomic():
        for bill, was_paid, tx_id in plan:
            if bill.is_persistent and store.snapshot.bill(bill.id) is None:
                store.add_bill(bill.model_copy(update={
                    "is_paid": False, "payment_date": None, "transaction_id": None,
                }))
                saved.append(bill.id)

            if was_paid and not bill.is_paid and tx_id:
                if store.snapshot.transaction(tx_id) is not None:
                    deleted.extend(store.delete_transaction(tx_id))

            if bill.is_persistent:
                stored = store.get_bill(bill.id)
                edits = {
                    field: getattr(bill, field)
                    for field in EDITABLE_BILL_FIELDS
                    if getattr(bill, field) != getattr(stored, field)
                }
                if edits:
                    store.update_bill(bill.id, **edits)
                    if bill.id not in saved:
                        saved.append(bill.id)
            elif bill.is_excluded:
                ignored.append(bill.id)

            if bill.is_paid and not was_paid:
                created.append(_pay(store, bill))

        result = BillsCommitResult(
            created_transaction_ids=created,
            deleted_transaction_ids=deleted,
            saved_bill_ids=saved,
            ignored_bill_ids=ignored,
        )
        if result.changed:
            store.log_event(AuditEventBuilder.commit_completed(
                AuditEventType.BILLS_COMMITTED,
                "bills",
                f"Bills committed: {len(created)} paid, {len(deleted)} reverted",
                result.model_dump(),
            ))

    logger.info(
        "bills_committed",
        paid=len(created),
        reverted=len(deleted),
        saved=len(saved),
        version=store.version,
    )
    return result
