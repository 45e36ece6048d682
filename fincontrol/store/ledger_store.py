"""
Ledger Store

The single mutation boundary of the financial core.

DESIGN DECISION: The store holds one immutable LedgerSnapshot. Every
mutation builds a candidate snapshot, validates it, and swaps it in whole
with a new version number. Readers holding an older snapshot are never
affected, and a failed mutation leaves nothing behind.

- There is no global instance; callers create one store per session and
  pass it around explicitly.
- Cross-entity consistency (references, transfer pairs, deletes with
  dependents) is enforced here, eagerly, never at read time.
- `atomic()` groups several mutations: all of them apply, or the snapshot
  in place before the block is restored.
"""

from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import date
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

import pydantic
from dateutil.relativedelta import relativedelta
from pydantic import BaseModel

from fincontrol.audit import AuditLogger, create_correlation_id, get_logger
from fincontrol.config import LedgerSettings, get_settings
from fincontrol.engines import amortization
from fincontrol.engines.insurance import build_installments
from fincontrol.engines.money import split_evenly
from fincontrol.errors import (
    NotFoundError,
    ReferentialIntegrityError,
    ValidationError,
)
from fincontrol.models.audit import AuditEventBuilder, AuditEventType
from fincontrol.models.ledger import (
    Account,
    BillSourceType,
    BillTracker,
    Category,
    FlowType,
    ImportedStatement,
    ImportedTransaction,
    InsurancePolicy,
    LedgerSnapshot,
    Loan,
    LoanStatus,
    OperationType,
    StandardizationRule,
    Transaction,
    TransactionLinks,
    TransactionMeta,
    TransactionSource,
    Vehicle,
    new_id,
    utc_now,
)
from fincontrol.models.operations import category_compatible, default_flow, is_paired
from fincontrol.models.validation import ValidationIssue
from fincontrol.services.storage.interface import (
    CorruptSnapshotError,
    SnapshotStorageInterface,
)
from fincontrol.validation import LedgerValidator

EDITABLE_TRANSACTION_FIELDS = frozenset({
    "date",
    "amount",
    "description",
    "category_id",
    "conciliated",
})


class TransactionFilter(BaseModel):
    """Criteria for list_transactions. Unset fields do not filter."""

    account_id: Optional[str] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    operation_types: Optional[list[OperationType]] = None
    flow: Optional[FlowType] = None
    category_id: Optional[str] = None
    loan_id: Optional[str] = None
    transfer_group_id: Optional[str] = None
    conciliated: Optional[bool] = None
    text: Optional[str] = None

    def matches(self, tx: Transaction) -> bool:
        if self.account_id is not None and tx.account_id != self.account_id:
            return False
        if self.date_from is not None and tx.date < self.date_from:
            return False
        if self.date_to is not None and tx.date > self.date_to:
            return False
        if self.operation_types and tx.operation_type not in self.operation_types:
            return False
        if self.flow is not None and tx.flow != self.flow:
            return False
        if self.category_id is not None and tx.category_id != self.category_id:
            return False
        if self.loan_id is not None and tx.links.loan_id != self.loan_id:
            return False
        if (
            self.transfer_group_id is not None
            and tx.links.transfer_group_id != self.transfer_group_id
        ):
            return False
        if self.conciliated is not None and tx.conciliated != self.conciliated:
            return False
        if self.text:
            needle = self.text.casefold()
            haystack = f"{tx.description} {tx.meta.original_description or ''}".casefold()
            if needle not in haystack:
                return False
        return True


def _replace(items: tuple, new_item) -> tuple:
    return tuple(new_item if item.id == new_item.id else item for item in items)


class LedgerStore:
    """
    Repository of one household's ledger.

    Usage:
        store = LedgerStore()
        checking = store.add_account(Account(name="Main", account_type=AccountType.CHECKING))
        with store.atomic():
            store.add_transfer(checking.id, savings.id, Decimal("100"), date.today())
    """

    def __init__(
        self,
        snapshot: Optional[LedgerSnapshot] = None,
        settings: Optional[LedgerSettings] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._snapshot = snapshot or LedgerSnapshot()
        self._settings = settings or get_settings().ledger
        self._validator = LedgerValidator(self._settings)
        self._audit = audit_logger
        self._logger = get_logger(__name__)
        # Monotonic: a rolled back version number is never reused
        self._counter = self._snapshot.version
        self._depth = 0
        self._pending_events = []
        self._correlation_id: Optional[UUID] = None

    # =========================================================================
    # STATE
    # =========================================================================

    @property
    def snapshot(self) -> LedgerSnapshot:
        return self._snapshot

    @property
    def version(self) -> int:
        return self._snapshot.version

    @property
    def settings(self) -> LedgerSettings:
        return self._settings

    @property
    def correlation_id(self) -> Optional[UUID]:
        return self._correlation_id

    def _commit(self, **collections) -> LedgerSnapshot:
        self._counter += 1
        self._snapshot = self._snapshot.model_copy(
            update={**collections, "version": self._counter}
        )
        return self._snapshot

    def _emit(self, *events) -> None:
        if self._audit is None or not events:
            return
        if self._depth:
            self._pending_events.extend(events)
            return
        self._audit.log_many(list(events), snapshot_version=self._snapshot.version)

    def log_event(self, *events) -> None:
        """Record audit events; inside atomic() they wait for the commit."""
        self._emit(*events)

    def _invalid(self, issues: list[ValidationIssue]) -> ValidationError:
        error = ValidationError(issues)
        self._logger.warning("ledger_validation_rejected", issues=[str(i) for i in issues])
        if self._audit is not None:
            self._audit.log_rejection(
                "validation",
                str(error),
                {"issues": [i.model_dump() for i in issues]},
                self._correlation_id,
            )
        return error

    def _invalid_msg(self, field: str, message: str, issue_type: str = "invalid_value") -> ValidationError:
        return self._invalid([ValidationIssue(field=field, issue_type=issue_type, message=message)])

    def _check_dependents(self, entity_type: str, entity_id: str, dependents: dict[str, list[str]]) -> None:
        if not any(dependents.values()):
            return
        error = ReferentialIntegrityError(entity_type, entity_id, dependents)
        self._logger.warning("ledger_delete_rejected", entity_type=entity_type, entity_id=entity_id)
        if self._audit is not None:
            self._audit.log_rejection(
                "integrity",
                str(error),
                {"entity_type": entity_type, "entity_id": entity_id, "dependents": error.dependents},
                self._correlation_id,
            )
        raise error

    def _build(self, model_cls, data: dict):
        try:
            return model_cls.model_validate(data)
        except pydantic.ValidationError as e:
            raise self._invalid([
                ValidationIssue(
                    field=".".join(str(p) for p in err["loc"]) or model_cls.__name__,
                    issue_type=err["type"],
                    message=err["msg"],
                )
                for err in e.errors()
            ]) from e

    def _merge(self, model, changes: dict[str, Any]):
        if "id" in changes and changes["id"] != model.id:
            raise self._invalid_msg("id", "Entity ids cannot be changed")
        data = model.model_dump()
        data.update(changes)
        return self._build(type(model), data)

    @contextmanager
    def atomic(self, correlation_id: Optional[UUID] = None) -> Iterator["LedgerStore"]:
        """
        Group mutations: all of them apply, or none do.

        Audit events raised inside the block are held back and logged
        together (sharing one correlation id) only if the block succeeds.
        """
        saved = self._snapshot
        outer = self._depth == 0
        if outer:
            self._pending_events = []
            self._correlation_id = correlation_id or create_correlation_id()
        mark = len(self._pending_events)
        self._depth += 1
        try:
            yield self
        except Exception as e:
            self._depth -= 1
            self._snapshot = saved
            del self._pending_events[mark:]
            if outer:
                self._logger.warning("ledger_atomic_rollback", error=str(e), version=saved.version)
                if self._audit is not None:
                    self._audit.log_rollback(e, self._correlation_id)
                self._pending_events = []
                self._correlation_id = None
            raise
        else:
            self._depth -= 1
            if outer:
                events, self._pending_events = self._pending_events, []
                if self._audit is not None and events:
                    self._audit.log_many(
                        events,
                        correlation_id=self._correlation_id,
                        snapshot_version=self._snapshot.version,
                    )
                self._correlation_id = None

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    def _get(self, kind: str, found, entity_id: Optional[str]):
        if found is None:
            raise NotFoundError(kind, entity_id)
        return found

    def get_transaction(self, tx_id: str) -> Transaction:
        return self._get("transaction", self._snapshot.transaction(tx_id), tx_id)

    def get_account(self, account_id: str) -> Account:
        return self._get("account", self._snapshot.account(account_id), account_id)

    def get_category(self, category_id: str) -> Category:
        return self._get("category", self._snapshot.category(category_id), category_id)

    def get_loan(self, loan_id: str) -> Loan:
        return self._get("loan", self._snapshot.loan(loan_id), loan_id)

    def get_bill(self, bill_id: str) -> BillTracker:
        return self._get("bill", self._snapshot.bill(bill_id), bill_id)

    def get_statement(self, statement_id: str) -> ImportedStatement:
        return self._get("statement", self._snapshot.statement(statement_id), statement_id)

    def get_rule(self, rule_id: str) -> StandardizationRule:
        return self._get("rule", self._snapshot.rule(rule_id), rule_id)

    def get_insurance_policy(self, policy_id: str) -> InsurancePolicy:
        return self._get(
            "insurance_policy", self._snapshot.insurance_policy(policy_id), policy_id
        )

    def get_vehicle(self, vehicle_id: str) -> Vehicle:
        return self._get("vehicle", self._snapshot.vehicle(vehicle_id), vehicle_id)

    def list_transactions(
        self,
        filter: Optional[TransactionFilter] = None,
        **criteria,
    ) -> list[Transaction]:
        """Transactions matching the filter, oldest first."""
        if filter is None:
            filter = TransactionFilter(**criteria)
        elif criteria:
            filter = filter.model_copy(update=criteria)
        found = [tx for tx in self._snapshot.transactions if filter.matches(tx)]
        found.sort(key=lambda t: (t.date, t.meta.created_at, t.id))
        return found

    # =========================================================================
    # TRANSACTIONS
    # =========================================================================

    def make_transaction(
        self,
        account_id: str,
        on: date,
        amount: Decimal,
        operation_type: OperationType,
        flow: Optional[FlowType] = None,
        category_id: Optional[str] = None,
        description: str = "",
        links: Optional[TransactionLinks] = None,
        source: TransactionSource = TransactionSource.MANUAL,
        **meta,
    ) -> Transaction:
        """Build (not store) a transaction with the store's defaults."""
        return self._build(Transaction, {
            "date": on,
            "account_id": account_id,
            "flow": flow or default_flow(operation_type, meta.get("vehicle_operation")),
            "operation_type": operation_type,
            "amount": amount,
            "category_id": category_id,
            "description": description,
            "links": links or TransactionLinks(),
            "meta": TransactionMeta(
                created_by=meta.pop("created_by", self._settings.default_created_by),
                source=source,
                **meta,
            ),
        })

    def _sync_loan_status(
        self,
        loans: tuple[Loan, ...],
        transactions: tuple[Transaction, ...],
        loan_ids: set[str],
    ) -> tuple[Loan, ...]:
        """Settled when every installment has a payment; reopened otherwise."""
        if not loan_ids:
            return loans
        updated = []
        for loan in loans:
            if loan.id in loan_ids and loan.is_configured:
                paid = len(amortization.paid_installment_numbers(loan, transactions))
                if paid >= loan.meses and loan.status != LoanStatus.SETTLED:
                    loan = loan.model_copy(update={"status": LoanStatus.SETTLED})
                elif paid < loan.meses and loan.status == LoanStatus.SETTLED:
                    loan = loan.model_copy(update={"status": LoanStatus.ACTIVE})
            updated.append(loan)
        return tuple(updated)

    def add_transaction(self, tx: Transaction) -> Transaction:
        """Add one non-paired transaction."""
        if is_paired(tx.operation_type):
            raise self._invalid_msg(
                "operation_type",
                f"{tx.operation_type.value} transactions must be added as a pair",
                "missing_linkage",
            )
        return self.add_transactions([tx])[0]

    def add_transactions(self, transactions: Iterable[Transaction]) -> list[Transaction]:
        """
        Add a batch of transactions validated together, so both legs of a
        transfer can arrive in the same call.
        """
        new = list(transactions)
        if not new:
            return []
        snap = self._snapshot
        known = {t.id for t in snap.transactions}
        issues = []
        for tx in new:
            if tx.id in known:
                issues.append(ValidationIssue(
                    field="id",
                    issue_type="duplicate_id",
                    message=f"Transaction {tx.id} already exists",
                    entity_id=tx.id,
                ))
            known.add(tx.id)
        after = snap.transactions + tuple(new)
        candidate = snap.model_copy(update={"transactions": after})
        for tx in new:
            issues.extend(self._validator.validate_transaction(tx, candidate))
        groups = {tx.links.transfer_group_id for tx in new if tx.links.transfer_group_id}
        issues.extend(self._validator.validate_pairs(after, groups))
        if issues:
            raise self._invalid(issues)

        loan_ids = {tx.links.loan_id for tx in new if tx.links.loan_id}
        self._commit(
            transactions=after,
            loans=self._sync_loan_status(snap.loans, after, loan_ids),
        )

        events = []
        seen_groups = set()
        for tx in new:
            group = tx.links.transfer_group_id
            if group:
                if group not in seen_groups:
                    seen_groups.add(group)
                    events.append(AuditEventBuilder.transfer_created(
                        [t for t in new if t.links.transfer_group_id == group]
                    ))
            else:
                events.append(AuditEventBuilder.transaction_created(tx))
        self._emit(*events)
        return new

    def add_transfer(
        self,
        from_account_id: str,
        to_account_id: str,
        amount: Decimal,
        on: date,
        description: str = "",
        source: TransactionSource = TransactionSource.MANUAL,
        **meta,
    ) -> tuple[Transaction, Transaction]:
        """
        Transfer between two accounts. A transfer into a credit card is a
        bill payment and posts as a plain inflow on the card.
        """
        destination = self.get_account(to_account_id)
        group = new_id("tg")
        links = TransactionLinks(transfer_group_id=group)
        out_leg = self.make_transaction(
            from_account_id, on, amount, OperationType.TRANSFER,
            flow=FlowType.TRANSFER_OUT, description=description,
            links=links, source=source, **meta,
        )
        in_leg = self.make_transaction(
            to_account_id, on, amount, OperationType.TRANSFER,
            flow=FlowType.IN if destination.is_credit_card else FlowType.TRANSFER_IN,
            description=description, links=links, source=source, **meta,
        )
        self.add_transactions([out_leg, in_leg])
        return out_leg, in_leg

    def add_investment_move(
        self,
        account_id: str,
        investment_account_id: str,
        amount: Decimal,
        on: date,
        withdrawal: bool = False,
        description: str = "",
        source: TransactionSource = TransactionSource.MANUAL,
        **meta,
    ) -> tuple[Transaction, Transaction]:
        """
        Contribution (account -> investment) or withdrawal (investment ->
        account). Returns (outgoing leg, incoming leg).
        """
        self.get_account(investment_account_id)
        operation = (
            OperationType.INVESTMENT_WITHDRAWAL if withdrawal
            else OperationType.INVESTMENT_CONTRIBUTION
        )
        source_account, target_account = (
            (investment_account_id, account_id) if withdrawal
            else (account_id, investment_account_id)
        )
        links = TransactionLinks(
            transfer_group_id=new_id("tg"),
            investment_id=investment_account_id,
        )
        out_leg = self.make_transaction(
            source_account, on, amount, operation, flow=FlowType.OUT,
            description=description, links=links, source=source, **meta,
        )
        in_leg = self.make_transaction(
            target_account, on, amount, operation, flow=FlowType.IN,
            description=description, links=links, source=source, **meta,
        )
        self.add_transactions([out_leg, in_leg])
        return out_leg, in_leg

    def update_transaction(self, tx_id: str, **changes) -> Transaction:
        """
        Edit date, amount, description, category or conciliated.

        Date and amount changes are applied to the paired leg as well.
        """
        forbidden = set(changes) - EDITABLE_TRANSACTION_FIELDS
        if forbidden:
            raise self._invalid_msg(
                ",".join(sorted(forbidden)),
                f"Fields cannot be edited: {', '.join(sorted(forbidden))}",
                "not_editable",
            )
        tx = self.get_transaction(tx_id)
        snap = self._snapshot
        now = utc_now()

        def edited(original: Transaction, values: dict) -> Transaction:
            data = original.model_dump()
            data.update(values)
            data["meta"]["updated_at"] = now
            return self._build(Transaction, data)

        updated = {tx.id: edited(tx, changes)}
        shared = {k: v for k, v in changes.items() if k in ("date", "amount")}
        group = tx.links.transfer_group_id
        if group and shared:
            for leg in snap.transfer_legs(group):
                if leg.id != tx.id:
                    updated[leg.id] = edited(leg, shared)

        after = tuple(updated.get(t.id, t) for t in snap.transactions)
        candidate = snap.model_copy(update={"transactions": after})
        issues = []
        for new_tx in updated.values():
            issues.extend(self._validator.validate_transaction(new_tx, candidate))
        if group:
            issues.extend(self._validator.validate_pairs(after, {group}))
        if issues:
            raise self._invalid(issues)

        collections = {"transactions": after}
        if "date" in changes:
            new_date = changes["date"]
            collections["insurance_policies"] = tuple(
                p.model_copy(update={"installments": tuple(
                    i.model_copy(update={"paid_date": new_date}) if i.transaction_id == tx.id else i
                    for i in p.installments
                )})
                for p in snap.insurance_policies
            )
            collections["bills"] = tuple(
                b.model_copy(update={"payment_date": new_date}) if b.transaction_id == tx.id else b
                for b in snap.bills
            )
        self._commit(**collections)
        self._emit(AuditEventBuilder.transaction_updated(
            tx.id, changes, [i for i in updated if i != tx.id]
        ))
        return updated[tx.id]

    def _cascade_removal(self, removed: list[Transaction]) -> tuple[dict, dict]:
        """Collections and summary after removing transactions and their marks."""
        snap = self._snapshot
        ids = {t.id for t in removed}
        insurance_keys = {
            t.links.vehicle_transaction_id for t in removed if t.links.vehicle_transaction_id
        }
        summary = {
            "insurance_installments": [],
            "bills": [],
            "statement_lines": [],
            "vehicles": [],
            "loans": [],
        }

        policies = []
        for policy in snap.insurance_policies:
            installments = []
            for inst in policy.installments:
                key = f"{policy.id}_{inst.number}"
                if inst.paid and (inst.transaction_id in ids or key in insurance_keys):
                    inst = inst.model_copy(update={
                        "paid": False, "paid_date": None, "transaction_id": None,
                    })
                    summary["insurance_installments"].append(key)
                installments.append(inst)
            policies.append(policy.model_copy(update={"installments": tuple(installments)}))

        bills = []
        for bill in snap.bills:
            if bill.transaction_id in ids:
                bill = bill.model_copy(update={
                    "is_paid": False, "payment_date": None, "transaction_id": None,
                })
                summary["bills"].append(bill.id)
            bills.append(bill)

        statements = []
        for statement in snap.statements:
            lines = []
            changed = False
            for line in statement.raw_transactions:
                if line.contabilized_transaction_id in ids:
                    line = line.model_copy(update={
                        "is_contabilized": False, "contabilized_transaction_id": None,
                    })
                    summary["statement_lines"].append(line.id)
                    changed = True
                lines.append(line)
            if changed:
                statement = statement.model_copy(update={"raw_transactions": tuple(lines)})
                statement = statement.model_copy(update={"status": statement.computed_status()})
            statements.append(statement)

        vehicles = []
        for vehicle in snap.vehicles:
            if vehicle.purchase_transaction_id in ids:
                vehicle = vehicle.model_copy(update={"purchase_transaction_id": None})
                summary["vehicles"].append(vehicle.id)
            vehicles.append(vehicle)

        transactions = tuple(t for t in snap.transactions if t.id not in ids)
        loans = []
        for loan in snap.loans:
            if loan.liberacao_transaction_id in ids:
                loan = loan.model_copy(update={"liberacao_transaction_id": None})
                summary["loans"].append(loan.id)
            loans.append(loan)
        loan_ids = {t.links.loan_id for t in removed if t.links.loan_id}
        loans = self._sync_loan_status(tuple(loans), transactions, loan_ids)

        collections = {
            "transactions": transactions,
            "insurance_policies": tuple(policies),
            "bills": tuple(bills),
            "statements": tuple(statements),
            "vehicles": tuple(vehicles),
            "loans": loans,
        }
        return collections, {k: v for k, v in summary.items() if v}

    def delete_transaction(self, tx_id: str) -> list[str]:
        """
        Delete a transaction and its paired leg.

        Cascades: insurance installments are unmarked, stored bills return
        to pending, imported lines are no longer contabilized, vehicle and
        loan back-links are cleared. Loan paid state is derived from the
        ledger and follows automatically.

        Returns the ids of every removed transaction.
        """
        tx = self.get_transaction(tx_id)
        group = tx.links.transfer_group_id
        removed = self._snapshot.transfer_legs(group) if group else [tx]
        collections, summary = self._cascade_removal(removed)
        self._commit(**collections)
        removed_ids = [t.id for t in removed]
        self._emit(AuditEventBuilder.transaction_deleted(tx.id, removed_ids, summary))
        return removed_ids

    # =========================================================================
    # ACCOUNTS
    # =========================================================================

    def add_account(
        self,
        account: Account,
        opening_balance: Optional[Decimal] = None,
        opening_date: Optional[date] = None,
    ) -> Account:
        """
        Add an account. A non-zero opening balance is recorded as an
        `initial_balance` transaction (negative balances flow out).
        """
        if self._snapshot.account(account.id) is not None:
            raise self._invalid_msg("id", f"Account {account.id} already exists", "duplicate_id")
        opening_tx = None
        if opening_balance:
            opening_tx = self.make_transaction(
                account.id,
                opening_date or account.opening_date or date.today(),
                abs(opening_balance),
                OperationType.INITIAL_BALANCE,
                flow=FlowType.IN if opening_balance > 0 else FlowType.OUT,
                description="Saldo inicial",
            )
        transactions = self._snapshot.transactions + ((opening_tx,) if opening_tx else ())
        self._commit(
            accounts=self._snapshot.accounts + (account,),
            transactions=transactions,
        )
        self._emit(AuditEventBuilder.entity_changed(
            AuditEventType.ENTITY_CREATED, "account", account.id, account.name,
            {"opening_balance": str(opening_balance) if opening_balance else None},
        ))
        return account

    def update_account(self, account_id: str, **changes) -> Account:
        account = self._merge(self.get_account(account_id), changes)
        self._commit(accounts=_replace(self._snapshot.accounts, account))
        self._emit(AuditEventBuilder.entity_changed(
            AuditEventType.ENTITY_UPDATED, "account", account.id, account.name,
            {"fields": sorted(changes)},
        ))
        return account

    def delete_account(self, account_id: str) -> None:
        """Delete an account. Rejected while anything still references it."""
        account = self.get_account(account_id)
        snap = self._snapshot
        self._check_dependents("account", account_id, {
            "transactions": [t.id for t in snap.transactions if t.account_id == account_id],
            "loans": [l.id for l in snap.loans if l.conta_corrente_id == account_id],
            "statements": [s.id for s in snap.statements if s.account_id == account_id],
            "insurance_policies": [
                p.id for p in snap.insurance_policies if p.account_id == account_id
            ],
            "bills": [b.id for b in snap.bills if b.suggested_account_id == account_id],
        })
        self._commit(accounts=tuple(a for a in snap.accounts if a.id != account_id))
        self._emit(AuditEventBuilder.entity_changed(
            AuditEventType.ENTITY_DELETED, "account", account_id, account.name,
        ))

    # =========================================================================
    # CATEGORIES
    # =========================================================================

    def add_category(self, category: Category) -> Category:
        if self._snapshot.category(category.id) is not None:
            raise self._invalid_msg("id", f"Category {category.id} already exists", "duplicate_id")
        self._commit(categories=self._snapshot.categories + (category,))
        self._emit(AuditEventBuilder.entity_changed(
            AuditEventType.ENTITY_CREATED, "category", category.id, category.label,
        ))
        return category

    def update_category(self, category_id: str, **changes) -> Category:
        """Update a category; a nature change must stay compatible with its usage."""
        category = self._merge(self.get_category(category_id), changes)
        snap = self._snapshot
        issues = [
            ValidationIssue(
                field="nature",
                issue_type="incompatible_category",
                message=(
                    f"Category would no longer fit {user.operation_type.value} "
                    f"{'transaction' if isinstance(user, Transaction) else 'rule'} {user.id}"
                ),
                entity_id=user.id,
            )
            for user in (*snap.transactions, *snap.rules)
            if user.category_id == category_id
            and not category_compatible(user.operation_type, category)
        ]
        if issues:
            raise self._invalid(issues)
        self._commit(categories=_replace(snap.categories, category))
        self._emit(AuditEventBuilder.entity_changed(
            AuditEventType.ENTITY_UPDATED, "category", category.id, category.label,
            {"fields": sorted(changes)},
        ))
        return category

    def delete_category(self, category_id: str) -> None:
        category = self.get_category(category_id)
        snap = self._snapshot
        self._check_dependents("category", category_id, {
            "transactions": [t.id for t in snap.transactions if t.category_id == category_id],
            "rules": [r.id for r in snap.rules if r.category_id == category_id],
            "bills": [b.id for b in snap.bills if b.suggested_category_id == category_id],
            "insurance_policies": [
                p.id for p in snap.insurance_policies if p.category_id == category_id
            ],
        })
        self._commit(categories=tuple(c for c in snap.categories if c.id != category_id))
        self._emit(AuditEventBuilder.entity_changed(
            AuditEventType.ENTITY_DELETED, "category", category_id, category.label,
        ))

    # =========================================================================
    # LOANS
    # =========================================================================

    def _validate_loan_refs(self, loan: Loan) -> None:
        issues = []
        if loan.conta_corrente_id and self._snapshot.account(loan.conta_corrente_id) is None:
            issues.append(ValidationIssue(
                field="conta_corrente_id",
                issue_type="invalid_reference",
                message=f"Account {loan.conta_corrente_id} does not exist",
                entity_id=loan.id,
            ))
        if (
            loan.liberacao_transaction_id
            and self._snapshot.transaction(loan.liberacao_transaction_id) is None
        ):
            issues.append(ValidationIssue(
                field="liberacao_transaction_id",
                issue_type="invalid_reference",
                message=f"Transaction {loan.liberacao_transaction_id} does not exist",
                entity_id=loan.id,
            ))
        if issues:
            raise self._invalid(issues)

    def add_loan(self, loan: Loan) -> Loan:
        if self._snapshot.loan(loan.id) is not None:
            raise self._invalid_msg("id", f"Loan {loan.id} already exists", "duplicate_id")
        self._validate_loan_refs(loan)
        self._commit(loans=self._snapshot.loans + (loan,))
        self._emit(AuditEventBuilder.entity_changed(
            AuditEventType.ENTITY_CREATED, "loan", loan.id, loan.contrato,
            {"status": loan.status.value, "valor_total": str(loan.valor_total)},
        ))
        return loan

    def _replace_loan(self, loan: Loan, event_type: AuditEventType, details: dict) -> Loan:
        self._validate_loan_refs(loan)
        snap = self._snapshot
        loans = _replace(snap.loans, loan)
        candidate = snap.model_copy(update={"loans": loans})
        issues = []
        for tx in snap.loan_payments(loan.id):
            issues.extend(self._validator.validate_transaction(tx, candidate))
        if issues:
            raise self._invalid(issues)
        loans = self._sync_loan_status(loans, snap.transactions, {loan.id})
        self._commit(loans=loans)
        self._emit(AuditEventBuilder.entity_changed(
            event_type, "loan", loan.id, loan.contrato, details,
        ))
        return self._snapshot.loan(loan.id)

    def update_loan(self, loan_id: str, **changes) -> Loan:
        """Update contract fields; linked payments must still fit the schedule."""
        loan = self._merge(self.get_loan(loan_id), changes)
        return self._replace_loan(loan, AuditEventType.ENTITY_UPDATED, {"fields": sorted(changes)})

    def configure_loan(
        self,
        loan_id: str,
        meses: int,
        taxa_mensal: Decimal,
        data_inicio: date,
        parcela: Optional[Decimal] = None,
    ) -> Loan:
        """
        Complete a loan created from an imported disbursement.
        A missing installment is computed with the Price formula.
        """
        loan = self.get_loan(loan_id)
        data = loan.model_dump()
        data.update({
            "meses": meses,
            "taxa_mensal": taxa_mensal,
            "data_inicio": data_inicio,
            "parcela": parcela if parcela is not None else Decimal("0"),
            "status": LoanStatus.ACTIVE,
        })
        configured = self._build(Loan, data)
        if configured.parcela == 0:
            configured = configured.model_copy(update={
                "parcela": amortization.price_installment(
                    configured.valor_total, configured.taxa_mensal, configured.meses
                ),
            })
        return self._replace_loan(configured, AuditEventType.LOAN_CONFIGURED, {
            "meses": meses,
            "taxa_mensal": str(taxa_mensal),
            "parcela": str(configured.parcela),
        })

    def delete_loan(self, loan_id: str) -> None:
        loan = self.get_loan(loan_id)
        snap = self._snapshot
        self._check_dependents("loan", loan_id, {
            "transactions": [t.id for t in snap.transactions if t.links.loan_id == loan_id],
        })
        self._commit(loans=tuple(l for l in snap.loans if l.id != loan_id))
        self._emit(AuditEventBuilder.entity_changed(
            AuditEventType.ENTITY_DELETED, "loan", loan_id, loan.contrato,
        ))

    def mark_installment_paid(
        self,
        loan_id: str,
        amount: Decimal,
        payment_date: date,
        installment_number: Optional[int] = None,
        account_id: Optional[str] = None,
        category_id: Optional[str] = None,
        description: Optional[str] = None,
        source: TransactionSource = TransactionSource.MANUAL,
        **meta,
    ) -> Transaction:
        """
        Record a loan payment as a ledger transaction.

        The installment defaults to the lowest unpaid one. Marking an
        installment that already has a payment returns that payment; one
        covered by the legacy paid count is rejected as already paid.
        The loan is settled when its last installment is paid.
        """
        loan = self.get_loan(loan_id)
        if not loan.is_configured:
            raise self._invalid_msg(
                "loan_id",
                f"Loan {loan.contrato} is pending configuration",
                "not_configured",
            )
        snap = self._snapshot
        number = installment_number
        if number is None:
            number = amortization.next_unpaid_installment(loan, snap.transactions)
        if number is None:
            raise self._invalid_msg("installment_number", f"Every installment of {loan.contrato} is paid")
        if not 1 <= number <= loan.meses:
            raise self._invalid_msg(
                "installment_number",
                f"Installment {number} is outside 1..{loan.meses}",
                "invalid_reference",
            )
        existing = amortization.paid_installment_numbers(loan, snap.transactions).get(number)
        if existing is not None:
            return existing
        if number in amortization.legacy_paid_numbers(loan, snap.transactions):
            raise self._invalid_msg(
                "installment_number",
                f"Installment {number} of {loan.contrato} is already paid "
                f"(legacy count {loan.legacy_paid_count})",
                "already_paid",
            )

        account = account_id or loan.conta_corrente_id
        if account is None:
            raise self._invalid_msg(
                "account_id",
                f"No account to pay installment {number} of {loan.contrato} from",
                "missing",
            )
        tx = self.make_transaction(
            account,
            payment_date,
            amount,
            OperationType.LOAN_PAYMENT,
            category_id=category_id,
            description=description or f"{loan.contrato} - parcela {number}/{loan.meses}",
            links=TransactionLinks(loan_id=loan.id, parcela_id=str(number)),
            source=source,
            **meta,
        )
        self.add_transactions([tx])
        self._emit(AuditEventBuilder.installment_marked("loan", loan.id, number, True, tx.id))
        return tx

    def unmark_installment_paid(
        self,
        loan_id: str,
        installment_number: Optional[int] = None,
    ) -> Optional[str]:
        """
        Remove the payment of an installment (the latest one by default).

        Returns the deleted transaction id, or None when nothing was paid.
        """
        loan = self.get_loan(loan_id)
        paid = amortization.paid_installment_numbers(loan, self._snapshot.transactions)
        if not paid:
            return None
        number = installment_number if installment_number is not None else max(paid)
        tx = paid.get(number)
        if tx is None:
            return None
        self.delete_transaction(tx.id)
        self._emit(AuditEventBuilder.installment_marked("loan", loan.id, number, False, tx.id))
        return tx.id

    # =========================================================================
    # VEHICLES
    # =========================================================================

    def add_vehicle(self, vehicle: Vehicle) -> Vehicle:
        if self._snapshot.vehicle(vehicle.id) is not None:
            raise self._invalid_msg("id", f"Vehicle {vehicle.id} already exists", "duplicate_id")
        if (
            vehicle.purchase_transaction_id
            and self._snapshot.transaction(vehicle.purchase_transaction_id) is None
        ):
            raise self._invalid_msg(
                "purchase_transaction_id",
                f"Transaction {vehicle.purchase_transaction_id} does not exist",
                "invalid_reference",
            )
        self._commit(vehicles=self._snapshot.vehicles + (vehicle,))
        self._emit(AuditEventBuilder.entity_changed(
            AuditEventType.ENTITY_CREATED, "vehicle", vehicle.id, vehicle.model,
        ))
        return vehicle

    def update_vehicle(self, vehicle_id: str, **changes) -> Vehicle:
        vehicle = self._merge(self.get_vehicle(vehicle_id), changes)
        self._commit(vehicles=_replace(self._snapshot.vehicles, vehicle))
        self._emit(AuditEventBuilder.entity_changed(
            AuditEventType.ENTITY_UPDATED, "vehicle", vehicle.id, vehicle.model,
            {"fields": sorted(changes)},
        ))
        return vehicle

    def delete_vehicle(self, vehicle_id: str) -> None:
        vehicle = self.get_vehicle(vehicle_id)
        snap = self._snapshot
        self._check_dependents("vehicle", vehicle_id, {
            "insurance_policies": [
                p.id for p in snap.insurance_policies if p.vehicle_id == vehicle_id
            ],
        })
        self._commit(vehicles=tuple(v for v in snap.vehicles if v.id != vehicle_id))
        self._emit(AuditEventBuilder.entity_changed(
            AuditEventType.ENTITY_DELETED, "vehicle", vehicle_id, vehicle.model,
        ))

    # =========================================================================
    # INSURANCE
    # =========================================================================

    def add_insurance_policy(
        self,
        policy: InsurancePolicy,
        installment_count: Optional[int] = None,
        first_due: Optional[date] = None,
    ) -> InsurancePolicy:
        """
        Add a policy. Without explicit installments, `installment_count`
        even monthly installments are generated (first due at `first_due`,
        default coverage start).
        """
        snap = self._snapshot
        if snap.insurance_policy(policy.id) is not None:
            raise self._invalid_msg("id", f"Policy {policy.id} already exists", "duplicate_id")
        issues = []
        if policy.vehicle_id and snap.vehicle(policy.vehicle_id) is None:
            issues.append(ValidationIssue(
                field="vehicle_id", issue_type="invalid_reference",
                message=f"Vehicle {policy.vehicle_id} does not exist", entity_id=policy.id,
            ))
        if policy.account_id and snap.account(policy.account_id) is None:
            issues.append(ValidationIssue(
                field="account_id", issue_type="invalid_reference",
                message=f"Account {policy.account_id} does not exist", entity_id=policy.id,
            ))
        if policy.category_id:
            category = snap.category(policy.category_id)
            if category is None or not category.is_expense:
                issues.append(ValidationIssue(
                    field="category_id", issue_type="incompatible_category",
                    message="Insurance category must be an existing expense category",
                    entity_id=policy.id,
                ))
        if issues:
            raise self._invalid(issues)

        if not policy.installments and installment_count:
            policy = policy.model_copy(update={"installments": build_installments(
                policy.total_premium, installment_count, first_due or policy.coverage_start,
            )})
        installments_total = sum((i.amount for i in policy.installments), Decimal("0"))
        if policy.installments and abs(installments_total - policy.total_premium) > self._settings.money_tolerance:
            raise self._invalid_msg(
                "installments",
                f"Installments add up to {installments_total}, premium is {policy.total_premium}",
            )
        self._commit(insurance_policies=snap.insurance_policies + (policy,))
        self._emit(AuditEventBuilder.entity_changed(
            AuditEventType.ENTITY_CREATED, "insurance_policy", policy.id, policy.insurer,
            {"total_premium": str(policy.total_premium), "installments": len(policy.installments)},
        ))
        return policy

    def delete_insurance_policy(self, policy_id: str) -> None:
        policy = self.get_insurance_policy(policy_id)
        snap = self._snapshot
        paid_ids = {i.transaction_id for i in policy.installments if i.transaction_id}
        prefix = f"{policy_id}_"
        self._check_dependents("insurance_policy", policy_id, {
            "transactions": [
                t.id for t in snap.transactions
                if t.id in paid_ids
                or (t.links.vehicle_transaction_id or "").startswith(prefix)
            ],
        })
        self._commit(insurance_policies=tuple(
            p for p in snap.insurance_policies if p.id != policy_id
        ))
        self._emit(AuditEventBuilder.entity_changed(
            AuditEventType.ENTITY_DELETED, "insurance_policy", policy_id, policy.insurer,
        ))

    def mark_insurance_installment_paid(
        self,
        policy_id: str,
        number: int,
        payment_date: date,
        account_id: Optional[str] = None,
        amount: Optional[Decimal] = None,
        category_id: Optional[str] = None,
        description: Optional[str] = None,
        source: TransactionSource = TransactionSource.MANUAL,
        **meta,
    ) -> Transaction:
        """
        Pay an insurance installment: creates the expense transaction and
        marks the installment. Idempotent for an already paid installment.
        """
        policy = self.get_insurance_policy(policy_id)
        inst = policy.installment(number)
        if inst is None:
            raise self._invalid_msg(
                "number", f"Policy {policy.insurer} has no installment {number}", "invalid_reference",
            )
        if inst.paid and inst.transaction_id:
            existing = self._snapshot.transaction(inst.transaction_id)
            if existing is not None:
                return existing

        account = account_id or policy.account_id
        if account is None:
            raise self._invalid_msg(
                "account_id", f"No account to pay installment {number} of {policy.insurer}", "missing",
            )
        tx = self.make_transaction(
            account,
            payment_date,
            amount if amount is not None else inst.amount,
            OperationType.EXPENSE,
            category_id=category_id or policy.category_id,
            description=description or f"Seguro {policy.insurer} - parcela {number}/{len(policy.installments)}",
            links=TransactionLinks(vehicle_transaction_id=f"{policy.id}_{number}"),
            source=source,
            **meta,
        )
        snap = self._snapshot
        after = snap.transactions + (tx,)
        candidate = snap.model_copy(update={"transactions": after})
        issues = self._validator.validate_transaction(tx, candidate)
        if issues:
            raise self._invalid(issues)
        paid_policy = policy.model_copy(update={"installments": tuple(
            i.model_copy(update={
                "paid": True, "paid_date": payment_date, "transaction_id": tx.id,
            }) if i.number == number else i
            for i in policy.installments
        )})
        self._commit(
            transactions=after,
            insurance_policies=_replace(snap.insurance_policies, paid_policy),
        )
        self._emit(
            AuditEventBuilder.transaction_created(tx),
            AuditEventBuilder.installment_marked("insurance_policy", policy.id, number, True, tx.id),
        )
        return tx

    def unmark_insurance_installment_paid(self, policy_id: str, number: int) -> Optional[str]:
        """Undo an installment payment; returns the deleted transaction id, if any."""
        policy = self.get_insurance_policy(policy_id)
        inst = policy.installment(number)
        if inst is None or not inst.paid:
            return None
        tx_id = inst.transaction_id
        if tx_id and self._snapshot.transaction(tx_id) is not None:
            self.delete_transaction(tx_id)
        else:
            unpaid = policy.model_copy(update={"installments": tuple(
                i.model_copy(update={"paid": False, "paid_date": None, "transaction_id": None})
                if i.number == number else i
                for i in policy.installments
            )})
            self._commit(insurance_policies=_replace(self._snapshot.insurance_policies, unpaid))
        self._emit(AuditEventBuilder.installment_marked(
            "insurance_policy", policy.id, number, False, tx_id,
        ))
        return tx_id

    # =========================================================================
    # BILLS
    # =========================================================================

    def _validate_bill(self, bill: BillTracker) -> None:
        issues = []
        if not bill.is_persistent:
            issues.append(ValidationIssue(
                field="source_type", issue_type="invalid_value",
                message=f"{bill.source_type.value} entries are generated and never stored",
                entity_id=bill.id,
            ))
        if bill.suggested_account_id and self._snapshot.account(bill.suggested_account_id) is None:
            issues.append(ValidationIssue(
                field="suggested_account_id", issue_type="invalid_reference",
                message=f"Account {bill.suggested_account_id} does not exist", entity_id=bill.id,
            ))
        if bill.suggested_category_id:
            category = self._snapshot.category(bill.suggested_category_id)
            if category is None or not category.is_expense:
                issues.append(ValidationIssue(
                    field="suggested_category_id", issue_type="incompatible_category",
                    message="Bills need an existing expense category", entity_id=bill.id,
                ))
        if issues:
            raise self._invalid(issues)

    def add_bill(self, bill: BillTracker) -> BillTracker:
        """Store an ad-hoc or purchase installment entry."""
        if self._snapshot.bill(bill.id) is not None:
            raise self._invalid_msg("id", f"Bill {bill.id} already exists", "duplicate_id")
        self._validate_bill(bill)
        self._commit(bills=self._snapshot.bills + (bill,))
        self._emit(AuditEventBuilder.entity_changed(
            AuditEventType.ENTITY_CREATED, "bill", bill.id, bill.description,
            {"expected_amount": str(bill.expected_amount), "due_date": bill.due_date.isoformat()},
        ))
        return bill

    def update_bill(self, bill_id: str, **changes) -> BillTracker:
        bill = self._merge(self.get_bill(bill_id), changes)
        self._validate_bill(bill)
        self._commit(bills=_replace(self._snapshot.bills, bill))
        self._emit(AuditEventBuilder.entity_changed(
            AuditEventType.ENTITY_UPDATED, "bill", bill.id, bill.description,
            {"fields": sorted(changes)},
        ))
        return bill

    def save_bill(self, bill: BillTracker) -> BillTracker:
        """Insert or replace a stored entry."""
        if self._snapshot.bill(bill.id) is None:
            return self.add_bill(bill)
        self._validate_bill(bill)
        self._commit(bills=_replace(self._snapshot.bills, bill))
        self._emit(AuditEventBuilder.entity_changed(
            AuditEventType.ENTITY_UPDATED, "bill", bill.id, bill.description,
        ))
        return bill

    def delete_bill(self, bill_id: str) -> None:
        bill = self.get_bill(bill_id)
        self._commit(bills=tuple(b for b in self._snapshot.bills if b.id != bill_id))
        self._emit(AuditEventBuilder.entity_changed(
            AuditEventType.ENTITY_DELETED, "bill", bill_id, bill.description,
        ))

    def add_purchase_installments(
        self,
        description: str,
        total: Decimal,
        count: int,
        first_due: date,
        suggested_account_id: Optional[str] = None,
        suggested_category_id: Optional[str] = None,
    ) -> list[BillTracker]:
        """
        Split a purchase into `count` monthly stored entries; the last one
        absorbs the rounding residual.
        """
        if count < 1:
            raise self._invalid_msg("count", "A purchase needs at least one installment")
        purchase_id = new_id("purchase")
        bills = [
            BillTracker(
                id=f"{BillSourceType.PURCHASE_INSTALLMENT.value}_{purchase_id}_{n}",
                description=f"{description} ({n}/{count})",
                due_date=first_due + relativedelta(months=n - 1),
                expected_amount=amount,
                source_type=BillSourceType.PURCHASE_INSTALLMENT,
                source_ref=purchase_id,
                parcela_number=n,
                suggested_account_id=suggested_account_id,
                suggested_category_id=suggested_category_id,
            )
            for n, amount in enumerate(split_evenly(total, count), start=1)
        ]
        for bill in bills:
            self._validate_bill(bill)
        self._commit(bills=self._snapshot.bills + tuple(bills))
        self._emit(AuditEventBuilder.entity_changed(
            AuditEventType.ENTITY_CREATED, "purchase", purchase_id, description,
            {"total": str(total), "installments": count, "bill_ids": [b.id for b in bills]},
        ))
        return bills

    # =========================================================================
    # STATEMENTS & RULES
    # =========================================================================

    def _normalize_statement(self, statement: ImportedStatement) -> ImportedStatement:
        if self._snapshot.account(statement.account_id) is None:
            raise self._invalid_msg(
                "account_id", f"Account {statement.account_id} does not exist", "invalid_reference",
            )
        lines = tuple(
            line.model_copy(update={"statement_id": statement.id})
            if line.statement_id != statement.id else line
            for line in statement.raw_transactions
        )
        statement = statement.model_copy(update={"raw_transactions": lines})
        return statement.model_copy(update={"status": statement.computed_status()})

    def add_statement(self, statement: ImportedStatement) -> ImportedStatement:
        if self._snapshot.statement(statement.id) is not None:
            raise self._invalid_msg("id", f"Statement {statement.id} already exists", "duplicate_id")
        statement = self._normalize_statement(statement)
        self._commit(statements=self._snapshot.statements + (statement,))
        self._emit(AuditEventBuilder.commit_completed(
            AuditEventType.STATEMENT_IMPORTED,
            "statement",
            f"Statement imported: {statement.file_name or statement.id}",
            {"lines": len(statement.raw_transactions), "account_id": statement.account_id},
            entity_id=statement.id,
        ))
        return statement

    def replace_statement(self, statement: ImportedStatement) -> ImportedStatement:
        """Replace a statement (e.g. after review edits); status is recomputed."""
        self.get_statement(statement.id)
        statement = self._normalize_statement(statement)
        self._commit(statements=_replace(self._snapshot.statements, statement))
        return statement

    def update_statement_lines(self, lines: Iterable[ImportedTransaction]) -> None:
        """Replace lines by id wherever they live; statuses are recomputed."""
        by_id = {line.id: line for line in lines}
        statements = []
        for statement in self._snapshot.statements:
            if any(line.id in by_id for line in statement.raw_transactions):
                raw = tuple(by_id.get(line.id, line) for line in statement.raw_transactions)
                statement = statement.model_copy(update={"raw_transactions": raw})
                statement = statement.model_copy(update={"status": statement.computed_status()})
            statements.append(statement)
        self._commit(statements=tuple(statements))

    def delete_statement(self, statement_id: str) -> None:
        statement = self.get_statement(statement_id)
        self._check_dependents("statement", statement_id, {
            "transactions": [
                line.contabilized_transaction_id for line in statement.raw_transactions
                if line.is_contabilized and line.contabilized_transaction_id
            ],
        })
        self._commit(statements=tuple(
            s for s in self._snapshot.statements if s.id != statement_id
        ))
        self._emit(AuditEventBuilder.entity_changed(
            AuditEventType.ENTITY_DELETED, "statement", statement_id, statement.file_name or statement_id,
        ))

    def _validate_rule(self, rule: StandardizationRule) -> None:
        if rule.category_id is None:
            return
        category = self._snapshot.category(rule.category_id)
        if category is None or not category_compatible(rule.operation_type, category):
            raise self._invalid_msg(
                "category_id",
                f"Category {rule.category_id} cannot be used with {rule.operation_type.value}",
                "incompatible_category",
            )

    def add_rule(self, rule: StandardizationRule) -> StandardizationRule:
        if self._snapshot.rule(rule.id) is not None:
            raise self._invalid_msg("id", f"Rule {rule.id} already exists", "duplicate_id")
        self._validate_rule(rule)
        self._commit(rules=self._snapshot.rules + (rule,))
        self._emit(AuditEventBuilder.entity_changed(
            AuditEventType.ENTITY_CREATED, "rule", rule.id, rule.pattern,
        ))
        return rule

    def update_rule(self, rule_id: str, **changes) -> StandardizationRule:
        rule = self._merge(self.get_rule(rule_id), changes)
        self._validate_rule(rule)
        self._commit(rules=_replace(self._snapshot.rules, rule))
        self._emit(AuditEventBuilder.entity_changed(
            AuditEventType.ENTITY_UPDATED, "rule", rule.id, rule.pattern,
            {"fields": sorted(changes)},
        ))
        return rule

    def delete_rule(self, rule_id: str) -> None:
        rule = self.get_rule(rule_id)
        self._commit(rules=tuple(r for r in self._snapshot.rules if r.id != rule_id))
        self._emit(AuditEventBuilder.entity_changed(
            AuditEventType.ENTITY_DELETED, "rule", rule_id, rule.pattern,
        ))

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def to_dict(self) -> dict:
        """JSON-ready dict in the persisted (camelCase) layout."""
        return self._snapshot.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_dict(
        cls,
        data: dict,
        settings: Optional[LedgerSettings] = None,
        audit_logger: Optional[AuditLogger] = None,
    ) -> "LedgerStore":
        """
        Rebuild a store from persisted data. Raises ValidationError when
        the data breaks ledger invariants.
        """
        try:
            snapshot = LedgerSnapshot.model_validate(data)
        except pydantic.ValidationError as e:
            raise ValidationError(f"Snapshot data is malformed: {e}") from e
        return cls._checked(snapshot, settings, audit_logger)

    @classmethod
    def _checked(cls, snapshot, settings, audit_logger) -> "LedgerStore":
        store = cls(snapshot, settings=settings, audit_logger=audit_logger)
        result = store._validator.validate_snapshot(snapshot)
        if not result.is_valid:
            raise ValidationError(result.errors)
        return store

    def save(self, storage: SnapshotStorageInterface) -> None:
        storage.save_snapshot(self._snapshot)
        self._emit(AuditEventBuilder.snapshot_persisted(True, self.version, storage.location))

    @classmethod
    def load(
        cls,
        storage: SnapshotStorageInterface,
        settings: Optional[LedgerSettings] = None,
        audit_logger: Optional[AuditLogger] = None,
    ) -> "LedgerStore":
        """
        Open the persisted ledger; an empty store when nothing was saved yet.

        Raises:
            CorruptSnapshotError: stored data violates ledger invariants
        """
        if not storage.exists():
            return cls(settings=settings, audit_logger=audit_logger)
        snapshot = storage.load_snapshot()
        try:
            store = cls._checked(snapshot, settings, audit_logger)
        except ValidationError as e:
            raise CorruptSnapshotError(f"Snapshot at {storage.location} is inconsistent: {e}") from e
        store._emit(AuditEventBuilder.snapshot_persisted(False, store.version, storage.location))
        return store
