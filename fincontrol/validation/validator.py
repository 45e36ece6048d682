"""
Ledger Validation

DESIGN DECISION: Validation happens in two distinct stages:

STAGE 1 - ENTITY VALIDATION:
- Field types, ranges and required values
- Handled by the pydantic models themselves at construction time

STAGE 2 - LEDGER VALIDATION (this module):
- References resolve (account, category, loan, policy)
- Category polarity matches the operation type
- Loan payments point at a real schedule entry
- Transfer and investment legs come in matched pairs

The store runs stage 2 against the candidate snapshot before swapping it
in, so a mutation is either fully valid or not applied at all.

IMPORTANT: Validation NEVER silently fixes issues. It reports them.
"""

from collections import defaultdict
from collections.abc import Iterable
from decimal import Decimal
from typing import Optional

from fincontrol.config import LedgerSettings, get_settings
from fincontrol.models.ledger import (
    FlowType,
    LedgerSnapshot,
    OperationType,
    Transaction,
)
from fincontrol.models.operations import (
    category_compatible,
    is_paired,
)
from fincontrol.models.validation import ValidationIssue, ValidationResult


class LedgerValidator:
    """Checks ledger invariants against a snapshot."""

    def __init__(self, settings: Optional[LedgerSettings] = None):
        self._settings = settings or get_settings().ledger

    def validate_transaction(
        self,
        tx: Transaction,
        snapshot: LedgerSnapshot,
    ) -> list[ValidationIssue]:
        """References, category polarity and loan linkage of one transaction."""
        issues = []

        if snapshot.account(tx.account_id) is None:
            issues.append(ValidationIssue(
                field="account_id",
                issue_type="invalid_reference",
                message=f"Account {tx.account_id} does not exist",
                entity_id=tx.id,
            ))

        if tx.category_id is not None:
            category = snapshot.category(tx.category_id)
            if category is None:
                issues.append(ValidationIssue(
                    field="category_id",
                    issue_type="invalid_reference",
                    message=f"Category {tx.category_id} does not exist",
                    entity_id=tx.id,
                ))
            elif not category_compatible(tx.operation_type, category):
                issues.append(ValidationIssue(
                    field="category_id",
                    issue_type="incompatible_category",
                    message=(
                        f"Category '{category.label}' ({category.nature.value}) cannot be "
                        f"used with operation {tx.operation_type.value}"
                    ),
                    entity_id=tx.id,
                ))

        if is_paired(tx.operation_type) and not tx.links.transfer_group_id:
            issues.append(ValidationIssue(
                field="links.transfer_group_id",
                issue_type="missing_linkage",
                message=f"{tx.operation_type.value} transactions need a transfer group",
                entity_id=tx.id,
            ))

        if tx.operation_type == OperationType.TRANSFER and tx.flow == FlowType.OUT:
            issues.append(ValidationIssue(
                field="flow",
                issue_type="invalid_value",
                message="Outgoing transfer legs must use flow transfer_out",
                entity_id=tx.id,
            ))

        if tx.operation_type == OperationType.LOAN_PAYMENT:
            issues.extend(self._validate_loan_payment(tx, snapshot))

        if tx.links.loan_id and snapshot.loan(tx.links.loan_id) is None:
            if tx.operation_type != OperationType.LOAN_PAYMENT:
                issues.append(ValidationIssue(
                    field="links.loan_id",
                    issue_type="invalid_reference",
                    message=f"Loan {tx.links.loan_id} does not exist",
                    entity_id=tx.id,
                ))

        return issues

    def _validate_loan_payment(
        self,
        tx: Transaction,
        snapshot: LedgerSnapshot,
    ) -> list[ValidationIssue]:
        issues = []
        if tx.links.loan_id is None:
            if tx.links.parcela_id is not None:
                issues.append(ValidationIssue(
                    field="links.parcela_id",
                    issue_type="missing_linkage",
                    message="Installment number given without a loan",
                    entity_id=tx.id,
                ))
            return issues

        loan = snapshot.loan(tx.links.loan_id)
        if loan is None:
            issues.append(ValidationIssue(
                field="links.loan_id",
                issue_type="invalid_reference",
                message=f"Loan {tx.links.loan_id} does not exist",
                entity_id=tx.id,
            ))
            return issues

        if tx.links.parcela_id is None:
            return issues
        number = tx.links.installment_number
        if not loan.is_configured:
            issues.append(ValidationIssue(
                field="links.parcela_id",
                issue_type="invalid_reference",
                message=f"Loan {loan.contrato} is pending configuration and has no schedule",
                entity_id=tx.id,
            ))
        elif number is None or not 1 <= number <= loan.meses:
            issues.append(ValidationIssue(
                field="links.parcela_id",
                issue_type="invalid_reference",
                message=(
                    f"Installment {tx.links.parcela_id} is outside the schedule "
                    f"of {loan.contrato} (1..{loan.meses})"
                ),
                entity_id=tx.id,
            ))
        elif any(
            other.id != tx.id
            and other.operation_type == OperationType.LOAN_PAYMENT
            and other.links.loan_id == loan.id
            and other.links.installment_number == number
            for other in snapshot.transactions
        ):
            issues.append(ValidationIssue(
                field="links.parcela_id",
                issue_type="invalid_reference",
                message=f"Installment {number} of {loan.contrato} already has a payment",
                entity_id=tx.id,
            ))
        return issues

    def validate_pairs(
        self,
        transactions: Iterable[Transaction],
        group_ids: Optional[Iterable[str]] = None,
    ) -> list[ValidationIssue]:
        """
        Every transfer group holds exactly two legs: one inflow, one
        outflow, equal amounts, same operation type.
        """
        groups: dict[str, list[Transaction]] = defaultdict(list)
        for tx in transactions:
            if tx.links.transfer_group_id:
                groups[tx.links.transfer_group_id].append(tx)

        wanted = set(group_ids) if group_ids is not None else set(groups)
        tolerance = Decimal(self._settings.money_tolerance)
        issues = []
        for group_id in sorted(wanted):
            legs = groups.get(group_id, [])
            if not legs:
                continue
            if len(legs) != 2:
                issues.append(ValidationIssue(
                    field="links.transfer_group_id",
                    issue_type="unpaired_leg",
                    message=f"Transfer group {group_id} has {len(legs)} legs, expected 2",
                    entity_id=group_id,
                ))
                continue
            first, second = legs
            if first.is_inflow == second.is_inflow:
                issues.append(ValidationIssue(
                    field="flow",
                    issue_type="unpaired_leg",
                    message=f"Transfer group {group_id} legs must have opposite directions",
                    entity_id=group_id,
                ))
            if abs(first.amount - second.amount) > tolerance:
                issues.append(ValidationIssue(
                    field="amount",
                    issue_type="unpaired_leg",
                    message=f"Transfer group {group_id} legs have different amounts",
                    entity_id=group_id,
                ))
            if first.operation_type != second.operation_type:
                issues.append(ValidationIssue(
                    field="operation_type",
                    issue_type="unpaired_leg",
                    message=f"Transfer group {group_id} mixes operation types",
                    entity_id=group_id,
                ))
            if first.account_id == second.account_id:
                issues.append(ValidationIssue(
                    field="account_id",
                    issue_type="unpaired_leg",
                    message=f"Transfer group {group_id} moves money within one account",
                    entity_id=group_id,
                ))
        return issues

    def validate_snapshot(self, snapshot: LedgerSnapshot) -> ValidationResult:
        """Full check, used when loading persisted state."""
        issues = []

        for kind, items in (
            ("account", snapshot.accounts),
            ("category", snapshot.categories),
            ("transaction", snapshot.transactions),
            ("loan", snapshot.loans),
            ("bill", snapshot.bills),
            ("statement", snapshot.statements),
            ("rule", snapshot.rules),
            ("insurance_policy", snapshot.insurance_policies),
            ("vehicle", snapshot.vehicles),
        ):
            seen = set()
            for item in items:
                if item.id in seen:
                    issues.append(ValidationIssue(
                        field="id",
                        issue_type="duplicate_id",
                        message=f"Duplicate {kind} id {item.id}",
                        entity_id=item.id,
                    ))
                seen.add(item.id)

        for tx in snapshot.transactions:
            issues.extend(self.validate_transaction(tx, snapshot))
        issues.extend(self.validate_pairs(snapshot.transactions))

        for loan in snapshot.loans:
            if loan.conta_corrente_id and snapshot.account(loan.conta_corrente_id) is None:
                issues.append(ValidationIssue(
                    field="conta_corrente_id",
                    issue_type="invalid_reference",
                    message=f"Loan {loan.contrato} points at a missing account",
                    entity_id=loan.id,
                ))

        for rule in snapshot.rules:
            if rule.category_id is not None:
                category = snapshot.category(rule.category_id)
                if category is None or not category_compatible(rule.operation_type, category):
                    issues.append(ValidationIssue(
                        field="category_id",
                        issue_type="incompatible_category",
                        message=f"Rule '{rule.pattern}' has an invalid category",
                        entity_id=rule.id,
                    ))

        return ValidationResult(issues=issues)
