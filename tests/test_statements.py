"""Tests for statement consolidation and review commit."""

import pytest
from datetime import date
from decimal import Decimal

from fincontrol.engines import statements
from fincontrol.models.ledger import (
    FlowType,
    ImportedStatement,
    ImportedTransaction,
    LoanStatus,
    OperationType,
    StandardizationRule,
    StatementStatus,
    TransactionSource,
    VehicleOperation,
    VehicleStatus,
)


def line(account_id, on, amount, text, is_credit=False, **staging):
    return ImportedTransaction(
        account_id=account_id,
        date=on,
        amount=Decimal(amount),
        is_credit=is_credit,
        original_description=text,
        **staging,
    )


@pytest.fixture
def import_lines(household):
    """Import lines into the checking account and return the stored statement."""
    def _import(*lines, file_name="extrato.ofx"):
        return household.store.add_statement(ImportedStatement(
            account_id=household.accounts.checking.id,
            file_name=file_name,
            raw_transactions=lines,
        ))
    return _import


def review(household, date_from=date(2024, 1, 1), date_to=date(2024, 12, 31)):
    return statements.consolidate_for_review(
        household.store.snapshot, household.accounts.checking.id, date_from, date_to,
    )


class TestConsolidation:
    """Tests for preparing lines for review."""

    def test_direction_sets_default_operation(self, household, import_lines):
        checking = household.accounts.checking.id
        import_lines(
            line(checking, date(2024, 3, 1), "5000", "SALARIO ACME", is_credit=True),
            line(checking, date(2024, 3, 2), "45.90", "PADARIA"),
        )
        credit, debit = review(household)
        assert credit.operation_type == OperationType.REVENUE
        assert debit.operation_type == OperationType.EXPENSE
        assert debit.description == "PADARIA"

    def test_rules_prefill_staging(self, household, import_lines):
        store = household.store
        store.add_rule(StandardizationRule(
            pattern="supermercado",
            operation_type=OperationType.EXPENSE,
            category_id=household.categories.market.id,
            description_template="Mercado - {original}",
        ))
        import_lines(line(household.accounts.checking.id, date(2024, 3, 5), "210", "SUPERMERCADO BOM PRECO"))
        (prepared,) = review(household)
        assert prepared.category_id == household.categories.market.id
        assert prepared.description == "Mercado - SUPERMERCADO BOM PRECO"
        assert statements.is_ready(prepared)

    def test_overlapping_statements_deduplicated(self, household, import_lines):
        checking = household.accounts.checking.id
        import_lines(line(checking, date(2024, 3, 5), "99.90", "NETFLIX"), file_name="a.ofx")
        import_lines(line(checking, date(2024, 3, 5), "99.90", "  netflix "), file_name="b.ofx")
        assert len(review(household)) == 1

    def test_date_range_and_account(self, household, import_lines):
        checking = household.accounts.checking.id
        import_lines(
            line(checking, date(2024, 2, 28), "10", "A"),
            line(checking, date(2024, 3, 1), "20", "B"),
        )
        found = review(household, date(2024, 3, 1), date(2024, 3, 31))
        assert [l.original_description for l in found] == ["B"]

    def test_ledger_match_flags_duplicate(self, household, import_lines):
        store = household.store
        checking = household.accounts.checking.id
        existing = store.add_transaction(store.make_transaction(
            checking, date(2024, 3, 4), Decimal("150"), OperationType.EXPENSE,
            category_id=household.categories.market.id,
        ))
        import_lines(line(checking, date(2024, 3, 5), "150", "FARMACIA"))
        (prepared,) = review(household)
        assert prepared.is_potential_duplicate
        assert prepared.duplicate_of_transaction_id == existing.id


class TestCommitReview:
    """Tests for turning reviewed lines into ledger transactions."""

    def test_transfer_line(self, household, import_lines):
        """An outgoing transfer line posts both legs of one transfer group."""
        store = household.store
        a, b = household.accounts.checking.id, household.accounts.savings.id
        import_lines(line(a, date(2024, 4, 2), "300", "TED MESMA TITULARIDADE"))
        (prepared,) = review(household)
        reviewed = prepared.model_copy(update={
            "operation_type": OperationType.TRANSFER,
            "destination_account_id": b,
        })

        result = statements.commit_review(store, [reviewed])
        assert result.committed_line_ids == [reviewed.id]
        txs = store.snapshot.transactions
        assert len(txs) == 2
        assert len({t.links.transfer_group_id for t in txs}) == 1
        by_account = {t.account_id: t for t in txs}
        assert by_account[a].flow == FlowType.TRANSFER_OUT
        assert by_account[b].flow == FlowType.TRANSFER_IN
        assert all(t.amount == Decimal("300") for t in txs)
        assert all(t.meta.source == TransactionSource.IMPORT for t in txs)

    def test_incoming_transfer_line(self, household, import_lines):
        """A credit transfer line reverses the legs: the line's account receives."""
        store = household.store
        a, b = household.accounts.checking.id, household.accounts.savings.id
        statement = import_lines(line(a, date(2024, 4, 3), "250", "TED RECEBIDA", is_credit=True))
        (prepared,) = review(household)
        statements.commit_review(store, [prepared.model_copy(update={
            "operation_type": OperationType.TRANSFER,
            "destination_account_id": b,
        })])

        txs = store.snapshot.transactions
        assert len(txs) == 2
        assert len({t.links.transfer_group_id for t in txs}) == 1
        by_account = {t.account_id: t for t in txs}
        assert by_account[b].flow == FlowType.TRANSFER_OUT
        assert by_account[a].flow == FlowType.TRANSFER_IN
        posted = store.get_statement(statement.id).raw_transactions[0]
        assert posted.contabilized_transaction_id == by_account[a].id

    def test_transfer_to_credit_card(self, household, import_lines):
        """Paying the card bill by transfer posts a plain inflow on the card."""
        store = household.store
        checking, card = household.accounts.checking.id, household.accounts.card.id
        import_lines(line(checking, date(2024, 4, 10), "800", "PAGTO FATURA CARTAO"))
        (prepared,) = review(household)
        statements.commit_review(store, [prepared.model_copy(update={
            "operation_type": OperationType.TRANSFER,
            "destination_account_id": card,
        })])

        txs = store.snapshot.transactions
        assert len({t.links.transfer_group_id for t in txs}) == 1
        by_account = {t.account_id: t for t in txs}
        assert by_account[checking].flow == FlowType.TRANSFER_OUT
        assert by_account[card].flow == FlowType.IN
        assert all(t.operation_type == OperationType.TRANSFER for t in txs)

    def test_investment_contribution_and_withdrawal(self, household, import_lines):
        """Each line posts an out/in pair; a withdrawal swaps direction and accounts."""
        store = household.store
        checking, cdb = household.accounts.checking.id, household.accounts.cdb.id
        import_lines(
            line(checking, date(2024, 4, 2), "1000", "APLICACAO CDB"),
            line(checking, date(2024, 4, 20), "400", "RESGATE CDB", is_credit=True),
        )
        prepared = {l.amount: l for l in review(household)}
        contribution = prepared[Decimal("1000")].model_copy(update={
            "operation_type": OperationType.INVESTMENT_CONTRIBUTION,
            "temp_investment_id": cdb,
        })
        withdrawal = prepared[Decimal("400")].model_copy(update={
            "operation_type": OperationType.INVESTMENT_WITHDRAWAL,
            "temp_investment_id": cdb,
        })
        result = statements.commit_review(store, [contribution, withdrawal])
        assert len(result.committed_line_ids) == 2

        groups = {}
        for tx in store.snapshot.transactions:
            groups.setdefault(tx.links.transfer_group_id, {})[tx.account_id] = tx
        assert len(groups) == 2
        applied = next(g for g in groups.values() if g[checking].amount == Decimal("1000"))
        redeemed = next(g for g in groups.values() if g[checking].amount == Decimal("400"))

        assert applied[checking].flow == FlowType.OUT
        assert applied[cdb].flow == FlowType.IN
        assert applied[cdb].operation_type == OperationType.INVESTMENT_CONTRIBUTION
        assert redeemed[cdb].flow == FlowType.OUT
        assert redeemed[checking].flow == FlowType.IN
        assert redeemed[checking].operation_type == OperationType.INVESTMENT_WITHDRAWAL
        assert {t.links.investment_id for g in groups.values() for t in g.values()} == {cdb}

    def test_commit_is_idempotent(self, household, import_lines):
        store = household.store
        import_lines(line(household.accounts.checking.id, date(2024, 4, 2), "45", "PADARIA"))
        (prepared,) = review(household)
        reviewed = prepared.model_copy(update={"category_id": household.categories.market.id})

        statements.commit_review(store, [reviewed])
        second = statements.commit_review(store, [reviewed])
        assert second.committed_line_ids == []
        assert second.skipped == {reviewed.id: "already_contabilized"}
        assert len(store.snapshot.transactions) == 1

    def test_statement_marked_complete(self, household, import_lines):
        store = household.store
        statement = import_lines(line(household.accounts.checking.id, date(2024, 4, 2), "45", "PADARIA"))
        (prepared,) = review(household)
        result = statements.commit_review(store, [prepared.model_copy(update={
            "category_id": household.categories.market.id,
        })])
        stored = store.get_statement(statement.id)
        assert stored.status == StatementStatus.COMPLETE
        assert stored.raw_transactions[0].contabilized_transaction_id == result.created_transaction_ids[0]
        assert review(household) == []

    def test_skip_reasons(self, household, import_lines):
        store = household.store
        checking = household.accounts.checking.id
        store.add_transaction(store.make_transaction(
            checking, date(2024, 4, 1), Decimal("80"), OperationType.EXPENSE,
            category_id=household.categories.market.id,
        ))
        import_lines(
            line(checking, date(2024, 4, 1), "80", "POSSIVEL DUPLICADA"),
            line(checking, date(2024, 4, 9), "12", "SEM CATEGORIA"),
        )
        duplicate, uncategorized = review(household)
        result = statements.commit_review(store, [
            duplicate.model_copy(update={"category_id": household.categories.market.id}),
            uncategorized,
            line(checking, date(2024, 4, 9), "1", "NUNCA IMPORTADA"),
        ])
        assert result.skipped[duplicate.id] == "potential_duplicate"
        assert result.skipped[uncategorized.id] == "not_ready"
        assert len(result.skipped) == 3
        assert not result.committed_line_ids

    def test_cleared_duplicate_commits(self, household, import_lines):
        store = household.store
        checking = household.accounts.checking.id
        store.add_transaction(store.make_transaction(
            checking, date(2024, 4, 1), Decimal("80"), OperationType.EXPENSE,
            category_id=household.categories.market.id,
        ))
        import_lines(line(checking, date(2024, 4, 1), "80", "OUTRA COMPRA"))
        (prepared,) = review(household)
        result = statements.commit_review(store, [prepared.model_copy(update={
            "is_potential_duplicate": False,
            "category_id": household.categories.market.id,
        })])
        assert result.committed_line_ids == [prepared.id]

    def test_incompatible_category_skipped(self, household, import_lines):
        import_lines(line(household.accounts.checking.id, date(2024, 4, 2), "45", "PADARIA"))
        (prepared,) = review(household)
        result = statements.commit_review(household.store, [prepared.model_copy(update={
            "category_id": household.categories.salary.id,
        })])
        assert result.skipped == {prepared.id: "incompatible_category"}

    def test_disbursement_creates_pending_loan(self, household, import_lines):
        store = household.store
        import_lines(line(household.accounts.checking.id, date(2024, 5, 2), "8000", "CREDITO EMPRESTIMO", is_credit=True))
        (prepared,) = review(household)
        result = statements.commit_review(store, [prepared.model_copy(update={
            "operation_type": OperationType.LOAN_DISBURSEMENT,
        })])
        (loan_id,) = result.created_loan_ids
        loan = store.get_loan(loan_id)
        assert loan.status == LoanStatus.PENDING_CONFIGURATION
        assert loan.valor_total == Decimal("8000")
        assert loan.liberacao_transaction_id == result.created_transaction_ids[0]
        assert store.get_transaction(loan.liberacao_transaction_id).flow == FlowType.IN

    def test_loan_payment_marks_next_installment(self, household, price_loan, import_lines):
        store = household.store
        import_lines(line(household.accounts.checking.id, date(2024, 1, 15), "1134.72", "PARCELA FINANCIAMENTO"))
        (prepared,) = review(household)
        result = statements.commit_review(store, [prepared.model_copy(update={
            "operation_type": OperationType.LOAN_PAYMENT,
            "temp_loan_id": price_loan.id,
        })])
        tx = store.get_transaction(result.created_transaction_ids[0])
        assert tx.links.loan_id == price_loan.id
        assert tx.links.parcela_id == "1"

    def test_vehicle_purchase_creates_pending_vehicle(self, household, import_lines):
        store = household.store
        import_lines(line(household.accounts.checking.id, date(2024, 6, 1), "45000", "CONCESSIONARIA"))
        (prepared,) = review(household)
        result = statements.commit_review(store, [prepared.model_copy(update={
            "operation_type": OperationType.VEHICLE,
            "temp_vehicle_operation": VehicleOperation.BUY,
        })])
        (vehicle_id,) = result.created_vehicle_ids
        vehicle = store.get_vehicle(vehicle_id)
        assert vehicle.status == VehicleStatus.PENDING_REGISTRATION
        assert vehicle.purchase_value == Decimal("45000")

    def test_deleting_posted_transaction_reopens_line(self, household, import_lines):
        store = household.store
        statement = import_lines(line(household.accounts.checking.id, date(2024, 4, 2), "45", "PADARIA"))
        (prepared,) = review(household)
        result = statements.commit_review(store, [prepared.model_copy(update={
            "category_id": household.categories.market.id,
        })])
        store.delete_transaction(result.created_transaction_ids[0])
        stored = store.get_statement(statement.id)
        assert stored.status == StatementStatus.PENDING
        assert stored.raw_transactions[0].is_contabilized is False
