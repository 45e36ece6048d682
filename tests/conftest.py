"""Shared fixtures: a store wired to an in-memory audit log and a small household."""

from datetime import date
from decimal import Decimal
from types import SimpleNamespace

import pytest

from fincontrol.audit import AuditLogger
from fincontrol.config import LedgerSettings
from fincontrol.models.ledger import (
    Account,
    AccountType,
    Category,
    CategoryNature,
    Loan,
    LoanStatus,
)
from fincontrol.services.storage import InMemoryAuditStorage
from fincontrol.store import LedgerStore


@pytest.fixture
def audit_storage():
    return InMemoryAuditStorage()


@pytest.fixture
def store(audit_storage):
    return LedgerStore(settings=LedgerSettings(), audit_logger=AuditLogger(audit_storage))


@pytest.fixture
def household(store):
    """Checking, savings, credit card and fixed income accounts plus common categories."""
    accounts = SimpleNamespace(
        checking=store.add_account(Account(id="acc_checking", name="Conta Corrente", account_type=AccountType.CHECKING)),
        savings=store.add_account(Account(id="acc_savings", name="Poupança", account_type=AccountType.SAVINGS)),
        card=store.add_account(Account(id="acc_card", name="Cartão", account_type=AccountType.CREDIT_CARD)),
        cdb=store.add_account(Account(id="acc_cdb", name="CDB", account_type=AccountType.FIXED_INCOME)),
    )
    categories = SimpleNamespace(
        salary=store.add_category(Category(id="cat_salary", label="Salário", nature=CategoryNature.REVENUE)),
        rent=store.add_category(Category(
            id="cat_rent",
            label="Aluguel",
            nature=CategoryNature.FIXED_EXPENSE,
            is_recurring=True,
            recurring_amount=Decimal("1500.00"),
            recurring_due_day=31,
        )),
        market=store.add_category(Category(id="cat_market", label="Mercado", nature=CategoryNature.VARIABLE_EXPENSE)),
        insurance=store.add_category(Category(
            id="cat_insurance",
            label="Seguro auto",
            nature=CategoryNature.FIXED_EXPENSE,
            is_insurance=True,
        )),
    )
    return SimpleNamespace(store=store, accounts=accounts, categories=categories)


@pytest.fixture
def price_loan(household):
    """12000 at 2% a month over 12 months, first installment on 2024-01-15."""
    return household.store.add_loan(Loan(
        id="loan_car",
        contrato="Financiamento carro",
        valor_total=Decimal("12000.00"),
        taxa_mensal=Decimal("2"),
        meses=12,
        data_inicio=date(2024, 1, 15),
        status=LoanStatus.ACTIVE,
        conta_corrente_id=household.accounts.checking.id,
    ))
