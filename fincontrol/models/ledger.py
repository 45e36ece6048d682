"""
Core Ledger Models for Family Financial Control

These models define the strict schemas for every entity held by the ledger.
They are designed to:
1. Enforce type safety and invariants at construction time
2. Be immutable, so a snapshot can be shared freely between engines
3. Round-trip losslessly through JSON (camelCase aliases match the
   persisted export layout)

DESIGN DECISION: Enum values are the tags already used by persisted data
(mostly Portuguese), so existing exports load without a migration step.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel


def new_id(prefix: str) -> str:
    """Generate an opaque, globally unique identifier with a readable prefix."""
    return f"{prefix}_{uuid4().hex[:16]}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LedgerModel(BaseModel):
    """
    Base for all ledger entities.

    Frozen: entities are replaced, never mutated in place.
    """
    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
        str_strip_whitespace=True,
    )


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class AccountType(str, Enum):
    """Kinds of accounts a family keeps money (or debt) in."""
    CHECKING = "corrente"
    SAVINGS = "poupanca"
    EMERGENCY_RESERVE = "reserva"
    FIXED_INCOME = "renda_fixa"
    CRYPTO = "cripto"
    GOAL = "objetivo"
    CREDIT_CARD = "cartao_credito"


class CategoryNature(str, Enum):
    """Accounting nature of a category (drives DRE grouping)."""
    REVENUE = "receita"
    FIXED_EXPENSE = "despesa_fixa"
    VARIABLE_EXPENSE = "despesa_variavel"


class FlowType(str, Enum):
    """
    Direction of a transaction.

    CRITICAL: the sign of a transaction lives here, never in the amount.
    """
    IN = "in"
    OUT = "out"
    TRANSFER_IN = "transfer_in"
    TRANSFER_OUT = "transfer_out"

    @property
    def is_inflow(self) -> bool:
        return self in (FlowType.IN, FlowType.TRANSFER_IN)


class OperationType(str, Enum):
    """Closed set of operation types. Behavior tables live in models.operations."""
    REVENUE = "receita"
    EXPENSE = "despesa"
    TRANSFER = "transferencia"
    INVESTMENT_CONTRIBUTION = "aplicacao"
    INVESTMENT_WITHDRAWAL = "resgate"
    LOAN_DISBURSEMENT = "liberacao_emprestimo"
    LOAN_PAYMENT = "pagamento_emprestimo"
    VEHICLE = "veiculo"
    YIELD = "rendimento"
    INITIAL_BALANCE = "initial_balance"


class TransactionDomain(str, Enum):
    OPERATIONAL = "operational"
    INVESTMENT = "investment"
    FINANCING = "financing"


class TransactionSource(str, Enum):
    MANUAL = "manual"
    IMPORT = "import"
    API = "api"
    BILLS = "bills"


class LoanStatus(str, Enum):
    """
    Loan lifecycle.

    PENDING_CONFIGURATION loans come from an imported disbursement and have
    no term/rate yet. The amortization engine ignores them.
    """
    PENDING_CONFIGURATION = "pendente_config"
    ACTIVE = "ativo"
    SETTLED = "quitado"


class VehicleOperation(str, Enum):
    BUY = "compra"
    SELL = "venda"


class VehicleStatus(str, Enum):
    ACTIVE = "ativo"
    PENDING_REGISTRATION = "pendente_cadastro"
    SOLD = "vendido"


class BillSourceType(str, Enum):
    """Where a bill tracker entry comes from."""
    LOAN_INSTALLMENT = "loan_installment"
    INSURANCE_INSTALLMENT = "insurance_installment"
    FIXED_EXPENSE = "fixed_expense"
    VARIABLE_EXPENSE = "variable_expense"
    AD_HOC = "ad_hoc"
    PURCHASE_INSTALLMENT = "purchase_installment"
    EXTERNAL_PAID = "external_paid"  # read-only: paid outside the tracker


class StatementStatus(str, Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    COMPLETE = "complete"


# =============================================================================
# ACCOUNTS & CATEGORIES
# =============================================================================

class Account(LedgerModel):
    """A bank account, investment box or credit card (`ContaCorrente`)."""

    id: str = Field(default_factory=lambda: new_id("acc"))
    name: str = Field(..., min_length=1, max_length=120)
    account_type: AccountType
    institution: Optional[str] = Field(default=None, max_length=120)
    opening_date: Optional[date] = None
    hidden: bool = False

    @property
    def is_credit_card(self) -> bool:
        return self.account_type == AccountType.CREDIT_CARD


class Category(LedgerModel):
    """
    Accounting category.

    Expense categories flagged `is_recurring` act as monthly bill templates
    for the bills engine.
    """

    id: str = Field(default_factory=lambda: new_id("cat"))
    label: str = Field(..., min_length=1, max_length=120)
    nature: CategoryNature
    icon: Optional[str] = None
    is_insurance: bool = Field(
        default=False,
        description="Cash payments in this category are replaced by accrual in the DRE",
    )
    is_recurring: bool = False
    recurring_amount: Optional[Decimal] = Field(default=None, ge=0, decimal_places=2)
    recurring_due_day: Optional[int] = Field(default=None, ge=1, le=31)

    @property
    def is_expense(self) -> bool:
        return self.nature != CategoryNature.REVENUE

    @model_validator(mode='after')
    def validate_template(self) -> 'Category':
        if self.is_recurring and not self.is_expense:
            raise ValueError("Only expense categories can be recurring bill templates")
        return self


# =============================================================================
# TRANSACTIONS
# =============================================================================

class TransactionLinks(LedgerModel):
    """Cross-entity links carried by a transaction."""

    investment_id: Optional[str] = None
    loan_id: Optional[str] = None
    transfer_group_id: Optional[str] = None
    parcela_id: Optional[str] = Field(
        default=None,
        description="Installment number (as text) for loan payments",
    )
    vehicle_transaction_id: Optional[str] = Field(
        default=None,
        description="Vehicle purchase link, or '<policyId>_<n>' for insurance installments",
    )

    @property
    def installment_number(self) -> Optional[int]:
        if self.parcela_id is None:
            return None
        try:
            return int(self.parcela_id)
        except ValueError:
            return None


class TransactionMeta(LedgerModel):
    created_by: str = "user"
    source: TransactionSource = TransactionSource.MANUAL
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: Optional[datetime] = None
    notes: Optional[str] = Field(default=None, max_length=1000)
    original_description: Optional[str] = None
    vehicle_operation: Optional[VehicleOperation] = None
    bill_key: Optional[str] = Field(
        default=None,
        description="Identifies the generated bill this payment settles",
    )


class Transaction(LedgerModel):
    """
    A single ledger entry (`TransacaoCompleta`).

    Immutable once created, except for date, amount, description, category
    and conciliated, which the store edits by replacement.
    """

    id: str = Field(default_factory=lambda: new_id("tx"))
    date: date
    account_id: str = Field(..., min_length=1)
    flow: FlowType
    operation_type: OperationType
    domain: TransactionDomain
    amount: Decimal = Field(..., ge=0, decimal_places=2)
    category_id: Optional[str] = None
    description: str = Field(default="", max_length=300)
    links: TransactionLinks = Field(default_factory=TransactionLinks)
    conciliated: bool = False
    attachments: tuple[str, ...] = ()
    meta: TransactionMeta = Field(default_factory=TransactionMeta)

    @model_validator(mode='before')
    @classmethod
    def derive_domain(cls, data):
        """Fill `domain` from the operation type when the caller omits it."""
        if isinstance(data, dict) and data.get("domain") is None:
            op = data.get("operation_type", data.get("operationType"))
            if op is not None:
                from fincontrol.models.operations import domain_for
                data = dict(data)
                data.pop("domain", None)
                data["domain"] = domain_for(OperationType(op))
        return data

    @property
    def transfer_group_id(self) -> Optional[str]:
        return self.links.transfer_group_id

    @property
    def is_inflow(self) -> bool:
        return self.flow.is_inflow


# =============================================================================
# LOANS
# =============================================================================

class Loan(LedgerModel):
    """
    A fixed-rate loan contract (`Emprestimo`).

    `taxa_mensal` is a percentage per month (2 means 2%).
    """

    id: str = Field(default_factory=lambda: new_id("loan"))
    contrato: str = Field(..., min_length=1, max_length=200)
    institution: Optional[str] = None
    valor_total: Decimal = Field(..., ge=0, decimal_places=2, description="Principal")
    parcela: Decimal = Field(default=Decimal("0"), ge=0, decimal_places=2)
    taxa_mensal: Decimal = Field(default=Decimal("0"), ge=0)
    meses: int = Field(default=0, ge=0)
    data_inicio: Optional[date] = None
    status: LoanStatus = LoanStatus.PENDING_CONFIGURATION
    conta_corrente_id: Optional[str] = None
    liberacao_transaction_id: Optional[str] = None
    legacy_paid_count: int = Field(
        default=0,
        ge=0,
        description="Paid count recorded by hand before payments were linked (migration aid)",
    )
    notes: Optional[str] = Field(default=None, max_length=1000)

    @property
    def is_configured(self) -> bool:
        return (
            self.status != LoanStatus.PENDING_CONFIGURATION
            and self.data_inicio is not None
            and self.meses > 0
        )

    @model_validator(mode='after')
    def validate_configuration(self) -> 'Loan':
        if self.status == LoanStatus.PENDING_CONFIGURATION:
            if self.meses or self.taxa_mensal or self.parcela:
                raise ValueError(
                    "Loan pending configuration must have zero term, rate and installment"
                )
        else:
            if self.meses <= 0:
                raise ValueError("Configured loan needs a term in months")
            if self.data_inicio is None:
                raise ValueError("Configured loan needs a start date")
        if self.legacy_paid_count > self.meses and self.meses > 0:
            raise ValueError("Legacy paid count cannot exceed the loan term")
        return self


class LoanInstallment(LedgerModel):
    """A row of the amortization schedule (derived, never persisted)."""

    number: int = Field(..., ge=1)
    due_date: date
    payment: Decimal
    interest: Decimal
    amortization: Decimal
    remaining_balance: Decimal
    paid: bool = False
    paid_date: Optional[date] = None
    paid_amount: Optional[Decimal] = None
    transaction_id: Optional[str] = None


# =============================================================================
# VEHICLES & INSURANCE
# =============================================================================

class Vehicle(LedgerModel):
    id: str = Field(default_factory=lambda: new_id("veh"))
    model: str = Field(..., min_length=1, max_length=200)
    brand: str = ""
    year: int = Field(default=0, ge=0)
    purchase_date: Optional[date] = None
    purchase_value: Decimal = Field(default=Decimal("0"), ge=0, decimal_places=2)
    fipe_value: Decimal = Field(
        default=Decimal("0"),
        ge=0,
        decimal_places=2,
        description="Latest reference market value",
    )
    status: VehicleStatus = VehicleStatus.ACTIVE
    purchase_transaction_id: Optional[str] = None

    @property
    def book_value(self) -> Decimal:
        return self.fipe_value or self.purchase_value


class InsuranceInstallment(LedgerModel):
    number: int = Field(..., ge=1)
    due_date: date
    amount: Decimal = Field(..., ge=0, decimal_places=2)
    paid: bool = False
    paid_date: Optional[date] = None
    transaction_id: Optional[str] = None


class InsurancePolicy(LedgerModel):
    """
    An insurance policy whose premium is recognized on an accrual basis.

    Installments are the cash side; coverage months are the expense side.
    """

    id: str = Field(default_factory=lambda: new_id("ins"))
    vehicle_id: Optional[str] = None
    insurer: str = Field(..., min_length=1, max_length=200)
    policy_number: Optional[str] = None
    total_premium: Decimal = Field(..., ge=0, decimal_places=2)
    coverage_start: date
    coverage_end: date
    account_id: Optional[str] = None
    category_id: Optional[str] = None
    installments: tuple[InsuranceInstallment, ...] = ()

    @model_validator(mode='after')
    def validate_coverage(self) -> 'InsurancePolicy':
        if self.coverage_end < self.coverage_start:
            raise ValueError("Coverage end cannot be before coverage start")
        numbers = [i.number for i in self.installments]
        if len(numbers) != len(set(numbers)):
            raise ValueError("Insurance installment numbers must be unique")
        return self

    def installment(self, number: int) -> Optional[InsuranceInstallment]:
        for inst in self.installments:
            if inst.number == number:
                return inst
        return None


# =============================================================================
# BILLS TRACKER
# =============================================================================

class BillTracker(LedgerModel):
    """
    One payable item in the monthly AP list.

    Generated entries (templates, loan and insurance installments) are
    rebuilt on every generation; only ad-hoc and purchase installment
    entries are persisted.
    """

    id: str = Field(default_factory=lambda: new_id("bill"))
    description: str = Field(..., min_length=1, max_length=300)
    due_date: date
    expected_amount: Decimal = Field(..., ge=0, decimal_places=2)
    source_type: BillSourceType = BillSourceType.AD_HOC
    source_ref: Optional[str] = None
    parcela_number: Optional[int] = Field(default=None, ge=1)
    suggested_account_id: Optional[str] = None
    suggested_category_id: Optional[str] = None
    is_paid: bool = False
    payment_date: Optional[date] = None
    transaction_id: Optional[str] = None
    is_excluded: bool = False

    @property
    def dedupe_key(self) -> tuple:
        return (self.source_type, self.source_ref, self.parcela_number)

    @property
    def is_external(self) -> bool:
        return self.source_type == BillSourceType.EXTERNAL_PAID

    @property
    def is_persistent(self) -> bool:
        """Only these source types are ever written to the snapshot."""
        return self.source_type in (
            BillSourceType.AD_HOC,
            BillSourceType.PURCHASE_INSTALLMENT,
        )

    @model_validator(mode='after')
    def validate_state(self) -> 'BillTracker':
        if self.is_paid and self.is_excluded:
            raise ValueError("A bill cannot be both paid and excluded")
        return self


# =============================================================================
# STATEMENT IMPORT
# =============================================================================

class ImportedTransaction(LedgerModel):
    """
    A raw bank statement line plus its review staging fields.

    Staging fields (operation type, category, temp links) are filled by
    standardization rules or by the reviewer, then consumed on commit.
    """

    id: str = Field(default_factory=lambda: new_id("raw"))
    statement_id: Optional[str] = None
    account_id: str
    date: date
    amount: Decimal = Field(..., ge=0, decimal_places=2)
    is_credit: bool = Field(
        default=False,
        description="Raw direction on the statement (money entering the account)",
    )
    original_description: str = ""
    description: str = ""

    operation_type: Optional[OperationType] = None
    category_id: Optional[str] = None
    destination_account_id: Optional[str] = None
    temp_investment_id: Optional[str] = None
    temp_loan_id: Optional[str] = None
    temp_vehicle_operation: Optional[VehicleOperation] = None

    is_potential_duplicate: bool = False
    duplicate_of_transaction_id: Optional[str] = None
    is_contabilized: bool = False
    contabilized_transaction_id: Optional[str] = None

    @property
    def is_transfer(self) -> bool:
        return self.operation_type == OperationType.TRANSFER


class ImportedStatement(LedgerModel):
    id: str = Field(default_factory=lambda: new_id("stm"))
    account_id: str
    file_name: str = ""
    imported_at: datetime = Field(default_factory=utc_now)
    status: StatementStatus = StatementStatus.PENDING
    raw_transactions: tuple[ImportedTransaction, ...] = ()

    @field_validator('raw_transactions')
    @classmethod
    def validate_lines_unique(cls, v):
        ids = [line.id for line in v]
        if len(ids) != len(set(ids)):
            raise ValueError("Statement lines must have unique ids")
        return v

    def computed_status(self) -> StatementStatus:
        if not self.raw_transactions:
            return StatementStatus.PENDING
        done = sum(1 for line in self.raw_transactions if line.is_contabilized)
        if done == len(self.raw_transactions):
            return StatementStatus.COMPLETE
        if done == 0:
            return StatementStatus.PENDING
        return StatementStatus.PARTIAL


class StandardizationRule(LedgerModel):
    """
    Pre-fills staging fields for statement lines whose raw description
    contains `pattern` (case-insensitive).
    """

    id: str = Field(default_factory=lambda: new_id("rule"))
    pattern: str = Field(..., min_length=1, max_length=200)
    operation_type: OperationType
    category_id: Optional[str] = None
    description_template: str = Field(
        default="",
        max_length=300,
        description="Target description; '{original}' is replaced by the raw text",
    )

    def matches(self, raw_description: str) -> bool:
        return self.pattern.casefold() in (raw_description or "").casefold()


# =============================================================================
# SNAPSHOT
# =============================================================================

class LedgerSnapshot(LedgerModel):
    """
    The complete, immutable state of one household's ledger.

    Every derived value (balances, schedules, statements) is a pure function
    of a snapshot. `version` identifies the snapshot for memoization.
    """

    schema_version: str = "1.0"
    version: int = Field(default=0, ge=0)
    accounts: tuple[Account, ...] = ()
    categories: tuple[Category, ...] = ()
    transactions: tuple[Transaction, ...] = ()
    loans: tuple[Loan, ...] = ()
    bills: tuple[BillTracker, ...] = ()
    statements: tuple[ImportedStatement, ...] = ()
    rules: tuple[StandardizationRule, ...] = ()
    insurance_policies: tuple[InsurancePolicy, ...] = ()
    vehicles: tuple[Vehicle, ...] = ()

    def account(self, account_id: Optional[str]) -> Optional[Account]:
        return next((a for a in self.accounts if a.id == account_id), None)

    def category(self, category_id: Optional[str]) -> Optional[Category]:
        return next((c for c in self.categories if c.id == category_id), None)

    def transaction(self, transaction_id: Optional[str]) -> Optional[Transaction]:
        return next((t for t in self.transactions if t.id == transaction_id), None)

    def loan(self, loan_id: Optional[str]) -> Optional[Loan]:
        return next((l for l in self.loans if l.id == loan_id), None)

    def bill(self, bill_id: Optional[str]) -> Optional[BillTracker]:
        return next((b for b in self.bills if b.id == bill_id), None)

    def statement(self, statement_id: Optional[str]) -> Optional[ImportedStatement]:
        return next((s for s in self.statements if s.id == statement_id), None)

    def rule(self, rule_id: Optional[str]) -> Optional[StandardizationRule]:
        return next((r for r in self.rules if r.id == rule_id), None)

    def insurance_policy(self, policy_id: Optional[str]) -> Optional[InsurancePolicy]:
        return next((p for p in self.insurance_policies if p.id == policy_id), None)

    def vehicle(self, vehicle_id: Optional[str]) -> Optional[Vehicle]:
        return next((v for v in self.vehicles if v.id == vehicle_id), None)

    def transfer_legs(self, group_id: str) -> list[Transaction]:
        return [t for t in self.transactions if t.links.transfer_group_id == group_id]

    def loan_payments(self, loan_id: str) -> list[Transaction]:
        return [
            t for t in self.transactions
            if t.operation_type == OperationType.LOAN_PAYMENT and t.links.loan_id == loan_id
        ]
