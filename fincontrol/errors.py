"""
Error Taxonomy

DESIGN DECISION: Mutations raise, queries do not.

- ValidationError / ReferentialIntegrityError are raised by store
  mutations and are never partially applied.
- Query functions return neutral values (empty schedules, zero balances,
  ratio sentinels) for loans or data that are not set up yet.
  InconsistentScheduleError exists for callers that want a strict check.
- Duplicate suspicion on imported lines is a flag, not an exception.
"""

from typing import Iterable, Optional, Union

from fincontrol.models.validation import ValidationIssue


class FinanceError(Exception):
    """Base exception for the financial core."""
    pass


class ValidationError(FinanceError, ValueError):
    """Malformed input or broken ledger invariant. Nothing was applied."""

    def __init__(
        self,
        message: Union[str, Iterable[ValidationIssue]],
        issues: Optional[Iterable[ValidationIssue]] = None,
    ):
        if not isinstance(message, str):
            issues = list(message)
            message = "; ".join(str(i) for i in issues) or "Validation failed"
        self.issues: list[ValidationIssue] = list(issues or [])
        super().__init__(message)


class ReferentialIntegrityError(FinanceError):
    """Delete rejected because other entities still depend on the target."""

    def __init__(self, entity_type: str, entity_id: str, dependents: dict[str, list[str]]):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.dependents = {k: list(v) for k, v in dependents.items() if v}
        summary = ", ".join(
            f"{len(ids)} {kind}" for kind, ids in self.dependents.items()
        )
        super().__init__(
            f"Cannot delete {entity_type} {entity_id}: referenced by {summary}"
        )


class InconsistentScheduleError(FinanceError):
    """A loan was queried in a state that has no schedule."""
    pass


class NotFoundError(FinanceError, LookupError):
    """Entity not found in the current snapshot."""

    def __init__(self, entity_type: str, entity_id: Optional[str]):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} not found: {entity_id}")
