"""Validation package."""

from fincontrol.validation.validator import LedgerValidator

__all__ = ["LedgerValidator"]
