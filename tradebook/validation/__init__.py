"""Validation package."""

from tradebook.validation.validator import LedgerValidator

__all__ = ["LedgerValidator"]
