"""Deterministic tools for validating, patching and rendering page markup."""

from .markup_validator import format_issues, validate_document, validate_markup

__all__ = [
    "format_issues",
    "validate_document",
    "validate_markup",
]
