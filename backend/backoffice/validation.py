from __future__ import annotations

from typing import Any


class ValidationError(ValueError):
    """400-level input problem."""


class NotFoundError(LookupError):
    """404-level missing reference (order, line, variant, statement, customer)."""


class ConflictError(ValueError):
    """409-level business rule conflict."""


class InsufficientStockError(ConflictError):
    """
    A guarded stock decrement would exceed what is available.

    The allocation engine never raises this; it grants the partial amount
    and reports the shortfall. Direct movements (sample out, manual
    adjustment below zero) do.
    """

    def __init__(self, message: str, *, requested: int | None = None, available: int | None = None):
        super().__init__(message)
        self.requested = requested
        self.available = available


class AlreadyProcessedError(ConflictError):
    """Statement already processed, or ship quantity exceeds the remaining reservation."""


class ConsistencyError(ConflictError):
    """Stored counters disagree with the values derivable from live records."""

    def __init__(self, message: str, *, report: dict | None = None):
        super().__init__(message)
        self.report = report or {}


def require_int(value: Any, field: str) -> int:
    """
    Strict integer coercion for request payloads.

    Rejects bools, floats, decimals and scientific notation so that
    "1e3" never silently becomes a thousand units of stock.
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        if "e" in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    raise ValidationError(f"{field} must be an integer")


def require_positive_int(value: Any, field: str) -> int:
    number = require_int(value, field)
    if number <= 0:
        raise ValidationError(f"{field} must be greater than 0")
    return number


def require_non_negative_int(value: Any, field: str) -> int:
    number = require_int(value, field)
    if number < 0:
        raise ValidationError(f"{field} cannot be negative")
    return number


def require_list(value: Any, field: str, *, allow_empty: bool = False) -> list:
    if not isinstance(value, list):
        raise ValidationError(f"{field} must be a list")
    if not value and not allow_empty:
        raise ValidationError(f"{field} must not be empty")
    return value


def optional_str(value: Any, field: str, *, max_length: int = 255) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string")
    value = value.strip()
    if len(value) > max_length:
        raise ValidationError(f"{field} must be at most {max_length} characters")
    return value or None


def normalize_option(value: Any) -> str:
    """Color/size keys: None and blanks collapse to '' (the implicit single variant)."""
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValidationError("color and size must be strings")
    return value.strip()
