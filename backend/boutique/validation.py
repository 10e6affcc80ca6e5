from __future__ import annotations

from datetime import datetime
from typing import Any

from boutique.time_utils import normalize_datetime


# Maximum price: 9,999,999.99 (999,999,999 cents)
# This prevents database overflow issues and nonsensical prices
MAX_PRICE_CENTS = 999_999_999


class DomainError(Exception):
    """Base for every typed error raised by the service layer."""
    retryable = False

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(DomainError):
    """400-level input problem (missing field, non-positive qty/price)."""


class NotFoundError(DomainError):
    """404-level: a referenced entity does not exist."""


class DuplicateError(DomainError):
    """409-level unique-constraint collision (product code, sale code)."""


class InsufficientStockError(DomainError):
    """OUT movement or sale exceeds the available stock."""


class BusinessRuleViolation(DomainError):
    """
    Request is well-formed but not allowed right now.

    Annulment past the window, return exceeding the returnable quantity,
    illegal state transition.
    """


class ConflictError(DomainError):
    """Concurrent mutation of the same product detected; caller may retry."""
    retryable = True


def require_id(value: Any, field: str) -> int:
    """Reject missing/non-integer references before touching the database."""
    if value is None:
        raise ValidationError(f"{field} is required")
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer id")
    return value


def require_positive_int(value: Any, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer")
    if value <= 0:
        raise ValidationError(f"{field} must be greater than zero")
    return value


def require_non_negative_int(value: Any, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer")
    if value < 0:
        raise ValidationError(f"{field} cannot be negative")
    return value


def require_price_cents(value: Any, field: str) -> int:
    """Prices must be strictly positive and below MAX_PRICE_CENTS."""
    value = require_positive_int(value, field)
    if value > MAX_PRICE_CENTS:
        raise ValidationError(f"{field} exceeds maximum of {MAX_PRICE_CENTS}")
    return value


def parse_range_bound(value: Any, field: str) -> datetime | None:
    try:
        return normalize_datetime(value)
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 datetime")
