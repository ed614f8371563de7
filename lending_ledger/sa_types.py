"""Exact numeric column types.

SQLite has no arbitrary-precision NUMERIC: values beyond 2**63 or with many
fractional digits are silently coerced to REAL. Both types below store exact
text on SQLite and native ``NUMERIC`` on PostgreSQL.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import Numeric, String, TypeDecorator


class Amount(TypeDecorator):
    """Arbitrary-precision integer amount in a currency's smallest unit."""

    impl = String(80)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(Numeric(78, 0))
        return dialect.type_descriptor(String(80))

    def process_bind_param(self, value: Any, dialect) -> Optional[Any]:
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, (int, str, Decimal)):
            raise TypeError(f"amount must be an integer, got {type(value).__name__}")
        number = int(value)
        if dialect.name == "postgresql":
            return Decimal(number)
        return str(number)

    def process_result_value(self, value: Any, dialect) -> Optional[int]:
        if value is None:
            return None
        return int(value)


class Price(TypeDecorator):
    """Exact decimal for prices, rates and ratios."""

    impl = String(80)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(Numeric(38, 18))
        return dialect.type_descriptor(String(80))

    def process_bind_param(self, value: Any, dialect) -> Optional[Any]:
        if value is None:
            return None
        number = Decimal(str(value))
        if dialect.name == "postgresql":
            return number
        return format(number, "f")

    def process_result_value(self, value: Any, dialect) -> Optional[Decimal]:
        if value is None:
            return None
        return Decimal(str(value))
