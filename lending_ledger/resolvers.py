"""Read-only lookups: currencies, exchange rates, platform configuration.

None of these write. Callers run them inside the transaction of the operation
that consumes the result so every calculation sees one consistent snapshot.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from fractions import Fraction
from typing import Optional, Tuple

from sqlalchemy import and_, or_
from sqlmodel import Session, select

from common.datetime import DateLike, to_utc_naive
from lending_ledger.errors import (ConfigNotFoundError, CurrencyNotFoundError,
                                   CurrencyPairNotFoundError, RateNotFoundError)
from lending_ledger.models import Currency, ExchangeRate, PlatformConfig, PriceFeed

__all__ = [
    "ResolvedRate",
    "get_currency",
    "get_currency_pair",
    "resolve_exchange_rate",
    "resolve_platform_config",
]


@dataclass(slots=True, frozen=True)
class ResolvedRate:
    """Exchange rate expressed as *quote* units per one *base* unit.

    When the feed is stored the other way round the prices are inverted: the
    bid of the requested direction is ``1 / ask`` of the stored one, and vice
    versa, so ``bid_price`` stays the conservative side for sizing collateral.
    """

    exchange_rate_id: str
    price_feed_id: str
    base_token_id: str
    quote_token_id: str
    bid_price: Fraction
    ask_price: Fraction
    source_date: datetime
    inverted: bool = False


def get_currency(session: Session, blockchain_key: str, token_id: str) -> Currency:
    currency = session.get(Currency, (blockchain_key, token_id))
    if currency is None:
        raise CurrencyNotFoundError(blockchain_key, token_id)
    return currency


def get_currency_pair(
    session: Session,
    principal: Tuple[str, str],
    collateral: Tuple[str, str],
) -> Tuple[Currency, Currency]:
    """Return ``(principal, collateral)`` currencies or fail before any write."""
    principal_currency = session.get(Currency, principal)
    collateral_currency = session.get(Currency, collateral)
    if principal_currency is None or collateral_currency is None:
        raise CurrencyPairNotFoundError(
            "Currency pair not found: "
            f"{principal[0]}/{principal[1]} -> {collateral[0]}/{collateral[1]}"
        )
    return principal_currency, collateral_currency


def resolve_exchange_rate(
    session: Session,
    blockchain_key: str,
    base_token_id: str,
    quote_token_id: str,
    as_of: Optional[DateLike] = None,
) -> ResolvedRate:
    """Latest rate for the pair, looking at feeds stored in either direction.

    With *as_of*, only observations with ``source_date <= as_of`` qualify.
    Raises :class:`RateNotFoundError` when no feed or no observation exists;
    no default is ever substituted.
    """
    stmt = (
        select(ExchangeRate, PriceFeed)
        .join(PriceFeed, ExchangeRate.price_feed_id == PriceFeed.id)
        .where(PriceFeed.blockchain_key == blockchain_key)
        .where(
            or_(
                and_(
                    PriceFeed.base_currency_token_id == base_token_id,
                    PriceFeed.quote_currency_token_id == quote_token_id,
                ),
                and_(
                    PriceFeed.base_currency_token_id == quote_token_id,
                    PriceFeed.quote_currency_token_id == base_token_id,
                ),
            )
        )
    )
    if as_of is not None:
        stmt = stmt.where(ExchangeRate.source_date <= to_utc_naive(as_of))
    stmt = stmt.order_by(ExchangeRate.source_date.desc(), ExchangeRate.id.desc()).limit(1)

    row = session.exec(stmt).first()
    if row is None:
        raise RateNotFoundError(
            f"Exchange rate not found: {blockchain_key} {base_token_id}/{quote_token_id}"
        )
    rate, feed = row
    bid = Fraction(rate.bid_price)
    ask = Fraction(rate.ask_price)
    inverted = feed.base_currency_token_id != base_token_id
    if inverted:
        if bid <= 0 or ask <= 0:
            raise RateNotFoundError(f"Exchange rate {rate.id} cannot be inverted")
        bid, ask = 1 / ask, 1 / bid

    return ResolvedRate(
        exchange_rate_id=rate.id,
        price_feed_id=feed.id,
        base_token_id=base_token_id,
        quote_token_id=quote_token_id,
        bid_price=bid,
        ask_price=ask,
        source_date=rate.source_date,
        inverted=inverted,
    )


def resolve_platform_config(session: Session, as_of: DateLike) -> PlatformConfig:
    """Latest ``PlatformConfig`` with ``effective_date <= as_of``."""
    stmt = (
        select(PlatformConfig)
        .where(PlatformConfig.effective_date <= to_utc_naive(as_of))
        .order_by(PlatformConfig.effective_date.desc())
        .limit(1)
    )
    config: PlatformConfig | None = session.exec(stmt).first()
    if config is None:
        raise ConfigNotFoundError(f"Platform config not found as of {as_of}")
    return config
