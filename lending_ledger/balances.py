"""Balance projection over the append-only mutation log, with USD valuation."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from fractions import Fraction
from typing import List, Optional

from sqlmodel import Session, select

from common.datetime import DateLike, to_utc_naive
from lending_ledger.calculator import floor_amount
from lending_ledger.config import POLICY, LedgerPolicy
from lending_ledger.db import get_session
from lending_ledger.errors import AccountNotFoundError, RateNotFoundError
from lending_ledger.ledger import account_balance
from lending_ledger.models import Account, AccountMutation, Currency
from lending_ledger.pagination import Page, paginate
from lending_ledger.resolvers import get_currency, resolve_exchange_rate

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class AccountBalance:
    account_id: str
    user_id: str
    account_type: str
    currency_blockchain_key: str
    currency_token_id: str
    decimals: int
    balance: int
    usd_value: Optional[int]
    exchange_rate_id: Optional[str] = None


@dataclass(slots=True)
class PortfolioValue:
    user_id: str
    total_usd_value: int = 0
    usd_decimals: int = 6
    balances: List[AccountBalance] = field(default_factory=list)


class BalanceProjector:
    """Sums mutations into balances; never stores a balance."""

    def __init__(self, session: Session | None = None, policy: LedgerPolicy | None = None):
        self.session = session or get_session()
        self.policy = policy or POLICY

    def account_balance(self, account_id: str, as_of: Optional[DateLike] = None) -> int:
        if self.session.get(Account, account_id) is None:
            raise AccountNotFoundError(f"Account not found: {account_id}")
        return account_balance(
            self.session, account_id, None if as_of is None else to_utc_naive(as_of)
        )

    def user_balances(self, user_id: str, as_of: DateLike) -> List[AccountBalance]:
        """Every account of *user_id* with its balance and USD value at *as_of*.

        ``usd_value`` is ``None`` when the currency has no USD price feed.
        """
        as_of_at = to_utc_naive(as_of)
        accounts = self.session.exec(
            select(Account)
            .where(Account.user_id == user_id)
            .order_by(Account.currency_blockchain_key, Account.currency_token_id, Account.account_type)
        ).all()
        return [self._project(account, as_of_at) for account in accounts]

    def portfolio_value(self, user_id: str, as_of: DateLike) -> PortfolioValue:
        """Total USD value in USD smallest units, summed as integers."""
        balances = self.user_balances(user_id, as_of)
        total = 0
        for entry in balances:
            if entry.usd_value is not None:
                total += entry.usd_value
        return PortfolioValue(
            user_id=user_id,
            total_usd_value=total,
            usd_decimals=self.policy.usd_decimals,
            balances=balances,
        )

    def account_mutations(
        self, account_id: str, page: Optional[int] = 1, limit: Optional[int] = None
    ) -> Page:
        stmt = (
            select(AccountMutation)
            .where(AccountMutation.account_id == account_id)
            .order_by(AccountMutation.mutation_date.desc(), AccountMutation.id.desc())
        )
        return paginate(self.session, stmt, page, limit)

    # ------------------------------------------------------------------
    def _project(self, account: Account, as_of: datetime) -> AccountBalance:
        currency = get_currency(
            self.session, account.currency_blockchain_key, account.currency_token_id
        )
        balance = account_balance(self.session, account.id, as_of)
        usd_value, rate_id = self._usd_value(currency, balance, as_of)
        return AccountBalance(
            account_id=account.id,
            user_id=account.user_id,
            account_type=account.account_type,
            currency_blockchain_key=currency.blockchain_key,
            currency_token_id=currency.token_id,
            decimals=currency.decimals,
            balance=balance,
            usd_value=usd_value,
            exchange_rate_id=rate_id,
        )

    def _usd_value(self, currency: Currency, balance: int, as_of: datetime):
        usd_scale = Fraction(10) ** self.policy.usd_decimals
        unit = Fraction(10) ** currency.decimals
        if currency.token_id == self.policy.usd_token_id:
            return floor_amount(Fraction(balance) * usd_scale / unit), None
        try:
            rate = resolve_exchange_rate(
                self.session,
                currency.blockchain_key,
                currency.token_id,
                self.policy.usd_token_id,
                as_of=as_of,
            )
        except RateNotFoundError:
            logger.debug(
                "no USD price for %s/%s",
                currency.blockchain_key,
                currency.token_id,
                extra={"entity": "currency"},
            )
            return None, None
        return floor_amount(Fraction(balance) * rate.bid_price * usd_scale / unit), rate.exchange_rate_id
