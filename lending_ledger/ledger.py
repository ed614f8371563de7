"""Account lookup and append-only mutation posting.

Balances are never stored; every movement of funds appends signed
``AccountMutation`` rows in the caller's transaction. Internal transfers post
one debit and one matching credit so the per-currency total is conserved.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlmodel import Session, select

from ledger_observability.metrics import ledger_account_mutations_total
from lending_ledger.models import Account, AccountMutation
from lending_ledger.states import AccountType, MutationType

logger = logging.getLogger(__name__)


def get_or_create_account(
    session: Session,
    user_id: str,
    blockchain_key: str,
    token_id: str,
    account_type: AccountType = AccountType.USER,
) -> Account:
    stmt = select(Account).where(
        Account.user_id == user_id,
        Account.currency_blockchain_key == blockchain_key,
        Account.currency_token_id == token_id,
        Account.account_type == account_type.value,
    )
    account: Account | None = session.exec(stmt).first()
    if account is None:
        account = Account(
            user_id=user_id,
            currency_blockchain_key=blockchain_key,
            currency_token_id=token_id,
            account_type=account_type.value,
        )
        session.add(account)
        session.flush()
    return account


def post_mutation(
    session: Session,
    account: Account,
    mutation_type: MutationType,
    amount: int,
    mutation_date: datetime,
    *,
    invoice_id: Optional[str] = None,
    withdrawal_id: Optional[str] = None,
    loan_offer_id: Optional[str] = None,
    loan_application_id: Optional[str] = None,
    loan_id: Optional[str] = None,
) -> AccountMutation:
    """Append one signed entry; positive credits, negative debits."""
    row = AccountMutation(
        account_id=account.id,
        mutation_type=mutation_type.value,
        mutation_date=mutation_date,
        amount=int(amount),
        invoice_id=invoice_id,
        withdrawal_id=withdrawal_id,
        loan_offer_id=loan_offer_id,
        loan_application_id=loan_application_id,
        loan_id=loan_id,
    )
    session.add(row)
    ledger_account_mutations_total.labels(mutation_type=mutation_type.value).inc()
    logger.debug(
        "mutation %s %s on account %s",
        mutation_type.value,
        amount,
        account.id,
        extra={"entity": "account", "entity_id": account.id},
    )
    return row


def transfer(
    session: Session,
    *,
    source: Account,
    source_type: MutationType,
    destination: Account,
    destination_type: MutationType,
    amount: int,
    mutation_date: datetime,
    **links: Optional[str],
) -> None:
    """Debit *source* and credit *destination* by the same amount."""
    if amount == 0:
        return
    post_mutation(session, source, source_type, -amount, mutation_date, **links)
    post_mutation(session, destination, destination_type, amount, mutation_date, **links)


def account_balance(session: Session, account_id: str, as_of: Optional[datetime] = None) -> int:
    """Sum of the account's mutations, optionally up to and including *as_of*.

    Summed in Python so arbitrarily large amounts stay exact on every backend.
    """
    stmt = select(AccountMutation.amount).where(AccountMutation.account_id == account_id)
    if as_of is not None:
        stmt = stmt.where(AccountMutation.mutation_date <= as_of)
    return sum(session.exec(stmt).all())
