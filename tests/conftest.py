import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

import lending_ledger.db  # noqa: F401  registers the audit journal table
from lending_ledger.config import LedgerPolicy
from tests.factories import (BNB, USD, USDC, LedgerFlow, add_config,
                             add_currency, add_rate)


@pytest.fixture()
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(eng)
    yield eng
    SQLModel.metadata.drop_all(eng)


@pytest.fixture()
def session(engine):
    with Session(engine) as s:
        yield s


@pytest.fixture()
def policy() -> LedgerPolicy:
    return LedgerPolicy()


@pytest.fixture()
def seeded(session):
    """USDC principal, BNB collateral at 2000 USDC, USD quotes, one config."""
    add_currency(session, USDC)
    add_currency(session, BNB)
    add_currency(session, USD, decimals=6)
    add_rate(session, BNB, USDC, "2000.0")
    add_rate(session, USDC, USD, "1.0")
    add_rate(session, BNB, USD, "2000.0")
    add_config(session)
    return session


@pytest.fixture()
def flow(seeded, policy) -> LedgerFlow:
    return LedgerFlow(seeded, policy)
