import logging
import os
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import Iterator, Optional

from sqlalchemy import Column, DateTime
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import JSON as SA_JSON
from sqlmodel import Field, Session, SQLModel, create_engine

from lending_ledger.models import new_id

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("LEDGER_DB_URL", "sqlite:///./lending_ledger.db")


def _make_engine(url: str):
    if url.startswith("sqlite"):
        return create_engine(url, echo=False, connect_args={"check_same_thread": False})
    return create_engine(url, echo=False, pool_pre_ping=True)


engine = _make_engine(DATABASE_URL)


# ---------------------------------------------------------------------------
# Audit journal
# ---------------------------------------------------------------------------


class AuditAction(str, Enum):
    OFFER_CREATED = "offer_created"
    OFFER_PUBLISHED = "offer_published"
    OFFER_CLOSED = "offer_closed"
    OFFER_EXPIRED = "offer_expired"
    APPLICATION_CREATED = "application_created"
    APPLICATION_PUBLISHED = "application_published"
    APPLICATION_CANCELLED = "application_cancelled"
    APPLICATION_MODIFIED = "application_modified"
    APPLICATION_MATCHED = "application_matched"
    APPLICATION_EXPIRED = "application_expired"
    LOAN_ORIGINATED = "loan_originated"
    LOAN_DISBURSED = "loan_disbursed"
    LOAN_VALUED = "loan_valued"
    REPAYMENT_REQUESTED = "repayment_requested"
    EARLY_REPAYMENT_REQUESTED = "early_repayment_requested"
    LOAN_REPAID = "loan_repaid"
    LIQUIDATION_REQUESTED = "liquidation_requested"
    LIQUIDATION_SETTLED = "liquidation_settled"
    LOAN_DEFAULTED = "loan_defaulted"
    INVOICE_PAYMENT_RECORDED = "invoice_payment_recorded"
    INVOICE_EXPIRED = "invoice_expired"
    WITHDRAWAL_REQUESTED = "withdrawal_requested"
    WITHDRAWAL_SENT = "withdrawal_sent"
    WITHDRAWAL_CONFIRMED = "withdrawal_confirmed"
    WITHDRAWAL_FAILED = "withdrawal_failed"
    REFUND_REQUESTED = "refund_requested"
    REFUND_APPROVED = "refund_approved"
    REFUND_REJECTED = "refund_rejected"


class AuditJournal(SQLModel, table=True):
    __tablename__ = "ledger_audit_journal"

    id: str = Field(primary_key=True, default_factory=new_id)
    event_ts: datetime = Field(sa_column=Column("event_ts", DateTime, nullable=False, index=True))
    actor: str = Field(default="system", index=True)
    action: str = Field(index=True)
    entity_type: str = Field(index=True)
    entity_id: str = Field(index=True)
    payload: Optional[dict] = Field(
        default=None, sa_column=Column(SA_JSON().with_variant(JSONB, "postgresql"))
    )


def log_audit(
    session: Session,
    *,
    action: AuditAction,
    entity_type: str,
    entity_id: str,
    event_ts: datetime,
    actor: str = "system",
    payload: dict | None = None,
) -> None:
    """Persist immutable audit row."""
    row = AuditJournal(
        action=action.value,
        entity_type=entity_type,
        entity_id=entity_id,
        event_ts=event_ts,
        actor=actor,
        payload=payload or {},
    )
    session.add(row)
    # don't commit; caller responsible to maintain transaction atomicity


# ---------------------------------------------------------------------------
# Sessions and transactions
# ---------------------------------------------------------------------------

_TX_MARKER = "lending_ledger.tx_depth"


@contextmanager
def transaction(session: Session) -> Iterator[Session]:
    """Run a block as one unit of work.

    The outermost block commits on success and rolls back on any exception.
    Nested blocks on the same session join the outer one, so an operation that
    calls other operations (an invoice payment publishing its offer) commits
    or rolls back as a whole.
    """
    depth = session.info.get(_TX_MARKER, 0)
    session.info[_TX_MARKER] = depth + 1
    try:
        yield session
        if depth == 0:
            session.commit()
    except Exception:
        if depth == 0:
            session.rollback()
        raise
    finally:
        session.info[_TX_MARKER] = depth


def init_db() -> None:
    # importing models registers every table on SQLModel.metadata
    import lending_ledger.models  # noqa: F401

    SQLModel.metadata.create_all(engine)


def get_session() -> Session:
    return Session(engine)
