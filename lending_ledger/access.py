"""Row loading with locks and ownership checks."""
from __future__ import annotations

import logging
from typing import Optional, Type, TypeVar

from sqlmodel import Session, SQLModel, select

from lending_ledger.errors import AuthorizationMismatchError, NotFoundError

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=SQLModel)


def load_for_update(
    session: Session,
    model: Type[M],
    key_column,
    key: str,
    *,
    error: Type[NotFoundError],
    message: str,
) -> M:
    """``SELECT ... FOR UPDATE`` one row by key or raise *error*.

    Concurrent transitions on the same row serialise on this lock; the
    loser re-reads the committed status and fails its transition check.
    """
    row: Optional[M] = session.exec(
        select(model).where(key_column == key).with_for_update()
    ).first()
    if row is None:
        raise error(message)
    return row


def ensure_owner(
    *,
    entity: str,
    entity_id: str,
    owner_id: str,
    caller_id: str,
    message: str,
) -> None:
    """Raise a not-found lookalike when *caller_id* does not own the row."""
    if owner_id == caller_id:
        return
    exc = AuthorizationMismatchError(
        message,
        entity=entity,
        entity_id=entity_id,
        owner_id=owner_id,
        caller_id=caller_id,
    )
    logger.warning(
        "ownership mismatch: %s",
        exc.log_message,
        extra={"entity": entity, "entity_id": entity_id, "user_id": caller_id},
    )
    raise exc
