"""Page/limit clamping and paginated query execution."""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Generic, List, Optional, Tuple, TypeVar

from sqlalchemy import func
from sqlmodel import Session, select

from lending_ledger.config import POLICY

T = TypeVar("T")


@dataclass(slots=True, frozen=True)
class Pagination:
    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool


@dataclass(slots=True)
class Page(Generic[T]):
    items: List[T] = field(default_factory=list)
    pagination: Optional[Pagination] = None


def clamp_page(
    page: Optional[int],
    limit: Optional[int],
    *,
    default_limit: int = POLICY.default_page_limit,
    max_limit: int = POLICY.max_page_limit,
) -> Tuple[int, int]:
    """``page >= 1`` and ``1 <= limit <= max_limit``; ``None`` takes defaults."""
    page = 1 if page is None else max(1, int(page))
    limit = default_limit if limit is None else min(max(1, int(limit)), max_limit)
    return page, limit


def paginate(session: Session, stmt, page: Optional[int], limit: Optional[int]) -> Page:
    """Run *stmt* (already filtered and ordered) for one page."""
    page, limit = clamp_page(page, limit)
    total = session.exec(select(func.count()).select_from(stmt.order_by(None).subquery())).one()
    rows = session.exec(stmt.offset((page - 1) * limit).limit(limit)).all()
    total_pages = math.ceil(total / limit) if total else 0
    return Page(
        items=list(rows),
        pagination=Pagination(
            page=page,
            limit=limit,
            total=total,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_prev=page > 1,
        ),
    )
