"""Soft-delete visibility rules shared by every repository.

Deleted rows stay in storage. Lists never show them; point lookups show them
paired with RecordDeletedError.
"""
from typing import Iterable, Optional

from sqlalchemy import Select, select
from sqlalchemy.orm import Session

from .config import settings
from .errors import RecordDeletedError, RecordNotFoundError


def only_active(stmt: Select, *models) -> Select:
    """Restrict a select to rows whose deleted flag is false on every given model."""
    for model in models:
        stmt = stmt.where(model.deleted.is_(False))
    return stmt


def page_bounds(page: int = 1, page_size: Optional[int] = None) -> tuple[int, int]:
    """Return (limit, offset) for a 1-based page."""
    if page < 1:
        page = 1
    if page_size is None or page_size < 1:
        page_size = settings.default_page_size
    page_size = min(page_size, settings.max_page_size)
    return page_size, (page - 1) * page_size


def paginate(stmt: Select, page: int = 1, page_size: Optional[int] = None) -> Select:
    limit, offset = page_bounds(page, page_size)
    return stmt.limit(limit).offset(offset)


def ensure_visible(record):
    """Raise for a missing or soft-deleted row, otherwise return it."""
    if record is None:
        raise RecordNotFoundError()
    if record.deleted:
        raise RecordDeletedError(record)
    return record


def locked_lookup(model, record_id: str) -> Select:
    """
    Fresh select of one row under FOR NO KEY UPDATE.

    Conflicts with the version protocol's own row lock, so a soft delete
    cannot commit between the check and the dependent write (PostgreSQL;
    SQLite ignores row locks).
    """
    return (
        select(model)
        .where(model.id == record_id)
        .with_for_update(key_share=True)
        .execution_options(populate_existing=True)
    )


def require_active(db: Session, model, record_id: str):
    """Load and lock the row; raise if missing or soft-deleted."""
    return ensure_visible(db.execute(locked_lookup(model, record_id)).scalar_one_or_none())


def require_all(db: Session, requires: Iterable[tuple[type, str]]) -> None:
    """require_active for each (model, id), locking in table then id order."""
    for model, record_id in sorted(requires, key=lambda item: (item[0].__tablename__, item[1])):
        require_active(db, model, record_id)
