"""
Derived counter maintenance.

Edge rows (follows, likes, shares, comment_likes) each account for exactly
one unit of a counter on their owning record. The edge write and the counter
arithmetic commit together. Counter updates are plain `counter = counter +
delta` statements: they commute, so they bypass the version protocol and
concurrent likes never conflict.
"""
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.orm import Session

from .errors import ConstraintRule, RecordNotFoundError
from .models import Comment, CommentLike, Follow, Like, Memo, Share, User
from .versioning import atomic
from .visibility import require_all


logger = logging.getLogger(__name__)

# (owning model, owning record id, counter column)
CounterTarget = tuple[type, str, str]


@dataclass(frozen=True)
class CounterSource:
    """Which edge rows a counter column counts."""
    model: type
    column: str
    edge_model: type
    edge_fk: str


COUNTER_SOURCES = [
    CounterSource(User, "follower_count", Follow, "subject_id"),
    CounterSource(User, "following_count", Follow, "follower_id"),
    CounterSource(Memo, "likes", Like, "memo_id"),
    CounterSource(Memo, "shares", Share, "memo_id"),
    CounterSource(Comment, "likes", CommentLike, "comment_id"),
]


@dataclass
class CounterDrift:
    """A counter whose stored value disagrees with its edge rows."""
    table: str
    record_id: str
    column: str
    stored: int
    actual: int


def apply_delta(db: Session, model, record_id: str, column: str, delta: int) -> bool:
    """
    counter = counter + delta, clamped at zero.

    Returns False when no row matched. Must run inside a transaction.
    """
    counter = getattr(model, column)
    result = db.execute(
        update(model)
        .where(model.id == record_id)
        .values({column: case((counter + delta < 0, 0), else_=counter + delta)})
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def add_edge(
    db: Session,
    edge,
    targets: Iterable[CounterTarget],
    rules: Iterable[ConstraintRule] = (),
    timeout: Optional[float] = None,
    requires: Iterable[tuple[type, str]] = (),
):
    """
    Insert an edge row and add one to each target counter, atomically.

    Every (model, id) in `requires` must exist and be active, checked in the
    same transaction.
    """
    with atomic(db, timeout, rules):
        require_all(db, requires)
        db.add(edge)
        db.flush()
        for model, record_id, column in targets:
            if not apply_delta(db, model, record_id, column, 1):
                raise RecordNotFoundError(context={"table": model.__tablename__, "id": record_id})
    db.refresh(edge)
    return edge


def remove_edge(
    db: Session,
    edge_model,
    criteria: dict,
    targets: Iterable[CounterTarget],
    timeout: Optional[float] = None,
) -> bool:
    """
    Delete matching edge rows and subtract one from each target counter.

    The decrement is only issued if a row was actually removed, so removing a
    missing edge is a no-op. Returns whether an edge existed.
    """
    with atomic(db, timeout):
        result = db.execute(
            delete(edge_model)
            .filter_by(**criteria)
            .execution_options(synchronize_session=False)
        )
        removed = result.rowcount > 0
        if removed:
            for model, record_id, column in targets:
                apply_delta(db, model, record_id, column, -1)
    if not removed:
        logger.debug(f"No {edge_model.__tablename__} edge matched {criteria}; counters untouched")
    return removed


# =============================================================================
# Offline audit (never called from the request path)
# =============================================================================

def _actual_count(source: CounterSource):
    edge_fk = getattr(source.edge_model, source.edge_fk)
    return (
        select(func.count(source.edge_model.id))
        .where(edge_fk == source.model.id)
        .correlate(source.model)
        .scalar_subquery()
    )


def audit_counters(db: Session) -> list[CounterDrift]:
    """Compare every derived counter with a count of its edge rows."""
    drifts = []
    for source in COUNTER_SOURCES:
        counter = getattr(source.model, source.column)
        actual = _actual_count(source)
        rows = db.execute(
            select(source.model.id, counter, actual).where(counter != actual)
        ).all()
        for record_id, stored, count in rows:
            drifts.append(CounterDrift(
                table=source.model.__tablename__,
                record_id=record_id,
                column=source.column,
                stored=stored,
                actual=count,
            ))
    return drifts


def repair_counters(db: Session) -> list[CounterDrift]:
    """Rewrite drifted counters from their edge rows. Returns what was fixed."""
    with atomic(db):
        drifts = audit_counters(db)
        for drift in drifts:
            source = next(
                s for s in COUNTER_SOURCES
                if s.model.__tablename__ == drift.table and s.column == drift.column
            )
            db.execute(
                update(source.model)
                .where(source.model.id == drift.record_id)
                .values({drift.column: drift.actual})
                .execution_options(synchronize_session=False)
            )
            logger.warning(
                f"Repaired {drift.table}/{drift.record_id}.{drift.column}: "
                f"{drift.stored} -> {drift.actual}"
            )
    return drifts
