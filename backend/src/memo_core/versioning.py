"""
Optimistic-concurrency protocol for versioned records.

Every mutable row carries an integer `version`. A write names the version it
was computed from; the store locks the row, compares versions, and applies
the change together with `version = version + 1` and a fresh `updated_at`,
re-asserting the expected version in the UPDATE predicate. A mismatch at
either point is a ConcurrentUpdateError and nothing is written.

Soft delete is the same write with `deleted = true`.
"""
import logging
from contextlib import contextmanager
from typing import Iterable, Iterator, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .config import settings
from .database import apply_statement_timeout
from .errors import (
    ConcurrentUpdateError, ConstraintRule, MemoCoreError, RecordDeletedError,
    RecordNotFoundError, StoreError, ValidationFailure, translate_integrity_error,
)
from .models import utc_now
from .visibility import ensure_visible, require_all


logger = logging.getLogger(__name__)

# Columns owned by the protocol itself; never accepted as caller changes.
PROTOCOL_COLUMNS = frozenset({"id", "version", "deleted", "created_at", "updated_at"})


@contextmanager
def atomic(
    db: Session,
    timeout: Optional[float] = None,
    rules: Iterable[ConstraintRule] = (),
) -> Iterator[Session]:
    """
    Run the block as one transaction.

    Commits on success. On any error the transaction is rolled back, then
    constraint violations matching `rules` are re-raised as taxonomy errors
    and every other SQLAlchemy failure becomes a StoreError.
    """
    try:
        apply_statement_timeout(db, settings.query_timeout_seconds if timeout is None else timeout)
        yield db
        db.commit()
    except MemoCoreError:
        db.rollback()
        raise
    except IntegrityError as exc:
        db.rollback()
        translated = translate_integrity_error(exc, rules)
        if translated is None:
            logger.exception("Unmapped constraint violation")
            raise StoreError() from exc
        logger.debug(f"Constraint violation mapped to {type(translated).__name__}")
        raise translated from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Store operation failed")
        raise StoreError() from exc
    except Exception:
        db.rollback()
        raise


@contextmanager
def reading(db: Session, timeout: Optional[float] = None) -> Iterator[Session]:
    """Apply the read budget and translate driver failures; never commits."""
    try:
        apply_statement_timeout(db, settings.query_timeout_seconds if timeout is None else timeout)
        yield db
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Store read failed")
        raise StoreError() from exc


class VersionedRecordStore:
    """
    Versioned read/insert/update/soft-delete for one model in one session.

    Repositories compose one of these per entity table and add their own
    queries around it.
    """

    def __init__(
        self,
        db: Session,
        model,
        rules: Iterable[ConstraintRule] = (),
        timeout: Optional[float] = None,
        guard_deleted: Optional[bool] = None,
    ):
        self.db = db
        self.model = model
        self.rules = tuple(rules)
        self.timeout = settings.query_timeout_seconds if timeout is None else timeout
        self.guard_deleted = settings.guard_deleted_mutations if guard_deleted is None else guard_deleted

    @property
    def table(self) -> str:
        return self.model.__tablename__

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def find(self, record_id: str):
        """Return the row (deleted or not) or None."""
        with reading(self.db, self.timeout):
            stmt = (
                select(self.model)
                .where(self.model.id == record_id)
                .execution_options(populate_existing=True)
            )
            return self.db.execute(stmt).scalar_one_or_none()

    def get(self, record_id: str):
        """
        Point lookup.

        Raises RecordNotFoundError if absent and RecordDeletedError (carrying
        the row) if soft-deleted.
        """
        return ensure_visible(self.find(record_id))

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def insert(self, record, timeout: Optional[float] = None, requires: Iterable[tuple[type, str]] = ()):
        """
        Insert a new row; returns it with id and timestamps populated.

        Each (model, id) in `requires` must exist and be active in the same
        transaction.
        """
        with atomic(self.db, timeout or self.timeout, self.rules):
            require_all(self.db, requires)
            self.db.add(record)
            self.db.flush()
        self.db.refresh(record)
        logger.debug(f"Inserted {self.table}/{record.id}")
        return record

    def update_with_version_check(
        self,
        record_id: str,
        expected_version: int,
        changes: dict,
        timeout: Optional[float] = None,
    ):
        """Apply `changes` if the stored version still equals `expected_version`."""
        self._check_changes(changes)
        return self._write(record_id, expected_version, dict(changes), timeout)

    def soft_delete(self, record_id: str, expected_version: int, timeout: Optional[float] = None):
        """Mark the row deleted under the same version protocol."""
        return self._write(record_id, expected_version, {"deleted": True}, timeout)

    def _check_changes(self, changes: dict) -> None:
        columns = self.model.__table__.columns
        derived = set(getattr(self.model, "derived_columns", ()))
        for key, value in changes.items():
            if key in PROTOCOL_COLUMNS or key in derived:
                raise ValidationFailure(f"{key} cannot be set directly", {"table": self.table})
            if key not in columns:
                raise ValidationFailure(f"unknown field {key}", {"table": self.table})
            if value is None and not columns[key].nullable:
                raise ValidationFailure(f"{key} cannot be null", {"table": self.table})

    def _write(self, record_id: str, expected_version: int, values: dict, timeout: Optional[float]):
        model = self.model
        context = {"table": self.table, "id": record_id, "expected_version": expected_version}

        with atomic(self.db, timeout or self.timeout, self.rules):
            # FOR NO KEY UPDATE: serializes version-checking writers without
            # blocking plain readers or foreign-key checks.
            current = self.db.execute(
                select(model.version, model.deleted)
                .where(model.id == record_id)
                .with_for_update(key_share=True)
            ).one_or_none()

            if current is None:
                raise RecordNotFoundError(context=context)
            if current.version != expected_version:
                logger.info(
                    f"Version conflict on {self.table}/{record_id}: "
                    f"expected {expected_version}, stored {current.version}"
                )
                raise ConcurrentUpdateError(context={**context, "stored_version": current.version})
            if current.deleted and self.guard_deleted:
                raise RecordDeletedError(self.db.get(model, record_id))

            result = self.db.execute(
                update(model)
                .where(model.id == record_id, model.version == expected_version)
                .values(**values, updated_at=utc_now(), version=model.version + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConcurrentUpdateError(context=context)

        logger.debug(f"Wrote {self.table}/{record_id} v{expected_version} -> v{expected_version + 1}")
        record = self.find(record_id)
        if record is None:
            raise RecordNotFoundError(context=context)
        return record
