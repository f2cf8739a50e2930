"""
Error taxonomy for the memo store.

Repositories translate low-level SQLAlchemy failures into these types at the
boundary. Everything callers are expected to branch on has its own class;
anything else becomes a StoreError.
"""
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy.exc import IntegrityError


class MemoCoreError(Exception):
    """Base exception for all memo_core errors."""

    def __init__(self, message: str, context: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class RecordNotFoundError(MemoCoreError):
    """No row exists for the given identity."""

    def __init__(self, message: str = "no matching record found", context: Optional[dict] = None):
        super().__init__(message, context)


class RecordDeletedError(MemoCoreError):
    """
    The row exists but is soft-deleted.

    The stale row travels with the error so callers can still display it.
    """

    def __init__(self, record: Any, message: str = "record has been deleted"):
        super().__init__(message, {"id": getattr(record, "id", None)})
        self.record = record


class ConcurrentUpdateError(MemoCoreError):
    """Version mismatch at check time or at write time."""

    def __init__(self, message: str = "concurrent update detected", context: Optional[dict] = None):
        super().__init__(message, context)


class DuplicateDetailsError(MemoCoreError):
    """Username or email already taken."""

    def __init__(self, message: str = "username or email already exists", context: Optional[dict] = None):
        super().__init__(message, context)


class DuplicateFollowError(MemoCoreError):
    """The follower already follows the subject."""

    def __init__(self, message: str = "identical follow instance already exists", context: Optional[dict] = None):
        super().__init__(message, context)


class DuplicateLikeError(MemoCoreError):
    """The user already liked this memo or comment."""

    def __init__(self, message: str = "identical like instance already exists", context: Optional[dict] = None):
        super().__init__(message, context)


class DuplicateShareError(MemoCoreError):
    """The user already shared this memo."""

    def __init__(self, message: str = "identical share instance already exists", context: Optional[dict] = None):
        super().__init__(message, context)


class CheckFollowError(MemoCoreError):
    """A user tried to follow themselves."""

    def __init__(self, message: str = "followerID and subjectID must not be the same", context: Optional[dict] = None):
        super().__init__(message, context)


class ValidationFailure(MemoCoreError):
    """Malformed or inconsistent input."""
    pass


class UnapprovedFileTypeError(MemoCoreError):
    """The media storage rejected the file format."""

    def __init__(self, message: str = "provided file type is not allowed", context: Optional[dict] = None):
        super().__init__(message, context)


class StorageError(MemoCoreError):
    """Media storage failure other than a rejected format."""

    def __init__(self, message: str, status_code: Optional[int] = None, context: Optional[dict] = None):
        super().__init__(message, context)
        self.status_code = status_code


class MediaAttachError(MemoCoreError):
    """
    A record was created but its media could not be attached.

    The record is left in place (no compensation across store and storage);
    callers may retry the upload against `record`.
    """

    def __init__(self, record: Any, message: str = "record created but media could not be attached"):
        super().__init__(message, {"id": getattr(record, "id", None)})
        self.record = record


class RejectedMediaError(MediaAttachError, UnapprovedFileTypeError):
    """
    The record was created but storage refused its file format.

    Catchable as either MediaAttachError or UnapprovedFileTypeError.
    """

    def __init__(self, record: Any, message: str = "provided file type is not allowed"):
        super().__init__(record, message)


class StoreError(MemoCoreError):
    """Opaque store failure: connectivity, timeout, unexpected driver error."""

    def __init__(self, message: str = "internal store failure", context: Optional[dict] = None):
        super().__init__(message, context)


# A rule maps constraint markers to the error raised when any of them appears
# in the driver message. Markers hold both the PostgreSQL constraint name and
# the SQLite "table.column" signature.
ConstraintRule = tuple[Sequence[str], type[MemoCoreError]]


def translate_integrity_error(exc: IntegrityError, rules: Iterable[ConstraintRule]) -> Optional[MemoCoreError]:
    """Return the taxonomy error for a constraint violation, or None if unmapped."""
    detail = str(exc.orig) if exc.orig is not None else str(exc)
    for markers, error_cls in rules:
        if any(marker in detail for marker in markers):
            return error_cls()
    return None
