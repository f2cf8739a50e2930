"""User repository: accounts, profile updates and follow-graph lookups."""
import logging
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from .errors import DuplicateDetailsError
from .models import Follow, User
from .schemas import NewUser, UserChanges
from .versioning import VersionedRecordStore, reading
from .visibility import ensure_visible, only_active, paginate


logger = logging.getLogger(__name__)

USER_CONSTRAINTS = [
    (
        ("users_username_key", "users_email_key",
         "UNIQUE constraint failed: users.username", "UNIQUE constraint failed: users.email"),
        DuplicateDetailsError,
    ),
]


class UserRepository:
    """Versioned access to the users table."""

    def __init__(self, db: Session, guard_deleted: Optional[bool] = None):
        self.db = db
        self.store = VersionedRecordStore(db, User, USER_CONSTRAINTS, guard_deleted=guard_deleted)

    def create(self, new_user: NewUser) -> User:
        """
        Register a user.

        Raises DuplicateDetailsError if the username or email is taken.
        """
        user = self.store.insert(User(**new_user.row()))
        logger.info(f"Created user {user.id} (@{user.username})")
        return user

    def get_by_id(self, user_id: str) -> User:
        return self.store.get(user_id)

    def get_by_email(self, email: str) -> User:
        return self._get_by(User.email == email)

    def get_by_username(self, username: str) -> User:
        return self._get_by(User.username == username)

    def _get_by(self, criterion) -> User:
        with reading(self.db):
            stmt = select(User).where(criterion).execution_options(populate_existing=True)
            return ensure_visible(self.db.execute(stmt).scalar_one_or_none())

    def list_users(self, page: int = 1, page_size: Optional[int] = None) -> list[User]:
        """Active users, newest first."""
        stmt = only_active(select(User), User).order_by(User.created_at.desc(), User.id)
        return self._fetch(paginate(stmt, page, page_size))

    def search(self, term: str, page: int = 1, page_size: Optional[int] = None) -> list[User]:
        """Case-insensitive substring match on names, username and email."""
        pattern = f"%{term}%"
        stmt = only_active(select(User), User).where(
            or_(
                User.first_name.ilike(pattern),
                User.last_name.ilike(pattern),
                User.username.ilike(pattern),
                User.email.ilike(pattern),
            )
        ).order_by(User.created_at.desc(), User.id)
        return self._fetch(paginate(stmt, page, page_size))

    def get_followers(self, user_id: str, page: int = 1, page_size: Optional[int] = None) -> list[User]:
        """Active users following `user_id`, most recent follow first."""
        stmt = (
            only_active(select(User).join(Follow, Follow.follower_id == User.id), User)
            .where(Follow.subject_id == user_id)
            .order_by(Follow.created_at.desc(), User.id)
        )
        return self._fetch(paginate(stmt, page, page_size))

    def get_following(self, user_id: str, page: int = 1, page_size: Optional[int] = None) -> list[User]:
        """Active users that `user_id` follows, most recent follow first."""
        stmt = (
            only_active(select(User).join(Follow, Follow.subject_id == User.id), User)
            .where(Follow.follower_id == user_id)
            .order_by(Follow.created_at.desc(), User.id)
        )
        return self._fetch(paginate(stmt, page, page_size))

    def update(self, user_id: str, version: int, changes: UserChanges, timeout: Optional[float] = None) -> User:
        """
        Apply profile changes if `version` is still current.

        Raises RecordNotFoundError, ConcurrentUpdateError or
        DuplicateDetailsError. Runs under the query budget unless `timeout`
        is given.
        """
        return self.store.update_with_version_check(user_id, version, changes.changes(), timeout=timeout)

    def delete(self, user_id: str, version: int) -> User:
        """Soft-delete the account."""
        user = self.store.soft_delete(user_id, version)
        logger.info(f"Deleted user {user_id}")
        return user

    def _fetch(self, stmt) -> list[User]:
        with reading(self.db):
            return list(self.db.execute(stmt.execution_options(populate_existing=True)).scalars())

