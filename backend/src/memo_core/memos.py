"""Memo repository: posts, feeds, search, likes and shares."""
import logging
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from .counters import add_edge, remove_edge
from .errors import DuplicateLikeError, DuplicateShareError
from .models import Follow, Like, Memo, Share, User
from .schemas import MemoChanges, NewMemo
from .versioning import VersionedRecordStore, reading
from .visibility import only_active, paginate


logger = logging.getLogger(__name__)

LIKE_CONSTRAINTS = [
    (("unique_like_per_user", "UNIQUE constraint failed: likes.liked_by, likes.memo_id"), DuplicateLikeError),
]
SHARE_CONSTRAINTS = [
    (("unique_share_per_user", "UNIQUE constraint failed: shares.shared_by, shares.memo_id"), DuplicateShareError),
]


class MemoRepository:
    """Versioned access to memos plus their like/share edges."""

    def __init__(self, db: Session, guard_deleted: Optional[bool] = None):
        self.db = db
        self.store = VersionedRecordStore(db, Memo, guard_deleted=guard_deleted)

    # -------------------------------------------------------------------------
    # Versioned record operations
    # -------------------------------------------------------------------------

    def create(self, owner_id: str, new_memo: NewMemo) -> Memo:
        """
        Insert a memo with an empty resource URL.

        Media memos get their URL afterwards through `update`, once the upload
        (named after the new memo id) has succeeded.
        """
        memo = self.store.insert(
            Memo(owner_id=owner_id, resource_url="", **new_memo.row()),
            requires=[(User, owner_id)],
        )
        logger.info(f"Created {memo.type} memo {memo.id} for {owner_id}")
        return memo

    def get(self, memo_id: str) -> Memo:
        """Raises RecordNotFoundError, or RecordDeletedError carrying the memo."""
        return self.store.get(memo_id)

    def update(self, memo_id: str, version: int, changes: MemoChanges, timeout: Optional[float] = None) -> Memo:
        return self.store.update_with_version_check(memo_id, version, changes.changes(), timeout=timeout)

    def delete(self, memo_id: str, version: int) -> Memo:
        memo = self.store.soft_delete(memo_id, version)
        logger.info(f"Deleted memo {memo_id}")
        return memo

    # -------------------------------------------------------------------------
    # Lists (newest first, deleted rows excluded)
    # -------------------------------------------------------------------------

    def list_all(self, page: int = 1, page_size: Optional[int] = None) -> list[Memo]:
        return self._page(select(Memo), page, page_size)

    def find(self, term: str, page: int = 1, page_size: Optional[int] = None) -> list[Memo]:
        """Case-insensitive substring search over content, caption and transcript."""
        pattern = f"%{term}%"
        stmt = select(Memo).where(
            or_(
                Memo.content.ilike(pattern),
                Memo.caption.ilike(pattern),
                Memo.transcript.ilike(pattern),
            )
        )
        return self._page(stmt, page, page_size)

    def list_by_owner(self, owner_id: str, page: int = 1, page_size: Optional[int] = None) -> list[Memo]:
        return self._page(select(Memo).where(Memo.owner_id == owner_id), page, page_size)

    def list_by_following(self, user_id: str, page: int = 1, page_size: Optional[int] = None) -> list[Memo]:
        """Feed for `user_id`: memos by everyone they follow, plus their own."""
        followed = select(Follow.subject_id).where(Follow.follower_id == user_id)
        stmt = select(Memo).where(or_(Memo.owner_id.in_(followed), Memo.owner_id == user_id))
        return self._page(stmt, page, page_size)

    def _page(self, stmt, page: int, page_size: Optional[int]) -> list[Memo]:
        stmt = only_active(stmt, Memo).order_by(Memo.created_at.desc(), Memo.id)
        with reading(self.db):
            stmt = paginate(stmt, page, page_size).execution_options(populate_existing=True)
            return list(self.db.execute(stmt).scalars())

    # -------------------------------------------------------------------------
    # Likes and shares
    # -------------------------------------------------------------------------

    def like(self, user_id: str, memo_id: str) -> Like:
        """
        Record a like and bump `memos.likes` in one transaction.

        Raises RecordNotFoundError / RecordDeletedError for a missing or
        deleted memo, DuplicateLikeError if already liked.
        """
        return add_edge(
            self.db,
            Like(liked_by=user_id, memo_id=memo_id),
            [(Memo, memo_id, "likes")],
            rules=LIKE_CONSTRAINTS,
            requires=[(User, user_id), (Memo, memo_id)],
        )

    def unlike(self, user_id: str, memo_id: str) -> bool:
        """Remove the like if present. Returns whether one existed."""
        return remove_edge(
            self.db, Like, {"liked_by": user_id, "memo_id": memo_id}, [(Memo, memo_id, "likes")]
        )

    def has_liked(self, user_id: str, memo_id: str) -> bool:
        with reading(self.db):
            stmt = select(Like.id).where(Like.liked_by == user_id, Like.memo_id == memo_id)
            return self.db.execute(stmt).first() is not None

    def share(self, user_id: str, memo_id: str) -> Share:
        """Record a share and bump `memos.shares` in one transaction."""
        return add_edge(
            self.db,
            Share(shared_by=user_id, memo_id=memo_id),
            [(Memo, memo_id, "shares")],
            rules=SHARE_CONSTRAINTS,
            requires=[(User, user_id), (Memo, memo_id)],
        )

    def unshare(self, user_id: str, memo_id: str) -> bool:
        return remove_edge(
            self.db, Share, {"shared_by": user_id, "memo_id": memo_id}, [(Memo, memo_id, "shares")]
        )
