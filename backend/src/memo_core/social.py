"""Social repository: the follow graph and comment threads.

Comments are stored flat with an optional `parent_id`. Threads are read one
level at a time: top-level comments of a memo, or the direct replies to a
comment. Nothing here assembles a recursive tree.
"""
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .counters import add_edge, remove_edge
from .errors import (
    CheckFollowError, DuplicateFollowError, DuplicateLikeError, ValidationFailure,
)
from .models import Comment, CommentLike, Follow, Memo, User
from .schemas import CommentChanges, NewComment
from .versioning import VersionedRecordStore, atomic, reading
from .visibility import only_active, paginate, require_active


logger = logging.getLogger(__name__)

FOLLOW_CONSTRAINTS = [
    (("unique_follower_subject_pair", "UNIQUE constraint failed: follows.follower_id, follows.subject_id"), DuplicateFollowError),
    (("check_different_ids",), CheckFollowError),
]
COMMENT_LIKE_CONSTRAINTS = [
    (("unique_comment_like_per_user", "UNIQUE constraint failed: comment_likes.liked_by, comment_likes.comment_id"), DuplicateLikeError),
]


class SocialRepository:
    """Follows, comments and comment likes."""

    def __init__(self, db: Session, guard_deleted: Optional[bool] = None):
        self.db = db
        self.comments = VersionedRecordStore(db, Comment, guard_deleted=guard_deleted)

    # -------------------------------------------------------------------------
    # Follow graph
    # -------------------------------------------------------------------------

    def follow(self, follower_id: str, subject_id: str) -> Follow:
        """
        Create follower -> subject and bump both users' counters atomically.

        Raises CheckFollowError for a self-follow, DuplicateFollowError if the
        edge exists, RecordNotFoundError / RecordDeletedError if the subject
        is missing or deleted.
        """
        if follower_id == subject_id:
            raise CheckFollowError(context={"user_id": follower_id})
        follow = add_edge(
            self.db,
            Follow(follower_id=follower_id, subject_id=subject_id),
            [
                (User, subject_id, "follower_count"),
                (User, follower_id, "following_count"),
            ],
            rules=FOLLOW_CONSTRAINTS,
            requires=[(User, follower_id), (User, subject_id)],
        )
        logger.info(f"{follower_id} followed {subject_id}")
        return follow

    def unfollow(self, follower_id: str, subject_id: str) -> bool:
        """Remove follower -> subject if present. Returns whether it existed."""
        removed = remove_edge(
            self.db,
            Follow,
            {"follower_id": follower_id, "subject_id": subject_id},
            [
                (User, subject_id, "follower_count"),
                (User, follower_id, "following_count"),
            ],
        )
        if removed:
            logger.info(f"{follower_id} unfollowed {subject_id}")
        return removed

    def is_following(self, follower_id: str, subject_id: str) -> bool:
        with reading(self.db):
            stmt = select(Follow.id).where(
                Follow.follower_id == follower_id, Follow.subject_id == subject_id
            )
            return self.db.execute(stmt).first() is not None

    # -------------------------------------------------------------------------
    # Comments
    # -------------------------------------------------------------------------

    def create_comment(self, owner_id: str, new_comment: NewComment) -> Comment:
        """
        Comment on a memo, or reply to a comment when `parent_id` is set.

        The memo must be active. A parent must be an active comment on the
        same memo.
        """
        requires = [(User, owner_id), (Memo, new_comment.memo_id)]
        if new_comment.parent_id is not None:
            with atomic(self.db):
                parent = require_active(self.db, Comment, new_comment.parent_id)
                if parent.memo_id != new_comment.memo_id:
                    raise ValidationFailure(
                        "parent comment belongs to a different memo",
                        {"parent_id": parent.id, "memo_id": new_comment.memo_id},
                    )
            requires.append((Comment, new_comment.parent_id))

        comment = self.comments.insert(
            Comment(owner_id=owner_id, resource_url="", **new_comment.row()),
            requires=requires,
        )
        logger.info(f"Created comment {comment.id} on memo {comment.memo_id}")
        return comment

    def get_comment(self, comment_id: str) -> Comment:
        return self.comments.get(comment_id)

    def update_comment(
        self, comment_id: str, version: int, changes: CommentChanges, timeout: Optional[float] = None
    ) -> Comment:
        return self.comments.update_with_version_check(comment_id, version, changes.changes(), timeout=timeout)

    def delete_comment(self, comment_id: str, version: int) -> Comment:
        comment = self.comments.soft_delete(comment_id, version)
        logger.info(f"Deleted comment {comment_id}")
        return comment

    def list_comments(self, memo_id: str, page: int = 1, page_size: Optional[int] = None) -> list[Comment]:
        """Top-level comments on a memo, oldest first."""
        stmt = select(Comment).where(Comment.memo_id == memo_id, Comment.parent_id.is_(None))
        return self._thread(stmt, page, page_size)

    def list_replies(self, parent_id: str, page: int = 1, page_size: Optional[int] = None) -> list[Comment]:
        """Direct replies to a comment, oldest first."""
        stmt = select(Comment).where(Comment.parent_id == parent_id)
        return self._thread(stmt, page, page_size)

    def _thread(self, stmt, page: int, page_size: Optional[int]) -> list[Comment]:
        stmt = only_active(stmt, Comment).order_by(Comment.created_at.asc(), Comment.id)
        with reading(self.db):
            stmt = paginate(stmt, page, page_size).execution_options(populate_existing=True)
            return list(self.db.execute(stmt).scalars())

    # -------------------------------------------------------------------------
    # Comment likes
    # -------------------------------------------------------------------------

    def like_comment(self, user_id: str, comment_id: str) -> CommentLike:
        return add_edge(
            self.db,
            CommentLike(liked_by=user_id, comment_id=comment_id),
            [(Comment, comment_id, "likes")],
            rules=COMMENT_LIKE_CONSTRAINTS,
            requires=[(User, user_id), (Comment, comment_id)],
        )

    def unlike_comment(self, user_id: str, comment_id: str) -> bool:
        return remove_edge(
            self.db,
            CommentLike,
            {"liked_by": user_id, "comment_id": comment_id},
            [(Comment, comment_id, "likes")],
        )
