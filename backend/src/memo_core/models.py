"""SQLAlchemy models for memo storage.

Two kinds of tables:
- Versioned records (mutable, soft-deleted): users, memos, comments
- Edges (inserted/deleted, never versioned): follows, likes, shares, comment_likes

Every edge table has a derived counter on its owning record that must always
equal the number of edge rows.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    String, Integer, Text, DateTime, ForeignKey, Boolean,
    UniqueConstraint, CheckConstraint, Index
)
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base


def utc_now():
    """Timezone-aware UTC now (replaces deprecated datetime.utcnow)."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


INITIAL_VERSION = 0


class MemoType(str, Enum):
    """Kind of content a memo or comment carries."""
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"


# =============================================================================
# VERSIONED RECORDS
# =============================================================================

class VersionedMixin:
    """Columns shared by every optimistic-concurrency record."""

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    version: Mapped[int] = mapped_column(Integer, default=INITIAL_VERSION, nullable=False)
    deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)


class User(VersionedMixin, Base):
    """Registered account."""
    __tablename__ = "users"

    username: Mapped[str] = mapped_column(String(50))
    email: Mapped[str] = mapped_column(String(255))
    first_name: Mapped[str] = mapped_column(String(100), default="")
    last_name: Mapped[str] = mapped_column(String(100), default="")
    password_hash: Mapped[str] = mapped_column(String(255))
    avatar_url: Mapped[str] = mapped_column(Text, default="")
    about: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String(100), default="")
    is_activated: Mapped[bool] = mapped_column(Boolean, default=False)

    derived_columns = ("follower_count", "following_count")

    # Derived from follows
    follower_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    following_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        UniqueConstraint("username", name="users_username_key"),
        UniqueConstraint("email", name="users_email_key"),
    )

    def __repr__(self) -> str:
        return f"<User {self.id} @{self.username} v{self.version}>"


class Memo(VersionedMixin, Base):
    """A post: text, or a caption/transcript plus an uploaded media resource."""
    __tablename__ = "memos"

    owner_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    type: Mapped[str] = mapped_column(String(10), default=MemoType.TEXT.value)
    content: Mapped[str] = mapped_column(Text, default="")
    caption: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    transcript: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resource_url: Mapped[str] = mapped_column(Text, default="")

    derived_columns = ("likes", "shares")

    # Derived from likes / shares
    likes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    shares: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    def __repr__(self) -> str:
        return f"<Memo {self.id} {self.type} v{self.version}>"


class Comment(VersionedMixin, Base):
    """Comment on a memo, or a direct reply to another comment."""
    __tablename__ = "comments"

    owner_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    memo_id: Mapped[str] = mapped_column(ForeignKey("memos.id"), index=True)
    parent_id: Mapped[Optional[str]] = mapped_column(ForeignKey("comments.id"), nullable=True, index=True)
    type: Mapped[str] = mapped_column(String(10), default=MemoType.TEXT.value)
    content: Mapped[str] = mapped_column(Text, default="")
    caption: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    transcript: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resource_url: Mapped[str] = mapped_column(Text, default="")

    derived_columns = ("likes",)

    # Derived from comment_likes
    likes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    def __repr__(self) -> str:
        return f"<Comment {self.id} on {self.memo_id} v{self.version}>"


# =============================================================================
# EDGES
# =============================================================================

class Follow(Base):
    """follower -> subject relationship."""
    __tablename__ = "follows"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    follower_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    subject_id: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    __table_args__ = (
        UniqueConstraint("follower_id", "subject_id", name="unique_follower_subject_pair"),
        CheckConstraint("follower_id <> subject_id", name="check_different_ids"),
    )


class Like(Base):
    """A user liking a memo."""
    __tablename__ = "likes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    liked_by: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    memo_id: Mapped[str] = mapped_column(ForeignKey("memos.id"), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    __table_args__ = (
        UniqueConstraint("liked_by", "memo_id", name="unique_like_per_user"),
    )


class Share(Base):
    """A user sharing a memo."""
    __tablename__ = "shares"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    shared_by: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    memo_id: Mapped[str] = mapped_column(ForeignKey("memos.id"), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    __table_args__ = (
        UniqueConstraint("shared_by", "memo_id", name="unique_share_per_user"),
    )


class CommentLike(Base):
    """A user liking a comment."""
    __tablename__ = "comment_likes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    liked_by: Mapped[str] = mapped_column(ForeignKey("users.id"), index=True)
    comment_id: Mapped[str] = mapped_column(ForeignKey("comments.id"), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    __table_args__ = (
        UniqueConstraint("liked_by", "comment_id", name="unique_comment_like_per_user"),
    )


# =============================================================================
# INDEXES
# =============================================================================

Index("ix_memos_deleted_created", Memo.deleted, Memo.created_at)
Index("ix_users_deleted_created", User.deleted, User.created_at)
Index("ix_comments_memo_parent_created", Comment.memo_id, Comment.parent_id, Comment.created_at)
