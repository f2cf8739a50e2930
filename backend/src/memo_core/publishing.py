"""
Publishing workflow: records with media.

Media is named after the record id, so the record is inserted first, the
media uploaded second and the URL written back under the version protocol.
The store and the media storage are not rolled back together: a failed
upload leaves the record in place and raises MediaAttachError carrying it
(RejectedMediaError, also an UnapprovedFileTypeError, when the format was
refused).
"""
import logging
from typing import Optional

import httpx
from sqlalchemy.orm import Session

from .config import settings
from .errors import (
    ConcurrentUpdateError, MediaAttachError, MemoCoreError, RejectedMediaError,
    UnapprovedFileTypeError, ValidationFailure,
)
from .memos import MemoRepository
from .models import Comment, Memo, MemoType, User
from .schemas import CommentChanges, MemoChanges, NewComment, NewMemo, UserChanges
from .social import SocialRepository
from .storage import AVATAR, MediaStorage
from .users import UserRepository


logger = logging.getLogger(__name__)

# Failures that leave a record without its media
ATTACH_ERRORS = (MemoCoreError, httpx.HTTPError)


def _check_media(media_type: str, media: Optional[bytes]) -> None:
    if media_type == MemoType.TEXT.value:
        if media:
            raise ValidationFailure("text content cannot carry media", {"type": media_type})
    elif not media:
        raise ValidationFailure(f"{media_type} content requires media", {"type": media_type})


def _attach_failed(record, exc: Exception) -> MediaAttachError:
    if isinstance(exc, UnapprovedFileTypeError):
        return RejectedMediaError(record)
    return MediaAttachError(record)


class MediaPublisher:
    """Creates memos and comments together with their media."""

    def __init__(self, db: Session, storage: MediaStorage):
        self.db = db
        self.storage = storage
        self.users = UserRepository(db)
        self.memos = MemoRepository(db)
        self.social = SocialRepository(db)

    async def publish_memo(self, owner_id: str, new_memo: NewMemo, media: Optional[bytes] = None) -> Memo:
        """
        Create a memo and attach its media.

        Text memos are a plain insert. Raises MediaAttachError (with the
        stored memo) if the upload or the URL write fails.
        """
        _check_media(new_memo.type, media)
        memo = self.memos.create(owner_id, new_memo)
        if not media:
            return memo

        version = memo.version
        try:
            url = await self.storage.upload(memo.id, media, memo.type)
            return self.memos.update(
                memo.id, version, MemoChanges(resource_url=url), timeout=settings.upload_timeout_seconds
            )
        except ATTACH_ERRORS as exc:
            logger.error(f"Memo {memo.id} stored without media: {exc}")
            raise _attach_failed(self.memos.store.find(memo.id) or memo, exc) from exc

    async def publish_comment(self, owner_id: str, new_comment: NewComment, media: Optional[bytes] = None) -> Comment:
        """Create a comment (or reply) and attach its media."""
        _check_media(new_comment.type, media)
        comment = self.social.create_comment(owner_id, new_comment)
        if not media:
            return comment

        version = comment.version
        try:
            url = await self.storage.upload(comment.id, media, comment.type)
            return self.social.update_comment(
                comment.id, version, CommentChanges(resource_url=url), timeout=settings.upload_timeout_seconds
            )
        except ATTACH_ERRORS as exc:
            logger.error(f"Comment {comment.id} stored without media: {exc}")
            raise _attach_failed(self.social.comments.find(comment.id) or comment, exc) from exc

    async def replace_avatar(self, user_id: str, version: int, data: bytes) -> User:
        """
        Upload a new avatar and store its URL.

        The version is checked before uploading so a stale caller does not
        overwrite the stored image. Storage errors propagate unchanged.
        """
        self._current_user(user_id, version)
        url = await self.storage.upload(user_id, data, AVATAR)
        return self.users.update(
            user_id, version, UserChanges(avatar_url=url), timeout=settings.upload_timeout_seconds
        )

    async def remove_avatar(self, user_id: str, version: int) -> User:
        """
        Delete the stored avatar and clear `avatar_url`.

        The version is checked before touching storage. If the media delete
        fails the URL is left as it was and the storage error propagates.
        """
        user = self._current_user(user_id, version)
        if user.avatar_url:
            await self.storage.delete(user_id, AVATAR)
        return self.users.update(user_id, version, UserChanges(avatar_url=""))

    def _current_user(self, user_id: str, version: int) -> User:
        user = self.users.get_by_id(user_id)
        if user.version != version:
            raise ConcurrentUpdateError(
                context={"table": "users", "id": user_id, "expected_version": version}
            )
        return user

    async def remove_memo(self, memo_id: str, version: int) -> Memo:
        """
        Soft-delete a memo, then drop its media.

        Media removal is best effort: the memo stays deleted if it fails.
        """
        memo = self.memos.delete(memo_id, version)
        if memo.type == MemoType.TEXT.value or not memo.resource_url:
            return memo

        try:
            await self.storage.delete(memo.id, memo.type)
        except ATTACH_ERRORS as exc:
            logger.warning(f"Could not delete media for memo {memo.id}: {exc}")
        return memo
