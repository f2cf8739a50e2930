"""Input schemas for repository writes.

`New*` schemas carry the fields accepted on insert; `*Changes` schemas carry
the fields a versioned update may touch. Derived counters, versions and
deletion flags are deliberately absent, and unknown fields are rejected.
"""
from typing import ClassVar, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .models import MemoType


class _Input(BaseModel):
    model_config = ConfigDict(extra="forbid", use_enum_values=True, validate_default=True)

    def changes(self) -> dict:
        """Only the fields the caller actually set."""
        return self.model_dump(exclude_unset=True)

    def row(self) -> dict:
        """Every field, defaults included."""
        return self.model_dump()


class _Changes(_Input):
    """Partial update. Fields in `not_null` may be omitted but never set to None."""
    not_null: ClassVar[frozenset] = frozenset()

    @model_validator(mode="after")
    def _reject_explicit_null(self):
        for name in sorted(self.model_fields_set & self.not_null):
            if getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        return self


class NewUser(_Input):
    """Sign-up details. The password arrives already hashed."""
    username: str = Field(min_length=1, max_length=50)
    email: str = Field(min_length=3, max_length=255)
    first_name: str = ""
    last_name: str = ""
    password_hash: str = Field(min_length=1)


class UserChanges(_Changes):
    not_null: ClassVar[frozenset] = frozenset({
        "username", "email", "first_name", "last_name", "password_hash",
        "avatar_url", "about", "status", "is_activated",
    })

    username: Optional[str] = Field(default=None, min_length=1, max_length=50)
    email: Optional[str] = Field(default=None, min_length=3, max_length=255)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    password_hash: Optional[str] = None
    avatar_url: Optional[str] = None
    about: Optional[str] = None
    status: Optional[str] = None
    is_activated: Optional[bool] = None


class NewMemo(_Input):
    type: MemoType = MemoType.TEXT
    content: str = ""
    caption: Optional[str] = None
    transcript: Optional[str] = None


class MemoChanges(_Changes):
    not_null: ClassVar[frozenset] = frozenset({"content", "resource_url"})

    content: Optional[str] = None
    caption: Optional[str] = None
    transcript: Optional[str] = None
    resource_url: Optional[str] = None


class NewComment(_Input):
    memo_id: str
    parent_id: Optional[str] = None
    type: MemoType = MemoType.TEXT
    content: str = ""
    caption: Optional[str] = None
    transcript: Optional[str] = None


class CommentChanges(_Changes):
    not_null: ClassVar[frozenset] = frozenset({"content", "resource_url"})

    content: Optional[str] = None
    caption: Optional[str] = None
    transcript: Optional[str] = None
    resource_url: Optional[str] = None
