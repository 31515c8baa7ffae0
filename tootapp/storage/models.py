from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, Column, ForeignKey, Index, LargeBinary, String
from sqlmodel import Field, SQLModel

from .dates import coerce_datetime, format_timestamp

POST_KIND_ORIGINAL = "original"
POST_KIND_BOOST = "boost"

VISIBILITY_PUBLIC = "public"
VISIBILITY_UNLISTED = "unlisted"
VISIBILITY_PRIVATE = "private"
VISIBILITY_DIRECT = "direct"


def _account_column(*, primary_key: bool = False) -> Column:
    return Column(
        "account_id",
        String,
        ForeignKey("account.account_id", ondelete="CASCADE"),
        primary_key=primary_key,
        nullable=False,
        index=not primary_key,
    )


class Account(SQLModel, table=True):
    __tablename__ = "account"

    account_id: str = Field(primary_key=True)
    username: str = Field(index=True)
    display_name: str = ""
    summary: str = ""
    avatar: Optional[bytes] = Field(default=None, sa_column=Column(LargeBinary))
    avatar_mime_type: Optional[str] = None
    header: Optional[bytes] = Field(default=None, sa_column=Column(LargeBinary))
    header_mime_type: Optional[str] = None
    profile_fields: list[dict[str, str]] = Field(
        default_factory=list, sa_column=Column(JSON)
    )
    created_at: Optional[datetime] = None
    imported_at: datetime
    last_updated_at: datetime = Field(index=True)
    posts_count: int = 0
    likes_count: int = 0
    bookmarks_count: int = 0


class Post(SQLModel, table=True):
    __tablename__ = "post"
    __table_args__ = (
        Index("ix_post_account_id_timestamp", "account_id", "timestamp"),
    )

    account_id: str = Field(sa_column=_account_column(primary_key=True))
    post_id: str = Field(primary_key=True)
    activity_id: str = ""
    kind: str = Field(default=POST_KIND_ORIGINAL, index=True)
    content: str = ""
    content_text: str = ""
    published_at: Optional[datetime] = None
    timestamp: Optional[int] = Field(default=None, index=True)
    hashtags: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    mentions: list[dict[str, str]] = Field(default_factory=list, sa_column=Column(JSON))
    emojis: list[dict[str, str]] = Field(default_factory=list, sa_column=Column(JSON))
    media_ids: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    in_reply_to: Optional[str] = Field(default=None, index=True)
    sensitive: bool = False
    visibility: str = Field(default=VISIBILITY_PUBLIC, index=True)
    summary: Optional[str] = None
    boosted_post_id: Optional[str] = None
    original_url: Optional[str] = None


class Media(SQLModel, table=True):
    __tablename__ = "media"

    account_id: str = Field(sa_column=_account_column(primary_key=True))
    media_id: str = Field(primary_key=True)
    kind: str = Field(default="unknown", index=True)
    mime_type: str
    data: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
    size: int = 0
    width: Optional[int] = None
    height: Optional[int] = None


class Like(SQLModel, table=True):
    __tablename__ = "like"
    __table_args__ = (
        Index("ix_like_account_id_liked_at", "account_id", "liked_at"),
    )

    account_id: str = Field(sa_column=_account_column(primary_key=True))
    like_id: str = Field(primary_key=True)
    activity_id: str = ""
    target_url: str = Field(index=True)
    liked_at: Optional[datetime] = None


class Bookmark(SQLModel, table=True):
    __tablename__ = "bookmark"
    __table_args__ = (
        Index("ix_bookmark_account_id_bookmarked_at", "account_id", "bookmarked_at"),
    )

    account_id: str = Field(sa_column=_account_column(primary_key=True))
    bookmark_id: str = Field(primary_key=True)
    activity_id: str = ""
    target_url: str = Field(index=True)
    bookmarked_at: Optional[datetime] = None


class ImportRecord(SQLModel, table=True):
    __tablename__ = "import_record"

    id: Optional[int] = Field(default=None, primary_key=True)
    account_id: str = Field(sa_column=_account_column())
    imported_at: datetime
    file_name: str
    file_size: int
    posts: int = 0
    likes: int = 0
    bookmarks: int = 0
    media: int = 0
    strategy: str


class ArchiveMetadata(SQLModel, table=True):
    __tablename__ = "archive_metadata"

    account_id: str = Field(sa_column=_account_column(primary_key=True))
    uploaded_at: datetime
    total_posts: int = 0
    total_likes: int = 0
    total_bookmarks: int = 0
    total_media: int = 0
    original_filename: str
    file_size: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "uploaded_at": format_timestamp(coerce_datetime(self.uploaded_at)),
            "total_posts": self.total_posts,
            "total_likes": self.total_likes,
            "total_bookmarks": self.total_bookmarks,
            "total_media": self.total_media,
            "original_filename": self.original_filename,
            "file_size": self.file_size,
        }


# Every table that carries an account_id and is owned by an account.
OWNED_MODELS: tuple[type[SQLModel], ...] = (
    Post,
    Media,
    Like,
    Bookmark,
    ImportRecord,
    ArchiveMetadata,
)
