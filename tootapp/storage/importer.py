from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Sequence, TypeVar, Union

from sqlmodel import Session, SQLModel

from .container import open_container
from .dates import format_timestamp, utcnow
from .db import get_default_db_url, get_engine, get_session, init_db
from .decoders import (
    ActorDraft,
    InteractionDraft,
    ProgressCallback,
    decode_actor,
    decode_bookmarks,
    decode_likes,
    decode_media,
    decode_posts,
)
from .models import (
    Account,
    ArchiveMetadata,
    Bookmark,
    ImportRecord,
    Like,
    Media,
    Post,
)
from .search import delete_account_fts, ensure_post_fts, sync_post_fts
from .store import ArchiveStore

logger = logging.getLogger(__name__)

DraftType = TypeVar("DraftType")

# Media rows carry their binary payload, so they are written in much smaller batches.
POST_BATCH_SIZE = 2000
MEDIA_BATCH_SIZE = 50
INTERACTION_BATCH_SIZE = 5000

STAGE_OPEN = "Opening archive"
STAGE_CLEAR = "Clearing previous data"
STAGE_SAVE_POSTS = "Saving posts"
STAGE_SAVE_MEDIA = "Saving media"
STAGE_SAVE_LIKES = "Saving likes"
STAGE_SAVE_BOOKMARKS = "Saving bookmarks"
STAGE_COUNTERS = "Updating statistics"
STAGE_DONE = "Done"


class ImportStrategy(str, Enum):
    REPLACE = "replace"
    MERGE = "merge"


@dataclass(frozen=True)
class AccountConflict:
    id: str
    username: str
    display_name: str


ConflictResolver = Callable[[AccountConflict], Union[ImportStrategy, str]]


@dataclass
class ImportSummary:
    account_id: str
    username: str
    strategy: ImportStrategy
    is_new_account: bool
    file_name: str
    file_size: int
    imported_at: datetime
    counts: dict[str, int] = field(default_factory=dict)
    skipped: dict[str, int] = field(default_factory=dict)
    totals: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "username": self.username,
            "strategy": self.strategy.value,
            "is_new_account": self.is_new_account,
            "file_name": self.file_name,
            "file_size": self.file_size,
            "imported_at": format_timestamp(self.imported_at),
            "counts": dict(self.counts),
            "skipped": dict(self.skipped),
            "totals": dict(self.totals),
        }


def load_archive(path: str | Path) -> bytes:
    return Path(path).read_bytes()


def _report(progress: Optional[ProgressCallback], stage: str, completed: int, total: int) -> None:
    if progress is not None:
        progress(stage, completed, total)


def _dedupe(drafts: Iterable[DraftType], key: Callable[[DraftType], Any]) -> tuple[list[DraftType], int]:
    """Keep the last draft per id and drop drafts without a usable id."""
    unique: dict[str, DraftType] = {}
    dropped = 0
    for draft in drafts:
        identifier = key(draft)
        if not isinstance(identifier, str) or not identifier.strip():
            dropped += 1
            continue
        unique.pop(identifier, None)
        unique[identifier] = draft
    return list(unique.values()), dropped


def _resolve_strategy(
    existing: Optional[Account], on_conflict: Optional[ConflictResolver]
) -> ImportStrategy:
    if existing is None:
        return ImportStrategy.REPLACE
    if on_conflict is None:
        return ImportStrategy.REPLACE
    choice = on_conflict(
        AccountConflict(
            id=existing.account_id,
            username=existing.username,
            display_name=existing.display_name,
        )
    )
    try:
        return ImportStrategy(choice)
    except ValueError as exc:
        raise ValueError(f"Unknown import strategy: {choice!r}. Use 'replace' or 'merge'.") from exc


def _account_row(
    actor: ActorDraft,
    *,
    imported_at: datetime,
    last_updated_at: datetime,
    counters: tuple[int, int, int],
) -> Account:
    posts_count, likes_count, bookmarks_count = counters
    return Account(
        account_id=actor.id,
        username=actor.username,
        display_name=actor.display_name,
        summary=actor.summary,
        avatar=actor.avatar,
        avatar_mime_type=actor.avatar_mime_type,
        header=actor.header,
        header_mime_type=actor.header_mime_type,
        profile_fields=list(actor.profile_fields),
        created_at=actor.created_at,
        imported_at=imported_at,
        last_updated_at=last_updated_at,
        posts_count=posts_count,
        likes_count=likes_count,
        bookmarks_count=bookmarks_count,
    )


def _like_row(account_id: str, draft: InteractionDraft) -> Like:
    return Like(
        account_id=account_id,
        like_id=draft.id,
        activity_id=draft.activity_id,
        target_url=draft.target_url,
        liked_at=draft.published_at,
    )


def _bookmark_row(account_id: str, draft: InteractionDraft) -> Bookmark:
    return Bookmark(
        account_id=account_id,
        bookmark_id=draft.id,
        activity_id=draft.activity_id,
        target_url=draft.target_url,
        bookmarked_at=draft.published_at,
    )


def _write_batches(
    session: Session,
    store: ArchiveStore,
    rows: Sequence[SQLModel],
    *,
    batch_size: int,
    stage: str,
    progress: Optional[ProgressCallback],
    after_batch: Optional[Callable[[Sequence[SQLModel]], None]] = None,
) -> None:
    total = len(rows)
    for start in range(0, total, batch_size):
        batch = rows[start : start + batch_size]
        store.bulk_upsert(batch)
        if after_batch is not None:
            after_batch(batch)
        session.commit()
        _report(progress, stage, start + len(batch), total)


def import_archive_data(
    data: bytes,
    file_name: str,
    session: Session,
    *,
    on_conflict: Optional[ConflictResolver] = None,
    on_progress: Optional[ProgressCallback] = None,
    post_batch_size: int = POST_BATCH_SIZE,
    media_batch_size: int = MEDIA_BATCH_SIZE,
    interaction_batch_size: int = INTERACTION_BATCH_SIZE,
) -> ImportSummary:
    _report(on_progress, STAGE_OPEN, 0, 1)
    container = open_container(data, file_name)
    _report(on_progress, STAGE_OPEN, 1, 1)

    actor = decode_actor(container, on_progress)
    store = ArchiveStore(session)
    existing = store.get_account(actor.id)
    strategy = _resolve_strategy(existing, on_conflict)
    is_update = existing is not None
    if is_update:
        logger.info("Account %s (%s) already exists; applying %s", actor.username, actor.id, strategy.value)
    else:
        logger.info("New account %s (%s); starting import", actor.username, actor.id)

    # Nothing is written until every document has been decoded.
    post_result = decode_posts(container, on_progress)
    like_result = decode_likes(container, on_progress)
    bookmark_result = decode_bookmarks(container, on_progress)
    media_drafts = decode_media(container, on_progress)

    posts, dropped_posts = _dedupe(post_result.posts, lambda draft: draft.post_id)
    likes, dropped_likes = _dedupe(like_result.items, lambda draft: draft.id)
    bookmarks, dropped_bookmarks = _dedupe(bookmark_result.items, lambda draft: draft.id)
    media, dropped_media = _dedupe(media_drafts, lambda draft: draft.media_id)
    logger.info(
        "Decoded %s posts (%s in outbox, %s skipped, %s duplicates or invalid ids)",
        len(posts),
        post_result.total,
        post_result.skipped,
        len(post_result.posts) - len(posts),
    )

    now = utcnow()
    if existing is not None:
        imported_at = existing.imported_at
        previous_counters = (existing.posts_count, existing.likes_count, existing.bookmarks_count)
    else:
        imported_at = now
        previous_counters = (0, 0, 0)

    ensure_post_fts(session)
    if is_update and strategy is ImportStrategy.REPLACE:
        _report(on_progress, STAGE_CLEAR, 0, 1)
        delete_account_fts(session, account_id=actor.id)
        for model in (Post, Media, Like, Bookmark):
            store.delete_by_account(model, actor.id)
        _report(on_progress, STAGE_CLEAR, 1, 1)

    if strategy is ImportStrategy.REPLACE:
        counters = (len(posts), len(likes), len(bookmarks))
    else:
        counters = previous_counters
    store.upsert(
        _account_row(actor, imported_at=imported_at, last_updated_at=now, counters=counters)
    )
    session.commit()

    account_id = actor.id
    _write_batches(
        session,
        store,
        [Post(account_id=account_id, **asdict(draft)) for draft in posts],
        batch_size=post_batch_size,
        stage=STAGE_SAVE_POSTS,
        progress=on_progress,
        after_batch=lambda batch: sync_post_fts(session, batch),
    )
    _write_batches(
        session,
        store,
        [Media(account_id=account_id, **asdict(draft)) for draft in media],
        batch_size=media_batch_size,
        stage=STAGE_SAVE_MEDIA,
        progress=on_progress,
    )
    _write_batches(
        session,
        store,
        [_like_row(account_id, draft) for draft in likes],
        batch_size=interaction_batch_size,
        stage=STAGE_SAVE_LIKES,
        progress=on_progress,
    )
    _write_batches(
        session,
        store,
        [_bookmark_row(account_id, draft) for draft in bookmarks],
        batch_size=interaction_batch_size,
        stage=STAGE_SAVE_BOOKMARKS,
        progress=on_progress,
    )

    totals = store.count_entities(account_id)
    if strategy is ImportStrategy.MERGE:
        # Upserts make the previous counters meaningless; count what is stored.
        _report(on_progress, STAGE_COUNTERS, 0, 1)
        account = store.get_account(account_id)
        if account is not None:
            account.posts_count = totals["posts"]
            account.likes_count = totals["likes"]
            account.bookmarks_count = totals["bookmarks"]
            session.add(account)
        _report(on_progress, STAGE_COUNTERS, 1, 1)

    counts = {
        "posts": len(posts),
        "likes": len(likes),
        "bookmarks": len(bookmarks),
        "media": len(media),
    }
    store.upsert(
        ArchiveMetadata(
            account_id=account_id,
            uploaded_at=now,
            total_posts=totals["posts"],
            total_likes=totals["likes"],
            total_bookmarks=totals["bookmarks"],
            total_media=totals["media"],
            original_filename=file_name,
            file_size=len(data),
        )
    )
    session.add(
        ImportRecord(
            account_id=account_id,
            imported_at=now,
            file_name=file_name,
            file_size=len(data),
            posts=counts["posts"],
            likes=counts["likes"],
            bookmarks=counts["bookmarks"],
            media=counts["media"],
            strategy=strategy.value,
        )
    )
    session.commit()
    _report(on_progress, STAGE_DONE, 1, 1)

    return ImportSummary(
        account_id=account_id,
        username=actor.username,
        strategy=strategy,
        is_new_account=not is_update,
        file_name=file_name,
        file_size=len(data),
        imported_at=now,
        counts=counts,
        skipped={
            "posts": post_result.skipped,
            "likes": like_result.skipped,
            "bookmarks": bookmark_result.skipped,
            "invalid_ids": dropped_posts + dropped_likes + dropped_bookmarks + dropped_media,
        },
        totals=totals,
    )


def import_archive(
    db_url: Optional[str],
    path: str | Path,
    *,
    on_conflict: Optional[ConflictResolver] = None,
    on_progress: Optional[ProgressCallback] = None,
    post_batch_size: int = POST_BATCH_SIZE,
    media_batch_size: int = MEDIA_BATCH_SIZE,
    interaction_batch_size: int = INTERACTION_BATCH_SIZE,
) -> ImportSummary:
    if not db_url:
        db_url = get_default_db_url()
    path = Path(path)
    data = load_archive(path)

    engine = get_engine(db_url)
    init_db(engine)
    with get_session(engine) as session:
        return import_archive_data(
            data,
            path.name,
            session,
            on_conflict=on_conflict,
            on_progress=on_progress,
            post_batch_size=post_batch_size,
            media_batch_size=media_batch_size,
            interaction_batch_size=interaction_batch_size,
        )
