from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence, Union
from urllib.parse import urlparse

from sqlalchemy import func
from sqlmodel import Session, select

from .dates import coerce_datetime, format_timestamp
from .models import Bookmark, Like, Media, Post

_HANDLE_PATTERN = re.compile(r"/(@[\w.-]+)")
_USERS_PATTERN = re.compile(r"/users/([\w.-]+)")


@dataclass(frozen=True)
class Thread:
    post: Post
    ancestors: list[Post] = field(default_factory=list)
    replies: list[Post] = field(default_factory=list)


@dataclass(frozen=True)
class YearOfPosts:
    year: int
    posts: list[Post]


@dataclass(frozen=True)
class TimelineMonth:
    month: int
    count: int
    latest_timestamp: Optional[int]


@dataclass
class TimelineYear:
    year: int
    count: int = 0
    months: list[TimelineMonth] = field(default_factory=list)


def post_to_dict(post: Post) -> dict[str, Any]:
    return {
        "account_id": post.account_id,
        "post_id": post.post_id,
        "kind": post.kind,
        "published_at": format_timestamp(coerce_datetime(post.published_at)),
        "visibility": post.visibility,
        "content_text": post.content_text,
        "in_reply_to": post.in_reply_to,
        "boosted_post_id": post.boosted_post_id,
        "original_url": post.original_url,
        "hashtags": list(post.hashtags or []),
        "media_ids": list(post.media_ids or []),
        "sensitive": post.sensitive,
        "summary": post.summary,
    }


def _newest_first(statement):
    return statement.order_by(Post.timestamp.is_(None), Post.timestamp.desc(), Post.post_id.desc())


def list_posts(
    session: Session,
    account_id: Optional[str] = None,
    limit: int = 20,
    offset: int = 0,
) -> list[Post]:
    statement = select(Post)
    if account_id:
        statement = statement.where(Post.account_id == account_id)
    statement = _newest_first(statement).offset(offset).limit(limit)
    return list(session.exec(statement).all())


def posts_between(
    session: Session,
    start: int,
    end: int,
    account_id: Optional[str] = None,
) -> list[Post]:
    """Posts whose epoch-ms timestamp falls in ``[start, end]``, oldest first."""
    statement = select(Post).where(Post.timestamp >= start, Post.timestamp <= end)
    if account_id:
        statement = statement.where(Post.account_id == account_id)
    statement = statement.order_by(Post.timestamp.asc(), Post.post_id.asc())
    return list(session.exec(statement).all())


def get_post(session: Session, account_id: str, post_id: str) -> Optional[Post]:
    return session.get(Post, (account_id, post_id))


def get_thread(session: Session, account_id: str, post_id: str) -> Optional[Thread]:
    post = get_post(session, account_id, post_id)
    if post is None:
        return None

    ancestors: list[Post] = []
    seen = {post.post_id}
    parent_id = post.in_reply_to
    while parent_id and parent_id not in seen:
        parent = get_post(session, account_id, parent_id)
        if parent is None:
            break
        seen.add(parent_id)
        ancestors.append(parent)
        parent_id = parent.in_reply_to
    ancestors.reverse()

    statement = (
        select(Post)
        .where(Post.account_id == account_id, Post.in_reply_to == post_id)
        .order_by(Post.timestamp.is_(None), Post.timestamp.asc(), Post.post_id.asc())
    )
    replies = [reply for reply in session.exec(statement).all() if reply.post_id != post_id]
    return Thread(post=post, ancestors=ancestors, replies=replies)


def posts_on_this_day(
    session: Session,
    month: int,
    day: int,
    account_id: Optional[str] = None,
) -> list[YearOfPosts]:
    statement = select(Post).where(
        Post.published_at.is_not(None),
        func.strftime("%m-%d", Post.published_at) == f"{month:02d}-{day:02d}",
    )
    if account_id:
        statement = statement.where(Post.account_id == account_id)
    statement = _newest_first(statement)

    groups: dict[int, list[Post]] = {}
    for post in session.exec(statement).all():
        published_at = coerce_datetime(post.published_at)
        if published_at is None:
            continue
        groups.setdefault(published_at.year, []).append(post)
    return [YearOfPosts(year=year, posts=groups[year]) for year in sorted(groups, reverse=True)]


def timeline_index(session: Session, account_id: Optional[str] = None) -> list[TimelineYear]:
    period = func.strftime("%Y-%m", Post.published_at)
    statement = select(period, func.count(), func.max(Post.timestamp)).where(
        Post.published_at.is_not(None)
    )
    if account_id:
        statement = statement.where(Post.account_id == account_id)
    statement = statement.group_by(period).order_by(period.desc())

    years: dict[int, TimelineYear] = {}
    for label, count, latest in session.exec(statement).all():
        if not label:
            continue
        year_text, month_text = label.split("-", 1)
        year = years.setdefault(int(year_text), TimelineYear(year=int(year_text)))
        year.count += int(count)
        year.months.append(
            TimelineMonth(month=int(month_text), count=int(count), latest_timestamp=latest)
        )
    return [years[year] for year in sorted(years, reverse=True)]


def media_for_post(session: Session, post: Post) -> list[Media]:
    media_ids: Sequence[str] = post.media_ids or []
    if not media_ids:
        return []
    statement = select(Media).where(
        Media.account_id == post.account_id, Media.media_id.in_(list(media_ids))
    )
    by_id = {media.media_id: media for media in session.exec(statement).all()}
    return [by_id[media_id] for media_id in media_ids if media_id in by_id]


def target_author(url: str) -> Optional[str]:
    """Best-effort ``@handle`` of the author of a liked or bookmarked post."""
    path = urlparse(url).path
    match = _HANDLE_PATTERN.search(path)
    if match:
        return match.group(1)
    match = _USERS_PATTERN.search(path)
    if match:
        return f"@{match.group(1)}"
    return None


def list_likes(
    session: Session,
    account_id: Optional[str] = None,
    limit: int = 20,
    offset: int = 0,
) -> list[Like]:
    statement = select(Like)
    if account_id:
        statement = statement.where(Like.account_id == account_id)
    statement = (
        statement.order_by(Like.liked_at.is_(None), Like.liked_at.desc(), Like.like_id.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(session.exec(statement).all())


def list_bookmarks(
    session: Session,
    account_id: Optional[str] = None,
    limit: int = 20,
    offset: int = 0,
) -> list[Bookmark]:
    statement = select(Bookmark)
    if account_id:
        statement = statement.where(Bookmark.account_id == account_id)
    statement = (
        statement.order_by(
            Bookmark.bookmarked_at.is_(None),
            Bookmark.bookmarked_at.desc(),
            Bookmark.bookmark_id.desc(),
        )
        .offset(offset)
        .limit(limit)
    )
    return list(session.exec(statement).all())


def interaction_to_dict(row: Union[Like, Bookmark]) -> dict[str, Any]:
    if isinstance(row, Like):
        interaction_id, saved_at = row.like_id, row.liked_at
    else:
        interaction_id, saved_at = row.bookmark_id, row.bookmarked_at
    return {
        "account_id": row.account_id,
        "id": interaction_id,
        "target_url": row.target_url,
        "target_author": target_author(row.target_url),
        "saved_at": format_timestamp(coerce_datetime(saved_at)),
    }
