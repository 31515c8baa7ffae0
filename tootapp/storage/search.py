from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Any, Iterable, Mapping, Optional

from sqlalchemy import text
from sqlmodel import Session, select

from .dates import coerce_datetime, format_timestamp, to_epoch_ms
from .db import get_default_db_url, get_engine, get_session, init_db
from .models import Account, Post

# Rows are keyed by (account_id, post_id) so the same status id can exist under
# two imported accounts without colliding.
_POST_FTS_DDL = """
CREATE VIRTUAL TABLE IF NOT EXISTS post_fts USING fts5(
  post_id UNINDEXED,
  account_id UNINDEXED,
  content_text,
  tokenize = 'unicode61'
);
"""

_FTS_DELETE_POST = text(
    "DELETE FROM post_fts WHERE account_id = :account_id AND post_id = :post_id"
)
_FTS_INSERT_POST = text(
    "INSERT INTO post_fts(post_id, account_id, content_text) "
    "VALUES(:post_id, :account_id, :content_text)"
)
_FTS_DELETE_ACCOUNT = text("DELETE FROM post_fts WHERE account_id = :account_id")

_SEARCH_SELECT = """
SELECT p.post_id, p.published_at, p.content_text, p.kind, p.visibility,
       a.account_id, a.username, a.display_name,
       bm25(post_fts) AS rank
FROM post_fts
JOIN post p ON p.account_id = post_fts.account_id AND p.post_id = post_fts.post_id
JOIN account a ON a.account_id = p.account_id
"""


@dataclass(frozen=True)
class SearchOwner:
    account_id: str
    username: str
    display_name: str


@dataclass(frozen=True)
class SearchResult:
    post_id: str
    published_at: Optional[datetime]
    content_text: str
    kind: str
    visibility: str
    owner: SearchOwner
    rank: float

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "SearchResult":
        return cls(
            post_id=row["post_id"],
            published_at=coerce_datetime(row["published_at"]),
            content_text=row["content_text"],
            kind=row["kind"],
            visibility=row["visibility"],
            owner=SearchOwner(
                account_id=row["account_id"],
                username=row["username"],
                display_name=row["display_name"],
            ),
            rank=float(row["rank"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "post_id": self.post_id,
            "published_at": format_timestamp(self.published_at),
            "content_text": self.content_text,
            "kind": self.kind,
            "visibility": self.visibility,
            "owner": {
                "account_id": self.owner.account_id,
                "username": self.owner.username,
                "display_name": self.owner.display_name,
            },
        }


def ensure_post_fts(session: Session) -> None:
    session.exec(text(_POST_FTS_DDL))


def sync_post_fts(session: Session, posts: Iterable[Post]) -> None:
    """Replace the index rows of ``posts`` with their current text."""
    rows = [
        {"account_id": post.account_id, "post_id": post.post_id, "content_text": post.content_text}
        for post in posts
    ]
    if not rows:
        return
    keys = [{"account_id": row["account_id"], "post_id": row["post_id"]} for row in rows]
    connection = session.connection()
    connection.execute(_FTS_DELETE_POST, keys)
    connection.execute(_FTS_INSERT_POST, rows)


def delete_account_fts(session: Session, *, account_id: str) -> None:
    session.exec(_FTS_DELETE_ACCOUNT.bindparams(account_id=account_id))


def search_posts(
    session: Session,
    *,
    query: str,
    account: Optional[str] = None,
    since: Optional[date] = None,
    until: Optional[date] = None,
    limit: int = 20,
) -> list[SearchResult]:
    """Full-text search over stored posts, best bm25 match first.

    ``account`` accepts an actor URI or a username with or without ``@``; an
    account that is not stored yields no results. ``since`` and ``until`` are
    inclusive UTC calendar days compared against the epoch-ms post timestamp.
    """
    if not query.strip():
        return []
    ensure_post_fts(session)

    conditions = ["post_fts MATCH :query"]
    params: dict[str, Any] = {"query": query, "limit": limit}
    if account:
        account_id = _lookup_account_id(session, account)
        if account_id is None:
            return []
        conditions.append("p.account_id = :account_id")
        params["account_id"] = account_id
    if since is not None:
        conditions.append("p.timestamp >= :since")
        params["since"] = _day_edge_ms(since, time.min)
    if until is not None:
        conditions.append("p.timestamp <= :until")
        params["until"] = _day_edge_ms(until, time.max)

    sql = (
        f"{_SEARCH_SELECT}WHERE {' AND '.join(conditions)}\n"
        "ORDER BY rank ASC, p.timestamp IS NULL, p.timestamp DESC\n"
        "LIMIT :limit"
    )
    rows = session.exec(text(sql).bindparams(**params)).mappings().all()
    return [SearchResult.from_row(row) for row in rows]


def search_posts_in_db(
    db_url: Optional[str],
    *,
    query: str,
    account: Optional[str] = None,
    since: Optional[date] = None,
    until: Optional[date] = None,
    limit: int = 20,
) -> list[SearchResult]:
    engine = get_engine(db_url or get_default_db_url())
    init_db(engine)
    with get_session(engine) as session:
        return search_posts(
            session, query=query, account=account, since=since, until=until, limit=limit
        )


def search_results_payload(results: list[SearchResult]) -> dict[str, Any]:
    return {"count": len(results), "results": [result.to_dict() for result in results]}


def _lookup_account_id(session: Session, account: str) -> Optional[str]:
    candidate = account.strip()
    if session.get(Account, candidate) is not None:
        return candidate
    statement = select(Account.account_id).where(Account.username == candidate.lstrip("@"))
    return session.exec(statement.limit(1)).first()


def _day_edge_ms(day: date, edge: time) -> Optional[int]:
    return to_epoch_ms(datetime.combine(day, edge, tzinfo=timezone.utc))
