from __future__ import annotations

import logging
from typing import Iterable, Optional, Sequence, TypeVar

from sqlalchemy import delete, func
from sqlmodel import Session, SQLModel, select

from .models import (
    OWNED_MODELS,
    Account,
    ArchiveMetadata,
    Bookmark,
    ImportRecord,
    Like,
    Media,
    Post,
)
from .search import delete_account_fts, ensure_post_fts

logger = logging.getLogger(__name__)

ModelType = TypeVar("ModelType", bound=SQLModel)


class ArchiveStore:
    """Persistence contract the importer and the read side rely on.

    Every owned table supports get, bulk upsert, delete-by-account and
    count-by-account. Callers decide when to commit.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def get_account(self, account_id: str) -> Optional[Account]:
        return self.session.get(Account, account_id)

    def has_account(self, account_id: str) -> bool:
        return self.get_account(account_id) is not None

    def list_accounts(self) -> list[Account]:
        statement = select(Account).order_by(Account.last_updated_at.desc())
        return list(self.session.exec(statement).all())

    def upsert(self, row: ModelType) -> ModelType:
        return self.session.merge(row)

    def bulk_upsert(self, rows: Iterable[SQLModel]) -> int:
        count = 0
        for row in rows:
            self.session.merge(row)
            count += 1
        return count

    def delete_by_account(self, model: type[SQLModel], account_id: str) -> None:
        # "fetch" also evicts matching rows that are expired in the identity map.
        statement = (
            delete(model)
            .where(model.account_id == account_id)
            .execution_options(synchronize_session="fetch")
        )
        self.session.exec(statement)

    def count_by_account(self, model: type[SQLModel], account_id: str) -> int:
        statement = select(func.count()).select_from(model).where(model.account_id == account_id)
        return int(self.session.exec(statement).one())

    def delete_account(self, account_id: str) -> bool:
        account = self.get_account(account_id)
        if account is None:
            return False
        ensure_post_fts(self.session)
        delete_account_fts(self.session, account_id=account_id)
        for model in OWNED_MODELS:
            self.delete_by_account(model, account_id)
        self.session.delete(account)
        self.session.commit()
        logger.info("Deleted account %s and all of its data", account_id)
        return True

    def clear_all(self) -> None:
        for account in self.list_accounts():
            self.delete_account(account.account_id)

    def import_history(self, account_id: str) -> Sequence[ImportRecord]:
        statement = (
            select(ImportRecord)
            .where(ImportRecord.account_id == account_id)
            .order_by(ImportRecord.imported_at.desc(), ImportRecord.id.desc())
        )
        return self.session.exec(statement).all()

    def get_metadata(self, account_id: str) -> Optional[ArchiveMetadata]:
        return self.session.get(ArchiveMetadata, account_id)

    def count_entities(self, account_id: str) -> dict[str, int]:
        return {
            "posts": self.count_by_account(Post, account_id),
            "likes": self.count_by_account(Like, account_id),
            "bookmarks": self.count_by_account(Bookmark, account_id),
            "media": self.count_by_account(Media, account_id),
        }
