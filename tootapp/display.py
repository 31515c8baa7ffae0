"""Display URLs for stored binaries.

The store keeps avatars, headers and media as raw bytes. Anything that renders
them needs a URL, and rebuilding a base64 payload on every read is wasteful, so
the presentation layer owns one ``DisplayUrlCache`` and clears it when an
account is re-imported or deleted. Ingestion never touches this module.
"""

from __future__ import annotations

import base64
import logging
from typing import Callable, Optional

from .storage.models import Account, Media

logger = logging.getLogger(__name__)

CacheKey = tuple[str, str, str]


def build_data_url(data: bytes, mime_type: Optional[str]) -> str:
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{mime_type or 'application/octet-stream'};base64,{encoded}"


class DisplayUrlCache:
    def __init__(self) -> None:
        self._urls: dict[CacheKey, str] = {}

    def get(self, key: CacheKey, loader: Callable[[], Optional[tuple[bytes, Optional[str]]]]) -> Optional[str]:
        """Return the cached URL for ``key``, building it from ``loader`` on a miss.

        ``key`` is ``(entity, account_id, entity_id)``. ``loader`` returns
        ``(data, mime_type)`` or ``None`` when there is nothing to show; misses
        that produce nothing are not cached.
        """
        cached = self._urls.get(key)
        if cached is not None:
            return cached
        loaded = loader()
        if loaded is None:
            return None
        data, mime_type = loaded
        if not data:
            return None
        url = build_data_url(data, mime_type)
        self._urls[key] = url
        return url

    def invalidate(self, key: CacheKey) -> bool:
        return self._urls.pop(key, None) is not None

    def invalidate_account(self, account_id: str) -> int:
        stale = [key for key in self._urls if key[1] == account_id]
        for key in stale:
            del self._urls[key]
        if stale:
            logger.debug("Dropped %s cached display URLs for %s", len(stale), account_id)
        return len(stale)

    def clear(self) -> None:
        self._urls.clear()

    def __len__(self) -> int:
        return len(self._urls)

    def __contains__(self, key: object) -> bool:
        return key in self._urls


def account_image_urls(cache: DisplayUrlCache, account: Account) -> dict[str, Optional[str]]:
    avatar = cache.get(
        ("avatar", account.account_id, account.account_id),
        lambda: (account.avatar, account.avatar_mime_type) if account.avatar else None,
    )
    header = cache.get(
        ("header", account.account_id, account.account_id),
        lambda: (account.header, account.header_mime_type) if account.header else None,
    )
    return {"avatar": avatar, "header": header}


def media_url(cache: DisplayUrlCache, media: Media) -> Optional[str]:
    return cache.get(
        ("media", media.account_id, media.media_id),
        lambda: (media.data, media.mime_type),
    )
