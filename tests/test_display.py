from __future__ import annotations

import base64
import unittest
from datetime import datetime, timezone

from tootapp.display import (
    DisplayUrlCache,
    account_image_urls,
    build_data_url,
    media_url,
)
from tootapp.storage.models import Account, Media


def _account(account_id: str, avatar: bytes | None = b"avatar") -> Account:
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    return Account(
        account_id=account_id,
        username="bob",
        avatar=avatar,
        avatar_mime_type="image/png" if avatar else None,
        imported_at=now,
        last_updated_at=now,
    )


class TestDisplayUrlCache(unittest.TestCase):
    def test_build_data_url(self) -> None:
        url = build_data_url(b"abc", "image/png")
        self.assertEqual(url, "data:image/png;base64," + base64.b64encode(b"abc").decode("ascii"))
        self.assertTrue(build_data_url(b"abc", None).startswith("data:application/octet-stream;"))

    def test_get_caches_after_first_load(self) -> None:
        cache = DisplayUrlCache()
        calls = []

        def loader():
            calls.append(1)
            return b"bytes", "image/gif"

        first = cache.get(("media", "acct", "a.gif"), loader)
        second = cache.get(("media", "acct", "a.gif"), loader)

        self.assertEqual(first, second)
        self.assertEqual(len(calls), 1)
        self.assertEqual(len(cache), 1)

    def test_empty_loads_are_not_cached(self) -> None:
        cache = DisplayUrlCache()
        self.assertIsNone(cache.get(("avatar", "acct", "acct"), lambda: None))
        self.assertIsNone(cache.get(("avatar", "acct", "acct"), lambda: (b"", "image/png")))
        self.assertEqual(len(cache), 0)

    def test_account_and_media_helpers(self) -> None:
        cache = DisplayUrlCache()
        urls = account_image_urls(cache, _account("https://x.example/users/bob"))
        media = Media(
            account_id="https://x.example/users/bob",
            media_id="cat.png",
            kind="image",
            mime_type="image/png",
            data=b"cat",
            size=3,
        )

        self.assertTrue(urls["avatar"].startswith("data:image/png;base64,"))
        self.assertIsNone(urls["header"])
        self.assertTrue(media_url(cache, media).startswith("data:image/png;base64,"))
        self.assertEqual(len(cache), 2)

    def test_invalidation(self) -> None:
        cache = DisplayUrlCache()
        account_image_urls(cache, _account("https://x.example/users/bob"))
        account_image_urls(cache, _account("https://z.example/users/cy"))

        self.assertTrue(cache.invalidate(("avatar", "https://z.example/users/cy", "https://z.example/users/cy")))
        self.assertFalse(cache.invalidate(("avatar", "missing", "missing")))
        self.assertEqual(cache.invalidate_account("https://x.example/users/bob"), 1)
        self.assertEqual(len(cache), 0)

        account_image_urls(cache, _account("https://x.example/users/bob"))
        cache.clear()
        self.assertEqual(len(cache), 0)
