"""Decoders that turn a Mastodon export into in-memory entity drafts.

Every function here is pure with respect to the database: it reads from an
``ArchiveContainer`` and returns drafts that do not yet carry an account id.
The importer attaches the owning account once the actor has been decoded.

Required documents (``actor.json``, ``outbox.json``) raise when missing or
unreadable. Optional documents (``likes.json``, ``bookmarks.json``) degrade to
empty results. Individual malformed records are skipped and counted.
"""

from __future__ import annotations

import hashlib
import io
import json
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from bs4 import BeautifulSoup
from PIL import Image, UnidentifiedImageError

from .container import ArchiveContainer, ArchiveEntry, InvalidArchiveError
from .dates import coerce_datetime, to_epoch_ms
from .models import (
    POST_KIND_BOOST,
    POST_KIND_ORIGINAL,
    VISIBILITY_DIRECT,
    VISIBILITY_PRIVATE,
    VISIBILITY_PUBLIC,
    VISIBILITY_UNLISTED,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, int, int], None]

PUBLIC_COLLECTION = "https://www.w3.org/ns/activitystreams#Public"
_PUBLIC_ADDRESSES = {PUBLIC_COLLECTION, "as:Public", "Public"}

ACTOR_DOCUMENT = "actor.json"
OUTBOX_DOCUMENT = "outbox.json"
LIKES_DOCUMENT = "likes.json"
BOOKMARKS_DOCUMENT = "bookmarks.json"

PROGRESS_INTERVAL = 100
MEDIA_DECODE_BATCH = 20
_MEDIA_PATTERN = re.compile(r"(?:^|/)media_attachments/")

STAGE_ACTOR = "Parsing profile"
STAGE_POSTS = "Parsing posts"
STAGE_MEDIA = "Parsing media"
STAGE_LIKES = "Parsing likes"
STAGE_BOOKMARKS = "Parsing bookmarks"

DEFAULT_MIME_TYPE = "application/octet-stream"

_IMAGE_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "svg": "image/svg+xml",
    "bmp": "image/bmp",
    "ico": "image/x-icon",
}
_VIDEO_TYPES = {
    "mp4": "video/mp4",
    "webm": "video/webm",
    "ogg": "video/ogg",
    "mov": "video/quicktime",
    "avi": "video/x-msvideo",
    "mkv": "video/x-matroska",
}
_AUDIO_TYPES = {
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "ogg": "audio/ogg",
    "m4a": "audio/mp4",
    "flac": "audio/flac",
}


class MissingDocumentError(InvalidArchiveError):
    pass


@dataclass(frozen=True)
class ObjectRef:
    """An activity target normalised from the ``string | {id, url}`` union."""

    id: Optional[str]
    url: Optional[str]

    @property
    def target(self) -> Optional[str]:
        return self.id or self.url

    @property
    def link(self) -> Optional[str]:
        return self.url or self.id


@dataclass(frozen=True)
class ActorDraft:
    id: str
    username: str
    display_name: str
    summary: str
    profile_fields: list[dict[str, str]]
    created_at: Optional[datetime]
    avatar: Optional[bytes] = None
    avatar_mime_type: Optional[str] = None
    header: Optional[bytes] = None
    header_mime_type: Optional[str] = None


@dataclass(frozen=True)
class PostDraft:
    post_id: str
    activity_id: str
    kind: str
    content: str
    content_text: str
    published_at: Optional[datetime]
    timestamp: Optional[int]
    visibility: str
    hashtags: list[str] = field(default_factory=list)
    mentions: list[dict[str, str]] = field(default_factory=list)
    emojis: list[dict[str, str]] = field(default_factory=list)
    media_ids: list[str] = field(default_factory=list)
    in_reply_to: Optional[str] = None
    sensitive: bool = False
    summary: Optional[str] = None
    boosted_post_id: Optional[str] = None
    original_url: Optional[str] = None


@dataclass(frozen=True)
class MediaDraft:
    media_id: str
    kind: str
    mime_type: str
    data: bytes = field(repr=False)
    size: int
    width: Optional[int] = None
    height: Optional[int] = None


@dataclass(frozen=True)
class InteractionDraft:
    id: str
    activity_id: str
    target_url: str
    published_at: Optional[datetime] = None


@dataclass(frozen=True)
class PostDecodeResult:
    posts: list[PostDraft]
    total: int
    skipped: int


@dataclass(frozen=True)
class InteractionDecodeResult:
    items: list[InteractionDraft]
    total: int
    skipped: int


def _report(progress: Optional[ProgressCallback], stage: str, completed: int, total: int) -> None:
    if progress is not None:
        progress(stage, completed, total)


def _as_str(value: Any) -> Optional[str]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _url_of(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return _as_str(value)
    if isinstance(value, dict):
        return _as_str(value.get("href")) or _as_str(value.get("url"))
    if isinstance(value, list):
        for item in value:
            candidate = _url_of(item)
            if candidate:
                return candidate
    return None


def resolve_object_ref(value: Any) -> Optional[ObjectRef]:
    if isinstance(value, str):
        target = _as_str(value)
        return ObjectRef(id=target, url=target) if target else None
    if isinstance(value, dict):
        ref_id = _as_str(value.get("id"))
        url = _url_of(value.get("url"))
        if ref_id or url:
            return ObjectRef(id=ref_id, url=url)
    return None


def extract_id(uri: str) -> str:
    clean = uri[:-1] if uri.endswith("/") else uri
    return clean.rsplit("/", 1)[-1] or uri


def media_filename(url: str) -> str:
    clean = url.split("?", 1)[0].split("#", 1)[0]
    return clean.rsplit("/", 1)[-1]


def classify_visibility(to: Any, cc: Any) -> str:
    to_list = [value for value in _as_list(to) if isinstance(value, str)]
    cc_list = [value for value in _as_list(cc) if isinstance(value, str)]
    if any(value in _PUBLIC_ADDRESSES for value in to_list):
        return VISIBILITY_PUBLIC
    if any(value in _PUBLIC_ADDRESSES for value in cc_list):
        return VISIBILITY_UNLISTED
    if any("followers" in value for value in to_list):
        return VISIBILITY_PRIVATE
    return VISIBILITY_DIRECT


def strip_html(html: str) -> str:
    if not html:
        return ""
    return BeautifulSoup(html, "html.parser").get_text()


def mime_type_for(filename: str) -> str:
    if "." not in filename:
        return DEFAULT_MIME_TYPE
    extension = filename.lower().rsplit(".", 1)[-1]
    for table in (_IMAGE_TYPES, _VIDEO_TYPES, _AUDIO_TYPES):
        if extension in table:
            return table[extension]
    return DEFAULT_MIME_TYPE


def media_kind(mime_type: str) -> str:
    major = mime_type.split("/", 1)[0]
    if major in {"image", "video", "audio"}:
        return major
    return "unknown"


def synthetic_id(prefix: str, target: str) -> str:
    digest = hashlib.sha1(target.encode("utf-8")).hexdigest()[:16]
    return f"{prefix}-{digest}"


def locate_document(container: ArchiveContainer, name: str) -> Optional[ArchiveEntry]:
    entry = container.file(name)
    if entry is not None and not entry.is_dir:
        return entry
    pattern = re.compile(rf"(?:^|/){re.escape(name)}$", re.IGNORECASE)
    for candidate in container.find(pattern):
        if not candidate.is_dir:
            logger.info("Found %s at %s", name, candidate.name)
            return candidate
    return None


def _load_json_document(entry: ArchiveEntry) -> Any:
    text = entry.read_text()
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise InvalidArchiveError(f"{entry.name} is not valid JSON: {exc}") from exc


def _load_image_reference(
    container: ArchiveContainer, value: Any
) -> tuple[Optional[bytes], Optional[str]]:
    reference = value[0] if isinstance(value, list) and value else value
    path = _url_of(reference)
    if not path:
        return None, None
    entry = locate_document(container, path.lstrip("/"))
    if entry is None:
        logger.info("Profile image %s is not in the archive", path)
        return None, None
    try:
        return entry.read_bytes(), mime_type_for(entry.basename)
    except InvalidArchiveError as exc:
        logger.warning("Could not read profile image %s: %s", entry.name, exc)
        return None, None


def decode_actor(
    container: ArchiveContainer, progress: Optional[ProgressCallback] = None
) -> ActorDraft:
    _report(progress, STAGE_ACTOR, 0, 1)
    entry = locate_document(container, ACTOR_DOCUMENT)
    if entry is None:
        raise MissingDocumentError(
            "could not find an actor.json in this archive; is this a Mastodon export?"
        )
    document = _load_json_document(entry)
    if not isinstance(document, dict):
        raise InvalidArchiveError(f"{entry.name} does not describe an actor")
    actor_id = _as_str(document.get("id"))
    if not actor_id:
        raise InvalidArchiveError(f"{entry.name} has no actor id")

    avatar, avatar_mime_type = _load_image_reference(container, document.get("icon"))
    header, header_mime_type = _load_image_reference(container, document.get("image"))
    profile_fields = [
        {
            "name": str(attachment.get("name") or ""),
            "value": str(attachment.get("value") or ""),
        }
        for attachment in _as_list(document.get("attachment"))
        if isinstance(attachment, dict)
    ]
    username = _as_str(document.get("preferredUsername")) or ""

    actor = ActorDraft(
        id=actor_id,
        username=username,
        display_name=_as_str(document.get("name")) or username,
        summary=str(document.get("summary") or ""),
        profile_fields=profile_fields,
        created_at=coerce_datetime(document.get("published")),
        avatar=avatar,
        avatar_mime_type=avatar_mime_type,
        header=header,
        header_mime_type=header_mime_type,
    )
    _report(progress, STAGE_ACTOR, 1, 1)
    return actor


def _decode_tags(tags: list[dict[str, Any]]) -> tuple[list[str], list[dict[str, str]], list[dict[str, str]]]:
    hashtags: list[str] = []
    mentions: list[dict[str, str]] = []
    emojis: list[dict[str, str]] = []
    for tag in tags:
        tag_type = tag.get("type")
        name = str(tag.get("name") or "")
        if tag_type == "Hashtag":
            hashtag = name[1:] if name.startswith("#") else name
            if hashtag:
                hashtags.append(hashtag)
        elif tag_type == "Mention":
            mentions.append({"name": name, "url": _as_str(tag.get("href")) or ""})
        elif tag_type == "Emoji":
            icon_url = _url_of(tag.get("icon")) or _as_str(tag.get("href")) or ""
            emojis.append({"shortcode": name.replace(":", ""), "url": icon_url})
    return hashtags, mentions, emojis


def decode_note(note: dict[str, Any], index: int) -> Optional[PostDraft]:
    canonical = _as_str(note.get("id")) or _url_of(note.get("url"))
    if not canonical:
        logger.warning("Skipping outbox item %s: the post has neither id nor url", index)
        return None

    content = note.get("content") if isinstance(note.get("content"), str) else ""
    published_at = coerce_datetime(note.get("published"))
    tags = [tag for tag in _as_list(note.get("tag")) if isinstance(tag, dict)]
    hashtags, mentions, emojis = _decode_tags(tags)

    media_ids = []
    for attachment in _as_list(note.get("attachment")):
        url = _url_of(attachment.get("url")) if isinstance(attachment, dict) else _url_of(attachment)
        filename = media_filename(url) if url else ""
        if filename:
            media_ids.append(filename)

    parent = resolve_object_ref(note.get("inReplyTo"))
    parent_uri = parent.target if parent else None

    return PostDraft(
        post_id=extract_id(canonical),
        activity_id=canonical,
        kind=POST_KIND_ORIGINAL,
        content=content,
        content_text=strip_html(content),
        published_at=published_at,
        timestamp=to_epoch_ms(published_at),
        visibility=classify_visibility(note.get("to"), note.get("cc")),
        hashtags=hashtags,
        mentions=mentions,
        emojis=emojis,
        media_ids=media_ids,
        in_reply_to=extract_id(parent_uri) if parent_uri else None,
        sensitive=bool(note.get("sensitive")),
        summary=_as_str(note.get("summary")),
        original_url=canonical,
    )


def decode_boost(activity: dict[str, Any], index: int) -> PostDraft:
    # Announce ids are not reliably unique across an outbox; the ordinal keeps
    # the local id unique.
    raw_id = _as_str(activity.get("id"))
    local_id = extract_id(raw_id) if raw_id else "boost"
    target = resolve_object_ref(activity.get("object"))
    published_at = coerce_datetime(activity.get("published"))
    if activity.get("to") is None and activity.get("cc") is None:
        visibility = VISIBILITY_PUBLIC
    else:
        visibility = classify_visibility(activity.get("to"), activity.get("cc"))

    return PostDraft(
        post_id=f"{local_id}-{index}",
        activity_id=raw_id or "",
        kind=POST_KIND_BOOST,
        content="",
        content_text="",
        published_at=published_at,
        timestamp=to_epoch_ms(published_at),
        visibility=visibility,
        boosted_post_id=target.target if target else None,
        original_url=(target.link if target else None) or raw_id,
    )


def decode_activity(item: Any, index: int) -> Optional[PostDraft]:
    if not isinstance(item, dict):
        return None
    activity_type = str(item.get("type") or "").lower()
    if activity_type == "create":
        note = item.get("object")
        if not isinstance(note, dict):
            return None
        return decode_note(note, index)
    if activity_type == "announce":
        return decode_boost(item, index)
    return None


def decode_posts(
    container: ArchiveContainer, progress: Optional[ProgressCallback] = None
) -> PostDecodeResult:
    entry = locate_document(container, OUTBOX_DOCUMENT)
    if entry is None:
        raise MissingDocumentError("could not find an outbox.json in this archive")
    document = _load_json_document(entry)
    items = document.get("orderedItems") if isinstance(document, dict) else None
    if not isinstance(items, list):
        items = []

    total = len(items)
    _report(progress, STAGE_POSTS, 0, total)
    posts: list[PostDraft] = []
    skipped = 0
    for index, item in enumerate(items):
        post = decode_activity(item, index)
        if post is None:
            skipped += 1
        else:
            posts.append(post)
        if (index + 1) % PROGRESS_INTERVAL == 0:
            _report(progress, STAGE_POSTS, index + 1, total)
    _report(progress, STAGE_POSTS, total, total)

    if skipped:
        logger.info("Skipped %s of %s outbox activities; decoded %s posts", skipped, total, len(posts))
    return PostDecodeResult(posts=posts, total=total, skipped=skipped)


def _image_dimensions(data: bytes) -> tuple[Optional[int], Optional[int]]:
    try:
        with Image.open(io.BytesIO(data)) as image:
            width, height = image.size
            return width, height
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError):
        return None, None


def _decode_media_entry(entry: ArchiveEntry) -> Optional[MediaDraft]:
    if entry.is_dir:
        return None
    filename = entry.basename
    if not filename:
        return None
    mime_type = mime_type_for(filename)
    try:
        data = entry.read_bytes()
    except InvalidArchiveError as exc:
        logger.warning("Dropping media file %s: %s", entry.name, exc)
        return None
    kind = media_kind(mime_type)
    width, height = _image_dimensions(data) if kind == "image" else (None, None)
    return MediaDraft(
        media_id=filename,
        kind=kind,
        mime_type=mime_type,
        data=data,
        size=len(data),
        width=width,
        height=height,
    )


def decode_media(
    container: ArchiveContainer,
    progress: Optional[ProgressCallback] = None,
    *,
    batch_size: int = MEDIA_DECODE_BATCH,
) -> list[MediaDraft]:
    entries = container.find(_MEDIA_PATTERN)
    total = len(entries)
    _report(progress, STAGE_MEDIA, 0, total)

    media: list[MediaDraft] = []
    with ThreadPoolExecutor(max_workers=max(batch_size, 1)) as executor:
        for start in range(0, total, batch_size):
            batch = entries[start : start + batch_size]
            for draft in executor.map(_decode_media_entry, batch):
                if draft is not None:
                    media.append(draft)
            _report(progress, STAGE_MEDIA, min(start + batch_size, total), total)

    return media


def decode_interaction(item: Any, prefix: str) -> Optional[InteractionDraft]:
    if isinstance(item, str):
        target = _as_str(item)
        if not target:
            return None
        return InteractionDraft(id=synthetic_id(prefix, target), activity_id="", target_url=target)
    if not isinstance(item, dict):
        return None
    ref = resolve_object_ref(item.get("object"))
    target = ref.target if ref else None
    if not target:
        return None
    activity_id = _as_str(item.get("id"))
    return InteractionDraft(
        id=activity_id or synthetic_id(prefix, target),
        activity_id=activity_id or "",
        target_url=target,
        published_at=coerce_datetime(item.get("published")),
    )


def _decode_interactions(
    container: ArchiveContainer,
    document_name: str,
    prefix: str,
    stage: str,
    progress: Optional[ProgressCallback],
) -> InteractionDecodeResult:
    entry = locate_document(container, document_name)
    if entry is None:
        logger.info("No %s in this archive; skipping", document_name)
        return InteractionDecodeResult(items=[], total=0, skipped=0)

    _report(progress, stage, 0, 1)
    try:
        document = _load_json_document(entry)
    except InvalidArchiveError as exc:
        logger.warning("Ignoring unreadable %s: %s", entry.name, exc)
        _report(progress, stage, 1, 1)
        return InteractionDecodeResult(items=[], total=0, skipped=0)

    items = document.get("orderedItems") if isinstance(document, dict) else None
    if not isinstance(items, list):
        items = []
    decoded: list[InteractionDraft] = []
    skipped = 0
    for item in items:
        draft = decode_interaction(item, prefix)
        if draft is None:
            skipped += 1
        else:
            decoded.append(draft)
    _report(progress, stage, 1, 1)

    if skipped:
        logger.info("Skipped %s of %s entries in %s", skipped, len(items), entry.name)
    return InteractionDecodeResult(items=decoded, total=len(items), skipped=skipped)


def decode_likes(
    container: ArchiveContainer, progress: Optional[ProgressCallback] = None
) -> InteractionDecodeResult:
    return _decode_interactions(container, LIKES_DOCUMENT, "like", STAGE_LIKES, progress)


def decode_bookmarks(
    container: ArchiveContainer, progress: Optional[ProgressCallback] = None
) -> InteractionDecodeResult:
    return _decode_interactions(
        container, BOOKMARKS_DOCUMENT, "bookmark", STAGE_BOOKMARKS, progress
    )
