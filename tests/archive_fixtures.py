from __future__ import annotations

import io
import json
import struct
import tarfile
import zipfile
from typing import Any, Optional

PUBLIC = "https://www.w3.org/ns/activitystreams#Public"
ACTOR_ID = "https://x.example/users/bob"
FOLLOWERS = f"{ACTOR_ID}/followers"


def make_actor(
    actor_id: str = ACTOR_ID,
    username: str = "bob",
    name: Optional[str] = "Bob",
    **extra: Any,
) -> dict[str, Any]:
    actor: dict[str, Any] = {
        "id": actor_id,
        "type": "Person",
        "preferredUsername": username,
        "summary": "<p>about bob</p>",
        "published": "2020-01-01T00:00:00Z",
    }
    if name is not None:
        actor["name"] = name
    actor.update(extra)
    return actor


def make_note(
    note_id: Optional[str],
    content: str = "<p>hi</p>",
    *,
    published: str = "2023-05-01T10:00:00Z",
    to: Optional[list[str]] = None,
    cc: Optional[list[str]] = None,
    **extra: Any,
) -> dict[str, Any]:
    note: dict[str, Any] = {
        "type": "Note",
        "content": content,
        "published": published,
        "to": [PUBLIC] if to is None else to,
        "cc": [FOLLOWERS] if cc is None else cc,
    }
    if note_id is not None:
        note["id"] = note_id
    note.update(extra)
    return note


def make_create(note: dict[str, Any], activity_id: Optional[str] = None) -> dict[str, Any]:
    return {
        "id": activity_id or f"{note.get('id', 'x')}/activity",
        "type": "Create",
        "actor": ACTOR_ID,
        "published": note.get("published"),
        "object": note,
    }


def make_announce(
    announce_id: str,
    target: Any,
    *,
    published: str = "2023-05-02T10:00:00Z",
    **extra: Any,
) -> dict[str, Any]:
    activity: dict[str, Any] = {
        "id": announce_id,
        "type": "Announce",
        "actor": ACTOR_ID,
        "published": published,
        "object": target,
    }
    activity.update(extra)
    return activity


def make_collection(items: list[Any]) -> dict[str, Any]:
    return {
        "@context": "https://www.w3.org/ns/activitystreams",
        "type": "OrderedCollection",
        "totalItems": len(items),
        "orderedItems": items,
    }


def archive_files(
    *,
    actor: Optional[dict[str, Any]] = None,
    activities: Optional[list[Any]] = None,
    likes: Optional[list[Any]] = None,
    bookmarks: Optional[list[Any]] = None,
    media: Optional[dict[str, bytes]] = None,
    prefix: str = "",
) -> dict[str, bytes]:
    files: dict[str, bytes] = {}
    files[f"{prefix}actor.json"] = json.dumps(actor or make_actor()).encode("utf-8")
    files[f"{prefix}outbox.json"] = json.dumps(make_collection(activities or [])).encode("utf-8")
    if likes is not None:
        files[f"{prefix}likes.json"] = json.dumps(make_collection(likes)).encode("utf-8")
    if bookmarks is not None:
        files[f"{prefix}bookmarks.json"] = json.dumps(make_collection(bookmarks)).encode("utf-8")
    for name, data in (media or {}).items():
        files[f"{prefix}{name}"] = data
    return files


def build_zip(files: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, mode="w") as archive:
        for name, data in files.items():
            archive.writestr(name, data)
    return buffer.getvalue()


def build_tar_gz(files: dict[str, bytes], *, leading_dot: bool = False) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        for name, data in files.items():
            info = tarfile.TarInfo(name=f"./{name}" if leading_dot else name)
            if name.endswith("/"):
                info.type = tarfile.DIRTYPE
                archive.addfile(info)
                continue
            info.size = len(data)
            archive.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def mark_zip_entry_unreadable(
    data: bytes,
    name: str,
    *,
    encrypted: bool = False,
    compress_type: Optional[int] = None,
) -> bytes:
    """Rewrite the central directory record of ``name`` in place.

    Setting the encrypted flag or an unsupported method (9 is Deflate64) makes
    ``zipfile`` refuse to open the entry while the rest of the archive stays readable.
    """
    patched = bytearray(data)
    encoded = name.encode("utf-8")
    offset = patched.find(b"PK\x01\x02")
    while offset != -1:
        (name_length,) = struct.unpack_from("<H", patched, offset + 28)
        if bytes(patched[offset + 46 : offset + 46 + name_length]) == encoded:
            if encrypted:
                (flags,) = struct.unpack_from("<H", patched, offset + 8)
                struct.pack_into("<H", patched, offset + 8, flags | 0x1)
            if compress_type is not None:
                struct.pack_into("<H", patched, offset + 10, compress_type)
            return bytes(patched)
        offset = patched.find(b"PK\x01\x02", offset + 4)
    raise KeyError(name)


def png_bytes(width: int = 3, height: int = 2) -> bytes:
    from PIL import Image

    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color=(200, 10, 10)).save(buffer, format="PNG")
    return buffer.getvalue()
