from __future__ import annotations

import gzip
import io
import logging
import re
import tarfile
import zipfile
import zlib
from dataclasses import dataclass, field
from typing import BinaryIO, Callable, Iterable, Optional, Protocol, Union

logger = logging.getLogger(__name__)

Pattern = Union[str, "re.Pattern[str]"]

# zipfile raises RuntimeError for encrypted entries and NotImplementedError for
# compression methods it cannot inflate (Deflate64, for one).
_READ_ERRORS = (
    zipfile.BadZipFile,
    tarfile.TarError,
    zlib.error,
    EOFError,
    OSError,
    RuntimeError,
    NotImplementedError,
)


class InvalidArchiveError(ValueError):
    pass


@dataclass(frozen=True)
class ArchiveEntry:
    name: str
    is_dir: bool
    opener: Callable[[], BinaryIO] = field(repr=False, compare=False)

    @property
    def basename(self) -> str:
        return self.name.rstrip("/").rsplit("/", 1)[-1]

    def open(self) -> BinaryIO:
        if self.is_dir:
            return io.BytesIO(b"")
        return self.opener()

    def read_bytes(self) -> bytes:
        if self.is_dir:
            return b""
        try:
            with self.opener() as handle:
                return handle.read()
        except _READ_ERRORS as exc:
            raise InvalidArchiveError(f"Could not read {self.name} from the archive: {exc}") from exc

    def read_text(self, encoding: str = "utf-8") -> str:
        return self.read_bytes().decode(encoding, errors="replace")


class ArchiveContainer(Protocol):
    name: str

    def file(self, path: str) -> Optional[ArchiveEntry]:
        ...

    def find(self, pattern: Pattern) -> list[ArchiveEntry]:
        ...

    def entries(self) -> list[ArchiveEntry]:
        ...


class _EntryIndex:
    def __init__(self, entries: Iterable[ArchiveEntry]) -> None:
        self._entries = list(entries)
        self._by_name = {entry.name: entry for entry in self._entries}

    def file(self, path: str) -> Optional[ArchiveEntry]:
        return self._by_name.get(path)

    def find(self, pattern: Pattern) -> list[ArchiveEntry]:
        compiled = re.compile(pattern) if isinstance(pattern, str) else pattern
        return [entry for entry in self._entries if compiled.search(entry.name)]

    def entries(self) -> list[ArchiveEntry]:
        return list(self._entries)


class ZipContainer:
    """Random-access container; entries are decompressed only when read."""

    def __init__(self, data: bytes, name: str = "archive.zip") -> None:
        self.name = name
        try:
            self._zip = zipfile.ZipFile(io.BytesIO(data))
            infos = self._zip.infolist()
        except (zipfile.BadZipFile, zipfile.LargeZipFile, OSError, ValueError) as exc:
            raise InvalidArchiveError(f"{name} is not a readable zip archive: {exc}") from exc
        self._index = _EntryIndex(self._wrap(info) for info in infos)

    def _wrap(self, info: zipfile.ZipInfo) -> ArchiveEntry:
        # Directory names carry no trailing slash, matching how tarfile reports them.
        return ArchiveEntry(
            name=info.filename.rstrip("/") if info.is_dir() else info.filename,
            is_dir=info.is_dir(),
            opener=lambda: self._zip.open(info),
        )

    def file(self, path: str) -> Optional[ArchiveEntry]:
        return self._index.file(path)

    def find(self, pattern: Pattern) -> list[ArchiveEntry]:
        return self._index.find(pattern)

    def entries(self) -> list[ArchiveEntry]:
        return self._index.entries()


class TarGzContainer:
    """Fully buffered container; the gzip payload is inflated and split up front."""

    def __init__(self, data: bytes, name: str = "archive.tar.gz") -> None:
        self.name = name
        entries: list[ArchiveEntry] = []
        try:
            payload = gzip.decompress(data)
            with tarfile.open(fileobj=io.BytesIO(payload), mode="r:") as tar:
                for member in tar.getmembers():
                    member_name = _normalize_tar_name(member.name)
                    if not member_name:
                        continue
                    if member.isdir():
                        entries.append(_buffered_entry(member_name, b"", is_dir=True))
                    elif member.isfile():
                        handle = tar.extractfile(member)
                        content = handle.read() if handle is not None else b""
                        entries.append(_buffered_entry(member_name, content, is_dir=False))
        except _READ_ERRORS as exc:
            raise InvalidArchiveError(f"{name} is not a readable tar.gz archive: {exc}") from exc
        logger.debug("Buffered %s tar entries from %s", len(entries), name)
        self._index = _EntryIndex(entries)

    def file(self, path: str) -> Optional[ArchiveEntry]:
        return self._index.file(path)

    def find(self, pattern: Pattern) -> list[ArchiveEntry]:
        return self._index.find(pattern)

    def entries(self) -> list[ArchiveEntry]:
        return self._index.entries()


def _normalize_tar_name(name: str) -> str:
    while name.startswith("./"):
        name = name[2:]
    return name.rstrip("/") if name != "." else ""


def _buffered_entry(name: str, content: bytes, *, is_dir: bool) -> ArchiveEntry:
    return ArchiveEntry(name=name, is_dir=is_dir, opener=lambda: io.BytesIO(content))


def is_tar_gz_name(filename: str) -> bool:
    lowered = filename.lower()
    return lowered.endswith(".tar.gz") or lowered.endswith(".tgz")


def open_container(data: bytes, filename: str) -> ArchiveContainer:
    if is_tar_gz_name(filename):
        return TarGzContainer(data, name=filename)
    return ZipContainer(data, name=filename)
