"""Warm in-memory cache of every file below a served root directory."""

from __future__ import annotations

import logging
import os
import stat
from collections import deque
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType

from config import SYMLINK_POLICIES

logger = logging.getLogger(__name__)


class PreloadError(RuntimeError):
    """Raised when the served tree cannot be loaded completely."""

    def __init__(self, message: str, *, path: str | os.PathLike[str]) -> None:
        super().__init__(f"{message}: {os.fsdecode(path)!r}")
        self.path = os.fsdecode(path)


class ContentStore(Mapping[str, bytes]):
    """Read-only mapping of cache key to file bytes.

    Keys always start with ``/`` and use ``/`` as separator. The store is
    never mutated after construction, so worker threads share it without
    locking.
    """

    __slots__ = ("_entries", "_total_bytes")

    def __init__(self, entries: Mapping[str, bytes] | None = None) -> None:
        frozen: dict[str, bytes] = {}
        for key, content in (entries or {}).items():
            if not key.startswith("/"):
                raise ValueError(f"cache key must start with '/': {key!r}")
            frozen[key] = bytes(content)
        self._entries = MappingProxyType(frozen)
        self._total_bytes = sum(len(content) for content in frozen.values())

    def __getitem__(self, key: str) -> bytes:
        return self._entries[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    @property
    def total_bytes(self) -> int:
        return self._total_bytes

    def __repr__(self) -> str:
        return f"ContentStore(files={len(self)}, bytes={self._total_bytes})"


@dataclass(frozen=True, slots=True)
class _PendingDirectory:
    path: Path
    key_prefix: str
    ancestors: frozenset[str]


def load_directory(
    root: str | os.PathLike[str],
    *,
    symlink_policy: str = "reject",
) -> ContentStore:
    """Read every regular file below ``root`` into a new ContentStore.

    The walk is breadth-first. Any listing or read failure, a path that is
    not valid UTF-8, a special file, or a symbolic link the policy does not
    allow raises PreloadError, so a partially populated store is never
    returned.
    """
    if symlink_policy not in SYMLINK_POLICIES:
        raise ValueError(f"Unsupported symlink policy: {symlink_policy}")

    root_path = Path(root)
    _require_utf8(os.fspath(root_path), root_path)
    if not root_path.is_dir():
        raise PreloadError("Root is not a directory", path=root_path)

    entries: dict[str, bytes] = {}
    to_visit: deque[_PendingDirectory] = deque(
        [_PendingDirectory(root_path, "", frozenset({os.path.realpath(root_path)}))]
    )
    while to_visit:
        directory = to_visit.popleft()
        for entry in _list_directory(directory.path):
            _require_utf8(entry.name, entry.path)
            key = f"{directory.key_prefix}/{entry.name}"
            entry_path = Path(entry.path)

            try:
                is_link = entry.is_symlink()
                mode = entry.stat(follow_symlinks=False).st_mode
            except OSError as exc:
                raise PreloadError("Unable to stat entry", path=entry_path) from exc

            if is_link:
                if symlink_policy == "reject":
                    raise PreloadError("Symbolic links are not supported", path=entry_path)
                if symlink_policy == "skip":
                    logger.warning("Skipping symbolic link %s", entry_path)
                    continue
                try:
                    mode = entry_path.stat().st_mode
                except OSError as exc:
                    raise PreloadError("Dangling symbolic link", path=entry_path) from exc

            if stat.S_ISDIR(mode):
                real_path = os.path.realpath(entry_path)
                if real_path in directory.ancestors:
                    raise PreloadError("Symbolic link cycle", path=entry_path)
                to_visit.append(
                    _PendingDirectory(entry_path, key, directory.ancestors | {real_path})
                )
                continue

            if not stat.S_ISREG(mode):
                raise PreloadError("Unsupported special file", path=entry_path)

            try:
                content = entry_path.read_bytes()
            except OSError as exc:
                raise PreloadError("Failed to read file", path=entry_path) from exc
            logger.debug("Loaded %d bytes from %s", len(content), key)
            entries[key] = content

    store = ContentStore(entries)
    logger.info(
        "Preloaded %d files (%d bytes) from %s",
        len(store),
        store.total_bytes,
        root_path,
    )
    return store


def _list_directory(path: Path) -> list[os.DirEntry[str]]:
    try:
        with os.scandir(path) as iterator:
            return sorted(iterator, key=lambda entry: entry.name)
    except OSError as exc:
        raise PreloadError("Failed to read directory", path=path) from exc


def _require_utf8(name: str, path: str | os.PathLike[str]) -> None:
    try:
        name.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise PreloadError("Path is not valid UTF-8", path=path) from exc
