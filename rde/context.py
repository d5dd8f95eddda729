"""Context Store: oversized inputs kept outside the model's window.

Every input handed to the engine is registered here once and addressed by an
opaque id (``ctx_1``, ``ctx_2``, ...).  Model-visible history only ever sees
the metadata produced by :meth:`ContextStore.describe` and
:meth:`ContextStore.sample`; fragments reach the content through a read-only
:class:`ContextView`.

Two backings are available:

* :class:`StringContext` wraps an in-memory ``str`` (offsets are characters).
* :class:`LazyContext` memory-maps a file so the OS pages data in and out on
  demand (offsets are bytes).  This lets the engine work with documents that
  exceed available process memory.

Artifacts are read-only once ingested, so concurrent readers (a parent and
its recursive children) need no locking.
"""

from __future__ import annotations

import codecs
import logging
import mmap
import os
import re
import threading
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import overload

from .errors import UnsupportedContent

logger = logging.getLogger(__name__)

_SNIFF_BYTES = 8192
_LINE_COUNT_CHUNK = 1 << 20

_LOG_LINE = re.compile(
    r"^\s*(\[?\d{4}-\d{2}-\d{2}[ T]"
    r"|\d{1,3}(\.\d{1,3}){3}\s"
    r"|[A-Z][a-z]{2}\s+\d{1,2}\s\d{2}:\d{2}:\d{2}"
    r"|\[?(TRACE|DEBUG|INFO|WARN|WARNING|ERROR|FATAL)\b)"
)

_SUFFIX_KINDS = {
    ".json": "json",
    ".jsonl": "json",
    ".csv": "csv",
    ".tsv": "csv",
    ".md": "markdown",
    ".markdown": "markdown",
    ".log": "log",
    ".py": "code",
    ".rs": "code",
    ".js": "code",
    ".ts": "code",
    ".go": "code",
    ".java": "code",
    ".c": "code",
    ".h": "code",
}


class LazyContext:
    """Memory-mapped, read-only view of a text file.

    The class exposes a string-like interface:

    * Slicing (``ctx[100:200]``) returns ``str``
    * ``len(ctx)`` returns the *byte* length
    * ``search`` / ``findall`` run :mod:`re` directly over the mapped bytes
    * ``lines()`` yields decoded lines without loading the whole file

    Parameters
    ----------
    path : str | Path
        Path to the file to map.
    encoding : str
        Text encoding used when decoding slices (default ``"utf-8"``).
    """

    def __init__(self, path: str | Path, encoding: str = "utf-8") -> None:
        self._path = Path(path)
        self._encoding = encoding
        self._fd = os.open(str(self._path), os.O_RDONLY)
        self._size = os.fstat(self._fd).st_size
        if self._size == 0:
            # mmap cannot map zero-length files.
            self._mm: mmap.mmap | None = None
        else:
            self._mm = mmap.mmap(self._fd, 0, access=mmap.ACCESS_READ)

    @property
    def path(self) -> Path:
        return self._path

    def close(self) -> None:
        """Release the memory map and file descriptor."""
        if self._mm is not None:
            self._mm.close()
            self._mm = None
        if self._fd >= 0:
            os.close(self._fd)
            self._fd = -1

    def __del__(self) -> None:  # noqa: D105
        self.close()

    def __enter__(self) -> LazyContext:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def __len__(self) -> int:
        return self._size

    @overload
    def __getitem__(self, index: int) -> str: ...
    @overload
    def __getitem__(self, index: slice) -> str: ...

    def __getitem__(self, index: int | slice) -> str:
        if self._mm is None:
            if isinstance(index, slice):
                return ""
            raise IndexError("empty context")
        raw = self._mm[index]
        if isinstance(raw, int):
            return chr(raw)
        return raw.decode(self._encoding, errors="replace")

    def __str__(self) -> str:
        """Decode the entire file.  Use with care for very large files."""
        if self._mm is None:
            return ""
        return self._mm[:].decode(self._encoding, errors="replace")

    def __repr__(self) -> str:
        return f"LazyContext({str(self._path)!r}, size={self._size:,})"

    def __contains__(self, item: object) -> bool:
        if not isinstance(item, str) or self._mm is None:
            return False
        return self._mm.find(item.encode(self._encoding)) != -1

    def head(self, size: int = _SNIFF_BYTES) -> bytes:
        """Return the first *size* raw bytes."""
        if self._mm is None:
            return b""
        return self._mm[:size]

    def iter_chunks(self) -> Iterator[bytes]:
        """Yield the raw bytes in fixed-size chunks."""
        if self._mm is None:
            return
        for start in range(0, self._size, _LINE_COUNT_CHUNK):
            yield self._mm[start : start + _LINE_COUNT_CHUNK]

    def count_lines(self) -> int:
        """Count lines by scanning the map in fixed-size chunks."""
        if self._mm is None:
            return 0
        newlines = sum(chunk.count(b"\n") for chunk in self.iter_chunks())
        if self._mm[self._size - 1 : self._size] != b"\n":
            newlines += 1
        return newlines

    def search(self, pattern: str, flags: int = 0) -> re.Match[bytes] | None:
        """Search for *pattern* anywhere in the file (bytes match)."""
        if self._mm is None:
            return None
        return re.search(pattern.encode(self._encoding), self._mm, flags)

    def findall(self, pattern: str, flags: int = 0) -> list[str]:
        """Return all non-overlapping matches of *pattern* as strings."""
        if self._mm is None:
            return []
        raw_matches = re.findall(pattern.encode(self._encoding), self._mm, flags)
        return [
            m.decode(self._encoding, errors="replace") if isinstance(m, bytes) else str(m)
            for m in raw_matches
        ]

    def lines(self) -> Iterator[str]:
        """Yield decoded lines (newline stripped).

        Walks the map by offset rather than ``readline()`` so that several
        threads can iterate the same file at once.
        """
        if self._mm is None:
            return
        pos = 0
        while pos < self._size:
            end = self._mm.find(b"\n", pos)
            if end == -1:
                end = self._size
            yield self._mm[pos:end].decode(self._encoding, errors="replace").rstrip("\r")
            pos = end + 1

    def chunk(self, start: int, size: int) -> str:
        """Return ``size`` bytes starting at ``start``, decoded."""
        return self[start : start + size]


class StringContext:
    """Thin wrapper around an in-memory ``str`` with the same API as :class:`LazyContext`."""

    def __init__(self, text: str) -> None:
        self._text = text

    def __len__(self) -> int:
        return len(self._text)

    @overload
    def __getitem__(self, index: int) -> str: ...
    @overload
    def __getitem__(self, index: slice) -> str: ...

    def __getitem__(self, index: int | slice) -> str:
        return self._text[index]

    def __str__(self) -> str:
        return self._text

    def __repr__(self) -> str:
        return f"StringContext(size={len(self._text):,})"

    def __contains__(self, item: object) -> bool:
        if not isinstance(item, str):
            return False
        return item in self._text

    def close(self) -> None:
        """Nothing to release; present for API parity."""

    def count_lines(self) -> int:
        if not self._text:
            return 0
        return self._text.count("\n") + (0 if self._text.endswith("\n") else 1)

    def search(self, pattern: str, flags: int = 0) -> re.Match[str] | None:
        return re.search(pattern, self._text, flags)

    def findall(self, pattern: str, flags: int = 0) -> list[str]:
        return re.findall(pattern, self._text, flags)

    def lines(self) -> Iterator[str]:
        yield from self._text.splitlines()

    def chunk(self, start: int, size: int) -> str:
        return self._text[start : start + size]


@dataclass(frozen=True)
class ContextArtifact:
    """Metadata for one ingested input.

    ``length`` is measured in the backing's addressable units: characters for
    in-memory text, bytes for memory-mapped files.
    """

    id: str
    length: int
    byte_length: int
    line_count: int
    preview: str
    declared_kind: str
    source: str = "memory"


def _sniff_kind(head: str) -> str:
    """Best-effort content type from the first few kilobytes."""
    lines = [line for line in head.splitlines()[:20] if line.strip()]
    if not lines:
        return "text"
    if sum(1 for line in lines if _LOG_LINE.match(line)) * 2 >= len(lines):
        return "log"
    stripped = head.lstrip()
    if stripped.startswith(("{", "[")):
        return "json"
    if stripped.startswith("#"):
        return "markdown"
    commas = lines[0].count(",")
    if commas and len(lines) >= 2 and all(line.count(",") == commas for line in lines[:5]):
        return "csv"
    return "text"


def _check_text_bytes(chunks: Iterable[bytes], label: str) -> None:
    """Reject NUL bytes and invalid UTF-8 anywhere in raw input."""
    decoder = codecs.getincrementaldecoder("utf-8")()
    try:
        for chunk in chunks:
            if b"\x00" in chunk:
                raise UnsupportedContent(f"{label} looks binary (contains NUL bytes)")
            # A multi-byte sequence cut at a chunk edge is carried over.
            decoder.decode(chunk, final=False)
        decoder.decode(b"", final=True)
    except UnicodeDecodeError as e:
        raise UnsupportedContent(f"{label} is not valid UTF-8 text: {e}") from e


class ContextStore:
    """Owns every artifact of one top-level invocation.

    Parameters
    ----------
    preview_chars : int
        Length of the preview stored on each :class:`ContextArtifact`.
    """

    def __init__(self, preview_chars: int = 200) -> None:
        self.preview_chars = preview_chars
        self._lock = threading.Lock()
        self._counter = 0
        self._backings: dict[str, LazyContext | StringContext] = {}
        self._artifacts: dict[str, ContextArtifact] = {}

    def __enter__(self) -> ContextStore:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def __len__(self) -> int:
        return len(self._artifacts)

    def __contains__(self, artifact_id: object) -> bool:
        return artifact_id in self._artifacts

    def ingest(
        self,
        content: str | bytes | Path | ContextView,
        declared_kind: str | None = None,
    ) -> ContextArtifact:
        """Register *content* and return its metadata.

        Raises
        ------
        UnsupportedContent
            If *content* is binary, not UTF-8, missing on disk, or of a type
            that cannot be addressed as text.
        """
        if isinstance(content, ContextView):
            if content.store is self:
                return self.get(content.id)
            content = str(content)

        if isinstance(content, bytes):
            _check_text_bytes([content], "bytes input")
            content = content.decode("utf-8")

        if isinstance(content, str):
            if "\x00" in content:
                raise UnsupportedContent("text input looks binary (contains NUL characters)")
            backing: LazyContext | StringContext = StringContext(content)
            byte_length = len(content.encode("utf-8"))
            kind = declared_kind or _sniff_kind(content[:_SNIFF_BYTES])
            source = "memory"
        elif isinstance(content, Path):
            backing, byte_length, kind = self._map_file(content, declared_kind)
            source = str(content)
        else:
            raise UnsupportedContent(
                f"cannot ingest {type(content).__name__}; expected str, bytes or Path"
            )

        with self._lock:
            self._counter += 1
            artifact_id = f"ctx_{self._counter}"
            artifact = ContextArtifact(
                id=artifact_id,
                length=len(backing),
                byte_length=byte_length,
                line_count=backing.count_lines(),
                preview=backing[: self.preview_chars],
                declared_kind=kind,
                source=source,
            )
            self._backings[artifact_id] = backing
            self._artifacts[artifact_id] = artifact

        logger.debug(
            "Ingested %s: %s, %d bytes, %d lines",
            artifact_id,
            kind,
            byte_length,
            artifact.line_count,
        )
        return artifact

    @staticmethod
    def _map_file(path: Path, declared_kind: str | None) -> tuple[LazyContext, int, str]:
        if not path.is_file():
            raise UnsupportedContent(f"context file not found: {path}")
        lazy = LazyContext(path)
        try:
            _check_text_bytes(lazy.iter_chunks(), f"file {path}")
            head = lazy.head()
        except UnsupportedContent:
            lazy.close()
            raise
        kind = (
            declared_kind
            or _SUFFIX_KINDS.get(path.suffix.lower())
            or _sniff_kind(head.decode("utf-8", errors="replace"))
        )
        return lazy, len(lazy), kind

    def get(self, artifact_id: str) -> ContextArtifact:
        """Return the metadata for *artifact_id* (``KeyError`` if unknown)."""
        try:
            return self._artifacts[artifact_id]
        except KeyError:
            raise KeyError(f"unknown context artifact: {artifact_id}") from None

    def artifacts(self) -> list[ContextArtifact]:
        return list(self._artifacts.values())

    def _backing(self, artifact_id: str) -> LazyContext | StringContext:
        try:
            return self._backings[artifact_id]
        except KeyError:
            raise KeyError(f"unknown context artifact: {artifact_id}") from None

    def slice(self, artifact_id: str, start: int | None = None, end: int | None = None) -> str:
        """Return ``content[start:end]`` of an artifact."""
        return self._backing(artifact_id)[start:end]

    def preview(self, artifact_id: str, n: int = 200) -> str:
        """Return the first *n* units of an artifact."""
        return self._backing(artifact_id)[: max(0, n)]

    def search(self, artifact_id: str, pattern: str, flags: int = 0) -> re.Match | None:
        return self._backing(artifact_id).search(pattern, flags)

    def findall(self, artifact_id: str, pattern: str, flags: int = 0) -> list[str]:
        return self._backing(artifact_id).findall(pattern, flags)

    def lines(self, artifact_id: str) -> Iterator[str]:
        return self._backing(artifact_id).lines()

    def materialize(self, artifact_id: str) -> str:
        """Decode the whole artifact.  Use with care for very large inputs."""
        return str(self._backing(artifact_id))

    def describe(self, artifact_id: str) -> str:
        """Compact metadata summary suitable for model-visible history."""
        artifact = self.get(artifact_id)
        preview = artifact.preview.replace("\n", "\\n")
        more = "..." if artifact.length > len(artifact.preview) else ""
        unit = "bytes" if artifact.source != "memory" else "characters"
        return (
            f"Context {artifact.id} ({artifact.declared_kind}, source: {artifact.source})\n"
            f"[{artifact.line_count:,} lines, {artifact.byte_length:,} bytes, "
            f"{artifact.length:,} addressable {unit}]\n"
            f"Preview: {preview}{more}"
        )

    def sample(self, artifact_id: str, sample_size: int = 500, num_samples: int = 4) -> str:
        """Evenly spaced excerpts so the model can see format variations.

        Parameters
        ----------
        artifact_id : str
            Artifact to sample.
        sample_size : int
            Units to take from each region.
        num_samples : int
            Number of evenly-spaced samples (minimum 2: head + tail).

        Returns
        -------
        str
            Formatted sample string, bounded by roughly
            ``sample_size * (num_samples + 1)`` units.
        """
        backing = self._backing(artifact_id)
        size = len(backing)
        if size <= sample_size * 2:
            return f"Full content preview:\n{backing[:size]}"

        num_samples = max(2, num_samples)
        labels = ["Beginning", "~25%", "~50%", "~75%"]
        parts: list[str] = []
        for i in range(num_samples):
            offset = min(size * i // num_samples, size - sample_size)
            label = labels[i] if i < len(labels) else f"~{100 * i // num_samples}%"
            parts.append(f"{label} (offset {offset:,}):\n{backing[offset : offset + sample_size]}")

        tail_start = size - sample_size
        parts.append(f"End (offset {tail_start:,}):\n{backing[tail_start:]}")
        return "\n\n".join(parts)

    def view(self, artifact_id: str) -> ContextView:
        """Return the read-only handle fragments use as ``CONTEXT``."""
        self.get(artifact_id)
        return ContextView(self, artifact_id)

    def close(self) -> None:
        """Release every backing; ids become unknown afterwards."""
        with self._lock:
            backings = list(self._backings.values())
            self._backings.clear()
            self._artifacts.clear()
        for backing in backings:
            backing.close()


class ContextView:
    """Read-only handle on one artifact, routed through the store."""

    __slots__ = ("id", "store")

    def __init__(self, store: ContextStore, artifact_id: str) -> None:
        self.store = store
        self.id = artifact_id

    def __len__(self) -> int:
        return self.store.get(self.id).length

    def __getitem__(self, index: int | slice) -> str:
        if isinstance(index, slice):
            text = self.store.slice(self.id, index.start, index.stop)
            return text[:: index.step] if index.step not in (None, 1) else text
        length = len(self)
        if index < 0:
            index += length
        if not 0 <= index < length:
            raise IndexError("context index out of range")
        return self.store.slice(self.id, index, index + 1)

    def __contains__(self, item: object) -> bool:
        return item in self.store._backing(self.id)

    def __str__(self) -> str:
        return self.store.materialize(self.id)

    def __repr__(self) -> str:
        artifact = self.store.get(self.id)
        return f"<CONTEXT {self.id} kind={artifact.declared_kind} length={artifact.length:,}>"

    def preview(self, n: int = 1000) -> str:
        return self.store.preview(self.id, n)

    def search(self, pattern: str, flags: int = 0) -> re.Match | None:
        return self.store.search(self.id, pattern, flags)

    def findall(self, pattern: str, flags: int = 0) -> list[str]:
        return self.store.findall(self.id, pattern, flags)

    def lines(self) -> Iterator[str]:
        return self.store.lines(self.id)

    def chunk(self, start: int, size: int) -> str:
        return self.store.slice(self.id, start, start + size)

    def splitlines(self) -> list[str]:
        return list(self.lines())
