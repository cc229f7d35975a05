"""
Text chunker and deterministic chunk identity.

Chunk ids are MD5 hex digests of "{repository}-{path}-{ordinal}":
- Stable across runs for the same file and chunk count
- Independent of content, so an edited file overwrites its old ids in place
- Derivable from a checkpoint's chunk count alone, which is how deletions
  find the ids of a removed file

This is an identity convention, not a cryptographic guarantee.
"""

from __future__ import annotations

import hashlib
import os
import re

from loguru import logger

from .models import ChangeRecord, Chunk
from .utils import ChunkingError

# Characters considered a good place to end a chunk
SENTENCE_BREAKS = ".!?\n"

# Control characters other than tab and newline
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")


def chunk_id(repository: str, path: str, ordinal: int) -> str:
    """Compute the identifier of one chunk of a file."""
    return hashlib.md5(f"{repository}-{path}-{ordinal}".encode("utf-8")).hexdigest()


def chunk_ids(repository: str, path: str, start: int, stop: int) -> list[str]:
    """Identifiers for ordinals start..stop-1."""
    return [chunk_id(repository, path, i) for i in range(start, stop)]


def clean_content(text: str) -> str:
    """
    Normalize raw file text before chunking.

    Strips each line, drops blank lines and removes control characters
    (tab is kept).
    """
    lines = []
    for line in text.replace("\r\n", "\n").replace("\r", "\n").split("\n"):
        line = _CONTROL_CHARS.sub("", line).strip()
        if line:
            lines.append(line)
    return "\n".join(lines)


def split_text(text: str, max_size: int, overlap: int) -> list[str]:
    """
    Split text into overlapping windows of at most max_size characters.

    A window ends just after the last sentence break inside it when that
    break lies past the window's midpoint; otherwise it is cut at max_size.
    The next window starts overlap characters before the previous end.
    """
    if max_size <= 0:
        raise ValueError("max_size must be positive")
    overlap = max(0, min(overlap, max_size - 1))

    if len(text) <= max_size:
        stripped = text.strip()
        return [stripped] if stripped else []

    pieces: list[str] = []
    start = 0
    length = len(text)

    while start < length:
        end = min(start + max_size, length)

        if end < length:
            window = text[start:end]
            last_break = max(window.rfind(c) for c in SENTENCE_BREAKS)
            if last_break > max_size // 2:
                end = start + last_break + 1

        piece = text[start:end].strip()
        if piece:
            pieces.append(piece)

        if end >= length:
            break
        start = max(end - overlap, start + 1)

    return pieces


class TextChunker:
    """
    Sentence-aware plain text chunker.

    Produces chunks whose metadata carries repository, file_path, commit_sha,
    chunk_index, total_chunks and file_ext.
    """

    def chunk(self, record: ChangeRecord, max_size: int, overlap: int) -> list[Chunk]:
        if record.content is None:
            return []

        try:
            pieces = split_text(clean_content(record.content), max_size, overlap)
        except ValueError as e:
            raise ChunkingError(str(e), file_path=record.path) from e

        total = len(pieces)
        ext = os.path.splitext(record.path)[1]
        chunks = [
            Chunk(
                id=chunk_id(record.repository, record.path, i),
                repository=record.repository,
                path=record.path,
                ordinal=i,
                total=total,
                text=piece,
                metadata={
                    "repository": record.repository,
                    "file_path": record.path,
                    "commit_sha": record.revision,
                    "chunk_index": i,
                    "total_chunks": total,
                    "file_ext": ext,
                },
            )
            for i, piece in enumerate(pieces)
        ]

        logger.debug(f"Split {record.path} into {total} chunks")
        return chunks
