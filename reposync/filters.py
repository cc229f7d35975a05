"""
Content filter: decides which change records reach chunking.

Pure functions, no I/O. Removals never reach chunking; they are split off
for the deletion path.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Iterable, Sequence

from .models import ChangeKind, ChangeRecord


def is_included(
    path: str,
    allowed_extensions: Sequence[str],
    exclude_patterns: Sequence[str],
) -> bool:
    """
    Check a path against the extension allow-list and the exclude substrings.

    An empty allow-list admits every extension. Exclude patterns are plain
    substrings of the path, not globs.
    """
    if allowed_extensions:
        ext = os.path.splitext(path)[1]
        if ext not in allowed_extensions:
            return False

    for pattern in exclude_patterns:
        if pattern and pattern in path:
            return False

    return True


@dataclass
class FilterResult:
    """Partition of one run's change records."""
    valid: list[ChangeRecord] = field(default_factory=list)
    removed: list[ChangeRecord] = field(default_factory=list)
    excluded: list[ChangeRecord] = field(default_factory=list)


def partition_changes(
    records: Iterable[ChangeRecord],
    allowed_extensions: Sequence[str],
    exclude_patterns: Sequence[str],
) -> FilterResult:
    """
    Split records into valid, removed and excluded.

    Removals go to ``removed`` whatever their extension or path.
    """
    result = FilterResult()
    for record in records:
        if record.kind == ChangeKind.REMOVED:
            result.removed.append(record)
        elif is_included(record.path, allowed_extensions, exclude_patterns):
            result.valid.append(record)
        else:
            result.excluded.append(record)
    return result
