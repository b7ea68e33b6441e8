"""Post-build sanitation of the public frontend tree."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path

from oration_deploy.config import SOURCE_MAP_PATTERNS

logger = logging.getLogger(__name__)


def find_source_maps(
    root: str | Path,
    patterns: Iterable[str] = SOURCE_MAP_PATTERNS,
) -> list[Path]:
    """Return every file under *root* matching one of *patterns*."""
    base = Path(root)
    if not base.is_dir():
        return []
    found: set[Path] = set()
    for pattern in patterns:
        found.update(p for p in base.rglob(pattern) if p.is_file() or p.is_symlink())
    return sorted(found)


def remove_source_maps(
    root: str | Path,
    patterns: Iterable[str] = SOURCE_MAP_PATTERNS,
) -> list[Path]:
    """Delete every source map under *root*.

    Returns the list of removed paths.
    """
    removed = find_source_maps(root, patterns)
    for path in removed:
        path.unlink()
        logger.debug("Removed source map %s", path)
    if removed:
        logger.info("Removed %d source map(s) from %s", len(removed), root)
    return removed
