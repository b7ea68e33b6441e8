"""Check-then-act file primitives used by builder and activator.

Every ``ensure``/``place`` helper compares the current state with the
desired state first and only mutates when they differ.  They return
whether anything changed so callers can report convergence.
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
import tempfile
from pathlib import Path

from oration_deploy.security.hasher import Hasher
from oration_deploy.security.modes import parse_mode

logger = logging.getLogger(__name__)


def _current_mode(path: Path) -> int:
    return stat.S_IMODE(path.lstat().st_mode)


def write_bytes_atomic(dest: str | Path, data: bytes, mode: int = 0o644) -> Path:
    """Write *data* to *dest* through a temporary file and ``os.replace``.

    The temporary file gets *mode* before it is renamed into place, so the
    destination never exists with a wider mode than requested.
    """
    d = Path(dest)
    d.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=d.parent, prefix=f".{d.name}.")
    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        os.chmod(tmp, mode)
        os.replace(tmp, d)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise
    return d


def copy_file(src: str | Path, dest: str | Path, mode: int | None = None) -> Path:
    """Copy *src* to *dest* atomically.

    When *mode* is *None* the source permission bits are kept.
    """
    s = Path(src)
    if mode is None:
        mode = stat.S_IMODE(s.stat().st_mode)
    return write_bytes_atomic(dest, s.read_bytes(), mode)


def place_file(
    src: str | Path,
    dest: str | Path,
    mode: int | str | None = None,
) -> bool:
    """Make *dest* a copy of *src* (content and mode).

    Returns *True* if the file was written or its mode fixed.
    """
    s = Path(src)
    return place_content(dest, s.read_bytes(), mode, base_mode=stat.S_IMODE(s.stat().st_mode))


def place_content(
    dest: str | Path,
    data: bytes,
    mode: int | str | None = None,
    *,
    base_mode: int = 0o644,
) -> bool:
    """Make *dest* hold exactly *data* with *mode*.

    Returns *True* if anything changed.
    """
    d = Path(dest)
    desired_mode = parse_mode(mode, base=base_mode) if mode is not None else None

    if d.is_file() and not d.is_symlink():
        current_mode = _current_mode(d)
        same = d.stat().st_size == len(data) and Hasher.hash_file(d) == Hasher.hash_bytes(data)
        if same:
            if desired_mode is None or desired_mode == current_mode:
                logger.debug("Unchanged %s", d)
                return False
            os.chmod(d, desired_mode)
            logger.info("Fixed mode of %s to %04o", d, desired_mode)
            return True
        if desired_mode is None:
            desired_mode = current_mode
    elif d.is_symlink() or d.exists():
        ensure_absent(d)

    write_bytes_atomic(d, data, base_mode if desired_mode is None else desired_mode)
    logger.info("Placed %s", d)
    return True


def ensure_absent(path: str | Path) -> bool:
    """Remove *path* (file, symlink or directory) if it exists."""
    p = Path(path)
    if p.is_symlink() or p.is_file():
        p.unlink()
    elif p.is_dir():
        shutil.rmtree(p)
    else:
        logger.debug("Already absent %s", p)
        return False
    logger.info("Removed %s", p)
    return True


def ensure_link(target: str | Path, link: str | Path) -> bool:
    """Make *link* a symbolic link pointing at *target*.

    The link is swapped in with ``os.replace`` so it never dangles between
    removal of an old entry and creation of the new one.
    """
    lnk = Path(link)
    tgt = str(target)
    if lnk.is_symlink() and os.readlink(lnk) == tgt:
        logger.debug("Link already in place %s -> %s", lnk, tgt)
        return False

    if lnk.is_dir() and not lnk.is_symlink():
        shutil.rmtree(lnk)

    lnk.parent.mkdir(parents=True, exist_ok=True)
    tmp = lnk.with_name(f".{lnk.name}.tmp")
    tmp.unlink(missing_ok=True)
    os.symlink(tgt, tmp)
    os.replace(tmp, lnk)
    logger.info("Linked %s -> %s", lnk, tgt)
    return True


def ensure_directory(path: str | Path, mode: int | None = None) -> bool:
    """Create *path* (and parents) if missing."""
    p = Path(path)
    if p.is_dir():
        return False
    p.mkdir(parents=True, exist_ok=True)
    if mode is not None:
        os.chmod(p, mode)
    logger.info("Created directory %s", p)
    return True


def ensure_mode(path: str | Path, mode: int | str, *, recurse: bool = False) -> list[Path]:
    """Apply *mode* to *path* (and everything below it when *recurse*).

    Symbolic modes are evaluated against each entry's current mode.
    Symlinks are skipped.  Returns the entries whose mode changed.
    """
    root = Path(path)
    entries = [root]
    if recurse and root.is_dir():
        entries.extend(sorted(root.rglob("*")))

    changed: list[Path] = []
    for entry in entries:
        if entry.is_symlink() or not entry.exists():
            continue
        current = _current_mode(entry)
        desired = parse_mode(mode, base=current)
        if desired != current:
            os.chmod(entry, desired)
            changed.append(entry)

    if changed:
        logger.info("Changed mode of %d entr(ies) under %s", len(changed), root)
    else:
        logger.debug("Modes already converged under %s", root)
    return changed


def sync_tree(src: str | Path, dest: str | Path) -> list[str]:
    """Mirror the directory *src* into *dest*, removing stale entries.

    Returns the relative paths that were added, replaced or removed.
    """
    s, d = Path(src), Path(dest)
    changes: list[str] = []
    ensure_directory(d)

    wanted: set[str] = set()
    for entry in sorted(s.rglob("*")):
        rel = entry.relative_to(s).as_posix()
        wanted.add(rel)
        target = d / rel
        if entry.is_dir():
            if target.exists() and not target.is_dir():
                ensure_absent(target)
            if ensure_directory(target):
                changes.append(rel)
        elif entry.is_file():
            if place_file(entry, target):
                changes.append(rel)

    # Deepest first so directories are emptied before they are checked
    for entry in sorted(d.rglob("*"), key=lambda p: len(p.parts), reverse=True):
        rel = entry.relative_to(d).as_posix()
        if rel not in wanted and (entry.is_symlink() or entry.exists()):
            ensure_absent(entry)
            changes.append(rel)

    return changes
