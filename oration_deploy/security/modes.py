"""File mode parsing and the permission contract for sensitive files.

Modes are accepted either as integers, octal strings (``"0640"``) or
chmod-style symbolic clauses (``"u+rwx,g-wx,o-rwx"``).  Symbolic modes are
applied on top of a base mode, usually the mode of the source file.
"""

from __future__ import annotations

import re
import stat

from oration_deploy.errors import ConfigError, UnsafePermissionError

_WHO_BITS = {
    "u": {"r": stat.S_IRUSR, "w": stat.S_IWUSR, "x": stat.S_IXUSR},
    "g": {"r": stat.S_IRGRP, "w": stat.S_IWGRP, "x": stat.S_IXGRP},
    "o": {"r": stat.S_IROTH, "w": stat.S_IWOTH, "x": stat.S_IXOTH},
}

_CLAUSE_RE = re.compile(r"^([ugoa]*)((?:[+\-=][rwx]*)+)$")
_OP_RE = re.compile(r"([+\-=])([rwx]*)")
_OCTAL_RE = re.compile(r"^0?[0-7]{3,4}$")

# Bits that must be clear on executables and secrets
UNSAFE_BITS = stat.S_IWGRP | stat.S_IRWXO


def parse_mode(mode: int | str, base: int = 0) -> int:
    """Resolve *mode* into permission bits.

    Parameters
    ----------
    mode:
        Integer, octal string, or comma separated symbolic clauses.
    base:
        Starting permission bits for symbolic modes.

    Raises :class:`ConfigError` for an unparseable mode.
    """
    if isinstance(mode, int):
        return stat.S_IMODE(mode)

    text = mode.strip()
    if _OCTAL_RE.match(text):
        return int(text, 8)

    result = stat.S_IMODE(base)
    for clause in text.split(","):
        match = _CLAUSE_RE.match(clause.strip())
        if match is None:
            raise ConfigError(f"Invalid file mode: {mode!r}", step="permissions")
        who = match.group(1) or "a"
        if "a" in who:
            who = "ugo"
        for op, perms in _OP_RE.findall(match.group(2)):
            for w in set(who):
                bits = 0
                for p in perms:
                    bits |= _WHO_BITS[w][p]
                if op == "+":
                    result |= bits
                elif op == "-":
                    result &= ~bits
                else:
                    all_bits = sum(_WHO_BITS[w].values())
                    result = (result & ~all_bits) | bits
    return result


def is_safe_mode(mode: int) -> bool:
    """Return *True* if *mode* denies group write and all access for others."""
    return not (mode & UNSAFE_BITS)


def require_safe_mode(path: str, mode: int) -> int:
    """Return *mode* unchanged, or raise if it violates the contract."""
    if not is_safe_mode(mode):
        raise UnsafePermissionError(path, mode)
    return mode


def format_mode(mode: int) -> str:
    """Render permission bits the way ``ls -l`` does (``rwxr-x---``)."""
    return stat.filemode(stat.S_IFREG | mode)[1:]
