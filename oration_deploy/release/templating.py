"""Textual, field-level substitution for staged configuration files.

Values are replaced in place by key on top-level ``key: value`` lines.
Everything else in the file (comments, ordering, other fields, trailing
whitespace) is preserved byte for byte.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from pathlib import Path

from oration_deploy.errors import ConfigError

logger = logging.getLogger(__name__)


def _field_pattern(key: str) -> re.Pattern[str]:
    # "key:" followed by blanks, or an empty "key:" line
    return re.compile(rf"^({re.escape(key)}:(?:[ \t]+|(?=\r?$)))([^\r\n]*)", re.MULTILINE)


def _replacement(prefix: str, value: str) -> str:
    if prefix.endswith((" ", "\t")):
        return prefix + value
    return f"{prefix} {value}"


def substitute_fields(text: str, overrides: Mapping[str, str]) -> str:
    """Return *text* with each top-level field in *overrides* rewritten.

    Raises :class:`ConfigError` if any key is not present as a top-level
    ``key: value`` line.
    """
    result = text
    for key, value in overrides.items():
        pattern = _field_pattern(key)
        result, count = pattern.subn(lambda m: _replacement(m.group(1), str(value)), result)
        if count == 0:
            raise ConfigError(
                f"Expected field {key!r} not found in configuration",
                step="stage_config",
            )
        logger.debug("Rewrote field %s (%d occurrence(s))", key, count)
    return result


def substitute_file(path: str | Path, overrides: Mapping[str, str]) -> Path:
    """Apply :func:`substitute_fields` to the file at *path* in place."""
    p = Path(path)
    try:
        original = p.read_bytes().decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ConfigError(f"{p} is not valid UTF-8: {exc}", step="stage_config") from exc
    p.write_bytes(substitute_fields(original, overrides).encode("utf-8"))
    return p
