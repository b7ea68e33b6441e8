"""Security helpers — content hashing and the file permission contract."""

from oration_deploy.security.hasher import Hasher
from oration_deploy.security.modes import (
    format_mode,
    is_safe_mode,
    parse_mode,
    require_safe_mode,
)

__all__ = [
    "Hasher",
    "format_mode",
    "is_safe_mode",
    "parse_mode",
    "require_safe_mode",
]
