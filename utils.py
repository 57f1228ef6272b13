"""Shared utility functions for context-mcp."""

import re
from datetime import datetime

_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")


def string_hash(text: str) -> int:
    """Signed 32-bit rolling hash: ``h = h * 31 + code_unit``.

    Iterates over UTF-16 code units so the result matches the hash the
    coding agent uses for its project directory names.
    """
    h = 0
    data = text.encode("utf-16-le")
    for i in range(0, len(data), 2):
        h = (h * 31 + int.from_bytes(data[i : i + 2], "little")) & 0xFFFFFFFF
    return h - 0x100000000 if h & 0x80000000 else h


def hash_project_path(project_path: str) -> str:
    """Directory name derived from a project path: abs(hash) in hex.

    Examples:
        hash_project_path("") -> "0"
        hash_project_path("ab") -> "c21"
    """
    return format(abs(string_hash(project_path)), "x")


def dash_project_path(project_path: str) -> str:
    """Directory name with every non-alphanumeric character replaced by '-'.

    Examples:
        /home/me/my_app -> -home-me-my-app
    """
    return _NON_ALNUM.sub("-", project_path)


def now_iso() -> str:
    """Get current timestamp as ISO string."""
    return datetime.now().isoformat()


def escape_filter_value(value: str) -> str:
    """Escape single quotes in filter values to prevent injection."""
    return value.replace("'", "''")
