"""Small naming and host helpers used by the fixture."""

from __future__ import annotations

import os
import secrets
from pathlib import Path

DEFAULT_MEMORY_MB = 1024


def random_name(prefix: str = "pgtest") -> str:
    """Return a lowercase identifier that is safe as an unquoted database or container name."""

    return f"{prefix}_{secrets.token_hex(6)}"


def generate_password() -> str:
    return secrets.token_hex(16)


def memory_mb() -> int:
    """Physical memory of the host in megabytes."""

    try:
        pages = os.sysconf("SC_PHYS_PAGES")
        page_size = os.sysconf("SC_PAGE_SIZE")
    except (AttributeError, ValueError, OSError):
        return DEFAULT_MEMORY_MB
    if pages <= 0 or page_size <= 0:
        return DEFAULT_MEMORY_MB
    return (pages * page_size) // (1024 * 1024)


def quote_ident(name: str) -> str:
    """Quote a SQL identifier."""

    return '"' + name.replace('"', '""') + '"'


def find_path(path: str | Path, start: Path | None = None) -> Path | None:
    """Resolve a directory relative to `start` or any of its parents."""

    candidate = Path(path)
    if candidate.is_absolute():
        return candidate if candidate.is_dir() else None
    base = (start or Path.cwd()).resolve()
    for directory in (base, *base.parents):
        resolved = directory / candidate
        if resolved.is_dir():
            return resolved
    return None


__all__ = ["find_path", "generate_password", "memory_mb", "quote_ident", "random_name"]
