"""Server-backed vs local-only annotation ids.

Annotations loaded from (or saved to) the backend carry ids of the form
``db:<pk>``. Ids minted by the overlay for freshly drawn shapes never use
that prefix, so the two populations can be told apart from the id alone.
"""
from __future__ import annotations

from typing import Any, Optional

DB_PREFIX = "db:"


def server_id(annotation_id: Any) -> Optional[int]:
    """Return the backend primary key encoded in ``annotation_id``.

    ``None`` is returned for local-only ids and for ``db:`` ids whose key
    cannot be parsed; the function never raises.
    """

    if not isinstance(annotation_id, str) or not annotation_id.startswith(DB_PREFIX):
        return None
    key = annotation_id[len(DB_PREFIX):].strip()
    if not key.isdecimal():
        return None
    return int(key)


def is_server_backed(annotation_id: Any) -> bool:
    return server_id(annotation_id) is not None


def is_local_only(annotation_id: Any) -> bool:
    return not is_server_backed(annotation_id)


def make_server_id(pk: int) -> str:
    return f"{DB_PREFIX}{int(pk)}"


__all__ = ["DB_PREFIX", "is_local_only", "is_server_backed", "make_server_id", "server_id"]
