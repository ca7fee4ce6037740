"""Per-image annotation cache and persisted viewer preferences.

Everything written here is advisory: a storage failure only means the next
load starts cold, so no method in this module raises on I/O problems.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

from .kv_store import KeyValueStore
from .overlay_layer import Annotation

log = logging.getLogger(__name__)


def cache_key_for(image_id: str) -> str:
    return f"annotations:{image_id}"


def meta_key_for(image_id: str) -> str:
    return f"annotations:meta:{image_id}"


def unsaved_key_for(image_id: str) -> str:
    return f"unsaved:{image_id}"


def visible_key_for(image_id: str) -> str:
    return f"annotationsVisible:{image_id}"


@dataclass
class CacheEntry:
    image_id: str
    annotations: List[Annotation]
    image_height: Optional[int]


class LocalCacheStore:
    """Snapshot of the working set for each IIIF image identifier."""

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    def read(self, image_id: str) -> Optional[CacheEntry]:
        try:
            raw = self.store.get(cache_key_for(image_id))
            raw_meta = self.store.get(meta_key_for(image_id))
        except OSError as exc:
            log.warning("Annotation cache unavailable for %s: %s", image_id, exc)
            return None
        if raw is None:
            return None

        try:
            items = json.loads(raw)
            if not isinstance(items, list):
                raise ValueError("cached annotations are not a list")
            annotations = [Annotation.from_dict(item) for item in items]
        except (TypeError, ValueError) as exc:
            log.warning("Ignoring corrupt annotation cache for %s: %s", image_id, exc)
            return None

        height: Optional[int] = None
        try:
            meta = json.loads(raw_meta or "{}")
            value = meta.get("imageHeight") if isinstance(meta, dict) else None
            if isinstance(value, int) and not isinstance(value, bool):
                height = value
        except ValueError as exc:
            log.warning("Ignoring corrupt cache metadata for %s: %s", image_id, exc)
        return CacheEntry(image_id=image_id, annotations=annotations, image_height=height)

    def write(self, image_id: str, annotations: Sequence[Annotation], image_height: int) -> None:
        try:
            payload = json.dumps([annotation.to_dict() for annotation in annotations])
            self.store.set(cache_key_for(image_id), payload)
            self.store.set(meta_key_for(image_id), json.dumps({"imageHeight": image_height}))
        except (OSError, TypeError, ValueError) as exc:
            log.warning("Failed to persist %d annotations for %s: %s", len(annotations), image_id, exc)
            return
        log.debug("Cached %d annotations for %s", len(annotations), image_id)

    def clear(self, image_id: str) -> None:
        try:
            self.store.remove(cache_key_for(image_id))
            self.store.remove(meta_key_for(image_id))
        except OSError as exc:
            log.warning("Failed to clear annotation cache for %s: %s", image_id, exc)


class ViewerPrefs:
    """Unsaved-change counter and layer visibility, persisted per image."""

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    def _get(self, key: str) -> Optional[str]:
        try:
            return self.store.get(key)
        except OSError as exc:
            log.warning("Failed to read %s: %s", key, exc)
            return None

    def _set(self, key: str, value: Any) -> None:
        try:
            self.store.set(key, str(value))
        except OSError as exc:
            log.warning("Failed to persist %s: %s", key, exc)

    def load_unsaved(self, image_id: str) -> int:
        raw = self._get(unsaved_key_for(image_id))
        try:
            return max(0, int(raw or 0))
        except ValueError:
            log.warning("Ignoring invalid unsaved counter %r for %s", raw, image_id)
            return 0

    def store_unsaved(self, image_id: str, count: int) -> None:
        self._set(unsaved_key_for(image_id), int(count))

    def clear_unsaved(self, image_id: str) -> None:
        try:
            self.store.remove(unsaved_key_for(image_id))
        except OSError as exc:
            log.warning("Failed to clear unsaved counter for %s: %s", image_id, exc)

    def load_visible(self, image_id: str) -> bool:
        raw = self._get(visible_key_for(image_id))
        return True if raw is None else raw == "true"

    def store_visible(self, image_id: str, visible: bool) -> None:
        self._set(visible_key_for(image_id), "true" if visible else "false")


__all__ = [
    "CacheEntry",
    "LocalCacheStore",
    "ViewerPrefs",
    "cache_key_for",
    "meta_key_for",
    "unsaved_key_for",
    "visible_key_for",
]
