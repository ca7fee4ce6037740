"""Combine fetched server annotations with unsaved local work from the cache."""
from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Set

from .cache_store import CacheEntry, LocalCacheStore
from .identity import is_local_only
from .overlay_layer import Annotation

log = logging.getLogger(__name__)


def merge_annotations(
    server_annotations: Sequence[Annotation],
    entry: Optional[CacheEntry],
    current_image_height: int,
    cache: Optional[LocalCacheStore] = None,
) -> List[Annotation]:
    """Return the working set for an image load.

    Server items come first and are authoritative. Local-only items from a
    cache entry recorded against the same image height are appended unless
    their id is already taken by a server item. A cache entry recorded
    against another height is cleared through ``cache`` and contributes
    nothing.
    """

    merged = list(server_annotations)
    if entry is None:
        return merged

    if entry.image_height != current_image_height:
        log.info(
            "Dropping stale annotation cache for %s (height %s != %s)",
            entry.image_id,
            entry.image_height,
            current_image_height,
        )
        if cache is not None:
            cache.clear(entry.image_id)
        return merged

    taken: Set[str] = {annotation.id for annotation in merged}
    extras: List[Annotation] = []
    for annotation in entry.annotations:
        if not is_local_only(annotation.id) or annotation.id in taken:
            continue
        taken.add(annotation.id)
        extras.append(annotation)
    log.debug("Merged cache for %s: +%d local-only annotations", entry.image_id, len(extras))
    return merged + extras


__all__ = ["merge_annotations"]
