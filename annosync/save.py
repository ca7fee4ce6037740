"""Commit the overlay's working set to the backend."""
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Tuple

from .anno_mapping import overlay_to_feature, server_to_overlay
from .cache_store import LocalCacheStore, ViewerPrefs
from .client import AnnotationClient, ServerAnnotation
from .errors import AnnotationSyncError, GeometryError
from .identity import make_server_id, server_id
from .overlay_layer import Annotation, OverlayLayer
from .state import ViewerState

log = logging.getLogger(__name__)


@dataclass
class SaveFailure:
    annotation_id: str
    reason: str


@dataclass
class SaveResult:
    created: Dict[str, int] = field(default_factory=dict)
    updated: List[int] = field(default_factory=list)
    failed: List[SaveFailure] = field(default_factory=list)
    refreshed: bool = False
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return not self.skipped and not self.failed

    @property
    def attempted(self) -> int:
        return len(self.created) + len(self.updated) + len(self.failed)


def _image_ref(image_id: str) -> Any:
    return int(image_id) if image_id.isdecimal() else image_id


class SavePipeline:
    """Diff the overlay against the backend and reconcile local state.

    On full success the unsaved counter is reset and the cache is replaced
    with a fresh server listing. When every call fails nothing local changes.
    When only some calls fail, successful creates are re-keyed to their
    server ids, the counter is set to the number of failed items and the
    cache is rewritten from the reconciled overlay.
    """

    def __init__(
        self,
        client: AnnotationClient,
        overlay: OverlayLayer,
        state: ViewerState,
        cache: LocalCacheStore,
        prefs: ViewerPrefs,
        *,
        max_workers: int = 8,
    ) -> None:
        self.client = client
        self.overlay = overlay
        self.state = state
        self.cache = cache
        self.prefs = prefs
        self.max_workers = max(1, int(max_workers))
        self._lock = threading.Lock()

    def save(self) -> SaveResult:
        if not self._lock.acquire(blocking=False):
            log.warning("Save already in progress for %s; ignoring request", self.state.image_id)
            return SaveResult(skipped=True)
        try:
            return self._save()
        finally:
            self._lock.release()

    @property
    def in_progress(self) -> bool:
        return self._lock.locked()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _save(self) -> SaveResult:
        height = self.state.image_height
        if height is None:
            raise AnnotationSyncError("Image height unknown; load the image before saving")

        working = self.overlay.get_annotations()
        log.info("Saving %d annotations for image %s", len(working), self.state.image_id)

        result = SaveResult()
        tasks: List[Tuple[Annotation, Callable[[], ServerAnnotation]]] = []
        for annotation in working:
            try:
                feature = overlay_to_feature(annotation, height)
            except GeometryError as exc:
                log.warning("Skipping %s: %s", annotation.id, exc)
                result.failed.append(SaveFailure(annotation.id, str(exc)))
                continue
            tasks.append((annotation, self._call_for(annotation, feature)))

        if tasks:
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(tasks))) as pool:
                futures = [(annotation, pool.submit(call)) for annotation, call in tasks]
                for annotation, future in futures:
                    try:
                        record = future.result()
                    except (AnnotationSyncError, ValueError) as exc:
                        log.warning("Saving %s failed: %s", annotation.id, exc)
                        result.failed.append(SaveFailure(annotation.id, str(exc)))
                        continue
                    pk = server_id(annotation.id)
                    if pk is None:
                        result.created[annotation.id] = record.id
                    else:
                        result.updated.append(pk)

        if not result.failed:
            self._on_success(result, height)
        elif result.created or result.updated:
            self._on_partial_failure(result, height)
        else:
            log.error(
                "Save failed for all %d annotations of %s; keeping %d unsaved changes",
                len(result.failed),
                self.state.image_id,
                self.state.unsaved,
            )
        return result

    def _call_for(self, annotation: Annotation, feature: Dict[str, Any]) -> Callable[[], ServerAnnotation]:
        pk = server_id(annotation.id)
        if pk is not None:
            return lambda: self.client.patch_annotation(pk, {"geometry": feature})

        classification = self.state.classification_id
        if classification is None:
            classification = annotation.meta.get("classificationId")
        hand = self.state.hand_id
        if hand is None:
            hand = annotation.meta.get("handId")
        payload = {
            "image": _image_ref(self.state.image_id),
            "geometry": feature,
            "classification": classification,
            "hand": hand,
            "components": [],
            "positions": [],
        }
        return lambda: self.client.create_annotation(payload)

    def _on_success(self, result: SaveResult, height: int) -> None:
        self.state.unsaved = 0
        self.prefs.clear_unsaved(self.state.image_id)
        log.info(
            "Saved %d new and %d existing annotations for %s",
            len(result.created),
            len(result.updated),
            self.state.image_id,
        )

        try:
            records = self.client.fetch_annotations(self.state.image_id, self.state.classification_id)
        except AnnotationSyncError as exc:
            log.warning("Saved, but could not refresh annotations for %s: %s", self.state.image_id, exc)
            for old_id, pk in result.created.items():
                self.overlay.replace_id(old_id, make_server_id(pk))
            self.cache.write(self.state.iiif_image, self.overlay.get_annotations(), height)
            return

        refreshed: List[Annotation] = []
        for record in records:
            try:
                refreshed.append(server_to_overlay(record, height, self.state.label_for(record.classification)))
            except GeometryError as exc:
                log.warning("Skipping server annotation %s: %s", record.id, exc)
        self.cache.write(self.state.iiif_image, refreshed, height)
        self.overlay.set_annotations(refreshed)
        result.refreshed = True
        log.info("Refreshed cache for %s with %d annotations", self.state.iiif_image, len(refreshed))

    def _on_partial_failure(self, result: SaveResult, height: int) -> None:
        for old_id, pk in result.created.items():
            self.overlay.replace_id(old_id, make_server_id(pk))
        self.state.unsaved = len(result.failed)
        self.prefs.store_unsaved(self.state.image_id, self.state.unsaved)
        self.cache.write(self.state.iiif_image, self.overlay.get_annotations(), height)
        log.warning(
            "Partial save for %s: %d succeeded, %d failed (%s)",
            self.state.image_id,
            len(result.created) + len(result.updated),
            len(result.failed),
            ", ".join(failure.annotation_id for failure in result.failed),
        )


__all__ = ["SaveFailure", "SavePipeline", "SaveResult"]
