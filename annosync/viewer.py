"""Annotation session for one manuscript image.

:class:`ViewerSession` wires the pieces together the way the image viewer
does: it resolves the image height, loads and merges annotations into the
overlay, keeps the cache and the unsaved counter current on every create and
delete, exposes the tool modes and runs the save pipeline.
"""
from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from .anno_mapping import Rect, server_to_overlay, to_overlay
from .cache_store import LocalCacheStore, ViewerPrefs
from .client import AnnotationClient, CancelToken, iiif_base_url
from .config import SyncConfig
from .errors import AnnotationSyncError, GeometryError
from .identity import is_local_only
from .kv_store import KeyValueStore, MemoryStore
from .merge import merge_annotations
from .overlay_layer import CREATE, DELETE, Annotation, OverlayLayer
from .save import SavePipeline, SaveResult
from .state import ViewerState
from .tool_mode import ToolMode, ToolModeController

log = logging.getLogger(__name__)

SAVE_KEY = "s"


class ViewerSession:
    def __init__(
        self,
        image_id: str,
        iiif_image: str,
        client: AnnotationClient,
        store: Optional[KeyValueStore] = None,
        *,
        config: Optional[SyncConfig] = None,
        overlay: Optional[OverlayLayer] = None,
    ) -> None:
        self.config = config or SyncConfig()
        self.client = client
        store = store if store is not None else MemoryStore()
        self.cache = LocalCacheStore(store)
        self.prefs = ViewerPrefs(store)
        self.overlay = overlay or OverlayLayer()
        self.state = ViewerState(
            image_id=str(image_id),
            iiif_image=iiif_base_url(iiif_image),
            unsaved=self.prefs.load_unsaved(str(image_id)),
            annotations_visible=self.prefs.load_visible(str(image_id)),
        )
        self.tools = ToolModeController(on_delete=self._handle_delete)
        self.pipeline = SavePipeline(
            client,
            self.overlay,
            self.state,
            self.cache,
            self.prefs,
            max_workers=self.config.max_workers,
        )
        self._cancel = CancelToken()
        self._unsubscribe: List = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def open(self) -> bool:
        """Resolve the image height, attach the tools and load annotations.

        Returns ``False`` when the session was closed before the image
        metadata arrived.
        """

        height = self.client.fetch_image_height(
            self.state.iiif_image,
            fallback=self.config.fallback_image_height,
            cancel=self._cancel,
        )
        if height is None:
            return False
        self.state.image_height = height
        log.info("Image %s height: %d", self.state.image_id, height)

        self._detach_handlers()
        self._unsubscribe = [
            self.overlay.on(CREATE, self._handle_create),
            self.overlay.on(DELETE, self._handle_delete),
        ]
        self.tools.attach(self.overlay)
        self.tools.toggle_annotations(self.state.annotations_visible)
        self.load_annotations()
        return True

    def close(self) -> None:
        self._cancel.cancel()
        self._detach_handlers()
        self.tools.detach()

    @property
    def closed(self) -> bool:
        return self._cancel.cancelled

    def _detach_handlers(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------
    def load_annotations(self) -> List[Annotation]:
        height = self.state.image_height
        if height is None:
            raise AnnotationSyncError("Image height unknown; call open() first")

        try:
            records = self.client.fetch_annotations(self.state.image_id, self.state.classification_id)
        except (AnnotationSyncError, ValueError) as exc:
            log.warning("Failed to load annotations for %s: %s", self.state.image_id, exc)
            records = []
        if self.closed:
            return []

        server: List[Annotation] = []
        for record in records:
            try:
                server.append(server_to_overlay(record, height, self.state.label_for(record.classification)))
            except GeometryError as exc:
                log.warning("Skipping server annotation %s: %s", record.id, exc)

        entry = self.cache.read(self.state.iiif_image)
        merged = merge_annotations(server, entry, height, self.cache)
        self.overlay.set_annotations(merged)
        log.info(
            "Loaded %d annotations for %s (%d from server)",
            len(merged),
            self.state.image_id,
            len(server),
        )
        return merged

    def classification_options(self) -> List[int]:
        """Distinct classification ids used on this image; empty means "all"."""

        try:
            records = self.client.fetch_annotations(self.state.image_id)
        except (AnnotationSyncError, ValueError) as exc:
            log.warning("Failed to load classifications for %s: %s", self.state.image_id, exc)
            return []
        return sorted({record.classification for record in records if isinstance(record.classification, int)})

    def set_classification(self, classification_id: Optional[int], label: Optional[str] = None) -> List[Annotation]:
        self.state.classification_id = classification_id
        if classification_id is not None and label:
            self.state.labels[classification_id] = label
        return self.load_annotations()

    def set_hand(self, hand_id: Optional[int]) -> None:
        self.state.hand_id = hand_id

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------
    @property
    def mode(self) -> ToolMode:
        return self.tools.mode

    def enable_pan(self) -> None:
        self.tools.enable_pan()

    def enable_draw(self) -> None:
        self.tools.enable_draw()

    def enable_delete(self) -> None:
        self.tools.enable_delete()

    def toggle_annotations(self) -> bool:
        visible = not self.state.annotations_visible
        self.state.annotations_visible = visible
        self.prefs.store_visible(self.state.image_id, visible)
        self.tools.toggle_annotations(visible)
        return visible

    def draw(self, rect: Rect) -> Annotation:
        """Commit ``rect`` (backend pixel space) as a new shape."""

        if self.state.image_height is None:
            raise AnnotationSyncError("Image height unknown; call open() first")
        if not self.overlay.drawing_enabled:
            raise AnnotationSyncError("Drawing is not enabled; switch to the draw tool first")
        return self.overlay.draw_shape(to_overlay(rect, self.state.image_height))

    def delete(self, annotation_id: str) -> bool:
        """Delete ``annotation_id`` by selecting it with the delete tool."""

        if self.overlay.get_annotation(annotation_id) is None:
            return False
        if self.tools.mode is not ToolMode.DELETE:
            self.tools.enable_delete()
        if self.tools.mode is not ToolMode.DELETE:
            return False
        self.overlay.select(annotation_id)
        return self.overlay.get_annotation(annotation_id) is None

    def highlight(self, ids: Sequence[str]) -> None:
        self.overlay.highlight(ids)

    def clear_highlights(self) -> None:
        self.overlay.clear_highlights()

    @property
    def working_set(self) -> List[Annotation]:
        return self.overlay.get_annotations()

    # ------------------------------------------------------------------
    # Saving
    # ------------------------------------------------------------------
    def save(self) -> SaveResult:
        return self.pipeline.save()

    def handle_key(self, key: str, *, ctrl: bool = False, meta: bool = False) -> bool:
        """Handle the save chord; returns ``True`` when the key was consumed."""

        if not (ctrl or meta) or key.lower() != SAVE_KEY:
            return False
        if self.state.unsaved > 0:
            self.save()
        else:
            log.debug("Nothing to save for %s", self.state.image_id)
        return True

    @property
    def unsaved(self) -> int:
        return self.state.unsaved

    # ------------------------------------------------------------------
    # Overlay callbacks
    # ------------------------------------------------------------------
    def persist_working_set(self) -> None:
        if self.state.image_height is None:
            return
        self.cache.write(self.state.iiif_image, self.overlay.get_annotations(), self.state.image_height)

    def _set_unsaved(self, count: int) -> None:
        self.state.unsaved = max(0, count)
        self.prefs.store_unsaved(self.state.image_id, self.state.unsaved)

    def _handle_create(self, annotation: Annotation) -> None:
        self.persist_working_set()
        self._set_unsaved(self.state.unsaved + 1)
        log.debug("Created %s; %d unsaved", annotation.id, self.state.unsaved)

    def _handle_delete(self, annotation: Annotation) -> None:
        self.persist_working_set()
        if is_local_only(annotation.id):
            self._set_unsaved(self.state.unsaved - 1)
        log.debug("Deleted %s; %d unsaved", annotation.id, self.state.unsaved)


__all__ = ["SAVE_KEY", "ViewerSession"]
