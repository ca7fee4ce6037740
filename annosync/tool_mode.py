"""Pan / draw / delete tool modes layered on the overlay's event hooks."""
from __future__ import annotations

import enum
import logging
from typing import Callable, Dict, List, Optional, Tuple

from .overlay_layer import CANCEL, CREATE, SELECT, UPDATE, Annotation, OverlayLayer

log = logging.getLogger(__name__)

REARM_EVENTS = (CREATE, CANCEL, UPDATE)


class ToolMode(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    PAN = "pan"
    DRAW = "draw"
    DELETE = "delete"


class ToolModeController:
    """Finite state machine owning every mode-specific overlay listener.

    Listeners look up :attr:`mode` when they fire, so an event queued before
    a mode switch never acts on behalf of the previous mode.
    """

    def __init__(self, on_delete: Optional[Callable[[Annotation], None]] = None) -> None:
        self._overlay: Optional[OverlayLayer] = None
        self._mode = ToolMode.UNINITIALIZED
        self._on_delete = on_delete
        self._attached: List[Tuple[str, Callable[..., None]]] = []

    @property
    def mode(self) -> ToolMode:
        return self._mode

    @property
    def overlay(self) -> Optional[OverlayLayer]:
        return self._overlay

    def attached_listeners(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for event, _ in self._attached:
            counts[event] = counts.get(event, 0) + 1
        return counts

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def attach(self, overlay: OverlayLayer) -> None:
        """Bind to ``overlay`` once it has attached to the rendered image."""

        if self._overlay is not None and self._overlay is not overlay:
            self.detach()
        self._overlay = overlay
        self.enable_pan()

    def detach(self) -> None:
        self._teardown()
        if self._overlay is not None:
            self._overlay.set_drawing_enabled(False)
        self._overlay = None
        self._mode = ToolMode.UNINITIALIZED

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def enable_pan(self) -> None:
        overlay = self._ready("pan")
        if overlay is None:
            return
        self._teardown()
        overlay.set_drawing_enabled(False)
        self._mode = ToolMode.PAN

    def enable_draw(self) -> None:
        overlay = self._editable("draw")
        if overlay is None:
            return
        self._teardown()
        overlay.set_drawing_enabled(True)
        self._mode = ToolMode.DRAW

        def rearm(*_payload: object) -> None:
            if self._mode is ToolMode.DRAW and self._overlay is overlay:
                overlay.set_drawing_enabled(True)

        for event in REARM_EVENTS:
            self._listen(overlay, event, rearm)

    def enable_delete(self) -> None:
        overlay = self._editable("delete")
        if overlay is None:
            return
        self._teardown()
        overlay.set_drawing_enabled(False)
        self._mode = ToolMode.DELETE

        def delete_on_select(annotation: Optional[Annotation]) -> None:
            if annotation is None or self._mode is not ToolMode.DELETE:
                return
            if overlay.remove_annotation(annotation) is None:
                return
            log.debug("Deleted %s with the delete tool", annotation.id)
            if self._on_delete is not None:
                self._on_delete(annotation)

        self._listen(overlay, SELECT, delete_on_select)

    def toggle_annotations(self, visible: bool) -> None:
        overlay = self._ready("toggle")
        if overlay is None:
            return
        overlay.set_visible(visible)
        if not visible:
            self._teardown()
            overlay.set_drawing_enabled(False)
            self._mode = ToolMode.PAN

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _ready(self, action: str) -> Optional[OverlayLayer]:
        if self._overlay is None:
            log.debug("Ignoring %s request before the overlay is ready", action)
        return self._overlay

    def _editable(self, action: str) -> Optional[OverlayLayer]:
        overlay = self._ready(action)
        if overlay is not None and not overlay.visible:
            log.info("Annotations are hidden; staying in pan mode instead of %s", action)
            self.enable_pan()
            return None
        return overlay

    def _listen(self, overlay: OverlayLayer, event: str, callback: Callable[..., None]) -> None:
        overlay.on(event, callback)
        self._attached.append((event, callback))

    def _teardown(self) -> None:
        overlay = self._overlay
        attached, self._attached = self._attached, []
        if overlay is None:
            return
        for event, callback in attached:
            overlay.off(event, callback)


__all__ = ["REARM_EVENTS", "ToolMode", "ToolModeController"]
