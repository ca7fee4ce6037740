"""In-memory model of the annotation overlay drawn on top of the image.

The browser viewer delegates shape rendering to an overlay library. The
engine only relies on a small part of that library's API: adding, removing
and listing annotations, toggling drawing and visibility, and the event hooks
fired when the user commits, updates, selects or deletes a shape. This module
implements exactly that surface so the engine can be driven without a
browser.
"""
from __future__ import annotations

import copy
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Union

log = logging.getLogger(__name__)

Listener = Callable[..., None]

CREATE = "createAnnotation"
UPDATE = "updateAnnotation"
DELETE = "deleteAnnotation"
SELECT = "selectAnnotation"
CANCEL = "cancelSelected"
EVENTS = (CREATE, UPDATE, DELETE, SELECT, CANCEL)


@dataclass
class Annotation:
    """Annotation in the shape the overlay stores and the cache persists."""

    id: str
    selector: Dict[str, Any]
    body: List[Dict[str, Any]] = field(default_factory=list)
    meta: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "type": "Annotation",
            "target": {"selector": dict(self.selector)},
        }
        if self.body:
            data["body"] = [dict(item) for item in self.body]
        if self.meta:
            data["_meta"] = dict(self.meta)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Annotation":
        if not isinstance(data, dict):
            raise ValueError(f"Annotation must be an object, got {type(data).__name__}")
        annotation_id = data.get("id")
        if not isinstance(annotation_id, str) or not annotation_id:
            raise ValueError("Annotation is missing a string id")
        target = data.get("target") or {}
        selector = target.get("selector") if isinstance(target, dict) else None
        if not isinstance(selector, dict):
            raise ValueError(f"Annotation {annotation_id} has no selector")
        body = data.get("body") or []
        meta = data.get("_meta") or {}
        if not isinstance(body, list):
            raise ValueError(f"Annotation {annotation_id} has a non-list body")
        if not isinstance(meta, dict):
            raise ValueError(f"Annotation {annotation_id} has non-object _meta")
        return cls(
            id=annotation_id,
            selector=dict(selector),
            body=[dict(item) for item in body if isinstance(item, dict)],
            meta=dict(meta),
        )


AnnotationRef = Union[Annotation, str]


def _new_local_id() -> str:
    return f"#{uuid.uuid4()}"


class OverlayLayer:
    """Single source of truth for the shapes currently on the image."""

    def __init__(self, id_factory: Callable[[], str] = _new_local_id) -> None:
        self._annotations: Dict[str, Annotation] = {}
        self._order: List[str] = []
        self._selection: Optional[str] = None
        self._highlights: Set[str] = set()
        self._drawing_enabled = False
        self._visible = True
        self._id_factory = id_factory

        self._listeners: Dict[str, List[Listener]] = {event: [] for event in EVENTS}

    # ------------------------------------------------------------------
    # Listener management
    # ------------------------------------------------------------------
    def on(self, event: str, callback: Listener) -> Callable[[], None]:
        if event not in self._listeners:
            raise ValueError(f"Unknown event '{event}'.")
        listeners = self._listeners[event]
        listeners.append(callback)

        def unsubscribe() -> None:
            self.off(event, callback)

        return unsubscribe

    def off(self, event: str, callback: Listener) -> None:
        listeners = self._listeners.get(event, [])
        if callback in listeners:
            listeners.remove(callback)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    def _emit(self, event: str, *payload: object) -> None:
        for callback in tuple(self._listeners.get(event, [])):
            callback(*payload)

    # ------------------------------------------------------------------
    # Programmatic API
    # ------------------------------------------------------------------
    def add_annotation(self, annotation: Annotation) -> None:
        if not isinstance(annotation, Annotation):
            raise TypeError(f"Expected Annotation, got {type(annotation).__name__}")
        if annotation.id in self._annotations:
            raise ValueError(f"Annotation {annotation.id} already on the overlay")
        self._annotations[annotation.id] = copy.deepcopy(annotation)
        self._order.append(annotation.id)

    def remove_annotation(self, annotation: AnnotationRef) -> Optional[Annotation]:
        """Remove ``annotation`` without firing :data:`DELETE`."""

        annotation_id = annotation.id if isinstance(annotation, Annotation) else annotation
        removed = self._annotations.pop(annotation_id, None)
        if removed is None:
            return None
        self._order.remove(annotation_id)
        self._highlights.discard(annotation_id)
        if self._selection == annotation_id:
            self._selection = None
        return removed

    def replace_id(self, old_id: str, new_id: str) -> bool:
        annotation = self._annotations.pop(old_id, None)
        if annotation is None:
            return False
        annotation.id = new_id
        self._annotations[new_id] = annotation
        self._order[self._order.index(old_id)] = new_id
        if self._selection == old_id:
            self._selection = new_id
        if old_id in self._highlights:
            self._highlights.discard(old_id)
            self._highlights.add(new_id)
        return True

    def set_annotations(self, annotations: Sequence[Annotation]) -> None:
        self.clear()
        for annotation in annotations:
            self.add_annotation(annotation)

    def clear(self) -> None:
        self._annotations.clear()
        self._order.clear()
        self._selection = None
        self._highlights.clear()

    def get_annotations(self) -> List[Annotation]:
        return [copy.deepcopy(self._annotations[annotation_id]) for annotation_id in self._order]

    def get_annotation(self, annotation_id: str) -> Optional[Annotation]:
        annotation = self._annotations.get(annotation_id)
        return copy.deepcopy(annotation) if annotation is not None else None

    def ids(self) -> List[str]:
        return list(self._order)

    def set_drawing_enabled(self, enabled: bool) -> None:
        self._drawing_enabled = bool(enabled)

    def set_visible(self, visible: bool) -> None:
        self._visible = bool(visible)

    def highlight(self, ids: Sequence[str]) -> None:
        self._highlights = {annotation_id for annotation_id in ids if annotation_id in self._annotations}

    def clear_highlights(self) -> None:
        self._highlights.clear()

    # ------------------------------------------------------------------
    # User gestures
    # ------------------------------------------------------------------
    def draw_shape(self, selector: Dict[str, Any], body: Optional[List[Dict[str, Any]]] = None) -> Annotation:
        """Finish a draw gesture and commit the new shape.

        The overlay leaves drawing mode after every committed shape; callers
        that want to keep drawing must re-enable it from a :data:`CREATE`
        listener.
        """

        if not self._visible:
            raise RuntimeError("Cannot draw on a hidden annotation layer")
        if not self._drawing_enabled:
            raise RuntimeError("Drawing is not enabled")
        annotation = Annotation(id=self._id_factory(), selector=dict(selector), body=list(body or []))
        self.add_annotation(annotation)
        self._drawing_enabled = False
        log.debug("Committed shape %s", annotation.id)
        self._emit(CREATE, copy.deepcopy(annotation))
        return annotation

    def update_shape(self, annotation_id: str, selector: Dict[str, Any]) -> Annotation:
        annotation = self._annotations.get(annotation_id)
        if annotation is None:
            raise KeyError(f"Annotation {annotation_id} not found")
        previous = copy.deepcopy(annotation)
        annotation.selector = dict(selector)
        self._drawing_enabled = False
        self._emit(UPDATE, copy.deepcopy(annotation), previous)
        return annotation

    def select(self, annotation_id: Optional[str]) -> None:
        if annotation_id is not None and annotation_id not in self._annotations:
            return
        self._selection = annotation_id
        annotation = self._annotations.get(annotation_id) if annotation_id else None
        self._emit(SELECT, copy.deepcopy(annotation) if annotation else None)

    def cancel_selected(self) -> None:
        selected = self._selection
        self._selection = None
        self._drawing_enabled = False
        self._emit(CANCEL, selected)

    def delete_selected(self) -> Optional[Annotation]:
        """Keyboard delete: remove the selected shape and fire :data:`DELETE`."""

        if self._selection is None:
            return None
        removed = self.remove_annotation(self._selection)
        if removed is not None:
            self._emit(DELETE, copy.deepcopy(removed))
        return removed

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def drawing_enabled(self) -> bool:
        return self._drawing_enabled

    @property
    def visible(self) -> bool:
        return self._visible

    @property
    def selection(self) -> Optional[str]:
        return self._selection

    @property
    def highlights(self) -> Set[str]:
        return set(self._highlights)


__all__ = [
    "CANCEL",
    "CREATE",
    "DELETE",
    "EVENTS",
    "SELECT",
    "UPDATE",
    "Annotation",
    "OverlayLayer",
]
