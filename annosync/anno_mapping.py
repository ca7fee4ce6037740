"""Convert annotation geometry between the backend and the overlay.

The backend stores rectangles in image pixels with the origin in the top-left
corner (y grows downwards), serialised as a closed GeoJSON polygon ring. The
overlay addresses shapes with a media-fragment selector
(``xywh=pixel:x,y,w,h``) whose y axis is flipped against the full-resolution
image height.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from .client import ServerAnnotation
from .errors import GeometryError
from .identity import make_server_id
from .overlay_layer import Annotation

Number = Union[int, float]

MEDIA_FRAGMENTS = "http://www.w3.org/TR/media-frags/"
_NUM = r"(-?\d+(?:\.\d+)?)"
_XYWH = re.compile(rf"xywh=(?:pixel:)?{_NUM},{_NUM},{_NUM},{_NUM}")


@dataclass(frozen=True)
class Rect:
    """Axis-aligned rectangle in whole backend pixels."""

    x: int
    y: int
    width: int
    height: int


def _number(text: str) -> Number:
    value = float(text)
    return int(value) if value.is_integer() else value


def _check_height(image_height: Any) -> int:
    if isinstance(image_height, bool) or not isinstance(image_height, int) or image_height <= 0:
        raise ValueError(f"image_height must be a positive integer, got {image_height!r}")
    return image_height


def _pixel(name: str, value: Any) -> int:
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise GeometryError(f"Rect.{name} must be a non-negative integer pixel value, got {value!r}")
    return value


def _check_rect(rect: Rect) -> Rect:
    return Rect(
        x=_pixel("x", rect.x),
        y=_pixel("y", rect.y),
        width=_pixel("width", rect.width),
        height=_pixel("height", rect.height),
    )


def format_selector(x: int, y: int, w: int, h: int) -> str:
    return f"xywh=pixel:{x},{y},{w},{h}"


def parse_selector(selector: Union[str, Dict[str, Any]]) -> tuple:
    value = selector.get("value", "") if isinstance(selector, dict) else selector
    match = _XYWH.search(value or "")
    if not match:
        raise GeometryError(f"Annotation has no xywh FragmentSelector: {value!r}")
    return tuple(_number(part) for part in match.groups())


def to_overlay(rect: Rect, image_height: int) -> Dict[str, Any]:
    """Map ``rect`` to the overlay's FragmentSelector.

    Fields must be whole, non-negative pixels; anything else raises
    :class:`GeometryError`.
    """

    image_height = _check_height(image_height)
    rect = _check_rect(rect)
    flipped = image_height - rect.y - rect.height
    return {
        "type": "FragmentSelector",
        "conformsTo": MEDIA_FRAGMENTS,
        "value": format_selector(rect.x, flipped, rect.width, rect.height),
    }


def to_backend(selector: Union[str, Dict[str, Any]], image_height: int) -> Rect:
    """Inverse of :func:`to_overlay` for the same ``image_height``.

    Sub-pixel selectors drawn on the overlay are rounded to whole pixels.
    """

    image_height = _check_height(image_height)
    x, flipped, w, h = (round(value) for value in parse_selector(selector))
    return Rect(x=x, y=image_height - flipped - h, width=w, height=h)


# ----------------------------------------------------------------------
# Backend polygon payloads
# ----------------------------------------------------------------------


def rect_to_feature(rect: Rect) -> Dict[str, Any]:
    x1, y1 = rect.x, rect.y
    x2, y2 = rect.x + rect.width, rect.y + rect.height
    ring = [[x1, y1], [x1, y2], [x2, y2], [x2, y1], [x1, y1]]
    return {
        "type": "Feature",
        "geometry": {"type": "Polygon", "coordinates": [ring]},
        "properties": {"saved": 0},
    }


def feature_to_rect(feature: Dict[str, Any]) -> Rect:
    """Bounding rectangle, in whole pixels, of the first ring of a polygon feature."""

    geometry = feature.get("geometry", feature) if isinstance(feature, dict) else None
    try:
        ring = geometry["coordinates"][0]
        xs = [point[0] for point in ring]
        ys = [point[1] for point in ring]
        min_x, max_x = round(min(xs)), round(max(xs))
        min_y, max_y = round(min(ys)), round(max(ys))
    except (KeyError, IndexError, TypeError, ValueError) as exc:
        raise GeometryError(f"Unsupported backend geometry: {feature!r}") from exc
    return Rect(x=min_x, y=min_y, width=max_x - min_x, height=max_y - min_y)


# ----------------------------------------------------------------------
# Whole annotations
# ----------------------------------------------------------------------


def server_to_overlay(record: ServerAnnotation, image_height: int, label: Optional[str] = None) -> Annotation:
    rect = feature_to_rect(record.geometry)
    body: List[Dict[str, Any]] = []
    if label:
        body.append({"type": "TextualBody", "purpose": "commenting", "value": label})
    meta: Dict[str, Any] = {}
    if record.classification is not None:
        meta["classificationId"] = record.classification
    if record.hand is not None:
        meta["handId"] = record.hand
    return Annotation(
        id=make_server_id(record.id),
        selector=to_overlay(rect, image_height),
        body=body,
        meta=meta,
    )


def overlay_to_feature(annotation: Annotation, image_height: int) -> Dict[str, Any]:
    return rect_to_feature(to_backend(annotation.selector, image_height))


__all__ = [
    "MEDIA_FRAGMENTS",
    "Rect",
    "feature_to_rect",
    "format_selector",
    "overlay_to_feature",
    "parse_selector",
    "rect_to_feature",
    "server_to_overlay",
    "to_backend",
    "to_overlay",
]
