from __future__ import annotations

import sys
import threading
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

import pytest

ROOT = Path(__file__).resolve().parents[1]

if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from annosync.anno_mapping import Rect, feature_to_rect, rect_to_feature  # noqa: E402
from annosync.client import AnnotationClientError, ServerAnnotation  # noqa: E402


class FakeBackend:
    """In-process stand-in for :class:`annosync.client.AnnotationClient`."""

    def __init__(self, height: int = 3000) -> None:
        self.height = height
        self.records: Dict[int, ServerAnnotation] = {}
        self.next_id = 1
        self.fail_xs: Set[int] = set()
        self.fail_fetch = False
        self.calls: List[Tuple[str, object]] = []
        self._lock = threading.Lock()

    def add(self, pk: int, rect: Rect, *, image: str = "7", classification: Optional[int] = None) -> None:
        self.records[pk] = ServerAnnotation(
            id=pk,
            image=image,
            geometry=rect_to_feature(rect),
            classification=classification,
        )
        self.next_id = max(self.next_id, pk + 1)

    def rects(self) -> Dict[int, Rect]:
        return {pk: feature_to_rect(record.geometry) for pk, record in sorted(self.records.items())}

    def _check(self, geometry: dict) -> None:
        if feature_to_rect(geometry).x in self.fail_xs:
            raise AnnotationClientError("POST failed: 500 boom", status_code=500)

    def fetch_annotations(self, image_id, classification_id=None) -> List[ServerAnnotation]:
        self.calls.append(("fetch", classification_id))
        if self.fail_fetch:
            raise AnnotationClientError("Failed to load annotations: 503", status_code=503)
        return [
            record
            for _, record in sorted(self.records.items())
            if classification_id is None or record.classification == classification_id
        ]

    def create_annotation(self, payload: dict) -> ServerAnnotation:
        self._check(payload["geometry"])
        with self._lock:
            pk = self.next_id
            self.next_id += 1
            self.calls.append(("create", pk))
            record = ServerAnnotation(
                id=pk,
                image=payload["image"],
                geometry=payload["geometry"],
                classification=payload.get("classification"),
                hand=payload.get("hand"),
            )
            self.records[pk] = record
        return record

    def patch_annotation(self, pk: int, partial: dict) -> ServerAnnotation:
        self._check(partial["geometry"])
        with self._lock:
            self.calls.append(("patch", pk))
            record = self.records[pk]
            record.geometry = partial["geometry"]
        return record

    def fetch_image_height(self, iiif_image, *, fallback=2000, cancel=None):
        if cancel is not None and cancel.cancelled:
            return None
        return self.height


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()
