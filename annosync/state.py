"""Mutable per-viewer state shared by event handlers and the save pipeline."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional


@dataclass
class ViewerState:
    """Everything a handler may need to read when it fires.

    One instance belongs to one viewer; nothing here is module level, so two
    viewers on the same process never share counters or flags.
    """

    image_id: str
    iiif_image: str
    image_height: Optional[int] = None
    unsaved: int = 0
    annotations_visible: bool = True
    classification_id: Optional[int] = None
    hand_id: Optional[int] = None
    labels: Dict[int, str] = field(default_factory=dict)

    def label_for(self, classification_id: Optional[int]) -> Optional[str]:
        if classification_id is None:
            return None
        return self.labels.get(classification_id)


__all__ = ["ViewerState"]
