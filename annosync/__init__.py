"""Annotation synchronization engine for the manuscript image viewer."""

from .anno_mapping import Rect, to_backend, to_overlay
from .identity import is_server_backed, server_id
from .merge import merge_annotations
from .viewer import ViewerSession

__all__ = [
    "Rect",
    "ViewerSession",
    "is_server_backed",
    "merge_annotations",
    "server_id",
    "to_backend",
    "to_overlay",
]
