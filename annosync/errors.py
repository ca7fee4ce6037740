"""Exception types shared across the synchronization engine."""
from __future__ import annotations


class AnnotationSyncError(RuntimeError):
    """Base class for errors raised by :mod:`annosync`."""


class GeometryError(AnnotationSyncError, ValueError):
    """Raised when a selector or backend feature cannot be interpreted."""
