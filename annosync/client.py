"""Backend annotation API and IIIF metadata client.

Small, focused client for the manuscript backend:
- Lists annotations for an image, optionally filtered by classification
- Creates and patches annotation records
- Reads the full-resolution pixel height from a IIIF ``info.json``

Features:
- Exponential backoff on connection errors, 429 and 5xx for idempotent GETs
- POST/PATCH are sent exactly once so a retry can never duplicate a record
- Raises AnnotationClientError on unrecoverable errors
"""
from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

from .errors import AnnotationSyncError

log = logging.getLogger(__name__)

DEFAULT_BASE = "http://localhost:8000"
DEFAULT_FALLBACK_HEIGHT = 2000
_INFO_SUFFIX = re.compile(r"/info\.json$")


class AnnotationClientError(AnnotationSyncError):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class CancelToken:
    """Cancellation flag tied to the lifetime of a viewer."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class ServerAnnotation:
    """Annotation record as returned by the backend."""

    id: int
    image: Any
    geometry: Dict[str, Any]
    classification: Optional[int] = None
    hand: Optional[int] = None
    components: List[Dict[str, Any]] = field(default_factory=list)
    positions: List[int] = field(default_factory=list)

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "ServerAnnotation":
        try:
            pk = int(data["id"])
        except (KeyError, TypeError, ValueError) as exc:
            raise AnnotationClientError(f"Annotation record without a valid id: {data!r}") from exc
        geometry = data.get("geometry")
        if not isinstance(geometry, dict):
            raise AnnotationClientError(f"Annotation {pk} has no geometry")
        return cls(
            id=pk,
            image=data.get("image"),
            geometry=geometry,
            classification=data.get("classification"),
            hand=data.get("hand"),
            components=list(data.get("components") or []),
            positions=list(data.get("positions") or []),
        )


def iiif_base_url(iiif_image: str) -> str:
    """Strip a trailing ``/info.json`` (and slashes) from a IIIF image URL."""

    return _INFO_SUFFIX.sub("", iiif_image.strip()).rstrip("/")


class AnnotationClient:
    def __init__(
        self,
        base_url: str = DEFAULT_BASE,
        *,
        timeout: float = 10.0,
        retries: int = 4,
        backoff: float = 0.5,
        session: Optional[requests.Session] = None,
    ):
        """
        base_url: backend root, e.g. ``http://localhost:8000``
        timeout: per-request timeout in seconds
        retries: attempts for idempotent requests before giving up
        backoff: initial sleep between retries, doubled after each attempt
        """
        if not base_url:
            raise ValueError("Backend base URL required")
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        self.retries = max(1, int(retries))
        self.backoff = backoff

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}{path}"

    def _request_with_backoff(self, method: str, path: str, **kwargs) -> requests.Response:
        url = self._url(path)
        kwargs.setdefault("timeout", self.timeout)
        backoff = self.backoff
        last_status: Optional[int] = None
        last_error: Optional[Exception] = None
        for attempt in range(self.retries):
            try:
                resp = self.session.request(method, url, **kwargs)
            except requests.RequestException as e:
                log.warning("%s %s failed (attempt %d), retrying: %s", method, url, attempt + 1, e)
                last_error = e
                time.sleep(backoff)
                backoff *= 2
                continue
            if resp.status_code == 429 or 500 <= resp.status_code < 600:
                log.warning("%s %s returned %d, backing off %.1fs", method, url, resp.status_code, backoff)
                last_status = resp.status_code
                time.sleep(backoff)
                backoff *= 2
                continue
            return resp
        raise AnnotationClientError(
            f"Request to {url} failed after {self.retries} attempts "
            f"(last status {last_status}, last error {last_error})",
            status_code=last_status,
        )

    def _request_once(self, method: str, path: str, **kwargs) -> requests.Response:
        url = self._url(path)
        kwargs.setdefault("timeout", self.timeout)
        try:
            return self.session.request(method, url, **kwargs)
        except requests.RequestException as e:
            raise AnnotationClientError(f"{method} {url} failed: {e}") from e

    # ------------------------------------------------------------------
    # Annotations
    # ------------------------------------------------------------------
    def fetch_annotations(self, image_id: Any, classification_id: Optional[Any] = None) -> List[ServerAnnotation]:
        params: Dict[str, str] = {"image": str(image_id)}
        if classification_id is not None:
            params["classification"] = str(classification_id)
        resp = self._request_with_backoff("GET", "/annotations", params=params)
        if resp.status_code != 200:
            raise AnnotationClientError(
                f"Failed to load annotations: {resp.status_code} {resp.text}", status_code=resp.status_code
            )
        payload = resp.json()
        if not isinstance(payload, list):
            raise AnnotationClientError(f"Expected a list of annotations, got {type(payload).__name__}")
        records = [ServerAnnotation.from_json(item) for item in payload]
        log.debug("Fetched %d annotations for image %s", len(records), image_id)
        return records

    def create_annotation(self, payload: Dict[str, Any]) -> ServerAnnotation:
        resp = self._request_once("POST", "/annotations", json=payload)
        if resp.status_code not in (200, 201):
            raise AnnotationClientError(f"POST failed: {resp.status_code} {resp.text}", status_code=resp.status_code)
        return ServerAnnotation.from_json(resp.json())

    def patch_annotation(self, pk: int, partial: Dict[str, Any]) -> ServerAnnotation:
        resp = self._request_once("PATCH", f"/annotations/{pk}", json=partial)
        if resp.status_code != 200:
            raise AnnotationClientError(f"PATCH failed: {resp.status_code} {resp.text}", status_code=resp.status_code)
        return ServerAnnotation.from_json(resp.json())

    # ------------------------------------------------------------------
    # IIIF
    # ------------------------------------------------------------------
    def fetch_image_info(self, iiif_image: str) -> Dict[str, Any]:
        url = f"{iiif_base_url(iiif_image)}/info.json"
        resp = self._request_with_backoff("GET", url)
        if resp.status_code != 200:
            raise AnnotationClientError(f"IIIF info: {resp.status_code}", status_code=resp.status_code)
        info = resp.json()
        if not isinstance(info, dict):
            raise AnnotationClientError("IIIF info is not a JSON object")
        return info

    def fetch_image_height(
        self,
        iiif_image: str,
        *,
        fallback: int = DEFAULT_FALLBACK_HEIGHT,
        cancel: Optional[CancelToken] = None,
    ) -> Optional[int]:
        """Return the full-resolution pixel height of ``iiif_image``.

        Any failure yields ``fallback``. ``None`` is returned when ``cancel``
        was triggered while the request was in flight.
        """

        try:
            info = self.fetch_image_info(iiif_image)
            height = info.get("height")
            if isinstance(height, bool) or not isinstance(height, (int, float)) or height <= 0:
                raise AnnotationClientError(f"IIIF info has no usable height: {height!r}")
            result = int(height)
        except (AnnotationClientError, ValueError) as exc:
            log.warning("Falling back to image height %d for %s: %s", fallback, iiif_image, exc)
            result = fallback
        if cancel is not None and cancel.cancelled:
            log.debug("Discarding image height for %s, viewer closed", iiif_image)
            return None
        return result


__all__ = [
    "DEFAULT_BASE",
    "DEFAULT_FALLBACK_HEIGHT",
    "AnnotationClient",
    "AnnotationClientError",
    "CancelToken",
    "ServerAnnotation",
    "iiif_base_url",
]
