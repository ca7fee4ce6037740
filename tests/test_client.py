from __future__ import annotations

import pytest
import requests

from annosync import client as client_module
from annosync.client import (
    AnnotationClient,
    AnnotationClientError,
    CancelToken,
    ServerAnnotation,
    iiif_base_url,
)

FEATURE = {
    "type": "Feature",
    "geometry": {"type": "Polygon", "coordinates": [[[1, 2], [1, 6], [4, 6], [4, 2], [1, 2]]]},
    "properties": {"saved": 0},
}


class StubResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class StubSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def request(self, method, url, **kwargs):
        self.requests.append((method, url, kwargs))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    delays = []
    monkeypatch.setattr(client_module.time, "sleep", delays.append)
    return delays


def make_client(*responses) -> AnnotationClient:
    return AnnotationClient("http://backend.test/", retries=3, backoff=0.5, session=StubSession(*responses))


def test_init_requires_base_url():
    with pytest.raises(ValueError):
        AnnotationClient("")


def test_fetch_annotations_sends_filters_and_parses_records():
    record = {"id": 4, "image": 7, "geometry": FEATURE, "classification": 2, "hand": None}
    client = make_client(StubResponse(200, [record]))

    records = client.fetch_annotations("7", 2)

    method, url, kwargs = client.session.requests[0]
    assert (method, url) == ("GET", "http://backend.test/annotations")
    assert kwargs["params"] == {"image": "7", "classification": "2"}
    assert kwargs["timeout"] == 10.0
    assert records == [ServerAnnotation(id=4, image=7, geometry=FEATURE, classification=2)]


def test_fetch_retries_server_errors_with_backoff(no_sleep):
    client = make_client(
        StubResponse(503),
        requests.ConnectionError("reset"),
        StubResponse(200, []),
    )

    assert client.fetch_annotations("7") == []
    assert no_sleep == [0.5, 1.0]
    assert "classification" not in client.session.requests[-1][2]["params"]


def test_fetch_gives_up_after_retries():
    client = make_client(StubResponse(429), StubResponse(500), StubResponse(502))

    with pytest.raises(AnnotationClientError) as excinfo:
        client.fetch_annotations("7")

    assert excinfo.value.status_code == 502


def test_fetch_rejects_non_list_payload():
    client = make_client(StubResponse(200, {"results": []}))

    with pytest.raises(AnnotationClientError):
        client.fetch_annotations("7")


def test_create_is_not_retried(no_sleep):
    client = make_client(StubResponse(503, text="busy"), StubResponse(201, {"id": 9, "geometry": FEATURE}))

    with pytest.raises(AnnotationClientError) as excinfo:
        client.create_annotation({"image": 7, "geometry": FEATURE})

    assert excinfo.value.status_code == 503
    assert len(client.session.requests) == 1
    assert no_sleep == []


def test_create_and_patch_return_records():
    client = make_client(
        StubResponse(201, {"id": 9, "image": 7, "geometry": FEATURE}),
        StubResponse(200, {"id": 3, "image": 7, "geometry": FEATURE}),
    )

    created = client.create_annotation({"image": 7, "geometry": FEATURE})
    patched = client.patch_annotation(3, {"geometry": FEATURE})

    assert created.id == 9
    assert patched.id == 3
    assert client.session.requests[0][:2] == ("POST", "http://backend.test/annotations")
    assert client.session.requests[1][:2] == ("PATCH", "http://backend.test/annotations/3")
    assert client.session.requests[1][2]["json"] == {"geometry": FEATURE}


def test_patch_network_error_is_wrapped():
    client = make_client(requests.Timeout("slow"))

    with pytest.raises(AnnotationClientError):
        client.patch_annotation(3, {"geometry": FEATURE})


@pytest.mark.parametrize("payload", [{"geometry": FEATURE}, {"id": "x", "geometry": FEATURE}, {"id": 1}])
def test_server_annotation_rejects_bad_records(payload):
    with pytest.raises(AnnotationClientError):
        ServerAnnotation.from_json(payload)


def test_iiif_base_url_strips_info_json():
    assert iiif_base_url("https://iiif.test/img.jp2/info.json") == "https://iiif.test/img.jp2"
    assert iiif_base_url("https://iiif.test/img.jp2/") == "https://iiif.test/img.jp2"


def test_image_height_reads_info_json():
    client = make_client(StubResponse(200, {"width": 2000, "height": 3000}))

    assert client.fetch_image_height("https://iiif.test/img.jp2") == 3000
    assert client.session.requests[0][1] == "https://iiif.test/img.jp2/info.json"


@pytest.mark.parametrize(
    "response",
    [
        StubResponse(404),
        StubResponse(200, {"width": 10}),
        StubResponse(200, {"height": True}),
        StubResponse(200, ValueError("not json")),
    ],
)
def test_image_height_falls_back(response):
    client = make_client(response)

    assert client.fetch_image_height("https://iiif.test/img.jp2", fallback=2000) == 2000


def test_image_height_discarded_after_cancel():
    token = CancelToken()
    client = make_client(StubResponse(200, {"height": 3000}))
    token.cancel()

    assert client.fetch_image_height("https://iiif.test/img.jp2", cancel=token) is None
