from __future__ import annotations

import pytest

from annosync import ViewerSession
from annosync.anno_mapping import Rect, to_overlay
from annosync.cache_store import LocalCacheStore
from annosync.errors import AnnotationSyncError
from annosync.kv_store import MemoryStore
from annosync.overlay_layer import CREATE, DELETE, Annotation
from annosync.tool_mode import ToolMode

IIIF = "https://iiif.example.org/iiif/ms-12-f1r.jp2"


def cached_ids(store, iiif=IIIF):
    entry = LocalCacheStore(store).read(iiif)
    return None if entry is None else [annotation.id for annotation in entry.annotations]


@pytest.fixture
def store(backend) -> MemoryStore:
    backend.add(1, Rect(10, 10, 50, 50))
    memory = MemoryStore({"unsaved:7": "1"})
    LocalCacheStore(memory).write(
        IIIF,
        [
            Annotation(id="db:1", selector=to_overlay(Rect(10, 10, 50, 50), 3000)),
            Annotation(id="local-9", selector=to_overlay(Rect(300, 300, 40, 40), 3000)),
        ],
        3000,
    )
    return memory


@pytest.fixture
def session(backend, store) -> ViewerSession:
    viewer = ViewerSession("7", IIIF + "/info.json", backend, store)
    assert viewer.open() is True
    return viewer


def test_open_merges_server_and_unsaved_local_work(session):
    assert session.state.image_height == 3000
    assert [annotation.id for annotation in session.working_set] == ["db:1", "local-9"]
    assert session.unsaved == 1
    assert session.mode is ToolMode.PAN


def test_edit_and_save_round_trip(session, backend, store):
    assert session.delete("local-9") is True
    assert session.unsaved == 0
    assert cached_ids(store) == ["db:1"]

    session.enable_draw()
    drawn = session.draw(Rect(100, 100, 20, 20))
    assert session.unsaved == 1
    assert store.get("unsaved:7") == "1"
    assert cached_ids(store) == ["db:1", drawn.id]

    result = session.save()

    assert result.ok
    assert session.unsaved == 0
    assert store.get("unsaved:7") is None
    assert cached_ids(store) == ["db:1", "db:2"]
    assert backend.rects()[2] == Rect(100, 100, 20, 20)


def test_deleting_server_item_keeps_counter(session, store):
    assert session.delete("db:1") is True

    assert session.unsaved == 1
    assert cached_ids(store) == ["local-9"]


def test_delete_unknown_id_is_noop(session):
    assert session.delete("db:404") is False
    assert session.mode is ToolMode.PAN


def test_draw_keeps_tool_armed_and_counts_each_shape(session):
    session.enable_draw()
    for index in range(3):
        session.draw(Rect(100 + index * 50, 100, 20, 20))

    assert session.unsaved == 4
    assert session.mode is ToolMode.DRAW


def test_draw_requires_draw_tool(session):
    with pytest.raises(AnnotationSyncError):
        session.draw(Rect(1, 1, 5, 5))


def test_keyboard_delete_of_new_shape_reverts_counter(session):
    session.enable_draw()
    drawn = session.draw(Rect(100, 100, 20, 20))
    session.overlay.select(drawn.id)

    session.overlay.delete_selected()

    assert session.unsaved == 1
    assert drawn.id not in session.overlay.ids()


def test_save_chord_only_saves_pending_changes(session, backend):
    assert session.handle_key("s") is False
    assert session.handle_key("x", ctrl=True) is False

    session.delete("local-9")
    assert session.handle_key("s", ctrl=True) is True
    assert not any(call == "create" or call == "patch" for call, _ in backend.calls)

    session.enable_draw()
    session.draw(Rect(100, 100, 20, 20))
    assert session.handle_key("S", meta=True) is True
    assert session.unsaved == 0
    assert ("create", 2) in backend.calls


def test_toggle_visibility_persists_and_forces_pan(session, backend, store):
    session.enable_draw()

    assert session.toggle_annotations() is False
    assert session.mode is ToolMode.PAN
    assert store.get("annotationsVisible:7") == "false"

    reopened = ViewerSession("7", IIIF, backend, store)
    reopened.open()
    assert reopened.state.annotations_visible is False
    assert reopened.overlay.visible is False
    reopened.enable_draw()
    assert reopened.mode is ToolMode.PAN


def test_close_before_metadata_aborts_open(backend, store):
    viewer = ViewerSession("7", IIIF, backend, store)
    viewer.close()

    assert viewer.open() is False
    assert viewer.overlay.ids() == []
    assert viewer.mode is ToolMode.UNINITIALIZED


def test_failed_load_keeps_local_work(backend, store):
    backend.fail_fetch = True
    viewer = ViewerSession("7", IIIF, backend, store)

    assert viewer.open() is True
    assert viewer.overlay.ids() == ["local-9"]


def test_height_change_discards_cache(backend, store):
    backend.height = 4000
    viewer = ViewerSession("7", IIIF, backend, store)
    viewer.open()

    assert viewer.overlay.ids() == ["db:1"]
    assert cached_ids(store) is None


def test_classification_filter_and_labels(session, backend):
    backend.add(2, Rect(5, 5, 10, 10), classification=4)
    backend.add(3, Rect(6, 6, 10, 10), classification=3)
    backend.add(4, Rect(7, 7, 10, 10), classification=4)

    assert session.classification_options() == [3, 4]

    loaded = session.set_classification(4, "Initial")

    assert [annotation.id for annotation in loaded] == ["db:2", "db:4", "local-9"]
    assert loaded[0].body[0]["value"] == "Initial"
    assert loaded[0].meta["classificationId"] == 4


def test_sessions_do_not_share_state(backend):
    first = ViewerSession("7", IIIF, backend, MemoryStore())
    second = ViewerSession("8", "https://iiif.example.org/iiif/other.jp2", backend, MemoryStore())
    first.open()
    second.open()

    first.enable_draw()
    first.draw(Rect(1, 1, 5, 5))

    assert first.unsaved == 1
    assert second.unsaved == 0
    assert second.mode is ToolMode.PAN


def test_reopening_does_not_double_count_edits(session):
    assert session.open() is True

    session.enable_draw()
    session.draw(Rect(1, 1, 5, 5))

    assert session.unsaved == 2
    assert session.overlay.listener_count(CREATE) == 2
    assert session.overlay.listener_count(DELETE) == 1


def test_corrupt_cache_item_does_not_break_open(backend):
    store = MemoryStore(
        {
            "annotations:" + IIIF: '[{"id": "#a", "target": {"selector": {"value": "xywh=pixel:1,2,3,4"}}, "body": 5}]',
            "annotations:meta:" + IIIF: '{"imageHeight": 3000}',
        }
    )
    backend.add(1, Rect(10, 10, 50, 50))
    viewer = ViewerSession("7", IIIF, backend, store)

    assert viewer.open() is True
    assert viewer.overlay.ids() == ["db:1"]


def test_draw_rejects_fractional_rect(session):
    session.enable_draw()

    with pytest.raises(AnnotationSyncError):
        session.draw(Rect(1.5, 1, 5, 5))

    assert session.unsaved == 1
