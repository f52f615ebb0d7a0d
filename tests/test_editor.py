"""
tests/test_editor.py
"""
from __future__ import annotations

import copy
import random
import threading

import pytest

from linkinbio.page import (
    DEFAULT_DOCUMENT,
    Debouncer,
    DocumentError,
    EditorSession,
    ItemNotFound,
    SQLiteStore,
    StoreError,
    app,
    move_item,
    new_item,
    normalize_document,
    remove_item,
    reorder_items,
    update_item,
)


# ───────────────────────── helpers ────────────────────────────────────
class FakeTimer:
    """Stand-in for threading.Timer that only fires when told to."""

    made: list["FakeTimer"] = []

    def __init__(self, interval, fn, args=()):
        self.interval = interval
        self.fn = fn
        self.args = args
        self.cancelled = False
        self.started = False
        FakeTimer.made.append(self)

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.fn(*self.args)


class MemoryStore:
    def __init__(self, doc=None, fail: str | None = None):
        self.saved: list[dict] = []
        self.doc = doc
        self.fail = fail

    def load(self):
        return normalize_document(self.doc)

    def save(self, doc):
        if self.fail:
            raise StoreError(self.fail)
        self.saved.append(copy.deepcopy(doc))


def _items(n: int) -> list[dict]:
    return [{"id": str(i), "type": "text", "content": f"t{i}", "enabled": True} for i in range(n)]


@pytest.fixture(autouse=True)
def _reset_timers():
    FakeTimer.made.clear()


# ───────────────────────── list operations ────────────────────────────
def test_reorder_lands_at_target_index():
    items = _items(5)
    out = reorder_items(items, "0", "3")
    assert [it["id"] for it in out] == ["1", "2", "3", "0", "4"]
    out = reorder_items(items, "4", "1")
    assert [it["id"] for it in out] == ["0", "4", "1", "2", "3"]
    assert [it["id"] for it in items] == ["0", "1", "2", "3", "4"]  # input untouched


def test_reorder_property_random():
    rng = random.Random(1234)
    for _ in range(200):
        n = rng.randint(1, 8)
        items = _items(n)
        a, b = rng.randrange(n), rng.randrange(n)
        out = reorder_items(items, str(a), str(b))
        assert out[b]["id"] == str(a)
        others_before = [it["id"] for it in items if it["id"] != str(a)]
        others_after = [it["id"] for it in out if it["id"] != str(a)]
        assert others_before == others_after


def test_reorder_unknown_id():
    with pytest.raises(ItemNotFound):
        reorder_items(_items(2), "0", "nope")


@pytest.mark.parametrize(
    "index, direction, expected",
    [
        (1, "up", ["1", "0", "2"]),
        (1, "down", ["0", "2", "1"]),
        (0, "up", ["0", "1", "2"]),
        (2, "down", ["0", "1", "2"]),
    ],
)
def test_move_item(index, direction, expected):
    out = move_item(_items(3), index, direction)
    assert [it["id"] for it in out] == expected


def test_move_item_bad_direction():
    with pytest.raises(DocumentError):
        move_item(_items(3), 0, "sideways")
    with pytest.raises(DocumentError):
        move_item(_items(3), 0, ["up"])


def test_new_item_defaults():
    link = new_item("link", now_ms=1700000000000)
    assert link == {
        "id": "1700000000000",
        "type": "link",
        "title": "New link",
        "url": "https://",
        "icon": "",
        "enabled": True,
        "layout": "medium",
    }
    assert new_item("ad", now_ms=5)["adHtml"] == ""
    with pytest.raises(DocumentError):
        new_item("poll")


def test_remove_and_update_item():
    items = _items(3)
    assert [it["id"] for it in remove_item(items, "1")] == ["0", "2"]
    with pytest.raises(ItemNotFound):
        remove_item(items, "9")

    out = update_item(items, "2", {"content": "changed", "enabled": False})
    assert out[2]["content"] == "changed" and out[2]["enabled"] is False
    assert items[2]["content"] == "t2"
    with pytest.raises(DocumentError, match="unknown field"):
        update_item(items, "2", {"title": "texts have no title"})


# ───────────────────────── debouncer ──────────────────────────────────
def test_debouncer_only_last_trigger_fires():
    calls = []
    d = Debouncer(1.2, lambda: calls.append(1), timer_factory=FakeTimer)
    d.trigger()
    d.trigger()
    d.trigger()
    assert d.pending
    first, second, last = FakeTimer.made
    assert first.cancelled and second.cancelled and not last.cancelled
    first.fire()  # stale timer that slipped through
    assert calls == []
    last.fire()
    assert calls == [1]
    assert not d.pending


def test_debouncer_cancel_and_flush():
    calls = []
    d = Debouncer(1.2, lambda: calls.append(1), timer_factory=FakeTimer)
    d.trigger()
    d.cancel()
    FakeTimer.made[-1].fire()
    assert calls == [] and not d.pending

    assert d.flush() is False
    d.trigger()
    assert d.flush() is True
    assert calls == [1]


def test_debouncer_with_real_timer():
    done = threading.Event()
    d = Debouncer(0.01, done.set)
    d.trigger()
    assert done.wait(2)


# ───────────────────────── editor session ─────────────────────────────
def test_session_state_machine():
    store = MemoryStore(DEFAULT_DOCUMENT)
    ed = EditorSession(store, timer_factory=FakeTimer)
    assert ed.state == "idle"

    ed.update_profile({"name": "Grace"})
    assert ed.state == "pending"
    assert ed.pending
    assert store.saved == []

    with app.app_context():
        FakeTimer.made[-1].fire()
    assert ed.state == "persisted"
    assert store.saved[-1]["profile"]["name"] == "Grace"


def test_session_debounces_bursts():
    store = MemoryStore(DEFAULT_DOCUMENT)
    ed = EditorSession(store, timer_factory=FakeTimer)
    for name in ("G", "Gr", "Gra", "Grac", "Grace"):
        ed.update_profile({"name": name})
    live = [t for t in FakeTimer.made if not t.cancelled]
    assert len(live) == 1
    live[0].fire()
    assert len(store.saved) == 1
    assert store.saved[0]["profile"]["name"] == "Grace"


def test_session_without_autosave_stays_editing():
    store = MemoryStore(DEFAULT_DOCUMENT)
    ed = EditorSession(store, autosave=False, timer_factory=FakeTimer)
    ed.update_theme({"buttonStyle": "pill"})
    assert ed.state == "editing"
    assert FakeTimer.made == []
    assert ed.save_now() is True
    assert store.saved[-1]["profile"]["theme"]["buttonStyle"] == "pill"


def test_session_save_now_cancels_pending_autosave():
    store = MemoryStore(DEFAULT_DOCUMENT)
    ed = EditorSession(store, timer_factory=FakeTimer)
    ed.update_site({"siteTitle": "Hi"})
    assert ed.save_now() is True
    assert not ed.pending
    FakeTimer.made[-1].fire()
    assert len(store.saved) == 1


def test_session_invalid_patch_leaves_copy_untouched():
    store = MemoryStore(DEFAULT_DOCUMENT)
    ed = EditorSession(store, timer_factory=FakeTimer)
    before = copy.deepcopy(ed.doc)
    with pytest.raises(DocumentError):
        ed.update_theme({"buttonColor": "red-ish"})
    assert ed.doc == before
    assert ed.state == "idle"


def test_session_failed_save_records_error():
    store = MemoryStore(DEFAULT_DOCUMENT, fail="disk full")
    ed = EditorSession(store, autosave=False)
    ed.add_item("text")
    assert ed.save_now() is False
    assert ed.state == "error"
    assert ed.last_error == "disk full"


def test_session_items():
    store = MemoryStore({"profile": {}, "links": []})
    ed = EditorSession(store, autosave=False)
    a = ed.add_item("link", {"title": "A", "url": "https://a.example"})
    b = ed.add_item("text")
    c = ed.add_item("ad")
    assert [it["id"] for it in ed.doc["links"]] == [a["id"], b["id"], c["id"]]
    ed.reorder(c["id"], a["id"])
    assert [it["type"] for it in ed.doc["links"]] == ["ad", "link", "text"]
    ed.move(b["id"], "up")
    assert [it["type"] for it in ed.doc["links"]] == ["ad", "text", "link"]
    ed.update_item(a["id"], {"enabled": False})
    ed.remove_item(c["id"])
    assert [it["id"] for it in ed.doc["links"]] == [b["id"], a["id"]]
    assert ed.doc["links"][1]["enabled"] is False


def test_save_in_flight_guard():
    entered = threading.Event()
    release = threading.Event()

    class SlowStore(MemoryStore):
        def save(self, doc):
            entered.set()
            release.wait(5)
            super().save(doc)

    store = SlowStore(DEFAULT_DOCUMENT)
    ed = EditorSession(store, autosave=False)
    results = []
    worker = threading.Thread(target=lambda: results.append(ed.save_now()))
    worker.start()
    assert entered.wait(5)
    assert ed.saving
    assert ed.save_now() is False  # second save refused while first runs
    release.set()
    worker.join(5)
    assert results == [True]
    assert len(store.saved) == 1


def test_edit_during_save_is_saved_afterwards():
    entered = threading.Event()
    release = threading.Event()

    class SlowStore(MemoryStore):
        def save(self, doc):
            entered.set()
            release.wait(5)
            super().save(doc)

    store = SlowStore(DEFAULT_DOCUMENT)
    ed = EditorSession(store, timer_factory=FakeTimer)
    ed.update_profile({"name": "first"})
    worker = threading.Thread(target=ed.save_now)
    worker.start()
    assert entered.wait(5)

    ed.update_profile({"name": "second"})
    with app.app_context():
        FakeTimer.made[-1].fire()  # refused: first save still running
    release.set()
    worker.join(5)

    assert [d["profile"]["name"] for d in store.saved] == ["first"]
    assert ed.state == "pending"
    assert ed.pending
    with app.app_context():
        FakeTimer.made[-1].fire()
    assert [d["profile"]["name"] for d in store.saved] == ["first", "second"]
    assert ed.state == "persisted"


def test_session_persists_through_sqlite(client):
    ed = EditorSession(SQLiteStore(), autosave=False)
    ed.update_profile({"description": "from the editor"})
    assert ed.save_now()
    assert SQLiteStore().load()["profile"]["description"] == "from the editor"


