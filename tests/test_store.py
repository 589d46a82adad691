from datetime import datetime

import pytest
from google.cloud import firestore

from errors import NotFound


def test_create_is_create_if_absent(store):
    assert store.create("things/a", {"n": 1}) is True
    assert store.create("things/a", {"n": 2}) is False
    assert store.get("things/a") == {"n": 1}

def test_update_missing_document_raises(store):
    with pytest.raises(NotFound):
        store.update("things/missing", {"n": 1})

def test_update_applies_transforms_and_dotted_paths(store):
    store.create("things/a", {"tags": ["x"], "n": 1, "nested": {"k": 1}})
    store.update("things/a", {
        "tags":     firestore.ArrayUnion(["x", "y"]),
        "n":        firestore.Increment(2),
        "nested.j": 5,
        "at":       firestore.SERVER_TIMESTAMP,
    })
    doc = store.get("things/a")
    assert doc["tags"] == ["x", "y"]
    assert doc["n"] == 3
    assert doc["nested"] == {"k": 1, "j": 5}
    assert isinstance(doc["at"], datetime)

    store.update("things/a", {"tags": firestore.ArrayRemove(["x"])})
    assert store.get("things/a")["tags"] == ["y"]

def test_set_merge_merges_nested_maps(store):
    store.set("rec/u1", {"signals": {"u2": "one"}, "muted": True}, merge=True)
    store.set("rec/u1", {"signals": {"u3": "two"}}, merge=True)
    store.set("rec/u1", {"signals": {"u2": "three"}}, merge=True)
    assert store.get("rec/u1") == {"signals": {"u2": "three", "u3": "two"}, "muted": True}

def test_transaction_applies_only_returned_fields(store):
    store.create("things/a", {"n": 1, "other": "keep"})
    result = store.transaction("things/a", lambda data: ({"n": data["n"] + 1}, "done"))
    assert result == "done"
    assert store.get("things/a") == {"n": 2, "other": "keep"}

def test_transaction_error_leaves_document_untouched(store):
    store.create("things/a", {"n": 1})

    def boom(data):
        raise ValueError("nope")

    with pytest.raises(ValueError):
        store.transaction("things/a", boom)
    assert store.get("things/a") == {"n": 1}

def test_latest_returns_newest_first(store):
    for i in range(5):
        store.set(f"coll/m{i}", {"ts": i})
    store.set("other/x", {"ts": 99})
    assert [d["ts"] for d in store.latest("coll", "ts", 3)] == [4, 3, 2]

def test_watch_document_delivers_initial_changes_and_gone(store):
    seen = []
    sub = store.watch_document("things/a", seen.append)
    store.create("things/a", {"n": 1})
    store.update("things/a", {"n": 2})
    store.delete("things/a")
    sub.unsubscribe()
    store.create("things/a", {"n": 3})
    assert seen == [None, {"n": 1}, {"n": 2}, None]

def test_watch_collection_reports_change_types(store):
    store.create("coll/a", {"v": 1})
    events = []
    sub = store.watch_collection("coll", lambda changes, initial: events.extend(
        (c.type, c.id, initial) for c in changes
    ))
    store.create("coll/b", {"v": 2})
    store.update("coll/a", {"v": 3})
    store.delete("coll/b")
    store.create("coll/sub/deeper/x", {"v": 0})
    sub.unsubscribe()
    sub.unsubscribe()
    assert events == [
        ("added", "a", True),
        ("added", "b", False),
        ("modified", "a", False),
        ("removed", "b", False),
    ]
