import json

from chatsphere.console.storage import MemoryStorage, StorageError
from chatsphere.console.unread import UNREAD_STORAGE_KEY, UnreadCounts


class RecordingCache:
    def __init__(self):
        self.invalidated = []

    def invalidate(self, prefix=()):
        self.invalidated.append(prefix)
        return []


class ReadOnlyStorage(MemoryStorage):
    def set_item(self, key, value):
        raise StorageError("storage disabled")


class UnreadableStorage(MemoryStorage):
    def get_item(self, key):
        raise StorageError("storage disabled")


def test_increment_persists_and_invalidates_conversations():
    storage = MemoryStorage()
    cache = RecordingCache()
    unread = UnreadCounts(storage, cache)

    assert unread.increment_unread("c1") == 1
    assert unread.increment_unread("c1") == 2
    assert json.loads(storage.get_item(UNREAD_STORAGE_KEY)) == {"c1": 2}
    assert cache.invalidated == [("/api/conversations",), ("/api/conversations",)]

    # a fresh instance sees what was persisted
    assert UnreadCounts(storage).get("c1") == 2


def test_selected_conversation_never_counts():
    storage = MemoryStorage()
    cache = RecordingCache()
    unread = UnreadCounts(storage, cache)
    unread.select("c1")
    cache.invalidated.clear()

    assert unread.increment_unread("c1") == 0
    assert unread.counts == {}
    assert storage.get_item(UNREAD_STORAGE_KEY) is None
    assert cache.invalidated == []


def test_select_resets_and_counting_restarts():
    unread = UnreadCounts(MemoryStorage())
    unread.increment_unread("c1")
    unread.increment_unread("c1")
    unread.select("c1")
    assert unread.get("c1") == 0

    unread.select("c2")
    assert unread.increment_unread("c1") == 1


def test_reset_unknown_conversation_skips_write_but_invalidates():
    storage = MemoryStorage()
    cache = RecordingCache()
    unread = UnreadCounts(storage, cache)
    unread.reset_unread("nobody")
    assert storage.get_item(UNREAD_STORAGE_KEY) is None
    assert cache.invalidated == [("/api/conversations",)]


def test_bad_stored_values_are_ignored():
    assert UnreadCounts(MemoryStorage({UNREAD_STORAGE_KEY: "not json"})).counts == {}
    assert UnreadCounts(MemoryStorage({UNREAD_STORAGE_KEY: "[1, 2]"})).counts == {}
    raw = json.dumps({"a": 3, "b": 0, "c": -1, "d": "5", "e": True, "f": 2.0})
    assert UnreadCounts(MemoryStorage({UNREAD_STORAGE_KEY: raw})).counts == {"a": 3, "f": 2}
    assert UnreadCounts(UnreadableStorage()).counts == {}


def test_non_finite_stored_values_are_ignored():
    raw = '{"c1": 1e999, "c2": 3, "c3": Infinity, "c4": NaN}'
    assert UnreadCounts(MemoryStorage({UNREAD_STORAGE_KEY: raw})).counts == {"c2": 3}


def test_storage_failure_keeps_counts_in_memory():
    unread = UnreadCounts(ReadOnlyStorage())
    assert unread.increment_unread("c1") == 1
    assert unread.increment_unread("c1") == 2
    unread.reset_unread("c1")
    assert unread.get("c1") == 0


def test_overlay_replaces_server_count():
    unread = UnreadCounts(MemoryStorage())
    unread.increment_unread("c1")
    server = [
        {"id": "c1", "metadata": {"unreadCount": 9, "lastMessage": "hi"}},
        {"id": "c2", "metadata": None},
    ]
    shown = unread.overlay(server)
    assert shown[0]["metadata"] == {"unreadCount": 1, "lastMessage": "hi"}
    assert shown[1]["metadata"] == {"unreadCount": 0}
    assert server[0]["metadata"]["unreadCount"] == 9
