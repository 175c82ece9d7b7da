import json
from pathlib import Path

from pnode_monitor.analytics.history import (
    HISTORY_KEY,
    MAX_HISTORY,
    InMemoryBackend,
    JsonFileBackend,
    RollingHistoryStore,
)
from pnode_monitor.models.nodes import NodeRecord, NodeStatus, utc_now


class _FailingBackend:
    def read(self, key):
        raise OSError("storage unavailable")

    def write(self, key, value):
        raise OSError("quota exceeded")

    def delete(self, key):
        raise OSError("storage unavailable")


def _node(node_id: str = "node-a", **overrides) -> NodeRecord:
    payload = {
        "id": node_id,
        "status": NodeStatus.ONLINE,
        "peer_count": 20,
        "last_seen": utc_now(),
        "latency": 100.0,
    }
    payload.update(overrides)
    return NodeRecord(**payload)


def test_history_is_capped_and_evicts_oldest_first() -> None:
    store = RollingHistoryStore(InMemoryBackend())
    for ts in range(MAX_HISTORY + 5):
        store.append([_node(latency=float(ts))], timestamp=ts)

    entries = store.get("node-a")
    assert len(entries) == MAX_HISTORY
    assert entries[0].timestamp == 5
    assert entries[-1].timestamp == MAX_HISTORY + 4
    assert entries[-1].latency == MAX_HISTORY + 4


def test_append_persists_to_backend() -> None:
    backend = InMemoryBackend()
    RollingHistoryStore(backend).append([_node("a"), _node("b", status=NodeStatus.OFFLINE)], timestamp=1_000)

    raw = backend.read(HISTORY_KEY)
    assert set(raw) == {"a", "b"}
    assert raw["b"][0]["status"] == "offline"
    assert raw["a"][0]["peerCount"] == 20

    reloaded = RollingHistoryStore(backend).load_all()
    assert reloaded["a"][0].timestamp == 1_000


def test_write_failure_is_logged_and_swallowed(caplog) -> None:
    store = RollingHistoryStore(_FailingBackend())
    history = store.append([_node()], timestamp=10)

    assert len(history["node-a"]) == 1
    assert "history_write_failed" in caplog.text


def test_read_failure_yields_empty_history(caplog) -> None:
    store = RollingHistoryStore(_FailingBackend())
    assert store.load_all() == {}
    assert store.get("node-a") == []
    assert "history_read_failed" in caplog.text


def test_invalid_entries_are_skipped(caplog) -> None:
    backend = InMemoryBackend()
    backend.write(
        HISTORY_KEY,
        {"node-a": [{"timestamp": 1, "status": "online"}, {"status": "online"}], "node-b": "garbage"},
    )
    history = RollingHistoryStore(backend).load_all()

    assert len(history["node-a"]) == 1
    assert "node-b" not in history
    assert "history_entry_skipped" in caplog.text


def test_json_file_backend_survives_restart(tmp_path: Path) -> None:
    path = tmp_path / "state" / "history.json"
    RollingHistoryStore(JsonFileBackend(path)).append([_node()], timestamp=7)

    assert path.exists()
    assert RollingHistoryStore(JsonFileBackend(path)).get("node-a")[0].timestamp == 7


def test_corrupt_file_is_treated_as_empty(tmp_path: Path, caplog) -> None:
    path = tmp_path / "history.json"
    path.write_text("{not json", encoding="utf-8")

    assert RollingHistoryStore(JsonFileBackend(path)).load_all() == {}
    assert "history_read_failed" in caplog.text


def test_clear_removes_persisted_history(tmp_path: Path) -> None:
    path = tmp_path / "history.json"
    backend = JsonFileBackend(path)
    backend.write("other_key", {"keep": True})
    store = RollingHistoryStore(backend)
    store.append([_node()], timestamp=1)
    store.clear()

    data = json.loads(path.read_text(encoding="utf-8"))
    assert HISTORY_KEY not in data
    assert data["other_key"] == {"keep": True}
    assert store.get("node-a") == []


def test_non_mapping_entries_are_skipped(caplog) -> None:
    backend = InMemoryBackend()
    backend.write(HISTORY_KEY, {"a": ["garbage", 5, {"timestamp": 3, "status": "online"}]})
    store = RollingHistoryStore(backend)

    history = store.load_all()
    assert [entry.timestamp for entry in history["a"]] == [3]
    assert "history_entry_skipped" in caplog.text
    assert len(store.append([_node("a")], timestamp=4)["a"]) == 2


def test_corrupt_file_is_replaced_on_next_write(tmp_path: Path, caplog) -> None:
    path = tmp_path / "history.json"
    path.write_text("{not json", encoding="utf-8")

    RollingHistoryStore(JsonFileBackend(path)).append([_node()], timestamp=11)

    reloaded = RollingHistoryStore(JsonFileBackend(path)).get("node-a")
    assert [entry.timestamp for entry in reloaded] == [11]
    assert "history_write_failed" not in caplog.text
    assert "history_file_reset" in caplog.text
