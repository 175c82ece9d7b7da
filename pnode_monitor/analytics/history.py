from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Protocol

from pnode_monitor.models.nodes import MetricSnapshot, NodeRecord, to_epoch_ms, utc_now

logger = logging.getLogger(__name__)

HISTORY_KEY = "xpic_node_history_v1"
MAX_HISTORY = 50

HistoryStore = dict[str, list[MetricSnapshot]]


class KeyValueBackend(Protocol):
    def read(self, key: str) -> Any: ...

    def write(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...


class InMemoryBackend:
    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def read(self, key: str) -> Any:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    def write(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileBackend:
    """Almacén clave-valor en un único archivo JSON.

    Cada escritura reescribe el documento completo (last-write-wins).
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        data = json.loads(self.path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError(f"Contenido inválido en {self.path}")
        return data

    def read(self, key: str) -> Any:
        return self._load().get(key)

    def _load_for_update(self) -> dict[str, Any]:
        try:
            return self._load()
        except ValueError as exc:
            # Un documento corrupto se sustituye en la siguiente escritura.
            logger.warning("event=history_file_reset path=%s error=%s", self.path, exc)
            return {}

    def _dump(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")
        tmp_path.replace(self.path)

    def write(self, key: str, value: Any) -> None:
        data = self._load_for_update()
        data[key] = value
        self._dump(data)

    def delete(self, key: str) -> None:
        if not self.path.exists():
            return
        data = self._load_for_update()
        data.pop(key, None)
        self._dump(data)


class RollingHistoryStore:
    """Historial acotado por nodo con persistencia tolerante a fallos."""

    def __init__(
        self,
        backend: KeyValueBackend,
        key: str = HISTORY_KEY,
        max_history: int = MAX_HISTORY,
    ) -> None:
        self.backend = backend
        self.key = key
        self.max_history = max_history
        self._history: HistoryStore | None = None
        self._lock = threading.Lock()

    def load_all(self) -> HistoryStore:
        try:
            raw = self.backend.read(self.key)
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("event=history_read_failed key=%s error=%s", self.key, exc)
            return {}
        if not isinstance(raw, dict):
            return {}

        history: HistoryStore = {}
        for node_id, entries in raw.items():
            if not isinstance(entries, list):
                continue
            snapshots: list[MetricSnapshot] = []
            for entry in entries:
                if not isinstance(entry, dict):
                    logger.warning("event=history_entry_skipped key=%s node=%s", self.key, node_id)
                    continue
                try:
                    snapshots.append(MetricSnapshot.from_dict(entry))
                except (KeyError, TypeError, ValueError):
                    logger.warning("event=history_entry_skipped key=%s node=%s", self.key, node_id)
            history[str(node_id)] = snapshots
        return history

    def get(self, node_id: str) -> list[MetricSnapshot]:
        if self._history is None:
            self._history = self.load_all()
        return list(self._history.get(node_id, []))

    def append(self, nodes: list[NodeRecord], timestamp: int | None = None) -> HistoryStore:
        now = timestamp if timestamp is not None else to_epoch_ms(utc_now())
        with self._lock:
            current = self._history if self._history is not None else self.load_all()
            updated: HistoryStore = dict(current)
            for node in nodes:
                entries = list(updated.get(node.id, []))
                entries.append(MetricSnapshot.from_node(node, now))
                if len(entries) > self.max_history:
                    del entries[: len(entries) - self.max_history]
                updated[node.id] = entries
            self._history = updated
            self._persist(updated)
        return {node_id: list(entries) for node_id, entries in updated.items()}

    def clear(self) -> None:
        with self._lock:
            self._history = {}
            try:
                self.backend.delete(self.key)
            except Exception as exc:  # pylint: disable=broad-except
                logger.warning("event=history_clear_failed key=%s error=%s", self.key, exc)

    def _persist(self, history: HistoryStore) -> None:
        payload = {node_id: [entry.to_dict() for entry in entries] for node_id, entries in history.items()}
        try:
            self.backend.write(self.key, payload)
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("event=history_write_failed key=%s error=%s", self.key, exc)
