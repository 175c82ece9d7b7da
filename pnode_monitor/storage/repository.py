from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from pnode_monitor.models.nodes import (
    Anomaly,
    NetworkSnapshot,
    NodeLocation,
    NodeRecord,
    NodeStatus,
    Severity,
    parse_timestamp,
    utc_now,
)

SEVERITY_RANK = {
    Severity.CRITICAL.value: 4,
    Severity.HIGH.value: 3,
    Severity.MEDIUM.value: 2,
    Severity.LOW.value: 1,
}

MAX_ALERT_LIMIT = 500
MAX_ALERT_HOURS = 168
MAX_HISTORY_HOURS = 720


def _clamp_hours(hours: int, upper: int) -> int:
    return max(1, min(upper, int(hours)))


def _iso(value: datetime) -> str:
    # Texto UTC de ancho fijo: el orden lexicográfico coincide con el cronológico.
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _status(value: str | None) -> NodeStatus:
    try:
        return NodeStatus(value)
    except ValueError:
        return NodeStatus.UNKNOWN


def _decode_alert(row: sqlite3.Row) -> dict[str, Any]:
    item = dict(row)
    item["details"] = json.loads(item["details"]) if item["details"] else None
    item["acknowledged"] = bool(item["acknowledged"])
    item["resolved"] = bool(item["resolved"])
    return item


class MonitorRepository:
    """Persistencia SQLite de la ruta de ingesta: nodos, historial, red y alertas."""

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS node_snapshot (
                    id TEXT PRIMARY KEY,
                    public_key TEXT,
                    status TEXT NOT NULL,
                    version TEXT,
                    region TEXT,
                    latitude REAL,
                    longitude REAL,
                    peer_count INTEGER NOT NULL,
                    is_validator INTEGER NOT NULL DEFAULT 0,
                    vote_account TEXT,
                    commission REAL,
                    last_seen TEXT,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS node_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    node_id TEXT NOT NULL,
                    ts TEXT NOT NULL,
                    status TEXT NOT NULL,
                    peer_count INTEGER NOT NULL,
                    latency REAL,
                    storage_used REAL,
                    storage_capacity REAL,
                    uptime REAL,
                    health_score INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS network_snapshot (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    ts TEXT NOT NULL,
                    payload TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS alerts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    node_id TEXT,
                    type TEXT NOT NULL,
                    severity TEXT NOT NULL,
                    message TEXT NOT NULL,
                    details TEXT NOT NULL,
                    acknowledged INTEGER NOT NULL DEFAULT 0,
                    resolved INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    resolved_at TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS chain_metrics (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    ts TEXT NOT NULL,
                    tps REAL,
                    block_time_ms REAL,
                    slot INTEGER,
                    epoch INTEGER
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_node_history_node_ts ON node_history (node_id, ts)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_alerts_node_type ON alerts (node_id, type, created_at)")

    def upsert_node(self, node: NodeRecord, now: datetime | None = None) -> None:
        now = now or utc_now()
        location = node.location or NodeLocation()
        commission = node.metadata.get("commission")
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO node_snapshot (
                    id, public_key, status, version, region, latitude, longitude, peer_count,
                    is_validator, vote_account, commission, last_seen, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    public_key = excluded.public_key,
                    status = excluded.status,
                    version = excluded.version,
                    region = excluded.region,
                    latitude = excluded.latitude,
                    longitude = excluded.longitude,
                    peer_count = excluded.peer_count,
                    is_validator = excluded.is_validator,
                    vote_account = excluded.vote_account,
                    commission = excluded.commission,
                    last_seen = excluded.last_seen,
                    updated_at = excluded.updated_at
                """,
                (
                    node.id,
                    node.public_key,
                    node.status.value,
                    node.software_version,
                    location.country or location.region,
                    location.latitude,
                    location.longitude,
                    node.peer_count,
                    int(node.metadata.get("isValidator") is True),
                    node.metadata.get("voteAccount"),
                    commission if isinstance(commission, (int, float)) else None,
                    _iso(node.last_seen),
                    _iso(now),
                ),
            )

    def previous_nodes(self, node_ids: list[str]) -> dict[str, NodeRecord]:
        if not node_ids:
            return {}
        placeholders = ", ".join("?" for _ in node_ids)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT id, status, peer_count, last_seen FROM node_snapshot WHERE id IN ({placeholders})",
                node_ids,
            ).fetchall()
        previous: dict[str, NodeRecord] = {}
        for row in rows:
            previous[row["id"]] = NodeRecord(
                id=row["id"],
                status=_status(row["status"]),
                peer_count=row["peer_count"] or 0,
                last_seen=parse_timestamp(row["last_seen"]),
            )
        return previous

    def list_nodes(self, page: int = 1, page_size: int = 100) -> tuple[list[NodeRecord], int]:
        page = max(1, page)
        page_size = min(500, max(10, page_size))
        with self._connect() as conn:
            total = conn.execute("SELECT COUNT(*) FROM node_snapshot").fetchone()[0]
            rows = conn.execute(
                "SELECT * FROM node_snapshot ORDER BY updated_at DESC LIMIT ? OFFSET ?",
                (page_size, (page - 1) * page_size),
            ).fetchall()
        nodes = []
        for row in rows:
            region = row["region"]
            nodes.append(
                NodeRecord(
                    id=row["id"],
                    status=_status(row["status"]),
                    peer_count=row["peer_count"] or 0,
                    last_seen=parse_timestamp(row["last_seen"]),
                    public_key=row["public_key"],
                    software_version=row["version"],
                    location=(
                        NodeLocation(country=region, region=region, latitude=row["latitude"], longitude=row["longitude"])
                        if region
                        else None
                    ),
                    metadata={
                        "isValidator": bool(row["is_validator"]),
                        "voteAccount": row["vote_account"],
                        "commission": row["commission"],
                    },
                )
            )
        return nodes, total

    def add_node_history(self, node: NodeRecord, health_score: int, timestamp: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO node_history (
                    node_id, ts, status, peer_count, latency, storage_used, storage_capacity, uptime, health_score
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    node.id,
                    _iso(timestamp),
                    node.status.value,
                    node.peer_count,
                    node.latency,
                    node.storage_used,
                    node.storage_capacity,
                    node.uptime,
                    health_score,
                ),
            )

    def node_history(self, node_id: str | None = None, hours: int = 24, now: datetime | None = None) -> list[dict[str, Any]]:
        now = now or utc_now()
        since = now - timedelta(hours=_clamp_hours(hours, MAX_HISTORY_HOURS))
        query = "SELECT * FROM node_history WHERE ts >= ?"
        params: list[Any] = [_iso(since)]
        if node_id:
            query += " AND node_id = ?"
            params.append(node_id)
        query += " ORDER BY ts ASC LIMIT ?"
        params.append(1000 if node_id else 5000)
        with self._connect() as conn:
            return [dict(row) for row in conn.execute(query, params).fetchall()]

    def add_network_snapshot(self, snapshot: NetworkSnapshot) -> None:
        ts = datetime.fromtimestamp(snapshot.timestamp / 1000, tz=timezone.utc)
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO network_snapshot (ts, payload) VALUES (?, ?)",
                (_iso(ts), json.dumps(snapshot.to_dict(), ensure_ascii=False)),
            )

    def network_history(self, hours: int = 24, now: datetime | None = None) -> list[NetworkSnapshot]:
        now = now or utc_now()
        since = now - timedelta(hours=_clamp_hours(hours, MAX_HISTORY_HOURS))
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT payload FROM network_snapshot WHERE ts >= ? ORDER BY ts ASC LIMIT 1000",
                (_iso(since),),
            ).fetchall()
        return [NetworkSnapshot.from_dict(json.loads(row["payload"])) for row in rows]

    def add_chain_metrics(
        self,
        tps: float | None,
        block_time_ms: float | None,
        slot: int | None,
        epoch: int | None,
        now: datetime | None = None,
    ) -> None:
        now = now or utc_now()
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO chain_metrics (ts, tps, block_time_ms, slot, epoch) VALUES (?, ?, ?, ?, ?)",
                (_iso(now), tps, block_time_ms, slot, epoch),
            )

    def chain_metrics(self, hours: int = 24, now: datetime | None = None) -> list[dict[str, Any]]:
        now = now or utc_now()
        since = now - timedelta(hours=_clamp_hours(hours, MAX_ALERT_HOURS))
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM chain_metrics WHERE ts >= ? ORDER BY ts ASC",
                (_iso(since),),
            ).fetchall()
            return [dict(row) for row in rows]

    def has_recent_alert(self, node_id: str, anomaly_type: str, since: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM alerts
                WHERE node_id = ? AND type = ? AND resolved = 0 AND created_at >= ?
                LIMIT 1
                """,
                (node_id, anomaly_type, _iso(since)),
            ).fetchone()
        return row is not None

    def save_alerts(self, anomalies: list[Anomaly]) -> int:
        if not anomalies:
            return 0
        with self._connect() as conn:
            conn.executemany(
                """
                INSERT INTO alerts (node_id, type, severity, message, details, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        anomaly.node_id,
                        anomaly.type.value,
                        anomaly.severity.value,
                        anomaly.message,
                        json.dumps(anomaly.details, ensure_ascii=False),
                        _iso(anomaly.timestamp),
                    )
                    for anomaly in anomalies
                ],
            )
        return len(anomalies)

    def list_alerts(
        self,
        severity: str | None = None,
        node_id: str | None = None,
        resolved: bool | None = None,
        hours: int | None = None,
        limit: int = 100,
        now: datetime | None = None,
    ) -> list[dict[str, Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if severity:
            clauses.append("a.severity = ?")
            params.append(severity)
        if node_id:
            clauses.append("a.node_id = ?")
            params.append(node_id)
        if resolved is not None:
            clauses.append("a.resolved = ?")
            params.append(int(resolved))
        if hours:
            since = (now or utc_now()) - timedelta(hours=_clamp_hours(hours, MAX_ALERT_HOURS))
            clauses.append("a.created_at >= ?")
            params.append(_iso(since))

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rank = " ".join(f"WHEN '{name}' THEN {value}" for name, value in SEVERITY_RANK.items())
        query = f"""
            SELECT a.*, n.id AS node_known, n.public_key, n.region, n.version, n.is_validator
            FROM alerts a LEFT JOIN node_snapshot n ON n.id = a.node_id
            {where}
            ORDER BY CASE a.severity {rank} ELSE 0 END DESC, a.created_at DESC, a.id DESC
            LIMIT ?
        """
        params.append(min(MAX_ALERT_LIMIT, max(1, limit)))

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()

        alerts: list[dict[str, Any]] = []
        for row in rows:
            item = _decode_alert(row)
            node_known = item.pop("node_known")
            for key in ("public_key", "region", "version", "is_validator"):
                item.pop(key, None)
            item["node_info"] = (
                {
                    "publicKey": row["public_key"],
                    "region": row["region"],
                    "version": row["version"],
                    "isValidator": bool(row["is_validator"]),
                }
                if node_known
                else None
            )
            alerts.append(item)
        return alerts

    def update_alert(
        self,
        alert_id: int,
        acknowledged: bool | None = None,
        resolved: bool | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any] | None:
        assignments: list[str] = []
        params: list[Any] = []
        if acknowledged is not None:
            assignments.append("acknowledged = ?")
            params.append(int(acknowledged))
        if resolved is not None:
            assignments.append("resolved = ?")
            params.append(int(resolved))
            assignments.append("resolved_at = ?")
            params.append(_iso(now or utc_now()) if resolved else None)

        with self._connect() as conn:
            if assignments:
                conn.execute(f"UPDATE alerts SET {', '.join(assignments)} WHERE id = ?", [*params, alert_id])
            row = conn.execute("SELECT * FROM alerts WHERE id = ?", (alert_id,)).fetchone()
        if row is None:
            return None
        return _decode_alert(row)

    def clear_alerts(self, now: datetime | None = None) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE alerts SET resolved = 1, resolved_at = ? WHERE resolved = 0",
                (_iso(now or utc_now()),),
            )
            return cursor.rowcount
