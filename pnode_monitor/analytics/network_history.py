from __future__ import annotations

import logging
from datetime import datetime, timedelta

from pnode_monitor.analytics.health import calculate_all_health_scores
from pnode_monitor.analytics.history import KeyValueBackend
from pnode_monitor.analytics.network import calculate_network_stats
from pnode_monitor.models.nodes import HealthStatus, NetworkSnapshot, NodeRecord, to_epoch_ms, utc_now

logger = logging.getLogger(__name__)

NETWORK_HISTORY_KEY = "xpic_network_history_v1"
MAX_NETWORK_HISTORY = 200
MAX_AGE_DAYS = 30


def build_network_snapshot(nodes: list[NodeRecord], now: datetime | None = None) -> NetworkSnapshot:
    now = now or utc_now()
    stats = calculate_network_stats(nodes)
    statuses = [score.status for score in calculate_all_health_scores(nodes, now=now).values()]

    return NetworkSnapshot(
        timestamp=to_epoch_ms(now),
        total_nodes=stats.total_nodes,
        online_nodes=stats.online_nodes,
        offline_nodes=stats.offline_nodes,
        healthy_nodes=statuses.count(HealthStatus.HEALTHY),
        warning_nodes=statuses.count(HealthStatus.WARNING),
        critical_nodes=statuses.count(HealthStatus.CRITICAL),
        average_peer_count=stats.average_peer_count,
        average_latency=stats.average_latency,
        total_storage_capacity=stats.total_storage_capacity,
        total_storage_used=stats.total_storage_used,
        storage_percentage=(
            stats.total_storage_used / stats.total_storage_capacity * 100
            if stats.total_storage_capacity > 0
            else 0
        ),
        version_distribution=stats.version_distribution,
        region_distribution=stats.region_distribution,
    )


class NetworkHistory:
    """Serie de instantáneas de red para las gráficas de tendencia."""

    def __init__(
        self,
        backend: KeyValueBackend,
        key: str = NETWORK_HISTORY_KEY,
        max_snapshots: int = MAX_NETWORK_HISTORY,
        max_age_days: int = MAX_AGE_DAYS,
    ) -> None:
        self.backend = backend
        self.key = key
        self.max_snapshots = max_snapshots
        self.max_age_days = max_age_days

    def save_snapshot(self, nodes: list[NodeRecord], now: datetime | None = None) -> NetworkSnapshot:
        now = now or utc_now()
        snapshot = build_network_snapshot(nodes, now=now)
        try:
            history = self.get_history(now=now)
            history.append(snapshot)
            if len(history) > self.max_snapshots:
                del history[: len(history) - self.max_snapshots]
            self.backend.write(self.key, [item.to_dict() for item in history])
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("event=network_snapshot_save_failed key=%s error=%s", self.key, exc)
        return snapshot

    def get_history(self, now: datetime | None = None) -> list[NetworkSnapshot]:
        now = now or utc_now()
        cutoff = to_epoch_ms(now - timedelta(days=self.max_age_days))
        try:
            raw = self.backend.read(self.key)
            if not isinstance(raw, list):
                return []
            snapshots = [NetworkSnapshot.from_dict(item) for item in raw]
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("event=network_history_read_failed key=%s error=%s", self.key, exc)
            return []
        return [item for item in snapshots if item.timestamp > cutoff]

    def get_history_for_range(self, hours: float, now: datetime | None = None) -> list[NetworkSnapshot]:
        now = now or utc_now()
        cutoff = to_epoch_ms(now - timedelta(hours=hours))
        return [item for item in self.get_history(now=now) if item.timestamp >= cutoff]

    def clear(self) -> None:
        try:
            self.backend.delete(self.key)
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("event=network_history_clear_failed key=%s error=%s", self.key, exc)
