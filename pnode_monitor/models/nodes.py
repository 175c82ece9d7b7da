from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class NodeStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AnomalyType(str, Enum):
    LATENCY_SPIKE = "latency_spike"
    PEER_DROP = "peer_drop"
    STORAGE_ANOMALY = "storage_anomaly"
    OFFLINE = "offline"
    VERSION_MISMATCH = "version_mismatch"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def to_epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def parse_timestamp(value: Any) -> datetime:
    """Acepta datetime, epoch en milisegundos o cadena ISO 8601."""

    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str) and value:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return utc_now()


def optional_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        number = value
    else:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return None
    return number if math.isfinite(number) else None


@dataclass(slots=True)
class NodeLocation:
    country: str | None = None
    region: str | None = None
    city: str | None = None
    latitude: float | None = None
    longitude: float | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "NodeLocation":
        return cls(
            country=payload.get("country"),
            region=payload.get("region"),
            city=payload.get("city"),
            latitude=optional_number(payload.get("latitude", payload.get("lat"))),
            longitude=optional_number(payload.get("longitude", payload.get("lon"))),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            key: value
            for key, value in (
                ("country", self.country),
                ("region", self.region),
                ("city", self.city),
                ("latitude", self.latitude),
                ("longitude", self.longitude),
            )
            if value is not None
        }


@dataclass(slots=True)
class NodeRecord:
    id: str
    status: NodeStatus
    peer_count: int
    last_seen: datetime
    latency: float | None = None
    storage_used: float | None = None
    storage_capacity: float | None = None
    storage_free: float | None = None
    uptime: float | None = None
    availability: float | None = None
    location: NodeLocation | None = None
    software_version: str | None = None
    protocol_version: str | None = None
    public_key: str | None = None
    ip_address: str | None = None
    endpoint: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_validator(self) -> bool:
        return bool(self.metadata.get("isValidator"))

    @property
    def storage_usage_percent(self) -> float | None:
        if not self.storage_capacity or not self.storage_used:
            return None
        return self.storage_used / self.storage_capacity * 100

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "NodeRecord":
        try:
            status = NodeStatus(payload.get("status") or "unknown")
        except ValueError:
            status = NodeStatus.UNKNOWN
        peer_count = payload.get("peerCount")
        location = payload.get("location")
        return cls(
            id=str(payload["id"]),
            status=status,
            peer_count=int(peer_count) if isinstance(peer_count, (int, float)) else 0,
            last_seen=parse_timestamp(payload.get("lastSeen")),
            latency=optional_number(payload.get("latency")),
            storage_used=optional_number(payload.get("storageUsed")),
            storage_capacity=optional_number(payload.get("storageCapacity")),
            storage_free=optional_number(payload.get("storageFree")),
            uptime=optional_number(payload.get("uptime")),
            availability=optional_number(payload.get("availability")),
            location=NodeLocation.from_dict(location) if isinstance(location, dict) else None,
            software_version=payload.get("softwareVersion"),
            protocol_version=payload.get("protocolVersion"),
            public_key=payload.get("publicKey"),
            ip_address=payload.get("ipAddress"),
            endpoint=payload.get("endpoint"),
            metadata=dict(payload.get("metadata") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "status": self.status.value,
            "peerCount": self.peer_count,
            "lastSeen": self.last_seen.isoformat(),
            "latency": self.latency,
            "storageUsed": self.storage_used,
            "storageCapacity": self.storage_capacity,
            "storageFree": self.storage_free,
            "uptime": self.uptime,
            "availability": self.availability,
            "location": self.location.to_dict() if self.location else None,
            "softwareVersion": self.software_version,
            "protocolVersion": self.protocol_version,
            "publicKey": self.public_key,
            "ipAddress": self.ip_address,
            "endpoint": self.endpoint,
            "metadata": self.metadata,
        }
        return {key: value for key, value in payload.items() if value is not None}


@dataclass(slots=True)
class MetricSnapshot:
    timestamp: int
    status: NodeStatus
    latency: float | None = None
    peer_count: int | None = None
    storage_used: float | None = None
    storage_capacity: float | None = None
    uptime: float | None = None

    @classmethod
    def from_node(cls, node: NodeRecord, timestamp: int) -> "MetricSnapshot":
        return cls(
            timestamp=timestamp,
            status=node.status,
            latency=node.latency,
            peer_count=node.peer_count,
            storage_used=node.storage_used,
            storage_capacity=node.storage_capacity,
            uptime=node.uptime,
        )

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "MetricSnapshot":
        peer_count = payload.get("peerCount")
        return cls(
            timestamp=int(payload["timestamp"]),
            status=NodeStatus(payload.get("status", "unknown")),
            latency=optional_number(payload.get("latency")),
            peer_count=int(peer_count) if isinstance(peer_count, (int, float)) else None,
            storage_used=optional_number(payload.get("storageUsed")),
            storage_capacity=optional_number(payload.get("storageCapacity")),
            uptime=optional_number(payload.get("uptime")),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "timestamp": self.timestamp,
            "latency": self.latency,
            "peerCount": self.peer_count,
            "storageUsed": self.storage_used,
            "storageCapacity": self.storage_capacity,
            "uptime": self.uptime,
            "status": self.status.value,
        }
        return {key: value for key, value in payload.items() if value is not None}


@dataclass(slots=True)
class HealthFactors:
    uptime: float = 100
    latency: float = 100
    peer_count: float = 100
    last_seen: float = 100
    storage_usage: float = 100


@dataclass(slots=True)
class HealthScore:
    node_id: str
    score: int
    status: HealthStatus
    factors: HealthFactors


@dataclass(slots=True)
class Anomaly:
    node_id: str
    type: AnomalyType
    severity: Severity
    message: str
    timestamp: datetime = field(default_factory=utc_now)
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodeId": self.node_id,
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "details": self.details,
        }


@dataclass(slots=True)
class NetworkStats:
    total_nodes: int = 0
    online_nodes: int = 0
    offline_nodes: int = 0
    total_storage_capacity: float = 0
    total_storage_used: float = 0
    average_peer_count: float = 0
    average_latency: float = 0
    version_distribution: dict[str, int] = field(default_factory=dict)
    region_distribution: dict[str, int] = field(default_factory=dict)
    validator_count: int = 0
    latency_percentiles: dict[str, float] = field(default_factory=dict)


@dataclass(slots=True)
class NetworkSnapshot:
    timestamp: int
    total_nodes: int
    online_nodes: int
    offline_nodes: int
    healthy_nodes: int
    warning_nodes: int
    critical_nodes: int
    average_peer_count: float
    average_latency: float
    total_storage_capacity: float
    total_storage_used: float
    storage_percentage: float
    version_distribution: dict[str, int] = field(default_factory=dict)
    region_distribution: dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "NetworkSnapshot":
        return cls(
            timestamp=int(payload["timestamp"]),
            total_nodes=payload.get("totalNodes", 0),
            online_nodes=payload.get("onlineNodes", 0),
            offline_nodes=payload.get("offlineNodes", 0),
            healthy_nodes=payload.get("healthyNodes", 0),
            warning_nodes=payload.get("warningNodes", 0),
            critical_nodes=payload.get("criticalNodes", 0),
            average_peer_count=payload.get("averagePeerCount", 0),
            average_latency=payload.get("averageLatency", 0),
            total_storage_capacity=payload.get("totalStorageCapacity", 0),
            total_storage_used=payload.get("totalStorageUsed", 0),
            storage_percentage=payload.get("storagePercentage", 0),
            version_distribution=dict(payload.get("versionDistribution") or {}),
            region_distribution=dict(payload.get("regionDistribution") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "totalNodes": self.total_nodes,
            "onlineNodes": self.online_nodes,
            "offlineNodes": self.offline_nodes,
            "healthyNodes": self.healthy_nodes,
            "warningNodes": self.warning_nodes,
            "criticalNodes": self.critical_nodes,
            "averagePeerCount": self.average_peer_count,
            "averageLatency": self.average_latency,
            "totalStorageCapacity": self.total_storage_capacity,
            "totalStorageUsed": self.total_storage_used,
            "storagePercentage": self.storage_percentage,
            "versionDistribution": self.version_distribution,
            "regionDistribution": self.region_distribution,
        }
