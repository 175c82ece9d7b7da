from __future__ import annotations

import re
from collections import Counter

from pnode_monitor.analytics.stats import mean, percentile, round_half_up
from pnode_monitor.models.nodes import NetworkStats, NodeRecord, NodeStatus

VERSION_PATTERN = re.compile(r"^(\d+)\.(\d+)(?:\.\d+)?")
LATENCY_PERCENTILES = (50, 90, 99)

REGION_COORDINATES: dict[str, tuple[float, float]] = {
    "USA": (39.8283, -98.5795),
    "Europe": (54.5260, 15.2551),
    "Asia": (34.0479, 100.6197),
    "South America": (-14.2350, -51.9253),
    "Africa": (8.7832, 34.5085),
    "Australia": (-25.2744, 133.7751),
}


def detect_region_from_ip(ip: str | None) -> str | None:
    """Región aproximada a partir del primer octeto (heurística, sin GeoIP)."""

    if not ip:
        return None
    if ip.startswith(("192.168.", "10.", "172.")):
        return None

    parts = ip.split(".")
    if len(parts) != 4 or not parts[0].isdigit():
        return None
    first_octet = int(parts[0])

    if 1 <= first_octet <= 126:
        return "USA"
    if 128 <= first_octet <= 143:
        return "Europe"
    if 144 <= first_octet <= 159:
        return "USA"
    if 160 <= first_octet <= 175:
        return "Asia"
    if 176 <= first_octet <= 191:
        return "Europe"
    if 192 <= first_octet <= 207:
        return "Europe"
    if 208 <= first_octet <= 223:
        return "USA"
    return None


def version_bucket(version: str | None) -> str:
    if not version:
        return "unknown"
    match = VERSION_PATTERN.match(version)
    if match:
        return f"{match.group(1)}.{match.group(2)}.x"
    return version


def node_region(node: NodeRecord) -> str:
    region = None
    if node.location is not None:
        region = node.location.country or node.location.region
    if not region:
        region = detect_region_from_ip(node.ip_address)
    return region or "unknown"


def calculate_network_stats(nodes: list[NodeRecord]) -> NetworkStats:
    peer_counts = [node.peer_count for node in nodes if node.peer_count > 0]
    latencies = [node.latency for node in nodes if node.latency is not None]

    versions: Counter[str] = Counter(version_bucket(node.software_version) for node in nodes)
    regions: Counter[str] = Counter(node_region(node) for node in nodes)

    return NetworkStats(
        total_nodes=len(nodes),
        online_nodes=sum(1 for node in nodes if node.status is NodeStatus.ONLINE),
        offline_nodes=sum(1 for node in nodes if node.status is NodeStatus.OFFLINE),
        total_storage_capacity=sum(node.storage_capacity or 0 for node in nodes),
        total_storage_used=sum(node.storage_used or 0 for node in nodes),
        average_peer_count=round_half_up(mean(peer_counts), 2),
        average_latency=round_half_up(mean(latencies), 2),
        version_distribution=dict(versions),
        region_distribution=dict(regions),
        validator_count=sum(1 for node in nodes if node.is_validator),
        latency_percentiles={f"p{p}": percentile(latencies, p) for p in LATENCY_PERCENTILES},
    )
