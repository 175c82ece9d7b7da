from datetime import timedelta

from pnode_monitor.detection.engine import (
    DetectionContext,
    PreviousStateDetector,
    RollingHistoryConfig,
    RollingHistoryDetector,
    detect_anomalies,
    detect_anomalies_for_node,
)
from pnode_monitor.models.nodes import AnomalyType, MetricSnapshot, NodeRecord, NodeStatus, Severity, utc_now

NOW = utc_now()


def _node(**overrides) -> NodeRecord:
    payload = {
        "id": "node-a",
        "status": NodeStatus.ONLINE,
        "peer_count": 20,
        "last_seen": NOW,
        "latency": 100.0,
    }
    payload.update(overrides)
    return NodeRecord(**payload)


def _history(node: NodeRecord, baseline: int, **previous) -> list[MetricSnapshot]:
    """Serie con `baseline` ciclos previos y la entrada del ciclo actual al final."""

    entries = []
    for ts in range(baseline):
        fields = {"timestamp": ts, "status": NodeStatus.ONLINE, "latency": 100.0, "peer_count": 20}
        fields.update(previous)
        entries.append(MetricSnapshot(**fields))
    entries.append(MetricSnapshot.from_node(node, baseline))
    return entries


def _types(anomalies) -> list[AnomalyType]:
    return [anomaly.type for anomaly in anomalies]


def test_offline_reported_even_without_history() -> None:
    anomalies = detect_anomalies_for_node(_node(status=NodeStatus.OFFLINE), [])
    assert len(anomalies) == 1
    assert anomalies[0].type is AnomalyType.OFFLINE
    assert anomalies[0].severity is Severity.CRITICAL
    assert anomalies[0].message == "Node is offline"


def test_latency_spike_requires_z_at_threshold() -> None:
    node = _node(latency=1000.0)

    # Nueve muestras planas más el pico: z = 9 / sqrt(10) ~ 2.85.
    anomalies = detect_anomalies_for_node(node, _history(node, 9))
    assert _types(anomalies) == [AnomalyType.LATENCY_SPIKE]
    assert anomalies[0].severity is Severity.MEDIUM
    assert anomalies[0].message == "Latency anomaly: 1000ms (z=2.8)"
    assert anomalies[0].details["zScore"] >= 2.5

    # Siete muestras planas más el pico: z = 7 / sqrt(8) ~ 2.47.
    assert detect_anomalies_for_node(node, _history(node, 7)) == []


def test_large_latency_spike_is_high_severity() -> None:
    node = _node(latency=1000.0)
    anomalies = detect_anomalies_for_node(node, _history(node, 11))
    assert anomalies[0].severity is Severity.HIGH


def test_latency_needs_minimum_samples() -> None:
    node = _node(latency=5000.0)
    detector = RollingHistoryDetector(RollingHistoryConfig(min_latency_samples=20))
    assert detector.detect_anomalies_for_node(node, _history(node, 15)) == []


def test_peer_drop_against_previous_cycle() -> None:
    dropped = _node(peer_count=11)
    anomalies = detect_anomalies_for_node(dropped, _history(dropped, 1))
    assert _types(anomalies) == [AnomalyType.PEER_DROP]
    assert anomalies[0].message == "Peer drop: 20 → 11"

    borderline = _node(peer_count=12)
    assert detect_anomalies_for_node(borderline, _history(borderline, 1)) == []


def test_storage_high_and_critical() -> None:
    medium = _node(storage_used=91.0, storage_capacity=100.0)
    anomalies = detect_anomalies_for_node(medium, _history(medium, 1))
    assert _types(anomalies) == [AnomalyType.STORAGE_ANOMALY]
    assert anomalies[0].severity is Severity.MEDIUM
    assert anomalies[0].message == "Storage high: 91.0%"

    high = _node(storage_used=98.5, storage_capacity=100.0)
    assert detect_anomalies_for_node(high, _history(high, 1))[0].severity is Severity.HIGH


def test_fast_storage_growth_is_low_severity() -> None:
    node = _node(storage_used=70.0, storage_capacity=100.0)
    anomalies = detect_anomalies_for_node(node, _history(node, 1, storage_used=50.0, storage_capacity=100.0))
    assert _types(anomalies) == [AnomalyType.STORAGE_ANOMALY]
    assert anomalies[0].severity is Severity.LOW
    assert anomalies[0].message == "Storage grew unusually fast"


def test_detectors_share_the_protocol() -> None:
    node = _node(status=NodeStatus.OFFLINE)
    context = DetectionContext(history=[], previous=None, now=NOW)
    for detector in (RollingHistoryDetector(), PreviousStateDetector()):
        assert AnomalyType.OFFLINE in _types(detector.detect(node, context))


def test_previous_state_latency_thresholds() -> None:
    assert detect_anomalies(_node(latency=1000.0), now=NOW) == []

    medium = detect_anomalies(_node(latency=1500.0), now=NOW)
    assert medium[0].severity is Severity.MEDIUM
    assert medium[0].message == "High latency detected: 1500ms"

    assert detect_anomalies(_node(latency=2500.0), now=NOW)[0].severity is Severity.HIGH


def test_previous_state_peer_drop_and_storage() -> None:
    previous = _node(peer_count=20)
    anomalies = detect_anomalies(
        _node(peer_count=9, storage_used=96.0, storage_capacity=100.0),
        previous,
        now=NOW,
    )
    assert _types(anomalies) == [AnomalyType.PEER_DROP, AnomalyType.STORAGE_ANOMALY]
    assert anomalies[0].message == "Significant peer count drop: 20 → 9"
    assert anomalies[1].message == "Storage nearly full: 96.0%"
    assert anomalies[1].severity is Severity.HIGH

    assert detect_anomalies(_node(peer_count=10), previous, now=NOW) == []


def test_previous_state_stale_node() -> None:
    stale = detect_anomalies(_node(last_seen=NOW - timedelta(hours=2)), now=NOW)
    assert _types(stale) == [AnomalyType.OFFLINE]
    assert stale[0].severity is Severity.HIGH
    assert stale[0].message == "Node not seen for 120 minutes"
    assert stale[0].details["lastSeenMs"] == 2 * 3600 * 1000

    lost = detect_anomalies(_node(last_seen=NOW - timedelta(hours=25)), now=NOW)
    assert lost[0].severity is Severity.CRITICAL
