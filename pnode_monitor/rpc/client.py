from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import requests

from pnode_monitor.analytics.network import REGION_COORDINATES, detect_region_from_ip
from pnode_monitor.errors import RpcError
from pnode_monitor.models.nodes import NodeLocation, NodeRecord, NodeStatus, optional_number, parse_timestamp, utc_now

logger = logging.getLogger(__name__)

VALIDATOR_PEER_ESTIMATE = 50


@dataclass(slots=True)
class ChainMetrics:
    tps: float | None = None
    block_time_ms: float | None = None
    slot: int | None = None
    epoch: int | None = None

    @property
    def empty(self) -> bool:
        return self.tps is None and self.block_time_ms is None and self.slot is None and self.epoch is None


def _first(raw: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value:
            return value
    return None


def _first_number(raw: dict[str, Any], *keys: str) -> float | None:
    # A diferencia de _first, 0 es un valor válido.
    for key in keys:
        value = optional_number(raw.get(key))
        if value is not None:
            return value
    return None


def _last_seen(value: Any) -> datetime:
    if not value:
        return utc_now()
    try:
        return parse_timestamp(value)
    except (ValueError, TypeError, OverflowError, OSError):
        logger.debug("event=invalid_last_seen value=%r", value)
        return utc_now()


def map_rpc_node(raw: dict[str, Any], index: int) -> NodeRecord:
    """Traduce una entrada RPC (p. ej. getClusterNodes) a NodeRecord.

    Tolera los distintos nombres de campo que usan los dialectos conocidos.
    """

    node_id = _first(raw, "pubkey", "id", "nodeId", "identity") or f"node-{index + 1:03d}"
    gossip = _first(raw, "gossip", "gossipAddress", "address")
    rpc = _first(raw, "rpc", "rpcAddress", "endpoint")
    tpu = _first(raw, "tpu", "tpuAddress")

    ip_address = None
    if isinstance(gossip, str):
        ip_address = gossip.split(":")[0]
    elif raw.get("ipAddress"):
        ip_address = raw["ipAddress"]

    try:
        status = NodeStatus(raw["status"]) if raw.get("status") else (NodeStatus.ONLINE if gossip else NodeStatus.UNKNOWN)
    except ValueError:
        status = NodeStatus.UNKNOWN

    capacity = _first_number(raw, "storageCapacity", "capacity", "totalStorage")
    used = _first_number(raw, "storageUsed", "used", "storageUsage")
    peer_count = _first_number(raw, "peerCount", "peers", "connectionCount")

    location = None
    if isinstance(raw.get("location"), dict):
        location = NodeLocation.from_dict(raw["location"])
    elif isinstance(raw.get("geo"), dict):
        location = NodeLocation.from_dict(raw["geo"])

    shred_version = raw.get("shredVersion")
    metadata = {
        "gossip": gossip,
        "rpc": rpc,
        "tpu": tpu,
        "featureSet": raw.get("featureSet"),
        "shredVersion": shred_version,
        **raw,
    }

    return NodeRecord(
        id=str(node_id),
        status=status,
        peer_count=int(peer_count) if peer_count is not None else 0,
        last_seen=_last_seen(raw.get("lastSeen")),
        latency=_first_number(raw, "latency", "responseTime"),
        storage_used=used,
        storage_capacity=capacity,
        storage_free=capacity - used if capacity and used else None,
        uptime=_first_number(raw, "uptime", "upTime"),
        availability=optional_number(raw.get("availability")) or (95 if status is NodeStatus.ONLINE else 0),
        location=location,
        software_version=_first(raw, "version", "softwareVersion", "coreVersion"),
        protocol_version=_first(raw, "protocolVersion", "protocol") or (str(shred_version) if shred_version is not None else None),
        public_key=_first(raw, "pubkey", "publicKey") or str(node_id),
        ip_address=ip_address,
        endpoint=rpc or gossip or tpu,
        metadata=metadata,
    )


def enrich_location(nodes: list[NodeRecord]) -> int:
    """Completa región y coordenadas aproximadas; devuelve cuántos nodos se enriquecieron."""

    enriched = 0
    for node in nodes:
        has_coordinates = node.location is not None and node.location.latitude and node.location.longitude
        if has_coordinates or not node.ip_address:
            continue

        region = None
        if node.location is not None:
            region = node.location.country or node.location.region
        if not region:
            region = detect_region_from_ip(node.ip_address)
        if not region:
            continue

        location = node.location or NodeLocation()
        location.country = location.country or region
        location.region = location.region or region
        coordinates = REGION_COORDINATES.get(region)
        if coordinates:
            location.latitude, location.longitude = coordinates
            enriched += 1
        node.location = location
    return enriched


class PrpcClient:
    def __init__(
        self,
        endpoint: str,
        api_key: str = "",
        method: str = "getClusterNodes",
        timeout_s: float = 10.0,
        enrich_validators: bool = True,
        session: requests.Session | None = None,
    ) -> None:
        self.endpoint = endpoint if endpoint.startswith("http") else f"http://{endpoint}"
        self.api_key = api_key
        self.method = method
        self.timeout_s = timeout_s
        self.enrich_validators = enrich_validators
        self.session = session or requests.Session()
        self._request_id = 0

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["token"] = self.api_key
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def call(self, method: str, params: list[Any] | None = None) -> Any:
        self._request_id += 1
        body = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params or []}
        try:
            response = self.session.post(self.endpoint, json=body, headers=self._headers(), timeout=self.timeout_s)
        except requests.RequestException as exc:
            raise RpcError(f"RPC request failed: {exc}") from exc

        if not response.ok:
            raise RpcError(
                f"RPC request failed: {response.status_code} {response.reason}. {response.text[:300]}",
                status=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise RpcError(f"RPC response is not JSON: {exc}") from exc

        if isinstance(data, dict) and data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise RpcError(f"RPC error: {message}")
        return data.get("result") if isinstance(data, dict) else None

    def fetch_nodes(self) -> list[NodeRecord]:
        result = self.call(self.method)
        if isinstance(result, list):
            raw_nodes = result
        elif isinstance(result, dict) and isinstance(result.get("nodes"), list):
            raw_nodes = result["nodes"]
        elif isinstance(result, dict) and isinstance(result.get("value"), list):
            raw_nodes = result["value"]
        elif isinstance(result, dict):
            raw_nodes = [result]
        else:
            raise RpcError(f"Unexpected response format from {self.method}")

        nodes = [map_rpc_node(raw, index) for index, raw in enumerate(raw_nodes) if isinstance(raw, dict)]
        logger.info("event=nodes_fetched method=%s count=%d", self.method, len(nodes))

        if self.enrich_validators and nodes:
            try:
                self.enrich_with_vote_accounts(nodes)
            except RpcError as exc:
                logger.debug("event=validator_enrichment_skipped error=%s", exc)

        enriched = enrich_location(nodes)
        if enriched:
            logger.info("event=location_enriched count=%d", enriched)
        return nodes

    def enrich_with_vote_accounts(self, nodes: list[NodeRecord]) -> int:
        vote_accounts = self.call("getVoteAccounts")
        current = vote_accounts.get("current") if isinstance(vote_accounts, dict) else None
        if not isinstance(current, list):
            return 0

        by_node = {item["nodePubkey"]: item for item in current if isinstance(item, dict) and item.get("nodePubkey")}
        enriched = 0
        for node in nodes:
            account = by_node.get(node.public_key) if node.public_key else None
            if account is None:
                continue
            if node.peer_count == 0:
                node.peer_count = VALIDATOR_PEER_ESTIMATE
            node.metadata.update(
                {
                    "isValidator": True,
                    "voteAccount": account.get("votePubkey"),
                    "commission": account.get("commission"),
                    "rootSlot": account.get("rootSlot"),
                    "epochVoteAccount": account.get("epochVoteAccount"),
                    "epochCredits": account.get("epochCredits"),
                }
            )
            enriched += 1
        logger.info("event=validators_enriched count=%d", enriched)
        return enriched

    def fetch_chain_metrics(self) -> ChainMetrics:
        metrics = ChainMetrics()
        try:
            samples = self.call("getRecentPerformanceSamples", [1])
            if isinstance(samples, list) and samples and isinstance(samples[0], dict):
                sample = samples[0]
                period = optional_number(sample.get("samplePeriodSecs"))
                transactions = optional_number(sample.get("numTransactions"))
                slots = optional_number(sample.get("numSlots"))
                if transactions and period:
                    metrics.tps = transactions / period
                if slots and period:
                    slots_per_second = slots / period
                    if slots_per_second > 0:
                        metrics.block_time_ms = 1 / slots_per_second * 1000

            epoch_info = self.call("getEpochInfo")
            if not isinstance(epoch_info, dict):
                epoch_info = {}
            metrics.slot = epoch_info.get("absoluteSlot", epoch_info.get("slot"))
            metrics.epoch = epoch_info.get("epoch")
        except RpcError as exc:
            logger.warning("event=chain_metrics_failed error=%s", exc)
            return ChainMetrics()
        return metrics
