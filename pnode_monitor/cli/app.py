from __future__ import annotations

import argparse
import asyncio
import json
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Any

from pnode_monitor.analytics.history import InMemoryBackend, JsonFileBackend, RollingHistoryStore
from pnode_monitor.analytics.insights import compute_insights
from pnode_monitor.analytics.network import calculate_network_stats
from pnode_monitor.analytics.network_history import NetworkHistory
from pnode_monitor.analytics.risk import risk_status_label
from pnode_monitor.config.settings import AppSettings, SettingsLoader
from pnode_monitor.core.logging_setup import configure_logging
from pnode_monitor.core.orchestrator import MonitorOrchestrator, run_default
from pnode_monitor.detection.engine import RollingHistoryDetector
from pnode_monitor.errors import MonitorError
from pnode_monitor.models.nodes import NodeRecord, utc_now
from pnode_monitor.storage.repository import MonitorRepository


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pnode-monitor", description="Monitor de salud de pNodes")
    parser.add_argument("--config", default="pnode_monitor.yaml", help="Ruta del archivo YAML")

    sub = parser.add_subparsers(dest="command", required=False)

    p_poll = sub.add_parser("poll", help="Sondeo periódico del endpoint RPC")
    p_poll.add_argument("--cycles", type=int, default=None, help="Número de ciclos (por defecto, sin límite)")

    sub.add_parser("ingest", help="Un único ciclo de ingesta y alertas")

    p_analyze = sub.add_parser("analyze", help="Analiza un volcado JSON de nodos sin contactar el RPC")
    p_analyze.add_argument("--input", required=True)
    p_analyze.add_argument("--output", default=None)
    p_analyze.add_argument("--no-history", action="store_true", help="No persiste el historial rodante")

    p_alerts = sub.add_parser("alerts", help="Gestión de alertas")
    alerts_sub = p_alerts.add_subparsers(dest="alerts_command", required=True)
    p_list = alerts_sub.add_parser("list")
    p_list.add_argument("--severity", choices=["low", "medium", "high", "critical"])
    p_list.add_argument("--node-id")
    p_list.add_argument("--resolved", choices=["true", "false"])
    p_list.add_argument("--hours", type=int)
    p_list.add_argument("--limit", type=int, default=100)
    for name in ("ack", "resolve"):
        p_update = alerts_sub.add_parser(name)
        p_update.add_argument("alert_id", type=int)
    alerts_sub.add_parser("clear")

    p_history = sub.add_parser("history", help="Series históricas")
    p_history.add_argument("scope", choices=["network", "nodes", "metrics"])
    p_history.add_argument("--hours", type=int, default=24)
    p_history.add_argument("--node-id")

    p_nodes = sub.add_parser("nodes", help="Último estado conocido de cada nodo")
    p_nodes.add_argument("--page", type=int, default=1)
    p_nodes.add_argument("--page-size", type=int, default=100)

    sub.add_parser("init-config", help="Genera YAML por defecto")
    sub.add_parser("quickstart", help="Prepara configuración inicial y lanza el sondeo")
    return parser


def _ensure_config(config_path: str) -> None:
    config_file = Path(config_path)
    if config_file.exists():
        return
    SettingsLoader.dump_default(config_path)
    print(f"[quickstart] Configuración base creada en {config_path}")


def _load_nodes(path: str) -> list[NodeRecord]:
    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(payload, dict):
        payload = payload.get("nodes", [])
    if not isinstance(payload, list):
        raise MonitorError(f"{path} no contiene una lista de nodos")
    return [NodeRecord.from_dict(item) for item in payload]


def build_report(
    nodes: list[NodeRecord],
    history: RollingHistoryStore,
    network_history: NetworkHistory,
    now: datetime | None = None,
) -> dict[str, Any]:
    now = now or utc_now()
    insights = compute_insights(nodes, history, detector=RollingHistoryDetector(), now=now)
    snapshot = network_history.save_snapshot(nodes, now=now)
    report_nodes = []
    for node in nodes:
        health = insights.health_scores[node.id]
        risk = insights.risk_scores[node.id]
        report_nodes.append(
            {
                "id": node.id,
                "status": node.status.value,
                "health": {
                    "score": health.score,
                    "status": health.status.value,
                    "factors": asdict(health.factors),
                },
                "risk": {"score": risk, "level": risk_status_label(risk).value},
                "anomalies": [anomaly.to_dict() for anomaly in insights.anomalies[node.id]],
            }
        )
    return {
        "network": asdict(calculate_network_stats(nodes)),
        "snapshot": snapshot.to_dict(),
        "nodes": report_nodes,
    }


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def _analyze(settings: AppSettings, args: argparse.Namespace) -> None:
    nodes = _load_nodes(args.input)
    backend = InMemoryBackend() if args.no_history else JsonFileBackend(settings.storage.history_path)
    history = RollingHistoryStore(backend, max_history=settings.analytics.max_history)
    network_history = NetworkHistory(
        backend,
        max_snapshots=settings.analytics.max_network_history,
        max_age_days=settings.analytics.network_history_max_age_days,
    )
    report = build_report(nodes, history, network_history)
    if args.output:
        Path(args.output).write_text(json.dumps(report, ensure_ascii=False, indent=2, default=str), encoding="utf-8")
        print(f"Informe guardado en {args.output}")
    else:
        _print_json(report)


def _alerts(settings: AppSettings, args: argparse.Namespace, parser: argparse.ArgumentParser) -> None:
    repo = MonitorRepository(settings.storage.sqlite_path)
    if args.alerts_command == "list":
        resolved = None if args.resolved is None else args.resolved == "true"
        _print_json(
            repo.list_alerts(
                severity=args.severity,
                node_id=args.node_id,
                resolved=resolved,
                hours=args.hours,
                limit=args.limit,
            )
        )
    elif args.alerts_command == "clear":
        print(f"Alertas resueltas: {repo.clear_alerts()}")
    else:
        if args.alerts_command == "ack":
            alert = repo.update_alert(args.alert_id, acknowledged=True)
        else:
            alert = repo.update_alert(args.alert_id, resolved=True)
        if alert is None:
            parser.error(f"Alerta no encontrada: {args.alert_id}")
        _print_json(alert)


def _nodes(settings: AppSettings, args: argparse.Namespace) -> None:
    repo = MonitorRepository(settings.storage.sqlite_path)
    nodes, total = repo.list_nodes(page=args.page, page_size=args.page_size)
    _print_json({"total": total, "page": args.page, "nodes": [node.to_dict() for node in nodes]})


def _history(settings: AppSettings, args: argparse.Namespace) -> None:
    repo = MonitorRepository(settings.storage.sqlite_path)
    if args.scope == "network":
        _print_json([snapshot.to_dict() for snapshot in repo.network_history(hours=args.hours)])
    elif args.scope == "metrics":
        _print_json(repo.chain_metrics(hours=args.hours))
    else:
        _print_json(repo.node_history(node_id=args.node_id, hours=args.hours))


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()

    command = args.command or "quickstart"

    if command == "quickstart":
        _ensure_config(args.config)
        command = "poll"
        args.cycles = None

    if command == "init-config":
        SettingsLoader.dump_default(args.config)
        print(f"Configuración creada en {args.config}")
        return

    try:
        settings = SettingsLoader.load(args.config)
    except (OSError, MonitorError) as exc:
        parser.error(str(exc))
    configure_logging(settings.log_level)

    try:
        if command == "poll":
            asyncio.run(run_default(settings, max_cycles=args.cycles))
        elif command == "ingest":
            result = MonitorOrchestrator.from_settings(settings).run_cycle()
            if result is None or result.ingest is None:
                parser.exit(2, "Ingesta fallida: no se pudieron obtener los nodos\n")
            _print_json(
                {
                    "ok": True,
                    "nodes": result.ingest.nodes,
                    "alerts": result.ingest.alerts,
                    "suppressed": result.ingest.suppressed,
                    "networkStats": {
                        "totalNodes": result.ingest.snapshot.total_nodes,
                        "healthyNodes": result.ingest.snapshot.healthy_nodes,
                        "warningNodes": result.ingest.snapshot.warning_nodes,
                        "criticalNodes": result.ingest.snapshot.critical_nodes,
                    },
                }
            )
        elif command == "analyze":
            _analyze(settings, args)
        elif command == "alerts":
            _alerts(settings, args, parser)
        elif command == "nodes":
            _nodes(settings, args)
        elif command == "history":
            _history(settings, args)
    except MonitorError as exc:
        parser.exit(2, f"{exc}\n")


if __name__ == "__main__":
    main()
