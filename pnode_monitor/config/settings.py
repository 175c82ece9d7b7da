from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from pnode_monitor.errors import ConfigError


@dataclass(slots=True)
class RpcSettings:
    endpoint: str = "http://localhost:8080"
    api_key: str = ""
    method: str = "getClusterNodes"
    timeout_s: float = 10.0
    enrich_validators: bool = True


@dataclass(slots=True)
class StorageSettings:
    history_path: str = "data/pnode_history.json"
    sqlite_path: str = "data/pnode_monitor.db"


@dataclass(slots=True)
class AnalyticsSettings:
    max_history: int = 50
    max_network_history: int = 200
    network_history_max_age_days: int = 30


@dataclass(slots=True)
class PollingSettings:
    interval_s: float = 30.0
    alert_dedup_window_s: float = 3600.0


@dataclass(slots=True)
class AppSettings:
    app_name: str = "pNode Monitor"
    log_level: str = "INFO"
    rpc: RpcSettings = field(default_factory=RpcSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    analytics: AnalyticsSettings = field(default_factory=AnalyticsSettings)
    polling: PollingSettings = field(default_factory=PollingSettings)


def _section(cls: type, content: dict[str, Any], name: str) -> Any:
    data = content.get(name) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"La sección '{name}' debe ser un mapeo")
    allowed = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise ConfigError(f"Claves desconocidas en '{name}': {', '.join(unknown)}")
    return cls(**data)


class SettingsLoader:
    @staticmethod
    def load(path: str | Path) -> AppSettings:
        try:
            content = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"YAML inválido en {path}: {exc}") from exc
        if not isinstance(content, dict):
            raise ConfigError("Configuración inválida")

        defaults = AppSettings()
        return AppSettings(
            app_name=content.get("app_name", defaults.app_name),
            log_level=content.get("log_level", defaults.log_level),
            rpc=_section(RpcSettings, content, "rpc"),
            storage=_section(StorageSettings, content, "storage"),
            analytics=_section(AnalyticsSettings, content, "analytics"),
            polling=_section(PollingSettings, content, "polling"),
        )

    @staticmethod
    def dump_default(path: str | Path) -> None:
        payload = asdict(AppSettings())
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        Path(path).write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")
