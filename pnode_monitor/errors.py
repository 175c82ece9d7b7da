from __future__ import annotations


class MonitorError(RuntimeError):
    """Base de los errores propios del monitor de pNodes."""


class ConfigError(MonitorError):
    """La configuración YAML no se puede interpretar."""


class RpcError(MonitorError):
    """El endpoint JSON-RPC falla o responde con un error."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status
