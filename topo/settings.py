from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float | None) -> float | None:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("TOPO_DB_PATH", "topo.db")
    topology_path: str | None = os.getenv("TOPO_TOPOLOGY_PATH")
    runtime: str = os.getenv("TOPO_RUNTIME", "docker")  # docker|process
    docker_network: str = os.getenv("TOPO_DOCKER_NETWORK", "topo")
    autostart: bool = _env_bool("TOPO_AUTOSTART", True)
    api_host: str = os.getenv("TOPO_API_HOST", "127.0.0.1")
    api_port: int = _env_int("TOPO_API_PORT", 8000)

    # Resource capacities. Unset means unconstrained.
    gpu_capacity: int = _env_int("TOPO_GPU_CAPACITY", 0)
    cpu_capacity: float | None = _env_float("TOPO_CPU_CAPACITY", None)
    memory_capacity: str | None = os.getenv("TOPO_MEMORY_CAPACITY")

    # Health / lifecycle
    probe_history: int = _env_int("TOPO_PROBE_HISTORY", 10)
    backoff_base_s: float = _env_float("TOPO_BACKOFF_BASE_S", 1.0) or 1.0
    backoff_max_s: float = _env_float("TOPO_BACKOFF_MAX_S", 30.0) or 30.0
    max_restarts: int = _env_int("TOPO_MAX_RESTARTS", 5)
    stop_grace_s: float = _env_float("TOPO_STOP_GRACE_S", 10.0) or 10.0

    # Reverse proxy
    proxy_host: str = os.getenv("TOPO_PROXY_HOST", "0.0.0.0")
    tls_cert_path: str | None = os.getenv("TOPO_TLS_CERT")
    tls_key_path: str | None = os.getenv("TOPO_TLS_KEY")
    proxy_connect_timeout_s: float = _env_float("TOPO_PROXY_CONNECT_TIMEOUT_S", 5.0) or 5.0

    # Email alerting (optional)
    enable_email: bool = _env_bool("TOPO_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("TOPO_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("TOPO_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("TOPO_SMTP_USER")
    smtp_password: str | None = os.getenv("TOPO_SMTP_PASSWORD")
    email_from: str | None = os.getenv("TOPO_EMAIL_FROM")
    email_to: str | None = os.getenv("TOPO_EMAIL_TO")


settings = Settings()
