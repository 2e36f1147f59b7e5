from __future__ import annotations

from pydantic import BaseModel, Field


class HealthResult(BaseModel):
    ok: bool
    message: str
    latency_ms: float | None = None
    ts: str


class RouteStatus(BaseModel):
    listen_port: int
    state: str
    tls: bool
    upgrade: bool


class ServiceStatus(BaseModel):
    name: str
    level: int = Field(..., description="Dependency level the service starts in")
    state: str = Field(..., description="pending|starting|probing|healthy|unhealthy|failed|dependency_failed|stopped")
    restart_count: int = 0
    last_error: str | None = None
    handle: str | None = None
    started_at: str | None = None
    last_health: HealthResult | None = None
    claims: list[dict[str, float]] = Field(default_factory=list)
    route: RouteStatus | None = None


class RouteView(BaseModel):
    listen_port: int
    target: str
    target_port: int
    tls: bool
    upgrade: bool
    state: str
    address: str | None = None
    stats: dict[str, int] = Field(default_factory=dict)


class GraphView(BaseModel):
    levels: list[list[str]]
    edges: dict[str, list[str]]


class ResourcesView(BaseModel):
    capacity: dict[str, float]
    in_use: dict[str, float]
    claims: list[dict]
