from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .db import utc_now
from .descriptors import ServiceDescriptor
from .resources import ResourceClaim


class InstanceState(str, Enum):
    PENDING = "pending"  # waiting for dependencies or resources
    STARTING = "starting"
    PROBING = "probing"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    FAILED = "failed"
    DEPENDENCY_FAILED = "dependency_failed"
    STOPPED = "stopped"


@dataclass(frozen=True)
class ProbeResult:
    ok: bool
    message: str
    latency_ms: float | None = None
    ts: str = field(default_factory=utc_now)


@dataclass
class RuntimeInstance:
    """Live embodiment of a descriptor. Owned by the lifecycle controller."""

    descriptor: ServiceDescriptor
    level: int
    state: InstanceState = InstanceState.PENDING
    handle: Any = None
    claim: ResourceClaim | None = None  # back-reference; the ledger owns it
    restart_count: int = 0
    last_error: str | None = None
    started_at: str | None = None
    history_id: int | None = None
    history: deque = field(default_factory=lambda: deque(maxlen=10))

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def last_result(self) -> ProbeResult | None:
        return self.history[-1] if self.history else None
