from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from threading import Condition, Lock
from typing import Any, Mapping

from .descriptors import parse_size
from .errors import ResourceExhausted
from .settings import Settings


RESOURCE_KINDS = ("gpu", "cpu", "memory")
# GPUs are handed out as whole devices.
INDIVISIBLE_KINDS = {"gpu"}


@dataclass(frozen=True)
class ResourceClaim:
    id: int
    owner: str
    amounts: Mapping[str, float] = field(default_factory=dict)


def capacities_from(settings: Settings, overrides: Mapping[str, Any] | None = None) -> dict[str, float]:
    """Capacities from settings, overridden by the topology's ``resources`` block."""
    caps: dict[str, float] = {}
    if settings.gpu_capacity:
        caps["gpu"] = settings.gpu_capacity
    if settings.cpu_capacity is not None:
        caps["cpu"] = settings.cpu_capacity
    if settings.memory_capacity:
        caps["memory"] = parse_size(settings.memory_capacity)
    for kind, value in (overrides or {}).items():
        if kind not in RESOURCE_KINDS:
            raise ValueError(f"Unknown resource kind '{kind}'")
        caps[kind] = parse_size(value) if kind == "memory" else float(value)
    return caps


def to_units(kind: str, qty: float) -> int:
    """Integer accounting units: CPU in millicores, everything else as is."""
    if kind == "cpu":
        return round(qty * 1000)
    return round(qty)


def from_units(kind: str, units: int) -> float:
    if kind == "cpu":
        return units / 1000
    return units


class ResourceLedger:
    """Capacity ledger for constrained resources.

    Every reserve/release runs under one lock, so concurrent starts within a
    dependency level can never jointly overcommit a kind. Kinds without a
    configured capacity are not constrained. Quantities are kept as integer
    units (CPU in millicores) so sums and differences are exact.
    """

    def __init__(self, capacities: Mapping[str, float] | None = None):
        self.capacities: dict[str, float] = {}
        self._capacity_units: dict[str, int] = {}
        for kind, cap in (capacities or {}).items():
            if cap < 0:
                raise ValueError(f"Capacity for '{kind}' must be >= 0")
            units = to_units(kind, cap)
            self._capacity_units[kind] = units
            self.capacities[kind] = from_units(kind, units)
        self._lock = Lock()
        self._released = Condition(self._lock)
        self._claims: dict[int, ResourceClaim] = {}
        self._in_use: dict[str, int] = {k: 0 for k in self._capacity_units}
        self._ids = itertools.count(1)
        self._generation = 0

    def reserve(self, owner: str, request: Mapping[str, float]) -> ResourceClaim:
        """All-or-nothing reservation across every kind in ``request``."""
        units: dict[str, int] = {}
        for kind, qty in request.items():
            if qty < 0:
                raise ValueError(f"Negative quantity for '{kind}'")
            if kind in INDIVISIBLE_KINDS and qty != int(qty):
                raise ValueError(f"'{kind}' is reserved in whole units, got {qty}")
            n = to_units(kind, qty)
            if n:
                units[kind] = n

        with self._lock:
            for kind, n in units.items():
                cap = self._capacity_units.get(kind)
                if cap is None:
                    continue
                free = cap - self._in_use[kind]
                if n > free:
                    raise ResourceExhausted(
                        kind, from_units(kind, n), from_units(kind, free), permanent=n > cap
                    )
            for kind, n in units.items():
                if kind in self._in_use:
                    self._in_use[kind] += n
            amounts = {kind: from_units(kind, n) for kind, n in units.items()}
            claim = ResourceClaim(id=next(self._ids), owner=owner, amounts=amounts)
            self._claims[claim.id] = claim
            return claim

    def release(self, claim: ResourceClaim | None) -> bool:
        """Return the claim's resources. Unknown or already released claims are a no-op."""
        if claim is None:
            return False
        with self._lock:
            if self._claims.pop(claim.id, None) is None:
                return False
            for kind, qty in claim.amounts.items():
                if kind in self._in_use:
                    self._in_use[kind] -= to_units(kind, qty)
            self._generation += 1
            self._released.notify_all()
            return True

    def wait_for_release(self, timeout: float | None = None) -> bool:
        """Block until some claim is released. Returns False on timeout."""
        with self._lock:
            gen = self._generation
            return self._released.wait_for(lambda: self._generation != gen, timeout=timeout)

    def in_use(self, kind: str) -> float:
        with self._lock:
            return from_units(kind, self._in_use.get(kind, 0))

    def claims_for(self, owner: str) -> list[ResourceClaim]:
        with self._lock:
            return [c for c in self._claims.values() if c.owner == owner]

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "capacity": dict(self.capacities),
                "in_use": {k: from_units(k, n) for k, n in self._in_use.items()},
                "claims": [
                    {"id": c.id, "owner": c.owner, "amounts": dict(c.amounts)} for c in self._claims.values()
                ],
            }
