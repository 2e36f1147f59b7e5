"""Service descriptors and the store that holds them.

A topology file looks like::

    resources:            # optional capacity overrides
      gpu: 1
      memory: 64G
    services:
      postgres:
        image: postgres:16-alpine
        ports: [5432]
        environment: {POSTGRES_USER: "${POSTGRES_USER:-app}"}
        healthcheck: {kind: exec, target: "pg_isready -U app", interval: 30s}
        restart_policy: always
      open-webui:
        image: ghcr.io/open-webui/open-webui:cuda
        ports: [8080]
        depends_on: [postgres]
        resources: {cpu: 8, memory: 16G, gpu: 1}
        healthcheck: {kind: http, target: /health}
        route: {listen_port: 443, tls: true, upgrade: true}

Descriptors are frozen once loaded. ``load_compose`` accepts the subset of a
docker-compose manifest that maps onto these fields.
"""
from __future__ import annotations

import json
import os
import re
import shlex
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, Iterator, Literal, Mapping

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import DescriptorError, RouteConflict, UnknownDependency


SERVICE_NAME_RE = re.compile(r"^[a-z][a-z0-9_\-]{0,62}$")
_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(h|ms|m|s|us)")
_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([kmgt]?)i?b?\s*$", re.IGNORECASE)
_PLACEHOLDER_RE = re.compile(r"\$\$|\$\{([A-Za-z_][A-Za-z0-9_]*)(?::?-([^}]*))?\}")

_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001, "us": 0.000001}
_SIZE_UNITS = {"": 1, "k": 1024, "m": 1024**2, "g": 1024**3, "t": 1024**4}


def parse_duration(value: Any) -> float:
    """Seconds from a number or a compose-style duration such as ``1m30s``."""
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    try:
        return float(text)
    except ValueError:
        pass
    parts = _DURATION_RE.findall(text)
    if not parts or "".join(n + u for n, u in parts) != text:
        raise ValueError(f"Invalid duration: {value!r}")
    return sum(float(n) * _DURATION_UNITS[u] for n, u in parts)


def parse_size(value: Any) -> int:
    """Bytes from a number or a size such as ``16G`` / ``512Mi``."""
    if isinstance(value, (int, float)):
        return int(value)
    m = _SIZE_RE.match(str(value))
    if not m:
        raise ValueError(f"Invalid size: {value!r}")
    return int(float(m.group(1)) * _SIZE_UNITS[m.group(2).lower()])


class HealthCheckSpec(BaseModel):
    """How readiness of a service is probed.

    ``target`` depends on ``kind``: an URL path for http, a port for tcp
    (optional, defaults to ``port`` or the service's first port) and a command
    for exec.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: Literal["http", "tcp", "exec"]
    target: str | tuple[str, ...] | None = None
    port: int | None = Field(None, ge=1, le=65535)
    interval: float = Field(10.0, gt=0)
    timeout: float = Field(2.0, gt=0)
    start_period: float = Field(0.0, ge=0)
    success_threshold: int = Field(1, ge=1)
    failure_threshold: int = Field(3, ge=1)

    @field_validator("interval", "timeout", "start_period", mode="before")
    @classmethod
    def _duration(cls, v: Any) -> float:
        return parse_duration(v)

    @field_validator("target", mode="before")
    @classmethod
    def _target(cls, v: Any) -> Any:
        if isinstance(v, list):
            return tuple(str(x) for x in v)
        if isinstance(v, int):
            return str(v)
        return v

    @model_validator(mode="after")
    def _check_target(self) -> "HealthCheckSpec":
        if self.kind == "exec" and not self.target:
            raise ValueError("exec health checks need a command target")
        if self.kind == "http" and isinstance(self.target, tuple):
            raise ValueError("http health check target must be a path")
        if self.kind == "tcp" and self.target is not None and not str(self.target).isdigit():
            raise ValueError("tcp health check target must be a port number")
        return self

    @property
    def http_path(self) -> str:
        path = self.target if isinstance(self.target, str) and self.target else "/"
        return path if path.startswith("/") else f"/{path}"

    @property
    def exec_argv(self) -> list[str]:
        if isinstance(self.target, tuple):
            return list(self.target)
        return shlex.split(self.target or "")

    def probe_port(self, service_ports: tuple[int, ...]) -> int | None:
        if self.kind == "tcp" and self.target:
            return int(self.target)
        if self.port:
            return self.port
        return service_ports[0] if service_ports else None


class ResourceRequest(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    cpu: float = Field(0.0, ge=0)
    memory: int = Field(0, ge=0)
    gpu: int = Field(0, ge=0)

    @field_validator("memory", mode="before")
    @classmethod
    def _memory(cls, v: Any) -> int:
        return parse_size(v)

    def as_dict(self) -> dict[str, float]:
        """Only the kinds actually requested."""
        out: dict[str, float] = {}
        if self.gpu:
            out["gpu"] = self.gpu
        if self.cpu:
            out["cpu"] = self.cpu
        if self.memory:
            out["memory"] = self.memory
        return out


class RouteSpec(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    listen_port: int = Field(..., ge=1, le=65535)
    target_port: int | None = Field(None, ge=1, le=65535)
    tls: bool = True
    upgrade: bool = True


class ServiceDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    image: str | None = None
    command: tuple[str, ...] = ()
    ports: tuple[int, ...] = ()
    environment: dict[str, str] = Field(default_factory=dict)
    depends_on: tuple[str, ...] = ()
    healthcheck: HealthCheckSpec | None = None
    resources: ResourceRequest = Field(default_factory=ResourceRequest)
    restart_policy: Literal["never", "on-failure", "always"] = "on-failure"
    route: RouteSpec | None = None

    @field_validator("name")
    @classmethod
    def _name(cls, v: str) -> str:
        if not SERVICE_NAME_RE.match(v):
            raise ValueError(
                "Invalid service name. Use lowercase letters/numbers, '-' and '_', starting with a letter (max 63 chars)."
            )
        return v

    @field_validator("command", mode="before")
    @classmethod
    def _command(cls, v: Any) -> Any:
        if isinstance(v, str):
            return tuple(shlex.split(v))
        return v

    @field_validator("ports", mode="before")
    @classmethod
    def _ports(cls, v: Any) -> Any:
        if v is None:
            return ()
        return tuple(int(p) for p in v)

    @field_validator("ports")
    @classmethod
    def _port_range(cls, v: tuple[int, ...]) -> tuple[int, ...]:
        for p in v:
            if not 1 <= p <= 65535:
                raise ValueError(f"port {p} out of range")
        return v

    @field_validator("environment", mode="before")
    @classmethod
    def _environment(cls, v: Any) -> Any:
        if v is None:
            return {}
        if isinstance(v, list):
            v = dict(item.split("=", 1) if "=" in item else (item, "") for item in v)
        return {str(k): "" if val is None else _env_str(val) for k, val in v.items()}

    @field_validator("depends_on", mode="before")
    @classmethod
    def _depends_on(cls, v: Any) -> Any:
        if v is None:
            return ()
        if isinstance(v, str):
            v = [v]
        # keep declaration order, drop duplicates
        return tuple(dict.fromkeys(v))

    @model_validator(mode="after")
    def _check(self) -> "ServiceDescriptor":
        if not self.image and not self.command:
            raise ValueError(f"service '{self.name}' needs an image or a command")
        if self.name in self.depends_on:
            raise ValueError(f"service '{self.name}' cannot depend on itself")
        if self.route and self.route.target_port is None and not self.ports:
            raise ValueError(f"service '{self.name}' has a route but no port to target")
        return self

    @property
    def route_target_port(self) -> int | None:
        if not self.route:
            return None
        return self.route.target_port or self.ports[0]


def _env_str(v: Any) -> str:
    if isinstance(v, bool):
        return "true" if v else "false"
    return str(v)


def resolve_environment(env: Mapping[str, str], overrides: Mapping[str, str] | None = None) -> dict[str, str]:
    """Substitute ``${VAR}`` and ``${VAR:-default}`` placeholders.

    Values come from ``overrides`` (``os.environ`` by default). ``$$`` is a
    literal dollar sign. Unknown variables without a default become "".
    """
    source = os.environ if overrides is None else overrides

    def _sub(m: re.Match[str]) -> str:
        if m.group(0) == "$$":
            return "$"
        value = source.get(m.group(1))
        if value is None or (value == "" and ":-" in m.group(0)):
            return m.group(2) or ""
        return value

    return {k: _PLACEHOLDER_RE.sub(_sub, v) for k, v in env.items()}


class DescriptorStore:
    """Immutable set of descriptors keyed by name."""

    def __init__(self, descriptors: Iterable[ServiceDescriptor], capacities: Mapping[str, Any] | None = None):
        by_name: dict[str, ServiceDescriptor] = {}
        for d in descriptors:
            if d.name in by_name:
                raise DescriptorError(f"Duplicate service name '{d.name}'.")
            by_name[d.name] = d

        for d in by_name.values():
            for dep in d.depends_on:
                if dep not in by_name:
                    raise UnknownDependency(d.name, dep)

        ports: dict[int, list[str]] = {}
        for d in by_name.values():
            if d.route:
                ports.setdefault(d.route.listen_port, []).append(d.name)
        for port, owners in sorted(ports.items()):
            if len(owners) > 1:
                raise RouteConflict(port, sorted(owners))

        self._by_name = MappingProxyType(by_name)
        self.capacities: Mapping[str, Any] = MappingProxyType(dict(capacities or {}))

    def get(self, name: str) -> ServiceDescriptor:
        try:
            return self._by_name[name]
        except KeyError:
            raise KeyError(f"unknown service '{name}'") from None

    def names(self) -> list[str]:
        return sorted(self._by_name)

    def routed(self) -> list[ServiceDescriptor]:
        return sorted((d for d in self._by_name.values() if d.route), key=lambda d: d.route.listen_port)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __iter__(self) -> Iterator[ServiceDescriptor]:
        return iter(self._by_name[n] for n in self.names())

    def __len__(self) -> int:
        return len(self._by_name)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DescriptorStore":
        raw_services = data.get("services") or {}
        if isinstance(raw_services, Mapping):
            items = [{"name": name, **(opts or {})} for name, opts in raw_services.items()]
        elif isinstance(raw_services, list):
            items = list(raw_services)
        else:
            raise DescriptorError("'services' must be a mapping or a list")
        descriptors = [_build(item) for item in items]
        return cls(descriptors, capacities=data.get("resources") or {})


def _build(item: Mapping[str, Any]) -> ServiceDescriptor:
    try:
        return ServiceDescriptor.model_validate(item)
    except ValidationError as e:
        raise DescriptorError(f"Invalid service '{item.get('name', '?')}': {e}") from e


def _read(path: str | Path) -> dict[str, Any]:
    p = Path(path)
    text = p.read_text(encoding="utf-8")
    if not text.strip():
        return {}
    try:
        data = json.loads(text) if p.suffix == ".json" else yaml.safe_load(text)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise DescriptorError(f"Cannot parse {p}: {e}") from e
    if not isinstance(data, dict):
        raise DescriptorError(f"{p}: top level must be a mapping")
    return data


def load_file(path: str | Path) -> DescriptorStore:
    """Load a topology file (YAML or JSON); compose manifests are detected."""
    data = _read(path)
    services = data.get("services")
    if isinstance(services, Mapping) and any(_looks_like_compose(o) for o in services.values()):
        return load_compose(data)
    return DescriptorStore.from_dict(data)


_COMPOSE_ONLY_KEYS = {"expose", "deploy", "restart", "container_name", "networks", "volumes", "x-topo-route"}


def _looks_like_compose(opts: Any) -> bool:
    if not isinstance(opts, Mapping):
        return False
    hc = opts.get("healthcheck")
    if isinstance(hc, Mapping) and "test" in hc:
        return True
    return bool(_COMPOSE_ONLY_KEYS.intersection(opts))


_RESTART_MAP = {"no": "never", "always": "always", "unless-stopped": "always", "on-failure": "on-failure"}


def load_compose(source: str | Path | Mapping[str, Any]) -> DescriptorStore:
    """Build descriptors from a docker-compose manifest.

    Routes are not part of compose; declare them per service with the
    ``x-topo-route`` extension key.
    """
    data = source if isinstance(source, Mapping) else _read(source)
    services = data.get("services") or {}
    descriptors = []
    for name, opts in services.items():
        opts = opts or {}
        item: dict[str, Any] = {"name": name}
        if "image" in opts:
            item["image"] = opts["image"]
        if "command" in opts:
            item["command"] = opts["command"]
        item["ports"] = _compose_ports(opts)
        if "environment" in opts:
            item["environment"] = opts["environment"]
        deps = opts.get("depends_on")
        if deps:
            item["depends_on"] = list(deps) if isinstance(deps, Mapping) else deps
        hc = _compose_healthcheck(opts.get("healthcheck"))
        if hc:
            item["healthcheck"] = hc
        res = _compose_resources(opts.get("deploy"))
        if res:
            item["resources"] = res
        restart = str(opts.get("restart", "no")).split(":", 1)[0]
        if restart not in _RESTART_MAP:
            raise DescriptorError(f"Invalid service '{name}': unknown restart policy {restart!r}")
        item["restart_policy"] = _RESTART_MAP[restart]
        if "x-topo-route" in opts:
            item["route"] = opts["x-topo-route"]
        descriptors.append(_build(item))
    return DescriptorStore(descriptors, capacities=data.get("x-topo-resources") or {})


def _compose_ports(opts: Mapping[str, Any]) -> list[int]:
    out: list[int] = []
    for raw in list(opts.get("expose") or []) + list(opts.get("ports") or []):
        if isinstance(raw, Mapping):
            port = raw.get("target")
        else:
            # "host:container", "ip:host:container", "8080/tcp"
            port = str(raw).split(":")[-1].split("/")[0]
        if port is not None and int(port) not in out:
            out.append(int(port))
    return out


def _compose_healthcheck(hc: Any) -> dict[str, Any] | None:
    if not isinstance(hc, Mapping) or hc.get("disable"):
        return None
    test = hc.get("test")
    if isinstance(test, list):
        if not test or test[0] == "NONE":
            return None
        if test[0] == "CMD":
            target: Any = list(test[1:])
        elif test[0] == "CMD-SHELL":
            target = ["sh", "-c", " ".join(test[1:])]
        else:
            target = list(test)
    elif isinstance(test, str):
        target = ["sh", "-c", test]
    else:
        return None
    # compose escapes a literal "$" as "$$"; the shell inside the container expands it
    target = [arg.replace("$$", "$") for arg in target]
    out: dict[str, Any] = {"kind": "exec", "target": target}
    for src, dst in (("interval", "interval"), ("timeout", "timeout"), ("start_period", "start_period")):
        if src in hc:
            out[dst] = hc[src]
    if "retries" in hc:
        out["failure_threshold"] = int(hc["retries"])
    return out


def _compose_resources(deploy: Any) -> dict[str, Any] | None:
    if not isinstance(deploy, Mapping):
        return None
    res = deploy.get("resources") or {}
    limits = res.get("limits") or {}
    out: dict[str, Any] = {}
    if "cpus" in limits:
        out["cpu"] = float(limits["cpus"])
    if "memory" in limits:
        out["memory"] = limits["memory"]
    gpus = 0
    for dev in (res.get("reservations") or {}).get("devices") or []:
        if "gpu" in (dev.get("capabilities") or []):
            count = dev.get("count", 1)
            gpus += 1 if count == "all" else int(count)
    if gpus:
        out["gpu"] = gpus
    return out or None
