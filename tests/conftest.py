import socket
import sys
import time
from dataclasses import dataclass, replace
from threading import Lock

import pytest

# Ensure project root is importable (so `import main` / `import cli` work without installing)
import os as _os
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from topo import db  # noqa: E402
from topo.descriptors import DescriptorStore  # noqa: E402
from topo.errors import ProcessStartFailure  # noqa: E402
from topo.health import HealthSupervisor  # noqa: E402
from topo.orchestrator import Orchestrator  # noqa: E402
from topo.runtime import ProbeResult  # noqa: E402
from topo.runtimes import Runtime  # noqa: E402
from topo.settings import settings  # noqa: E402


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Every test gets its own sqlite event log."""
    monkeypatch.setattr(db, "settings", replace(settings, db_path=str(tmp_path / "topo.db")))
    db.init_db()
    yield


@dataclass
class FakeHandle:
    id: str
    name: str
    alive: bool = True
    exit_code: int | None = None


class FakeRuntime(Runtime):
    """Records starts/stops instead of running anything."""

    def __init__(self, fail_start=()):
        self.fail_start = set(fail_start)
        self.started: list[str] = []
        self.stopped: list[str] = []
        self.envs: dict[str, dict[str, str]] = {}
        self.handles: dict[str, FakeHandle] = {}
        self._lock = Lock()
        self._n = 0

    def start(self, descriptor, env):
        with self._lock:
            if descriptor.name in self.fail_start:
                raise ProcessStartFailure(f"cannot start {descriptor.name}")
            self._n += 1
            handle = FakeHandle(id=f"{descriptor.name}-{self._n}", name=descriptor.name)
            self.started.append(descriptor.name)
            self.envs[descriptor.name] = dict(env)
            self.handles[descriptor.name] = handle
            return handle

    def stop(self, handle, grace_s):
        with self._lock:
            handle.alive = False
            self.stopped.append(handle.name)

    def is_alive(self, handle):
        return handle.alive

    def exit_code(self, handle):
        return None if handle.alive else (handle.exit_code if handle.exit_code is not None else 1)

    def exec(self, handle, argv, timeout_s):
        return 0

    def address(self, handle, port):
        return "127.0.0.1", port


class ScriptedProbe:
    """Probe callable whose answer per service can be flipped from the test."""

    def __init__(self, default=True):
        self.default = default
        self.health: dict[str, bool] = {}
        self.calls: dict[str, int] = {}
        self._lock = Lock()

    def set(self, name, ok):
        with self._lock:
            self.health[name] = ok

    def __call__(self, inst):
        with self._lock:
            self.calls[inst.name] = self.calls.get(inst.name, 0) + 1
            ok = self.health.get(inst.name, self.default)
        return ProbeResult(ok, "ok" if ok else "scripted failure")


def svc(name, deps=(), **kw):
    """Descriptor dict with a fast http health check."""
    item = {
        "name": name,
        "command": ["fake", name],
        "ports": [8000],
        "depends_on": list(deps),
        "healthcheck": {"kind": "http", "target": "/health", "interval": 0.01, "timeout": 0.5},
    }
    item.update(kw)
    return item


def wait_until(predicate, timeout=5.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def free_port():
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def fast_settings():
    return replace(
        settings,
        backoff_base_s=0.01,
        backoff_max_s=0.05,
        max_restarts=2,
        stop_grace_s=0,
        gpu_capacity=0,
        cpu_capacity=None,
        memory_capacity=None,
        enable_email=False,
    )


@pytest.fixture
def make_orch(fast_settings):
    """Build an orchestrator over a fake runtime and a scripted probe."""
    built = []

    def _make(services, resources=None, runtime=None, probe=None, environ=None, proxy=False, config=None):
        runtime = runtime or FakeRuntime()
        probe = probe or ScriptedProbe()
        store = DescriptorStore.from_dict({"services": services, "resources": resources or {}})
        orch = Orchestrator(
            store,
            runtime=runtime,
            config=config or fast_settings,
            environ=environ or {},
            proxy=proxy,
            supervisor=HealthSupervisor(runtime, probe=probe),
        )
        built.append(orch)
        return orch, runtime, probe

    yield _make
    for orch in built:
        orch.stop()
