import socket
import sys
import threading
import time
from collections import deque
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from conftest import FakeRuntime, ScriptedProbe, wait_until
from topo.descriptors import HealthCheckSpec, ServiceDescriptor
from topo.errors import DependencyFailed
from topo.health import HealthSupervisor, HealthTracker, check_exec, check_http, check_tcp
from topo.runtime import InstanceState, ProbeResult, RuntimeInstance
from topo.runtimes import ProcessRuntime

S = InstanceState


def _spec(**kw):
    return HealthCheckSpec(kind="http", target="/health", **kw)


def test_healthy_only_after_consecutive_successes():
    t = HealthTracker(_spec(success_threshold=3))
    assert t.begin_probing() == S.PROBING
    assert t.record(True) == S.PROBING
    assert t.record(True) == S.PROBING
    assert t.record(False) == S.UNHEALTHY
    assert t.record(True) == S.PROBING
    assert t.record(True) == S.PROBING
    assert t.record(True) == S.HEALTHY
    assert t.record(True) == S.HEALTHY


def test_failed_after_consecutive_failures():
    t = HealthTracker(_spec(failure_threshold=3))
    t.begin_probing()
    assert t.record(False) == S.UNHEALTHY
    assert t.record(False) == S.UNHEALTHY
    assert t.record(False) == S.FAILED
    # terminal
    assert t.record(True) == S.FAILED


def test_success_resets_failure_count():
    t = HealthTracker(_spec(failure_threshold=2))
    t.begin_probing()
    assert t.record(False) == S.UNHEALTHY
    assert t.record(True) == S.HEALTHY
    assert t.record(False) == S.UNHEALTHY
    assert t.record(True) == S.HEALTHY


def test_healthy_instance_degrades_before_failing():
    t = HealthTracker(_spec(failure_threshold=1))
    t.begin_probing()
    assert t.record(True) == S.HEALTHY
    assert t.record(False) == S.UNHEALTHY
    assert t.record(False) == S.FAILED


def test_check_tcp():
    srv = socket.create_server(("127.0.0.1", 0))
    port = srv.getsockname()[1]
    try:
        ok, _, latency = check_tcp("127.0.0.1", port, 1.0)
        assert ok is True
        assert latency is not None
    finally:
        srv.close()
    ok, msg, _ = check_tcp("127.0.0.1", port, 1.0)
    assert ok is False


class _Handler(BaseHTTPRequestHandler):
    def do_GET(self):
        code = 204 if self.path == "/health" else 500
        self.send_response(code)
        self.end_headers()

    def log_message(self, *args):
        pass


@pytest.fixture
def http_server():
    srv = ThreadingHTTPServer(("127.0.0.1", 0), _Handler)
    thr = threading.Thread(target=srv.serve_forever, daemon=True)
    thr.start()
    yield srv.server_address[1]
    srv.shutdown()
    srv.server_close()


def test_check_http_accepts_any_2xx(http_server):
    ok, msg, _ = check_http(f"http://127.0.0.1:{http_server}/health", 2.0)
    assert ok is True
    assert msg == "HTTP 204"

    ok, msg, _ = check_http(f"http://127.0.0.1:{http_server}/broken", 2.0)
    assert ok is False
    assert msg == "HTTP 500"


def test_check_http_no_listener():
    sock = socket.socket()
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    ok, _, _ = check_http(f"http://127.0.0.1:{port}/health", 1.0)
    assert ok is False


def test_check_exec_exit_codes():
    rt = ProcessRuntime()
    ok, msg, _ = check_exec(rt, None, [sys.executable, "-c", "raise SystemExit(0)"], 10)
    assert ok is True
    ok, msg, _ = check_exec(rt, None, [sys.executable, "-c", "raise SystemExit(3)"], 10)
    assert (ok, msg) == (False, "Exit 3")
    ok, msg, _ = check_exec(rt, None, [sys.executable, "-c", "import time; time.sleep(5)"], 0.2)
    assert ok is False
    assert "timed out" in msg


def _instance(runtime, **hc):
    desc = ServiceDescriptor(
        name="svc",
        command=("run",),
        ports=(8000,),
        healthcheck={"kind": "http", "target": "/health", "interval": 0.01, "timeout": 0.5, **hc},
    )
    inst = RuntimeInstance(descriptor=desc, level=0, history=deque(maxlen=5))
    inst.handle = runtime.start(desc, {})
    return inst


def test_supervisor_reaches_healthy_and_publishes_events():
    runtime = FakeRuntime()
    probe = ScriptedProbe()
    sup = HealthSupervisor(runtime, probe=probe)
    seen = []
    sup.subscribe(lambda inst, state, prev: seen.append((prev, state)))
    inst = _instance(runtime, success_threshold=2)
    sup.watch(inst)
    try:
        assert sup.wait_healthy("svc", timeout=5)
        assert (S.STARTING, S.PROBING) in seen
        assert (S.PROBING, S.HEALTHY) in seen
        assert probe.calls["svc"] >= 2
        assert inst.last_result.ok
        states = []
        while not sup.events.empty():
            states.append(sup.events.get().state)
        assert states[:2] == [S.PROBING, S.HEALTHY]
    finally:
        sup.unwatch_all()


def test_probe_timeout_counts_as_failure():
    runtime = FakeRuntime()

    def slow(inst):
        time.sleep(1)
        return ProbeResult(True, "too late")

    sup = HealthSupervisor(runtime, probe=slow)
    inst = _instance(runtime, timeout=0.05, failure_threshold=1)
    sup.watch(inst)
    try:
        assert wait_until(lambda: sup.state("svc") == S.FAILED)
        assert inst.history[-1].ok is False
        assert inst.history[-1].message.startswith("Timed out")
    finally:
        sup.unwatch_all()


def test_dead_process_fails_immediately():
    runtime = FakeRuntime()
    sup = HealthSupervisor(runtime, probe=ScriptedProbe())
    inst = _instance(runtime, failure_threshold=10)
    inst.handle.alive = False
    sup.watch(inst)
    try:
        assert wait_until(lambda: sup.state("svc") == S.FAILED)
        assert inst.history[-1].message == "Process exited"
    finally:
        sup.unwatch_all()


def test_wait_healthy_raises_for_permanent_failure_and_honours_cancel():
    sup = HealthSupervisor(FakeRuntime())
    cancel = threading.Event()
    threading.Timer(0.05, cancel.set).start()
    assert sup.wait_healthy("db", cancel=cancel) is False
    assert sup.wait_healthy("db", timeout=0.05) is False

    threading.Timer(0.05, sup.mark_failed, args=("db",)).start()
    with pytest.raises(DependencyFailed) as exc:
        sup.wait_healthy("db", timeout=5, waiter="api")
    assert exc.value.service == "api"
    assert exc.value.dependency == "db"
