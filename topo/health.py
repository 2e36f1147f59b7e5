from __future__ import annotations

import queue
import socket
import time
from dataclasses import dataclass
from threading import Condition, Event, Lock, Thread
from typing import Any, Callable

import httpx

from . import db
from .descriptors import HealthCheckSpec
from .errors import DependencyFailed, HealthCheckTimeout
from .runtime import InstanceState, ProbeResult, RuntimeInstance
from .runtimes import Runtime


# Interval used to watch liveness of services that declare no health check.
LIVENESS_INTERVAL_S = 1.0


def _elapsed_ms(start: float) -> float:
    return round((time.time() - start) * 1000.0, 2)


def check_http(url: str, timeout_s: float = 2.0) -> tuple[bool, str, float | None]:
    """GET a health endpoint; any 2xx is healthy.

    Returns (is_healthy, message, latency_ms).
    """
    start = time.time()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False) as client:
            resp = client.get(url)
        latency_ms = _elapsed_ms(start)
        if 200 <= resp.status_code < 300:
            return True, f"HTTP {resp.status_code}", latency_ms
        return False, f"HTTP {resp.status_code}", latency_ms
    except httpx.TimeoutException:
        return False, f"Timed out after {timeout_s:g}s", _elapsed_ms(start)
    except httpx.ConnectError:
        return False, "No response", _elapsed_ms(start)
    except Exception as e:
        return False, f"Error: {type(e).__name__}: {e}", _elapsed_ms(start)


def check_tcp(host: str, port: int, timeout_s: float = 2.0) -> tuple[bool, str, float | None]:
    start = time.time()
    try:
        with socket.create_connection((host, port), timeout=timeout_s):
            return True, "Connected", _elapsed_ms(start)
    except socket.timeout:
        return False, f"Timed out after {timeout_s:g}s", _elapsed_ms(start)
    except OSError as e:
        return False, f"Connect failed: {e}", _elapsed_ms(start)


def check_exec(runtime: Runtime, handle: Any, argv: list[str], timeout_s: float = 2.0) -> tuple[bool, str, float | None]:
    start = time.time()
    try:
        code = runtime.exec(handle, argv, timeout_s)
    except HealthCheckTimeout as e:
        return False, str(e), _elapsed_ms(start)
    except Exception as e:
        return False, f"Error: {type(e).__name__}: {e}", _elapsed_ms(start)
    if code == 0:
        return True, "Exit 0", _elapsed_ms(start)
    return False, f"Exit {code}", _elapsed_ms(start)


class HealthTracker:
    """Consecutive-result state machine for one instance.

    Starting -> Probing -> Healthy; Probing -> Unhealthy -> Probing;
    Unhealthy -> Failed once failures reach the threshold. A Healthy instance
    that fails a probe always passes through Unhealthy first.
    """

    def __init__(self, spec: HealthCheckSpec | None):
        self.success_threshold = spec.success_threshold if spec else 1
        self.failure_threshold = spec.failure_threshold if spec else 1
        self.state = InstanceState.STARTING
        self.successes = 0
        self.failures = 0

    def begin_probing(self) -> InstanceState:
        if self.state == InstanceState.STARTING:
            self.state = InstanceState.PROBING
        return self.state

    def record(self, ok: bool) -> InstanceState:
        if self.state == InstanceState.FAILED:
            return self.state
        if self.state == InstanceState.STARTING:
            self.state = InstanceState.PROBING

        if ok:
            self.successes += 1
            self.failures = 0
            if self.successes >= self.success_threshold:
                self.state = InstanceState.HEALTHY
            elif self.state == InstanceState.UNHEALTHY:
                self.state = InstanceState.PROBING
            return self.state

        self.failures += 1
        self.successes = 0
        if self.state == InstanceState.HEALTHY:
            self.state = InstanceState.UNHEALTHY
        elif self.failures >= self.failure_threshold:
            self.state = InstanceState.FAILED
        else:
            self.state = InstanceState.UNHEALTHY
        return self.state

    def mark_failed(self) -> InstanceState:
        self.state = InstanceState.FAILED
        return self.state


@dataclass(frozen=True)
class HealthEvent:
    name: str
    state: InstanceState
    previous: InstanceState
    result: ProbeResult | None
    handle: Any


ReadinessCallback = Callable[[RuntimeInstance, InstanceState, InstanceState], None]


class HealthSupervisor:
    """Probes running instances and gates dependents on their readiness.

    Every transition is put on ``events`` for the lifecycle controller and
    passed to subscribed callbacks (the route table flips on these).
    """

    def __init__(
        self,
        runtime: Runtime,
        events: "queue.Queue[HealthEvent] | None" = None,
        probe: Callable[[RuntimeInstance], ProbeResult] | None = None,
    ):
        self.runtime = runtime
        self.events: "queue.Queue[HealthEvent]" = events if events is not None else queue.Queue()
        self._probe = probe or self.probe_once
        self._lock = Lock()
        self._changed = Condition(self._lock)
        self._states: dict[str, InstanceState] = {}
        self._dead: set[str] = set()
        self._workers: dict[str, tuple[Thread, Event]] = {}
        self._callbacks: list[ReadinessCallback] = []

    def subscribe(self, callback: ReadinessCallback) -> None:
        self._callbacks.append(callback)

    def state(self, name: str) -> InstanceState | None:
        with self._lock:
            return self._states.get(name)

    def is_healthy(self, name: str) -> bool:
        return self.state(name) == InstanceState.HEALTHY

    def watch(self, inst: RuntimeInstance) -> None:
        """Start probing a freshly started instance."""
        self.unwatch(inst.name)
        stop = Event()
        tracker = HealthTracker(inst.descriptor.healthcheck)
        with self._changed:
            self._dead.discard(inst.name)
            self._states[inst.name] = InstanceState.STARTING
            self._changed.notify_all()
        thr = Thread(target=self._run, args=(inst, tracker, stop), name=f"probe-{inst.name}", daemon=True)
        with self._lock:
            self._workers[inst.name] = (thr, stop)
        thr.start()

    def unwatch(self, name: str, join_timeout: float = 5.0) -> None:
        with self._lock:
            worker = self._workers.pop(name, None)
        if not worker:
            return
        thr, stop = worker
        stop.set()
        if thr.is_alive():
            thr.join(join_timeout)

    def unwatch_all(self) -> None:
        with self._lock:
            names = list(self._workers)
        for name in names:
            self.unwatch(name)

    def mark_failed(self, name: str) -> None:
        """Permanent failure: dependents waiting on ``name`` give up."""
        with self._changed:
            self._dead.add(name)
            self._states[name] = InstanceState.FAILED
            self._changed.notify_all()

    def release(self, inst: RuntimeInstance) -> None:
        """Stop probing ``inst`` and report it as Stopped to subscribers."""
        self.unwatch(inst.name)
        with self._changed:
            previous = self._states.get(inst.name)
            self._states[inst.name] = InstanceState.STOPPED
            self._changed.notify_all()
        if previous is not None and previous != InstanceState.STOPPED:
            self._notify(inst, InstanceState.STOPPED, previous)

    def reset(self, name: str) -> None:
        with self._changed:
            self._dead.discard(name)
            self._states.pop(name, None)
            self._changed.notify_all()

    def wait_healthy(
        self,
        name: str,
        timeout: float | None = None,
        cancel: Event | None = None,
        waiter: str | None = None,
    ) -> bool:
        """Block until ``name`` is Healthy.

        Returns False on timeout or cancellation; raises DependencyFailed when
        ``name`` failed permanently.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._changed:
            while True:
                if self._states.get(name) == InstanceState.HEALTHY:
                    return True
                if name in self._dead:
                    raise DependencyFailed(waiter or name, name)
                if cancel is not None and cancel.is_set():
                    return False
                slice_s = 0.1
                if deadline is not None:
                    left = deadline - time.monotonic()
                    if left <= 0:
                        return False
                    slice_s = min(slice_s, left)
                self._changed.wait(slice_s)

    def probe_once(self, inst: RuntimeInstance) -> ProbeResult:
        spec = inst.descriptor.healthcheck
        if spec is None:
            alive = self.runtime.is_alive(inst.handle)
            return ProbeResult(alive, "Running" if alive else "Not running")

        if spec.kind == "exec":
            ok, msg, latency = check_exec(self.runtime, inst.handle, spec.exec_argv, spec.timeout)
            return ProbeResult(ok, msg, latency)

        port = spec.probe_port(inst.descriptor.ports)
        if port is None:
            return ProbeResult(False, "No port to probe")
        host, port = self.runtime.address(inst.handle, port)
        if spec.kind == "tcp":
            ok, msg, latency = check_tcp(host, port, spec.timeout)
        else:
            ok, msg, latency = check_http(f"http://{host}:{port}{spec.http_path}", spec.timeout)
        return ProbeResult(ok, msg, latency)

    def _timed_probe(self, inst: RuntimeInstance, timeout_s: float) -> ProbeResult:
        box: list[ProbeResult] = []

        def _call() -> None:
            try:
                box.append(self._probe(inst))
            except Exception as e:
                box.append(ProbeResult(False, f"Error: {type(e).__name__}: {e}"))

        thr = Thread(target=_call, name=f"probe-call-{inst.name}", daemon=True)
        start = time.time()
        thr.start()
        thr.join(timeout_s)
        if thr.is_alive() or not box:
            return ProbeResult(False, f"Timed out after {timeout_s:g}s", _elapsed_ms(start))
        return box[0]

    def _run(self, inst: RuntimeInstance, tracker: HealthTracker, stop: Event) -> None:
        spec = inst.descriptor.healthcheck
        interval = spec.interval if spec else LIVENESS_INTERVAL_S
        timeout_s = spec.timeout if spec else LIVENESS_INTERVAL_S
        try:
            if stop.wait(spec.start_period if spec else 0):
                return
            self._transition(inst, tracker.state, tracker.begin_probing(), None, stop)

            while not stop.is_set():
                if not self.runtime.is_alive(inst.handle):
                    result = ProbeResult(False, "Process exited")
                    inst.history.append(result)
                    self._transition(inst, tracker.state, tracker.mark_failed(), result, stop)
                    return

                result = self._timed_probe(inst, timeout_s)
                if stop.is_set():
                    return
                inst.history.append(result)
                previous = tracker.state
                self._transition(inst, previous, tracker.record(result.ok), result, stop)
                if tracker.state == InstanceState.FAILED:
                    return
                stop.wait(interval)
        except Exception as e:
            db.log_event("ERROR", f"Probe worker crashed: {type(e).__name__}: {e}", service_name=inst.name)
            self._transition(inst, tracker.state, tracker.mark_failed(), None, stop)

    def _transition(
        self,
        inst: RuntimeInstance,
        previous: InstanceState,
        state: InstanceState,
        result: ProbeResult | None,
        stop: Event,
    ) -> None:
        if state == previous or stop.is_set():
            return
        with self._changed:
            self._states[inst.name] = state
            self._changed.notify_all()
        self._notify(inst, state, previous)
        self.events.put(HealthEvent(inst.name, state, previous, result, inst.handle))

    def _notify(self, inst: RuntimeInstance, state: InstanceState, previous: InstanceState) -> None:
        for cb in list(self._callbacks):
            try:
                cb(inst, state, previous)
            except Exception as e:
                db.log_event("ERROR", f"Readiness callback failed: {type(e).__name__}: {e}", service_name=inst.name)
