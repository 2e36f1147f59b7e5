from __future__ import annotations

import queue
from collections import deque
from threading import Event, Lock, Thread
from typing import Any, Mapping

from . import db
from .alerts import send_alert
from .db import utc_now
from .descriptors import DescriptorStore, resolve_environment
from .errors import DependencyFailed, ProcessStartFailure, ResourceExhausted
from .graph import DependencyGraph
from .health import HealthEvent, HealthSupervisor
from .resources import ResourceLedger
from .runtime import InstanceState, RuntimeInstance
from .runtimes import Runtime
from .settings import Settings, settings as default_settings


class LifecycleController:
    """Starts services in dependency order and applies their restart policy.

    Starts are dispatched level by level, one worker per level and one start
    thread per member. A member waits until every dependency is Healthy,
    reserves its resources, then starts and hands the instance to the health
    supervisor. Failures come back as messages on the supervisor's event
    queue.
    """

    def __init__(
        self,
        store: DescriptorStore,
        graph: DependencyGraph,
        ledger: ResourceLedger,
        supervisor: HealthSupervisor,
        runtime: Runtime,
        environ: Mapping[str, str] | None = None,
        config: Settings | None = None,
    ):
        self.store = store
        self.graph = graph
        self.ledger = ledger
        self.supervisor = supervisor
        self.runtime = runtime
        self.environ = environ
        self.config = config or default_settings
        self._lock = Lock()
        self._instances: dict[str, RuntimeInstance] = {}
        # Names with a start in flight (dependency wait, reserve, launch or backoff).
        self._starting: set[str] = set()
        self._threads: list[Thread] = []
        self._stopping = Event()
        self._closed = Event()
        self._loop: Thread | None = None
        self.stopped_order: list[str] = []

    # -- public API ---------------------------------------------------------

    def start_all(self) -> None:
        if self._loop and self._loop.is_alive():
            return
        db.log_event("INFO", f"Starting {len(self.store)} services in {len(self.graph.levels())} levels")
        self._loop = Thread(target=self._consume, name="lifecycle-events", daemon=True)
        self._loop.start()
        for k, level in enumerate(self.graph.levels()):
            self._spawn(self._run_level, k, level, name=f"level-{k}")

    def wait_dispatched(self, timeout: float | None = None) -> None:
        """Join the start threads spawned so far (tests and the CLI use this)."""
        for thr in self._snapshot_threads():
            thr.join(timeout)

    def instance(self, name: str) -> RuntimeInstance | None:
        with self._lock:
            return self._instances.get(name)

    def restart(self, name: str) -> None:
        """Tear an instance down and run it through the dependency gate, reserve, start and probe again.

        Refused while a start for ``name`` is already in flight, so a restart
        can neither bypass the dependency wait nor launch a second instance.
        """
        inst = self.instance(name)
        if inst is None:
            raise KeyError(f"service '{name}' has not been started")
        if self._stopping.is_set():
            raise RuntimeError("orchestrator is stopping")
        if not self._claim_start(name):
            raise RuntimeError(f"service '{name}' is already starting")
        db.log_event("INFO", "Manual restart requested", service_name=name)
        self._teardown(inst, "manual restart")
        self.supervisor.reset(name)
        self._set_state(inst, InstanceState.PENDING)
        self._spawn(self._gated_launch, inst, name=f"restart-{name}")

    def stop_all(self) -> None:
        """Stop every instance, dependents before their dependencies."""
        self._stopping.set()
        # Pending waits return on the stop flag; in-flight starts complete first.
        self.wait_dispatched()
        for name in self.graph.stop_order():
            inst = self.instance(name)
            if inst is None:
                continue
            if inst.handle is not None:
                self._teardown(inst, "orchestrator stop")
                self.stopped_order.append(name)
            self._set_state(inst, InstanceState.STOPPED)
        self.supervisor.unwatch_all()
        self._closed.set()
        if self._loop:
            self._loop.join(5)
        db.log_event("INFO", f"Stopped {len(self.stopped_order)} services")

    def status(self) -> list[dict[str, Any]]:
        out = []
        for name in self.graph.order():
            inst = self.instance(name)
            entry: dict[str, Any] = {
                "name": name,
                "level": self.graph.level_of(name),
                "state": InstanceState.PENDING.value,
                "restart_count": 0,
                "last_error": None,
                "handle": None,
                "started_at": None,
                "last_health": None,
                "claims": [],
            }
            if inst is not None:
                with self._lock:
                    last = inst.last_result
                    entry.update(
                        state=inst.state.value,
                        restart_count=inst.restart_count,
                        last_error=inst.last_error,
                        handle=getattr(inst.handle, "id", None),
                        started_at=inst.started_at,
                        last_health=(
                            {"ok": last.ok, "message": last.message, "latency_ms": last.latency_ms, "ts": last.ts}
                            if last
                            else None
                        ),
                    )
                entry["claims"] = [dict(c.amounts) for c in self.ledger.claims_for(name)]
            out.append(entry)
        return out

    # -- start path ---------------------------------------------------------

    def _spawn(self, target: Any, *args: Any, name: str) -> Thread:
        thr = Thread(target=target, args=args, name=name, daemon=True)
        with self._lock:
            self._threads = [t for t in self._threads if t.is_alive()]
            self._threads.append(thr)
        thr.start()
        return thr

    def _snapshot_threads(self) -> list[Thread]:
        with self._lock:
            return list(self._threads)

    def _run_level(self, k: int, members: list[str]) -> None:
        db.log_event("INFO", f"Dispatching level {k}: {', '.join(members)}")
        threads = [self._spawn(self._start_member, name, k, name=f"start-{name}") for name in members]
        for thr in threads:
            thr.join()

    def _claim_start(self, name: str) -> bool:
        with self._lock:
            if name in self._starting:
                return False
            self._starting.add(name)
            return True

    def _finish_start(self, name: str) -> None:
        with self._lock:
            self._starting.discard(name)

    def _start_member(self, name: str, level: int) -> None:
        inst = RuntimeInstance(
            descriptor=self.store.get(name),
            level=level,
            history=deque(maxlen=max(1, self.config.probe_history)),
        )
        with self._lock:
            self._instances[name] = inst
        self._claim_start(name)
        self._gated_launch(inst)

    def _gated_launch(self, inst: RuntimeInstance) -> None:
        """Wait for every dependency to be Healthy, then launch. The caller holds the start claim."""
        name = inst.name
        error = None
        try:
            if not self._await_dependencies(inst):
                return
            error = self._launch(inst)
        finally:
            self._finish_start(name)
        if error is not None:
            self._handle_failure(inst, error, clean_exit=False)

    def _await_dependencies(self, inst: RuntimeInstance) -> bool:
        name = inst.name
        try:
            for dep in self.graph.dependencies(name):
                if not self.supervisor.wait_healthy(dep, cancel=self._stopping, waiter=name):
                    return False
        except DependencyFailed as e:
            self._set_state(inst, InstanceState.DEPENDENCY_FAILED, str(e))
            db.log_event("ERROR", str(e), service_name=name)
            # Anything waiting on this service is blocked as well.
            self.supervisor.mark_failed(name)
            return False
        return True

    def _launch(self, inst: RuntimeInstance) -> str | None:
        """Reserve, start and hand the instance to the supervisor.

        Returns the start error when the runtime could not start the process.
        """
        name = inst.name
        try:
            claim = self._reserve(inst)
            if claim is None:
                return
            env = resolve_environment(inst.descriptor.environment, self.environ)
            if self._stopping.is_set():
                self.ledger.release(claim)
                return
            try:
                handle = self.runtime.start(inst.descriptor, env)
            except ProcessStartFailure as e:
                self.ledger.release(claim)
                with self._lock:
                    inst.claim = None
                db.log_event("ERROR", str(e), service_name=name)
                return str(e)

            with self._lock:
                inst.claim = claim
                inst.handle = handle
                inst.state = InstanceState.STARTING
                inst.started_at = utc_now()
                inst.last_error = None
            inst.history_id = db.record_start(name, str(getattr(handle, "id", handle)), inst.restart_count)
            db.log_event("INFO", f"Started (restart #{inst.restart_count})", service_name=name)
            self.supervisor.watch(inst)
        except Exception as e:
            db.log_event("ERROR", f"Start worker crashed: {type(e).__name__}: {e}", service_name=name)
            self._set_state(inst, InstanceState.FAILED, f"{type(e).__name__}: {e}")
            self.supervisor.mark_failed(name)
        return None

    def _reserve(self, inst: RuntimeInstance):
        request = inst.descriptor.resources.as_dict()
        attempt = 0
        while not self._stopping.is_set():
            try:
                return self.ledger.reserve(inst.name, request)
            except ResourceExhausted as e:
                if e.permanent:
                    db.log_event("ERROR", str(e), service_name=inst.name)
                    self._set_state(inst, InstanceState.FAILED, str(e))
                    self.supervisor.mark_failed(inst.name)
                    return None
                attempt += 1
                if attempt == 1:
                    db.log_event("WARN", f"Waiting for resources: {e}", service_name=inst.name)
                self._set_state(inst, InstanceState.PENDING, str(e))
                self._wait_for_resources(self._backoff(attempt))
        return None

    def _wait_for_resources(self, delay: float) -> None:
        # Short slices keep the wait responsive to the stop flag.
        remaining = delay
        while remaining > 0 and not self._stopping.is_set():
            step = min(0.25, remaining)
            if self.ledger.wait_for_release(step):
                return
            remaining -= step

    def _backoff(self, n: int) -> float:
        return min(self.config.backoff_max_s, self.config.backoff_base_s * (2 ** max(0, n - 1)))

    # -- failure path -------------------------------------------------------

    def _consume(self) -> None:
        while not self._closed.is_set():
            try:
                ev = self.supervisor.events.get(timeout=0.2)
            except queue.Empty:
                continue
            try:
                self._on_event(ev)
            except Exception as e:
                db.log_event("ERROR", f"Event handling failed: {type(e).__name__}: {e}", service_name=ev.name)

    def _on_event(self, ev: HealthEvent) -> None:
        inst = self.instance(ev.name)
        if inst is None or inst.handle is not ev.handle:
            return  # stale event from a replaced instance
        self._set_state(inst, ev.state)
        detail = ev.result.message if ev.result else ""

        if ev.state == InstanceState.HEALTHY:
            db.log_event("INFO", "Instance healthy", service_name=ev.name)
            if ev.previous == InstanceState.UNHEALTHY:
                self._maybe_alert(inst, "Recovered")
        elif ev.state == InstanceState.UNHEALTHY:
            db.log_event("WARN", f"Instance unhealthy: {detail}", service_name=ev.name)
        elif ev.state == InstanceState.FAILED:
            db.log_event("ERROR", f"Instance failed: {detail}", service_name=ev.name)
            if not self._stopping.is_set():
                self._spawn(
                    self._on_failed, inst, ev.handle, detail or "health check failed", name=f"failed-{ev.name}"
                )

    def _on_failed(self, inst: RuntimeInstance, handle: Any, reason: str) -> None:
        with self._lock:
            # A manual restart replaced the failed process in the meantime.
            if inst.handle is not handle or inst.name in self._starting:
                return
        exit_code = self.runtime.exit_code(handle)
        self._teardown(inst, reason)
        self._handle_failure(inst, reason, clean_exit=exit_code == 0)

    def _handle_failure(self, inst: RuntimeInstance, reason: str, clean_exit: bool) -> None:
        policy = inst.descriptor.restart_policy
        name = inst.name
        with self._lock:
            if name in self._starting:
                return  # a manual restart took over
        if policy == "never" or (policy == "on-failure" and clean_exit):
            final = InstanceState.STOPPED if clean_exit else InstanceState.FAILED
            self._set_state(inst, final, reason)
            self.supervisor.mark_failed(name)
            db.log_event("ERROR", f"Not restarting (policy {policy}): {reason}", service_name=name)
            self._maybe_alert(inst, reason)
            return
        if inst.restart_count >= self.config.max_restarts:
            self._set_state(inst, InstanceState.FAILED, f"restart limit reached: {reason}")
            self.supervisor.mark_failed(name)
            db.log_event("ERROR", f"Giving up after {inst.restart_count} restarts: {reason}", service_name=name)
            self._maybe_alert(inst, f"Restart limit reached ({reason})")
            return

        if not self._claim_start(name):
            return
        with self._lock:
            inst.restart_count += 1
        delay = self._backoff(inst.restart_count)
        self._set_state(inst, InstanceState.PENDING, reason)
        db.log_event("WARN", f"Restarting in {delay:g}s (attempt {inst.restart_count}): {reason}", service_name=name)
        self._spawn(self._restart_after, inst, delay, name=f"restart-{name}")

    def _restart_after(self, inst: RuntimeInstance, delay: float) -> None:
        if self._stopping.wait(delay):
            self._finish_start(inst.name)
            return
        self._gated_launch(inst)

    def _teardown(self, inst: RuntimeInstance, reason: str) -> None:
        """Stop the process and release its claim; the instance record stays."""
        self.supervisor.release(inst)
        with self._lock:
            handle, claim, history_id = inst.handle, inst.claim, inst.history_id
            inst.handle = None
            inst.claim = None
            inst.history_id = None
        if handle is not None:
            try:
                self.runtime.stop(handle, self.config.stop_grace_s)
            except Exception as e:
                db.log_event("ERROR", f"Stop failed: {type(e).__name__}: {e}", service_name=inst.name)
        self.ledger.release(claim)
        if history_id is not None:
            db.record_stop(history_id, reason)

    def _set_state(self, inst: RuntimeInstance, state: InstanceState, error: str | None = None) -> None:
        with self._lock:
            inst.state = state
            if error is not None:
                inst.last_error = error

    def _maybe_alert(self, inst: RuntimeInstance, detail: str) -> None:
        if self.config.enable_email:
            send_alert(inst.name, inst.state, detail, inst.restart_count, config=self.config)
