from __future__ import annotations

from typing import Any, Mapping

from . import db
from .descriptors import DescriptorStore, load_file
from .graph import DependencyGraph
from .health import HealthSupervisor
from .lifecycle import LifecycleController
from .proxy import ReverseProxy, RouteTable
from .resources import ResourceLedger, capacities_from
from .runtimes import Runtime, make_runtime
from .settings import Settings, settings as default_settings


class Orchestrator:
    """Wires store -> graph -> ledger -> supervisor -> controller -> router.

    Building the graph is where a cyclic topology is refused, before anything
    has been started.
    """

    def __init__(
        self,
        store: DescriptorStore,
        runtime: Runtime | None = None,
        config: Settings | None = None,
        environ: Mapping[str, str] | None = None,
        proxy: bool = True,
        supervisor: HealthSupervisor | None = None,
    ):
        self.config = config or default_settings
        db.init_db()
        self.store = store
        self.graph = DependencyGraph(store)
        self.runtime = runtime or make_runtime(self.config.runtime)
        self.ledger = ResourceLedger(capacities_from(self.config, store.capacities))
        self.supervisor = supervisor or HealthSupervisor(self.runtime)
        self.routes = RouteTable.from_store(store)
        self.proxy = (
            ReverseProxy(
                self.routes,
                self.runtime,
                host=self.config.proxy_host,
                cert_path=self.config.tls_cert_path,
                key_path=self.config.tls_key_path,
                connect_timeout_s=self.config.proxy_connect_timeout_s,
            )
            if proxy
            else None
        )
        if self.proxy is not None:
            self.supervisor.subscribe(self.proxy.on_readiness)
        self.controller = LifecycleController(
            store, self.graph, self.ledger, self.supervisor, self.runtime, environ=environ, config=self.config
        )
        self.running = False

    @classmethod
    def from_file(cls, path: str, **kwargs: Any) -> "Orchestrator":
        return cls(load_file(path), **kwargs)

    def start(self) -> None:
        if self.running:
            return
        if self.proxy is not None:
            self.proxy.start()
        self.controller.start_all()
        self.running = True

    def stop(self) -> None:
        if not self.running:
            return
        self.controller.stop_all()
        if self.proxy is not None:
            self.proxy.stop()
        self.running = False

    def restart(self, name: str) -> None:
        self.controller.restart(name)

    def status(self) -> list[dict[str, Any]]:
        """One entry per descriptor, in start order."""
        routes = {e.target: e for e in self.routes.snapshot().values()}
        out = []
        for entry in self.controller.status():
            r = routes.get(entry["name"])
            entry["route"] = (
                {"listen_port": r.listen_port, "state": r.state.value, "tls": r.tls, "upgrade": r.upgrade}
                if r
                else None
            )
            out.append(entry)
        return out

    def route_table(self) -> list[dict[str, Any]]:
        stats = self.proxy.stats if self.proxy else {}
        return [
            {
                "listen_port": e.listen_port,
                "target": e.target,
                "target_port": e.target_port,
                "tls": e.tls,
                "upgrade": e.upgrade,
                "state": e.state.value,
                "address": f"{e.address[0]}:{e.address[1]}" if e.address else None,
                "stats": dict(stats.get(e.listen_port, {})),
            }
            for _, e in sorted(self.routes.snapshot().items())
        ]
