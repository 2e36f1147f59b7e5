from __future__ import annotations


class TopologyError(Exception):
    """Base class for every orchestrator error."""


class DescriptorError(TopologyError):
    """The topology input is malformed or inconsistent."""


class UnknownDependency(DescriptorError):
    def __init__(self, service: str, dependency: str):
        self.service = service
        self.dependency = dependency
        super().__init__(f"Service '{service}' depends on unknown service '{dependency}'.")


class RouteConflict(DescriptorError):
    def __init__(self, listen_port: int, services: list[str]):
        self.listen_port = listen_port
        self.services = services
        super().__init__(f"Listener port {listen_port} is claimed by more than one service: {', '.join(services)}.")


class CyclicDependency(TopologyError):
    """Fatal: the dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(f"Cyclic dependency: {' -> '.join(cycle)}")


class ResourceExhausted(TopologyError):
    def __init__(self, kind: str, requested: float, available: float, permanent: bool = False):
        self.kind = kind
        self.requested = requested
        self.available = available
        # The request is larger than the whole capacity; retrying cannot help.
        self.permanent = permanent
        super().__init__(f"Not enough {kind}: requested {requested:g}, available {available:g}.")


class HealthCheckFailure(TopologyError):
    pass


class HealthCheckTimeout(HealthCheckFailure):
    pass


class DependencyFailed(TopologyError):
    def __init__(self, service: str, dependency: str):
        self.service = service
        self.dependency = dependency
        super().__init__(f"Service '{service}' is blocked: dependency '{dependency}' failed.")


class ProcessStartFailure(TopologyError):
    pass


class ProxyTargetUnavailable(TopologyError):
    pass


class ProxyConfigError(TopologyError):
    pass
