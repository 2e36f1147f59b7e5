"""Process / container collaborators.

The orchestrator only needs to start something with an environment, stop it
with a grace period, ask whether it is alive and reach its ports. Two
implementations share that interface: containers through the Docker SDK and
plain local processes.
"""
from __future__ import annotations

import os
import secrets
import shlex
import signal
import subprocess
from dataclasses import dataclass
from typing import Any

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.types import DeviceRequest

from .descriptors import ServiceDescriptor
from .errors import HealthCheckTimeout, ProcessStartFailure
from .settings import settings


@dataclass(frozen=True)
class ContainerRef:
    id: str
    name: str


@dataclass(frozen=True)
class ProcessHandle:
    id: str
    name: str
    popen: Any


class Runtime:
    """Interface every collaborator implements."""

    def start(self, descriptor: ServiceDescriptor, env: dict[str, str]) -> Any:
        raise NotImplementedError

    def stop(self, handle: Any, grace_s: float) -> None:
        raise NotImplementedError

    def is_alive(self, handle: Any) -> bool:
        raise NotImplementedError

    def exit_code(self, handle: Any) -> int | None:
        """Exit status once the process is gone, None while it runs."""
        raise NotImplementedError

    def exec(self, handle: Any, argv: list[str], timeout_s: float) -> int:
        raise NotImplementedError

    def address(self, handle: Any, port: int) -> tuple[str, int]:
        raise NotImplementedError


class DockerRuntime(Runtime):
    """Containers attached to one bridge network, labeled with their service."""

    def __init__(self, network: str | None = None, client: docker.DockerClient | None = None):
        self.network = network or settings.docker_network
        self._client = client

    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def available(self) -> bool:
        try:
            self.client().ping()
            return True
        except DockerException:
            return False

    def ensure_network(self) -> None:
        c = self.client()
        try:
            c.networks.get(self.network)
        except NotFound:
            c.networks.create(self.network, driver="bridge")

    def start(self, descriptor: ServiceDescriptor, env: dict[str, str]) -> ContainerRef:
        if not descriptor.image:
            raise ProcessStartFailure(f"Service '{descriptor.name}' has no image to run.")
        try:
            self.ensure_network()
        except DockerException as e:
            raise ProcessStartFailure(f"Docker is not available: {e}") from e

        name = f"topo-{descriptor.name}-{secrets.token_hex(3)}"
        kwargs: dict[str, Any] = {
            "command": list(descriptor.command) or None,
            "detach": True,
            "name": name,
            "environment": env,
            "network": self.network,
            "labels": {"topo.service": descriptor.name},
            # Restarts are decided by the lifecycle controller, not by Docker.
            "restart_policy": {"Name": "no"},
        }
        res = descriptor.resources
        if res.cpu:
            kwargs["nano_cpus"] = int(res.cpu * 1_000_000_000)
        if res.memory:
            kwargs["mem_limit"] = res.memory
        if res.gpu:
            kwargs["device_requests"] = [DeviceRequest(count=res.gpu, capabilities=[["gpu"]])]

        try:
            container = self.client().containers.run(descriptor.image, **kwargs)
        except (ImageNotFound, APIError, DockerException) as e:
            raise ProcessStartFailure(f"Cannot start '{descriptor.name}' from {descriptor.image}: {e}") from e
        return ContainerRef(id=container.id, name=name)

    def _get(self, handle: ContainerRef) -> Any | None:
        try:
            cont = self.client().containers.get(handle.id)
            cont.reload()
            return cont
        except NotFound:
            return None

    def stop(self, handle: ContainerRef, grace_s: float) -> None:
        cont = self._get(handle)
        if cont is None:
            return
        try:
            cont.stop(timeout=max(0, int(grace_s)))
            cont.remove(force=True)
        except NotFound:
            return

    def is_alive(self, handle: ContainerRef) -> bool:
        cont = self._get(handle)
        return cont is not None and cont.status == "running"

    def exit_code(self, handle: ContainerRef) -> int | None:
        cont = self._get(handle)
        if cont is None:
            return -1
        if cont.status in {"exited", "dead"}:
            return int(cont.attrs.get("State", {}).get("ExitCode", -1))
        return None

    def exec(self, handle: ContainerRef, argv: list[str], timeout_s: float) -> int:
        # exec_run has no timeout of its own; the supervisor bounds the call.
        cont = self._get(handle)
        if cont is None:
            return -1
        result = cont.exec_run(argv, stdout=False, stderr=False)
        return int(result.exit_code)

    def address(self, handle: ContainerRef, port: int) -> tuple[str, int]:
        """Address usable from within the same docker network."""
        return handle.name, int(port)


class ProcessRuntime(Runtime):
    """Local executables; the service's ports are bound on ``host``."""

    def __init__(self, host: str = "127.0.0.1"):
        self.host = host

    def start(self, descriptor: ServiceDescriptor, env: dict[str, str]) -> ProcessHandle:
        argv = list(descriptor.command) or shlex.split(descriptor.image or "")
        if not argv:
            raise ProcessStartFailure(f"Service '{descriptor.name}' has no command to run.")
        try:
            proc = subprocess.Popen(
                argv,
                env={**os.environ, **env},
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            raise ProcessStartFailure(f"Cannot start '{descriptor.name}': {e}") from e
        return ProcessHandle(id=str(proc.pid), name=descriptor.name, popen=proc)

    def stop(self, handle: ProcessHandle, grace_s: float) -> None:
        proc = handle.popen
        if proc.poll() is not None:
            return
        try:
            os.killpg(proc.pid, signal.SIGTERM)
        except ProcessLookupError:
            return
        try:
            proc.wait(timeout=grace_s)
        except subprocess.TimeoutExpired:
            try:
                os.killpg(proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                return
            proc.wait()

    def is_alive(self, handle: ProcessHandle) -> bool:
        return handle.popen.poll() is None

    def exit_code(self, handle: ProcessHandle) -> int | None:
        return handle.popen.poll()

    def exec(self, handle: ProcessHandle, argv: list[str], timeout_s: float) -> int:
        try:
            done = subprocess.run(argv, capture_output=True, timeout=timeout_s)
        except subprocess.TimeoutExpired as e:
            raise HealthCheckTimeout(f"exec probe timed out after {timeout_s:g}s") from e
        return done.returncode

    def address(self, handle: ProcessHandle, port: int) -> tuple[str, int]:
        return self.host, int(port)


def make_runtime(kind: str | None = None) -> Runtime:
    kind = (kind or settings.runtime).lower()
    if kind == "docker":
        return DockerRuntime()
    if kind == "process":
        return ProcessRuntime()
    raise ValueError(f"Unknown runtime '{kind}' (expected docker or process)")
