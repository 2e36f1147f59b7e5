"""Port-to-service reverse proxy.

Every route owns one external listener port. Accepted connections are
optionally TLS-terminated and then relayed byte for byte to the target's
internal address, so an HTTP Upgrade handshake and the WebSocket frames that
follow pass through untouched. Routes with upgrade disabled check the request
head for an Upgrade header and forward it with `Connection: close`, so each
connection carries exactly one checked request. Routes only forward while
their target is Healthy; otherwise the client gets a 503.
"""
from __future__ import annotations

import re
import socket
import ssl
from dataclasses import dataclass, replace
from enum import Enum
from threading import Event, Lock, Thread
from types import MappingProxyType
from typing import Callable, Iterable, Mapping

from . import db
from .descriptors import DescriptorStore
from .errors import ProxyConfigError, ProxyTargetUnavailable, RouteConflict
from .runtime import InstanceState, RuntimeInstance
from .runtimes import Runtime
from .settings import settings


_HEAD_LIMIT = 64 * 1024
_UPGRADE_RE = re.compile(rb"^upgrade\s*:", re.IGNORECASE | re.MULTILINE)
_CONNECTION_RE = re.compile(rb"^connection\s*:[^\r\n]*\r\n", re.IGNORECASE | re.MULTILINE)


class RouteState(str, Enum):
    UNROUTED = "unrouted"
    ROUTED = "routed"


@dataclass(frozen=True)
class RouteEntry:
    listen_port: int
    target: str
    target_port: int
    tls: bool = True
    upgrade: bool = True
    state: RouteState = RouteState.UNROUTED
    address: tuple[str, int] | None = None

    @property
    def eligible(self) -> bool:
        return self.state == RouteState.ROUTED and self.address is not None


class RouteTable:
    """Copy-on-write route table.

    One writer swaps in a new immutable mapping; listener threads read
    whatever mapping is current and always see a consistent snapshot.
    """

    def __init__(self, entries: Iterable[RouteEntry] = ()):
        by_port: dict[int, RouteEntry] = {}
        for e in entries:
            if e.listen_port in by_port:
                raise RouteConflict(e.listen_port, sorted([by_port[e.listen_port].target, e.target]))
            by_port[e.listen_port] = e
        self._write_lock = Lock()
        self._entries: Mapping[int, RouteEntry] = MappingProxyType(by_port)

    @classmethod
    def from_store(cls, store: DescriptorStore) -> "RouteTable":
        return cls(
            RouteEntry(
                listen_port=d.route.listen_port,
                target=d.name,
                target_port=d.route_target_port,
                tls=d.route.tls,
                upgrade=d.route.upgrade,
            )
            for d in store.routed()
        )

    def snapshot(self) -> Mapping[int, RouteEntry]:
        return self._entries

    def get(self, listen_port: int) -> RouteEntry | None:
        return self._entries.get(listen_port)

    def publish(self, target: str, state: RouteState, address_for: Callable[[int], tuple[str, int]] | None = None) -> list[RouteEntry]:
        """Flip every route of ``target``; ``address_for(port)`` resolves the backend."""
        with self._write_lock:
            current = dict(self._entries)
            changed = []
            for port, e in current.items():
                if e.target != target:
                    continue
                address = address_for(e.target_port) if (state == RouteState.ROUTED and address_for) else None
                new = replace(e, state=state, address=address)
                if new != e:
                    current[port] = new
                    changed.append(new)
            self._entries = MappingProxyType(current)
            return changed


def http_response(status: int, reason: str, body: str, extra_headers: dict[str, str] | None = None) -> bytes:
    payload = body.encode("utf-8")
    headers = {
        "Content-Type": "text/plain; charset=utf-8",
        "Content-Length": str(len(payload)),
        "Connection": "close",
        **(extra_headers or {}),
    }
    head = f"HTTP/1.1 {status} {reason}\r\n" + "".join(f"{k}: {v}\r\n" for k, v in headers.items()) + "\r\n"
    return head.encode("latin-1") + payload


class ReverseProxy:
    def __init__(
        self,
        table: RouteTable,
        runtime: Runtime,
        host: str | None = None,
        cert_path: str | None = None,
        key_path: str | None = None,
        connect_timeout_s: float | None = None,
    ):
        self.table = table
        self.runtime = runtime
        self.host = host or settings.proxy_host
        self.cert_path = cert_path if cert_path is not None else settings.tls_cert_path
        self.key_path = key_path if key_path is not None else settings.tls_key_path
        self.connect_timeout_s = connect_timeout_s or settings.proxy_connect_timeout_s
        self._stop = Event()
        self._servers: dict[int, socket.socket] = {}
        self._threads: list[Thread] = []
        self._tls: ssl.SSLContext | None = None
        self._lock = Lock()
        self.stats: dict[int, dict[str, int]] = {}

    def on_readiness(self, inst: RuntimeInstance, state: InstanceState, previous: InstanceState) -> None:
        """Health supervisor callback: Healthy routes, anything else unroutes."""
        if state == InstanceState.HEALTHY:
            handle = inst.handle
            changed = self.table.publish(
                inst.name, RouteState.ROUTED, lambda port: self.runtime.address(handle, port)
            )
        else:
            changed = self.table.publish(inst.name, RouteState.UNROUTED)
        for e in changed:
            db.log_event("INFO", f"Route :{e.listen_port} {e.state.value}", service_name=e.target)

    def _tls_context(self) -> ssl.SSLContext:
        if self._tls is None:
            if not self.cert_path or not self.key_path:
                raise ProxyConfigError("TLS routes need TOPO_TLS_CERT and TOPO_TLS_KEY.")
            ctx = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
            try:
                ctx.load_cert_chain(self.cert_path, self.key_path)
            except (OSError, ssl.SSLError) as e:
                raise ProxyConfigError(f"Cannot load TLS material: {e}") from e
            self._tls = ctx
        return self._tls

    def start(self) -> None:
        entries = list(self.table.snapshot().values())
        if any(e.tls for e in entries):
            self._tls_context()
        for e in entries:
            try:
                srv = socket.create_server((self.host, e.listen_port))
            except OSError as err:
                self.stop()
                raise ProxyConfigError(f"Cannot listen on {self.host}:{e.listen_port}: {err}") from err
            srv.settimeout(0.5)
            self._servers[e.listen_port] = srv
            self.stats[e.listen_port] = {"accepted": 0, "forwarded": 0, "rejected": 0}
            thr = Thread(target=self._serve, args=(srv, e.listen_port), name=f"listener-{e.listen_port}", daemon=True)
            self._threads.append(thr)
            thr.start()
            db.log_event("INFO", f"Listening on :{e.listen_port} ({'tls' if e.tls else 'plain'})", service_name=e.target)

    def stop(self) -> None:
        self._stop.set()
        for thr in self._threads:
            thr.join(2)
        for srv in self._servers.values():
            srv.close()
        self._servers.clear()
        self._threads.clear()

    def _count(self, port: int, key: str) -> None:
        with self._lock:
            self.stats.setdefault(port, {"accepted": 0, "forwarded": 0, "rejected": 0})[key] += 1

    def _serve(self, srv: socket.socket, port: int) -> None:
        while not self._stop.is_set():
            try:
                conn, _ = srv.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            self._count(port, "accepted")
            Thread(target=self._handle, args=(conn, port), name=f"conn-{port}", daemon=True).start()

    def _handle(self, conn: socket.socket, port: int) -> None:
        client: socket.socket = conn
        upstream: socket.socket | None = None
        head = b""
        try:
            entry = self.table.get(port)
            if entry is not None and entry.tls:
                conn.settimeout(self.connect_timeout_s)
                client = self._tls_context().wrap_socket(conn, server_side=True)

            try:
                if entry is None or not entry.eligible:
                    raise ProxyTargetUnavailable(f"{entry.target if entry else 'route'} is not available")
                if not entry.upgrade:
                    head = _read_head(client, self.connect_timeout_s)
                    if _UPGRADE_RE.search(head):
                        self._count(port, "rejected")
                        client.sendall(http_response(400, "Bad Request", "Protocol upgrade is not enabled for this route.\n"))
                        return
                upstream = self._open_upstream(entry)
            except ProxyTargetUnavailable as e:
                self._count(port, "rejected")
                if not head:
                    _read_head(client, 0.5)
                client.sendall(http_response(503, "Service Unavailable", f"{e}\n", {"Retry-After": "5"}))
                return

            self._count(port, "forwarded")
            if head:
                # Routes without upgrade carry one request per connection.
                upstream.sendall(_force_close(head))
            _relay(client, upstream)
        except (OSError, ssl.SSLError):
            return
        finally:
            for s in (upstream, client):
                if s is not None:
                    try:
                        s.close()
                    except OSError:
                        pass

    def _open_upstream(self, entry: RouteEntry) -> socket.socket:
        try:
            return socket.create_connection(entry.address, timeout=self.connect_timeout_s)
        except OSError as e:
            raise ProxyTargetUnavailable(f"{entry.target} is not reachable: {e}") from e


def _read_head(sock: socket.socket, timeout_s: float) -> bytes:
    """Read up to the end of the HTTP request head (best effort)."""
    buf = b""
    sock.settimeout(timeout_s)
    try:
        while b"\r\n\r\n" not in buf and len(buf) < _HEAD_LIMIT:
            chunk = sock.recv(4096)
            if not chunk:
                break
            buf += chunk
    except (socket.timeout, ssl.SSLError):
        pass
    return buf


def _force_close(head: bytes) -> bytes:
    """Replace any Connection header of a request head with ``Connection: close``."""
    end = head.find(b"\r\n\r\n")
    if end < 0:
        return head
    fields, rest = head[: end + 2], head[end + 2 :]
    return _CONNECTION_RE.sub(b"", fields) + b"Connection: close\r\n" + rest


def _pump(src: socket.socket, dst: socket.socket, half_close: bool) -> None:
    try:
        while True:
            data = src.recv(65536)
            if not data:
                break
            dst.sendall(data)
    except OSError:
        pass
    if half_close and not isinstance(dst, ssl.SSLSocket):
        try:
            dst.shutdown(socket.SHUT_WR)
        except OSError:
            pass


def _relay(client: socket.socket, upstream: socket.socket) -> None:
    """Copy bytes both ways until the upstream side is done."""
    client.settimeout(None)
    upstream.settimeout(None)
    up = Thread(target=_pump, args=(client, upstream, True), daemon=True)
    up.start()
    _pump(upstream, client, False)
    # Upstream finished; closing both ends unblocks the other direction.
    for s in (client, upstream):
        try:
            s.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
    up.join(1)
