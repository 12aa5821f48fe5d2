"""HTTP(S) servers with graceful shutdown, address helpers and readiness probes."""

from __future__ import annotations

import http.client
import logging
import socket
import socketserver
import ssl
import threading
import urllib.request
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Sequence
from wsgiref import simple_server

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.05
_HANDSHAKE_TIMEOUT = 30.0
_DIAL_TIMEOUT = 1.0
_URL_TIMEOUT = 0.25
_WELL_KNOWN_PORTS = {"http": 80, "https": 443}


class _RequestHandler(simple_server.WSGIRequestHandler):
    def log_message(self, format, *args):  # noqa: A002 - signature fixed by base class
        logger.debug("%s - %s", self.address_string(), format % args)


class _WSGIServer(socketserver.ThreadingMixIn, simple_server.WSGIServer):
    """A threaded WSGI server bound to an already listening socket."""

    daemon_threads = True
    block_on_close = False

    def __init__(self, listener: socket.socket, app: Callable, tls: bool) -> None:
        address = listener.getsockname()[:2]
        socketserver.BaseServer.__init__(self, address, _RequestHandler)
        self.socket = listener
        self.address_family = listener.family
        self.server_name, self.server_port = str(address[0]), address[1]
        self.setup_environ()
        if tls:
            self.base_environ["HTTPS"] = "on"
        self.set_app(app)
        self._active = 0
        self._idle = threading.Condition()

    @property
    def active_requests(self) -> int:
        with self._idle:
            return self._active

    def process_request(self, request, client_address):
        with self._idle:
            self._active += 1
        try:
            super().process_request(request, client_address)
        except Exception:
            self._request_done()
            raise

    def process_request_thread(self, request, client_address):
        try:
            super().process_request_thread(request, client_address)
        finally:
            self._request_done()

    def finish_request(self, request, client_address):
        if isinstance(request, ssl.SSLSocket):
            request.settimeout(_HANDSHAKE_TIMEOUT)
            request.do_handshake()
            request.settimeout(None)
        super().finish_request(request, client_address)

    def handle_error(self, request, client_address):
        logger.debug("error serving %s", client_address, exc_info=True)

    def wait_idle(self, timeout: float) -> bool:
        with self._idle:
            return self._idle.wait_for(lambda: self._active == 0, timeout)

    def _request_done(self) -> None:
        with self._idle:
            self._active -= 1
            self._idle.notify_all()


class HTTPServer:
    """A WSGI application server that serves on a listener and shuts down gracefully."""

    def __init__(self, addr: str, app: Callable, tls_context: ssl.SSLContext | None = None) -> None:
        self.addr = addr
        self.app = app
        self.tls_context = tls_context
        self._lock = threading.Lock()
        self._server: _WSGIServer | None = None
        self._closed = False

    def serve(self, listener: socket.socket) -> None:
        """Serve requests accepted on listener until shut down; the listener is closed on return."""
        if listener.fileno() == -1:
            raise OSError("use of closed network connection")
        if self.tls_context is not None:
            listener = self.tls_context.wrap_socket(
                listener, server_side=True, do_handshake_on_connect=False
            )
        with self._lock:
            if self._closed:
                listener.close()
                return
            if self._server is not None:
                listener.close()
                raise RuntimeError(f"server {self.addr} is already serving")
            server = _WSGIServer(listener, self.app, tls=self.tls_context is not None)
            self._server = server
        try:
            server.serve_forever(poll_interval=_POLL_INTERVAL)
        finally:
            server.server_close()

    def shutdown(self, timeout: float) -> None:
        """Stop accepting connections and wait up to timeout seconds for active requests."""
        with self._lock:
            self._closed = True
            server = self._server
        if server is None:
            return
        server.shutdown()
        server.server_close()
        if not server.wait_idle(timeout):
            raise TimeoutError(
                f"{server.active_requests} request(s) still active after {timeout}s"
            )


def new_http_server_only(addr: str, handler: Callable) -> HTTPServer:
    """Return a plain HTTP server for handler without opening a listener."""
    return HTTPServer(addr, handler)


def new_tls_server_only(addr: str, handler: Callable, tls_context: ssl.SSLContext) -> HTTPServer:
    """Return an HTTPS server for handler using tls_context, without opening a listener."""
    return HTTPServer(addr, handler, tls_context=tls_context)


def new_http_server(addr: str, handler: Callable) -> tuple[socket.socket, HTTPServer]:
    """Listen on addr (default port http) and return the listener and an HTTP server."""
    addr = parse_addr_port_defaults(addr, "http")
    return _listen(addr), new_http_server_only(addr, handler)


def new_tls_server(
    addr: str, handler: Callable, tls_context: ssl.SSLContext
) -> tuple[socket.socket, HTTPServer]:
    """Listen on addr (default port https) and return the listener and an HTTPS server."""
    addr = parse_addr_port_defaults(addr, "https")
    return _listen(addr), new_tls_server_only(addr, handler, tls_context)


def serve_with_shutdown(
    stop: threading.Event, listener: socket.socket, server: HTTPServer, grace: float
) -> None:
    """Serve in the background until stop is set, then shut down within grace seconds."""
    _serve_with_shutdown(stop, server, grace, lambda: server.serve(listener))


def serve_tls_with_shutdown(
    stop: threading.Event, listener: socket.socket, server: HTTPServer, grace: float
) -> None:
    """Like serve_with_shutdown but requires a server configured with a TLS context."""
    if server.tls_context is None:
        raise ValueError("serve_tls_with_shutdown requires a server with a TLS context")
    _serve_with_shutdown(stop, server, grace, lambda: server.serve(listener))


def _serve_with_shutdown(
    stop: threading.Event, server: HTTPServer, grace: float, serve: Callable[[], None]
) -> None:
    done = threading.Event()
    failures: list[BaseException] = []

    def run() -> None:
        try:
            serve()
        except Exception as exc:  # reported to the caller below
            failures.append(exc)
        finally:
            done.set()

    threading.Thread(target=run, name=f"serve {server.addr}", daemon=True).start()

    while not stop.is_set():
        if done.wait(_POLL_INTERVAL):
            break
    if done.is_set() and failures:
        raise RuntimeError(f"server {server.addr}, unexpected error {failures[0]}") from failures[0]
    if done.is_set() and not stop.is_set():
        return

    logger.info("server being shut down addr=%s grace=%ss", server.addr, grace)
    try:
        server.shutdown(grace)
    except TimeoutError as exc:
        raise TimeoutError(
            f"server running on {server.addr}, shutdown failed {grace}s: {exc}"
        ) from exc
    if not done.wait(grace):
        raise TimeoutError(f"server running on {server.addr} did not stop within {grace}s")
    if failures:
        raise failures[0]


def _go_split_host_port(hostport: str) -> tuple[str, str]:
    if hostport.startswith("["):
        end = hostport.find("]")
        if end < 0:
            raise ValueError(f"address {hostport}: missing ']'")
        rest = hostport[end + 1:]
        if not rest.startswith(":"):
            raise ValueError(f"address {hostport}: missing port")
        host, port = hostport[1:end], rest[1:]
        if ":" in port:
            raise ValueError(f"address {hostport}: too many colons")
    else:
        i = hostport.rfind(":")
        if i < 0:
            raise ValueError(f"address {hostport}: missing port")
        host, port = hostport[:i], hostport[i + 1:]
        if ":" in host:
            raise ValueError(f"address {hostport}: too many colons")
        if "[" in host or "]" in host:
            raise ValueError(f"address {hostport}: unexpected bracket")
    if "[" in port or "]" in port:
        raise ValueError(f"address {hostport}: unexpected bracket")
    return host, port


def _join_host_port(host: str, port: str) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def split_host_port(hostport: str) -> tuple[str, str]:
    """Split hostport into host and port; the port is empty when absent."""
    try:
        return _go_split_host_port(hostport)
    except ValueError:
        pass
    if not hostport:
        return "", ""
    if hostport.startswith("[") and hostport.endswith("]"):
        return hostport[1:-1], ""
    return hostport, ""


def parse_addr_port_defaults(addr: str, port: str) -> str:
    """Return addr as host:port, using port when addr has none."""
    host, addr_port = split_host_port(addr)
    return _join_host_port(host, addr_port or port)


def _port_number(port: str) -> int:
    if port.isdigit():
        return int(port)
    if port in _WELL_KNOWN_PORTS:
        return _WELL_KNOWN_PORTS[port]
    try:
        return socket.getservbyname(port, "tcp")
    except OSError as exc:
        raise ValueError(f"unknown port {port!r}") from exc


def _listen(addr: str) -> socket.socket:
    host, port = split_host_port(addr)
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    return socket.create_server((host, _port_number(port)), family=family)


def _wait_all(
    stop: threading.Event,
    interval: float,
    targets: Sequence[str],
    probe: Callable[[threading.Event, float, str], None],
) -> None:
    if not targets:
        return
    if len(targets) == 1:
        probe(stop, interval, targets[0])
        return
    with ThreadPoolExecutor(max_workers=len(targets)) as pool:
        futures = [pool.submit(probe, stop, interval, target) for target in targets]
        for future in futures:
            future.result()


def _ping(stop: threading.Event, interval: float, addr: str) -> None:
    host, port = split_host_port(addr)
    port_number = _port_number(port)
    while True:
        logger.info("ping: server addr=%s", addr)
        try:
            with socket.create_connection((host, port_number), timeout=_DIAL_TIMEOUT):
                return
        except OSError:
            pass
        if stop.wait(interval):
            raise InterruptedError(f"waiting for server {addr} was cancelled")
        logger.info("ping: server timeout addr=%s duration=%ss", addr, interval)


def _ping_url(stop: threading.Event, interval: float, url: str) -> None:
    while True:
        logger.info("ping: url url=%s", url)
        try:
            with urllib.request.urlopen(url, timeout=_URL_TIMEOUT) as response:
                if 200 <= response.status < 400:
                    return
        except (OSError, http.client.HTTPException):
            pass
        if stop.wait(interval):
            raise InterruptedError(f"waiting for url {url} was cancelled")
        logger.info("ping: url timeout url=%s duration=%ss", url, interval)


def wait_for_servers(stop: threading.Event, interval: float, *addrs: str) -> None:
    """Wait until a TCP connection can be opened to every address, retrying every interval."""
    _wait_all(stop, interval, addrs, _ping)


def wait_for_urls(stop: threading.Event, interval: float, *urls: str) -> None:
    """Wait until a GET on every URL succeeds with a 2xx or 3xx status, retrying every interval."""
    _wait_all(stop, interval, urls, _ping_url)