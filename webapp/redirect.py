"""WSGI redirect handling, including ACME HTTP-01 challenges and HTTPS upgrades."""

from __future__ import annotations

import html
import logging
import posixpath
import threading
from dataclasses import dataclass
from http import HTTPStatus
from typing import Callable, Iterable, Optional
from urllib.parse import quote, urlsplit

from webapp.server import new_http_server, serve_with_shutdown, split_host_port

logger = logging.getLogger(__name__)

RedirectTarget = Callable[[dict], "tuple[str, int]"]

_PATH_SAFE = "/!$&'()*+,;=:@"


def _to_root(_environ: dict) -> tuple[str, int]:
    return "/", HTTPStatus.MOVED_PERMANENTLY


@dataclass(frozen=True)
class Redirect:
    """A URL path prefix whose requests are redirected to the location given by target."""

    prefix: str = ""
    target: Optional[RedirectTarget] = None


def _request_path(environ: dict) -> str:
    return environ.get("SCRIPT_NAME", "") + environ.get("PATH_INFO", "")


def _request_host(environ: dict) -> str:
    return environ.get("HTTP_HOST") or environ.get("SERVER_NAME", "")


def _escaped_path(environ: dict) -> str:
    return quote(_request_path(environ), safe=_PATH_SAFE)


def _join_host_port(host: str, port: str) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def _status_line(code: int) -> str:
    try:
        return f"{code} {HTTPStatus(code).phrase}"
    except ValueError:
        return str(code)


def _clean(path: str) -> str:
    cleaned = posixpath.normpath(path)
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


def _resolve_location(location: str, request_path: str) -> str:
    parts = urlsplit(location)
    if parts.scheme or parts.netloc:
        return location
    old_path = request_path or "/"
    if not location.startswith("/"):
        location = posixpath.dirname(old_path).rstrip("/") + "/" + location
    location, sep, query = location.partition("?")
    trailing = location.endswith("/")
    location = _clean(location)
    if trailing and not location.endswith("/"):
        location += "/"
    return location + sep + query


class RedirectHandler:
    """A WSGI application that redirects requests by longest matching path prefix."""

    def __init__(self, *redirects: Redirect) -> None:
        ordered = sorted(redirects, key=lambda r: r.prefix, reverse=True)
        self.redirects: tuple[Redirect, ...] = tuple(
            Redirect(prefix=r.prefix or "/", target=r.target or _to_root) for r in ordered
        )

    def __call__(self, environ: dict, start_response: Callable) -> Iterable[bytes]:
        path = _request_path(environ)
        for redirect in self.redirects:
            if path.startswith(redirect.prefix):
                location, code = redirect.target(environ)
                return self._redirect(environ, start_response, location, int(code))
        body = b"not found\n"
        start_response(
            _status_line(HTTPStatus.NOT_FOUND),
            [
                ("Content-Type", "text/plain; charset=utf-8"),
                ("X-Content-Type-Options", "nosniff"),
                ("Content-Length", str(len(body))),
            ],
        )
        return [body]

    @staticmethod
    def _redirect(environ: dict, start_response: Callable, location: str, code: int) -> list[bytes]:
        location = _resolve_location(location, _request_path(environ))
        method = environ.get("REQUEST_METHOD", "GET").upper()
        headers = [("Location", location)]
        body = b""
        if method in ("GET", "HEAD"):
            headers.append(("Content-Type", "text/html; charset=utf-8"))
        if method == "GET":
            try:
                phrase = HTTPStatus(code).phrase
            except ValueError:
                phrase = ""
            body = f'<a href="{html.escape(location)}">{phrase}</a>.\n'.encode()
        headers.append(("Content-Length", str(len(body))))
        start_response(_status_line(code), headers)
        return [body]


def _challenge_rewrite(host: str, environ: dict) -> str:
    target = f"http://{host}{_escaped_path(environ)}"
    logger.info("redirecting acme challenge redirect=%s", target)
    return target


def redirect_acme_http01(host: str) -> Redirect:
    """Return a Redirect sending ACME HTTP-01 challenges to host."""

    def target(environ: dict) -> tuple[str, int]:
        return _challenge_rewrite(host, environ), HTTPStatus.TEMPORARY_REDIRECT

    return Redirect(prefix="/.well-known/acme-challenge/", target=target)


def redirect_to_https_port(addr: str) -> Redirect:
    """Return a Redirect to https at addr; the request's host and port 443 fill in what addr lacks."""
    host, port = split_host_port(addr)
    port = port or "443"

    def target(environ: dict) -> tuple[str, int]:
        request_host, _ = split_host_port(_request_host(environ))
        url = f"https://{_join_host_port(request_host or host, port)}{_escaped_path(environ)}"
        query = environ.get("QUERY_STRING", "")
        if query:
            url += "?" + query
        return url, HTTPStatus.MOVED_PERMANENTLY

    return Redirect(prefix="/", target=target)


def redirect_handler(*redirects: Redirect) -> RedirectHandler:
    """Return a WSGI application applying the supplied redirects."""
    return RedirectHandler(*redirects)


def redirect_port80(stop: threading.Event, *redirects: Redirect) -> None:
    """Start a background server on port 80 applying redirects until stop is set."""
    listener, server = new_http_server(":80", RedirectHandler(*redirects))

    def run() -> None:
        try:
            serve_with_shutdown(stop, listener, server, 60.0)
        except Exception as exc:
            logger.error("error from http redirect server addr=%s err=%s", server.addr, exc)

    threading.Thread(target=run, name="redirect :80", daemon=True).start()