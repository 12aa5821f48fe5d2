import logging
from urllib.parse import urlsplit

import pytest

from webapp.redirect import (
    Redirect,
    RedirectHandler,
    redirect_acme_http01,
    redirect_handler,
    redirect_to_https_port,
)

ACME_HOST = "acme-handler.example.com"


def _request(handler, url, method="GET"):
    parts = urlsplit(url)
    environ = {
        "REQUEST_METHOD": method,
        "HTTP_HOST": parts.netloc,
        "SERVER_NAME": parts.hostname or "",
        "SERVER_PORT": str(parts.port or 80),
        "SCRIPT_NAME": "",
        "PATH_INFO": parts.path or "/",
        "QUERY_STRING": parts.query,
        "wsgi.url_scheme": parts.scheme,
    }
    captured = {}

    def start_response(status, headers, exc_info=None):
        captured["status"] = int(status.split()[0])
        captured["headers"] = dict(headers)

    body = b"".join(handler(environ, start_response))
    return captured["status"], captured["headers"], body


def _catchall(_environ):
    return "https://catchall.com", 301


def _foo_specific(_environ):
    return "https://foospecific.com", 301


@pytest.mark.parametrize(
    "url, redirects, status, location",
    [
        (
            "http://example.com/path/to/page",
            [redirect_to_https_port(":8443")],
            301,
            "https://example.com:8443/path/to/page",
        ),
        (
            "http://example.com/another/page",
            [redirect_to_https_port("")],
            301,
            "https://example.com:443/another/page",
        ),
        (
            "http://example.com/.well-known/acme-challenge/some-token",
            [redirect_acme_http01(ACME_HOST), redirect_to_https_port(":8443")],
            307,
            "http://acme-handler.example.com/.well-known/acme-challenge/some-token",
        ),
        (
            "http://example.com/not-an-acme-challenge",
            [redirect_acme_http01(ACME_HOST), redirect_to_https_port(":8443")],
            301,
            "https://example.com:8443/not-an-acme-challenge",
        ),
        (
            "http://example.com:80/path",
            [redirect_to_https_port(":8443")],
            301,
            "https://example.com:8443/path",
        ),
        (
            "http://example.com/no-match",
            [Redirect(prefix="/foo")],
            404,
            None,
        ),
        (
            "http://example.com/foo/bar",
            [Redirect(prefix="/", target=_catchall), Redirect(prefix="/foo", target=_foo_specific)],
            301,
            "https://foospecific.com",
        ),
    ],
)
def test_redirect_handler(url, redirects, status, location):
    got_status, headers, _ = _request(redirect_handler(*redirects), url)
    assert got_status == status
    assert headers.get("Location") == location


def test_acme_redirect_is_logged(caplog):
    caplog.set_level(logging.INFO, logger="webapp.redirect")
    handler = redirect_handler(redirect_acme_http01(ACME_HOST), redirect_to_https_port(":8443"))
    _request(handler, "http://example.com/.well-known/acme-challenge/some-token")
    assert "redirecting acme challenge" in caplog.text
    assert (
        "redirect=http://acme-handler.example.com/.well-known/acme-challenge/some-token"
        in caplog.text
    )


def test_not_found_body():
    status, headers, body = _request(RedirectHandler(Redirect(prefix="/foo")), "http://example.com/x")
    assert status == 404
    assert body == b"not found\n"
    assert headers["Content-Type"] == "text/plain; charset=utf-8"


def test_default_target_redirects_to_root():
    status, headers, body = _request(
        RedirectHandler(Redirect(prefix="/foo")), "http://example.com/foo/bar"
    )
    assert status == 301
    assert headers["Location"] == "/"
    assert body == b'<a href="/">Moved Permanently</a>.\n'


def test_empty_prefix_matches_everything():
    status, headers, _ = _request(
        RedirectHandler(Redirect(target=_catchall)), "http://example.com/any/where"
    )
    assert status == 301
    assert headers["Location"] == "https://catchall.com"


def test_query_is_preserved():
    status, headers, _ = _request(
        redirect_handler(redirect_to_https_port(":8443")), "http://example.com/p?x=1"
    )
    assert status == 301
    assert headers["Location"] == "https://example.com:8443/p?x=1"


def test_host_from_addr_when_request_has_none():
    handler = redirect_handler(redirect_to_https_port("fallback.example.com"))
    environ = {"REQUEST_METHOD": "GET", "SCRIPT_NAME": "", "PATH_INFO": "/a", "QUERY_STRING": ""}
    captured = {}

    def start_response(status, headers, exc_info=None):
        captured["status"] = status
        captured["headers"] = dict(headers)

    body = b"".join(handler(environ, start_response))
    assert body == b'<a href="https://fallback.example.com:443/a">Moved Permanently</a>.\n'
    assert captured["status"].startswith("301")
    assert captured["headers"]["Location"] == "https://fallback.example.com:443/a"


def test_relative_target_is_resolved_against_request_path():
    def relative(_environ):
        return "other", 302

    status, headers, _ = _request(
        RedirectHandler(Redirect(prefix="/a", target=relative)), "http://example.com/a/b"
    )
    assert status == 302
    assert headers["Location"] == "/a/other"


def test_head_request_has_no_body():
    status, headers, body = _request(
        redirect_handler(redirect_to_https_port(":8443")), "http://example.com/x", method="HEAD"
    )
    assert status == 301
    assert body == b""
    assert headers["Location"] == "https://example.com:8443/x"


def test_redirects_sorted_by_decreasing_prefix():
    handler = RedirectHandler(Redirect(prefix="/a"), Redirect(prefix="/a/b"), Redirect(prefix=""))
    assert [r.prefix for r in handler.redirects] == ["/a/b", "/a", "/"]