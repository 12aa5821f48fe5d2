# webapp

Small building blocks for running web applications on the standard-library
WSGI stack.

## Installation

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Modules

### `webapp.server`

- `new_http_server(addr, handler)` and `new_tls_server(addr, handler, tls_context)`
  open a listening socket on `addr` (the port defaults to `http` or `https`)
  and return `(listener, server)`. `new_http_server_only` and
  `new_tls_server_only` create the `HTTPServer` without a listener.
- `HTTPServer.serve(listener)` serves a WSGI application on a threaded server;
  `HTTPServer.shutdown(timeout)` stops accepting connections and raises
  `TimeoutError` if requests are still active after `timeout` seconds.
- `serve_with_shutdown(stop, listener, server, grace)` serves in the
  background until the `threading.Event` `stop` is set, then shuts the server
  down within `grace` seconds. An error from serving is raised as
  `RuntimeError`; a shutdown that overruns is raised as `TimeoutError`.
  `serve_tls_with_shutdown` does the same but raises `ValueError` unless the
  server has a TLS context.
- `split_host_port(hostport)` splits an address, returning an empty port when
  there is none (`"[::1]"` gives `("::1", "")`).
  `parse_addr_port_defaults(addr, port)` fills in a missing port
  (`"localhost"`, `"https"` gives `"localhost:https"`).
- `wait_for_servers(stop, interval, *addrs)` retries TCP connections and
  `wait_for_urls(stop, interval, *urls)` retries GET requests (2xx or 3xx
  counts as up) every `interval` seconds; several targets are waited on
  concurrently. Setting `stop` makes them raise `InterruptedError`.

### `webapp.redirect`

- `RedirectHandler(*redirects)` (or `redirect_handler(*redirects)`) is a WSGI
  application that tries redirects in decreasing order of `Redirect.prefix`
  and answers `404 not found` when none matches. An empty prefix means `"/"`;
  a missing target redirects to `"/"` with 301.
- `redirect_acme_http01(host)` sends `/.well-known/acme-challenge/...` to
  `http://host/...` with 307.
- `redirect_to_https_port(addr)` redirects everything to `https` with 301,
  using the request's host when `addr` has none and port 443 when `addr` has
  no port.
- `redirect_port80(stop, *redirects)` listens on port 80 and serves the
  redirects in a background thread until `stop` is set.

### `webapp.servingcache`

`CertServingCache(cert_store, *, root_cas=None, ttl=timedelta(hours=6), now=None)`
loads PEM data (private key and certificate chain) by server name from any
object with a `get(name)` method, verifies the chain against `root_cas` (the
system roots when `None`) and keeps the result for `ttl`.
`get_certificate(server_name)` returns a `ServedCertificate`, raising
`ValueError` for bad names or certificates; a store signals a missing entry
with `CacheMissError`.

### `webapp.tlsconfig`

`TLSCertFlags`, `TLSCertConfig`, `HTTPServerFlags` (address default
`":8080"`) and `HTTPServerConfig` are plain dataclasses holding certificate
file locations and a server address. `tls_config_using_cert_files(cert_file, key_file)`
returns a server `ssl.SSLContext` (TLS 1.3 minimum, preferred ECDHE AEAD
ciphers); `tls_config_using_cert_store(cert_store, **kwargs)` returns one that
picks a certificate per SNI name through a `CertServingCache`.

### `webapp.goget`

`new_handler(specs)` validates `Spec(import_path, vcs, repo_url)` entries
(schemes https, http, ssh or git; VCS git, hg, svn or bzr; no query
parameters) and returns a `Handler`. `Handler.go_get_handler(next_app)` wraps
a WSGI application: requests with `go-get=1` get a `go-import` meta tag page
for the matching import path or its sub-packages, or a 404; other requests go
to `next_app`. `new_handler_from_file(path)` reads the specs from a YAML list
with keys `import`, `vcs` and `repo`.

### `webapp.jsonapi`

`Endpoint(request_type, response_type)` decodes exactly one JSON value into a
dataclass (unknown fields rejected) with `parse_request(writer, body)` and
writes JSON with `write_response(writer, response)`. On failure it writes an
`ErrorResponse` body with status 400 or 500 to the `ResponseWriter` and raises
`RequestError`. `write_error_msg` and `write_error` write error bodies directly.

### `webapp.tlsvalidate`

`Validator(...)` connects to a host (optionally to each resolved address,
optionally IPv4 only) and checks the chain against `root_cas`, the issuer
against regular expressions, the remaining lifetime, the minimum TLS version,
cipher suites and matching serial numbers. `validate(host, port)` returns the
leaf certificates, lets connection and handshake errors propagate and raises
`ValidationError` listing every policy failure.

### `webapp.webassets`

`relative_fs(prefix, root)` returns a `RelativeFS` over a directory or a
`Traversable` in which `open(name)` opens `prefix/name`.
`serve_file(writer, fs, name)` copies the file to `writer` and returns
`HTTPStatus.OK`; errors are re-raised with an `http_status` attribute of
`NOT_FOUND` or `INTERNAL_SERVER_ERROR`.

## Example

```python
import threading

from webapp.redirect import redirect_acme_http01, redirect_handler, redirect_to_https_port
from webapp.server import new_http_server, serve_with_shutdown

app = redirect_handler(
    redirect_acme_http01("acme.example.com"),
    redirect_to_https_port(":8443"),
)
listener, server = new_http_server("127.0.0.1:8080", app)
stop = threading.Event()
# Runs until stop.set() is called elsewhere, then shuts down within 5 seconds.
serve_with_shutdown(stop, listener, server, 5.0)
```

## What it does not do

- There is no command-line program; the flag classes are plain dataclasses
  and do not parse arguments.
- Assets are served only from the given directory; there is no reloading of
  newer files from another location and no built-in access logging for assets.
- Certificates are only read from a store; nothing here obtains or renews
  them.