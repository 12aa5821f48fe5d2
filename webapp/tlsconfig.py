"""TLS certificate configuration and server SSL contexts built from files or a certificate store."""

from __future__ import annotations

import logging
import ssl
import threading
import weakref
from dataclasses import dataclass, field

from webapp.servingcache import CertServingCache, ServedCertificate

logger = logging.getLogger(__name__)

PREFERRED_CIPHER_SUITES = (
    "ECDHE-ECDSA-AES256-GCM-SHA384",
    "ECDHE-RSA-AES256-GCM-SHA384",
    "ECDHE-ECDSA-CHACHA20-POLY1305",
    "ECDHE-RSA-CHACHA20-POLY1305",
    "ECDHE-ECDSA-AES128-GCM-SHA256",
    "ECDHE-RSA-AES128-GCM-SHA256",
)

PREFERRED_TLS_MIN_VERSION = ssl.TLSVersion.TLSv1_3


def _server_context() -> ssl.SSLContext:
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = PREFERRED_TLS_MIN_VERSION
    context.set_ciphers(":".join(PREFERRED_CIPHER_SUITES))
    return context


@dataclass(frozen=True)
class TLSCertConfig:
    """Locations of a TLS certificate and its private key."""

    cert_file: str = ""
    key_file: str = ""

    def tls_config(self) -> ssl.SSLContext:
        """Return a server SSL context using the configured files."""
        return tls_config_using_cert_files(self.cert_file, self.key_file)


@dataclass(frozen=True)
class TLSCertFlags:
    """Command-line settings naming a TLS certificate file and key file."""

    cert_file: str = ""
    key_file: str = ""

    def tls_cert_config(self) -> TLSCertConfig:
        """Return the TLSCertConfig these flags describe."""
        return TLSCertConfig(cert_file=self.cert_file, key_file=self.key_file)


@dataclass(frozen=True)
class HTTPServerConfig:
    """The address of an HTTP server and its TLS certificates."""

    address: str = ""
    tls_certs: TLSCertConfig = field(default_factory=TLSCertConfig)

    def tls_config(self) -> ssl.SSLContext:
        """Return a server SSL context using the configured certificate files."""
        return self.tls_certs.tls_config()


@dataclass(frozen=True)
class HTTPServerFlags:
    """Command-line settings for an HTTPS server."""

    address: str = ":8080"
    tls_certs: TLSCertFlags = field(default_factory=TLSCertFlags)

    def http_server_config(self) -> HTTPServerConfig:
        """Return the HTTPServerConfig these flags describe."""
        return HTTPServerConfig(address=self.address, tls_certs=self.tls_certs.tls_cert_config())


def tls_config_using_cert_files(cert_file: str, key_file: str) -> ssl.SSLContext:
    """Return a server SSL context using the certificate and key in the given files."""
    if not cert_file or not key_file:
        raise ValueError("both the crt and key files must be specified")
    context = _server_context()
    context.load_cert_chain(cert_file, key_file)
    return context


def tls_config_using_cert_store(cert_store, **kwargs) -> ssl.SSLContext:
    """Return a server SSL context that picks certificates per SNI name from cert_store.

    Keyword arguments are passed to CertServingCache.
    """
    cache = CertServingCache(cert_store, **kwargs)
    contexts: "weakref.WeakKeyDictionary[ServedCertificate, ssl.SSLContext]" = (
        weakref.WeakKeyDictionary()
    )
    lock = threading.Lock()

    def select(ssl_object, server_name, _context):
        try:
            served = cache.get_certificate(server_name or "")
        except Exception as exc:
            logger.warning("no certificate for server name %r: %s", server_name, exc)
            return ssl.ALERT_DESCRIPTION_HANDSHAKE_FAILURE
        with lock:
            context = contexts.get(served)
            if context is None:
                context = _server_context()
                served.load_into(context)
                contexts[served] = context
        ssl_object.context = context
        return None

    base = _server_context()
    base.sni_callback = select
    return base