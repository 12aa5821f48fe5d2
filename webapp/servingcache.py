"""An in-memory, TTL-bounded cache of TLS certificates loaded from a backing store."""

from __future__ import annotations

import functools
import os
import re
import ssl
import tempfile
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol, Sequence

import idna
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.x509.verification import PolicyBuilder, Store, VerificationError

_PEM_BLOCK = re.compile(rb"-----BEGIN ([A-Z0-9 ]+)-----.*?-----END \1-----", re.S)
_DEFAULT_TTL = timedelta(hours=6)


class CacheMissError(Exception):
    """Raised by a certificate store when it holds no entry for a name."""

    def __init__(self, message: str = "cache miss") -> None:
        super().__init__(message)


class _CertStore(Protocol):
    def get(self, name: str) -> bytes: ...


@dataclass(eq=False)
class ServedCertificate:
    """A verified leaf certificate and its private key, ready to be served."""

    leaf: x509.Certificate
    private_key: object
    certificate_pem: bytes
    private_key_pem: bytes

    def load_into(self, context: ssl.SSLContext) -> None:
        """Load this certificate and key into an SSL context."""
        with tempfile.TemporaryDirectory() as directory:
            path = os.path.join(directory, "cert.pem")
            with open(path, "wb") as out:
                out.write(self.certificate_pem + self.private_key_pem)
            context.load_cert_chain(path)


@dataclass
class _Entry:
    certificate: ServedCertificate
    expiry: datetime


def _utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _parse_pem(data: bytes) -> tuple[list[bytes], list[bytes]]:
    """Split PEM data into private key blocks and certificate blocks."""
    keys: list[bytes] = []
    certs: list[bytes] = []
    for match in _PEM_BLOCK.finditer(data):
        kind = match.group(1)
        if kind.endswith(b"PRIVATE KEY"):
            keys.append(match.group(0))
        elif kind == b"CERTIFICATE":
            certs.append(match.group(0))
    return keys, certs


@functools.lru_cache(maxsize=1)
def _system_roots() -> tuple[x509.Certificate, ...]:
    blocks: list[bytes] = []
    paths = ssl.get_default_verify_paths()
    if paths.cafile and os.path.isfile(paths.cafile):
        with open(paths.cafile, "rb") as src:
            blocks.extend(_parse_pem(src.read())[1])
    if paths.capath and os.path.isdir(paths.capath):
        for entry in os.scandir(paths.capath):
            if entry.is_file():
                try:
                    with open(entry.path, "rb") as src:
                        blocks.extend(_parse_pem(src.read())[1])
                except OSError:
                    continue
    roots = []
    for block in blocks:
        try:
            roots.append(x509.load_pem_x509_certificate(block))
        except ValueError:
            continue
    if not roots:
        context = ssl.create_default_context()
        for der in context.get_ca_certs(binary_form=True):
            try:
                roots.append(x509.load_der_x509_certificate(der))
            except ValueError:
                continue
    return tuple(roots)


def _check_validity(cert: x509.Certificate, now: datetime) -> None:
    if now < cert.not_valid_before_utc:
        raise ValueError(
            "x509: certificate has expired or is not yet valid: "
            f"current time {now.isoformat()} is before {cert.not_valid_before_utc.isoformat()}"
        )
    if now > cert.not_valid_after_utc:
        raise ValueError(
            "x509: certificate has expired or is not yet valid: "
            f"current time {now.isoformat()} is after {cert.not_valid_after_utc.isoformat()}"
        )


def _is_ca(cert: x509.Certificate) -> bool:
    try:
        return cert.extensions.get_extension_for_class(x509.BasicConstraints).value.ca
    except x509.ExtensionNotFound:
        return False


def _public_der(key) -> bytes:
    return key.public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )


class CertServingCache:
    """Caches certificates from a store, verifying them when loaded and reloading after a TTL.

    root_cas of None means the system's trusted roots are used for verification.
    """

    def __init__(
        self,
        cert_store: _CertStore,
        *,
        root_cas: Sequence[x509.Certificate] | None = None,
        ttl: timedelta = _DEFAULT_TTL,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self.cert_store = cert_store
        self.root_cas = None if root_cas is None else tuple(root_cas)
        self.ttl = ttl
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self._cache: dict[str, _Entry] = {}

    def _get(self, name: str, when: datetime) -> ServedCertificate | None:
        with self._lock:
            entry = self._cache.get(name)
            if entry is not None and entry.expiry > when:
                return entry.certificate
        return None

    def _put(self, name: str, certificate: ServedCertificate) -> None:
        with self._lock:
            self._cache[name] = _Entry(certificate, _utc(self._now()) + self.ttl)

    def _roots(self) -> tuple[x509.Certificate, ...]:
        return _system_roots() if self.root_cas is None else self.root_cas

    def get_certificate(self, server_name: str) -> ServedCertificate:
        """Return the certificate for server_name, loading and verifying it when not cached."""
        if not server_name:
            raise ValueError("missing server name")
        if "." not in server_name.strip("."):
            raise ValueError(f'server name "{server_name}" is not a qualified domain name')
        try:
            name = idna.encode(server_name, uts46=True).decode("ascii")
        except idna.IDNAError:
            raise ValueError("server name contains invalid character") from None

        now = _utc(self._now())
        cached = self._get(name, now)
        if cached is not None:
            return cached

        data = self.cert_store.get(name)
        key_blocks, cert_blocks = _parse_pem(data)
        if not cert_blocks:
            raise ValueError(f"no certificates found for {name}")
        if not key_blocks:
            raise ValueError(f"no private key found for {name}")

        try:
            certs = [x509.load_pem_x509_certificate(block) for block in cert_blocks]
        except ValueError as exc:
            raise ValueError(f"failed to parse certificates for {name}: {exc}") from exc
        leaf, intermediates = certs[0], certs[1:]

        _check_validity(leaf, now)
        roots = self._roots()
        if not roots:
            raise ValueError("x509: certificate signed by unknown authority")
        verifier = (
            PolicyBuilder()
            .store(Store(list(roots)))
            .time(now.replace(tzinfo=None))
            .build_server_verifier(x509.DNSName(name))
        )
        try:
            verifier.verify(leaf, intermediates)
        except VerificationError as exc:
            raise ValueError(f"x509: failed to verify certificate for {name}: {exc}") from exc

        if _is_ca(leaf):
            raise ValueError(f"leaf certificate is a CA cert for {name}")

        try:
            key = serialization.load_pem_private_key(key_blocks[0], password=None)
        except (ValueError, TypeError) as exc:
            raise ValueError(f"failed to load x509 key pair for {name}: {exc}") from exc
        if _public_der(key.public_key()) != _public_der(leaf.public_key()):
            raise ValueError(
                f"failed to load x509 key pair for {name}: private key does not match public key"
            )

        served = ServedCertificate(
            leaf=leaf,
            private_key=key,
            certificate_pem=leaf.public_bytes(serialization.Encoding.PEM),
            private_key_pem=key.private_bytes(
                serialization.Encoding.PEM,
                serialization.PrivateFormat.PKCS8,
                serialization.NoEncryption(),
            ),
        )
        self._put(name, served)
        return served