"""Validation of the TLS certificates served by a host on each of its addresses."""

from __future__ import annotations

import ipaddress
import re
import socket
import ssl
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Iterable, Sequence

from cryptography import x509
from cryptography.hazmat.primitives import serialization

_DIAL_TIMEOUT = 30.0


class ValidationError(Exception):
    """Raised when one or more certificates fail validation; errors holds each failure."""

    def __init__(self, errors: Sequence[str]) -> None:
        self.errors = list(errors)
        super().__init__("\n".join(self.errors))


def _as_timedelta(value: timedelta | float | None) -> timedelta:
    if value is None:
        return timedelta(0)
    if isinstance(value, timedelta):
        return value
    return timedelta(seconds=value)


def _compile_all(patterns: Iterable[re.Pattern | str]) -> tuple[re.Pattern, ...]:
    return tuple(p if isinstance(p, re.Pattern) else re.compile(p) for p in patterns)


def _is_ipv4(addr: str) -> bool:
    try:
        return ipaddress.ip_address(addr).version == 4
    except ValueError:
        return False


class Validator:
    """Connects to a host's addresses and checks the certificates they present."""

    def __init__(
        self,
        *,
        ipv4_only: bool = False,
        valid_for_at_least: timedelta | float | None = None,
        issuer_regexps: Iterable[re.Pattern | str] = (),
        expand_dns_names: bool = False,
        root_cas: Sequence[x509.Certificate] | None = None,
        check_serial_numbers: bool = False,
        tls_min_version: ssl.TLSVersion | None = None,
        ciphersuites: Sequence[str] | None = None,
    ) -> None:
        self.ipv4_only = ipv4_only
        self.valid_for_at_least = _as_timedelta(valid_for_at_least)
        self.issuer_regexps = _compile_all(issuer_regexps)
        self.expand_dns_names = expand_dns_names
        self.root_cas = None if root_cas is None else tuple(root_cas)
        self.check_serial_numbers = check_serial_numbers
        self.tls_min_version = tls_min_version
        self.ciphersuites = None if ciphersuites is None else tuple(ciphersuites)

    def _context(self) -> ssl.SSLContext:
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        context.options |= getattr(ssl, "OP_NO_RENEGOTIATION", 0)
        if self.root_cas is None:
            context.load_default_certs()
        elif self.root_cas:
            context.load_verify_locations(
                cadata="".join(
                    cert.public_bytes(serialization.Encoding.PEM).decode("ascii")
                    for cert in self.root_cas
                )
            )
        if self.tls_min_version is not None:
            context.minimum_version = self.tls_min_version
        if self.ciphersuites:
            context.set_ciphers(":".join(self.ciphersuites))
        return context

    def _addresses(self, host: str) -> list[str]:
        if self.expand_dns_names:
            infos = socket.getaddrinfo(host, None, type=socket.SOCK_STREAM)
            addrs = [str(info[4][0]) for info in infos]
        else:
            addrs = [host]
        if self.ipv4_only:
            addrs = [addr for addr in addrs if _is_ipv4(addr)]
        return addrs

    @staticmethod
    def _leaf(context: ssl.SSLContext, host: str, addr: str, port: str) -> x509.Certificate:
        with socket.create_connection((addr, port), timeout=_DIAL_TIMEOUT) as sock:
            with context.wrap_socket(sock, server_hostname=host) as tls:
                der = tls.getpeercert(binary_form=True)
        if der is None:
            raise ssl.SSLError(f"{addr}: no peer certificate presented")
        return x509.load_der_x509_certificate(der)

    def _check_leaf(self, leaf: x509.Certificate) -> str | None:
        if self.issuer_regexps:
            issuer = leaf.issuer.rfc4514_string()
            if not any(pattern.search(issuer) for pattern in self.issuer_regexps):
                return (
                    f'certificate issuer "{issuer}" does not match any of the '
                    "specified patterns"
                )
        if self.valid_for_at_least > timedelta(0):
            remaining = leaf.not_valid_after_utc - datetime.now(timezone.utc)
            if remaining < self.valid_for_at_least:
                return (
                    f"certificate is valid for {remaining} which is less than the "
                    f"required {self.valid_for_at_least}"
                )
        return None

    def validate(self, host: str, port: str) -> list[x509.Certificate]:
        """Validate the certificates served for host on port at each of its addresses.

        Connection and handshake failures propagate; certificate policy failures
        are collected into a ValidationError. Returns the leaf certificates, one
        per address, in address order.
        """
        addrs = self._addresses(host)
        if not addrs:
            return []
        context = self._context()
        with ThreadPoolExecutor(max_workers=len(addrs)) as pool:
            futures = [pool.submit(self._leaf, context, host, addr, port) for addr in addrs]
            leaves = [future.result() for future in futures]

        errors: list[str] = []
        serial: int | None = None
        for addr, leaf in zip(addrs, leaves):
            problem = self._check_leaf(leaf)
            if problem is not None:
                errors.append(f'host "{host}" port "{port}": {problem}')
            if self.check_serial_numbers:
                if serial is None:
                    serial = leaf.serial_number
                elif serial != leaf.serial_number:
                    errors.append(
                        f"{host}: {addr} mismatched serial numbers: "
                        f"({serial}) != ({leaf.serial_number})"
                    )
        if errors:
            raise ValidationError(errors)
        return leaves