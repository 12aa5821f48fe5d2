import ipaddress
import itertools
import re
import socket
import ssl
import threading
from datetime import datetime, timedelta, timezone
from unittest import mock

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from webapp.tlsvalidate import ValidationError, Validator

_REAL_GETADDRINFO = socket.getaddrinfo


def _name(common_name):
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


def _key_usage(cert_sign):
    return x509.KeyUsage(
        digital_signature=True,
        content_commitment=False,
        key_encipherment=False,
        data_encipherment=False,
        key_agreement=False,
        key_cert_sign=cert_sign,
        crl_sign=cert_sign,
        encipher_only=False,
        decipher_only=False,
    )


def _make_root(common_name):
    key = ec.generate_private_key(ec.SECP256R1())
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(_name(common_name))
        .issuer_name(_name(common_name))
        .public_key(key.public_key())
        .serial_number(1)
        .not_valid_before(now - timedelta(hours=1))
        .not_valid_after(now + timedelta(days=1))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(_key_usage(True), critical=True)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .sign(key, hashes.SHA256())
    )
    return cert, key


def _make_leaf(root, root_key, serial):
    key = ec.generate_private_key(ec.SECP256R1())
    now = datetime.now(timezone.utc)
    root_ski = root.extensions.get_extension_for_class(x509.SubjectKeyIdentifier).value
    cert = (
        x509.CertificateBuilder()
        .subject_name(_name("leaf.com"))
        .issuer_name(root.subject)
        .public_key(key.public_key())
        .serial_number(serial)
        .not_valid_before(now - timedelta(hours=1))
        .not_valid_after(now + timedelta(hours=1))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(_key_usage(False), critical=True)
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
        .add_extension(
            x509.SubjectAlternativeName(
                [x509.DNSName("localhost"), x509.IPAddress(ipaddress.ip_address("127.0.0.1"))]
            ),
            critical=False,
        )
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_subject_key_identifier(root_ski),
            critical=False,
        )
        .sign(root_key, hashes.SHA256())
    )
    return cert, key


def _server_context(directory, name, cert, key):
    cert_path = directory / f"{name}.crt"
    key_path = directory / f"{name}.key"
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_path.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.maximum_version = ssl.TLSVersion.TLSv1_2
    context.load_cert_chain(str(cert_path), str(key_path))
    return context


class _TLSServer:
    def __init__(self, contexts):
        self.listener = socket.create_server(("127.0.0.1", 0))
        self.listener.settimeout(0.1)
        self.port = str(self.listener.getsockname()[1])
        self._contexts = itertools.cycle(contexts)
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def _run(self):
        while not self._stop.is_set():
            try:
                conn, _ = self.listener.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            conn.settimeout(5)
            context = next(self._contexts)
            try:
                with context.wrap_socket(conn, server_side=True):
                    pass
            except OSError:
                conn.close()

    def close(self):
        self._stop.set()
        self._thread.join()
        self.listener.close()


def _resolving(*addresses):
    def fake(host, port, *args, **kwargs):
        if host == "localhost":
            return [
                (
                    socket.AF_INET6 if ":" in addr else socket.AF_INET,
                    socket.SOCK_STREAM,
                    socket.IPPROTO_TCP,
                    "",
                    (addr, 0, 0, 0) if ":" in addr else (addr, 0),
                )
                for addr in addresses
            ]
        return _REAL_GETADDRINFO(host, port, *args, **kwargs)

    return mock.patch("socket.getaddrinfo", side_effect=fake)


@pytest.fixture(scope="module")
def pki(tmp_path_factory):
    directory = tmp_path_factory.mktemp("pki")
    root, root_key = _make_root("root.com")
    contexts = [
        _server_context(directory, f"leaf{serial}", *_make_leaf(root, root_key, serial))
        for serial in (1001, 1002)
    ]
    return root, contexts


@pytest.fixture(scope="module")
def server(pki):
    root, contexts = pki
    srv = _TLSServer([contexts[0]])
    yield root, srv.port
    srv.close()


@pytest.fixture(scope="module")
def alternating_server(pki):
    root, contexts = pki
    srv = _TLSServer(contexts)
    yield root, srv.port
    srv.close()


def test_valid_cert(server):
    root, port = server
    leaves = Validator(root_cas=[root]).validate("127.0.0.1", port)
    assert [leaf.serial_number for leaf in leaves] == [1001]


def test_valid_cert_with_san(server):
    root, port = server
    leaves = Validator(root_cas=[root]).validate("localhost", port)
    assert len(leaves) == 1
    assert leaves[0].serial_number == 1001


def test_wrong_root_cas(server):
    _, port = server
    with pytest.raises(ssl.SSLCertVerificationError):
        Validator(root_cas=[]).validate("127.0.0.1", port)


def test_valid_for_not_met(server):
    root, port = server
    validator = Validator(root_cas=[root], valid_for_at_least=timedelta(hours=2))
    with pytest.raises(ValidationError, match="is less than the required") as excinfo:
        validator.validate("127.0.0.1", port)
    assert len(excinfo.value.errors) == 1
    assert excinfo.value.errors[0].startswith(f'host "127.0.0.1" port "{port}": ')


def test_valid_for_met(server):
    root, port = server
    validator = Validator(root_cas=[root], valid_for_at_least=timedelta(minutes=30))
    assert len(validator.validate("127.0.0.1", port)) == 1


@pytest.mark.parametrize("pattern", ["CN=root.com", re.compile("CN=root.com")])
def test_issuer_regex_match(server, pattern):
    root, port = server
    leaves = Validator(root_cas=[root], issuer_regexps=[pattern]).validate("127.0.0.1", port)
    assert leaves[0].issuer.rfc4514_string() == "CN=root.com"


def test_issuer_regex_no_match(server):
    root, port = server
    validator = Validator(root_cas=[root], issuer_regexps=[re.compile("CN=wrong.com")])
    with pytest.raises(ValidationError, match="does not match any of the specified patterns"):
        validator.validate("127.0.0.1", port)


def test_min_tls_version_met(server):
    root, port = server
    validator = Validator(root_cas=[root], tls_min_version=ssl.TLSVersion.TLSv1_2)
    assert len(validator.validate("127.0.0.1", port)) == 1


def test_min_tls_version_not_met(server):
    root, port = server
    validator = Validator(root_cas=[root], tls_min_version=ssl.TLSVersion.TLSv1_3)
    with pytest.raises(ssl.SSLError):
        validator.validate("127.0.0.1", port)


def test_ciphersuites(server):
    root, port = server
    validator = Validator(root_cas=[root], ciphersuites=["ECDHE-ECDSA-AES128-GCM-SHA256"])
    assert validator.validate("127.0.0.1", port)[0].serial_number == 1001


def test_expand_dns(server):
    root, port = server
    with _resolving("127.0.0.1"):
        leaves = Validator(root_cas=[root], expand_dns_names=True).validate("localhost", port)
    assert len(leaves) == 1


def test_ipv4_only_drops_ipv6_addresses(server):
    root, port = server
    validator = Validator(root_cas=[root], expand_dns_names=True, ipv4_only=True)
    with _resolving("::1", "127.0.0.1"):
        leaves = validator.validate("localhost", port)
    assert [leaf.serial_number for leaf in leaves] == [1001]


def test_ipv4_only_without_expansion_skips_names(server):
    root, port = server
    assert Validator(root_cas=[root], ipv4_only=True).validate("localhost", port) == []


def test_check_serial_numbers_match(server):
    root, port = server
    validator = Validator(root_cas=[root], expand_dns_names=True, check_serial_numbers=True)
    with _resolving("127.0.0.1", "127.0.0.1"):
        leaves = validator.validate("localhost", port)
    assert [leaf.serial_number for leaf in leaves] == [1001, 1001]


def test_check_serial_numbers_mismatch(alternating_server):
    root, port = alternating_server
    validator = Validator(root_cas=[root], expand_dns_names=True, check_serial_numbers=True)
    with _resolving("127.0.0.1", "127.0.0.1"):
        with pytest.raises(ValidationError, match="mismatched serial numbers"):
            validator.validate("localhost", port)