"""Key and certificate material for TLS mesh topologies.

Certificates are written as PEM files into a workspace's ``certs`` directory
and referenced by path from ``tls-server`` / ``tls-client`` fragments.
"""

from __future__ import annotations

import datetime
import ipaddress
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

KEY_SIZE = 2048
VALIDITY = datetime.timedelta(days=1)


def _subject(common_name: str) -> x509.Name:
    return x509.Name(
        [
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "meshharness"),
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        ]
    )


def _write_pair(
    directory: Path, name: str, key: rsa.RSAPrivateKey, cert: x509.Certificate
) -> tuple[Path, Path]:
    directory.mkdir(parents=True, exist_ok=True)
    key_path = directory / f"{name}.key"
    cert_path = directory / f"{name}.crt"
    key_path.write_bytes(
        key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    key_path.chmod(0o600)
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    return key_path, cert_path


def _build_cert(
    name: str,
    public_key: rsa.RSAPublicKey,
    issuer: x509.Name,
    signing_key: rsa.RSAPrivateKey,
    *,
    is_ca: bool,
) -> x509.Certificate:
    now = datetime.datetime.now(datetime.UTC)
    return (
        x509.CertificateBuilder()
        .subject_name(_subject(name))
        .issuer_name(issuer)
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=5))
        .not_valid_after(now + VALIDITY)
        .add_extension(
            x509.SubjectAlternativeName(
                [
                    x509.DNSName("localhost"),
                    x509.DNSName(name),
                    x509.IPAddress(ipaddress.ip_address("127.0.0.1")),
                ]
            ),
            critical=False,
        )
        .add_extension(x509.BasicConstraints(ca=is_ca, path_length=None), critical=True)
        .sign(signing_key, hashes.SHA256())
    )


def generate_cert(directory: str | Path, name: str) -> tuple[Path, Path]:
    """Write a self-signed key/cert pair usable as a CA; return their paths."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=KEY_SIZE)
    cert = _build_cert(name, key.public_key(), _subject(name), key, is_ca=True)
    return _write_pair(Path(directory), name, key, cert)


def generate_cert_with_ca(
    directory: str | Path, name: str, ca_key: str | Path, ca_cert: str | Path
) -> tuple[Path, Path]:
    """Write a key/cert pair signed by an existing CA; return their paths."""
    signing_key = serialization.load_pem_private_key(
        Path(ca_key).read_bytes(), password=None
    )
    if not isinstance(signing_key, rsa.RSAPrivateKey):
        raise ValueError(f"CA key {ca_key} is not an RSA private key")
    authority = x509.load_pem_x509_certificate(Path(ca_cert).read_bytes())

    key = rsa.generate_private_key(public_exponent=65537, key_size=KEY_SIZE)
    cert = _build_cert(
        name, key.public_key(), authority.subject, signing_key, is_ca=False
    )
    return _write_pair(Path(directory), name, key, cert)
