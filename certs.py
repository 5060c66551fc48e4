#Filename: certs.py
"""
CERTIFICATES
Private CA + leaf certificate generation for the tunnel acceptor, and the
server TLS context that advertises HTTP/2 only.
Clients trust the generated CA with --ca / TunnelConfig.ca_file.
"""

import datetime
import ipaddress
import os
import ssl
from typing import Iterable, List, NamedTuple, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from gun_common import H2_ALPN

CERTS_DIR = "certs"


class CertPaths(NamedTuple):
    cert: str
    key: str
    ca: str


def _san_entry(name: str) -> x509.GeneralName:
    try:
        return x509.IPAddress(ipaddress.ip_address(name))
    except ValueError:
        return x509.DNSName(name)


def _write_key(path: str, key: ec.EllipticCurvePrivateKey) -> None:
    # Private keys are written owner-only
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        ))


def generate_certificates(
    common_name: str,
    directory: str,
    alt_names: Optional[Iterable[str]] = None,
    days: int = 365
) -> CertPaths:
    """
    Generates an ECC P-256 CA and a server certificate for `common_name`
    (plus `alt_names`) signed by it. Writes <name>.crt, <name>.key and
    <name>-ca.crt under `directory`.
    """
    now = datetime.datetime.now(datetime.timezone.utc)

    ca_key = ec.generate_private_key(ec.SECP256R1())
    ca_name = x509.Name([
        x509.NameAttribute(NameOID.COMMON_NAME, f"{common_name} tunnel CA"),
    ])
    ca_cert = x509.CertificateBuilder().subject_name(
        ca_name
    ).issuer_name(
        ca_name
    ).public_key(
        ca_key.public_key()
    ).serial_number(
        x509.random_serial_number()
    ).not_valid_before(
        now - datetime.timedelta(hours=1)
    ).not_valid_after(
        now + datetime.timedelta(days=days)
    ).add_extension(
        x509.BasicConstraints(ca=True, path_length=0), critical=True,
    ).add_extension(
        x509.KeyUsage(
            digital_signature=True, content_commitment=False, key_encipherment=False,
            data_encipherment=False, key_agreement=False, key_cert_sign=True,
            crl_sign=True, encipher_only=False, decipher_only=False
        ),
        critical=True,
    ).add_extension(
        x509.SubjectKeyIdentifier.from_public_key(ca_key.public_key()), critical=False,
    ).sign(ca_key, hashes.SHA256())

    names: List[str] = [common_name]
    for n in alt_names or ():
        if n not in names:
            names.append(n)

    key = ec.generate_private_key(ec.SECP256R1())
    cert = x509.CertificateBuilder().subject_name(
        x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    ).issuer_name(
        ca_cert.subject
    ).public_key(
        key.public_key()
    ).serial_number(
        x509.random_serial_number()
    ).not_valid_before(
        now - datetime.timedelta(hours=1)
    ).not_valid_after(
        now + datetime.timedelta(days=days)
    ).add_extension(
        x509.SubjectAlternativeName([_san_entry(n) for n in names]), critical=False,
    ).add_extension(
        x509.BasicConstraints(ca=False, path_length=None), critical=True,
    ).add_extension(
        x509.KeyUsage(
            digital_signature=True, content_commitment=False, key_encipherment=False,
            data_encipherment=False, key_agreement=False, key_cert_sign=False,
            crl_sign=False, encipher_only=False, decipher_only=False
        ),
        critical=True,
    ).add_extension(
        x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False,
    ).add_extension(
        x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False,
    ).add_extension(
        x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()), critical=False,
    ).sign(ca_key, hashes.SHA256())

    if not os.path.exists(directory):
        os.makedirs(directory, mode=0o700)
    safe_name = os.path.basename(common_name) or "localhost"
    paths = CertPaths(
        cert=os.path.join(directory, f"{safe_name}.crt"),
        key=os.path.join(directory, f"{safe_name}.key"),
        ca=os.path.join(directory, f"{safe_name}-ca.crt"),
    )

    _write_key(paths.key, key)
    with open(paths.cert, "wb") as f:
        f.write(cert.public_bytes(serialization.Encoding.PEM))
    with open(paths.ca, "wb") as f:
        f.write(ca_cert.public_bytes(serialization.Encoding.PEM))
    return paths


def ensure_certificates(common_name: str = "localhost", directory: str = CERTS_DIR) -> CertPaths:
    """Reuses previously generated files for `common_name`, otherwise generates them."""
    safe_name = os.path.basename(common_name) or "localhost"
    existing = CertPaths(
        cert=os.path.join(directory, f"{safe_name}.crt"),
        key=os.path.join(directory, f"{safe_name}.key"),
        ca=os.path.join(directory, f"{safe_name}-ca.crt"),
    )
    if all(os.path.exists(p) for p in existing):
        return existing
    return generate_certificates(common_name, directory, ["127.0.0.1", "::1"])


def server_ssl_context(cert_path: str, key_path: str) -> ssl.SSLContext:
    ctx = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    ctx.load_cert_chain(certfile=cert_path, keyfile=key_path)
    ctx.set_alpn_protocols([H2_ALPN])
    return ctx
