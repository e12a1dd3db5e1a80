"""
Self-signed certificate issuance.

One call to issue_self_signed_certificate() generates a key pair, builds a
template for the configured hosts, self-signs it and writes cert.pem/key.pem
as a pair. Nothing is cached or reused between calls.
"""

import ipaddress
import os
import secrets
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import FrozenSet, Optional, Tuple, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from .config import CERT_FILE, KEY_FILE, ECDSAKey, IssuerConfig, KeyAlgorithm, RSAKey

SERIAL_NUMBER_LIMIT = 1 << 128

# curve name → (curve, signature hash)
_CURVES = {
    "P224": (ec.SECP224R1, hashes.SHA256),
    "P256": (ec.SECP256R1, hashes.SHA256),
    "P384": (ec.SECP384R1, hashes.SHA384),
    "P521": (ec.SECP521R1, hashes.SHA512),
}


class IssuanceError(Exception):
    """Certificate issuance failed; the server cannot start without a fresh pair."""


# ─── Key pairs ───────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class KeyPair:
    private_key: object
    hash_algorithm: hashes.HashAlgorithm

    def public_key(self):
        return self.private_key.public_key()

    def private_pem(self) -> bytes:
        # TraditionalOpenSSL gives "RSA PRIVATE KEY" / "EC PRIVATE KEY" blocks
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption())


def generate_key_pair(algorithm: KeyAlgorithm) -> KeyPair:
    try:
        if isinstance(algorithm, RSAKey):
            keyobj = rsa.generate_private_key(public_exponent=65537, key_size=algorithm.bits)
            return KeyPair(keyobj, hashes.SHA256())
        if isinstance(algorithm, ECDSAKey):
            curve, digest = _CURVES[algorithm.curve]
            keyobj = ec.generate_private_key(curve())
            return KeyPair(keyobj, digest())
    except (ValueError, TypeError, KeyError) as e:
        raise IssuanceError(f"failed to generate private key: {e}") from e
    raise IssuanceError(f"failed to generate private key: unsupported algorithm {algorithm!r}")


def random_serial_number() -> int:
    """Uniform draw from [1, 2**128); X.509 serials must be positive."""
    try:
        return secrets.randbelow(SERIAL_NUMBER_LIMIT - 1) + 1
    except (OSError, NotImplementedError) as e:
        raise IssuanceError(f"failed to generate serial number: {e}") from e


# ─── Template ────────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class CertificateTemplate:
    serial_number: int
    organization: str
    not_before: datetime
    not_after: datetime
    key_usage: FrozenSet[str]
    ext_key_usage: Tuple[x509.ObjectIdentifier, ...]
    is_ca: bool
    ip_addresses: Tuple[Union[ipaddress.IPv4Address, ipaddress.IPv6Address], ...]
    dns_names: Tuple[str, ...]
    basic_constraints_valid: bool = True


def partition_hosts(hosts) -> Tuple[tuple, tuple]:
    """Split hosts into (ip_addresses, dns_names); anything that isn't a literal IP is a DNS name."""
    ips, names = [], []
    for h in hosts:
        try:
            ips.append(ipaddress.ip_address(h))
        except ValueError:
            names.append(h)
    return tuple(ips), tuple(names)


def build_certificate_template(config: IssuerConfig, serial_number: int,
                               now: Optional[datetime] = None) -> CertificateTemplate:
    # X.509 validity has one-second resolution
    not_before = (now or datetime.now(timezone.utc)).replace(microsecond=0)
    usage = {"key_encipherment", "digital_signature"}
    if config.is_ca:
        usage.add("key_cert_sign")
    ips, names = partition_hosts(config.hosts)
    return CertificateTemplate(
        serial_number=serial_number,
        organization=config.organization,
        not_before=not_before,
        not_after=not_before + config.validity,
        key_usage=frozenset(usage),
        ext_key_usage=(ExtendedKeyUsageOID.SERVER_AUTH,),
        is_ca=config.is_ca,
        ip_addresses=ips,
        dns_names=names,
    )


# ─── Signing ─────────────────────────────────────────────────────────────────
def _key_usage(flags) -> x509.KeyUsage:
    return x509.KeyUsage(
        digital_signature="digital_signature" in flags,
        content_commitment=False,
        key_encipherment="key_encipherment" in flags,
        data_encipherment=False,
        key_agreement=False,
        key_cert_sign="key_cert_sign" in flags,
        crl_sign=False,
        encipher_only=False,
        decipher_only=False,
    )


def sign_certificate(template: CertificateTemplate, key_pair: KeyPair) -> bytes:
    """Self-sign the template with key_pair; returns the DER certificate."""
    try:
        name = x509.Name([x509.NameAttribute(NameOID.ORGANIZATION_NAME, template.organization)])
        builder = (x509.CertificateBuilder()
                   .subject_name(name).issuer_name(name)
                   .public_key(key_pair.public_key())
                   .serial_number(template.serial_number)
                   .not_valid_before(template.not_before).not_valid_after(template.not_after)
                   .add_extension(_key_usage(template.key_usage), critical=True)
                   .add_extension(x509.ExtendedKeyUsage(list(template.ext_key_usage)), critical=False))
        if template.basic_constraints_valid:
            builder = builder.add_extension(
                x509.BasicConstraints(ca=template.is_ca, path_length=None), critical=True)
        if template.is_ca:
            builder = builder.add_extension(
                x509.SubjectKeyIdentifier.from_public_key(key_pair.public_key()), critical=False)

        sans = [x509.IPAddress(ip) for ip in template.ip_addresses]
        sans += [x509.DNSName(n) for n in template.dns_names]
        if sans:
            builder = builder.add_extension(x509.SubjectAlternativeName(sans), critical=False)

        cert = builder.sign(key_pair.private_key, key_pair.hash_algorithm)
    except (ValueError, TypeError) as e:
        raise IssuanceError(f"Failed to create certificate: {e}") from e
    return cert.public_bytes(serialization.Encoding.DER)


def certificate_pem(der: bytes) -> bytes:
    return x509.load_der_x509_certificate(der).public_bytes(serialization.Encoding.PEM)


# ─── Persistence ─────────────────────────────────────────────────────────────
def _discard(path):
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass


def _stage(dest, data: bytes, mode: int) -> str:
    """Write data to a temp file next to dest (created 0600) and chmod it to mode."""
    fd, tmp = tempfile.mkstemp(prefix=".", suffix=".tmp",
                               dir=os.path.dirname(os.path.abspath(dest)))
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.chmod(tmp, mode)
    except OSError:
        _discard(tmp)
        raise
    return tmp


def _set_aside(dest):
    """Move an existing regular file at dest to a backup name; None if there is nothing to keep."""
    if not os.path.isfile(dest):
        return None
    fd, backup = tempfile.mkstemp(prefix=".", suffix=".bak",
                                  dir=os.path.dirname(os.path.abspath(dest)))
    os.close(fd)
    try:
        os.replace(dest, backup)
    except OSError:
        _discard(backup)
        raise
    return backup


def _roll_back(placed):
    for dest, backup in reversed(placed):
        if backup is None:
            _discard(dest)
        else:
            os.replace(backup, dest)


def write_artifacts(cert_pem: bytes, key_pem: bytes, cert_file=CERT_FILE, key_file=KEY_FILE):
    """Replace cert_file and key_file together: both land, or both keep their previous contents."""
    staged, placed = [], []
    try:
        for dest, data, mode in ((cert_file, cert_pem, 0o644), (key_file, key_pem, 0o600)):
            staged.append((_stage(dest, data, mode), dest))
        for tmp, dest in staged:
            backup = _set_aside(dest)
            try:
                os.replace(tmp, dest)
            except OSError:
                if backup is not None:
                    os.replace(backup, dest)
                raise
            placed.append((dest, backup))
    except OSError as e:
        _roll_back(placed)
        for tmp, _ in staged:
            _discard(tmp)
        raise IssuanceError(f"failed to write {cert_file}/{key_file}: {e}") from e
    for _, backup in placed:
        if backup is not None:
            _discard(backup)


# ─── Issuance ────────────────────────────────────────────────────────────────
def issue_self_signed_certificate(config: IssuerConfig, cert_file=CERT_FILE, key_file=KEY_FILE,
                                  now: Optional[datetime] = None) -> Tuple[str, str]:
    key_pair = generate_key_pair(config.key_algorithm)
    template = build_certificate_template(config, random_serial_number(), now=now)
    der = sign_certificate(template, key_pair)
    write_artifacts(certificate_pem(der), key_pair.private_pem(), cert_file, key_file)
    return os.path.abspath(cert_file), os.path.abspath(key_file)
