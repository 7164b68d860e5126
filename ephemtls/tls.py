"""
ephemtls.tls
~~~~~~~~~~~~
On-the-fly, self-signed web server credentials.

Every call mints a fresh RSA key and certificate.  The validity window is
backdated by a random number of ~month periods so a freshly minted
certificate looks no different from a long-lived one, and the serial is
drawn from a 128-bit space.  The backdating policy and the random source are
injectable.
"""

from __future__ import annotations

import hashlib
import logging
import os
import secrets
import ssl
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterator, Optional, Protocol

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

log = logging.getLogger(__name__)

SERIAL_NUMBER_LIMIT = 1 << 128
DEFAULT_KEY_SIZE = 2048


class CredentialError(Exception):
    """Credential generation failed at *step*."""

    def __init__(self, step: str, cause: BaseException):
        self.step = step
        self.cause = cause
        super().__init__(f"credential generation failed: {step}: {cause}")


class RandomSource(Protocol):
    def randbelow(self, n: int) -> int: ...


class SystemRandomSource:
    """Default source, backed by the OS CSPRNG."""

    def randbelow(self, n: int) -> int:
        return secrets.randbelow(n)


@dataclass(frozen=True)
class BackdatePolicy:
    """How far back a certificate's validity starts, and how long it lasts."""

    min_periods: int = 1
    max_periods: int = 12
    period: timedelta = timedelta(days=30)
    validity: timedelta = timedelta(days=10 * 365)

    def __post_init__(self) -> None:
        if self.min_periods < 1:
            raise ValueError("min_periods must be at least 1")
        if self.max_periods < self.min_periods:
            raise ValueError("max_periods must not be below min_periods")
        if self.period <= timedelta(0):
            raise ValueError("period must be positive")
        if self.validity <= timedelta(0):
            raise ValueError("validity must be positive")
        if self.max_periods * self.period >= self.validity:
            raise ValueError("backdating must end before the validity window does")

    def draw_periods(self, rng: RandomSource) -> int:
        return self.min_periods + rng.randbelow(self.max_periods - self.min_periods + 1)


DEFAULT_POLICY = BackdatePolicy()


@dataclass(frozen=True)
class Credential:
    certificate_pem: str
    private_key_pem: str

    def __iter__(self) -> Iterator[str]:
        yield self.certificate_pem
        yield self.private_key_pem


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def generate_web_server_certificate(
    host_name: str = "",
    *,
    key_size: int = DEFAULT_KEY_SIZE,
    policy: BackdatePolicy = DEFAULT_POLICY,
    rng: Optional[RandomSource] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> Credential:
    """Create a self-signed server certificate for *host_name*.

    An empty *host_name* binds no distinguishing name.  Raises
    :class:`CredentialError` naming the step that failed; nothing is
    returned on error.
    """
    rng = rng or SystemRandomSource()
    clock = clock or _utcnow

    try:
        key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    except Exception as exc:
        raise CredentialError("key generation", exc) from exc

    # Validity is ~10 years, starting some number of ~months back.
    try:
        age = policy.draw_periods(rng)
        serial = 1 + rng.randbelow(SERIAL_NUMBER_LIMIT - 1)
    except Exception as exc:
        raise CredentialError("random source", exc) from exc

    now = clock().astimezone(timezone.utc).replace(microsecond=0)
    not_before = now - age * policy.period
    not_after = not_before + policy.validity

    try:
        spki = key.public_key().public_bytes(
            serialization.Encoding.DER,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )
    except Exception as exc:
        raise CredentialError("public key encoding", exc) from exc
    # RFC 3280 sec. 4.2.1.2
    subject_key_id = hashlib.sha1(spki).digest()

    if host_name:
        subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, host_name)])
    else:
        subject = x509.Name([])

    try:
        cert = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(subject)
            .public_key(key.public_key())
            .serial_number(serial)
            .not_valid_before(not_before)
            .not_valid_after(not_after)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=True,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=True,
                    crl_sign=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(
                x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]),
                critical=False,
            )
            # CA with a path length of 1 is kept for interoperability with
            # peers that expect the old certificate shape.
            .add_extension(x509.BasicConstraints(ca=True, path_length=1), critical=True)
            .add_extension(x509.SubjectKeyIdentifier(subject_key_id), critical=False)
            .sign(key, hashes.SHA256())
        )
    except Exception as exc:
        raise CredentialError("signing", exc) from exc

    try:
        cert_pem = cert.public_bytes(serialization.Encoding.PEM).decode("ascii")
        key_pem = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode("ascii")
    except Exception as exc:
        raise CredentialError("encoding", exc) from exc

    log.debug(
        "credential_issued serial=%x subject=%r not_before=%s not_after=%s",
        serial,
        host_name,
        not_before.isoformat(),
        not_after.isoformat(),
    )
    return Credential(certificate_pem=cert_pem, private_key_pem=key_pem)


def write_credential(
    directory: str | Path,
    credential: Credential,
    *,
    cert_name: str = "server.pem",
    key_name: str = "server.key",
) -> tuple[Path, Path]:
    """Write *credential* as two PEM files under *directory*."""
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)

    cert_path = directory / cert_name
    key_path = directory / key_name
    cert_path.write_text(credential.certificate_pem, encoding="ascii")
    key_path.write_text(credential.private_key_pem, encoding="ascii")
    try:
        key_path.chmod(0o600)
    except PermissionError:
        # not supported everywhere
        pass
    return cert_path, key_path


def server_ssl_context(credential: Credential) -> ssl.SSLContext:
    ctx = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    ctx.minimum_version = ssl.TLSVersion.TLSv1_2
    # load_cert_chain only reads from disk
    with tempfile.TemporaryDirectory(prefix="ephemtls-") as tmp:
        cert_path, key_path = write_credential(tmp, credential)
        ctx.load_cert_chain(os.fspath(cert_path), os.fspath(key_path))
    return ctx


__all__ = [
    "BackdatePolicy",
    "Credential",
    "CredentialError",
    "DEFAULT_POLICY",
    "RandomSource",
    "SystemRandomSource",
    "generate_web_server_certificate",
    "server_ssl_context",
    "write_credential",
]
