"""Self-signed certificates for the local asset server."""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable

import structlog
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from .errors import ProvisioningError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CertificatePair:
    certificate_pem: bytes
    private_key_pem: bytes

    def write_to(self, directory: str | Path) -> tuple[str, str]:
        """Write the PEM files into ``directory`` and return (certfile, keyfile)."""
        out = Path(directory)
        out.mkdir(parents=True, exist_ok=True)
        cert_path = out / "cert.pem"
        key_path = out / "key.pem"
        cert_path.write_bytes(self.certificate_pem)
        key_path.write_bytes(self.private_key_pem)
        os.chmod(key_path, 0o600)
        return str(cert_path), str(key_path)


def generate_self_signed_certificate(
    hostnames: Iterable[str],
    valid_for: timedelta = timedelta(days=7),
) -> CertificatePair:
    """Generate a self-signed certificate whose SAN covers every hostname.

    Args:
        hostnames: Names the server will be reached by. The first one is used
            as the subject common name.
        valid_for: Validity period, counted from now.

    Raises:
        ProvisioningError: if no hostname is given or key/cert generation fails.
    """
    names = [str(h).strip() for h in hostnames if str(h or "").strip()]
    if not names:
        raise ProvisioningError("At least one hostname is required for the certificate")

    logger.info("Generating self-signed certificate", hostnames=names)

    try:
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        subject = issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, names[0])])

        now = datetime.now(timezone.utc)
        certificate = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(issuer)
            .public_key(private_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(hours=1))
            .not_valid_after(now + valid_for)
            .add_extension(
                x509.SubjectAlternativeName([x509.DNSName(name) for name in names]),
                critical=False,
            )
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .sign(private_key, hashes.SHA256())
        )
    except (ValueError, TypeError) as e:
        raise ProvisioningError(f"Certificate generation failed: {e}") from e

    return CertificatePair(
        certificate_pem=certificate.public_bytes(serialization.Encoding.PEM),
        private_key_pem=private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        ),
    )
