"""TLS certificate material for the server.

Provides self-signed certificate generation (covering localhost and the
loopback addresses) and loading of operator-supplied certificate files, both
reported with a SHA256 fingerprint for TOFU (trust-on-first-use) checks.
"""

import logging
import os
import socket
import subprocess
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Certificate defaults
DEFAULT_CERT_DAYS = 365
DEFAULT_KEY_SIZE = 2048
CERT_DIR_PREFIX = "ming-mong-tls-"


class CertificateSource(str, Enum):
    """Where a certificate bundle came from."""

    SELF_SIGNED = "self-signed"
    PUBLIC_AUTO = "public-auto"
    PROVIDED = "provided"


@dataclass(frozen=True)
class CertificateBundle:
    """TLS material the listener starts from. Read-only after startup."""

    cert_path: Path
    key_path: Path
    source: CertificateSource
    fingerprint: str

    @classmethod
    def from_paths(
        cls,
        cert_path: Path,
        key_path: Path,
        source: CertificateSource = CertificateSource.PROVIDED,
    ) -> "CertificateBundle":
        """Create a bundle from existing certificate files.

        Args:
            cert_path: Path to certificate file
            key_path: Path to key file
            source: How the files were obtained

        Returns:
            CertificateBundle with computed fingerprint

        Raises:
            FileNotFoundError: If files don't exist
            subprocess.CalledProcessError: If the certificate cannot be parsed
        """
        cert_path, key_path = Path(cert_path), Path(key_path)
        if not cert_path.exists():
            raise FileNotFoundError(f"Certificate not found: {cert_path}")
        if not key_path.exists():
            raise FileNotFoundError(f"Key not found: {key_path}")

        fingerprint = get_cert_fingerprint(cert_path)
        return cls(cert_path=cert_path, key_path=key_path, source=source, fingerprint=fingerprint)


def get_cert_fingerprint(cert_path: Path) -> str:
    """Get SHA256 fingerprint of a certificate.

    Args:
        cert_path: Path to PEM certificate file

    Returns:
        SHA256 fingerprint as hex string with colons (e.g., "AB:CD:EF:...")

    Raises:
        subprocess.CalledProcessError: If openssl command fails
    """
    result = subprocess.run(
        [
            "openssl", "x509",
            "-in", str(cert_path),
            "-noout",
            "-fingerprint",
            "-sha256"
        ],
        capture_output=True,
        text=True,
        check=True,
    )
    # Output format: "sha256 Fingerprint=AB:CD:EF:..."
    output = result.stdout.strip()
    if "=" in output:
        return output.split("=", 1)[1]
    return output


def get_hostname() -> str:
    """Get the system hostname."""
    return socket.gethostname()


def get_primary_ip() -> Optional[str]:
    """Get the primary IP address.

    Connects a UDP socket towards a public address (no packets are sent)
    and reads back the bound local address.

    Returns:
        Primary IP address, or None if cannot be determined
    """
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.settimeout(0)
            sock.connect(("8.8.8.8", 80))
            ip: str = sock.getsockname()[0]
        finally:
            sock.close()
        return ip
    except OSError:
        return None


def build_san_entries(hostname: str, ip: Optional[str] = None) -> list[str]:
    """Subject Alternative Names: localhost, loopback, hostname, primary IP."""
    entries = ["DNS:localhost", "IP:127.0.0.1", "IP:::1"]
    if hostname and hostname != "localhost":
        entries.append(f"DNS:{hostname}")
    if ip and ip != "127.0.0.1":
        entries.append(f"IP:{ip}")
    return entries


def generate_self_signed_cert(
    cert_dir: Optional[Path] = None,
    hostname: Optional[str] = None,
    days: int = DEFAULT_CERT_DAYS,
    key_size: int = DEFAULT_KEY_SIZE,
) -> CertificateBundle:
    """Generate a fresh self-signed certificate for the server.

    Creates a certificate with:
    - CN = hostname
    - SAN = localhost, 127.0.0.1, ::1, hostname, primary IP (if available)
    - Validity = 365 days

    Args:
        cert_dir: Directory for the files (default: new temporary directory)
        hostname: Hostname for certificate CN (default: system hostname)
        days: Certificate validity in days
        key_size: RSA key size in bits

    Returns:
        CertificateBundle with paths and fingerprint

    Raises:
        subprocess.CalledProcessError: If openssl command fails
        OSError: If openssl is missing or cert_dir is not writable
    """
    if cert_dir is None:
        cert_dir = Path(tempfile.mkdtemp(prefix=CERT_DIR_PREFIX))
    hostname = hostname or get_hostname()

    cert_dir.mkdir(parents=True, exist_ok=True)

    cert_path = cert_dir / "server.crt"
    key_path = cert_dir / "server.key"

    logger.info("Generating self-signed certificate for %s", hostname)

    san_entries = build_san_entries(hostname, get_primary_ip())

    # Create temporary config file for openssl
    with tempfile.NamedTemporaryFile(mode="w", suffix=".cnf", delete=False) as f:
        f.write(f"""
[req]
default_bits = {key_size}
prompt = no
default_md = sha256
distinguished_name = dn
x509_extensions = v3_ext

[dn]
CN = {hostname}

[v3_ext]
basicConstraints = CA:FALSE
keyUsage = digitalSignature, keyEncipherment
extendedKeyUsage = serverAuth
subjectAltName = {",".join(san_entries)}
""")
        config_path = f.name

    try:
        subprocess.run(
            [
                "openssl", "req",
                "-x509",
                "-nodes",
                "-newkey", f"rsa:{key_size}",
                "-keyout", str(key_path),
                "-out", str(cert_path),
                "-days", str(days),
                "-config", config_path,
            ],
            check=True,
            capture_output=True,
        )

        # Set restrictive permissions on key file
        os.chmod(key_path, 0o600)
        os.chmod(cert_path, 0o644)

    finally:
        Path(config_path).unlink(missing_ok=True)

    fingerprint = get_cert_fingerprint(cert_path)
    logger.info("Certificate fingerprint (SHA256): %s", fingerprint)

    return CertificateBundle(
        cert_path=cert_path,
        key_path=key_path,
        source=CertificateSource.SELF_SIGNED,
        fingerprint=fingerprint,
    )
