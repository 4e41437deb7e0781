"""Public certificate issuance via ACME HTTP-01.

A server without a registered domain gets a resolvable name from a
wildcard-DNS service (203.0.113.5 -> 203-0-113-5.sslip.io). Issuance needs
port 80 for the challenge, so known web servers are paused, the port is
reclaimed, certbot runs in standalone mode, and the paused services are
started again whatever the outcome.
"""

import ipaddress
import logging
import os
import shutil
import socket
import subprocess
import tempfile
from pathlib import Path
from typing import Callable, Optional

import requests

from common import run_command
from config import DEFAULT_ACME_TIMEOUT
from provision.base import HostnameError, IssuanceError
from provision.ports import PortReclaimer
from provision.tls import CertificateBundle, CertificateSource, get_primary_ip

logger = logging.getLogger(__name__)

ACME_HTTP_PORT = 80
WILDCARD_DNS_SUFFIX = "sslip.io"
IP_LOOKUP_TIMEOUT = 5
PUBLIC_IP_SERVICES = (
    "https://api.ipify.org",
    "https://ifconfig.me/ip",
    "https://icanhazip.com",
)
# Web servers commonly bound to port 80, paused during the challenge
KNOWN_PORT80_SERVICES = ("nginx", "apache2", "httpd", "caddy", "lighttpd")
DEFAULT_ACME_DIR = Path.home() / ".ming-mong" / "acme"


def discover_public_ip(timeout: float = IP_LOOKUP_TIMEOUT) -> Optional[str]:
    """Discover this host's public IPv4 address.

    Asks a few IP echo services, then falls back to the primary local
    address if that address is globally routable.

    Returns:
        Public IPv4 address, or None if it cannot be determined
    """
    for url in PUBLIC_IP_SERVICES:
        try:
            resp = requests.get(url, timeout=timeout)
        except requests.exceptions.RequestException as e:
            logger.debug("IP lookup via %s failed: %s", url, e)
            continue
        if resp.status_code != 200:
            continue
        try:
            ip = ipaddress.ip_address(resp.text.strip())
        except ValueError:
            continue
        if ip.version == 4:
            return str(ip)

    local_ip = get_primary_ip()
    if local_ip and ipaddress.ip_address(local_ip).is_global:
        return local_ip
    return None


def wildcard_hostname(ip: str) -> str:
    """Hostname that wildcard DNS resolves back to the given IPv4 address."""
    return f"{ip.replace('.', '-')}.{WILDCARD_DNS_SUFFIX}"


def derive_hostname(domain: Optional[str] = None, ip: Optional[str] = None) -> str:
    """Pick the certificate hostname: operator domain, else wildcard DNS.

    Raises:
        HostnameError: If no domain is given and no public IP is found
    """
    if domain:
        return domain.strip().rstrip(".").lower()
    ip = ip or discover_public_ip()
    if not ip:
        raise HostnameError("Cannot determine public IP address for wildcard DNS hostname")
    return wildcard_hostname(ip)


def validate_hostname_resolvable(hostname: str) -> tuple[bool, str]:
    """Check if hostname resolves to an IP address.

    Args:
        hostname: Hostname to resolve

    Returns:
        (success, message) tuple
    """
    try:
        ip = socket.gethostbyname(hostname)
        return True, f"{hostname} resolves to {ip}"
    except socket.gaierror:
        return False, f"Cannot resolve hostname '{hostname}'"


def pause_services(
    services: tuple = KNOWN_PORT80_SERVICES,
    runner: Callable = run_command,
) -> list[str]:
    """Stop the active known port-80 services (best effort).

    Returns:
        Names of the services that were stopped, for resume_services()
    """
    if shutil.which("systemctl") is None:
        return []

    stopped = []
    for service in services:
        rc, _, _ = runner(["systemctl", "is-active", "--quiet", service], timeout=10)
        if rc != 0:
            continue
        rc, _, err = runner(["systemctl", "stop", service], timeout=30)
        if rc == 0:
            logger.info("Paused %s for ACME challenge", service)
            stopped.append(service)
        else:
            logger.warning("Failed to pause %s: %s", service, err.strip())
    return stopped


def resume_services(services: list, runner: Callable = run_command) -> None:
    """Start previously paused services again (best effort)."""
    for service in services:
        rc, _, err = runner(["systemctl", "start", service], timeout=30)
        if rc == 0:
            logger.info("Resumed %s", service)
        else:
            logger.warning("Failed to resume %s: %s", service, err.strip())


class AcmeIssuer:
    """Obtain a publicly trusted certificate with certbot standalone."""

    def __init__(
        self,
        email: Optional[str] = None,
        staging: bool = False,
        timeout: float = DEFAULT_ACME_TIMEOUT,
        acme_dir: Optional[Path] = None,
        output_dir: Optional[Path] = None,
        reclaimer: Optional[PortReclaimer] = None,
        runner: Callable = run_command,
        certbot: str = "certbot",
    ):
        self.email = email
        self.staging = staging
        self.timeout = timeout
        self.acme_dir = acme_dir or DEFAULT_ACME_DIR
        self.output_dir = output_dir
        self.reclaimer = reclaimer or PortReclaimer()
        self.runner = runner
        self.certbot = certbot

    def issue(self, hostname: str) -> CertificateBundle:
        """Issue a certificate for hostname and copy it to a readable path.

        Raises:
            ProvisioningError: On any failure (port busy, ACME, copy)
        """
        if shutil.which(self.certbot) is None:
            raise IssuanceError(f"{self.certbot} not found in PATH")

        paused = pause_services(runner=self.runner)
        try:
            self.reclaimer.ensure_free(ACME_HTTP_PORT)
            self._run_certbot(hostname)
            return self._install(hostname)
        finally:
            resume_services(paused, runner=self.runner)

    def build_command(self, hostname: str) -> list[str]:
        cmd = [
            self.certbot, "certonly",
            "--standalone",
            "--non-interactive",
            "--agree-tos",
            "--keep-until-expiring",
            "--preferred-challenges", "http",
            "--http-01-port", str(ACME_HTTP_PORT),
            "-d", hostname,
            "--config-dir", str(self.acme_dir / "config"),
            "--work-dir", str(self.acme_dir / "work"),
            "--logs-dir", str(self.acme_dir / "logs"),
        ]
        if self.email:
            cmd += ["--email", self.email]
        else:
            cmd.append("--register-unsafely-without-email")
        if self.staging:
            cmd.append("--staging")
        return cmd

    def _run_certbot(self, hostname: str) -> None:
        logger.info("Requesting certificate for %s (timeout %gs)", hostname, self.timeout)
        rc, _, err = self.runner(self.build_command(hostname), timeout=self.timeout)
        if rc != 0:
            detail = err.strip().splitlines()[-1] if err.strip() else f"exit code {rc}"
            raise IssuanceError(f"certbot failed for {hostname}: {detail}")

    def _install(self, hostname: str) -> CertificateBundle:
        """Copy the issued chain and key out of certbot's tree."""
        live_dir = self.acme_dir / "config" / "live" / hostname
        dest_dir = self.output_dir or Path(tempfile.mkdtemp(prefix="ming-mong-acme-"))
        cert_path = dest_dir / "server.crt"
        key_path = dest_dir / "server.key"
        try:
            dest_dir.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(live_dir / "fullchain.pem", cert_path)
            shutil.copyfile(live_dir / "privkey.pem", key_path)
            os.chmod(key_path, 0o600)
            os.chmod(cert_path, 0o644)
        except OSError as e:
            raise IssuanceError(f"Failed to copy issued certificate: {e}")

        try:
            return CertificateBundle.from_paths(cert_path, key_path, CertificateSource.PUBLIC_AUTO)
        except (OSError, subprocess.CalledProcessError) as e:
            raise IssuanceError(f"Issued certificate unreadable: {e}")
