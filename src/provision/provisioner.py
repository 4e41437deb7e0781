"""Certificate provisioning state machine.

Runs once at startup, before the listener accepts connections:

    START               -> NO_TLS | PROVIDED_PENDING | SELF_SIGNED_PENDING | PUBLIC_AUTO_PENDING
    PROVIDED_PENDING    -> PROVIDED, or SELF_SIGNED_PENDING on failure
    PUBLIC_AUTO_PENDING -> PUBLIC_AUTO_ISSUED, or SELF_SIGNED_PENDING on failure
    SELF_SIGNED_PENDING -> SELF_SIGNED, or FAILED (TLS required) / NO_TLS

Public issuance never fails hard: DNS, firewall, rate limit, port or copy
problems all fall back to a self-signed certificate.
"""

import logging
import subprocess
from enum import Enum
from typing import Callable, Optional

from config import ServerConfig, TLSMode
from provision.acme import AcmeIssuer, derive_hostname, validate_hostname_resolvable
from provision.base import CertificateError, HostnameError, ProvisioningError
from provision.ports import PortReclaimer
from provision.tls import CertificateBundle, generate_self_signed_cert

logger = logging.getLogger(__name__)


class ProvisionState(Enum):
    START = "start"
    PROVIDED_PENDING = "provided-pending"
    SELF_SIGNED_PENDING = "self-signed-pending"
    PUBLIC_AUTO_PENDING = "public-auto-pending"
    NO_TLS = "no-tls"
    PROVIDED = "provided"
    SELF_SIGNED = "self-signed"
    PUBLIC_AUTO_ISSUED = "public-auto-issued"
    FAILED = "failed"


TERMINAL_STATES = frozenset({
    ProvisionState.NO_TLS,
    ProvisionState.PROVIDED,
    ProvisionState.SELF_SIGNED,
    ProvisionState.PUBLIC_AUTO_ISSUED,
    ProvisionState.FAILED,
})

_INITIAL_TRANSITIONS = {
    TLSMode.NONE: ProvisionState.NO_TLS,
    TLSMode.PROVIDED: ProvisionState.PROVIDED_PENDING,
    TLSMode.SELF_SIGNED: ProvisionState.SELF_SIGNED_PENDING,
    TLSMode.AUTO: ProvisionState.PUBLIC_AUTO_PENDING,
}


class CertificateProvisioner:
    """Decide and acquire the TLS material the listener starts from."""

    def __init__(
        self,
        config: ServerConfig,
        issuer: Optional[AcmeIssuer] = None,
        reclaimer: Optional[PortReclaimer] = None,
        self_signer: Callable[..., CertificateBundle] = generate_self_signed_cert,
        hostname_resolver: Callable[[Optional[str]], str] = derive_hostname,
        resolvable_check: Callable[[str], tuple] = validate_hostname_resolvable,
    ):
        self.config = config
        self.issuer = issuer or AcmeIssuer(
            email=config.acme_email,
            staging=config.acme_staging,
            timeout=config.acme_timeout,
            output_dir=config.cert_dir,
            reclaimer=reclaimer,
        )
        self.self_signer = self_signer
        self.hostname_resolver = hostname_resolver
        self.resolvable_check = resolvable_check

        self.state = ProvisionState.START
        self.history: list[ProvisionState] = [ProvisionState.START]
        self.errors: list[str] = []
        self.bundle: Optional[CertificateBundle] = None
        self.hostname: Optional[str] = None

        self._steps = {
            ProvisionState.START: self._start,
            ProvisionState.PROVIDED_PENDING: self._load_provided,
            ProvisionState.SELF_SIGNED_PENDING: self._generate_self_signed,
            ProvisionState.PUBLIC_AUTO_PENDING: self._issue_public,
        }

    def step(self) -> ProvisionState:
        """Run the action for the current state and move to the next one."""
        if self.state in TERMINAL_STATES:
            return self.state
        self.state = self._steps[self.state]()
        self.history.append(self.state)
        logger.debug("Provisioning state: %s", self.state.value)
        return self.state

    def run(self) -> Optional[CertificateBundle]:
        """Drive the machine to a terminal state.

        Returns:
            CertificateBundle, or None when serving plain HTTP

        Raises:
            CertificateError: If TLS was required and every fallback failed
        """
        while self.state not in TERMINAL_STATES:
            self.step()

        if self.state is ProvisionState.FAILED:
            raise CertificateError(
                "TLS required but no certificate could be provisioned: " + "; ".join(self.errors)
            )
        if self.bundle is not None:
            logger.info("TLS material ready (%s): %s", self.bundle.source.value, self.bundle.cert_path)
        return self.bundle

    def _fail(self, message: str) -> None:
        self.errors.append(message)
        logger.warning(message)

    def _start(self) -> ProvisionState:
        return _INITIAL_TRANSITIONS[self.config.tls_mode]

    def _load_provided(self) -> ProvisionState:
        try:
            self.bundle = CertificateBundle.from_paths(self.config.cert_file, self.config.key_file)
        except (OSError, subprocess.CalledProcessError) as e:
            self._fail(f"Provided certificate unusable ({e}), falling back to self-signed")
            return ProvisionState.SELF_SIGNED_PENDING
        return ProvisionState.PROVIDED

    def _generate_self_signed(self) -> ProvisionState:
        try:
            self.bundle = self.self_signer(cert_dir=self.config.cert_dir)
        except (OSError, subprocess.CalledProcessError) as e:
            self._fail(f"Self-signed certificate generation failed: {e}")
            if self.config.tls_required:
                return ProvisionState.FAILED
            logger.warning("TLS not required, continuing with plain HTTP")
            return ProvisionState.NO_TLS
        return ProvisionState.SELF_SIGNED

    def _issue_public(self) -> ProvisionState:
        try:
            hostname = self.hostname_resolver(self.config.domain)
            ok, message = self.resolvable_check(hostname)
            if not ok:
                raise HostnameError(message)
            self.bundle = self.issuer.issue(hostname)
        except ProvisioningError as e:
            self._fail(f"Public certificate issuance failed ({e}), falling back to self-signed")
            return ProvisionState.SELF_SIGNED_PENDING

        self.hostname = hostname
        logger.info("Public certificate issued for %s", hostname)
        return ProvisionState.PUBLIC_AUTO_ISSUED
