"""Provisioning package: TLS material and port reclamation at startup.

Everything here runs once, before the listener accepts connections.
"""

from provision.base import (
    ProvisioningError,
    PortBusyError,
    HostnameError,
    IssuanceError,
    CertificateError,
)
from provision.tls import (
    CertificateBundle,
    CertificateSource,
    generate_self_signed_cert,
    get_cert_fingerprint,
)
from provision.ports import (
    PortOccupant,
    PortReclaimer,
    ReclaimResult,
    list_port_occupants,
)
from provision.acme import AcmeIssuer, derive_hostname
from provision.provisioner import CertificateProvisioner, ProvisionState

__all__ = [
    # Errors
    "ProvisioningError",
    "PortBusyError",
    "HostnameError",
    "IssuanceError",
    "CertificateError",
    # TLS
    "CertificateBundle",
    "CertificateSource",
    "generate_self_signed_cert",
    "get_cert_fingerprint",
    # Ports
    "PortOccupant",
    "PortReclaimer",
    "ReclaimResult",
    "list_port_occupants",
    # ACME
    "AcmeIssuer",
    "derive_hostname",
    # State machine
    "CertificateProvisioner",
    "ProvisionState",
]
