"""Shared error types for startup provisioning (ports, certificates)."""


class ProvisioningError(Exception):
    """Base exception for provisioning errors."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


class PortBusyError(ProvisioningError):
    """Port still occupied after graceful and forceful termination."""

    def __init__(self, port: int, occupants: list):
        self.port = port
        self.occupants = occupants
        described = ", ".join(str(o) for o in occupants) or "unknown"
        super().__init__("P100", f"Port {port} still in use by: {described}")


class HostnameError(ProvisioningError):
    """Public hostname could not be derived or does not resolve."""

    def __init__(self, message: str):
        super().__init__("P200", message)


class IssuanceError(ProvisioningError):
    """ACME issuance failed (firewall, rate limit, timeout, copy failure)."""

    def __init__(self, message: str):
        super().__init__("P300", message)


class CertificateError(ProvisioningError):
    """Local certificate material could not be generated or loaded."""

    def __init__(self, message: str):
        super().__init__("P400", message)
