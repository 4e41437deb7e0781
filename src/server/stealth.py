"""Silent rejection of invalid requests.

Every failed request, whatever the transport, ends the same way: the raw
socket is closed with no status line, no body and no WebSocket close frame.
To the caller the port looks like nothing is listening.
"""

import logging
import socket
from typing import Protocol

logger = logging.getLogger(__name__)


class RejectError(Exception):
    """A request that must be answered by closing the connection."""

    code = "rejected"

    def __init__(self, message: str, code: str = ""):
        self.message = message
        if code:
            self.code = code
        super().__init__(f"{self.code}: {message}")


class FormatError(RejectError):
    """Malformed input (bad JSON, bad handshake, bad query)."""

    code = "invalid_format"


class MessageTypeError(RejectError):
    """Message discriminator is not 'ping'."""

    code = "invalid_type"


class SignatureError(RejectError):
    """Signature missing or not matching today's or yesterday's token."""

    code = "invalid_signature"


class UnknownRouteError(RejectError):
    """Path/method combination outside the served set."""

    code = "unknown_route"


class RawCloser(Protocol):
    """Capability to tear down a connection below the protocol layer."""

    def close(self) -> None:
        ...


class SocketCloser:
    """RawCloser for a (possibly TLS-wrapped) socket."""

    def __init__(self, sock: socket.socket):
        self.sock = sock
        self.closed = False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            # SSLSocket.shutdown() drops the TLS layer without close_notify
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass  # Peer already gone
        self.sock.close()


class StealthGate:
    """Single exit path for rejected connections."""

    def reject(self, closer: RawCloser, error: RejectError, origin: str) -> None:
        """Log the rejection and close the connection without a response.

        Args:
            closer: Capability that closes the raw connection
            error: Why the request was rejected
            origin: Client address, for the server log only
        """
        logger.warning("Rejected %s from %s: %s", error.code, origin, error.message)
        closer.close()
