"""Server package for the stealth ping daemon.

The server answers signed pings over WebSocket, HTTP header, image beacon
and JSONP on a single port. Every other request is dropped by closing the
socket without a response.
"""

from server.httpd import (
    Server,
    ServerHandler,
    create_server,
)
from server.signature import (
    ValidationOutcome,
    derive_signature,
    accepted_signatures,
    is_valid_signature,
)
from server.stealth import (
    RejectError,
    FormatError,
    MessageTypeError,
    SignatureError,
    UnknownRouteError,
    RawCloser,
    SocketCloser,
    StealthGate,
)

__all__ = [
    # Server
    "Server",
    "ServerHandler",
    "create_server",
    # Signature
    "ValidationOutcome",
    "derive_signature",
    "accepted_signatures",
    "is_valid_signature",
    # Stealth
    "RejectError",
    "FormatError",
    "MessageTypeError",
    "SignatureError",
    "UnknownRouteError",
    "RawCloser",
    "SocketCloser",
    "StealthGate",
]
