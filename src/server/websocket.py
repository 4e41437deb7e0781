"""WebSocket ping/pong exchange.

The HTTP server has already parsed the upgrade request, so the exchange is
driven through the websockets sans-I/O ServerProtocol: the caller feeds it
bytes read from the socket and writes back whatever it returns.

This is the one transport that explains a rejection: an invalid ping gets a
single JSON error message before the socket is closed.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from websockets.datastructures import Headers
from websockets.frames import Opcode
from websockets.http11 import Request
from websockets.protocol import State
from websockets.server import ServerProtocol

from common import utc_timestamp
from server.signature import ValidationOutcome, validate_ping_message
from server.stealth import (
    FormatError,
    MessageTypeError,
    RejectError,
    SignatureError,
)

logger = logging.getLogger(__name__)

WS_READ_TIMEOUT = 5.0
MAX_MESSAGE_SIZE = 64 * 1024

_OUTCOME_ERRORS = {
    ValidationOutcome.REJECTED_FORMAT: FormatError,
    ValidationOutcome.REJECTED_TYPE: MessageTypeError,
    ValidationOutcome.REJECTED_SIGNATURE: SignatureError,
}


@dataclass
class PingResult:
    """Outcome of one ping message and the framed reply to send."""

    outcome: ValidationOutcome
    data: bytes
    error: Optional[RejectError] = None


def pong_message(now: Optional[datetime] = None) -> dict:
    stamp = utc_timestamp(now)
    return {"type": "pong", "status": "ok", "timestamp": stamp, "server_time": stamp}


def error_message(code: str, now: Optional[datetime] = None) -> dict:
    return {"type": "error", "error": code, "timestamp": utc_timestamp(now)}


class PingExchange:
    """Single-message WebSocket exchange: handshake, one ping, one reply."""

    def __init__(self, now: Optional[datetime] = None):
        self.protocol = ServerProtocol(max_size=MAX_MESSAGE_SIZE)
        self.now = now
        self._fragments: list[bytes] = []

    def handshake(self, path: str, headers: Iterable[tuple[str, str]]) -> bytes:
        """Accept the upgrade request and return the 101 response bytes.

        Raises:
            FormatError: If the request is not a valid WebSocket upgrade
        """
        request = Request(path, Headers(headers))
        response = self.protocol.accept(request)
        if response.status_code != 101:
            raise FormatError(f"WebSocket handshake rejected: {self.protocol.handshake_exc}")
        self.protocol.send_response(response)
        return b"".join(self.protocol.data_to_send())

    def feed(self, data: bytes) -> Optional[PingResult]:
        """Feed received bytes; return a result once a full message arrived.

        Raises:
            RejectError: If the peer closed or violated the framing protocol
        """
        self.protocol.receive_data(data)
        for frame in self.protocol.events_received():
            if frame.opcode in (Opcode.TEXT, Opcode.BINARY, Opcode.CONT):
                self._fragments.append(frame.data)
                if frame.fin:
                    return self._answer(b"".join(self._fragments))
        if self.protocol.state is not State.OPEN:
            reason = self.protocol.parser_exc or "close frame received"
            raise RejectError(f"connection closed before ping: {reason}", code="closed")
        return None

    def feed_eof(self) -> None:
        """Signal end of stream before a full message arrived."""
        self.protocol.receive_eof()
        raise RejectError("connection closed before ping", code="closed")

    def _answer(self, payload: bytes) -> PingResult:
        try:
            message = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            outcome = ValidationOutcome.REJECTED_FORMAT
            message = None
        else:
            outcome = validate_ping_message(message, self.now)

        if outcome.accepted:
            reply = pong_message(self.now)
            error = None
        else:
            reply = error_message(outcome.error_code, self.now)
            detail = message.get("signature") if isinstance(message, dict) else None
            error = _OUTCOME_ERRORS[outcome](f"websocket ping rejected (signature={detail!r})")

        self.protocol.send_text(json.dumps(reply).encode("utf-8"))
        return PingResult(outcome, b"".join(self.protocol.data_to_send()), error)
