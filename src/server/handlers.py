"""HTTP transport handlers.

Each handler takes the parsed request and either returns a Response or
raises a RejectError. Handlers never write to the connection themselves, so
every failure reaches the StealthGate through the serving layer.
"""

import html
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Mapping, Optional
from urllib.parse import parse_qs

from common import utc_timestamp
from server.signature import is_valid_signature
from server.stealth import FormatError, SignatureError, UnknownRouteError

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Ping-Signature"

# Transparent 1x1 GIF
PIXEL_GIF = (
    b"GIF89a\x01\x00\x01\x00\x80\x00\x00\x00\x00\x00\xff\xff\xff"
    b"!\xf9\x04\x01\x00\x00\x00\x00"
    b",\x00\x00\x00\x00\x01\x00\x01\x00\x00"
    b"\x02\x02D\x01\x00;"
)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}

PREFLIGHT_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, OPTIONS",
    "Access-Control-Allow-Headers": SIGNATURE_HEADER,
    "Access-Control-Max-Age": "86400",
}

# Dotted JavaScript identifier, e.g. "cb" or "app.onPing"
CALLBACK_PATTERN = re.compile(r"^[A-Za-z_$][A-Za-z0-9_$]*(\.[A-Za-z_$][A-Za-z0-9_$]*)*$")
MAX_CALLBACK_LENGTH = 128

CERT_PAGE = """<!DOCTYPE html>
<html>
<head>
    <title>Ming-Mong Server - Certificate Accepted</title>
    <style>
        body {{ font-family: Arial, sans-serif; text-align: center; padding: 50px; }}
        .container {{ max-width: 600px; margin: 0 auto; }}
        .success {{ color: #28a745; }}
        .info {{ color: #17a2b8; }}
    </style>
</head>
<body>
    <div class="container">
        <h1 class="success">Ming-Mong Server</h1>
        <h2>Certificate Accepted Successfully!</h2>
        <p class="info">Your browser now trusts this server's certificate.</p>
        <p>WebSocket endpoint: <strong>wss://{host}/ws</strong></p>
        <p>HTTP endpoint: <strong>https://{host}/ping</strong></p>
        <p>You can now close this tab and use HTTPS/WSS connections.</p>
        <hr>
        <p><small>This server is running with TLS encryption enabled.</small></p>
    </div>
</body>
</html>
"""


@dataclass(frozen=True)
class Response:
    """A success response to be written by the serving layer."""

    status: int
    headers: dict = field(default_factory=dict)
    body: bytes = b""


def _query_value(query: Mapping[str, list], name: str) -> str:
    values = query.get(name) or [""]
    return values[0]


def parse_query(raw_query: str) -> dict:
    """Parse a URL query string into a name -> [values] dict."""
    return parse_qs(raw_query, keep_blank_values=True)


def handle_ping(method: str, headers: Mapping[str, str]) -> Response:
    """Handle /ping (header-signed ping with CORS preflight).

    OPTIONS is always granted so browsers can preflight the custom header.
    """
    if method == "OPTIONS":
        return Response(204, dict(PREFLIGHT_HEADERS))
    if method != "GET":
        raise UnknownRouteError(f"{method} /ping")

    signature = headers.get(SIGNATURE_HEADER, "")
    if not signature:
        raise SignatureError("missing X-Ping-Signature header")
    if not is_valid_signature(signature):
        raise SignatureError(f"invalid signature {signature!r}")

    return Response(
        200,
        {
            "Access-Control-Allow-Origin": "*",
            "Access-Control-Allow-Methods": "GET",
            "Content-Type": "application/json",
        },
        b'{"status":"ok"}',
    )


def handle_pixel(method: str, query: Mapping[str, list]) -> Response:
    """Handle /pixel (image beacon, status carried in a header)."""
    if method != "GET":
        raise UnknownRouteError(f"{method} /pixel")

    signature = _query_value(query, "signature")
    if not is_valid_signature(signature):
        raise SignatureError(f"invalid pixel signature {signature!r}")

    headers = {"Content-Type": "image/gif", "X-Ping-Status": "ok"}
    headers.update(NO_CACHE_HEADERS)
    return Response(200, headers, PIXEL_GIF)


def handle_jsonp(
    method: str,
    query: Mapping[str, list],
    now: Optional[datetime] = None,
) -> Response:
    """Handle /jsonp (script-tag callback).

    The callback name is restricted to a dotted identifier; anything else
    is treated as malformed input.
    """
    if method != "GET":
        raise UnknownRouteError(f"{method} /jsonp")

    signature = _query_value(query, "signature")
    callback = _query_value(query, "callback")
    if not callback:
        raise FormatError("missing callback")
    if len(callback) > MAX_CALLBACK_LENGTH or not CALLBACK_PATTERN.match(callback):
        raise FormatError(f"unsafe callback name {callback[:32]!r}")
    if not is_valid_signature(signature):
        raise SignatureError(f"invalid jsonp signature {signature!r}")

    payload = json.dumps(
        {"status": "ok", "timestamp": utc_timestamp(now)},
        separators=(",", ":"),
    )
    headers = {"Content-Type": "application/javascript"}
    headers.update(NO_CACHE_HEADERS)
    return Response(200, headers, f"{callback}({payload});".encode("utf-8"))


def handle_root(method: str, host: str, tls_enabled: bool) -> Response:
    """Handle / (certificate acceptance page, TLS only)."""
    if not tls_enabled:
        raise UnknownRouteError("/ without TLS")
    if method != "GET":
        raise UnknownRouteError(f"{method} /")

    body = CERT_PAGE.format(host=html.escape(host or "localhost"))
    return Response(200, {"Content-Type": "text/html"}, body.encode("utf-8"))


def route(
    method: str,
    path: str,
    raw_query: str,
    headers: Mapping[str, str],
    tls_enabled: bool,
) -> Response:
    """Dispatch a plain HTTP request to its handler.

    /ws is handled by the serving layer before routing, since it takes over
    the connection. Every path not listed here is an unknown route.
    """
    if path == "/ping":
        return handle_ping(method, headers)
    if path == "/pixel":
        return handle_pixel(method, parse_query(raw_query))
    if path == "/jsonp":
        return handle_jsonp(method, parse_query(raw_query))
    if path == "/":
        return handle_root(method, headers.get("Host", ""), tls_enabled)
    raise UnknownRouteError(f"{method} {path}")
