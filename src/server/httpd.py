"""Main HTTP(S) server.

Serves the ping transports on a single port, plain or TLS. Anything that is
not a valid, signed ping on a known route is answered by closing the socket.
"""

import logging
import signal
import socket
import ssl
import sys
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Optional
from urllib.parse import urlsplit

from config import ServerConfig
from provision.tls import CertificateBundle
from server.handlers import Response, route
from server.stealth import RejectError, SocketCloser, StealthGate, UnknownRouteError
from server.websocket import WS_READ_TIMEOUT, PingExchange

logger = logging.getLogger(__name__)


class ServerHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the ping server.

    The TLS flag and the stealth gate are read from the owning
    PingHTTPServer, never from module or class state.
    """

    # Idle connections that never send a request line
    timeout = 30

    def setup(self):
        super().setup()
        self.closer = SocketCloser(self.connection)
        if isinstance(self.connection, ssl.SSLSocket):
            # Deferred from accept() so slow clients only block their own thread
            self.connection.do_handshake()

    @property
    def tls_enabled(self) -> bool:
        return self.server.tls_enabled

    @property
    def gate(self) -> StealthGate:
        return self.server.gate

    def log_message(self, format: str, *args):
        """Override to use Python logging."""
        logger.info("%s - %s", self.client_origin(), format % args)

    def send_response(self, code: int, message: Optional[str] = None):
        """Send status line and Date, without advertising a Server header."""
        self.log_request(code)
        self.send_response_only(code, message)
        self.send_header("Date", self.date_time_string())

    def send_error(self, code: int, message: Optional[str] = None, explain: Optional[str] = None):
        """Protocol errors (bad request line, unknown method, ...) are silent too."""
        self.reject(RejectError(f"HTTP {code}: {message or 'protocol error'}", code="protocol_error"))

    def client_origin(self) -> str:
        """Best-effort client address, honouring reverse proxy headers."""
        headers = getattr(self, "headers", None)
        if headers is not None:
            real_ip = headers.get("X-Real-IP")
            if real_ip:
                return real_ip
            forwarded = headers.get("X-Forwarded-For")
            if forwarded:
                return forwarded.split(",")[0].strip()
        return self.client_address[0]

    def reject(self, error: RejectError):
        """Route a failed request through the stealth gate."""
        self.close_connection = True
        self.gate.reject(self.closer, error, self.client_origin())

    def send_plain(self, response: Response):
        """Write a success response."""
        self.send_response(response.status)
        for name, value in response.headers.items():
            self.send_header(name, value)
        if response.body or response.status != 204:
            self.send_header("Content-Length", str(len(response.body)))
        self.end_headers()
        if response.body:
            self.wfile.write(response.body)

    def handle_any(self):
        """Handle every method through one routing path."""
        parsed = urlsplit(self.path)
        if parsed.path == "/ws":
            if self.command != "GET":
                self.reject(UnknownRouteError(f"{self.command} /ws"))
                return
            self._handle_websocket()
            return

        try:
            response = route(
                self.command, parsed.path, parsed.query, self.headers, self.tls_enabled
            )
        except RejectError as e:
            self.reject(e)
            return

        logger.info("Valid %s %s from %s", self.command, parsed.path, self.client_origin())
        self.send_plain(response)

    do_GET = do_HEAD = do_POST = do_PUT = do_DELETE = do_PATCH = do_OPTIONS = handle_any
    do_TRACE = do_CONNECT = handle_any

    def _handle_websocket(self):
        """Run one ping/pong exchange over an upgraded connection."""
        exchange = PingExchange()
        try:
            self.wfile.write(exchange.handshake(self.path, self.headers.items()))
            result = self._read_ping(exchange)
        except RejectError as e:
            self.reject(e)
            return

        self.wfile.write(result.data)
        if result.error is not None:
            self.reject(result.error)
            return

        logger.info("Valid ping from %s", self.client_origin())
        self.close_connection = True
        self.closer.close()

    def _read_ping(self, exchange: PingExchange):
        """Read until one full message arrives, within WS_READ_TIMEOUT."""
        deadline = time.monotonic() + WS_READ_TIMEOUT
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise RejectError(f"no ping within {WS_READ_TIMEOUT:g}s", code="timeout")
            self.connection.settimeout(remaining)
            try:
                data = self.rfile.read1(4096)
            except socket.timeout:
                raise RejectError(f"no ping within {WS_READ_TIMEOUT:g}s", code="timeout")
            except OSError as e:
                raise RejectError(f"read failed: {e}", code="closed")
            if not data:
                exchange.feed_eof()
            result = exchange.feed(data)
            if result is not None:
                return result


class PingHTTPServer(ThreadingHTTPServer):
    """Threaded server: one daemon thread per connection."""

    daemon_threads = True

    def __init__(self, server_address, handler_class, tls_enabled: bool):
        self.tls_enabled = tls_enabled
        self.gate = StealthGate()
        super().__init__(server_address, handler_class)

    def handle_error(self, request, client_address):
        """Connection-level failures (TLS handshake, resets) are routine here.

        Anything else is a handler bug and is logged at WARNING.
        """
        error = sys.exc_info()[1]
        if isinstance(error, OSError):  # ssl.SSLError is an OSError
            logger.debug("Connection error from %s", client_address[0], exc_info=True)
        else:
            logger.warning("Unexpected error handling %s", client_address[0], exc_info=True)


class Server:
    """Stealth ping server, plain HTTP or HTTPS."""

    def __init__(
        self,
        config: Optional[ServerConfig] = None,
        bundle: Optional[CertificateBundle] = None,
    ):
        """Initialize server.

        Args:
            config: Resolved server configuration
            bundle: TLS material; None serves plain HTTP
        """
        self.config = config or ServerConfig()
        self.bundle = bundle
        self.server: Optional[PingHTTPServer] = None

    @property
    def tls_enabled(self) -> bool:
        return self.bundle is not None

    @property
    def port(self) -> int:
        """Bound port (useful when listening on port 0)."""
        if self.server:
            return self.server.server_address[1]
        return self.config.listen_port

    def start(self):
        """Bind the listener and wrap it with TLS when a bundle is present.

        Raises:
            RuntimeError: If the server cannot be started
        """
        try:
            self.server = PingHTTPServer(
                (self.config.bind, self.config.listen_port),
                ServerHandler,
                tls_enabled=self.tls_enabled,
            )
        except OSError as e:
            logger.error("Failed to bind %s:%d: %s", self.config.bind, self.config.listen_port, e)
            raise RuntimeError(f"Bind failed: {e}") from e

        if self.bundle is not None:
            context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
            try:
                context.load_cert_chain(
                    certfile=str(self.bundle.cert_path),
                    keyfile=str(self.bundle.key_path),
                )
            except (OSError, ssl.SSLError) as e:
                self.server.server_close()
                self.server = None
                raise RuntimeError(f"TLS init failed: {e}") from e
            # Handshake lazily in the connection thread, not in accept()
            self.server.socket = context.wrap_socket(
                self.server.socket,
                server_side=True,
                do_handshake_on_connect=False,
            )

        self._log_startup()

    def _log_startup(self):
        scheme, ws_scheme = ("https", "wss") if self.tls_enabled else ("http", "ws")
        logger.info("Ming-Mong server starting on %s:%d", self.config.bind, self.port)
        if self.bundle is not None:
            logger.info(
                "TLS enabled (%s) - cert: %s, key: %s",
                self.bundle.source.value, self.bundle.cert_path, self.bundle.key_path,
            )
            logger.info("Certificate fingerprint (SHA256): %s", self.bundle.fingerprint)
        else:
            logger.info("TLS disabled - using plain HTTP")
        logger.info("WebSocket endpoint: %s://localhost:%d/ws", ws_scheme, self.port)
        logger.info("HTTP endpoint: %s://localhost:%d/ping", scheme, self.port)

    def serve_forever(self):
        """Start serving requests."""
        if not self.server:
            raise RuntimeError("Server not started")

        self._setup_signal_handlers()
        try:
            self.server.serve_forever()
        except KeyboardInterrupt:
            logger.info("Shutdown requested")
        finally:
            self.shutdown()

    def shutdown(self):
        """Shutdown the server; in-flight connections are dropped."""
        server, self.server = self.server, None
        if server:
            logger.info("Shutting down server")
            server.shutdown()
            server.server_close()

    def _setup_signal_handlers(self):
        """Setup SIGTERM for graceful shutdown (main thread only)."""

        def handle_sigterm(signum, frame):
            """Handle SIGTERM for graceful shutdown."""
            logger.info("Received SIGTERM")
            raise KeyboardInterrupt

        try:
            signal.signal(signal.SIGTERM, handle_sigterm)
        except ValueError:
            # Not in the main thread (e.g. tests running the server in a thread)
            pass


def create_server(
    config: Optional[ServerConfig] = None,
    bundle: Optional[CertificateBundle] = None,
) -> Server:
    """Create a server instance (not yet started)."""
    return Server(config=config, bundle=bundle)
