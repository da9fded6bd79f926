"""Main HTTP(S) server.

Serves the gated API on one port. With HTTPS enabled, certificate material
is ensured before the secure listener binds, and a plaintext listener on
the HTTP port redirects to it.
"""

import json
import logging
import signal
import ssl
import sys
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from types import MappingProxyType
from typing import Callable, Mapping, Optional
from urllib.parse import parse_qs, urlparse

from config import GateConfig
from gate.auth import AccessPolicy, Decision, create_policy, extract_credential, resolve_origin
from gate.tls import (
    CertificateGenerationError,
    CertificateManager,
    CertificateMaterial,
    DomainPolicy,
)

logger = logging.getLogger(__name__)

# Gated route handler: (request, decision) -> (response_body, http_status)
RouteHandler = Callable[["ServerHandler", Decision], tuple[dict, int]]


def domain_policy(config: GateConfig) -> DomainPolicy:
    """Derive the certificate domain policy from gate settings."""
    return DomainPolicy(domain_name=config.domain_name, use_domain=config.use_domain)


def handle_session(request: "ServerHandler", decision: Decision) -> tuple[dict, int]:
    """Handle /api/session: reached only once the gate allowed the request."""
    return decision.to_response()


class ServerHandler(BaseHTTPRequestHandler):
    """HTTP request handler applying the access policy to gated routes."""

    # Bound per Server instance via Server._handler_class()
    policy: Optional[AccessPolicy] = None
    trust_proxy: bool = False
    routes: Mapping[tuple[str, str], RouteHandler] = MappingProxyType({})

    def log_message(self, format: str, *args):
        """Override to use Python logging."""
        logger.info("%s - %s", self.address_string(), format % args)

    def send_json(self, data: dict, status: int = 200):
        """Send JSON response."""
        body = json.dumps(data, indent=2).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def do_GET(self):
        self._dispatch("GET")

    def do_POST(self):
        self._dispatch("POST")

    def do_PUT(self):
        self._dispatch("PUT")

    def do_DELETE(self):
        self._dispatch("DELETE")

    def authorize(self, query: dict) -> Decision:
        """Run the access policy for this request."""
        origin = resolve_origin(self.client_address[0], self.headers, self.trust_proxy)
        credential = extract_credential(self.headers, query)
        return self.policy.authorize(origin, self.headers.get("Host", ""), credential)

    def _dispatch(self, method: str):
        parsed = urlparse(self.path)
        path = parsed.path.rstrip("/") or "/"

        # Health check endpoint (ungated)
        if method == "GET" and path == "/health":
            self.send_json({"status": "ok"})
            return

        handler = self.routes.get((method, path))
        if handler is None:
            self.send_json({"error": {"code": "E100", "message": f"Unknown endpoint: {path}"}}, 404)
            return

        if not self.policy:
            self.send_json({"error": {"code": "E500", "message": "Access policy not initialized"}}, 500)
            return

        decision = self.authorize(parse_qs(parsed.query))
        if not decision.allowed:
            body, status = decision.to_response()
            self.send_json(body, status)
            return

        try:
            body, status = handler(self, decision)
        except Exception as e:
            logger.exception("Unexpected error handling %s %s", method, path)
            self.send_json({"error": {"code": "E500", "message": f"Internal error: {e}"}}, 500)
            return
        self.send_json(body, status)


class RedirectHandler(BaseHTTPRequestHandler):
    """Plaintext listener that sends every request to the HTTPS port."""

    https_port: int = 3443

    def log_message(self, format: str, *args):
        logger.debug("%s - %s", self.address_string(), format % args)

    def _redirect(self):
        host = self.headers.get("Host", "") or "localhost"
        if host.startswith("["):
            hostname = host[:host.find("]") + 1] or host
        else:
            hostname = host.split(":")[0]
        location = f"https://{hostname}:{self.https_port}{self.path}"

        self.send_response(301)
        self.send_header("Location", location)
        self.send_header("Content-Length", "0")
        self.end_headers()

    do_GET = do_POST = do_PUT = do_DELETE = do_HEAD = _redirect


class Server:
    """HTTP(S) server for the gated file-share API."""

    def __init__(
        self,
        config: Optional[GateConfig] = None,
        policy: Optional[AccessPolicy] = None,
        cert_manager: Optional[CertificateManager] = None,
    ):
        """Initialize server.

        Args:
            config: Gate settings (defaults if None)
            policy: Access policy (built from config if None)
            cert_manager: Certificate manager (built from config if None)
        """
        self.config = config or GateConfig()
        self.policy = policy or create_policy(self.config.password, self.config.allowed_hosts)
        self.cert_manager = cert_manager
        self.routes: dict[tuple[str, str], RouteHandler] = {
            ("GET", "/api/session"): handle_session,
        }
        self.material: Optional[CertificateMaterial] = None
        self.server: Optional[ThreadingHTTPServer] = None
        self.redirect_server: Optional[ThreadingHTTPServer] = None
        self._redirect_thread: Optional[threading.Thread] = None
        self._serving = False

    @property
    def scheme(self) -> str:
        return "https" if self.material else "http"

    @property
    def port(self) -> int:
        """Port actually bound by the main listener."""
        if not self.server:
            raise RuntimeError("Server not started")
        return self.server.server_address[1]

    def register_route(self, method: str, path: str, handler: RouteHandler) -> None:
        """Register a gated route. Must be called before start()."""
        self.routes[(method.upper(), path.rstrip("/") or "/")] = handler

    def _handler_class(self) -> type:
        return type(
            "BoundServerHandler",
            (ServerHandler,),
            {
                "policy": self.policy,
                "trust_proxy": self.config.trust_proxy,
                "routes": MappingProxyType(dict(self.routes)),
            },
        )

    def _secure_context(self) -> Optional[ssl.SSLContext]:
        """Ensure certificate material and build the TLS context.

        Returns None when HTTPS is disabled, or when it failed and plaintext
        fallback is allowed.

        Raises:
            RuntimeError: If HTTPS failed and plaintext fallback is disabled
        """
        if not self.config.enable_https:
            return None

        manager = self.cert_manager or CertificateManager(
            self.config.cert_dir, domain_policy(self.config)
        )
        try:
            material = manager.ensure()
            try:
                context = material.ssl_context()
            except ssl.SSLError as e:
                # Existing files are reused without validation; replace them once
                logger.warning("TLS rejected certificate material: %s", e)
                material = manager.renew()
                context = material.ssl_context()
        except (CertificateGenerationError, ssl.SSLError, OSError) as e:
            logger.error("Failed to load TLS certificate from %s: %s", manager.cert_dir, e)
            if not self.config.plaintext_fallback:
                raise RuntimeError(f"TLS init failed: {e}") from e
            logger.error(
                "HTTPS UNAVAILABLE: falling back to PLAINTEXT HTTP on port %d "
                "(plaintext_fallback is enabled)",
                self.config.port,
            )
            return None

        self.material = material
        return context

    def start(self):
        """Bind the listener(s).

        Raises:
            RuntimeError: If TLS fails with fallback disabled
            OSError: If a port cannot be bound
        """
        context = self._secure_context()
        handler = self._handler_class()

        if context is None:
            self.server = ThreadingHTTPServer((self.config.bind, self.config.port), handler)
        else:
            self.server = ThreadingHTTPServer((self.config.bind, self.config.https_port), handler)
            self.server.socket = context.wrap_socket(self.server.socket, server_side=True)

            if self.config.port != self.config.https_port:
                redirect = type("BoundRedirectHandler", (RedirectHandler,), {"https_port": self.port})
                try:
                    self.redirect_server = ThreadingHTTPServer(
                        (self.config.bind, self.config.port), redirect
                    )
                except OSError:
                    self.shutdown()
                    raise
                logger.info(
                    "HTTP redirect server on http://%s:%d (to HTTPS)",
                    self.config.bind, self.redirect_server.server_address[1],
                )

        logger.info("Server starting on %s://%s:%d", self.scheme, self.config.bind, self.port)
        if self.material:
            logger.info("Certificate fingerprint (SHA256): %s", self.material.fingerprint)

        self._setup_signal_handlers()

    def serve_forever(self):
        """Start serving requests."""
        if not self.server:
            raise RuntimeError("Server not started")

        if self.redirect_server:
            self._redirect_thread = threading.Thread(
                target=self.redirect_server.serve_forever, daemon=True
            )
            self._redirect_thread.start()

        self._serving = True
        try:
            self.server.serve_forever()
        except KeyboardInterrupt:
            logger.info("Shutdown requested")
        finally:
            self.shutdown()

    def shutdown(self):
        """Shutdown the listener(s). Safe to call more than once."""
        serving, self._serving = self._serving, False

        redirect, self.redirect_server = self.redirect_server, None
        if redirect:
            if self._redirect_thread:
                redirect.shutdown()
                self._redirect_thread = None
            redirect.server_close()

        server, self.server = self.server, None
        if server:
            logger.info("Shutting down server")
            # BaseServer.shutdown() blocks unless serve_forever() is running
            if serving:
                server.shutdown()
            server.server_close()

    def _setup_signal_handlers(self):
        """Setup SIGTERM for graceful shutdown (main thread only)."""
        if threading.current_thread() is not threading.main_thread():
            return

        def handle_sigterm(signum, frame):
            """Handle SIGTERM for graceful shutdown."""
            logger.info("Received SIGTERM")
            # serve_forever's finally block performs the shutdown
            sys.exit(0)

        signal.signal(signal.SIGTERM, handle_sigterm)


def create_server(
    config: Optional[GateConfig] = None,
    policy: Optional[AccessPolicy] = None,
    cert_manager: Optional[CertificateManager] = None,
) -> Server:
    """Create a server instance (not yet started)."""
    return Server(config=config, policy=policy, cert_manager=cert_manager)
