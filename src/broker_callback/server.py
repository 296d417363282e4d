"""
Flask hosting adapter for the broker OAuth callback handler.

This module binds CallbackHandler to an HTTP route. It translates each
Flask request into an InboundRequest and each CallbackResponse back into
a Flask response. All callback decisions (including 405) are made by the
handler: the route is registered for the standard HTTP methods, and any
other verb rejected during routing is passed back to the handler through
a 405 error handler.

The listener can run over HTTPS when certificate paths are configured,
which brokers generally require for redirect URLs.
"""

import logging
import ssl
from pathlib import Path
from typing import Optional

from flask import Flask, Response, request
from werkzeug.exceptions import HTTPException

from .audit import (
    AuditSink,
    BackgroundAuditSink,
    CompositeAuditSink,
    JsonLinesAuditSink,
    LoggingAuditSink,
)
from .config import CallbackConfig
from .handler import CallbackHandler, TokenConsumer
from .models import CallbackResponse, InboundRequest, isoformat_utc, utc_now

logger = logging.getLogger(__name__)

ROUTE_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"]


def build_audit_sink(config: CallbackConfig) -> AuditSink:
    """
    Build the audit sink described by the configuration.

    Records are always logged. When an audit file is configured they are
    also appended to it from a background worker.

    Args:
        config: Receiver configuration

    Returns:
        Audit sink for the handler
    """
    if not config.audit_log_file:
        return LoggingAuditSink()

    logger.info(f"Writing audit trail to {config.audit_log_file}")
    return BackgroundAuditSink(
        CompositeAuditSink(LoggingAuditSink(), JsonLinesAuditSink(config.audit_log_file))
    )


class CallbackServer:
    """
    HTTP server exposing the broker OAuth callback route.

    Routes:
    - <callback_path>: every method, decided by CallbackHandler
    - /health: liveness check

    Example:
        server = CallbackServer(CallbackConfig.from_env())
        server.run()
    """

    def __init__(
        self,
        config: Optional[CallbackConfig] = None,
        handler: Optional[CallbackHandler] = None,
        on_accepted: Optional[TokenConsumer] = None,
    ):
        """
        Initialize callback server.

        Args:
            config: Receiver configuration (defaults used if not provided)
            handler: Pre-built handler (built from config if not provided)
            on_accepted: Collaborator receiving accepted tokens
        """
        self.config = config or CallbackConfig()
        self.handler = handler or CallbackHandler(
            self.config,
            audit_sink=build_audit_sink(self.config),
            on_accepted=on_accepted,
        )
        self.app = Flask(__name__)
        self.app.logger.setLevel(logging.WARNING)  # Suppress Flask logs

        # Register routes
        self.app.add_url_rule(
            self.config.callback_path,
            "broker_callback",
            self._handle_callback,
            methods=ROUTE_METHODS,
            provide_automatic_options=False,
        )

        self.app.add_url_rule(
            "/health", "health", self._handle_health, methods=["GET"]
        )

        # Methods outside ROUTE_METHODS fail in routing; hand them to the handler too
        self.app.register_error_handler(405, self._handle_method_not_allowed)

    def _client_address(self) -> str:
        if self.config.trust_proxy_headers:
            forwarded = request.headers.get("X-Forwarded-For", "")
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        return request.remote_addr or ""

    def _inbound_request(self) -> InboundRequest:
        # MultiDict.to_dict(flat=True) keeps the first value per key
        return InboundRequest(
            method=request.method.upper(),
            query_parameters=request.args.to_dict(flat=True),
            client_address=self._client_address(),
        )

    def _fallback_request(self) -> InboundRequest:
        """Best-effort request view used when conversion itself failed."""
        try:
            params = request.args.to_dict(flat=True)
        except Exception:
            params = {}
        return InboundRequest(
            method=str(request.method).upper(),
            query_parameters=params,
            client_address=request.environ.get("REMOTE_ADDR") or "",
        )

    def _handle_callback(self) -> Response:
        """Handle OAuth callback from the broker."""
        try:
            inbound = self._inbound_request()
        except Exception as e:
            response, _ = self.handler.handle_fault(self._fallback_request(), e)
            return self.to_flask_response(response)

        response, _ = self.handler.handle_callback(inbound)
        return self.to_flask_response(response)

    def _handle_method_not_allowed(self, error: HTTPException):
        """
        Route methods Werkzeug rejected during routing back to the handler.

        Only the callback path is taken over; other routes keep the
        default 405 page.
        """
        if request.path != self.config.callback_path:
            return error
        return self._handle_callback()

    def _handle_health(self) -> Response:
        """Status endpoint for load balancers and debugging."""
        return Response(
            f'{{"status": "healthy", "timestamp": "{isoformat_utc(utc_now())}"}}',
            status=200,
            content_type="application/json",
        )

    @staticmethod
    def to_flask_response(response: CallbackResponse) -> Response:
        """
        Convert a handler response into a Flask response.

        Args:
            response: Response produced by CallbackHandler

        Returns:
            Flask Response with identical status, headers and body
        """
        flask_response = Response(
            response.to_json(),
            status=response.status,
            content_type=response.headers.get("Content-Type", "application/json"),
        )
        for name, value in response.headers.items():
            if name != "Content-Type":
                flask_response.headers[name] = value
        return flask_response

    def _ssl_context(self) -> Optional[ssl.SSLContext]:
        """
        Build the TLS context when certificates are configured.

        Raises:
            FileNotFoundError: If a configured certificate file is missing
        """
        if not self.config.ssl_enabled:
            return None

        cert_path = Path(self.config.ssl_cert_path)
        key_path = Path(self.config.ssl_key_path)

        if not cert_path.exists():
            raise FileNotFoundError(f"SSL certificate not found at {cert_path}")

        if not key_path.exists():
            raise FileNotFoundError(f"SSL key not found at {key_path}")

        ssl_context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        ssl_context.load_cert_chain(str(cert_path), str(key_path))
        logger.info(f"Using SSL certificate: {cert_path}")
        return ssl_context

    def run(self) -> None:
        """
        Serve callbacks until interrupted.

        Raises:
            FileNotFoundError: If configured SSL files are missing
            PermissionError: If the port cannot be bound
        """
        ssl_context = self._ssl_context()
        scheme = "https" if ssl_context else "http"
        logger.info(
            f"Starting broker callback server on {scheme}://{self.config.host}:"
            f"{self.config.port}{self.config.callback_path}"
        )

        try:
            self.app.run(
                host=self.config.host,
                port=self.config.port,
                ssl_context=ssl_context,
                debug=False,
                use_reloader=False,
                threaded=True,
            )
        finally:
            self.close()

    def close(self) -> None:
        """Flush and stop a background audit sink, if one is in use."""
        sink = self.handler.audit_sink
        if isinstance(sink, BackgroundAuditSink):
            sink.close()
            logger.info("Audit sink closed")
