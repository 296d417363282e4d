"""
Callback handler for broker OAuth redirects.

This module terminates the OAuth redirect from the broker (Dhan). It
validates the delivered token identifier and acknowledges receipt with a
JSON body. It does NOT exchange the token for a session; that is left to
an optional downstream collaborator invoked only after acceptance.

The handler is a pure function of its input plus the current time. It
holds no per-request state and is safe to call from many threads.
"""

import logging
from datetime import datetime
from typing import Callable, Dict, Optional, Tuple

from .audit import AuditSink, LoggingAuditSink
from .config import CallbackConfig
from .exceptions import (
    CallbackRejectedError,
    InternalFaultError,
    MethodNotAllowedError,
    MissingTokenError,
)
from .models import (
    Accepted,
    AuditRecord,
    CallbackOutcome,
    CallbackResponse,
    InboundRequest,
    Rejected,
    ServerFault,
    TokenIdentifier,
    isoformat_utc,
    utc_now,
)

logger = logging.getLogger(__name__)

SUCCESS_MESSAGE = "OAuth callback received successfully"
MAX_LOGGED_METHOD = 32

_REJECTION_MESSAGES = {
    error.reason: error.message for error in (MethodNotAllowedError, MissingTokenError)
}

TokenConsumer = Callable[[TokenIdentifier], None]


class CallbackHandler:
    """
    Validates and acknowledges broker OAuth callbacks.

    Pipeline per request:
    1. OPTIONS -> 204 preflight, no audit record
    2. Non-GET -> 405 method_not_allowed
    3. Extract tokenId from the query string
    4. Missing or empty tokenId -> 400 missing_token
    5. Otherwise -> 200 acknowledgement
    6. Any unexpected exception -> opaque 500

    Every non-preflight request produces exactly one AuditRecord, which is
    handed to the audit sink. A failing sink is logged and never changes
    the response.

    Example:
        handler = CallbackHandler()
        response, record = handler.handle_callback(
            InboundRequest("GET", {"tokenId": "abc123"}, "203.0.113.7")
        )
    """

    def __init__(
        self,
        config: Optional[CallbackConfig] = None,
        audit_sink: Optional[AuditSink] = None,
        on_accepted: Optional[TokenConsumer] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize callback handler.

        Args:
            config: Receiver configuration (defaults used if not provided)
            audit_sink: Destination for audit records (logs if not provided)
            on_accepted: Collaborator receiving the token after acceptance
            clock: Source of the current UTC time
        """
        self.config = config or CallbackConfig()
        self.audit_sink = audit_sink or LoggingAuditSink()
        self.on_accepted = on_accepted
        self.clock = clock or utc_now

    def handle_callback(
        self, request: InboundRequest
    ) -> Tuple[CallbackResponse, Optional[AuditRecord]]:
        """
        Handle one inbound callback request.

        Args:
            request: Transport-neutral request

        Returns:
            Tuple of (response, audit record). The audit record is None
            only for CORS preflight requests.
        """
        if request.method == "OPTIONS":
            return CallbackResponse(status=204, headers=self._headers()), None

        token = None
        try:
            token = self._validate(request)
            outcome: CallbackOutcome = Accepted(timestamp=self.clock())
        except CallbackRejectedError as e:
            outcome = Rejected(reason=e.reason, http_status=e.http_status)
        except Exception as e:
            outcome = self._fault_outcome(request, e)

        token_present = token is not None or bool(self._raw_token(request))
        response = self._build_response(outcome)
        record = self._audit(outcome, request, token_present)

        if isinstance(outcome, Accepted) and token is not None:
            self._notify_accepted(token)

        return response, record

    def handle_fault(
        self, request: InboundRequest, error: Exception
    ) -> Tuple[CallbackResponse, AuditRecord]:
        """
        Record a fault raised outside the pipeline, e.g. by a hosting adapter.

        Args:
            request: Best-effort view of the request that faulted
            error: The exception raised

        Returns:
            Tuple of (opaque 500 response, audit record)
        """
        outcome = self._fault_outcome(request, error)
        response = self._build_response(outcome)
        record = self._audit(outcome, request, bool(self._raw_token(request)))
        return response, record

    def _fault_outcome(self, request: InboundRequest, error: Exception) -> ServerFault:
        detail = self._redact(f"{type(error).__name__}: {error}", request)
        logger.error(f"Error processing broker callback: {detail}")
        return ServerFault(detail=detail)

    def _validate(self, request: InboundRequest) -> TokenIdentifier:
        """
        Apply method and parameter checks.

        Raises:
            MethodNotAllowedError: If method is not GET
            MissingTokenError: If tokenId is absent or empty
        """
        if request.method != "GET":
            # Caller-controlled; bounded and escaped
            logger.warning(
                f"Invalid request method: {str(request.method)[:MAX_LOGGED_METHOD]!r}"
            )
            raise MethodNotAllowedError()

        value = request.query_parameters.get(self.config.token_parameter)
        if not value:
            logger.warning("Missing tokenId in request")
            raise MissingTokenError()

        return TokenIdentifier(value)

    def _raw_token(self, request: InboundRequest) -> Optional[str]:
        # Query parameters may be the very thing that faulted
        try:
            value = request.query_parameters.get(self.config.token_parameter)
        except Exception:
            return None
        return value if isinstance(value, str) else None

    def _redact(self, text: str, request: InboundRequest) -> str:
        """Strip the raw token value from fault text."""
        value = self._raw_token(request)
        if value:
            text = text.replace(value, "<redacted>")
        return text

    def _headers(self) -> Dict[str, str]:
        headers = dict(self.config.cors_headers)
        headers["Content-Type"] = "application/json"
        return headers

    def _build_response(self, outcome: CallbackOutcome) -> CallbackResponse:
        if isinstance(outcome, Accepted):
            body = {
                "success": True,
                "message": SUCCESS_MESSAGE,
                "timestamp": isoformat_utc(outcome.timestamp),
            }
        elif isinstance(outcome, Rejected):
            body = {"success": False, "error": _REJECTION_MESSAGES[outcome.reason]}
        else:
            body = {"success": False, "error": InternalFaultError.message}

        return CallbackResponse(
            status=outcome.http_status, headers=self._headers(), body=body
        )

    def _audit(
        self, outcome: CallbackOutcome, request: InboundRequest, token_present: bool
    ) -> AuditRecord:
        """Create the audit record and hand it to the sink."""
        recorded_at = outcome.timestamp if isinstance(outcome, Accepted) else None
        if recorded_at is None:
            try:
                recorded_at = self.clock()
            except Exception:
                recorded_at = utc_now()

        record = AuditRecord.from_outcome(outcome, request, token_present, recorded_at)

        try:
            self.audit_sink.emit(record)
        except Exception as e:
            logger.error(f"Failed to emit audit record ({record.outcome_kind}): {e}")

        return record

    def _notify_accepted(self, token: TokenIdentifier) -> None:
        if self.on_accepted is None:
            return
        try:
            self.on_accepted(token)
        except Exception as e:
            logger.error(f"Downstream token consumer failed: {type(e).__name__}")
