"""
Broker OAuth callback receiver.

This module terminates the OAuth redirect sent by the Dhan brokerage API
after user consent. It validates the delivered ``tokenId``, acknowledges
receipt with a JSON body and records one audit entry per callback. The
token value itself is never logged or echoed.

Public API:
    CallbackConfig: Receiver configuration management
    CallbackHandler: Transport-neutral callback pipeline
    CallbackServer: Flask hosting adapter
    InboundRequest, CallbackResponse: Handler input and output
    Accepted, Rejected, ServerFault: Callback outcomes
    AuditRecord: Audit trail entry
    LoggingAuditSink, JsonLinesAuditSink, MemoryAuditSink,
    CompositeAuditSink, BackgroundAuditSink: Audit sinks

Exceptions:
    BrokerCallbackError: Base exception
    ConfigurationError: Configuration error
    CallbackRejectedError: Client-input error
    MethodNotAllowedError: Non-GET callback
    MissingTokenError: Missing or empty tokenId
    InternalFaultError: Unexpected internal failure
    AuditEmissionError: Audit sink failure
"""

from .audit import (
    BackgroundAuditSink,
    CompositeAuditSink,
    JsonLinesAuditSink,
    LoggingAuditSink,
    MemoryAuditSink,
)
from .config import CallbackConfig
from .exceptions import (
    AuditEmissionError,
    BrokerCallbackError,
    CallbackRejectedError,
    ConfigurationError,
    InternalFaultError,
    MethodNotAllowedError,
    MissingTokenError,
)
from .handler import CallbackHandler
from .models import (
    Accepted,
    AuditRecord,
    CallbackResponse,
    InboundRequest,
    Rejected,
    ServerFault,
    TokenIdentifier,
)
from .server import CallbackServer

__all__ = [
    # Configuration
    "CallbackConfig",
    # Handler
    "CallbackHandler",
    "CallbackServer",
    # Models
    "InboundRequest",
    "CallbackResponse",
    "TokenIdentifier",
    "Accepted",
    "Rejected",
    "ServerFault",
    "AuditRecord",
    # Audit
    "LoggingAuditSink",
    "JsonLinesAuditSink",
    "MemoryAuditSink",
    "CompositeAuditSink",
    "BackgroundAuditSink",
    # Exceptions
    "BrokerCallbackError",
    "ConfigurationError",
    "CallbackRejectedError",
    "MethodNotAllowedError",
    "MissingTokenError",
    "InternalFaultError",
    "AuditEmissionError",
]
