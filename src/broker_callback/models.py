"""
Data model for the broker OAuth callback receiver.

Requests, outcomes and audit records are frozen dataclasses. None of them
ever hold the raw token value except TokenIdentifier, whose string forms
are redacted.
"""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Union

ACCEPTED = "accepted"
REJECTED = "rejected"
SERVER_FAULT = "server_fault"


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def isoformat_utc(moment: datetime) -> str:
    """
    Format a datetime as ISO 8601 in UTC with a trailing Z.

    Naive datetimes are assumed to already be UTC.
    """
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class InboundRequest:
    """
    Transport-neutral view of one inbound callback request.

    Attributes:
        method: HTTP method, upper case
        query_parameters: Query string parameters (first value per key)
        client_address: Caller's network address
    """

    method: str
    query_parameters: Mapping[str, str] = field(default_factory=dict)
    client_address: str = ""

    def __post_init__(self) -> None:
        # Freeze the mapping so the handler cannot mutate caller state
        object.__setattr__(
            self, "query_parameters", MappingProxyType(dict(self.query_parameters))
        )


class TokenIdentifier:
    """
    Opaque bearer reference delivered by the broker.

    The value is only reachable through ``reveal()``; ``str`` and ``repr``
    never show it so it cannot leak through formatting or logging.
    """

    __slots__ = ("_value",)

    def __init__(self, value: str):
        self._value = value

    def reveal(self) -> str:
        return self._value

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TokenIdentifier):
            return NotImplemented
        return self._value == other._value

    def __hash__(self) -> int:
        return hash(self._value)

    def __repr__(self) -> str:
        return "TokenIdentifier(<redacted>)"

    __str__ = __repr__


@dataclass(frozen=True)
class Accepted:
    """Callback accepted; token acknowledged."""

    timestamp: datetime
    kind: str = field(default=ACCEPTED, init=False)
    http_status: int = field(default=200, init=False)


@dataclass(frozen=True)
class Rejected:
    """Callback rejected because of client input."""

    reason: str
    http_status: int
    kind: str = field(default=REJECTED, init=False)


@dataclass(frozen=True)
class ServerFault:
    """Callback failed because of an internal fault."""

    http_status: int = 500
    detail: Optional[str] = None
    kind: str = field(default=SERVER_FAULT, init=False)


CallbackOutcome = Union[Accepted, Rejected, ServerFault]


@dataclass(frozen=True)
class AuditRecord:
    """
    Append-only audit entry for one handled callback.

    Attributes:
        outcome_kind: One of accepted, rejected, server_fault
        timestamp_utc: ISO 8601 UTC time the outcome was decided
        client_address: Caller's network address
        token_present: Whether a non-empty tokenId was delivered
        reason: Rejection reason (rejected outcomes only)
        fault_detail: Internal fault description (server_fault outcomes only)
    """

    outcome_kind: str
    timestamp_utc: str
    client_address: str
    token_present: bool
    reason: Optional[str] = None
    fault_detail: Optional[str] = None

    @classmethod
    def from_outcome(
        cls,
        outcome: CallbackOutcome,
        request: InboundRequest,
        token_present: bool,
        recorded_at: datetime,
    ) -> "AuditRecord":
        return cls(
            outcome_kind=outcome.kind,
            timestamp_utc=isoformat_utc(recorded_at),
            client_address=request.client_address,
            token_present=token_present,
            reason=getattr(outcome, "reason", None),
            fault_detail=getattr(outcome, "detail", None),
        )

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert to dictionary for JSON serialization.

        Returns:
            Dictionary representation of the audit record
        """
        return asdict(self)


@dataclass(frozen=True)
class CallbackResponse:
    """
    HTTP response produced by the handler.

    Attributes:
        status: HTTP status code
        headers: Response headers
        body: JSON body, or None for an empty body
    """

    status: int
    headers: Mapping[str, str]
    body: Optional[Dict[str, Any]] = None

    def to_json(self) -> str:
        """Serialized body; empty string when there is no body."""
        if self.body is None:
            return ""
        return json.dumps(self.body)
