"""
Configuration for the broker OAuth callback receiver.

Configuration can be loaded from environment variables or provided
programmatically. Every field has a default, so the receiver runs with
no environment at all.
"""

import os
from dataclasses import dataclass
from typing import Optional

from .exceptions import ConfigurationError

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


def _parse_bool(name: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"{name} must be a boolean (true/false), got {value!r}")


@dataclass
class CallbackConfig:
    """
    Configuration for the callback receiver.

    Attributes:
        callback_path: URL path the broker redirects to (default: /callback)
        host: Interface to bind the HTTP listener to (default: 0.0.0.0)
        port: Port for the HTTP listener (default: 8080)
        allow_origin: Value of Access-Control-Allow-Origin (default: *)
        token_parameter: Query parameter carrying the token identifier
        audit_log_file: JSON Lines file for audit records (None = log only)
        trust_proxy_headers: Take client address from X-Forwarded-For
        ssl_cert_path: TLS certificate path (None = plain HTTP)
        ssl_key_path: TLS private key path (None = plain HTTP)
    """

    callback_path: str = "/callback"
    host: str = "0.0.0.0"
    port: int = 8080
    allow_origin: str = "*"
    token_parameter: str = "tokenId"

    audit_log_file: Optional[str] = None
    trust_proxy_headers: bool = False

    ssl_cert_path: Optional[str] = None
    ssl_key_path: Optional[str] = None

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        if not self.callback_path or not self.callback_path.startswith("/"):
            raise ConfigurationError(
                f"callback_path must start with '/', got {self.callback_path!r}"
            )

        if not isinstance(self.port, int) or not (1 <= self.port <= 65535):
            raise ConfigurationError(
                f"port must be between 1 and 65535, got {self.port}"
            )

        if not self.allow_origin:
            raise ConfigurationError("allow_origin cannot be empty")

        if not self.token_parameter:
            raise ConfigurationError("token_parameter cannot be empty")

        if bool(self.ssl_cert_path) != bool(self.ssl_key_path):
            raise ConfigurationError(
                "ssl_cert_path and ssl_key_path must be set together"
            )

    @property
    def ssl_enabled(self) -> bool:
        return bool(self.ssl_cert_path and self.ssl_key_path)

    @property
    def cors_headers(self) -> dict:
        """CORS headers attached to every response."""
        return {
            "Access-Control-Allow-Origin": self.allow_origin,
            "Access-Control-Allow-Methods": "GET",
            "Access-Control-Allow-Headers": "Content-Type",
        }

    @classmethod
    def from_env(cls) -> "CallbackConfig":
        """
        Load configuration from environment variables.

        Optional environment variables:
            DHAN_CALLBACK_PATH: Callback URL path (default: /callback)
            DHAN_CALLBACK_HOST: Bind address (default: 0.0.0.0)
            DHAN_CALLBACK_PORT: Listener port (default: 8080)
            DHAN_CALLBACK_ALLOW_ORIGIN: CORS allow-origin value (default: *)
            DHAN_CALLBACK_AUDIT_FILE: JSON Lines audit file (default: unset)
            DHAN_CALLBACK_TRUST_PROXY: Honour X-Forwarded-For (default: false)
            DHAN_CALLBACK_SSL_CERT: TLS certificate path (default: unset)
            DHAN_CALLBACK_SSL_KEY: TLS private key path (default: unset)

        Returns:
            CallbackConfig instance

        Raises:
            ConfigurationError: If a variable holds an invalid value
        """
        port_value = os.environ.get("DHAN_CALLBACK_PORT", "8080")
        try:
            port = int(port_value)
        except ValueError:
            raise ConfigurationError(
                f"DHAN_CALLBACK_PORT must be an integer, got {port_value!r}"
            ) from None

        return cls(
            callback_path=os.environ.get("DHAN_CALLBACK_PATH", "/callback"),
            host=os.environ.get("DHAN_CALLBACK_HOST", "0.0.0.0"),
            port=port,
            allow_origin=os.environ.get("DHAN_CALLBACK_ALLOW_ORIGIN", "*"),
            audit_log_file=os.environ.get("DHAN_CALLBACK_AUDIT_FILE") or None,
            trust_proxy_headers=_parse_bool(
                "DHAN_CALLBACK_TRUST_PROXY",
                os.environ.get("DHAN_CALLBACK_TRUST_PROXY", "false"),
            ),
            ssl_cert_path=os.environ.get("DHAN_CALLBACK_SSL_CERT") or None,
            ssl_key_path=os.environ.get("DHAN_CALLBACK_SSL_KEY") or None,
        )
