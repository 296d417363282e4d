"""
Command-line entry point for the broker OAuth callback server.

Configuration comes from environment variables (see CallbackConfig.from_env);
command-line flags override individual values.
"""

import argparse
import logging
from dataclasses import replace
from typing import List, Optional

from .config import CallbackConfig
from .exceptions import ConfigurationError
from .server import CallbackServer

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        description="Dhan OAuth callback receiver",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment variables:
  DHAN_CALLBACK_PATH, DHAN_CALLBACK_HOST, DHAN_CALLBACK_PORT,
  DHAN_CALLBACK_ALLOW_ORIGIN, DHAN_CALLBACK_AUDIT_FILE,
  DHAN_CALLBACK_TRUST_PROXY, DHAN_CALLBACK_SSL_CERT, DHAN_CALLBACK_SSL_KEY

Examples:
  # Serve on the defaults (0.0.0.0:8080/callback)
  python scripts/run_callback_server.py

  # Keep a JSON Lines audit trail
  python scripts/run_callback_server.py --audit-file /var/log/dhan/audit.jsonl
        """,
    )
    parser.add_argument("--host", help="Interface to bind to")
    parser.add_argument("--port", type=int, help="Port to listen on")
    parser.add_argument("--path", dest="callback_path", help="Callback URL path")
    parser.add_argument(
        "--audit-file", dest="audit_log_file", help="Append audit records to this file"
    )
    parser.add_argument(
        "--trust-proxy",
        dest="trust_proxy_headers",
        action="store_true",
        default=None,
        help="Take the client address from X-Forwarded-For",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging"
    )
    return parser


def load_config(args: argparse.Namespace) -> CallbackConfig:
    """
    Merge environment configuration with command-line overrides.

    Raises:
        ConfigurationError: If the merged configuration is invalid
    """
    config = CallbackConfig.from_env()
    overrides = {
        name: getattr(args, name)
        for name in ("host", "port", "callback_path", "audit_log_file", "trust_proxy_headers")
        if getattr(args, name) is not None
    }
    # replace() re-runs __post_init__ validation
    return replace(config, **overrides)


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        config = load_config(args)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    try:
        CallbackServer(config).run()
    except OSError as e:
        logger.error(f"Could not start callback server: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Callback server stopped")

    return 0
