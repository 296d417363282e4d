#!/usr/bin/env python3
"""
Dhan OAuth Callback Server

Receives the OAuth redirect sent by Dhan after the user grants consent,
validates the tokenId parameter and acknowledges it with JSON.

Usage:
    python scripts/run_callback_server.py
    python scripts/run_callback_server.py --port 9000 --audit-file audit.jsonl

Register the resulting URL (for example https://example.com/callback) as
the redirect URL in the Dhan developer console.
"""

import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from broker_callback.cli import main

if __name__ == "__main__":
    sys.exit(main())
