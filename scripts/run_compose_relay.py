#!/usr/bin/env python3
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

print(
    f"[relay] binary={os.environ.get('RELAY_BROWSER_BINARY', 'auto')} | "
    f"profile={os.environ.get('RELAY_BROWSER_PROFILE', '~/.compose-relay/browser-profile')} | "
    f"port={os.environ.get('RELAY_CDP_PORT', '9222')} | "
    f"hosts={os.environ.get('RELAY_DESTINATION_HOSTS', 'x.com,twitter.com')}",
    file=sys.stderr,
)

from relay_servers.compose_relay.main import main  # noqa: E402

if __name__ == "__main__":
    sys.exit(main())
