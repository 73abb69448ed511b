# src/lightning_out_host/setup_env.py
"""Writes a starter .env with a freshly generated SESSION_SECRET."""

import secrets
import sys
import typing
from datetime import datetime, timezone
from pathlib import Path

from .config import ENV_FILE_PATH

ENV_TEMPLATE = """\
# Salesforce Lightning Out Application Configuration
# Generated on {generated_at}

# Required: Salesforce Connected App credentials
SF_CLIENT_ID=
SF_CLIENT_SECRET=

# Required: Your application host URL (must be HTTPS in production)
APP_URL=http://localhost:5000

# Required: Session secret for signing the session cookie (auto-generated)
SESSION_SECRET={session_secret}

# Optional: Salesforce login URL (defaults to https://login.salesforce.com)
SF_LOGIN_URL=https://login.salesforce.com

# Optional: Port (defaults to 5000)
PORT=5000
"""

NEXT_STEPS = """\
Next steps:
1. Edit {path} and add your Salesforce credentials:
   - SF_CLIENT_ID (from your Salesforce Connected App)
   - SF_CLIENT_SECRET (from your Salesforce Connected App)
2. If deploying to a different host, update APP_URL
   (the Connected App callback must be APP_URL/oauth/callback)
3. Run: lightning-out-host
"""


def write_env_file(path: Path = ENV_FILE_PATH) -> Path:
    """Creates the .env file. Never overwrites an existing one."""
    content = ENV_TEMPLATE.format(
        generated_at=datetime.now(timezone.utc).isoformat(),
        session_secret=secrets.token_hex(32),
    )
    with open(path, "x", encoding="utf-8") as f:
        f.write(content)
    return path


def main(argv: typing.Optional[typing.List[str]] = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    path = Path(argv[0]) if argv else ENV_FILE_PATH
    print("Salesforce Lightning Out Application Setup\n")
    try:
        write_env_file(path)
    except FileExistsError:
        print(f"{path} already exists; leaving it untouched.", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"Error creating {path}: {e}", file=sys.stderr)
        return 1
    print(f"Created {path} with a secure session secret\n")
    print(NEXT_STEPS.format(path=path))
    return 0


if __name__ == "__main__":
    sys.exit(main())
