#!/usr/bin/env python3
"""
Generate the scheduler secret for the sweep endpoint.

Usage:
    python scripts/generate_token.py              # Generate default 32-byte secret
    python scripts/generate_token.py 48           # Generate 48-byte secret
    python scripts/generate_token.py --env        # Output as .env format

The scheduler then calls:
    curl -H "Authorization: Bearer $CRON_SECRET" https://<host>/cron/process-bulk-jobs
"""
import secrets
import sys

from bulksend.transport.security import validate_token_strength


def generate_token(length: int = 32) -> str:
    """Generate a URL-safe random token that passes the startup strength check."""
    while True:
        token = secrets.token_urlsafe(length)
        if not validate_token_strength(token, "CRON_SECRET"):
            return token


def main():
    length = 32
    env_format = False

    for arg in sys.argv[1:]:
        if arg == "--env":
            env_format = True
        elif arg.isdigit():
            length = int(arg)
        elif arg in ("--help", "-h"):
            print(__doc__)
            return

    token = generate_token(length)
    print(f"CRON_SECRET={token}" if env_format else token)


if __name__ == "__main__":
    main()
