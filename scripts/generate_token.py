#!/usr/bin/env python3
"""
Generate random secrets for the OSIRIS environment.

Usage:
    python scripts/generate_token.py              # One 32-byte token
    python scripts/generate_token.py 48           # One 48-byte token
    python scripts/generate_token.py --env        # Every bearer/webhook secret, .env format

Example output (--env):
    ADMIN_TOKEN=Yx8kL2mN9pQ4rS6tU0vW3xZ5aB7cD1eF...
    CRON_SECRET=...
    METRICS_TOKEN=...
    TELEGRAM_WEBHOOK_SECRET=...
"""
import secrets
import sys

ENV_SECRETS = (
    "ADMIN_TOKEN",
    "CRON_SECRET",
    "METRICS_TOKEN",
    # Telegram accepts only A-Z, a-z, 0-9, "_" and "-" (token_urlsafe output)
    "TELEGRAM_WEBHOOK_SECRET",
)


def generate_token(length: int = 32) -> str:
    return secrets.token_urlsafe(length)


def main():
    length = 32
    env_format = False

    for arg in sys.argv[1:]:
        if arg == "--env":
            env_format = True
        elif arg.isdigit():
            length = max(int(arg), 32)
        elif arg in ("--help", "-h"):
            print(__doc__)
            return

    if not env_format:
        print(generate_token(length))
        return

    for name in ENV_SECRETS:
        print(f"{name}={generate_token(length)}")


if __name__ == "__main__":
    main()
