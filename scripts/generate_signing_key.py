#!/usr/bin/env python3
"""
Generate secrets for the dispatch service configuration.

Usage:
    python scripts/generate_signing_key.py              # 32-byte signing key
    python scripts/generate_signing_key.py 48           # 48-byte signing key
    python scripts/generate_signing_key.py --env        # Output as .env format

Example output:
    CREDENTIAL_SIGNING_KEY=Yx8kL2mN9pQ4rS6tU0vW3xZ5aB7cD1eF...
    METRICS_TOKEN=fG2hJ4kL6mN8pQ0rS2tU4vW6xZ8aB0cD...
"""
import secrets
import sys


def generate_key(length: int = 32) -> str:
    """Generate a URL-safe random key."""
    return secrets.token_urlsafe(length)


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

    if env_format:
        print(f"CREDENTIAL_SIGNING_KEY={generate_key(length)}")
        print(f"METRICS_TOKEN={generate_key(length)}")
    else:
        print(generate_key(length))


if __name__ == "__main__":
    main()
