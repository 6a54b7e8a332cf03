"""
Key management helpers for operators.

Run via: python -m tfregistry.cli.keys <command>

Commands:
  generate-key    Print a new base64 32-byte key for TFREGISTRY_ENCRYPTION__KEY
  generate-salt   Print a new base64 salt for TFREGISTRY_ENCRYPTION__SALT
  seal            Read a secret from stdin and print it sealed with the
                  configured cipher (for scm_providers.client_secret_encrypted)
"""

import argparse
import logging
import sys

from tfregistry.config import settings
from tfregistry.services.encryption_service import (
    TokenCipherError,
    build_token_cipher,
    generate_key,
    generate_salt,
)

# Use stdlib logging: the CLI prints results, not structured events
logger = logging.getLogger("tfregistry.keys")
logging.basicConfig(level=logging.INFO, format="%(message)s")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="tfregistry-keys")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("generate-key")
    salt = sub.add_parser("generate-salt")
    salt.add_argument("--length", type=int, default=16)
    sub.add_parser("seal")
    args = parser.parse_args(argv)

    if args.command == "generate-key":
        print(generate_key())
        return 0
    if args.command == "generate-salt":
        if args.length < 16:
            logger.error("Salt must be at least 16 bytes")
            return 1
        print(generate_salt(args.length))
        return 0

    try:
        cipher = build_token_cipher(settings.encryption)
    except TokenCipherError as e:
        logger.error("Encryption is not configured: %s", e)
        return 1
    secret = sys.stdin.read().strip()
    if not secret:
        logger.error("Nothing to seal on stdin")
        return 1
    print(cipher.seal(secret))
    return 0


if __name__ == "__main__":
    sys.exit(main())
