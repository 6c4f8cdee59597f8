"""Scope token introspection CLI.

Usage:
    deploy-driver scope inspect <token> [--verify]
"""

import argparse
import datetime

from config import ConfigError, load_config
from credentials import KNOWN_CLAIMS, ScopeDenied, decode_scope_claims, verify_scope_token


def _format_ts(value) -> str:
    ts = datetime.datetime.fromtimestamp(value, tz=datetime.timezone.utc)
    return f"{value} ({ts.isoformat()})"


def inspect_token(token: str, base_credential: str = None) -> int:
    """Decode and optionally verify a scope token.

    Args:
        token: The scope token string
        base_credential: Base credential (for --verify)

    Returns:
        Exit code (0=success, 1=error)
    """
    try:
        claims = decode_scope_claims(token)
    except ScopeDenied as e:
        print(f"Error: {e}")
        return 1

    print("Claims:")
    print(f"  version   (v):   {claims.get('v', '?')}")
    print(f"  scope id  (sid): {claims.get('sid', '?')}")
    print(f"  stage     (st):  {claims.get('st', '?')}")
    print(f"  actions   (a):   {', '.join(claims.get('a', [])) or '?'}")
    print(f"  resources (r):   {', '.join(claims.get('r', [])) or '?'}")
    print(f"  subject   (sub): {claims.get('sub', '?')}")
    for key, label in (('iat', 'issued '), ('exp', 'expires')):
        if key in claims:
            print(f"  {label}   ({key}): {_format_ts(claims[key])}")
        else:
            print(f"  {label}   ({key}): (not set)")

    extra = {k: v for k, v in claims.items() if k not in KNOWN_CLAIMS}
    for k, v in extra.items():
        print(f"  {k}: {v}")

    if base_credential is not None:
        try:
            verify_scope_token(token, base_credential)
        except ScopeDenied as e:
            print(f"\nSignature: INVALID ({e})")
            return 1
        print("\nSignature: VALID")

    return 0


def main(argv: list) -> int:
    """Scope CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="deploy-driver scope",
        description="Credential scope token utilities",
    )
    sub = parser.add_subparsers(dest="action")

    inspect_parser = sub.add_parser("inspect", help="Decode and inspect a scope token")
    inspect_parser.add_argument("token", help="Scope token to inspect")
    inspect_parser.add_argument(
        "--verify", action="store_true",
        help="Verify signature and expiry using the base credential",
    )

    args = parser.parse_args(argv)

    if not args.action:
        parser.print_help()
        return 2

    if args.action == "inspect":
        base_credential = None
        if args.verify:
            try:
                base_credential = load_config().get_base_credential()
            except ConfigError as e:
                print(f"Error: Cannot load base credential: {e}")
                return 1
            if not base_credential:
                print("Error: No base credential found (auth.signing_key or "
                      "DEPLOY_DRIVER_BASE_CREDENTIAL)")
                return 1

        return inspect_token(args.token, base_credential)

    return 2
