"""CLI for minting Stratus upload/delete tokens."""

from __future__ import annotations

import argparse
import json
import os

from ..common.security import DELETE_PERMISSION, UPLOAD_PERMISSION, mint_access_token


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Mint signed Stratus access tokens")
    parser.add_argument("--subject", required=True, help="Token subject (sub)")
    parser.add_argument(
        "--secret",
        default=os.environ.get("STRATUS_JWT_SECRET"),
        help="Signing secret (default: STRATUS_JWT_SECRET)",
    )
    parser.add_argument(
        "--permission",
        action="append",
        choices=[UPLOAD_PERMISSION, DELETE_PERMISSION, "*"],
        help="Granted permission; repeat for several (default: upload and delete)",
    )
    parser.add_argument("--ttl", type=int, default=3600, help="Token TTL in seconds (default: 3600)")
    parser.add_argument("--key-id", help="Override the kid header used for secret rotation")
    parser.add_argument("--json", action="store_true", help="Output JSON instead of the bare token")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    if not args.secret:
        raise SystemExit("--secret is required when STRATUS_JWT_SECRET is not set")
    permissions = args.permission or [UPLOAD_PERMISSION, DELETE_PERMISSION]
    token = mint_access_token(
        secret=args.secret,
        subject=args.subject,
        permissions=permissions,
        ttl_seconds=args.ttl,
        key_id=args.key_id,
    )
    if args.json:
        print(
            json.dumps(
                {
                    "subject": args.subject,
                    "permissions": permissions,
                    "token": token,
                    "ttl_seconds": args.ttl,
                },
                indent=2,
            )
        )
    else:
        print(token)


if __name__ == "__main__":
    main()
