# src/celofx_gate/scripts/sign_request.py
"""
Sign an agent API request with the shared secret.

Prints the signature, timestamp and nonce headers for a request so scripts
and integrators can call write endpoints, e.g.:

    celofx-sign --method POST --path /api/recurring --body '{"action":"create"}'
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

from celofx_gate.core.security import sign_agent_request


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sign a CeloFX agent API request")
    parser.add_argument("--secret", default=os.getenv("AGENT_API_SECRET"),
                        help="Shared secret (defaults to $AGENT_API_SECRET)")
    parser.add_argument("--method", default="POST", help="HTTP method")
    parser.add_argument("--path", required=True, help="URL path, without query string")
    body = parser.add_mutually_exclusive_group()
    body.add_argument("--body", default="", help="Raw request body")
    body.add_argument("--body-file", type=Path, help="Read the raw body from a file")
    parser.add_argument("--nonce", help="Nonce to use (random when omitted)")
    parser.add_argument("--timestamp", type=int, help="Epoch milliseconds (now when omitted)")
    parser.add_argument("--format", choices=("json", "curl"), default="json",
                        help="Print headers as JSON or as curl -H flags")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if not args.secret:
        print("AGENT_API_SECRET not set and --secret not given", file=sys.stderr)
        return 2

    body = args.body_file.read_bytes() if args.body_file else args.body.encode("utf-8")
    headers = sign_agent_request(
        args.secret,
        args.method,
        args.path,
        body,
        timestamp_ms=args.timestamp,
        nonce=args.nonce,
    )

    if args.format == "curl":
        print(" ".join(f"-H '{name}: {value}'" for name, value in headers.items()))
    else:
        print(json.dumps(headers, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
