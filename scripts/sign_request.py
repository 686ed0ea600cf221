#!/usr/bin/env python3
"""
Sign a local test request the way QStash or Housecall Pro would.

Useful against a dev server that has QSTASH_CURRENT_SIGNING_KEY or
HCP_WEBHOOK_SECRET configured.

Usage:
    # QStash automation callback (Upstash-Signature JWT)
    python scripts/sign_request.py qstash /api/automation/job-broadcast \\
        --body '{"jobId": "...", "phase": "initial"}' --curl

    # Housecall Pro webhook (X-HCP-Signature HMAC)
    python scripts/sign_request.py hcp /api/webhooks/housecall-pro \\
        --body '{"event": "job.updated", "data": {"id": "job_123"}}'

Environment:
    QSTASH_CURRENT_SIGNING_KEY   key for "qstash"
    HCP_WEBHOOK_SECRET           secret for "hcp"
    PUBLIC_BASE_URL              JWT subject prefix (defaults to --host)
"""
import argparse
import base64
import hashlib
import hmac
import os
import sys
import time
import uuid

import jwt


def qstash_signature(key: str, url: str, body: str, ttl: int = 300) -> str:
    now = int(time.time())
    digest = hashlib.sha256(body.encode()).digest()
    claims = {
        "iss": "Upstash",
        "sub": url,
        "iat": now,
        "nbf": now,
        "exp": now + ttl,
        "jti": f"jwt_{uuid.uuid4().hex}",
        "body": base64.urlsafe_b64encode(digest).decode().rstrip("="),
    }
    return jwt.encode(claims, key, algorithm="HS256")


def hcp_signature(secret: str, body: str) -> str:
    return hmac.new(secret.encode(), body.encode(), hashlib.sha256).hexdigest()


def main():
    parser = argparse.ArgumentParser(
        description="Sign QStash / Housecall Pro test requests",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("kind", choices=["qstash", "hcp"])
    parser.add_argument("path", help="Request path (e.g. /api/automation/send-reminder)")
    parser.add_argument("--body", "-b", default="{}", help="JSON request body")
    parser.add_argument("--curl", "-c", action="store_true", help="Output as curl command")
    parser.add_argument("--host", "-H", default="http://localhost:8000", help="Host URL for curl")
    args = parser.parse_args()

    if args.kind == "qstash":
        key = os.environ.get("QSTASH_CURRENT_SIGNING_KEY")
        if not key:
            print("Error: QSTASH_CURRENT_SIGNING_KEY is not set", file=sys.stderr)
            sys.exit(1)
        base = os.environ.get("PUBLIC_BASE_URL") or args.host
        header = ("Upstash-Signature", qstash_signature(key, base.rstrip("/") + args.path, args.body))
    else:
        secret = os.environ.get("HCP_WEBHOOK_SECRET")
        if not secret:
            print("Error: HCP_WEBHOOK_SECRET is not set", file=sys.stderr)
            sys.exit(1)
        header = ("X-HCP-Signature", hcp_signature(secret, args.body))

    if not args.curl:
        print(f"{header[0]}: {header[1]}")
        return

    print(" \\\n  ".join([
        "curl",
        "-X POST",
        f'-H "{header[0]}: {header[1]}"',
        '-H "Content-Type: application/json"',
        f"-d '{args.body}'",
        f'"{args.host}{args.path}"',
    ]))


if __name__ == "__main__":
    main()
