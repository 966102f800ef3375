from __future__ import annotations

import argparse
from datetime import datetime, timedelta, timezone

import jwt

ROLES = ("admin", "operator", "service")


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Generate a JWT for the retry job and webhook log endpoints."
    )
    parser.add_argument("--secret", required=True)
    parser.add_argument("--subject", default="retry-cron")
    parser.add_argument("--roles", default="service", help=f"Comma-separated, any of {','.join(ROLES)}.")
    parser.add_argument("--org-id", default="", help="Organization used to key per-org rate limits.")
    parser.add_argument("--hours", type=int, default=24 * 30)
    parser.add_argument("--algorithm", default="HS256")
    args = parser.parse_args()

    roles = [item.strip() for item in args.roles.split(",") if item.strip()]
    unknown = sorted(set(roles) - set(ROLES))
    if unknown:
        parser.error(f"unknown roles: {', '.join(unknown)}")

    payload = {
        "sub": args.subject,
        "roles": roles,
        "exp": datetime.now(timezone.utc) + timedelta(hours=args.hours),
    }
    if args.org_id.strip():
        payload["org_id"] = args.org_id.strip()
    print(jwt.encode(payload, args.secret, algorithm=args.algorithm))


if __name__ == "__main__":
    main()
