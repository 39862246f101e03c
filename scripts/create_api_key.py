from __future__ import annotations

import argparse
import asyncio
from datetime import UTC, datetime

from automation_service.config.settings import get_settings
from automation_service.storage.postgres import PostgresTaskStorage


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Create a user and an API key, or revoke an existing key."
    )
    parser.add_argument(
        "--database-url",
        type=str,
        default=None,
        help="PostgreSQL connection URL (default: AUTOMATION_DATABASE_URL / DATABASE_URL).",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    create = subparsers.add_parser("create", help="Create a user with a fresh API key.")
    create.add_argument("--email", required=True, help="Email of the new user.")
    create.add_argument("--name", default=None, help="Display name of the new user.")
    create.add_argument("--role", default="user", help="Role of the new user (default: user).")
    create.add_argument("--key-name", default="default", help="Label for the API key.")
    create.add_argument(
        "--expires-at",
        type=datetime.fromisoformat,
        default=None,
        help="Optional ISO-8601 expiry timestamp for the key.",
    )

    revoke = subparsers.add_parser("revoke", help="Deactivate an API key.")
    revoke.add_argument("--key-id", required=True, help="ID of the API key to revoke.")
    revoke.add_argument("--user-id", required=True, help="Owner of the API key.")
    return parser.parse_args()


async def _run(args: argparse.Namespace) -> int:
    database_url = args.database_url or get_settings().resolved_database_url()
    storage = PostgresTaskStorage(database_url)
    try:
        await storage.migrate()
        if args.command == "create":
            expires_at = args.expires_at
            if expires_at is not None and expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=UTC)
            user = await storage.create_user(email=args.email, name=args.name, role=args.role)
            api_key = await storage.create_api_key(
                user_id=user.id, name=args.key_name, expires_at=expires_at
            )
            print(f"user_id={user.id}")
            print(f"api_key_id={api_key.id}")
            print(f"api_key={api_key.key}")
            return 0

        if not await storage.revoke_api_key(args.key_id, args.user_id):
            print("API key not found or not owned by that user")
            return 1
        print(f"revoked api_key_id={args.key_id}")
        return 0
    finally:
        await storage.close()


def main() -> None:
    raise SystemExit(asyncio.run(_run(_parse_args())))


if __name__ == "__main__":
    main()
