"""
Manage Users
============

CLI to create API users (including the first admin) and rotate keys.
The raw API key is printed once and never stored.

Usage:
    meterproxy-users create --email admin@example.com --admin
    meterproxy-users rotate-key --email user@example.com
"""

import argparse
import sys
from typing import List

from sqlmodel import select

from meterproxy.auth.api_key_auth import generate_api_key
from meterproxy.config import get_settings
from meterproxy.core.database import Database
from meterproxy.models.user import User
from meterproxy.services.user_store import UserStore


def create_user(database: Database, hmac_secret: str, email: str, is_admin: bool = False) -> tuple[User, str]:
    """Create a user with a fresh API key. Returns (user, raw_key)."""
    users = UserStore(database)
    if users.get_by_email(email) is not None:
        raise ValueError(f"User {email} already exists")
    raw_key, key_hash, prefix = generate_api_key(hmac_secret)
    user = users.create(email, is_admin=is_admin, api_key_hash=key_hash, api_key_prefix=prefix)
    return user, raw_key


def rotate_key(database: Database, hmac_secret: str, email: str) -> str:
    """Replace a user's API key. Returns the new raw key."""
    raw_key, key_hash, prefix = generate_api_key(hmac_secret)
    with database.session() as session:
        user = session.exec(select(User).where(User.email == email)).first()
        if user is None:
            raise ValueError(f"User {email} not found")
        user.api_key_hash = key_hash
        user.api_key_prefix = prefix
        session.add(user)
        session.commit()
    return raw_key


def main(argv: List[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Create meterproxy users and API keys")
    sub = parser.add_subparsers(dest="command", required=True)
    create = sub.add_parser("create", help="Create a user and print its API key")
    create.add_argument("--email", required=True)
    create.add_argument("--admin", action="store_true", help="Grant admin access")
    rotate = sub.add_parser("rotate-key", help="Issue a new API key for a user")
    rotate.add_argument("--email", required=True)
    args = parser.parse_args(argv)

    settings = get_settings()
    if not settings.api_key_hmac_secret:
        print(
            "METERPROXY_API_KEY_HMAC_SECRET must be set; keys hashed with an "
            "ephemeral secret would never validate.",
            file=sys.stderr,
        )
        return 1

    database = Database(settings.database_url)
    try:
        database.init(run_migrations=settings.run_migrations)
        if args.command == "create":
            user, raw_key = create_user(database, settings.api_key_hmac_secret, args.email, args.admin)
            print(f"Created user {user.id} ({user.email}, admin={user.is_admin})")
        else:
            raw_key = rotate_key(database, settings.api_key_hmac_secret, args.email)
            print(f"Rotated API key for {args.email}")
    except ValueError as e:
        print(str(e), file=sys.stderr)
        return 1
    finally:
        database.close()

    print(f"API key (shown once): {raw_key}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
