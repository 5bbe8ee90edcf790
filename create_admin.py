"""
Create or reset an admin account.

    python create_admin.py NAME PASSWORD

Stores a bcrypt hash of the password. Existing accounts with the same name
get their password replaced (and any legacy cleartext password removed).
"""
import argparse
import sys
from datetime import datetime, timezone

import database
from auth import hash_password
from catalog import ADMINS
from schemas import Admin


def upsert_admin(name: str, password: str) -> bool:
    """Returns True when a new account was created."""
    admins = database.get_collection(ADMINS)
    account = Admin(name=name, password_hash=hash_password(password))
    now = datetime.now(timezone.utc)
    result = admins.update_one(
        {"name": name},
        {
            "$set": {**account.model_dump(), "updated_at": now},
            "$unset": {"password": ""},
            "$setOnInsert": {"created_at": now},
        },
        upsert=True,
    )
    return result.upserted_id is not None


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Create or reset a catalog admin account")
    parser.add_argument("name")
    parser.add_argument("password")
    args = parser.parse_args(argv)
    if not args.name.strip() or not args.password:
        parser.error("name and password must not be empty")
    created = upsert_admin(args.name.strip(), args.password)
    print(("Created" if created else "Updated") + f" admin {args.name.strip()!r}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
