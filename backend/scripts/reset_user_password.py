#!/usr/bin/env python3
import argparse
import os
import sys

import psycopg
from psycopg.rows import dict_row

from backend.app.security import hash_password, hash_pin, is_valid_pin_format


def main() -> int:
    parser = argparse.ArgumentParser(description="Reset a user's password and/or manager PIN (maintenance).")
    parser.add_argument(
        "--db",
        default=os.getenv("DATABASE_URL") or "postgresql://localhost/nextstock",
        help="Postgres connection string (defaults to $DATABASE_URL).",
    )
    parser.add_argument("--email", required=True)
    parser.add_argument("--password")
    parser.add_argument("--pin", help="New 6-digit approval PIN (managers and admins only).")
    args = parser.parse_args()

    email = (args.email or "").strip().lower()
    if not email:
        print("email is required", file=sys.stderr)
        return 2
    if not args.password and not args.pin:
        print("nothing to reset: pass --password and/or --pin", file=sys.stderr)
        return 2
    if args.pin and not is_valid_pin_format(args.pin):
        print("PIN must be exactly 6 digits", file=sys.stderr)
        return 2

    with psycopg.connect(args.db, row_factory=dict_row) as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id, role FROM profiles WHERE email = %s AND deleted_at IS NULL", (email,))
                user = cur.fetchone()
                if not user:
                    print(f"user not found: {email}", file=sys.stderr)
                    return 2

                if args.password:
                    cur.execute(
                        "UPDATE profiles SET hashed_password = %s, updated_at = now() WHERE id = %s",
                        (hash_password(args.password), user["id"]),
                    )
                    # Old tokens/cookies must not survive a password reset.
                    cur.execute("UPDATE auth_sessions SET is_active = false WHERE user_id = %s", (user["id"],))

                if args.pin:
                    if user["role"] not in {"admin", "manager"}:
                        print("only managers and admins can hold an approval PIN", file=sys.stderr)
                        return 2
                    cur.execute(
                        """
                        INSERT INTO manager_pins (id, user_id, pin_hash)
                        VALUES (gen_random_uuid(), %s, %s)
                        ON CONFLICT (user_id) DO UPDATE
                          SET pin_hash = EXCLUDED.pin_hash, updated_at = now()
                        """,
                        (user["id"], hash_pin(args.pin)),
                    )

    print("OK")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
