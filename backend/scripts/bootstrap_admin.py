#!/usr/bin/env python3
import os
import secrets
import sys

import psycopg
from psycopg.rows import dict_row

from backend.app.security import hash_password, hash_pin, is_valid_pin_format


def _truthy(v: str) -> bool:
    return (v or "").strip().lower() in {"1", "true", "yes", "y", "on"}


def _generate_password() -> str:
    # URL-safe and copy/paste friendly.
    return secrets.token_urlsafe(16)


def main() -> int:
    if not _truthy(os.getenv("BOOTSTRAP_ADMIN", "")):
        return 0

    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        print("bootstrap_admin: missing DATABASE_URL", file=sys.stderr)
        return 2

    email = os.getenv("BOOTSTRAP_ADMIN_EMAIL", "admin@nextstock.local").strip().lower()
    if not email:
        print("bootstrap_admin: BOOTSTRAP_ADMIN_EMAIL is empty", file=sys.stderr)
        return 2

    password = os.getenv("BOOTSTRAP_ADMIN_PASSWORD")
    generated_password = False
    if not password:
        password = _generate_password()
        generated_password = True

    full_name = os.getenv("BOOTSTRAP_ADMIN_NAME", "Administrator").strip() or "Administrator"
    # Optional: lets the first admin approve cash discrepancies right away.
    pin = (os.getenv("BOOTSTRAP_ADMIN_PIN") or "").strip()
    if pin and not is_valid_pin_format(pin):
        print("bootstrap_admin: BOOTSTRAP_ADMIN_PIN must be exactly 6 digits", file=sys.stderr)
        return 2

    with psycopg.connect(db_url, row_factory=dict_row) as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id FROM profiles WHERE email = %s", (email,))
                if cur.fetchone():
                    # Idempotent: don't create duplicate admins.
                    return 0

                # Admins are not bound to a store; they see every store.
                cur.execute(
                    """
                    INSERT INTO profiles (id, email, hashed_password, full_name, role)
                    VALUES (gen_random_uuid(), %s, %s, %s, 'admin')
                    RETURNING id
                    """,
                    (email, hash_password(password), full_name),
                )
                user_id = cur.fetchone()["id"]
                if pin:
                    cur.execute(
                        "INSERT INTO manager_pins (id, user_id, pin_hash) VALUES (gen_random_uuid(), %s, %s)",
                        (user_id, hash_pin(pin)),
                    )

                cur.execute("SELECT id FROM stores ORDER BY created_at ASC")
                for i, s in enumerate(cur.fetchall()):
                    cur.execute(
                        """
                        INSERT INTO user_stores (id, user_id, store_id, is_default)
                        VALUES (gen_random_uuid(), %s, %s, %s)
                        ON CONFLICT DO NOTHING
                        """,
                        (user_id, s["id"], i == 0),
                    )

    print("BOOTSTRAP_ADMIN_CREATED")
    print(f"email: {email}")
    if generated_password:
        print(f"password: {password}")
    else:
        print("password: (provided via BOOTSTRAP_ADMIN_PASSWORD)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
