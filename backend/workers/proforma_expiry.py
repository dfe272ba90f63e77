#!/usr/bin/env python3
"""
Marks draft/sent proformas whose validity date has passed as expired.

Run daily (cron or systemd timer):
  DATABASE_URL=postgresql://... python3 -m backend.workers.proforma_expiry
"""
import argparse
import os
from datetime import date

import psycopg
from psycopg.rows import dict_row

from backend.app.logs import json_log

DB_URL_DEFAULT = os.getenv("DATABASE_URL", "postgresql://localhost/nextstock")

EXPIRABLE_STATUSES = ("draft", "sent")


def expire_proformas(cur, *, today: date, dry_run: bool = False) -> list:
    if dry_run:
        cur.execute(
            """
            SELECT id, proforma_number, valid_until
            FROM proformas
            WHERE status = ANY(%s)
              AND valid_until IS NOT NULL
              AND valid_until < %s
            ORDER BY valid_until
            """,
            (list(EXPIRABLE_STATUSES), today),
        )
        return cur.fetchall()
    cur.execute(
        """
        UPDATE proformas
        SET status = 'expired', updated_at = now()
        WHERE status = ANY(%s)
          AND valid_until IS NOT NULL
          AND valid_until < %s
        RETURNING id, proforma_number, valid_until
        """,
        (list(EXPIRABLE_STATUSES), today),
    )
    return cur.fetchall()


def run(db_url: str, *, dry_run: bool = False) -> int:
    with psycopg.connect(db_url, row_factory=dict_row) as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                rows = expire_proformas(cur, today=date.today(), dry_run=dry_run)
    json_log(
        "info",
        "proformas.expired",
        count=len(rows),
        dry_run=dry_run,
        proforma_numbers=[r["proforma_number"] for r in rows],
    )
    return len(rows)


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--db", default=DB_URL_DEFAULT)
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()
    run(args.db, dry_run=args.dry_run)


if __name__ == "__main__":
    main()
