#!/usr/bin/env python3
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import psycopg
from psycopg.rows import dict_row

from backend.app.config import settings
from backend.app.security import hash_session_token, new_session_token
from shopline.ids import new_id

SCHEMA_PATH = Path(__file__).resolve().parents[1] / "db" / "migrations" / "001_init.sql"


def _truthy(v: str) -> bool:
    return (v or "").strip().lower() in {"1", "true", "yes", "y", "on"}


def main() -> int:
    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        print("bootstrap_shop: missing DATABASE_URL", file=sys.stderr)
        return 2

    phone = os.getenv("BOOTSTRAP_SHOP_PHONE", "").strip()
    if not phone:
        print("bootstrap_shop: BOOTSTRAP_SHOP_PHONE is empty", file=sys.stderr)
        return 2
    shop_name = os.getenv("BOOTSTRAP_SHOP_NAME", "").strip() or None

    token = new_session_token()
    created = False
    with psycopg.connect(db_url, row_factory=dict_row) as conn:
        if _truthy(os.getenv("BOOTSTRAP_APPLY_SCHEMA", "")):
            # The migration only uses CREATE ... IF NOT EXISTS.
            conn.execute(SCHEMA_PATH.read_text(encoding="utf-8"))
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id FROM users WHERE phone = %s", (phone,))
                row = cur.fetchone()
                if row:
                    # Idempotent: never create a second user for the same phone.
                    user_id = row["id"]
                else:
                    user_id = new_id("u")
                    cur.execute(
                        """
                        INSERT INTO users (id, phone, shop_name, is_active)
                        VALUES (%s, %s, %s, true)
                        """,
                        (user_id, phone, shop_name),
                    )
                    created = True

                cur.execute(
                    """
                    INSERT INTO auth_sessions (id, user_id, token, is_active, expires_at)
                    VALUES (%s, %s, %s, true, %s)
                    """,
                    (
                        new_id("as"),
                        user_id,
                        hash_session_token(token),
                        datetime.now(timezone.utc) + timedelta(hours=settings.session_hours),
                    ),
                )

    print("BOOTSTRAP_SHOP_CREATED" if created else "BOOTSTRAP_SHOP_EXISTS")
    print(f"user_id: {user_id}")
    print(f"phone: {phone}")
    # Only the hash is stored; this is the one chance to copy the token.
    print(f"token: {token}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
