from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, Header, HTTPException, Query

from .config import settings
from .db import get_conn
from .security import hash_session_token


def _extract_bearer_token(authorization: Optional[str]) -> str:
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization.split(" ", 1)[1].strip()
        if token:
            return token
    raise HTTPException(status_code=401, detail="missing token")


def get_session(authorization: Optional[str] = Header(None)):
    token = _extract_bearer_token(authorization)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT s.id AS session_id, s.user_id, s.expires_at, s.is_active, u.is_active AS user_active
                FROM auth_sessions s
                JOIN users u ON u.id = s.user_id
                WHERE s.token = %s
                """,
                (hash_session_token(token),),
            )
            row = cur.fetchone()
            now = datetime.now(timezone.utc)
            if not row or not row["is_active"] or not row["user_active"] or row["expires_at"] < now:
                raise HTTPException(status_code=401, detail="invalid token")
            return {"session_id": row["session_id"], "user_id": row["user_id"]}


def get_current_user(session=Depends(get_session)):
    return {"user_id": session["user_id"]}


def get_owner_id(user=Depends(get_current_user)) -> str:
    return str(user["user_id"])


def get_paging(
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
) -> tuple[int, int]:
    lim = limit or settings.default_page_limit
    return page, min(lim, settings.max_page_limit)


def page_meta(total: int, page: int, limit: int) -> dict:
    return {
        "total": total,
        "page": page,
        "limit": limit,
        "totalPages": (total + limit - 1) // limit if limit else 0,
    }
