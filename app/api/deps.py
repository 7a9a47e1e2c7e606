# app/api/deps.py
from __future__ import annotations

from typing import Callable, Generator, Optional

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from app.core.rbac import Actor, has_any_role
from app.db.session import SessionLocal
from app.utils.jwt import decode_actor


# =========================================================
# DB (per request)
# =========================================================
def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# =========================================================
# AUTH HELPERS
# =========================================================
def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1]
    return None


def current_actor(authorization: Optional[str] = Header(None)) -> Actor:
    raw = _extract_bearer(authorization)
    if not raw:
        raise HTTPException(status_code=401, detail="Missing token")
    actor = decode_actor(raw)
    if actor is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    return actor


def require_roles(*roles: str) -> Callable[..., Actor]:
    """
    Dependency factory: the caller must hold one of `roles` (admins pass).

        actor: Actor = Depends(require_roles(ROLE_PHARMACIST))
    """

    def _dep(actor: Actor = Depends(current_actor)) -> Actor:
        if not has_any_role(actor, roles):
            raise HTTPException(
                status_code=403,
                detail=f"Forbidden: requires one of {', '.join(roles)}",
            )
        return actor

    return _dep
