# app/utils/jwt.py
from datetime import datetime, timedelta
from typing import Optional

from jose import jwt, JWTError

from app.core.config import settings
from app.core.rbac import Actor


def create_access_token(
    *,
    subject: str,
    role: str,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Issue a bearer token carrying the identity the service trusts.
    Real deployments get these from the identity service; this is used
    by tooling and tests.
    """
    now = datetime.utcnow()
    delta = expires_delta or timedelta(
        minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    payload = {
        "sub": subject,  # identity-service subject id
        "role": role,  # DOCTOR / PHARMACIST / NURSE / ADMIN
        "iat": now,
        "exp": now + delta,
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALG)


def decode_actor(raw_token: str) -> Optional[Actor]:
    """
    Bearer token -> Actor, or None when the token is invalid / expired
    or lacks the `sub` / `role` claims.
    """
    try:
        payload = jwt.decode(raw_token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG])
    except JWTError:
        return None
    sub = payload.get("sub")
    role = payload.get("role")
    if not sub or not role:
        return None
    return Actor(subject_id=str(sub), role=str(role))
