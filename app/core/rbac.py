from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

ROLE_ADMIN = "ADMIN"
ROLE_DOCTOR = "DOCTOR"
ROLE_PHARMACIST = "PHARMACIST"
ROLE_NURSE = "NURSE"

_ADMIN_ALIASES = {"ADMIN", "SUPER_ADMIN", "ROOT", "SUPERUSER"}


@dataclass(frozen=True)
class Actor:
    """
    Who is acting, as resolved by the identity service.
    The core trusts this and never re-authenticates.
    """
    subject_id: str
    role: str

    @property
    def role_code(self) -> str:
        return (self.role or "").strip().upper()


def is_admin(actor: Actor | None) -> bool:
    if not actor:
        return False
    return actor.role_code in _ADMIN_ALIASES


def has_any_role(actor: Actor | None, roles: Iterable[str]) -> bool:
    """
    Admin bypass, then plain role match (case-insensitive).
    """
    if not actor:
        return False
    if is_admin(actor):
        return True
    wanted = {(r or "").strip().upper() for r in roles}
    return actor.role_code in wanted
