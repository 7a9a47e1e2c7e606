# FILE: app/api/routes_medicines.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.api.deps import current_actor, get_db, require_roles
from app.api.response import ok
from app.core.rbac import Actor, ROLE_ADMIN, ROLE_PHARMACIST
from app.schemas.medicine import (
    InteractionCheckIn,
    InteractionCreate,
    InteractionFinding,
    InteractionOut,
    MedicineCreate,
    MedicineOut,
)
from app.services import catalog

router = APIRouter(prefix="/medicines", tags=["Medicine Catalog"])


@router.post("")
def create_medicine(
    payload: MedicineCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_roles(ROLE_ADMIN, ROLE_PHARMACIST)),
):
    med = catalog.create_medicine(db, payload, actor)
    return ok(MedicineOut.model_validate(med), status_code=201)


@router.get("")
def search_medicines(
    q: Optional[str] = Query(None, description="name / generic / brand / code"),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    rows = catalog.search_medicines(db, q, limit=limit)
    return ok([MedicineOut.model_validate(m) for m in rows], meta={"count": len(rows)})


@router.get("/{medicine_id}")
def get_medicine(
    medicine_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    return ok(MedicineOut.model_validate(catalog.get_medicine(db, medicine_id)))


@router.post("/interactions")
def add_interaction(
    payload: InteractionCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_roles(ROLE_ADMIN, ROLE_PHARMACIST)),
):
    row = catalog.add_interaction(db, payload)
    return ok(InteractionOut.model_validate(row), status_code=201)


@router.post("/interactions/check")
def check_interactions(
    payload: InteractionCheckIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    findings = catalog.find_interactions(db, payload.medicine_ids)
    return ok([InteractionFinding(**f) for f in findings])
