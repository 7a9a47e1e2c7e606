# FILE: app/api/routes_inventory.py
from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.api.deps import current_actor, get_db, require_roles
from app.api.response import ok
from app.core.rbac import Actor, ROLE_ADMIN, ROLE_PHARMACIST
from app.models.inventory import InventoryBatch
from app.schemas.inventory import (
    BatchExpireIn,
    BatchOut,
    BatchReceiveIn,
    BatchStatusIn,
    LowStockOut,
    MovementOut,
    StockAdjustIn,
    StockSummaryOut,
)
from app.services import inventory
from app.utils.timezone import today_utc

router = APIRouter(prefix="/inventory", tags=["Inventory"])

_stock_roles = (ROLE_ADMIN, ROLE_PHARMACIST)


def _batch_out(b: InventoryBatch, today: Optional[date] = None) -> BatchOut:
    today = today or today_utc()
    out = BatchOut.model_validate(b)
    out.days_until_expiry = inventory.days_until_expiry(b.expiry_date, today)
    out.expiry_status = inventory.expiry_status(b.expiry_date, today)
    out.total_value = Decimal(b.unit_cost or 0) * int(b.on_hand_qty or 0)
    return out


@router.post("/batches")
def receive_batch(
    payload: BatchReceiveIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_roles(*_stock_roles)),
):
    batch = inventory.receive_stock(db, payload, actor)
    return ok(_batch_out(batch), status_code=201)


@router.get("/medicines/{medicine_id}/stock")
def medicine_stock(
    medicine_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    summary = inventory.medicine_stock_summary(db, medicine_id)
    today = today_utc()
    summary["batches"] = [_batch_out(b, today) for b in summary["batches"]]
    return ok(StockSummaryOut(**summary))


@router.post("/batches/{batch_id}/adjust")
def adjust_batch(
    batch_id: int,
    payload: StockAdjustIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_roles(*_stock_roles)),
):
    batch = inventory.adjust_stock(db, batch_id, payload.counted_qty, notes=payload.notes, actor=actor)
    return ok(_batch_out(batch))


@router.post("/batches/{batch_id}/status")
def set_batch_status(
    batch_id: int,
    payload: BatchStatusIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_roles(*_stock_roles)),
):
    batch = inventory.set_batch_status(db, batch_id, payload.status, notes=payload.notes, actor=actor)
    return ok(_batch_out(batch))


@router.post("/batches/{batch_id}/expire")
def expire_batch(
    batch_id: int,
    payload: Optional[BatchExpireIn] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_roles(*_stock_roles)),
):
    notes = payload.notes if payload else ""
    batch = inventory.mark_expired(db, batch_id, notes=notes, actor=actor)
    return ok(_batch_out(batch))


@router.get("/batches/{batch_id}/movements")
def batch_movements(
    batch_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    rows = inventory.batch_movements(db, batch_id)
    return ok([MovementOut.model_validate(m) for m in rows])


@router.get("/low-stock")
def low_stock(
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    rows = inventory.low_stock_medicines(db)
    return ok([LowStockOut(**r) for r in rows], meta={"count": len(rows)})


@router.get("/expiring")
def expiring(
    days: Optional[int] = Query(None, ge=0, le=3650),
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    today = today_utc()
    rows = inventory.expiring_batches(db, days, today=today)
    return ok([_batch_out(b, today) for b in rows], meta={"count": len(rows)})


@router.post("/expire-due")
def expire_due(
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_roles(ROLE_ADMIN)),
):
    ids = inventory.expire_due_batches(db, actor=actor)
    return ok({"expired_batch_ids": ids})
