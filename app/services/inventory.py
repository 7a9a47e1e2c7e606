# FILE: app/services/inventory.py
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session, selectinload

from app.core.config import settings
from app.core.exceptions import (
    BatchExpired,
    InsufficientStock,
    InvalidState,
    NotFound,
    StockInvariantError,
)
from app.core.rbac import Actor
from app.db.session import commit_or_conflict, flush_or_conflict
from app.models.inventory import (
    BatchStatus,
    InventoryBatch,
    MovementType,
    ReservationStatus,
    StockMovement,
    StockReservation,
    StockReservationLine,
)
from app.models.medicine import Medicine
from app.schemas.inventory import BatchReceiveIn
from app.services import notifier
from app.services.catalog import get_medicine
from app.utils.timezone import today_utc, utcnow

logger = logging.getLogger(__name__)

# Manual status changes; EXPIRED goes through mark_expired
_STATUS_TRANSITIONS = {
    BatchStatus.ACTIVE: {BatchStatus.DAMAGED, BatchStatus.RECALLED, BatchStatus.QUARANTINED},
    BatchStatus.QUARANTINED: {BatchStatus.ACTIVE, BatchStatus.DAMAGED, BatchStatus.RECALLED},
    BatchStatus.DAMAGED: set(),
    BatchStatus.RECALLED: set(),
    BatchStatus.EXPIRED: set(),
}

_STATUS_MOVEMENT = {
    BatchStatus.DAMAGED: MovementType.DAMAGED,
    BatchStatus.RECALLED: MovementType.RECALLED,
    BatchStatus.QUARANTINED: MovementType.QUARANTINED,
    BatchStatus.ACTIVE: MovementType.ADJUSTED,
}


@dataclass
class BatchConsumption:
    batch_id: int
    batch_no: str
    expiry_date: date
    quantity: int
    unit_cost: Decimal
    balance_after: int


# ---------- Derived fields ----------


def days_until_expiry(expiry_date: date, today: Optional[date] = None) -> int:
    return (expiry_date - (today or today_utc())).days


def expiry_status(expiry_date: date, today: Optional[date] = None) -> str:
    days = days_until_expiry(expiry_date, today)
    if days <= 0:
        return "Expired"
    if days <= settings.EXPIRY_ALERT_DAYS:
        return "Expiring Soon"
    if days <= 90:
        return "Monitor"
    return "Good"


def stock_status(available: int, reorder_level: int, minimum_stock: int) -> str:
    if available <= 0:
        return "Out of Stock"
    if available <= minimum_stock:
        return "Critical"
    if available <= reorder_level:
        return "Low"
    return "Normal"


def is_batch_usable(batch: InventoryBatch, today: Optional[date] = None) -> bool:
    """
    Active and not past expiry. A batch expiring today is already unusable.
    """
    return batch.status == BatchStatus.ACTIVE and batch.expiry_date > (today or today_utc())


# ---------- Internal helpers ----------


def _record_movement(
    db: Session,
    batch: InventoryBatch,
    movement_type: MovementType,
    qty_delta: int,
    *,
    actor_id: Optional[str] = None,
    prescription_id: Optional[int] = None,
    dispense_event_id: Optional[int] = None,
    reservation_id: Optional[int] = None,
    notes: str = "",
) -> StockMovement:
    """
    Central creator for StockMovement; always use this so the ledger is consistent.
    Call after the batch quantity has been changed.
    """
    mv = StockMovement(
        batch_id=batch.id,
        medicine_id=batch.medicine_id,
        movement_type=movement_type,
        quantity_change=qty_delta,
        balance_after=int(batch.on_hand_qty),
        moved_at=utcnow(),
        actor_id=actor_id,
        prescription_id=prescription_id,
        dispense_event_id=dispense_event_id,
        reservation_id=reservation_id,
        notes=notes or "",
    )
    db.add(mv)
    return mv


def _locked_batch(db: Session, batch_id: int) -> InventoryBatch:
    batch = (db.query(InventoryBatch).filter(
        InventoryBatch.id == batch_id).with_for_update().first())
    if not batch:
        raise NotFound(f"Batch {batch_id} not found.")
    return batch


def _fefo_candidates(db: Session, medicine_id: int, today: date) -> List[InventoryBatch]:
    """
    Reservable batches, earliest expiry first, ties by receipt order.
    Rows are locked FOR UPDATE for the rest of the transaction.
    """
    return (db.query(InventoryBatch).filter(
        InventoryBatch.medicine_id == medicine_id,
        InventoryBatch.status == BatchStatus.ACTIVE,
        InventoryBatch.expiry_date > today,
        InventoryBatch.on_hand_qty > InventoryBatch.reserved_qty,
    ).order_by(
        InventoryBatch.expiry_date.asc(),
        InventoryBatch.received_at.asc(),
        InventoryBatch.id.asc(),
    ).with_for_update().all())


def _check_batch_invariants(batch: InventoryBatch) -> None:
    on_hand = int(batch.on_hand_qty or 0)
    reserved = int(batch.reserved_qty or 0)
    if on_hand < 0 or reserved < 0 or reserved > on_hand:
        logger.error(
            "Stock invariant broken batch=%s on_hand=%s reserved=%s",
            batch.id, on_hand, reserved)
        raise StockInvariantError(
            f"Batch {batch.batch_no} would hold on_hand={on_hand}, reserved={reserved}")


def _get_reservation(db: Session, token: str) -> StockReservation:
    res = (db.query(StockReservation).options(
        selectinload(StockReservation.lines)).filter(
            StockReservation.token == token).with_for_update().first())
    if not res:
        raise NotFound(f"Reservation {token} not found.")
    return res


# ---------- Availability ----------


def available_quantity(db: Session, medicine_id: int, today: Optional[date] = None) -> int:
    """
    Sum of (on_hand - reserved) over Active batches that have not expired.
    """
    get_medicine(db, medicine_id)
    today = today or today_utc()
    total = (db.query(
        func.coalesce(
            func.sum(InventoryBatch.on_hand_qty - InventoryBatch.reserved_qty),
            0)).filter(
                InventoryBatch.medicine_id == medicine_id,
                InventoryBatch.status == BatchStatus.ACTIVE,
                InventoryBatch.expiry_date > today,
            ).scalar())
    return int(total or 0)


def stock_totals(db: Session, medicine_id: int) -> Tuple[int, int]:
    """(on_hand, reserved) across every batch of the medicine, any status."""
    on_hand, reserved = (db.query(
        func.coalesce(func.sum(InventoryBatch.on_hand_qty), 0),
        func.coalesce(func.sum(InventoryBatch.reserved_qty), 0),
    ).filter(InventoryBatch.medicine_id == medicine_id).one())
    return int(on_hand or 0), int(reserved or 0)


def list_batches(db: Session, medicine_id: int) -> List[InventoryBatch]:
    get_medicine(db, medicine_id)
    return (db.query(InventoryBatch).filter(
        InventoryBatch.medicine_id == medicine_id).order_by(
            InventoryBatch.expiry_date.asc(),
            InventoryBatch.received_at.asc(),
            InventoryBatch.id.asc(),
        ).all())


# ---------- Two-phase reserve / consume / release ----------


def reserve(
    db: Session,
    medicine_id: int,
    quantity: int,
    *,
    reference: str = "",
    actor_id: Optional[str] = None,
    today: Optional[date] = None,
) -> StockReservation:
    """
    Hold `quantity` units across batches FEFO. On-hand is untouched.

    All-or-nothing: if the medicine's total available is short, nothing
    is reserved and InsufficientStock is raised. Flushes, never commits.
    """
    if quantity is None or int(quantity) <= 0:
        raise InvalidState("Quantity must be > 0")
    quantity = int(quantity)
    today = today or today_utc()
    med = get_medicine(db, medicine_id)

    candidates = _fefo_candidates(db, medicine_id, today)
    total_available = sum(b.available_qty for b in candidates)
    if total_available < quantity:
        logger.warning(
            "Insufficient stock medicine=%s requested=%s available=%s",
            medicine_id, quantity, total_available)
        raise InsufficientStock(
            f"Insufficient stock for {med.name} "
            f"(requested {quantity}, available {total_available})",
            unavailable=[{
                "medicine_id": medicine_id,
                "medicine_name": med.name,
                "requested": quantity,
                "available": total_available,
            }],
        )

    res = StockReservation(
        token=str(uuid.uuid4()),
        medicine_id=medicine_id,
        quantity=quantity,
        status=ReservationStatus.RESERVED,
        reference=reference or "",
        actor_id=actor_id,
        created_at=utcnow(),
    )

    remaining = quantity
    for batch in candidates:
        if remaining <= 0:
            break
        take = min(batch.available_qty, remaining)
        if take <= 0:
            continue
        batch.reserved_qty = int(batch.reserved_qty or 0) + take
        _check_batch_invariants(batch)
        res.lines.append(StockReservationLine(batch_id=batch.id, quantity=take))
        remaining -= take

    db.add(res)
    flush_or_conflict(db)
    logger.info("Reserved medicine=%s qty=%s token=%s batches=%s",
                medicine_id, quantity, res.token,
                [(l.batch_id, l.quantity) for l in res.lines])
    return res


def consume(
    db: Session,
    token: str,
    *,
    actor_id: Optional[str] = None,
    prescription_id: Optional[int] = None,
    dispense_event_id: Optional[int] = None,
    today: Optional[date] = None,
) -> List[BatchConsumption]:
    """
    Turn a reservation into stock out: on-hand and reserved both drop by
    the reserved amount per batch and a DISPENSED movement is written.
    Flushes, never commits.
    """
    today = today or today_utc()
    res = _get_reservation(db, token)
    if res.status != ReservationStatus.RESERVED:
        raise InvalidState(f"Reservation {token} is {res.status.value}, not RESERVED.")

    out: List[BatchConsumption] = []
    for line in res.lines:
        batch = _locked_batch(db, line.batch_id)
        if not is_batch_usable(batch, today):
            logger.error(
                "Consume on unusable batch=%s status=%s expiry=%s token=%s",
                batch.id, batch.status.value, batch.expiry_date, token)
            raise BatchExpired(
                f"Batch {batch.batch_no} expired on {batch.expiry_date} "
                "while holding a reservation")

        qty = int(line.quantity)
        if int(batch.reserved_qty) < qty or int(batch.on_hand_qty) < qty:
            logger.error(
                "Reservation exceeds batch stock batch=%s reserved=%s on_hand=%s qty=%s",
                batch.id, batch.reserved_qty, batch.on_hand_qty, qty)
            raise StockInvariantError(
                f"Batch {batch.batch_no} cannot cover reserved quantity {qty}")

        batch.reserved_qty = int(batch.reserved_qty) - qty
        batch.on_hand_qty = int(batch.on_hand_qty) - qty
        _check_batch_invariants(batch)

        _record_movement(
            db,
            batch,
            MovementType.DISPENSED,
            -qty,
            actor_id=actor_id,
            prescription_id=prescription_id,
            dispense_event_id=dispense_event_id,
            reservation_id=res.id,
            notes=res.reference,
        )
        out.append(
            BatchConsumption(
                batch_id=batch.id,
                batch_no=batch.batch_no,
                expiry_date=batch.expiry_date,
                quantity=qty,
                unit_cost=Decimal(batch.unit_cost or 0),
                balance_after=int(batch.on_hand_qty),
            ))

    res.status = ReservationStatus.CONSUMED
    res.closed_at = utcnow()
    flush_or_conflict(db)
    logger.info("Consumed token=%s medicine=%s qty=%s", token, res.medicine_id, res.quantity)
    return out


def release(db: Session, token: str, *, actor_id: Optional[str] = None) -> StockReservation:
    """
    Give reserved units back to available. Releasing twice is a no-op;
    a consumed reservation cannot be released. Flushes, never commits.
    """
    res = _get_reservation(db, token)
    if res.status == ReservationStatus.RELEASED:
        return res
    if res.status != ReservationStatus.RESERVED:
        raise InvalidState(f"Reservation {token} is {res.status.value}, cannot release.")

    for line in res.lines:
        batch = _locked_batch(db, line.batch_id)
        qty = int(line.quantity)
        if int(batch.reserved_qty) < qty:
            logger.error(
                "Release exceeds reserved batch=%s reserved=%s qty=%s",
                batch.id, batch.reserved_qty, qty)
            raise StockInvariantError(
                f"Batch {batch.batch_no} holds less reserved stock than {qty}")
        batch.reserved_qty = int(batch.reserved_qty) - qty
        _check_batch_invariants(batch)

    res.status = ReservationStatus.RELEASED
    res.closed_at = utcnow()
    if actor_id and not res.actor_id:
        res.actor_id = actor_id
    flush_or_conflict(db)
    logger.info("Released token=%s medicine=%s qty=%s", token, res.medicine_id, res.quantity)
    return res


# ---------- Stock in / adjustments ----------


def receive_stock(db: Session, data: BatchReceiveIn, actor: Actor | None = None) -> InventoryBatch:
    today = today_utc()
    get_medicine(db, data.medicine_id)

    if data.expiry_date <= today:
        raise InvalidState(f"Batch {data.batch_no} is already expired ({data.expiry_date}).")

    dup = (db.query(InventoryBatch.id).filter(
        InventoryBatch.medicine_id == data.medicine_id,
        InventoryBatch.batch_no == data.batch_no,
    ).first())
    if dup:
        raise InvalidState(f"Batch {data.batch_no} already exists for this medicine.")

    actor_id = actor.subject_id if actor else None
    batch = InventoryBatch(
        medicine_id=data.medicine_id,
        batch_no=data.batch_no,
        expiry_date=data.expiry_date,
        on_hand_qty=int(data.quantity),
        reserved_qty=0,
        unit_cost=data.unit_cost,
        supplier=data.supplier,
        manufacturer=data.manufacturer,
        status=BatchStatus.ACTIVE,
        received_at=utcnow(),
        received_by_id=actor_id,
    )
    db.add(batch)
    flush_or_conflict(db)  # get batch.id

    _record_movement(
        db,
        batch,
        MovementType.RECEIVED,
        int(data.quantity),
        actor_id=actor_id,
        notes=data.notes or f"Received from {data.supplier}".strip(),
    )
    commit_or_conflict(db)
    db.refresh(batch)
    logger.info("Received batch=%s medicine=%s qty=%s expiry=%s",
                batch.batch_no, batch.medicine_id, batch.on_hand_qty, batch.expiry_date)
    return batch


def adjust_stock(
    db: Session,
    batch_id: int,
    counted_qty: int,
    *,
    notes: str,
    actor: Actor | None = None,
) -> InventoryBatch:
    """
    Set on-hand to a physically counted quantity. Never below what is
    currently reserved.
    """
    batch = _locked_batch(db, batch_id)
    counted_qty = int(counted_qty)
    if counted_qty < 0:
        raise InvalidState("Counted quantity cannot be negative.")
    if counted_qty < int(batch.reserved_qty):
        raise InvalidState(
            f"Counted quantity {counted_qty} is below reserved {batch.reserved_qty} "
            f"for batch {batch.batch_no}.")

    delta = counted_qty - int(batch.on_hand_qty)
    if delta == 0:
        return batch

    batch.on_hand_qty = counted_qty
    _check_batch_invariants(batch)
    _record_movement(
        db,
        batch,
        MovementType.ADJUSTED,
        delta,
        actor_id=actor.subject_id if actor else None,
        notes=notes,
    )
    commit_or_conflict(db)
    db.refresh(batch)
    logger.info("Adjusted batch=%s delta=%s on_hand=%s", batch.id, delta, batch.on_hand_qty)
    if delta < 0:
        check_low_stock(db, batch.medicine_id)
    return batch


def set_batch_status(
    db: Session,
    batch_id: int,
    status: BatchStatus,
    *,
    notes: str = "",
    actor: Actor | None = None,
) -> InventoryBatch:
    if status == BatchStatus.EXPIRED:
        return mark_expired(db, batch_id, notes=notes, actor=actor)

    batch = _locked_batch(db, batch_id)
    if batch.status == status:
        return batch
    allowed = _STATUS_TRANSITIONS.get(batch.status, set())
    if status not in allowed:
        raise InvalidState(
            f"Batch {batch.batch_no} cannot move from {batch.status.value} to {status.value}.")
    if status != BatchStatus.ACTIVE and int(batch.reserved_qty) > 0:
        raise InvalidState(
            f"Batch {batch.batch_no} has {batch.reserved_qty} reserved; release it first.")

    old = batch.status
    batch.status = status
    _record_movement(
        db,
        batch,
        _STATUS_MOVEMENT[status],
        0,
        actor_id=actor.subject_id if actor else None,
        notes=notes or f"Status {old.value} -> {status.value}",
    )
    commit_or_conflict(db)
    db.refresh(batch)
    logger.info("Batch status batch=%s %s -> %s", batch.id, old.value, status.value)
    return batch


def _expire_batch(db: Session, batch: InventoryBatch, *, actor_id: Optional[str], notes: str) -> None:
    batch.status = BatchStatus.EXPIRED
    _record_movement(
        db,
        batch,
        MovementType.EXPIRED,
        0,
        actor_id=actor_id,
        notes=notes or f"Expired on {batch.expiry_date}",
    )


def mark_expired(
    db: Session,
    batch_id: int,
    *,
    notes: str = "",
    actor: Actor | None = None,
) -> InventoryBatch:
    batch = _locked_batch(db, batch_id)
    if batch.status == BatchStatus.EXPIRED:
        return batch
    if int(batch.reserved_qty) > 0:
        raise InvalidState(
            f"Batch {batch.batch_no} has {batch.reserved_qty} reserved; release it first.")

    _expire_batch(db, batch, actor_id=actor.subject_id if actor else None, notes=notes)
    commit_or_conflict(db)
    db.refresh(batch)
    logger.info("Batch marked expired batch=%s", batch.id)
    return batch


def expire_due_batches(db: Session, *, today: Optional[date] = None, actor: Actor | None = None) -> List[int]:
    """
    Sweep: every Active batch whose expiry has arrived becomes EXPIRED.
    Batches still holding reservations are left for the next run.
    """
    today = today or today_utc()
    due = (db.query(InventoryBatch).filter(
        InventoryBatch.status == BatchStatus.ACTIVE,
        InventoryBatch.expiry_date <= today,
    ).order_by(InventoryBatch.id.asc()).with_for_update().all())

    expired: List[int] = []
    for batch in due:
        if int(batch.reserved_qty) > 0:
            logger.warning("Skipping expiry of batch=%s: %s still reserved",
                           batch.id, batch.reserved_qty)
            continue
        _expire_batch(db, batch, actor_id=actor.subject_id if actor else None, notes="")
        expired.append(batch.id)

    commit_or_conflict(db)
    if expired:
        logger.info("Expired %d batch(es): %s", len(expired), expired)
    return expired


# ---------- Reports ----------


def medicine_stock_summary(db: Session, medicine_id: int) -> Dict[str, Any]:
    med = get_medicine(db, medicine_id)
    available = available_quantity(db, medicine_id)
    on_hand, reserved = stock_totals(db, medicine_id)
    return {
        "medicine_id": med.id,
        "medicine_name": med.name,
        "available": available,
        "on_hand": on_hand,
        "reserved": reserved,
        "reorder_level": int(med.reorder_level or 0),
        "minimum_stock": int(med.minimum_stock or 0),
        "stock_status": stock_status(available, int(med.reorder_level or 0), int(med.minimum_stock or 0)),
        "batches": list_batches(db, medicine_id),
    }


def low_stock_medicines(db: Session, *, today: Optional[date] = None) -> List[Dict[str, Any]]:
    """
    Medicines whose usable stock is at or below their reorder level.
    """
    today = today or today_utc()
    avail_sq = (db.query(
        InventoryBatch.medicine_id.label("medicine_id"),
        func.sum(InventoryBatch.on_hand_qty - InventoryBatch.reserved_qty).label("available"),
    ).filter(
        InventoryBatch.status == BatchStatus.ACTIVE,
        InventoryBatch.expiry_date > today,
    ).group_by(InventoryBatch.medicine_id).subquery())

    rows = (db.query(Medicine, func.coalesce(avail_sq.c.available, 0)).outerjoin(
        avail_sq, avail_sq.c.medicine_id == Medicine.id).order_by(
            Medicine.name.asc(), Medicine.id.asc()).all())

    out: List[Dict[str, Any]] = []
    for med, available in rows:
        available = int(available or 0)
        reorder = int(med.reorder_level or 0)
        if available > reorder:
            continue
        out.append({
            "medicine_id": med.id,
            "medicine_name": med.name,
            "available": available,
            "reorder_level": reorder,
            "minimum_stock": int(med.minimum_stock or 0),
            "stock_status": stock_status(available, reorder, int(med.minimum_stock or 0)),
        })
    return out


def expiring_batches(db: Session, days: Optional[int] = None, *, today: Optional[date] = None) -> List[InventoryBatch]:
    """
    Active batches with stock that expire within `days` (still in date today).
    """
    today = today or today_utc()
    horizon = today + timedelta(days=settings.EXPIRY_ALERT_DAYS if days is None else int(days))
    return (db.query(InventoryBatch).filter(
        InventoryBatch.status == BatchStatus.ACTIVE,
        InventoryBatch.on_hand_qty > 0,
        InventoryBatch.expiry_date > today,
        InventoryBatch.expiry_date <= horizon,
    ).order_by(InventoryBatch.expiry_date.asc(), InventoryBatch.id.asc()).all())


def batch_movements(db: Session, batch_id: int) -> List[StockMovement]:
    """Full movement history of one batch (recall traceability)."""
    if not db.get(InventoryBatch, batch_id):
        raise NotFound(f"Batch {batch_id} not found.")
    return (db.query(StockMovement).filter(
        StockMovement.batch_id == batch_id).order_by(
            StockMovement.moved_at.asc(), StockMovement.id.asc()).all())


def check_low_stock(db: Session, medicine_id: int) -> Optional[Dict[str, Any]]:
    """
    Notify when usable stock is at or below the reorder level.
    Returns the alert payload, or None when stock is fine.
    """
    med = db.get(Medicine, medicine_id)
    if not med:
        return None
    available = available_quantity(db, medicine_id)
    reorder = int(med.reorder_level or 0)
    if available > reorder:
        return None
    alert = {
        "medicine_id": med.id,
        "medicine_name": med.name,
        "available": available,
        "reorder_level": reorder,
        "stock_status": stock_status(available, reorder, int(med.minimum_stock or 0)),
    }
    logger.warning("Low stock medicine=%s available=%s reorder_level=%s", med.id, available, reorder)
    notifier.notify(notifier.EVENT_LOW_STOCK, alert)
    return alert
