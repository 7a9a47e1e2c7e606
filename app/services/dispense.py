# FILE: app/services/dispense.py
from __future__ import annotations

import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from app.core.exceptions import (
    InsufficientStock,
    InvalidState,
    RxError,
    VerificationFailed,
)
from app.core.rbac import Actor
from app.db.session import commit_or_conflict, flush_or_conflict
from app.models.inventory import StockReservation
from app.models.prescription import (
    DispenseEvent,
    DispenseEventLine,
    PrescriptionLine,
    RxStatus,
)
from app.schemas.prescription import CredentialIn, DispenseLineIn
from app.services import inventory, notifier
from app.services import prescription as engine
from app.services import rx_credential
from app.utils.timezone import utcnow

logger = logging.getLogger(__name__)

MONEY = Decimal("0.01")


def _round_money(value: Decimal) -> Decimal:
    return value.quantize(MONEY, rounding=ROUND_HALF_UP)


def _select_lines(
    rx,
    requested: Sequence[DispenseLineIn],
) -> List[Tuple[PrescriptionLine, int]]:
    """
    (line, quantity) for each requested line; every one must be dispensable.
    An empty request means every line that can still be filled.
    """
    if not requested:
        picked = [(l, int(l.quantity)) for l in rx.lines if engine.is_line_dispensable(l)]
        if not picked:
            raise InvalidState(f"Prescription {rx.id} has no lines left to dispense.")
        return picked

    line_map = {l.id: l for l in rx.lines}
    picked: List[Tuple[PrescriptionLine, int]] = []
    seen = set()
    for entry in requested:
        if entry.line_id in seen:
            raise InvalidState(f"Rx line {entry.line_id} requested more than once.")
        seen.add(entry.line_id)
        line = line_map.get(entry.line_id)
        if not line:
            raise InvalidState(f"Rx line {entry.line_id} is not on prescription {rx.id}.")
        engine.ensure_line_dispensable(line)
        qty = int(entry.quantity or line.quantity)
        if qty > int(line.quantity):
            raise InvalidState(
                f"Dispense quantity {qty} exceeds the per-fill quantity {line.quantity} for line {line.id}.")
        picked.append((line, qty))
    return picked


def _reserve_all(
    db: Session,
    rx,
    picked: List[Tuple[PrescriptionLine, int]],
    actor_id: str,
) -> List[StockReservation]:
    """
    Reserve stock for every line. If any line is short, release whatever
    was reserved, commit the released reservations for audit and raise
    InsufficientStock naming every short medicine.
    """
    reservations: List[StockReservation] = []
    unavailable: List[Dict] = []

    for line, qty in picked:
        try:
            res = inventory.reserve(
                db,
                line.medicine_id,
                qty,
                reference=rx.prescription_number,
                actor_id=actor_id,
            )
        except InsufficientStock as e:
            unavailable.extend(e.unavailable)
            continue
        reservations.append(res)

    if unavailable:
        for res in reservations:
            inventory.release(db, res.token, actor_id=actor_id)
        commit_or_conflict(db)
        names = ", ".join(u["medicine_name"] for u in unavailable)
        logger.warning("Dispense aborted prescription=%s short=%s", rx.id, names)
        raise InsufficientStock(f"Insufficient stock for: {names}", unavailable)

    return reservations


def dispense(
    db: Session,
    rx_id: int,
    credential: CredentialIn,
    requested_lines: Sequence[DispenseLineIn],
    pharmacist: Actor,
    *,
    notes: Optional[str] = None,
) -> DispenseEvent:
    """
    Hand over medicines against a presented credential.

    All-or-nothing across lines: stock is reserved for every line first and
    only consumed when every reservation succeeded. Each included line uses
    exactly one fill.
    """
    payload, signature = engine.resolve_credential(credential)
    if rx_credential.prescription_id_of(payload) != rx_id:
        raise VerificationFailed("Credential belongs to a different prescription.")

    rx = engine.get_prescription(db, rx_id, lock=True)

    check = engine.verify_against(rx, payload, signature)
    if not check.valid:
        logger.warning("Dispense refused: invalid credential prescription=%s", rx_id)
        raise VerificationFailed("Credential signature is not valid.")
    if check.expired:
        engine.expire_if_overdue(db, rx)
        raise VerificationFailed(f"Prescription {rx.prescription_number} has expired.")
    if not check.dispensable:
        raise VerificationFailed(
            f"Prescription {rx.prescription_number} is {rx.status.value} and cannot be dispensed.")

    picked = _select_lines(rx, requested_lines)
    reservations = _reserve_all(db, rx, picked, pharmacist.subject_id)

    try:
        event = DispenseEvent(
            prescription_id=rx.id,
            pharmacist_id=pharmacist.subject_id,
            dispensed_at=utcnow(),
            notes=notes,
            total_cost=Decimal("0"),
        )
        db.add(event)
        flush_or_conflict(db)  # get event.id for the movement log

        total = Decimal("0")
        for (line, qty), res in zip(picked, reservations):
            consumed = inventory.consume(
                db,
                res.token,
                actor_id=pharmacist.subject_id,
                prescription_id=rx.id,
                dispense_event_id=event.id,
            )
            engine.apply_fill(line, qty)
            for c in consumed:
                line_cost = _round_money(c.unit_cost * c.quantity)
                total += line_cost
                event.lines.append(
                    DispenseEventLine(
                        prescription_line_id=line.id,
                        medicine_id=line.medicine_id,
                        batch_id=c.batch_id,
                        batch_no=c.batch_no,
                        expiry_date=c.expiry_date,
                        quantity=c.quantity,
                        unit_cost=c.unit_cost,
                        line_cost=line_cost,
                        refills_remaining_after=int(line.refills_remaining),
                    ))

        event.total_cost = _round_money(total)
        old_status = rx.status
        new_status = engine.recompute_status(rx)

        commit_or_conflict(db)
    except RxError:
        # undo the reservations and fills made by this attempt
        db.rollback()
        logger.warning("Dispense rolled back prescription=%s", rx_id)
        raise
    db.refresh(event)

    logger.info("Dispensed prescription=%s event=%s lines=%s status %s -> %s",
                rx.id, event.id, len(picked), old_status.value, new_status.value)
    notifier.notify(notifier.EVENT_RX_DISPENSED, {
        "prescription_id": rx.id,
        "dispense_event_id": event.id,
        "pharmacist_id": pharmacist.subject_id,
        "status": new_status.value,
        "completed": new_status == RxStatus.COMPLETED,
    })
    for med_id in sorted({line.medicine_id for line, _ in picked}):
        inventory.check_low_stock(db, med_id)
    return event
