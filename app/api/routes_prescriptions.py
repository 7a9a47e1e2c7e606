# FILE: app/api/routes_prescriptions.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from sqlalchemy.orm import Session

from app.api.deps import current_actor, get_db, require_roles
from app.api.response import ok
from app.core.exceptions import VerificationFailed
from app.core.rbac import (
    Actor,
    ROLE_ADMIN,
    ROLE_DOCTOR,
    ROLE_NURSE,
    ROLE_PHARMACIST,
)
from app.schemas.prescription import (
    CancelIn,
    CredentialIn,
    DispenseEventOut,
    DispenseIn,
    DispenseResultOut,
    PrescriptionCreate,
    PrescriptionIssuedOut,
    PrescriptionOut,
    VerifyOut,
)
from app.services import catalog, dispense as dispensing
from app.services import prescription as engine
from app.services.pdf_prescription import build_prescription_pdf

router = APIRouter(prefix="/prescriptions", tags=["Prescriptions"])


@router.post("")
def create_prescription(
    payload: PrescriptionCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_roles(ROLE_DOCTOR)),
):
    issued = engine.create_prescription(db, payload, actor)
    out = PrescriptionIssuedOut(
        prescription=PrescriptionOut.model_validate(issued.prescription),
        qr_text=issued.qr_text,
        warnings=issued.warnings,
    )
    return ok(out, status_code=201)


@router.post("/verify")
def verify_credential(
    payload: CredentialIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_roles(ROLE_PHARMACIST, ROLE_DOCTOR, ROLE_NURSE)),
):
    try:
        body, signature = engine.resolve_credential(payload)
    except VerificationFailed:
        # unreadable QR text is reported the same way as a bad signature
        return ok(VerifyOut(valid=False, expired=False, dispensable=False))
    result = engine.verify(db, body, signature)
    return ok(VerifyOut(**result.as_dict()))


@router.get("/expiring")
def expiring_prescriptions(
    days: Optional[int] = Query(None, ge=0, le=365),
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_roles(ROLE_PHARMACIST, ROLE_DOCTOR, ROLE_ADMIN)),
):
    rows = engine.expiring_prescriptions(db, days)
    return ok([PrescriptionOut.model_validate(rx) for rx in rows], meta={"count": len(rows)})


@router.post("/expire-overdue")
def expire_overdue(
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_roles(ROLE_ADMIN)),
):
    ids = engine.expire_overdue(db)
    return ok({"expired_prescription_ids": ids})


@router.get("/{rx_id}")
def get_prescription(
    rx_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    rx = engine.get_prescription(db, rx_id)
    out = PrescriptionIssuedOut(
        prescription=PrescriptionOut.model_validate(rx),
        qr_text=engine.qr_text_for(rx),
        warnings=rx.interaction_warnings or [],
    )
    return ok(out)


@router.post("/{rx_id}/cancel")
def cancel_prescription(
    rx_id: int,
    payload: CancelIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_roles(ROLE_DOCTOR)),
):
    rx = engine.cancel_prescription(db, rx_id, payload.reason, actor)
    return ok(PrescriptionOut.model_validate(rx))


@router.post("/{rx_id}/dispense")
def dispense_prescription(
    rx_id: int,
    payload: DispenseIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(require_roles(ROLE_PHARMACIST)),
):
    event = dispensing.dispense(
        db,
        rx_id,
        payload.credential,
        payload.lines,
        actor,
        notes=payload.notes,
    )
    rx = engine.get_prescription(db, rx_id)
    out = DispenseResultOut(
        event=DispenseEventOut.model_validate(event),
        prescription_status=rx.status,
    )
    return ok(out, status_code=201)


@router.get("/{rx_id}/dispense-events")
def dispense_history(
    rx_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    rx = engine.get_prescription(db, rx_id)
    return ok([DispenseEventOut.model_validate(e) for e in rx.dispense_events])


@router.get("/{rx_id}/pdf")
def prescription_pdf(
    rx_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(current_actor),
):
    rx = engine.get_prescription(db, rx_id)
    meds = catalog.get_medicines(db, [l.medicine_id for l in rx.lines])
    pdf = build_prescription_pdf(
        rx,
        qr_text=engine.qr_text_for(rx),
        patient=rx.patient,
        medicines=meds,
    )
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'inline; filename="{rx.prescription_number}.pdf"'},
    )
