# FILE: app/services/prescription.py
from __future__ import annotations

import hmac
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session, selectinload

from app.core.config import settings
from app.core.exceptions import (
    Forbidden,
    InvalidState,
    InvalidTransition,
    NotFound,
    SafetyViolation,
    VerificationFailed,
    conflict_entry,
)
from app.core.rbac import Actor, is_admin
from app.db.session import commit_or_conflict, flush_or_conflict
from app.models.medicine import BLOCKING_SEVERITIES, MedicineStatus
from app.models.prescription import (
    OPEN_STATUSES,
    Prescription,
    PrescriptionLine,
    RxLineStatus,
    RxStatus,
)
from app.schemas.prescription import CredentialIn, PrescriptionCreate
from app.services import catalog, notifier, patient_records, rx_credential
from app.utils.timezone import utcnow

logger = logging.getLogger(__name__)

_UNPRESCRIBABLE = {MedicineStatus.DISCONTINUED, MedicineStatus.RECALLED}


@dataclass
class IssuedPrescription:
    prescription: Prescription
    qr_text: str
    warnings: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class VerifyResult:
    valid: bool
    expired: bool
    dispensable: bool
    prescription_id: Optional[int] = None
    status: Optional[RxStatus] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "expired": self.expired,
            "dispensable": self.dispensable,
            "prescription_id": self.prescription_id,
            "status": self.status,
        }


# ---------- Number generator ----------


def _generate_prescription_number(db: Session) -> str:
    """
    RX-YYYYMMDD-<seq>
    """
    today_str = utcnow().strftime("%Y%m%d")
    prefix = f"RX-{today_str}"
    last_number = (db.query(Prescription.prescription_number).filter(
        Prescription.prescription_number.like(f"{prefix}-%")).order_by(
            Prescription.prescription_number.desc()).first())
    next_seq = 1
    if last_number and last_number[0]:
        try:
            next_seq = int(last_number[0].split("-")[-1]) + 1
        except ValueError:
            next_seq = 1
    return f"{prefix}-{next_seq:04d}"


# ---------- Loading ----------


def get_prescription(db: Session, rx_id: int, *, lock: bool = False) -> Prescription:
    q = (db.query(Prescription).options(
        selectinload(Prescription.lines),
        selectinload(Prescription.dispense_events),
    ).filter(Prescription.id == rx_id))
    if lock:
        q = q.with_for_update()
    rx = q.first()
    if not rx:
        raise NotFound(f"Prescription {rx_id} not found.")
    return rx


# ---------- Safety checks ----------


def _safety_review(
    db: Session,
    data: PrescriptionCreate,
    profile: patient_records.PatientProfile,
) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """
    Returns (conflicts, warnings). Any conflict rejects the prescription.
    """
    med_ids = [l.medicine_id for l in data.lines]
    meds = catalog.get_medicines(db, med_ids)

    conflicts: List[Dict[str, Any]] = []
    warnings: List[Dict[str, Any]] = []

    for line in data.lines:
        med = meds[line.medicine_id]

        if med.status in _UNPRESCRIBABLE:
            conflicts.append(
                conflict_entry(
                    "unavailable",
                    f"{med.name} is {med.status.value.lower()} and cannot be prescribed",
                    med.id,
                ))

        for hit in catalog.allergy_matches(med, profile.allergens):
            conflicts.append(
                conflict_entry(
                    "allergy",
                    f"Patient is allergic to {hit['allergen']} ({med.name} contains {hit['ingredient']})",
                    med.id,
                    allergen=hit["allergen"],
                    ingredient=hit["ingredient"],
                ))

        for condition in catalog.contraindication_matches(med, profile.conditions):
            conflicts.append(
                conflict_entry(
                    "contraindication",
                    f"{med.name} is contraindicated in {condition}",
                    med.id,
                    condition=condition,
                ))

    for finding in catalog.find_interactions(db, med_ids):
        a, b = finding["pair"]
        entry = conflict_entry(
            "interaction",
            f"{meds[a].name} + {meds[b].name}: {finding['description'] or finding['severity'].value}",
            pair=[a, b],
            severity=finding["severity"].value,
            management=finding["management"],
        )
        if finding["severity"] in BLOCKING_SEVERITIES:
            conflicts.append(entry)
        else:
            warnings.append(entry)

    return conflicts, warnings


# ---------- Create ----------


def create_prescription(db: Session, data: PrescriptionCreate, actor: Actor) -> IssuedPrescription:
    """
    Safety-check, persist, sign and activate a prescription.

    Nothing is written when a conflict is found. Minor / moderate
    interactions are kept on the prescription as warnings.
    """
    profile = patient_records.get_profile(db, data.patient_id)
    conflicts, warnings = _safety_review(db, data, profile)
    if conflicts:
        logger.warning(
            "Prescription rejected patient=%s prescriber=%s conflicts=%s",
            data.patient_id, actor.subject_id, [c["type"] for c in conflicts])
        raise SafetyViolation("Prescription failed safety checks.", conflicts)

    validity_days = data.validity_days or settings.RX_DEFAULT_VALIDITY_DAYS
    issued_at = utcnow().replace(microsecond=0)

    rx = Prescription(
        prescription_number=_generate_prescription_number(db),
        patient_id=profile.patient_id,
        prescriber_id=actor.subject_id,
        status=RxStatus.DRAFT,
        diagnosis=data.diagnosis,
        notes=data.notes,
        issued_at=issued_at,
        valid_until=issued_at + timedelta(days=validity_days),
        interaction_warnings=warnings,
    )
    for idx, l in enumerate(data.lines, start=1):
        rx.lines.append(
            PrescriptionLine(
                line_no=idx,
                medicine_id=l.medicine_id,
                dosage=l.dosage,
                frequency=l.frequency,
                route=l.route,
                duration_days=l.duration_days,
                instructions=l.instructions,
                quantity=l.quantity,
                refills_allowed=l.refills_allowed,
                refills_remaining=l.refills_allowed + 1,
                dispensed_qty=0,
                status=RxLineStatus.ACTIVE,
            ))

    db.add(rx)
    flush_or_conflict(db)  # get rx.id for the payload

    payload = rx_credential.build_payload(rx, profile.patient_ref)
    signature = rx_credential.sign(payload)
    rx.credential_payload = rx_credential.canonical_json(payload)
    rx.signature = signature
    rx.status = RxStatus.ACTIVE

    commit_or_conflict(db)
    db.refresh(rx)

    logger.info("Prescription issued id=%s number=%s patient=%s lines=%s warnings=%s",
                rx.id, rx.prescription_number, rx.patient_id, len(rx.lines), len(warnings))
    notifier.notify(notifier.EVENT_RX_ISSUED, {
        "prescription_id": rx.id,
        "prescription_number": rx.prescription_number,
        "patient_id": rx.patient_id,
        "prescriber_id": rx.prescriber_id,
        "valid_until": rx.valid_until.isoformat(),
    })
    return IssuedPrescription(
        prescription=rx,
        qr_text=rx_credential.qr_text(payload, signature),
        warnings=warnings,
    )


def credential_of(rx: Prescription) -> Tuple[Dict[str, Any], str]:
    """Stored (payload, signature) of an issued prescription."""
    if not rx.credential_payload or not rx.signature:
        raise InvalidState(f"Prescription {rx.id} has no credential.")
    return json.loads(rx.credential_payload), rx.signature


def qr_text_for(rx: Prescription) -> str:
    payload, signature = credential_of(rx)
    return rx_credential.qr_text(payload, signature)


# ---------- Cancel ----------


def cancel_prescription(db: Session, rx_id: int, reason: str, actor: Actor) -> Prescription:
    rx = get_prescription(db, rx_id, lock=True)

    if rx.prescriber_id != actor.subject_id and not is_admin(actor):
        raise Forbidden("Only the issuing prescriber or an admin may cancel this prescription.")

    if rx.status not in OPEN_STATUSES:
        raise InvalidTransition(f"Cannot cancel a prescription that is {rx.status.value}.")

    old = rx.status
    rx.status = RxStatus.CANCELLED
    rx.cancel_reason = reason
    rx.cancelled_at = utcnow()
    rx.cancelled_by_id = actor.subject_id
    for line in rx.lines:
        if line.status != RxLineStatus.COMPLETED:
            line.status = RxLineStatus.CANCELLED

    commit_or_conflict(db)
    db.refresh(rx)
    logger.info("Prescription cancelled id=%s %s -> CANCELLED by=%s", rx.id, old.value, actor.subject_id)
    notifier.notify(notifier.EVENT_RX_CANCELLED, {
        "prescription_id": rx.id,
        "cancelled_by": actor.subject_id,
        "reason": reason,
    })
    return rx


# ---------- Verify ----------


def _is_overdue(rx: Prescription, now: datetime) -> bool:
    return now > rx.valid_until


def verify_against(
    rx: Prescription,
    payload: Dict[str, Any],
    signature: str,
    *,
    now: Optional[datetime] = None,
) -> VerifyResult:
    """
    valid: the presented signature signs the presented payload AND is the
    signature issued for this prescription (both constant-time compares).
    """
    now = now or utcnow()
    valid = bool(rx.signature) and rx_credential.signature_matches(payload, signature) \
        and hmac.compare_digest(rx.signature.encode("utf-8"), signature.encode("utf-8"))
    expired = rx.status == RxStatus.EXPIRED or _is_overdue(rx, now)
    dispensable = valid and not expired and rx.status in OPEN_STATUSES
    return VerifyResult(
        valid=valid,
        expired=expired,
        dispensable=dispensable,
        prescription_id=rx.id,
        status=rx.status,
    )


def verify(
    db: Session,
    payload: Dict[str, Any],
    signature: str,
    *,
    now: Optional[datetime] = None,
) -> VerifyResult:
    """
    Read-only check of a presented credential. Unknown prescriptions and
    malformed payloads come back as not valid rather than raising.
    """
    try:
        rx_id = rx_credential.prescription_id_of(payload)
    except VerificationFailed:
        return VerifyResult(valid=False, expired=False, dispensable=False)

    rx = db.get(Prescription, rx_id)
    if not rx:
        return VerifyResult(valid=False, expired=False, dispensable=False, prescription_id=rx_id)

    result = verify_against(rx, payload, signature, now=now)
    if not result.valid:
        logger.warning("Credential verification failed prescription=%s", rx_id)
    return result


def resolve_credential(credential: CredentialIn) -> Tuple[Dict[str, Any], str]:
    if credential.qr_text:
        return rx_credential.parse_scanned_credential(credential.qr_text)
    payload = dict(credential.payload or {})
    payload.pop("signature", None)
    return payload, credential.signature or ""


# ---------- Expiry ----------


def expire_if_overdue(db: Session, rx: Prescription, *, now: Optional[datetime] = None) -> bool:
    """
    Move an open, overdue prescription to EXPIRED and commit. Returns True
    when the transition happened.
    """
    now = now or utcnow()
    if rx.status not in OPEN_STATUSES or not _is_overdue(rx, now):
        return False
    old = rx.status
    rx.status = RxStatus.EXPIRED
    commit_or_conflict(db)
    logger.info("Prescription expired id=%s %s -> EXPIRED", rx.id, old.value)
    return True


def expire_overdue(db: Session, *, now: Optional[datetime] = None) -> List[int]:
    """Sweep every open prescription past its valid-until to EXPIRED."""
    now = now or utcnow()
    rows = (db.query(Prescription).filter(
        Prescription.status.in_(list(OPEN_STATUSES)),
        Prescription.valid_until < now,
    ).order_by(Prescription.id.asc()).with_for_update().all())
    for rx in rows:
        rx.status = RxStatus.EXPIRED
    commit_or_conflict(db)
    ids = [rx.id for rx in rows]
    if ids:
        logger.info("Expired %d overdue prescription(s): %s", len(ids), ids)
    return ids


def expiring_prescriptions(
    db: Session,
    days: Optional[int] = None,
    *,
    now: Optional[datetime] = None,
) -> List[Prescription]:
    """
    Open prescriptions whose validity ends within `days` (default
    RX_EXPIRING_ALERT_DAYS), soonest first. Overdue ones the sweep has not
    reached yet are included.
    """
    now = now or utcnow()
    if days is None:
        days = settings.RX_EXPIRING_ALERT_DAYS
    horizon = now + timedelta(days=int(days))
    return (db.query(Prescription).options(selectinload(Prescription.lines)).filter(
        Prescription.status.in_(list(OPEN_STATUSES)),
        Prescription.valid_until <= horizon,
    ).order_by(Prescription.valid_until.asc(), Prescription.id.asc()).all())


# ---------- Refill accounting ----------


def ensure_line_dispensable(line: PrescriptionLine) -> None:
    if line.status not in (RxLineStatus.ACTIVE, RxLineStatus.PARTIALLY_FILLED):
        raise InvalidState(f"Line {line.id} is {line.status.value} and cannot be dispensed.")
    if int(line.refills_remaining) <= 0:
        raise InvalidState(f"Line {line.id} has no fills remaining.")


def is_line_dispensable(line: PrescriptionLine) -> bool:
    try:
        ensure_line_dispensable(line)
    except InvalidState:
        return False
    return True


def line_status_for(line: PrescriptionLine) -> RxLineStatus:
    if line.status == RxLineStatus.CANCELLED:
        return RxLineStatus.CANCELLED
    if int(line.refills_remaining) == 0 and int(line.dispensed_qty) >= line.total_authorized_qty:
        return RxLineStatus.COMPLETED
    if int(line.dispensed_qty) > 0:
        return RxLineStatus.PARTIALLY_FILLED
    return RxLineStatus.ACTIVE


def apply_fill(line: PrescriptionLine, quantity: int) -> None:
    """
    Record one fill on a line: exactly one refill is used whatever the
    quantity handed over.
    """
    ensure_line_dispensable(line)
    quantity = int(quantity)
    if quantity <= 0 or quantity > int(line.quantity):
        raise InvalidState(
            f"Dispense quantity {quantity} must be between 1 and {line.quantity} for line {line.id}.")
    line.refills_remaining = int(line.refills_remaining) - 1
    line.dispensed_qty = int(line.dispensed_qty or 0) + quantity
    line.status = line_status_for(line)


def recompute_status(rx: Prescription) -> RxStatus:
    live = [l for l in rx.lines if l.status != RxLineStatus.CANCELLED]
    if live and all(l.status == RxLineStatus.COMPLETED for l in live):
        rx.status = RxStatus.COMPLETED
    elif any(int(l.dispensed_qty or 0) > 0 for l in live):
        rx.status = RxStatus.PARTIALLY_FILLED
    else:
        rx.status = RxStatus.ACTIVE
    return rx.status
