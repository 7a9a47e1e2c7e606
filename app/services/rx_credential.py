# FILE: app/services/rx_credential.py
"""
Signed prescription credential.

The credential is the canonical JSON payload of a prescription plus an
HMAC-SHA256 signature over it. The QR code printed on the prescription
carries both as one JSON object:

    {prescriptionId, patientRef, doctorRef,
     medicines: [{id, dosage, quantity, refills}],
     issuedAt, validUntil, signature}

Canonical form is compact JSON with sorted keys, so the same payload
always signs to the same bytes regardless of key order on the wire.
"""
from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any, Dict, Optional, Tuple

from app.core.config import settings
from app.core.exceptions import VerificationFailed
from app.models.prescription import Prescription
from app.utils.timezone import iso_z

PAYLOAD_KEYS = (
    "prescriptionId",
    "patientRef",
    "doctorRef",
    "medicines",
    "issuedAt",
    "validUntil",
)


def build_payload(rx: Prescription, patient_ref: str) -> Dict[str, Any]:
    return {
        "prescriptionId": rx.id,
        "patientRef": patient_ref,
        "doctorRef": rx.prescriber_id,
        "medicines": [{
            "id": line.medicine_id,
            "dosage": line.dosage,
            "quantity": int(line.quantity),
            "refills": int(line.refills_allowed),
        } for line in sorted(rx.lines, key=lambda l: l.line_no)],
        "issuedAt": iso_z(rx.issued_at),
        "validUntil": iso_z(rx.valid_until),
    }


def canonical_json(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sign(payload: Dict[str, Any], secret: Optional[str] = None) -> str:
    key = (secret if secret is not None else settings.RX_SIGNING_SECRET).encode("utf-8")
    return hmac.new(key, canonical_json(payload).encode("utf-8"), hashlib.sha256).hexdigest()


def signature_matches(payload: Dict[str, Any], signature: str, secret: Optional[str] = None) -> bool:
    """Constant-time check of `signature` against the payload."""
    if not isinstance(signature, str) or not signature:
        return False
    expected = sign(payload, secret)
    return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))


def qr_text(payload: Dict[str, Any], signature: str) -> str:
    body = dict(payload)
    body["signature"] = signature
    return canonical_json(body)


def parse_scanned_credential(text: str) -> Tuple[Dict[str, Any], str]:
    """
    Scanned QR text -> (payload, signature).
    Anything that is not a JSON object carrying a signature and a
    prescription id is a VerificationFailed.
    """
    try:
        body = json.loads(text)
    except (TypeError, ValueError) as e:
        raise VerificationFailed("Credential is not valid JSON.") from e
    if not isinstance(body, dict):
        raise VerificationFailed("Credential must be a JSON object.")

    signature = body.pop("signature", None)
    if not isinstance(signature, str) or not signature:
        raise VerificationFailed("Credential carries no signature.")
    if "prescriptionId" not in body:
        raise VerificationFailed("Credential carries no prescription id.")
    return body, signature


def prescription_id_of(payload: Dict[str, Any]) -> int:
    raw = payload.get("prescriptionId")
    try:
        return int(raw)
    except (TypeError, ValueError) as e:
        raise VerificationFailed("Credential carries an invalid prescription id.") from e
