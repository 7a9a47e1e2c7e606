# FILE: app/schemas/prescription.py
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ConfigDict, model_validator

from app.core.config import settings
from app.models.prescription import RxLineStatus, RxStatus

# ---------- Rx Lines ----------


class RxLineIn(BaseModel):
    medicine_id: int
    dosage: str = Field(..., min_length=1, max_length=64)  # "1 tab", "5 ml"
    quantity: int = Field(..., gt=0)  # per fill
    refills_allowed: int = Field(0, ge=0, le=settings.RX_MAX_REFILLS)

    frequency: Optional[str] = None  # BD, TDS, 1-0-1
    route: Optional[str] = None
    duration_days: Optional[int] = Field(None, gt=0)
    instructions: Optional[str] = None


class RxLineOut(BaseModel):
    id: int
    line_no: int
    medicine_id: int

    dosage: str
    frequency: Optional[str] = None
    route: Optional[str] = None
    duration_days: Optional[int] = None
    instructions: Optional[str] = None

    quantity: int
    refills_allowed: int
    refills_remaining: int
    dispensed_qty: int
    status: RxLineStatus

    model_config = ConfigDict(from_attributes=True)


# ---------- Prescription ----------


class PrescriptionCreate(BaseModel):
    patient_id: int
    lines: List[RxLineIn] = Field(..., min_length=1)
    validity_days: Optional[int] = Field(None, gt=0, le=365)
    diagnosis: Optional[str] = None
    notes: Optional[str] = None

    @model_validator(mode="after")
    def _unique_medicines(self):
        ids = [l.medicine_id for l in self.lines]
        if len(ids) != len(set(ids)):
            raise ValueError("Each medicine may appear only once per prescription")
        return self


class CancelIn(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)


class CredentialIn(BaseModel):
    """
    What the pharmacist presents: either the raw scanned QR text, or the
    payload object and signature already split apart.
    """
    qr_text: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    signature: Optional[str] = None

    @model_validator(mode="after")
    def _one_form(self):
        if self.qr_text:
            return self
        if self.payload is None or not self.signature:
            raise ValueError("Provide qr_text, or payload and signature")
        return self


class VerifyOut(BaseModel):
    valid: bool
    expired: bool
    dispensable: bool
    prescription_id: Optional[int] = None
    status: Optional[RxStatus] = None


class PrescriptionOut(BaseModel):
    id: int
    prescription_number: str
    patient_id: int
    prescriber_id: str
    status: RxStatus

    issued_at: datetime
    valid_until: datetime
    diagnosis: Optional[str] = None
    notes: Optional[str] = None

    signature: Optional[str] = None
    interaction_warnings: List[Dict[str, Any]] = []

    cancel_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by_id: Optional[str] = None

    lines: List[RxLineOut] = []

    model_config = ConfigDict(from_attributes=True)


class PrescriptionIssuedOut(BaseModel):
    prescription: PrescriptionOut
    qr_text: str
    warnings: List[Dict[str, Any]] = []


# ---------- Dispense ----------


class DispenseLineIn(BaseModel):
    line_id: int
    # defaults to the line's per-fill quantity
    quantity: Optional[int] = Field(None, gt=0)


class DispenseIn(BaseModel):
    credential: CredentialIn
    # empty -> every line that can still be filled
    lines: List[DispenseLineIn] = Field(default_factory=list)
    notes: Optional[str] = None

    @model_validator(mode="after")
    def _unique_lines(self):
        ids = [l.line_id for l in self.lines]
        if len(ids) != len(set(ids)):
            raise ValueError("Duplicate line_id in dispense request")
        return self


class DispenseLineOut(BaseModel):
    id: int
    prescription_line_id: int
    medicine_id: int
    batch_id: int
    batch_no: str
    expiry_date: date
    quantity: int
    unit_cost: Decimal
    line_cost: Decimal
    refills_remaining_after: int

    model_config = ConfigDict(from_attributes=True)


class DispenseEventOut(BaseModel):
    id: int
    prescription_id: int
    pharmacist_id: str
    dispensed_at: datetime
    notes: Optional[str] = None
    total_cost: Decimal
    lines: List[DispenseLineOut] = []

    model_config = ConfigDict(from_attributes=True)


class DispenseResultOut(BaseModel):
    event: DispenseEventOut
    prescription_status: RxStatus
