# FILE: app/schemas/inventory.py
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field, ConfigDict, field_validator

from app.models.inventory import BatchStatus, MovementType

# ---------- Batches ----------


class BatchReceiveIn(BaseModel):
    medicine_id: int
    batch_no: str = Field(..., min_length=1, max_length=100)
    expiry_date: date
    quantity: int = Field(..., gt=0)
    unit_cost: Decimal = Field(Decimal("0"), ge=0)
    supplier: str = ""
    manufacturer: str = ""
    notes: str = ""

    @field_validator("batch_no")
    @classmethod
    def _strip_batch_no(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("batch_no is required")
        return v


class BatchOut(BaseModel):
    id: int
    medicine_id: int
    batch_no: str
    expiry_date: date

    on_hand_qty: int
    reserved_qty: int
    available_qty: int

    unit_cost: Decimal
    supplier: Optional[str] = None
    manufacturer: Optional[str] = None
    status: BatchStatus
    received_at: datetime
    version: int

    # derived at read time
    days_until_expiry: Optional[int] = None
    expiry_status: Optional[str] = None
    total_value: Optional[Decimal] = None

    model_config = ConfigDict(from_attributes=True)


class StockAdjustIn(BaseModel):
    counted_qty: int = Field(..., ge=0)
    notes: str = Field(..., min_length=1, max_length=1000)


class BatchStatusIn(BaseModel):
    status: BatchStatus
    notes: str = ""


class BatchExpireIn(BaseModel):
    notes: str = ""


# ---------- Movements / summaries ----------


class MovementOut(BaseModel):
    id: int
    batch_id: int
    medicine_id: int
    movement_type: MovementType
    quantity_change: int
    balance_after: int
    moved_at: datetime
    actor_id: Optional[str] = None
    prescription_id: Optional[int] = None
    dispense_event_id: Optional[int] = None
    reservation_id: Optional[int] = None
    notes: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class StockSummaryOut(BaseModel):
    medicine_id: int
    medicine_name: str
    available: int
    on_hand: int
    reserved: int
    reorder_level: int
    minimum_stock: int
    stock_status: str
    batches: List[BatchOut] = []


class LowStockOut(BaseModel):
    medicine_id: int
    medicine_name: str
    available: int
    reorder_level: int
    minimum_stock: int
    stock_status: str
