# FILE: app/schemas/medicine.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator

from app.models.medicine import (
    ContraindicationSeverity,
    InteractionSeverity,
    MedicineStatus,
)

# ---------- Ingredients / contraindications ----------


class IngredientIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    # allergy family, e.g. "Penicillin" for amoxicillin
    ingredient_class: str = Field("", max_length=255)


class IngredientOut(BaseModel):
    id: int
    name: str
    ingredient_class: str

    model_config = ConfigDict(from_attributes=True)


class ContraindicationIn(BaseModel):
    condition: str = Field(..., min_length=1, max_length=255)
    severity: ContraindicationSeverity = ContraindicationSeverity.ABSOLUTE
    description: str = ""


class ContraindicationOut(BaseModel):
    id: int
    condition: str
    severity: ContraindicationSeverity
    description: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


# ---------- Medicine ----------


class MedicineCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    generic_name: str = Field(..., min_length=1, max_length=255)
    brand_name: str = ""
    strength: str = ""
    dosage_form: str = ""
    drug_class: str = ""
    unit: str = "unit"

    is_controlled: bool = False
    status: MedicineStatus = MedicineStatus.ACTIVE

    unit_price: Decimal = Field(Decimal("0"), ge=0)
    reorder_level: int = Field(0, ge=0)
    minimum_stock: int = Field(0, ge=0)

    ingredients: List[IngredientIn] = Field(default_factory=list)
    contraindications: List[ContraindicationIn] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_levels(self):
        if self.minimum_stock > self.reorder_level:
            raise ValueError("minimum_stock cannot exceed reorder_level")
        names = [i.name.strip().lower() for i in self.ingredients]
        if len(names) != len(set(names)):
            raise ValueError("Duplicate ingredient names")
        return self


class MedicineOut(BaseModel):
    id: int
    code: str
    name: str
    generic_name: str
    brand_name: Optional[str] = None
    strength: str
    dosage_form: str
    drug_class: Optional[str] = None
    unit: Optional[str] = None

    is_controlled: bool
    status: MedicineStatus

    unit_price: Decimal
    reorder_level: int
    minimum_stock: int

    ingredients: List[IngredientOut] = []
    contraindications: List[ContraindicationOut] = []

    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ---------- Interactions ----------


class InteractionCreate(BaseModel):
    medicine_a_id: int
    medicine_b_id: int
    severity: InteractionSeverity
    description: str = ""
    management: str = ""

    @model_validator(mode="after")
    def _distinct(self):
        if self.medicine_a_id == self.medicine_b_id:
            raise ValueError("An interaction needs two different medicines")
        return self


class InteractionOut(BaseModel):
    id: int
    medicine_a_id: int
    medicine_b_id: int
    severity: InteractionSeverity
    description: str
    management: str

    model_config = ConfigDict(from_attributes=True)


class InteractionCheckIn(BaseModel):
    medicine_ids: List[int] = Field(..., min_length=1)

    @field_validator("medicine_ids")
    @classmethod
    def _dedupe(cls, v: List[int]) -> List[int]:
        return sorted(set(v))


class InteractionFinding(BaseModel):
    pair: List[int]
    severity: InteractionSeverity
    description: str
    management: str = ""
