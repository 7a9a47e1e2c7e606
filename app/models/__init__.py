# app/models/__init__.py
from .medicine import (
    Medicine,
    MedicineIngredient,
    MedicineContraindication,
    MedicineInteraction,
)
from .inventory import (
    InventoryBatch,
    StockMovement,
    StockReservation,
    StockReservationLine,
)
from .patient import Patient, PatientAllergy, PatientCondition
from .prescription import (
    Prescription,
    PrescriptionLine,
    DispenseEvent,
    DispenseEventLine,
)

__all__ = [
    "Medicine",
    "MedicineIngredient",
    "MedicineContraindication",
    "MedicineInteraction",
    "InventoryBatch",
    "StockMovement",
    "StockReservation",
    "StockReservationLine",
    "Patient",
    "PatientAllergy",
    "PatientCondition",
    "Prescription",
    "PrescriptionLine",
    "DispenseEvent",
    "DispenseEventLine",
]
