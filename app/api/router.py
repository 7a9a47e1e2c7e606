# app/api/router.py
from fastapi import APIRouter
from app.api import (
    routes_medicines,
    routes_inventory,
    routes_prescriptions,
)

api_router = APIRouter()

# Catalog
api_router.include_router(routes_medicines.router)

# Stock
api_router.include_router(routes_inventory.router)

# Prescribing / dispensing
api_router.include_router(routes_prescriptions.router)
