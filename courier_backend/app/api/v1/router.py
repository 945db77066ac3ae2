"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from courier_backend.app.api.v1.endpoints import (
    hub_parcels, rider_parcels, merchant_parcels,
    rider_settlements, transfer_records,
    merchant_finance, invoices,
)

router = APIRouter()

# Parcel workflows
router.include_router(hub_parcels.router)
router.include_router(rider_parcels.router)
router.include_router(merchant_parcels.router)

# Rider cash settlement
router.include_router(rider_settlements.hub_router)
router.include_router(rider_settlements.admin_router)

# Hub remittance records
router.include_router(transfer_records.hub_router)
router.include_router(transfer_records.admin_router)

# Merchant money
router.include_router(merchant_finance.router)
router.include_router(invoices.router)
