"""API v1 router aggregation.

Keep `backend.app.main` thin by collecting all v1 routers here.

All endpoint files define their own prefix and tags.
"""

from fastapi import APIRouter

from backend.app.api.v1.endpoints.billing import router as billing_router

router = APIRouter(prefix="/api/v1")

# ============================================
# Billing & Entitlements
# ============================================
router.include_router(billing_router)
