"""API routes package."""

from fastapi import APIRouter

from autocheckout.api.routes import auto_checkout

# Main API router
api_router = APIRouter(prefix="/api/v1")

# Include route modules
api_router.include_router(auto_checkout.router)
