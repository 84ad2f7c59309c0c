"""
API router - aggregates all route modules of the main application.
"""
from fastapi import APIRouter
from src.api.webhooks import router as webhooks_router
from src.api.diagnostics import router as diagnostics_router
from src.api.product_mappings import router as product_mappings_router
from src.api.health import router as health_router

api_router = APIRouter()
api_router.include_router(webhooks_router)
api_router.include_router(diagnostics_router)
api_router.include_router(product_mappings_router)
api_router.include_router(health_router)
