"""
API Router
Combines all endpoint routers
"""
from fastapi import APIRouter
from outreach.api.v1.endpoints import (
    calls,
    sms,
    webhooks,
)

api_router = APIRouter()

# Provider callbacks (no tenant identity)
api_router.include_router(webhooks.router)

# Tenant-scoped dispatch
api_router.include_router(sms.router)
api_router.include_router(calls.router)
