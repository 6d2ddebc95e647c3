"""API v1 module - consolidated router for all endpoints."""

from fastapi import APIRouter
from requestflow.api.v1.routes import (
    health_router,
    forms_router,
    workflow_definitions_router,
    workflow_instances_router,
    requests_router,
    admin_router,
)

# Create main v1 router
router = APIRouter()

# Include all route modules
router.include_router(health_router)
router.include_router(forms_router)
router.include_router(workflow_definitions_router)
router.include_router(workflow_instances_router)
router.include_router(requests_router)
router.include_router(admin_router)

__all__ = ['router']
