"""API v1 route modules."""

from requestflow.api.v1.routes.health import router as health_router
from requestflow.api.v1.routes.forms import router as forms_router
from requestflow.api.v1.routes.workflow_definitions import router as workflow_definitions_router
from requestflow.api.v1.routes.workflow_instances import router as workflow_instances_router
from requestflow.api.v1.routes.requests import router as requests_router
from requestflow.api.v1.routes.admin import router as admin_router

__all__ = [
    'health_router',
    'forms_router',
    'workflow_definitions_router',
    'workflow_instances_router',
    'requests_router',
    'admin_router',
]
