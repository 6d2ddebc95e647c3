"""
requestflow API entry point.

Run directly for a development server, or point uvicorn at `main:app`.
"""

import logging
import os

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from requestflow.api.v1 import router as api_v1_router
from requestflow.config.settings import settings
from requestflow.core.request_service import InvalidRequestTransitionError
from requestflow.core.startup import lifespan

structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG if settings.debug else logging.INFO),
    logger_factory=structlog.PrintLoggerFactory(),
)

logger = structlog.get_logger()

app = FastAPI(
    title="requestflow",
    description="Workflow-driven approval and apply pipeline for data-change requests",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(InvalidRequestTransitionError)
async def invalid_transition_handler(request: Request, exc: InvalidRequestTransitionError):
    # A status move the lifecycle never allows is a conflict with current state
    logger.warning("invalid_request_transition", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=409, content={"detail": str(exc)})


app.include_router(api_v1_router)


if __name__ == "__main__":
    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", 8000))
    reload = os.getenv("RELOAD", "false").lower() == "true"

    logger.info("starting_server", host=host, port=port, reload=reload, environment=settings.environment)
    uvicorn.run("main:app" if reload else app, host=host, port=port, reload=reload)
