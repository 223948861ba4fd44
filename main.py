#!/usr/bin/env python3
"""
vite-builder: FastAPI service that builds front-end projects into zip artifacts.
API key authentication required for all endpoints except /health and /version.
"""
import platform
import shutil
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.openapi.utils import get_openapi

from app.api.admin import router as admin_router
from app.api.builds import router as builds_router
from app.api.metrics import router as metrics_router
from app.core.artifact_store import artifact_store
from app.core.build_logs import log_broadcaster
from app.core.build_runner import WorkspaceManager
from app.core.config import get_config
from app.core.jobs import job_registry
from app.core.logging import setup_logging
from app.core.request_logging import RequestLoggingMiddleware
from app.core.security import APIKeyMiddleware, PUBLIC_PATHS
from app.db.database import init_db
from app.worker import WorkerPool

config = get_config()

# Setup structured JSON logging
setup_logging(config.log_level)

# Initialize database on startup
init_db()

# Run cleanup at startup (safe, won't crash)
artifact_store.run_startup_cleanup()
WorkspaceManager().cleanup_old_workspaces()

# Jobs dropped by the history cap take their log and artifact with them
job_registry.on_drop(log_broadcaster.delete)
job_registry.on_drop(artifact_store.delete_artifact)

SERVICE_NAME = "vite-builder"
VERSION = "1.0.0"

worker_pool = WorkerPool(size=config.workers)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if config.start_workers:
        worker_pool.start()
    yield
    if config.start_workers:
        worker_pool.stop()


# Create app
app = FastAPI(
    title=SERVICE_NAME,
    description="Builds submitted front-end projects and returns zip artifacts",
    version=VERSION,
    lifespan=lifespan,
)


def custom_openapi():
    """Custom OpenAPI schema with security schemes for Swagger UI."""
    if app.openapi_schema:
        return app.openapi_schema

    openapi_schema = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        routes=app.routes,
    )

    openapi_schema.setdefault("components", {})["securitySchemes"] = {
        "apiKeyHeader": {
            "type": "apiKey",
            "in": "header",
            "name": "X-API-Key",
            "description": "API key authentication via X-API-Key header",
        },
        "adminKeyHeader": {
            "type": "apiKey",
            "in": "header",
            "name": "X-Admin-Key",
            "description": "Admin key for /admin endpoints",
        },
    }

    for path, path_item in openapi_schema["paths"].items():
        if path in PUBLIC_PATHS:
            continue
        scheme = "adminKeyHeader" if path.startswith("/admin/") else "apiKeyHeader"
        for method in path_item.values():
            if isinstance(method, dict):
                method["security"] = [{scheme: []}]

    app.openapi_schema = openapi_schema
    return app.openapi_schema


app.openapi = custom_openapi

# Add authentication middleware
app.add_middleware(APIKeyMiddleware)

# Add request logging middleware last so it wraps auth (rejections are logged too)
app.add_middleware(RequestLoggingMiddleware)

# Include routes
app.include_router(builds_router)
app.include_router(admin_router)
app.include_router(metrics_router)


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/version")
def version():
    """Service and toolchain versions."""
    node = shutil.which("node")
    return {
        "name": SERVICE_NAME,
        "version": VERSION,
        "python": platform.python_version(),
        "node_available": node is not None,
    }


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=config.port)
