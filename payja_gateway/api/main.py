"""FastAPI application factory"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from payja_gateway.api.middleware import MetricsMiddleware, RequestIDMiddleware
from payja_gateway.api.v1 import history, partners, ussd
from payja_gateway.config import settings
from payja_gateway.infrastructure.database.session import init_db
from payja_gateway.infrastructure.observability.logging import setup_logging

# Setup structured logging
setup_logging(settings.log_level)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


def create_app(create_tables: bool = True) -> FastAPI:
    """Create and configure FastAPI application"""
    app = FastAPI(
        title="PayJA USSD Gateway",
        description="USSD registration and micro-loan origination service",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan if create_tables else None,
    )

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    # Health check endpoint
    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": settings.service_name}

    # Prometheus metrics endpoint
    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # USSD gateway callbacks live at the root, everything else under /v1
    app.include_router(ussd.router, tags=["ussd"])
    app.include_router(history.router, prefix="/v1", tags=["loans"])
    app.include_router(partners.router, prefix="/v1", tags=["partners"])

    return app


app = create_app()
