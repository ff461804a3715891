from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from carewatch.core.config import settings
from carewatch.core.db import init_db
from carewatch.core.logging import setup_logging
from carewatch.core.middleware import StructlogMiddleware
from carewatch.modules.alerts.router import router as alerts_router
from carewatch.modules.alerts.service import get_engine

setup_logging()
log = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup
    mongo_client = await init_db() if settings.MONGODB_URL else None
    if mongo_client is None:
        log.warning("mongodb not configured, alerts are kept in memory")
    app.state.mongo_client = mongo_client

    engine = get_engine()
    await engine.start(run_scheduler=settings.SCHEDULER_ENABLED)
    app.state.alert_engine = engine

    yield

    # Shutdown
    await engine.shutdown()
    if mongo_client is not None:
        mongo_client.close()


app = FastAPI(
    title=settings.PROJECT_NAME,
    description="""
    ## CareWatch Alerts API

    This API provides:
    * **Ingestion**: Sensor, inactivity and manual events become deduplicated alerts
    * **Delivery**: Alerts fan out over email, bot messaging and WhatsApp
    * **Lifecycle**: Acknowledge, resolve or flag alerts as false alarms

    ### Authentication
    Lifecycle endpoints require a Bearer token issued by the host platform.
    The ingestion webhook accepts a shared secret in `X-Webhook-Secret`.
    """,
    version="0.1.0",
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    lifespan=lifespan,
)

# Set all CORS enabled origins
if settings.BACKEND_CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[str(origin) for origin in settings.BACKEND_CORS_ORIGINS],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_middleware(StructlogMiddleware)

app.include_router(alerts_router, prefix=f"{settings.API_V1_STR}/alerts", tags=["alerts"])


@app.get("/health")
def health_check() -> dict[str, str]:
    return {"status": "ok"}
