import asyncio
from contextlib import asynccontextmanager

import uvicorn
from fastapi import Depends, FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from signaturehub.api.v1 import index
from signaturehub.api.v1 import requests
from signaturehub.api.v1 import packages
from signaturehub.api.v1 import templates
from signaturehub.api.v1 import jurisdictions
from signaturehub.api.v1 import sign
from signaturehub.api.v1 import status as status_page

from signaturehub.core.config import settings
from signaturehub.core.dependencies import limit_tenant_api
from signaturehub.core.logging import setup_logging
from signaturehub.db.core import init_db
from signaturehub.services.expiration import run_expiry_sweep

setup_logging()


async def _expiry_sweep_task():
    """Periodically expire overdue requests and packages."""
    while True:
        await asyncio.sleep(settings.expiry_check_interval_minutes * 60)
        try:
            await asyncio.to_thread(run_expiry_sweep)
        except Exception as e:
            logger.error(f"Expiry sweep error: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {settings.app_name} (demo_mode={settings.demo_mode})")
    if settings.auto_create_tables:
        init_db()

    sweep_task = asyncio.create_task(_expiry_sweep_task())
    logger.info(f"Expiry sweep started (interval: {settings.expiry_check_interval_minutes} min)")

    yield

    sweep_task.cancel()
    try:
        await sweep_task
    except asyncio.CancelledError:
        pass
    logger.info("Expiry sweep stopped")


app = FastAPI(title=settings.app_name, lifespan=lifespan)

# Middlewares
origins = []

if settings.allowed_hosts:
    origins = settings.allowed_hosts.split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


# Register routes
tenant_limits = [Depends(limit_tenant_api)]

app.include_router(index.router, prefix="/api/v1")
app.include_router(requests.router, prefix="/api/v1/requests", tags=["Requests"], dependencies=tenant_limits)
app.include_router(packages.router, prefix="/api/v1/packages", tags=["Packages"], dependencies=tenant_limits)
app.include_router(templates.router, prefix="/api/v1/templates", tags=["Templates"], dependencies=tenant_limits)
app.include_router(
    jurisdictions.router, prefix="/api/v1/jurisdictions", tags=["Jurisdictions"], dependencies=tenant_limits)

# Signer links are built as {public_url}/sign/{token}
app.include_router(sign.router, prefix="/sign", tags=["Signing"])
app.include_router(status_page.router, prefix="/api/v1/status", tags=["Status"])

if __name__ == "__main__":
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_config=None,
        log_level=None,
    )
