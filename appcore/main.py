from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import structlog

from appcore.core.config import get_settings
from appcore.core.exceptions import ApplicationServiceError
from appcore.core.telemetry import setup_logging

settings = get_settings()

# Setup logging BEFORE importing endpoints
setup_logging()
logger = structlog.get_logger()

from appcore.api.v1.endpoints import apps


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    # Import models to register them with Base
    from appcore.models import application, git_auth, page, policy
    from appcore.core.db import engine, Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Database tables initialized")
    logger.info("Application service startup complete")
    yield
    # Shutdown
    await engine.dispose()
    logger.info("Application service shutdown")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    lifespan=lifespan,
)


@app.exception_handler(ApplicationServiceError)
async def application_service_error_handler(
    request: Request, exc: ApplicationServiceError
):
    logger.info(
        "Request failed",
        path=request.url.path,
        error=type(exc).__name__,
        status_code=exc.status_code,
    )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


app.include_router(apps.router, prefix=f"{settings.API_V1_STR}/apps", tags=["apps"])


@app.get("/health")
async def health_check():
    return {
        "status": "ok",
        "service": settings.DD_SERVICE,
        "version": settings.VERSION,
    }


@app.get("/")
async def root():
    return {"message": "Application Management Service Operating"}
