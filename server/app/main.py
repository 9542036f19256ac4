from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.dependencies.redis import get_redis_client
from app.api.routes import health, jobs, letters, signing
from app.core.config import get_settings
from app.core.errors import LetterEngineError
from app.core.logging import clear_log_context, configure_logging, get_logger
from app.db.session import engine, init_models
from app.integrations.delivery import DeliveryClient
from app.integrations.esignature import build_provider_registry
from app.integrations.rendering import RenderingClient
from app.services.locks import KeyedLockRegistry


configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(application: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    logger.info("application.startup", environment=settings.environment)
    await init_models()
    async with get_redis_client(settings) as redis_client:
        if redis_client is not None:
            application.state.locks = KeyedLockRegistry(redis_client, timeout_seconds=settings.lock_timeout_seconds)
        yield
        await application.state.providers.close()
    await engine.dispose()
    logger.info("application.shutdown")


def create_application() -> FastAPI:
    settings = get_settings()
    application = FastAPI(title=settings.app_name, lifespan=lifespan)
    application.include_router(health.router)
    application.include_router(letters.router)
    application.include_router(signing.router)
    application.include_router(jobs.router)

    application.state.providers = build_provider_registry(settings)
    application.state.locks = KeyedLockRegistry(timeout_seconds=settings.lock_timeout_seconds)
    application.state.renderer = (
        RenderingClient(settings.renderer_url, timeout_seconds=settings.collaborator_timeout_seconds)
        if settings.renderer_url
        else None
    )
    application.state.delivery = (
        DeliveryClient(settings.delivery_url, timeout_seconds=settings.collaborator_timeout_seconds)
        if settings.delivery_url
        else None
    )

    if settings.allowed_origins:
        application.add_middleware(
            CORSMiddleware,
            allow_origins=[str(origin) for origin in settings.allowed_origins],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @application.middleware("http")
    async def reset_log_context(request: Request, call_next):
        clear_log_context()
        return await call_next(request)

    @application.exception_handler(LetterEngineError)
    async def engine_error_handler(request: Request, exc: LetterEngineError) -> JSONResponse:
        logger.info("request.rejected", path=request.url.path, error=exc.code, message=exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    return application


app = create_application()
