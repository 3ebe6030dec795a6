"""FastAPI application factory for PharmaSeal."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from pharmaseal.common.config import get_settings
from pharmaseal.common.exceptions import PharmaSealError
from pharmaseal.common.logging import get_logger, setup_logging
from pharmaseal.common.schemas import Envelope, HealthResponse, fail, ok

logger = get_logger("app")


def _error_response(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=fail(code, message).model_dump(mode="json"),
    )


def create_app() -> FastAPI:
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        setup_logging(settings.log_level)
        from pharmaseal.deps import get_db, get_lifecycle_manager
        db = get_db()
        await db.init()
        await db.create_all()
        logger.info(
            "PharmaSeal started",
            extra={"environment": settings.environment,
                   "ledger_backend": settings.ledger_backend,
                   "document_store_backend": settings.document_store_backend},
        )
        yield
        # Shutdown
        await get_lifecycle_manager().drain()
        await db.close()

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(PharmaSealError)
    async def pharmaseal_error_handler(request: Request, exc: PharmaSealError):
        if exc.http_status >= 500:
            logger.error(
                "Request failed",
                extra={"path": request.url.path, "code": exc.code, "error": exc.message},
            )
        return _error_response(exc.http_status, exc.code, exc.message or exc.code)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        message = f"{location}: {first.get('msg', 'invalid request')}" if location else "Invalid request"
        return _error_response(400, "VALIDATION_ERROR", message)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error", extra={"path": request.url.path})
        return _error_response(500, "INTERNAL_ERROR", "Internal server error")

    @app.get("/health", response_model=Envelope)
    async def health():
        return ok(HealthResponse(version=settings.api_version))

    # Mount routers
    from pharmaseal.auth.router import router as auth_router
    from pharmaseal.batches.router import router as batch_router
    from pharmaseal.stakeholders.router import router as stakeholder_router

    prefix = settings.api_prefix
    app.include_router(auth_router, prefix=prefix, tags=["auth"])
    app.include_router(batch_router, prefix=prefix, tags=["batches"])
    app.include_router(stakeholder_router, prefix=prefix, tags=["stakeholders"])

    return app
