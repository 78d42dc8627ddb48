from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from pharmatrace import __version__
from pharmatrace.config import get_settings
from pharmatrace.errors import (
    BatchNotFoundError,
    DuplicateBatchError,
    LedgerConfigurationError,
    LedgerError,
    LedgerUnavailableError,
    MirrorConflictError,
    QRDecodeError,
    TransientLedgerError,
    ValidationError,
)
from pharmatrace.logging_config import configure_logging, init_sentry
from pharmatrace.routes import router
from pharmatrace.service import ProvenanceService

logger = logging.getLogger(__name__)

# Most specific first; handlers are matched along the exception's MRO.
ERROR_STATUS = (
    (DuplicateBatchError, 409),
    (QRDecodeError, 400),
    (ValidationError, 422),
    (BatchNotFoundError, 404),
    (LedgerUnavailableError, 503),
    (TransientLedgerError, 503),
    (LedgerError, 502),
    (MirrorConflictError, 409),
    (LedgerConfigurationError, 500),
)


def _error_handler(status_code):
    async def handler(request: Request, exc: Exception):
        if status_code >= 500:
            logger.warning(
                f"{request.method} {request.url.path} failed: {exc}",
                extra={'status_code': status_code, 'error': type(exc).__name__}
            )
        body = {"error": type(exc).__name__, "detail": str(exc)}
        field = getattr(exc, "field", None)
        if field:
            body["field"] = field
        reason = getattr(exc, "reason", None)
        if reason is not None and isinstance(exc, LedgerError):
            body["reason"] = reason.value
        return JSONResponse(status_code=status_code, content=body)
    return handler


def create_app(settings=None, service=None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings)
        if init_sentry(settings):
            logger.info("Sentry initialized")
        app.state.service = service or ProvenanceService(settings)
        logger.info("Starting provenance service...")
        await app.state.service.start()
        yield
        logger.info("Stopping provenance service...")
        await app.state.service.stop()
        logger.info("Goodbye")

    app = FastAPI(
        title=settings.PROJECT_NAME,
        description=settings.PROJECT_DESCRIPTION,
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    for error_class, status_code in ERROR_STATUS:
        app.add_exception_handler(error_class, _error_handler(status_code))

    app.include_router(router, prefix=settings.API_V1_PREFIX)

    @app.get("/health")
    async def health(request: Request):
        info = await request.app.state.service.health()
        return {"status": "ok", "version": __version__, **info}

    return app


app = create_app()
