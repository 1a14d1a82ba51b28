from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from signdesk.api.routes import documents, health, signature, webhooks
from signdesk.core.config import get_settings
from signdesk.core.logging import configure_logging, get_logger
from signdesk.db.session import lifespan
from signdesk.integrations.esignature.base import (
    ConfigurationError,
    DocumentValidationError,
    RateLimitError,
    RateLimitInEffectError,
    SignatureError,
)
from signdesk.services.document_repository import ConcurrentUpdateError, DocumentNotFoundError
from signdesk.services.state_machine import InvalidTransitionError


configure_logging()
logger = get_logger(__name__)


def _error(status_code: int, message: str, code: str | None = None, headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": message, "code": code}, headers=headers)


def register_exception_handlers(application: FastAPI) -> None:
    @application.exception_handler(DocumentNotFoundError)
    async def document_not_found_handler(request: Request, exc: DocumentNotFoundError) -> JSONResponse:  # noqa: ARG001
        return _error(status.HTTP_404_NOT_FOUND, str(exc), "DOCUMENT_NOT_FOUND")

    @application.exception_handler(InvalidTransitionError)
    async def invalid_transition_handler(request: Request, exc: InvalidTransitionError) -> JSONResponse:  # noqa: ARG001
        return _error(status.HTTP_409_CONFLICT, str(exc), "INVALID_TRANSITION")

    @application.exception_handler(ConcurrentUpdateError)
    async def concurrent_update_handler(request: Request, exc: ConcurrentUpdateError) -> JSONResponse:  # noqa: ARG001
        return _error(status.HTTP_409_CONFLICT, str(exc), "CONCURRENT_UPDATE")

    @application.exception_handler(SignatureError)
    async def signature_error_handler(request: Request, exc: SignatureError) -> JSONResponse:  # noqa: ARG001
        if isinstance(exc, DocumentValidationError):
            return _error(status.HTTP_400_BAD_REQUEST, exc.error_message, exc.error_code)
        if isinstance(exc, ConfigurationError):
            logger.error("provider.not_configured", error=exc.error_message)
            return _error(status.HTTP_503_SERVICE_UNAVAILABLE, exc.error_message, exc.error_code)
        if isinstance(exc, RateLimitError):
            return _error(
                status.HTTP_429_TOO_MANY_REQUESTS,
                exc.error_message,
                exc.error_code,
                headers={"Retry-After": str(exc.retry_after)},
            )
        if isinstance(exc, RateLimitInEffectError):
            return _error(
                status.HTTP_429_TOO_MANY_REQUESTS,
                exc.error_message,
                exc.error_code,
                headers={"Retry-After": str(max(int(exc.blocked_for_seconds), 1))},
            )
        logger.error("provider.request_failed", error=exc.error_message, error_code=exc.error_code)
        return _error(status.HTTP_502_BAD_GATEWAY, exc.error_message, exc.error_code)


def create_application() -> FastAPI:
    settings = get_settings()
    application = FastAPI(title=settings.app_name, lifespan=lifespan)
    application.include_router(health.router)
    application.include_router(documents.router)
    application.include_router(signature.router)
    application.include_router(webhooks.router)
    register_exception_handlers(application)

    if settings.allowed_origins:
        application.add_middleware(
            CORSMiddleware,
            allow_origins=[str(origin) for origin in settings.allowed_origins],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    return application


app = create_application()
