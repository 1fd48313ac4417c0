import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from sqlalchemy import text
from starlette.exceptions import HTTPException as StarletteHTTPException

from campaign_ingest.config import settings
from campaign_ingest.db.base import engine
from campaign_ingest.db.repositories.campaigns import CampaignNotFound, InvalidCampaignInput
from campaign_ingest.routers import campaigns
from campaign_ingest.services.campaign_ingestion import MalformedRequest, Unauthorized
from campaign_ingest.services.media_storage import MediaStorageConfigurationError

logger = logging.getLogger(__name__)


def _error(status_code: int, message: str) -> ORJSONResponse:
    return ORJSONResponse(status_code=status_code, content={"error": message})


def create_app() -> FastAPI:
    app = FastAPI(
        title="Campaign Ingestion API",
        default_response_class=ORJSONResponse,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=sorted(set(settings.BACKEND_CORS_ORIGINS)),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(_request: Request, exc: StarletteHTTPException) -> ORJSONResponse:
        return _error(exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(_request: Request, exc: RequestValidationError) -> ORJSONResponse:
        return _error(422, "; ".join(str(error.get("msg")) for error in exc.errors()) or "Invalid request")

    @app.exception_handler(Unauthorized)
    async def unauthorized_handler(_request: Request, exc: Unauthorized) -> ORJSONResponse:
        return _error(401, str(exc) or "Unauthorized")

    @app.exception_handler(MalformedRequest)
    async def malformed_request_handler(_request: Request, exc: MalformedRequest) -> ORJSONResponse:
        return _error(400, str(exc))

    @app.exception_handler(InvalidCampaignInput)
    async def invalid_campaign_input_handler(_request: Request, exc: InvalidCampaignInput) -> ORJSONResponse:
        return _error(422, str(exc))

    @app.exception_handler(CampaignNotFound)
    async def campaign_not_found_handler(_request: Request, exc: CampaignNotFound) -> ORJSONResponse:
        return _error(404, "Campaign not found")

    @app.exception_handler(MediaStorageConfigurationError)
    async def media_storage_configuration_error_handler(
        _request: Request, exc: MediaStorageConfigurationError
    ) -> ORJSONResponse:
        return _error(500, str(exc))

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(_request: Request, exc: Exception) -> ORJSONResponse:
        logger.exception("Unhandled server exception", exc_info=exc)
        return _error(500, "Internal server error")

    @app.get("/health")
    async def health() -> dict[str, bool]:
        return {"ok": True}

    @app.get("/health/db")
    def health_db() -> dict[str, str]:
        try:
            with engine.connect() as connection:
                connection.execute(text("SELECT 1"))
            return {"db": "ok"}
        except Exception as exc:  # pragma: no cover - simple runtime check
            logger.warning("Database health check failed", exc_info=exc)
            return {"db": "error"}

    app.include_router(campaigns.router)
    return app


app = create_app()
