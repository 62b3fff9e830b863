"""FastAPI trigger for keyword deduplication.

Provides REST API endpoints for:
- Health checks (Cloud Run compatibility)
- A single dedupe run (dry run unless ``dryRun`` is false)

Endpoints:
- GET /health: Service health status
- POST /dedupe/run-once: Run the pipeline once and return the summary
"""

from dataclasses import replace
from typing import Optional

from fastapi import FastAPI, HTTPException

from src.common.config import (
    ConfigError,
    KeywordDedupeSettings,
    load_keyword_dedupe_settings,
    validate_keyword_dedupe_settings,
)
from src.common.env import load_env
from src.common.logging import get_logger
from src.keyword_dedupe.dedupe_service import create_keyword_dedupe_service
from src.keyword_dedupe.embedding_client import EmbeddingClient
from src.keyword_dedupe.firestore_repository import StoreError
from src.keyword_dedupe.models import (
    DedupeRunRequest,
    DedupeRunSummary,
    ErrorResponse,
    HealthResponse,
    TriggeredBy,
)

load_env()
logger = get_logger(__name__)

# Service version
VERSION = "1.0.0"

app = FastAPI(
    title="Keyword Dedupe Service",
    description="Merges duplicate keywords using embeddings, union-find clustering and Gemini decisions.",
    version=VERSION,
)

# Lazy-initialized (to avoid connection issues at import time)
_settings: Optional[KeywordDedupeSettings] = None
_embedding_client: Optional[EmbeddingClient] = None


def get_settings() -> KeywordDedupeSettings:
    """Get or load the base settings."""
    global _settings
    if _settings is None:
        _settings = load_keyword_dedupe_settings()
    return _settings


def get_embedding_client() -> EmbeddingClient:
    """Get or create the embedding client used for health checks."""
    global _embedding_client
    if _embedding_client is None:
        _embedding_client = EmbeddingClient(config=get_settings().embedding)
    return _embedding_client


def apply_overrides(settings: KeywordDedupeSettings, request: DedupeRunRequest) -> KeywordDedupeSettings:
    """Apply request overrides and re-validate.

    Raises:
        ConfigError: If the resulting settings are invalid.
    """
    overrides = {}
    if request.threshold is not None:
        overrides["similarity_threshold"] = request.threshold
    if request.max_neighbors is not None:
        overrides["max_neighbors"] = request.max_neighbors
    if request.aggressive is not None:
        overrides["aggressive"] = request.aggressive
    if not overrides:
        return settings
    return validate_keyword_dedupe_settings(replace(settings, **overrides))


def _error(status_code: int, error: str, message: str, exc: Exception) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail=ErrorResponse(
            error=error,
            message=message,
            details={"original_error": str(exc)},
        ).model_dump(),
    )


@app.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check endpoint",
    description="Returns service health status for Cloud Run health checks.",
)
async def health_check() -> HealthResponse:
    """Check service health and embedding model availability."""
    embedding_status = "unavailable"

    try:
        if get_embedding_client().is_available():
            embedding_status = "available"
    except ConfigError as e:
        logger.warning("Embedding service check failed", extra={"error": str(e)})

    return HealthResponse(
        status="healthy",
        version=VERSION,
        embedding_service=embedding_status,
    )


@app.post(
    "/dedupe/run-once",
    response_model=DedupeRunSummary,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid configuration"},
        503: {"model": ErrorResponse, "description": "Keyword store unavailable"},
        500: {"model": ErrorResponse, "description": "Internal server error"},
    },
    summary="Run keyword deduplication once",
    description="""
    Fetches keywords, ensures embeddings, clusters similar keywords and, unless
    `dryRun` is true (the default), resolves each cluster with Gemini
    merge/rename/skip decisions or aggressive deletes.
    """,
)
async def run_dedupe(request: Optional[DedupeRunRequest] = None) -> DedupeRunSummary:
    """Run the dedupe pipeline once.

    Raises:
        HTTPException: 400 on invalid configuration, 503 when the keyword
            store cannot be read, 500 on any other failure.
    """
    request = request or DedupeRunRequest()
    dry_run = True if request.dry_run is None else request.dry_run
    triggered_by = request.triggered_by or TriggeredBy.MANUAL

    try:
        settings = apply_overrides(get_settings(), request)
        service = create_keyword_dedupe_service(settings)

        logger.info(
            "Keyword dedupe run requested",
            extra={
                "dry_run": dry_run,
                "threshold": settings.similarity_threshold,
                "aggressive": settings.aggressive,
                "triggered_by": triggered_by.value,
            },
        )

        result = await service.run(dry_run=dry_run, triggered_by=triggered_by)
        return result.summary

    except ConfigError as e:
        logger.warning("Invalid dedupe configuration", extra={"error": str(e)})
        raise _error(400, "invalid_config", "Invalid dedupe configuration.", e)
    except StoreError as e:
        logger.error("Keyword store unavailable", extra={"error": str(e)}, exc_info=True)
        raise _error(503, "store_unavailable", "Keyword store unavailable.", e)
    except Exception as e:
        logger.error("Keyword dedupe run failed", extra={"error": str(e)}, exc_info=True)
        raise _error(500, "internal_error", "Keyword dedupe run failed.", e)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8080)
