"""Configuration loader for the keyword dedupe service.

Provides shared configuration dataclasses and environment variable helpers
used by the dedupe pipeline, its CLI and its HTTP trigger.

Exports:
    - ConfigError: Exception for configuration errors
    - _get_env, _int_env, _float_env, _bool_env, _optional_env: Environment helpers
    - FirestoreConfig, EmbeddingConfig, GeminiConfig: Service configurations
    - KeywordDedupeSettings: Combined settings for the dedupe pipeline
    - load_keyword_dedupe_settings: Load dedupe settings from environment
    - validate_keyword_dedupe_settings: Clamp and validate a settings object
"""

from __future__ import annotations

import math
import os
from dataclasses import dataclass, replace
from typing import Optional


class ConfigError(Exception):
    """Raised when required configuration is missing or invalid."""


def _get_env(key: str, default: Optional[str] = None, required: bool = False) -> str:
    value = os.getenv(key, default)
    if required and (value is None or value == ""):
        raise ConfigError(f"Missing required environment variable: {key}")
    if value is None:
        raise ConfigError(f"Environment variable {key} is not set and no default provided")
    if value == "" and default is None:
        raise ConfigError(f"Environment variable {key} is empty and no default provided")
    return value


def _int_env(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid int for {key}: {raw}") from exc


def _float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid float for {key}: {raw}") from exc


_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _bool_env(key: str, default: bool) -> bool:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ConfigError(f"Invalid bool for {key}: {raw}")


def _optional_env(key: str) -> Optional[str]:
    value = os.getenv(key)
    if value is None or value == "":
        return None
    return value


def clamp(value: float, minimum: float, maximum: float) -> float:
    """Clamp value into [minimum, maximum]; non-finite values collapse to minimum."""
    if not math.isfinite(value):
        return minimum
    return min(maximum, max(minimum, value))


@dataclass
class FirestoreConfig:
    """Firestore connection configuration."""

    collection_prefix: str
    project_id: Optional[str] = None
    database_id: str = "(default)"


@dataclass
class GeminiConfig:
    """Gemini model configuration for merge decisions."""

    model: str
    temperature: float
    max_output_tokens: int
    location: str


@dataclass
class EmbeddingConfig:
    """Vertex AI embedding model configuration."""

    model: str
    project: str
    location: str
    output_dimensionality: int = 768


DEFAULT_GEMINI_MODEL = "gemini-2.5-flash"
DEFAULT_GEMINI_TEMPERATURE = 0.0
DEFAULT_GEMINI_MAX_OUTPUT_TOKENS = 320
DEFAULT_VERTEX_AI_LOCATION = "us-central1"
DEFAULT_EMBEDDING_MODEL = "text-embedding-004"

# Keyword dedupe defaults and bounds
DEFAULT_SIMILARITY_THRESHOLD = 0.7
MIN_SIMILARITY_THRESHOLD = 0.05
MAX_SIMILARITY_THRESHOLD = 0.999
DEFAULT_MAX_KEYWORDS = 4000
MIN_MAX_KEYWORDS = 10
MAX_MAX_KEYWORDS = 20000
DEFAULT_MAX_NEIGHBORS = 30
DEFAULT_MAX_CLUSTER_SIZE = 0  # 0 = uncapped
MIN_CLUSTER_SIZE_CAP = 2
MAX_CLUSTER_SIZE_CAP = 200
DEFAULT_EMBED_CONCURRENCY = 30
MAX_EMBED_CONCURRENCY = 64
DEFAULT_MERGE_CONCURRENCY = 60
MAX_MERGE_CONCURRENCY = 128
DEFAULT_EMBED_TIMEOUT_SEC = 20.0
DEFAULT_DECISION_TIMEOUT_SEC = 30.0
DEFAULT_KEYWORD_COLLECTION = "keywords"


@dataclass
class KeywordDedupeSettings:
    """Combined settings for the keyword dedupe pipeline.

    Includes embedding, Gemini and Firestore config plus the knobs that shape
    a run: similarity threshold, neighbor cap, cluster cap, worker pool sizes,
    timeouts and the delete policy.
    """

    embedding: EmbeddingConfig
    gemini: GeminiConfig
    firestore: FirestoreConfig
    keyword_collection: str
    similarity_threshold: float
    max_keywords: int
    max_neighbors: int
    max_cluster_size: int
    embed_concurrency: int
    merge_concurrency: int
    name_only: bool
    delete_secondaries: bool
    aggressive: bool
    embed_timeout_sec: float
    decision_timeout_sec: float


def load_firestore_config() -> FirestoreConfig:
    """Load Firestore configuration from environment variables."""
    return FirestoreConfig(
        collection_prefix=_get_env("FIRESTORE_COLLECTION_PREFIX", default="topicgraph_"),
        project_id=_optional_env("GOOGLE_CLOUD_PROJECT"),
        database_id=_get_env("FIRESTORE_DATABASE_ID", default="(default)"),
    )


def load_gemini_config() -> GeminiConfig:
    """Load Gemini configuration from environment variables.

    Returns:
        GeminiConfig with model settings for Vertex AI Gemini.
    """
    return GeminiConfig(
        model=_get_env("GEMINI_MODEL", default=DEFAULT_GEMINI_MODEL),
        temperature=_float_env("GEMINI_TEMPERATURE", default=DEFAULT_GEMINI_TEMPERATURE),
        max_output_tokens=_int_env("GEMINI_MAX_OUTPUT_TOKENS", default=DEFAULT_GEMINI_MAX_OUTPUT_TOKENS),
        location=_get_env("VERTEX_AI_LOCATION", default=DEFAULT_VERTEX_AI_LOCATION),
    )


def load_embedding_config() -> EmbeddingConfig:
    """Load embedding configuration from environment variables.

    Returns:
        EmbeddingConfig with Vertex AI embedding model settings.
    """
    return EmbeddingConfig(
        model=_get_env("EMBEDDING_MODEL", default=DEFAULT_EMBEDDING_MODEL),
        project=_get_env("VERTEX_AI_PROJECT", default=_get_env("GOOGLE_CLOUD_PROJECT", default="topicgraph")),
        location=_get_env("VERTEX_AI_LOCATION", default=DEFAULT_VERTEX_AI_LOCATION),
        output_dimensionality=_int_env("EMBEDDING_DIMENSIONALITY", default=768),
    )


def validate_keyword_dedupe_settings(settings: KeywordDedupeSettings) -> KeywordDedupeSettings:
    """Clamp tunables into their sane ranges and reject invalid combinations.

    Called on every settings object before a run starts, including ones
    produced by CLI or request overrides, so a bad value aborts before any
    store mutation.

    Raises:
        ConfigError: If a value cannot be clamped into a usable range.
    """
    if not math.isfinite(settings.similarity_threshold):
        raise ConfigError(f"Similarity threshold must be finite: {settings.similarity_threshold}")
    if settings.max_neighbors < 0:
        raise ConfigError(f"max_neighbors must be >= 0: {settings.max_neighbors}")
    if settings.max_cluster_size < 0:
        raise ConfigError(f"max_cluster_size must be >= 0: {settings.max_cluster_size}")
    if settings.embed_timeout_sec <= 0 or settings.decision_timeout_sec <= 0:
        raise ConfigError("Timeouts must be positive")
    if settings.aggressive and not settings.delete_secondaries:
        raise ConfigError("Aggressive mode deletes secondaries; it cannot be combined with keeping them")
    if not settings.keyword_collection.strip():
        raise ConfigError("KEYWORD_COLLECTION must not be empty")

    max_cluster_size = settings.max_cluster_size
    if max_cluster_size > 0:
        max_cluster_size = int(clamp(max_cluster_size, MIN_CLUSTER_SIZE_CAP, MAX_CLUSTER_SIZE_CAP))

    return replace(
        settings,
        similarity_threshold=clamp(
            settings.similarity_threshold, MIN_SIMILARITY_THRESHOLD, MAX_SIMILARITY_THRESHOLD
        ),
        max_keywords=int(clamp(settings.max_keywords, MIN_MAX_KEYWORDS, MAX_MAX_KEYWORDS)),
        max_cluster_size=max_cluster_size,
        embed_concurrency=int(clamp(settings.embed_concurrency, 1, MAX_EMBED_CONCURRENCY)),
        merge_concurrency=int(clamp(settings.merge_concurrency, 1, MAX_MERGE_CONCURRENCY)),
    )


def load_keyword_dedupe_settings() -> KeywordDedupeSettings:
    """Load keyword dedupe settings from environment variables.

    Returns:
        Validated KeywordDedupeSettings.

    Raises:
        ConfigError: If environment variables are missing or invalid.
    """
    settings = KeywordDedupeSettings(
        embedding=load_embedding_config(),
        gemini=load_gemini_config(),
        firestore=load_firestore_config(),
        keyword_collection=_get_env("KEYWORD_COLLECTION", default=DEFAULT_KEYWORD_COLLECTION),
        similarity_threshold=_float_env("KEYWORD_DEDUPE_THRESHOLD", default=DEFAULT_SIMILARITY_THRESHOLD),
        max_keywords=_int_env("KEYWORD_DEDUPE_MAX_KEYWORDS", default=DEFAULT_MAX_KEYWORDS),
        max_neighbors=_int_env("KEYWORD_DEDUPE_MAX_NEIGHBORS", default=DEFAULT_MAX_NEIGHBORS),
        max_cluster_size=_int_env("KEYWORD_DEDUPE_MAX_CLUSTER_SIZE", default=DEFAULT_MAX_CLUSTER_SIZE),
        embed_concurrency=_int_env("KEYWORD_DEDUPE_EMBED_CONCURRENCY", default=DEFAULT_EMBED_CONCURRENCY),
        merge_concurrency=_int_env("KEYWORD_DEDUPE_MERGE_CONCURRENCY", default=DEFAULT_MERGE_CONCURRENCY),
        name_only=_bool_env("KEYWORD_DEDUPE_NAME_ONLY", default=False),
        delete_secondaries=_bool_env("KEYWORD_DEDUPE_DELETE_SECONDARIES", default=True),
        aggressive=_bool_env("KEYWORD_DEDUPE_AGGRESSIVE", default=False),
        embed_timeout_sec=_float_env("KEYWORD_DEDUPE_EMBED_TIMEOUT_SEC", default=DEFAULT_EMBED_TIMEOUT_SEC),
        decision_timeout_sec=_float_env(
            "KEYWORD_DEDUPE_DECISION_TIMEOUT_SEC", default=DEFAULT_DECISION_TIMEOUT_SEC
        ),
    )
    return validate_keyword_dedupe_settings(settings)
