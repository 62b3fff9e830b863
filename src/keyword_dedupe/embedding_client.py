"""Vertex AI embedding client for keyword deduplication.

``EmbeddingClient`` is the blocking adapter around ``TextEmbeddingModel``
(text-embedding-004, task type SEMANTIC_SIMILARITY). Rate limit responses are
retried with tenacity (3 attempts, 1s -> 2s -> 4s); every other failure
surfaces immediately as ``EmbeddingProviderError``. Recently embedded texts are
kept in a small LRU cache, since the same keyword name is often embedded for
both the name and the merged identity within one run.

``AsyncTextEmbedder`` is what the asyncio pipeline consumes: it moves each call
to a worker thread and bounds it with a timeout (default 20s).
"""

import asyncio
import logging
import threading
from collections import OrderedDict
from typing import List, Optional, Protocol

from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

from src.common.config import DEFAULT_EMBED_TIMEOUT_SEC, EmbeddingConfig, load_embedding_config
from src.keyword_dedupe.worker_pool import call_blocking

logger = logging.getLogger(__name__)

DEFAULT_CACHE_SIZE = 4096
TASK_TYPE = "SEMANTIC_SIMILARITY"

_RATE_LIMIT_MARKERS = ("429", "quota", "rate limit", "resource exhausted", "resource_exhausted")


class EmbeddingProviderError(Exception):
    """Raised when the embedding provider fails (network, auth, timeout)."""

    pass


class RateLimitError(EmbeddingProviderError):
    """Raised when Vertex AI keeps answering with a rate limit (429)."""

    pass


def is_rate_limit_error(error: BaseException) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in _RATE_LIMIT_MARKERS)


class TextEmbedder(Protocol):
    """Async embedding capability consumed by the pipeline."""

    async def embed(self, text: str) -> List[float]:
        ...


class EmbeddingClient:
    """Blocking Vertex AI embedding client with an LRU cache.

    Usage:
        client = EmbeddingClient()
        vector = client.get_embedding("Donald Trump")
    """

    def __init__(
        self,
        config: Optional[EmbeddingConfig] = None,
        cache_size: int = DEFAULT_CACHE_SIZE,
    ):
        """Initialize the embedding client.

        Args:
            config: Optional EmbeddingConfig. If not provided, loads from environment.
            cache_size: Maximum cached vectors; 0 disables caching.
        """
        self.config = config or load_embedding_config()
        self.cache_size = cache_size
        self._cache: "OrderedDict[str, List[float]]" = OrderedDict()
        self._lock = threading.Lock()
        self._model = None

    @property
    def model(self):
        """The Vertex AI model, loaded once on first use."""
        if self._model is not None:
            return self._model
        with self._lock:
            if self._model is None:
                self._model = self._load_model()
        return self._model

    def _load_model(self):
        try:
            import vertexai
            from vertexai.language_models import TextEmbeddingModel
        except ImportError as e:
            raise EmbeddingProviderError(
                "vertexai not installed. Run: pip install google-cloud-aiplatform"
            ) from e

        try:
            vertexai.init(project=self.config.project, location=self.config.location)
            model = TextEmbeddingModel.from_pretrained(self.config.model)
        except Exception as e:
            raise EmbeddingProviderError(
                f"Could not load embedding model {self.config.model}: {e}"
            ) from e

        logger.info(
            "Loaded embedding model",
            extra={"model": self.config.model, "location": self.config.location},
        )
        return model

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=4),
        retry=retry_if_exception_type(RateLimitError),
        reraise=True,
    )
    def _request(self, text: str) -> List[float]:
        model = self.model
        from vertexai.language_models import TextEmbeddingInput

        try:
            response = model.get_embeddings(
                texts=[TextEmbeddingInput(text=text, task_type=TASK_TYPE)],
                output_dimensionality=self.config.output_dimensionality,
            )
        except Exception as e:
            if is_rate_limit_error(e):
                logger.warning(
                    "Embedding request rate limited",
                    extra={"error": str(e), "text_length": len(text)},
                )
                raise RateLimitError(str(e)) from e
            raise EmbeddingProviderError(f"Embedding request failed: {e}") from e

        if not response or not response[0].values:
            raise EmbeddingProviderError("Embedding API returned an empty vector")
        return [float(v) for v in response[0].values]

    def get_embedding(self, text: str) -> List[float]:
        """Embed a single non-blank text.

        Raises:
            EmbeddingProviderError: If text is blank or the request fails.
            RateLimitError: If still rate limited after retries.
        """
        text = text.strip()
        if not text:
            raise EmbeddingProviderError("Cannot embed empty text")

        with self._lock:
            cached = self._cache.get(text)
            if cached is not None:
                self._cache.move_to_end(text)
                return cached

        vector = self._request(text)
        self._remember(text, vector)
        return vector

    def _remember(self, text: str, vector: List[float]) -> None:
        if self.cache_size <= 0:
            return
        with self._lock:
            self._cache[text] = vector
            self._cache.move_to_end(text)
            while len(self._cache) > self.cache_size:
                self._cache.popitem(last=False)

    def is_available(self) -> bool:
        """True if the model can be loaded. Makes no embedding request."""
        try:
            self.model
        except EmbeddingProviderError as e:
            logger.warning("Embedding model unavailable", extra={"error": str(e)})
            return False
        return True


class AsyncTextEmbedder:
    """TextEmbedder backed by a blocking EmbeddingClient and a per-call timeout."""

    def __init__(self, client: EmbeddingClient, timeout_sec: float = DEFAULT_EMBED_TIMEOUT_SEC):
        self.client = client
        self.timeout_sec = timeout_sec

    async def embed(self, text: str) -> List[float]:
        try:
            return await call_blocking(self.client.get_embedding, text, timeout=self.timeout_sec)
        except asyncio.TimeoutError as e:
            raise EmbeddingProviderError(
                f"Embedding request exceeded timeout of {self.timeout_sec}s"
            ) from e
