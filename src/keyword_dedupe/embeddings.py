"""Embedding adapter: make sure every keyword carries vectors before clustering.

Missing vectors are computed through the ``TextEmbedder`` and, unless the
caller asks otherwise, written back with one store update per keyword.
Writes are at-least-once: a keyword whose write failed is recomputed on the
next run.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from src.common.logging import log_error
from src.keyword_dedupe.embedding_client import EmbeddingProviderError, TextEmbedder
from src.keyword_dedupe.firestore_repository import StoreError
from src.keyword_dedupe.models import Keyword
from src.keyword_dedupe.worker_pool import run_bounded

logger = logging.getLogger(__name__)

PROGRESS_LOG_EVERY = 50


class EmptyInputError(Exception):
    """Raised when there is nothing to embed."""

    pass


class EmptyNameError(EmptyInputError):
    """Raised when a keyword's name is blank."""

    pass


class EmptyTextError(EmptyInputError):
    """Raised when both the name and the description are blank."""

    pass


@dataclass
class EnsuredEmbeddings:
    """Vectors for one keyword after the adapter ran."""

    text: Optional[List[float]]
    name: List[float]
    written: bool = False


@dataclass
class EmbeddingBatchResult:
    """Outcome of ensuring embeddings across a keyword set."""

    keywords: List[Keyword] = field(default_factory=list)
    written: int = 0
    failures: int = 0


def build_embed_text(name: str, description: Optional[str]) -> str:
    """Text used for the text embedding: name and description, or name alone.

    Example:
        >>> build_embed_text("Trump", "US president")
        'Trump\\n\\nUS president'
        >>> build_embed_text("Trump", "  ")
        'Trump'
    """
    name = (name or "").strip()
    description = (description or "").strip()
    if name and description:
        return f"{name}\n\n{description}"
    return name or description


async def embed_name(name: str, embedder: TextEmbedder) -> List[float]:
    text = (name or "").strip()
    if not text:
        raise EmptyNameError("Keyword name is blank")
    return await embedder.embed(text)


async def embed_text(name: str, description: Optional[str], embedder: TextEmbedder) -> List[float]:
    text = build_embed_text(name, description)
    if not text:
        raise EmptyTextError("Keyword name and description are both blank")
    return await embedder.embed(text)


async def embed_identity(
    name: str,
    description: Optional[str],
    embedder: TextEmbedder,
) -> EnsuredEmbeddings:
    """Compute fresh text and name vectors for a (name, description) identity."""
    name_vector = await embed_name(name, embedder)
    text_vector = await embed_text(name, description, embedder)
    return EnsuredEmbeddings(text=text_vector, name=name_vector)


async def ensure_embeddings(
    keyword: Keyword,
    embedder: TextEmbedder,
    store,
    *,
    include_text: bool = True,
    persist: bool = True,
    force: bool = False,
) -> EnsuredEmbeddings:
    """Compute whichever vectors the keyword is missing, or all of them with ``force``.

    Args:
        keyword: Keyword to check.
        embedder: Embedding capability.
        store: KeywordStore used to persist new vectors.
        include_text: Whether the text embedding is required (False in name-only mode).
        persist: Write new vectors back. Dry runs pass False.
        force: Recompute vectors that are already present, e.g. after a
            description changed.

    Returns:
        EnsuredEmbeddings with ``written`` set when a store update was made.

    Raises:
        EmptyNameError: If the name embedding is missing and the name is blank.
        EmptyTextError: If the text embedding is required, missing, and there is no text.
        EmbeddingProviderError: If the provider fails.
        StoreError: If persisting the new vectors fails.
    """
    fields: Dict[str, List[float]] = {}

    name_vector = keyword.name_embedding
    if force or not name_vector:
        name_vector = await embed_name(keyword.name, embedder)
        fields["name_embedding"] = name_vector

    text_vector = keyword.text_embedding
    if include_text and (force or not text_vector):
        text_vector = await embed_text(keyword.name, keyword.description, embedder)
        fields["text_embedding"] = text_vector

    written = False
    if fields and persist:
        await store.update_keyword(keyword.id, fields)
        written = True

    return EnsuredEmbeddings(text=text_vector, name=name_vector, written=written)


async def ensure_all(
    keywords: Sequence[Keyword],
    embedder: TextEmbedder,
    store,
    *,
    concurrency: int,
    include_text: bool = True,
    persist: bool = True,
    force: bool = False,
    run_id: Optional[str] = None,
) -> EmbeddingBatchResult:
    """Ensure embeddings for every keyword on a bounded worker pool.

    Keywords that fail are logged and left out of the returned list; the
    others come back with their vectors filled in, in input order. With
    ``force`` every keyword is re-embedded from its current name and
    description.
    """
    total = len(keywords)
    missing = total if force else sum(
        1 for k in keywords if not k.name_embedding or (include_text and not k.text_embedding)
    )
    logger.info(
        "Ensuring embeddings",
        extra={
            "run_id": run_id,
            "keywords": len(keywords),
            "missing": missing,
            "concurrency": concurrency,
            "persist": persist,
            "force": force,
        },
    )

    async def _ensure(keyword: Keyword) -> EnsuredEmbeddings:
        return await ensure_embeddings(
            keyword, embedder, store, include_text=include_text, persist=persist, force=force
        )

    def _progress(done: int) -> None:
        if done % PROGRESS_LOG_EVERY == 0 or done == total:
            logger.info(
                "Embedding progress",
                extra={"run_id": run_id, "done": done, "total": total},
            )

    outcomes = await run_bounded(list(keywords), _ensure, concurrency, on_done=_progress)

    result = EmbeddingBatchResult()
    for keyword, outcome in zip(keywords, outcomes):
        if isinstance(outcome, (EmptyInputError, EmbeddingProviderError, StoreError)):
            result.failures += 1
            log_error(
                logger,
                "Embedding failed, keyword excluded",
                run_id=run_id,
                error=outcome,
                keyword_id=keyword.id,
                phase="store_write" if isinstance(outcome, StoreError) else "embed",
            )
            continue
        if isinstance(outcome, BaseException):
            raise outcome

        if outcome.written:
            result.written += 1
        result.keywords.append(
            keyword.model_copy(
                update={"text_embedding": outcome.text, "name_embedding": outcome.name}
            )
        )

    logger.info(
        "Embeddings ensured",
        extra={
            "run_id": run_id,
            "ready": len(result.keywords),
            "written": result.written,
            "failures": result.failures,
        },
    )
    return result
