"""Firestore repository for keyword records and dedupe run summaries.

Collection: {prefix}keywords, document ID: str(keyword id).
Document fields: id, keyword, description, embedding, name_embedding.

Every public method is a coroutine: the blocking Firestore SDK call runs in a
worker thread bounded by ``timeout_sec``. Writes to different documents are
safe to issue concurrently; the pipeline never writes the same document from
two tasks.
"""

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, TYPE_CHECKING

from src.common.config import DEFAULT_KEYWORD_COLLECTION, FirestoreConfig, load_firestore_config
from src.common.firestore import (
    dedupe_runs_collection,
    get_firestore_client,
    keywords_collection,
)
from src.keyword_dedupe.models import DedupeRunSummary, Keyword
from src.keyword_dedupe.worker_pool import call_blocking

if TYPE_CHECKING:
    from google.cloud.firestore import Client as FirestoreClient

logger = logging.getLogger(__name__)

DEFAULT_STORE_TIMEOUT_SEC = 30.0

# Firestore batches accept at most 500 writes.
_MAX_BATCH_WRITES = 500

# Pipeline field name -> Firestore document field name
_FIELD_NAMES = {
    "name": "keyword",
    "description": "description",
    "text_embedding": "embedding",
    "name_embedding": "name_embedding",
}


class StoreError(Exception):
    """Raised when a keyword store read or write fails."""

    pass


class KeywordStore(Protocol):
    """Async keyword store capability consumed by the pipeline."""

    async def list_keywords(self, limit: int) -> List[Keyword]:
        ...

    async def get_keyword(self, keyword_id: int) -> Optional[Keyword]:
        ...

    async def update_keyword(self, keyword_id: int, fields: Mapping[str, Any]) -> None:
        ...

    async def delete_keyword(self, keyword_id: int) -> None:
        ...

    async def delete_keywords(self, keyword_ids: Iterable[int]) -> None:
        ...

    async def save_run_summary(self, summary: DedupeRunSummary) -> None:
        ...


class KeywordRepository:
    """Repository for keyword documents.

    Provides:
    - Ordered, bounded keyword listing
    - Single keyword lookup
    - Field updates (name, description, embeddings)
    - Single and batched deletes
    - Run summary persistence
    """

    def __init__(
        self,
        client: Optional["FirestoreClient"] = None,
        config: Optional[FirestoreConfig] = None,
        collection_name: str = DEFAULT_KEYWORD_COLLECTION,
        timeout_sec: float = DEFAULT_STORE_TIMEOUT_SEC,
    ):
        """Initialize the repository.

        Args:
            client: Optional Firestore client. If not provided, creates one lazily.
            config: Optional FirestoreConfig. If not provided, loads from environment.
            collection_name: Keyword collection name without prefix.
            timeout_sec: Upper bound for each Firestore call.
        """
        self.config = config or load_firestore_config()
        self.collection_name = collection_name
        self.timeout_sec = timeout_sec
        self._client = client

    @property
    def client(self) -> "FirestoreClient":
        """Get or create Firestore client."""
        if self._client is None:
            self._client = get_firestore_client(self.config)
        return self._client

    @property
    def keywords_ref(self):
        return self.client.collection(
            keywords_collection(self.config.collection_prefix, self.collection_name)
        )

    @property
    def runs_ref(self):
        return self.client.collection(dedupe_runs_collection(self.config.collection_prefix))

    async def _run(self, operation: str, fn, *args) -> Any:
        try:
            return await call_blocking(fn, *args, timeout=self.timeout_sec)
        except asyncio.TimeoutError as e:
            raise StoreError(f"{operation} exceeded timeout of {self.timeout_sec}s") from e
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(f"{operation} failed: {e}") from e

    # =========================================================================
    # Reads
    # =========================================================================

    def _list_keywords(self, limit: int) -> List[Keyword]:
        query = self.keywords_ref.order_by("id").limit(limit)

        keywords = []
        for doc in query.stream():
            try:
                keywords.append(Keyword.from_document(doc.to_dict() or {}, doc_id=doc.id))
            except (TypeError, ValueError) as e:
                logger.warning(
                    "Failed to parse keyword document",
                    extra={"doc_id": doc.id, "error": str(e)},
                )
        return keywords

    async def list_keywords(self, limit: int) -> List[Keyword]:
        """List up to ``limit`` keywords ordered by id ascending.

        The query orders on the ``id`` field, so Firestore leaves out documents
        that lack it; those are only reachable through ``get_keyword``, which
        falls back to the document id. Ordering by document id instead would
        sort ids as strings ("10" before "2").

        Raises:
            StoreError: If the query fails.
        """
        keywords = await self._run("list_keywords", self._list_keywords, limit)
        logger.info(
            "Fetched keywords",
            extra={"count": len(keywords), "limit": limit, "collection": self.collection_name},
        )
        return keywords

    def _get_keyword(self, keyword_id: int) -> Optional[Keyword]:
        doc = self.keywords_ref.document(str(keyword_id)).get()
        if not doc.exists:
            return None
        return Keyword.from_document(doc.to_dict() or {}, doc_id=doc.id)

    async def get_keyword(self, keyword_id: int) -> Optional[Keyword]:
        """Get a keyword by id, or None if it does not exist."""
        return await self._run("get_keyword", self._get_keyword, keyword_id)

    # =========================================================================
    # Writes
    # =========================================================================

    @staticmethod
    def to_document_fields(fields: Mapping[str, Any]) -> Dict[str, Any]:
        """Translate pipeline field names into Firestore field names."""
        unknown = set(fields) - set(_FIELD_NAMES)
        if unknown:
            raise StoreError(f"Unknown keyword fields: {sorted(unknown)}")
        return {_FIELD_NAMES[key]: value for key, value in fields.items()}

    def _update_keyword(self, keyword_id: int, fields: Dict[str, Any]) -> None:
        self.keywords_ref.document(str(keyword_id)).update(fields)

    async def update_keyword(self, keyword_id: int, fields: Mapping[str, Any]) -> None:
        """Update fields of one keyword (idempotent).

        Args:
            keyword_id: Keyword to update.
            fields: Mapping using pipeline names (name, description,
                text_embedding, name_embedding).

        Raises:
            StoreError: If the update fails.
        """
        document_fields = self.to_document_fields(fields)
        if not document_fields:
            return
        await self._run("update_keyword", self._update_keyword, keyword_id, document_fields)

    def _delete_keywords(self, keyword_ids: List[int]) -> None:
        for start in range(0, len(keyword_ids), _MAX_BATCH_WRITES):
            batch = self.client.batch()
            for keyword_id in keyword_ids[start : start + _MAX_BATCH_WRITES]:
                batch.delete(self.keywords_ref.document(str(keyword_id)))
            batch.commit()

    async def delete_keyword(self, keyword_id: int) -> None:
        """Delete one keyword (deleting a missing keyword is a no-op)."""
        await self.delete_keywords([keyword_id])

    async def delete_keywords(self, keyword_ids: Iterable[int]) -> None:
        """Delete several keywords in batched writes.

        Raises:
            StoreError: If a batch commit fails.
        """
        ids = list(keyword_ids)
        if not ids:
            return
        await self._run("delete_keywords", self._delete_keywords, ids)

    def _save_run_summary(self, summary: DedupeRunSummary) -> None:
        self.runs_ref.document(summary.run_id).set(summary.to_dict())

    async def save_run_summary(self, summary: DedupeRunSummary) -> None:
        """Persist a run summary document keyed by run_id."""
        await self._run("save_run_summary", self._save_run_summary, summary)
