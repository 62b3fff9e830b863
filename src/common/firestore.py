"""Firestore client and collection naming for the keyword dedupe service.

Collections (all prefixed with ``FIRESTORE_COLLECTION_PREFIX``):
- ``{prefix}keywords``: keyword records, one document per keyword id
- ``{prefix}keyword_dedupe_runs``: run summaries of applied runs
"""

from __future__ import annotations

from typing import Any, Dict, Optional, TYPE_CHECKING

from src.common.config import DEFAULT_KEYWORD_COLLECTION, FirestoreConfig, load_firestore_config

if TYPE_CHECKING:
    from google.cloud.firestore import Client as FirestoreClient

DEDUPE_RUNS_COLLECTION = "keyword_dedupe_runs"


class FirestoreError(Exception):
    """Raised when a Firestore client cannot be created."""

    pass


def get_firestore_client(config: Optional[FirestoreConfig] = None) -> "FirestoreClient":
    """Create a Firestore client for the configured project and database.

    Raises:
        FirestoreError: If google-cloud-firestore is missing or the client
            cannot be created (for example, no credentials).
    """
    try:
        from google.cloud import firestore
    except ImportError as e:
        raise FirestoreError(
            "google-cloud-firestore not installed. Run: pip install google-cloud-firestore"
        ) from e

    config = config or load_firestore_config()
    options: Dict[str, Any] = {"database": config.database_id}
    if config.project_id:
        options["project"] = config.project_id

    try:
        return firestore.Client(**options)
    except Exception as e:
        raise FirestoreError(
            f"Could not connect to Firestore database {config.database_id}: {e}"
        ) from e


def _prefix(prefix: Optional[str]) -> str:
    return prefix if prefix is not None else load_firestore_config().collection_prefix


def keywords_collection(prefix: Optional[str] = None, name: str = DEFAULT_KEYWORD_COLLECTION) -> str:
    return f"{_prefix(prefix)}{name}"


def dedupe_runs_collection(prefix: Optional[str] = None) -> str:
    return f"{_prefix(prefix)}{DEDUPE_RUNS_COLLECTION}"
