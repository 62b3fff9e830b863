"""Keyword deduplication pipeline.

Reads keyword records from Firestore, backfills text and name embeddings via
Vertex AI, pairs keywords whose cosine similarity clears a threshold (with a
per-keyword neighbor cap), groups pairs into clusters with union-find, and
resolves each cluster with Gemini merge/rename/skip decisions or an
aggressive delete of every non-primary member.

Shared Utilities (from src/common/):
    - config: load_keyword_dedupe_settings(), KeywordDedupeSettings
    - firestore: get_firestore_client(), keywords_collection()
    - logging: Structured logging for decisions and per-unit failures

Modules:
    models: Pydantic models for Keyword, SimilarityPair, Cluster, MergeDecision
    similarity: Cosine similarity, pair scoring and capped candidate generation
    clustering: Union-find clustering of candidate pairs
    embedding_client: Vertex AI text embeddings with caching and retry
    embeddings: Ensure/persist missing vectors on a bounded worker pool
    decision_client: Gemini structured merge decisions
    merge_engine: Per-cluster decision fold and aggressive deletes
    dedupe_service: Orchestrator (dry run, apply, backfill, compare)
    firestore_repository: Keyword reads, updates, deletes and run summaries
    main: FastAPI app with /health and /dedupe/run-once endpoints
    cli: keyword-dedupe command line
"""

from src.keyword_dedupe.models import (
    CandidateSet,
    Cluster,
    ClusterOutcome,
    DedupeMode,
    DedupeRunRequest,
    DedupeRunSummary,
    Keyword,
    MergeAction,
    MergeDecision,
    PrimarySnapshot,
    SimilarityPair,
    TriggeredBy,
)

__all__ = [
    "CandidateSet",
    "Cluster",
    "ClusterOutcome",
    "DedupeMode",
    "DedupeRunRequest",
    "DedupeRunSummary",
    "Keyword",
    "MergeAction",
    "MergeDecision",
    "PrimarySnapshot",
    "SimilarityPair",
    "TriggeredBy",
]
