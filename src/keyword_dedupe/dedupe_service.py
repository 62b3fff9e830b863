"""Keyword deduplication orchestrator.

Drives one run end to end:

1. Fetch up to ``max_keywords`` keywords ordered by id (a failure here fails the run)
2. Ensure embeddings on a bounded worker pool
3. Build capped candidate pairs
4. Cluster pairs with union-find
5. Dry run: report clusters and top pairs. Apply: resolve clusters on a
   bounded worker pool and persist the run summary.

A dry run never writes: missing vectors are computed in memory only.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from src.common.config import KeywordDedupeSettings
from src.common.logging import log_error
from src.keyword_dedupe.clustering import cluster_pairs
from src.keyword_dedupe.decision_client import MergeDecider
from src.keyword_dedupe.embedding_client import TextEmbedder
from src.keyword_dedupe.embeddings import EmbeddingBatchResult, ensure_all, ensure_embeddings
from src.keyword_dedupe.firestore_repository import KeywordStore, StoreError
from src.keyword_dedupe.merge_engine import MergeEngine
from src.keyword_dedupe.models import (
    CandidateSet,
    Cluster,
    ClusterOutcome,
    DedupeMode,
    DedupeRunSummary,
    Keyword,
    TriggeredBy,
)
from src.keyword_dedupe.similarity import build_candidates, cosine_similarity, pair_score

logger = logging.getLogger(__name__)

REPORT_TOP_PAIRS = 10


class KeywordNotFoundError(StoreError):
    """Raised when a keyword id does not exist in the store."""

    pass


@dataclass
class DedupePlan:
    """Everything computed before the mutation phase."""

    keywords_loaded: int
    embeddings: EmbeddingBatchResult
    candidates: CandidateSet
    clusters: List[Cluster]
    clusters_discarded: int


@dataclass
class DedupeRunResult:
    """Summary plus the plan it was built from (used for dry-run reports)."""

    summary: DedupeRunSummary
    plan: DedupePlan
    outcomes: List[ClusterOutcome] = field(default_factory=list)


@dataclass
class KeywordComparison:
    """Similarity between two specific keywords."""

    a: Keyword
    b: Keyword
    text_score: Optional[float]
    name_score: float
    score: float


class KeywordDedupeService:
    """Service that deduplicates keyword records.

    Orchestrates:
    - Keyword fetching (KeywordStore)
    - Embedding backfill (TextEmbedder)
    - Candidate generation and clustering
    - Cluster resolution (MergeEngine with a MergeDecider, or aggressive deletes)
    - Run summary logging and persistence
    """

    def __init__(
        self,
        settings: KeywordDedupeSettings,
        store: KeywordStore,
        embedder: TextEmbedder,
        decider: Optional[MergeDecider] = None,
    ):
        self.settings = settings
        self.store = store
        self.embedder = embedder
        self.decider = decider

    @property
    def mode(self) -> DedupeMode:
        return DedupeMode.AGGRESSIVE if self.settings.aggressive else DedupeMode.LLM

    async def _fetch(self, run_id: Optional[str]) -> List[Keyword]:
        try:
            return await self.store.list_keywords(self.settings.max_keywords)
        except StoreError as e:
            log_error(logger, "Keyword fetch failed", run_id=run_id, error=e, phase="fetch")
            raise

    async def plan(self, *, dry_run: bool = True, run_id: Optional[str] = None) -> DedupePlan:
        """Run every phase up to (not including) cluster resolution.

        Raises:
            StoreError: If the initial keyword fetch fails.
        """
        settings = self.settings
        keywords = await self._fetch(run_id)

        embeddings = await ensure_all(
            keywords,
            self.embedder,
            self.store,
            concurrency=settings.embed_concurrency,
            include_text=not settings.name_only,
            persist=not dry_run,
            run_id=run_id,
        )

        candidates = build_candidates(
            embeddings.keywords,
            threshold=settings.similarity_threshold,
            max_neighbors=settings.max_neighbors,
            name_only=settings.name_only,
        )
        clusters, discarded = cluster_pairs(candidates.pairs, settings.max_cluster_size)

        logger.info(
            "Candidate clusters built",
            extra={
                "run_id": run_id,
                "keywords": len(embeddings.keywords),
                "qualifying_pairs": candidates.qualifying_count,
                "pairs": len(candidates.pairs),
                "clusters": len(clusters),
                "clusters_discarded": discarded,
                "threshold": settings.similarity_threshold,
                "max_neighbors": settings.max_neighbors,
            },
        )

        return DedupePlan(
            keywords_loaded=len(keywords),
            embeddings=embeddings,
            candidates=candidates,
            clusters=clusters,
            clusters_discarded=discarded,
        )

    async def run(
        self,
        *,
        dry_run: bool = True,
        triggered_by: TriggeredBy = TriggeredBy.CLI,
    ) -> DedupeRunResult:
        """Run the full pipeline once.

        Args:
            dry_run: Compute and report only (default). No store writes.
            triggered_by: How this run was initiated.

        Returns:
            DedupeRunResult with the summary and the plan.

        Raises:
            StoreError: If the initial keyword fetch fails.
        """
        start_time = time.time()
        run_id = f"run_{uuid.uuid4().hex[:12]}"
        started_at = datetime.now(timezone.utc)

        logger.info(
            "Starting keyword dedupe run",
            extra={
                "run_id": run_id,
                "dry_run": dry_run,
                "mode": self.mode.value,
                "triggered_by": triggered_by.value,
                "max_keywords": self.settings.max_keywords,
            },
        )

        plan = await self.plan(dry_run=dry_run, run_id=run_id)

        outcomes: List[ClusterOutcome] = []
        if not dry_run and plan.clusters:
            engine = MergeEngine(
                self.store,
                self.embedder,
                self.decider,
                delete_secondaries=self.settings.delete_secondaries,
                aggressive=self.settings.aggressive,
                run_id=run_id,
            )
            outcomes = await engine.apply_all(plan.clusters, self.settings.merge_concurrency)

        summary = self._create_summary(
            run_id=run_id,
            started_at=started_at,
            start_time=start_time,
            triggered_by=triggered_by,
            dry_run=dry_run,
            plan=plan,
            outcomes=outcomes,
        )
        self._log_summary(summary)

        if not dry_run:
            await self._persist_summary(summary)

        return DedupeRunResult(summary=summary, plan=plan, outcomes=outcomes)

    def _create_summary(
        self,
        *,
        run_id: str,
        started_at: datetime,
        start_time: float,
        triggered_by: TriggeredBy,
        dry_run: bool,
        plan: DedupePlan,
        outcomes: List[ClusterOutcome],
    ) -> DedupeRunSummary:
        return DedupeRunSummary(
            run_id=run_id,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            triggered_by=triggered_by,
            dry_run=dry_run,
            mode=self.mode,
            threshold=self.settings.similarity_threshold,
            keywords_loaded=plan.keywords_loaded,
            embeddings_written=plan.embeddings.written,
            embedding_failures=plan.embeddings.failures,
            candidates=len(plan.embeddings.keywords),
            qualifying_pairs=plan.candidates.qualifying_count,
            pairs=len(plan.candidates.pairs),
            clusters=len(plan.clusters),
            clusters_discarded=plan.clusters_discarded,
            clusters_merged=sum(1 for o in outcomes if o.changed),
            keywords_deleted=sum(o.deleted for o in outcomes),
            keywords_renamed=sum(o.renamed for o in outcomes),
            decision_failures=sum(o.decision_failures for o in outcomes),
            mutation_failures=sum(o.mutation_failures for o in outcomes),
            processing_duration_ms=int((time.time() - start_time) * 1000),
        )

    def _log_summary(self, summary: DedupeRunSummary) -> None:
        logger.info("Keyword dedupe run complete", extra=summary.to_dict())

    async def _persist_summary(self, summary: DedupeRunSummary) -> None:
        try:
            await self.store.save_run_summary(summary)
        except StoreError as e:
            log_error(
                logger,
                "Failed to persist run summary",
                run_id=summary.run_id,
                error=e,
                phase="summary",
            )

    async def backfill_embeddings(self, *, force: bool = False) -> EmbeddingBatchResult:
        """Compute and persist missing embeddings without clustering.

        With ``force`` every keyword is re-embedded, replacing vectors that
        went stale after a name or description change.

        Raises:
            StoreError: If the keyword fetch fails.
        """
        keywords = await self._fetch(None)
        return await ensure_all(
            keywords,
            self.embedder,
            self.store,
            concurrency=self.settings.embed_concurrency,
            include_text=not self.settings.name_only,
            persist=True,
            force=force,
        )

    async def compare(self, first_id: int, second_id: int) -> KeywordComparison:
        """Similarity between two keywords, persisting any vectors that were missing.

        Raises:
            KeywordNotFoundError: If either id does not exist.
            EmbeddingProviderError, EmptyInputError: If embedding fails.
        """
        keywords = []
        for keyword_id in (first_id, second_id):
            keyword = await self.store.get_keyword(keyword_id)
            if keyword is None:
                raise KeywordNotFoundError(f"Keyword not found: {keyword_id}")
            vectors = await ensure_embeddings(keyword, self.embedder, self.store)
            keywords.append(
                keyword.model_copy(
                    update={"text_embedding": vectors.text, "name_embedding": vectors.name}
                )
            )

        a, b = keywords
        text_score = None
        if a.text_embedding and b.text_embedding:
            text_score = cosine_similarity(a.text_embedding, b.text_embedding)
        return KeywordComparison(
            a=a,
            b=b,
            text_score=text_score,
            name_score=cosine_similarity(a.name_embedding, b.name_embedding),
            score=pair_score(a, b, name_only=self.settings.name_only),
        )


def format_report(result: DedupeRunResult, settings: KeywordDedupeSettings) -> str:
    """Human-readable dry-run report: top pairs and every cluster."""
    plan = result.plan
    summary = result.summary
    lines = [
        f"Keywords loaded: {summary.keywords_loaded} "
        f"(ready: {summary.candidates}, embedding failures: {summary.embedding_failures})",
        f"Pairs >= {settings.similarity_threshold:.3f}: {plan.candidates.qualifying_count} "
        f"(kept after neighbor cap {settings.max_neighbors}: {len(plan.candidates.pairs)})",
        "",
    ]
    top_pairs = plan.candidates.pairs[:REPORT_TOP_PAIRS]
    if top_pairs:
        lines.append(f"Top {len(top_pairs)} candidate pairs:")
        lines.extend(f"  {pair.describe()}" for pair in top_pairs)
    else:
        # Nothing cleared the threshold; raw best scores help tune it.
        lines.append(f"No pairs above threshold. Top {len(plan.candidates.top_samples)} pairs (any score):")
        lines.extend(f"  {pair.describe()}" for pair in plan.candidates.top_samples)

    lines.append("")
    cap = settings.max_cluster_size if settings.max_cluster_size > 0 else "none"
    lines.append(
        f"Merge groups (primary = smallest id, max cluster size = {cap}, "
        f"discarded = {plan.clusters_discarded}):"
    )
    if not plan.clusters:
        lines.append("  No mergeable groups.")
    for index, cluster in enumerate(plan.clusters, start=1):
        lines.append(f"  {index}. {cluster.describe()}")

    if summary.dry_run:
        lines.append("")
        lines.append("Dry run only. Re-run with --apply to merge.")
    return "\n".join(lines)


def create_keyword_dedupe_service(settings: KeywordDedupeSettings) -> KeywordDedupeService:
    """Factory wiring the Firestore, Vertex AI and Gemini adapters."""
    from src.keyword_dedupe.decision_client import AsyncMergeDecider, GeminiDecisionClient
    from src.keyword_dedupe.embedding_client import AsyncTextEmbedder, EmbeddingClient
    from src.keyword_dedupe.firestore_repository import KeywordRepository

    store = KeywordRepository(
        config=settings.firestore,
        collection_name=settings.keyword_collection,
    )
    embedder = AsyncTextEmbedder(
        EmbeddingClient(config=settings.embedding),
        timeout_sec=settings.embed_timeout_sec,
    )
    decider = None
    if not settings.aggressive:
        decider = AsyncMergeDecider(
            GeminiDecisionClient(config=settings.gemini),
            timeout_sec=settings.decision_timeout_sec,
        )
    return KeywordDedupeService(settings, store, embedder, decider)
