"""Merge decision engine: resolve one cluster at a time.

Secondaries are processed in ascending id order as a fold over a
``PrimarySnapshot``: each decision sees the latest merged identity of the
primary, and the snapshot only advances once the primary's update has been
written. Clusters are disjoint, so ``apply_all`` runs them concurrently
without locking.

Every mutation first computes the new vectors and then writes name,
description and both embeddings in a single store update, so a failed
embedding call leaves the record untouched.
"""

import logging
from typing import List, Optional, Sequence

from src.common.config import DEFAULT_MERGE_CONCURRENCY
from src.common.logging import log_decision, log_error
from src.keyword_dedupe.decision_client import MergeDecider, decision_payload
from src.keyword_dedupe.embedding_client import EmbeddingProviderError, TextEmbedder
from src.keyword_dedupe.embeddings import EmptyInputError, embed_identity
from src.keyword_dedupe.firestore_repository import StoreError
from src.keyword_dedupe.models import (
    Cluster,
    ClusterOutcome,
    Keyword,
    MergeAction,
    MergeDecision,
    PrimarySnapshot,
)
from src.keyword_dedupe.worker_pool import run_bounded

logger = logging.getLogger(__name__)

# Failures of a single secondary's mutation; anything else propagates.
MUTATION_ERRORS = (StoreError, EmbeddingProviderError, EmptyInputError)


def merged_description(
    proposed: Optional[str],
    primary_description: Optional[str],
    secondary_description: Optional[str],
) -> Optional[str]:
    """Description for a merged record.

    The proposed description wins; otherwise the non-blank descriptions of
    both sides are joined with a newline; otherwise None.

    Example:
        >>> merged_description(None, "a", " ")
        'a'
        >>> merged_description(None, "a", "b")
        'a\\nb'
    """
    if proposed and proposed.strip():
        return proposed.strip()
    parts = [d.strip() for d in (primary_description, secondary_description) if d and d.strip()]
    return "\n".join(parts) or None


def is_noop_rename(new_name: Optional[str], secondary: Keyword, snapshot: PrimarySnapshot) -> bool:
    """A rename that would change nothing or collide with the primary is ignored."""
    candidate = (new_name or "").strip()
    if not candidate:
        return True
    return candidate == (secondary.name or "").strip() or candidate == (snapshot.name or "").strip()


class MergeEngine:
    """Applies merge/rename/skip decisions (or aggressive deletes) to clusters."""

    def __init__(
        self,
        store,
        embedder: TextEmbedder,
        decider: Optional[MergeDecider] = None,
        *,
        delete_secondaries: bool = True,
        aggressive: bool = False,
        run_id: Optional[str] = None,
    ):
        """Initialize the engine.

        Args:
            store: KeywordStore receiving updates and deletes.
            embedder: Embedding capability used to regenerate vectors.
            decider: Merge decision capability. Not used in aggressive mode.
            delete_secondaries: Delete a secondary after it has been merged.
            aggressive: Delete every secondary without asking for decisions.
            run_id: Run correlation id for logs.
        """
        if not aggressive and decider is None:
            raise ValueError("A decider is required unless aggressive mode is enabled")
        if aggressive and not delete_secondaries:
            raise ValueError("Aggressive mode requires delete_secondaries")
        self.store = store
        self.embedder = embedder
        self.decider = decider
        self.delete_secondaries = delete_secondaries
        self.aggressive = aggressive
        self.run_id = run_id

    async def apply_all(
        self,
        clusters: Sequence[Cluster],
        concurrency: int = DEFAULT_MERGE_CONCURRENCY,
    ) -> List[ClusterOutcome]:
        """Process clusters on a bounded worker pool.

        A cluster whose processing raised unexpectedly is logged and reported
        with every secondary counted as a mutation failure.
        """
        results = await run_bounded(list(clusters), self.apply_cluster, concurrency)

        outcomes: List[ClusterOutcome] = []
        for cluster, result in zip(clusters, results):
            if isinstance(result, BaseException):
                log_error(
                    logger,
                    "Cluster processing failed",
                    run_id=self.run_id,
                    error=result,
                    primary_id=cluster.primary.id,
                    phase="merge",
                )
                result = ClusterOutcome(
                    primary_id=cluster.primary.id,
                    size=len(cluster.members),
                    mutation_failures=len(cluster.secondaries),
                )
            outcomes.append(result)
        return outcomes

    async def apply_cluster(self, cluster: Cluster) -> ClusterOutcome:
        """Resolve one cluster and return its counters."""
        if self.aggressive:
            return await self._delete_secondaries(cluster)

        outcome = ClusterOutcome(primary_id=cluster.primary.id, size=len(cluster.members))
        snapshot = PrimarySnapshot.of(cluster.primary)
        for secondary in cluster.secondaries:
            snapshot = await self._apply_secondary(snapshot, secondary, outcome)
        return outcome

    async def _delete_secondaries(self, cluster: Cluster) -> ClusterOutcome:
        outcome = ClusterOutcome(primary_id=cluster.primary.id, size=len(cluster.members))
        ids = [secondary.id for secondary in cluster.secondaries]
        try:
            await self.store.delete_keywords(ids)
        except StoreError as e:
            outcome.mutation_failures += len(ids)
            log_error(
                logger,
                "Aggressive delete failed",
                run_id=self.run_id,
                error=e,
                primary_id=cluster.primary.id,
                keyword_ids=ids,
                phase="delete",
            )
            return outcome

        outcome.deleted += len(ids)
        log_decision(
            logger,
            run_id=self.run_id,
            action="aggressive_delete",
            outcome="deleted",
            primary_id=cluster.primary.id,
            primary_name=cluster.primary.name,
            deleted_ids=ids,
            cluster_size=len(cluster.members),
        )
        return outcome

    async def _apply_secondary(
        self,
        snapshot: PrimarySnapshot,
        secondary: Keyword,
        outcome: ClusterOutcome,
    ) -> PrimarySnapshot:
        try:
            decision = await self.decider.decide(snapshot.as_keyword(), secondary)
        except Exception as e:  # noqa: BLE001 - scoped to this secondary
            outcome.decision_failures += 1
            log_error(
                logger,
                "Merge decision failed",
                run_id=self.run_id,
                error=e,
                primary_id=snapshot.id,
                keyword_id=secondary.id,
                phase="decide",
            )
            return snapshot

        if decision.action == MergeAction.SKIP:
            outcome.skipped += 1
            log_decision(
                logger,
                run_id=self.run_id,
                action="skip",
                outcome="skipped",
                primary_id=snapshot.id,
                keyword_id=secondary.id,
                primary_name=snapshot.name,
                secondary_name=secondary.name,
            )
            return snapshot

        if decision.action == MergeAction.RENAME:
            await self._rename(snapshot, secondary, decision, outcome)
            return snapshot

        return await self._merge(snapshot, secondary, decision, outcome)

    async def _rename(
        self,
        snapshot: PrimarySnapshot,
        secondary: Keyword,
        decision: MergeDecision,
        outcome: ClusterOutcome,
    ) -> None:
        if is_noop_rename(decision.keyword, secondary, snapshot):
            outcome.skipped += 1
            log_decision(
                logger,
                run_id=self.run_id,
                action="rename",
                outcome="noop",
                primary_id=snapshot.id,
                keyword_id=secondary.id,
                secondary_name=secondary.name,
                proposed_name=decision.keyword,
            )
            return

        new_name = decision.keyword.strip()
        new_description = decision.description or secondary.description
        try:
            vectors = await embed_identity(new_name, new_description, self.embedder)
            await self.store.update_keyword(
                secondary.id,
                {
                    "name": new_name,
                    "description": new_description,
                    "text_embedding": vectors.text,
                    "name_embedding": vectors.name,
                },
            )
        except MUTATION_ERRORS as e:
            outcome.mutation_failures += 1
            log_error(
                logger,
                "Rename failed",
                run_id=self.run_id,
                error=e,
                keyword_id=secondary.id,
                phase="rename",
            )
            return

        outcome.renamed += 1
        log_decision(
            logger,
            run_id=self.run_id,
            action="rename",
            outcome="renamed",
            primary_id=snapshot.id,
            keyword_id=secondary.id,
            old_name=secondary.name,
            new_name=new_name,
        )

    async def _merge(
        self,
        snapshot: PrimarySnapshot,
        secondary: Keyword,
        decision: MergeDecision,
        outcome: ClusterOutcome,
    ) -> PrimarySnapshot:
        name = decision.keyword or snapshot.name
        description = merged_description(
            decision.description, snapshot.description, secondary.description
        )
        try:
            vectors = await embed_identity(name, description, self.embedder)
            await self.store.update_keyword(
                snapshot.id,
                {
                    "name": name,
                    "description": description,
                    "text_embedding": vectors.text,
                    "name_embedding": vectors.name,
                },
            )
        except MUTATION_ERRORS as e:
            outcome.mutation_failures += 1
            log_error(
                logger,
                "Merge update failed",
                run_id=self.run_id,
                error=e,
                primary_id=snapshot.id,
                keyword_id=secondary.id,
                phase="merge",
            )
            return snapshot

        merged = PrimarySnapshot(id=snapshot.id, name=name, description=description)
        outcome.merged += 1

        if not self.delete_secondaries:
            outcome.orphaned += 1
            log_decision(
                logger,
                run_id=self.run_id,
                action="merge",
                outcome="merged_secondary_kept",
                primary_id=snapshot.id,
                keyword_id=secondary.id,
                merged_name=name,
                decision=decision_payload(decision),
            )
            return merged

        try:
            await self.store.delete_keyword(secondary.id)
        except StoreError as e:
            outcome.mutation_failures += 1
            log_error(
                logger,
                "Delete of merged secondary failed",
                run_id=self.run_id,
                error=e,
                primary_id=snapshot.id,
                keyword_id=secondary.id,
                phase="delete",
            )
            return merged

        outcome.deleted += 1
        log_decision(
            logger,
            run_id=self.run_id,
            action="merge",
            outcome="merged_and_deleted",
            primary_id=snapshot.id,
            keyword_id=secondary.id,
            merged_name=name,
            removed_name=secondary.name,
        )
        return merged
