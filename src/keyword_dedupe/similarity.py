"""Cosine similarity and candidate pair generation for keyword deduplication.

Candidate generation compares every unordered keyword pair. For a pair the
score is the cosine similarity of the name embeddings (name-only mode) or the
maximum of the text/text and name/name cosines, so a pair that matches either
semantically or lexically is picked up.

Pairs at or above the threshold are then thinned with a greedy neighbor cap:
walking pairs by descending score, a pair is kept only while neither keyword
has reached ``max_neighbors`` accepted pairs. This bounds per-keyword fan-out
but is a greedy approximation, not an optimal b-matching.
"""

import heapq
from collections import Counter
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from src.keyword_dedupe.models import CandidateSet, Keyword, SimilarityPair

DEFAULT_TOP_SAMPLES = 12


def cosine_similarity(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    """Compute cosine similarity between two vectors.

    Args:
        vec_a: First embedding vector.
        vec_b: Second embedding vector.

    Returns:
        Cosine similarity in [-1.0, 1.0]. Returns 0.0 if either vector is
        empty, has zero magnitude, or the dimensions differ.

    Example:
        >>> cosine_similarity([1.0, 0.0], [1.0, 0.0])
        1.0
        >>> cosine_similarity([0.0, 0.0], [1.0, 0.0])
        0.0
    """
    a = np.asarray(vec_a, dtype=np.float64)
    b = np.asarray(vec_b, dtype=np.float64)
    if a.size == 0 or b.size == 0 or a.shape != b.shape:
        return 0.0

    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0

    score = float(np.dot(a, b) / (norm_a * norm_b))
    if not np.isfinite(score):
        return 0.0
    return max(-1.0, min(1.0, score))


def pair_score(a: Keyword, b: Keyword, name_only: bool = False) -> float:
    """Score a keyword pair.

    Name-only mode uses the name embeddings. Otherwise the score is the max of
    the text and name cosines among those available on both sides, or 0.0 if
    neither kind is available on both sides.
    """
    if name_only:
        if not a.name_embedding or not b.name_embedding:
            return 0.0
        return cosine_similarity(a.name_embedding, b.name_embedding)

    scores = []
    if a.text_embedding and b.text_embedding:
        scores.append(cosine_similarity(a.text_embedding, b.text_embedding))
    if a.name_embedding and b.name_embedding:
        scores.append(cosine_similarity(a.name_embedding, b.name_embedding))
    return max(scores) if scores else 0.0


def _normalized_matrix(vectors: List[Optional[List[float]]]) -> Tuple[np.ndarray, np.ndarray]:
    """Stack vectors into a row-normalized matrix.

    Rows whose vector is missing or has a different dimension than the most
    common one are marked unavailable. Zero-norm rows stay zero, which makes
    their cosine with anything 0.0.
    """
    count = len(vectors)
    dims = Counter(len(v) for v in vectors if v)
    if not dims:
        return np.zeros((count, 1)), np.zeros(count, dtype=bool)

    dim = dims.most_common(1)[0][0]
    matrix = np.zeros((count, dim), dtype=np.float64)
    available = np.zeros(count, dtype=bool)
    for index, vector in enumerate(vectors):
        if vector and len(vector) == dim:
            matrix[index] = vector
            available[index] = True

    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms = np.where(norms == 0, 1, norms)
    return matrix / norms, available


def _row_scores(
    index: int,
    matrices: List[Tuple[np.ndarray, np.ndarray]],
) -> np.ndarray:
    """Scores of keyword ``index`` against every later keyword."""
    best: Optional[np.ndarray] = None
    for matrix, available in matrices:
        sims = np.clip(matrix[index + 1 :] @ matrix[index], -1.0, 1.0)
        if not available[index]:
            sims = np.full(sims.shape, -np.inf)
        else:
            sims = np.where(available[index + 1 :], sims, -np.inf)
        best = sims if best is None else np.maximum(best, sims)

    if best is None:
        return np.zeros(0)
    return np.where(np.isneginf(best), 0.0, best)


def cap_neighbors(pairs: List[SimilarityPair], max_neighbors: int) -> List[SimilarityPair]:
    """Greedily keep pairs (highest score first) while both endpoints are under the cap.

    ``max_neighbors <= 0`` disables capping.
    """
    ordered = sorted(pairs, key=lambda p: (-p.score, p.a.id, p.b.id))
    if max_neighbors <= 0:
        return ordered

    counts: Dict[int, int] = {}
    kept: List[SimilarityPair] = []
    for pair in ordered:
        count_a = counts.get(pair.a.id, 0)
        count_b = counts.get(pair.b.id, 0)
        if count_a >= max_neighbors or count_b >= max_neighbors:
            continue
        kept.append(pair)
        counts[pair.a.id] = count_a + 1
        counts[pair.b.id] = count_b + 1
    return kept


def build_candidates(
    keywords: Sequence[Keyword],
    threshold: float,
    max_neighbors: int,
    name_only: bool = False,
    top_k: int = DEFAULT_TOP_SAMPLES,
) -> CandidateSet:
    """Build capped candidate pairs for a set of keywords.

    Args:
        keywords: Keywords with embeddings already ensured.
        threshold: Minimum score (inclusive) for a pair to qualify.
        max_neighbors: Per-keyword cap on accepted pairs (0 disables).
        name_only: Score with name embeddings only.
        top_k: Number of best pairs to keep for diagnostics regardless of threshold.

    Returns:
        CandidateSet with capped pairs sorted by score descending, the top-K
        sample pairs, and the number of pairs that qualified before capping.
    """
    ordered = sorted(keywords, key=lambda k: k.id)
    count = len(ordered)
    if count < 2:
        return CandidateSet()

    kinds = ["name_embedding"] if name_only else ["text_embedding", "name_embedding"]
    matrices = [_normalized_matrix([getattr(k, kind) for k in ordered]) for kind in kinds]

    qualifying: List[SimilarityPair] = []
    # min-heap of (score, -i, -j) so the lowest score (then the largest ids) is evicted first
    samples: List[Tuple[float, int, int]] = []

    for i in range(count - 1):
        scores = _row_scores(i, matrices)

        for offset in np.nonzero(scores >= threshold)[0]:
            j = i + 1 + int(offset)
            qualifying.append(SimilarityPair(a=ordered[i], b=ordered[j], score=float(scores[offset])))

        if top_k > 0:
            take = min(top_k, scores.size)
            best_offsets = np.argpartition(-scores, take - 1)[:take]
            for offset in best_offsets:
                item = (float(scores[offset]), -i, -(i + 1 + int(offset)))
                if len(samples) < top_k:
                    heapq.heappush(samples, item)
                elif item > samples[0]:
                    heapq.heapreplace(samples, item)

    top_samples = [
        SimilarityPair(a=ordered[-neg_i], b=ordered[-neg_j], score=score)
        for score, neg_i, neg_j in sorted(samples, reverse=True)
    ]

    return CandidateSet(
        pairs=cap_neighbors(qualifying, max_neighbors),
        top_samples=top_samples,
        qualifying_count=len(qualifying),
    )
