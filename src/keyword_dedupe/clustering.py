"""Union-find clustering of candidate pairs.

A cluster is a connected component of the candidate graph. The parent map
lives only for the duration of one ``cluster_pairs`` call.
"""

from typing import Dict, List, Sequence, Tuple

from src.keyword_dedupe.models import Cluster, Keyword, SimilarityPair


class UnionFind:
    """Disjoint-set forest keyed by keyword id.

    ``find`` compresses paths; ``union`` attaches the second root under the
    first without rank balancing, which is fine for capped candidate volumes.
    """

    def __init__(self) -> None:
        self._parent: Dict[int, int] = {}

    def find(self, item: int) -> int:
        parent = self._parent.setdefault(item, item)
        if parent == item:
            return item

        root = item
        while self._parent[root] != root:
            root = self._parent[root]

        while item != root:
            next_item = self._parent[item]
            self._parent[item] = root
            item = next_item
        return root

    def union(self, a: int, b: int) -> int:
        root_a = self.find(a)
        root_b = self.find(b)
        if root_a != root_b:
            self._parent[root_b] = root_a
        return root_a


def cluster_pairs(
    pairs: Sequence[SimilarityPair],
    max_cluster_size: int = 0,
) -> Tuple[List[Cluster], int]:
    """Group candidate pairs into clusters.

    Args:
        pairs: Accepted candidate pairs.
        max_cluster_size: Clusters larger than this are discarded entirely
            as probable false-positive mega-clusters (0 = no cap).

    Returns:
        Tuple of (clusters, discarded_count). Cluster members are sorted by id
        and clusters are ordered by the first time their root is seen while
        walking the pairs.
    """
    forest = UnionFind()
    for pair in pairs:
        forest.union(pair.a.id, pair.b.id)

    groups: Dict[int, Dict[int, Keyword]] = {}
    for pair in pairs:
        root = forest.find(pair.a.id)
        members = groups.setdefault(root, {})
        members.setdefault(pair.a.id, pair.a)
        members.setdefault(pair.b.id, pair.b)

    clusters: List[Cluster] = []
    discarded = 0
    for members in groups.values():
        if len(members) < 2:
            continue
        if max_cluster_size > 0 and len(members) > max_cluster_size:
            discarded += 1
            continue
        clusters.append(Cluster(members=sorted(members.values(), key=lambda k: k.id)))

    return clusters, discarded
