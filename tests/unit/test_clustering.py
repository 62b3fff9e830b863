from src.keyword_dedupe.clustering import UnionFind, cluster_pairs
from src.keyword_dedupe.models import SimilarityPair
from tests.fakes import make_keyword


def _pair(a: int, b: int, score: float = 0.9) -> SimilarityPair:
    return SimilarityPair(a=make_keyword(a, f"k{a}"), b=make_keyword(b, f"k{b}"), score=score)


def _id_sets(clusters):
    return {frozenset(c.ids) for c in clusters}


def test_union_find_attaches_second_root_under_first():
    forest = UnionFind()
    assert forest.union(1, 2) == 1
    assert forest.union(3, 2) == 3
    assert forest.find(1) == 3
    assert forest.find(2) == 3


def test_union_find_path_compression():
    forest = UnionFind()
    forest.union(2, 3)
    forest.union(1, 2)
    forest.union(0, 1)
    assert forest.find(3) == 0
    assert forest._parent[3] == 0


def test_transitive_pairs_form_one_cluster():
    clusters, discarded = cluster_pairs([_pair(1, 2), _pair(2, 3), _pair(7, 9)])

    assert discarded == 0
    assert _id_sets(clusters) == {frozenset({1, 2, 3}), frozenset({7, 9})}


def test_clustering_is_idempotent():
    pairs = [_pair(4, 5), _pair(1, 4), _pair(8, 9), _pair(2, 3), _pair(3, 8)]

    first, _ = cluster_pairs(pairs)
    second, _ = cluster_pairs(pairs)

    assert _id_sets(first) == _id_sets(second)
    assert [c.ids for c in first] == [c.ids for c in second]


def test_clusters_are_disjoint():
    pairs = [_pair(1, 2), _pair(3, 4), _pair(2, 5), _pair(6, 7), _pair(4, 8)]
    clusters, _ = cluster_pairs(pairs)

    seen = set()
    for cluster in clusters:
        assert seen.isdisjoint(cluster.ids)
        seen.update(cluster.ids)


def test_primary_is_smallest_id_and_members_sorted():
    clusters, _ = cluster_pairs([_pair(5, 9), _pair(3, 9), _pair(9, 12)])

    assert len(clusters) == 1
    cluster = clusters[0]
    assert cluster.primary.id == 3
    assert cluster.ids == [3, 5, 9, 12]
    assert [k.id for k in cluster.secondaries] == [5, 9, 12]


def test_clusters_emitted_in_first_seen_order():
    clusters, _ = cluster_pairs([_pair(10, 11), _pair(1, 2), _pair(11, 12)])
    assert [c.ids for c in clusters] == [[10, 11, 12], [1, 2]]


def test_oversized_clusters_are_discarded_entirely():
    pairs = [_pair(1, 2), _pair(2, 3), _pair(3, 4), _pair(10, 11)]

    clusters, discarded = cluster_pairs(pairs, max_cluster_size=3)

    assert discarded == 1
    assert _id_sets(clusters) == {frozenset({10, 11})}


def test_no_pairs_no_clusters():
    assert cluster_pairs([]) == ([], 0)
