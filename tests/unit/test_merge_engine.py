import pytest

from src.keyword_dedupe.decision_client import DecisionError
from src.keyword_dedupe.merge_engine import MergeEngine, is_noop_rename, merged_description
from src.keyword_dedupe.models import Cluster, MergeDecision, PrimarySnapshot
from tests.fakes import FakeEmbedder, FakeKeywordStore, ScriptedDecider, make_keyword


def _cluster(*keywords):
    return Cluster(members=sorted(keywords, key=lambda k: k.id))


def test_merged_description_rules():
    assert merged_description("proposed", "a", "b") == "proposed"
    assert merged_description(None, "a", "b") == "a\nb"
    assert merged_description("  ", None, "b") == "b"
    assert merged_description(None, " ", None) is None


def test_noop_rename_guard():
    secondary = make_keyword(2, "Donald Trump")
    snapshot = PrimarySnapshot(id=1, name="Trump", description=None)

    assert is_noop_rename(None, secondary, snapshot)
    assert is_noop_rename("   ", secondary, snapshot)
    assert is_noop_rename("Donald Trump", secondary, snapshot)
    assert is_noop_rename(" Trump ", secondary, snapshot)
    assert not is_noop_rename("Trump impeachment", secondary, snapshot)


@pytest.mark.asyncio
async def test_decision_chaining_sees_merged_primary_name():
    k1, k2, k3 = make_keyword(1, "A"), make_keyword(2, "B"), make_keyword(3, "C")
    store = FakeKeywordStore([k1, k2, k3])
    decider = ScriptedDecider({2: MergeDecision(action="merge", keyword="X")})
    engine = MergeEngine(store, FakeEmbedder(), decider)

    outcome = await engine.apply_cluster(_cluster(k1, k2, k3))

    assert [(p.id, s.id) for p, s in decider.calls] == [(1, 2), (1, 3)]
    assert decider.calls[0][0].name == "A"
    assert decider.calls[1][0].name == "X"
    assert outcome.merged == 1
    assert outcome.deleted == 1
    assert outcome.skipped == 1
    assert store.keywords[1].name == "X"
    assert 2 not in store.keywords
    assert 3 in store.keywords


@pytest.mark.asyncio
async def test_merge_writes_single_update_with_regenerated_vectors():
    k1 = make_keyword(1, "Trump", [0.0, 1.0], description="45th president")
    k2 = make_keyword(2, "Donald Trump", [0.0, 1.0], description="businessman")
    store = FakeKeywordStore([k1, k2])
    embedder = FakeEmbedder(vectors={"Donald Trump": [0.5, 0.5]})
    decider = ScriptedDecider({2: MergeDecision(action="merge", keyword="Donald Trump")})

    await MergeEngine(store, embedder, decider).apply_cluster(_cluster(k1, k2))

    assert store.updates == [
        (
            1,
            {
                "name": "Donald Trump",
                "description": "45th president\nbusinessman",
                "text_embedding": embedder.default,
                "name_embedding": [0.5, 0.5],
            },
        )
    ]
    assert store.deletes == [[2]]


@pytest.mark.asyncio
async def test_merge_without_proposed_name_keeps_primary_name():
    k1, k2 = make_keyword(1, "Trump"), make_keyword(2, "Trump!")
    store = FakeKeywordStore([k1, k2])
    decider = ScriptedDecider({2: MergeDecision(action="merge")})

    await MergeEngine(store, FakeEmbedder(), decider).apply_cluster(_cluster(k1, k2))

    assert store.keywords[1].name == "Trump"


@pytest.mark.asyncio
async def test_merge_with_keep_secondaries_leaves_orphan():
    k1, k2 = make_keyword(1, "Trump"), make_keyword(2, "Donald Trump")
    store = FakeKeywordStore([k1, k2])
    decider = ScriptedDecider({2: MergeDecision(action="merge")})
    engine = MergeEngine(store, FakeEmbedder(), decider, delete_secondaries=False)

    outcome = await engine.apply_cluster(_cluster(k1, k2))

    assert outcome.merged == 1
    assert outcome.orphaned == 1
    assert outcome.deleted == 0
    assert store.deletes == []
    assert 2 in store.keywords


@pytest.mark.parametrize("proposed", ["", "Donald Trump", "Trump"])
@pytest.mark.asyncio
async def test_noop_rename_makes_zero_mutations(proposed):
    k1, k2 = make_keyword(1, "Trump"), make_keyword(2, "Donald Trump")
    store = FakeKeywordStore([k1, k2])
    embedder = FakeEmbedder()
    decider = ScriptedDecider({2: MergeDecision(action="rename", keyword=proposed)})

    outcome = await MergeEngine(store, embedder, decider).apply_cluster(_cluster(k1, k2))

    assert store.mutation_count == 0
    assert embedder.calls == []
    assert outcome.renamed == 0


@pytest.mark.asyncio
async def test_rename_updates_secondary_and_keeps_it():
    k1 = make_keyword(1, "Trump")
    k2 = make_keyword(2, "Trump crisis", description="impeachment news")
    store = FakeKeywordStore([k1, k2])
    decider = ScriptedDecider({2: MergeDecision(action="rename", keyword="Trump impeachment crisis")})

    outcome = await MergeEngine(store, FakeEmbedder(), decider).apply_cluster(_cluster(k1, k2))

    assert outcome.renamed == 1
    assert store.deletes == []
    assert [u[0] for u in store.updates] == [2]
    updated = store.keywords[2]
    assert updated.name == "Trump impeachment crisis"
    assert updated.description == "impeachment news"


@pytest.mark.asyncio
async def test_decision_failure_is_counted_and_cluster_continues():
    k1, k2, k3 = make_keyword(1, "A"), make_keyword(2, "B"), make_keyword(3, "C")
    store = FakeKeywordStore([k1, k2, k3])
    decider = ScriptedDecider(
        {2: DecisionError("malformed"), 3: MergeDecision(action="merge", keyword="AC")}
    )

    outcome = await MergeEngine(store, FakeEmbedder(), decider).apply_cluster(_cluster(k1, k2, k3))

    assert outcome.decision_failures == 1
    assert outcome.merged == 1
    assert store.keywords[1].name == "AC"
    assert 2 in store.keywords


@pytest.mark.asyncio
async def test_unexpected_decider_error_keeps_earlier_merges_counted():
    k1, k2, k3 = make_keyword(1, "A"), make_keyword(2, "B"), make_keyword(3, "C")
    store = FakeKeywordStore([k1, k2, k3])
    decider = ScriptedDecider({2: MergeDecision(action="merge"), 3: RuntimeError("connection reset")})
    engine = MergeEngine(store, FakeEmbedder(), decider)

    [outcome] = await engine.apply_all([_cluster(k1, k2, k3)], concurrency=2)

    assert store.deletes == [[2]]
    assert outcome.merged == 1
    assert outcome.deleted == 1
    assert outcome.decision_failures == 1
    assert outcome.mutation_failures == 0
    assert 3 in store.keywords


@pytest.mark.asyncio
async def test_store_failure_skips_secondary_and_keeps_snapshot():
    k1, k2, k3 = make_keyword(1, "A"), make_keyword(2, "B"), make_keyword(3, "C")
    store = FakeKeywordStore([k1, k2, k3])
    store.fail_update_ids = {1}
    decider = ScriptedDecider(
        {
            2: MergeDecision(action="merge", keyword="AB"),
            3: MergeDecision(action="skip"),
        }
    )

    outcome = await MergeEngine(store, FakeEmbedder(), decider).apply_cluster(_cluster(k1, k2, k3))

    assert outcome.mutation_failures == 1
    assert outcome.merged == 0
    assert decider.calls[1][0].name == "A"
    assert store.deletes == []


@pytest.mark.asyncio
async def test_embedding_failure_leaves_record_untouched():
    k1, k2 = make_keyword(1, "A"), make_keyword(2, "B")
    store = FakeKeywordStore([k1, k2])
    decider = ScriptedDecider({2: MergeDecision(action="rename", keyword="B2")})
    embedder = FakeEmbedder(fail_on={"B2"})

    outcome = await MergeEngine(store, embedder, decider).apply_cluster(_cluster(k1, k2))

    assert outcome.mutation_failures == 1
    assert store.mutation_count == 0


@pytest.mark.asyncio
async def test_aggressive_mode_deletes_secondaries_without_decisions():
    k1, k2 = make_keyword(1, "Trump"), make_keyword(2, "Donald Trump")
    store = FakeKeywordStore([k1, k2])

    outcome = await MergeEngine(store, FakeEmbedder(), aggressive=True).apply_cluster(
        _cluster(k1, k2)
    )

    assert outcome.deleted == 1
    assert store.deletes == [[2]]
    assert store.updates == []
    assert store.keywords[1] == k1


@pytest.mark.asyncio
async def test_aggressive_delete_failure_is_counted():
    k1, k2, k3 = make_keyword(1, "A"), make_keyword(2, "B"), make_keyword(3, "C")
    store = FakeKeywordStore([k1, k2, k3])
    store.fail_delete_ids = {3}

    outcome = await MergeEngine(store, FakeEmbedder(), aggressive=True).apply_cluster(
        _cluster(k1, k2, k3)
    )

    assert outcome.deleted == 0
    assert outcome.mutation_failures == 2


def test_engine_requires_decider_unless_aggressive():
    with pytest.raises(ValueError):
        MergeEngine(FakeKeywordStore(), FakeEmbedder())
    with pytest.raises(ValueError):
        MergeEngine(FakeKeywordStore(), FakeEmbedder(), aggressive=True, delete_secondaries=False)


@pytest.mark.asyncio
async def test_apply_all_processes_disjoint_clusters():
    keywords = [make_keyword(i, f"k{i}") for i in range(1, 7)]
    store = FakeKeywordStore(keywords)
    decider = ScriptedDecider({i: MergeDecision(action="merge") for i in (2, 4, 6)})
    clusters = [_cluster(keywords[i], keywords[i + 1]) for i in (0, 2, 4)]

    outcomes = await MergeEngine(store, FakeEmbedder(), decider).apply_all(clusters, concurrency=2)

    assert [o.primary_id for o in outcomes] == [1, 3, 5]
    assert all(o.deleted == 1 for o in outcomes)
    assert sorted(store.keywords) == [1, 3, 5]
