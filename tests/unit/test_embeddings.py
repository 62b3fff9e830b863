import time

import pytest

from src.keyword_dedupe.embedding_client import AsyncTextEmbedder, EmbeddingProviderError
from src.keyword_dedupe.embeddings import (
    EmptyNameError,
    EmptyTextError,
    build_embed_text,
    embed_identity,
    ensure_all,
    ensure_embeddings,
)
from src.keyword_dedupe.models import Keyword
from tests.fakes import FakeEmbedder, FakeKeywordStore, make_keyword


def test_build_embed_text():
    assert build_embed_text("Trump", "US president") == "Trump\n\nUS president"
    assert build_embed_text("Trump", None) == "Trump"
    assert build_embed_text(" Trump ", "   ") == "Trump"
    assert build_embed_text("", "") == ""


@pytest.mark.asyncio
async def test_ensure_embeddings_computes_missing_vectors_and_writes_once():
    keyword = Keyword(id=1, name="Trump", description="US president")
    store = FakeKeywordStore([keyword])
    embedder = FakeEmbedder(
        vectors={"Trump": [0.0, 1.0], "Trump\n\nUS president": [1.0, 0.0]}
    )

    ensured = await ensure_embeddings(keyword, embedder, store)

    assert ensured.name == [0.0, 1.0]
    assert ensured.text == [1.0, 0.0]
    assert ensured.written
    assert store.updates == [
        (1, {"name_embedding": [0.0, 1.0], "text_embedding": [1.0, 0.0]}),
    ]


@pytest.mark.asyncio
async def test_ensure_embeddings_skips_present_vectors():
    keyword = make_keyword(1, "Trump", [1.0, 0.0])
    store = FakeKeywordStore([keyword])
    embedder = FakeEmbedder()

    ensured = await ensure_embeddings(keyword, embedder, store)

    assert not ensured.written
    assert embedder.calls == []
    assert store.updates == []


@pytest.mark.asyncio
async def test_name_only_mode_does_not_require_text_embedding():
    keyword = Keyword(id=1, name="Trump", name_embedding=[1.0, 0.0])
    embedder = FakeEmbedder()

    ensured = await ensure_embeddings(keyword, embedder, FakeKeywordStore(), include_text=False)

    assert ensured.text is None
    assert embedder.calls == []


@pytest.mark.asyncio
async def test_dry_run_does_not_persist():
    keyword = Keyword(id=1, name="Trump")
    store = FakeKeywordStore([keyword])

    ensured = await ensure_embeddings(keyword, FakeEmbedder(), store, persist=False)

    assert ensured.name
    assert not ensured.written
    assert store.updates == []


@pytest.mark.asyncio
async def test_blank_name_raises_empty_name_error():
    with pytest.raises(EmptyNameError):
        await ensure_embeddings(Keyword(id=1, name="  "), FakeEmbedder(), FakeKeywordStore())


@pytest.mark.asyncio
async def test_blank_text_raises_empty_text_error():
    keyword = Keyword(id=1, name=" ", name_embedding=[1.0])
    with pytest.raises(EmptyTextError):
        await ensure_embeddings(keyword, FakeEmbedder(), FakeKeywordStore())


@pytest.mark.asyncio
async def test_embed_identity_always_recomputes_both_vectors():
    embedder = FakeEmbedder(vectors={"X": [0.0, 1.0], "X\n\nmerged": [1.0, 0.0]})

    vectors = await embed_identity("X", "merged", embedder)

    assert vectors.name == [0.0, 1.0]
    assert vectors.text == [1.0, 0.0]
    assert embedder.calls == ["X", "X\n\nmerged"]


@pytest.mark.asyncio
async def test_ensure_all_excludes_failures_and_counts_writes():
    keywords = [
        Keyword(id=1, name="ok"),
        Keyword(id=2, name="broken"),
        Keyword(id=3, name=""),
        make_keyword(4, "ready", [1.0, 0.0]),
        Keyword(id=5, name="unwritable"),
    ]
    store = FakeKeywordStore(keywords)
    store.fail_update_ids = {5}
    embedder = FakeEmbedder(fail_on={"broken"})

    result = await ensure_all(keywords, embedder, store, concurrency=3)

    assert [k.id for k in result.keywords] == [1, 4]
    assert result.failures == 3
    assert result.written == 1
    assert result.keywords[0].name_embedding == embedder.default


@pytest.mark.asyncio
async def test_async_embedder_timeout_becomes_provider_error():
    class SlowClient:
        def get_embedding(self, text):
            time.sleep(0.5)
            return [1.0]

    embedder = AsyncTextEmbedder(SlowClient(), timeout_sec=0.05)

    with pytest.raises(EmbeddingProviderError):
        await embedder.embed("Trump")


@pytest.mark.asyncio
async def test_async_embedder_passes_through_vectors():
    class Client:
        def get_embedding(self, text):
            return [float(len(text))]

    embedder = AsyncTextEmbedder(Client(), timeout_sec=1.0)
    assert await embedder.embed("abc") == [3.0]


@pytest.mark.asyncio
async def test_force_overwrites_existing_vectors_from_current_description():
    keyword = make_keyword(1, "Trump", [0.0, 0.0, 1.0], description="45th president")
    store = FakeKeywordStore([keyword])
    embedder = FakeEmbedder(
        vectors={"Trump": [0.0, 1.0, 0.0], "Trump\n\n45th president": [1.0, 0.0, 0.0]}
    )

    ensured = await ensure_embeddings(keyword, embedder, store, force=True)

    assert ensured.written
    assert store.keywords[1].name_embedding == [0.0, 1.0, 0.0]
    assert store.keywords[1].text_embedding == [1.0, 0.0, 0.0]
    assert len(store.updates) == 1


@pytest.mark.asyncio
async def test_ensure_all_logs_progress(caplog):
    keywords = [Keyword(id=i, name=f"k{i}") for i in range(1, 121)]
    store = FakeKeywordStore(keywords)

    with caplog.at_level("INFO", logger="src.keyword_dedupe.embeddings"):
        await ensure_all(keywords, FakeEmbedder(), store, concurrency=8)

    done = [r.done for r in caplog.records if r.getMessage() == "Embedding progress"]
    assert done == [50, 100, 120]
