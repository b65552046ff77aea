"""
摄取 Pipeline 测试 (内存向量库 / 关键词表)
"""
from __future__ import annotations

import asyncio

import pytest

from knowledge.errors import EmptyDocumentError, ValidationError
from knowledge.fakes import InMemoryKeywordStore, InMemoryVectorStore, RuleEmbedder
from knowledge.models import ChunkOptions, ChunkStrategy, ContentType, IngestOptions
from knowledge.pipeline import IngestionPipeline

INDEX = "kb_test"


def _pipeline() -> tuple[IngestionPipeline, InMemoryVectorStore, InMemoryKeywordStore, RuleEmbedder]:
    embedder = RuleEmbedder(dimension=4)
    vectors = InMemoryVectorStore()
    keywords = InMemoryKeywordStore()
    pipeline = IngestionPipeline(
        embedder=embedder, vector_store=vectors, keyword_store=keywords, index_name=INDEX,
    )
    return pipeline, vectors, keywords, embedder


def _long_text(paragraphs: int = 10) -> str:
    return "\n\n".join(
        f"Paragraph {i}. " + " ".join(f"detail{i}x{j}" for j in range(30)) for i in range(paragraphs)
    )


def _records(vectors: InMemoryVectorStore) -> dict:
    return vectors.indexes[INDEX]["records"]


# ---------------------------------------------------------------------------
# 1. 基本契约
# ---------------------------------------------------------------------------

def test_ingest_ids_are_deterministic_and_unique() -> None:
    pipeline, vectors, keywords, embedder = _pipeline()
    opts = IngestOptions(source_id="guide", chunk_options=ChunkOptions(max_size=200, overlap=20))

    result = asyncio.run(pipeline.ingest(_long_text(), opts))

    assert result.document_id == "guide"
    assert result.chunks_ingested == len(result.vector_ids)
    assert len(set(result.vector_ids)) == len(result.vector_ids)
    assert result.vector_ids == [f"guide_chunk_{i}" for i in range(result.chunks_ingested)]
    assert not result.is_degraded
    assert set(keywords.rows) == set(result.vector_ids)


def test_ingest_embeds_once_and_upserts_once() -> None:
    pipeline, vectors, _, embedder = _pipeline()
    result = asyncio.run(pipeline.ingest(
        _long_text(), IngestOptions(source_id="guide", chunk_options=ChunkOptions(max_size=150, overlap=10)),
    ))

    assert result.chunks_ingested > 3
    assert embedder.batch_calls == [result.chunks_ingested]
    assert vectors.upsert_calls == 1


def test_ingest_twice_is_idempotent() -> None:
    pipeline, vectors, keywords, _ = _pipeline()
    opts = IngestOptions(source_id="guide", chunk_options=ChunkOptions(max_size=200, overlap=20))

    async def _run():
        first = await pipeline.ingest(_long_text(), opts)
        second = await pipeline.ingest(_long_text(), opts)
        return first, second

    first, second = asyncio.run(_run())
    assert set(first.vector_ids) == set(second.vector_ids)
    assert len(_records(vectors)) == first.chunks_ingested
    assert len(keywords.rows) == first.chunks_ingested


def test_ingest_creates_index_with_embedder_dimension() -> None:
    pipeline, vectors, _, _ = _pipeline()
    asyncio.run(pipeline.ingest("hello world", IngestOptions(source_id="a")))
    assert vectors.indexes[INDEX]["dimension"] == 4
    assert vectors.indexes[INDEX]["metric"] == "cosine"


def test_default_document_id_and_source_name() -> None:
    pipeline, vectors, _, _ = _pipeline()
    result = asyncio.run(pipeline.ingest("hello world"))

    assert result.document_id.startswith("doc_")
    _, meta = _records(vectors)[result.vector_ids[0]]
    assert meta["source_name"] == result.document_id


# ---------------------------------------------------------------------------
# 2. 元数据
# ---------------------------------------------------------------------------

def test_reserved_metadata_wins_over_caller_metadata() -> None:
    pipeline, vectors, keywords, _ = _pipeline()
    result = asyncio.run(pipeline.ingest(
        "Refunds are processed within five business days.",
        IngestOptions(
            organization_id="org-1",
            source_id="refunds",
            source_name="Refund FAQ",
            metadata={"team": "support", "document_id": "evil", "organization_id": "evil", "text": "x"},
        ),
    ))

    _, meta = _records(vectors)[result.vector_ids[0]]
    assert meta["organization_id"] == "org-1"
    assert meta["document_id"] == "refunds"
    assert meta["source_name"] == "Refund FAQ"
    assert meta["text"] == "Refunds are processed within five business days."
    assert meta["team"] == "support"
    assert meta["chunk_index"] == 0
    assert meta["total_chunks"] == 1
    assert meta["char_count"] == len(meta["text"])
    assert meta["ingested_at"].endswith("+00:00")

    row = keywords.rows[result.vector_ids[0]]
    assert row["organization_id"] == "org-1"
    assert "text" not in row["metadata"]


def test_missing_organization_is_absent_not_empty() -> None:
    pipeline, vectors, keywords, _ = _pipeline()
    result = asyncio.run(pipeline.ingest(
        "System content.", IngestOptions(source_id="sys", metadata={"organization_id": "spoofed"}),
    ))

    _, meta = _records(vectors)[result.vector_ids[0]]
    assert "organization_id" not in meta
    assert keywords.rows[result.vector_ids[0]]["organization_id"] is None


def test_blank_organization_is_rejected() -> None:
    pipeline, vectors, _, _ = _pipeline()
    with pytest.raises(ValidationError):
        asyncio.run(pipeline.ingest("hello", IngestOptions(organization_id="  ", source_id="a")))
    assert vectors.indexes == {}


def test_empty_content_fails_before_any_write() -> None:
    pipeline, vectors, keywords, embedder = _pipeline()
    with pytest.raises(EmptyDocumentError):
        asyncio.run(pipeline.ingest("   ", IngestOptions(source_id="empty")))
    assert embedder.batch_calls == []
    assert vectors.indexes == {}
    assert keywords.rows == {}


def test_markdown_3000_chars_total_chunks_consistent() -> None:
    sections = []
    for i in range(6):
        body = " ".join(f"Sentence {j} explains step {j} of topic {i}." for j in range(14))
        sections.append(f"## Section {i}\n\n{body}")
    doc = "# Handbook\n\n" + "\n\n".join(sections)
    assert len(doc) >= 3000

    pipeline, vectors, _, _ = _pipeline()
    result = asyncio.run(pipeline.ingest(doc, IngestOptions(
        source_id="handbook",
        type=ContentType.MARKDOWN,
        chunk_options=ChunkOptions(strategy=ChunkStrategy.MARKDOWN, max_size=512, overlap=50),
    )))

    assert result.chunks_ingested >= 5
    metas = [_records(vectors)[vid][1] for vid in result.vector_ids]
    assert all(len(m["text"]) <= 512 + 50 for m in metas)
    assert {m["total_chunks"] for m in metas} == {result.chunks_ingested}
    assert [m["chunk_index"] for m in metas] == list(range(result.chunks_ingested))


# ---------------------------------------------------------------------------
# 3. 降级与删除
# ---------------------------------------------------------------------------

def test_keyword_write_failure_is_reported_not_raised() -> None:
    pipeline, vectors, keywords, _ = _pipeline()
    keywords.fail_insert = True

    result = asyncio.run(pipeline.ingest("hello world", IngestOptions(source_id="a")))

    assert result.is_degraded
    assert result.degraded[0].store == "keyword"
    assert result.degraded[0].document_id == "a"
    assert len(_records(vectors)) == 1


def test_delete_document_removes_both_stores() -> None:
    pipeline, vectors, keywords, _ = _pipeline()

    async def _run():
        await pipeline.ingest(_long_text(), IngestOptions(source_id="a"))
        await pipeline.ingest("other doc", IngestOptions(source_id="b"))
        return await pipeline.delete_document("a")

    degraded = asyncio.run(_run())
    assert degraded == []
    assert [m["document_id"] for _, m in _records(vectors).values()] == ["b"]
    assert {r["document_id"] for r in keywords.rows.values()} == {"b"}


def test_delete_keyword_failure_still_deletes_vectors() -> None:
    pipeline, vectors, keywords, _ = _pipeline()

    async def _run():
        await pipeline.ingest("hello world", IngestOptions(source_id="a"))
        keywords.fail_delete = True
        return await pipeline.delete_document("a")

    degraded = asyncio.run(_run())
    assert degraded[0].operation == "delete"
    assert _records(vectors) == {}


def test_delete_without_index_is_noop() -> None:
    pipeline, _, _, _ = _pipeline()
    assert asyncio.run(pipeline.delete_document("missing")) == []


def test_shorter_reingest_leaves_orphans_unless_deleted_first() -> None:
    pipeline, vectors, _, _ = _pipeline()
    small = ChunkOptions(max_size=150, overlap=0)

    async def _run():
        long = await pipeline.ingest(_long_text(), IngestOptions(source_id="a", chunk_options=small))
        short = await pipeline.ingest("tiny", IngestOptions(source_id="a", chunk_options=small))
        orphaned = len(_records(vectors))
        await pipeline.delete_document("a")
        await pipeline.ingest("tiny", IngestOptions(source_id="a", chunk_options=small))
        return long, short, orphaned

    long, short, orphaned = asyncio.run(_run())
    assert short.chunks_ingested == 1
    assert orphaned == long.chunks_ingested
    assert list(_records(vectors)) == ["a_chunk_0"]


def test_index_stats() -> None:
    pipeline, _, _, _ = _pipeline()

    async def _run():
        before = await pipeline.index_stats()
        result = await pipeline.ingest(_long_text(), IngestOptions(source_id="a"))
        after = await pipeline.index_stats()
        return before, result, after

    before, result, after = asyncio.run(_run())
    assert before.exists is False and before.count == 0
    assert after.exists is True
    assert after.count == result.chunks_ingested
    assert after.index_name == INDEX
