"""
混合检索引擎测试: RRF、三种模式、租户隔离、故障降级、精排、RAG 回答
"""
from __future__ import annotations

import asyncio
import json
import logging

import pytest

from knowledge.errors import RetrievalError, ValidationError
from knowledge.fakes import (
    FailingGenerator,
    InMemoryKeywordStore,
    InMemoryVectorStore,
    RuleEmbedder,
    ScriptedGenerator,
)
from knowledge.models import AnswerOptions, IngestOptions, QueryHit, QueryMode, QueryOptions
from knowledge.pipeline import IngestionPipeline
from knowledge.query import HybridQueryEngine, rrf_fuse
from knowledge.router import generate_answer_sse

INDEX = "kb_test"

# 规则顺序即优先级: 含 "glossary" 的文本即使包含 "refund policy" 也落在正交方向
RULES = [
    ("glossary", [0.0, 1.0, 0.0, 0.0]),
    ("money back", [1.0, 0.0, 0.0, 0.0]),
    ("store credit", [0.8, 0.6, 0.0, 0.0]),
    ("refund policy", [1.0, 0.0, 0.0, 0.0]),
    ("alpha", [1.0, 0.1, 0.0, 0.0]),
    ("beta", [1.0, 0.3, 0.0, 0.0]),
    ("gamma", [1.0, 0.5, 0.0, 0.0]),
    ("delta", [1.0, 0.7, 0.0, 0.0]),
    ("epsilon", [1.0, 0.9, 0.0, 0.0]),
    ("ranking query", [1.0, 0.0, 0.0, 0.0]),
]


def _engine(generator=None):
    embedder = RuleEmbedder(RULES, dimension=4)
    vectors = InMemoryVectorStore()
    keywords = InMemoryKeywordStore()
    pipeline = IngestionPipeline(
        embedder=embedder, vector_store=vectors, keyword_store=keywords, index_name=INDEX,
    )
    engine = HybridQueryEngine(
        embedder=embedder, vector_store=vectors, keyword_store=keywords,
        index_name=INDEX, generator=generator,
    )
    return engine, pipeline, vectors, keywords


async def _seed(pipeline: IngestionPipeline, docs: dict[str, str], organization_id: str = "org-1") -> None:
    for source_id, text in docs.items():
        await pipeline.ingest(text, IngestOptions(organization_id=organization_id, source_id=source_id))


REFUND_CORPUS = {
    "doc-x": "Glossary: the phrase refund policy is defined in the legal appendix.",
    "doc-y": "Customers get their money back within thirty days of purchase.",
    "doc-z": "Shipping times vary by region and carrier.",
}


def _hit(hid: str, score: float = 0.0) -> QueryHit:
    return QueryHit(id=hid, text=hid, score=score)


# ---------------------------------------------------------------------------
# 1. RRF
# ---------------------------------------------------------------------------

def test_rrf_item_first_in_both_lists_ranks_first() -> None:
    vector = [_hit("A"), _hit("B"), _hit("C")]
    keyword = [_hit("A"), _hit("D"), _hit("E")]
    for weight in (0.0, 0.25, 0.5, 0.75, 1.0):
        fused = rrf_fuse(vector, keyword, vector_weight=weight)
        assert fused[0].id == "A"
        assert all(fused[0].score >= h.score for h in fused)


def test_rrf_scores_are_summed() -> None:
    fused = rrf_fuse([_hit("A"), _hit("B")], [_hit("B")], vector_weight=0.5, k=60)
    scores = {h.id: h.score for h in fused}
    assert scores["A"] == pytest.approx(0.5 / 61)
    assert scores["B"] == pytest.approx(0.5 / 62 + 0.5 / 61)
    assert [h.id for h in fused] == ["B", "A"]


def test_rrf_weight_boundaries_reproduce_single_lists() -> None:
    vector = [_hit("A"), _hit("B"), _hit("C")]
    keyword = [_hit("D"), _hit("B"), _hit("E")]
    assert [h.id for h in rrf_fuse(vector, keyword, vector_weight=1.0)] == ["A", "B", "C"]
    assert [h.id for h in rrf_fuse(vector, keyword, vector_weight=0.0)] == ["D", "B", "E"]


# ---------------------------------------------------------------------------
# 2. 三种模式
# ---------------------------------------------------------------------------

def _doc_ids(hits: list[QueryHit]) -> set[str]:
    return {h.metadata["document_id"] for h in hits}


def test_refund_policy_hybrid_finds_lexical_and_semantic_matches() -> None:
    engine, pipeline, _, _ = _engine()

    async def _run():
        await _seed(pipeline, REFUND_CORPUS)
        results = {}
        for mode in (QueryMode.HYBRID, QueryMode.VECTOR, QueryMode.KEYWORD):
            results[mode] = await engine.query(
                "refund policy", QueryOptions(organization_id="org-1", mode=mode, top_k=3),
            )
        return results

    results = asyncio.run(_run())
    assert {"doc-x", "doc-y"} <= _doc_ids(results[QueryMode.HYBRID])
    assert _doc_ids(results[QueryMode.VECTOR]) == {"doc-y"}
    assert _doc_ids(results[QueryMode.KEYWORD]) == {"doc-x"}


def test_hybrid_weight_one_matches_vector_mode() -> None:
    engine, pipeline, _, _ = _engine()

    async def _run():
        await _seed(pipeline, REFUND_CORPUS)
        hybrid = await engine.query("refund policy", QueryOptions(
            organization_id="org-1", mode=QueryMode.HYBRID, vector_weight=1.0, top_k=3,
        ))
        vector = await engine.query("refund policy", QueryOptions(
            organization_id="org-1", mode=QueryMode.VECTOR, top_k=3,
        ))
        return hybrid, vector

    hybrid, vector = asyncio.run(_run())
    assert [h.id for h in hybrid] == [h.id for h in vector]


def test_vector_hit_id_is_deterministic_chunk_id() -> None:
    engine, pipeline, _, _ = _engine()

    async def _run():
        await _seed(pipeline, REFUND_CORPUS)
        return await engine.query("refund policy", QueryOptions(organization_id="org-1"))

    hits = asyncio.run(_run())
    assert hits[0].id == "doc-y_chunk_0"
    assert hits[0].text == REFUND_CORPUS["doc-y"]


def test_min_score_excluding_everything_returns_empty() -> None:
    engine, pipeline, _, _ = _engine()

    async def _run():
        await _seed(pipeline, {"doc-x": REFUND_CORPUS["doc-x"]})
        return await engine.query("refund policy", QueryOptions(organization_id="org-1", min_score=0.9))

    assert asyncio.run(_run()) == []


def test_missing_index_yields_empty_vector_results() -> None:
    engine, _, vectors, _ = _engine()

    async def _run():
        vector = await engine.query("refund policy", QueryOptions(organization_id="org-1"))
        hybrid = await engine.query(
            "refund policy", QueryOptions(organization_id="org-1", mode=QueryMode.HYBRID),
        )
        return vector, hybrid

    assert asyncio.run(_run()) == ([], [])
    assert vectors.indexes == {}


def test_metadata_filter_applies_to_both_paths() -> None:
    engine, pipeline, _, _ = _engine()

    async def _run():
        await pipeline.ingest(
            "Store credit refund policy for returns.",
            IngestOptions(organization_id="org-1", source_id="eu", metadata={"region": "eu"}),
        )
        await pipeline.ingest(
            "Store credit refund policy for US returns.",
            IngestOptions(organization_id="org-1", source_id="us", metadata={"region": "us"}),
        )
        return await engine.query("refund policy", QueryOptions(
            organization_id="org-1", mode=QueryMode.HYBRID, filter={"region": "eu"},
        ))

    hits = asyncio.run(_run())
    assert hits
    assert _doc_ids(hits) == {"eu"}


# ---------------------------------------------------------------------------
# 3. 租户隔离
# ---------------------------------------------------------------------------

def test_tenant_isolation_in_every_mode() -> None:
    engine, pipeline, _, _ = _engine()

    async def _run():
        await _seed(pipeline, {"doc-a": "Store credit refund policy for returns."}, "org-a")
        await _seed(pipeline, {"doc-b": "Money back guarantee under our refund policy."}, "org-b")
        results = []
        for mode in QueryMode:
            results.extend(await engine.query(
                "refund policy", QueryOptions(organization_id="org-a", mode=mode),
            ))
        return results

    hits = asyncio.run(_run())
    assert hits
    assert {h.metadata["organization_id"] for h in hits} == {"org-a"}
    assert all(h.id.startswith("doc-a") for h in hits)


def test_tenant_filter_cannot_be_overridden_by_caller_filter() -> None:
    engine, pipeline, _, _ = _engine()

    async def _run():
        await _seed(pipeline, {"doc-b": "Money back guarantee."}, "org-b")
        return await engine.query("money back", QueryOptions(
            organization_id="org-a", filter={"organization_id": "org-b"},
        ))

    assert asyncio.run(_run()) == []


def test_blank_organization_is_rejected() -> None:
    engine, _, _, _ = _engine()
    with pytest.raises(ValidationError):
        asyncio.run(engine.query("refund policy", QueryOptions(organization_id="")))
    with pytest.raises(ValidationError):
        asyncio.run(engine.query("refund policy", QueryOptions(filter={"organization_id": " "})))


def test_missing_organization_warns_but_proceeds(caplog) -> None:
    engine, pipeline, _, _ = _engine()

    async def _run():
        await _seed(pipeline, REFUND_CORPUS)
        return await engine.query("refund policy")

    with caplog.at_level(logging.WARNING, logger="knowledge.query"):
        hits = asyncio.run(_run())
    assert hits
    assert any("organization_id" in r.getMessage() for r in caplog.records)


# ---------------------------------------------------------------------------
# 4. 故障降级
# ---------------------------------------------------------------------------

def test_hybrid_survives_one_failed_path() -> None:
    engine, pipeline, vectors, keywords = _engine()

    async def _run():
        await _seed(pipeline, REFUND_CORPUS)
        vectors.fail_query = True
        keyword_only = await engine.query("refund policy", QueryOptions(
            organization_id="org-1", mode=QueryMode.HYBRID,
        ))
        vectors.fail_query = False
        keywords.fail_search = True
        vector_only = await engine.query("refund policy", QueryOptions(
            organization_id="org-1", mode=QueryMode.HYBRID,
        ))
        return keyword_only, vector_only

    keyword_only, vector_only = asyncio.run(_run())
    assert _doc_ids(keyword_only) == {"doc-x"}
    assert _doc_ids(vector_only) == {"doc-y"}


def test_hybrid_raises_when_both_paths_fail() -> None:
    engine, pipeline, vectors, keywords = _engine()

    async def _run():
        await _seed(pipeline, REFUND_CORPUS)
        vectors.fail_query = True
        keywords.fail_search = True
        await engine.query("refund policy", QueryOptions(organization_id="org-1", mode=QueryMode.HYBRID))

    with pytest.raises(RetrievalError):
        asyncio.run(_run())


def test_single_path_failure_raises_retrieval_error() -> None:
    engine, pipeline, vectors, keywords = _engine()

    async def _seed_and_break():
        await _seed(pipeline, REFUND_CORPUS)
        vectors.fail_query = True
        keywords.fail_search = True

    asyncio.run(_seed_and_break())
    for mode in (QueryMode.VECTOR, QueryMode.KEYWORD):
        with pytest.raises(RetrievalError):
            asyncio.run(engine.query("refund policy", QueryOptions(organization_id="org-1", mode=mode)))


# ---------------------------------------------------------------------------
# 5. 精排
# ---------------------------------------------------------------------------

RANKED_CORPUS = {
    "alpha": "alpha passage",
    "beta": "beta passage",
    "gamma": "gamma passage",
    "delta": "delta passage",
    "epsilon": "epsilon passage",
}


def test_rerank_failure_falls_back_to_plain_order() -> None:
    generator = FailingGenerator()
    engine, pipeline, _, _ = _engine(generator)

    async def _run():
        await _seed(pipeline, RANKED_CORPUS)
        plain = await engine.query("ranking query", QueryOptions(organization_id="org-1", top_k=2))
        reranked = await engine.query(
            "ranking query", QueryOptions(organization_id="org-1", top_k=2, rerank=True),
        )
        return plain, reranked

    plain, reranked = asyncio.run(_run())
    assert [h.id for h in plain] == ["alpha_chunk_0", "beta_chunk_0"]
    assert [h.id for h in reranked] == [h.id for h in plain]
    assert generator.calls == 1


def test_rerank_reorders_candidates() -> None:
    generator = ScriptedGenerator(["3,1"])
    engine, pipeline, _, _ = _engine(generator)

    async def _run():
        await _seed(pipeline, RANKED_CORPUS)
        return await engine.query("ranking query", QueryOptions(
            organization_id="org-1", top_k=2, rerank=True, rerank_model="judge-1",
        ))

    hits = asyncio.run(_run())
    assert [h.id for h in hits] == ["delta_chunk_0", "beta_chunk_0"]
    assert generator.models == ["judge-1"]
    assert "[0] alpha passage" in generator.prompts[0]


# ---------------------------------------------------------------------------
# 6. RAG 回答
# ---------------------------------------------------------------------------

def test_generate_answer_builds_numbered_context() -> None:
    generator = ScriptedGenerator(lambda prompt: "Refunds take thirty days.")
    engine, pipeline, _, _ = _engine(generator)
    long_text = "Money back " + "details " * 60

    async def _run():
        await _seed(pipeline, {"doc-y": long_text})
        return await engine.generate_answer("refund policy", AnswerOptions(
            organization_id="org-1", system_context="You are a support assistant.",
        ))

    answer = asyncio.run(_run())
    prompt = generator.prompts[0]
    assert answer.response == "Refunds take thirty days."
    assert prompt.startswith("You are a support assistant.")
    assert "[Source 1]: Money back" in prompt
    assert "QUESTION: refund policy" in prompt
    assert answer.sources[0].document_id == "doc-y"
    assert answer.sources[0].text.endswith("...")
    assert len(answer.sources[0].text) == 203


def test_generate_answer_stream_yields_sources_then_text() -> None:
    generator = ScriptedGenerator(["Refunds take thirty days."])
    engine, pipeline, _, _ = _engine(generator)

    async def _run():
        await _seed(pipeline, {"doc-y": REFUND_CORPUS["doc-y"]})
        answer = await engine.generate_answer_stream(
            "refund policy", AnswerOptions(organization_id="org-1"),
        )
        # 检索完成即有来源，生成模型尚未被调用
        prompts_before = list(generator.prompts)
        pieces = [piece async for piece in answer.text_stream]
        return answer, prompts_before, pieces

    answer, prompts_before, pieces = asyncio.run(_run())
    assert [s.document_id for s in answer.sources] == ["doc-y"]
    assert prompts_before == []
    assert len(pieces) > 1
    assert "".join(pieces) == "Refunds take thirty days."
    assert "[Source 1]: Customers get their money back" in generator.prompts[0]


def test_answer_stream_sse_events() -> None:
    generator = ScriptedGenerator(["Thirty days."])
    engine, pipeline, _, _ = _engine(generator)

    async def _run():
        await _seed(pipeline, {"doc-y": REFUND_CORPUS["doc-y"]})
        answer = await engine.generate_answer_stream("refund policy", AnswerOptions(organization_id="org-1"))
        return [event async for event in generate_answer_sse(answer)]

    events = [json.loads(e[len("data: "):]) for e in asyncio.run(_run())]
    assert events[0]["sources"][0]["document_id"] == "doc-y"
    assert "".join(e.get("content", "") for e in events[1:]) == "Thirty days."
    assert events[-1] == {"content": "", "done": True}


def test_answer_stream_generation_failure_becomes_error_event() -> None:
    engine, pipeline, _, _ = _engine(FailingGenerator())

    async def _run():
        await _seed(pipeline, {"doc-y": REFUND_CORPUS["doc-y"]})
        answer = await engine.generate_answer_stream("refund policy", AnswerOptions(organization_id="org-1"))
        return [event async for event in generate_answer_sse(answer)]

    events = [json.loads(e[len("data: "):]) for e in asyncio.run(_run())]
    assert events[-1]["done"] is True
    assert events[-1]["error"] == "model call failed"


def test_non_string_organization_in_filter_is_rejected() -> None:
    engine, _, _, _ = _engine()
    for bad in (42, ["org-a"], {"id": "org-a"}):
        with pytest.raises(ValidationError):
            asyncio.run(engine.query("refund policy", QueryOptions(filter={"organization_id": bad})))
