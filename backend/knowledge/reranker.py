"""
Reranker 精排

检索结果超过 top_k 时，把前 RERANK_WINDOW 条交给生成模型，要求按相关性返回
逗号分隔的下标列表。解析失败、模型异常或无有效下标时整体降级为原顺序截断，
精排只是准确率优化，不是硬依赖。
"""
from __future__ import annotations

import logging
import re
from typing import Optional, TypeVar

from .generation import TextGenerator
from .models import QueryHit

logger = logging.getLogger("knowledge.reranker")

RERANK_WINDOW = 20
PASSAGE_PREVIEW_CHARS = 300

_NON_INDEX_RE = re.compile(r"[^0-9,]")

T = TypeVar("T", bound=QueryHit)


def build_rerank_prompt(query: str, passages: list[str], top_k: int) -> str:
    numbered = "\n".join(
        f"[{i}] {text[:PASSAGE_PREVIEW_CHARS]}" for i, text in enumerate(passages)
    )
    return (
        f'Rank these passages by relevance to the query: "{query}"\n\n'
        f"Return ONLY the indices of the top {top_k} most relevant passages "
        f'as a comma-separated list (e.g. "3,0,7,1,4").\n\n'
        f"Passages:\n{numbered}"
    )


def parse_rerank_indices(raw: str, size: int) -> list[int]:
    """去掉数字和逗号以外的字符，丢弃越界与重复下标，保持模型给出的顺序"""
    seen: set[int] = set()
    indices: list[int] = []
    for token in _NON_INDEX_RE.sub("", raw).split(","):
        if not token:
            continue
        idx = int(token)
        if 0 <= idx < size and idx not in seen:
            seen.add(idx)
            indices.append(idx)
    return indices


async def rerank_results(
    query: str,
    candidates: list[T],
    top_k: int,
    generator: TextGenerator,
    model: Optional[str] = None,
    window: int = RERANK_WINDOW,
) -> list[T]:
    """
    对候选结果精排并截断到 top_k。

    返回数量 = min(top_k, len(candidates))，与是否精排成功无关；有效下标不足时，
    用窗口内未被选中的候选按原顺序补齐，再接上窗口外的候选。
    """
    if len(candidates) <= top_k:
        return candidates

    head = candidates[:window]
    try:
        raw = await generator.generate(
            build_rerank_prompt(query, [c.text for c in head], top_k), model=model,
        )
        indices = parse_rerank_indices(raw, len(head))
    except Exception as e:
        logger.warning(f"[KB] Rerank 失败，保持原顺序: {e}")
        return candidates[:top_k]

    if not indices:
        logger.warning(f"[KB] Rerank 未返回有效下标，保持原顺序: raw={raw!r}")
        return candidates[:top_k]

    limit = min(top_k, len(head))
    picked = indices[:limit]
    if len(picked) < limit:
        chosen = set(picked)
        picked += [i for i in range(len(head)) if i not in chosen][: limit - len(picked)]

    # top_k 大于窗口时，窗口外候选按原顺序接在后面，结果数与降级路径一致
    reranked = [head[i] for i in picked]
    return reranked + candidates[window:][: top_k - len(reranked)]
