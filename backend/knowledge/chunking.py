"""
文档切块引擎

输入原始内容 + 内容类型，输出有序、非空的 (text, metadata) 切片序列。

内容预处理:
  - text / markdown: 原样
  - html: BeautifulSoup 去标签 (script/style 丢弃)，块级元素转段落
  - json: 解析后缩进序列化，保证键值对按行分布

切块策略 (ChunkOptions.strategy):
  - recursive: 按 "\\n\\n" → "\\n" → ". " → " " → 字符 递归细分，再按 max_size 合并，携带 overlap
  - character: 固定窗口，步长 max_size - overlap
  - sentence: 句子边界切分后按 max_size 打包，尾句重叠
  - markdown: 以 ATX 标题分节，每个切片带 heading / heading_path；超长节内递归切分

所有长度单位为字符。每个切片 metadata 至少包含 chunk_index 与 char_count。
"""
from __future__ import annotations

import json
import re
from typing import Any, Optional

from bs4 import BeautifulSoup

from .errors import EmptyDocumentError, ValidationError
from .models import ChunkOptions, ChunkStrategy, ContentType, TextChunk


RECURSIVE_SEPARATORS = ["\n\n", "\n", ". ", " ", ""]

_HEADING_RE = re.compile(r"^(#{1,6})\s+(.+)$", re.MULTILINE)
_SENTENCE_RE = re.compile(r"[^.!?。！？]+(?:[.!?。！？]+|$)\s*")
_BLANK_LINES_RE = re.compile(r"\n\s*\n\s*(\n\s*)+")


# ---------------------------------------------------------------------------
# 内容预处理
# ---------------------------------------------------------------------------

def _html_to_text(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript", "template"]):
        tag.decompose()
    text = soup.get_text("\n")
    lines = [line.strip() for line in text.splitlines()]
    return _BLANK_LINES_RE.sub("\n\n", "\n".join(lines)).strip()


def _json_to_text(raw: str) -> str:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Invalid JSON document: {e}") from e
    return json.dumps(data, indent=2, ensure_ascii=False)


def prepare_content(content: str, content_type: ContentType | str) -> str:
    content_type = ContentType(content_type)
    if content_type == ContentType.HTML:
        return _html_to_text(content)
    if content_type == ContentType.JSON:
        return _json_to_text(content)
    return content


# ---------------------------------------------------------------------------
# 基础切分
# ---------------------------------------------------------------------------

def _split_keep_separator(text: str, sep: str) -> list[str]:
    """按分隔符切开，分隔符保留在前一段末尾，拼回去与原文一致"""
    parts = text.split(sep)
    out = [p + sep for p in parts[:-1]]
    out.append(parts[-1])
    return [p for p in out if p]


def _char_windows(text: str, max_size: int, overlap: int) -> list[str]:
    """按字符强制切割"""
    step = max(1, max_size - overlap)
    result: list[str] = []
    start = 0
    while start < len(text):
        end = min(start + max_size, len(text))
        result.append(text[start:end])
        if end >= len(text):
            break
        start += step
    return result


def _recursive_pieces(text: str, max_size: int, separators: list[str]) -> list[str]:
    """递归细分，直到每段都不超过 max_size"""
    if len(text) <= max_size:
        return [text]

    for i, sep in enumerate(separators):
        if sep == "":
            return _char_windows(text, max_size, 0)
        if sep not in text:
            continue
        rest = separators[i + 1:]
        pieces: list[str] = []
        for part in _split_keep_separator(text, sep):
            if len(part) <= max_size:
                pieces.append(part)
            else:
                pieces.extend(_recursive_pieces(part, max_size, rest))
        return pieces

    return _char_windows(text, max_size, 0)


def _merge_pieces(pieces: list[str], max_size: int, overlap: int) -> list[str]:
    """
    把小段合并成不超过 max_size 的切片。

    切出一块后，从当前缓冲头部丢弃小段，直到剩余部分不超过 overlap 且
    能容纳下一段；剩余部分作为下一块的开头 (即重叠区)。
    """
    chunks: list[str] = []
    current: list[str] = []
    total = 0

    for piece in pieces:
        if current and total + len(piece) > max_size:
            chunks.append("".join(current))
            while current and (total > overlap or total + len(piece) > max_size):
                total -= len(current[0])
                current.pop(0)
        current.append(piece)
        total += len(piece)

    if current:
        chunks.append("".join(current))

    return [c.strip() for c in chunks if c.strip()]


# ---------------------------------------------------------------------------
# 策略
# ---------------------------------------------------------------------------

def _chunk_recursive(text: str, opts: ChunkOptions) -> list[tuple[str, dict[str, Any]]]:
    pieces = _recursive_pieces(text, opts.max_size, RECURSIVE_SEPARATORS)
    return [(c, {}) for c in _merge_pieces(pieces, opts.max_size, opts.overlap)]


def _chunk_character(text: str, opts: ChunkOptions) -> list[tuple[str, dict[str, Any]]]:
    windows = _char_windows(text, opts.max_size, opts.overlap)
    return [(w.strip(), {}) for w in windows if w.strip()]


def _chunk_sentence(text: str, opts: ChunkOptions) -> list[tuple[str, dict[str, Any]]]:
    pieces: list[str] = []
    for match in _SENTENCE_RE.finditer(text):
        sentence = match.group(0)
        if not sentence:
            continue
        if len(sentence) > opts.max_size:
            pieces.extend(_char_windows(sentence, opts.max_size, 0))
        else:
            pieces.append(sentence)
    return [(c, {}) for c in _merge_pieces(pieces, opts.max_size, opts.overlap)]


def _markdown_sections(markdown: str) -> list[tuple[Optional[str], list[str], str]]:
    """按标题分节: [(heading, heading_path, section_text), ...]"""
    headings = list(_HEADING_RE.finditer(markdown))
    if not headings:
        return [(None, [], markdown)]

    sections: list[tuple[Optional[str], list[str], str]] = []
    preamble = markdown[:headings[0].start()]
    if preamble.strip():
        sections.append((None, [], preamble))

    # 标题栈: [(level, title), ...]
    stack: list[tuple[int, str]] = []
    for i, match in enumerate(headings):
        level = len(match.group(1))
        title = match.group(2).strip()
        while stack and stack[-1][0] >= level:
            stack.pop()
        stack.append((level, title))

        end = headings[i + 1].start() if i + 1 < len(headings) else len(markdown)
        sections.append((title, [t for _, t in stack], markdown[match.start():end]))

    return sections


def _chunk_markdown(text: str, opts: ChunkOptions) -> list[tuple[str, dict[str, Any]]]:
    out: list[tuple[str, dict[str, Any]]] = []
    for heading, path, section in _markdown_sections(text):
        if not section.strip():
            continue
        meta: dict[str, Any] = {}
        if heading is not None:
            meta = {"heading": heading, "heading_path": path}
        pieces = _recursive_pieces(section, opts.max_size, RECURSIVE_SEPARATORS)
        for c in _merge_pieces(pieces, opts.max_size, opts.overlap):
            out.append((c, dict(meta)))
    return out


_STRATEGIES = {
    ChunkStrategy.RECURSIVE: _chunk_recursive,
    ChunkStrategy.CHARACTER: _chunk_character,
    ChunkStrategy.SENTENCE: _chunk_sentence,
    ChunkStrategy.MARKDOWN: _chunk_markdown,
}


# ---------------------------------------------------------------------------
# 入口
# ---------------------------------------------------------------------------

def chunk_document(
    content: str,
    content_type: ContentType | str = ContentType.TEXT,
    options: ChunkOptions | None = None,
) -> list[TextChunk]:
    """
    切块入口。

    Raises:
        EmptyDocumentError: 内容切不出任何切片 (调用方必须视为摄取失败，不可静默跳过)
        ValidationError: JSON 内容无法解析
    """
    opts = options or ChunkOptions()
    text = prepare_content(content or "", content_type)
    if not text.strip():
        raise EmptyDocumentError()

    raw = _STRATEGIES[opts.strategy](text, opts)
    if not raw:
        raise EmptyDocumentError()

    return [
        TextChunk(
            text=chunk_text,
            metadata={**extra, "chunk_index": index, "char_count": len(chunk_text)},
        )
        for index, (chunk_text, extra) in enumerate(raw)
    ]
