# =============================================================================
# Strategy-Driven Text Chunker
# =============================================================================
#
# Splits a Document into ordered, possibly overlapping, non-empty chunks.
# The split rule is picked from a closed set of strategies:
#
#   recursive          separator hierarchy ("\n\n" → "\n" → " " → "")
#   character          one separator, oversize pieces hard-split
#   token              tiktoken sliding window (sizes in tokens)
#   markdown           split on header markers, header text kept as metadata
#   html               HTML-aware separator hierarchy
#   json               structure-preserving split of a JSON document
#   latex              LaTeX sectioning-aware separator hierarchy
#   sentence           one chunk per sentence (optional merge floor)
#   semantic-markdown  header sections merged up to a join threshold
#
# Sizes are characters for every strategy except "token".
#
# ALGORITHM:
# 1. Validate params and resolve the strategy name (unknown → recursive)
# 2. Short-document rule: text within max_size → one chunk (all strategies
#    except sentence, where sentence boundaries always split)
# 3. Apply the strategy's split rule → list of (text, extra metadata)
# 4. Drop blank spans, number the rest, attach shared metadata and ids
# =============================================================================

from __future__ import annotations

import json
import logging
import re
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any

import tiktoken
from langchain_text_splitters import (
    CharacterTextSplitter,
    Language,
    LatexTextSplitter,
    MarkdownHeaderTextSplitter,
    RecursiveCharacterTextSplitter,
    RecursiveJsonSplitter,
)

from ragindex.exceptions import ValidationError
from ragindex.models.documents import Chunk, ChunkingStrategy, ChunkParams, Document

logger = logging.getLogger(__name__)

# A split rule turns text into (span text, span-specific metadata) pairs.
Span = tuple[str, dict[str, Any]]
SplitRule = Callable[[str, ChunkParams], list[Span]]

CHUNK_SOURCE = "ragindex"

_DEFAULT_HEADERS: dict[ChunkingStrategy, list[tuple[str, str]]] = {
    ChunkingStrategy.MARKDOWN: [("#", "title"), ("##", "section")],
    ChunkingStrategy.HTML: [("h1", "title"), ("h2", "section")],
}

_MARKDOWN_SECTION_RE = re.compile(r"^#{1,6}\s", re.MULTILINE)


# ---------------------------------------------------------------------------
# Tiktoken Encoder — Cached per Encoding Name
# ---------------------------------------------------------------------------


@lru_cache(maxsize=8)
def _get_encoder(encoding_name: str) -> tiktoken.Encoding:
    """Load and cache a tiktoken encoder."""
    return tiktoken.get_encoding(encoding_name)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def chunk_document(
    document: Document,
    strategy: ChunkingStrategy | str | None = ChunkingStrategy.RECURSIVE,
    params: ChunkParams | dict[str, Any] | None = None,
    document_id: str | None = None,
) -> list[Chunk]:
    """
    Split a document into ordered chunks.

    Args:
        document: The document to split.
        strategy: Strategy enum or name. Unknown names fall back to
            recursive (logged).
        params: ChunkParams, or a dict of its fields, or None for defaults.
        document_id: Id stamped on every chunk. Defaults to the document's
            own "document_id" metadata, else a fresh "doc_<uuid>".

    Returns:
        Chunks in document order, each with index/total_chunks set.

    Raises:
        ValidationError: Invalid params, or unparseable JSON for the json
            strategy.
    """
    chunk_params = ChunkParams.from_value(params)
    resolved = ChunkingStrategy.resolve(strategy)
    doc_id = document_id or document_id_for(document)

    text = document.text
    logger.info(
        "Chunking document %s: %d chars, strategy=%s, max_size=%d, overlap=%d",
        doc_id, len(text), resolved.value,
        chunk_params.max_size, chunk_params.overlap,
    )

    if resolved is ChunkingStrategy.JSON:
        _load_json(text)

    if resolved is not ChunkingStrategy.SENTENCE and _measure(
        text, resolved, chunk_params
    ) <= chunk_params.max_size:
        spans: list[Span] = [(text.strip(), {})]
    else:
        spans = _SPLIT_RULES[resolved](text, chunk_params)

    spans = [(span.strip(), extra) for span, extra in spans if span and span.strip()]
    total = len(spans)

    shared = {
        **document.metadata,
        "chunking_strategy": resolved.value,
        "chunk_size": chunk_params.max_size,
        "chunk_overlap": chunk_params.overlap,
        "processed_at": datetime.now(timezone.utc).isoformat(),
        "source": CHUNK_SOURCE,
        "document_id": doc_id,
    }

    chunks = [
        Chunk(
            id=f"chunk_{uuid.uuid4().hex}",
            text=span,
            index=i,
            total_chunks=total,
            metadata={**shared, **extra, "chunk_index": i, "total_chunks": total},
        )
        for i, (span, extra) in enumerate(spans)
    ]

    logger.info(
        "Chunked document %s into %d chunks (avg %d chars/chunk)",
        doc_id, total, len(text) // max(total, 1),
    )
    return chunks


# ---------------------------------------------------------------------------
# Split Rules
# ---------------------------------------------------------------------------


def _split_recursive(text: str, params: ChunkParams) -> list[Span]:
    return [(t, {}) for t in _recursive_texts(text, params)]


def _split_character(text: str, params: ChunkParams) -> list[Span]:
    splitter = CharacterTextSplitter(
        separator=params.separator,
        is_separator_regex=params.is_separator_regex,
        chunk_size=params.max_size,
        chunk_overlap=params.overlap,
    )
    pieces = _hard_split(splitter.split_text(text), params)
    return [(t, {}) for t in pieces]


def _split_token(text: str, params: ChunkParams) -> list[Span]:
    """Slide a window of max_size tokens, stepping max_size - overlap."""
    encoder = _get_encoder(params.encoding_name)
    tokens = encoder.encode(text)
    total_tokens = len(tokens)
    step = max(params.max_size - params.overlap, 1)

    spans: list[Span] = []
    for start in range(0, total_tokens, step):
        end = min(start + params.max_size, total_tokens)
        window = tokens[start:end]
        spans.append((encoder.decode(window), {"token_count": len(window)}))
        if end >= total_tokens:
            break
    return spans


def _split_markdown(text: str, params: ChunkParams) -> list[Span]:
    headers = params.headers or _DEFAULT_HEADERS[ChunkingStrategy.MARKDOWN]
    header_splitter = MarkdownHeaderTextSplitter(
        headers_to_split_on=headers,
        strip_headers=False,
    )
    spans: list[Span] = []
    for section in header_splitter.split_text(text):
        section_meta = dict(section.metadata)
        for piece in _recursive_texts(section.page_content, params):
            spans.append((piece, section_meta))
    return spans


def _split_html(text: str, params: ChunkParams) -> list[Span]:
    splitter = RecursiveCharacterTextSplitter.from_language(
        language=Language.HTML,
        chunk_size=params.max_size,
        chunk_overlap=params.overlap,
    )
    headers = params.headers or _DEFAULT_HEADERS[ChunkingStrategy.HTML]
    spans: list[Span] = []
    current: dict[str, Any] = {}
    for piece in _hard_split(splitter.split_text(text), params):
        # Header tags seen so far stay in effect for the following pieces.
        for tag, key in headers:
            match = re.search(
                rf"<{re.escape(tag)}\b[^>]*>(.*?)</{re.escape(tag)}>",
                piece, re.IGNORECASE | re.DOTALL,
            )
            if match:
                current[key] = re.sub(r"<[^>]+>", "", match.group(1)).strip()
        spans.append((piece, dict(current)))
    return spans


def _split_json(text: str, params: ChunkParams) -> list[Span]:
    data = _load_json(text)
    if isinstance(data, dict):
        payload, convert_lists = data, False
    elif isinstance(data, list):
        payload, convert_lists = {"items": data}, True
    else:
        return [(p, {}) for p in _hard_split([text.strip()], params, overlap=0)]

    splitter = RecursiveJsonSplitter(max_chunk_size=params.max_size)
    pieces = splitter.split_text(
        json_data=payload, convert_lists=convert_lists, ensure_ascii=False,
    )
    # The splitter never breaks a scalar value, so long strings are cut here.
    return [(p, {}) for p in _hard_split(pieces, params, overlap=0)]


def _split_latex(text: str, params: ChunkParams) -> list[Span]:
    splitter = LatexTextSplitter(
        chunk_size=params.max_size,
        chunk_overlap=params.overlap,
    )
    return [(t, {}) for t in _hard_split(splitter.split_text(text), params)]


def _split_sentence(text: str, params: ChunkParams) -> list[Span]:
    """
    One span per sentence.

    Sentences end at a configured ender followed by whitespace or end of
    text, so "3.5" does not split. With min_size set, short neighbours are
    merged while the merge stays within max_size. Sentences longer than
    max_size are split recursively (overlap applies only there).
    """
    sentences = _sentences(text, params.sentence_enders)

    if params.min_size:
        merged: list[str] = []
        for sentence in sentences:
            if (
                merged
                and len(merged[-1]) < params.min_size
                and len(merged[-1]) + 1 + len(sentence) <= params.max_size
            ):
                merged[-1] = f"{merged[-1]} {sentence}"
            else:
                merged.append(sentence)
        sentences = merged

    spans: list[Span] = []
    for sentence in sentences:
        if len(sentence) <= params.max_size:
            spans.append((sentence, {}))
        else:
            spans.extend((t, {}) for t in _recursive_texts(sentence, params))
    return spans


def _split_semantic_markdown(text: str, params: ChunkParams) -> list[Span]:
    """Split at every markdown header, then greedily re-join small sections."""
    starts = [m.start() for m in _MARKDOWN_SECTION_RE.finditer(text)]
    if not starts or starts[0] != 0:
        starts.insert(0, 0)
    bounds = starts + [len(text)]
    sections = [text[a:b].strip() for a, b in zip(bounds, bounds[1:])]
    sections = [s for s in sections if s]

    limit = min(params.join_threshold, params.max_size)
    joined: list[str] = []
    for section in sections:
        if joined and len(joined[-1]) + 2 + len(section) <= limit:
            joined[-1] = f"{joined[-1]}\n\n{section}"
        else:
            joined.append(section)

    spans: list[Span] = []
    for section in joined:
        if len(section) <= params.max_size:
            spans.append((section, {}))
        else:
            spans.extend((t, {}) for t in _recursive_texts(section, params))
    return spans


_SPLIT_RULES: dict[ChunkingStrategy, SplitRule] = {
    ChunkingStrategy.RECURSIVE: _split_recursive,
    ChunkingStrategy.CHARACTER: _split_character,
    ChunkingStrategy.TOKEN: _split_token,
    ChunkingStrategy.MARKDOWN: _split_markdown,
    ChunkingStrategy.HTML: _split_html,
    ChunkingStrategy.JSON: _split_json,
    ChunkingStrategy.LATEX: _split_latex,
    ChunkingStrategy.SENTENCE: _split_sentence,
    ChunkingStrategy.SEMANTIC_MARKDOWN: _split_semantic_markdown,
}


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def document_id_for(document: Document) -> str:
    """The caller's "document_id" metadata if set, else a fresh doc_<uuid>."""
    existing = document.metadata.get("document_id")
    if isinstance(existing, str) and existing:
        return existing
    return f"doc_{uuid.uuid4().hex}"


def _load_json(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise ValidationError(f"json strategy requires valid JSON: {e}") from e


def _measure(text: str, strategy: ChunkingStrategy, params: ChunkParams) -> int:
    """Length of `text` in the strategy's size unit."""
    if strategy is ChunkingStrategy.TOKEN:
        return len(_get_encoder(params.encoding_name).encode(text))
    return len(text)


def _recursive_texts(text: str, params: ChunkParams) -> list[str]:
    # The trailing "" guarantees pieces never exceed max_size, even for
    # runs of text with no separator at all.
    separators = list(params.separators)
    if "" not in separators:
        separators.append("")
    splitter = RecursiveCharacterTextSplitter(
        separators=separators,
        chunk_size=params.max_size,
        chunk_overlap=params.overlap,
        length_function=len,
    )
    return splitter.split_text(text)


def _hard_split(
    pieces: list[str], params: ChunkParams, overlap: int | None = None,
) -> list[str]:
    """Cut any piece longer than max_size into overlapping windows."""
    step = params.max_size - (params.overlap if overlap is None else overlap)
    out: list[str] = []
    for piece in pieces:
        if len(piece) <= params.max_size:
            out.append(piece)
            continue
        for start in range(0, len(piece), step):
            out.append(piece[start:start + params.max_size])
            if start + params.max_size >= len(piece):
                break
    return out


def _sentences(text: str, enders: list[str]) -> list[str]:
    alternatives = "|".join(re.escape(e) for e in sorted(enders, key=len, reverse=True))
    parts = re.split(rf"({alternatives})(?=\s|$)", text)
    sentences: list[str] = []
    # re.split with one capture group alternates body, ender, body, ...
    for i in range(0, len(parts), 2):
        body = parts[i]
        ender = parts[i + 1] if i + 1 < len(parts) else ""
        sentence = (body + ender).strip()
        if sentence:
            sentences.append(sentence)
    return sentences
