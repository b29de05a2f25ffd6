# src/citations/engine.py
"""Chèn trích dẫn inline + danh sách nguồn vào câu trả lời.

Provider trả offset theo byte UTF-8, còn str của Python đánh index theo code
point, nên mỗi support phải được map byte -> ký tự trước khi chèn marker.
Module thuần (không I/O, không state) để chạy giống hệt nhau sau một response
non-stream hoặc sau chunk cuối của một stream.
"""
from __future__ import annotations
from typing import List, Optional

from domain.schemas import GroundingMetadata, SourceChunk

DEFAULT_SOURCES_HEADER = "**Sources:**"


def utf8_width(ch: str) -> int:
    cp = ord(ch)
    if cp < 0x80:
        return 1
    if cp < 0x800:
        return 2
    if cp < 0x10000:
        return 3
    return 4


def byte_to_char_index(text: str, byte_index: int) -> int:
    """Index ký tự đầu tiên mà byte của nó vượt quá byte_index.

    Offset vượt cuối chuỗi -> len(text).
    """
    byte_count = 0
    for char_index, ch in enumerate(text):
        width = utf8_width(ch)
        if byte_count + width > byte_index:
            return char_index
        byte_count += width
    return len(text)


def _valid_chunk(chunks: List[SourceChunk], i: int) -> Optional[SourceChunk]:
    if i < 0 or i >= len(chunks):
        return None
    chunk = chunks[i]
    return chunk if chunk.uri else None


def citation_markers(indices: List[int], chunks: List[SourceChunk]) -> str:
    markers = []
    for i in indices:
        chunk = _valid_chunk(chunks, i)
        if chunk is not None:
            markers.append(f"[[{i + 1}]]({chunk.uri})")
    return "".join(markers)


def add_inline_citations(text: str, grounding: Optional[GroundingMetadata]) -> str:
    if grounding is None or not grounding.supports or not grounding.chunks:
        return text

    # giảm dần theo end offset: chèn ở cuối trước thì các offset phía trước không bị lệch
    ordered = sorted(grounding.supports, key=lambda s: s.segment_end_byte, reverse=True)

    out = text
    for support in ordered:
        markers = citation_markers(support.chunk_indices, grounding.chunks)
        if not markers:
            continue
        pos = byte_to_char_index(out, support.segment_end_byte)
        out = out[:pos] + markers + out[pos:]
    return out


def format_sources(grounding: Optional[GroundingMetadata], header: str = DEFAULT_SOURCES_HEADER) -> str:
    if grounding is None or not grounding.chunks:
        return ""

    # đánh số lại 1..k trên các chunk có uri
    with_uri = [c for c in grounding.chunks if c.uri]
    lines = [f"{n}. [{c.title or 'Source'}]({c.uri})" for n, c in enumerate(with_uri, start=1)]

    if not lines:
        return ""
    return "\n\n---\n" + header + "\n" + "\n".join(lines)


def annotate(text: str, grounding: Optional[GroundingMetadata], header: str = DEFAULT_SOURCES_HEADER) -> str:
    """Text đã chèn marker inline + section nguồn ở cuối (nếu có)."""
    if grounding is None or not grounding.chunks:
        return text
    return add_inline_citations(text, grounding) + format_sources(grounding, header)
