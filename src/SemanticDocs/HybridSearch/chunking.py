"""Structure-aware chunk generation for hybrid retrieval indexing.

Documents are split in three passes:

1. Sections start at markdown headings that sit outside code fences. A fence
   opener that is never closed is treated as plain text, and the section that
   contains it falls back to a plain token-window split.
2. Inside a well-formed section, blank-line paragraphs and fenced code blocks
   are greedily packed into chunks; a unit that alone exceeds the budget is
   hard-cut at token boundaries. Chunks never straddle sections.
3. Every chunk after the first is prefixed with the trailing ``overlap``
   tokens of the previous chunk's text.

Own spans (the text after the overlap prefix) partition the document, so
concatenating ``chunk.own_text`` reproduces the input exactly. Own budgets are
``max_tokens`` for the first chunk and ``max_tokens - overlap`` afterwards,
which keeps ``token_count <= max_tokens`` once the overlap is added.
"""
from __future__ import annotations

import logging
import re
from bisect import bisect_left
from dataclasses import dataclass
from typing import List, Optional, Sequence, Set, Tuple

from .changes import fingerprint
from .config import ChunkingConfig
from .tokenization import Span, tokenize_with_spans
from .types import Chunk, ContentType, SourceDocument

__all__ = ("Chunker", "classify_content", "document_title")

logger = logging.getLogger(__name__)

_HEADING = re.compile(r"^(#{1,6})[ \t]+(.+?)[ \t#]*$")
_FENCE = re.compile(r"^[ \t]{0,3}(`{3,}|~{3,})")
_INLINE_CODE = re.compile(r"`[^`\n]+`")

_META_PATTERN = re.compile(
    r"\b(readme|contributing|licen[cs]e|changelog|release notes|authors|code of conduct|"
    r"pull request|issue template)\b",
    re.IGNORECASE,
)
_TECHNICAL_PATTERN = re.compile(
    r"\b(methods?|operators?|functions?|commands?|parameters?|returns?|arguments?|syntax|"
    r"api|endpoints?|options?)\b",
    re.IGNORECASE,
)
_CONCEPTUAL_PATTERN = re.compile(
    r"\b(what is|how to|understanding|concepts?|overview|introduction|guide|fundamentals?|"
    r"architecture)\b",
    re.IGNORECASE,
)


def classify_content(text: str, section_title: Optional[str], has_code: bool) -> ContentType:
    """Assign a coarse content type from the section title and chunk text."""

    title = section_title or ""
    if _META_PATTERN.search(title):
        return "meta"
    if has_code or _TECHNICAL_PATTERN.search(title):
        return "technical"
    if _CONCEPTUAL_PATTERN.search(title):
        return "conceptual"
    if len(_TECHNICAL_PATTERN.findall(text)) >= 2:
        return "technical"
    if _CONCEPTUAL_PATTERN.search(text):
        return "conceptual"
    return "general"


def document_title(text: str) -> Optional[str]:
    """Return the first level-one heading outside code fences, if any."""

    in_fence = False
    for line in text.splitlines():
        if _FENCE.match(line):
            in_fence = not in_fence
            continue
        if in_fence:
            continue
        match = _HEADING.match(line)
        if match and len(match.group(1)) == 1:
            return match.group(2).strip()
    return None


@dataclass(slots=True)
class _Line:
    start: int
    end: int
    text: str


@dataclass(slots=True)
class _Section:
    start: int
    end: int
    title: Optional[str]
    level: Optional[int]
    malformed: bool = False


@dataclass(slots=True)
class _Piece:
    """Own span of one chunk before the overlap prefix is attached."""

    start: int
    end: int
    tok_lo: int
    tok_hi: int
    section: _Section
    continuation: bool


class Chunker:
    """Split documents into overlapping, token-bounded, structure-aware chunks.

    Examples:
        >>> chunker = Chunker(max_tokens=64, overlap=8)
        >>> chunks = chunker.chunk_text("doc", "# Title\\n\\nSome text.")
        >>> [chunk.section_title for chunk in chunks]
        ['Title']
    """

    def __init__(self, *, max_tokens: int = 400, overlap: int = 50) -> None:
        if max_tokens <= 0:
            raise ValueError("max_tokens must be positive")
        if overlap < 0 or overlap >= max_tokens:
            raise ValueError("overlap must be within [0, max_tokens)")
        self._max_tokens = max_tokens
        self._overlap = overlap

    @classmethod
    def from_config(cls, config: ChunkingConfig) -> "Chunker":
        return cls(max_tokens=config.max_tokens, overlap=config.overlap)

    @property
    def max_tokens(self) -> int:
        return self._max_tokens

    @property
    def overlap(self) -> int:
        return self._overlap

    def chunk(self, document: SourceDocument) -> List[Chunk]:
        """Chunk ``document``; an empty text yields no chunks."""

        return self.chunk_text(document.doc_id, document.text)

    def chunk_text(self, doc_id: str, text: str) -> List[Chunk]:
        """Chunk raw ``text`` on behalf of ``doc_id``."""

        if not text:
            return []
        _, spans = tokenize_with_spans(text)
        starts = [span[0] for span in spans]
        lines = _split_lines(text)
        matched, demoted = _find_fences(lines)
        sections = _merge_empty_sections(_split_sections(lines, matched, demoted, len(text)), starts)

        pieces: List[_Piece] = []
        for section in sections:
            if section.malformed:
                logger.warning(
                    "chunk-fence-fallback",
                    extra={
                        "event": {
                            "doc_id": doc_id,
                            "section": section.title,
                            "start_char": section.start,
                            "end_char": section.end,
                        }
                    },
                )
                units = [(section.start, section.end)]
            else:
                units = _section_units(lines, section, matched)
            self._pack_section(section, units, starts, pieces)
        return self._materialise(doc_id, text, spans, pieces)

    def _budget(self, produced: int) -> int:
        return self._max_tokens if produced == 0 else self._max_tokens - self._overlap

    def _pack_section(
        self,
        section: _Section,
        units: Sequence[Tuple[int, int]],
        starts: Sequence[int],
        pieces: List[_Piece],
    ) -> None:
        first_index = len(pieces)
        current_start = section.start
        current_lo = bisect_left(starts, section.start)
        current_count = 0

        def flush(end: int, tok_hi: int) -> None:
            pieces.append(
                _Piece(
                    start=current_start,
                    end=end,
                    tok_lo=current_lo,
                    tok_hi=tok_hi,
                    section=section,
                    continuation=len(pieces) > first_index,
                )
            )

        for unit_start, unit_end in units:
            lo = bisect_left(starts, unit_start)
            hi = bisect_left(starts, unit_end)
            size = hi - lo
            if current_count + size <= self._budget(len(pieces)):
                current_count += size
                continue
            if current_count > 0:
                flush(unit_start, lo)
                current_start, current_lo, current_count = unit_start, lo, 0
            budget = self._budget(len(pieces))
            if size <= budget:
                current_count = size
                continue
            position = lo
            while hi - position > self._budget(len(pieces)):
                cut = position + self._budget(len(pieces))
                flush(starts[cut], cut)
                current_start, current_lo = starts[cut], cut
                position = cut
            current_count = hi - position
        flush(section.end, bisect_left(starts, section.end))

    def _materialise(
        self, doc_id: str, text: str, spans: Sequence[Span], pieces: Sequence[_Piece]
    ) -> List[Chunk]:
        chunks: List[Chunk] = []
        prev_text_lo = 0
        prev_hi = 0
        for index, piece in enumerate(pieces):
            text_start = piece.start
            text_lo = piece.tok_lo
            if index > 0 and self._overlap > 0:
                overlap_lo = max(prev_text_lo, prev_hi - self._overlap)
                if overlap_lo < prev_hi:
                    text_start = spans[overlap_lo][0]
                    text_lo = overlap_lo
            chunk_text = text[text_start : piece.end]
            own_text = text[piece.start : piece.end]
            own_key = fingerprint(own_text)
            has_code = bool(
                any(_FENCE.match(line) for line in own_text.splitlines())
                or _INLINE_CODE.search(own_text)
            )
            chunks.append(
                Chunk(
                    doc_id=doc_id,
                    index=index,
                    text=chunk_text,
                    token_count=piece.tok_hi - text_lo,
                    start_char=piece.start,
                    end_char=piece.end,
                    overlap_chars=piece.start - text_start,
                    fingerprint=own_key,
                    content_key=own_key,
                    section_title=piece.section.title,
                    section_level=piece.section.level,
                    has_code=has_code,
                    is_continuation=piece.continuation,
                    content_type=classify_content(own_text, piece.section.title, has_code),
                )
            )
            prev_text_lo = text_lo
            prev_hi = piece.tok_hi
        return chunks


def _split_lines(text: str) -> List[_Line]:
    lines: List[_Line] = []
    offset = 0
    for raw in text.splitlines(keepends=True):
        end = offset + len(raw)
        lines.append(_Line(start=offset, end=end, text=raw.rstrip("\r\n")))
        offset = end
    return lines


def _find_fences(lines: Sequence[_Line]) -> Tuple[Set[int], Set[int]]:
    """Return indices of paired fence lines and of openers that never close.

    Unclosed openers are demoted to plain text one at a time, re-pairing the
    remaining fences after each demotion.
    """

    demoted: Set[int] = set()
    while True:
        matched: Set[int] = set()
        open_index: Optional[int] = None
        marker = ""
        for idx, line in enumerate(lines):
            if idx in demoted:
                continue
            match = _FENCE.match(line.text)
            if match is None:
                continue
            fence = match.group(1)
            if open_index is None:
                open_index, marker = idx, fence
            elif fence[0] == marker[0] and len(fence) >= len(marker):
                matched.update((open_index, idx))
                open_index = None
        if open_index is None:
            return matched, demoted
        demoted.add(open_index)


def _split_sections(
    lines: Sequence[_Line], matched: Set[int], demoted: Set[int], length: int
) -> List[_Section]:
    sections: List[_Section] = []
    current = _Section(start=0, end=length, title=None, level=None)
    in_fence = False
    for idx, line in enumerate(lines):
        if idx in matched:
            in_fence = not in_fence
            continue
        if in_fence:
            continue
        if idx in demoted:
            current.malformed = True
            continue
        heading = _HEADING.match(line.text)
        if heading is None:
            continue
        if line.start > current.start:
            current.end = line.start
            sections.append(current)
        current = _Section(
            start=line.start,
            end=length,
            title=heading.group(2).strip(),
            level=len(heading.group(1)),
        )
    sections.append(current)
    return sections


def _merge_empty_sections(sections: List[_Section], starts: Sequence[int]) -> List[_Section]:
    """Fold token-less sections into a neighbour so no chunk is pure whitespace."""

    merged: List[_Section] = []
    carry: Optional[_Section] = None
    for section in sections:
        if carry is not None:
            section.start = carry.start
            section.malformed = section.malformed or carry.malformed
            carry = None
        has_tokens = bisect_left(starts, section.end) > bisect_left(starts, section.start)
        if has_tokens:
            merged.append(section)
        else:
            carry = section
    if carry is not None:
        if merged:
            merged[-1].end = carry.end
            merged[-1].malformed = merged[-1].malformed or carry.malformed
        else:
            merged.append(carry)
    return merged


def _section_units(
    lines: Sequence[_Line], section: _Section, matched: Set[int]
) -> List[Tuple[int, int]]:
    """Split a well-formed section into paragraph and code-block units."""

    breaks: List[int] = [section.start]
    in_fence = False
    previous_blank = False
    pending_break = False
    for idx, line in enumerate(lines):
        if line.end <= section.start:
            continue
        if line.start >= section.end:
            break
        if idx in matched:
            if not in_fence:
                breaks.append(line.start)
                in_fence = True
            else:
                in_fence = False
                pending_break = True
            previous_blank = False
            continue
        if in_fence:
            continue
        if not line.text.strip():
            previous_blank = True
            continue
        if previous_blank or pending_break:
            breaks.append(line.start)
        previous_blank = False
        pending_break = False
    boundaries = sorted({point for point in breaks if section.start <= point < section.end})
    boundaries.append(section.end)
    return [(lo, hi) for lo, hi in zip(boundaries, boundaries[1:]) if hi > lo]

