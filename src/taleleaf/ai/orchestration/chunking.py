"""Split a bounded reading window into provider-token-sized chunks."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, Sequence

from ..errors import EstimationDegraded
from ..utils.tokens import TokenEstimator

__all__ = ["ChunkSegment", "ContextChunk", "ContextChunker"]

LOGGER = logging.getLogger(__name__)
_PAGE_SEPARATOR = "\n\n"
_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")


@dataclass(frozen=True, slots=True)
class ChunkSegment:
    """A page, or a contiguous slice of one, placed into a chunk."""

    page_index: int
    text: str


@dataclass(slots=True)
class ContextChunk:
    segments: list[ChunkSegment] = field(default_factory=list)
    text: str = ""
    estimated_tokens: int = 0
    truncated: bool = False
    notice: EstimationDegraded | None = None

    @property
    def page_indices(self) -> list[int]:
        seen: list[int] = []
        for segment in self.segments:
            if not seen or seen[-1] != segment.page_index:
                seen.append(segment.page_index)
        return seen


class ContextChunker:
    """Greedy packer that keeps every chunk within a token budget.

    Whole pages are packed first. A page too large on its own is split at
    paragraph boundaries (the blank-line separator stays with the preceding
    paragraph). A single paragraph still over budget is hard-truncated into a
    chunk of its own, which is the only lossy case.
    """

    def __init__(self, estimator: TokenEstimator | None = None) -> None:
        self._estimator = estimator or TokenEstimator()

    @property
    def estimator(self) -> TokenEstimator:
        return self._estimator

    def chunk(self, pages: Sequence[str], token_budget: int) -> list[ContextChunk]:
        if token_budget <= 0:
            raise ValueError("token_budget must be positive")
        chunks: list[ContextChunk] = []
        current: list[ChunkSegment] = []
        current_text = ""

        for segment, oversized in self._segments(pages, token_budget):
            if oversized:
                if current:
                    chunks.append(self._build(current, current_text))
                    current, current_text = [], ""
                chunks.append(self._truncate(segment, token_budget))
                continue
            candidate = _append_text(current, current_text, segment)
            if current and self._estimator.estimate(candidate) > token_budget:
                chunks.append(self._build(current, current_text))
                current, current_text = [segment], segment.text
                continue
            current.append(segment)
            current_text = candidate

        if current:
            chunks.append(self._build(current, current_text))
        LOGGER.debug(
            "Chunked %d page(s) into %d chunk(s) with a %d token budget",
            len(pages),
            len(chunks),
            token_budget,
        )
        return chunks

    def first_chunk(self, pages: Sequence[str], token_budget: int) -> ContextChunk | None:
        """Return only the leading chunk.

        Generation features send just this chunk, on the assumption that the
        earliest pages of the window carry the most useful context. Content
        beyond the first chunk is not sent.
        """

        chunks = self.chunk(pages, token_budget)
        if not chunks:
            return None
        if len(chunks) > 1:
            LOGGER.info(
                "Context window spans %d chunks; sending only the first (pages %s)",
                len(chunks),
                chunks[0].page_indices,
            )
        return chunks[0]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _segments(self, pages: Sequence[str], budget: int) -> Iterable[tuple[ChunkSegment, bool]]:
        for index, page in enumerate(pages):
            text = page or ""
            if self._estimator.estimate(text) <= budget:
                yield ChunkSegment(index, text), False
                continue
            for paragraph in split_paragraphs(text):
                pieces = [paragraph]
                if self._estimator.estimate(paragraph) > budget:
                    # Size the paragraph on its text; the blank-line run after it becomes its own segment.
                    body = paragraph.rstrip()
                    pieces = [body, paragraph[len(body) :]] if body else [paragraph]
                for piece in pieces:
                    if piece:
                        yield ChunkSegment(index, piece), self._estimator.estimate(piece) > budget

    def _build(self, segments: list[ChunkSegment], text: str) -> ContextChunk:
        return ContextChunk(
            segments=list(segments),
            text=text,
            estimated_tokens=self._estimator.estimate(text),
        )

    def _truncate(self, segment: ChunkSegment, budget: int) -> ContextChunk:
        limit = self._estimator.chars_for_tokens(budget)
        kept = segment.text[:limit]
        original_tokens = self._estimator.estimate(segment.text)
        notice = EstimationDegraded(
            page_index=segment.page_index,
            original_tokens=original_tokens,
            token_budget=budget,
            dropped_chars=len(segment.text) - len(kept),
        )
        LOGGER.warning(
            "Paragraph on page %d (~%d tokens) exceeds the %d token budget; truncated %d character(s)",
            segment.page_index,
            original_tokens,
            budget,
            notice.dropped_chars,
        )
        return ContextChunk(
            segments=[ChunkSegment(segment.page_index, kept)],
            text=kept,
            estimated_tokens=self._estimator.estimate(kept),
            truncated=True,
            notice=notice,
        )


def split_paragraphs(text: str) -> list[str]:
    """Split ``text`` after each blank-line run; joining the parts gives ``text`` back."""

    parts: list[str] = []
    start = 0
    for match in _PARAGRAPH_BREAK.finditer(text):
        parts.append(text[start : match.end()])
        start = match.end()
    if start < len(text) or not parts:
        parts.append(text[start:])
    return parts


def _append_text(current: list[ChunkSegment], current_text: str, segment: ChunkSegment) -> str:
    if not current:
        return segment.text
    if current[-1].page_index == segment.page_index:
        return current_text + segment.text
    return current_text + _PAGE_SEPARATOR + segment.text
