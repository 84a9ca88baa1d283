"""AI-assisted content generation for the reading companion.

Each feature extracts context from the current reading window, keeps only the
first chunk that fits the configured budget, and dispatches a single request
through the :class:`~taleleaf.ai.orchestration.governor.RequestGovernor`.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Sequence

from . import prompts
from .orchestration.chunking import ContextChunker
from .orchestration.governor import RequestGovernor

__all__ = [
    "NamedEntry",
    "GenerationService",
    "extract_context_text",
    "parse_named_entries",
    "NO_PAGES_MESSAGE",
]

LOGGER = logging.getLogger(__name__)

NO_PAGES_MESSAGE = "No pages found in uploaded book."
_JSON_ARRAY = re.compile(r"\[[\s\S]*\]")


@dataclass(frozen=True, slots=True)
class NamedEntry:
    """A generated character or location."""

    name: str
    notes: str = ""


def extract_context_text(pages: Sequence[str], window_start: int, window_end: int) -> str:
    """Join the 1-indexed, inclusive ``window_start..window_end`` pages with blank lines."""

    if not pages:
        return NO_PAGES_MESSAGE
    start = max(0, window_start - 1)
    end = min(len(pages), window_end)
    return "\n\n".join(pages[start:end])


def parse_named_entries(reply: str) -> list[NamedEntry]:
    """Pull the ``[{"name": ..., "notes": ...}]`` array out of a model reply.

    Returns an empty list when the reply holds no JSON array. Malformed JSON
    raises ``ValueError``.
    """

    match = _JSON_ARRAY.search(reply or "")
    if match is None:
        return []
    data = json.loads(match.group(0))
    if not isinstance(data, list):
        return []
    entries: list[NamedEntry] = []
    for item in data:
        if not isinstance(item, dict):
            continue
        name = str(item.get("name") or "").strip()
        if not name:
            continue
        entries.append(NamedEntry(name=name, notes=str(item.get("notes") or "").strip()))
    return entries


class GenerationService:
    """Feature-level helpers layered over the governor."""

    def __init__(
        self,
        governor: RequestGovernor,
        *,
        chunker: ContextChunker | None = None,
        chunk_budget: int = 6_000,
    ) -> None:
        if chunk_budget <= 0:
            raise ValueError("chunk_budget must be positive")
        self._governor = governor
        self._chunker = chunker or ContextChunker(governor.estimator)
        self._chunk_budget = chunk_budget

    @property
    def chunk_budget(self) -> int:
        return self._chunk_budget

    def context_for(self, pages: Sequence[str]) -> str:
        """Return the text of the first chunk of ``pages`` within the chunk budget."""

        chunk = self._chunker.first_chunk(pages, self._chunk_budget)
        return chunk.text if chunk is not None else ""

    async def generate_characters(self, provider_id: str, pages: Sequence[str], **kwargs: Any) -> list[NamedEntry]:
        context = self.context_for(pages)
        reply = await self._ask(provider_id, prompts.characters_prompt(context), context, **kwargs)
        return self._entries(reply, "characters")

    async def generate_locations(self, provider_id: str, pages: Sequence[str], **kwargs: Any) -> list[NamedEntry]:
        context = self.context_for(pages)
        reply = await self._ask(provider_id, prompts.locations_prompt(context), context, **kwargs)
        return self._entries(reply, "locations")

    async def generate_chapter_summary(
        self,
        provider_id: str,
        pages: Sequence[str],
        chapter_title: str | None = None,
        **kwargs: Any,
    ) -> str:
        context = self.context_for(pages)
        return await self._ask(provider_id, prompts.chapter_summary_prompt(context, chapter_title), context, **kwargs)

    async def generate_notes(
        self,
        provider_id: str,
        pages: Sequence[str],
        topic: str | None = None,
        **kwargs: Any,
    ) -> str:
        context = self.context_for(pages)
        return await self._ask(provider_id, prompts.notes_prompt(context, topic), context, **kwargs)

    async def enhance_character_profile(
        self,
        provider_id: str,
        character_name: str,
        pages: Sequence[str],
        existing_notes: str | None = None,
        **kwargs: Any,
    ) -> str:
        context = self.context_for(pages)
        prompt = prompts.character_profile_prompt(character_name, context, existing_notes)
        return await self._ask(provider_id, prompt, context, **kwargs)

    async def _ask(self, provider_id: str, prompt: str, context: str, *, timeout: float | None = None) -> str:
        return await self._governor.dispatch(
            provider_id,
            [{"role": "user", "content": prompt}],
            context,
            timeout=timeout,
        )

    @staticmethod
    def _entries(reply: str, label: str) -> list[NamedEntry]:
        try:
            return parse_named_entries(reply)
        except ValueError:
            LOGGER.warning("Model reply for %s did not contain valid JSON", label, exc_info=True)
            raise
