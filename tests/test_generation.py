"""Tests for the generation features layered over the governor."""

from __future__ import annotations

import logging

import pytest

from taleleaf.ai.generation import (
    NO_PAGES_MESSAGE,
    GenerationService,
    NamedEntry,
    extract_context_text,
    parse_named_entries,
)

from helpers import build_governor


@pytest.fixture
def env():
    return build_governor(secrets={"openai-gpt4o-mini": "sk-live"})


def test_extract_context_text_is_one_indexed_and_inclusive() -> None:
    pages = ["one", "two", "three", "four"]

    assert extract_context_text(pages, 2, 3) == "two\n\nthree"
    assert extract_context_text(pages, 0, 99) == "one\n\ntwo\n\nthree\n\nfour"
    assert extract_context_text(pages, 4, 4) == "four"


def test_extract_context_text_without_pages() -> None:
    assert extract_context_text([], 1, 5) == NO_PAGES_MESSAGE


def test_parse_named_entries_tolerates_surrounding_prose() -> None:
    reply = (
        "Sure! Here are the characters:\n"
        '[{"name": " Ahab ", "notes": "Captain of the Pequod. "}, {"notes": "no name"}, "stray", '
        '{"name": "Queequeg"}]\nLet me know if you need more.'
    )

    assert parse_named_entries(reply) == [
        NamedEntry(name="Ahab", notes="Captain of the Pequod."),
        NamedEntry(name="Queequeg", notes=""),
    ]


def test_parse_named_entries_without_array() -> None:
    assert parse_named_entries("I could not find any characters.") == []
    assert parse_named_entries("") == []


def test_parse_named_entries_rejects_malformed_json() -> None:
    with pytest.raises(ValueError):
        parse_named_entries('[{"name": "Ahab",}]')


def test_chunk_budget_must_be_positive(env) -> None:
    with pytest.raises(ValueError):
        GenerationService(env.governor, chunk_budget=0)


def test_context_for_keeps_only_first_chunk(env, caplog: pytest.LogCaptureFixture) -> None:
    service = GenerationService(env.governor, chunk_budget=10)

    with caplog.at_level(logging.INFO, logger="taleleaf.ai.orchestration.chunking"):
        context = service.context_for(["a" * 30, "b" * 30])

    assert context == "a" * 30
    assert "sending only the first" in caplog.text
    assert service.context_for([]) == ""


@pytest.mark.asyncio
async def test_generate_characters_sends_prompt_and_parses_reply(env) -> None:
    env.openai.queue('[{"name": "Ishmael", "notes": "Narrator"}]')
    service = GenerationService(env.governor)

    entries = await service.generate_characters("openai-gpt4o-mini", ["Call me Ishmael."])

    assert entries == [NamedEntry(name="Ishmael", notes="Narrator")]
    call = env.openai.calls[0]
    prompt = call["messages"][0]["content"]
    assert call["messages"][0]["role"] == "user"
    assert "identify all characters" in prompt
    assert "Call me Ishmael." in prompt
    assert "Call me Ishmael." in call["system_prompt"]


@pytest.mark.asyncio
async def test_generate_locations_surfaces_malformed_reply(env) -> None:
    env.openai.queue("[not json]")
    service = GenerationService(env.governor)

    with pytest.raises(ValueError):
        await service.generate_locations("openai-gpt4o-mini", ["Nantucket harbour."])


@pytest.mark.asyncio
async def test_chapter_summary_includes_title(env) -> None:
    env.openai.queue("A summary.")
    service = GenerationService(env.governor)

    summary = await service.generate_chapter_summary("openai-gpt4o-mini", ["Loomings."], chapter_title="Loomings")

    assert summary == "A summary."
    assert "Chapter: Loomings" in env.openai.calls[0]["messages"][0]["content"]


@pytest.mark.asyncio
async def test_notes_and_profile_prompts(env) -> None:
    env.openai.queue("notes", "profile")
    service = GenerationService(env.governor)

    await service.generate_notes("openai-gpt4o-mini", ["The whale."], topic="symbolism")
    await service.enhance_character_profile(
        "openai-gpt4o-mini", "Ahab", ["The whale."], existing_notes="Obsessed captain"
    )

    notes_prompt = env.openai.calls[0]["messages"][0]["content"]
    profile_prompt = env.openai.calls[1]["messages"][0]["content"]
    assert "Focus on: symbolism" in notes_prompt
    assert 'profile for "Ahab"' in profile_prompt
    assert "Current notes: Obsessed captain" in profile_prompt


@pytest.mark.asyncio
async def test_generation_only_sends_first_chunk(env) -> None:
    service = GenerationService(env.governor, chunk_budget=10)

    await service.generate_notes("openai-gpt4o-mini", ["a" * 30, "b" * 30])

    prompt = env.openai.calls[0]["messages"][0]["content"]
    assert "a" * 30 in prompt
    assert "b" * 30 not in prompt
