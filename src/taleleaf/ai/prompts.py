"""Prompt templates for the reading assistant and generation features."""

from __future__ import annotations

# Completion allowance reserved for every request.
OUTPUT_TOKEN_ALLOWANCE = 500


def reading_assistant_prompt(context_text: str) -> str:
    """System prompt that confines answers to the supplied reading window.

    The template is deterministic for a given ``context_text`` so token
    estimates computed ahead of dispatch match what is actually sent.
    """
    return f"""You are a helpful reading assistant. Answer questions about the book based ONLY on the provided context. Never reveal information outside the given context to avoid spoilers.

Context from book (pages in current window):
{context_text}

Guidelines:
- Only use information from the provided context
- If asked about events outside the context, politely say you don't have that information yet
- Be helpful and engaging while respecting spoiler boundaries
- Provide detailed analysis when possible using available context"""


def characters_prompt(context_text: str) -> str:
    return f"""Analyze the provided text and identify all characters mentioned. For each character, provide their name and a brief description including their role, personality traits, and relationships.

Text to analyze:
{context_text}

Return ONLY a JSON array of objects with "name" and "notes" properties. Example:
[{{"name": "John Smith", "notes": "Protagonist, brave detective with a troubled past. Partner to Sarah."}}]"""


def locations_prompt(context_text: str) -> str:
    return f"""Analyze the provided text and identify all locations, places, and settings mentioned. For each location, provide the name and a description including its significance to the story.

Text to analyze:
{context_text}

Return ONLY a JSON array of objects with "name" and "notes" properties. Example:
[{{"name": "Misty Forest", "notes": "Dark woodland where the characters first meet the mysterious guide. Known for its dangerous creatures."}}]"""


def chapter_summary_prompt(context_text: str, chapter_title: str | None = None) -> str:
    heading = f"Chapter: {chapter_title}" if chapter_title else "Chapter Content:"
    return f"""Create a concise chapter summary for the provided text. Focus on key events, character development, and plot advancement. Keep it spoiler-free by focusing on what happens rather than future implications.

{heading}

Text to summarize:
{context_text}

Provide a clear, informative summary in 2-3 paragraphs."""


def notes_prompt(context_text: str, topic: str | None = None) -> str:
    focus = (
        f"Focus on: {topic}"
        if topic
        else "Include themes, literary devices, important quotes, and analysis points that would be helpful for understanding or discussing this text."
    )
    return f"""Create insightful reading notes for the provided text. {focus}

Text to analyze:
{context_text}

Provide comprehensive notes with bullet points for easy reading."""


def character_profile_prompt(character_name: str, context_text: str, existing_notes: str | None = None) -> str:
    current = f"Current notes: {existing_notes}" if existing_notes else "No existing notes."
    return f"""Enhance the character profile for "{character_name}" based on the provided text. {current}

Text containing character information:
{context_text}

Provide an enhanced character description including personality, appearance, relationships, motivations, and character arc based on the text."""


__all__ = [
    "OUTPUT_TOKEN_ALLOWANCE",
    "reading_assistant_prompt",
    "characters_prompt",
    "locations_prompt",
    "chapter_summary_prompt",
    "notes_prompt",
    "character_profile_prompt",
]
