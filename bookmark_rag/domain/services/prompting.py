# bookmark_rag/domain/services/prompting.py
# Pure prompt construction: no I/O, deterministic given inputs.
from __future__ import annotations

from collections.abc import Collection, Sequence
from dataclasses import dataclass

from bookmark_rag.domain.models import Bookmark, Role, Turn
from bookmark_rag.domain.services.response_parser import (
    CITATION_CLOSE,
    CITATION_OPEN,
    FOLLOWUP_SEPARATOR,
)

NO_CONTEXT = "No bookmarks found matching the search criteria."

ANALYSIS_SYSTEM_PROMPT = """\
You are a search query parser. Extract search parameters from the user's question about their Twitter/X bookmarks.

Return ONLY valid JSON in this exact format (no markdown, no explanation):
{
    "keywords": ["keyword1", "keyword2"],
    "dateRange": {"unit": "months", "amount": 3},
    "authors": ["handle1", "handle2"],
    "topics": ["topic1", "topic2"]
}

Rules:
- keywords: Important search terms (nouns, topics, specific words). Exclude common words like "tell", "show", "find", "bookmarks", "tweets", "saved".
- dateRange: If user mentions time like "last 3 months", "past week", "yesterday". Use unit: "days"/"weeks"/"months"/"years". Set to null if no time mentioned.
- authors: Twitter handles if user mentions specific people (without @). Set to null if none.
- topics: General topics/categories mentioned. Set to null if just searching keywords.

Examples:
- "anime tweets from last 3 months" -> {"keywords": ["anime"], "dateRange": {"unit": "months", "amount": 3}, "authors": null, "topics": ["anime", "entertainment"]}
- "what did @elonmusk say about AI" -> {"keywords": ["AI"], "dateRange": null, "authors": ["elonmusk"], "topics": ["AI", "technology"]}
- "crypto news" -> {"keywords": ["crypto", "news"], "dateRange": null, "authors": null, "topics": ["cryptocurrency", "finance"]}
"""


def analysis_prompt(question: str, recent_authors: Collection[str] = ()) -> str:
    if not recent_authors:
        return question
    hints = ", ".join(sorted(recent_authors))
    return f"{question}\n\n(Authors recently discussed in this conversation: {hints})"


def format_context(bookmarks: Sequence[Bookmark]) -> str:
    if not bookmarks:
        return NO_CONTEXT
    blocks = []
    for index, bm in enumerate(bookmarks, 1):
        date = f"{bm.posted_at:%b} {bm.posted_at.day}, {bm.posted_at.year}"
        blocks.append(f"[{index}] ID:{bm.id} @{bm.author_handle} ({bm.author_name}) - {date}:\n{bm.text}\n---")
    return "\n".join(blocks)


def answer_system_prompt(context: Sequence[Bookmark]) -> str:
    return f"""\
You are a helpful assistant that answers questions about the user's saved Twitter/X bookmarks.

CONTEXT - These are the bookmarks found based on the user's query:
{format_context(context)}

Instructions:
- Answer based ONLY on the bookmarks provided above
- If the bookmarks don't contain relevant information, say so honestly
- When citing specific tweets, use the format {CITATION_OPEN}bookmark_id]@handle{CITATION_CLOSE} where bookmark_id is the ID from the context
- Include the date when relevant
- Format your response clearly with bullet points or numbered lists when appropriate
- For technical terms or code, use `backticks`
- Keep answers informative but concise

At the end of your response, suggest 2-3 natural follow-up questions the user might ask.
Format them after a "{FOLLOWUP_SEPARATOR}" marker, one per line. These should be relevant to the topic discussed.
"""


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str


def history_window(turns: Sequence[Turn], max_turns: int, max_chars: int) -> list[Turn]:
    """
    Most recent turns that fit the budget, in chronological order.

    Oldest turns are dropped first. Assistant turns with no text (cancelled before any
    output) are skipped together with the question that produced them.
    """
    usable: list[Turn] = []
    skip_next_user = False
    for turn in reversed(turns):
        if turn.role is Role.ASSISTANT and not turn.text.strip():
            skip_next_user = True
            continue
        if turn.role is Role.USER and skip_next_user:
            skip_next_user = False
            continue
        skip_next_user = False
        usable.append(turn)

    kept: list[Turn] = []
    used = 0
    for turn in usable:
        if len(kept) >= max_turns or used + len(turn.text) > max_chars:
            break
        kept.append(turn)
        used += len(turn.text)
    kept.reverse()
    # providers expect the window to open with a user turn
    while kept and kept[0].role is not Role.USER:
        kept.pop(0)
    return kept


def build_messages(
    question: str,
    history: Sequence[Turn],
    max_turns: int,
    max_chars: int,
) -> list[ChatMessage]:
    messages = [
        ChatMessage(role=turn.role.value, content=turn.text)
        for turn in history_window(history, max_turns, max_chars)
    ]
    messages.append(ChatMessage(role=Role.USER.value, content=question))
    return messages


STARTER_QUESTIONS = (
    "What are the main topics in my bookmarks?",
    "Summarize the tech tweets from last week",
    "What are people saying about AI?",
    "Find crypto-related tweets from last month",
)
