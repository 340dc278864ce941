"""Conversation segmentation into ordered chunks.

Two entry points:
  - chunk_messages: packs role-tagged messages into chunks, splitting only at
    message boundaries (a single oversized message is split on word boundaries)
  - chunk_text: character windows with overlap, for raw transcripts that carry
    no message structure
"""

from typing import Any

from app.core.text_utils import CHARS_PER_TOKEN, estimate_tokens

OPTIMAL_CHUNK_TOKENS = 3000


def format_message(role: str, content: str) -> str:
    """Render one message the way chunks carry it: ``role: content``."""
    role = (role or "user").strip().lower() or "user"
    return f"{role}: {(content or '').strip()}\n\n"


def _split_oversized(text: str, target_tokens: int) -> list[str]:
    """Split a single message on word boundaries into ~target_tokens pieces."""
    pieces: list[str] = []
    current: list[str] = []
    current_len = 0
    budget_chars = target_tokens * CHARS_PER_TOKEN

    for word in text.split():
        extra = len(word) + (1 if current else 0)
        if current and current_len + extra > budget_chars:
            pieces.append(" ".join(current))
            current, current_len = [], 0
            extra = len(word)
        current.append(word)
        current_len += extra

    if current:
        pieces.append(" ".join(current))
    return pieces


def chunk_messages(
    messages: list[dict[str, Any]],
    target_tokens: int = OPTIMAL_CHUNK_TOKENS,
) -> list[str]:
    """
    Pack conversation messages into chunks without splitting a message.

    Args:
        messages: Ordered dicts with "role" and "content"
        target_tokens: Soft token size of each chunk

    Returns:
        Ordered chunk strings; every chunk ends at a message boundary unless
        it is a piece of a single message larger than target_tokens

    Raises:
        ValueError: If target_tokens is not positive
    """
    if target_tokens <= 0:
        raise ValueError(f"target_tokens must be positive, got {target_tokens}")

    chunks: list[str] = []
    buffer = ""

    for message in messages:
        content = (message.get("content") or "").strip()
        if not content:
            continue
        rendered = format_message(message.get("role", "user"), content)
        tokens = estimate_tokens(rendered)

        if tokens > target_tokens:
            if buffer:
                chunks.append(buffer.strip())
                buffer = ""
            role = (message.get("role") or "user").strip().lower() or "user"
            for piece in _split_oversized(content, target_tokens):
                chunks.append(f"{role}: {piece}")
            continue

        if buffer and estimate_tokens(buffer + rendered) > target_tokens:
            chunks.append(buffer.strip())
            buffer = ""
        buffer += rendered

    if buffer.strip():
        chunks.append(buffer.strip())

    return chunks


def chunk_text(
    text: str,
    max_chars: int = 1200,
    overlap: int = 120,
) -> list[str]:
    """
    Split raw text into overlapping character windows.

    Args:
        text: Text to chunk
        max_chars: Maximum characters per chunk
        overlap: Number of characters shared by consecutive chunks

    Returns:
        Ordered chunk strings

    Raises:
        ValueError: If max_chars <= overlap
    """
    if max_chars <= overlap:
        raise ValueError(f"max_chars ({max_chars}) must be greater than overlap ({overlap})")

    if not text:
        return []

    chunks = []
    start = 0
    text_length = len(text)

    while start < text_length:
        end = min(start + max_chars, text_length)
        chunks.append(text[start:end])
        if end >= text_length:
            break
        start = end - overlap

    return chunks
