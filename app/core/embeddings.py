"""Embedding provider: OpenAI embeddings with a deterministic hashed fallback."""

import asyncio

import numpy as np
from openai import OpenAI, OpenAIError

from app.core.config import get_settings
from app.core.errors import EmbeddingError
from app.core.logging import get_logger
from app.core.text_utils import normalize, truncate_tokens

logger = get_logger(__name__)

HASH_MAX_WORDS = 800
EMBED_BATCH_SIZE = 256


def _get_client() -> OpenAI:
    return OpenAI(api_key=get_settings().OPENAI_API_KEY)


def embed_texts(texts: list[str], batch_size: int = EMBED_BATCH_SIZE) -> list[list[float]]:
    """
    Provider vectors for texts, in input order.

    Texts go out in batches of batch_size. Every vector must have
    EMBEDDING_DIM entries and every batch must come back whole, otherwise
    the call fails and embed_with_fallback switches the run to hashed vectors.

    Raises:
        EmbeddingError: On a provider error or a malformed response
    """
    if not texts:
        return []

    settings = get_settings()
    try:
        client = _get_client()
    except OpenAIError as e:
        raise EmbeddingError(f"Embedding client unavailable: {e}") from e
    vectors: list[list[float]] = []

    for start in range(0, len(texts), batch_size):
        batch = texts[start : start + batch_size]
        try:
            response = client.embeddings.create(model=settings.EMBEDDING_MODEL, input=batch)
        except OpenAIError as e:
            raise EmbeddingError(f"{settings.EMBEDDING_MODEL} request failed: {e}") from e

        if len(response.data) != len(batch):
            raise EmbeddingError(
                f"{settings.EMBEDDING_MODEL} returned {len(response.data)} vectors for {len(batch)} texts"
            )
        for offset, item in enumerate(response.data):
            if len(item.embedding) != settings.EMBEDDING_DIM:
                raise EmbeddingError(
                    f"Vector {start + offset} has {len(item.embedding)} dims, "
                    f"expected {settings.EMBEDDING_DIM}"
                )
            vectors.append(list(item.embedding))

    logger.debug(
        f"Embedded {len(vectors)} texts with {settings.EMBEDDING_MODEL}",
        extra={"model": settings.EMBEDDING_MODEL, "count": len(vectors)},
    )
    return vectors


def _word_hash(word: str) -> int:
    """31-multiplier string hash wrapped to signed 32 bits (stable across runs)."""
    h = 0
    for ch in word:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return h


def hash_embed(text: str, dim: int | None = None) -> list[float]:
    """
    Hashed bag-of-words embedding.

    Each of the first 800 words increments one of ``dim`` buckets; the
    counts are L2-normalized. No external dependency, identical output for
    identical text.
    """
    dim = dim or get_settings().HASH_EMBEDDING_DIM
    vec = np.zeros(dim, dtype=float)
    for word in text.split()[:HASH_MAX_WORDS]:
        vec[abs(_word_hash(word)) % dim] += 1.0

    norm = float(np.linalg.norm(vec)) or 1.0
    return (vec / norm).tolist()


def prepare_for_embedding(text: str) -> str:
    """Normalize and cap a text to the embedding token budget."""
    return truncate_tokens(normalize(text), get_settings().EMBEDDING_MAX_TOKENS)


async def embed_with_fallback(texts: list[str], run_id: str | None = None) -> tuple[list[list[float]], str]:
    """
    Embed texts, degrading silently to hashed vectors.

    Returns:
        (vectors, method) where method is "openai:<model>" or "hash-<dim>"
    """
    if not texts:
        return [], "none"

    settings = get_settings()
    cleaned = [prepare_for_embedding(t) for t in texts]
    hash_method = f"hash-{settings.HASH_EMBEDDING_DIM}"

    if not settings.OPENAI_API_KEY:
        return [hash_embed(t) for t in cleaned], hash_method

    try:
        vectors = await asyncio.to_thread(embed_texts, cleaned)
        return vectors, f"openai:{settings.EMBEDDING_MODEL}"
    except EmbeddingError as e:
        logger.warning(
            f"Embedding provider failed, using hashed embeddings: {e}",
            extra={"run_id": run_id, "count": len(texts)},
        )
        return [hash_embed(t) for t in cleaned], hash_method
