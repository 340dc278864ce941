"""Tests for embeddings: OpenAI path with mocked API, hashed fallback."""

from unittest.mock import MagicMock, patch

import numpy as np
import pytest
from openai import OpenAIError

from app.core.embeddings import embed_texts, embed_with_fallback, hash_embed
from app.core.errors import EmbeddingError


@pytest.fixture
def mock_openai_response():
    """Create a mock OpenAI embeddings response."""

    def _create_response(num_embeddings: int, dimension: int = 1536):
        mock_response = MagicMock()
        mock_response.data = []

        for _ in range(num_embeddings):
            mock_embedding = MagicMock()
            mock_embedding.embedding = [0.1] * dimension
            mock_response.data.append(mock_embedding)

        return mock_response

    return _create_response


@pytest.fixture
def keyed_settings():
    settings = MagicMock()
    settings.OPENAI_API_KEY = "sk-test"
    settings.EMBEDDING_MODEL = "text-embedding-3-small"
    settings.EMBEDDING_DIM = 1536
    settings.HASH_EMBEDDING_DIM = 256
    settings.EMBEDDING_MAX_TOKENS = 512
    return settings


def test_embed_texts_multiple(mock_openai_response):
    """Test embedding multiple texts."""
    with patch("app.core.embeddings._get_client") as mock_get_client:
        mock_client = MagicMock()
        mock_client.embeddings.create.return_value = mock_openai_response(3)
        mock_get_client.return_value = mock_client

        embeddings = embed_texts(["Text one", "Text two", "Text three"])

        assert len(embeddings) == 3
        for embedding in embeddings:
            assert len(embedding) == 1536


def test_embed_texts_empty():
    assert embed_texts([]) == []


def test_embed_texts_dimension_validation(mock_openai_response):
    """A vector of the wrong size fails the whole call."""
    with patch("app.core.embeddings._get_client") as mock_get_client:
        mock_client = MagicMock()
        mock_client.embeddings.create.return_value = mock_openai_response(1, dimension=512)
        mock_get_client.return_value = mock_client

        with pytest.raises(EmbeddingError, match="Vector 0 has 512 dims, expected 1536"):
            embed_texts(["Test text"])


def test_embed_texts_count_mismatch(mock_openai_response):
    with patch("app.core.embeddings._get_client") as mock_get_client:
        mock_client = MagicMock()
        mock_client.embeddings.create.return_value = mock_openai_response(1)
        mock_get_client.return_value = mock_client

        with pytest.raises(EmbeddingError, match="returned 1 vectors for 2 texts"):
            embed_texts(["one", "two"])


def test_embed_texts_batches_requests_in_order(mock_openai_response):
    with patch("app.core.embeddings._get_client") as mock_get_client:
        mock_client = MagicMock()
        mock_client.embeddings.create.side_effect = [mock_openai_response(2), mock_openai_response(1)]
        mock_get_client.return_value = mock_client

        embeddings = embed_texts(["one", "two", "three"], batch_size=2)

    assert len(embeddings) == 3
    batches = [c.kwargs["input"] for c in mock_client.embeddings.create.call_args_list]
    assert batches == [["one", "two"], ["three"]]


def test_embed_texts_wraps_provider_errors():
    with patch("app.core.embeddings._get_client") as mock_get_client:
        mock_client = MagicMock()
        mock_client.embeddings.create.side_effect = OpenAIError("rate limited")
        mock_get_client.return_value = mock_client

        with pytest.raises(EmbeddingError, match="request failed: rate limited") as exc_info:
            embed_texts(["Test text"])

    assert isinstance(exc_info.value.__cause__, OpenAIError)


@pytest.mark.asyncio
async def test_embed_with_fallback_degrades_when_provider_raises(keyed_settings):
    with patch("app.core.embeddings.get_settings", return_value=keyed_settings):
        with patch("app.core.embeddings._get_client") as mock_get_client:
            mock_get_client.return_value.embeddings.create.side_effect = OpenAIError("down")
            vectors, method = await embed_with_fallback(["alpha beta"])

    assert method == "hash-256"
    assert vectors == [hash_embed("alpha beta", dim=256)]


def test_hash_embed_is_deterministic_and_normalized():
    first = hash_embed("rotate the signing keys before friday", dim=64)
    second = hash_embed("rotate the signing keys before friday", dim=64)

    assert first == second
    assert len(first) == 64
    assert np.linalg.norm(first) == pytest.approx(1.0)


def test_hash_embed_empty_text_is_zero_vector():
    assert hash_embed("", dim=8) == [0.0] * 8


@pytest.mark.asyncio
async def test_embed_with_fallback_without_key_uses_hash():
    vectors, method = await embed_with_fallback(["alpha beta", "gamma"])

    assert method == "hash-256"
    assert len(vectors) == 2
    assert len(vectors[0]) == 256


@pytest.mark.asyncio
async def test_embed_with_fallback_degrades_on_provider_error(keyed_settings):
    with patch("app.core.embeddings.get_settings", return_value=keyed_settings):
        with patch("app.core.embeddings.embed_texts", side_effect=EmbeddingError("API Error")):
            vectors, method = await embed_with_fallback(["alpha beta"], run_id="run-1")

    assert method == "hash-256"
    assert len(vectors[0]) == 256


@pytest.mark.asyncio
async def test_embed_with_fallback_uses_provider(keyed_settings):
    with patch("app.core.embeddings.get_settings", return_value=keyed_settings):
        with patch("app.core.embeddings.embed_texts", return_value=[[0.5] * 1536]) as mock_embed:
            vectors, method = await embed_with_fallback(["**alpha**   beta"])

    assert method == "openai:text-embedding-3-small"
    assert vectors == [[0.5] * 1536]
    mock_embed.assert_called_once_with(["alpha beta"])


@pytest.mark.asyncio
async def test_embed_with_fallback_empty():
    assert await embed_with_fallback([]) == ([], "none")
