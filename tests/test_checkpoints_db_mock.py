"""Tests for checkpoint persistence with mocked Supabase."""

from unittest.mock import MagicMock, patch

import pytest


def _select_chain(mock_supabase):
    return mock_supabase.table.return_value.select.return_value.eq.return_value.order.return_value.limit.return_value


def test_list_checkpoint_summaries_skips_empty():
    mock_response = MagicMock()
    mock_response.data = [
        {"checkpoint_number": 1, "quick_summary": "Chose Postgres"},
        {"checkpoint_number": 2, "quick_summary": None},
        {"checkpoint_number": 3, "quick_summary": "Rotated keys"},
    ]
    mock_supabase = MagicMock()
    _select_chain(mock_supabase).execute.return_value = mock_response

    with patch("app.db.checkpoints.get_supabase", return_value=mock_supabase):
        from app.db.checkpoints import list_checkpoint_summaries

        assert list_checkpoint_summaries("thread-1") == ["Chose Postgres", "Rotated keys"]
        mock_supabase.table.assert_called_with("checkpoints")


def test_save_checkpoint_numbers_and_hashes():
    latest = MagicMock()
    latest.data = [{"checkpoint_number": 4}]
    inserted = MagicMock()
    inserted.data = [{"id": "cp-5", "checkpoint_number": 5}]

    mock_supabase = MagicMock()
    _select_chain(mock_supabase).execute.return_value = latest
    mock_supabase.table.return_value.insert.return_value.execute.return_value = inserted

    with patch("app.db.checkpoints.get_supabase", return_value=mock_supabase):
        from app.db.checkpoints import save_checkpoint

        content = "x" * 900
        row = save_checkpoint("thread-1", "Day two", content)

        assert row["id"] == "cp-5"
        payload = mock_supabase.table.return_value.insert.call_args[0][0]
        assert payload["checkpoint_number"] == 5
        assert len(payload["quick_summary"]) == 700
        assert len(payload["content_hash"]) == 64


def test_first_checkpoint_is_number_one():
    empty = MagicMock()
    empty.data = []
    inserted = MagicMock()
    inserted.data = [{"id": "cp-1", "checkpoint_number": 1}]

    mock_supabase = MagicMock()
    _select_chain(mock_supabase).execute.return_value = empty
    mock_supabase.table.return_value.insert.return_value.execute.return_value = inserted

    with patch("app.db.checkpoints.get_supabase", return_value=mock_supabase):
        from app.db.checkpoints import save_checkpoint

        save_checkpoint("thread-1", "Day one", "We chose Postgres.")

        payload = mock_supabase.table.return_value.insert.call_args[0][0]
        assert payload["checkpoint_number"] == 1


def test_supabase_client_requires_credentials():
    from app.db.supabase_client import get_supabase

    settings = MagicMock(SUPABASE_URL="", SUPABASE_SERVICE_ROLE_KEY="key")
    get_supabase.cache_clear()
    try:
        with patch("app.db.supabase_client.get_settings", return_value=settings):
            with pytest.raises(RuntimeError, match="must both be set"):
                get_supabase()
    finally:
        get_supabase.cache_clear()


def test_supabase_client_is_cached():
    from app.db.supabase_client import get_supabase

    get_supabase.cache_clear()
    try:
        with patch("app.db.supabase_client.create_client", return_value=MagicMock()) as create:
            assert get_supabase() is get_supabase()
            create.assert_called_once_with("https://test.supabase.co", "test-key")
    finally:
        get_supabase.cache_clear()
