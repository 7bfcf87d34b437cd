"""
Tests for Supabase client construction and identity lookup.
"""

from unittest.mock import MagicMock, patch

from auth.supabase_client import (
    get_service_role_client,
    get_supabase_client,
    get_user_id,
    normalize_supabase_url,
)


def test_normalize_adds_trailing_slash():
    assert normalize_supabase_url("https://proj.supabase.co") == "https://proj.supabase.co/"
    assert normalize_supabase_url("https://proj.supabase.co/") == "https://proj.supabase.co/"
    assert normalize_supabase_url("") is None
    assert normalize_supabase_url(None) is None


@patch("auth.supabase_client.create_client")
def test_missing_credentials_return_none(mock_create_client):
    assert get_supabase_client(None, "key") is None
    assert get_supabase_client("https://proj.supabase.co", None) is None
    mock_create_client.assert_not_called()


@patch("auth.supabase_client.create_client")
def test_client_uses_project_key(mock_create_client):
    client = get_supabase_client("https://proj.supabase.co", "anon-key")
    mock_create_client.assert_called_once_with("https://proj.supabase.co/", "anon-key")
    assert client is mock_create_client.return_value


@patch("auth.supabase_client.create_client")
def test_access_token_sent_as_bearer(mock_create_client):
    client = get_supabase_client("https://proj.supabase.co", "anon-key", access_token="jwt-123")

    args, kwargs = mock_create_client.call_args
    assert args == ("https://proj.supabase.co/", "anon-key")
    assert kwargs["options"].headers["Authorization"] == "Bearer jwt-123"
    client.postgrest.auth.assert_called_once_with("jwt-123")


@patch("auth.supabase_client.create_client")
def test_service_role_client_uses_service_key(mock_create_client):
    client = get_service_role_client("https://proj.supabase.co", "service-key")
    mock_create_client.assert_called_once_with("https://proj.supabase.co/", "service-key")
    assert client is mock_create_client.return_value
    assert get_service_role_client("https://proj.supabase.co", None) is None

def test_get_user_id_from_token():
    client = MagicMock()
    client.auth.get_user.return_value.user.id = "user-uuid"
    assert get_user_id(client, "jwt-123") == "user-uuid"
    client.auth.get_user.assert_called_once_with("jwt-123")


def test_get_user_id_expired_session():
    client = MagicMock()
    client.auth.get_user.side_effect = Exception("JWT expired")
    assert get_user_id(client, "old") is None


def test_get_user_id_no_user():
    client = MagicMock()
    client.auth.get_user.return_value.user = None
    assert get_user_id(client) is None
