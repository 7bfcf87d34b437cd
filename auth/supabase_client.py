"""
Supabase client initialization and identity helpers.
"""

import logging
from typing import Optional

from supabase import create_client, Client, ClientOptions

logger = logging.getLogger(__name__)


def normalize_supabase_url(url: Optional[str]) -> Optional[str]:
    """Ensure Supabase URL ends with a trailing slash to satisfy storage client."""
    if not url:
        return None
    url = url.strip()
    return url if url.endswith("/") else f"{url}/"


def get_supabase_client(
    supabase_url: Optional[str],
    supabase_key: Optional[str],
    access_token: Optional[str] = None,
) -> Optional[Client]:
    """
    Build a Supabase client for the given project.

    If access_token is provided, it is sent as the Bearer token for PostgREST
    and Storage requests (RLS via auth.uid()) while the project key stays in
    the apiKey header.

    Args:
        supabase_url: Project URL
        supabase_key: Anon or service-role key
        access_token: Optional user JWT for authenticated requests

    Returns:
        Supabase client instance, or None if credentials are missing
    """
    url = normalize_supabase_url(supabase_url)
    if not url or not supabase_key:
        return None

    if access_token:
        options = ClientOptions(headers={"Authorization": f"Bearer {access_token}"})
        client = create_client(url, supabase_key, options=options)
        client.postgrest.auth(access_token)
        return client
    return create_client(url, supabase_key)


def get_service_role_client(supabase_url: Optional[str], service_key: Optional[str]) -> Optional[Client]:
    """Return a client using the service role key (bypasses RLS). Used for server-side writes."""
    return get_supabase_client(supabase_url, service_key)


def get_user_id(supabase_client: Client, access_token: Optional[str] = None) -> Optional[str]:
    """
    Get the user ID the identity provider associates with a session.

    Args:
        supabase_client: Initialized Supabase client
        access_token: JWT to resolve; falls back to the client's own session

    Returns:
        User ID (UUID string) if authenticated, None otherwise
    """
    try:
        response = supabase_client.auth.get_user(access_token) if access_token else supabase_client.auth.get_user()
    except Exception as e:
        # Expired or revoked token
        logger.warning(f"⚠️ Could not resolve user from session: {e}")
        return None
    if response and response.user:
        return response.user.id
    return None
