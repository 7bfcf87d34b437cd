"""
Auth package exports.

The pipeline never manages sessions itself; it only asks Supabase which user
an access token belongs to.
"""

from auth.supabase_client import get_supabase_client, get_service_role_client, get_user_id

__all__ = ["get_supabase_client", "get_service_role_client", "get_user_id"]
