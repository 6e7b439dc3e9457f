"""Database session and client factory for Supabase."""

from __future__ import annotations

from functools import lru_cache

from supabase import Client, create_client

from schej.core.config import get_settings
from schej.utils.errors import CredentialStoreError


@lru_cache
def get_service_client() -> Client:
    """Get cached Supabase service client."""
    settings = get_settings()
    if not settings.supabase_url or not settings.supabase_service_role_key:
        raise CredentialStoreError(
            "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be configured to use the Supabase credential store."
        )
    return create_client(settings.supabase_url, settings.supabase_service_role_key)
