"""Supabase client for caller authentication.

Only the publishable (anon) key is used: the API validates end-user JWTs
with ``auth.get_user`` and never performs admin operations through
Supabase. Payment data lives in our own database.
"""

import logging

from supabase import Client, create_client

from payrecon_api.config import Settings
from payrecon_api.errors import NotConfigured

logger = logging.getLogger(__name__)


def build_supabase_client(settings: Settings) -> Client:
    """Create the Supabase auth client from Settings.

    Raises:
        NotConfigured: If SUPABASE_URL or the publishable key is missing
    """
    if not settings.supabase_configured:
        raise NotConfigured(
            "SUPABASE_URL and SB_PUBLISHABLE_KEY (or legacy SUPABASE_ANON_KEY) are required "
            "to authenticate callers."
        )

    # Log initialization (without exposing keys)
    logger.info(
        "Initializing Supabase client",
        extra={"supabase_url": settings.supabase_url, "key_type": "publishable"},
    )
    return create_client(settings.supabase_url, settings.supabase_publishable_key)
