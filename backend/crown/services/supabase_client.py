"""Shared Supabase client."""
import logging
from typing import Optional

from supabase import Client, create_client

from crown.config import settings
from crown.utils.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# Cached Supabase client
_supabase_client: Optional[Client] = None


def get_supabase() -> Client:
    """Get or create the service-role Supabase client."""
    global _supabase_client
    if not settings.supabase_configured:
        raise ConfigurationError("Supabase URL/service role key are not configured")
    if _supabase_client is None:
        _supabase_client = create_client(settings.supabase_url, settings.supabase_service_role_key)
        logger.info("Supabase client initialized")
    return _supabase_client
