"""Supabase client shared by the repositories."""
from supabase import create_client, Client
from supabase.client import ClientOptions
from config.settings import settings
import logging

logger = logging.getLogger(__name__)

# Tables the conversation and memory layers cannot run without
CORE_TABLES = ("threads", "messages", "memory_entries")

_supabase_client: Client = None


def init_supabase() -> Client:
    """Create the process-wide client once; later calls return the same instance."""
    global _supabase_client

    if _supabase_client is None:
        logger.info(f"Connecting to Supabase (schema={settings.SUPABASE_SCHEMA})...")
        _supabase_client = create_client(
            settings.SUPABASE_URL,
            settings.SUPABASE_KEY,
            options=ClientOptions(
                schema=settings.SUPABASE_SCHEMA,
                postgrest_client_timeout=settings.SUPABASE_TIMEOUT,
            ),
        )
        logger.info("✓ Supabase client initialized")

    return _supabase_client


def get_supabase() -> Client:
    return init_supabase()
