"""Integration connection repository."""
from asyncio import to_thread
from typing import List
from supabase import Client
import logging

logger = logging.getLogger(__name__)

_DISCONNECTED = {"status": "disconnected", "granted_scopes": []}


class IntegrationRepository:
    """Read integration connection status and granted scopes."""

    def __init__(self, supabase: Client):
        self.supabase = supabase

    async def get_connection(self, provider: str) -> dict:
        """Connection row for a provider, or a disconnected placeholder.

        Raises on database errors so permission checks fail closed.
        """
        try:
            response = await to_thread(
                lambda: self.supabase.table("integration_connections")
                .select("provider,status,granted_scopes,display_name")
                .eq("provider", provider)
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.error(f"Error getting integration connection ({provider}): {e}")
            raise

        if not response.data:
            return {"provider": provider, **_DISCONNECTED}
        row = response.data[0]
        row["granted_scopes"] = list(row.get("granted_scopes") or [])
        return row
