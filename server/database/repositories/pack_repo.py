"""Pack repository for database operations."""
from asyncio import to_thread
from typing import Optional, List
from supabase import Client
import json
import logging

logger = logging.getLogger(__name__)

_JSON_LIST_FIELDS = ("modes", "needs", "tags", "data_sources")


def _parse_pack(row: dict) -> dict:
    """Decode JSON list columns; malformed values become empty lists."""
    pack = dict(row)
    for field in _JSON_LIST_FIELDS:
        value = pack.get(field)
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except ValueError:
                value = []
        pack[field] = value if isinstance(value, list) else []
    return pack


class PackRepository:
    """Handle recommendation pack database operations."""

    def __init__(self, supabase: Client):
        self.supabase = supabase

    async def get_by_slug(self, slug: str) -> Optional[dict]:
        """Get pack by slug.

        Returns None if not found. Raises on database errors.
        """
        try:
            response = await to_thread(
                lambda: self.supabase.table("packs")
                .select("*")
                .eq("slug", slug)
                .limit(1)
                .execute()
            )
            return _parse_pack(response.data[0]) if response.data else None
        except Exception as e:
            logger.error(f"Error getting pack {slug}: {e}")
            raise

    async def list_installed(self) -> List[dict]:
        """Installed packs with their instructions and data sources."""
        try:
            response = await to_thread(
                lambda: self.supabase.table("packs")
                .select("*")
                .eq("installed", True)
                .order("created_at", desc=True)
                .execute()
            )
            return [_parse_pack(row) for row in response.data or []]
        except Exception as e:
            logger.error(f"Error listing installed packs: {e}")
            return []

    async def create_pack(
        self,
        slug: str,
        name: str,
        city: str,
        modes: List[str],
        style: str,
        budget_range: str,
        description: str,
        instructions: str = "",
        tags: Optional[List[str]] = None,
        data_sources: Optional[List[dict]] = None,
        needs: Optional[List[str]] = None,
    ) -> dict:
        """Create a new (uninstalled) pack."""
        try:
            data = {
                "slug": slug,
                "name": name,
                "city": city,
                "modes": json.dumps(modes),
                "style": style,
                "budget_range": budget_range,
                "needs": json.dumps(needs or []),
                "description": description,
                "instructions": instructions,
                "tags": json.dumps(tags or []),
                "data_sources": json.dumps(data_sources or []),
                "installed": False,
            }
            response = await to_thread(
                lambda: self.supabase.table("packs").insert(data).execute()
            )
            if not response.data:
                raise RuntimeError("Pack insert returned no row")
            return _parse_pack(response.data[0])
        except Exception as e:
            logger.error(f"Error creating pack {slug}: {e}")
            raise
