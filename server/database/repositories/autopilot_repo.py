"""Autopilot repository for database operations."""
from asyncio import to_thread
from typing import Optional, List
from supabase import Client
import logging

logger = logging.getLogger(__name__)


class AutopilotRepository:
    """Handle scheduled autopilot database operations."""

    def __init__(self, supabase: Client):
        self.supabase = supabase

    async def list_autopilots(self) -> List[dict]:
        """All autopilots, newest first. Raises on database errors."""
        try:
            response = await to_thread(
                lambda: self.supabase.table("autopilots")
                .select("*")
                .order("created_at", desc=True)
                .execute()
            )
            return response.data if response.data else []
        except Exception as e:
            logger.error(f"Error listing autopilots: {e}")
            raise

    async def find_by_name(self, name: str) -> Optional[dict]:
        """Case-insensitive exact name match, then substring match."""
        wanted = name.strip().lower()
        autopilots = await self.list_autopilots()
        for autopilot in autopilots:
            if (autopilot.get("name") or "").strip().lower() == wanted:
                return autopilot
        for autopilot in autopilots:
            if wanted and wanted in (autopilot.get("name") or "").lower():
                return autopilot
        return None

    async def create(
        self,
        name: str,
        goal: str,
        trigger: str,
        action: str,
        mode: str = "explore",
        trigger_type: str = "schedule",
        approval_rule: str = "ask_first",
    ) -> dict:
        try:
            data = {
                "name": name,
                "goal": goal,
                "trigger_type": trigger_type,
                "trigger": trigger,
                "action": action,
                "approval_rule": approval_rule,
                "mode": mode,
                "status": "on",
            }
            response = await to_thread(
                lambda: self.supabase.table("autopilots").insert(data).execute()
            )
            if not response.data:
                raise RuntimeError("Autopilot insert returned no row")
            return response.data[0]
        except Exception as e:
            logger.error(f"Error creating autopilot {name}: {e}")
            raise

    async def delete(self, autopilot_id: str) -> None:
        try:
            await to_thread(
                lambda: self.supabase.table("autopilots")
                .delete()
                .eq("id", autopilot_id)
                .execute()
            )
        except Exception as e:
            logger.error(f"Error deleting autopilot {autopilot_id}: {e}")
            raise

    async def set_status(self, autopilot_id: str, status: str) -> Optional[dict]:
        """Set status to 'on' or 'paused'."""
        try:
            response = await to_thread(
                lambda: self.supabase.table("autopilots")
                .update({"status": status})
                .eq("id", autopilot_id)
                .execute()
            )
            return response.data[0] if response.data else None
        except Exception as e:
            logger.error(f"Error updating autopilot {autopilot_id}: {e}")
            raise
