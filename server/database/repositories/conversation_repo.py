"""Conversation repository for database operations."""
from asyncio import to_thread
from typing import Optional, List, Tuple
from supabase import Client
import logging

from models.message import StoredMessage

logger = logging.getLogger(__name__)


class ConversationRepository:
    """Handle thread and message database operations."""

    def __init__(self, supabase: Client):
        self.supabase = supabase

    async def get_thread(self, thread_id: str) -> Optional[dict]:
        """Get thread by ID.

        Returns None if not found. Raises on database errors.
        """
        try:
            response = await to_thread(
                lambda: self.supabase.table("threads")
                .select("*")
                .eq("id", thread_id)
                .execute()
            )
            return response.data[0] if response.data else None
        except Exception as e:
            logger.error(f"Error getting thread: {e}")
            raise

    async def get_or_create_thread(
        self,
        thread_id: Optional[str] = None,
        title: Optional[str] = None,
    ) -> Tuple[dict, bool]:
        """Return (thread, created). A missing or unknown id starts a new thread."""
        try:
            if thread_id:
                existing = await self.get_thread(thread_id)
                if existing:
                    return existing, False

            data = {"title": (title or "New conversation")[:80]}
            if thread_id:
                data["id"] = thread_id

            response = await to_thread(
                lambda: self.supabase.table("threads").insert(data).execute()
            )
            if not response.data:
                raise RuntimeError("Thread insert returned no row")
            return response.data[0], True

        except Exception as e:
            logger.error(f"Error getting/creating thread: {e}")
            raise

    async def list_recent_threads(self, limit: int = 10) -> List[dict]:
        """Most recently updated threads."""
        try:
            response = await to_thread(
                lambda: self.supabase.table("threads")
                .select("id,title,updated_at")
                .order("updated_at", desc=True)
                .limit(limit)
                .execute()
            )
            return response.data if response.data else []
        except Exception as e:
            logger.error(f"Error listing threads: {e}")
            return []

    async def insert_message(
        self,
        thread_id: str,
        role: str,
        content: str,
        blocks_json: Optional[str] = None,
    ) -> Optional[dict]:
        """Insert a message. Returns the stored row, or None on failure."""
        try:
            data = {
                "thread_id": thread_id,
                "role": role,
                "content": content,
                "blocks_json": blocks_json,
            }
            response = await to_thread(
                lambda: self.supabase.table("messages").insert(data).execute()
            )
            return response.data[0] if response.data else None
        except Exception as e:
            logger.error(f"Error inserting message: {e}", exc_info=True)
            return None

    async def touch_thread(self, thread_id: str) -> None:
        """Bump updated_at so the thread sorts first."""
        try:
            await to_thread(
                lambda: self.supabase.table("threads")
                .update({"updated_at": "now()"})
                .eq("id", thread_id)
                .execute()
            )
        except Exception as e:
            logger.error(f"Error touching thread: {e}")

    async def get_recent_messages(self, thread_id: str, limit: int) -> List[StoredMessage]:
        """Last `limit` messages of a thread, oldest first.

        Raises on database errors so callers can distinguish 'no messages'
        from 'database is down'.
        """
        try:
            response = await to_thread(
                lambda: self.supabase.table("messages")
                .select("*")
                .eq("thread_id", thread_id)
                .order("created_at", desc=True)
                .limit(limit)
                .execute()
            )
            rows = response.data if response.data else []
            return [StoredMessage.model_validate(row) for row in reversed(rows)]
        except Exception as e:
            logger.error(f"Error getting messages: {e}")
            raise
