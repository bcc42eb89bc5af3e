"""Debug trace and audit repository."""
from asyncio import to_thread
from typing import Optional
from supabase import Client
import logging

logger = logging.getLogger(__name__)


class TraceRepository:
    """Append-only observability records.

    Every write is fire-and-forget: failures are logged and swallowed so
    they never change the reply path.
    """

    def __init__(self, supabase: Client):
        self.supabase = supabase

    async def add_trace(self, scope: str, message: str) -> None:
        try:
            await to_thread(
                lambda: self.supabase.table("debug_traces")
                .insert({"scope": scope, "message": message[:2000]})
                .execute()
            )
        except Exception as e:
            logger.error(f"Error writing debug trace ({scope}): {e}")

    async def add_audit(
        self,
        actor: str,
        action: str,
        details: Optional[dict] = None,
    ) -> None:
        try:
            await to_thread(
                lambda: self.supabase.table("audit_events")
                .insert({"actor": actor, "action": action, "details": details or {}})
                .execute()
            )
        except Exception as e:
            logger.error(f"Error writing audit event ({action}): {e}")
