"""Chat API routes — message submission and thread overview."""
from fastapi import APIRouter
import logging

from api.schemas.request_schemas import ChatRequest
from api.schemas.response_schemas import ChatOverviewResponse, ChatResponse, ThreadSummary
from config.settings import settings
from core.dependencies import get_agent, get_conversation_repo, get_tool_registry

logger = logging.getLogger(__name__)
router = APIRouter()

RECENT_THREAD_LIMIT = 20


@router.post("", response_model=ChatResponse)
async def submit_message(request: ChatRequest):
    """
    Process one user message.

    Always answers 200 with a reply; internal faults degrade to a
    generic best-effort reply inside the agent.
    """
    agent = get_agent()
    result = await agent.process_message(
        request.message,
        thread_id=request.thread_id,
        mode=request.mode,
        timezone=request.timezone,
        model=request.model,
    )
    logger.info(f"Chat reply for thread {result.thread_id} (mode={result.mode}, model={result.model})")
    return ChatResponse(
        reply=result.reply,
        blocks=result.blocks,
        confidence=result.confidence,
        model=result.model,
        requested_model=result.requested_model,
        response_id=result.response_id,
        thread_id=result.thread_id,
        message_id=result.message_id,
    )


@router.get("", response_model=ChatOverviewResponse)
async def chat_overview():
    """Default reply model and the most recently active threads."""
    threads = await get_conversation_repo().list_recent_threads(RECENT_THREAD_LIMIT)
    return ChatOverviewResponse(
        model=settings.LLM_MODEL,
        threads=[
            ThreadSummary(
                id=str(t["id"]),
                title=t.get("title"),
                updated_at=str(t["updated_at"]) if t.get("updated_at") else None,
            )
            for t in threads
        ],
    )


@router.get("/tools")
async def list_tools():
    """Registered tools with their JSON Schema definitions and integration gating."""
    registry = get_tool_registry()
    return {
        "tools": registry.get_json_schemas(),
        "status": registry.get_tools_status(),
    }
