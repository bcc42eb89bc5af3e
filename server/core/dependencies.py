"""
Shared singleton dependencies for the application.

Expensive objects (HTTP clients, the calendar service, the tool registry)
are created once at startup and reused across requests. Repositories are
thin wrappers around the Supabase client and are built per agent.
"""
import logging
from typing import Optional

import httpx

from config.settings import settings
from core.agent import ConciergeAgent
from core.context_manager import ContextManager
from core.intent_pipeline import IntentPipeline
from core.orchestrator import DialogueOrchestrator
from core.research import ResearchLoop
from core.thread_suggestions import SuggestionResolver
from core.tool_loop import ToolCallingLoop
from database.client import get_supabase
from database.repositories.autopilot_repo import AutopilotRepository
from database.repositories.conversation_repo import ConversationRepository
from database.repositories.integration_repo import IntegrationRepository
from database.repositories.memory_repo import MemoryRepository
from database.repositories.pack_repo import PackRepository
from database.repositories.trace_repo import TraceRepository
from integrations.google_calendar.client import GoogleCalendarClient
from integrations.llm.client import LLMClient
from services.reply_enricher import ReplyEnricher
from services.scope_guard import ScopeGuard
from tools.base import ToolRegistry
from tools.calendar_tool import CalendarTool

logger = logging.getLogger(__name__)

# Module-level singletons: initialized once via init_dependencies()
_llm_client: Optional[LLMClient] = None
_research_http: Optional[httpx.AsyncClient] = None
_tool_registry: Optional[ToolRegistry] = None
_calendar_client: Optional[GoogleCalendarClient] = None


def init_dependencies() -> None:
    """
    Initialize all shared singletons. Called once at application startup.
    """
    global _llm_client, _research_http, _tool_registry, _calendar_client

    logger.info("Initializing shared dependencies...")

    _llm_client = LLMClient()
    _research_http = httpx.AsyncClient(
        timeout=settings.RESEARCH_FETCH_TIMEOUT,
        follow_redirects=True,
        headers={"User-Agent": f"{settings.LLM_APP_TITLE}-research/1.0"},
    )
    _calendar_client = GoogleCalendarClient()

    # Scope checks read the integration table on every call, never cached
    scope_guard = ScopeGuard(IntegrationRepository(get_supabase()))
    _tool_registry = ToolRegistry()
    _tool_registry.register(CalendarTool(_calendar_client, scope_guard))

    logger.info(
        f"Dependencies initialized: {len(_tool_registry.list_tools())} tools registered"
    )


async def shutdown_dependencies() -> None:
    """Clean up resources on shutdown."""
    if _llm_client:
        await _llm_client.close()
        logger.info("LLMClient closed")
    if _research_http:
        await _research_http.aclose()


def get_llm_client() -> LLMClient:
    if _llm_client is None:
        raise RuntimeError("Dependencies not initialized. Call init_dependencies() first.")
    return _llm_client


def get_tool_registry() -> ToolRegistry:
    if _tool_registry is None:
        raise RuntimeError("Dependencies not initialized. Call init_dependencies() first.")
    return _tool_registry


def get_conversation_repo() -> ConversationRepository:
    return ConversationRepository(get_supabase())


def get_agent() -> ConciergeAgent:
    """
    Build a ConciergeAgent using shared singletons.

    Everything created here is per-request and MUST remain stateless;
    per-turn state lives in the SessionSnapshot.
    """
    supabase = get_supabase()
    llm = get_llm_client()
    registry = get_tool_registry()

    conversation_repo = ConversationRepository(supabase)
    memory_repo = MemoryRepository(supabase)
    trace_repo = TraceRepository(supabase)

    orchestrator = DialogueOrchestrator(
        llm_client=llm,
        tool_registry=registry,
        tool_loop=ToolCallingLoop(llm, registry, trace_repo),
        scope_guard=ScopeGuard(IntegrationRepository(supabase)),
        memory_repo=memory_repo,
        pack_repo=PackRepository(supabase),
        autopilot_repo=AutopilotRepository(supabase),
        trace_repo=trace_repo,
        research_loop=ResearchLoop(_research_http, memory_repo),
    )

    return ConciergeAgent(
        context_manager=ContextManager(conversation_repo, memory_repo),
        intent_pipeline=IntentPipeline(llm, memory_repo),
        suggestion_resolver=SuggestionResolver(llm),
        orchestrator=orchestrator,
        enricher=ReplyEnricher(),
        conversation_repo=conversation_repo,
        trace_repo=trace_repo,
    )
