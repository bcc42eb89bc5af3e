"""
Dialogue orchestrator — picks exactly one mode per turn and runs its handler.

Mode selection is a guarded list of (predicate, mode) rules evaluated top to
bottom. Nothing is persisted between turns: the decision is recomputed from
the IntentRecord and a SessionSnapshot every time.
"""
import json
import logging
import re
from enum import Enum
from typing import Callable, NamedTuple, Optional
from urllib.parse import urlparse

from pydantic import BaseModel

from config.settings import settings
from core.calendar_resolver import parse_tool_events
from core.policy import (
    PromptPolicyContext,
    build_pack_context,
    build_temporal_context,
    compose_policy_sections,
    format_preference_awareness,
)
from core.research import ResearchLoop
from core.signals import derive_recommendation_signals, extract_recommendation_constraints
from core.thread_suggestions import (
    DISAMBIGUATION_MODEL,
    build_disambiguation_reply,
    extract_thread_suggestions,
    format_suggestions_for_prompt,
    select_resolved,
)
from core.tool_loop import CALENDAR_TOOL, ToolCallingLoop
from database.repositories.autopilot_repo import AutopilotRepository
from database.repositories.memory_repo import MemoryRepository
from database.repositories.pack_repo import PackRepository
from database.repositories.trace_repo import TraceRepository
from integrations.llm.client import LLMClient
from integrations.llm.prompts import (
    ACTION_COMMAND_DIRECTIVE,
    CALENDAR_READ_DIRECTIVE,
    CALENDAR_WRITE_DIRECTIVE,
    THREAD_SUGGESTIONS_CONTEXT,
)
from models.calendar import CalendarEvent
from models.intent import IntentRecord
from models.message import SessionSnapshot, StoredMessage
from models.suggestion import SuggestionResolution, ThreadSuggestion
from services.scope_guard import ScopeGuard
from tools.base import ToolRegistry
from tools.calendar_tool import INTEGRATION as CALENDAR_INTEGRATION
from utils.time_utils import format_event_date, now_utc, parse_datetime, plus_days_iso

logger = logging.getLogger(__name__)


class Mode(str, Enum):
    NEEDS_CLARIFICATION = "needs_clarification"
    SMALLTALK = "smalltalk"
    CAPABILITY = "capability"
    AUTOPILOT_OPS = "autopilot_ops"
    PACK_CREATION = "pack_creation"
    CALENDAR_INTENT = "calendar_intent"
    RESEARCH = "research"
    RECOMMENDATION = "recommendation"
    INFO = "info"


class ModeDecision(BaseModel):
    mode: Mode
    reason: str
    best_effort: bool = False


class TurnResult(BaseModel):
    """What one handler produced for the current turn."""
    reply: str
    blocks: Optional[list[dict]] = None
    model: str
    requested_model: str
    response_id: Optional[str] = None
    mode: Mode
    bypass_enrichment: bool = True


# ---------------------------------------------------------------------------
# Deterministic replies
# ---------------------------------------------------------------------------

SAFE_CLARIFICATION_REPLY = (
    "Quick check so I get this right: what would you like me to help with? "
    "Tell me what you're planning and roughly when, and I'll take it from there."
)
CALENDAR_ERROR_REPLY = (
    "I couldn't read your calendar right now because the calendar tool returned an error. "
    "Please reconnect Google Calendar in Settings, then try again."
)
AUTOPILOT_STORE_ERROR_REPLY = "I couldn't update your autopilots right now. Please try again in a moment."
PACK_DESCRIPTION = (
    "Generated from chat preferences and recommendation feedback to deliver personalized "
    "source discovery."
)

PACK_CREATION_COMMANDS = (
    "create a pack from this",
    "turn this into a pack",
    "make a pack from this",
    "build a pack from this",
    "create pack from this",
)

INTEGRATION_LABELS = {CALENDAR_INTEGRATION: "Google Calendar"}

TRAVEL_KEYWORDS = ("travel", "trip", "vacation", "flight", "hotel", "getaway", "journey")
CALENDAR_WINDOWS_UPCOMING = (14, 90)
CALENDAR_WINDOWS_DEFAULT = (90,)
CALENDAR_MAX_PER_CALENDAR = 30

MODEL_SAFE_CLARIFICATION = "policy/safe_clarification"
MODEL_PROFILE_CLARIFIER = "policy/profile_clarifier"
MODEL_CAPABILITY = "policy/capability"
MODEL_AUTOPILOT = "policy/autopilot_ops"
MODEL_PACK_CREATION = "policy/pack_creation"
MODEL_MEMORY_RECALL = "policy/memory_recall"
MODEL_CALENDAR = f"tool/{CALENDAR_TOOL}"
MODEL_RESEARCH = "research/fresh_sources"

_CLARIFIER_RE = re.compile(
    r"quick check|which (?:area|neighbou?rhood|part of town)|what (?:area|neighbou?rhood|city)"
    r"|could you (?:tell|share)|can you tell me (?:more|which|what)|which option should i add"
    r"|do you mean",
    re.IGNORECASE,
)
_URL_RE = re.compile(r"https?://[^\s)]+")
_SLUG_RE = re.compile(r"[^a-z0-9]+")
_NEXT_RE = re.compile(r"\bnext\b", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Mode selection
# ---------------------------------------------------------------------------

def has_recent_clarifier(messages: list[StoredMessage], lookback: Optional[int] = None) -> bool:
    """True when one of the last `lookback` assistant turns asked a clarifying question."""
    lookback = lookback or settings.CLARIFIER_LOOKBACK_TURNS
    assistant = [m for m in messages if m.role == "assistant"][-lookback:]
    return any(_CLARIFIER_RE.search(m.content or "") for m in assistant)


def is_pack_creation_command(message: str) -> bool:
    lowered = message.lower()
    return any(command in lowered for command in PACK_CREATION_COMMANDS)


def _is_research_turn(intent: IntentRecord, session: SessionSnapshot, message: str) -> bool:
    if intent.is_action_command or intent.is_calendar_write:
        return False
    signals = derive_recommendation_signals(message, session.taste_hints)
    return intent.is_research_request or signals.boredom_signal


def _needs_home_area(intent: IntentRecord, session: SessionSnapshot) -> bool:
    return (
        intent.is_proximity_preference_query
        and not session.has_recent_clarifier
        and not (session.known_home_area or intent.home_area)
    )


def _autopilot_unconfirmed(intent: IntentRecord) -> bool:
    return (
        intent.autopilot_operation != "none"
        and intent.autopilot_operation_confidence < settings.AUTOPILOT_CONFIDENCE_THRESHOLD
    )


def _calendar_read(intent: IntentRecord) -> bool:
    return (
        (intent.is_calendar_query or intent.is_proactive_calendar_check or intent.is_upcoming_query)
        and not intent.is_calendar_write
        and not intent.is_action_command
    )


class ModeRule(NamedTuple):
    reason: str
    predicate: Callable[[IntentRecord, SessionSnapshot, str], bool]
    mode: Mode


MODE_RULES: list[ModeRule] = [
    ModeRule("extraction_failed", lambda i, s, m: not i.extraction_ok, Mode.NEEDS_CLARIFICATION),
    ModeRule("meta_conversation", lambda i, s, m: i.is_meta_conversation_query, Mode.SMALLTALK),
    ModeRule("home_area_clarifier", lambda i, s, m: _needs_home_area(i, s), Mode.NEEDS_CLARIFICATION),
    ModeRule("autopilot_unconfirmed", lambda i, s, m: _autopilot_unconfirmed(i), Mode.AUTOPILOT_OPS),
    ModeRule("autopilot_confirmed", lambda i, s, m: i.autopilot_operation != "none", Mode.AUTOPILOT_OPS),
    ModeRule(
        "capability_query",
        lambda i, s, m: i.is_capability_query and not is_pack_creation_command(m) and not i.is_proactive_calendar_check,
        Mode.CAPABILITY,
    ),
    ModeRule("pack_creation", lambda i, s, m: is_pack_creation_command(m), Mode.PACK_CREATION),
    ModeRule("light_turn", lambda i, s, m: i.is_light_turn, Mode.SMALLTALK),
    ModeRule("calendar_read", lambda i, s, m: _calendar_read(i), Mode.CALENDAR_INTENT),
    ModeRule("research", _is_research_turn, Mode.RESEARCH),
    ModeRule(
        "location_info",
        lambda i, s, m: i.is_location_info_query or i.is_historical_recall,
        Mode.INFO,
    ),
]


def select_mode(intent: IntentRecord, session: SessionSnapshot, message: str) -> ModeDecision:
    """First matching rule wins; recommendation when none match."""
    best_effort = intent.wants_best_effort or session.has_recent_clarifier
    for rule in MODE_RULES:
        if rule.predicate(intent, session, message):
            return ModeDecision(mode=rule.mode, reason=rule.reason, best_effort=best_effort)
    return ModeDecision(mode=Mode.RECOMMENDATION, reason="default", best_effort=best_effort)


# ---------------------------------------------------------------------------
# Pure helpers for deterministic handlers
# ---------------------------------------------------------------------------

def slugify(value: str) -> str:
    return _SLUG_RE.sub("-", value.lower()).strip("-")


def extract_source_urls(texts: list[str], limit: int = 6) -> list[dict]:
    """Unique http(s) URLs in order of appearance, labelled by hostname."""
    sources = []
    seen = set()
    for text in texts:
        for url in _URL_RE.findall(text or ""):
            url = url.rstrip(".,;")
            if url in seen:
                continue
            seen.add(url)
            host = urlparse(url).hostname or url
            label = host[4:] if host.startswith("www.") else host
            sources.append({"label": label, "url": url})
            if len(sources) >= limit:
                return sources
    return sources


def _travel_score(event: CalendarEvent, now) -> float:
    calendar_text = (event.calendar_name or "").lower()
    event_text = " ".join(filter(None, [event.summary, event.description, event.location])).lower()
    calendar_hits = sum(1 for kw in TRAVEL_KEYWORDS if kw in calendar_text)
    text_hits = sum(1 for kw in TRAVEL_KEYWORDS if kw in event_text)
    start = parse_datetime(event.start)
    days_out = (start - now).total_seconds() / 86400 if start else 0.0
    return calendar_hits * 25 + text_hits * 15 - days_out


def rank_calendar_events(events: list[CalendarEvent], travel: bool, now=None) -> list[CalendarEvent]:
    """Future events first; travel queries ranked by keyword relevance then start time."""
    now = now or now_utc()
    epoch = now.replace(year=1970)

    def start_of(event):
        return parse_datetime(event.start) or epoch

    future = [e for e in events if start_of(e) >= now]
    past = [e for e in events if start_of(e) < now]
    if travel:
        future.sort(key=lambda e: (-_travel_score(e, now), start_of(e), e.summary))
    else:
        future.sort(key=lambda e: (start_of(e), e.summary))
    past.sort(key=lambda e: start_of(e), reverse=True)
    return future + past


def _has_travel_signal(event: CalendarEvent) -> bool:
    text = " ".join(filter(None, [event.calendar_name, event.summary, event.description, event.location])).lower()
    return any(kw in text for kw in TRAVEL_KEYWORDS)


def describe_event(event: CalendarEvent, tz_name: Optional[str] = None) -> str:
    return format_event_date(event.start, tz_name)


def format_next_plan(event: CalendarEvent, tz_name: Optional[str] = None) -> str:
    calendar = f" from {event.calendar_name}" if event.calendar_name else ""
    location = f" at {event.location}" if event.location else ""
    return f"Your next plan is {event.summary}{calendar} on {describe_event(event, tz_name)}{location}."


def format_event_list(events: list[CalendarEvent], tz_name: Optional[str] = None) -> str:
    lines = ["Here are your next events:"]
    for i, event in enumerate(events[:3], start=1):
        calendar = f" ({event.calendar_name})" if event.calendar_name else ""
        lines.append(f"{i}. {event.summary} — {describe_event(event, tz_name)}{calendar}")
    return "\n".join(lines)


def format_empty_calendar(window_days: int, travel: bool) -> str:
    what = "travel-related events" if travel else "events"
    return (
        f"I checked all readable calendars for {what} in the next {window_days} days and "
        "couldn’t find any. Want me to widen the window or search a specific calendar name?"
    )


def format_recall_reply(session: SessionSnapshot) -> str:
    suggestions = extract_thread_suggestions(session.messages)
    if suggestions:
        lines = ["Here's what I suggested earlier in this thread:"]
        lines.extend(f"{s.index}. {s.title}" + (f" — {s.subtitle}" if s.subtitle else "") for s in suggestions)
        return "\n".join(lines)

    asked = [m.content.strip() for m in session.messages if m.role == "user" and m.content.strip()]
    if asked:
        lines = ["Earlier in this thread you asked about:"]
        lines.extend(f"- {text[:160]}" for text in asked[-5:])
        return "\n".join(lines)

    return (
        "I don't see earlier recommendations in this thread yet. "
        "Want me to pull together some fresh options?"
    )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class DialogueOrchestrator:
    """Runs the handler for a selected mode."""

    def __init__(
        self,
        llm_client: LLMClient,
        tool_registry: ToolRegistry,
        tool_loop: ToolCallingLoop,
        scope_guard: ScopeGuard,
        memory_repo: MemoryRepository,
        pack_repo: PackRepository,
        autopilot_repo: AutopilotRepository,
        trace_repo: TraceRepository,
        research_loop: ResearchLoop,
    ):
        self.llm = llm_client
        self.tool_registry = tool_registry
        self.tool_loop = tool_loop
        self.scope_guard = scope_guard
        self.memory_repo = memory_repo
        self.pack_repo = pack_repo
        self.autopilot_repo = autopilot_repo
        self.trace_repo = trace_repo
        self.research_loop = research_loop

        self._handlers = {
            Mode.NEEDS_CLARIFICATION: self._handle_clarification,
            Mode.SMALLTALK: self._handle_smalltalk,
            Mode.CAPABILITY: self._handle_capability,
            Mode.AUTOPILOT_OPS: self._handle_autopilot,
            Mode.PACK_CREATION: self._handle_pack_creation,
            Mode.CALENDAR_INTENT: self._handle_calendar_intent,
            Mode.RESEARCH: self._handle_research,
            Mode.INFO: self._handle_info,
            Mode.RECOMMENDATION: self._handle_recommendation,
        }

    async def run(
        self,
        decision: ModeDecision,
        intent: IntentRecord,
        session: SessionSnapshot,
        message: str,
        suggestions: Optional[list[ThreadSuggestion]] = None,
        resolution: Optional[SuggestionResolution] = None,
    ) -> TurnResult:
        logger.info(f"Mode selected: {decision.mode.value} ({decision.reason}, best_effort={decision.best_effort})")
        await self.trace_repo.add_trace(
            "chat",
            f"mode_selected mode={decision.mode.value} reason={decision.reason} "
            f"best_effort={str(decision.best_effort).lower()}",
        )
        handler = self._handlers[decision.mode]
        return await handler(decision, intent, session, message, suggestions or [], resolution)

    async def disambiguate(self, suggestions: list[ThreadSuggestion], resolution: Optional[SuggestionResolution]) -> TurnResult:
        """Numbered choice list instead of guessing which suggestion to write."""
        confidence = resolution.confidence if resolution else 0.0
        await self.trace_repo.add_trace(
            "chat",
            f"thread_suggestion_resolution unresolved confidence={confidence:.2f} options={len(suggestions)}",
        )
        return TurnResult(
            reply=build_disambiguation_reply(suggestions),
            model=DISAMBIGUATION_MODEL,
            requested_model=DISAMBIGUATION_MODEL,
            mode=Mode.NEEDS_CLARIFICATION,
        )

    # ------------------------------------------------------------------
    # Prompt assembly
    # ------------------------------------------------------------------

    async def _granted_scopes(self) -> dict[str, list[str]]:
        return await self.scope_guard.granted_scope_map([CALENDAR_INTEGRATION])

    async def _build_messages(
        self,
        decision: ModeDecision,
        intent: IntentRecord,
        session: SessionSnapshot,
        message: str,
        suggestions: list[ThreadSuggestion],
        resolution: Optional[SuggestionResolution],
        tool_specs: Optional[list[dict]] = None,
        granted: Optional[dict[str, list[str]]] = None,
        extra_system: Optional[list[str]] = None,
    ) -> list[dict]:
        packs = await self.pack_repo.list_installed()
        granted = granted if granted is not None else await self._granted_scopes()

        ctx = PromptPolicyContext(
            intent=intent,
            mode=session.mode,
            enabled_integrations={k: v for k, v in granted.items() if v},
            tool_names=[spec["function"]["name"] for spec in tool_specs or []],
            installed_pack_names=[p.get("name") for p in packs if p.get("name")],
            taste_hints=session.taste_hints,
            known_name=session.known_name,
            known_city=session.known_city,
            known_home_area=session.known_home_area,
            best_effort=decision.best_effort,
            has_thread_suggestions=bool(suggestions),
        )

        system = [
            build_temporal_context(session.timezone),
            "\n\n".join(compose_policy_sections(ctx)),
            format_preference_awareness(session.preference_profile),
        ]
        pack_context = build_pack_context(packs)
        if pack_context:
            system.append(pack_context)
        if intent.is_action_command:
            system.append(ACTION_COMMAND_DIRECTIVE)
        if suggestions:
            selected = select_resolved(suggestions, resolution)
            selection = " | ".join(
                f"{s.title} ({s.action_url})" if s.action_url else s.title for s in selected
            ) or "none"
            system.append(THREAD_SUGGESTIONS_CONTEXT.format(
                suggestions=format_suggestions_for_prompt(suggestions),
                selection=selection,
                confidence=f"{resolution.confidence:.2f}" if resolution else "n/a",
            ))
        if intent.is_calendar_write:
            system.append(CALENDAR_WRITE_DIRECTIVE)
        elif intent.is_calendar_query or intent.is_proactive_calendar_check:
            system.append(CALENDAR_READ_DIRECTIVE)
        system.extend(extra_system or [])

        return [
            *({"role": "system", "content": content} for content in system),
            *session.history,
            {"role": "user", "content": message},
        ]

    async def _plain_reply(self, decision, intent, session, message, suggestions, resolution) -> TurnResult:
        """One tools-disabled reply call."""
        messages = await self._build_messages(decision, intent, session, message, suggestions, resolution)
        reply = await self.llm.chat(
            messages,
            tools=None,
            model=session.model,
            timeout_s=settings.LLM_RESPONSE_TIMEOUT,
        )
        return TurnResult(
            reply=reply.text,
            model=reply.response_model,
            requested_model=reply.requested_model,
            response_id=reply.response_id,
            mode=decision.mode,
        )

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _handle_clarification(self, decision, intent, session, message, suggestions, resolution) -> TurnResult:
        if decision.reason == "home_area_clarifier":
            city = session.known_city or intent.city
            where = f" in {city}" if city else ""
            reply = (
                f"Quick check so I can keep things close to home: which neighbourhood or area{where} "
                "are you in?"
            )
            return TurnResult(
                reply=reply, model=MODEL_PROFILE_CLARIFIER,
                requested_model=MODEL_PROFILE_CLARIFIER, mode=decision.mode,
            )
        return TurnResult(
            reply=SAFE_CLARIFICATION_REPLY, model=MODEL_SAFE_CLARIFICATION,
            requested_model=MODEL_SAFE_CLARIFICATION, mode=decision.mode,
        )

    async def _handle_smalltalk(self, decision, intent, session, message, suggestions, resolution) -> TurnResult:
        return await self._plain_reply(decision, intent, session, message, [], None)

    async def _handle_info(self, decision, intent, session, message, suggestions, resolution) -> TurnResult:
        if intent.is_historical_recall:
            return TurnResult(
                reply=format_recall_reply(session), model=MODEL_MEMORY_RECALL,
                requested_model=MODEL_MEMORY_RECALL, mode=decision.mode,
            )
        return await self._plain_reply(decision, intent, session, message, suggestions, resolution)

    async def _handle_capability(self, decision, intent, session, message, suggestions, resolution) -> TurnResult:
        granted = await self._granted_scopes()
        packs = await self.pack_repo.list_installed()
        try:
            autopilots = await self.autopilot_repo.list_autopilots()
        except Exception:
            autopilots = []

        lines = ["Here's what I can do for you right now:"]
        connected = {k: v for k, v in granted.items() if v}
        if connected:
            for provider, scopes in connected.items():
                lines.append(f"- {INTEGRATION_LABELS.get(provider, provider)}: {', '.join(scopes)} access")
        else:
            lines.append("- No integrations connected yet. Connect Google Calendar in Settings so I can read or plan around your schedule.")
        if packs:
            lines.append(f"- Installed packs: {', '.join(p.get('name') or p.get('slug') for p in packs)}")
        else:
            lines.append("- No packs installed yet. Say \"create a pack from this\" after a good set of suggestions.")
        if autopilots:
            active = [a for a in autopilots if a.get("status") == "on"]
            lines.append(f"- Autopilots: {len(autopilots)} set up, {len(active)} active")
        else:
            lines.append("- Autopilots: none yet. Ask me to run a plan on a schedule, like every Friday at 9am.")
        lines.append("Anything that changes your calendar or runs on a schedule asks for your approval first.")

        return TurnResult(
            reply="\n".join(lines), model=MODEL_CAPABILITY,
            requested_model=MODEL_CAPABILITY, mode=decision.mode,
        )

    async def _handle_autopilot(self, decision, intent, session, message, suggestions, resolution) -> TurnResult:
        operation = intent.autopilot_operation
        target = intent.autopilot_target_name

        def result(reply: str) -> TurnResult:
            return TurnResult(reply=reply, model=MODEL_AUTOPILOT, requested_model=MODEL_AUTOPILOT, mode=decision.mode)

        if decision.reason == "autopilot_unconfirmed":
            named = f' "{target}"' if target else ""
            noun = "a new autopilot" if operation == "create" else f"the autopilot{named}"
            verb = "list" if operation == "list" else operation
            if operation == "list":
                return result("Just to confirm: do you want me to list your autopilots?")
            return result(f"Just to confirm: do you want me to {verb} {noun}? Reply yes and I'll do it.")

        try:
            if operation == "list":
                autopilots = await self.autopilot_repo.list_autopilots()
                if not autopilots:
                    return result("You don't have any autopilots yet.")
                lines = [f"You have {len(autopilots)} autopilot{'s' if len(autopilots) != 1 else ''}:"]
                lines.extend(
                    f"- {a.get('name')} ({a.get('status')}) — {a.get('trigger')}" for a in autopilots
                )
                return result("\n".join(lines))

            if operation == "create":
                fields = intent.autopilot_create_fields
                trigger = fields.trigger if fields else None
                if not trigger:
                    return result("What schedule should this autopilot run on? For example, every Friday at 9am.")
                goal = (fields.goal if fields else None) or message
                name = (fields.name if fields else None) or target or goal[:40]
                created = await self.autopilot_repo.create(
                    name=name,
                    goal=goal,
                    trigger=trigger,
                    action=(fields.action if fields else None) or "suggest_plans",
                    mode=(fields.mode if fields else None) or session.mode or "explore",
                )
                return result(
                    f'Done — I created the autopilot "{created.get("name", name)}". '
                    f'It runs {trigger} and asks before acting.'
                )

            if not target:
                return result(f"Which autopilot should I {operation}?")
            autopilot = await self.autopilot_repo.find_by_name(target)
            if not autopilot:
                return result(f'I couldn\'t find an autopilot named "{target}".')

            if operation == "delete":
                await self.autopilot_repo.delete(autopilot["id"])
                return result(f'Done — I deleted the autopilot "{autopilot["name"]}".')
            status = "paused" if operation == "pause" else "on"
            await self.autopilot_repo.set_status(autopilot["id"], status)
            verb = "paused" if operation == "pause" else "resumed"
            return result(f'Done — I {verb} the autopilot "{autopilot["name"]}".')
        except Exception as e:
            logger.error(f"Autopilot {operation} failed: {e}")
            return result(AUTOPILOT_STORE_ERROR_REPLY)

    async def _unique_pack_slug(self, root: str) -> str:
        root = root or "custom-pack"
        candidates = [root] + [f"{root}-{n}" for n in range(2, 21)]
        for candidate in candidates:
            if not await self.pack_repo.get_by_slug(candidate):
                return candidate
        return f"{root}-{int(now_utc().timestamp())}"

    async def _handle_pack_creation(self, decision, intent, session, message, suggestions, resolution) -> TurnResult:
        recent_assistant = [m.content for m in session.messages if m.role == "assistant"][-4:]
        data_sources = extract_source_urls([*recent_assistant, message])
        if not data_sources:
            installed = await self.pack_repo.list_installed()
            fallback = [s for p in installed for s in p.get("data_sources") or [] if isinstance(s, dict)]
            data_sources = fallback[:4]

        constraints = extract_recommendation_constraints(message, session.taste_hints)
        signals = derive_recommendation_signals(message, session.taste_hints)
        mode_name = session.mode or "explore"
        style = {"fresh": "spontaneous", "familiar": "predictable"}.get(signals.novelty_preference, "curated")
        instructions = "\n".join([
            "Prioritize user preference alignment and source novelty.",
            f"Preference mode: {signals.novelty_preference}.",
            f"Boredom signal seen: {'yes' if signals.boredom_signal else 'no'}.",
            f"Focus constraints: {json.dumps(constraints.model_dump())}.",
        ])

        try:
            slug = await self._unique_pack_slug(slugify(f"{mode_name} custom recommendations"))
            pack = await self.pack_repo.create_pack(
                slug=slug,
                name=f"{mode_name.upper()} Personalized Pack",
                city=constraints.locations[0] if constraints.locations else "Any",
                modes=[mode_name],
                style=style,
                budget_range=f"{constraints.budgets[0]}+" if constraints.budgets else "$0-$300",
                description=PACK_DESCRIPTION,
                instructions=instructions,
                tags=(constraints.categories + constraints.vibes)[:6],
                data_sources=data_sources,
            )
            reply = (
                f'Done — I created a new pack: "{pack["name"]}" ({pack["slug"]}). '
                f"Open /packs/{pack['slug']} to review or edit it."
            )
        except Exception as e:
            logger.error(f"Pack creation failed: {e}")
            reply = "I couldn't create the pack right now. Please try again in a moment."

        return TurnResult(
            reply=reply, model=MODEL_PACK_CREATION,
            requested_model=MODEL_PACK_CREATION, mode=decision.mode,
        )

    async def _handle_research(self, decision, intent, session, message, suggestions, resolution) -> TurnResult:
        packs = await self.pack_repo.list_installed()
        result = await self.research_loop.run(
            message,
            packs=packs,
            constraints=extract_recommendation_constraints(message, session.taste_hints),
            signals=derive_recommendation_signals(message, session.taste_hints),
            max_fetches=settings.RESEARCH_MAX_FETCHES,
        )
        return TurnResult(
            reply=result.reply, model=MODEL_RESEARCH,
            requested_model=MODEL_RESEARCH, mode=decision.mode,
        )

    async def _lookup_calendar(self, intent: IntentRecord) -> tuple[list[CalendarEvent], Optional[str], int]:
        """(ranked events, last error, last window days) over widening windows."""
        tool = self.tool_registry.get_tool(CALENDAR_TOOL)
        travel = intent.is_travel_query
        windows = CALENDAR_WINDOWS_UPCOMING if (intent.is_upcoming_query or travel) else CALENDAR_WINDOWS_DEFAULT

        last_error = None
        window_days = windows[-1]
        for window_days in windows:
            now = now_utc()
            result = await tool.execute(
                operation="list_multi",
                timeMin=now.isoformat(),
                timeMax=plus_days_iso(window_days, now),
                maxResultsPerCalendar=CALENDAR_MAX_PER_CALENDAR,
            )
            error = result.get("error") if isinstance(result, dict) else "invalid tool result"
            if error:
                last_error = str(error)
                await self.trace_repo.add_trace(
                    "chat",
                    f"calendar_intent_tool_error scope=all window_days={window_days} error={last_error[:160]}",
                )
                continue
            last_error = None
            events = parse_tool_events(result)
            if travel:
                events = [e for e in events if _has_travel_signal(e)]
            ranked = rank_calendar_events(events, travel, now)
            await self.trace_repo.add_trace(
                "chat",
                f"calendar_intent_detected scope=all window_days={window_days} matches={len(ranked)}",
            )
            if ranked:
                return ranked, None, window_days
        return [], last_error, window_days

    async def _handle_calendar_intent(self, decision, intent, session, message, suggestions, resolution) -> TurnResult:
        tool = self.tool_registry.get_tool(CALENDAR_TOOL)
        if not tool or not await self.scope_guard.has_scope(CALENDAR_INTEGRATION, "read"):
            logger.info("Calendar read scope unavailable, falling back to recommendation mode")
            fallback = decision.model_copy(update={"mode": Mode.RECOMMENDATION, "reason": "calendar_unavailable"})
            return await self._handle_recommendation(fallback, intent, session, message, suggestions, resolution)

        events, error, window_days = await self._lookup_calendar(intent)

        if events and (intent.is_explicit_suggestion_request or intent.is_discovery_query):
            anchor = events[0]
            location = f" at {anchor.location}" if anchor.location else ""
            note = (
                f"CALENDAR ANCHOR: The user's next plan is {anchor.summary} on "
                f"{describe_event(anchor, session.timezone)}{location}. Plan suggestions around it."
            )
            anchored = decision.model_copy(update={"mode": Mode.RECOMMENDATION, "reason": "calendar_anchor"})
            return await self._handle_recommendation(
                anchored, intent, session, message, suggestions, resolution, extra_system=[note],
            )

        if error:
            reply = CALENDAR_ERROR_REPLY
        elif not events:
            reply = format_empty_calendar(window_days, intent.is_travel_query)
        elif intent.is_travel_query or _NEXT_RE.search(message):
            reply = format_next_plan(events[0], session.timezone)
        else:
            reply = format_event_list(events, session.timezone)

        return TurnResult(reply=reply, model=MODEL_CALENDAR, requested_model=MODEL_CALENDAR, mode=decision.mode)

    async def _handle_recommendation(
        self, decision, intent, session, message, suggestions, resolution, extra_system=None,
    ) -> TurnResult:
        granted = await self._granted_scopes()
        tool_specs = self.tool_registry.get_function_specs(granted)
        messages = await self._build_messages(
            decision, intent, session, message, suggestions, resolution,
            tool_specs=tool_specs, granted=granted, extra_system=extra_system,
        )
        result = await self.tool_loop.run(
            messages,
            tool_specs,
            model=session.model,
            write_required=intent.is_calendar_write and not intent.is_historical_recall,
            references_prior=intent.references_prior_suggestions,
            resolution=resolution,
            suggestions_for_write=select_resolved(suggestions, resolution),
        )
        return TurnResult(
            reply=result.reply,
            model=result.response_model or session.model,
            requested_model=result.requested_model or session.model,
            response_id=result.response_id,
            mode=Mode.RECOMMENDATION,
            bypass_enrichment=intent.is_action_command or intent.is_calendar_write,
        )
