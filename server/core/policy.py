"""
Policy prompt composer — the system-level instruction set for reply calls.
"""
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel

from models.intent import IntentRecord
from models.message import PreferenceProfile
from utils.time_utils import get_zone, now_utc

ASSISTANT_NAME = "concierge"

MODE_HINTS = {
    "explore": "The user is in Explore mode: open-ended discovery, surface interesting options and possibilities.",
    "dating": "The user is in Date Night mode: focus on romantic plans, atmosphere, and budget-friendly options for two.",
    "family": "The user is in Family mode: prioritize family-friendly activities, logistics, and age-appropriate options.",
    "social": "The user is in Social mode: help coordinate group plans, gatherings, and shared experiences.",
    "relax": "The user is in Relax mode: suggest low-key, restorative, zero-stress activities.",
    "travel": "The user is in Travel mode: help with trip planning, itineraries, travel buffers, and check-ins.",
    "focus": "The user is in Focus mode: minimize distractions, suggest deep-work-friendly scheduling blocks.",
}

# Modes where option cards are worth rendering
VISUAL_MODES = {"explore", "dating", "family", "social", "relax", "travel"}

PERSONA = """You are a personal concierge with the instincts of a travel agent, an event specialist and a local insider.
Talk like a smart, well-connected friend: warm, concise, natural. Use short paragraphs.
When someone says hi or chats casually, match their energy instead of jumping into planning.
Never repeat exact phrasing from your previous messages."""

OPTION_CARD_CONTRACT = """When your reply includes 2-5 concrete suggestions (venues, activities, hotels, destinations), respond ONLY with a JSON object, no prose outside it:
{
  "text": "<conversational reply, 1-3 short sentences>",
  "options": [
    {
      "title": "<place or item name>",
      "subtitle": "<one-sentence pitch>",
      "category": "<hotel|restaurant|park|activity|destination|experience>",
      "meta": {"price": "$120/night", "rating": "4.7", "neighborhood": "Midtown"},
      "actionUrl": "<real booking or info URL if known, otherwise omit>",
      "sourceName": "<data source label or omit>"
    }
  ]
}
Include 2-4 concise meta chips per option. If the reply has no concrete suggestions, answer in plain text, NOT JSON."""


class PromptPolicyContext(BaseModel):
    """Everything the composer needs; built fresh per turn."""
    intent: IntentRecord
    mode: Optional[str] = None
    enabled_integrations: dict[str, list[str]] = {}
    tool_names: list[str] = []
    installed_pack_names: list[str] = []
    taste_hints: list[str] = []
    known_name: Optional[str] = None
    known_city: Optional[str] = None
    known_home_area: Optional[str] = None
    best_effort: bool = False
    has_thread_suggestions: bool = False


def is_informational_turn(intent: IntentRecord) -> bool:
    """Turns answered as plain text with no option cards."""
    return (
        intent.is_location_info_query
        or intent.is_capability_query
        or intent.is_historical_recall
        or intent.is_meta_conversation_query
        or intent.is_light_turn
    )


def suggestions_eligible(intent: IntentRecord, mode: Optional[str]) -> bool:
    """Option cards only for discovery turns in a visual mode."""
    if intent.is_action_command or intent.is_calendar_write or is_informational_turn(intent):
        return False
    return (mode or "explore") in VISUAL_MODES


def _persona_section(ctx: PromptPolicyContext) -> str:
    hint = MODE_HINTS.get(ctx.mode or "")
    return f"{PERSONA}\n{hint}" if hint else PERSONA


def _tool_section(ctx: PromptPolicyContext) -> str:
    lines = ["TOOL CAPABILITY POLICY:"]
    if ctx.enabled_integrations:
        for provider, scopes in sorted(ctx.enabled_integrations.items()):
            lines.append(f"- {provider}: {', '.join(scopes) if scopes else 'no scopes granted'}")
    else:
        lines.append("- No integrations are connected. Do not claim to read or change external accounts.")
    if ctx.tool_names:
        lines.append(f"Available tools: {', '.join(ctx.tool_names)}.")
    lines.extend([
        "- When the user asks about schedule, meetings or free time, call google_calendar_events before answering.",
        "- To move, update or delete an event, call google_calendar_events with operation 'find' first and use the returned eventId and calendarId.",
        "- Never claim a booking or calendar change happened unless a tool result confirms it.",
        "- If a tool result contains requiresUserConfirmation, ask the provided prompt and stop writing.",
    ])
    return "\n".join(lines)


def _memory_section(ctx: PromptPolicyContext) -> str:
    lines = ["MEMORY POLICY:"]
    known = [
        f"name {ctx.known_name}" if ctx.known_name else None,
        f"city {ctx.known_city}" if ctx.known_city else None,
        f"home area {ctx.known_home_area}" if ctx.known_home_area else None,
    ]
    known = [k for k in known if k]
    if known:
        lines.append(f"- Known profile: {'; '.join(known)}. Use these instead of asking again.")
    if ctx.taste_hints:
        lines.append(f"- User taste hints: {', '.join(ctx.taste_hints)}.")
    else:
        lines.append("- No explicit taste hints yet.")
    lines.append("- When the user reveals a fact in passing, acknowledge it naturally and use it.")
    return "\n".join(lines)


def _conversation_section(ctx: PromptPolicyContext) -> str:
    lines = [
        "CONVERSATION POLICY:",
        "- Follow the user's instructions exactly. When they name a specific place, use that exact place.",
        "- 'These', 'this one' and 'option 2' refer to items you already showed. Never invent alternatives.",
        "- Ask at most one preference question per reply, and lead with value before asking.",
    ]
    if ctx.best_effort:
        lines.append(
            "- You already asked a clarifying question recently. Do NOT ask another one; "
            "give your best-effort answer with the information you have."
        )
    if ctx.intent.is_action_command:
        lines.append("- This is a direct action command. Execute it and confirm in 1-2 sentences.")
    return "\n".join(lines)


def _output_section(ctx: PromptPolicyContext) -> str:
    if suggestions_eligible(ctx.intent, ctx.mode):
        return f"OUTPUT FORMAT POLICY:\n{OPTION_CARD_CONTRACT}"
    return (
        "OUTPUT FORMAT POLICY:\n"
        "Answer in plain conversational text. Do NOT output JSON, option cards or numbered suggestion lists."
    )


def compose_policy_sections(ctx: PromptPolicyContext) -> list[str]:
    """Persona, tool, memory, conversation and output policies, in that order."""
    return [
        _persona_section(ctx),
        _tool_section(ctx),
        _memory_section(ctx),
        _conversation_section(ctx),
        _output_section(ctx),
    ]


def build_temporal_context(timezone: Optional[str] = None, now: Optional[datetime] = None) -> str:
    """Current local date/time plus the dates of the coming weekend."""
    local = (now or now_utc()).astimezone(get_zone(timezone))
    hour = local.hour % 12 or 12
    formatted = (
        f"{local:%A, %B} {local.day}, {local.year} at {hour}:{local:%M} {local:%p} {local.tzname()}"
    )

    weekday = local.weekday()  # Monday == 0
    if weekday == 5:
        weekend = "Today is Saturday."
    elif weekday == 6:
        weekend = "Today is Sunday."
    else:
        saturday = local + timedelta(days=5 - weekday)
        sunday = saturday + timedelta(days=1)
        weekend = (
            f"This coming weekend is Saturday {saturday:%b} {saturday.day} - "
            f"Sunday {sunday:%b} {sunday.day}."
        )
    return f"Current date and time: {formatted}. Today is {local:%A}. {weekend}"


def format_preference_awareness(profile: PreferenceProfile) -> str:
    lines = ["PREFERENCE AWARENESS:"]

    if profile.is_new_user:
        lines.append(
            "This user is relatively new. Be warm, offer value immediately, and weave in "
            "natural discovery questions to learn about them."
        )

    if profile.known:
        lines.append("\nWhat you already know about this user:")
        lines.extend(f"  • {label}: {value}" for label, value in profile.known.items())

    if profile.unknown:
        lines.append("\nPreference gaps (look for natural moments to learn):")
        lines.extend(f"  • {gap}" for gap in profile.unknown)
        lines.append("Only ask about gaps relevant to the current conversation.")

    return "\n".join(lines)


def build_pack_context(packs: list[dict]) -> Optional[str]:
    """Installed pack expertise, or None when no pack carries instructions or sources."""
    sections = []
    for pack in packs:
        if not pack.get("instructions") and not pack.get("data_sources"):
            continue
        section = f"[{pack.get('name')}]"
        if pack.get("instructions"):
            section += f"\n{pack['instructions']}"
        sources = [s for s in pack.get("data_sources") or [] if isinstance(s, dict) and s.get("url")]
        if sources:
            listed = "\n".join(f"  - {s.get('label') or s['url']}: {s['url']}" for s in sources)
            section += f"\nData sources:\n{listed}"
        sections.append(section)
    if not sections:
        return None
    return "Installed pack expertise (use this knowledge when relevant):\n\n" + "\n\n".join(sections)
