"""LLM client — OpenAI-compatible chat completions with tool calling and robust JSON extraction."""
import httpx
import json
import re
from typing import Any, Optional
from pydantic import BaseModel
from config.settings import settings
from models.action import ToolCall
import logging

logger = logging.getLogger(__name__)

# Pre-compiled regex for stripping markdown fences from LLM output
_MD_FENCE_RE = re.compile(r"```(?:json)?\s*\n?(.*?)\n?\s*```", re.DOTALL)


class LLMError(Exception):
    """Provider-level failure: missing key, non-2xx status or empty response."""
    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ModelReply(BaseModel):
    """One chat-completions response."""
    text: str = ""
    content: str = ""
    tool_calls: list[ToolCall] = []
    requested_model: str
    response_model: str
    response_id: Optional[str] = None

    def to_assistant_message(self) -> dict:
        """Assistant turn to append to the running message list."""
        message: dict[str, Any] = {"role": "assistant", "content": self.content}
        if self.tool_calls:
            message["tool_calls"] = [tc.to_message_format() for tc in self.tool_calls]
        return message


def _extract_json_object(text: str) -> str:
    """
    Robustly extract a JSON object from LLM output.

    Handles:
    - Markdown code fences (```json ... ```)
    - Leading/trailing prose around the JSON
    - Multiple JSON objects (takes the first complete one)

    Raises ValueError if no valid JSON object is found.
    """
    # 1. Try extracting from markdown fences first
    fence_match = _MD_FENCE_RE.search(text)
    if fence_match:
        candidate = fence_match.group(1).strip()
        try:
            json.loads(candidate)
            return candidate
        except json.JSONDecodeError:
            pass  # fall through to brace-matching

    # 2. Brace-matching with depth tracking
    depth = 0
    start = None
    for i, ch in enumerate(text):
        if ch == "{":
            if depth == 0:
                start = i
            depth += 1
        elif ch == "}":
            if depth == 0:
                continue
            depth -= 1
            if depth == 0 and start is not None:
                candidate = text[start : i + 1]
                try:
                    json.loads(candidate)
                    return candidate
                except json.JSONDecodeError:
                    start = None  # reset and keep scanning

    raise ValueError("No valid JSON object found in LLM response")


def parse_json_object(text: str) -> dict[str, Any]:
    """First JSON object in model output. Raises ValueError when there is none."""
    parsed = json.loads(_extract_json_object(text))
    if not isinstance(parsed, dict):
        raise ValueError("LLM response JSON is not an object")
    return parsed


def parse_tool_arguments(raw: Any) -> dict[str, Any]:
    """Decode a tool-call argument string; anything but a JSON object becomes {}."""
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str) or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


class LLMClient:
    """Wrapper for an OpenAI-compatible chat completions API."""

    def __init__(
        self,
        endpoint: Optional[str] = None,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
    ):
        self.endpoint = (endpoint or settings.LLM_ENDPOINT).rstrip("/")
        self.model = model or settings.LLM_MODEL
        self.api_key = api_key if api_key is not None else settings.LLM_API_KEY

        headers: dict[str, str] = {"X-Title": settings.LLM_APP_TITLE}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        # Default timeout: callers override per-request via timeout_s
        self.client = httpx.AsyncClient(timeout=60.0, headers=headers)

    async def chat(
        self,
        messages: list[dict],
        tools: Optional[list[dict]] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        timeout_s: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> ModelReply:
        """
        Send one chat-completions request.

        Raises LLMError on a missing key, a non-2xx status or an empty
        response, and TimeoutError when the request exceeds timeout_s.
        """
        if not self.api_key:
            raise LLMError("LLM_API_KEY is missing. Add it to .env and restart the server.")

        requested_model = model or self.model
        effective_timeout = timeout_s or settings.LLM_RESPONSE_TIMEOUT

        payload: dict[str, Any] = {
            "model": requested_model,
            "messages": messages,
            "temperature": settings.LLM_REPLY_TEMPERATURE if temperature is None else temperature,
        }
        if tools:
            payload["tools"] = tools
        if max_tokens:
            payload["max_tokens"] = max_tokens

        try:
            response = await self.client.post(
                f"{self.endpoint}/v1/chat/completions",
                json=payload,
                timeout=effective_timeout,
            )
        except httpx.TimeoutException:
            logger.error(f"LLM request timed out after {effective_timeout}s")
            raise TimeoutError(f"LLM request timed out after {effective_timeout}s")

        if response.status_code >= 400:
            raise LLMError(
                f"Model request failed ({response.status_code}): {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            result = response.json()
        except ValueError as e:
            raise LLMError(f"Model returned a non-JSON body: {e}")

        choices = result.get("choices") or [{}]
        message = choices[0].get("message") or {}
        content = message.get("content") or ""
        tool_calls = [
            ToolCall(
                action_id=raw.get("id") or "",
                tool_name=(raw.get("function") or {}).get("name") or "unknown",
                arguments=parse_tool_arguments((raw.get("function") or {}).get("arguments")),
            )
            for raw in message.get("tool_calls") or []
        ]

        if not content.strip() and not tool_calls:
            raise LLMError("Model returned an empty response.")

        return ModelReply(
            text=content.strip(),
            content=content,
            tool_calls=tool_calls,
            requested_model=requested_model,
            response_model=result.get("model") or requested_model,
            response_id=result.get("id"),
        )

    async def complete(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        model: Optional[str] = None,
        temperature: float = 0.0,
        timeout_s: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        """Single-prompt completion, used by classifiers and resolvers."""
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        reply = await self.chat(
            messages,
            model=model or settings.LLM_CLASSIFIER_MODEL,
            temperature=temperature,
            timeout_s=timeout_s,
            max_tokens=max_tokens,
        )
        return reply.text

    async def close(self):
        """Close HTTP client."""
        await self.client.aclose()
