"""OpenRouter chat collaborator used by the reflection agents."""
from __future__ import annotations

import json
import time
from typing import Any

from research_reflection.config import settings
from research_reflection.models.interfaces import ChatResponse
from research_reflection.services import logger as log_service


class OpenRouterChatClient:
    """`ChatClient` over the OpenAI-compatible OpenRouter API.

    Failures are logged and re-raised; retrying is left to the caller.
    """

    def __init__(
        self,
        openai_client: Any,
        *,
        model: str | None = None,
        caller: str = "reflection",
        max_tokens: int | None = None,
    ):
        self._client = openai_client
        self.model = model or get_model()
        self.caller = caller
        self.max_tokens = max_tokens or settings.llm_max_tokens

    @staticmethod
    def _temperature_for_model(model: str) -> int:
        # Some OpenAI GPT-5-compatible gateways reject temperature=0.
        lowered = (model or "").lower()
        if "gpt-5" in lowered:
            return 1
        return 0

    @staticmethod
    def _to_openai_tools(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": t["name"],
                    "description": t.get("description", ""),
                    "parameters": t.get("input_schema", {"type": "object", "properties": {}}),
                },
            }
            for t in tools
        ]

    @staticmethod
    def _from_openai_response(response: Any) -> ChatResponse:
        choice = response.choices[0].message
        text = getattr(choice, "content", None) or ""

        # Tool calls carry no text; surface their arguments so callers still see them.
        tool_calls = getattr(choice, "tool_calls", None) or []
        if not text and tool_calls:
            text = json.dumps(
                [
                    {"name": tc.function.name, "arguments": tc.function.arguments}
                    for tc in tool_calls
                ]
            )

        usage = getattr(response, "usage", None)
        return ChatResponse(
            content=text,
            prompt_tokens=getattr(usage, "prompt_tokens", None) if usage else None,
            completion_tokens=getattr(usage, "completion_tokens", None) if usage else None,
        )

    async def chat(
        self,
        messages: list[dict[str, str]],
        tools: list[dict[str, Any]] | None = None,
    ) -> ChatResponse:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": m["role"], "content": str(m["content"])} for m in messages],
            "max_tokens": self.max_tokens,
            "temperature": self._temperature_for_model(self.model),
        }
        if tools:
            kwargs["tools"] = self._to_openai_tools(tools)
            kwargs["tool_choice"] = "auto"

        t0 = time.monotonic()
        try:
            response = await self._client.chat.completions.create(**kwargs)
        except Exception as exc:
            log_service.log_llm_call(
                model=self.model,
                caller=self.caller,
                duration_ms=int((time.monotonic() - t0) * 1000),
                status="error",
                error=str(exc),
            )
            raise

        mapped = self._from_openai_response(response)
        log_service.log_llm_call(
            model=self.model,
            caller=self.caller,
            input_tokens=mapped.prompt_tokens or 0,
            output_tokens=mapped.completion_tokens or 0,
            duration_ms=int((time.monotonic() - t0) * 1000),
        )
        return mapped


def get_openai_client() -> Any:
    """Create the OpenAI-compatible SDK client pointed at OpenRouter."""
    from openai import AsyncOpenAI

    base_url = settings.openrouter_base_url.strip() or "https://openrouter.ai/api/v1"
    return AsyncOpenAI(
        api_key=settings.openrouter_api_key,
        base_url=base_url,
    )


def get_model(override: str = "") -> str:
    """Get the active OpenRouter model id, honouring a per-component override."""
    if override and override.strip():
        return override.strip()
    if settings.openrouter_model:
        return settings.openrouter_model
    return settings.default_model


_openai_client: Any | None = None


def client(*, model: str | None = None, caller: str = "reflection") -> OpenRouterChatClient:
    """Get a chat client sharing one underlying SDK connection pool."""
    global _openai_client
    if _openai_client is None:
        _openai_client = get_openai_client()
    return OpenRouterChatClient(_openai_client, model=model, caller=caller)
