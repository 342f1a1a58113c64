"""
LLM Client — a ready-made model call for the decision core.

The engines only depend on `async llm_generate(ModelRequest) -> ModelResponse`.
LLMClient implements that contract on top of Anthropic or OpenAI, chosen by
settings.llm.provider. Provider SDKs are imported lazily, so neither is
needed unless this client is used.
"""
from __future__ import annotations

import json
from typing import Any, Optional

import structlog

from config.settings import LLMConfig, get_settings
from models.schemas import HistoryEvent, MessageRole, ModelRequest, ModelResponse
from utils.cancellation import raise_if_cancelled

logger = structlog.get_logger()


def parse_json_object(text: str) -> Optional[dict[str, Any]]:
    """Parse a JSON object from model text, tolerating a ``` fence around it."""
    text = (text or "").strip()
    if not text:
        return None
    if text.startswith("```"):
        text = text.split("```")[1].strip()
        if text.startswith("json"):
            text = text[4:].strip()
    try:
        parsed = json.loads(text)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


class LLMClient:
    """
    Calls Claude or OpenAI with the rendered prompt as the system message
    and the conversation history as chat messages.
    """

    def __init__(self, config: LLMConfig = None):
        self._config = config or get_settings().llm
        self._client = None

    @property
    def is_openai(self) -> bool:
        return self._config.provider == "openai"

    async def _get_client(self):
        if self._client is None:
            if self.is_openai:
                from openai import AsyncOpenAI
                self._client = AsyncOpenAI(api_key=self._config.api_key)
            else:
                import anthropic
                self._client = anthropic.AsyncAnthropic(api_key=self._config.api_key)
            logger.info("llm_client_initialized", provider=self._config.provider, model=self._config.model)
        return self._client

    async def __call__(self, request: ModelRequest) -> ModelResponse:
        return await self.generate(request)

    async def generate(self, request: ModelRequest) -> ModelResponse:
        raise_if_cancelled(request.signal, "model call")
        system = request.prompt
        if request.json_schema is not None:
            system += (
                "\n\nRespond with a single JSON object that matches this schema"
                f" ({request.schema_name or 'output'}):\n"
                f"{json.dumps(request.json_schema)}\nReturn ONLY valid JSON, no other text."
            )

        text = await self._call_llm(system, self._build_messages(request.history), request.parameters)
        structured = parse_json_object(text) if request.json_schema is not None else None
        if request.json_schema is not None and structured is None:
            logger.warning("llm_structured_output_unparsed", schema=request.schema_name)
        return ModelResponse(
            message=text,
            structured=structured,
            metadata={"provider": self._config.provider, "model": self._config.model},
        )

    async def _call_llm(self, system: str, messages: list[dict[str, str]], parameters: dict[str, Any]) -> str:
        """Unified call that handles both Anthropic and OpenAI APIs."""
        client = await self._get_client()
        max_tokens = parameters.get("max_tokens", self._config.max_tokens)
        temperature = parameters.get("temperature", self._config.temperature)

        if self.is_openai:
            # OpenAI: system prompt is a message in the messages list
            response = await client.chat.completions.create(
                model=self._config.model,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=[{"role": "system", "content": system}] + messages,
            )
            return response.choices[0].message.content or ""

        # Anthropic: system prompt is a separate parameter
        response = await client.messages.create(
            model=self._config.model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system,
            messages=messages,
        )
        return response.content[0].text

    @staticmethod
    def _build_messages(history: list[HistoryEvent]) -> list[dict[str, str]]:
        messages = []
        for event in history:
            if event.role not in (MessageRole.USER, MessageRole.ASSISTANT) or not event.content:
                continue
            role = event.role.value
            # Consecutive turns from the same side are merged
            if messages and messages[-1]["role"] == role:
                messages[-1]["content"] += f"\n{event.content}"
            else:
                messages.append({"role": role, "content": event.content})
        if not messages or messages[0]["role"] != "user":
            messages.insert(0, {"role": "user", "content": "(conversation start)"})
        return messages
