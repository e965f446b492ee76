from __future__ import annotations

import json
from typing import Any

import httpx

from ..core.config import ModelSettings
from ..core.errors import UnsupportedCapabilityError
from ..core.logging import get_logger
from ..schemas.artifacts import OutputFormat
from ..schemas.messages import ImagePart, Message, TextPart, ToolCall, ToolFunction, coalesce_messages
from ..schemas.requests import ChatChoice, ChatRequest, ChatResult, Embedding
from ..utils.json_encoding import truncate

logger = get_logger(name=__name__)


def _part_payload(part: TextPart | ImagePart) -> dict[str, Any]:
    if isinstance(part, TextPart):
        return {"type": "text", "text": part.text}
    return {"type": "image_url", "image_url": {"url": part.image_url}}


def _message_payload(message: Message) -> dict[str, Any]:
    if isinstance(message.content, str):
        content: Any = message.content
    else:
        content = [_part_payload(part) for part in message.content]
    payload: dict[str, Any] = {"role": message.role, "content": content}
    if message.tool_calls:
        payload["tool_calls"] = [
            {
                "id": call.id,
                "type": call.type,
                "function": {
                    "name": call.function.name,
                    "arguments": call.function.arguments
                    if isinstance(call.function.arguments, str)
                    else json.dumps(call.function.arguments),
                },
            }
            for call in message.tool_calls
        ]
    if message.tool_call_id:
        payload["tool_call_id"] = message.tool_call_id
    return payload


def _choice_from_payload(payload: dict[str, Any]) -> ChatChoice:
    message = payload.get("message") or {}
    tool_calls = None
    raw_calls = message.get("tool_calls") or []
    if raw_calls:
        tool_calls = [
            ToolCall(
                id=str(call.get("id") or f"call_{index}"),
                function=ToolFunction(
                    name=str((call.get("function") or {}).get("name", "")),
                    arguments=(call.get("function") or {}).get("arguments") or "{}",
                ),
            )
            for index, call in enumerate(raw_calls)
        ]
    return ChatChoice(content=message.get("content") or "", tool_calls=tool_calls)


class OpenAICompatibleChatAPI:
    """Chat client for any server speaking the OpenAI ``/chat/completions`` dialect.

    Transport and HTTP status failures are reported through ``ChatResult.error``
    so the engine can decide what to do; only programming errors raise.
    """

    def __init__(self, settings: ModelSettings, *, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._owns_client = client is None
        headers = dict(settings.headers)
        if settings.api_key:
            headers.setdefault("Authorization", f"Bearer {settings.api_key}")
        self._client = client or httpx.AsyncClient(
            base_url=(settings.base_url or "https://api.openai.com/v1").rstrip("/"),
            timeout=httpx.Timeout(settings.timeout_seconds),
            headers=headers,
        )

    @property
    def model(self) -> str:
        return self._settings.model

    def supports(self, kind: str) -> bool:
        return kind in {"text", "image", "tools"}

    def build_payload(self, request: ChatRequest) -> dict[str, Any]:
        messages: list[dict[str, Any]] = []
        if request.system:
            messages.append({"role": "system", "content": request.system})
        messages.extend(_message_payload(message) for message in coalesce_messages(request.messages))
        payload: dict[str, Any] = {"model": self._settings.model, "messages": messages}
        temperature = request.temperature if request.temperature is not None else self._settings.temperature
        if temperature is not None:
            payload["temperature"] = temperature
        top_p = request.top_p if request.top_p is not None else self._settings.top_p
        if top_p is not None:
            payload["top_p"] = top_p
        if request.format is OutputFormat.JSON:
            payload["response_format"] = {"type": "json_object"}
        if request.tools:
            payload["tools"] = list(request.tools)
        return payload

    async def chat(self, request: ChatRequest) -> ChatResult:
        payload = self.build_payload(request)
        try:
            response = await self._client.post("/chat/completions", json=payload)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as exc:
            detail = truncate(exc.response.text, 400)
            logger.warning("model_http_error", model=self.model, status_code=exc.response.status_code, detail=detail)
            return ChatResult(error=f"HTTP {exc.response.status_code}: {detail}")
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("model_request_failed", model=self.model, error=str(exc))
            return ChatResult(error=str(exc) or type(exc).__name__)

        if not isinstance(body, dict):
            return ChatResult(error="Unexpected response body")
        if body.get("error"):
            error = body["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            return ChatResult(error=str(message))
        choices = [_choice_from_payload(choice) for choice in (body.get("choices") or [])]
        return ChatResult(choices=choices)

    async def embedding(self, text: str) -> Embedding:
        try:
            response = await self._client.post("/embeddings", json={"model": self._settings.model, "input": text})
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as exc:
            raise UnsupportedCapabilityError(f"Embedding request failed for '{self.model}': {exc}") from exc
        data = body.get("data") or []
        if not data:
            raise UnsupportedCapabilityError(f"Model '{self.model}' returned no embedding")
        return Embedding(model=self.model, vector=[float(value) for value in data[0].get("embedding", [])])

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


__all__ = ["OpenAICompatibleChatAPI"]
