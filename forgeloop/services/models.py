from __future__ import annotations

import inspect
from typing import Any, Callable, Protocol, Sequence, runtime_checkable

from ..core.config import ModelSettings, Settings, get_settings
from ..core.errors import ModelCallError, UnsupportedCapabilityError
from ..core.logging import get_logger
from ..schemas.requests import ChatRequest, ChatResult, Embedding, TranscribeRequest, TTSRequest
from .openai_client import OpenAICompatibleChatAPI

logger = get_logger(name=__name__)

ModelFactory = Callable[[ModelSettings], "ModelAPI"]


@runtime_checkable
class ModelAPI(Protocol):
    """Capability interface every chat backend implements.

    ``embedding``, ``tts`` and ``transcribe`` are optional; callers check with
    ``hasattr`` before using them.
    """

    def supports(self, kind: str) -> bool: ...

    async def chat(self, request: ChatRequest) -> ChatResult: ...


class ModelRegistry:
    """Maps a configuration ``type`` tag to a client constructor."""

    def __init__(self) -> None:
        self._factories: dict[str, ModelFactory] = {}

    def register(self, tag: str, factory: ModelFactory) -> None:
        self._factories[tag.strip().lower()] = factory

    def tags(self) -> list[str]:
        return sorted(self._factories)

    def create(self, settings: ModelSettings) -> ModelAPI:
        factory = self._factories.get(settings.type.strip().lower())
        if factory is None:
            raise UnsupportedCapabilityError(f"Unknown model type '{settings.type}'")
        return factory(settings)


def default_registry() -> ModelRegistry:
    registry = ModelRegistry()
    registry.register("openai", OpenAICompatibleChatAPI)
    registry.register("ollama", OpenAICompatibleChatAPI)
    return registry


async def _close(api: Any) -> None:
    closer = getattr(api, "aclose", None)
    if closer is None:
        return
    result = closer()
    if inspect.isawaitable(result):
        await result


class ModelClientContext:
    """Explicit configuration-to-client cache, owned by whoever runs the workflow."""

    def __init__(self, settings: Settings | None = None, registry: ModelRegistry | None = None) -> None:
        self.settings = settings or get_settings()
        self.registry = registry or default_registry()
        self._clients: dict[str, ModelAPI] = {}

    def register_client(self, name: str, api: ModelAPI) -> None:
        self._clients[name] = api

    def get(self, name: str | None = None) -> ModelAPI:
        if name is not None and name in self._clients:
            return self._clients[name]
        if name is None and self.settings.default_model in self._clients:
            return self._clients[self.settings.default_model]
        resolved, model_settings = self.settings.resolve_model(name)
        api = self._clients.get(resolved)
        if api is None:
            api = self.registry.create(model_settings)
            self._clients[resolved] = api
            logger.info("model_client_created", name=resolved, type=model_settings.type, model=model_settings.model)
        return api

    async def aclose(self) -> None:
        clients = list({id(api): api for api in self._clients.values()}.values())
        self._clients.clear()
        for api in clients:
            await _close(api)

    async def __aenter__(self) -> "ModelClientContext":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


class FailoverModelAPI:
    """Try each API in turn; the next one takes over after an exception or empty result."""

    def __init__(self, apis: Sequence[ModelAPI]) -> None:
        if not apis:
            raise ValueError("FailoverModelAPI needs at least one API")
        self._apis = list(apis)
        self._index = 0

    def supports(self, kind: str) -> bool:
        return all(api.supports(kind) for api in self._apis)

    async def _attempt(self, method: str, *args: Any) -> Any:
        errors: list[str] = []
        for _ in range(len(self._apis)):
            api = self._apis[self._index]
            fn = getattr(api, method, None)
            if fn is None:
                errors.append(f"{type(api).__name__}: no {method}")
            else:
                try:
                    result = await fn(*args)
                except Exception as exc:
                    errors.append(f"{type(api).__name__}: {exc}")
                    logger.warning("model_failover", method=method, api=type(api).__name__, error=str(exc))
                else:
                    if result and not getattr(result, "error", None) and getattr(result, "choices", None) != []:
                        return result
                    detail = getattr(result, "error", None) or "empty result"
                    errors.append(f"{type(api).__name__}: {detail}")
                    logger.warning("model_failover", method=method, api=type(api).__name__, error=detail)
            self._index = (self._index + 1) % len(self._apis)
        raise ModelCallError(f"All models failed for {method}: " + "; ".join(errors))

    async def chat(self, request: ChatRequest) -> ChatResult:
        return await self._attempt("chat", request)

    async def embedding(self, text: str) -> Embedding:
        for api in self._apis:
            if hasattr(api, "embedding"):
                return await api.embedding(text)
        raise UnsupportedCapabilityError("No model in the failover group provides embeddings")

    async def tts(self, request: TTSRequest) -> bytes:
        return await self._attempt("tts", request)

    async def transcribe(self, request: TranscribeRequest) -> str:
        return await self._attempt("transcribe", request)

    async def aclose(self) -> None:
        for api in self._apis:
            await _close(api)


__all__ = [
    "ModelAPI",
    "ModelRegistry",
    "default_registry",
    "ModelClientContext",
    "FailoverModelAPI",
]
