from __future__ import annotations

import pytest

from forgeloop.core.config import ModelSettings
from forgeloop.core.errors import ModelCallError, ModelNotFoundError, UnsupportedCapabilityError
from forgeloop.schemas.messages import Message
from forgeloop.schemas.requests import ChatRequest, ChatResult
from forgeloop.services.models import FailoverModelAPI, ModelClientContext, ModelRegistry, default_registry
from forgeloop.services.openai_client import OpenAICompatibleChatAPI
from tests.helpers.stubs import EmbeddingModelAPI, ScriptedModelAPI, stub_settings


def _request() -> ChatRequest:
    return ChatRequest(model="default", messages=[Message.user("hi")])


def test_default_registry_knows_openai_compatible_backends():
    registry = default_registry()

    assert registry.tags() == ["ollama", "openai"]
    api = registry.create(ModelSettings(type="Ollama", model="llama3.2"))
    assert isinstance(api, OpenAICompatibleChatAPI)
    with pytest.raises(UnsupportedCapabilityError):
        registry.create(ModelSettings(type="carrier-pigeon", model="coo"))


@pytest.mark.asyncio
async def test_client_context_follows_aliases_and_caches_clients():
    created: list[str] = []

    def factory(settings: ModelSettings) -> ScriptedModelAPI:
        created.append(settings.model)
        return ScriptedModelAPI()

    registry = ModelRegistry()
    registry.register("openai", factory)

    async with ModelClientContext(stub_settings(), registry) as clients:
        default = clients.get()
        assert clients.get("fast") is default
        assert clients.get("default") is default
        assert created == ["stub-model"]
        with pytest.raises(ModelNotFoundError):
            clients.get("missing")

    assert default.closed is True


def test_alias_cycle_is_reported():
    settings = stub_settings(models={"default": "loop", "loop": "default"})

    with pytest.raises(ModelNotFoundError):
        ModelClientContext(settings).get()


def test_injected_clients_win_over_configuration():
    api = ScriptedModelAPI()
    clients = ModelClientContext(stub_settings())
    clients.register_client("default", api)

    assert clients.get() is api
    assert clients.get("default") is api


@pytest.mark.asyncio
async def test_failover_moves_to_next_api_on_failure():
    broken = ScriptedModelAPI([RuntimeError("down")])
    empty = ScriptedModelAPI([ChatResult(choices=[])])
    healthy = ScriptedModelAPI(["ok", "again"])
    failover = FailoverModelAPI([broken, empty, healthy])

    first = await failover.chat(_request())
    second = await failover.chat(_request())

    assert first.choices[0].content == "ok"
    assert second.choices[0].content == "again"
    assert (broken.calls, empty.calls, healthy.calls) == (1, 1, 2)


@pytest.mark.asyncio
async def test_failover_raises_when_every_api_fails():
    failover = FailoverModelAPI(
        [ScriptedModelAPI([ChatResult(error="HTTP 500: boom")]), ScriptedModelAPI([RuntimeError("down")])]
    )

    with pytest.raises(ModelCallError) as excinfo:
        await failover.chat(_request())

    assert "boom" in str(excinfo.value)
    assert "down" in str(excinfo.value)


@pytest.mark.asyncio
async def test_failover_capabilities_and_embeddings():
    text_only = ScriptedModelAPI(capabilities=("text",))
    embedder = EmbeddingModelAPI()
    failover = FailoverModelAPI([text_only, embedder])

    assert failover.supports("text")
    assert not failover.supports("image")
    assert (await failover.embedding("four")).vector == [4.0, 1.0]
    with pytest.raises(ValueError):
        FailoverModelAPI([])
