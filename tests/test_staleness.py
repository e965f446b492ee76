from __future__ import annotations

import pytest

from forgeloop.artifacts.staleness import check_staleness, compute_input_hash
from forgeloop.artifacts.store import MemoryArtifactStore
from forgeloop.core.errors import StrictOverwriteError
from forgeloop.schemas.artifacts import Artifact, ArtifactMetadata, OutputFormat, OverwritePolicy
from forgeloop.schemas.messages import Message
from forgeloop.schemas.requests import ChatRequest


def _request(prompt: str = "hello", **kwargs) -> ChatRequest:
    return ChatRequest(model="stub", messages=[Message.user(prompt)], **kwargs)


async def _store_with(name: str, *, input_hash: str | None = None) -> tuple[MemoryArtifactStore, ArtifactMetadata]:
    store = MemoryArtifactStore()
    saved = await store.save_artifact(
        Artifact(metadata=ArtifactMetadata(name=name, input_hash=input_hash), content="cached")
    )
    return store, saved.metadata


def test_input_hash_is_deterministic_and_sensitive_to_inputs() -> None:
    base = compute_input_hash(_request())

    assert compute_input_hash(_request()) == base
    assert compute_input_hash(_request("other")) != base
    assert compute_input_hash(_request(system="be brief")) != base
    assert compute_input_hash(_request(format=OutputFormat.JSON)) != base
    assert compute_input_hash(_request(json_schema={"type": "object"})) != base
    assert compute_input_hash(_request(tools=[{"type": "function", "function": {"name": "echo"}}])) != base


def test_input_hash_compares_tools_by_name_only() -> None:
    first = _request(tools=[{"type": "function", "function": {"name": "echo", "description": "v1"}}])
    second = _request(tools=[{"type": "function", "function": {"name": "echo", "description": "v2"}}])

    assert compute_input_hash(first) == compute_input_hash(second)


@pytest.mark.asyncio
@pytest.mark.parametrize("policy", list(OverwritePolicy))
async def test_missing_artifact_is_always_stale(policy: OverwritePolicy) -> None:
    decision = await check_staleness(MemoryArtifactStore(), "absent.txt", policy, "hash")

    assert decision.stale is True
    assert decision.previous is None
    assert decision.previous_version == 0


@pytest.mark.asyncio
async def test_force_is_stale_and_keeps_lineage() -> None:
    store, metadata = await _store_with("out.txt")

    decision = await check_staleness(store, "out.txt", OverwritePolicy.FORCE, "hash")

    assert decision.stale is True
    assert decision.previous_version == metadata.version == 1


@pytest.mark.asyncio
async def test_skip_is_never_stale() -> None:
    store, _ = await _store_with("out.txt", input_hash="old")

    decision = await check_staleness(store, "out.txt", OverwritePolicy.SKIP, "new", freshness_timestamp=10**15)

    assert decision.stale is False


@pytest.mark.asyncio
async def test_fail_raises_when_artifact_exists() -> None:
    store, _ = await _store_with("out.txt")

    with pytest.raises(StrictOverwriteError):
        await check_staleness(store, "out.txt", OverwritePolicy.FAIL, "hash")


@pytest.mark.asyncio
async def test_timestamp_policy_needs_a_newer_freshness_timestamp() -> None:
    store, metadata = await _store_with("out.txt", input_hash="old")

    assert (await check_staleness(store, "out.txt", OverwritePolicy.TIMESTAMP, "different")).stale is False
    older = await check_staleness(store, "out.txt", OverwritePolicy.TIMESTAMP, "x", metadata.timestamp)
    newer = await check_staleness(store, "out.txt", OverwritePolicy.TIMESTAMP, "x", metadata.timestamp + 1)

    assert older.stale is False
    assert newer.stale is True


@pytest.mark.asyncio
async def test_exact_policy_compares_input_hash() -> None:
    store, _ = await _store_with("out.txt", input_hash="same")

    assert (await check_staleness(store, "out.txt", OverwritePolicy.EXACT, "same")).stale is False
    assert (await check_staleness(store, "out.txt", OverwritePolicy.EXACT, "changed")).stale is True
