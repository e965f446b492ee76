from __future__ import annotations

from dataclasses import dataclass

from ..core.errors import StrictOverwriteError
from ..core.logging import get_logger
from ..schemas.artifacts import ArtifactMetadata, OverwritePolicy
from ..schemas.requests import ChatRequest
from ..utils.json_encoding import hash_sha256, safe_json_dumps
from .store import ArtifactStore

logger = get_logger(name=__name__)


@dataclass(slots=True, frozen=True)
class StalenessDecision:
    stale: bool
    previous: ArtifactMetadata | None = None

    @property
    def previous_version(self) -> int:
        return self.previous.version if self.previous is not None else 0


def compute_input_hash(request: ChatRequest) -> str:
    """Fingerprint of everything that determines a model response.

    Tools contribute their names only; descriptor changes under an unchanged
    name do not invalidate an ``exact`` cache entry.
    """
    payload = {
        "messages": [message.model_dump(mode="json", exclude_none=True) for message in request.messages],
        "schema": request.json_schema,
        "system": request.system,
        "tools": request.tool_names(),
        "format": request.format.value,
    }
    return hash_sha256(safe_json_dumps(payload, canonical=True))


async def check_staleness(
    store: ArtifactStore,
    name: str,
    policy: OverwritePolicy,
    input_hash: str | None = None,
    freshness_timestamp: int | None = None,
) -> StalenessDecision:
    previous = await store.get_latest_metadata(name)
    if previous is None:
        return StalenessDecision(stale=True)

    policy = OverwritePolicy(policy)
    if policy is OverwritePolicy.FORCE:
        stale = True
    elif policy is OverwritePolicy.SKIP:
        stale = False
    elif policy is OverwritePolicy.FAIL:
        raise StrictOverwriteError(name)
    elif policy is OverwritePolicy.TIMESTAMP:
        stale = freshness_timestamp is not None and freshness_timestamp > previous.timestamp
    else:
        stale = previous.input_hash != input_hash

    logger.debug(
        "staleness_checked",
        name=name,
        policy=policy.value,
        stale=stale,
        stored_version=previous.version,
    )
    return StalenessDecision(stale=stale, previous=previous)


__all__ = ["StalenessDecision", "compute_input_hash", "check_staleness"]
