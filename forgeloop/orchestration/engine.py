from __future__ import annotations

import asyncio
import json
import time
import warnings
from dataclasses import dataclass, field
from typing import Any, Mapping

from pydantic import TypeAdapter, ValidationError

from ..artifacts.staleness import check_staleness, compute_input_hash
from ..artifacts.store import ArtifactStore
from ..context.sizing import BYTES_PER_TOKEN
from ..context.tree import ContextNode
from ..core import metrics
from ..core.errors import ModelCallError, StatefulToolCacheWarning, ToolExecutionError
from ..core.logging import get_logger
from ..schemas.artifacts import Artifact, ArtifactMetadata, OutputFormat
from ..schemas.messages import Message, ToolCall
from ..schemas.requests import ChatRequest, ChatResult, EngineError, ErrorKind, ExecutionRequest
from ..services.models import ModelClientContext
from ..tools.base import Tool
from ..tools.exceptions import ToolError
from ..tools.registry import ToolRegistry
from ..utils.json_encoding import safe_json_dumps, strip_code_fences, truncate

logger = get_logger(name=__name__)


def schema_adapter(schema: Any) -> TypeAdapter[Any] | None:
    """TypeAdapter for a Python type schema; plain JSON-schema dicts are not validated locally."""
    if schema is None or isinstance(schema, Mapping):
        return None
    return TypeAdapter(schema)


def json_schema_of(schema: Any) -> dict[str, Any] | None:
    if schema is None:
        return None
    if isinstance(schema, Mapping):
        return dict(schema)
    return TypeAdapter(schema).json_schema()


@dataclass(slots=True, frozen=True)
class ToolCallResult:
    tool_call: ToolCall
    result: Any
    error: EngineError | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass(slots=True)
class EngineResult:
    artifact: Artifact
    context: ContextNode
    pre_context: ContextNode
    errors: list[EngineError] = field(default_factory=list)
    tool_call_results: list[ToolCallResult] = field(default_factory=list)
    cached: bool = False

    @property
    def output(self) -> Any:
        return self.artifact.content

    @property
    def tool_results(self) -> dict[str, Any] | None:
        content = self.artifact.content
        if isinstance(content, dict) and isinstance(content.get("tool_results"), dict):
            return content["tool_results"]
        return None

    @property
    def ok(self) -> bool:
        return not self.errors


class ExecutionEngine:
    """Turns one request into one stored artifact plus a new context branch.

    The engine makes at most one model call per :meth:`run`. Cache decisions
    are delegated to :func:`check_staleness`; recoverable problems (tool
    failures, unparsable or invalid output) are returned as ``EngineError``
    values for the caller's retry policy.
    """

    def __init__(self, store: ArtifactStore, clients: ModelClientContext) -> None:
        self.store = store
        self.clients = clients

    def build_chat_request(self, pre: ContextNode, request: ExecutionRequest) -> ChatRequest:
        return ChatRequest(
            model=request.model or self.clients.settings.default_model,
            messages=pre.all_messages(),
            system=request.system,
            format=request.format,
            json_schema=json_schema_of(request.schema),
            tools=[tool.tool_schema() for tool in request.tools],
        )

    async def run(self, context: ContextNode, request: ExecutionRequest) -> EngineResult:
        pre = context.new_branch(request.messages)
        chat_request = self.build_chat_request(pre, request)
        input_hash = compute_input_hash(chat_request)
        policy = request.overwrite.value

        decision = await check_staleness(
            self.store,
            request.output_name,
            request.overwrite,
            input_hash,
            request.timestamp,
        )
        if not decision.stale:
            return await self._from_cache(pre, request)

        api = self.clients.get(request.model)
        logger.info(
            "engine_model_call",
            model=chat_request.model,
            output=request.output_name,
            messages=len(chat_request.messages),
            tools=len(chat_request.tools),
        )
        start = time.perf_counter()
        try:
            result = await api.chat(chat_request)
        except Exception as exc:
            metrics.record_engine_run(outcome="model_error", policy=policy)
            if isinstance(exc, ModelCallError):
                raise
            raise ModelCallError(f"Model call failed: {exc}") from exc
        finally:
            metrics.observe_model_call(model=chat_request.model, latency=time.perf_counter() - start)
        if result.error:
            metrics.record_engine_run(outcome="model_error", policy=policy)
            raise ModelCallError(result.error)
        if not result.choices:
            metrics.record_engine_run(outcome="model_error", policy=policy)
            raise ModelCallError("Model returned no choices")

        choice = result.choices[0]
        errors: list[EngineError] = []
        tool_call_results: list[ToolCallResult] = []
        if choice.tool_calls:
            tool_call_results = await self._resolve_tool_calls(choice.tool_calls, request.tools)
            tool_results = {item.tool_call.id: item.result for item in tool_call_results}
            errors.extend(item.error for item in tool_call_results if item.error is not None)
            output: Any = {"tool_results": tool_results}
            content_type = "json"
            messages = [
                Message.assistant(
                    safe_json_dumps({"content": choice.content, "tool_calls": choice.tool_calls}),
                    tool_calls=choice.tool_calls,
                )
            ]
            messages.extend(
                Message.tool(safe_json_dumps({"tool_result": tool_result}), tool_call_id=call_id)
                for call_id, tool_result in tool_results.items()
            )
            post = pre.new_branch(messages)
        else:
            post = pre.new_branch([Message.assistant(choice.content)])
            output, content_type, parse_errors = self._parse_output(choice.content, request)
            errors.extend(parse_errors)

        artifact = await self._persist(request, output, content_type, input_hash, result, decision.previous_version)
        metrics.record_engine_run(outcome="computed", policy=policy)
        if errors:
            logger.info(
                "engine_recoverable_errors",
                output=request.output_name,
                kinds=sorted({error.kind.value for error in errors}),
                count=len(errors),
            )
        return EngineResult(
            artifact=artifact,
            context=post,
            pre_context=pre,
            errors=errors,
            tool_call_results=tool_call_results,
        )

    async def _from_cache(self, pre: ContextNode, request: ExecutionRequest) -> EngineResult:
        artifact = await self.store.get_latest_artifact(request.output_name)
        stateful = sorted(tool.name for tool in request.tools if tool.stateful)
        if stateful:
            warnings.warn(
                f"Reusing cached '{request.output_name}' although stateful tools {stateful} were requested "
                f"(overwrite policy '{request.overwrite.value}')",
                StatefulToolCacheWarning,
                stacklevel=3,
            )
            logger.warning("engine_cache_hit_stateful_tools", output=request.output_name, tools=stateful)
        content = artifact.content if isinstance(artifact.content, str) else safe_json_dumps(artifact.content)
        post = pre.new_branch([Message.assistant(content)])
        metrics.record_engine_run(outcome="cache_hit", policy=request.overwrite.value)
        logger.info(
            "engine_cache_hit",
            output=request.output_name,
            policy=request.overwrite.value,
            version=artifact.metadata.version,
        )
        return EngineResult(artifact=artifact, context=post, pre_context=pre, cached=True)

    async def _resolve_tool_calls(self, calls: list[ToolCall], tools: Any) -> list[ToolCallResult]:
        registry = ToolRegistry(tools)
        return list(await asyncio.gather(*(self._invoke_tool(registry, call) for call in calls)))

    async def _invoke_tool(self, registry: ToolRegistry, call: ToolCall) -> ToolCallResult:
        name = call.function.name
        try:
            tool: Tool = registry.resolve(name)
            result = await tool.invoke(call.function.arguments)
        except ToolError as exc:
            failure = ToolExecutionError(str(exc), tool=name, tool_call_id=call.id)
        except Exception as exc:
            failure = ToolExecutionError(f"Tool '{name}' failed: {exc}", tool=name, tool_call_id=call.id)
        else:
            return ToolCallResult(tool_call=call, result=result)
        logger.warning("engine_tool_failed", tool=name, tool_call_id=call.id, error=truncate(str(failure), 200))
        return ToolCallResult(
            tool_call=call,
            result=failure.as_result(),
            error=EngineError(ErrorKind.TOOL, str(failure), tool_call_id=call.id, detail=failure),
        )

    def _parse_output(self, text: str, request: ExecutionRequest) -> tuple[Any, str, list[EngineError]]:
        if request.format is not OutputFormat.JSON:
            return text, "text", []
        try:
            value = json.loads(strip_code_fences(text))
        except json.JSONDecodeError as exc:
            return text, "text", [EngineError(ErrorKind.PARSE, f"Invalid JSON output: {exc}", detail=exc)]
        adapter = schema_adapter(request.schema)
        if adapter is not None:
            try:
                adapter.validate_python(value)
            except ValidationError as exc:
                return value, "json", [EngineError(ErrorKind.VALIDATION, str(exc), detail=exc)]
        return value, "json", []

    async def _persist(
        self,
        request: ExecutionRequest,
        output: Any,
        content_type: str,
        input_hash: str,
        result: ChatResult,
        previous_version: int,
    ) -> Artifact:
        serialized = output if isinstance(output, str) else safe_json_dumps(output)
        size_bytes = len(serialized.encode("utf-8"))
        artifact = Artifact(
            metadata=ArtifactMetadata(
                name=request.output_name,
                version=previous_version,
                content_type=content_type,
                size_bytes=size_bytes,
                size_tokens=-(-size_bytes // BYTES_PER_TOKEN),
                input_hash=input_hash,
                chat_result=result.model_dump(mode="json", exclude_none=True),
            ),
            content=output,
        )
        return await self.store.save_artifact(artifact)


__all__ = ["ExecutionEngine", "EngineResult", "ToolCallResult", "json_schema_of", "schema_adapter"]
