from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Generic, Mapping, Sequence, TypeVar

import yaml
from pydantic import BaseModel, Field, ValidationError

from ..artifacts.store import new_artifact, to_base36
from ..context.tree import ContextNode
from ..core import metrics
from ..core.config import EngineSettings
from ..core.errors import OutputValidationError, RetryExhausted, ToolExecutionError, UnsupportedCapabilityError
from ..core.logging import get_logger
from ..schemas.artifacts import Artifact, OutputFormat, OverwritePolicy
from ..schemas.messages import ImagePart, Message, TextPart
from ..schemas.requests import Embedding, ExecutionRequest, TTSRequest, TranscribeRequest
from ..services.reducer import ContextReducer, LogOutputReducer
from ..tools.base import Tool
from ..utils.json_encoding import hash_sha256, json_safe, safe_json_dumps, truncate
from .engine import EngineResult, ExecutionEngine, schema_adapter

logger = get_logger(name=__name__)

T = TypeVar("T")

PROCESS_ID = uuid.uuid4().hex[:6]
TOOL_ROUND_PROMPT = "Does tool_results contain the answer? If so, return it. Otherwise, try something else."
FILTER_CHUNK_CHARS = 5000

_FORMAT_INSTRUCTIONS = {
    OutputFormat.MARKDOWN: "In your response, output Github Flavored Markdown.",
    OutputFormat.STRING: "In your response, output only text, with no Markdown or other delimiters.",
}
_EXTENSIONS = {OutputFormat.JSON: "json", OutputFormat.MARKDOWN: "md"}


class Outcome(str, Enum):
    SUCCESS = "success"
    TOOL_ROUND = "tool_round"
    INVALID = "invalid"


@dataclass(frozen=True)
class GenerationConfig:
    context: ContextNode = field(default_factory=ContextNode.root)
    prompt: str | tuple[TextPart | ImagePart, ...] = ""
    system: str | None = None
    format: OutputFormat = OutputFormat.STRING
    schema_hint: Mapping[str, Any] | None = None
    model: str | None = None
    overwrite: OverwritePolicy = OverwritePolicy.FAIL
    output: str | None = None
    timestamp: int | None = None
    tools: tuple[Tool, ...] = ()
    max_trials: int = 5
    max_context_tokens: int = 64_000
    max_tool_rounds: int = 1
    use_yaml: bool = False


@dataclass(frozen=True)
class GenerationResult(Generic[T]):
    builder: "GenerationBuilder"
    engine_result: EngineResult
    output: T

    @property
    def context(self) -> ContextNode:
        return self.engine_result.context

    @property
    def artifact(self) -> Artifact:
        return self.engine_result.artifact

    def continue_(self) -> "GenerationBuilder":
        return self.builder.continue_from(self.engine_result.context)


class _FilterSelection(BaseModel):
    matching_items: list[int] = Field(..., description="The _id of items that should be selected.")


class GenerationBuilder:
    """Immutable request builder driving the engine through a bounded retry loop.

    Every modifier returns a new builder; the receiver is never changed, so a
    builder can be branched freely (one per search action, for example).
    """

    __slots__ = ("engine", "config", "reducer", "settings")

    def __init__(
        self,
        engine: ExecutionEngine,
        settings: EngineSettings | None = None,
        *,
        config: GenerationConfig | None = None,
        reducer: ContextReducer | None = None,
    ) -> None:
        self.engine = engine
        self.settings = settings or engine.clients.settings.engine
        self.config = config or GenerationConfig(
            overwrite=OverwritePolicy(self.settings.default_overwrite),
            max_trials=self.settings.max_trials,
            max_context_tokens=self.settings.max_context_tokens,
            max_tool_rounds=self.settings.max_tool_rounds,
        )
        self.reducer = reducer or LogOutputReducer()

    def _clone(self, **changes: Any) -> "GenerationBuilder":
        return GenerationBuilder(
            self.engine,
            self.settings,
            config=replace(self.config, **changes),
            reducer=self.reducer,
        )

    # -- modifiers ---------------------------------------------------------

    def model(self, name: str) -> "GenerationBuilder":
        self.engine.clients.get(name)
        return self._clone(model=name)

    def add_part(self, part: TextPart | ImagePart) -> "GenerationBuilder":
        if not self.engine.clients.get(self.config.model).supports(part.type):
            raise UnsupportedCapabilityError(f"Model does not support message type: {part.type}")
        prompt = self.config.prompt
        if isinstance(prompt, str) and isinstance(part, TextPart):
            return self._clone(prompt=f"{prompt}\n{part.text}" if prompt else part.text)
        existing = (TextPart(text=prompt),) if isinstance(prompt, str) and prompt else ()
        if not isinstance(prompt, str):
            existing = prompt
        return self._clone(prompt=(*existing, part))

    def prompt(self, text: str) -> "GenerationBuilder":
        return self.add_part(TextPart(text=text)) if text else self

    def image(self, image_url: str) -> "GenerationBuilder":
        if not image_url:
            return self
        image_type = "png" if image_url.startswith("data:image/png") else "jpeg"
        return self.add_part(ImagePart(image_type=image_type, image_url=image_url))

    def system(self, text: str) -> "GenerationBuilder":
        current = self.config.system
        return self._clone(system=f"{current}\n{text}" if current else text)

    def format(self, output_format: OutputFormat | str | Mapping[str, Any]) -> "GenerationBuilder":
        if isinstance(output_format, Mapping):
            return self._clone(format=OutputFormat.JSON, schema_hint=dict(output_format))
        return self._clone(format=OutputFormat(output_format))

    def overwrite(self, policy: OverwritePolicy | str) -> "GenerationBuilder":
        return self._clone(overwrite=OverwritePolicy(policy))

    def output_file(self, name: str) -> "GenerationBuilder":
        output_format = self.config.format
        if name.endswith(".json"):
            output_format = OutputFormat.JSON
        elif name.endswith(".md"):
            output_format = OutputFormat.MARKDOWN
        elif name.endswith(".txt"):
            output_format = OutputFormat.STRING
        return self._clone(output=name, format=output_format)

    def add_message(self, content: str | Sequence[TextPart | ImagePart], role: str = "user") -> "GenerationBuilder":
        message = Message.assistant(content) if role == "assistant" else Message.user(content)
        return self._clone(context=self.config.context.new_branch([message]))

    def object_to_string(self, obj: Any) -> str:
        if self.config.use_yaml:
            return yaml.safe_dump(json_safe(obj), sort_keys=False, allow_unicode=True)
        return safe_json_dumps(obj)

    def add_object(self, obj: Any, name: str | None = None, doctype: str = "document") -> "GenerationBuilder":
        if obj is None:
            return self
        text = obj if isinstance(obj, str) else self.object_to_string(obj)
        if name:
            text = f'<{doctype} id="{name}">\n{text}\n</{doctype}>'
        return self.add_message(text)

    def add_artifact(self, artifact: Artifact) -> "GenerationBuilder":
        return self.add_object(artifact.content, artifact.metadata.name).timestamp(artifact.metadata.timestamp)

    def timestamp(self, value: int) -> "GenerationBuilder":
        if self.config.timestamp is None or value > self.config.timestamp:
            return self._clone(timestamp=value)
        return self

    def add_tools(self, tools: Sequence[Tool]) -> "GenerationBuilder":
        return self._clone(tools=(*self.config.tools, *tools))

    def set_tools(self, tools: Sequence[Tool]) -> "GenerationBuilder":
        return self._clone(tools=tuple(tools))

    def retries(self, trials: int) -> "GenerationBuilder":
        return self._clone(max_trials=max(1, int(trials)))

    def max_context_tokens(self, tokens: int) -> "GenerationBuilder":
        return self._clone(max_context_tokens=max(1, int(tokens)))

    def with_reducer(self, reducer: ContextReducer) -> "GenerationBuilder":
        return GenerationBuilder(self.engine, self.settings, config=self.config, reducer=reducer)

    def use_yaml(self, enabled: bool = True) -> "GenerationBuilder":
        return self._clone(use_yaml=enabled)

    def continue_from(self, context: ContextNode) -> "GenerationBuilder":
        return self._clone(context=context, prompt="", output=None, format=OutputFormat.STRING, schema_hint=None)

    def messages(self) -> list[Message]:
        return self.config.context.all_messages()

    # -- request assembly --------------------------------------------------

    def format_instruction(self, output_format: OutputFormat, schema: Any) -> str:
        if output_format is OutputFormat.JSON:
            if schema is not None and not isinstance(schema, Mapping):
                return "In your response, output only a JSON object."
            hint = schema if schema is not None else self.config.schema_hint
            if hint is not None:
                return f"In your response, output only a JSON object with the following schema: {safe_json_dumps(hint)}"
            return "In your response, output only a JSON object."
        return _FORMAT_INSTRUCTIONS[output_format]

    def output_name(self, output_format: OutputFormat | None = None) -> str:
        if self.config.output:
            return self.config.output
        extension = _EXTENSIONS.get(output_format or self.config.format, "out")
        return f"{self.settings.output_prefix}-{PROCESS_ID}-{to_base36(self.engine.store.next_sequence())}.{extension}"

    def build_request(
        self,
        output_name: str,
        output_format: OutputFormat,
        schema: Any = None,
        tools: Sequence[Tool] = (),
    ) -> ExecutionRequest:
        system = "\n".join(
            text for text in (self.config.system, self.format_instruction(output_format, schema)) if text
        ).strip()
        prompt = self.config.prompt or system
        return ExecutionRequest(
            output_name=output_name,
            messages=(Message.user(prompt),),
            model=self.config.model,
            system=system,
            format=output_format,
            schema=schema,
            tools=tuple(tools),
            overwrite=self.config.overwrite,
            timestamp=self.config.timestamp,
        )

    # -- retry loop ----------------------------------------------------------

    async def reduce_context(self) -> "GenerationBuilder":
        messages = self.config.context.all_messages()
        if not messages:
            return self
        reduced = await self.reducer.reduce(messages, self.config.max_context_tokens)
        if reduced is None:
            return self
        logger.info("generation_context_reduced", before=len(messages), after=len(reduced))
        return self._clone(context=ContextNode.root(reduced))

    def _classify(
        self,
        result: EngineResult,
        schema: Any,
        return_tool_results: bool,
        offered_tools: bool,
    ) -> tuple[Outcome, Any, Any]:
        tool_results = result.tool_results if result.tool_call_results else None
        if tool_results is not None and return_tool_results and offered_tools and not result.errors:
            return Outcome.SUCCESS, result.artifact.content, None
        if tool_results is not None and not return_tool_results and offered_tools:
            return Outcome.TOOL_ROUND, None, None
        if result.errors:
            return Outcome.INVALID, None, [error.as_dict() for error in result.errors]
        if tool_results is not None and not return_tool_results:
            return Outcome.INVALID, None, "Tools are not available in this step; answer directly."
        content = result.artifact.content
        if return_tool_results:
            if isinstance(content, dict) and isinstance(content.get("tool_results"), dict):
                return Outcome.SUCCESS, content, None
            return Outcome.INVALID, None, "Expected a tool_results object; call one of the tools."
        adapter = schema_adapter(schema)
        if adapter is None:
            if schema is None and not isinstance(content, str):
                content = safe_json_dumps(content)
            return Outcome.SUCCESS, content, None
        try:
            return Outcome.SUCCESS, adapter.validate_python(content), None
        except ValidationError as exc:
            return Outcome.INVALID, None, str(exc)

    async def _generate(
        self,
        schema: Any,
        output_format: OutputFormat,
        return_tool_results: bool = False,
    ) -> GenerationResult[Any]:
        builder = await self.reduce_context()
        output_name = builder.output_name(output_format)
        store = builder.engine.store
        first_pre: ContextNode | None = None
        tool_rounds = 0
        trial = 0
        last_error: OutputValidationError | None = None
        while trial < builder.config.max_trials:
            offered = tool_rounds < builder.config.max_tool_rounds and bool(builder.config.tools)
            request = builder.build_request(
                output_name,
                output_format,
                schema,
                builder.config.tools if offered else (),
            )
            result = await builder.engine.run(builder.config.context, request)
            if first_pre is None:
                first_pre = result.pre_context

            outcome, output, error = builder._classify(result, schema, return_tool_results, offered)
            if outcome is Outcome.SUCCESS:
                context = result.context.reparent(result.pre_context, first_pre)
                if context is not result.context:
                    result = replace(result, context=context)
                metrics.record_generation_outcome(status="success")
                logger.info("generation_succeeded", output=output_name, trial=trial + 1, tool_rounds=tool_rounds)
                return GenerationResult(builder=builder, engine_result=result, output=output)

            await store.remove_artifact(output_name)
            metrics.increment_generation_retry(reason=outcome.value)
            if outcome is Outcome.TOOL_ROUND:
                builder = builder.continue_from(result.context).prompt(TOOL_ROUND_PROMPT)
                trial = 0
                tool_rounds += 1
                logger.info("generation_tool_round", output=output_name, tool_rounds=tool_rounds)
                continue

            excerpt = truncate(builder.object_to_string(error), self.settings.error_excerpt_chars)
            last_error = OutputValidationError(excerpt, output=output_name, details=error)
            trial += 1
            logger.warning(
                "generation_retry",
                output=output_name,
                attempt=trial,
                max_trials=builder.config.max_trials,
                error=excerpt,
            )
            builder = builder.continue_from(result.context).prompt(f"Try again. Error: {excerpt}")

        metrics.record_generation_outcome(status="exhausted")
        raise RetryExhausted(builder.config.max_trials, last_error) from last_error

    # -- public entry points ---------------------------------------------------

    async def run(self) -> GenerationResult[Any]:
        output_format = self.config.format
        schema = self.config.schema_hint if output_format is OutputFormat.JSON else None
        return await self._generate(schema, output_format)

    async def generate(self, schema: Any) -> GenerationResult[Any]:
        return await self._generate(schema, OutputFormat.JSON)

    async def use_tools(self, tools: Sequence[Tool]) -> GenerationResult[list[Any]]:
        """Run the tools the model calls and return their results in call order.

        A failed call is reported back to the model and retried like invalid
        output; :class:`RetryExhausted` is raised once the trials run out.
        """
        result = await self.set_tools(tools)._generate(None, OutputFormat.JSON, return_tool_results=True)
        tool_results = result.output.get("tool_results") or {}
        if not tool_results:
            raise ToolExecutionError("Model did not return any tool results")
        return GenerationResult(builder=self, engine_result=result.engine_result, output=list(tool_results.values()))

    async def filter(self, items: Sequence[T]) -> list[T]:
        """Keep the items the model selects; large inputs are split and filtered concurrently."""
        items = list(items)
        if not items:
            return []
        size = len(safe_json_dumps(items))
        if len(items) > 1 and size > FILTER_CHUNK_CHARS:
            splits = min(-(-size // FILTER_CHUNK_CHARS), len(items))
            per_split = -(-len(items) // splits)
            chunks = [items[index : index + per_split] for index in range(0, len(items), per_split)]
            logger.info("generation_filter_split", items=len(items), chunks=len(chunks))
            results = await asyncio.gather(*(self.filter(chunk) for chunk in chunks))
            return [item for chunk in results for item in chunk]

        indexed = [{"_id": index, "item": item} for index, item in enumerate(items)]
        result = await (
            self.add_object({"indexed_items": indexed})
            .system("Output the _id field of selected items that fit the criteria.")
            .generate(_FilterSelection)
        )
        selected: list[T] = []
        for index in result.output.matching_items:
            if 0 <= index < len(items):
                selected.append(items[index])
            else:
                logger.warning("generation_filter_bad_index", index=index, items=len(items))
        return selected

    async def embedding(self, text: str) -> Embedding:
        api = self.engine.clients.get(self.config.model)
        if not hasattr(api, "embedding"):
            raise UnsupportedCapabilityError("Model does not support embeddings")
        return await api.embedding(text)

    async def tts(self, request: TTSRequest) -> Artifact:
        api = self.engine.clients.get(self.config.model)
        if not hasattr(api, "tts"):
            raise UnsupportedCapabilityError("Model does not support TTS")
        name = f"tts-{hash_sha256(safe_json_dumps(request, canonical=True))}.{request.format}"
        store = self.engine.store
        if await store.get_latest_metadata(name) is not None:
            return await store.get_latest_artifact(name)
        audio = await api.tts(request)
        return await store.save_artifact(new_artifact(name, audio, "binary"))

    async def transcribe(self, audio: Artifact, prompt: str | None = None) -> str:
        api = self.engine.clients.get(self.config.model)
        if not hasattr(api, "transcribe"):
            raise UnsupportedCapabilityError("Model does not support transcription")
        if not isinstance(audio.content, (bytes, bytearray)):
            raise ValueError("Invalid audio artifact")
        audio_format = "mp3" if ".mp3" in audio.metadata.name else "wav"
        return await api.transcribe(TranscribeRequest(audio=bytes(audio.content), format=audio_format, prompt=prompt))


class RequestFile(BaseModel):
    """YAML request document accepted by :func:`load_request_file`."""

    prompt: str = ""
    system: str | None = None
    format: OutputFormat | dict[str, Any] = OutputFormat.STRING
    model: str | None = None
    overwrite: OverwritePolicy | None = None
    output: str | None = None
    timestamp: int | None = None


def load_request_file(path: str | Path, engine: ExecutionEngine, *, output: str | None = None) -> GenerationBuilder:
    file_path = Path(path)
    with file_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, Mapping):
        raise ValueError(f"Request file '{file_path}' must contain a mapping")
    spec = RequestFile.model_validate(dict(data))

    builder = GenerationBuilder(engine).format(spec.format)
    if spec.model:
        builder = builder.model(spec.model)
    if spec.system:
        builder = builder.system(spec.system)
    if spec.overwrite is not None:
        builder = builder.overwrite(spec.overwrite)
    if spec.timestamp is not None:
        builder = builder.timestamp(spec.timestamp)
    name = output or spec.output
    if name:
        builder = builder.output_file(name)
    return builder.prompt(spec.prompt)


__all__ = [
    "GenerationBuilder",
    "GenerationConfig",
    "GenerationResult",
    "Outcome",
    "RequestFile",
    "load_request_file",
    "TOOL_ROUND_PROMPT",
]
