from __future__ import annotations

import re

import pytest
from pydantic import BaseModel

from forgeloop.core.errors import (
    ModelNotFoundError,
    OutputValidationError,
    RetryExhausted,
    ToolExecutionError,
    UnsupportedCapabilityError,
)
from forgeloop.orchestration.builder import TOOL_ROUND_PROMPT, GenerationBuilder, load_request_file
from forgeloop.schemas.artifacts import OutputFormat, OverwritePolicy
from forgeloop.schemas.messages import Message
from forgeloop.schemas.requests import ChatRequest, TTSRequest
from tests.helpers.stubs import (
    EchoTool,
    EmbeddingModelAPI,
    FailingTool,
    ScriptedModelAPI,
    make_engine,
    text_result,
    tool_call_result,
)


class Answer(BaseModel):
    value: int


class RecordingReducer:
    def __init__(self) -> None:
        self.calls: list[tuple[int, int]] = []

    async def reduce(self, messages, target_tokens):
        self.calls.append((len(messages), target_tokens))
        return [Message.user("summary")]


class SpeakingModelAPI(ScriptedModelAPI):
    def __init__(self) -> None:
        super().__init__()
        self.spoken: list[str] = []

    async def tts(self, request: TTSRequest) -> bytes:
        self.spoken.append(request.text)
        return b"ID3audio"


def _texts(messages) -> list[str]:
    return [message.text() for message in messages]


def test_modifiers_return_new_builders() -> None:
    engine, _ = make_engine()
    base = GenerationBuilder(engine)

    prompted = base.prompt("hello").system("rules").overwrite("force").retries(3)

    assert base.config.prompt == ""
    assert base.config.system is None
    assert base.config.overwrite is OverwritePolicy.FAIL
    assert prompted.config.prompt == "hello"
    assert prompted.config.system == "rules"
    assert prompted.config.overwrite is OverwritePolicy.FORCE
    assert prompted.config.max_trials == 3
    assert prompted.prompt("again").config.prompt == "hello\nagain"


def test_output_file_infers_format_from_extension() -> None:
    engine, _ = make_engine()
    builder = GenerationBuilder(engine)

    assert builder.output_file("report.json").config.format is OutputFormat.JSON
    assert builder.output_file("notes.md").config.format is OutputFormat.MARKDOWN
    assert builder.format("json").output_file("plain.txt").config.format is OutputFormat.STRING
    assert builder.output_name().endswith(".out")


def test_generated_output_names_are_unique() -> None:
    engine, _ = make_engine()
    builder = GenerationBuilder(engine)

    first = builder.output_name(OutputFormat.JSON)
    second = builder.output_name(OutputFormat.JSON)

    assert re.fullmatch(r"llm-[0-9a-f]{6}-[0-9a-z]+\.json", first)
    assert first != second


def test_model_selection_checks_names_and_capabilities() -> None:
    engine, _ = make_engine(api=ScriptedModelAPI(capabilities=("text",)))
    builder = GenerationBuilder(engine)

    assert builder.model("fast").config.model == "fast"
    with pytest.raises(ModelNotFoundError):
        builder.model("unknown")
    with pytest.raises(UnsupportedCapabilityError):
        builder.image("data:image/png;base64,AAAA")


def test_add_object_wraps_named_documents() -> None:
    engine, _ = make_engine()

    builder = GenerationBuilder(engine).add_object({"a": 1}, "config").use_yaml().add_object({"b": [1, 2]})

    first, second = _texts(builder.messages())
    assert first == '<document id="config">\n{"a": 1}\n</document>'
    assert second == "b:\n- 1\n- 2\n"


@pytest.mark.asyncio
async def test_run_returns_text_with_format_instruction() -> None:
    engine, api = make_engine("plain words")

    result = await GenerationBuilder(engine).prompt("say something").system("You are terse.").run()

    assert result.output == "plain words"
    request = api.requests[0]
    assert request.system.startswith("You are terse.\nIn your response, output only text")
    assert _texts(request.messages) == ["say something"]


@pytest.mark.asyncio
async def test_generate_retries_invalid_output_then_reparents_context() -> None:
    engine, api = make_engine("not json", '{"value": "x"}', '{"value": 2}')

    result = await GenerationBuilder(engine).prompt("pick a number").generate(Answer)

    assert result.output == Answer(value=2)
    assert api.calls == 3
    retry_prompt = api.requests[1].messages[-1].text()
    assert retry_prompt.startswith("Try again. Error: ")
    assert _texts(api.requests[2].messages)[:3] == ["pick a number", "not json", retry_prompt]
    assert _texts(result.context.all_messages()) == ["pick a number", '{"value": 2}']
    assert (await engine.store.get_latest_artifact(result.artifact.metadata.name)).content == {"value": 2}


@pytest.mark.asyncio
async def test_generate_gives_up_after_max_trials() -> None:
    engine, api = make_engine("bad", "worse")

    with pytest.raises(RetryExhausted) as excinfo:
        await GenerationBuilder(engine).output_file("answer.json").retries(2).generate(Answer)

    assert excinfo.value.trials == 2
    assert isinstance(excinfo.value.last_error, OutputValidationError)
    assert excinfo.value.last_error.output == "answer.json"
    assert api.calls == 2
    assert await engine.store.get_latest_metadata("answer.json") is None


@pytest.mark.asyncio
async def test_tool_round_feeds_results_back_then_answers() -> None:
    echo = EchoTool()
    engine, api = make_engine(tool_call_result(("call_1", "echo", {"text": "ping"})), "pong")

    result = await GenerationBuilder(engine).prompt("use the tool").add_tools([echo]).run()

    assert result.output == "pong"
    assert echo.calls == ["ping"]
    first, second = api.requests
    assert [tool["function"]["name"] for tool in first.tools] == ["echo"]
    assert second.tools == []
    assert second.messages[-1].text() == TOOL_ROUND_PROMPT
    assert [message.role for message in second.messages] == ["user", "assistant", "tool", "user"]
    assert _texts(result.context.all_messages()) == ["use the tool", "pong"]


@pytest.mark.asyncio
async def test_use_tools_returns_successful_results_in_call_order() -> None:
    engine, _ = make_engine(
        tool_call_result(("call_1", "echo", {"text": "a"}), ("call_2", "echo", {"text": "b"})),
    )

    result = await GenerationBuilder(engine).prompt("call echo twice").use_tools([EchoTool()])

    assert result.output == [{"echo": "a"}, {"echo": "b"}]


@pytest.mark.asyncio
async def test_use_tools_retries_after_a_failed_call() -> None:
    engine, api = make_engine(
        tool_call_result(("call_1", "explode", {"text": "x"})),
        tool_call_result(("call_2", "echo", {"text": "ok"})),
    )

    result = await (
        GenerationBuilder(engine).output_file("tools.json").prompt("try it").use_tools([FailingTool(), EchoTool()])
    )

    assert result.output == [{"echo": "ok"}]
    assert api.calls == 2
    retry_prompt = api.requests[1].messages[-1].text()
    assert retry_prompt.startswith("Try again. Error: ")
    assert "cannot handle x" in retry_prompt
    assert [tool["function"]["name"] for tool in api.requests[1].tools] == ["explode", "echo"]
    stored = await engine.store.get_latest_artifact("tools.json")
    assert stored.content == {"tool_results": {"call_2": {"echo": "ok"}}}
    assert stored.metadata.version == 1


@pytest.mark.asyncio
async def test_use_tools_gives_up_when_every_call_fails() -> None:
    engine, api = make_engine(
        tool_call_result(("call_1", "explode", {"text": "x"})),
        tool_call_result(("call_2", "explode", {"text": "y"})),
    )

    with pytest.raises(RetryExhausted) as excinfo:
        await GenerationBuilder(engine).output_file("tools.json").retries(2).use_tools([FailingTool()])

    assert api.calls == 2
    last_error = excinfo.value.last_error
    assert isinstance(last_error, OutputValidationError)
    assert last_error.details == [
        {"kind": "tool", "message": "Tool 'explode' failed: cannot handle y", "tool_call_id": "call_2"}
    ]
    assert await engine.store.get_latest_metadata("tools.json") is None


@pytest.mark.asyncio
async def test_use_tools_requires_at_least_one_result() -> None:
    engine, _ = make_engine('{"tool_results": {}}')

    with pytest.raises(ToolExecutionError):
        await GenerationBuilder(engine).prompt("nothing to do").use_tools([EchoTool()])


@pytest.mark.asyncio
async def test_filter_keeps_selected_items_and_ignores_bad_indices() -> None:
    engine, api = make_engine('{"matching_items": [2, 0, 9]}')

    selected = await GenerationBuilder(engine).prompt("fruit only").filter(["apple", "carrot", "banana"])

    assert selected == ["banana", "apple"]
    assert api.requests[0].json_schema["required"] == ["matching_items"]


@pytest.mark.asyncio
async def test_filter_splits_large_inputs() -> None:
    def select_kept(request: ChatRequest):
        text = "\n".join(message.text() for message in request.messages)
        return text_result('{"matching_items": [0]}' if '"keep-' in text else '{"matching_items": []}')

    items = ["keep-" + "x" * 3000, "drop-" + "y" * 3000, "keep-" + "z" * 3000]
    engine, api = make_engine(select_kept, select_kept, select_kept)

    selected = await GenerationBuilder(engine).filter(items)

    assert selected == [items[0], items[2]]
    assert api.calls == 3


@pytest.mark.asyncio
async def test_continue_builds_on_previous_result() -> None:
    engine, api = make_engine("first reply", "second reply")

    first = await GenerationBuilder(engine).prompt("one").run()
    second = await first.continue_().prompt("two").run()

    assert _texts(api.requests[1].messages) == ["one", "first reply", "two"]
    assert _texts(second.context.all_messages()) == ["one", "first reply", "two", "second reply"]


@pytest.mark.asyncio
async def test_oversized_context_goes_through_reducer() -> None:
    reducer = RecordingReducer()
    engine, api = make_engine("done")

    builder = GenerationBuilder(engine).add_message("log line\n" * 50).max_context_tokens(10).with_reducer(reducer)
    await builder.prompt("summarize").run()

    assert reducer.calls == [(1, 10)]
    assert _texts(api.requests[0].messages) == ["summary", "summarize"]


@pytest.mark.asyncio
async def test_embedding_requires_capability() -> None:
    engine, _ = make_engine(api=EmbeddingModelAPI())
    plain_engine, _ = make_engine()

    embedding = await GenerationBuilder(engine).embedding("abc")

    assert embedding.vector == [3.0, 1.0]
    with pytest.raises(UnsupportedCapabilityError):
        await GenerationBuilder(plain_engine).embedding("abc")


@pytest.mark.asyncio
async def test_tts_output_is_cached_as_binary_artifact() -> None:
    api = SpeakingModelAPI()
    engine, _ = make_engine(api=api)
    builder = GenerationBuilder(engine)

    first = await builder.tts(TTSRequest(text="hello"))
    second = await builder.tts(TTSRequest(text="hello"))

    assert api.spoken == ["hello"]
    assert first.content == second.content == b"ID3audio"
    assert first.metadata.content_type == "binary"
    assert first.metadata.name.endswith(".mp3")


@pytest.mark.asyncio
async def test_load_request_file(tmp_path) -> None:
    path = tmp_path / "request.yaml"
    path.write_text(
        "prompt: Is the sky blue?\n"
        "system: Answer with a JSON object.\n"
        "format:\n"
        "  type: object\n"
        "  properties:\n"
        "    ok: {type: boolean}\n"
        "overwrite: force\n"
        "output: answer.json\n",
        encoding="utf-8",
    )
    engine, api = make_engine('{"ok": true}')

    builder = load_request_file(path, engine)
    result = await builder.run()

    assert builder.config.format is OutputFormat.JSON
    assert builder.config.overwrite is OverwritePolicy.FORCE
    assert result.output == {"ok": True}
    assert result.artifact.metadata.name == "answer.json"
    assert '"ok"' in api.requests[0].system


def test_load_request_file_rejects_non_mapping(tmp_path) -> None:
    path = tmp_path / "bad.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")
    engine, _ = make_engine()

    with pytest.raises(ValueError):
        load_request_file(path, engine)
