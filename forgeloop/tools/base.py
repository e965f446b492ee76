from __future__ import annotations

import asyncio
import inspect
import json
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping

from pydantic import BaseModel, ConfigDict, ValidationError

from ..core import metrics
from ..core.logging import get_logger
from ..utils.json_encoding import json_safe, truncate
from .exceptions import ToolError, ToolInvocationError, ToolTimeoutError

__all__ = ["SideEffects", "EmptyInput", "Tool", "FunctionTool"]

logger = get_logger(name=__name__)


class SideEffects(str, Enum):
    PURE = "pure"
    IDEMPOTENT = "idempotent"
    STATEFUL = "stateful"


class EmptyInput(BaseModel):
    """Input model for tools that take no arguments."""

    model_config = ConfigDict(extra="ignore")


class Tool:
    """Declarative tool descriptor with timeout enforcement and result normalization.

    Subclasses either set the class attributes or pass them to ``__init__`` and
    implement :meth:`_run`, which receives the validated ``input_model``
    instance.
    """

    name: str = "unnamed_tool"
    description: str = ""
    input_model: type[BaseModel] = EmptyInput
    side_effects: SideEffects = SideEffects.PURE
    timeout: float | None = None

    def __init__(
        self,
        *,
        name: str | None = None,
        description: str | None = None,
        input_model: type[BaseModel] | None = None,
        side_effects: SideEffects | str | None = None,
        timeout: float | None = None,
    ) -> None:
        if name is not None:
            self.name = name
        if description is not None:
            self.description = description
        if input_model is not None:
            self.input_model = input_model
        if side_effects is not None:
            self.side_effects = SideEffects(side_effects)
        if timeout is not None:
            self.timeout = max(0.1, float(timeout))

    @property
    def stateful(self) -> bool:
        return self.side_effects is SideEffects.STATEFUL

    def tool_schema(self) -> dict[str, Any]:
        parameters = self.input_model.model_json_schema()
        parameters.pop("title", None)
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": parameters,
            },
        }

    def parse_arguments(self, arguments: str | Mapping[str, Any] | None) -> BaseModel:
        if arguments is None or (isinstance(arguments, str) and not arguments.strip()):
            payload: Any = {}
        elif isinstance(arguments, str):
            try:
                payload = json.loads(arguments)
            except json.JSONDecodeError as exc:
                raise ToolInvocationError(f"Invalid JSON arguments for tool '{self.name}': {exc}") from exc
        else:
            payload = dict(arguments)
        if not isinstance(payload, Mapping):
            raise ToolInvocationError(f"Arguments for tool '{self.name}' must be a JSON object")
        try:
            return self.input_model.model_validate(payload)
        except ValidationError as exc:
            raise ToolInvocationError(f"Invalid arguments for tool '{self.name}': {exc}") from exc

    async def invoke(self, arguments: str | Mapping[str, Any] | None) -> Any:
        start = time.perf_counter()
        try:
            params = self.parse_arguments(arguments)
            if self.timeout is not None:
                result = await asyncio.wait_for(self._run(params), timeout=self.timeout)
            else:
                result = await self._run(params)
        except asyncio.TimeoutError as exc:
            metrics.observe_tool_invocation(tool=self.name, outcome="timeout", latency=time.perf_counter() - start)
            raise ToolTimeoutError(f"Tool '{self.name}' timed out after {self.timeout}s") from exc
        except ToolError as exc:
            metrics.observe_tool_invocation(tool=self.name, outcome="failure", latency=time.perf_counter() - start)
            logger.info("tool_invocation_failed", tool=self.name, error=truncate(str(exc), 200))
            raise
        except Exception as exc:
            metrics.observe_tool_invocation(tool=self.name, outcome="failure", latency=time.perf_counter() - start)
            logger.info("tool_invocation_failed", tool=self.name, error=truncate(str(exc), 200))
            raise ToolInvocationError(f"Tool '{self.name}' failed: {exc}") from exc
        metrics.observe_tool_invocation(tool=self.name, outcome="success", latency=time.perf_counter() - start)
        return json_safe(result)

    async def _run(self, params: BaseModel) -> Any:  # pragma: no cover - implemented by subclasses
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, side_effects={self.side_effects.value})"


class FunctionTool(Tool):
    """Wrap a plain or async callable; validated fields are passed as keyword arguments."""

    def __init__(
        self,
        name: str,
        fn: Callable[..., Any | Awaitable[Any]],
        *,
        input_model: type[BaseModel] | None = None,
        description: str | None = None,
        side_effects: SideEffects | str = SideEffects.PURE,
        timeout: float | None = None,
    ) -> None:
        if description is None:
            description = (inspect.getdoc(fn) or "").split("\n", 1)[0]
        super().__init__(
            name=name,
            description=description,
            input_model=input_model,
            side_effects=side_effects,
            timeout=timeout,
        )
        self._fn = fn

    async def _run(self, params: BaseModel) -> Any:
        result = self._fn(**params.model_dump())
        if inspect.isawaitable(result):
            result = await result
        return result
