"""Tool registry: lookup, input validation, interception and streaming bridge."""
from __future__ import annotations

import inspect
import threading
import uuid
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Tuple,
)

from flowkernel.errors import (
    InternalError,
    NotFoundError,
    SchemaValidationError,
    ValidationError,
)
from flowkernel.logging import get_logger
from flowkernel.schema.validator import Validator
from flowkernel.scope import current_step_id, current_workflow_id
from flowkernel.tools.base import Tool, ToolChunk, supports_streaming

logger = get_logger(__name__)

TOOL_OUTPUT_EVENT = "tool.output"

# emitter(event_type, workflow_id, step_id, payload); may return an awaitable
EventEmitter = Callable[[str, str, str, Dict[str, Any]], Any]


class Interceptor:
    """Policy hook run around every tool execution.

    ``intercept`` raising aborts the call before the tool runs.
    ``post_execute`` runs after a blocking call returns or fails, and after a
    stream has produced its final chunk.
    """

    def intercept(self, tool: Tool, inputs: Dict[str, Any]) -> None:
        return None

    def post_execute(
        self,
        tool: Tool,
        outputs: Optional[Dict[str, Any]],
        error: Optional[BaseException],
    ) -> None:
        return None


class ToolRegistry:
    """Thread-safe map of tool name to tool."""

    def __init__(self) -> None:
        self._tools: Dict[str, Tool] = {}
        self._lock = threading.RLock()
        self._interceptor: Optional[Interceptor] = None
        self._emitter: Optional[EventEmitter] = None
        self._validator = Validator()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, tool: Optional[Tool]) -> None:
        if tool is None:
            raise ValidationError("tool cannot be None")
        name = getattr(tool, "name", "")
        if not name:
            raise ValidationError("tool name cannot be empty")
        if tool.schema() is None:
            raise ValidationError(f"tool {name} has no schema")
        with self._lock:
            if name in self._tools:
                raise ValidationError(f"tool already registered: {name}")
            self._tools[name] = tool
        logger.debug("tool_registered", tool=name)

    def unregister(self, name: str) -> None:
        with self._lock:
            if name not in self._tools:
                raise NotFoundError(f"tool not found: {name}")
            del self._tools[name]

    def get(self, name: str) -> Tool:
        with self._lock:
            tool = self._tools.get(name)
        if tool is None:
            raise NotFoundError(f"tool not found: {name}")
        return tool

    def has(self, name: str) -> bool:
        with self._lock:
            return name in self._tools

    def list(self) -> List[Tool]:
        with self._lock:
            return list(self._tools.values())

    def names(self) -> List[str]:
        with self._lock:
            return list(self._tools.keys())

    def supports_streaming(self, name: str) -> bool:
        return supports_streaming(self.get(name))

    def set_interceptor(self, interceptor: Optional[Interceptor]) -> None:
        with self._lock:
            self._interceptor = interceptor

    def set_event_emitter(self, emitter: Optional[EventEmitter]) -> None:
        with self._lock:
            self._emitter = emitter

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_tool_schemas(self) -> Dict[str, Dict[str, Any]]:
        return {tool.name: tool.schema().to_dict() for tool in self.list()}

    def get_tool_descriptors(self) -> List[Dict[str, Any]]:
        return [
            {
                "name": tool.name,
                "description": tool.description,
                "input_schema": tool.schema().inputs.to_dict(),
            }
            for tool in self.list()
        ]

    def expand_patterns(self, patterns: Iterable[str]) -> List[str]:
        """Resolve ``*``, ``prefix.*`` and exact names to registered tool names.

        Order follows the patterns, then registration order; duplicates drop.
        """
        registered = self.names()
        seen: set[str] = set()
        result: List[str] = []

        def _add(name: str) -> None:
            if name not in seen:
                seen.add(name)
                result.append(name)

        for pattern in patterns:
            if pattern == "*":
                for name in registered:
                    _add(name)
            elif pattern.endswith(".*"):
                prefix = pattern[:-1]
                for name in registered:
                    if name.startswith(prefix) and len(name) > len(prefix):
                        _add(name)
            elif pattern in registered:
                _add(pattern)
        return result

    def filter(self, names: List[str]) -> "ToolRegistry":
        """Return a new registry holding only ``names``."""
        if not names:
            raise ValidationError("tool filter list cannot be empty")
        with self._lock:
            missing = [name for name in names if name not in self._tools]
            if missing:
                raise NotFoundError(f"tool not found: {', '.join(missing)}")
            sub = ToolRegistry()
            for name in names:
                sub._tools.setdefault(name, self._tools[name])
            sub._interceptor = self._interceptor
            sub._emitter = self._emitter
        return sub

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def validate_inputs(self, tool: Tool, inputs: Dict[str, Any]) -> None:
        schema = tool.schema()
        if schema is None:
            return
        for required in schema.inputs.required:
            if required not in inputs:
                raise ValidationError(
                    f"input validation failed for tool {tool.name}: required input missing: {required}"
                )
        for name, prop in schema.inputs.properties.items():
            if name not in inputs or inputs[name] is None:
                continue
            try:
                self._validator.validate(prop.to_dict(), inputs[name])
            except SchemaValidationError as exc:
                raise ValidationError(
                    f"input validation failed for tool {tool.name}: {name}: {exc.message}"
                ) from exc

    def _snapshot(self, name: str) -> Tuple[Tool, Optional[Interceptor], Optional[EventEmitter]]:
        with self._lock:
            tool = self._tools.get(name)
            interceptor = self._interceptor
            emitter = self._emitter
        if tool is None:
            raise NotFoundError(f"tool not found: {name}")
        return tool, interceptor, emitter

    async def execute(self, name: str, inputs: Dict[str, Any]) -> Dict[str, Any]:
        tool, interceptor, _ = self._snapshot(name)
        inputs = inputs or {}
        self.validate_inputs(tool, inputs)
        if interceptor is not None:
            interceptor.intercept(tool, inputs)

        outputs: Optional[Dict[str, Any]] = None
        error: Optional[BaseException] = None
        try:
            outputs = await tool.execute(inputs)
            return outputs
        except Exception as exc:
            error = exc
            raise
        finally:
            if interceptor is not None:
                interceptor.post_execute(tool, outputs, error)

    async def execute_stream(
        self, name: str, inputs: Dict[str, Any], call_id: str = ""
    ) -> AsyncIterator[ToolChunk]:
        """Validate and intercept, then return the tool's chunk stream.

        Blocking tools are adapted into a stream holding a single final chunk.
        """
        tool, interceptor, emitter = self._snapshot(name)
        inputs = inputs or {}
        self.validate_inputs(tool, inputs)
        if interceptor is not None:
            interceptor.intercept(tool, inputs)

        call_id = call_id or str(uuid.uuid4())
        workflow_id = current_workflow_id()
        step_id = current_step_id()

        async def _emit(chunk: ToolChunk) -> None:
            if emitter is None:
                return
            payload = {
                "tool_call_id": call_id,
                "tool_name": tool.name,
                "stream": chunk.stream,
                "data": chunk.data,
                "is_final": chunk.is_final,
                "metadata": chunk.metadata,
            }
            result = emitter(TOOL_OUTPUT_EVENT, workflow_id, step_id, payload)
            if inspect.isawaitable(result):
                await result

        if supports_streaming(tool):
            source = tool.execute_stream(inputs)
            return self._wrap_stream(tool, source, interceptor, _emit)
        return self._single_chunk_stream(tool, inputs, interceptor, _emit)

    async def _wrap_stream(self, tool, source, interceptor, emit) -> AsyncIterator[ToolChunk]:
        final_seen = False
        try:
            async for chunk in source:
                await emit(chunk)
                yield chunk
                if chunk.is_final:
                    final_seen = True
                    if interceptor is not None:
                        interceptor.post_execute(tool, chunk.result, chunk.error)
                    break
        finally:
            aclose = getattr(source, "aclose", None)
            if aclose is not None:
                await aclose()
        if not final_seen:
            error = InternalError(f"tool {tool.name} closed its stream without a final chunk")
            chunk = ToolChunk(is_final=True, error=error)
            await emit(chunk)
            yield chunk
            if interceptor is not None:
                interceptor.post_execute(tool, None, error)

    async def _single_chunk_stream(self, tool, inputs, interceptor, emit) -> AsyncIterator[ToolChunk]:
        outputs: Optional[Dict[str, Any]] = None
        error: Optional[BaseException] = None
        try:
            outputs = await tool.execute(inputs)
        except Exception as exc:
            error = exc
        if interceptor is not None:
            interceptor.post_execute(tool, outputs, error)
        chunk = ToolChunk(is_final=True, result=outputs, error=error)
        await emit(chunk)
        yield chunk
