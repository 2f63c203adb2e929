from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

STREAM_STDOUT = "stdout"
STREAM_STDERR = "stderr"


@dataclass
class Property:
    type: str
    description: str = ""
    enum: Optional[List[Any]] = None
    default: Any = None
    format: Optional[str] = None
    items: Optional["Property"] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"type": self.type}
        if self.description:
            out["description"] = self.description
        if self.enum is not None:
            out["enum"] = list(self.enum)
        if self.default is not None:
            out["default"] = self.default
        if self.format:
            out["format"] = self.format
        if self.items is not None:
            out["items"] = self.items.to_dict()
        return out


@dataclass
class ParameterSchema:
    type: str = "object"
    properties: Dict[str, Property] = field(default_factory=dict)
    required: List[str] = field(default_factory=list)
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "type": self.type,
            "properties": {name: prop.to_dict() for name, prop in self.properties.items()},
        }
        if self.required:
            out["required"] = list(self.required)
        if self.description:
            out["description"] = self.description
        return out


@dataclass
class ToolSchema:
    inputs: ParameterSchema
    outputs: ParameterSchema = field(default_factory=ParameterSchema)

    def to_dict(self) -> Dict[str, Any]:
        return {"inputs": self.inputs.to_dict(), "outputs": self.outputs.to_dict()}


@dataclass
class ToolChunk:
    """One piece of streamed tool output.

    Exactly one chunk per execution has ``is_final`` set and it is always the
    last one; only that chunk may carry ``result`` or ``error``.
    """

    data: str = ""
    stream: str = ""
    is_final: bool = False
    result: Optional[Dict[str, Any]] = None
    error: Optional[BaseException] = None
    metadata: Optional[Dict[str, Any]] = None


class Tool(ABC):
    """A named capability callable from workflow steps."""

    name: str = ""
    description: str = ""

    @abstractmethod
    def schema(self) -> Optional[ToolSchema]:
        ...

    @abstractmethod
    async def execute(self, inputs: Dict[str, Any]) -> Dict[str, Any]:
        ...


class StreamingTool(Tool):
    """A tool that can also deliver incremental output."""

    @abstractmethod
    def execute_stream(self, inputs: Dict[str, Any]) -> AsyncIterator[ToolChunk]:
        """Check ``inputs`` and return the chunk iterator.

        Input errors raise from this call, before any chunk is produced.
        """
        ...


def supports_streaming(tool: Tool) -> bool:
    return isinstance(tool, StreamingTool)
