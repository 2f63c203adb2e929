"""Built-in ``file`` tool: policy-checked reads and writes."""
from __future__ import annotations

import asyncio
import concurrent.futures
import os
from typing import Any, Dict, List, Optional, Tuple

from flowkernel.errors import SecurityBlockedError, ValidationError
from flowkernel.logging import get_logger
from flowkernel.security.file import (
    ACTION_READ,
    ACTION_WRITE,
    FileSecurityConfig,
    determine_permissions,
)
from flowkernel.tools.base import ParameterSchema, Property, Tool, ToolSchema

logger = get_logger(__name__)

OPERATION_READ = "read"
OPERATION_WRITE = "write"


def _int_param(inputs: Dict[str, Any], name: str) -> Tuple[int, bool]:
    """Return ``(value, present)`` for a non-negative integer input."""
    if name not in inputs or inputs[name] is None:
        return 0, False
    value = inputs[name]
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be a non-negative integer")
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int) or value < 0:
        raise ValidationError(f"{name} must be a non-negative integer")
    return value, True


def _strip_eol(line: str) -> str:
    if line.endswith("\r\n"):
        return line[:-2]
    if line.endswith("\n"):
        return line[:-1]
    return line


def truncation_metadata(offset: int, shown: int, total: int) -> Dict[str, Any]:
    truncated = offset + shown < total
    meta: Dict[str, Any] = {
        "truncated": truncated,
        "lines_shown": shown,
        "total_lines": total,
        "start_line": offset,
    }
    if truncated:
        meta["end_line"] = offset + shown - 1
        meta["more_content"] = True
    elif shown > 0:
        meta["end_line"] = offset + shown - 1
        meta["more_content"] = False
    return meta


class FileTool(Tool):
    name = "file"
    description = "Read or write files on the local filesystem"

    def __init__(
        self,
        security: Optional[FileSecurityConfig] = None,
        *,
        executor: Optional[concurrent.futures.Executor] = None,
    ) -> None:
        self.security = security or FileSecurityConfig()
        self._executor = executor

    def schema(self) -> ToolSchema:
        return ToolSchema(
            inputs=ParameterSchema(
                properties={
                    "operation": Property(
                        type="string",
                        description="Operation to perform",
                        enum=[OPERATION_READ, OPERATION_WRITE],
                    ),
                    "path": Property(type="string", description="Path to the file"),
                    "content": Property(type="string", description="Content to write (write only)"),
                    "max_lines": Property(
                        type="integer",
                        description="Maximum lines to return on read; 0 or absent means unlimited",
                    ),
                    "offset": Property(type="integer", description="Lines to skip before reading"),
                },
                required=["operation", "path"],
            ),
            outputs=ParameterSchema(
                properties={
                    "success": Property(type="boolean"),
                    "content": Property(type="string"),
                    "metadata": Property(type="object"),
                    "error": Property(type="string"),
                },
            ),
        )

    async def execute(self, inputs: Dict[str, Any]) -> Dict[str, Any]:
        operation = inputs.get("operation")
        path = inputs.get("path")
        if not isinstance(operation, str):
            raise ValidationError("operation must be a string")
        if not isinstance(path, str) or not path:
            raise ValidationError("path must be a non-empty string")

        if operation == OPERATION_READ:
            max_lines, has_max = _int_param(inputs, "max_lines")
            offset, has_offset = _int_param(inputs, "offset")
            return await self._run(self._read, path, max_lines, offset, has_max or has_offset)
        if operation == OPERATION_WRITE:
            content = inputs.get("content", "")
            if content is None:
                content = ""
            if not isinstance(content, str):
                raise ValidationError("content must be a string")
            return await self._run(self._write, path, content)
        raise ValidationError(f"unsupported operation: {operation}")

    async def _run(self, func, *args) -> Dict[str, Any]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, func, *args)

    def _read(self, path: str, max_lines: int, offset: int, limited: bool) -> Dict[str, Any]:
        try:
            resolved = self.security.validate_path(path, ACTION_READ)
        except SecurityBlockedError as exc:
            return {"success": False, "error": str(exc)}

        try:
            if not limited:
                size = os.path.getsize(resolved)
                limit = self.security.max_file_size
                if limit > 0 and size > limit:
                    return {
                        "success": False,
                        "error": f"file too large: {size} bytes exceeds maximum of {limit} bytes",
                    }
                with open(resolved, "rb") as handle:
                    content = handle.read().decode("utf-8", errors="replace")
                return {"success": True, "content": content}

            lines = self._read_window(resolved, max_lines, offset)
            total = self._count_lines(resolved)
        except OSError as exc:
            return {"success": False, "error": f"failed to read file: {exc}"}

        return {
            "success": True,
            "content": "\n".join(lines),
            "metadata": truncation_metadata(offset, len(lines), total),
        }

    @staticmethod
    def _read_window(path: str, max_lines: int, offset: int) -> List[str]:
        lines: List[str] = []
        with open(path, "r", encoding="utf-8", errors="replace", newline="") as handle:
            for index, line in enumerate(handle):
                if index < offset:
                    continue
                if max_lines > 0 and len(lines) >= max_lines:
                    break
                lines.append(_strip_eol(line))
        return lines

    @staticmethod
    def _count_lines(path: str) -> int:
        count = 0
        with open(path, "r", encoding="utf-8", errors="replace", newline="") as handle:
            for _ in handle:
                count += 1
        return count

    def _write(self, path: str, content: str) -> Dict[str, Any]:
        try:
            resolved = self.security.validate_path(path, ACTION_WRITE)
        except SecurityBlockedError as exc:
            return {"success": False, "error": str(exc)}

        payload = content.encode("utf-8")
        limit = self.security.max_file_size
        if limit > 0 and len(payload) > limit:
            return {
                "success": False,
                "error": f"content too large: {len(payload)} bytes exceeds maximum of {limit} bytes",
            }

        file_mode, dir_mode = determine_permissions(resolved)
        try:
            parent = os.path.dirname(resolved)
            if parent and not os.path.isdir(parent):
                os.makedirs(parent, mode=dir_mode, exist_ok=True)
            if self.security.atomic_writes:
                self.security.write_file_atomic(path, payload, file_mode)
            else:
                with open(resolved, "wb") as handle:
                    handle.write(payload)
                os.chmod(resolved, file_mode)
        except SecurityBlockedError as exc:
            return {"success": False, "error": str(exc)}
        except OSError as exc:
            return {"success": False, "error": f"failed to write file: {exc}"}

        logger.info("file_tool_write", path=resolved, bytes=len(payload))
        return {"success": True, "path": resolved, "bytes_written": len(payload)}
