"""Built-in ``shell`` tool: blocking and streaming command execution."""
from __future__ import annotations

import asyncio
import signal
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from flowkernel.errors import InternalError, ValidationError
from flowkernel.logging import get_logger
from flowkernel.security.shell import ShellSecurityConfig
from flowkernel.tools.base import (
    STREAM_STDERR,
    STREAM_STDOUT,
    ParameterSchema,
    Property,
    StreamingTool,
    ToolChunk,
    ToolSchema,
)
from flowkernel.tools.redact import Redactor

logger = get_logger(__name__)

DEFAULT_TIMEOUT_S = 30.0
TERMINATE_GRACE_S = 2.0
STREAM_QUEUE_SIZE = 256
MAX_CHUNK_SIZE = 4 * 1024
TRUNCATION_MARKER = "\n[output truncated]"

STATUS_COMPLETED = "completed"
STATUS_TIMEOUT = "timeout"
STATUS_ERROR = "error"


@dataclass
class _StreamState:
    limit: int
    total: int = 0
    truncated: bool = False
    errors: List[str] = field(default_factory=list)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class ShellTool(StreamingTool):
    name = "shell"
    description = "Execute shell commands"

    def __init__(
        self,
        security: Optional[ShellSecurityConfig] = None,
        *,
        timeout: float = DEFAULT_TIMEOUT_S,
        working_dir: Optional[str] = None,
        redactor: Optional[Redactor] = None,
    ) -> None:
        self.security = security or ShellSecurityConfig()
        self.timeout = timeout
        self.working_dir = working_dir
        self.redactor = redactor or Redactor()

    def schema(self) -> ToolSchema:
        return ToolSchema(
            inputs=ParameterSchema(
                properties={
                    "command": Property(type="string", description="The command to execute"),
                    "args": Property(
                        type="array",
                        description="Command arguments",
                        items=Property(type="string"),
                    ),
                },
                required=["command"],
            ),
            outputs=ParameterSchema(
                properties={
                    "success": Property(type="boolean", description="Whether the command exited with 0"),
                    "stdout": Property(type="string"),
                    "stderr": Property(type="string"),
                    "exit_code": Property(type="integer"),
                    "status": Property(
                        type="string",
                        enum=[STATUS_COMPLETED, STATUS_TIMEOUT, STATUS_ERROR],
                    ),
                },
            ),
        )

    def _parse(self, inputs: Dict[str, Any]) -> Tuple[str, List[str]]:
        command = inputs.get("command")
        if not isinstance(command, str):
            raise ValidationError("command must be a string")
        raw_args = inputs.get("args")
        if raw_args is None:
            raw_args = []
        if not isinstance(raw_args, (list, tuple)):
            raise ValidationError("args must be an array")
        args: List[str] = []
        for index, arg in enumerate(raw_args):
            if not isinstance(arg, str):
                raise ValidationError(f"all args must be strings: args[{index}]")
            args.append(arg)

        self.security.validate_command(command)
        self.security.validate_args(args)
        return command, args

    async def _spawn(self, command: str, args: List[str]) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            command,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=self.security.build_env(),
            cwd=self.working_dir,
        )

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        try:
            proc.send_signal(signal.SIGTERM)
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), TERMINATE_GRACE_S)
        except asyncio.TimeoutError:
            logger.warning("shell_process_killed", pid=proc.pid)
            try:
                proc.kill()
            except ProcessLookupError:
                return
            await proc.wait()

    def _truncate(self, data: bytes) -> str:
        # redact the full text first so a secret cut at the limit is still matched
        text = self.redactor.redact(data.decode("utf-8", errors="replace"))
        limit = self.security.max_output_size
        if limit > 0 and len(data) > limit:
            kept = text.encode("utf-8")[:limit].decode("utf-8", errors="ignore")
            return kept + TRUNCATION_MARKER
        return text

    # ------------------------------------------------------------------
    # Blocking execution
    # ------------------------------------------------------------------

    async def execute(self, inputs: Dict[str, Any]) -> Dict[str, Any]:
        command, args = self._parse(inputs)
        try:
            proc = await self._spawn(command, args)
        except OSError as exc:
            logger.warning("shell_start_failed", command=command, error=str(exc))
            return {
                "success": False,
                "stdout": "",
                "stderr": "",
                "exit_code": -1,
                "status": STATUS_ERROR,
            }

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), self.timeout)
        except asyncio.TimeoutError:
            await self._terminate(proc)
            logger.warning("shell_command_timeout", command=command, timeout=self.timeout)
            return {
                "success": False,
                "stdout": "",
                "stderr": "",
                "exit_code": -1,
                "status": STATUS_TIMEOUT,
            }
        except asyncio.CancelledError:
            await self._terminate(proc)
            raise

        exit_code = proc.returncode if proc.returncode is not None else -1
        return {
            "success": exit_code == 0,
            "stdout": self._truncate(stdout),
            "stderr": self._truncate(stderr),
            "exit_code": exit_code,
            "status": STATUS_COMPLETED,
        }

    # ------------------------------------------------------------------
    # Streaming execution
    # ------------------------------------------------------------------

    def execute_stream(self, inputs: Dict[str, Any]) -> AsyncIterator[ToolChunk]:
        command, args = self._parse(inputs)
        return self._stream(command, args)

    async def _stream(self, command: str, args: List[str]) -> AsyncIterator[ToolChunk]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=STREAM_QUEUE_SIZE)
        producer = asyncio.create_task(self._produce(command, args, queue))
        try:
            while True:
                chunk = await queue.get()
                yield chunk
                if chunk.is_final:
                    break
        finally:
            if not producer.done():
                producer.cancel()
            try:
                await producer
            except asyncio.CancelledError:
                pass

    async def _produce(self, command: str, args: List[str], queue: asyncio.Queue) -> None:
        try:
            await self._run_process(command, args, queue)
        except Exception as exc:
            logger.error("shell_stream_failed", command=command, error=str(exc))
            await queue.put(ToolChunk(is_final=True, error=InternalError(f"shell stream failed: {exc}")))

    async def _run_process(self, command: str, args: List[str], queue: asyncio.Queue) -> None:
        start = time.monotonic()
        try:
            proc = await self._spawn(command, args)
        except OSError as exc:
            logger.warning("shell_start_failed", command=command, error=str(exc))
            await queue.put(
                ToolChunk(
                    is_final=True,
                    result={
                        "success": False,
                        "exit_code": -1,
                        "status": STATUS_ERROR,
                        "duration": _elapsed_ms(start),
                    },
                )
            )
            return

        state = _StreamState(limit=self.security.max_output_size)
        readers = [
            asyncio.create_task(self._pump(proc.stdout, STREAM_STDOUT, queue, state)),
            asyncio.create_task(self._pump(proc.stderr, STREAM_STDERR, queue, state)),
        ]
        status = STATUS_COMPLETED
        try:
            try:
                await asyncio.wait_for(proc.wait(), self.timeout)
            except asyncio.TimeoutError:
                status = STATUS_TIMEOUT
                logger.warning("shell_command_timeout", command=command, timeout=self.timeout)
                await self._terminate(proc)
            # pipes can outlive the process when it leaves children behind
            _, pending = await asyncio.wait(readers, timeout=TERMINATE_GRACE_S)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        except asyncio.CancelledError:
            await self._terminate(proc)
            for task in readers:
                task.cancel()
            await asyncio.gather(*readers, return_exceptions=True)
            raise

        exit_code = proc.returncode if status == STATUS_COMPLETED and proc.returncode is not None else -1
        final = ToolChunk(
            is_final=True,
            result={
                "success": exit_code == 0,
                "exit_code": exit_code,
                "status": status,
                "duration": _elapsed_ms(start),
            },
        )
        if state.truncated:
            final.metadata = {"truncated": True}
            final.error = ValidationError(
                f"output truncated: exceeded size limit of {state.limit} bytes"
            )
        elif state.errors:
            final.error = InternalError("; ".join(state.errors))
        await queue.put(final)

    async def _pump(
        self,
        reader: Optional[asyncio.StreamReader],
        stream: str,
        queue: asyncio.Queue,
        state: _StreamState,
    ) -> None:
        """Line-buffer one pipe into chunks; flush at ``MAX_CHUNK_SIZE`` without a newline."""
        if reader is None:
            return
        pending = bytearray()
        try:
            while True:
                data = await reader.read(MAX_CHUNK_SIZE)
                if not data:
                    break
                pending.extend(data)
                while True:
                    index = pending.find(b"\n")
                    if index < 0:
                        break
                    line = bytes(pending[:index])
                    del pending[: index + 1]
                    await self._emit(queue, state, stream, line)
                if len(pending) >= MAX_CHUNK_SIZE:
                    await self._emit(queue, state, stream, bytes(pending))
                    pending.clear()
            if pending:
                await self._emit(queue, state, stream, bytes(pending))
        except asyncio.CancelledError:
            if pending:
                self._emit_nowait(queue, state, stream, bytes(pending))
            raise
        except Exception as exc:
            logger.error("shell_stream_read_failed", stream=stream, error=str(exc))
            state.errors.append(f"error reading {stream}: {exc}")

    def _account(self, state: _StreamState, stream: str, size: int) -> bool:
        """Reserve ``size`` bytes of the output allowance; False once over the cap."""
        if state.limit <= 0:
            return True
        if state.truncated:
            return False
        if state.total + size > state.limit:
            state.truncated = True
            logger.info("shell_output_truncated", stream=stream, limit=state.limit)
            return False
        state.total += size
        return True

    async def _emit(self, queue: asyncio.Queue, state: _StreamState, stream: str, raw: bytes) -> None:
        text = self.redactor.redact(raw.decode("utf-8", errors="replace"))
        async with state.lock:
            if self._account(state, stream, len(text.encode("utf-8"))):
                await queue.put(ToolChunk(data=text, stream=stream))

    def _emit_nowait(self, queue: asyncio.Queue, state: _StreamState, stream: str, raw: bytes) -> None:
        text = self.redactor.redact(raw.decode("utf-8", errors="replace"))
        if queue.full():
            return
        if self._account(state, stream, len(text.encode("utf-8"))):
            queue.put_nowait(ToolChunk(data=text, stream=stream))
