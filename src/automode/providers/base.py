from __future__ import annotations

import asyncio
import contextlib
import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from loguru import logger

from automode.errors import ProviderError

ProviderEventType = Literal["assistant_text", "tool_use", "result"]
# A single stream-json line can hold a whole tool result.
STREAM_LIMIT_BYTES = 32 * 1024 * 1024


@dataclass(slots=True)
class ExecuteOptions:
    prompt: str
    model: str
    cwd: Path
    system_prompt: str | None = None
    allowed_tools: list[str] | None = None
    max_turns: int | None = None
    cancel_event: asyncio.Event | None = None


@dataclass(slots=True)
class ProviderEvent:
    type: ProviderEventType
    text: str = ""
    tool_name: str | None = None
    tool_input: Any = None
    subtype: Literal["success", "error"] | None = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def assistant_text(cls, text: str) -> ProviderEvent:
        return cls(type="assistant_text", text=text)

    @classmethod
    def tool_use(cls, name: str, tool_input: Any = None) -> ProviderEvent:
        return cls(type="tool_use", tool_name=name, tool_input=tool_input)

    @classmethod
    def success(cls, text: str = "") -> ProviderEvent:
        return cls(type="result", subtype="success", text=text)

    @classmethod
    def failure(cls, error: str) -> ProviderEvent:
        return cls(type="result", subtype="error", error=error)


class Provider(ABC):
    name: str = "provider"

    @abstractmethod
    def execute_query(self, options: ExecuteOptions) -> AsyncIterator[ProviderEvent]:
        """Stream agent events for one query."""


class SubprocessProvider(Provider):
    """Runs an agent CLI that prints one JSON event per line."""

    def __init__(self, binary: str) -> None:
        self.binary = binary

    @abstractmethod
    def build_command(self, options: ExecuteOptions) -> list[str]:
        """Return the argv for one query."""

    @abstractmethod
    def events_from_payload(self, payload: dict[str, Any]) -> list[ProviderEvent]:
        """Translate one decoded JSON line into provider events."""

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    @staticmethod
    async def _terminate(process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=5.0)
        except TimeoutError:
            process.kill()
            await process.wait()

    async def _watch_cancel(
        self, process: asyncio.subprocess.Process, cancel_event: asyncio.Event
    ) -> None:
        await cancel_event.wait()
        logger.debug("Cancel requested, terminating {} (pid {})", self.name, process.pid)
        await self._terminate(process)

    async def execute_query(self, options: ExecuteOptions) -> AsyncIterator[ProviderEvent]:
        command = self.build_command(options)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(options.cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT_BYTES,
            )
        except FileNotFoundError as exc:
            raise ProviderError(
                f"{self.name} binary not found: {self.binary}", provider=self.name
            ) from exc

        if process.stdout is None:
            raise ProviderError(f"{self.name} provider did not expose stdout.", provider=self.name)

        watcher: asyncio.Task[None] | None = None
        if options.cancel_event is not None:
            watcher = asyncio.create_task(self._watch_cancel(process, options.cancel_event))

        saw_result = False
        try:
            parse_buffer = ""
            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                candidate = f"{parse_buffer}{line}" if parse_buffer else line
                try:
                    payload = json.loads(candidate)
                    parse_buffer = ""
                except json.JSONDecodeError:
                    if self._appears_partial_json(candidate):
                        parse_buffer = candidate
                        continue
                    parse_buffer = ""
                    yield ProviderEvent.assistant_text(line)
                    continue
                if not isinstance(payload, dict):
                    continue
                for event in self.events_from_payload(payload):
                    if event.type == "result":
                        saw_result = True
                    yield event

            return_code = await process.wait()
            if options.cancel_event is not None and options.cancel_event.is_set():
                raise asyncio.CancelledError()
            stderr_output = ""
            if process.stderr is not None:
                stderr_output = (
                    (await process.stderr.read()).decode("utf-8", errors="replace").strip()
                )
            if return_code != 0:
                raise ProviderError(
                    f"{self.name} exited with code {return_code}: {stderr_output}",
                    provider=self.name,
                    exit_code=return_code,
                )
            if not saw_result:
                yield ProviderEvent.success()
        finally:
            if watcher is not None:
                watcher.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await watcher
            await self._terminate(process)
