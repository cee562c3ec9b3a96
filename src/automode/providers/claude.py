from __future__ import annotations

from typing import Any

from automode.providers.base import ExecuteOptions, ProviderEvent, SubprocessProvider


class ClaudeProvider(SubprocessProvider):
    name = "claude"

    def __init__(self, binary: str = "claude") -> None:
        super().__init__(binary)

    def build_command(self, options: ExecuteOptions) -> list[str]:
        command = [
            self.binary,
            "-p",
            options.prompt,
            "--output-format",
            "stream-json",
            "--verbose",
            "--model",
            options.model,
        ]
        if options.system_prompt:
            command.extend(["--append-system-prompt", options.system_prompt])
        if options.allowed_tools:
            command.extend(["--allowedTools", ",".join(options.allowed_tools)])
        if options.max_turns:
            command.extend(["--max-turns", str(options.max_turns)])
        return command

    def events_from_payload(self, payload: dict[str, Any]) -> list[ProviderEvent]:
        event_type = payload.get("type")
        if event_type == "assistant":
            message = payload.get("message")
            content = message.get("content") if isinstance(message, dict) else None
            if isinstance(content, str):
                return [ProviderEvent.assistant_text(content)] if content else []
            events: list[ProviderEvent] = []
            if isinstance(content, list):
                for block in content:
                    if not isinstance(block, dict):
                        continue
                    if block.get("type") == "text" and isinstance(block.get("text"), str):
                        events.append(ProviderEvent.assistant_text(block["text"]))
                    elif block.get("type") == "tool_use":
                        events.append(
                            ProviderEvent.tool_use(str(block.get("name", "")), block.get("input"))
                        )
            return events

        if event_type == "result":
            subtype = str(payload.get("subtype", ""))
            if subtype == "success" and not payload.get("is_error"):
                result_text = payload.get("result")
                return [ProviderEvent.success(result_text if isinstance(result_text, str) else "")]
            error = payload.get("error") or payload.get("result") or subtype or "unknown error"
            return [ProviderEvent.failure(str(error))]

        if event_type == "error":
            return [ProviderEvent.failure(str(payload.get("error") or "unknown error"))]
        return []
