from __future__ import annotations

import json
from typing import Any

from automode.providers.base import ExecuteOptions, ProviderEvent, SubprocessProvider

WRITE_TOOLS = {"Write", "Edit", "Bash"}


class CodexProvider(SubprocessProvider):
    name = "codex"

    def __init__(self, binary: str = "codex") -> None:
        super().__init__(binary)

    @staticmethod
    def _sandbox_mode(allowed_tools: list[str] | None) -> str:
        if allowed_tools and not WRITE_TOOLS.intersection(allowed_tools):
            return "read-only"
        return "workspace-write"

    def build_command(self, options: ExecuteOptions) -> list[str]:
        command = [
            self.binary,
            "exec",
            "--json",
            "--sandbox",
            self._sandbox_mode(options.allowed_tools),
        ]
        if options.system_prompt:
            command.extend(
                ["-c", f"instructions={json.dumps(options.system_prompt, ensure_ascii=False)}"]
            )
        if options.model.strip():
            command.extend(["-m", options.model.strip()])
        command.append(options.prompt)
        return command

    @staticmethod
    def _extract_content(payload: dict[str, Any]) -> str:
        content = payload.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)

        delta = payload.get("delta")
        if isinstance(delta, str):
            return delta

        message = payload.get("message")
        if isinstance(message, str):
            return message
        if isinstance(message, dict):
            msg_content = message.get("content")
            if isinstance(msg_content, str):
                return msg_content
        return ""

    def events_from_payload(self, payload: dict[str, Any]) -> list[ProviderEvent]:
        event_type = str(payload.get("type", ""))
        if event_type in {"turn.failed", "error"}:
            error = payload.get("error")
            if isinstance(error, dict):
                error = error.get("message")
            return [ProviderEvent.failure(str(error or payload.get("message") or "codex error"))]
        if event_type == "turn.completed":
            return [ProviderEvent.success()]

        item = payload.get("item")
        if isinstance(item, dict):
            if event_type != "item.completed" and item.get("type") != "command_execution":
                return []
            item_type = item.get("type")
            if item_type == "agent_message" and isinstance(item.get("text"), str):
                return [ProviderEvent.assistant_text(item["text"])]
            if item_type == "command_execution" and event_type == "item.started":
                return [ProviderEvent.tool_use("Bash", {"command": item.get("command")})]
            if item_type == "file_change":
                return [ProviderEvent.tool_use("Edit", {"changes": item.get("changes")})]
            return []

        content = self._extract_content(payload)
        return [ProviderEvent.assistant_text(content)] if content else []
