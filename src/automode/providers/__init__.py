from __future__ import annotations

import re

from automode.config import ProviderConfig
from automode.providers.base import ExecuteOptions, Provider, ProviderEvent, SubprocessProvider
from automode.providers.claude import ClaudeProvider
from automode.providers.codex import CodexProvider

CODEX_MODEL_PATTERN = re.compile(r"^(gpt-|codex|o\d)", re.IGNORECASE)


def is_codex_model(model: str) -> bool:
    return bool(CODEX_MODEL_PATTERN.match(model.strip()))


def get_provider_for_model(model: str, config: ProviderConfig | None = None) -> Provider:
    config = config or ProviderConfig()
    if is_codex_model(model):
        return CodexProvider(binary=config.codex_binary)
    return ClaudeProvider(binary=config.claude_binary)


__all__ = [
    "ClaudeProvider",
    "CodexProvider",
    "ExecuteOptions",
    "Provider",
    "ProviderEvent",
    "SubprocessProvider",
    "get_provider_for_model",
    "is_codex_model",
]
