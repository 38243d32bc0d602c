from __future__ import annotations

from awe_agentrelay.adapters.base import ToolAdapter, ToolSpec
from awe_agentrelay.adapters.claude import ClaudeAdapter
from awe_agentrelay.adapters.codex import CodexAdapter
from awe_agentrelay.adapters.gemini import GeminiAdapter
from awe_agentrelay.adapters.opencode import OpenCodeAdapter
from awe_agentrelay.config import TOOL_PATH_ENV
from awe_agentrelay.errors import ToolUnavailableError

TOOL_SPECS: dict[str, ToolSpec] = {
    'claude': ToolSpec('claude', 'claude', 'Claude Code', TOOL_PATH_ENV['claude']),
    'gemini': ToolSpec('gemini', 'gemini', 'Gemini CLI', TOOL_PATH_ENV['gemini']),
    'codex': ToolSpec('codex', 'codex', 'Codex CLI', TOOL_PATH_ENV['codex']),
    'opencode': ToolSpec('opencode', 'opencode', 'OpenCode', TOOL_PATH_ENV['opencode']),
}


class ToolAdapterFactory:
    _ADAPTERS: dict[str, type[ToolAdapter]] = {
        'claude': ClaudeAdapter,
        'gemini': GeminiAdapter,
        'codex': CodexAdapter,
        'opencode': OpenCodeAdapter,
    }

    @classmethod
    def create(cls, cli_type: str) -> ToolAdapter:
        key = str(cli_type or '').strip().lower()
        adapter_cls = cls._ADAPTERS.get(key)
        spec = TOOL_SPECS.get(key)
        if adapter_cls is None or spec is None:
            raise ToolUnavailableError(key, f'Unsupported CLI type: {cli_type}')
        return adapter_cls(spec)


__all__ = ['TOOL_SPECS', 'ToolAdapterFactory']
