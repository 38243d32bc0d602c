from __future__ import annotations

from awe_agentrelay.adapters.base import (
    FileOutputAdapter,
    RunFiles,
    StructuredOutputAdapter,
    ToolAdapter,
    ToolSpec,
)
from awe_agentrelay.adapters.claude import ClaudeAdapter
from awe_agentrelay.adapters.codex import CodexAdapter
from awe_agentrelay.adapters.factory import TOOL_SPECS, ToolAdapterFactory
from awe_agentrelay.adapters.gemini import GeminiAdapter
from awe_agentrelay.adapters.opencode import OpenCodeAdapter
from awe_agentrelay.adapters.resolver import BinaryResolver
from awe_agentrelay.adapters.runner import RunRequest, RunResult, SubprocessRunner

__all__ = [
    'BinaryResolver',
    'ClaudeAdapter',
    'CodexAdapter',
    'FileOutputAdapter',
    'GeminiAdapter',
    'OpenCodeAdapter',
    'RunFiles',
    'RunRequest',
    'RunResult',
    'StructuredOutputAdapter',
    'SubprocessRunner',
    'TOOL_SPECS',
    'ToolAdapter',
    'ToolAdapterFactory',
    'ToolSpec',
]
