from __future__ import annotations

import json

from awe_agentrelay.adapters.base import StructuredOutputAdapter


class ClaudeAdapter(StructuredOutputAdapter):
    def build_argv(self, *, binary: str, prompt: str, schema: dict) -> list[str]:
        return [
            binary,
            '--print',
            '--dangerously-skip-permissions',
            '--output-format',
            'json',
            '--json-schema',
            json.dumps(schema, separators=(',', ':')),
            prompt,
        ]


__all__ = ['ClaudeAdapter']
