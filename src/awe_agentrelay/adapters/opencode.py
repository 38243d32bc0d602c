from __future__ import annotations

from awe_agentrelay.adapters.base import FileOutputAdapter


class OpenCodeAdapter(FileOutputAdapter):
    def build_argv(self, *, binary: str, prompt: str, schema: dict) -> list[str]:
        _ = schema
        return [binary, 'run', prompt]


__all__ = ['OpenCodeAdapter']
