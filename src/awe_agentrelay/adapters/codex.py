from __future__ import annotations

from awe_agentrelay.adapters.base import FileOutputAdapter


class CodexAdapter(FileOutputAdapter):
    def build_argv(self, *, binary: str, prompt: str, schema: dict) -> list[str]:
        _ = schema
        # Non-interactive mode; the agent must be able to write the output file.
        return [
            binary,
            'exec',
            '--skip-git-repo-check',
            '--dangerously-bypass-approvals-and-sandbox',
            prompt,
        ]


__all__ = ['CodexAdapter']
