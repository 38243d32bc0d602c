from __future__ import annotations

import logging
from pathlib import Path
import shutil
from typing import Callable

from awe_agentrelay.adapters.factory import TOOL_SPECS

_log = logging.getLogger(__name__)


class BinaryResolver:
    """Finds the executable for a CLI type: configured path first, then PATH."""

    def __init__(
        self,
        overrides: dict[str, str] | None = None,
        *,
        which: Callable[[str], str | None] = shutil.which,
    ):
        self.overrides = {
            str(key or '').strip().lower(): str(value or '').strip()
            for key, value in dict(overrides or {}).items()
            if str(value or '').strip()
        }
        self._which = which

    def resolve(self, cli_type: str) -> str | None:
        key = str(cli_type or '').strip().lower()
        spec = TOOL_SPECS.get(key)
        if spec is None:
            return None
        override = self.overrides.get(key)
        if override:
            candidate = Path(override).expanduser()
            if candidate.is_file():
                return str(candidate)
            found = self._which(override)
            if found:
                return found
            _log.warning('configured path for %s is not executable: %s; falling back to PATH', key, override)
        return self._which(spec.command)

    def describe_missing(self, cli_type: str) -> str:
        key = str(cli_type or '').strip().lower()
        spec = TOOL_SPECS.get(key)
        if spec is None:
            return f'Unsupported CLI type: {cli_type}'
        return f'{spec.display_name} CLI not found. Install it or set {spec.path_env}.'

    def health(self) -> list[dict]:
        out: list[dict] = []
        for key, spec in TOOL_SPECS.items():
            path = self.resolve(key)
            out.append(
                {
                    'cli_type': key,
                    'display_name': spec.display_name,
                    'available': path is not None,
                    'path': path,
                }
            )
        return out


__all__ = ['BinaryResolver']
