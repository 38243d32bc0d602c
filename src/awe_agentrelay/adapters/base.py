from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
import json
from pathlib import Path

from awe_agentrelay.errors import OutputEmptyError, OutputMissingError, OutputNotJsonError

_JSON_PREVIEW_CHARS = 200


@dataclass(frozen=True)
class RunFiles:
    input_path: Path
    output_path: Path
    context_path: Path | None = None

    def all_paths(self) -> list[Path]:
        paths = [self.input_path, self.output_path]
        if self.context_path is not None:
            paths.append(self.context_path)
        return paths


@dataclass(frozen=True)
class ToolSpec:
    cli_type: str
    command: str
    display_name: str
    path_env: str


def decode_json_text(text: str) -> object:
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise OutputNotJsonError(f'CLI output was not valid JSON: {text[:_JSON_PREVIEW_CHARS]}') from exc


class ToolAdapter(ABC):
    """Invocation contract of one external CLI."""

    # True when the tool is told, in-band, to write its answer to a file.
    writes_output_file = False

    def __init__(self, spec: ToolSpec):
        self.spec = spec

    @property
    def cli_type(self) -> str:
        return self.spec.cli_type

    def runtime_prompt(self, files: RunFiles) -> str:
        return f'Read the file at {files.input_path} and follow the instruction autonomously.'

    @abstractmethod
    def build_argv(self, *, binary: str, prompt: str, schema: dict) -> list[str]:
        raise NotImplementedError

    @abstractmethod
    def read_result(self, *, stdout: str, files: RunFiles) -> object:
        raise NotImplementedError


class StructuredOutputAdapter(ToolAdapter):
    """Schema passed as a flag; the JSON envelope arrives on stdout."""

    envelope_key = 'structured_output'

    def read_result(self, *, stdout: str, files: RunFiles) -> object:
        text = str(stdout or '').strip()
        if not text:
            raise OutputMissingError('CLI completed but produced no output on stdout')
        envelope = decode_json_text(text)
        if isinstance(envelope, dict) and envelope.get(self.envelope_key) is not None:
            return envelope[self.envelope_key]
        return envelope


class FileOutputAdapter(ToolAdapter):
    """Schema and output path are embedded in the prompt file; the answer is read from disk."""

    writes_output_file = True

    def runtime_prompt(self, files: RunFiles) -> str:
        return (
            f'Read the file at {files.input_path} and follow the instruction autonomously. '
            f'Write your JSON response to {files.output_path}.'
        )

    def read_result(self, *, stdout: str, files: RunFiles) -> object:
        _ = stdout
        path = files.output_path
        if not path.is_file():
            raise OutputMissingError(f'CLI completed but output file was not created at {path}')
        text = path.read_text(encoding='utf-8', errors='replace').strip()
        if not text:
            raise OutputEmptyError('CLI completed but output file was empty')
        return decode_json_text(text)


__all__ = [
    'FileOutputAdapter',
    'RunFiles',
    'StructuredOutputAdapter',
    'ToolAdapter',
    'ToolSpec',
    'decode_json_text',
]
