from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from pathlib import Path
import subprocess
import time
from threading import Thread
from typing import Callable
from uuid import uuid4

from awe_agentrelay.adapters.base import RunFiles
from awe_agentrelay.adapters.factory import ToolAdapterFactory
from awe_agentrelay.adapters.resolver import BinaryResolver
from awe_agentrelay.cancellation import CancellationRegistry, CancellationToken
from awe_agentrelay.errors import (
    RunCancelledError,
    ToolExitError,
    ToolTimeoutError,
    ToolUnavailableError,
    WorkingDirectoryError,
)

_log = logging.getLogger(__name__)

_WAIT_SLICE_SECONDS = 0.1
_KILL_GRACE_SECONDS = 2.0


@dataclass(frozen=True)
class RunRequest:
    entity_id: str
    kind: str
    cli_type: str
    schema: dict
    # Renders the input file once the per-invocation paths are known.
    render_input: Callable[[RunFiles, bool], str]
    working_directory: str | None = None
    context_text: str | None = None


@dataclass(frozen=True)
class RunResult:
    payload: object
    exit_code: int
    stdout: str
    stderr: str
    duration_seconds: float
    working_directory: Path


class SubprocessRunner:
    def __init__(
        self,
        *,
        resolver: BinaryResolver,
        registry: CancellationRegistry,
        temp_root: Path,
        timeout_seconds: float = 1800,
        adapter_factory: type[ToolAdapterFactory] = ToolAdapterFactory,
    ):
        self.resolver = resolver
        self.registry = registry
        self.temp_root = Path(temp_root)
        self.timeout_seconds = max(0.05, float(timeout_seconds))
        self.adapter_factory = adapter_factory

    def run(self, request: RunRequest, token: CancellationToken) -> RunResult:
        adapter = self.adapter_factory.create(request.cli_type)
        binary = self.resolver.resolve(request.cli_type)
        if binary is None:
            raise ToolUnavailableError(request.cli_type, self.resolver.describe_missing(request.cli_type))

        cwd = self.working_directory_for(request)
        files = self._allocate_files(with_context=request.context_text is not None)
        started = time.monotonic()
        try:
            if files.context_path is not None:
                files.context_path.write_text(str(request.context_text), encoding='utf-8')
            input_text = request.render_input(files, adapter.writes_output_file)
            files.input_path.write_text(input_text, encoding='utf-8')

            if token.cancelled:
                raise RunCancelledError(request.entity_id)

            argv = adapter.build_argv(
                binary=binary,
                prompt=adapter.runtime_prompt(files),
                schema=request.schema,
            )
            _log.info(
                'spawning cli_type=%s entity_id=%s cwd=%s',
                request.cli_type, request.entity_id, cwd,
            )
            completed = self._spawn_and_wait(
                entity_id=request.entity_id,
                argv=argv,
                cwd=cwd,
                token=token,
                cli_type=request.cli_type,
            )
            if token.cancelled:
                raise RunCancelledError(request.entity_id)
            if completed.returncode != 0:
                stderr = (completed.stderr or '').strip()
                raise ToolExitError(
                    stderr or f'CLI exited with code {completed.returncode}',
                    exit_code=completed.returncode,
                )
            payload = adapter.read_result(stdout=completed.stdout or '', files=files)
            return RunResult(
                payload=payload,
                exit_code=completed.returncode,
                stdout=completed.stdout or '',
                stderr=completed.stderr or '',
                duration_seconds=time.monotonic() - started,
                working_directory=cwd,
            )
        finally:
            self._remove_files(files)

    def working_directory_for(self, request: RunRequest) -> Path:
        configured = str(request.working_directory or '').strip()
        if configured:
            path = Path(configured).expanduser()
            if path.is_dir():
                return path
            _log.warning('workspace directory does not exist yet, creating it: %s', path)
            try:
                path.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                # A configured workspace never falls back to the scratch directory.
                raise WorkingDirectoryError(str(path), exc.strerror or str(exc)) from exc
            return path
        # Reused across turns of the same entity and never removed here.
        scratch = self.temp_root / 'awe_agentrelay' / f'{request.kind}_{request.entity_id}'
        scratch.mkdir(parents=True, exist_ok=True)
        return scratch

    def _allocate_files(self, *, with_context: bool) -> RunFiles:
        self.temp_root.mkdir(parents=True, exist_ok=True)
        token = uuid4().hex
        return RunFiles(
            input_path=self.temp_root / f'relay_input_{token}.md',
            output_path=self.temp_root / f'relay_output_{token}.json',
            context_path=(self.temp_root / f'relay_context_{token}.md') if with_context else None,
        )

    @staticmethod
    def _remove_files(files: RunFiles) -> None:
        for path in files.all_paths():
            try:
                path.unlink(missing_ok=True)
            except OSError:
                _log.warning('failed to remove temp file %s', path, exc_info=True)

    def _spawn_and_wait(
        self,
        *,
        entity_id: str,
        argv: list[str],
        cwd: Path,
        token: CancellationToken,
        cli_type: str,
    ) -> subprocess.CompletedProcess:
        try:
            process = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding='utf-8',
                errors='replace',
                cwd=str(cwd),
                env=dict(os.environ),
            )
        except FileNotFoundError as exc:
            raise ToolUnavailableError(cli_type, self.resolver.describe_missing(cli_type)) from exc
        except PermissionError as exc:
            raise ToolUnavailableError(cli_type, f'{argv[0]} is not executable') from exc

        self.registry.register(entity_id, process)
        stdout_chunks: list[str] = []
        stderr_chunks: list[str] = []

        def _pump(pipe, sink: list[str]) -> None:
            if pipe is None:
                return
            try:
                for chunk in iter(pipe.readline, ''):
                    sink.append(chunk)
            finally:
                pipe.close()

        workers = [
            Thread(target=_pump, args=(process.stdout, stdout_chunks), daemon=True),
            Thread(target=_pump, args=(process.stderr, stderr_chunks), daemon=True),
        ]
        for worker in workers:
            worker.start()

        timed_out = False
        deadline = time.monotonic() + self.timeout_seconds
        try:
            while process.poll() is None:
                if token.cancelled:
                    self._terminate(process)
                    break
                if time.monotonic() >= deadline:
                    timed_out = True
                    self._terminate(process)
                    break
                token.wait(_WAIT_SLICE_SECONDS)
        finally:
            self.registry.deregister(entity_id, process)

        for worker in workers:
            worker.join(timeout=_KILL_GRACE_SECONDS)
        if timed_out:
            raise ToolTimeoutError(self.timeout_seconds)

        return subprocess.CompletedProcess(
            args=argv,
            returncode=int(process.returncode if process.returncode is not None else -1),
            stdout=''.join(stdout_chunks),
            stderr=''.join(stderr_chunks),
        )

    @staticmethod
    def _terminate(process: subprocess.Popen) -> None:
        if process.poll() is None:
            process.kill()
        try:
            process.wait(timeout=_KILL_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            _log.warning('process %s did not exit after kill', process.pid)


__all__ = ['RunRequest', 'RunResult', 'SubprocessRunner']
