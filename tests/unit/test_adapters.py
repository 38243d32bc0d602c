from __future__ import annotations

import json
import os
from pathlib import Path
import threading

import pytest

from awe_agentrelay.adapters import (
    BinaryResolver,
    ClaudeAdapter,
    GeminiAdapter,
    RunFiles,
    RunRequest,
    SubprocessRunner,
    ToolAdapterFactory,
)
from awe_agentrelay.cancellation import CancellationRegistry
from awe_agentrelay.errors import (
    OutputEmptyError,
    OutputMissingError,
    OutputNotJsonError,
    RunCancelledError,
    ToolExitError,
    ToolTimeoutError,
    ToolUnavailableError,
    WorkingDirectoryError,
)

posix_only = pytest.mark.skipif(os.name == 'nt', reason='uses /bin/sh scripts')

# Pulls the output path out of a file-contract runtime prompt ($2 for gemini).
_GEMINI_OUTPUT_PATH = (
    'out=$(printf \'%s\' "$2" | sed -n \'s/.*Write your JSON response to \\(.*\\)\\.$/\\1/p\')\n'
)


def _files(tmp_path: Path) -> RunFiles:
    return RunFiles(input_path=tmp_path / 'in.md', output_path=tmp_path / 'out.json')


def _script(tmp_path: Path, name: str, body: str) -> Path:
    bin_dir = tmp_path / 'bin'
    bin_dir.mkdir(exist_ok=True)
    path = bin_dir / name
    path.write_text('#!/bin/sh\n' + body, encoding='utf-8')
    path.chmod(0o755)
    return path


def _runner(tmp_path: Path, overrides: dict[str, str], *, timeout: float = 30) -> SubprocessRunner:
    return SubprocessRunner(
        resolver=BinaryResolver(overrides, which=lambda _name: None),
        registry=CancellationRegistry(),
        temp_root=tmp_path / 'tmp',
        timeout_seconds=timeout,
    )


def _request(cli_type: str, *, entity_id: str = 'task-1', working_directory: str | None = None) -> RunRequest:
    return RunRequest(
        entity_id=entity_id,
        kind='task',
        cli_type=cli_type,
        schema={'type': 'object'},
        render_input=lambda files, file_contract: f'input file_contract={file_contract}',
        working_directory=working_directory,
    )


def _leftover_temp_files(runner: SubprocessRunner) -> list[str]:
    return sorted(p.name for p in runner.temp_root.glob('relay_*'))


def test_claude_argv_passes_schema_flag_and_prompt():
    adapter = ToolAdapterFactory.create('claude')
    assert isinstance(adapter, ClaudeAdapter)
    argv = adapter.build_argv(binary='/usr/bin/claude', prompt='do it', schema={'type': 'object'})
    assert argv[0] == '/usr/bin/claude'
    assert '--dangerously-skip-permissions' in argv
    assert argv[argv.index('--output-format') + 1] == 'json'
    assert json.loads(argv[argv.index('--json-schema') + 1]) == {'type': 'object'}
    assert argv[-1] == 'do it'


def test_file_contract_argv_shapes():
    codex = ToolAdapterFactory.create('codex').build_argv(binary='codex', prompt='p', schema={})
    gemini = ToolAdapterFactory.create('gemini').build_argv(binary='gemini', prompt='p', schema={})
    opencode = ToolAdapterFactory.create('opencode').build_argv(binary='opencode', prompt='p', schema={})
    assert codex[:2] == ['codex', 'exec']
    assert '--dangerously-bypass-approvals-and-sandbox' in codex
    assert gemini == ['gemini', '--yolo', 'p']
    assert opencode == ['opencode', 'run', 'p']


def test_factory_rejects_unknown_cli_type():
    with pytest.raises(ToolUnavailableError):
        ToolAdapterFactory.create('cursor')


def test_runtime_prompt_names_output_path_only_for_file_contract(tmp_path: Path):
    files = _files(tmp_path)
    claude_prompt = ToolAdapterFactory.create('claude').runtime_prompt(files)
    gemini = ToolAdapterFactory.create('gemini')
    assert isinstance(gemini, GeminiAdapter)
    gemini_prompt = gemini.runtime_prompt(files)
    assert str(files.input_path) in claude_prompt
    assert str(files.output_path) not in claude_prompt
    assert gemini_prompt.endswith(f'Write your JSON response to {files.output_path}.')


def test_structured_output_unwraps_envelope(tmp_path: Path):
    adapter = ToolAdapterFactory.create('claude')
    payload = adapter.read_result(stdout='{"structured_output": {"actions": []}, "cost": 1}', files=_files(tmp_path))
    assert payload == {'actions': []}
    assert adapter.read_result(stdout='{"actions": []}', files=_files(tmp_path)) == {'actions': []}
    with pytest.raises(OutputMissingError):
        adapter.read_result(stdout='  \n', files=_files(tmp_path))


def test_resolver_prefers_configured_path_then_falls_back(tmp_path: Path):
    configured = _script(tmp_path, 'my-claude', 'exit 0\n')
    resolver = BinaryResolver(
        {'claude': str(configured), 'gemini': '/nowhere/gemini'},
        which=lambda name: f'/usr/local/bin/{name}' if name == 'gemini' else None,
    )
    assert resolver.resolve('claude') == str(configured)
    assert resolver.resolve('gemini') == '/usr/local/bin/gemini'
    assert resolver.resolve('codex') is None
    assert resolver.resolve('cursor') is None
    assert resolver.describe_missing('codex') == 'Codex CLI not found. Install it or set AWE_RELAY_CODEX_PATH.'


def test_resolver_health_reports_every_tool():
    resolver = BinaryResolver(which=lambda name: '/bin/opencode' if name == 'opencode' else None)
    rows = {row['cli_type']: row for row in resolver.health()}
    assert set(rows) == {'claude', 'gemini', 'codex', 'opencode'}
    assert rows['opencode']['available'] is True
    assert rows['opencode']['path'] == '/bin/opencode'
    assert rows['claude']['available'] is False


def test_runner_missing_binary_is_unavailable(tmp_path: Path):
    runner = _runner(tmp_path, {})
    registry = runner.registry
    with registry.run_scope('task-1') as token:
        with pytest.raises(ToolUnavailableError) as exc_info:
            runner.run(_request('claude'), token)
    assert 'AWE_RELAY_CLAUDE_PATH' in str(exc_info.value)


@posix_only
def test_runner_contract_a_reads_stdout_and_uses_scratch_dir(tmp_path: Path):
    seen = tmp_path / 'seen.txt'
    script = _script(
        tmp_path,
        'claude',
        f'pwd > "{seen}"\n'
        'echo \'{"structured_output": {"actions": [{"type": "skip"}]}}\'\n',
    )
    runner = _runner(tmp_path, {'claude': str(script)})
    with runner.registry.run_scope('task-1') as token:
        result = runner.run(_request('claude'), token)

    scratch = runner.temp_root / 'awe_agentrelay' / 'task_task-1'
    assert result.payload == {'actions': [{'type': 'skip'}]}
    assert result.exit_code == 0
    assert result.working_directory == scratch
    assert Path(seen.read_text(encoding='utf-8').strip()).resolve() == scratch.resolve()
    assert scratch.is_dir()
    assert _leftover_temp_files(runner) == []


@posix_only
def test_runner_contract_b_reads_output_file(tmp_path: Path):
    captured = tmp_path / 'captured_input.md'
    script = _script(
        tmp_path,
        'gemini',
        _GEMINI_OUTPUT_PATH
        + 'in=$(printf \'%s\' "$2" | sed -n \'s/^Read the file at \\(.*\\) and follow.*/\\1/p\')\n'
        + f'cp "$in" "{captured}"\n'
        + 'printf \'{"actions": [{"type": "comment", "content": "done"}]}\' > "$out"\n',
    )
    workdir = tmp_path / 'repo'
    runner = _runner(tmp_path, {'gemini': str(script)})
    with runner.registry.run_scope('task-1') as token:
        result = runner.run(_request('gemini', working_directory=str(workdir)), token)

    assert result.payload == {'actions': [{'type': 'comment', 'content': 'done'}]}
    assert result.working_directory == workdir
    assert workdir.is_dir()
    assert captured.read_text(encoding='utf-8') == 'input file_contract=True'
    assert _leftover_temp_files(runner) == []


@posix_only
def test_runner_empty_output_file_keeps_working_directory(tmp_path: Path):
    script = _script(tmp_path, 'gemini', _GEMINI_OUTPUT_PATH + ': > "$out"\n')
    workdir = tmp_path / 'repo'
    runner = _runner(tmp_path, {'gemini': str(script)})
    with runner.registry.run_scope('task-1') as token:
        with pytest.raises(OutputEmptyError):
            runner.run(_request('gemini', working_directory=str(workdir)), token)
    assert workdir.is_dir()
    assert _leftover_temp_files(runner) == []



@posix_only
def test_runner_refuses_to_run_outside_an_uncreatable_workspace(tmp_path: Path):
    marker = tmp_path / 'spawned.txt'
    script = _script(tmp_path, 'gemini', f'touch "{marker}"\n')
    blocker = tmp_path / 'blocker'
    blocker.write_text('not a directory', encoding='utf-8')
    runner = _runner(tmp_path, {'gemini': str(script)})

    with runner.registry.run_scope('task-1') as token:
        with pytest.raises(WorkingDirectoryError) as exc_info:
            runner.run(_request('gemini', working_directory=str(blocker / 'repo')), token)

    assert str(blocker / 'repo') in str(exc_info.value)
    assert not marker.exists()
    assert not (runner.temp_root / 'awe_agentrelay').exists()
    assert _leftover_temp_files(runner) == []


@posix_only
def test_runner_output_file_never_written(tmp_path: Path):
    script = _script(tmp_path, 'gemini', 'exit 0\n')
    runner = _runner(tmp_path, {'gemini': str(script)})
    with runner.registry.run_scope('task-1') as token:
        with pytest.raises(OutputMissingError):
            runner.run(_request('gemini'), token)


@posix_only
def test_runner_nonzero_exit_carries_stderr(tmp_path: Path):
    script = _script(tmp_path, 'claude', 'echo "rate limited" >&2\nexit 3\n')
    runner = _runner(tmp_path, {'claude': str(script)})
    with runner.registry.run_scope('task-1') as token:
        with pytest.raises(ToolExitError) as exc_info:
            runner.run(_request('claude'), token)
    assert exc_info.value.exit_code == 3
    assert 'rate limited' in str(exc_info.value)


@posix_only
def test_runner_rejects_non_json_stdout(tmp_path: Path):
    script = _script(tmp_path, 'claude', 'echo "I could not finish"\n')
    runner = _runner(tmp_path, {'claude': str(script)})
    with runner.registry.run_scope('task-1') as token:
        with pytest.raises(OutputNotJsonError) as exc_info:
            runner.run(_request('claude'), token)
    assert 'I could not finish' in str(exc_info.value)


@posix_only
def test_runner_times_out(tmp_path: Path):
    script = _script(tmp_path, 'claude', 'exec sleep 5\n')
    runner = _runner(tmp_path, {'claude': str(script)}, timeout=0.5)
    with runner.registry.run_scope('task-1') as token:
        with pytest.raises(ToolTimeoutError):
            runner.run(_request('claude'), token)
    assert runner.registry.is_active('task-1') is False


@posix_only
def test_runner_cancel_kills_running_process(tmp_path: Path):
    script = _script(tmp_path, 'claude', 'exec sleep 5\n')
    runner = _runner(tmp_path, {'claude': str(script)})
    timer = threading.Timer(0.3, runner.registry.cancel, args=['task-1'])
    with runner.registry.run_scope('task-1') as token:
        timer.start()
        try:
            with pytest.raises(RunCancelledError):
                runner.run(_request('claude'), token)
        finally:
            timer.cancel()
    assert _leftover_temp_files(runner) == []


@posix_only
def test_runner_cancel_before_spawn_never_starts_tool(tmp_path: Path):
    marker = tmp_path / 'started'
    script = _script(tmp_path, 'claude', f'touch "{marker}"\n')
    runner = _runner(tmp_path, {'claude': str(script)})
    with runner.registry.run_scope('task-1') as token:
        token.cancel()
        with pytest.raises(RunCancelledError):
            runner.run(_request('claude'), token)
    assert not marker.exists()
