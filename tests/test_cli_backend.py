from __future__ import annotations

import shlex
import sys
from pathlib import Path

import allure
import pytest

from conftest import ECHO_AGENT_COMMAND_TEMPLATE
from task_relay.engine.backend.base import ExecutionRequest
from task_relay.engine.backend.cli_backend import (
    TRANSCRIPT_NAME,
    CommandToolExecutor,
    build_run_args,
    parse_transcript,
)
from task_relay.engine.errors import ExecutionError, ProviderTransportError

pytestmark = [
    allure.epic("Tool Execution"),
    allure.feature("CLI Agent Backend"),
]

PYTHON = shlex.quote(sys.executable)


def _request(round_number: int = 1, last_response: str | None = None) -> ExecutionRequest:
    return ExecutionRequest(
        task_id="task-1",
        channel="cli",
        sender_key="alice",
        original_request="Write a short status report",
        last_response=last_response,
        round_number=round_number,
    )


def _executor(tmp_path: Path, template: str, *, timeout_seconds: int = 30) -> CommandToolExecutor:
    return CommandToolExecutor(
        command_template=template,
        timeout_seconds=timeout_seconds,
        workdir_root=tmp_path / "work",
        transient_exit_codes=(137, 143),
    )


def test_build_run_args_quotes_placeholders(tmp_path: Path) -> None:
    argv = build_run_args(
        command_template="agent --task {task_id} --cwd {workdir} -p {prompt}",
        prompt="fix it; rm -rf /",
        prompt_file=tmp_path / "prompt.txt",
        task_id="task 1",
        workdir=tmp_path / "my work",
    )

    assert argv == [
        "agent",
        "--task",
        "task 1",
        "--cwd",
        str(tmp_path / "my work"),
        "-p",
        "fix it; rm -rf /",
    ]


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ("   ", "empty"),
        ("agent --run", "must include"),
        ("agent {prompt} {model}", "Unsupported command template placeholder"),
    ],
)
def test_build_run_args_rejects_bad_templates(
    tmp_path: Path,
    template: str,
    message: str,
) -> None:
    with pytest.raises(ExecutionError, match=message):
        build_run_args(
            command_template=template,
            prompt="hi",
            prompt_file=tmp_path / "prompt.txt",
            task_id="t",
            workdir=tmp_path,
        )


def test_parse_transcript_strips_tool_blocks_and_reads_block_reason() -> None:
    transcript = (
        "<tool_call>\n"
        '{"name": "shell", "arguments": {"command": "ls"}}\n'
        "</tool_call>\n"
        '<tool_result name="shell">\nreport.txt\n</tool_result>\n'
        "I need production credentials to continue.\n"
        "<blocked>missing credentials</blocked>\n"
    )

    result = parse_transcript(transcript)

    assert result.response_text == "I need production credentials to continue."
    assert result.blocked_reason == "missing credentials"
    assert result.evidence.tool_calls == 1
    assert not result.evidence.saw_write_success


def test_echo_agent_verifies_write_in_second_round(tmp_path: Path) -> None:
    executor = _executor(tmp_path, ECHO_AGENT_COMMAND_TEMPLATE)

    first = executor.execute(_request())

    assert first.response_text == "I wrote the report to report.txt."
    assert first.evidence.saw_write_success
    assert not first.evidence.write_verified
    assert first.evidence.tool_calls == 1

    second = executor.execute(_request(round_number=2, last_response=first.response_text))

    assert second.response_text == "The report has been saved to report.txt and verified."
    assert second.evidence.write_verified
    assert second.evidence.tool_calls == 1
    assert [artifact.path for artifact in second.evidence.verified_artifacts] == ["report.txt"]

    workdir = tmp_path / "work" / "task-1"
    assert (workdir / "report.txt").read_text("utf-8") == "Write a short status report\n"
    assert (workdir / "rounds" / "0001" / "prompt.txt").read_text("utf-8") == (
        "Write a short status report"
    )
    assert "Your previous response was:" in (
        workdir / "rounds" / "0002" / "prompt.txt"
    ).read_text("utf-8")
    assert "file_read" in (workdir / TRANSCRIPT_NAME).read_text("utf-8")


def test_transport_failure_raises_provider_transport_error(tmp_path: Path) -> None:
    template = (
        f"{PYTHON} -c \"import sys; sys.stderr.write('connection refused'); sys.exit(1)\" "
        "{prompt_file}"
    )

    with pytest.raises(ProviderTransportError, match="connection refused"):
        _executor(tmp_path, template).execute(_request())

    stderr_log = tmp_path / "work" / "task-1" / "rounds" / "0001" / "stderr.log"
    assert stderr_log.read_text("utf-8") == "connection refused"


def test_plain_failure_raises_execution_error(tmp_path: Path) -> None:
    template = (
        f"{PYTHON} -c \"import sys; sys.stderr.write('unknown flag --bogus'); sys.exit(2)\" "
        "{prompt_file}"
    )

    with pytest.raises(ExecutionError, match="exited with 2"):
        _executor(tmp_path, template).execute(_request())


def test_transient_exit_code_is_transport(tmp_path: Path) -> None:
    template = f'{PYTHON} -c "import sys; sys.exit(143)" {{prompt_file}}'

    with pytest.raises(ProviderTransportError):
        _executor(tmp_path, template).execute(_request())


def test_timeout_is_transport(tmp_path: Path) -> None:
    template = f'{PYTHON} -c "import time; time.sleep(10)" {{prompt_file}}'

    with pytest.raises(ProviderTransportError, match="timed out"):
        _executor(tmp_path, template, timeout_seconds=1).execute(_request())


def test_missing_binary_is_execution_error(tmp_path: Path) -> None:
    with pytest.raises(ExecutionError, match="not found"):
        _executor(tmp_path, "task-relay-missing-agent-binary {prompt_file}").execute(_request())
