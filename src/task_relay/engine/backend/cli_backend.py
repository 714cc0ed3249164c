"""Subprocess-based tool executor for CLI agents."""

from __future__ import annotations

import logging
import os
import re
import shlex
import subprocess
import time
from dataclasses import replace
from pathlib import Path

from task_relay.engine.backend.base import ExecutionRequest, ExecutionResult
from task_relay.engine.errors import ExecutionError, ProviderTransportError
from task_relay.engine.evidence import collect_transcript_evidence, parse_tool_calls
from task_relay.engine.failure_classifier import classify_failure

logger = logging.getLogger(__name__)

_TOOL_BLOCK_PATTERN = re.compile(
    r"<(tool_call|toolcall|tool-call|invoke|tool_result)\b[^>]*>.*?</\1>",
    re.DOTALL,
)
_BLOCKED_PATTERN = re.compile(r"<blocked>(?P<reason>.*?)</blocked>", re.DOTALL)
TIMEOUT_EXIT_CODE = 124
TRANSCRIPT_NAME = "transcript.log"


class CommandToolExecutor:
    """Run an external agent command per round and read its tool transcript."""

    def __init__(
        self,
        *,
        command_template: str,
        timeout_seconds: int,
        workdir_root: Path,
        transient_exit_codes: tuple[int, ...] = (),
    ) -> None:
        self.command_template = command_template
        self.timeout_seconds = timeout_seconds
        self.workdir_root = workdir_root
        self.transient_exit_codes = transient_exit_codes

    def execute(self, request: ExecutionRequest) -> ExecutionResult:
        workdir = self.workdir_root / request.task_id
        round_dir = workdir / "rounds" / f"{request.round_number:04d}"
        round_dir.mkdir(parents=True, exist_ok=True)

        prompt = request.render_prompt()
        prompt_file = round_dir / "prompt.txt"
        prompt_file.write_text(prompt, "utf-8")
        stdout_path = round_dir / "stdout.log"
        stderr_path = round_dir / "stderr.log"

        run_args = build_run_args(
            command_template=self.command_template,
            prompt=prompt,
            prompt_file=prompt_file,
            task_id=request.task_id,
            workdir=workdir,
        )
        env = os.environ.copy()
        env["TASK_RELAY_TASK_ID"] = request.task_id
        env["TASK_RELAY_ROUND"] = str(request.round_number)

        try:
            with (
                stdout_path.open("w", encoding="utf-8") as stdout_handle,
                stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                exit_code, timed_out = _run_subprocess(
                    run_args=run_args,
                    env=env,
                    cwd=workdir,
                    timeout_seconds=self.timeout_seconds,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                )
        except FileNotFoundError as error:
            raise ExecutionError(f"Agent command not found: {run_args[0]}") from error
        except OSError as error:
            raise ProviderTransportError(f"Agent command failed to start: {error}") from error

        stdout = stdout_path.read_text("utf-8")
        stderr = stderr_path.read_text("utf-8")
        if timed_out:
            raise ProviderTransportError(
                f"Agent command timed out after {self.timeout_seconds}s for task {request.task_id}",
            )
        if exit_code != 0:
            classification = classify_failure(
                exit_code=exit_code,
                stdout=stdout,
                stderr=stderr,
                transient_exit_codes=self.transient_exit_codes,
            )
            logger.info(
                "Agent command for task %s exited with %s (%s)",
                request.task_id,
                exit_code,
                classification.matched_rule,
            )
            message = f"Agent command exited with {exit_code}: {_tail(stderr or stdout)}"
            if classification.is_transport:
                raise ProviderTransportError(message)
            raise ExecutionError(message)

        history_path = workdir / TRANSCRIPT_NAME
        history = history_path.read_text("utf-8") if history_path.exists() else ""
        with history_path.open("a", encoding="utf-8") as history_handle:
            history_handle.write(stdout)
        return parse_transcript(stdout, history=history)


def parse_transcript(transcript: str, *, history: str = "") -> ExecutionResult:
    """Split a round transcript into response text, evidence and block reason.

    Evidence is collected over ``history`` plus this round, so a read in a later
    round verifies a write from an earlier one. Tool calls are counted for this
    round only.
    """

    blocked = _BLOCKED_PATTERN.search(transcript)
    visible = _BLOCKED_PATTERN.sub("", _TOOL_BLOCK_PATTERN.sub("", transcript))
    response_text = "\n".join(line for line in visible.splitlines() if line.strip())
    return ExecutionResult(
        response_text=response_text,
        evidence=replace(
            collect_transcript_evidence(history + transcript),
            tool_calls=len(parse_tool_calls(transcript)),
        ),
        blocked_reason=blocked.group("reason").strip() if blocked else None,
    )


def build_run_args(
    *,
    command_template: str,
    prompt: str,
    prompt_file: Path,
    task_id: str,
    workdir: Path,
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise ExecutionError("Agent command template is empty.")
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise ExecutionError("Agent command template must include {prompt} or {prompt_file}.")
    try:
        rendered = stripped.format(
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
            task_id=shlex.quote(task_id),
            workdir=shlex.quote(str(workdir)),
        )
    except KeyError as error:
        raise ExecutionError(f"Unsupported command template placeholder: {error}") from error

    argv = shlex.split(rendered)
    if not argv:
        raise ExecutionError("Agent command template rendered empty command.")
    return argv


def _run_subprocess(  # noqa: PLR0913
    *,
    run_args: list[str],
    env: dict[str, str],
    cwd: Path,
    timeout_seconds: int,
    stdout_handle,
    stderr_handle,
) -> tuple[int, bool]:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        env=env,
        cwd=cwd,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    start_monotonic = time.monotonic()
    while True:
        returncode = process.poll()
        if returncode is not None:
            return returncode, False
        if time.monotonic() - start_monotonic >= timeout_seconds:
            _terminate_process(process)
            return TIMEOUT_EXIT_CODE, True
        time.sleep(0.1)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)


def _tail(text: str, limit: int = 400) -> str:
    stripped = text.strip()
    return stripped[-limit:] if len(stripped) > limit else stripped
