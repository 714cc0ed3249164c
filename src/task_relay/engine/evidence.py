"""Derive execution evidence from an agent tool transcript.

Transcripts carry tool calls as JSON inside ``<tool_call>`` style tags and tool
outputs as ``<tool_result name="...">`` blocks. Shell results are matched to
shell calls in order of appearance.
"""

from __future__ import annotations

import hashlib
import json
import re
import shlex
from collections import deque
from dataclasses import dataclass
from enum import Enum

from task_relay.engine.models import ExecutionEvidence, VerifiedArtifact

_CALL_TAGS: tuple[tuple[str, str], ...] = (
    ("<tool_call>", "</tool_call>"),
    ("<toolcall>", "</toolcall>"),
    ("<tool-call>", "</tool-call>"),
    ("<invoke>", "</invoke>"),
)
_RESULT_PATTERN = re.compile(
    r'<tool_result name="(?P<name>[^"]*)"[^>]*>(?P<body>.*?)</tool_result>',
    re.DOTALL,
)
_FAILURE_WORDS: tuple[str, ...] = (
    "failed",
    "error",
    "not allowed",
    "denied",
    "missing",
    "refusing",
)
_WRITE_SHELL_MARKERS: tuple[str, ...] = (
    ">>",
    " > ",
    "\n>",
    "tee ",
    "touch ",
    "mkdir ",
    "cp ",
    "mv ",
    "truncate ",
    "sed -i",
    "perl -i",
)
_READ_SHELL_MARKERS: tuple[str, ...] = (
    "cat ",
    "less ",
    "more ",
    "head ",
    "tail ",
    "wc ",
    "stat ",
    "ls ",
    "find ",
    "rg ",
    "grep ",
    "sed -n",
    "nl ",
)
_OUTPUT_REDIRECT = re.compile(r"^(?:1|&)?>>?(?P<target>.*)$")
_ANY_REDIRECT = re.compile(r"^(?:\d|&)?(?:>>?|<)")
_BARE_REDIRECT = re.compile(r"(?:\d|&)?(?:>>?|<)")
_SHELL_SEPARATORS = frozenset({"|", "||", "&&", ";"})
_PATTERN_FIRST_COMMANDS = frozenset({"grep", "rg", "sed"})
_VALUE_OPTIONS: dict[str, frozenset[str]] = {
    "head": frozenset({"-n", "-c"}),
    "tail": frozenset({"-n", "-c"}),
    "truncate": frozenset({"-s"}),
    "grep": frozenset({"-e", "-m", "-A", "-B", "-C"}),
    "rg": frozenset({"-e", "-m", "-A", "-B", "-C", "-g"}),
    "sed": frozenset({"-e"}),
    "find": frozenset({"-name", "-type", "-maxdepth"}),
}


class ToolKind(str, Enum):
    WRITE_LIKE = "write_like"
    READ_LIKE = "read_like"
    OTHER = "other"


@dataclass(frozen=True, slots=True)
class ToolCall:
    """One parsed tool invocation."""

    name: str
    kind: ToolKind
    path: str | None = None


def classify_shell_command(command: str) -> ToolKind:
    """Classify a shell command as write-like, read-like or neither."""

    lower = command.lower()
    if any(marker in lower for marker in _WRITE_SHELL_MARKERS):
        return ToolKind.WRITE_LIKE
    if any(marker in lower for marker in _READ_SHELL_MARKERS):
        return ToolKind.READ_LIKE
    return ToolKind.OTHER


def output_looks_like_failure(output: str) -> bool:
    lower = output.lower()
    return any(word in lower for word in _FAILURE_WORDS)


def parse_tool_calls(transcript: str) -> list[ToolCall]:
    """Extract tool calls in transcript order."""

    found: list[tuple[int, ToolCall]] = []
    for open_tag, close_tag in _CALL_TAGS:
        start = transcript.find(open_tag)
        while start != -1:
            body_start = start + len(open_tag)
            end = transcript.find(close_tag, body_start)
            if end == -1:
                break
            call = _parse_call_body(transcript[body_start:end])
            if call is not None:
                found.append((start, call))
            start = transcript.find(open_tag, end + len(close_tag))
    found.sort(key=lambda item: item[0])
    return [call for _, call in found]


def collect_transcript_evidence(transcript: str) -> ExecutionEvidence:
    """Build the evidence bundle for one round from its transcript."""

    calls = parse_tool_calls(transcript)
    pending_shell = deque(call for call in calls if call.name == "shell")
    pending_file = {
        "file_write": deque(call for call in calls if call.name == "file_write"),
        "file_read": deque(call for call in calls if call.name == "file_read"),
    }

    saw_write = False
    saw_read_after_write = False
    written_paths: list[str] = []
    artifacts: dict[str, VerifiedArtifact] = {}

    for match in _RESULT_PATTERN.finditer(transcript):
        name = match.group("name")
        output = match.group("body").strip()
        call = _take_call(name, pending_shell=pending_shell, pending_file=pending_file)
        kind = call.kind if call is not None else _kind_for_name(name)
        succeeded = not output_looks_like_failure(output)

        if kind is ToolKind.WRITE_LIKE and succeeded:
            saw_write = True
            if call is not None and call.path:
                written_paths.append(call.path)
        elif kind is ToolKind.READ_LIKE and succeeded and saw_write:
            saw_read_after_write = True
            if output:
                path = _artifact_path(call=call, written_paths=written_paths)
                encoded = output.encode("utf-8")
                artifacts[path] = VerifiedArtifact(
                    path=path,
                    checksum=hashlib.sha256(encoded).hexdigest(),
                    size_bytes=len(encoded),
                )

    return ExecutionEvidence(
        saw_write_success=saw_write,
        saw_post_write_read=saw_read_after_write,
        verified_artifacts=tuple(artifacts.values()),
        tool_calls=len(calls),
    )


def _parse_call_body(raw: str) -> ToolCall | None:
    try:
        payload = json.loads(raw.strip())
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    name = payload.get("name")
    if not isinstance(name, str):
        return None
    arguments = payload.get("arguments")
    if not isinstance(arguments, dict):
        arguments = {}

    if name == "shell":
        command = arguments.get("command")
        kind = classify_shell_command(command) if isinstance(command, str) else ToolKind.OTHER
        return ToolCall(name=name, kind=kind, path=_shell_target(command, kind))
    path = arguments.get("path")
    return ToolCall(
        name=name,
        kind=_kind_for_name(name),
        path=path if isinstance(path, str) else None,
    )


def _kind_for_name(name: str) -> ToolKind:
    if name == "file_write":
        return ToolKind.WRITE_LIKE
    if name == "file_read":
        return ToolKind.READ_LIKE
    return ToolKind.OTHER


def _take_call(
    name: str,
    *,
    pending_shell: deque[ToolCall],
    pending_file: dict[str, deque[ToolCall]],
) -> ToolCall | None:
    if name == "shell":
        return pending_shell.popleft() if pending_shell else None
    queue = pending_file.get(name)
    if queue:
        return queue.popleft()
    return None


def _shell_target(command: object, kind: ToolKind) -> str | None:
    """Path a shell command writes to or reads from, if one can be named."""

    if not isinstance(command, str):
        return None
    try:
        tokens = shlex.split(command)
    except ValueError:
        return None
    if kind is ToolKind.WRITE_LIKE:
        return _write_target(tokens)
    if kind is ToolKind.READ_LIKE:
        return _read_target(tokens)
    return None


def _write_target(tokens: list[str]) -> str | None:
    for index, token in enumerate(tokens):
        redirect = _OUTPUT_REDIRECT.match(token)
        if redirect is None:
            continue
        target = redirect.group("target")
        if not target and index + 1 < len(tokens):
            target = tokens[index + 1]
        if target and not target.startswith("&"):
            return target

    segments = _segments(tokens)
    for segment in segments:
        if segment and segment[0] == "tee":
            arguments = _positional_arguments(segment)
            if arguments:
                return arguments[0]
    arguments = _positional_arguments(segments[0]) if segments else []
    return arguments[-1] if arguments else None


def _read_target(tokens: list[str]) -> str | None:
    segments = _segments(tokens)
    if not segments:
        return None
    segment = segments[0]
    arguments = _positional_arguments(segment)
    if segment[0].rsplit("/", 1)[-1] in _PATTERN_FIRST_COMMANDS:
        return arguments[-1] if len(arguments) > 1 else None
    return arguments[0] if arguments else None


def _segments(tokens: list[str]) -> list[list[str]]:
    segments: list[list[str]] = [[]]
    for token in tokens:
        if token in _SHELL_SEPARATORS:
            segments.append([])
        else:
            segments[-1].append(token)
    return [segment for segment in segments if segment]


def _positional_arguments(segment: list[str]) -> list[str]:
    """Command arguments without flags, redirections and redirection targets."""

    arguments: list[str] = []
    value_options = _VALUE_OPTIONS.get(segment[0].rsplit("/", 1)[-1], frozenset())
    skip_next = False
    for token in segment[1:]:
        if skip_next:
            skip_next = False
            continue
        if _ANY_REDIRECT.match(token):
            skip_next = _BARE_REDIRECT.fullmatch(token) is not None
            continue
        if token.startswith("-"):
            skip_next = token in value_options
            continue
        arguments.append(token)
    return arguments


def _artifact_path(*, call: ToolCall | None, written_paths: list[str]) -> str:
    if call is not None and call.path:
        return call.path
    if written_paths:
        return written_paths[-1]
    return "<unknown>"
