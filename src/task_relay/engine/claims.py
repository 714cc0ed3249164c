"""Text-level claim detection for task responses.

Claim detection is heuristic and locale sensitive, so it lives behind the
``ClaimDetector`` protocol. New phrasings are added by extending the phrase
tables or passing a custom detector to the evaluator.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol

GUARDRAIL_NOTICE_MARKER = "[Guardrail Notice]"

_ZH_WRITE_CLAIM_PHRASES: tuple[str, ...] = (
    "已写入",
    "已经写入",
    "写到了",
    "已保存",
    "已经保存",
    "保存到",
    "保存在",
    "保存于",
    "已存储",
    "已经存储",
    "存储到",
    "已创建",
    "已经创建",
    "成功创建",
    "已成功创建",
    "文件已成功创建",
    "已生成",
    "已经生成",
    "已更新",
    "已经更新",
)
_EN_WRITE_CLAIM_VERBS: tuple[str, ...] = (
    "i wrote",
    "written to",
    "saved to",
    "saved as",
    "has been saved",
    "has been written",
    "created at",
    "created the file",
    "updated the file",
    "generated the report",
    "i updated",
    "i created",
    "i saved",
)
_FILE_INDICATORS: tuple[str, ...] = (
    "/",
    "\\",
    ".md",
    ".txt",
    ".py",
    ".rs",
    ".json",
    ".yaml",
    ".yml",
    ".toml",
    ".csv",
    " file ",
    " path ",
    "docs/",
    "src/",
)
_COMPLETION_HINTS: tuple[str, ...] = (
    "done",
    "completed",
    "finished",
    "successfully",
    "已完成",
    "已经完成",
    "完成了",
    "已写入",
    "已经写入",
    "已保存",
    "已经保存",
    "成功创建",
    "已生成",
    "已经生成",
    "已更新",
    "已经更新",
)
_PROGRESS_HINTS: tuple[str, ...] = (
    "i'm checking",
    "let me check",
    "i am checking",
    "i'm reviewing",
    "let me review",
    "i need to inspect",
    "working on",
    "currently implementing",
    "我正在",
    "让我检查",
    "我先检查",
    "让我先查看",
    "我需要先查看",
    "正在实施",
)


class ClaimKind(str, Enum):
    """What a response text asserts about the task."""

    NONE = "none"
    WRITE_CLAIM = "write_claim"
    PROGRESS_UPDATE = "progress_update"


@dataclass(frozen=True, slots=True)
class ClaimClassification:
    """Classifier output with the phrase that triggered it."""

    kind: ClaimKind
    guardrail_notice: bool = False
    matched_phrase: str | None = None

    @property
    def is_write_claim(self) -> bool:
        return self.kind is ClaimKind.WRITE_CLAIM


class ClaimDetector(Protocol):
    """Pluggable predicate classifying response text."""

    def classify(self, text: str) -> ClaimClassification:
        """Classify one response text."""


@dataclass(frozen=True, slots=True)
class PatternClaimDetector:
    """Phrase-table detector for English and Chinese responses."""

    write_claim_phrases: tuple[str, ...] = _ZH_WRITE_CLAIM_PHRASES
    write_claim_verbs: tuple[str, ...] = _EN_WRITE_CLAIM_VERBS
    file_indicators: tuple[str, ...] = _FILE_INDICATORS
    completion_hints: tuple[str, ...] = _COMPLETION_HINTS
    progress_hints: tuple[str, ...] = _PROGRESS_HINTS

    def extended(
        self,
        *,
        write_claim_phrases: tuple[str, ...] = (),
        write_claim_verbs: tuple[str, ...] = (),
        progress_hints: tuple[str, ...] = (),
    ) -> PatternClaimDetector:
        """Return a detector with extra phrasings appended to the tables."""

        return PatternClaimDetector(
            write_claim_phrases=self.write_claim_phrases + write_claim_phrases,
            write_claim_verbs=self.write_claim_verbs + write_claim_verbs,
            file_indicators=self.file_indicators,
            completion_hints=self.completion_hints,
            progress_hints=self.progress_hints + progress_hints,
        )

    def classify(self, text: str) -> ClaimClassification:
        guardrail = GUARDRAIL_NOTICE_MARKER in text
        lower = text.lower()

        phrase = _first_match(text, self.write_claim_phrases)
        if phrase is not None:
            return ClaimClassification(
                kind=ClaimKind.WRITE_CLAIM,
                guardrail_notice=guardrail,
                matched_phrase=phrase,
            )

        verb = _first_match(lower, self.write_claim_verbs)
        if verb is not None and _first_match(lower, self.file_indicators) is not None:
            return ClaimClassification(
                kind=ClaimKind.WRITE_CLAIM,
                guardrail_notice=guardrail,
                matched_phrase=verb,
            )

        if _first_match(lower, self.completion_hints) is None:
            hint = _first_match(lower, self.progress_hints)
            if hint is not None:
                return ClaimClassification(
                    kind=ClaimKind.PROGRESS_UPDATE,
                    guardrail_notice=guardrail,
                    matched_phrase=hint,
                )

        return ClaimClassification(kind=ClaimKind.NONE, guardrail_notice=guardrail)


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
