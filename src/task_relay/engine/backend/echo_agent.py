"""Local demo agent for CLI backend integration tests.

The first round writes ``report.txt`` and claims the write; the next round reads
the file back, which gives the engine the evidence it needs to complete.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

REPORT_NAME = "report.txt"


def main(argv: list[str] | None = None) -> int:
    """Run one deterministic round and print its tool transcript."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=True)
    parser.add_argument("--workdir", required=True)
    args = parser.parse_args(argv)

    prompt = Path(args.prompt_file).read_text("utf-8")
    report = Path(args.workdir) / REPORT_NAME

    if not report.exists():
        content = prompt.strip().splitlines()[0] if prompt.strip() else "empty request"
        report.write_text(content + "\n", "utf-8")
        _print_call("file_write", {"path": REPORT_NAME, "content": content})
        _print_result("file_write", f"wrote {len(content) + 1} bytes")
        print(f"I wrote the report to {REPORT_NAME}.")
        return 0

    _print_call("file_read", {"path": REPORT_NAME})
    _print_result("file_read", report.read_text("utf-8"))
    print(f"The report has been saved to {REPORT_NAME} and verified.")
    return 0


def _print_call(name: str, arguments: dict[str, str]) -> None:
    print("<tool_call>")
    print(json.dumps({"name": name, "arguments": arguments}, ensure_ascii=False))
    print("</tool_call>")


def _print_result(name: str, output: str) -> None:
    print(f'<tool_result name="{name}">')
    print(output.rstrip("\n"))
    print("</tool_result>")


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
