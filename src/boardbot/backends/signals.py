from __future__ import annotations

import json
import re

from boardbot.backends.base import SessionResult

STATUS_MARKER = "BOARDBOT_STATUS"

_STATUS_BLOCK = re.compile(STATUS_MARKER + r":\s*(\{[\s\S]*?\})")
_COMPLETION_PHRASES = (
    re.compile(r"task\s+(?:is\s+)?complete", re.IGNORECASE),
    re.compile(r"successfully\s+completed", re.IGNORECASE),
    re.compile(r"finished\s+(?:the\s+)?task", re.IGNORECASE),
    re.compile(r"done\s+with\s+(?:the\s+)?task", re.IGNORECASE),
    re.compile(r"implementation\s+complete", re.IGNORECASE),
)
_FILE_MENTION = re.compile(r"(?:modified|created|updated|edited):\s*([^\s`'\"]+)", re.IGNORECASE)
_PR_URL = re.compile(r"https://github\.com/[\w.-]+/[\w.-]+/pull/\d+")


def parse_status_block(text: str) -> tuple[bool, int]:
    """Return ``(exit_signal, indicators)`` from the last well-formed status block."""
    exit_signal = False
    indicators = 0
    for match in _STATUS_BLOCK.finditer(text):
        try:
            payload = json.loads(match.group(1))
        except json.JSONDecodeError:
            continue
        if not isinstance(payload, dict):
            continue
        exit_signal = payload.get("EXIT_SIGNAL") is True
        raw = payload.get("COMPLETION_INDICATORS", 0)
        indicators = raw if isinstance(raw, int) and not isinstance(raw, bool) and raw > 0 else 0
    return exit_signal, indicators


def count_completion_phrases(text: str) -> int:
    return sum(1 for phrase in _COMPLETION_PHRASES if phrase.search(text))


def extract_file_mentions(text: str) -> list[str]:
    files: list[str] = []
    for match in _FILE_MENTION.finditer(text):
        path = match.group(1).rstrip(".,;:)")
        if path and path not in files:
            files.append(path)
    return files


def extract_pr_url(text: str) -> str | None:
    """Return the last pull request link the agent printed."""
    matches = _PR_URL.findall(text)
    return matches[-1] if matches else None


def extract_errors(stderr: str) -> list[str]:
    return [line.strip() for line in stderr.splitlines() if "error" in line.lower()]


def parse_session_output(
    text: str,
    *,
    stderr: str = "",
    session_handle: str | None = None,
    files_modified: list[str] | None = None,
) -> SessionResult:
    exit_signal, indicators = parse_status_block(text)
    files = list(files_modified or [])
    for path in extract_file_mentions(text):
        if path not in files:
            files.append(path)
    return SessionResult(
        text=text,
        files_modified=files,
        completion_indicators=indicators + count_completion_phrases(text),
        exit_signal=exit_signal,
        errors=extract_errors(stderr),
        session_handle=session_handle,
        pr_url=extract_pr_url(text),
    )
