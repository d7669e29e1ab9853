from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

from boardbot.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    SessionResult,
)
from boardbot.backends.signals import parse_session_output


class ClaudeCodeBackend(AgentBackend):
    def __init__(
        self,
        binary: str = "claude",
        working_directory: Path | None = None,
        extra_args: list[str] | None = None,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.extra_args = list(extra_args or [])

    def build_command(self, prompt: str, continuation_handle: str | None = None) -> list[str]:
        command = [self.binary, "-p", prompt, "--output-format", "json"]
        if continuation_handle:
            command.extend(["--resume", continuation_handle])
        command.extend(self.extra_args)
        return command

    @staticmethod
    def _parse_result(stdout: str) -> tuple[str, str | None, bool]:
        """Return ``(text, session_id, is_error)`` from the final JSON result."""
        try:
            payload: Any = json.loads(stdout)
        except json.JSONDecodeError:
            return stdout, None, False
        if isinstance(payload, list):
            payload = next(
                (item for item in reversed(payload) if isinstance(item, dict)),
                {},
            )
        if not isinstance(payload, dict):
            return stdout, None, False
        text = payload.get("result")
        session_id = payload.get("session_id")
        return (
            text if isinstance(text, str) else stdout,
            session_id if isinstance(session_id, str) else None,
            payload.get("is_error") is True,
        )

    async def run_session(
        self,
        prompt: str,
        *,
        continuation_handle: str | None = None,
        working_directory: Path | None = None,
    ) -> SessionResult:
        cwd = working_directory or self.working_directory
        command = self.build_command(prompt, continuation_handle)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd) if cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Claude binary not found: {self.binary}",
                backend="claude",
                retriable=False,
            ) from exc

        try:
            stdout_bytes, stderr_bytes = await process.communicate()
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise

        stdout = stdout_bytes.decode("utf-8", errors="replace").strip()
        stderr = stderr_bytes.decode("utf-8", errors="replace").strip()
        if process.returncode != 0:
            raise BackendExecutionError(
                f"Claude backend failed with exit code {process.returncode}: {stderr}",
                backend="claude",
                exit_code=process.returncode,
                retriable=True,
            )

        text, session_id, is_error = self._parse_result(stdout)
        result = parse_session_output(
            text,
            stderr=stderr,
            session_handle=session_id or continuation_handle,
        )
        if is_error:
            result.errors.append(f"Claude reported an error result: {text[:200]}")
        return result
