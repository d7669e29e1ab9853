from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from boardbot.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    SessionResult,
)
from boardbot.backends.signals import parse_session_output


@dataclass(slots=True)
class _StreamState:
    messages: list[str] = field(default_factory=list)
    changed: list[str] = field(default_factory=list)
    thread_id: str | None = None
    pending: str = ""


class CodexBackend(AgentBackend):
    """``codex exec --json`` sessions; resumed sessions go through ``exec resume``."""

    def __init__(
        self,
        binary: str = "codex",
        working_directory: Path | None = None,
        model: str | None = None,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.model = model
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def build_command(self, prompt: str, continuation_handle: str | None = None) -> list[str]:
        command = [self.binary, "exec"]
        if continuation_handle:
            command += ["resume", continuation_handle]
        command.append("--json")
        if self.model:
            command += ["-m", self.model]
        return [*command, prompt]

    @staticmethod
    def _item_text(item: dict[str, Any]) -> str:
        text = item.get("text")
        if isinstance(text, str):
            return text
        parts = [
            entry["text"]
            for entry in item.get("content") or []
            if isinstance(entry, dict) and isinstance(entry.get("text"), str)
        ]
        return "".join(parts)

    def _absorb_event(self, state: _StreamState, event: dict[str, Any]) -> None:
        for key in ("thread_id", "session_id"):
            value = event.get(key)
            if isinstance(value, str) and value:
                state.thread_id = value

        text = ""
        item = event.get("item")
        if isinstance(item, dict):
            kind = item.get("type")
            if kind in {"agent_message", "message"}:
                text = self._item_text(item)
            elif kind == "file_change":
                for change in item.get("changes") or []:
                    path = change.get("path") if isinstance(change, dict) else None
                    if isinstance(path, str) and path not in state.changed:
                        state.changed.append(path)
        elif isinstance(event.get("message"), str):
            text = event["message"]

        self._emit(
            {
                "event": "codex_json_event",
                "type": str(event.get("type", "")),
                "has_content": bool(text),
            }
        )
        if text:
            state.messages.append(text)

    @staticmethod
    def _looks_partial(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    def _feed_line(self, state: _StreamState, line: str) -> None:
        candidate = state.pending + line
        try:
            event = json.loads(candidate)
        except json.JSONDecodeError:
            if self._looks_partial(candidate):
                state.pending = candidate
                self._emit({"event": "codex_json_partial", "bytes": len(candidate)})
                return
            state.pending = ""
            self._emit({"event": "codex_json_parse_fallback", "line": line[:200]})
            state.messages.append(line)
            return
        state.pending = ""
        if isinstance(event, dict):
            self._absorb_event(state, event)

    async def _spawn(self, command: list[str], cwd: Path | None) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd) if cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Codex binary not found: {self.binary}",
                backend="codex",
                retriable=False,
            ) from exc

    async def run_session(
        self,
        prompt: str,
        *,
        continuation_handle: str | None = None,
        working_directory: Path | None = None,
    ) -> SessionResult:
        command = self.build_command(prompt, continuation_handle)
        self._emit(
            {
                "event": "codex_cli_start",
                "command": command[:4],
                "resumed": bool(continuation_handle),
                "model": self.model,
            }
        )
        process = await self._spawn(command, working_directory or self.working_directory)
        if process.stdout is None:
            raise BackendProcessError(
                "Codex backend did not expose stdout.", backend="codex", retriable=False
            )

        state = _StreamState(thread_id=continuation_handle)
        try:
            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if line:
                    self._feed_line(state, line)
            return_code = await process.wait()
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise

        if state.pending:
            self._emit({"event": "codex_json_buffer_flush", "bytes": len(state.pending)})
        stderr = ""
        if process.stderr is not None:
            stderr = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        self._emit({"event": "codex_cli_exit", "exit_code": return_code, "stderr": stderr[:400]})
        if return_code != 0:
            raise BackendExecutionError(
                f"Codex backend failed with exit code {return_code}: {stderr}",
                backend="codex",
                exit_code=return_code,
                retriable=True,
            )
        return parse_session_output(
            "\n".join(state.messages).strip(),
            stderr=stderr,
            session_handle=state.thread_id,
            files_modified=state.changed,
        )
