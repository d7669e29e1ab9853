from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from openai import OpenAI, OpenAIError

from boardbot.backends.base import AgentBackend, BackendExecutionError, SessionResult
from boardbot.backends.codex import CodexBackend
from boardbot.backends.signals import parse_session_output

logger = logging.getLogger(__name__)


class CodexSDKBackend(AgentBackend):
    """Responses API backend; chains sessions through ``previous_response_id``.

    Falls back to the Codex CLI when no API client can be configured.
    """

    def __init__(
        self,
        *,
        model: str = "gpt-5-codex",
        working_directory: Path | None = None,
        instructions: str | None = None,
        client: Any | None = None,
    ) -> None:
        self.model = model
        self.working_directory = working_directory
        self.instructions = instructions
        self.cli_fallback = CodexBackend(working_directory=working_directory, model=model)
        self._client: Any | None = client
        if self._client is None:
            try:
                self._client = OpenAI()
            except OpenAIError as exc:
                logger.info("OpenAI client unavailable, using Codex CLI: %s", exc)
                self._client = None

    @staticmethod
    def _extract_text(payload: Any) -> str:
        if payload is None:
            return ""
        output_text = getattr(payload, "output_text", None)
        if isinstance(output_text, str):
            return output_text
        if isinstance(payload, dict):
            value = payload.get("output_text")
            if isinstance(value, str):
                return value
        return str(output_text or "")

    @staticmethod
    def _extract_id(payload: Any) -> str | None:
        response_id = getattr(payload, "id", None)
        if response_id is None and isinstance(payload, dict):
            response_id = payload.get("id")
        return response_id if isinstance(response_id, str) else None

    async def run_session(
        self,
        prompt: str,
        *,
        continuation_handle: str | None = None,
        working_directory: Path | None = None,
    ) -> SessionResult:
        if self._client is None:
            return await self.cli_fallback.run_session(
                prompt,
                continuation_handle=continuation_handle,
                working_directory=working_directory,
            )

        request: dict[str, Any] = {"model": self.model, "input": prompt}
        if self.instructions:
            request["instructions"] = self.instructions
        if continuation_handle:
            request["previous_response_id"] = continuation_handle

        def _request() -> Any:
            return self._client.responses.create(**request)

        try:
            payload = await asyncio.to_thread(_request)
        except OpenAIError as exc:
            raise BackendExecutionError(
                f"Codex SDK execution failed: {exc}",
                backend="codex_sdk",
                retriable=True,
            ) from exc

        return parse_session_output(
            self._extract_text(payload).strip(),
            session_handle=self._extract_id(payload) or continuation_handle,
        )
