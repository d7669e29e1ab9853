from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

BackendName = Literal["claude", "codex", "codex_sdk"]
LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]


@dataclass(slots=True)
class WorkerConfig:
    name: str = "boardbot-1"
    workspace_id: str = "default"
    working_directory: str = "."
    poll_interval_seconds: float = 15.0
    max_concurrent_sessions: int = 1
    backoff_seconds: float = 1.0
    max_backoff_seconds: float = 300.0
    stale_claim_timeout_seconds: float = 0.0


@dataclass(slots=True)
class ExecutionConfig:
    max_loops: int = 50
    circuit_breaker_threshold: int = 5
    no_progress_loops: int = 3
    progress_event_every: int = 5


@dataclass(slots=True)
class SelectionConfig:
    max_retries: int = 3


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "claude"
    fallback: BackendName = "codex"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 300.0
    model: str = "gpt-5-codex"


@dataclass(slots=True)
class StoreConfig:
    path: str = ".boardbot/board.db"
    timeout_seconds: float = 30.0


@dataclass(slots=True)
class LoggingConfig:
    level: LogLevel = "INFO"


@dataclass(slots=True)
class BoardbotConfig:
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    selection: SelectionConfig = field(default_factory=SelectionConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> BoardbotConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> BoardbotConfig:
        return cls(
            worker=WorkerConfig(**data.get("worker", {})),
            execution=ExecutionConfig(**data.get("execution", {})),
            selection=SelectionConfig(**data.get("selection", {})),
            backend=BackendConfig(**data.get("backend", {})),
            store=StoreConfig(**data.get("store", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "worker": {
                "name": self.worker.name,
                "workspace_id": self.worker.workspace_id,
                "working_directory": self.worker.working_directory,
                "poll_interval_seconds": self.worker.poll_interval_seconds,
                "max_concurrent_sessions": self.worker.max_concurrent_sessions,
                "backoff_seconds": self.worker.backoff_seconds,
                "max_backoff_seconds": self.worker.max_backoff_seconds,
                "stale_claim_timeout_seconds": self.worker.stale_claim_timeout_seconds,
            },
            "execution": {
                "max_loops": self.execution.max_loops,
                "circuit_breaker_threshold": self.execution.circuit_breaker_threshold,
                "no_progress_loops": self.execution.no_progress_loops,
                "progress_event_every": self.execution.progress_event_every,
            },
            "selection": {
                "max_retries": self.selection.max_retries,
            },
            "backend": {
                "primary": self.backend.primary,
                "fallback": self.backend.fallback,
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
                "timeout_seconds": self.backend.timeout_seconds,
                "model": self.backend.model,
            },
            "store": {
                "path": self.store.path,
                "timeout_seconds": self.store.timeout_seconds,
            },
            "logging": {
                "level": self.logging.level,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: BoardbotConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["worker", "execution", "selection", "backend", "store", "logging"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> BoardbotConfig:
    if not path.exists():
        return BoardbotConfig.default()
    return BoardbotConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: BoardbotConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
