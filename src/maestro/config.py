from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

OracleName = Literal["openai", "claude"]
LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]

DEFAULT_EXECUTORS = ["CodeAgent", "FileAgent", "FixAgent", "ResearchAgent"]


@dataclass(slots=True)
class OracleConfig:
    primary: OracleName = "openai"
    fallback: OracleName = "claude"
    model: str = "deepseek-chat"
    base_url: str = "https://api.deepseek.com"
    api_key_env: str = "DEEPSEEK_API_KEY"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 120.0


@dataclass(slots=True)
class StoreConfig:
    root: str = ".maestro/store"
    audit_max_entries: int = 500


@dataclass(slots=True)
class PlannerConfig:
    allowed_executors: list[str] = field(default_factory=lambda: list(DEFAULT_EXECUTORS))
    min_blueprint_steps: int = 2
    max_blueprint_steps: int = 5
    self_check_max_steps: int = 8


@dataclass(slots=True)
class ArbitrationConfig:
    heuristic_confidence: float = 0.6


@dataclass(slots=True)
class ExecutionConfig:
    auto_heal: bool = True
    output_preview_chars: int = 2000
    min_synthesized_length: int = 20
    memory_executor: str = "MemoryRecorderAgent"
    record_memory: bool = True
    file_base_dir: str = "."


@dataclass(slots=True)
class LoggingConfig:
    level: LogLevel = "INFO"


@dataclass(slots=True)
class MaestroConfig:
    oracle: OracleConfig = field(default_factory=OracleConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    planner: PlannerConfig = field(default_factory=PlannerConfig)
    arbitration: ArbitrationConfig = field(default_factory=ArbitrationConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> MaestroConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> MaestroConfig:
        return cls(
            oracle=OracleConfig(**data.get("oracle", {})),
            store=StoreConfig(**data.get("store", {})),
            planner=PlannerConfig(**data.get("planner", {})),
            arbitration=ArbitrationConfig(**data.get("arbitration", {})),
            execution=ExecutionConfig(**data.get("execution", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "oracle": {
                "primary": self.oracle.primary,
                "fallback": self.oracle.fallback,
                "model": self.oracle.model,
                "base_url": self.oracle.base_url,
                "api_key_env": self.oracle.api_key_env,
                "max_retries": self.oracle.max_retries,
                "retry_backoff_seconds": self.oracle.retry_backoff_seconds,
                "timeout_seconds": self.oracle.timeout_seconds,
            },
            "store": {
                "root": self.store.root,
                "audit_max_entries": self.store.audit_max_entries,
            },
            "planner": {
                "allowed_executors": list(self.planner.allowed_executors),
                "min_blueprint_steps": self.planner.min_blueprint_steps,
                "max_blueprint_steps": self.planner.max_blueprint_steps,
                "self_check_max_steps": self.planner.self_check_max_steps,
            },
            "arbitration": {
                "heuristic_confidence": self.arbitration.heuristic_confidence,
            },
            "execution": {
                "auto_heal": self.execution.auto_heal,
                "output_preview_chars": self.execution.output_preview_chars,
                "min_synthesized_length": self.execution.min_synthesized_length,
                "memory_executor": self.execution.memory_executor,
                "record_memory": self.execution.record_memory,
                "file_base_dir": self.execution.file_base_dir,
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
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: MaestroConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["oracle", "store", "planner", "arbitration", "execution", "logging"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> MaestroConfig:
    if not path.exists():
        return MaestroConfig.default()
    return MaestroConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: MaestroConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
