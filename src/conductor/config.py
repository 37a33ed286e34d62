from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class ConfigError(ValueError):
    """Raised when a configuration value is out of range."""


@dataclass(slots=True)
class WorkflowConfig:
    max_test_retries: int = 3
    max_security_retries: int = 2
    max_design_review_retries: int = 3
    min_design_elements: int = 15
    min_design_components: int = 5
    min_ui_keyword_matches: int = 3


@dataclass(slots=True)
class ReportConfig:
    enabled: bool = True
    output_dir: str = "."
    filename: str = "walkthrough.md"
    screenshot_extensions: list[str] = field(
        default_factory=lambda: [".png", ".jpg", ".jpeg", ".webp"]
    )
    screenshot_markers: list[str] = field(
        default_factory=lambda: ["screenshot", "test", "browser"]
    )


@dataclass(slots=True)
class LoggingConfig:
    level: LogLevel = "INFO"
    log_file: str = ""


@dataclass(slots=True)
class BatchConfig:
    max_steps_per_task: int = 50
    stop_on_failure: bool = True


@dataclass(slots=True)
class ConductorConfig:
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    report: ReportConfig = field(default_factory=ReportConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)

    @classmethod
    def default(cls) -> ConductorConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ConductorConfig:
        config = cls(
            workflow=WorkflowConfig(**data.get("workflow", {})),
            report=ReportConfig(**data.get("report", {})),
            logging=LoggingConfig(**data.get("logging", {})),
            batch=BatchConfig(**data.get("batch", {})),
        )
        config.validate()
        return config

    def validate(self) -> None:
        limits = {
            "workflow.max_test_retries": self.workflow.max_test_retries,
            "workflow.max_security_retries": self.workflow.max_security_retries,
            "workflow.max_design_review_retries": self.workflow.max_design_review_retries,
            "batch.max_steps_per_task": self.batch.max_steps_per_task,
        }
        for name, value in limits.items():
            if int(value) < 1:
                raise ConfigError(f"{name} must be >= 1, got {value}")
        floors = {
            "workflow.min_design_elements": self.workflow.min_design_elements,
            "workflow.min_design_components": self.workflow.min_design_components,
            "workflow.min_ui_keyword_matches": self.workflow.min_ui_keyword_matches,
        }
        for name, value in floors.items():
            if int(value) < 0:
                raise ConfigError(f"{name} must be >= 0, got {value}")
        level = str(self.logging.level).upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ConfigError(f"logging.level is not a log level: {self.logging.level}")

    def to_dict(self) -> dict:
        return {
            "workflow": {
                "max_test_retries": self.workflow.max_test_retries,
                "max_security_retries": self.workflow.max_security_retries,
                "max_design_review_retries": self.workflow.max_design_review_retries,
                "min_design_elements": self.workflow.min_design_elements,
                "min_design_components": self.workflow.min_design_components,
                "min_ui_keyword_matches": self.workflow.min_ui_keyword_matches,
            },
            "report": {
                "enabled": self.report.enabled,
                "output_dir": self.report.output_dir,
                "filename": self.report.filename,
                "screenshot_extensions": list(self.report.screenshot_extensions),
                "screenshot_markers": list(self.report.screenshot_markers),
            },
            "logging": {
                "level": self.logging.level,
                "log_file": self.logging.log_file,
            },
            "batch": {
                "max_steps_per_task": self.batch.max_steps_per_task,
                "stop_on_failure": self.batch.stop_on_failure,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ConductorConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["workflow", "report", "logging", "batch"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ConductorConfig:
    if not path.exists():
        return ConductorConfig.default()
    return ConductorConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: ConductorConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
