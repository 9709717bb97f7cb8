"""Configuration for the decision engine.

This module defines the engine settings that are not part of a rule graph:
traversal guards, trace colours, temporal defaults and batch limits.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Union

import yaml

DATE_UNITS = ("years", "months", "days")
TIME_UNITS = ("hours", "minutes", "seconds")


@dataclass
class EngineConfig:
    """Decision engine configuration.

    Attributes:
        max_steps: Maximum node evaluations per call before the graph is
            treated as malformed.
        accept_color: Trace colour for taken nodes and edges.
        reject_color: Trace colour for pruned nodes and edges.
        default_date_unit: Unit used by date_diff when a descriptor omits one.
        default_time_unit: Unit used by time_diff when a descriptor omits one.
        date_formats: strptime formats tried after ISO-8601 for date values.
        time_formats: strptime formats tried after ISO-8601 for time values.
        max_parallel_evaluations: Worker limit for batch evaluation.
        batch_timeout_ms: Overall timeout for one batch in milliseconds.
    """

    max_steps: int = 10000
    accept_color: str = "#22c55e"
    reject_color: str = "#ef4444"
    default_date_unit: str = "years"
    default_time_unit: str = "hours"
    date_formats: List[str] = field(default_factory=lambda: ["%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y"])
    time_formats: List[str] = field(default_factory=lambda: ["%H:%M:%S", "%H:%M"])
    max_parallel_evaluations: int = 8
    batch_timeout_ms: int = 300000

    def __post_init__(self):
        """Validate engine configuration."""
        if self.max_steps < 1:
            raise ValueError(f"max_steps must be positive, got {self.max_steps}")
        if self.max_parallel_evaluations < 1:
            raise ValueError(
                f"max_parallel_evaluations must be positive, got {self.max_parallel_evaluations}"
            )
        if self.batch_timeout_ms <= 0:
            raise ValueError(f"batch_timeout_ms must be positive, got {self.batch_timeout_ms}")
        if self.default_date_unit not in DATE_UNITS:
            raise ValueError(
                f"Invalid default_date_unit: {self.default_date_unit}. Must be one of {DATE_UNITS}"
            )
        if self.default_time_unit not in TIME_UNITS:
            raise ValueError(
                f"Invalid default_time_unit: {self.default_time_unit}. Must be one of {TIME_UNITS}"
            )

    def to_dict(self) -> Dict[str, Any]:
        """Convert engine config to dictionary."""
        return {
            "max_steps": self.max_steps,
            "accept_color": self.accept_color,
            "reject_color": self.reject_color,
            "default_date_unit": self.default_date_unit,
            "default_time_unit": self.default_time_unit,
            "date_formats": list(self.date_formats),
            "time_formats": list(self.time_formats),
            "max_parallel_evaluations": self.max_parallel_evaluations,
            "batch_timeout_ms": self.batch_timeout_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngineConfig":
        """Create engine config from dictionary. Missing keys keep their defaults."""
        defaults = cls()
        return cls(
            max_steps=data.get("max_steps", defaults.max_steps),
            accept_color=data.get("accept_color", defaults.accept_color),
            reject_color=data.get("reject_color", defaults.reject_color),
            default_date_unit=data.get("default_date_unit", defaults.default_date_unit),
            default_time_unit=data.get("default_time_unit", defaults.default_time_unit),
            date_formats=data.get("date_formats", defaults.date_formats),
            time_formats=data.get("time_formats", defaults.time_formats),
            max_parallel_evaluations=data.get(
                "max_parallel_evaluations", defaults.max_parallel_evaluations
            ),
            batch_timeout_ms=data.get("batch_timeout_ms", defaults.batch_timeout_ms),
        )

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "EngineConfig":
        """Load engine config from JSON or YAML file.

        Args:
            path: Path to configuration file (.json or .yaml/.yml).

        Returns:
            Loaded engine configuration.

        Raises:
            ValueError: If file format is unsupported.
        """
        path = Path(path)
        suffix = path.suffix.lower()

        with open(path, "r", encoding="utf-8") as f:
            if suffix == ".json":
                data = json.load(f)
            elif suffix in (".yaml", ".yml"):
                data = yaml.safe_load(f)
            else:
                raise ValueError(f"Unsupported file format: {suffix}. Use .json, .yaml, or .yml")

        return cls.from_dict(data or {})

    def to_json(self, indent: int = 2) -> str:
        """Convert engine config to JSON string."""
        return json.dumps(self.to_dict(), indent=indent)

    def to_yaml(self) -> str:
        """Convert engine config to YAML string."""
        return yaml.dump(self.to_dict(), default_flow_style=False, sort_keys=False)
