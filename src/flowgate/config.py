from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

CONFIG_FILENAME = "flowgate.toml"

DEFAULT_FIX_STRATEGIES: dict[str, str] = {
    "duplication": "keep-higher-quality-version",
    "coverage-gap": "add-missing-link",
    "compliance-violation": "modify-or-escalate",
    "incomplete-task": "complete-or-defer",
    "missing-artifact": "regenerate-artifact",
    "placeholder": "fill-placeholder",
    "dependency-cycle": "break-cycle",
    "unknown-dependency": "fix-reference",
}


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    specs_dir: str = "specs"
    memory_dir: str = ".flowgate/memory"


@dataclass(slots=True)
class WorkflowConfig:
    max_fix_iterations: int = 5
    strict_gates: bool = False
    infer_section_dependencies: bool = False
    design_artifacts: list[str] = field(
        default_factory=lambda: ["spec.md", "plan.md", "tasks.md"]
    )
    min_artifact_lines: int = 3


@dataclass(slots=True)
class WorkersConfig:
    analysis_timeout_seconds: float = 180.0
    implement_timeout_seconds: float = 600.0
    failure_threshold: float = 0.5
    max_parallel_jobs: int = 4
    critical_roles: list[str] = field(default_factory=lambda: ["goal-coverage", "compliance"])


@dataclass(slots=True)
class StateConfig:
    path: str = ".flowgate/state.json"
    lock_timeout_seconds: float = 3.0


@dataclass(slots=True)
class FlowgateConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    workers: WorkersConfig = field(default_factory=WorkersConfig)
    fix_strategies: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_FIX_STRATEGIES))
    state: StateConfig = field(default_factory=StateConfig)

    @classmethod
    def default(cls) -> FlowgateConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> FlowgateConfig:
        strategies = dict(DEFAULT_FIX_STRATEGIES)
        strategies.update({str(k): str(v) for k, v in data.get("fix_strategies", {}).items()})
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            workflow=WorkflowConfig(**data.get("workflow", {})),
            workers=WorkersConfig(**data.get("workers", {})),
            fix_strategies=strategies,
            state=StateConfig(**data.get("state", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "specs_dir": self.project.specs_dir,
                "memory_dir": self.project.memory_dir,
            },
            "workflow": {
                "max_fix_iterations": self.workflow.max_fix_iterations,
                "strict_gates": self.workflow.strict_gates,
                "infer_section_dependencies": self.workflow.infer_section_dependencies,
                "design_artifacts": list(self.workflow.design_artifacts),
                "min_artifact_lines": self.workflow.min_artifact_lines,
            },
            "workers": {
                "analysis_timeout_seconds": self.workers.analysis_timeout_seconds,
                "implement_timeout_seconds": self.workers.implement_timeout_seconds,
                "failure_threshold": self.workers.failure_threshold,
                "max_parallel_jobs": self.workers.max_parallel_jobs,
                "critical_roles": list(self.workers.critical_roles),
            },
            "fix_strategies": dict(self.fix_strategies),
            "state": {
                "path": self.state.path,
                "lock_timeout_seconds": self.state.lock_timeout_seconds,
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


def _toml_key(key: str) -> str:
    if key.replace("_", "").replace("-", "").isalnum():
        return key
    return json.dumps(key, ensure_ascii=False)


def dumps_toml(config: FlowgateConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "workflow", "workers", "fix_strategies", "state"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{_toml_key(key)} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> FlowgateConfig:
    if not path.exists():
        return FlowgateConfig.default()
    return FlowgateConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: FlowgateConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
