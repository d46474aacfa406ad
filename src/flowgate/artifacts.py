from __future__ import annotations

from pathlib import Path

from flowgate.config import FlowgateConfig
from flowgate.models import Phase
from flowgate.phases import branch_name

TASKS_ARTIFACT = "tasks.md"
COVERAGE_ARTIFACT = "coverage.json"
CONSTITUTION = "constitution.md"
RECOMMENDED_MEMORY_DOCS = ("tech-stack.md", "coding-standards.md")


class PhaseWorkspace:
    """Read-only view over the artifacts a phase produces on disk."""

    def __init__(self, repo_root: Path, config: FlowgateConfig, phase: Phase | None) -> None:
        self.repo_root = repo_root.resolve()
        self.config = config
        self.phase = phase

    @property
    def specs_dir(self) -> Path:
        return self.repo_root / self.config.project.specs_dir

    @property
    def memory_dir(self) -> Path:
        return self.repo_root / self.config.project.memory_dir

    @property
    def feature_dir(self) -> Path | None:
        if self.phase is None:
            return None
        return self.specs_dir / branch_name(self.phase.id, self.phase.name)

    def artifact_path(self, name: str) -> Path | None:
        feature_dir = self.feature_dir
        if feature_dir is None:
            return None
        return feature_dir / name

    def relative(self, path: Path) -> str:
        try:
            return str(path.relative_to(self.repo_root)).replace("\\", "/")
        except ValueError:
            return str(path)

    def artifact_ref(self, name: str) -> str:
        path = self.artifact_path(name)
        return self.relative(path) if path is not None else name

    def exists(self, name: str) -> bool:
        path = self.artifact_path(name)
        return path is not None and path.is_file()

    def read_text(self, name: str) -> str | None:
        path = self.artifact_path(name)
        if path is None or not path.is_file():
            return None
        return path.read_text(encoding="utf-8")

    @staticmethod
    def content_lines(content: str) -> int:
        count = 0
        for raw_line in content.splitlines():
            line = raw_line.strip()
            if not line or line.startswith("#") or line.startswith("<!--"):
                continue
            count += 1
        return count

    def is_populated(self, name: str) -> bool:
        content = self.read_text(name)
        if content is None:
            return False
        return self.content_lines(content) >= max(1, int(self.config.workflow.min_artifact_lines))

    def missing_design_artifacts(self) -> list[str]:
        return [
            name for name in self.config.workflow.design_artifacts if not self.is_populated(name)
        ]
