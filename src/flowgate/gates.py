from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from flowgate.artifacts import (
    CONSTITUTION,
    COVERAGE_ARTIFACT,
    RECOMMENDED_MEMORY_DOCS,
    TASKS_ARTIFACT,
    PhaseWorkspace,
)
from flowgate.coverage import RequirementMap, compute_coverage
from flowgate.errors import FlowgateError
from flowgate.models import Finding, GoalCoverageEntry, sort_findings
from flowgate.tasks import TaskGraph

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"(?<!\w)(TODO|TBD|TKTK|\?\?\?|<placeholder>)(?!\w)")
AGENT_DIRECTIVE_PATTERN = re.compile(r"^>\s*\*\*Agents?\*\*:", re.MULTILINE)


@dataclass(slots=True)
class GateResult:
    name: str
    passed: bool
    findings: list[Finding] = field(default_factory=list)
    strict: bool = False

    @property
    def blocking(self) -> list[Finding]:
        return [finding for finding in self.findings if finding.blocking]

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "pass": self.passed,
            "strict": self.strict,
            "findings": [finding.to_dict() for finding in self.findings],
        }


class GateContext:
    """Everything a gate may look at. Gates never write through it."""

    def __init__(
        self,
        workspace: PhaseWorkspace,
        *,
        deferred_goals: dict[str, str] | None = None,
    ) -> None:
        self.workspace = workspace
        self.deferred_goals = dict(deferred_goals or {})

    @property
    def goals(self) -> list[str]:
        phase = self.workspace.phase
        return list(phase.goals) if phase is not None else []

    def load_graph(self) -> TaskGraph | None:
        path = self.workspace.artifact_path(TASKS_ARTIFACT)
        if path is None or not path.is_file():
            return None
        return TaskGraph.load(
            path,
            infer_section_dependencies=self.workspace.config.workflow.infer_section_dependencies,
        )

    def requirement_map(self) -> RequirementMap:
        path = self.workspace.artifact_path(COVERAGE_ARTIFACT)
        if path is None:
            return RequirementMap()
        try:
            return RequirementMap.load(path)
        except ValueError as exc:
            logger.warning("Unreadable coverage map %s: %s", path, exc)
            return RequirementMap()

    def coverage(self, graph: TaskGraph | None = None) -> list[GoalCoverageEntry]:
        if graph is None:
            graph = self.load_graph()
        return compute_coverage(self.goals, self.requirement_map(), graph, self.deferred_goals)


class Gate(ABC):
    name: str = ""
    step: str | None = None

    @abstractmethod
    def evaluate(self, context: GateContext) -> list[Finding]:
        raise NotImplementedError


def _no_phase_finding(gate: str) -> Finding:
    return Finding(
        id=f"{gate}:phase",
        category="missing-artifact",
        severity="critical",
        location="phase",
        description="no active phase",
        remediation="start a phase before running this gate",
    )


class DesignGate(Gate):
    name = "design"
    step = "design"

    def evaluate(self, context: GateContext) -> list[Finding]:
        workspace = context.workspace
        if workspace.phase is None:
            return [_no_phase_finding(self.name)]
        findings: list[Finding] = []
        for artifact in workspace.missing_design_artifacts():
            state = "empty" if workspace.exists(artifact) else "missing"
            findings.append(
                Finding(
                    id=f"design:{artifact}",
                    category="missing-artifact",
                    severity="critical",
                    location=workspace.artifact_ref(artifact),
                    description=f"design artifact {artifact} is {state}",
                    remediation=f"generate {artifact} for the phase goals",
                )
            )
        return findings


class AnalyzeGate(Gate):
    name = "analyze"
    step = "analyze"

    def evaluate(self, context: GateContext) -> list[Finding]:
        workspace = context.workspace
        if workspace.phase is None:
            return [_no_phase_finding(self.name)]
        tasks_ref = workspace.artifact_ref(TASKS_ARTIFACT)
        graph = context.load_graph()
        if graph is None:
            return [
                Finding(
                    id="analyze:tasks",
                    category="missing-artifact",
                    severity="critical",
                    location=tasks_ref,
                    description="task list is missing",
                    remediation="generate tasks.md",
                )
            ]
        findings: list[Finding] = []
        if not graph.tasks:
            findings.append(
                Finding(
                    id="analyze:tasks-empty",
                    category="missing-artifact",
                    severity="critical",
                    location=tasks_ref,
                    description="task list contains no tasks",
                    remediation="add checkbox tasks with T### ids",
                )
            )
        for cycle in graph.cycles():
            findings.append(
                Finding(
                    id=f"analyze:cycle:{cycle[0]}",
                    category="dependency-cycle",
                    severity="critical",
                    location=f"{tasks_ref}:{cycle[0]}",
                    description=f"circular dependency {' -> '.join(cycle)}",
                    remediation="remove one dependency from the cycle",
                )
            )
        for task_id, dep_id in graph.unknown_dependencies():
            findings.append(
                Finding(
                    id=f"analyze:unknown:{task_id}:{dep_id}",
                    category="unknown-dependency",
                    severity="critical",
                    location=f"{tasks_ref}:{task_id}",
                    description=f"task {task_id} depends on unknown task {dep_id}",
                    remediation=f"fix or remove the reference to {dep_id}",
                )
            )
        coverage_ref = workspace.artifact_ref(COVERAGE_ARTIFACT)
        for entry in context.coverage(graph):
            if entry.status != "missing":
                continue
            findings.append(
                Finding(
                    id=f"analyze:coverage:{entry.goal_id}",
                    category="coverage-gap",
                    severity="high",
                    location=f"{coverage_ref}:{entry.goal_id}",
                    description=f"goal {entry.goal_id} has no mapped requirement: {entry.goal}",
                    remediation="map the goal to at least one requirement",
                )
            )
        return findings


class ImplementGate(Gate):
    name = "implement"
    step = "implement"

    def evaluate(self, context: GateContext) -> list[Finding]:
        workspace = context.workspace
        if workspace.phase is None:
            return [_no_phase_finding(self.name)]
        tasks_ref = workspace.artifact_ref(TASKS_ARTIFACT)
        graph = context.load_graph()
        if graph is None:
            return [
                Finding(
                    id="implement:tasks",
                    category="missing-artifact",
                    severity="critical",
                    location=tasks_ref,
                    description="task list is missing",
                    remediation="generate tasks.md",
                )
            ]
        findings: list[Finding] = []
        for task in graph.ordered():
            if task.status == "complete":
                continue
            if task.status == "deferred" and task.reason:
                continue
            if task.status == "pending":
                description = f"task {task.id} incomplete"
            elif task.status == "blocked":
                description = f"task {task.id} blocked: {task.reason or 'no reason recorded'}"
            else:
                description = f"task {task.id} deferred without a reason"
            findings.append(
                Finding(
                    id=f"implement:{task.id}",
                    category="incomplete-task",
                    severity="critical",
                    location=f"{tasks_ref}:{task.id}",
                    description=description,
                    remediation="complete the task or defer it with a reason",
                )
            )
        return findings


class MemoryGate(Gate):
    """Project memory (constitution and standards) is present and filled in."""

    name = "memory"
    step = None

    def evaluate(self, context: GateContext) -> list[Finding]:
        workspace = context.workspace
        memory_dir = workspace.memory_dir
        memory_ref = workspace.relative(memory_dir)
        if not memory_dir.is_dir():
            return [
                Finding(
                    id="memory:dir",
                    category="missing-artifact",
                    severity="critical",
                    location=memory_ref,
                    description="memory directory is missing",
                    remediation=f"create {memory_ref} with {CONSTITUTION}",
                )
            ]
        findings: list[Finding] = []
        constitution = memory_dir / CONSTITUTION
        if not constitution.is_file():
            findings.append(
                Finding(
                    id="memory:constitution",
                    category="missing-artifact",
                    severity="critical",
                    location=workspace.relative(constitution),
                    description=f"{CONSTITUTION} is missing",
                    remediation="write the project constitution",
                )
            )
        elif not AGENT_DIRECTIVE_PATTERN.search(constitution.read_text(encoding="utf-8")):
            findings.append(
                Finding(
                    id="memory:agent-directive",
                    category="compliance-violation",
                    severity="medium",
                    location=workspace.relative(constitution),
                    description="constitution has no agent directive header",
                    remediation="add a '> **Agent**:' directive near the top",
                )
            )

        for path in sorted(memory_dir.glob("*.md")):
            for line_number, line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
                match = PLACEHOLDER_PATTERN.search(line)
                if not match:
                    continue
                location = f"{workspace.relative(path)}:{line_number}"
                findings.append(
                    Finding(
                        id=f"memory:placeholder:{location}",
                        category="placeholder",
                        severity="critical",
                        location=location,
                        description=f"unresolved placeholder {match.group(1)}",
                        remediation="replace the placeholder with real content",
                    )
                )

        if not any((memory_dir / name).is_file() for name in RECOMMENDED_MEMORY_DOCS):
            findings.append(
                Finding(
                    id="memory:recommended",
                    category="missing-artifact",
                    severity="low",
                    location=memory_ref,
                    description="no " + " or ".join(RECOMMENDED_MEMORY_DOCS) + " found",
                    remediation="document the tech stack or coding standards",
                )
            )
        return findings


class CoverageGate(Gate):
    """Every phase goal is covered by completed work or explicitly deferred."""

    name = "coverage"
    step = None

    def evaluate(self, context: GateContext) -> list[Finding]:
        workspace = context.workspace
        if workspace.phase is None:
            return [_no_phase_finding(self.name)]
        coverage_ref = workspace.artifact_ref(COVERAGE_ARTIFACT)
        findings: list[Finding] = []
        for entry in context.coverage():
            if entry.status in {"covered", "deferred"}:
                continue
            findings.append(
                Finding(
                    id=f"coverage:{entry.goal_id}",
                    category="coverage-gap",
                    severity="critical",
                    location=f"{coverage_ref}:{entry.goal_id}",
                    description=f"goal {entry.goal_id} coverage is {entry.status}: {entry.reason}",
                    remediation="link the goal to completed tasks or defer it",
                )
            )
        return findings


class VerifyGate(Gate):
    name = "verify"
    step = "verify"

    def evaluate(self, context: GateContext) -> list[Finding]:
        if context.workspace.phase is None:
            return [_no_phase_finding(self.name)]
        findings = ImplementGate().evaluate(context) + CoverageGate().evaluate(context)
        # Compliance only applies once the project keeps a memory directory.
        if context.workspace.memory_dir.is_dir():
            findings.extend(
                finding for finding in MemoryGate().evaluate(context) if finding.blocking
            )
        return findings


GATES: dict[str, Gate] = {
    gate.name: gate
    for gate in (
        DesignGate(),
        AnalyzeGate(),
        ImplementGate(),
        CoverageGate(),
        MemoryGate(),
        VerifyGate(),
    )
}
GATE_ALIASES = {"memory-compliance": "memory"}


def gate_for_step(step: str) -> Gate | None:
    for gate in GATES.values():
        if gate.step == step:
            return gate
    return None


class GateValidator:
    def __init__(self, context: GateContext, *, strict: bool = False) -> None:
        self.context = context
        self.strict = strict

    @staticmethod
    def names() -> list[str]:
        return sorted([*GATES, *GATE_ALIASES])

    def check(self, name: str, *, strict: bool | None = None) -> GateResult:
        gate = GATES.get(GATE_ALIASES.get(name, name))
        if gate is None:
            raise FlowgateError(
                f"Unknown gate: {name}; expected one of {', '.join(self.names())}",
                gate=name,
                recovery_actions=("diagnose",),
            )
        strict = self.strict if strict is None else strict
        findings = sort_findings(gate.evaluate(self.context))
        if strict:
            passed = not findings
        else:
            passed = not any(finding.blocking for finding in findings)
        logger.debug("gate %s passed=%s findings=%d", name, passed, len(findings))
        return GateResult(name=name, passed=passed, findings=findings, strict=strict)
