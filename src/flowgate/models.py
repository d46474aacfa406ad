from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

STEPS: tuple[str, ...] = ("design", "analyze", "implement", "verify")
STEP_INDEX: dict[str, int] = {name: index for index, name in enumerate(STEPS)}

StepName = Literal["design", "analyze", "implement", "verify"]
StepStatus = Literal["in-progress", "complete", "blocked", "failed"]
PhaseStatus = Literal["not-started", "in-progress", "awaiting-human", "complete"]
Severity = Literal["critical", "high", "medium", "low"]
CoverageStatus = Literal["covered", "partial", "missing", "deferred"]

STEP_STATUSES: tuple[str, ...] = ("in-progress", "complete", "blocked", "failed")
PHASE_STATUSES: tuple[str, ...] = ("not-started", "in-progress", "awaiting-human", "complete")
SEVERITY_RANK: dict[str, int] = {"critical": 3, "high": 2, "medium": 1, "low": 0}


def severity_rank(severity: str) -> int:
    return SEVERITY_RANK.get(str(severity).lower(), -1)


@dataclass(slots=True)
class Finding:
    id: str
    category: str
    severity: Severity
    location: str
    description: str
    remediation: str = ""

    @property
    def artifact(self) -> str:
        """The artifact a fix for this finding is allowed to mutate."""
        return self.location.split(":", maxsplit=1)[0]

    @property
    def blocking(self) -> bool:
        return self.severity == "critical"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category,
            "severity": self.severity,
            "location": self.location,
            "description": self.description,
            "remediation": self.remediation,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Finding:
        severity = str(payload.get("severity", "medium")).lower()
        if severity not in SEVERITY_RANK:
            severity = "medium"
        return cls(
            id=str(payload["id"]),
            category=str(payload.get("category", "general")),
            severity=severity,  # type: ignore[arg-type]
            location=str(payload.get("location", "")),
            description=str(payload.get("description", "")),
            remediation=str(payload.get("remediation", "")),
        )


def sort_findings(findings: list[Finding]) -> list[Finding]:
    return sorted(findings, key=lambda item: (-severity_rank(item.severity), item.location, item.id))


@dataclass(slots=True)
class Phase:
    id: str
    name: str
    goals: list[str] = field(default_factory=list)
    branch: str | None = None
    status: PhaseStatus = "not-started"

    def goal_ids(self) -> list[str]:
        return [f"G{index}" for index in range(1, len(self.goals) + 1)]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "goals": list(self.goals),
            "branch": self.branch,
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Phase | None:
        try:
            status = str(payload.get("status", "not-started"))
            goals = payload.get("goals", [])
            if status not in PHASE_STATUSES or not isinstance(goals, list):
                return None
            return cls(
                id=str(payload["id"]),
                name=str(payload["name"]),
                goals=[str(goal) for goal in goals],
                branch=payload.get("branch"),
                status=status,  # type: ignore[arg-type]
            )
        except (KeyError, TypeError, AttributeError):
            return None


@dataclass(slots=True)
class GoalCoverageEntry:
    goal_id: str
    goal: str
    requirements: list[str] = field(default_factory=list)
    tasks: list[str] = field(default_factory=list)
    status: CoverageStatus = "missing"
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "goal_id": self.goal_id,
            "goal": self.goal,
            "requirements": list(self.requirements),
            "tasks": list(self.tasks),
            "status": self.status,
            "reason": self.reason,
        }
