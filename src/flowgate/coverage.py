from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from flowgate.models import GoalCoverageEntry
from flowgate.tasks import TaskGraph


@dataclass(slots=True)
class RequirementMap:
    """Goal -> requirement and requirement -> task links supplied by the analyze step.

    Goal keys may be the positional id (``G1``) or the goal text itself.
    """

    goal_requirements: dict[str, list[str]] = field(default_factory=dict)
    requirement_tasks: dict[str, list[str]] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> RequirementMap:
        def _links(raw: Any) -> dict[str, list[str]]:
            if not isinstance(raw, dict):
                return {}
            links: dict[str, list[str]] = {}
            for key, values in raw.items():
                if isinstance(values, str):
                    values = [values]
                if not isinstance(values, list):
                    continue
                links[str(key)] = [str(item) for item in values if str(item).strip()]
            return links

        return cls(
            goal_requirements=_links(payload.get("goals")),
            requirement_tasks=_links(payload.get("requirements")),
        )

    @classmethod
    def load(cls, path: Path) -> RequirementMap:
        if not path.is_file():
            return cls()
        payload = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(payload, dict):
            return cls()
        return cls.from_dict(payload)

    def to_dict(self) -> dict[str, Any]:
        return {
            "goals": {key: list(value) for key, value in self.goal_requirements.items()},
            "requirements": {key: list(value) for key, value in self.requirement_tasks.items()},
        }

    def requirements_for(self, goal_id: str, goal: str) -> list[str]:
        if goal_id in self.goal_requirements:
            return list(self.goal_requirements[goal_id])
        return list(self.goal_requirements.get(goal, []))


def compute_coverage(
    goals: list[str],
    requirement_map: RequirementMap,
    graph: TaskGraph | None,
    deferred: dict[str, str] | None = None,
) -> list[GoalCoverageEntry]:
    """Derive one coverage entry per goal. Pure; nothing is cached or written."""
    deferred = deferred or {}
    entries: list[GoalCoverageEntry] = []
    for index, goal in enumerate(goals, start=1):
        goal_id = f"G{index}"
        requirements = requirement_map.requirements_for(goal_id, goal)
        tasks: list[str] = []
        for requirement in requirements:
            for task_id in requirement_map.requirement_tasks.get(requirement, []):
                if task_id not in tasks:
                    tasks.append(task_id)

        entry = GoalCoverageEntry(goal_id=goal_id, goal=goal, requirements=requirements, tasks=tasks)
        override = deferred.get(goal_id, deferred.get(goal))
        if override is not None:
            entry.status = "deferred"
            entry.reason = override
        elif not requirements:
            entry.status = "missing"
            entry.reason = "no requirement mapped"
        else:
            gaps = _requirement_gaps(requirements, requirement_map, graph)
            if gaps:
                entry.status = "partial"
                entry.reason = "; ".join(gaps)
            else:
                entry.status = "covered"
        entries.append(entry)
    return entries


def _requirement_gaps(
    requirements: list[str], requirement_map: RequirementMap, graph: TaskGraph | None
) -> list[str]:
    gaps: list[str] = []
    for requirement in requirements:
        task_ids = requirement_map.requirement_tasks.get(requirement, [])
        if not task_ids:
            gaps.append(f"{requirement} has no task")
            continue
        incomplete = [
            task_id
            for task_id in task_ids
            if graph is None or task_id not in graph.tasks or graph.tasks[task_id].status != "complete"
        ]
        if incomplete:
            gaps.append(f"{requirement} waiting on {', '.join(incomplete)}")
    return gaps


def coverage_summary(entries: list[GoalCoverageEntry]) -> dict[str, int]:
    summary = {"covered": 0, "partial": 0, "missing": 0, "deferred": 0}
    for entry in entries:
        summary[entry.status] += 1
    return summary
