from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from flowgate.errors import TaskNotFound, TransitionError
from flowgate.state.store import atomic_write_text

logger = logging.getLogger(__name__)

TaskStatus = Literal["pending", "complete", "blocked", "deferred"]
QueueStatus = Literal["ready", "exhausted-complete", "exhausted-blocked"]

TASK_LINE_PATTERN = re.compile(r"^(?P<indent>\s*)(?P<bullet>[-*])\s*\[(?P<mark>[ xXbB~\-])\]\s*(?P<body>.*)$")
TASK_ID_PATTERN = re.compile(r"\bT(\d{3})([a-z]?)\b")
TASK_ID_EXACT = re.compile(r"^T\d{3}[a-z]?$")
TASK_RANGE_PATTERN = re.compile(r"^T(\d{3})\.\.T?(\d{3})$")
DEPENDENCY_PATTERN = re.compile(
    r"(?:depends on|after|requires)\s+((?:T\d{3}[a-z]?(?:\s*(?:,|and)\s*)?)+)",
    re.IGNORECASE,
)
REASON_PATTERN = re.compile(r"\s*[\[(](blocked|deferred):\s*([^\])]+)[\])]", re.IGNORECASE)
USER_STORY_PATTERN = re.compile(r"\[(US\d+)\]")
MARKER_PATTERN = re.compile(r"\[(?:P|V|US\d+)\]\s*")
FILE_PATTERN = re.compile(r"(?<![\w/.])((?:[\w.\-]+/)+[\w.\-]*\.[A-Za-z0-9]+)")
SECTION_PATTERN = re.compile(r"^##\s+(?:Phase\s+(\d+)\s*[:\-]\s*)?(.+?)\s*$")

MARK_FOR_STATUS: dict[str, str] = {
    "pending": " ",
    "complete": "x",
    "blocked": "b",
    "deferred": "~",
}
STATUS_FOR_MARK: dict[str, str] = {
    " ": "pending",
    "x": "complete",
    "b": "blocked",
    "~": "deferred",
    "-": "deferred",
}


def task_sort_key(task_id: str) -> tuple[int, str]:
    match = TASK_ID_PATTERN.fullmatch(task_id)
    if not match:
        return (10_000, task_id)
    return (int(match.group(1)), match.group(2))


@dataclass(slots=True)
class Task:
    id: str
    description: str
    status: TaskStatus = "pending"
    depends_on: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    parallel: bool = False
    verification: bool = False
    user_story: str | None = None
    section: str | None = None
    reason: str | None = None
    line: int = 0

    @property
    def resolved(self) -> bool:
        return self.status in {"complete", "deferred"}

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "status": self.status,
            "depends_on": list(self.depends_on),
            "files": list(self.files),
            "parallel": self.parallel,
            "verification": self.verification,
            "user_story": self.user_story,
            "section": self.section,
            "reason": self.reason,
        }


@dataclass(slots=True)
class QueueState:
    status: QueueStatus
    eligible: list[str]
    newly_eligible: list[str]
    remaining: int
    completed: int
    total: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "eligible": list(self.eligible),
            "newly_eligible": list(self.newly_eligible),
            "remaining": self.remaining,
            "completed": self.completed,
            "total": self.total,
        }


def parse_task_line(line: str, *, line_number: int = 0, section: str | None = None) -> Task | None:
    match = TASK_LINE_PATTERN.match(line)
    if not match:
        return None
    body = match.group("body")
    id_match = TASK_ID_PATTERN.search(body)
    if not id_match:
        return None
    task_id = id_match.group(0)

    reason = None
    status = STATUS_FOR_MARK[match.group("mark").lower()]
    reason_match = REASON_PATTERN.search(body)
    if reason_match and status in {"blocked", "deferred"}:
        reason = reason_match.group(2).strip()

    text = REASON_PATTERN.sub("", body).replace(task_id, "", 1)
    description = MARKER_PATTERN.sub("", text).strip()

    depends_on: list[str] = []
    for dep_match in DEPENDENCY_PATTERN.finditer(body):
        for dep_id in TASK_ID_PATTERN.finditer(dep_match.group(1)):
            if dep_id.group(0) != task_id and dep_id.group(0) not in depends_on:
                depends_on.append(dep_id.group(0))

    files: list[str] = []
    for file_match in FILE_PATTERN.finditer(body.replace("`", " ")):
        path = file_match.group(1).rstrip(".,;:")
        if path not in files:
            files.append(path)

    story = USER_STORY_PATTERN.search(body)
    return Task(
        id=task_id,
        description=description,
        status=status,  # type: ignore[arg-type]
        depends_on=depends_on,
        files=files,
        parallel="[P]" in body,
        verification="[V]" in body,
        user_story=story.group(1) if story else None,
        section=section,
        reason=reason,
        line=line_number,
    )


class TaskGraph:
    """Dependency graph over the tasks of a tasks.md list.

    The markdown artifact is the source of truth: marks rewrite the checkbox
    on the task's own line and leave every other line untouched.
    """

    def __init__(
        self,
        tasks: list[Task],
        *,
        lines: list[str] | None = None,
        title: str | None = None,
        infer_section_dependencies: bool = False,
    ) -> None:
        self.tasks: dict[str, Task] = {}
        for task in tasks:
            if task.id in self.tasks:
                logger.warning("Duplicate task id %s ignored (line %s)", task.id, task.line)
                continue
            self.tasks[task.id] = task
        self.lines = list(lines or [])
        self.title = title
        self.infer_section_dependencies = infer_section_dependencies
        self._section_order: list[str] = []
        for task in self.tasks.values():
            if task.section is not None and task.section not in self._section_order:
                self._section_order.append(task.section)

    @classmethod
    def parse(cls, content: str, *, infer_section_dependencies: bool = False) -> TaskGraph:
        lines = content.splitlines()
        tasks: list[Task] = []
        title: str | None = None
        section: str | None = None
        for index, line in enumerate(lines):
            stripped = line.strip()
            if stripped.startswith("# ") and title is None:
                title = stripped[2:].strip()
                continue
            section_match = SECTION_PATTERN.match(stripped)
            if section_match:
                number, name = section_match.groups()
                section = f"Phase {number}: {name}" if number else name
                continue
            task = parse_task_line(line, line_number=index + 1, section=section)
            if task is not None:
                tasks.append(task)
        return cls(
            tasks,
            lines=lines,
            title=title,
            infer_section_dependencies=infer_section_dependencies,
        )

    @classmethod
    def load(cls, path: Path, *, infer_section_dependencies: bool = False) -> TaskGraph:
        return cls.parse(
            path.read_text(encoding="utf-8"),
            infer_section_dependencies=infer_section_dependencies,
        )

    def render(self) -> str:
        lines = list(self.lines)
        for task in self.tasks.values():
            index = task.line - 1
            if 0 <= index < len(lines):
                lines[index] = self._render_line(lines[index], task)
        return "\n".join(lines) + "\n"

    @staticmethod
    def _render_line(line: str, task: Task) -> str:
        match = TASK_LINE_PATTERN.match(line)
        if not match:
            return line
        body = REASON_PATTERN.sub("", match.group("body")).rstrip()
        if task.status in {"blocked", "deferred"} and task.reason:
            body = f"{body} ({task.status}: {task.reason})"
        return f"{match.group('indent')}{match.group('bullet')} [{MARK_FOR_STATUS[task.status]}] {body}"

    def save(self, path: Path) -> None:
        atomic_write_text(path, self.render())

    def ordered(self) -> list[Task]:
        return sorted(self.tasks.values(), key=lambda task: task_sort_key(task.id))

    def get(self, task_id: str) -> Task:
        task = self.tasks.get(task_id)
        if task is None:
            raise TaskNotFound(f"Task {task_id} not found.", task_id=task_id)
        return task

    def dependencies(self, task: Task) -> list[str]:
        if task.depends_on or not self.infer_section_dependencies or task.section is None:
            return list(task.depends_on)
        position = self._section_order.index(task.section)
        if position == 0:
            return []
        previous = self._section_order[position - 1]
        return [item.id for item in self.ordered() if item.section == previous]

    def _dependencies_met(self, task: Task) -> bool:
        for dep_id in self.dependencies(task):
            dependency = self.tasks.get(dep_id)
            if dependency is None or dependency.status != "complete":
                return False
        return True

    def eligible(self) -> list[Task]:
        return [
            task
            for task in self.ordered()
            if task.status == "pending" and self._dependencies_met(task)
        ]

    def next_task(self, *, verification: bool = False) -> Task | None:
        for task in self.eligible():
            if verification and not task.verification:
                continue
            return task
        return None

    def next_batch(self, *, limit: int | None = None) -> list[Task]:
        """Lowest eligible task plus every other eligible [P] task with disjoint file targets."""
        eligible = self.eligible()
        if not eligible:
            return []
        batch = [eligible[0]]
        claimed = set(eligible[0].files)
        for task in eligible[1:]:
            if limit is not None and len(batch) >= limit:
                break
            if not task.parallel:
                continue
            if claimed & set(task.files):
                continue
            batch.append(task)
            claimed.update(task.files)
        return batch

    def queue_status(self) -> QueueStatus:
        if self.eligible():
            return "ready"
        if any(not task.resolved for task in self.tasks.values()):
            return "exhausted-blocked"
        return "exhausted-complete"

    def queue_state(self, newly_eligible: list[str] | None = None) -> QueueState:
        progress = self.progress()
        return QueueState(
            status=self.queue_status(),
            eligible=[task.id for task in self.eligible()],
            newly_eligible=list(newly_eligible or []),
            remaining=progress["pending"] + progress["blocked"],
            completed=progress["complete"],
            total=progress["total"],
        )

    def mark_complete(self, task_id: str) -> QueueState:
        task = self.get(task_id)
        before = {item.id for item in self.eligible()}
        task.status = "complete"
        task.reason = None
        after = [item.id for item in self.eligible()]
        return self.queue_state([item for item in after if item not in before])

    def mark_blocked(self, task_id: str, reason: str) -> QueueState:
        task = self.get(task_id)
        if task.status == "complete":
            raise TransitionError(
                f"Task {task_id} is already complete and cannot be blocked.",
                task_id=task_id,
            )
        task.status = "blocked"
        task.reason = reason.strip() or "unspecified"
        return self.queue_state()

    def defer(self, task_id: str, reason: str) -> QueueState:
        task = self.get(task_id)
        if task.status == "complete":
            raise TransitionError(
                f"Task {task_id} is already complete and cannot be deferred.",
                task_id=task_id,
            )
        task.status = "deferred"
        task.reason = reason.strip() or None
        return self.queue_state()

    def progress(self) -> dict[str, Any]:
        counts = {"pending": 0, "complete": 0, "blocked": 0, "deferred": 0}
        for task in self.tasks.values():
            counts[task.status] += 1
        total = len(self.tasks)
        counts["total"] = total
        counts["percentage"] = round(counts["complete"] * 100 / total) if total else 0
        return counts

    def unknown_dependencies(self) -> list[tuple[str, str]]:
        missing: list[tuple[str, str]] = []
        for task in self.ordered():
            for dep_id in task.depends_on:
                if dep_id not in self.tasks:
                    missing.append((task.id, dep_id))
        return missing

    def cycles(self) -> list[list[str]]:
        visited: set[str] = set()
        on_stack: list[str] = []
        found: list[list[str]] = []
        seen_cycles: set[frozenset[str]] = set()

        def visit(task_id: str) -> None:
            if task_id in on_stack:
                cycle = on_stack[on_stack.index(task_id) :] + [task_id]
                key = frozenset(cycle)
                if key not in seen_cycles:
                    seen_cycles.add(key)
                    found.append(cycle)
                return
            if task_id in visited or task_id not in self.tasks:
                return
            visited.add(task_id)
            on_stack.append(task_id)
            for dep_id in self.dependencies(self.tasks[task_id]):
                visit(dep_id)
            on_stack.pop()

        for task in self.ordered():
            visit(task.id)
        return found

    def expand_ids(self, raw_ids: list[str] | str) -> list[str]:
        """Normalize ids, accepting comma separated lists and T001..T005 ranges."""
        tokens = raw_ids.split(",") if isinstance(raw_ids, str) else list(raw_ids)
        expanded: list[str] = []
        for token in (item.strip() for item in tokens):
            if not token:
                continue
            range_match = TASK_RANGE_PATTERN.match(token)
            if range_match:
                start, end = int(range_match.group(1)), int(range_match.group(2))
                if start > end:
                    start, end = end, start
                candidates = [f"T{number:03d}" for number in range(start, end + 1)]
                expanded.extend(item for item in candidates if item in self.tasks)
                continue
            if not TASK_ID_EXACT.match(token):
                raise TaskNotFound(f"Invalid task id {token!r}.", task_id=token)
            expanded.append(token)
        deduped: list[str] = []
        for task_id in expanded:
            if task_id not in deduped:
                deduped.append(task_id)
        return deduped
