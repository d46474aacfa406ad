from __future__ import annotations

import logging
import re
from collections.abc import Callable
from pathlib import Path
from typing import Any

from flowgate.artifacts import TASKS_ARTIFACT, PhaseWorkspace
from flowgate.autofix import AUTOFIX_PATH, AutoFixLoop, AutoFixOutcome
from flowgate.collaborators import ContentGenerator, Fixer, HumanGate
from flowgate.config import CONFIG_FILENAME, FlowgateConfig, load_config
from flowgate.errors import (
    FlowgateError,
    GateFailure,
    OwnershipViolation,
    StateCorruption,
    TransitionError,
)
from flowgate.gates import GateContext, GateResult, GateValidator, gate_for_step
from flowgate.models import STEP_INDEX, STEP_STATUSES, STEPS, Finding, Phase
from flowgate.phases import branch_name, insert_phase_id, is_phase_id, next_phase_id, phase_display_name
from flowgate.state.store import StateStore, owner_of, utcnow_iso
from flowgate.tasks import Task, TaskGraph
from flowgate.workers import CoordinatorResult, WorkerCoordinator, WorkerJob

logger = logging.getLogger(__name__)

FEATURE_DIR_PATTERN = re.compile(r"^(\d{4})-(.+)$")
RESET_PATHS = ("implement", "coverage", AUTOFIX_PATH, "human")
CHECK_JOBS: dict[str, list[tuple[str, str]]] = {
    "analyze": [("consistency", "analyze"), ("compliance", "memory")],
    "verify": [("task-completion", "implement"), ("goal-coverage", "coverage"), ("compliance", "memory")],
}


class LifecycleController:
    """Entry points for the external driver.

    Every call first re-syncs from the state store and the phase artifacts,
    so a driver that lost its context can call any entry point and get the
    same answer an uninterrupted run would have given.
    """

    def __init__(
        self,
        repo_root: Path,
        config: FlowgateConfig | None = None,
        *,
        store: StateStore | None = None,
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.config = config or load_config(self.repo_root / CONFIG_FILENAME)
        self.store = store or StateStore(
            self.repo_root / self.config.state.path,
            lock_timeout_seconds=self.config.state.lock_timeout_seconds,
        )
        self.last_healed: list[str] = []

    # -- views ---------------------------------------------------------------

    def phase(self) -> Phase | None:
        raw = self.store.get("phase", None)
        return Phase.from_dict(raw) if isinstance(raw, dict) else None

    def step(self) -> dict[str, Any]:
        raw = self.store.get("step", {})
        return raw if isinstance(raw, dict) else {}

    def workspace(self, phase: Phase | None = None) -> PhaseWorkspace:
        return PhaseWorkspace(self.repo_root, self.config, phase if phase is not None else self.phase())

    def validator(self, phase: Phase | None = None) -> GateValidator:
        deferred = self.store.get("coverage.deferred", {})
        context = GateContext(
            self.workspace(phase),
            deferred_goals=deferred if isinstance(deferred, dict) else {},
        )
        return GateValidator(context, strict=self.config.workflow.strict_gates)

    def graph(self, phase: Phase | None = None) -> TaskGraph | None:
        return self.validator(phase).context.load_graph()

    def coordinator(self, timeout_seconds: float | None = None) -> WorkerCoordinator:
        workers = self.config.workers
        return WorkerCoordinator(
            default_timeout_seconds=timeout_seconds or workers.analysis_timeout_seconds,
            failure_threshold=workers.failure_threshold,
            max_parallel=workers.max_parallel_jobs,
            critical_roles=workers.critical_roles,
            on_event=self.store.record_event,
        )

    # -- resumability ----------------------------------------------------------

    def _archived_ids(self, data: dict[str, Any]) -> set[str]:
        history = data.get("history")
        phases = history.get("phases", []) if isinstance(history, dict) else []
        return {str(item.get("id")) for item in phases if isinstance(item, dict)}

    def _discover_phase(self, archived: set[str]) -> Phase | None:
        specs_dir = self.workspace(None).specs_dir
        if not specs_dir.is_dir():
            return None
        candidates: list[tuple[str, str]] = []
        for child in specs_dir.iterdir():
            match = FEATURE_DIR_PATTERN.match(child.name)
            if child.is_dir() and match and match.group(1) not in archived:
                candidates.append((match.group(1), match.group(2)))
        if not candidates:
            return None
        phase_id, slug = max(candidates)
        return Phase(
            id=phase_id,
            name=phase_display_name(slug),
            branch=f"{phase_id}-{slug}",
            status="in-progress",
        )

    def derive_step(self, phase: Phase) -> str:
        """Best guess of the current step from artifacts alone."""
        workspace = self.workspace(phase)
        if workspace.missing_design_artifacts():
            return "design"
        graph = self.graph(phase)
        if graph is None or not graph.tasks:
            return "design"
        progress = graph.progress()
        if progress["pending"] == 0 and progress["blocked"] == 0:
            return "verify"
        if progress["complete"] or progress["blocked"] or progress["deferred"]:
            return "implement"
        return "analyze"

    def _has_evidence_for(self, phase: Phase, step: str) -> bool:
        workspace = self.workspace(phase)
        if STEP_INDEX[step] >= STEP_INDEX["analyze"] and workspace.missing_design_artifacts():
            return False
        if STEP_INDEX[step] >= STEP_INDEX["implement"] and not workspace.exists(TASKS_ARTIFACT):
            return False
        return True

    @staticmethod
    def _valid_step(step: Any) -> bool:
        return (
            isinstance(step, dict)
            and step.get("current") in STEP_INDEX
            and step.get("status") in STEP_STATUSES
            and step.get("index", STEP_INDEX.get(step.get("current"), -1)) == STEP_INDEX[step["current"]]
        )

    def _sync(self) -> None:
        data = self.store.snapshot()
        reasons: list[str] = []
        if self.store.corruption:
            reasons.append(self.store.corruption)

        raw_phase = data.get("phase")
        phase = Phase.from_dict(raw_phase) if isinstance(raw_phase, dict) else None
        if raw_phase is not None and phase is None:
            reasons.append("phase record is malformed")
        if phase is None and reasons:
            phase = self._discover_phase(self._archived_ids(data))

        step = data.get("step")
        if phase is not None:
            if not self._valid_step(step):
                reasons.append("step record is missing or malformed")
            elif not step.get("override") and not self._has_evidence_for(phase, step["current"]):
                reasons.append(f"step {step['current']} has no supporting artifacts")
        elif step is not None:
            reasons.append("step recorded without a phase")

        self.last_healed = reasons
        if reasons:
            self._heal(data, phase, reasons)
        self._advance_if_complete()

    def _heal(self, data: dict[str, Any], phase: Phase | None, reasons: list[str]) -> None:
        healed = {} if self.store.corruption else {
            key: value for key, value in data.items() if key not in {"phase", "step"}
        }
        derived = None
        if phase is not None:
            derived = self.derive_step(phase)
            healed["phase"] = phase.to_dict()
            healed["step"] = {"current": derived, "index": STEP_INDEX[derived], "status": "in-progress"}
        logger.warning("Healing workflow state (%s); step=%s", "; ".join(reasons), derived)
        try:
            self.store.replace(healed)
        except OSError as exc:
            raise StateCorruption(
                f"State is unreadable and could not be rewritten: {exc}",
                step=derived,
                recovery_actions=("diagnose", "abort"),
            ) from exc
        self.store.record_event("state_healed", reasons=reasons, step=derived)

    def _advance_if_complete(self) -> None:
        phase = self.phase()
        step = self.step()
        if phase is None or phase.status != "in-progress" or step.get("status") != "complete":
            return
        current = step["current"]
        if current == STEPS[-1]:
            return
        result = self._check(gate_for_step(current).name, phase=phase)
        if result.passed:
            self._transition(STEPS[STEP_INDEX[current] + 1], kind="advance")
        else:
            logger.info("Step %s is complete but its gate is failing; not advancing", current)

    def _transition(self, target: str, *, kind: str, override: bool = False) -> None:
        previous = self.step().get("current")

        def _updater(data: dict[str, Any]) -> None:
            data["step"] = {
                "current": target,
                "index": STEP_INDEX[target],
                "status": "in-progress",
                "override": override,
                "entered_at": utcnow_iso(),
            }
            data.pop(AUTOFIX_PATH, None)

        self.store.update(_updater)
        self.store.record_event("step_transition", from_step=previous, to_step=target, kind=kind)
        logger.info("Step %s -> %s (%s)", previous, target, kind)

    def _require_phase(self) -> Phase:
        phase = self.phase()
        if phase is None:
            raise TransitionError("No active phase.", recovery_actions=("diagnose",))
        return phase

    def _require_active_step(self, action: str) -> None:
        step = self.step()
        if step.get("status") in {"blocked", "failed"}:
            raise TransitionError(
                f"Step {step.get('current')} is {step.get('status')}; retry or skip it before {action}.",
                step=step.get("current"),
                recovery_actions=("retry", "skip"),
            )

    def _check(self, name: str, *, phase: Phase | None = None, strict: bool | None = None) -> GateResult:
        return self.validator(phase).check(name, strict=strict)

    # -- status ----------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        self._sync()
        phase = self.phase()
        step = self.step()
        graph = self.graph(phase) if phase is not None else None
        health = self._health(phase, step)
        return {
            "phase": phase.to_dict() if phase else None,
            "step": {"current": step.get("current"), "status": step.get("status")} if step else None,
            "task_progress": graph.progress() if graph is not None else None,
            "health": health,
            "recommended_next_action": self._next_action(phase, step, graph),
        }

    def _health(self, phase: Phase | None, step: dict[str, Any]) -> dict[str, Any]:
        issues = [f"state healed: {reason}" for reason in self.last_healed]
        if phase is None:
            return {"status": "warning" if issues else "ready", "issues": issues}
        if step.get("status") in {"blocked", "failed"}:
            issues.append(f"step {step.get('current')} is {step.get('status')}")
            return {"status": "error", "issues": issues}
        autofix = self.store.get(AUTOFIX_PATH, {})
        if isinstance(autofix, dict) and autofix.get("status") == "budget-exhausted":
            issues.append("auto-fix budget exhausted")
        return {"status": "warning" if issues else "healthy", "issues": issues}

    def _next_action(
        self, phase: Phase | None, step: dict[str, Any], graph: TaskGraph | None
    ) -> dict[str, Any]:
        if phase is None:
            return {"action": "start_phase", "reason": "no active phase"}
        if phase.status == "awaiting-human":
            human = self.store.get("human", {})
            return {"action": "awaiting_user_gate", "reason": f"waiting on {human.get('gate', 'operator')}"}
        if phase.status == "complete":
            return {"action": "archive_phase", "reason": f"phase {phase.id} is complete"}
        autofix = self.store.get(AUTOFIX_PATH, {})
        if isinstance(autofix, dict) and autofix.get("status") == "budget-exhausted":
            return {"action": "resolve_autofix", "reason": "choose continue or abort", "choices": ["continue", "abort"]}

        current = step.get("current", "design")
        status = step.get("status")
        if status == "blocked":
            return {"action": "resolve_blocked", "reason": f"step {current} is blocked", "recovery": ["retry", "skip"]}
        if status == "failed":
            return {"action": "fix_health", "reason": f"step {current} failed", "recovery": ["retry", "diagnose"]}
        if status == "complete":
            gate = self._check(gate_for_step(current).name, phase=phase)
            if gate.passed:
                return {"action": "ready_to_merge", "reason": "verification gate passed"}
            return {
                "action": "fix_gate",
                "reason": f"{gate.name} gate is failing",
                "findings": [finding.to_dict() for finding in gate.blocking],
            }

        if current == "design":
            return {"action": "run_design", "reason": "design artifacts are not complete"}
        if current == "analyze":
            return {"action": "run_analyze", "reason": "analysis has not passed"}
        if current == "implement":
            queue = graph.queue_status() if graph is not None else "exhausted-blocked"
            if queue == "ready":
                return {"action": "continue_implement", "reason": "tasks are ready", "task": graph.next_task().id}
            if queue == "exhausted-blocked":
                return {"action": "resolve_blocked", "reason": "every remaining task is blocked"}
            return {"action": "fix_gate", "reason": "implement gate is failing"}
        return {"action": "run_verify", "reason": "verification has not passed"}

    # -- task queue ------------------------------------------------------------

    def next_task(self, *, batch: bool = False, verify: bool = False) -> dict[str, Any]:
        self._sync()
        phase = self.phase()
        expected = "verify" if verify else "implement"
        step = self.step()
        current = step.get("current")
        if phase is None:
            return {"tasks": [], "reason": "no active phase"}
        if phase.status == "awaiting-human":
            return {"tasks": [], "reason": "waiting on a human decision"}
        if current != expected:
            return {"tasks": [], "reason": f"current step is {current}; tasks are served during {expected}"}
        step_status = step.get("status")
        if step_status in {"blocked", "failed"}:
            return {"tasks": [], "reason": f"step {current} is {step_status}; retry or skip it first"}
        graph = self.graph(phase)
        if graph is None:
            return {"tasks": [], "reason": "task list is missing"}

        if verify:
            task = graph.next_task(verification=True)
            tasks = [task] if task else []
        elif batch:
            tasks = graph.next_batch(limit=self.config.workers.max_parallel_jobs)
        else:
            task = graph.next_task()
            tasks = [task] if task else []
        queue = graph.queue_state()
        chosen = {task.id for task in tasks}
        payload: dict[str, Any] = {
            "tasks": [self._task_payload(graph, task) for task in tasks],
            "queue": queue.to_dict(),
            "next_up": [task_id for task_id in queue.eligible if task_id not in chosen][:3],
        }
        if not tasks:
            payload["reason"] = queue.status
        return payload

    @staticmethod
    def _task_payload(graph: TaskGraph, task: Task) -> dict[str, Any]:
        payload = task.to_dict()
        payload["dependencies"] = graph.dependencies(task)
        return payload

    def mark_task(
        self,
        ids: str | list[str],
        *,
        blocked: str | None = None,
        deferred: str | None = None,
    ) -> dict[str, Any]:
        if blocked is not None and deferred is not None:
            raise TransitionError("A task cannot be blocked and deferred at once.")
        self._sync()
        phase = self._require_phase()
        workspace = self.workspace(phase)
        path = workspace.artifact_path(TASKS_ARTIFACT)
        graph = self.graph(phase)
        if graph is None or path is None:
            raise TransitionError("Task list is missing.", step=self.step().get("current"))
        if blocked is None:
            self._require_active_step("marking progress")

        task_ids = graph.expand_ids(ids)
        for task_id in task_ids:
            task = graph.get(task_id)
            if (blocked is not None or deferred is not None) and task.status == "complete":
                raise TransitionError(
                    f"Task {task_id} is already complete.",
                    task_id=task_id,
                    recovery_actions=("skip",),
                )

        before = {task.id for task in graph.eligible()}
        for task_id in task_ids:
            if blocked is not None:
                graph.mark_blocked(task_id, blocked)
            elif deferred is not None:
                graph.defer(task_id, deferred)
            else:
                graph.mark_complete(task_id)
        graph.save(path)
        queue = graph.queue_state([task.id for task in graph.eligible() if task.id not in before])

        status = "blocked" if blocked is not None else "deferred" if deferred is not None else "complete"
        progress = graph.progress()
        self.store.set("implement", {**progress, "last_marked": task_ids, "last_status": status})
        self.store.record_event("task_marked", task_ids=task_ids, status=status)
        logger.info("Marked %s %s", ", ".join(task_ids), status)

        step = self.step()
        if (
            step.get("current") == "implement"
            and step.get("status") == "in-progress"
            and queue.status == "exhausted-complete"
        ):
            self.store.set("step.status", "complete")
            self._advance_if_complete()
        return {"marked": task_ids, "status": status, "queue": queue.to_dict(), "progress": progress}

    # -- gates -----------------------------------------------------------------

    def check_gate(self, name: str, *, strict: bool | None = None) -> GateResult:
        self._sync()
        result = self._check(name, strict=strict)
        self.store.record_event(
            "gate_checked",
            gate=name,
            passed=result.passed,
            findings=len(result.findings),
            blocking=len(result.blocking),
        )
        return result

    def complete_step(self) -> dict[str, Any]:
        """The active component reports its step finished; advance if the gate allows."""
        self._sync()
        phase = self._require_phase()
        self._require_active_step("completing it")
        current = self.step()["current"]
        result = self._check(gate_for_step(current).name, phase=phase)
        if not result.passed:
            raise GateFailure(
                f"{result.name} gate failed with {len(result.blocking) or len(result.findings)} blocking finding(s).",
                findings=result.blocking or result.findings,
                step=current,
                gate=result.name,
            )
        self.store.set("step.status", "complete")
        self._advance_if_complete()
        return self.status()

    # -- state access ----------------------------------------------------------

    def get_state(self, path: str) -> Any:
        self._sync()
        return self.store.get(path, None)

    def set_state(self, path: str, value: Any) -> None:
        owner = owner_of(path)
        if owner == "engine":
            raise OwnershipViolation(
                f"{path} is owned by the lifecycle controller; use phase or step commands instead.",
                recovery_actions=("diagnose",),
            )
        if owner == "active-step" and value not in STEP_STATUSES:
            raise TransitionError(
                f"Invalid step status {value!r}; expected one of {', '.join(STEP_STATUSES)}.",
                step=self.step().get("current"),
            )
        self._sync()
        if owner == "active-step" and self.phase() is None:
            raise TransitionError("No active step to update.", recovery_actions=("diagnose",))
        if owner == "active-step" and value not in {"blocked", "failed"}:
            self._require_active_step(f"setting it to {value}")
        self.store.set(path, value)
        if owner == "active-step":
            self._advance_if_complete()

    # -- auto-fix --------------------------------------------------------------

    def _detector(self, gate: str) -> Callable[[], list[Finding]]:
        def _detect() -> list[Finding]:
            result = self._check(gate)
            return result.findings if result.strict else result.blocking

        return _detect

    def _autofix_loop(self, fixer: Fixer | None, gate: str | None = None) -> AutoFixLoop:
        current = self.step().get("current")
        gate_name = gate or (gate_for_step(current).name if current in STEP_INDEX else "design")
        return AutoFixLoop(
            self.store,
            self.config,
            fixer,
            self._detector(gate_name),
            coordinator=self.coordinator(self.config.workers.implement_timeout_seconds),
            step=current,
        )

    async def run_auto_fix_loop(
        self,
        fixer: Fixer,
        findings: list[Finding] | None = None,
        *,
        gate: str | None = None,
    ) -> AutoFixOutcome:
        self._sync()
        self._require_phase()
        outcome = await self._autofix_loop(fixer, gate).run(findings)
        self._advance_if_complete()
        return outcome

    def resolve_auto_fix(self, choice: str) -> AutoFixOutcome:
        self._sync()
        self._require_phase()
        outcome = self._autofix_loop(None).resolve(choice)
        self._advance_if_complete()
        return outcome

    # -- worker-backed steps ---------------------------------------------------

    async def run_design(self, generator: ContentGenerator) -> CoordinatorResult:
        self._sync()
        phase = self._require_phase()
        self._require_active_step("running design")
        if self.step().get("current") != "design":
            raise TransitionError("Design can only run during the design step.", step=self.step().get("current"))
        workspace = self.workspace(phase)
        jobs: list[WorkerJob] = []
        for artifact in workspace.missing_design_artifacts():
            target = workspace.artifact_path(artifact)

            async def _run(artifact: str = artifact, target: Path = target) -> None:
                target.parent.mkdir(parents=True, exist_ok=True)
                await generator.generate(artifact, list(phase.goals), target)

            jobs.append(
                WorkerJob(
                    job_id=f"design-{artifact}",
                    run=_run,
                    ownership=frozenset({workspace.artifact_ref(artifact)}),
                    role="content",
                    timeout_seconds=self.config.workers.implement_timeout_seconds,
                )
            )
        result = await self.coordinator().run(jobs)
        self._finish_worker_step("design", result)
        return result

    async def run_checks(self, step: str | None = None) -> CoordinatorResult:
        """Run the analysis or verification passes for ``step`` as parallel read-only jobs."""
        self._sync()
        phase = self._require_phase()
        current = self.step().get("current")
        step = step or current
        if step not in CHECK_JOBS or step != current:
            raise TransitionError(
                f"Checks for {step} cannot run during the {current} step.",
                step=current,
            )
        self._require_active_step("running checks")
        workspace = self.workspace(phase)
        validator = self.validator(phase)
        jobs: list[WorkerJob] = []
        for role, gate in CHECK_JOBS[step]:
            if gate == "memory" and not workspace.memory_dir.is_dir():
                continue

            async def _run(gate: str = gate) -> list[Finding]:
                return validator.check(gate).findings

            jobs.append(
                WorkerJob(
                    job_id=f"{step}-{role}",
                    run=_run,
                    scope=frozenset({workspace.artifact_ref(TASKS_ARTIFACT)}),
                    role=role,
                    timeout_seconds=self.config.workers.analysis_timeout_seconds,
                )
            )
        result = await self.coordinator().run(jobs)
        self._finish_worker_step(step, result)
        return result

    def _finish_worker_step(self, step: str, result: CoordinatorResult) -> None:
        if result.aborted:
            self.store.set("step.status", "failed")
            raise result.error  # type: ignore[misc]
        if self._check(gate_for_step(step).name).passed:
            self.store.set("step.status", "complete")
            self._advance_if_complete()

    # -- phases and operator controls -----------------------------------------

    def start_phase(
        self,
        name: str,
        goals: list[str],
        *,
        phase_id: str | None = None,
        after: str | None = None,
    ) -> Phase:
        self._sync()
        current = self.phase()
        if current is not None:
            raise TransitionError(
                f"Phase {current.id} is still {current.status}; close and archive it first.",
                recovery_actions=("diagnose",),
            )
        data = self.store.snapshot()
        existing = sorted(self._archived_ids(data))
        specs_dir = self.workspace(None).specs_dir
        if specs_dir.is_dir():
            existing.extend(
                match.group(1)
                for child in specs_dir.iterdir()
                if (match := FEATURE_DIR_PATTERN.match(child.name))
            )
        if phase_id is not None:
            if not is_phase_id(phase_id) or phase_id in existing:
                raise TransitionError(f"Phase id {phase_id!r} is invalid or already used.")
        elif after is not None:
            try:
                phase_id = insert_phase_id(existing, after)
            except ValueError as exc:
                raise TransitionError(str(exc), recovery_actions=("diagnose",)) from exc
        else:
            phase_id = next_phase_id(existing)

        phase = Phase(
            id=phase_id,
            name=name,
            goals=[goal.strip() for goal in goals if goal.strip()],
            branch=branch_name(phase_id, name),
            status="in-progress",
        )
        feature_dir = self.workspace(phase).feature_dir
        if feature_dir is not None:
            feature_dir.mkdir(parents=True, exist_ok=True)

        def _updater(document: dict[str, Any]) -> None:
            for key in RESET_PATHS:
                document.pop(key, None)
            document["phase"] = phase.to_dict()
            document["phase"]["started_at"] = utcnow_iso()

        self.store.update(_updater)
        self._transition("design", kind="start")
        return phase

    def close_phase(self) -> Phase:
        self._sync()
        phase = self._require_phase()
        current = self.step().get("current")
        if current != "verify":
            raise TransitionError(f"Cannot close phase {phase.id} during {current}.", step=current)
        result = self._check("verify", phase=phase)
        if not result.passed:
            raise GateFailure(
                f"Phase {phase.id} cannot close: verify gate failed.",
                findings=result.blocking or result.findings,
                step=current,
                gate="verify",
            )
        self.store.set_many({"phase.status": "complete", "phase.closed_at": utcnow_iso()})
        self.store.record_event("phase_closed", phase=phase.id)
        phase.status = "complete"
        return phase

    def archive_phase(self) -> dict[str, Any]:
        self._sync()
        phase = self._require_phase()
        if phase.status != "complete":
            raise TransitionError(f"Phase {phase.id} is {phase.status}; close it before archiving.")
        record: dict[str, Any] = {}

        def _updater(data: dict[str, Any]) -> None:
            record.update(data.get("phase", {}))
            record["archived_at"] = utcnow_iso()
            record["task_progress"] = data.get("implement")
            history = data.get("history")
            if not isinstance(history, dict):
                history = {}
            phases = history.get("phases")
            if not isinstance(phases, list):
                phases = []
            phases.append(dict(record))
            history["phases"] = phases
            data["history"] = history
            for key in ("phase", "step", *RESET_PATHS):
                data.pop(key, None)

        self.store.update(_updater)
        self.store.record_event("phase_archived", phase=phase.id)
        return record

    def history(self) -> list[dict[str, Any]]:
        phases = self.store.get("history.phases", [])
        return phases if isinstance(phases, list) else []

    def await_human(self, gate: str, criteria: list[str]) -> None:
        self._sync()
        phase = self._require_phase()
        self.store.set_many(
            {
                "phase.status": "awaiting-human",
                "human": {"gate": gate, "criteria": list(criteria), "requested_at": utcnow_iso()},
            }
        )
        self.store.record_event("human_gate_requested", phase=phase.id, gate=gate)

    def confirm_human_gate(
        self,
        human_gate: HumanGate | None = None,
        *,
        decision: str | None = None,
    ) -> str:
        self._sync()
        phase = self._require_phase()
        if phase.status != "awaiting-human":
            raise TransitionError(f"Phase {phase.id} is not waiting on a human decision.")
        pending = self.store.get("human", {})
        if decision is None:
            if human_gate is None:
                raise FlowgateError("A decision or a human gate is required.", recovery_actions=("diagnose",))
            decision = human_gate.decide(str(pending.get("gate", "")), list(pending.get("criteria", [])))
        if decision not in {"confirmed", "skipped", "pending"}:
            raise FlowgateError(f"Unknown human decision {decision!r}.", recovery_actions=("diagnose",))
        if decision != "pending":
            def _updater(data: dict[str, Any]) -> None:
                data["phase"]["status"] = "in-progress"
                data.pop("human", None)

            self.store.update(_updater)
        self.store.record_event("human_gate_decided", gate=pending.get("gate"), decision=decision)
        return decision

    def defer_goal(self, goal_id: str, reason: str) -> None:
        self._sync()
        phase = self._require_phase()
        if goal_id not in phase.goal_ids():
            raise FlowgateError(f"Unknown goal {goal_id} for phase {phase.id}.", recovery_actions=("diagnose",))
        if not reason.strip():
            raise FlowgateError("Deferring a goal requires a reason.", recovery_actions=("diagnose",))
        self.store.set(f"coverage.deferred.{goal_id}", reason.strip())
        self.store.record_event("goal_deferred", goal=goal_id, reason=reason.strip())

    def reset(self, step: str) -> None:
        self._sync()
        self._require_phase()
        current = self.step().get("current")
        if step not in STEP_INDEX:
            raise TransitionError(f"Unknown step {step!r}.")
        if STEP_INDEX[step] > STEP_INDEX[current]:
            raise TransitionError(f"Reset cannot move forward from {current} to {step}; use skip.", step=current)
        self._transition(step, kind="reset", override=True)

    def skip_to(self, step: str) -> None:
        self._sync()
        self._require_phase()
        current = self.step().get("current")
        if step not in STEP_INDEX:
            raise TransitionError(f"Unknown step {step!r}.")
        if STEP_INDEX[step] <= STEP_INDEX[current]:
            raise TransitionError(f"Skip must move forward from {current}; use reset.", step=current)
        self._transition(step, kind="skip", override=True)

    def retry(self) -> None:
        self._sync()
        self._require_phase()
        step = self.step()
        if step.get("status") not in {"blocked", "failed"}:
            raise TransitionError(f"Step {step.get('current')} is {step.get('status')}; nothing to retry.")

        def _updater(data: dict[str, Any]) -> None:
            data["step"]["status"] = "in-progress"
            autofix = data.get(AUTOFIX_PATH)
            if isinstance(autofix, dict) and autofix.get("status") == "aborted":
                data.pop(AUTOFIX_PATH, None)

        self.store.update(_updater)
        self.store.record_event("step_retried", step=step.get("current"))

    def events(self, event: str | None = None) -> list[dict[str, Any]]:
        return self.store.events(event)
