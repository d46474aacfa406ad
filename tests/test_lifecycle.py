import asyncio
import json
from pathlib import Path

import pytest

from flowgate.collaborators import ContentGenerator, Fixer, HumanGate
from flowgate.config import FlowgateConfig
from flowgate.errors import (
    BatchAborted,
    FlowgateError,
    GateFailure,
    OwnershipViolation,
    TransitionError,
)
from flowgate.lifecycle import LifecycleController
from flowgate.models import Finding

DOC = "# Title\n\nFirst line of content.\nSecond line of content.\nThird line of content.\n"
TASKS = (
    "# Tasks: Login\n\n"
    "- [ ] T001 Create user model in src/models/user.py\n"
    "- [ ] T002 Add login endpoint in src/api/login.py (depends on T001)\n"
    "- [ ] T003 [P] Write docs in docs/login.md\n"
)
COVERAGE = {"goals": {"G1": ["R1"]}, "requirements": {"R1": ["T001", "T002"]}}


def _controller(tmp_path: Path) -> LifecycleController:
    return LifecycleController(tmp_path, FlowgateConfig.default())


def _feature_dir(tmp_path: Path) -> Path:
    return tmp_path / "specs" / "0010-login"


def _write_design(tmp_path: Path, tasks: str = TASKS, coverage: dict | None = COVERAGE) -> None:
    feature_dir = _feature_dir(tmp_path)
    feature_dir.mkdir(parents=True, exist_ok=True)
    (feature_dir / "spec.md").write_text(DOC, encoding="utf-8")
    (feature_dir / "plan.md").write_text(DOC, encoding="utf-8")
    (feature_dir / "tasks.md").write_text(tasks, encoding="utf-8")
    if coverage is not None:
        (feature_dir / "coverage.json").write_text(json.dumps(coverage), encoding="utf-8")


def _started(tmp_path: Path) -> LifecycleController:
    controller = _controller(tmp_path)
    controller.start_phase("Login", ["Users can log in"])
    return controller


def _at_implement(tmp_path: Path) -> LifecycleController:
    controller = _started(tmp_path)
    _write_design(tmp_path)
    controller.complete_step()
    controller.complete_step()
    return controller


def _action(controller: LifecycleController) -> str:
    return controller.status()["recommended_next_action"]["action"]


class FileGenerator(ContentGenerator):
    def __init__(self, failing: set[str] | None = None) -> None:
        self.failing = failing or set()
        self.calls: list[str] = []

    async def generate(self, artifact: str, goals: list[str], target: Path) -> None:
        self.calls.append(artifact)
        if artifact in self.failing:
            raise RuntimeError(f"could not write {artifact}")
        target.write_text(TASKS if artifact == "tasks.md" else DOC, encoding="utf-8")


class ArtifactFixer(Fixer):
    def __init__(self, repo_root: Path, succeed: bool = True) -> None:
        self.repo_root = repo_root
        self.succeed = succeed
        self.fixed: list[str] = []

    async def fix(self, finding: Finding, strategy: str) -> bool:
        if not self.succeed:
            return False
        target = self.repo_root / finding.artifact
        target.write_text(TASKS if target.name == "tasks.md" else DOC, encoding="utf-8")
        self.fixed.append(finding.artifact)
        return True


class StaticHumanGate(HumanGate):
    def __init__(self, decision: str) -> None:
        self.decision = decision
        self.asked: list[tuple[str, list[str]]] = []

    def decide(self, gate: str, criteria: list[str]) -> str:
        self.asked.append((gate, criteria))
        return self.decision


def test_fresh_project_recommends_starting_a_phase(tmp_path: Path) -> None:
    status = _controller(tmp_path).status()

    assert status["phase"] is None
    assert status["step"] is None
    assert status["health"] == {"status": "ready", "issues": []}
    assert status["recommended_next_action"]["action"] == "start_phase"


def test_start_phase_enters_design(tmp_path: Path) -> None:
    controller = _started(tmp_path)

    status = controller.status()
    assert status["phase"]["id"] == "0010"
    assert status["phase"]["branch"] == "0010-login"
    assert status["step"] == {"current": "design", "status": "in-progress"}
    assert status["recommended_next_action"]["action"] == "run_design"
    assert _feature_dir(tmp_path).is_dir()

    with pytest.raises(TransitionError):
        controller.start_phase("Another", [])


def test_complete_step_refuses_failing_gate(tmp_path: Path) -> None:
    controller = _started(tmp_path)

    with pytest.raises(GateFailure) as excinfo:
        controller.complete_step()

    assert excinfo.value.gate == "design"
    assert len(excinfo.value.findings) == 3
    assert controller.step()["current"] == "design"
    assert controller.step()["status"] == "in-progress"


def test_steps_advance_in_order_through_implement(tmp_path: Path) -> None:
    controller = _started(tmp_path)
    _write_design(tmp_path)

    controller.complete_step()
    assert controller.step()["current"] == "analyze"
    controller.complete_step()
    assert controller.step()["current"] == "implement"

    transitions = [(event["from_step"], event["to_step"]) for event in controller.events("step_transition")]
    assert transitions == [(None, "design"), ("design", "analyze"), ("analyze", "implement")]


def test_component_reported_completion_advances_on_next_sync(tmp_path: Path) -> None:
    controller = _started(tmp_path)
    _write_design(tmp_path)

    controller.set_state("step.status", "complete")

    assert controller.step()["current"] == "analyze"


def test_next_task_and_mark_drive_implement_to_verify(tmp_path: Path) -> None:
    controller = _at_implement(tmp_path)

    batch = controller.next_task(batch=True)
    assert [task["id"] for task in batch["tasks"]] == ["T001", "T003"]

    controller.mark_task(["T001", "T003"])
    single = controller.next_task()
    assert [task["id"] for task in single["tasks"]] == ["T002"]
    assert single["tasks"][0]["dependencies"] == ["T001"]

    result = controller.mark_task("T002")
    assert result["queue"]["status"] == "exhausted-complete"
    assert controller.step()["current"] == "verify"
    assert "- [x] T002" in (_feature_dir(tmp_path) / "tasks.md").read_text(encoding="utf-8")
    assert controller.get_state("implement.complete") == 3


def test_next_task_outside_implement_returns_reason(tmp_path: Path) -> None:
    controller = _started(tmp_path)

    payload = controller.next_task()

    assert payload["tasks"] == []
    assert "design" in payload["reason"]


def test_blocking_every_remaining_task_asks_for_resolution(tmp_path: Path) -> None:
    controller = _at_implement(tmp_path)
    controller.mark_task("T001", blocked="schema undecided")
    controller.mark_task("T003", deferred="docs later")

    assert _action(controller) == "resolve_blocked"
    with pytest.raises(TransitionError):
        controller.mark_task("T002", blocked="x", deferred="y")


def test_complete_tasks_are_not_regressed(tmp_path: Path) -> None:
    controller = _at_implement(tmp_path)
    controller.mark_task("T001")

    with pytest.raises(TransitionError):
        controller.mark_task(["T003", "T001"], blocked="oops")
    assert "- [ ] T003" in (_feature_dir(tmp_path) / "tasks.md").read_text(encoding="utf-8")


def test_full_phase_lifecycle_with_parallel_checks(tmp_path: Path) -> None:
    controller = _at_implement(tmp_path)
    controller.mark_task("T001..T003")
    assert _action(controller) == "run_verify"

    result = asyncio.run(controller.run_checks())
    assert result.status == "complete"
    assert sorted(item.job_id for item in result.results) == ["verify-goal-coverage", "verify-task-completion"]
    assert controller.step()["status"] == "complete"
    assert _action(controller) == "ready_to_merge"

    closed = controller.close_phase()
    assert closed.status == "complete"
    assert _action(controller) == "archive_phase"

    record = controller.archive_phase()
    assert record["id"] == "0010"
    assert [item["id"] for item in controller.history()] == ["0010"]
    assert _action(controller) == "start_phase"

    following = controller.start_phase("Password reset", ["Users can reset passwords"])
    assert following.id == "0020"


def test_close_phase_requires_passing_verify(tmp_path: Path) -> None:
    controller = _at_implement(tmp_path)
    with pytest.raises(TransitionError):
        controller.close_phase()

    controller.skip_to("verify")
    with pytest.raises(GateFailure):
        controller.close_phase()


def test_run_checks_only_for_the_current_step(tmp_path: Path) -> None:
    controller = _at_implement(tmp_path)

    with pytest.raises(TransitionError):
        asyncio.run(controller.run_checks("verify"))


def test_run_design_generates_missing_artifacts(tmp_path: Path) -> None:
    controller = _started(tmp_path)
    (_feature_dir(tmp_path) / "spec.md").write_text(DOC, encoding="utf-8")
    generator = FileGenerator()

    result = asyncio.run(controller.run_design(generator))

    assert sorted(generator.calls) == ["plan.md", "tasks.md"]
    assert result.status == "complete"
    assert controller.step()["current"] == "analyze"


def test_run_design_abort_marks_step_failed(tmp_path: Path) -> None:
    controller = _started(tmp_path)
    generator = FileGenerator(failing={"plan.md", "tasks.md"})

    with pytest.raises(BatchAborted):
        asyncio.run(controller.run_design(generator))

    assert controller.step()["status"] == "failed"
    status = controller.status()
    assert status["health"]["status"] == "error"
    assert status["recommended_next_action"]["action"] == "fix_health"

    controller.retry()
    assert controller.step()["status"] == "in-progress"


def test_auto_fix_loop_repairs_design_artifacts(tmp_path: Path) -> None:
    controller = _started(tmp_path)
    fixer = ArtifactFixer(tmp_path)

    outcome = asyncio.run(controller.run_auto_fix_loop(fixer))

    assert outcome.status == "clean"
    assert sorted(fixer.fixed) == [
        "specs/0010-login/plan.md",
        "specs/0010-login/spec.md",
        "specs/0010-login/tasks.md",
    ]
    assert controller.store.has("autofix") is False
    assert controller.step()["current"] == "analyze"


def test_exhausted_auto_fix_waits_for_operator(tmp_path: Path) -> None:
    controller = _started(tmp_path)

    outcome = asyncio.run(controller.run_auto_fix_loop(ArtifactFixer(tmp_path, succeed=False)))

    assert outcome.status == "budget-exhausted"
    assert outcome.iteration == 5
    assert _action(controller) == "resolve_autofix"

    controller.resolve_auto_fix("abort")
    assert controller.step()["status"] == "blocked"
    assert _action(controller) == "resolve_blocked"

    controller.retry()
    assert controller.store.has("autofix") is False
    assert _action(controller) == "run_design"


def test_aborted_step_halts_task_progress_until_retried(tmp_path: Path) -> None:
    controller = _at_implement(tmp_path)
    fixer = ArtifactFixer(tmp_path, succeed=False)
    asyncio.run(controller.run_auto_fix_loop(fixer))

    rerun = asyncio.run(controller.run_auto_fix_loop(fixer))
    assert rerun.status == "budget-exhausted"
    assert len(controller.events("autofix_iteration")) == 5

    controller.resolve_auto_fix("abort")
    served = controller.next_task()
    assert served["tasks"] == []
    assert "blocked" in served["reason"]
    with pytest.raises(TransitionError) as excinfo:
        controller.mark_task("T001..T003")
    assert excinfo.value.recovery_actions == ["retry", "skip"]
    assert "[x]" not in (_feature_dir(tmp_path) / "tasks.md").read_text(encoding="utf-8")
    assert (controller.step()["current"], controller.step()["status"]) == ("implement", "blocked")
    with pytest.raises(TransitionError):
        controller.complete_step()
    with pytest.raises(TransitionError):
        controller.set_state("step.status", "complete")
    assert controller.step()["status"] == "blocked"

    controller.retry()
    assert controller.next_task()["tasks"][0]["id"] == "T001"
    controller.mark_task("T001..T003")
    assert controller.step()["current"] == "verify"


def test_corrupt_state_is_rederived_from_artifacts(tmp_path: Path) -> None:
    controller = _at_implement(tmp_path)
    controller.mark_task("T001")
    controller.store.path.write_text("{not json", encoding="utf-8")

    fresh = _controller(tmp_path)
    status = fresh.status()

    assert status["phase"]["id"] == "0010"
    assert status["phase"]["name"] == "Login"
    assert status["step"] == {"current": "implement", "status": "in-progress"}
    assert status["health"]["status"] == "warning"
    assert status["recommended_next_action"]["action"] == "continue_implement"
    assert fresh.events("state_healed")


def test_step_without_supporting_artifacts_is_healed(tmp_path: Path) -> None:
    controller = _started(tmp_path)
    controller.store.set("step", {"current": "implement", "index": 2, "status": "in-progress"})

    status = controller.status()

    assert status["step"]["current"] == "design"
    assert any("no supporting artifacts" in issue for issue in status["health"]["issues"])


def test_resumed_controller_reports_the_same_status(tmp_path: Path) -> None:
    controller = _at_implement(tmp_path)
    controller.mark_task("T001")

    before = controller.status()
    after = _controller(tmp_path).status()

    assert after == before
    assert _controller(tmp_path).next_task() == controller.next_task()


def test_engine_owned_paths_reject_external_writes(tmp_path: Path) -> None:
    controller = _started(tmp_path)

    with pytest.raises(OwnershipViolation):
        controller.set_state("phase.status", "complete")
    with pytest.raises(OwnershipViolation):
        controller.set_state("step.current", "verify")
    with pytest.raises(TransitionError):
        controller.set_state("step.status", "done")

    controller.set_state("notes.owner", "team-a")
    assert controller.get_state("notes.owner") == "team-a"
    assert controller.get_state("phase.status") == "in-progress"


def test_reset_and_skip_move_in_opposite_directions(tmp_path: Path) -> None:
    controller = _at_implement(tmp_path)

    controller.reset("analyze")
    assert controller.step()["current"] == "analyze"
    assert controller.step()["override"] is True
    with pytest.raises(TransitionError):
        controller.reset("verify")

    controller.skip_to("verify")
    assert controller.step()["current"] == "verify"
    with pytest.raises(TransitionError):
        controller.skip_to("design")


def test_skip_survives_missing_artifacts(tmp_path: Path) -> None:
    controller = _started(tmp_path)

    controller.skip_to("implement")

    assert controller.status()["step"]["current"] == "implement"


def test_human_gate_pauses_the_phase(tmp_path: Path) -> None:
    controller = _at_implement(tmp_path)
    controller.await_human("release", ["QA signed off"])

    assert _action(controller) == "awaiting_user_gate"
    assert controller.next_task()["tasks"] == []

    gate = StaticHumanGate("pending")
    assert controller.confirm_human_gate(gate) == "pending"
    assert gate.asked == [("release", ["QA signed off"])]
    assert controller.phase().status == "awaiting-human"

    assert controller.confirm_human_gate(decision="confirmed") == "confirmed"
    assert controller.phase().status == "in-progress"
    assert _action(controller) == "continue_implement"
    with pytest.raises(TransitionError):
        controller.confirm_human_gate(decision="confirmed")


def test_deferred_goal_satisfies_verify(tmp_path: Path) -> None:
    controller = _started(tmp_path)
    _write_design(tmp_path, coverage=None)
    controller.skip_to("verify")
    (_feature_dir(tmp_path) / "tasks.md").write_text(TASKS.replace("[ ]", "[x]"), encoding="utf-8")

    assert controller.check_gate("verify").passed is False

    controller.defer_goal("G1", "login moves to phase two")
    assert controller.check_gate("verify").passed is True
    assert controller.get_state("coverage.deferred") == {"G1": "login moves to phase two"}

    with pytest.raises(FlowgateError):
        controller.defer_goal("G7", "no such goal")
    with pytest.raises(FlowgateError):
        controller.defer_goal("G1", "  ")
