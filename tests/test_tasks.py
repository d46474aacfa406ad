from pathlib import Path

import pytest

from flowgate.errors import TaskNotFound, TransitionError
from flowgate.tasks import TaskGraph, parse_task_line

TASKS_MD = """# Tasks: Login

## Phase 1: Setup
- [ ] T001 Create user model in src/models/user.py
- [ ] T002 Add login endpoint in src/api/login.py (depends on T001)
- [ ] T003 [P] Write README section in docs/login.md

## Phase 2: Polish
- [ ] T004 [P] [US1] Add rate limiting to src/api/login.py, after T002
- [ ] T005 [V] Verify login flow end to end
"""


def _graph(content: str = TASKS_MD, **kwargs) -> TaskGraph:
    return TaskGraph.parse(content, **kwargs)


def test_parse_task_line_extracts_markers() -> None:
    task = parse_task_line("- [ ] T004 [P] [US1] Add rate limiting to `src/api/login.py`, after T002, T003")

    assert task is not None
    assert task.id == "T004"
    assert task.parallel is True
    assert task.verification is False
    assert task.user_story == "US1"
    assert task.depends_on == ["T002", "T003"]
    assert task.files == ["src/api/login.py"]
    assert task.description.startswith("Add rate limiting")


def test_parse_reads_checkbox_states_and_reasons() -> None:
    graph = _graph(
        "- [x] T001 Done\n"
        "- [b] T002 Waiting (blocked: vendor API key)\n"
        "- [~] T003 Later (deferred: out of scope for v1)\n"
        "- [-] T004 Dropped\n"
        "- [ ] T005 Open\n"
        "- plain bullet without a checkbox\n"
    )

    assert [task.status for task in graph.ordered()] == [
        "complete",
        "blocked",
        "deferred",
        "deferred",
        "pending",
    ]
    assert graph.tasks["T002"].reason == "vendor API key"
    assert graph.tasks["T003"].reason == "out of scope for v1"
    assert graph.tasks["T004"].reason is None


def test_batch_then_single_next_task() -> None:
    graph = _graph()

    batch = graph.next_batch()
    assert [task.id for task in batch] == ["T001", "T003"]

    graph.mark_complete("T001")
    assert graph.next_task().id == "T002"


def test_next_task_is_stable_and_lowest_id() -> None:
    graph = _graph()

    assert graph.next_task().id == "T001"
    assert graph.next_task().id == "T001"
    assert [task.id for task in graph.eligible()] == ["T001", "T003", "T005"]


def test_unmet_dependencies_are_never_served() -> None:
    graph = _graph()
    graph.mark_complete("T001")
    graph.mark_complete("T003")

    assert "T004" not in [task.id for task in graph.eligible()]
    state = graph.mark_complete("T002")

    assert state.newly_eligible == ["T004"]
    assert state.remaining == 2


def test_batch_excludes_parallel_tasks_that_share_files() -> None:
    graph = _graph(
        "- [ ] T001 [P] Edit src/app.py\n"
        "- [ ] T002 [P] Also edit src/app.py\n"
        "- [ ] T003 [P] Edit src/other.py\n"
    )

    assert [task.id for task in graph.next_batch()] == ["T001", "T003"]


def test_blocked_task_does_not_halt_independent_branches() -> None:
    graph = _graph()
    state = graph.mark_blocked("T001", "schema undecided")

    assert state.status == "ready"
    assert [task.id for task in graph.eligible()] == ["T003", "T005"]


def test_queue_exhaustion_states() -> None:
    graph = _graph("- [ ] T001 One\n- [ ] T002 Two (depends on T001)\n")

    graph.mark_blocked("T001", "waiting")
    assert graph.queue_status() == "exhausted-blocked"

    graph.mark_complete("T001")
    state = graph.mark_complete("T002")
    assert state.status == "exhausted-complete"
    assert state.remaining == 0


def test_deferred_tasks_do_not_satisfy_dependents() -> None:
    graph = _graph("- [ ] T001 One\n- [ ] T002 Two (depends on T001)\n")
    graph.defer("T001", "later")

    assert graph.next_task() is None
    assert graph.queue_status() == "exhausted-blocked"


def test_complete_tasks_cannot_regress() -> None:
    graph = _graph()
    graph.mark_complete("T001")

    with pytest.raises(TransitionError):
        graph.mark_blocked("T001", "oops")
    with pytest.raises(TransitionError):
        graph.defer("T001", "oops")
    assert graph.progress()["complete"] == 1


def test_mark_unknown_task_raises() -> None:
    with pytest.raises(TaskNotFound):
        _graph().mark_complete("T999")


def test_render_rewrites_only_marked_lines(tmp_path: Path) -> None:
    path = tmp_path / "tasks.md"
    path.write_text(TASKS_MD, encoding="utf-8")
    graph = TaskGraph.load(path)
    graph.mark_complete("T001")
    graph.mark_blocked("T003", "needs copy review")
    graph.save(path)

    lines = path.read_text(encoding="utf-8").splitlines()
    assert lines[3] == "- [x] T001 Create user model in src/models/user.py"
    assert lines[5] == "- [b] T003 [P] Write README section in docs/login.md (blocked: needs copy review)"
    assert lines[0] == "# Tasks: Login"

    reloaded = TaskGraph.load(path)
    assert reloaded.tasks["T001"].status == "complete"
    assert reloaded.tasks["T003"].reason == "needs copy review"

    reloaded.mark_complete("T003")
    reloaded.save(path)
    assert "(blocked:" not in path.read_text(encoding="utf-8")



def test_render_keeps_star_bullets_and_indentation(tmp_path: Path) -> None:
    path = tmp_path / "tasks.md"
    path.write_text("# Tasks\n\n* [ ] T001 First step\n  * [ ] T002 Second step (depends on T001)\n", encoding="utf-8")
    graph = TaskGraph.load(path)
    graph.mark_complete("T001")
    graph.mark_complete("T002")
    graph.save(path)

    lines = path.read_text(encoding="utf-8").splitlines()
    assert lines[2] == "* [x] T001 First step"
    assert lines[3] == "  * [x] T002 Second step (depends on T001)"
    assert TaskGraph.load(path).queue_status() == "exhausted-complete"

def test_expand_ids_accepts_ranges_and_lists() -> None:
    graph = _graph()

    assert graph.expand_ids("T001..T003") == ["T001", "T002", "T003"]
    assert graph.expand_ids(["T004", " T002", "T004"]) == ["T004", "T002"]
    with pytest.raises(TaskNotFound):
        graph.expand_ids("task-1")


def test_cycles_and_unknown_dependencies() -> None:
    graph = _graph(
        "- [ ] T001 One (depends on T003)\n"
        "- [ ] T002 Two (depends on T001)\n"
        "- [ ] T003 Three (depends on T002)\n"
        "- [ ] T004 Four (requires T042)\n"
    )

    cycles = graph.cycles()
    assert len(cycles) == 1
    assert set(cycles[0]) == {"T001", "T002", "T003"}
    assert graph.unknown_dependencies() == [("T004", "T042")]


def test_section_dependencies_are_inferred_when_enabled() -> None:
    content = "## Setup\n- [ ] T001 One\n- [ ] T002 Two\n## Build\n- [ ] T003 Three\n"

    assert [task.id for task in _graph(content).eligible()] == ["T001", "T002", "T003"]

    inferred = _graph(content, infer_section_dependencies=True)
    assert [task.id for task in inferred.eligible()] == ["T001", "T002"]
    assert inferred.dependencies(inferred.tasks["T003"]) == ["T001", "T002"]


def test_verification_queue_serves_only_marked_tasks() -> None:
    graph = _graph()

    assert graph.next_task(verification=True).id == "T005"
