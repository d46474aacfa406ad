import asyncio

import pytest

from flowgate.errors import BatchAborted, ConflictDetected, WorkerFailure, WorkerTimeout
from flowgate.models import Finding
from flowgate.workers import (
    WorkerCoordinator,
    WorkerJob,
    assert_disjoint,
    merge_findings,
    partition_batches,
)


def _finding(location: str, severity: str = "high", finding_id: str | None = None) -> Finding:
    return Finding(
        id=finding_id or location,
        category="consistency",
        severity=severity,
        location=location,
        description=f"problem at {location}",
    )


def _job(job_id: str, value=None, *, owns=(), role="worker", delay=0.0, error=None, timeout=None):
    async def run():
        if delay:
            await asyncio.sleep(delay)
        if error is not None:
            raise error
        return value

    return WorkerJob(job_id, run, frozenset(owns), role=role, timeout_seconds=timeout)


class Recorder:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []

    def __call__(self, event: str, **payload) -> None:
        self.events.append((event, payload))

    def names(self) -> list[str]:
        return [event for event, _ in self.events]


def test_timed_out_job_is_discarded_and_batch_completes() -> None:
    recorder = Recorder()
    coordinator = WorkerCoordinator(on_event=recorder)
    jobs = [
        _job("a", [_finding("spec.md:3")]),
        _job("b", [_finding("plan.md:1")]),
        _job("c", {"findings": [{"id": "c1", "severity": "low", "location": "tasks.md:T002"}]}),
        _job("slow", [_finding("spec.md:9")], delay=5, timeout=0.05),
    ]

    result = asyncio.run(coordinator.run(jobs))

    assert result.status == "complete"
    assert sorted(item.job_id for item in result.results) == ["a", "b", "c"]
    assert [item.job_id for item in result.failed] == ["slow"]
    assert result.failed[0].status == "timeout"
    assert "spec.md:9" not in [finding.location for finding in result.findings]
    assert len(result.findings) == 3
    assert "worker_timeout" in recorder.names()


def test_batch_aborts_when_failure_ratio_exceeds_threshold() -> None:
    recorder = Recorder()
    coordinator = WorkerCoordinator(on_event=recorder)
    jobs = [
        _job("ok", [_finding("spec.md:1")]),
        _job("f1", error=WorkerFailure("model refused")),
        _job("f2", error=RuntimeError("crashed")),
        _job("f3", error=WorkerFailure("bad output")),
    ]

    result = asyncio.run(coordinator.run(jobs))

    assert result.aborted is True
    assert result.results == []
    assert result.findings == []
    assert sorted(item.job_id for item in result.failed) == ["f1", "f2", "f3"]
    assert "batch_aborted" in recorder.names()
    with pytest.raises(BatchAborted):
        result.raise_for_status()


def test_failures_at_threshold_do_not_abort() -> None:
    coordinator = WorkerCoordinator(failure_threshold=0.5)
    jobs = [_job("a", "done"), _job("b", error=WorkerFailure("nope"))]

    result = asyncio.run(coordinator.run(jobs))

    assert result.status == "complete"
    assert result.payloads() == {"a": "done"}


def test_overlapping_ownership_is_serialized() -> None:
    recorder = Recorder()
    order: list[str] = []

    def tracked(job_id: str, owns: set[str]) -> WorkerJob:
        async def run():
            order.append(f"start:{job_id}")
            await asyncio.sleep(0.01)
            order.append(f"end:{job_id}")
            return None

        return WorkerJob(job_id, run, frozenset(owns))

    jobs = [
        tracked("one", {"src/app.py"}),
        tracked("two", {"./src/app.py", "src/b.py"}),
        tracked("three", {"docs/readme.md"}),
    ]

    result = asyncio.run(WorkerCoordinator(on_event=recorder).run(jobs))

    assert [report.job_ids for report in result.batches] == [["one", "three"], ["two"]]
    assert order.index("end:one") < order.index("start:two")
    [(event, payload)] = recorder.events
    assert event == "conflict_serialized"
    assert payload["job_id"] == "two"
    assert payload["conflicts_with"] == ["one"]
    assert payload["paths"] == ["src/app.py"]


def test_partition_respects_max_parallel_and_rejects_duplicates() -> None:
    jobs = [_job(name, owns={f"{name}.md"}) for name in ("a", "b", "c")]

    batches, conflicts = partition_batches(jobs, max_parallel=2)

    assert [[job.job_id for job in batch] for batch in batches] == [["a", "b"], ["c"]]
    assert conflicts == []
    with pytest.raises(ValueError):
        partition_batches([_job("a"), _job("a")])


def test_assert_disjoint_rejects_shared_paths() -> None:
    with pytest.raises(ConflictDetected):
        assert_disjoint([_job("a", owns={"x.md"}), _job("b", owns={"x.md"})])


def test_critical_role_failure_aborts_batch() -> None:
    coordinator = WorkerCoordinator(critical_roles=("compliance",))
    jobs = [
        _job("consistency", [_finding("spec.md:1")], role="consistency"),
        _job("compliance", error=WorkerFailure("rules unreadable"), role="compliance"),
        _job("coverage", [], role="goal-coverage"),
        _job("extra", [], role="extra"),
    ]

    result = asyncio.run(coordinator.run(jobs))

    assert result.aborted is True
    assert "critical compliance job" in str(result.error)


def test_merge_findings_keeps_highest_severity_per_location() -> None:
    merged = merge_findings(
        [
            _finding("spec.md:3", "medium", "first"),
            _finding("spec.md:3", "critical", "second"),
            _finding("spec.md:3", "critical", "third"),
            _finding("plan.md:1", "low"),
        ]
    )

    assert [(finding.location, finding.id) for finding in merged] == [
        ("spec.md:3", "second"),
        ("plan.md:1", "plan.md:1"),
    ]


def test_job_reporting_its_own_timeout_counts_as_timeout() -> None:
    recorder = Recorder()
    jobs = [
        _job("a", []),
        _job("b", []),
        _job("c", error=WorkerTimeout("model call exceeded 30s")),
    ]

    result = asyncio.run(WorkerCoordinator(on_event=recorder).run(jobs))

    assert result.status == "complete"
    assert result.failed[0].status == "timeout"
    assert result.failed[0].error == "model call exceeded 30s"
    assert recorder.names() == ["worker_timeout"]
