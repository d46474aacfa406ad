from __future__ import annotations

import asyncio
import logging
import posixpath
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Literal

from flowgate.errors import BatchAborted, ConflictDetected, WorkerFailure, WorkerTimeout
from flowgate.models import Finding, severity_rank, sort_findings

logger = logging.getLogger(__name__)

JobStatus = Literal["success", "failure", "timeout"]
EventSink = Callable[..., None]


def normalize_owned_path(path: str) -> str:
    cleaned = posixpath.normpath(str(path).replace("\\", "/").strip())
    return cleaned[2:] if cleaned.startswith("./") else cleaned


@dataclass(slots=True)
class WorkerJob:
    """One unit of concurrent work and the paths it is allowed to write."""

    job_id: str
    run: Callable[[], Awaitable[Any]]
    ownership: frozenset[str] = frozenset()
    scope: frozenset[str] = frozenset()
    role: str = "worker"
    timeout_seconds: float | None = None

    def __post_init__(self) -> None:
        self.ownership = frozenset(normalize_owned_path(item) for item in self.ownership)
        self.scope = frozenset(normalize_owned_path(item) for item in self.scope)


@dataclass(slots=True)
class JobResult:
    job_id: str
    role: str
    status: JobStatus
    findings: list[Finding] = field(default_factory=list)
    payload: Any = None
    error: str | None = None
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == "success"

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "role": self.role,
            "status": self.status,
            "findings": [finding.to_dict() for finding in self.findings],
            "error": self.error,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass(slots=True)
class BatchReport:
    index: int
    job_ids: list[str]
    results: list[JobResult] = field(default_factory=list)
    aborted: bool = False
    abort_reason: str | None = None

    @property
    def failures(self) -> list[JobResult]:
        return [result for result in self.results if not result.ok]


@dataclass(slots=True)
class CoordinatorResult:
    status: Literal["complete", "aborted"]
    batches: list[BatchReport] = field(default_factory=list)
    results: list[JobResult] = field(default_factory=list)
    findings: list[Finding] = field(default_factory=list)
    failed: list[JobResult] = field(default_factory=list)
    error: BatchAborted | None = None

    @property
    def aborted(self) -> bool:
        return self.status == "aborted"

    def payloads(self) -> dict[str, Any]:
        return {result.job_id: result.payload for result in self.results}

    def raise_for_status(self) -> None:
        if self.error is not None:
            raise self.error

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "batches": [report.job_ids for report in self.batches],
            "results": [result.to_dict() for result in self.results],
            "failed": [result.to_dict() for result in self.failed],
            "findings": [finding.to_dict() for finding in self.findings],
            "error": str(self.error) if self.error else None,
        }


def merge_findings(findings: Iterable[Finding]) -> list[Finding]:
    """Keep one finding per location: the highest severity, first reported on ties."""
    kept: dict[str, Finding] = {}
    for finding in findings:
        current = kept.get(finding.location)
        if current is None or severity_rank(finding.severity) > severity_rank(current.severity):
            kept[finding.location] = finding
    return sort_findings(list(kept.values()))


def _split_output(value: Any) -> tuple[list[Finding], Any]:
    if isinstance(value, list) and all(isinstance(item, Finding) for item in value):
        return list(value), None
    if isinstance(value, dict) and isinstance(value.get("findings"), list):
        findings = [
            item if isinstance(item, Finding) else Finding.from_dict(item)
            for item in value["findings"]
            if isinstance(item, (Finding, dict))
        ]
        return findings, value
    return [], value


def partition_batches(
    jobs: list[WorkerJob], *, max_parallel: int | None = None
) -> tuple[list[list[WorkerJob]], list[dict[str, Any]]]:
    """First-fit jobs into batches whose ownership sets are pairwise disjoint.

    Returns the batches plus one record per conflict that forced a job out of
    an earlier batch.
    """
    seen: set[str] = set()
    for job in jobs:
        if job.job_id in seen:
            raise ValueError(f"Duplicate worker job id: {job.job_id}")
        seen.add(job.job_id)

    batches: list[list[WorkerJob]] = []
    claimed: list[set[str]] = []
    conflicts: list[dict[str, Any]] = []
    for job in jobs:
        placed = False
        for index, batch in enumerate(batches):
            if max_parallel is not None and len(batch) >= max_parallel:
                continue
            overlap = claimed[index] & job.ownership
            if overlap:
                holders = [other.job_id for other in batch if other.ownership & job.ownership]
                conflicts.append(
                    {
                        "job_id": job.job_id,
                        "conflicts_with": holders,
                        "paths": sorted(overlap),
                        "batch": index,
                    }
                )
                continue
            batch.append(job)
            claimed[index].update(job.ownership)
            placed = True
            break
        if not placed:
            batches.append([job])
            claimed.append(set(job.ownership))
    return batches, conflicts


def assert_disjoint(batch: list[WorkerJob]) -> None:
    owners: dict[str, str] = {}
    for job in batch:
        for path in job.ownership:
            if path in owners:
                raise ConflictDetected(
                    f"Jobs {owners[path]} and {job.job_id} both own {path}.",
                    recovery_actions=("diagnose",),
                )
            owners[path] = job.job_id


class WorkerCoordinator:
    """Fans jobs out in conflict-free batches and waits at a barrier per batch."""

    def __init__(
        self,
        *,
        default_timeout_seconds: float = 180.0,
        failure_threshold: float = 0.5,
        max_parallel: int | None = None,
        critical_roles: Iterable[str] = ("goal-coverage", "compliance"),
        on_event: EventSink | None = None,
    ) -> None:
        self.default_timeout_seconds = default_timeout_seconds
        self.failure_threshold = failure_threshold
        self.max_parallel = max_parallel
        self.critical_roles = frozenset(critical_roles)
        self.on_event = on_event
        # Jobs we stopped waiting for keep running; hold references until they settle.
        self._abandoned: set[asyncio.Future[Any]] = set()

    def _emit(self, event: str, **payload: Any) -> None:
        if self.on_event is not None:
            self.on_event(event, **payload)

    async def run(self, jobs: list[WorkerJob]) -> CoordinatorResult:
        batches, conflicts = partition_batches(jobs, max_parallel=self.max_parallel)
        for conflict in conflicts:
            logger.info(
                "Serializing job %s: ownership overlaps %s on %s",
                conflict["job_id"],
                ", ".join(conflict["conflicts_with"]),
                ", ".join(conflict["paths"]),
            )
            self._emit("conflict_serialized", **conflict)

        reports: list[BatchReport] = []
        for index, batch in enumerate(batches):
            assert_disjoint(batch)
            report = await self._run_batch(index, batch)
            reports.append(report)
            if report.aborted:
                error = BatchAborted(
                    f"Worker batch {index} aborted: {report.abort_reason}",
                    recovery_actions=("retry", "diagnose", "abort"),
                )
                self._emit(
                    "batch_aborted",
                    batch=index,
                    reason=report.abort_reason,
                    failed=[result.job_id for result in report.failures],
                )
                logger.error("%s", error)
                return CoordinatorResult(
                    status="aborted",
                    batches=reports,
                    failed=[result for item in reports for result in item.failures],
                    error=error,
                )

        succeeded = [result for report in reports for result in report.results if result.ok]
        return CoordinatorResult(
            status="complete",
            batches=reports,
            results=succeeded,
            findings=merge_findings(finding for result in succeeded for finding in result.findings),
            failed=[result for report in reports for result in report.failures],
        )

    async def _run_batch(self, index: int, batch: list[WorkerJob]) -> BatchReport:
        loop = asyncio.get_running_loop()
        report = BatchReport(index=index, job_ids=[job.job_id for job in batch])
        started = time.monotonic()
        futures: dict[asyncio.Future[Any], WorkerJob] = {}
        deadlines: dict[asyncio.Future[Any], float] = {}
        for job in batch:
            future = asyncio.ensure_future(job.run())
            timeout = job.timeout_seconds or self.default_timeout_seconds
            futures[future] = job
            deadlines[future] = loop.time() + timeout

        results: dict[str, JobResult] = {}
        pending = set(futures)
        while pending:
            wait_for = max(0.0, min(deadlines[future] for future in pending) - loop.time())
            done, pending = await asyncio.wait(
                pending, timeout=wait_for, return_when=asyncio.FIRST_COMPLETED
            )
            for future in done:
                job = futures[future]
                result = self._collect(job, future, time.monotonic() - started)
                results[job.job_id] = result
                if not result.ok and job.role in self.critical_roles:
                    report.aborted = True
                    report.abort_reason = f"critical {job.role} job {job.job_id} failed"
            now = loop.time()
            expired = {future for future in pending if deadlines[future] <= now}
            for future in expired:
                job = futures[future]
                results[job.job_id] = self._timed_out(job, time.monotonic() - started)
                self._abandon(future)
                if job.role in self.critical_roles:
                    report.aborted = True
                    report.abort_reason = f"critical {job.role} job {job.job_id} timed out"
            pending -= expired
            if report.aborted:
                for future in pending:
                    self._abandon(future)
                break

        report.results = [results[job.job_id] for job in batch if job.job_id in results]
        if not report.aborted and batch:
            ratio = len(report.failures) / len(batch)
            if ratio > self.failure_threshold:
                report.aborted = True
                report.abort_reason = (
                    f"{len(report.failures)} of {len(batch)} jobs failed "
                    f"(threshold {self.failure_threshold:.0%})"
                )
        return report

    def _collect(self, job: WorkerJob, future: asyncio.Future[Any], elapsed: float) -> JobResult:
        try:
            value = future.result()
        except WorkerTimeout as exc:
            return self._timed_out(job, elapsed, str(exc))
        except WorkerFailure as exc:
            return self._failed(job, str(exc), elapsed)
        except Exception as exc:
            return self._failed(job, f"{type(exc).__name__}: {exc}", elapsed)
        findings, payload = _split_output(value)
        return JobResult(
            job_id=job.job_id,
            role=job.role,
            status="success",
            findings=findings,
            payload=payload,
            duration_seconds=elapsed,
        )

    def _failed(self, job: WorkerJob, message: str, elapsed: float) -> JobResult:
        logger.warning("Worker job %s failed: %s", job.job_id, message)
        self._emit("worker_failed", job_id=job.job_id, role=job.role, error=message)
        return JobResult(
            job_id=job.job_id,
            role=job.role,
            status="failure",
            error=message,
            duration_seconds=elapsed,
        )

    def _timed_out(self, job: WorkerJob, elapsed: float, message: str | None = None) -> JobResult:
        timeout = job.timeout_seconds or self.default_timeout_seconds
        message = message or f"timed out after {timeout:g}s"
        logger.warning("Worker job %s %s; result discarded", job.job_id, message)
        self._emit("worker_timeout", job_id=job.job_id, role=job.role, timeout_seconds=timeout)
        return JobResult(
            job_id=job.job_id,
            role=job.role,
            status="timeout",
            error=message,
            duration_seconds=elapsed,
        )

    def _abandon(self, future: asyncio.Future[Any]) -> None:
        self._abandoned.add(future)
        future.add_done_callback(self._settle_abandoned)

    def _settle_abandoned(self, future: asyncio.Future[Any]) -> None:
        self._abandoned.discard(future)
        if not future.cancelled() and future.exception() is not None:
            logger.debug("Abandoned worker job finished with %r", future.exception())
