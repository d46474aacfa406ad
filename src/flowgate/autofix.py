from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal

from flowgate.collaborators import Fixer
from flowgate.config import FlowgateConfig
from flowgate.errors import FlowgateError, MaxIterationsExceeded, UserAbort
from flowgate.models import Finding, sort_findings
from flowgate.state.store import StateStore
from flowgate.workers import WorkerCoordinator, WorkerJob

logger = logging.getLogger(__name__)

AUTOFIX_PATH = "autofix"
FALLBACK_STRATEGY = "escalate"

LoopStatus = Literal["clean", "budget-exhausted", "aborted", "continued"]
Detector = Callable[[], list[Finding]]


@dataclass(slots=True)
class AutoFixOutcome:
    status: LoopStatus
    iteration: int
    findings: list[Finding] = field(default_factory=list)

    @property
    def recovery_actions(self) -> list[str]:
        return ["continue", "abort"] if self.status == "budget-exhausted" else []

    def raise_for_status(self, step: str | None = None) -> None:
        if self.status == "budget-exhausted":
            raise MaxIterationsExceeded(
                f"Auto-fix stopped after {self.iteration} iterations with {len(self.findings)} finding(s) open.",
                findings=self.findings,
                step=step,
            )
        if self.status == "aborted":
            raise UserAbort(
                f"Auto-fix aborted by the operator with {len(self.findings)} finding(s) open.",
                step=step,
                recovery_actions=("retry", "skip"),
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "iteration": self.iteration,
            "findings": [finding.to_dict() for finding in self.findings],
            "recovery_actions": self.recovery_actions,
        }


def group_by_artifact(findings: list[Finding]) -> dict[str, list[Finding]]:
    groups: dict[str, list[Finding]] = {}
    for finding in sort_findings(findings):
        groups.setdefault(finding.artifact, []).append(finding)
    return dict(sorted(groups.items()))


class AutoFixLoop:
    """Bounded detect / fix / re-detect loop.

    The iteration counter and the open findings live under ``autofix`` in the
    state store after every step, so an interrupted run resumes where it
    stopped rather than from iteration one.
    """

    def __init__(
        self,
        store: StateStore,
        config: FlowgateConfig,
        fixer: Fixer | None,
        detect: Detector,
        *,
        coordinator: WorkerCoordinator | None = None,
        step: str | None = None,
    ) -> None:
        self.store = store
        self.config = config
        self.fixer = fixer
        self.detect = detect
        self.coordinator = coordinator or WorkerCoordinator(
            default_timeout_seconds=config.workers.implement_timeout_seconds,
            failure_threshold=config.workers.failure_threshold,
            max_parallel=config.workers.max_parallel_jobs,
            critical_roles=config.workers.critical_roles,
            on_event=store.record_event,
        )
        self.step = step

    @property
    def max_iterations(self) -> int:
        return max(1, int(self.config.workflow.max_fix_iterations))

    def strategy_for(self, category: str) -> str:
        return self.config.fix_strategies.get(category, FALLBACK_STRATEGY)

    def persisted(self) -> dict[str, Any]:
        state = self.store.get(AUTOFIX_PATH, {})
        return state if isinstance(state, dict) else {}

    def _persisted_iteration(self) -> int:
        try:
            return max(1, int(self.persisted().get("iteration") or 1))
        except (TypeError, ValueError):
            return 1

    def _persisted_findings(self) -> list[Finding]:
        raw = self.persisted().get("findings", [])
        if not isinstance(raw, list):
            return []
        return [Finding.from_dict(item) for item in raw if isinstance(item, dict) and "id" in item]

    def _persist(self, iteration: int, status: str, findings: list[Finding]) -> None:
        self.store.set(
            AUTOFIX_PATH,
            {
                "iteration": iteration,
                "status": status,
                "step": self.step,
                "findings": [finding.to_dict() for finding in findings],
            },
        )

    def _set_step_status(self, status: str) -> None:
        if self.step is not None:
            self.store.set("step.status", status)

    async def _fix_group(self, artifact: str, group: list[Finding]) -> dict[str, Any]:
        fixed: list[str] = []
        unfixed: list[str] = []
        for finding in group:
            strategy = self.strategy_for(finding.category)
            if strategy == FALLBACK_STRATEGY:
                logger.info("No fix strategy for category %s; escalating", finding.category)
            if await self.fixer.fix(finding, strategy):
                fixed.append(finding.id)
            else:
                unfixed.append(finding.id)
        return {"artifact": artifact, "fixed": fixed, "unfixed": unfixed}

    def _jobs(self, iteration: int, findings: list[Finding]) -> list[WorkerJob]:
        jobs: list[WorkerJob] = []
        for index, (artifact, group) in enumerate(group_by_artifact(findings).items(), start=1):

            async def _run(artifact: str = artifact, group: list[Finding] = group) -> dict[str, Any]:
                return await self._fix_group(artifact, group)

            jobs.append(
                WorkerJob(
                    job_id=f"fix-{iteration}-{index}",
                    run=_run,
                    ownership=frozenset({artifact}),
                    role="fixer",
                    timeout_seconds=self.config.workers.implement_timeout_seconds,
                )
            )
        return jobs

    def _pending_decision(self) -> AutoFixOutcome | None:
        """An exhausted or aborted loop stays that way until the operator acts."""
        state = self.persisted()
        if not state:
            return None
        iteration = self._persisted_iteration()
        status = state.get("status")
        if status not in {"budget-exhausted", "aborted"} and iteration <= self.max_iterations:
            return None
        findings = self._persisted_findings()
        if status != "aborted":
            status = "budget-exhausted"
            iteration = min(iteration, self.max_iterations)
            self._persist(iteration, status, findings)
        logger.info("Auto-fix loop is %s; waiting for the operator", status)
        return AutoFixOutcome(status=status, iteration=iteration, findings=findings)

    async def run(self, findings: list[Finding] | None = None) -> AutoFixOutcome:
        if self.fixer is None:
            raise FlowgateError("The auto-fix loop needs a fixer.", step=self.step, recovery_actions=("diagnose",))
        pending = self._pending_decision()
        if pending is not None:
            return pending
        iteration = self._persisted_iteration()
        if findings is None:
            findings = self._persisted_findings() or self.detect()
        findings = sort_findings(list(findings))

        while findings and iteration <= self.max_iterations:
            self._persist(iteration, "running", findings)
            result = await self.coordinator.run(self._jobs(iteration, findings))
            fixed = sum(len(item.payload.get("fixed", [])) for item in result.results if item.payload)
            if result.aborted:
                logger.warning("Fix batch aborted in iteration %s: %s", iteration, result.error)
            findings = sort_findings(self.detect())
            self.store.record_event(
                "autofix_iteration",
                iteration=iteration,
                fixed=fixed,
                remaining=len(findings),
                batch_status=result.status,
            )
            logger.info("Auto-fix iteration %s: %s fixed, %s remaining", iteration, fixed, len(findings))
            if not findings:
                break
            iteration += 1
            self._persist(iteration, "running", findings)

        if not findings:
            self.store.delete(AUTOFIX_PATH)
            self._set_step_status("complete")
            return AutoFixOutcome(status="clean", iteration=iteration)

        iteration = min(iteration, self.max_iterations)
        self._persist(iteration, "budget-exhausted", findings)
        logger.warning(
            "Auto-fix budget exhausted after %s iterations with %s findings open",
            iteration,
            len(findings),
        )
        return AutoFixOutcome(status="budget-exhausted", iteration=iteration, findings=findings)

    def resolve(self, choice: str) -> AutoFixOutcome:
        """Apply the operator's continue-anyway or abort decision after exhaustion."""
        state = self.persisted()
        if state.get("status") != "budget-exhausted":
            raise FlowgateError(
                "No exhausted auto-fix loop is waiting for a decision.",
                step=self.step,
                recovery_actions=("diagnose",),
            )
        iteration = self._persisted_iteration()
        findings = self._persisted_findings()
        if choice == "continue":
            self.store.delete(AUTOFIX_PATH)
            self._set_step_status("complete")
            self.store.record_event("autofix_resolved", choice=choice, open_findings=len(findings))
            return AutoFixOutcome(status="continued", iteration=iteration, findings=findings)
        if choice == "abort":
            self._persist(iteration, "aborted", findings)
            self._set_step_status("blocked")
            self.store.record_event("autofix_resolved", choice=choice, open_findings=len(findings))
            return AutoFixOutcome(status="aborted", iteration=iteration, findings=findings)
        raise FlowgateError(
            f"Unknown auto-fix decision {choice!r}; expected 'continue' or 'abort'.",
            step=self.step,
            recovery_actions=("diagnose",),
        )
