from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from flowgate.models import Finding

RECOVERY_ACTIONS = ("retry", "skip", "diagnose", "abort")


class FlowgateError(RuntimeError):
    """Base error for engine failures that reach the driver."""

    def __init__(
        self,
        message: str,
        *,
        step: str | None = None,
        gate: str | None = None,
        task_id: str | None = None,
        recovery_actions: tuple[str, ...] | list[str] = (),
    ) -> None:
        super().__init__(message)
        self.step = step
        self.gate = gate
        self.task_id = task_id
        self.recovery_actions = [action for action in recovery_actions if action in RECOVERY_ACTIONS]

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "message": str(self),
            "step": self.step,
            "gate": self.gate,
            "task_id": self.task_id,
            "recovery_actions": list(self.recovery_actions),
        }


class StateCorruption(FlowgateError):
    """Raised when persisted state is unreadable and cannot be re-derived."""


class StateLockTimeout(FlowgateError):
    """Raised when the state lock cannot be acquired in time."""


class InvalidStatePath(FlowgateError):
    """Raised for malformed paths or writes through non-object values."""


class OwnershipViolation(FlowgateError):
    """Raised when a caller writes a path owned by another component."""


class TransitionError(FlowgateError):
    """Raised for step or task moves the state machine does not allow."""


class TaskNotFound(FlowgateError):
    """Raised when a task id is not present in the task list."""


class GateFailure(FlowgateError):
    """Raised when a blocking gate refuses a step transition."""

    def __init__(self, message: str, *, findings: list[Finding] | None = None, **kwargs) -> None:
        kwargs.setdefault("recovery_actions", ("retry", "diagnose", "skip"))
        super().__init__(message, **kwargs)
        self.findings = list(findings or [])

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["findings"] = [finding.to_dict() for finding in self.findings]
        return payload


class WorkerFailure(FlowgateError):
    """Raised inside a worker job to report a failed unit of work."""

    def __init__(self, message: str, *, job_id: str | None = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.job_id = job_id


class WorkerTimeout(WorkerFailure):
    """A worker job exceeded its timeout and its partial result was discarded."""


class BatchAborted(FlowgateError):
    """A worker batch crossed the failure threshold or lost a critical job."""


class ConflictDetected(FlowgateError):
    """Two jobs claimed overlapping ownership sets; they are serialized, never run together."""


class MaxIterationsExceeded(FlowgateError):
    """The auto-fix loop ran out of iterations with findings left."""

    def __init__(self, message: str, *, findings: list[Finding] | None = None, **kwargs) -> None:
        kwargs.setdefault("recovery_actions", ("retry", "abort"))
        super().__init__(message, **kwargs)
        self.findings = list(findings or [])


class UserAbort(FlowgateError):
    """The operator aborted; the current step is blocked until retried or skipped."""
