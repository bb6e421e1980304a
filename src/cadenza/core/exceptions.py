"""Cadenza exception hierarchy."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from cadenza.models.payments import SwapResult


class CadenzaError(Exception):
    """Base exception for all Cadenza errors."""


class TransientRemoteError(CadenzaError):
    """Network or RPC hiccup; safe to retry."""


class DescriptorUnavailable(CadenzaError):
    """The plan registry could not resolve a plan identifier."""

    def __init__(self, plan_id: str, reason: str = "") -> None:
        self.plan_id = plan_id
        detail = f": {reason}" if reason else ""
        super().__init__(f"Plan descriptor unavailable for {plan_id}{detail}")


# ---------------------------------------------------------------------------
# Settlement
# ---------------------------------------------------------------------------

class SettlementError(CadenzaError):
    """Settlement could not secure credit for a plan."""

    def __init__(self, plan_id: str, message: str) -> None:
        self.plan_id = plan_id
        super().__init__(message)


class InsufficientBalanceError(SettlementError):
    """Credit ordering failed; the plan still lacks balance."""


class SwapError(SettlementError):
    """Currency swap or the follow-up transfer failed.

    ``partial`` carries any transaction hashes already broadcast; those are
    not rolled back.
    """

    def __init__(self, plan_id: str, message: str, partial: SwapResult | None = None) -> None:
        self.partial = partial
        super().__init__(plan_id, message)


class InsufficientLiquidityError(CadenzaError):
    """The AMM pool cannot provide the requested output amount."""


# ---------------------------------------------------------------------------
# Remote tasks
# ---------------------------------------------------------------------------

class TaskFailedError(CadenzaError):
    """A remote agent reported the task as failed."""

    def __init__(self, task_id: str, status: str = "Failed") -> None:
        self.task_id = task_id
        self.status = status
        super().__init__(f"Task {task_id} failed with status: {status}")


class DispatchRejectedError(CadenzaError):
    """The ledger refused to create a remote task."""

    def __init__(self, agent_id: str, detail: object) -> None:
        self.agent_id = agent_id
        self.detail = detail
        super().__init__(f"Error creating task for agent {agent_id}: {detail}")


class ValidationError(CadenzaError):
    """Remote output is malformed or missing expected fields."""

    def __init__(self, task_id: str, message: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task {task_id} returned invalid output: {message}")


class PartialFanOutFailure(CadenzaError):
    """More fan-out sub-tasks failed than the stage tolerates."""

    def __init__(self, threshold: int, failed: int, total: int) -> None:
        self.threshold = threshold
        self.failed = failed
        self.total = total
        super().__init__(
            f"Too many sub-task failures: {failed} of {total} failed after retries "
            f"(tolerated: {threshold})"
        )


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class StepFailedError(CadenzaError):
    """A pipeline step failed."""

    def __init__(self, step_id: str, stage: str, message: str) -> None:
        self.step_id = step_id
        self.stage = stage
        super().__init__(f"Step {step_id} ({stage}) failed: {message}")


class StepTransitionError(CadenzaError):
    """A step was written after it already left Pending."""


class MediaCompileError(CadenzaError):
    """ffmpeg / ffprobe invocation failed."""


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

class CacheError(CadenzaError):
    """Cache backend operation failed."""


class StorageError(CadenzaError):
    """File store operation failed."""


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------

class ConfigurationError(CadenzaError):
    """Required settings or adapters are missing for this environment."""
