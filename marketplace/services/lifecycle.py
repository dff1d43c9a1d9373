"""Job status and escrow transition rules.

Pure predicates: they read a job and answer whether a move is legal. Every
service calls them before touching the store or the payment gateway.
"""

from dataclasses import dataclass

from marketplace.errors import UnprocessableError
from marketplace.models.job import VALID_TRANSITIONS, EscrowStatus, Job, JobStatus


@dataclass(frozen=True)
class TransitionResult:
    allowed: bool
    reason: str | None = None


ALLOWED = TransitionResult(allowed=True)


def _denied(reason: str) -> TransitionResult:
    return TransitionResult(allowed=False, reason=reason)


def can_transition(job: Job, target: JobStatus) -> TransitionResult:
    """Check a job status change against the transition table."""
    if target not in VALID_TRANSITIONS.get(job.status, set()):
        return _denied(f"Cannot transition from '{job.status.value}' to '{target.value}'")

    if target == JobStatus.COMPLETED and job.escrow_status != EscrowStatus.FUNDED:
        return _denied("Escrow must be funded before the job can be marked as completed")

    return ALLOWED


def can_transition_escrow(
    job: Job, target: EscrowStatus, override: bool = False
) -> TransitionResult:
    """Check an escrow status change for the job's current state.

    ``override`` is the admin path: releasing is also allowed from a job that
    can still legally reach completed, and the job is completed with it.
    """
    if target == EscrowStatus.FUNDED:
        if job.status != JobStatus.ASSIGNED:
            return _denied("Escrow can only be funded after a provider is assigned")
        if job.escrow_status != EscrowStatus.NOT_FUNDED:
            return _denied("Escrow is already funded or has been processed")
        return ALLOWED

    if target == EscrowStatus.RELEASED:
        if override and job.status != JobStatus.COMPLETED:
            reach = can_transition(job, JobStatus.COMPLETED)
            if not reach.allowed:
                return reach
        elif job.status != JobStatus.COMPLETED:
            return _denied("Escrow can only be released after the job is completed")
        if job.escrow_status != EscrowStatus.FUNDED:
            return _denied("Escrow must be in funded state to be released")
        return ALLOWED

    if target == EscrowStatus.REFUNDED:
        # A disputed job keeps its escrow funded until resolution
        if job.escrow_status != EscrowStatus.FUNDED:
            return _denied("Only funded or disputed escrow can be refunded")
        return ALLOWED

    return _denied(f"Cannot move escrow to '{target.value}'")


def ensure_allowed(result: TransitionResult) -> None:
    """Raise 422 with the validator's reason when a transition is not allowed."""
    if not result.allowed:
        raise UnprocessableError(result.reason or "Transition not allowed")
