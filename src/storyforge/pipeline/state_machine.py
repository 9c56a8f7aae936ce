"""Job lifecycle state machine.

    queued ──claimed──▶ processing ──chain_succeeded──▶ succeeded
                          │   ▲
                          │   └─retry_scheduled (queue release, state unchanged)
                          └──failed──▶ failed

Terminal states are final. Claiming a terminal job is a no-op that only acks
the duplicate message. Every other unlisted (state, event) pair is an
invariant violation: it is logged and raised, never written to the ledger.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any

import structlog

from storyforge.models.job import Job, JobState
from storyforge.services.exceptions import InvariantViolation

logger = structlog.get_logger(__name__)


class JobEvent(str, Enum):
    CLAIMED = "claimed"
    CHAIN_SUCCEEDED = "chain_succeeded"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"


class SideEffect(str, Enum):
    """What the consumer must do after the transition is persisted."""

    RUN_CHAIN = "run_chain"
    ACK_DUPLICATE = "ack_duplicate"
    FINALIZE_SUCCESS = "finalize_success"
    RELEASE_FOR_RETRY = "release_for_retry"
    FINALIZE_FAILURE = "finalize_failure"


@dataclass(frozen=True)
class Transition:
    new_state: JobState
    side_effect: SideEffect


_TRANSITIONS: dict[tuple[JobState, JobEvent], Transition] = {
    (JobState.QUEUED, JobEvent.CLAIMED): Transition(JobState.PROCESSING, SideEffect.RUN_CHAIN),
    # Redelivery after a retry release or an expired lease
    (JobState.PROCESSING, JobEvent.CLAIMED): Transition(
        JobState.PROCESSING, SideEffect.RUN_CHAIN
    ),
    (JobState.PROCESSING, JobEvent.CHAIN_SUCCEEDED): Transition(
        JobState.SUCCEEDED, SideEffect.FINALIZE_SUCCESS
    ),
    (JobState.PROCESSING, JobEvent.RETRY_SCHEDULED): Transition(
        JobState.PROCESSING, SideEffect.RELEASE_FOR_RETRY
    ),
    (JobState.PROCESSING, JobEvent.FAILED): Transition(
        JobState.FAILED, SideEffect.FINALIZE_FAILURE
    ),
    # Dead-lettered or rejected before any processing
    (JobState.QUEUED, JobEvent.FAILED): Transition(JobState.FAILED, SideEffect.FINALIZE_FAILURE),
    (JobState.SUCCEEDED, JobEvent.CLAIMED): Transition(
        JobState.SUCCEEDED, SideEffect.ACK_DUPLICATE
    ),
    (JobState.FAILED, JobEvent.CLAIMED): Transition(JobState.FAILED, SideEffect.ACK_DUPLICATE),
}


def transition(state: JobState, event: JobEvent) -> Transition:
    """Pure transition function: (current state, event) → (new state, side effect).

    Raises:
        InvariantViolation: If the event is not allowed in the current state
    """
    try:
        return _TRANSITIONS[(state, event)]
    except KeyError:
        logger.error("job.invariant_violation", state=state.value, job_event=event.value)
        raise InvariantViolation(
            f"Illegal transition: {event.value} is not allowed in state {state.value}"
        ) from None


class JobStateMachine:
    """Applies transitions to the ledger with compare-and-set.

    A lost compare-and-set means another consumer changed the job first; the
    caller gets None and must discard whatever result it was holding.
    """

    def __init__(self, ledger):
        """Initialize state machine.

        Args:
            ledger: JobLedger used for compare-and-set updates
        """
        self.ledger = ledger

    async def apply(
        self, job: Job, event: JobEvent, **changes: Any
    ) -> tuple[Job | None, SideEffect]:
        """Validate and persist one transition.

        Args:
            job: Job as last observed by the caller
            event: Event to apply
            **changes: Extra fields written atomically with the state change

        Returns:
            (updated job or None if the compare-and-set lost, side effect)

        Raises:
            InvariantViolation: Illegal transition for the observed state
        """
        step = transition(job.state, event)
        if step.side_effect is SideEffect.ACK_DUPLICATE:
            return job, step.side_effect

        updated = await self.ledger.compare_and_set(job.id, job.state, step.new_state, **changes)
        if updated is None:
            logger.warning(
                "job.transition.stale",
                job_id=str(job.id),
                expected_state=job.state.value,
                job_event=event.value,
            )
        return updated, step.side_effect
