"""Processing pass summary returned by the invocation endpoint."""

from enum import Enum

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class MessageOutcome(str, Enum):
    """What a pass did with one claimed message."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED_DUPLICATE = "skipped_duplicate"
    RETRIED = "retried"
    DEFERRED = "deferred"
    ERRORED = "errored"
    INVARIANT_VIOLATION = "invariant_violation"


class PassSummary(BaseModel):
    """Counts of message outcomes over one or more passes.

    `processed` counts every message the pass worked on; deferred messages
    (released untouched because the time budget ran out) are not processed.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped_duplicate: int = 0
    retried: int = 0
    deferred: int = 0
    errors: int = 0
    invariant_violations: int = 0
    passes: int = 0

    def record(self, outcome: MessageOutcome) -> None:
        if outcome is MessageOutcome.DEFERRED:
            self.deferred += 1
            return
        self.processed += 1
        if outcome is MessageOutcome.SUCCEEDED:
            self.succeeded += 1
        elif outcome is MessageOutcome.FAILED:
            self.failed += 1
        elif outcome is MessageOutcome.SKIPPED_DUPLICATE:
            self.skipped_duplicate += 1
        elif outcome is MessageOutcome.RETRIED:
            self.retried += 1
        elif outcome is MessageOutcome.ERRORED:
            self.errors += 1
        else:
            self.invariant_violations += 1

    def merge(self, other: "PassSummary") -> "PassSummary":
        """Add another summary's counters into this one and return self."""
        for name in type(self).model_fields:
            setattr(self, name, getattr(self, name) + getattr(other, name))
        return self
