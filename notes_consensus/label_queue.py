"""
Rate-limited, serialized execution of label operations.

The external labeling service is throttled, so a run only ever has one
label call in flight, waits between consecutive calls, and stops after a
fixed number of attempts. Anything left over is reported as deferred and
picked up by a later run.

The queue is a small state machine:

    IDLE -> IN_FLIGHT -> IDLE -> DELAYING -> IN_FLIGHT -> ... -> DRAINED
                                     \\-> EXHAUSTED (budget spent, rest deferred)

Swapping the DelayPolicy changes the pacing without touching the callers.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, List, Optional, Protocol

from notes_consensus.labels import LabelPublisher
from notes_consensus.models import LabelAction, NoteStatus


logger = logging.getLogger(__name__)


class QueueState(str, Enum):
    IDLE = "idle"
    IN_FLIGHT = "in_flight"
    DELAYING = "delaying"
    EXHAUSTED = "exhausted"
    DRAINED = "drained"


class LabelOutcome(str, Enum):
    PUBLISHED = "published"
    NEGATED = "negated"
    FAILED = "failed"
    DEFERRED = "deferred"


@dataclass(frozen=True)
class LabelOperation:
    note_id: str
    post_uri: str
    action: LabelAction
    status: Optional[NoteStatus] = None  # Only used by PUBLISH


@dataclass(frozen=True)
class LabelResult:
    operation: LabelOperation
    outcome: LabelOutcome
    error: Optional[str] = None


class DelayPolicy(Protocol):
    def next_delay(self, previous: LabelResult) -> float:
        """Seconds to wait before the next operation, given the last one."""
        ...


class FixedDelay:
    """Wait the same amount after every operation."""

    def __init__(self, seconds: float):
        self.seconds = seconds

    def next_delay(self, previous: LabelResult) -> float:
        return self.seconds


class LabelQueue:
    """FIFO of label operations with a per-run attempt budget."""

    def __init__(
        self,
        publisher: LabelPublisher,
        max_operations: int,
        delay_policy: Optional[DelayPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.publisher = publisher
        self.max_operations = max_operations
        self.delay_policy = delay_policy or FixedDelay(0.0)
        self.sleep = sleep

        self.state = QueueState.IDLE
        self.pending: Deque[LabelOperation] = deque()
        self.results: List[LabelResult] = []
        self.attempted = 0
        self._last_result: Optional[LabelResult] = None

    @property
    def remaining_budget(self) -> int:
        return max(0, self.max_operations - self.attempted)

    def submit(self, operation: LabelOperation):
        self.pending.append(operation)
        if self.state == QueueState.DRAINED:
            self.state = QueueState.IDLE

    def step(self) -> Optional[LabelResult]:
        """Advance the state machine by one transition."""
        if self.state == QueueState.DELAYING:
            self.sleep(self.delay_policy.next_delay(self._last_result))
            self.state = QueueState.IN_FLIGHT
            return None

        if self.state == QueueState.IN_FLIGHT:
            result = self._execute(self.pending.popleft())
            self.attempted += 1
            self._last_result = result
            self.results.append(result)
            self.state = QueueState.IDLE
            return result

        if not self.pending:
            if self.state != QueueState.EXHAUSTED:
                self.state = QueueState.DRAINED
            return None

        if self.attempted >= self.max_operations:
            self.state = QueueState.EXHAUSTED
            result = LabelResult(self.pending.popleft(), LabelOutcome.DEFERRED)
            self.results.append(result)
            return result

        self.state = QueueState.DELAYING if self._last_result is not None else QueueState.IN_FLIGHT
        return None

    def drain(self) -> List[LabelResult]:
        """Run until nothing is pending; return the results produced."""
        start = len(self.results)
        while self.pending or self.state in (QueueState.DELAYING, QueueState.IN_FLIGHT):
            self.step()
        self.step()
        deferred = sum(1 for r in self.results[start:] if r.outcome == LabelOutcome.DEFERRED)
        if deferred:
            logger.info(f"Label budget of {self.max_operations} spent, deferred {deferred} operations")
        return self.results[start:]

    def run(self, operation: LabelOperation) -> LabelResult:
        """Submit a single operation and drain it."""
        self.submit(operation)
        return self.drain()[-1]

    def _execute(self, operation: LabelOperation) -> LabelResult:
        try:
            if operation.action == LabelAction.NEGATE:
                ok = self.publisher.negate_label(operation.note_id, operation.post_uri)
                success = LabelOutcome.NEGATED
            else:
                ok = self.publisher.publish_label(
                    operation.note_id, operation.post_uri, operation.status
                )
                success = LabelOutcome.PUBLISHED
        except Exception as e:
            logger.exception(f"Label {operation.action.value} failed for note {operation.note_id}")
            return LabelResult(operation, LabelOutcome.FAILED, str(e))

        if not ok:
            logger.warning(f"Label {operation.action.value} rejected for note {operation.note_id}")
            return LabelResult(operation, LabelOutcome.FAILED, "publisher reported failure")
        return LabelResult(operation, success)
