"""
Tests for the rate-limited label queue.
"""

from __future__ import annotations

from conftest import FakePublisher, SleepRecorder

from notes_consensus.label_queue import (
    FixedDelay, LabelOperation, LabelOutcome, LabelQueue, QueueState
)
from notes_consensus.models import LabelAction, NoteStatus


def _publish(note_id):
    return LabelOperation(note_id, f"at://post/{note_id}", LabelAction.PUBLISH, NoteStatus.CURRENTLY_RATED_HELPFUL)


def _negate(note_id):
    return LabelOperation(note_id, f"at://post/{note_id}", LabelAction.NEGATE)


def test_budget_caps_calls_and_defers_the_rest():
    publisher = FakePublisher()
    sleep = SleepRecorder()
    queue = LabelQueue(publisher, max_operations=3, delay_policy=FixedDelay(0.2), sleep=sleep)

    for i in range(5):
        queue.submit(_publish(f"n{i}"))
    results = queue.drain()

    assert publisher.calls == 3
    assert [r.outcome for r in results] == [LabelOutcome.PUBLISHED] * 3 + [LabelOutcome.DEFERRED] * 2
    # Delay only between consecutive calls
    assert sleep.delays == [0.2, 0.2]
    assert queue.state == QueueState.EXHAUSTED
    assert queue.remaining_budget == 0


def test_calls_are_made_in_submission_order():
    publisher = FakePublisher()
    queue = LabelQueue(publisher, max_operations=10, sleep=SleepRecorder())
    queue.submit(_publish("a"))
    queue.submit(_negate("b"))
    queue.submit(_publish("c"))
    queue.drain()

    assert [p[0] for p in publisher.published] == ["a", "c"]
    assert publisher.negated == [("b", "at://post/b")]
    assert queue.state == QueueState.DRAINED


def test_failure_does_not_stop_the_queue():
    publisher = FakePublisher(fail=True)
    queue = LabelQueue(publisher, max_operations=10, sleep=SleepRecorder())
    for i in range(3):
        queue.submit(_negate(f"n{i}"))
    results = queue.drain()

    assert publisher.calls == 3
    assert all(r.outcome == LabelOutcome.FAILED for r in results)


def test_publisher_exception_counts_as_failure():
    publisher = FakePublisher(raise_error=True)
    queue = LabelQueue(publisher, max_operations=10, sleep=SleepRecorder())
    result = queue.run(_publish("n1"))

    assert result.outcome == LabelOutcome.FAILED
    assert "labeler unreachable" in result.error


def test_budget_is_shared_across_drains():
    publisher = FakePublisher()
    sleep = SleepRecorder()
    queue = LabelQueue(publisher, max_operations=2, delay_policy=FixedDelay(0.5), sleep=sleep)

    assert queue.run(_publish("n1")).outcome == LabelOutcome.PUBLISHED
    assert queue.run(_negate("n2")).outcome == LabelOutcome.NEGATED
    assert queue.run(_negate("n3")).outcome == LabelOutcome.DEFERRED

    assert publisher.calls == 2
    assert sleep.delays == [0.5]


def test_custom_delay_policy():
    class Backoff:
        def next_delay(self, previous):
            return 1.0 if previous.outcome == LabelOutcome.FAILED else 0.1

    publisher = FakePublisher(fail=True)
    sleep = SleepRecorder()
    queue = LabelQueue(publisher, max_operations=5, delay_policy=Backoff(), sleep=sleep)
    for i in range(3):
        queue.submit(_negate(f"n{i}"))
    queue.drain()

    assert sleep.delays == [1.0, 1.0]


def test_empty_queue_makes_no_calls():
    publisher = FakePublisher()
    sleep = SleepRecorder()
    queue = LabelQueue(publisher, max_operations=5, sleep=sleep)

    assert queue.drain() == []
    assert publisher.calls == 0
    assert sleep.delays == []
