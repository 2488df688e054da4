"""
Tests for the SQLAlchemy-backed buffering queue.

Validates:
- Debounce: N notifications inside the window -> one batch
- Full batches (10) are delivered without waiting for the window
- Delayed messages (retry tokens) stay hidden until their delay elapses
- Depth introspection counts visible, delayed and in-flight messages
- Purge spares the batch in flight and honours the cooldown
- 10 failed deliveries -> dead letter sink, no 11th delivery
- Dead letters expire after the retention period
"""

import json

import pytest

from kb_ingest.ingestion.buffering.models import BufferedMessage, DeadLetterMessage
from kb_ingest.ingestion.buffering.queue import SqlBufferingQueue
from kb_ingest.ingestion.jobs.models import EventKind, QueueDepth, RetryToken
from kb_ingest.ingestion.jobs.retry import ErrorCategory, RedeliveryPolicy
from kb_ingest.integrations.sqs.exceptions import QueuePurgeInProgressError


@pytest.fixture
def queue(db_session, clock):
    return SqlBufferingQueue(
        db_session,
        queue_name="kb-notifications",
        debounce_window_seconds=60,
        max_batch_size=10,
        policy=RedeliveryPolicy(
            max_receive_count=10,
            redelivery_interval_seconds=300,
            dead_letter_retention_days=14,
        ),
        purge_cooldown_seconds=60,
        clock=clock,
    )


def upload(queue: SqlBufferingQueue, count: int) -> list[str]:
    return [queue.send_change(f"docs/file-{i}.pdf") for i in range(count)]


class TestDebounce:
    """Batches are delivered after the quiet window or when full."""

    def test_nothing_delivered_inside_window(self, queue, clock):
        upload(queue, 3)
        clock.advance(59)

        assert queue.receive_batch() == []

    def test_burst_collapses_into_one_batch(self, queue, clock):
        for _ in range(7):
            upload(queue, 1)
            clock.advance(5)
        clock.advance(30)

        batch = queue.receive_batch()

        assert len(batch) == 7
        assert queue.receive_batch() == []

    def test_full_batch_delivered_immediately(self, queue):
        upload(queue, 10)

        batch = queue.receive_batch()

        assert len(batch) == 10

    def test_overflow_waits_for_next_batch(self, queue, clock):
        upload(queue, 13)

        first = queue.receive_batch()
        second = queue.receive_batch()
        clock.advance(60)
        third = queue.receive_batch()

        assert len(first) == 10
        assert second == []
        assert len(third) == 3

    def test_batch_in_delivery_order(self, queue, clock):
        ids = []
        for _ in range(3):
            ids.extend(upload(queue, 1))
            clock.advance(1)
        clock.advance(60)

        batch = queue.receive_batch()

        assert [m.message_id for m in batch] == ids

    def test_zero_window_delivers_at_once(self, db_session, clock):
        queue = SqlBufferingQueue(db_session, "kb-fast", debounce_window_seconds=0, clock=clock)
        upload(queue, 2)

        assert len(queue.receive_batch()) == 2

    def test_delivered_message_fields(self, queue, clock):
        message_id = queue.send_change("docs/a.pdf", event_kind=EventKind.DELETED, bucket="kb-docs")
        clock.advance(60)

        [message] = queue.receive_batch()

        assert message.message_id == message_id
        assert message.receive_count == 1
        assert message.receipt_handle
        body = json.loads(message.body)
        assert body["detail-type"] == "Object Deleted"
        assert body["detail"]["object"]["key"] == "docs/a.pdf"
        assert body["detail"]["bucket"]["name"] == "kb-docs"

    def test_unsupported_change_kind_rejected(self, queue):
        with pytest.raises(ValueError):
            queue.send_change("docs/a.pdf", event_kind=EventKind.RETRY)


class TestDelayedMessages:

    def test_retry_token_hidden_until_delay(self, queue, clock):
        queue.enqueue_retry_token(RetryToken(observed_job_id="job-1", created_at=clock()), 300)

        assert queue.get_depth() == QueueDepth(visible=0, delayed=1, in_flight=0)
        clock.advance(299)
        assert queue.receive_batch() == []

        clock.advance(61)
        [message] = queue.receive_batch()
        assert json.loads(message.body)["kind"] == "retry_token"

    def test_debounce_measured_from_visibility(self, queue, clock):
        queue.send("{}", delay_seconds=120)
        clock.advance(150)

        # Visible for 30s only
        assert queue.receive_batch() == []

        clock.advance(30)
        assert len(queue.receive_batch()) == 1

    def test_negative_delay_rejected(self, queue):
        with pytest.raises(ValueError):
            queue.send("{}", delay_seconds=-1)


class TestDepth:

    def test_counts_each_state(self, queue, clock):
        upload(queue, 10)
        queue.receive_batch()
        upload(queue, 2)
        queue.send("{}", delay_seconds=300)

        assert queue.get_depth() == QueueDepth(visible=2, delayed=1, in_flight=10)
        assert queue.get_depth().pending == 3

    def test_empty_queue(self, queue):
        assert queue.get_depth() == QueueDepth()


class TestAcknowledge:

    def test_acknowledge_deletes_batch(self, queue, clock):
        upload(queue, 3)
        clock.advance(60)
        batch = queue.receive_batch()

        deleted = queue.acknowledge(m.receipt_handle for m in batch)

        assert deleted == 3
        assert queue.get_depth() == QueueDepth()

    def test_stale_handles_ignored(self, queue, clock):
        upload(queue, 2)
        clock.advance(60)
        batch = queue.receive_batch()
        clock.advance(360)
        redelivered = queue.receive_batch()

        assert queue.acknowledge(m.receipt_handle for m in batch) == 0
        assert queue.get_depth().in_flight == len(redelivered) == 2

    def test_empty_acknowledge(self, queue):
        assert queue.acknowledge([]) == 0


class TestRedelivery:

    def test_failed_batch_redelivered_after_interval(self, queue, clock):
        upload(queue, 2)
        clock.advance(60)
        batch = queue.receive_batch()

        assert queue.fail(m.receipt_handle for m in batch) == 0
        clock.advance(299)
        assert queue.receive_batch() == []

        clock.advance(61)
        redelivered = queue.receive_batch()
        assert [m.receive_count for m in redelivered] == [2, 2]
        assert {m.receipt_handle for m in redelivered}.isdisjoint(
            {m.receipt_handle for m in batch}
        )

    def test_unacknowledged_batch_redelivered_after_visibility(self, queue, clock):
        upload(queue, 1)
        clock.advance(60)
        queue.receive_batch()

        clock.advance(360)
        [message] = queue.receive_batch()
        assert message.receive_count == 2

    def test_tenth_failure_dead_letters(self, queue, clock):
        [message_id] = upload(queue, 1)
        clock.advance(60)

        for attempt in range(1, 11):
            [message] = queue.receive_batch()
            assert message.receive_count == attempt
            dead = queue.fail(
                [message.receipt_handle],
                error_message="BedrockServiceError: unavailable",
                error_category=ErrorCategory.SERVER_ERROR,
            )
            assert dead == (1 if attempt == 10 else 0)
            clock.advance(360)

        # No 11th delivery
        assert queue.receive_batch() == []
        assert queue.get_depth() == QueueDepth()

        [letter] = queue.list_dead_letters()
        assert letter.message_id == message_id
        assert letter.receive_count == 10
        assert letter.error_message == "BedrockServiceError: unavailable"
        assert json.loads(letter.body)["detail"]["object"]["key"] == "docs/file-0.pdf"

    def test_timed_out_final_delivery_dead_letters(self, queue, clock):
        upload(queue, 1)
        clock.advance(60)

        for _ in range(10):
            assert len(queue.receive_batch()) == 1
            clock.advance(360)

        assert queue.receive_batch() == []
        assert queue.count_dead_letters() == 1


class TestPurge:

    def test_purge_removes_undelivered_messages(self, queue, clock):
        upload(queue, 10)
        queue.receive_batch()
        upload(queue, 3)
        queue.send("{}", delay_seconds=300)

        queue.purge()

        assert queue.get_depth() == QueueDepth(in_flight=10)
        assert queue.db.query(BufferedMessage).count() == 10

    def test_purge_keeps_in_flight_batch(self, queue, clock):
        upload(queue, 12)
        batch = queue.receive_batch()

        queue.purge()

        # The batch can still be failed and comes back after the interval
        assert queue.fail(m.receipt_handle for m in batch) == 0
        clock.advance(360)
        redelivered = queue.receive_batch()
        assert len(redelivered) == 10
        assert [m.receive_count for m in redelivered] == [2] * 10

    def test_purge_removes_expired_in_flight_messages(self, queue, clock):
        upload(queue, 2)
        clock.advance(60)
        queue.receive_batch()
        clock.advance(300)

        # Visibility lapsed, so the messages are visible again
        queue.purge()

        assert queue.get_depth() == QueueDepth()

    def test_purge_cooldown(self, queue, clock):
        queue.purge()
        clock.advance(30)

        with pytest.raises(QueuePurgeInProgressError) as exc_info:
            queue.purge()

        assert exc_info.value.retry_after_seconds == pytest.approx(30)
        assert exc_info.value.category == ErrorCategory.PURGE_COOLDOWN

    def test_purge_allowed_after_cooldown(self, queue, clock):
        queue.purge()
        clock.advance(60)
        upload(queue, 1)

        queue.purge()

        assert queue.get_depth() == QueueDepth()

    def test_purge_scoped_to_queue(self, db_session, queue, clock):
        other = SqlBufferingQueue(db_session, "other-queue", clock=clock)
        other.send("{}")
        upload(queue, 2)

        queue.purge()

        assert other.get_depth().visible == 1


class TestDeadLetterRetention:

    def _dead_letter_one(self, queue, clock):
        upload(queue, 1)
        clock.advance(60)
        for _ in range(10):
            [message] = queue.receive_batch()
            queue.fail([message.receipt_handle])
            clock.advance(360)

    def test_retained_for_fourteen_days(self, queue, clock):
        self._dead_letter_one(queue, clock)

        clock.advance(14 * 24 * 3600 - 3600)
        assert queue.expire_dead_letters() == 0
        assert queue.count_dead_letters() == 1

    def test_expired_after_retention(self, queue, clock):
        self._dead_letter_one(queue, clock)

        clock.advance(14 * 24 * 3600 + 1)
        assert queue.expire_dead_letters() == 1
        assert queue.db.query(DeadLetterMessage).count() == 0


class TestQueueInit:

    def test_queue_name_required(self, db_session):
        with pytest.raises(ValueError):
            SqlBufferingQueue(db_session, "")

    def test_batch_size_must_be_positive(self, db_session):
        with pytest.raises(ValueError):
            SqlBufferingQueue(db_session, "kb", max_batch_size=0)
