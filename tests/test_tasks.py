"""Queue tests: huey in immediate mode, fakeredis ledger, fake transcoder."""

import os

import pytest

from recstream.common import DEFAULT_POLICY, QueuePolicy, Status
from tests.conftest import FakeTranscoder

PAYLOAD = b"\x1a\x45\xdf\xa3" + b"\x00" * 64


def _uris(path):
    with open(path) as f:
        return [l for l in f.read().splitlines() if l and not l.startswith('#')]


@pytest.mark.unit
class TestQueuePolicy:

    def test_defaults(self):
        assert DEFAULT_POLICY.attempts == 3
        assert DEFAULT_POLICY.backoff_seconds == 5
        assert DEFAULT_POLICY.keep_completed_sec == 24 * 3600
        assert DEFAULT_POLICY.keep_completed_count == 100
        assert DEFAULT_POLICY.keep_failed_sec == 7 * 24 * 3600

    def test_exponential_backoff(self):
        assert [DEFAULT_POLICY.retry_delay(n) for n in (1, 2, 3)] == [5, 10, 20]

    def test_attempt_limit(self):
        assert DEFAULT_POLICY.should_retry(1)
        assert DEFAULT_POLICY.should_retry(2)
        assert not DEFAULT_POLICY.should_retry(3)


@pytest.mark.integration
class TestChunkJobs:

    def test_submit_processes_chunk(self, queue, processor):
        job_id = queue.submit_chunk("abc123", 0, PAYLOAD)

        assert job_id == "abc123:0"
        job = queue.ledger.get(job_id)
        assert job['status'] == Status.COMPLETED.value
        assert job['attempts'] == '1'
        assert _uris(processor.get_playlist_path("abc123")) == ["segment-0.ts"]

    def test_permanent_failure_is_excluded(self, queue, processor, monkeypatch):
        fake = FakeTranscoder(fail_indices={1})
        monkeypatch.setattr(processor, 'transcoder', fake)

        for idx in (0, 1, 2):
            queue.submit_chunk("abc123", idx, PAYLOAD)

        assert _uris(processor.get_playlist_path("abc123")) == ["segment-0.ts", "segment-2.ts"]
        failed = queue.ledger.get("abc123:1")
        assert failed['status'] == Status.FAILED.value
        assert failed['attempts'] == '3'
        assert 'forced failure' in failed['error']
        assert fake.calls_for(1) == 3
        # raw chunk kept for inspection
        assert os.path.exists(processor.layout.chunk_path("abc123", 1))
        assert queue.ledger.get("abc123:2")['status'] == Status.COMPLETED.value

    def test_transient_failure_recovers(self, queue, processor, monkeypatch):
        monkeypatch.setattr(processor, 'transcoder', FakeTranscoder(fail_times={0: 2}))

        queue.submit_chunk("abc123", 0, PAYLOAD)

        job = queue.ledger.get("abc123:0")
        assert job['status'] == Status.COMPLETED.value
        assert job['attempts'] == '3'
        assert _uris(processor.get_playlist_path("abc123")) == ["segment-0.ts"]

    def test_retry_is_scheduled_with_backoff(self, queue, processor, monkeypatch):
        monkeypatch.setattr(queue, 'policy', QueuePolicy())
        monkeypatch.setattr(processor, 'transcoder', FakeTranscoder(fail_indices={0}))

        queue.submit_chunk("abc123", 0, PAYLOAD)

        job = queue.ledger.get("abc123:0")
        assert job['status'] == Status.RETRYING.value
        assert job['attempts'] == '1'
        assert len(queue.huey.scheduled()) == 1

    def test_job_for_reclaimed_session_is_cancelled(self, queue, processor):
        processor.store_chunk("abc123", 0, PAYLOAD)
        processor.cleanup("abc123")

        job_id = queue.enqueue("abc123", 0)

        job = queue.ledger.get(job_id)
        assert job['status'] == Status.CANCELLED.value
        assert not processor.layout.session_exists("abc123")

    def test_job_after_finalize_is_cancelled(self, queue, processor):
        queue.submit_chunk("abc123", 0, PAYLOAD)
        processor.finalize_playlist("abc123")
        # chunk stored by a late upload before the session closed
        with open(processor.layout.chunk_path("abc123", 1), 'wb') as f:
            f.write(PAYLOAD)

        queue.enqueue("abc123", 1)

        assert queue.ledger.get("abc123:1")['status'] == Status.CANCELLED.value
        assert _uris(processor.get_playlist_path("abc123")) == ["segment-0.ts"]

    def test_missing_chunk_fails_without_retry(self, queue, processor):
        queue.submit_chunk("abc123", 0, PAYLOAD)
        queue.enqueue("abc123", 7)

        job = queue.ledger.get("abc123:7")
        assert job['status'] == Status.FAILED.value
        assert job['attempts'] == '1'

    def test_redelivery_resets_attempts(self, queue, processor, monkeypatch):
        monkeypatch.setattr(processor, 'transcoder', FakeTranscoder(fail_indices={0}))
        queue.submit_chunk("abc123", 0, PAYLOAD)
        assert queue.ledger.get("abc123:0")['status'] == Status.FAILED.value

        monkeypatch.setattr(processor, 'transcoder', FakeTranscoder())
        queue.submit_chunk("abc123", 0, PAYLOAD)

        job = queue.ledger.get("abc123:0")
        assert job['status'] == Status.COMPLETED.value
        assert job['attempts'] == '1'
        assert queue.ledger.count('failed') == 0
