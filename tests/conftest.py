"""Pytest configuration and fixtures for recstream tests."""

import os
import logging
import threading

import pytest
import fakeredis

from recstream.common import QueuePolicy, TranscodeError
from recstream.ledger import JobLedger
from recstream.processor import HLSProcessor
from recstream.sessions import SessionRegistry


logging.basicConfig(level=logging.INFO)

TS_PACKET = b'\x47' + b'\x00' * 187


class FakeTranscoder:
    """
    Stands in for ffmpeg. Writes a one-packet segment and removes the chunk,
    like the real transcoder does on success.

    fail_indices: chunks that always fail.
    fail_times: {index: n} chunks that fail n times, then succeed.
    """

    def __init__(self, fail_indices=(), fail_times=None):
        self.fail_indices = set(fail_indices)
        self.failures_left = dict(fail_times or {})
        self.calls = []
        self._lock = threading.Lock()

    def convert(self, chunk_path, segment_path, chunk_index):
        with self._lock:
            self.calls.append(chunk_index)
            left = self.failures_left.get(chunk_index, 0)
            if left:
                self.failures_left[chunk_index] = left - 1
        if chunk_index in self.fail_indices or left:
            raise TranscodeError(f"forced failure on chunk {chunk_index}", returncode=1,
                                 stderr="Invalid data found when processing input")
        with open(segment_path, 'wb') as f:
            f.write(TS_PACKET)
        os.remove(chunk_path)
        return segment_path

    def calls_for(self, chunk_index):
        return self.calls.count(chunk_index)


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def registry(redis_client):
    return SessionRegistry(redis_client)


@pytest.fixture
def transcoder():
    return FakeTranscoder()


@pytest.fixture
def processor(tmp_path, registry, transcoder):
    return HLSProcessor(base_dir=str(tmp_path / "hls"), registry=registry, transcoder=transcoder)


@pytest.fixture
def read_playlist(processor):
    def _read(session_id):
        with open(processor.get_playlist_path(session_id), encoding='utf-8') as f:
            return f.read()
    return _read


@pytest.fixture
def queue(monkeypatch, redis_client, processor):
    """recstream.tasks wired to in-memory huey, fakeredis and the fake transcoder."""
    from recstream import tasks

    monkeypatch.setattr(tasks, 'processor', processor)
    monkeypatch.setattr(tasks, 'ledger', JobLedger(redis_client))
    # retries run inline when there is no backoff
    monkeypatch.setattr(tasks, 'policy', QueuePolicy(backoff_seconds=0))
    tasks.huey.immediate = True
    try:
        yield tasks
    finally:
        tasks.huey.immediate = False
