# recstream/sessions.py
# Session table: RECORDING -> FINALIZED -> RECLAIMED, stored in Redis so
# every worker process and the HTTP app see the same lifecycle.

import logging
from typing import Dict, Optional

import redis

from .common import (
    SESSION_TOMBSTONE_TTL_SEC, SessionClosedError, SessionState,
    time_now, validate_session_id,
)

logger = logging.getLogger(__name__)

SESSIONS_INDEX = "sessions:all"


def _session_key(session_id: str) -> str:
    return f"session:{session_id}"


def _describe(state: Optional[SessionState]) -> str:
    return f"session is {state.value.lower()}" if state else "session record vanished"


class SessionRegistry:
    def __init__(self, redis_client: redis.Redis, tombstone_ttl: int = SESSION_TOMBSTONE_TTL_SEC):
        self.redis = redis_client
        self.tombstone_ttl = tombstone_ttl

    def get(self, session_id: str) -> Dict[str, str]:
        return self.redis.hgetall(_session_key(validate_session_id(session_id))) or {}

    def state(self, session_id: str) -> Optional[SessionState]:
        s = self.redis.hget(_session_key(validate_session_id(session_id)), "state")
        return SessionState.parse(s) if s else None

    def open(self, session_id: str) -> SessionState:
        """
        Create the session on its first chunk, or confirm it is still
        recording. Raises SessionClosedError for finalized/reclaimed ones.
        """
        key = _session_key(validate_session_id(session_id))
        created = self.redis.hsetnx(key, "state", SessionState.RECORDING.value)
        if created:
            pipe = self.redis.pipeline()
            pipe.hset(key, "created_at", time_now())
            pipe.sadd(SESSIONS_INDEX, key)
            pipe.execute()
            logger.info(f"[{session_id}] Session opened")
            return SessionState.RECORDING

        state = self.state(session_id)
        if state is not SessionState.RECORDING:
            raise SessionClosedError(session_id, _describe(state))
        return state

    def ensure_recording(self, session_id: str) -> None:
        """Like open() but never creates: unknown sessions pass (no registry row yet)."""
        state = self.state(session_id)
        if state is not None and state is not SessionState.RECORDING:
            raise SessionClosedError(session_id, _describe(state))

    def mark_finalized(self, session_id: str) -> None:
        key = _session_key(validate_session_id(session_id))
        state = self.state(session_id)
        if state is SessionState.RECLAIMED:
            raise SessionClosedError(session_id, _describe(state))
        if state is SessionState.FINALIZED:
            return
        pipe = self.redis.pipeline()
        pipe.hset(key, mapping={"state": SessionState.FINALIZED.value, "finalized_at": time_now()})
        pipe.sadd(SESSIONS_INDEX, key)
        pipe.execute()

    def mark_reclaimed(self, session_id: str) -> None:
        key = _session_key(validate_session_id(session_id))
        pipe = self.redis.pipeline()
        pipe.hset(key, mapping={"state": SessionState.RECLAIMED.value, "reclaimed_at": time_now()})
        pipe.expire(key, self.tombstone_ttl)
        pipe.srem(SESSIONS_INDEX, key)
        pipe.execute()
