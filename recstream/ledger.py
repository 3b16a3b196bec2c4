# recstream/ledger.py
# Job history in Redis, for observability and the attempt counter.
#
#   job:<session_id>:<chunk_index>   hash   status/attempts/error/timestamps
#   jobs:active                      set    job keys not yet terminal
#   jobs:completed                   zset   job keys scored by ended_at
#   jobs:failed                      zset   failed + cancelled, scored by ended_at

import logging
from typing import Dict, List, Optional

import redis

from .common import DEFAULT_POLICY, QueuePolicy, Status, time_now

logger = logging.getLogger(__name__)

ACTIVE_INDEX    = "jobs:active"
COMPLETED_INDEX = "jobs:completed"
FAILED_INDEX    = "jobs:failed"


def job_id_for(session_id: str, chunk_index: int) -> str:
    return f"{session_id}:{chunk_index}"


def _job_key(job_id: str) -> str:
    return f"job:{job_id}"


class JobLedger:
    def __init__(self, redis_client: redis.Redis, policy: QueuePolicy = DEFAULT_POLICY):
        self.redis = redis_client
        self.policy = policy

    # ---- transitions ----

    def queued(self, job_id: str, session_id: str, chunk_index: int) -> None:
        """Fresh delivery of a chunk: resets the attempt counter."""
        key = _job_key(job_id)
        pipe = self.redis.pipeline()
        pipe.delete(key)
        pipe.hset(key, mapping={
            'job_id': job_id,
            'session_id': session_id,
            'chunk_index': chunk_index,
            'status': Status.QUEUED.value,
            'attempts': 0,
            'max_attempts': self.policy.attempts,
            'created_at': time_now(),
        })
        pipe.sadd(ACTIVE_INDEX, key)
        pipe.zrem(COMPLETED_INDEX, key)
        pipe.zrem(FAILED_INDEX, key)
        pipe.execute()

    def started(self, job_id: str, session_id: str, chunk_index: int) -> int:
        """Record one more attempt. Returns the 1-based attempt number."""
        key = _job_key(job_id)
        pipe = self.redis.pipeline()
        pipe.hincrby(key, 'attempts', 1)
        pipe.hset(key, mapping={
            'job_id': job_id,
            'session_id': session_id,
            'chunk_index': chunk_index,
            'status': Status.ACTIVE.value,
            'started_at': time_now(),
        })
        pipe.persist(key)
        pipe.sadd(ACTIVE_INDEX, key)
        attempt, *_ = pipe.execute()
        return int(attempt)

    def retrying(self, job_id: str, delay: float, error: str) -> None:
        self.redis.hset(_job_key(job_id), mapping={
            'status': Status.RETRYING.value,
            'error': error,
            'retry_at': time_now() + delay,
        })

    def completed(self, job_id: str, segment_path: str) -> None:
        self._finish(job_id, Status.COMPLETED, COMPLETED_INDEX,
                     self.policy.keep_completed_sec,
                     {'segment_path': segment_path, 'error': ''})
        self._trim(COMPLETED_INDEX, self.policy.keep_completed_sec, self.policy.keep_completed_count)

    def failed(self, job_id: str, error: str) -> None:
        self._finish(job_id, Status.FAILED, FAILED_INDEX,
                     self.policy.keep_failed_sec, {'error': error})
        self._trim(FAILED_INDEX, self.policy.keep_failed_sec)

    def cancelled(self, job_id: str, reason: str) -> None:
        self._finish(job_id, Status.CANCELLED, FAILED_INDEX,
                     self.policy.keep_failed_sec, {'error': reason})
        self._trim(FAILED_INDEX, self.policy.keep_failed_sec)

    def _finish(self, job_id: str, status: Status, index: str, ttl: int, extra: Dict) -> None:
        key = _job_key(job_id)
        now = time_now()
        pipe = self.redis.pipeline()
        pipe.hset(key, mapping={'status': status.value, 'ended_at': now, **extra})
        pipe.expire(key, ttl)
        pipe.srem(ACTIVE_INDEX, key)
        pipe.zadd(index, {key: now})
        pipe.execute()

    # ---- retention ----

    def _trim(self, index: str, max_age: int, max_count: Optional[int] = None, now: Optional[float] = None) -> int:
        now = time_now() if now is None else now
        doomed = list(self.redis.zrangebyscore(index, '-inf', now - max_age))
        if max_count is not None:
            total = self.redis.zcard(index) - len(doomed)
            if total > max_count:
                # oldest first, skipping the ones already expired by age
                oldest = self.redis.zrange(index, len(doomed), len(doomed) + total - max_count - 1)
                doomed.extend(oldest)
        if not doomed:
            return 0
        pipe = self.redis.pipeline()
        pipe.zrem(index, *doomed)
        pipe.delete(*doomed)
        pipe.execute()
        return len(doomed)

    def prune(self, now: Optional[float] = None) -> int:
        removed = self._trim(COMPLETED_INDEX, self.policy.keep_completed_sec,
                             self.policy.keep_completed_count, now=now)
        removed += self._trim(FAILED_INDEX, self.policy.keep_failed_sec, now=now)
        if removed:
            logger.info(f"Pruned {removed} job records")
        return removed

    # ---- queries ----

    def get(self, job_id: str) -> Dict[str, str]:
        return self.redis.hgetall(_job_key(job_id)) or {}

    def list(self, status: str = 'completed', offset: int = 0, limit: int = 20) -> List[Dict[str, str]]:
        status = (status or 'completed').lower()
        if status == 'active':
            keys = sorted(self.redis.smembers(ACTIVE_INDEX) or [])[offset:offset + limit]
        else:
            index = FAILED_INDEX if status == 'failed' else COMPLETED_INDEX
            keys = self.redis.zrevrange(index, offset, offset + limit - 1)
        if not keys:
            return []
        pipe = self.redis.pipeline()
        for k in keys:
            pipe.hgetall(k)
        return [j for j in pipe.execute() if j]

    def count(self, status: str = 'completed') -> int:
        status = (status or 'completed').lower()
        if status == 'active':
            return self.redis.scard(ACTIVE_INDEX)
        return self.redis.zcard(FAILED_INDEX if status == 'failed' else COMPLETED_INDEX)
