# recstream/tasks.py
# Chunk processing queue (huey on Redis).
#
# - submit_chunk(session_id, idx, payload): store the raw chunk, enqueue its job
# - enqueue(session_id, idx): job payload is (session_id, chunk_index) only;
#   the worker finds the chunk by path convention
# - process_chunk_job: one attempt; failures are rescheduled with exponential
#   backoff until the policy's attempts are used up, then recorded as FAILED.
#   Nothing is raised back into the consumer.

import argparse
import logging
from typing import Optional

from huey import crontab

from .common import (
    DEFAULT_POLICY, HUEY_IMMEDIATE, WORKERS, ChunkNotFoundError,
    SessionClosedError, get_huey, get_logging, get_redis, validate_session_id,
)
from .ledger import JobLedger, job_id_for
from .processor import HLSProcessor
from .sessions import SessionRegistry

huey = get_huey()
redis_client = get_redis()

policy = DEFAULT_POLICY
ledger = JobLedger(redis_client, policy)
processor = HLSProcessor(registry=SessionRegistry(redis_client))

logger = logging.getLogger(__name__)


# --------------- Producer side ----------------

def enqueue(session_id: str, chunk_index: int) -> str:
    """Queue the chunk already stored for (session_id, chunk_index). Returns the job id."""
    validate_session_id(session_id)
    job_id = job_id_for(session_id, chunk_index)
    ledger.queued(job_id, session_id, chunk_index)
    process_chunk_job(session_id, chunk_index)
    logger.info(f"[{session_id}] Queued chunk {chunk_index} as job {job_id}")
    return job_id


def submit_chunk(session_id: str, chunk_index: int, payload: bytes) -> str:
    """Entry point for the upload endpoint: persist the chunk, then queue it."""
    processor.store_chunk(session_id, chunk_index, payload)
    return enqueue(session_id, chunk_index)


def _schedule_retry(session_id: str, chunk_index: int, delay: int):
    if delay > 0:
        process_chunk_job.schedule((session_id, chunk_index), delay=delay)
    else:
        process_chunk_job(session_id, chunk_index)


# -------------------- Tasks --------------------

def run_chunk_job(session_id: str, chunk_index: int) -> dict:
    job_id = job_id_for(session_id, chunk_index)
    attempt = ledger.started(job_id, session_id, chunk_index)
    logger.info(f"[{session_id}] Processing chunk {chunk_index} (attempt {attempt}/{policy.attempts})")

    try:
        record = processor.transcode_stored_chunk(session_id, chunk_index)
    except SessionClosedError as e:
        logger.warning(f"[{session_id}] Dropping chunk {chunk_index}: {e.reason}")
        ledger.cancelled(job_id, str(e))
        return {'status': 'CANCELLED', 'job_id': job_id, 'reason': e.reason}
    except ChunkNotFoundError as e:
        logger.error(f"[{session_id}] {e}")
        ledger.failed(job_id, str(e))
        return {'status': 'FAILED', 'job_id': job_id, 'error': str(e)}
    except Exception as e:
        if policy.should_retry(attempt):
            delay = policy.retry_delay(attempt)
            logger.warning(f"[{session_id}] Chunk {chunk_index} attempt {attempt} failed, retrying in {delay}s: {e}")
            ledger.retrying(job_id, delay, str(e))
            _schedule_retry(session_id, chunk_index, delay)
            return {'status': 'RETRYING', 'job_id': job_id, 'attempt': attempt, 'delay': delay}

        logger.error(f"[{session_id}] Chunk {chunk_index} failed permanently after {attempt} attempts: {e}")
        ledger.failed(job_id, str(e))
        return {'status': 'FAILED', 'job_id': job_id, 'error': str(e)}

    ledger.completed(job_id, record.path)
    return {'status': 'COMPLETED', 'job_id': job_id, 'segment_path': record.path}


@huey.task()
def process_chunk_job(session_id: str, chunk_index: int):
    return run_chunk_job(session_id, chunk_index)


@huey.periodic_task(crontab(minute='*/15'))
def prune_job_history():
    return ledger.prune()


# -------------------- Worker --------------------

def run_worker(workers: int = WORKERS, worker_type: str = 'thread', periodic: bool = True):
    get_logging("worker")
    if HUEY_IMMEDIATE:
        logger.warning("HUEY_IMMEDIATE is set; tasks run inline and the consumer has nothing to do")
    consumer = huey.create_consumer(workers=workers, worker_type=worker_type, periodic=periodic)
    consumer.run()


def main(argv: Optional[list] = None):
    parser = argparse.ArgumentParser(description="Run the recstream chunk worker")
    parser.add_argument('-w', '--workers', type=int, default=WORKERS)
    parser.add_argument('-k', '--worker-type', choices=('thread', 'process', 'greenlet'), default='thread')
    parser.add_argument('--no-periodic', action='store_true', help="don't run the history pruning task")
    args = parser.parse_args(argv)
    run_worker(args.workers, args.worker_type, periodic=not args.no_periodic)


if __name__ == '__main__':
    main()
