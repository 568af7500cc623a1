"""Redis-backed job queue with retries, stalled-job recovery and parent/child flows.

Layout under the ``{queue_name}:`` prefix:

- ``id``: job id counter
- ``job:{id}``: job hash (kind, data, state, attempts, parent, result, error, timestamps)
- ``wait``: list of runnable job ids (LPUSH in, consumed from the right)
- ``active``: list of job ids being processed, ``locks``: zset of their lock deadlines
- ``delayed``: zset of job ids waiting out a retry backoff, scored by due time
- ``completed`` / ``failed``: zsets of finished job ids, scored by finish time
- ``job:{id}:pending`` / ``job:{id}:results``: a flow parent's unsettled children
  and the terminal value of each settled child

Finished jobs beyond the retention counts are deleted, oldest first, when
another job finishes.

Every state transition that touches more than one key runs as a Lua script
(or a MULTI/EXEC transaction) so concurrent workers never observe half a move.
"""

import json
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Optional, Sequence

import redis.asyncio as redis

from pricewatch.config import settings
from pricewatch.worker.jobs import Job, JobKind, JobState

logger = logging.getLogger(__name__)

# Claims a job moved onto the active list: token, processed time and lock deadline.
# Returns 0 when the job hash is gone (the id is dropped), 1 otherwise.
ACTIVATE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
    redis.call('LREM', KEYS[3], 0, ARGV[1])
    return 0
end
redis.call('HSET', KEYS[1], 'state', 'active', 'token', ARGV[2], 'processed_at', ARGV[3])
redis.call('ZADD', KEYS[2], ARGV[4], ARGV[1])
return 1
"""

# Moves an active job to completed/failed and settles it on its flow parent.
# A finished job's own flow bookkeeping (pending set, child results) is
# dropped, and the finished set is trimmed to ARGV[9] entries (-1 keeps all),
# deleting the hashes of the jobs trimmed away.
# Returns -1 if the job is not active, -2 if the token does not match,
# 2 if this call released the parent onto the wait list, 1 otherwise.
FINALIZE_SCRIPT = """
if redis.call('HGET', KEYS[1], 'state') ~= 'active' then
    return -1
end
if redis.call('HGET', KEYS[1], 'token') ~= ARGV[2] then
    return -2
end
redis.call('LREM', KEYS[2], 0, ARGV[1])
redis.call('ZREM', KEYS[3], ARGV[1])
redis.call('HINCRBY', KEYS[1], 'attempts_made', 1)
redis.call('HSET', KEYS[1], 'state', ARGV[3], ARGV[4], ARGV[5], 'finished_at', ARGV[6], 'token', '')
redis.call('DEL', KEYS[9], KEYS[10])
redis.call('ZADD', KEYS[4], ARGV[6], ARGV[1])
local released = 1
if ARGV[7] ~= '' then
    redis.call('HSET', KEYS[7], ARGV[1], ARGV[8])
    redis.call('SREM', KEYS[6], ARGV[1])
    if redis.call('SCARD', KEYS[6]) == 0 and redis.call('HGET', KEYS[5], 'state') == 'waiting-children' then
        redis.call('HSET', KEYS[5], 'state', 'waiting')
        redis.call('LPUSH', KEYS[8], ARGV[7])
        released = 2
    end
end
local keep = tonumber(ARGV[9])
if keep >= 0 then
    local excess = redis.call('ZCARD', KEYS[4]) - keep
    if excess > 0 then
        local trimmed = redis.call('ZRANGE', KEYS[4], 0, excess - 1)
        for _, id in ipairs(trimmed) do
            redis.call('DEL', ARGV[10] .. id, ARGV[10] .. id .. ':pending', ARGV[10] .. id .. ':results')
        end
        redis.call('ZREMRANGEBYRANK', KEYS[4], 0, excess - 1)
    end
end
return released
"""

# Moves an active job to the delayed set for a backoff retry.
# Returns -1 if the job is not active, -2 if the token does not match, 1 otherwise.
RETRY_SCRIPT = """
if redis.call('HGET', KEYS[1], 'state') ~= 'active' then
    return -1
end
if redis.call('HGET', KEYS[1], 'token') ~= ARGV[2] then
    return -2
end
redis.call('LREM', KEYS[2], 0, ARGV[1])
redis.call('ZREM', KEYS[3], ARGV[1])
redis.call('HINCRBY', KEYS[1], 'attempts_made', 1)
redis.call('HSET', KEYS[1], 'state', 'delayed', 'error', ARGV[3], 'token', '', 'delayed_until', ARGV[4])
redis.call('ZADD', KEYS[4], ARGV[4], ARGV[1])
return 1
"""

# Moves due delayed jobs back to the wait list. Returns how many moved.
PROMOTE_SCRIPT = """
local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, tonumber(ARGV[2]))
for _, id in ipairs(ids) do
    redis.call('ZREM', KEYS[1], id)
    redis.call('HSET', ARGV[3] .. id, 'state', 'waiting')
    redis.call('LPUSH', KEYS[2], id)
end
return #ids
"""

# Recovers jobs whose worker died. Jobs past their lock deadline count an
# attempt and go back to waiting, or are reported as exhausted (id, token)
# so the caller fails them through FINALIZE. Ids found on the active list
# without a lock on two consecutive sweeps never started and are requeued.
STALLED_SCRIPT = """
local recovered = {}
local exhausted = {}
local expired = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', ARGV[1])
for _, id in ipairs(expired) do
    local key = ARGV[2] .. id
    local attempts = tonumber(redis.call('HGET', key, 'attempts_made') or '0')
    local max_attempts = tonumber(redis.call('HGET', key, 'max_attempts') or '1')
    if attempts + 1 >= max_attempts then
        table.insert(exhausted, id)
        table.insert(exhausted, redis.call('HGET', key, 'token') or '')
    else
        redis.call('LREM', KEYS[1], 0, id)
        redis.call('ZREM', KEYS[2], id)
        redis.call('HINCRBY', key, 'attempts_made', 1)
        redis.call('HSET', key, 'state', 'waiting', 'token', '', 'error', 'job stalled')
        redis.call('RPUSH', KEYS[4], id)
        table.insert(recovered, id)
    end
end
local candidates = redis.call('SMEMBERS', KEYS[3])
redis.call('DEL', KEYS[3])
for _, id in ipairs(candidates) do
    if redis.call('ZSCORE', KEYS[2], id) == false and redis.call('LREM', KEYS[1], 0, id) > 0 then
        redis.call('HSET', ARGV[2] .. id, 'state', 'waiting')
        redis.call('RPUSH', KEYS[4], id)
        table.insert(recovered, id)
    end
end
local active = redis.call('LRANGE', KEYS[1], 0, -1)
for _, id in ipairs(active) do
    if redis.call('ZSCORE', KEYS[2], id) == false then
        redis.call('SADD', KEYS[3], id)
    end
end
return {recovered, exhausted}
"""


def _now_ms() -> int:
    return int(time.time() * 1000)


class QueueKeys:
    """Redis key names for one queue."""

    def __init__(self, name: str):
        self.prefix = f"{name}:"
        self.id = f"{name}:id"
        self.wait = f"{name}:wait"
        self.active = f"{name}:active"
        self.locks = f"{name}:locks"
        self.delayed = f"{name}:delayed"
        self.completed = f"{name}:completed"
        self.failed = f"{name}:failed"
        self.stalled_candidates = f"{name}:stalled-check"
        self.job_prefix = f"{name}:job:"

    def job(self, job_id: str) -> str:
        return f"{self.job_prefix}{job_id}"

    def pending(self, job_id: str) -> str:
        return f"{self.job_prefix}{job_id}:pending"

    def results(self, job_id: str) -> str:
        return f"{self.job_prefix}{job_id}:results"

    def marker(self, name: str) -> str:
        return f"{self.prefix}marker:{name}"


class JobQueue:
    """
    Durable job queue shared by producers (API, scheduler, flows) and workers.

    Features:
    - FIFO wait list with blocking fetch
    - Token-guarded completion so a recovered job cannot be settled twice
    - Exponential backoff retries through a delayed set
    - Lock deadlines and a stalled-job sweep for crashed workers
    - Atomic parent/child flows: the parent is released exactly once, when
      its last child settles
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        name: Optional[str] = None,
        attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        lock_seconds: Optional[int] = None,
        keep_completed: Optional[int] = None,
        keep_failed: Optional[int] = None,
    ):
        """
        Initialize job queue.

        Args:
            redis_client: Redis client created with ``decode_responses=True``
            name: Queue name used as key prefix (defaults to settings.queue_name)
            attempts: Default attempts per job (defaults to settings.job_attempts)
            backoff_seconds: Base retry delay, doubled per attempt
            lock_seconds: How long an active job may run before it counts as stalled
            keep_completed: Completed jobs kept before the oldest are deleted (-1 keeps all)
            keep_failed: Failed jobs kept before the oldest are deleted (-1 keeps all)
        """
        self.redis = redis_client
        self.name = name or settings.queue_name
        self.keys = QueueKeys(self.name)
        self.attempts = attempts if attempts is not None else settings.job_attempts
        self.backoff_seconds = (
            backoff_seconds if backoff_seconds is not None else settings.job_backoff_seconds
        )
        self.lock_seconds = lock_seconds if lock_seconds is not None else settings.job_lock_seconds
        self.keep_completed = (
            keep_completed if keep_completed is not None else settings.job_keep_completed
        )
        self.keep_failed = keep_failed if keep_failed is not None else settings.job_keep_failed

    @classmethod
    def from_url(cls, redis_url: Optional[str] = None, **kwargs) -> "JobQueue":
        """Create a queue with its own Redis connection."""
        client = redis.from_url(
            redis_url or settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        return cls(client, **kwargs)

    async def close(self):
        """Close Redis connection."""
        await self.redis.aclose()

    async def ping(self) -> bool:
        return bool(await self.redis.ping())

    def _job_fields(
        self,
        kind: JobKind,
        payload,
        attempts: Optional[int],
        state: JobState,
        parent_id: Optional[str] = None,
    ) -> dict[str, Any]:
        fields = {
            "kind": kind.value,
            "data": payload.to_json(),
            "state": state.value,
            "attempts_made": 0,
            "max_attempts": attempts or self.attempts,
            "created_at": _now_ms(),
        }
        if parent_id:
            fields["parent_id"] = parent_id
        return fields

    async def add(self, kind: JobKind, payload, attempts: Optional[int] = None) -> str:
        """
        Enqueue a standalone job.

        Args:
            kind: Job kind
            payload: Payload model for the kind
            attempts: Attempts before the job settles as failed

        Returns:
            The new job id
        """
        job_id = str(await self.redis.incr(self.keys.id))
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(
                self.keys.job(job_id),
                mapping=self._job_fields(kind, payload, attempts, JobState.WAITING),
            )
            pipe.lpush(self.keys.wait, job_id)
            await pipe.execute()

        logger.info(f"Enqueued {kind.value} job {job_id}")
        return job_id

    async def add_flow(
        self,
        parent_kind: JobKind,
        parent_payload,
        children: Sequence[tuple[JobKind, Any]],
        attempts: Optional[int] = None,
    ) -> tuple[str, list[str]]:
        """
        Enqueue a parent job gated on a set of children, in one transaction.

        The parent waits in ``waiting-children`` until every child has
        completed or failed, then moves to the wait list.

        Args:
            parent_kind: Kind of the parent job
            parent_payload: Parent payload model
            children: (kind, payload) pairs, at least one
            attempts: Attempts per job

        Returns:
            (parent_id, child_ids)
        """
        if not children:
            raise ValueError("A flow needs at least one child job")

        last_id = await self.redis.incrby(self.keys.id, len(children) + 1)
        first_id = last_id - len(children)
        parent_id = str(first_id)
        child_ids = [str(first_id + offset) for offset in range(1, len(children) + 1)]

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(
                self.keys.job(parent_id),
                mapping=self._job_fields(
                    parent_kind, parent_payload, attempts, JobState.WAITING_CHILDREN
                ),
            )
            pipe.sadd(self.keys.pending(parent_id), *child_ids)
            for child_id, (kind, payload) in zip(child_ids, children):
                pipe.hset(
                    self.keys.job(child_id),
                    mapping=self._job_fields(
                        kind, payload, attempts, JobState.WAITING, parent_id=parent_id
                    ),
                )
            pipe.lpush(self.keys.wait, *child_ids)
            await pipe.execute()

        logger.info(
            f"Enqueued {parent_kind.value} flow {parent_id} with {len(child_ids)} children"
        )
        return parent_id, child_ids

    async def fetch(self, timeout: float = 0) -> Optional[Job]:
        """
        Take the next waiting job and mark it active.

        Args:
            timeout: Seconds to block waiting for a job; 0 returns immediately

        Returns:
            The claimed Job, or None if nothing was waiting
        """
        if timeout > 0:
            job_id = await self.redis.blmove(
                self.keys.wait, self.keys.active, timeout, "RIGHT", "LEFT"
            )
        else:
            job_id = await self.redis.lmove(self.keys.wait, self.keys.active, "RIGHT", "LEFT")
        if job_id is None:
            return None

        token = uuid.uuid4().hex
        now = _now_ms()
        claimed = await self.redis.eval(
            ACTIVATE_SCRIPT,
            3,
            self.keys.job(job_id),
            self.keys.locks,
            self.keys.active,
            job_id,
            token,
            now,
            now + self.lock_seconds * 1000,
        )
        if not claimed:
            logger.warning(f"Dropped job {job_id}: job data missing")
            return None

        return await self.get_job(job_id)

    async def _finalize(self, job: Job, state: JobState, field: str, value: str, child_value: str) -> int:
        parent_id = job.parent_id or ""
        parent_key = self.keys.job(parent_id) if parent_id else self.keys.job(job.id) + ":no-parent"
        completed = state == JobState.COMPLETED
        result = await self.redis.eval(
            FINALIZE_SCRIPT,
            10,
            self.keys.job(job.id),
            self.keys.active,
            self.keys.locks,
            self.keys.completed if completed else self.keys.failed,
            parent_key,
            self.keys.pending(parent_id) if parent_id else parent_key + ":pending",
            self.keys.results(parent_id) if parent_id else parent_key + ":results",
            self.keys.wait,
            self.keys.pending(job.id),
            self.keys.results(job.id),
            job.id,
            job.token or "",
            state.value,
            field,
            value,
            _now_ms(),
            parent_id,
            child_value,
            self.keep_completed if completed else self.keep_failed,
            self.keys.job_prefix,
        )
        if result < 0:
            logger.warning(
                f"Could not move job {job.id} to {state.value}: "
                f"{'not active' if result == -1 else 'lock token mismatch'}"
            )
        elif result == 2:
            logger.info(f"All children of flow {parent_id} settled, parent released")
        return result

    async def complete(self, job: Job, result: Any = None) -> bool:
        """
        Mark an active job completed with its return value.

        Returns:
            False if the job was no longer held by this worker
        """
        value = json.dumps(result, default=str)
        return await self._finalize(job, JobState.COMPLETED, "result", value, value) > 0

    async def fail(self, job: Job, error: str) -> bool:
        """
        Mark an active job failed without further retries.

        For flow children the failure is recorded as the child's terminal
        value, so it never blocks the parent.
        """
        child_value = json.dumps(
            {"success": False, "failed": True, "error": error, "data": job.data},
            default=str,
        )
        settled = await self._finalize(job, JobState.FAILED, "error", error, child_value) > 0
        if settled:
            logger.error(f"Job {job.id} ({job.kind}) failed: {error}")
        return settled

    def backoff_delay(self, attempts_made: int) -> float:
        """Delay before the next attempt: base * 2^attempts_made seconds."""
        return self.backoff_seconds * (2 ** attempts_made)

    async def retry(self, job: Job, error: str, delay_seconds: Optional[float] = None) -> bool:
        """Move an active job to the delayed set for another attempt after a backoff."""
        delay = delay_seconds if delay_seconds is not None else self.backoff_delay(job.attempts_made)
        due = _now_ms() + int(delay * 1000)
        result = await self.redis.eval(
            RETRY_SCRIPT,
            4,
            self.keys.job(job.id),
            self.keys.active,
            self.keys.locks,
            self.keys.delayed,
            job.id,
            job.token or "",
            error,
            due,
        )
        if result < 0:
            logger.warning(f"Could not retry job {job.id}: no longer held by this worker")
            return False
        logger.info(
            f"Job {job.id} ({job.kind}) attempt {job.attempts_made + 1}/{job.max_attempts} "
            f"failed, retrying in {delay:.1f}s: {error}"
        )
        return True

    async def promote_delayed(self, limit: int = 100) -> int:
        """Move delayed jobs whose backoff has elapsed back to the wait list."""
        return await self.redis.eval(
            PROMOTE_SCRIPT,
            2,
            self.keys.delayed,
            self.keys.wait,
            _now_ms(),
            limit,
            self.keys.job_prefix,
        )

    async def recover_stalled(
        self, on_exhausted: Optional[Callable[[Job, str], Awaitable[None]]] = None
    ) -> list[str]:
        """
        Requeue jobs whose worker stopped before finishing them.

        Jobs that have used up their attempts are failed instead.

        Args:
            on_exhausted: Awaited with (job, error) before an exhausted job is failed

        Returns:
            Ids moved back to the wait list
        """
        recovered, exhausted = await self.redis.eval(
            STALLED_SCRIPT,
            4,
            self.keys.active,
            self.keys.locks,
            self.keys.stalled_candidates,
            self.keys.wait,
            _now_ms(),
            self.keys.job_prefix,
        )
        if recovered:
            logger.warning(f"Recovered {len(recovered)} stalled jobs: {recovered}")

        for job_id, token in zip(exhausted[::2], exhausted[1::2]):
            job = await self.get_job(job_id)
            if job is None:
                continue
            job.token = token
            error = "job stalled more than allowable limit"
            if on_exhausted is not None:
                await on_exhausted(job, error)
            await self.fail(job, error)

        return list(recovered)

    async def get_job(self, job_id: str) -> Optional[Job]:
        fields = await self.redis.hgetall(self.keys.job(job_id))
        if not fields:
            return None
        return Job.from_hash(job_id, fields)

    async def get_children_values(self, parent_id: str) -> dict[str, Any]:
        """Terminal value of every settled child of a flow parent, keyed by child id."""
        raw = await self.redis.hgetall(self.keys.results(parent_id))
        values = {}
        for child_id, value in raw.items():
            try:
                values[child_id] = json.loads(value)
            except json.JSONDecodeError:
                values[child_id] = value
        return values

    async def get_pending_children(self, parent_id: str) -> set[str]:
        return set(await self.redis.smembers(self.keys.pending(parent_id)))

    async def get_counts(self) -> dict[str, int]:
        """Number of jobs in each state, for health and metrics."""
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.llen(self.keys.wait)
            pipe.llen(self.keys.active)
            pipe.zcard(self.keys.delayed)
            pipe.zcard(self.keys.completed)
            pipe.zcard(self.keys.failed)
            waiting, active, delayed, completed, failed = await pipe.execute()
        return {
            "waiting": waiting,
            "active": active,
            "delayed": delayed,
            "completed": completed,
            "failed": failed,
        }

    async def mark_once(self, name: str, ttl_seconds: int = 7 * 24 * 3600) -> bool:
        """
        Set a one-time marker.

        Returns:
            True for the first caller, False if the marker already existed
        """
        return bool(await self.redis.set(self.keys.marker(name), "1", nx=True, ex=ttl_seconds))
