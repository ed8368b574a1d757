"""Redis job backend.

Key layout (all under ``key_prefix``)::

    job:<id>        hash, one field per Job attribute
    queue:<type>    zset of claimable job ids, lowest score first
    delayed         zset of retrying/deferred job ids scored by due time
    claimed         hash job id -> claiming worker id
    worker:<id>     hash, registration record (expires)
    workers         zset worker id -> last heartbeat epoch

Every state transition runs as a Lua script so concurrent workers observe
it atomically. Scripts touch keys derived from the prefix, so a single
Redis instance (not Cluster) is required.
"""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from finjobs.core.errors import (
    BackendError,
    ClaimError,
    ConfigurationError,
    DuplicateJobError,
    JobNotFoundError,
)
from finjobs.core.job_queue.core import (
    Job,
    JobBackend,
    JobStatus,
    QueueStats,
    WorkerInfo,
    utcnow,
)

logger = logging.getLogger(__name__)

# Lower score is claimed first: higher priority, then older.
PRIORITY_WEIGHT = 1e10

CLAIM_SCRIPT = """
local prefix = ARGV[1]
local worker = ARGV[2]
local now = tonumber(ARGV[3])
local due = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', now)
for _, id in ipairs(due) do
    redis.call('ZREM', KEYS[1], id)
    local jk = prefix .. 'job:' .. id
    local jt = redis.call('HGET', jk, 'job_type')
    if jt then
        local prio = tonumber(redis.call('HGET', jk, 'priority')) or 5
        local created = tonumber(redis.call('HGET', jk, 'created_at')) or now
        redis.call('ZADD', prefix .. 'queue:' .. jt, -prio * tonumber(ARGV[4]) + created, id)
    end
end
local best_id, best_queue, best_score = nil, nil, nil
for i = 5, #ARGV do
    local qk = prefix .. 'queue:' .. ARGV[i]
    local head = redis.call('ZRANGE', qk, 0, 0, 'WITHSCORES')
    if head[1] then
        local score = tonumber(head[2])
        if best_score == nil or score < best_score then
            best_id, best_queue, best_score = head[1], qk, score
        end
    end
end
if not best_id then
    return nil
end
redis.call('ZREM', best_queue, best_id)
local jk = prefix .. 'job:' .. best_id
redis.call('HSET', jk, 'status', 'CLAIMED', 'assigned_worker_id', worker, 'claimed_at', ARGV[3])
redis.call('HINCRBY', jk, 'attempt_count', 1)
redis.call('HSET', KEYS[2], best_id, worker)
return redis.call('HGETALL', jk)
"""

START_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
    return -1
end
if redis.call('HGET', KEYS[2], ARGV[1]) ~= ARGV[2] then
    return 0
end
redis.call('HSET', KEYS[1], 'status', 'RUNNING')
return 1
"""

COMPLETE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
    return -1
end
if redis.call('HGET', KEYS[2], ARGV[1]) ~= ARGV[2] then
    return 0
end
redis.call('HSET', KEYS[1], 'status', 'COMPLETED', 'result', ARGV[3],
    'completed_at', ARGV[4], 'assigned_worker_id', '')
redis.call('HDEL', KEYS[1], 'error_message')
redis.call('HDEL', KEYS[2], ARGV[1])
return 1
"""

FAIL_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
    return {-1, ''}
end
if redis.call('HGET', KEYS[2], ARGV[1]) ~= ARGV[2] then
    return {0, ''}
end
local attempts = tonumber(redis.call('HGET', KEYS[1], 'attempt_count')) or 0
local max_attempts = tonumber(redis.call('HGET', KEYS[1], 'max_attempts')) or 3
local now = tonumber(ARGV[5])
redis.call('HDEL', KEYS[2], ARGV[1])
if ARGV[4] == '1' and attempts < max_attempts then
    local delay = tonumber(ARGV[6]) * math.pow(tonumber(ARGV[7]), math.max(attempts - 1, 0))
    redis.call('HSET', KEYS[1], 'status', 'RETRYING', 'assigned_worker_id', '',
        'error_message', ARGV[3], 'available_at', now + delay)
    redis.call('ZADD', KEYS[3], now + delay, ARGV[1])
    return {1, 'RETRYING'}
end
redis.call('HSET', KEYS[1], 'status', 'FAILED', 'assigned_worker_id', '',
    'error_message', ARGV[3], 'completed_at', ARGV[5])
return {1, 'FAILED'}
"""

SWEEP_SCRIPT = """
local prefix = ARGV[1]
local now = tonumber(ARGV[2])
local cutoff = now - tonumber(ARGV[3])
local dead = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', '(' .. cutoff)
for _, wid in ipairs(dead) do
    redis.call('ZREM', KEYS[1], wid)
    redis.call('DEL', prefix .. 'worker:' .. wid)
end
local reclaimed = {}
local claims = redis.call('HGETALL', KEYS[2])
for i = 1, #claims, 2 do
    local jid, wid = claims[i], claims[i + 1]
    if not redis.call('ZSCORE', KEYS[1], wid) then
        local jk = prefix .. 'job:' .. jid
        redis.call('HDEL', KEYS[2], jid)
        local attempts = tonumber(redis.call('HGET', jk, 'attempt_count')) or 0
        local max_attempts = tonumber(redis.call('HGET', jk, 'max_attempts')) or 3
        if attempts < max_attempts then
            redis.call('HSET', jk, 'status', 'RETRYING', 'assigned_worker_id', '',
                'error_message', 'worker lost', 'available_at', now)
            redis.call('ZADD', KEYS[3], now, jid)
        else
            redis.call('HSET', jk, 'status', 'FAILED', 'assigned_worker_id', '',
                'error_message', 'worker lost', 'completed_at', now)
        end
        table.insert(reclaimed, jid)
    end
end
return reclaimed
"""

_TIMESTAMP_FIELDS = ("created_at", "available_at", "claimed_at", "completed_at")


def encode_job(job: Job) -> Dict[str, Any]:
    """Flatten a job into a Redis hash mapping (no None values)."""
    mapping: Dict[str, Any] = {
        "id": job.id,
        "job_type": job.job_type,
        "payload": json.dumps(job.payload),
        "status": job.status.value,
        "priority": job.priority,
        "attempt_count": job.attempt_count,
        "assigned_worker_id": job.assigned_worker_id or "",
    }
    if job.max_attempts is not None:
        mapping["max_attempts"] = job.max_attempts
    for name in _TIMESTAMP_FIELDS:
        value = getattr(job, name)
        if value is not None:
            mapping[name] = value.timestamp()
    if job.result is not None:
        mapping["result"] = json.dumps(job.result, default=str)
    if job.error_message:
        mapping["error_message"] = job.error_message
    return mapping


def decode_job(mapping: Dict[str, Any]) -> Job:
    data: Dict[str, Any] = dict(mapping)
    data["payload"] = json.loads(data.get("payload") or "{}")
    data["result"] = json.loads(data["result"]) if data.get("result") else None
    for name in _TIMESTAMP_FIELDS:
        data[name] = float(data[name]) if data.get(name) else None
    return Job.from_dict(data)


def _pairs_to_dict(flat: List[Any]) -> Dict[str, Any]:
    return {flat[i]: flat[i + 1] for i in range(0, len(flat), 2)}


class RedisJobBackend(JobBackend):
    """Redis-backed queue with Lua-scripted atomic claims."""

    name = "redis"

    def __init__(
        self,
        redis_client: Any = None,
        url: str = "redis://localhost:6379/0",
        key_prefix: str = "finjobs:",
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self._redis = redis_client
        self._owns_client = redis_client is None
        self.url = url
        self.prefix = key_prefix

    def _key(self, *parts: str) -> str:
        return self.prefix + ":".join(parts)

    def _job_key(self, job_id: str) -> str:
        return self._key("job", job_id)

    def _queue_key(self, job_type: str) -> str:
        return self._key("queue", job_type)

    def _worker_key(self, worker_id: str) -> str:
        return self._key("worker", worker_id)

    @property
    def _delayed_key(self) -> str:
        return self._key("delayed")

    @property
    def _claimed_key(self) -> str:
        return self._key("claimed")

    @property
    def _workers_key(self) -> str:
        return self._key("workers")

    @property
    def _worker_ttl(self) -> int:
        return int(self.stale_after * 2)

    async def connect(self) -> None:
        if self._redis is not None:
            return
        try:
            import redis.asyncio as aioredis
        except ImportError as e:
            raise ConfigurationError("redis package not installed") from e
        self._redis = aioredis.from_url(self.url, decode_responses=True)
        try:
            await self._redis.ping()
        except Exception as e:
            raise BackendError(f"Redis connection failed: {e}") from e
        logger.info(f"Redis job backend connected (prefix={self.prefix})")

    async def close(self) -> None:
        if self._redis is not None and self._owns_client:
            await self._redis.aclose()
            self._redis = None

    def _client(self) -> Any:
        if self._redis is None:
            raise BackendError("Redis backend is not connected")
        return self._redis

    async def enqueue(self, job: Job) -> Job:
        job = self.apply_defaults(job)
        client = self._client()
        job_key = self._job_key(job.id)
        if await client.exists(job_key):
            raise DuplicateJobError(f"Duplicate job id: {job.id}")
        async with client.pipeline(transaction=True) as pipe:
            pipe.hset(job_key, mapping=encode_job(job))
            if job.available_at and job.available_at > utcnow():
                pipe.zadd(self._delayed_key, {job.id: job.available_at.timestamp()})
            else:
                score = -job.priority * PRIORITY_WEIGHT + job.created_at.timestamp()
                pipe.zadd(self._queue_key(job.job_type), {job.id: score})
            await pipe.execute()
        logger.debug(f"Enqueued job {job.id} to {self._queue_key(job.job_type)}")
        return job

    async def register_worker(self, worker_id: str, info: WorkerInfo) -> None:
        client = self._client()
        record = info.to_dict()
        record["job_types"] = json.dumps(record["job_types"])
        async with client.pipeline(transaction=True) as pipe:
            pipe.hset(self._worker_key(worker_id), mapping=record)
            pipe.expire(self._worker_key(worker_id), self._worker_ttl)
            pipe.zadd(self._workers_key, {worker_id: info.last_heartbeat_at.timestamp()})
            await pipe.execute()

    async def update_worker_heartbeat(self, worker_id: str) -> bool:
        client = self._client()
        key = self._worker_key(worker_id)
        if not await client.exists(key):
            logger.warning(f"Heartbeat from unknown worker {worker_id}")
            return False
        now = utcnow()
        async with client.pipeline(transaction=True) as pipe:
            pipe.hset(key, "last_heartbeat_at", now.isoformat())
            pipe.expire(key, self._worker_ttl)
            pipe.zadd(self._workers_key, {worker_id: now.timestamp()})
            await pipe.execute()
        return True

    async def unregister_worker(self, worker_id: str) -> None:
        client = self._client()
        async with client.pipeline(transaction=True) as pipe:
            pipe.delete(self._worker_key(worker_id))
            pipe.zrem(self._workers_key, worker_id)
            await pipe.execute()

    async def _claim_next(self, worker_id: str, job_types: List[str]) -> Optional[Job]:
        flat = await self._client().eval(
            CLAIM_SCRIPT,
            2,
            self._delayed_key,
            self._claimed_key,
            self.prefix,
            worker_id,
            str(utcnow().timestamp()),
            str(PRIORITY_WEIGHT),
            *job_types,
        )
        if not flat:
            return None
        return decode_job(_pairs_to_dict(flat))

    def _check_owner(self, code: int, job_id: str, worker_id: str) -> None:
        if code == -1:
            raise JobNotFoundError(f"Job {job_id} not found")
        if code == 0:
            raise ClaimError(f"Worker {worker_id} does not hold the claim on job {job_id}")

    async def start_job(self, job_id: str, worker_id: str) -> None:
        code = await self._client().eval(
            START_SCRIPT, 2, self._job_key(job_id), self._claimed_key, job_id, worker_id
        )
        self._check_owner(int(code), job_id, worker_id)

    async def complete_job(self, job_id: str, worker_id: str, result: Any) -> None:
        code = await self._client().eval(
            COMPLETE_SCRIPT,
            2,
            self._job_key(job_id),
            self._claimed_key,
            job_id,
            worker_id,
            json.dumps(result, default=str),
            str(utcnow().timestamp()),
        )
        self._check_owner(int(code), job_id, worker_id)

    async def fail_job(
        self,
        job_id: str,
        worker_id: str,
        error_message: str,
        retryable: bool,
    ) -> JobStatus:
        code, status = await self._client().eval(
            FAIL_SCRIPT,
            3,
            self._job_key(job_id),
            self._claimed_key,
            self._delayed_key,
            job_id,
            worker_id,
            error_message,
            "1" if retryable else "0",
            str(utcnow().timestamp()),
            str(self.retry_policy.delay_seconds),
            str(self.retry_policy.backoff_factor),
        )
        self._check_owner(int(code), job_id, worker_id)
        return JobStatus(status)

    async def get_job(self, job_id: str) -> Optional[Job]:
        data = await self._client().hgetall(self._job_key(job_id))
        return decode_job(data) if data else None

    async def list_workers(self) -> List[WorkerInfo]:
        client = self._client()
        workers = []
        for worker_id in await client.zrange(self._workers_key, 0, -1):
            data = await client.hgetall(self._worker_key(worker_id))
            if not data:
                continue
            data["job_types"] = json.loads(data.get("job_types") or "[]")
            workers.append(WorkerInfo.from_dict(data))
        return workers

    async def _iter_jobs(self):
        client = self._client()
        async for key in client.scan_iter(match=self._key("job", "*")):
            data = await client.hgetall(key)
            if data:
                yield key, data

    async def get_stats(self) -> QueueStats:
        stats = QueueStats()
        async for _, data in self._iter_jobs():
            status = data.get("status", JobStatus.PENDING.value)
            stats.by_status[status] = stats.by_status.get(status, 0) + 1
            job_type = data.get("job_type", "")
            stats.by_type[job_type] = stats.by_type.get(job_type, 0) + 1
        cutoff = utcnow().timestamp() - self.stale_after
        client = self._client()
        stats.workers = await client.zcard(self._workers_key)
        stats.stale_workers = await client.zcount(self._workers_key, "-inf", f"({cutoff}")
        return stats

    async def requeue_stale_jobs(self, stale_after: Optional[float] = None) -> List[str]:
        threshold = self.stale_after if stale_after is None else stale_after
        reclaimed = await self._client().eval(
            SWEEP_SCRIPT,
            3,
            self._workers_key,
            self._claimed_key,
            self._delayed_key,
            self.prefix,
            str(utcnow().timestamp()),
            str(threshold),
        )
        return list(reclaimed or [])

    async def cleanup_old_jobs(self, older_than_days: float = 30) -> int:
        cutoff = (utcnow() - timedelta(days=older_than_days)).timestamp()
        stale_keys = [
            key
            async for key, data in self._iter_jobs()
            if data.get("status") in (JobStatus.COMPLETED.value, JobStatus.FAILED.value)
            and float(data.get("completed_at") or 0) < cutoff
        ]
        if stale_keys:
            await self._client().delete(*stale_keys)
        return len(stale_keys)
