from __future__ import annotations

import asyncio
import json
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from switchboard.logging import get_logger
from switchboard.service.channels import ProviderSendError
from switchboard.service.errors import QueueUnavailable
from switchboard.storage.redis_cache import build_redis_client

logger = get_logger(__name__)

QUEUE_PREFIX = "switchboard:queue:"

WHATSAPP_SENDING = "whatsapp-sending"
TELEGRAM_SENDING = "telegram-sending"
WEBHOOK_INCOMING = "webhook-incoming"

RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504, 520})
NON_RETRYABLE_STATUS = frozenset({400, 401, 403, 404})
_RETRYABLE_KEYWORDS = (
    "timeout",
    "timed out",
    "network",
    "connection",
    "bad gateway",
    "cloudflare",
)


def is_retryable(error: BaseException) -> bool:
    """Gateway, rate-limit and transport failures are retried; client errors are not."""
    status = getattr(error, "status_code", None)
    if isinstance(error, ProviderSendError) and status is None:
        return True
    if status is not None:
        if status in NON_RETRYABLE_STATUS:
            return False
        if status in RETRYABLE_STATUS:
            return True
    if isinstance(error, (asyncio.TimeoutError, ConnectionError, OSError)):
        return True
    text = str(error).lower()
    return any(keyword in text for keyword in _RETRYABLE_KEYWORDS)


@dataclass
class Job:
    queue: str
    name: str
    payload: Dict[str, Any]
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    attempts: int = 1
    backoff: Dict[str, Any] = field(default_factory=lambda: {"type": "exponential", "delay": 0})
    attempts_made: int = 0
    created_at: float = field(default_factory=time.time)
    failed_reason: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str)

    @classmethod
    def from_json(cls, raw: str) -> "Job":
        return cls(**json.loads(raw))

    def retry_delay_ms(self) -> int:
        delay = int(self.backoff.get("delay") or 0)
        if self.backoff.get("type", "exponential") == "fixed":
            return delay
        return delay * 2 ** max(self.attempts_made - 1, 0)


class JobQueue(ABC):
    """Durable job queue contract shared by the Redis and in-process backends."""

    @abstractmethod
    async def add_job(
        self,
        queue: str,
        name: str,
        payload: Dict[str, Any],
        *,
        attempts: int = 1,
        backoff: Optional[Dict[str, Any]] = None,
    ) -> str: ...

    @abstractmethod
    async def fetch_job(self, queue: str) -> Optional[Job]: ...

    @abstractmethod
    async def complete(self, job: Job) -> None: ...

    @abstractmethod
    async def retry_later(self, job: Job, delay_ms: int) -> None: ...

    @abstractmethod
    async def fail(self, job: Job, reason: str) -> None: ...

    @abstractmethod
    async def counts(self, queue: str) -> Dict[str, int]: ...

    async def recover_stalled(self, queue: str) -> int:
        """Return jobs left in flight by a dead consumer to the wait list."""
        return 0

    @abstractmethod
    async def is_healthy(self) -> bool: ...

    async def shutdown(self) -> None:
        return None


def _new_job(
    queue: str,
    name: str,
    payload: Dict[str, Any],
    attempts: int,
    backoff: Optional[Dict[str, Any]],
) -> Job:
    return Job(
        queue=queue,
        name=name,
        payload=payload,
        attempts=max(int(attempts), 1),
        backoff=dict(backoff or {"type": "exponential", "delay": 0}),
    )


class RedisJobQueue(JobQueue):
    """Lists for ready jobs, a sorted set for delayed retries, a list of dead letters.

    Fetching moves a job id from the wait list onto a processing list in one
    step; the id leaves the processing list only when the job completes, is
    rescheduled or fails, so a crash mid-job leaves it recoverable.
    """

    def __init__(self, redis_url: str, *, client: Optional[aioredis.Redis] = None) -> None:
        self.redis_url = redis_url
        self.client = client or build_redis_client(redis_url)

    @staticmethod
    def _key(queue: str, suffix: str) -> str:
        return f"{QUEUE_PREFIX}{queue}:{suffix}"

    async def add_job(
        self,
        queue: str,
        name: str,
        payload: Dict[str, Any],
        *,
        attempts: int = 1,
        backoff: Optional[Dict[str, Any]] = None,
    ) -> str:
        job = _new_job(queue, name, payload, attempts, backoff)
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hset(self._key(queue, "jobs"), job.id, job.to_json())
                pipe.lpush(self._key(queue, "wait"), job.id)
                await pipe.execute()
        except RedisError as exc:
            logger.error("queue_enqueue_failed", queue=queue, job=name, error=str(exc))
            raise QueueUnavailable(f"Queue '{queue}' is unavailable: {exc}") from exc
        logger.info("job_enqueued", queue=queue, job=name, job_id=job.id, attempts=job.attempts)
        return job.id

    async def _promote_due(self, queue: str) -> None:
        delayed_key = self._key(queue, "delayed")
        now_ms = int(time.time() * 1000)
        due = await self.client.zrangebyscore(delayed_key, 0, now_ms)
        for job_id in due:
            # zrem decides which poller owns the promotion
            if await self.client.zrem(delayed_key, job_id):
                await self.client.lpush(self._key(queue, "wait"), job_id)

    async def fetch_job(self, queue: str) -> Optional[Job]:
        await self._promote_due(queue)
        job_id = await self.client.lmove(self._key(queue, "wait"), self._key(queue, "processing"), "RIGHT", "LEFT")
        if job_id is None:
            return None
        raw = await self.client.hget(self._key(queue, "jobs"), job_id)
        if raw is None:
            logger.warning("job_payload_missing", queue=queue, job_id=job_id)
            await self.client.lrem(self._key(queue, "processing"), 1, job_id)
            return None
        return Job.from_json(raw)

    async def complete(self, job: Job) -> None:
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.lrem(self._key(job.queue, "processing"), 1, job.id)
            pipe.hdel(self._key(job.queue, "jobs"), job.id)
            pipe.incr(self._key(job.queue, "completed"))
            await pipe.execute()

    async def retry_later(self, job: Job, delay_ms: int) -> None:
        due_ms = int(time.time() * 1000) + max(delay_ms, 0)
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.lrem(self._key(job.queue, "processing"), 1, job.id)
            pipe.hset(self._key(job.queue, "jobs"), job.id, job.to_json())
            pipe.zadd(self._key(job.queue, "delayed"), {job.id: due_ms})
            await pipe.execute()

    async def fail(self, job: Job, reason: str) -> None:
        job.failed_reason = reason
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.lrem(self._key(job.queue, "processing"), 1, job.id)
            pipe.hdel(self._key(job.queue, "jobs"), job.id)
            pipe.lpush(self._key(job.queue, "failed"), job.to_json())
            await pipe.execute()

    async def recover_stalled(self, queue: str) -> int:
        recovered = 0
        # RIGHT end of the wait list is fetched next
        while await self.client.lmove(self._key(queue, "processing"), self._key(queue, "wait"), "LEFT", "RIGHT"):
            recovered += 1
        if recovered:
            logger.warning("stalled_jobs_recovered", queue=queue, count=recovered)
        return recovered

    async def failed_jobs(self, queue: str, limit: int = 50) -> List[Job]:
        raw = await self.client.lrange(self._key(queue, "failed"), 0, limit - 1)
        return [Job.from_json(item) for item in raw]

    async def counts(self, queue: str) -> Dict[str, int]:
        completed = await self.client.get(self._key(queue, "completed"))
        return {
            "waiting": int(await self.client.llen(self._key(queue, "wait"))),
            "active": int(await self.client.llen(self._key(queue, "processing"))),
            "delayed": int(await self.client.zcard(self._key(queue, "delayed"))),
            "failed": int(await self.client.llen(self._key(queue, "failed"))),
            "completed": int(completed or 0),
        }

    async def is_healthy(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError as exc:
            logger.warning("queue_health_check_failed", error=str(exc))
            return False

    async def shutdown(self) -> None:
        await self.client.aclose()


class MemoryJobQueue(JobQueue):
    """In-process queue for tests and local development; jobs die with the process."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._waiting: Dict[str, List[Job]] = {}
        self._delayed: Dict[str, List[Tuple[float, Job]]] = {}
        self._failed: Dict[str, List[Job]] = {}
        self._completed: Dict[str, int] = {}
        self._active: Dict[str, Set[str]] = {}

    async def add_job(
        self,
        queue: str,
        name: str,
        payload: Dict[str, Any],
        *,
        attempts: int = 1,
        backoff: Optional[Dict[str, Any]] = None,
    ) -> str:
        job = _new_job(queue, name, payload, attempts, backoff)
        self._waiting.setdefault(queue, []).append(job)
        logger.info("job_enqueued", queue=queue, job=name, job_id=job.id, attempts=job.attempts)
        return job.id

    async def fetch_job(self, queue: str) -> Optional[Job]:
        now = self._clock()
        delayed = self._delayed.get(queue, [])
        due = [job for due_at, job in delayed if due_at <= now]
        if due:
            self._delayed[queue] = [(due_at, job) for due_at, job in delayed if due_at > now]
            self._waiting.setdefault(queue, []).extend(due)
        waiting = self._waiting.get(queue)
        if not waiting:
            return None
        job = waiting.pop(0)
        self._active.setdefault(queue, set()).add(job.id)
        return job

    def _release(self, job: Job) -> None:
        self._active.get(job.queue, set()).discard(job.id)

    async def complete(self, job: Job) -> None:
        self._release(job)
        self._completed[job.queue] = self._completed.get(job.queue, 0) + 1

    async def retry_later(self, job: Job, delay_ms: int) -> None:
        self._release(job)
        self._delayed.setdefault(job.queue, []).append((self._clock() + max(delay_ms, 0) / 1000, job))

    async def fail(self, job: Job, reason: str) -> None:
        job.failed_reason = reason
        self._release(job)
        self._failed.setdefault(job.queue, []).append(job)

    async def failed_jobs(self, queue: str, limit: int = 50) -> List[Job]:
        return list(reversed(self._failed.get(queue, [])))[:limit]

    async def counts(self, queue: str) -> Dict[str, int]:
        return {
            "waiting": len(self._waiting.get(queue, [])),
            "active": len(self._active.get(queue, ())),
            "delayed": len(self._delayed.get(queue, [])),
            "failed": len(self._failed.get(queue, [])),
            "completed": self._completed.get(queue, 0),
        }

    async def is_healthy(self) -> bool:
        return True


class QueueWorker(ABC):
    """Polls one queue and applies the retry policy around ``handle``."""

    queue_name: str = ""

    def __init__(self, queue: JobQueue, *, poll_interval: float = 1.0) -> None:
        self.queue = queue
        self.poll_interval = poll_interval
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    @abstractmethod
    async def handle(self, job: Job) -> Any: ...

    async def process_next(self) -> Optional[Job]:
        """Run at most one job; returns it, or ``None`` when the queue was empty."""
        job = await self.queue.fetch_job(self.queue_name)
        if job is None:
            return None
        attempt = job.attempts_made + 1
        logger.info("job_processing", queue=self.queue_name, job=job.name, job_id=job.id, attempt=attempt)
        try:
            await self.handle(job)
        except Exception as exc:
            job.attempts_made = attempt
            await self._handle_failure(job, exc)
            return job
        job.attempts_made = attempt
        await self.queue.complete(job)
        logger.info("job_completed", queue=self.queue_name, job=job.name, job_id=job.id, attempt=attempt)
        return job

    async def _handle_failure(self, job: Job, exc: Exception) -> None:
        retryable = is_retryable(exc)
        status = getattr(exc, "status_code", None)
        if retryable and job.attempts_made < job.attempts:
            delay_ms = job.retry_delay_ms()
            logger.warning(
                "job_retry_scheduled",
                queue=self.queue_name,
                job_id=job.id,
                attempt=job.attempts_made,
                max_attempts=job.attempts,
                delay_ms=delay_ms,
                http_status=status,
                error=str(exc),
            )
            await self.queue.retry_later(job, delay_ms)
            return
        reason = (
            f"Failed after {job.attempts_made} attempts: {exc}"
            if retryable
            else f"Non-retryable error: {exc}"
        )
        logger.error(
            "job_failed_permanently",
            queue=self.queue_name,
            job_id=job.id,
            attempt=job.attempts_made,
            http_status=status,
            reason=reason,
        )
        await self.queue.fail(job, reason)

    async def _run(self) -> None:
        logger.info("worker_started", queue=self.queue_name)
        try:
            await self.queue.recover_stalled(self.queue_name)
        except Exception as exc:
            logger.error("stalled_job_recovery_failed", queue=self.queue_name, error=str(exc))
        while not self._stopping.is_set():
            try:
                job = await self.process_next()
            except Exception as exc:
                logger.error("worker_poll_failed", queue=self.queue_name, error=str(exc))
                job = None
            if job is None:
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
        logger.info("worker_stopped", queue=self.queue_name)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._stopping = asyncio.Event()
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None
