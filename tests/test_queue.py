import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from switchboard.service.channels import ProviderSendError
from switchboard.service.errors import QueueUnavailable
from switchboard.service.queue import (
    QUEUE_PREFIX,
    Job,
    MemoryJobQueue,
    QueueWorker,
    RedisJobQueue,
    is_retryable,
)


class Clock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class ScriptedWorker(QueueWorker):
    queue_name = "test-queue"

    def __init__(self, queue, outcomes):
        super().__init__(queue, poll_interval=0.01)
        self.outcomes = list(outcomes)
        self.handled = []

    async def handle(self, job):
        self.handled.append(job.id)
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class TestRetryPolicy:
    @pytest.mark.parametrize("status", [429, 500, 502, 503, 504, 520])
    def test_gateway_and_rate_limit_statuses_retry(self, status):
        assert is_retryable(ProviderSendError("x", status_code=status))

    @pytest.mark.parametrize("status", [400, 401, 403, 404])
    def test_client_errors_do_not_retry(self, status):
        assert not is_retryable(ProviderSendError("connection timeout", status_code=status))

    def test_transport_failures_retry(self):
        assert is_retryable(ProviderSendError("unreachable"))
        assert is_retryable(asyncio.TimeoutError())
        assert is_retryable(ConnectionResetError())
        assert is_retryable(RuntimeError("Bad Gateway from upstream"))
        assert not is_retryable(ValueError("invalid recipient"))

    def test_backoff_delays(self):
        job = Job(queue="q", name="n", payload={}, backoff={"type": "exponential", "delay": 3000})
        delays = []
        for attempt in range(1, 5):
            job.attempts_made = attempt
            delays.append(job.retry_delay_ms())
        assert delays == [3000, 6000, 12000, 24000]

        fixed = Job(queue="q", name="n", payload={}, backoff={"type": "fixed", "delay": 500}, attempts_made=3)
        assert fixed.retry_delay_ms() == 500

    def test_job_json_roundtrip(self):
        job = Job(queue="q", name="send", payload={"a": [1]}, attempts=5)
        assert Job.from_json(job.to_json()) == job


class TestMemoryQueueWorker:
    async def test_success_completes_job(self):
        queue = MemoryJobQueue()
        await queue.add_job("test-queue", "send", {"n": 1})
        worker = ScriptedWorker(queue, [None])

        job = await worker.process_next()

        assert job.attempts_made == 1
        assert await queue.counts("test-queue") == {"waiting": 0, "active": 0, "delayed": 0, "failed": 0, "completed": 1}
        assert await worker.process_next() is None

    async def test_retryable_failure_is_delayed_then_retried(self):
        clock = Clock()
        queue = MemoryJobQueue(clock=clock)
        await queue.add_job(
            "test-queue", "send", {}, attempts=3, backoff={"type": "exponential", "delay": 1000}
        )
        worker = ScriptedWorker(queue, [ProviderSendError("busy", status_code=503), None])

        await worker.process_next()
        assert (await queue.counts("test-queue"))["delayed"] == 1
        assert await worker.process_next() is None

        clock.now += 1.0
        job = await worker.process_next()
        assert job.attempts_made == 2
        assert (await queue.counts("test-queue"))["completed"] == 1

    async def test_exhausted_attempts_fail_with_reason(self):
        clock = Clock()
        queue = MemoryJobQueue(clock=clock)
        await queue.add_job("test-queue", "send", {}, attempts=2, backoff={"type": "fixed", "delay": 0})
        error = ProviderSendError("gateway", status_code=502)
        worker = ScriptedWorker(queue, [error, error])

        await worker.process_next()
        await worker.process_next()

        failed = await queue.failed_jobs("test-queue")
        assert len(failed) == 1
        assert failed[0].failed_reason == "Failed after 2 attempts: gateway"

    async def test_non_retryable_failure_fails_immediately(self):
        queue = MemoryJobQueue()
        await queue.add_job("test-queue", "send", {}, attempts=5)
        worker = ScriptedWorker(queue, [ProviderSendError("bad number", status_code=400)])

        await worker.process_next()

        failed = await queue.failed_jobs("test-queue")
        assert failed[0].failed_reason == "Non-retryable error: bad number"
        assert failed[0].attempts_made == 1

    async def test_started_worker_drains_queue(self):
        queue = MemoryJobQueue()
        worker = ScriptedWorker(queue, [None, None])
        worker.start()
        await queue.add_job("test-queue", "a", {})
        await queue.add_job("test-queue", "b", {})
        for _ in range(50):
            if len(worker.handled) == 2:
                break
            await asyncio.sleep(0.01)
        await worker.stop()
        assert len(worker.handled) == 2


def _redis_client():
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[1, 1])
    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=pipe)
    context.__aexit__ = AsyncMock(return_value=False)
    client = MagicMock()
    client.pipeline.return_value = context
    client.zrangebyscore = AsyncMock(return_value=[])
    client.zrem = AsyncMock(return_value=1)
    client.lpush = AsyncMock(return_value=1)
    client.lmove = AsyncMock(return_value=None)
    client.lrem = AsyncMock(return_value=1)
    client.hget = AsyncMock(return_value=None)
    client.ping = AsyncMock(side_effect=RedisConnectionError("down"))
    return client, pipe


class TestRedisJobQueue:
    async def test_add_job_writes_payload_and_wait_list(self):
        client, pipe = _redis_client()
        queue = RedisJobQueue("redis://test", client=client)

        job_id = await queue.add_job("whatsapp-sending", "send-message", {"userId": "1"}, attempts=5)

        key, field, raw = pipe.hset.call_args.args
        assert key == f"{QUEUE_PREFIX}whatsapp-sending:jobs"
        assert field == job_id
        assert Job.from_json(raw).attempts == 5
        pipe.lpush.assert_called_once_with(f"{QUEUE_PREFIX}whatsapp-sending:wait", job_id)

    async def test_enqueue_failure_raises_queue_unavailable(self):
        client, pipe = _redis_client()
        pipe.execute.side_effect = RedisConnectionError("refused")
        queue = RedisJobQueue("redis://test", client=client)

        with pytest.raises(QueueUnavailable):
            await queue.add_job("whatsapp-sending", "send-message", {})

    async def test_fetch_promotes_due_jobs(self):
        client, _ = _redis_client()
        job = Job(queue="q", name="n", payload={})
        client.zrangebyscore.return_value = [job.id]
        client.lmove.return_value = job.id
        client.hget.return_value = job.to_json()
        queue = RedisJobQueue("redis://test", client=client)

        fetched = await queue.fetch_job("q")

        assert fetched == job
        client.zrem.assert_awaited_once_with(f"{QUEUE_PREFIX}q:delayed", job.id)
        client.lpush.assert_awaited_once_with(f"{QUEUE_PREFIX}q:wait", job.id)
        client.lmove.assert_awaited_once_with(f"{QUEUE_PREFIX}q:wait", f"{QUEUE_PREFIX}q:processing", "RIGHT", "LEFT")

    async def test_retry_later_schedules_in_delayed_set(self):
        client, pipe = _redis_client()
        queue = RedisJobQueue("redis://test", client=client)
        job = Job(queue="q", name="n", payload={})

        await queue.retry_later(job, 3000)

        key, mapping = pipe.zadd.call_args.args
        assert key == f"{QUEUE_PREFIX}q:delayed"
        assert job.id in mapping

    async def test_health_false_when_redis_down(self):
        client, _ = _redis_client()
        assert await RedisJobQueue("redis://test", client=client).is_healthy() is False

    @pytest.mark.parametrize("outcome", ["complete", "retry_later", "fail"])
    async def test_settled_job_leaves_processing_list(self, outcome):
        client, pipe = _redis_client()
        queue = RedisJobQueue("redis://test", client=client)
        job = Job(queue="q", name="n", payload={})

        if outcome == "complete":
            await queue.complete(job)
        elif outcome == "retry_later":
            await queue.retry_later(job, 1000)
        else:
            await queue.fail(job, "boom")

        pipe.lrem.assert_called_once_with(f"{QUEUE_PREFIX}q:processing", 1, job.id)

    async def test_job_without_payload_is_dropped_from_processing(self):
        client, _ = _redis_client()
        client.lmove.return_value = "orphan"
        queue = RedisJobQueue("redis://test", client=client)

        assert await queue.fetch_job("q") is None
        client.lrem.assert_awaited_once_with(f"{QUEUE_PREFIX}q:processing", 1, "orphan")

    async def test_stalled_jobs_return_to_wait_list(self):
        client, _ = _redis_client()
        client.lmove = AsyncMock(side_effect=["job-2", "job-1", None])
        queue = RedisJobQueue("redis://test", client=client)

        assert await queue.recover_stalled("q") == 2
        assert client.lmove.await_args_list[0].args == (
            f"{QUEUE_PREFIX}q:processing",
            f"{QUEUE_PREFIX}q:wait",
            "LEFT",
            "RIGHT",
        )

    async def test_worker_recovers_stalled_jobs_when_started(self):
        queue = MemoryJobQueue()
        queue.recover_stalled = AsyncMock(return_value=1)
        worker = ScriptedWorker(queue, [])

        worker.start()
        await asyncio.sleep(0.05)
        await worker.stop()

        queue.recover_stalled.assert_awaited_once_with("test-queue")


class TestMemoryQueueAccounting:
    async def test_fetched_job_is_active_until_settled(self):
        queue = MemoryJobQueue()
        await queue.add_job("q", "n", {})

        job = await queue.fetch_job("q")
        assert (await queue.counts("q"))["active"] == 1

        await queue.complete(job)
        assert (await queue.counts("q"))["active"] == 0
