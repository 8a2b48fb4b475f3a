"""
Unit tests for the Redis run queue and the run worker.

Redis is replaced by an AsyncMock client; runners are MagicMocks returning
real RunResults.
"""

import json

import pytest
from unittest.mock import AsyncMock, MagicMock

from serialforge.core.runner import RunnerState, RunnerStatus, RunResult
from serialforge.models import RunJob, RunRequest
from serialforge.services.run_queue import RunQueueService, RunWorker


def make_job(project_id="story-1", **kwargs):
    request = RunRequest(project_id=project_id, premise="A courier crosses a haunted country.", target_installments=10)
    return RunJob(request=request, **kwargs)


def make_result(success=True, status=RunnerStatus.COMPLETED, stopped=False, error=None):
    return RunResult(
        success=success,
        installments_written=3 if success else 0,
        installments_failed=0,
        state=RunnerState(project_id="story-1", status=status),
        error=error,
        stopped=stopped,
    )


def published(client, event_type):
    """Events of ``event_type`` passed to client.publish."""
    events = [json.loads(c.args[1]) for c in client.publish.await_args_list]
    return [e for e in events if e.get("type") == event_type]


class TestRunQueueService:
    """Tests for RunQueueService."""

    def setup_method(self):
        self.service = RunQueueService("redis://localhost:6379")
        self.client = AsyncMock()
        self.service._client = self.client

    def test_client_requires_connection(self):
        with pytest.raises(RuntimeError):
            RunQueueService().client

    def test_story_channel(self):
        assert RunQueueService.story_channel("story-1") == "serialforge:events:story:story-1"

    @pytest.mark.asyncio
    async def test_enqueue(self):
        job = make_job()

        job_id = await self.service.enqueue_run(job)

        assert job_id == job.job_id
        queue, payload = self.client.lpush.await_args.args
        assert queue == RunQueueService.QUEUE_PENDING
        assert RunJob.model_validate_json(payload).request.project_id == "story-1"
        assert published(self.client, "run_enqueued")[0]["project_id"] == "story-1"

    @pytest.mark.asyncio
    async def test_dequeue(self):
        job = make_job()
        self.client.brpoplpush.return_value = job.model_dump_json()

        dequeued = await self.service.dequeue_run(timeout=1)

        assert dequeued.job_id == job.job_id
        self.client.brpoplpush.assert_awaited_once_with(
            RunQueueService.QUEUE_PENDING, RunQueueService.QUEUE_PROCESSING, timeout=1
        )

    @pytest.mark.asyncio
    async def test_dequeue_timeout(self):
        self.client.brpoplpush.return_value = None

        assert await self.service.dequeue_run(timeout=1) is None

    @pytest.mark.asyncio
    async def test_complete_run(self):
        job = make_job()
        self.client.lrange.return_value = ["not json", job.model_dump_json()]

        await self.service.complete_run(job.job_id, {"success": True})

        self.client.lrem.assert_awaited_once_with(RunQueueService.QUEUE_PROCESSING, 1, job.model_dump_json())
        key, ttl, value = self.client.setex.await_args.args
        assert key == f"serialforge:results:{job.job_id}"
        assert ttl == RunQueueService.RESULT_TTL_SECONDS
        assert json.loads(value) == {"success": True}
        assert self.client.lpush.await_args.args[0] == RunQueueService.QUEUE_COMPLETED

    @pytest.mark.asyncio
    async def test_fail_run_requeues_while_retries_remain(self):
        job = make_job()
        self.client.lrange.return_value = [job.model_dump_json()]

        await self.service.fail_run(job.job_id, "provider down")

        queue, payload = self.client.lpush.await_args.args
        assert queue == RunQueueService.QUEUE_PENDING
        assert RunJob.model_validate_json(payload).retry_count == 1
        assert published(self.client, "run_retry")[0]["retry_count"] == 1

    @pytest.mark.asyncio
    async def test_fail_run_exhausted(self):
        job = make_job(retry_count=1)
        self.client.lrange.return_value = [job.model_dump_json()]

        await self.service.fail_run(job.job_id, "provider down")

        queue, payload = self.client.lpush.await_args.args
        assert queue == RunQueueService.QUEUE_FAILED
        assert json.loads(payload)["error"] == "provider down"
        assert published(self.client, "run_failed")

    @pytest.mark.asyncio
    async def test_fail_run_without_retry(self):
        job = make_job()
        self.client.lrange.return_value = [job.model_dump_json()]

        await self.service.fail_run(job.job_id, "story already running", retry=False)

        assert self.client.lpush.await_args.args[0] == RunQueueService.QUEUE_FAILED

    @pytest.mark.asyncio
    async def test_fail_unknown_job(self):
        self.client.lrange.return_value = []

        await self.service.fail_run("missing", "boom")

        self.client.lpush.assert_not_called()

    @pytest.mark.asyncio
    async def test_run_result(self):
        self.client.get.return_value = json.dumps({"success": True})

        assert await self.service.get_run_result("job-1") == {"success": True}

    @pytest.mark.asyncio
    async def test_queue_stats(self):
        self.client.llen.side_effect = [1, 2, 3, 4]

        assert await self.service.get_queue_stats() == {"pending": 1, "processing": 2, "completed": 3, "failed": 4}

    @pytest.mark.asyncio
    async def test_publish_story_event(self):
        await self.service.publish_story_event("story-1", "installment_complete", {"installment": 4})

        channel, payload = self.client.publish.await_args.args
        assert channel == "serialforge:events:story:story-1"
        assert json.loads(payload) == {"type": "installment_complete", "installment": 4}


class TestRunWorker:
    """Tests for RunWorker."""

    def setup_method(self):
        self.queue = MagicMock()
        self.queue.complete_run = AsyncMock()
        self.queue.fail_run = AsyncMock()
        self.queue.publish_story_event = AsyncMock()
        self.runner = MagicMock()
        self.runner.run = AsyncMock(return_value=make_result())
        self.factory_calls = []

        def factory(job, callbacks):
            self.factory_calls.append((job, callbacks))
            return self.runner

        self.worker = RunWorker(self.queue, factory, max_concurrent_runs=2)

    @pytest.mark.asyncio
    async def test_successful_run_is_completed(self):
        job = make_job()

        summary = await self.worker.handle_job(job)

        assert summary["success"] is True
        assert summary["status"] == "completed"
        self.queue.complete_run.assert_awaited_once_with(job.job_id, summary)
        self.queue.fail_run.assert_not_called()
        assert self.worker.get_runner("story-1") is None

    @pytest.mark.asyncio
    async def test_failed_run_is_reported(self):
        self.runner.run.return_value = make_result(success=False, status=RunnerStatus.ERROR, error="Arc 1 failed")
        job = make_job()

        await self.worker.handle_job(job)

        self.queue.fail_run.assert_awaited_once_with(job.job_id, "Arc 1 failed")

    @pytest.mark.asyncio
    async def test_stopped_run_is_completed(self):
        self.runner.run.return_value = make_result(success=False, status=RunnerStatus.IDLE, stopped=True)

        await self.worker.handle_job(make_job())

        self.queue.complete_run.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_crash_fails_the_job_without_raising(self):
        self.runner.run.side_effect = RuntimeError("boom")
        job = make_job()

        summary = await self.worker.handle_job(job)

        assert summary["success"] is False
        assert summary["error"] == "boom"
        self.queue.fail_run.assert_awaited_once_with(job.job_id, "boom")
        assert self.worker.get_runner("story-1") is None

    @pytest.mark.asyncio
    async def test_crashed_task_leaves_no_exception_behind(self):
        self.runner.run.side_effect = RuntimeError("boom")
        job = make_job()
        jobs = [job]

        async def dequeue(timeout=0):
            if jobs:
                return jobs.pop(0)
            self.worker.stop()
            return None

        self.queue.dequeue_run = dequeue
        await self.worker.start()
        tasks = list(self.worker._active.values())
        await self.worker.drain()

        assert all(t.exception() is None for t in tasks)
        self.queue.fail_run.assert_awaited_once_with(job.job_id, "boom")

    @pytest.mark.asyncio
    async def test_runner_events_go_to_the_story_channel(self):
        await self.worker.handle_job(make_job())
        _, callbacks = self.factory_calls[0]

        await callbacks.on_event("installment_complete", {"installment": 1})

        self.queue.publish_story_event.assert_awaited_once_with("story-1", "installment_complete", {"installment": 1})

    @pytest.mark.asyncio
    async def test_publish_failures_are_swallowed(self):
        self.queue.publish_story_event.side_effect = ConnectionError("redis gone")
        await self.worker.handle_job(make_job())
        _, callbacks = self.factory_calls[0]

        await callbacks.on_event("installment_complete", {"installment": 1})

    def test_stop_stops_active_runners(self):
        self.worker._runners["story-1"] = self.runner

        self.worker.stop()

        self.runner.stop.assert_called_once()

    @pytest.mark.asyncio
    async def test_duplicate_story_is_rejected(self):
        first, duplicate = make_job(), make_job()
        jobs = [first, duplicate]

        async def dequeue(timeout=0):
            if jobs:
                return jobs.pop(0)
            self.worker.stop()
            return None

        self.queue.dequeue_run = dequeue

        await self.worker.start()
        await self.worker.drain()

        self.queue.fail_run.assert_awaited_once_with(duplicate.job_id, "story already running", retry=False)
        self.queue.complete_run.assert_awaited_once()
        assert self.queue.complete_run.await_args.args[0] == first.job_id
        assert len(self.factory_calls) == 1
