"""
Run Queue Service for SerialForge
Redis job queue for story runs plus per-story event fan-out over pub/sub.
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import redis.asyncio as redis

from ..core.runner import RunnerCallbacks
from ..models import RunJob

logger = logging.getLogger("serialforge.queue")


class RunQueueService:
    """Service for managing the run queue and story event channels."""

    # Queue names
    QUEUE_PENDING = "serialforge:runs:pending"
    QUEUE_PROCESSING = "serialforge:runs:processing"
    QUEUE_COMPLETED = "serialforge:runs:completed"
    QUEUE_FAILED = "serialforge:runs:failed"

    # Pub/Sub channels
    CHANNEL_RUNS = "serialforge:events:runs"
    CHANNEL_STORY_PREFIX = "serialforge:events:story:"

    RESULT_TTL_SECONDS = 86400

    def __init__(self, redis_url: str = "redis://localhost:6379"):
        self.redis_url = redis_url
        self._client: Optional[redis.Redis] = None
        self._pubsub = None

    async def connect(self) -> None:
        """Establish connection to Redis."""
        self._client = redis.from_url(self.redis_url, decode_responses=True)
        await self._client.ping()

    async def disconnect(self) -> None:
        """Close Redis connection."""
        if self._pubsub:
            await self._pubsub.close()
        if self._client:
            await self._client.close()

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            raise RuntimeError("Redis client not connected. Call connect() first.")
        return self._client

    @classmethod
    def story_channel(cls, project_id: str) -> str:
        return f"{cls.CHANNEL_STORY_PREFIX}{project_id}"

    # ========================================================================
    # Job Queue Operations
    # ========================================================================

    async def enqueue_run(self, job: RunJob) -> str:
        """Add a run to the pending queue."""
        await self.client.lpush(self.QUEUE_PENDING, job.model_dump_json())
        await self.publish_event(self.CHANNEL_RUNS, {
            "type": "run_enqueued",
            "job_id": job.job_id,
            "project_id": job.request.project_id,
            "timestamp": datetime.utcnow().isoformat(),
        })
        return job.job_id

    async def dequeue_run(self, timeout: int = 0) -> Optional[RunJob]:
        """Move the oldest pending run to processing and return it (blocking)."""
        result = await self.client.brpoplpush(
            self.QUEUE_PENDING,
            self.QUEUE_PROCESSING,
            timeout=timeout,
        )
        if result:
            return RunJob.model_validate_json(result)
        return None

    async def complete_run(self, job_id: str, result: Dict[str, Any]) -> None:
        """Mark a run as completed and store its result."""
        await self._remove_job_from_queue(self.QUEUE_PROCESSING, job_id)

        result_key = f"serialforge:results:{job_id}"
        await self.client.setex(result_key, self.RESULT_TTL_SECONDS, json.dumps(result))
        await self.client.lpush(self.QUEUE_COMPLETED, json.dumps({
            "job_id": job_id,
            "completed_at": datetime.utcnow().isoformat(),
            "result_key": result_key,
        }))
        await self.publish_event(self.CHANNEL_RUNS, {
            "type": "run_completed",
            "job_id": job_id,
            "timestamp": datetime.utcnow().isoformat(),
        })

    async def fail_run(self, job_id: str, error: str, retry: bool = True) -> None:
        """Mark a run as failed, re-enqueueing it while retries remain."""
        job_data = await self._get_job_from_queue(self.QUEUE_PROCESSING, job_id)
        if not job_data:
            logger.warning(f"[fail_run] Job {job_id} not found in processing queue")
            return

        job = RunJob.model_validate_json(job_data)
        await self._remove_job_from_queue(self.QUEUE_PROCESSING, job_id)

        if retry and job.retry_count < job.max_retries:
            job.retry_count += 1
            await self.client.lpush(self.QUEUE_PENDING, job.model_dump_json())
            await self.publish_event(self.CHANNEL_RUNS, {
                "type": "run_retry",
                "job_id": job_id,
                "retry_count": job.retry_count,
                "error": error,
                "timestamp": datetime.utcnow().isoformat(),
            })
            return

        await self.client.lpush(self.QUEUE_FAILED, json.dumps({
            "job_id": job_id,
            "project_id": job.request.project_id,
            "error": error,
            "failed_at": datetime.utcnow().isoformat(),
            "retry_count": job.retry_count,
        }))
        await self.publish_event(self.CHANNEL_RUNS, {
            "type": "run_failed",
            "job_id": job_id,
            "error": error,
            "timestamp": datetime.utcnow().isoformat(),
        })

    async def get_run_result(self, job_id: str) -> Optional[Dict[str, Any]]:
        result = await self.client.get(f"serialforge:results:{job_id}")
        if result:
            return json.loads(result)
        return None

    async def get_queue_stats(self) -> Dict[str, int]:
        return {
            "pending": await self.client.llen(self.QUEUE_PENDING),
            "processing": await self.client.llen(self.QUEUE_PROCESSING),
            "completed": await self.client.llen(self.QUEUE_COMPLETED),
            "failed": await self.client.llen(self.QUEUE_FAILED),
        }

    # ========================================================================
    # Pub/Sub Operations
    # ========================================================================

    async def publish_event(self, channel: str, event: Dict[str, Any]) -> None:
        await self.client.publish(channel, json.dumps(event, default=str))

    async def publish_story_event(self, project_id: str, event_type: str, data: Dict[str, Any]) -> None:
        await self.publish_event(self.story_channel(project_id), {"type": event_type, **data})

    async def subscribe(
        self,
        channels: List[str],
        callback: Callable[[str, Dict[str, Any]], Any],
    ) -> None:
        """Subscribe to channels and process messages."""
        self._pubsub = self.client.pubsub()
        await self._pubsub.subscribe(*channels)

        async for message in self._pubsub.listen():
            if message["type"] == "message":
                await callback(message["channel"], json.loads(message["data"]))

    # ========================================================================
    # Helper Methods
    # ========================================================================

    async def _remove_job_from_queue(self, queue: str, job_id: str) -> None:
        item = await self._get_job_from_queue(queue, job_id)
        if item:
            await self.client.lrem(queue, 1, item)

    async def _get_job_from_queue(self, queue: str, job_id: str) -> Optional[str]:
        items = await self.client.lrange(queue, 0, -1)
        for item in items:
            try:
                job = RunJob.model_validate_json(item)
            except ValueError:
                logger.warning(f"[_get_job_from_queue] Skipping malformed entry in {queue}")
                continue
            if job.job_id == job_id:
                return item
        return None


class RunWorker:
    """
    Consumes run jobs and drives one Runner per story concurrently.

    ``runner_factory(job, callbacks)`` builds a fresh Runner for a job; runners
    are never shared between stories. The callbacks it receives forward every
    runner event to the story channel. A second job for a story that is
    already running is failed without retry.
    """

    def __init__(
        self,
        queue_service: RunQueueService,
        runner_factory: Callable[[RunJob, RunnerCallbacks], Any],
        max_concurrent_runs: int = 4,
    ):
        self.queue_service = queue_service
        self.runner_factory = runner_factory
        self.max_concurrent_runs = max_concurrent_runs
        self._running = False
        self._active: Dict[str, asyncio.Task] = {}
        self._runners: Dict[str, Any] = {}

    @property
    def active_projects(self) -> List[str]:
        return list(self._active)

    def get_runner(self, project_id: str):
        return self._runners.get(project_id)

    def _event_publisher(self, project_id: str):
        async def publish(event_type: str, data: Dict[str, Any]) -> None:
            try:
                await self.queue_service.publish_story_event(project_id, event_type, data)
            except Exception as e:
                logger.warning(f"[publish] Failed to publish {event_type} for {project_id}: {e}")
        return publish

    async def handle_job(self, job: RunJob) -> Dict[str, Any]:
        """Run one job to completion and report it back to the queue."""
        project_id = job.request.project_id
        runner = self.runner_factory(job, RunnerCallbacks(on_event=self._event_publisher(project_id)))
        self._runners[project_id] = runner
        try:
            result = await runner.run(job.request)
        except Exception as e:
            logger.error(f"[handle_job] Run {job.job_id} for {project_id} crashed: {e}")
            await self.queue_service.fail_run(job.job_id, str(e))
            return {"project_id": project_id, "success": False, "status": "error", "error": str(e)}
        finally:
            self._runners.pop(project_id, None)

        summary = {
            "project_id": project_id,
            "success": result.success,
            "installments_written": result.installments_written,
            "installments_failed": result.installments_failed,
            "status": result.state.status.value,
            "error": result.error,
            "flagged_for_review": result.flagged_for_review,
        }
        if result.success or result.stopped:
            await self.queue_service.complete_run(job.job_id, summary)
        else:
            await self.queue_service.fail_run(job.job_id, result.error or "run failed")
        return summary

    async def start(self) -> None:
        """Start processing jobs until stop() is called."""
        self._running = True

        while self._running:
            try:
                if len(self._active) >= self.max_concurrent_runs:
                    await asyncio.wait(list(self._active.values()), return_when=asyncio.FIRST_COMPLETED)
                    continue

                job = await self.queue_service.dequeue_run(timeout=5)
                if not job:
                    continue

                project_id = job.request.project_id
                if project_id in self._active:
                    logger.warning(f"[start] Story {project_id} already running; rejecting job {job.job_id}")
                    await self.queue_service.fail_run(job.job_id, "story already running", retry=False)
                    continue

                task = asyncio.create_task(self.handle_job(job))
                self._active[project_id] = task
                task.add_done_callback(lambda _t, pid=project_id: self._active.pop(pid, None))
                logger.info(f"[start] Started run {job.job_id} for story {project_id}")

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"[start] Worker error: {e}")
                await asyncio.sleep(1)

    def stop(self) -> None:
        """Stop taking jobs and ask every active runner to stop."""
        self._running = False
        for runner in self._runners.values():
            runner.stop()

    async def drain(self) -> None:
        """Wait for active runs to finish."""
        if self._active:
            await asyncio.gather(*self._active.values(), return_exceptions=True)
