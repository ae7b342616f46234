"""
Audit Queue Service
Redis-based at-least-once job queue for bulk audit campaigns
"""
import json
import logging
import time
from typing import Optional, List

import redis.asyncio as redis
from redis.exceptions import RedisError

from app.domain.models.audit_job import AuditJob
from app.core.config import get_settings

logger = logging.getLogger(__name__)


class AuditQueueService:
    """
    Redis-based job queue for the audit worker pool.

    Uses a Redis List for FIFO queuing, a Hash for outstanding leases and a
    Sorted Set for delayed retries:
    - audit:jobs             - ready jobs (LPUSH to enqueue, RPOP to lease)
    - audit:jobs:processing  - leased jobs until ack/requeue, keyed by job_id
    - audit:jobs:scheduled   - jobs waiting out a backoff, scored by due time
    - audit:jobs:stats       - counters

    When Redis cannot be reached the service reports itself unavailable
    instead of raising, so callers can keep campaigns pending.
    """

    # Leases older than this are considered orphaned by a crashed worker
    STALE_LEASE_SECONDS = 3600

    def __init__(self, redis_client=None, queue_name: Optional[str] = None):
        """
        Initialize queue service.

        Args:
            redis_client: Optional pre-configured Redis client
            queue_name: Base key, defaults to settings.queue_name
        """
        self._redis = redis_client
        self._settings = get_settings()
        self._initialized = False
        self._available = redis_client is not None

        self.ready_queue = queue_name or self._settings.queue_name
        self.processing_hash = f"{self.ready_queue}:processing"
        self.scheduled_zset = f"{self.ready_queue}:scheduled"
        self.stats_key = f"{self.ready_queue}:stats"

    async def initialize(self) -> None:
        """Initialize Redis connection if not provided."""
        if self._redis is not None:
            self._initialized = True
            self._available = True
            return

        redis_url = self._settings.redis_url
        try:
            self._redis = redis.from_url(
                redis_url,
                encoding="utf-8",
                decode_responses=True
            )
            await self._redis.ping()
            self._initialized = True
            self._available = True
            logger.info(f"AuditQueueService connected to Redis: {redis_url}")
        except (RedisError, OSError) as e:
            self._available = False
            logger.warning(f"Redis not available ({e}), audit queue disabled")

    def is_available(self) -> bool:
        """Check if the broker is reachable."""
        return self._available

    async def ensure_connection(self) -> bool:
        """
        Re-check broker reachability.

        Called periodically by the worker so a queue that was down at
        startup is picked up once Redis comes back.
        """
        if self._redis is None:
            await self.initialize()
            return self._available

        try:
            await self._redis.ping()
            if not self._available:
                logger.info("Redis reachable again, audit queue enabled")
            self._available = True
            self._initialized = True
        except (RedisError, OSError) as e:
            if self._available:
                logger.warning(f"Lost connection to Redis: {e}")
            self._available = False
        return self._available

    async def enqueue(self, job: AuditJob) -> bool:
        """
        Enqueue an audit job.

        Returns:
            True if enqueued successfully
        """
        if not self._initialized:
            await self.initialize()
        if not self._available:
            return False

        try:
            await self._redis.lpush(self.ready_queue, json.dumps(job.to_redis_dict()))
            await self._redis.hincrby(self.stats_key, "total_enqueued", 1)
            logger.debug(f"Enqueued job {job.job_id} (campaign={job.campaign_id}, index={job.job_index})")
            return True

        except RedisError as e:
            logger.error(f"Failed to enqueue job {job.job_id}: {e}")
            return False

    async def enqueue_many(self, jobs: List[AuditJob]) -> List[AuditJob]:
        """
        Enqueue several jobs.

        Returns:
            The jobs that were enqueued, in order
        """
        enqueued = []
        for job in jobs:
            if await self.enqueue(job):
                enqueued.append(job)
        return enqueued

    async def lease(self) -> Optional[AuditJob]:
        """
        Lease the next ready job.

        The job is removed from the ready list and recorded as outstanding
        until `ack` or `requeue` is called for it.

        Returns:
            AuditJob or None if no jobs available
        """
        if not self._initialized:
            await self.initialize()
        if not self._available:
            return None

        try:
            job_data = await self._redis.rpop(self.ready_queue)
            if not job_data:
                return None

            job = AuditJob.from_redis_dict(json.loads(job_data))
            lease = json.dumps({"leased_at": time.time(), "job": job.to_redis_dict()})
            await self._redis.hset(self.processing_hash, job.job_id, lease)
            await self._redis.hincrby(self.stats_key, "total_leased", 1)
            return job

        except RedisError as e:
            logger.error(f"Failed to lease job: {e}")
            return None

    async def ack(self, job: AuditJob) -> None:
        """Drop the lease of a job that is done (completed, failed or discarded)."""
        try:
            await self._redis.hdel(self.processing_hash, job.job_id)
            await self._redis.hincrby(self.stats_key, "total_acked", 1)
        except RedisError as e:
            logger.error(f"Failed to ack job {job.job_id}: {e}")

    async def requeue(self, job: AuditJob, delay_ms: int = 0, count_attempt: bool = True) -> bool:
        """
        Return a leased job to the queue after a delay.

        Args:
            job: Job to requeue
            delay_ms: Delay before the job becomes ready again
            count_attempt: Bump the attempt counter (False for pause/rate-limit deferrals)

        Returns:
            True if scheduled successfully
        """
        if count_attempt:
            job.attempts += 1

        execute_at = time.time() + delay_ms / 1000.0
        try:
            await self._redis.zadd(self.scheduled_zset, {json.dumps(job.to_redis_dict()): execute_at})
            await self._redis.hdel(self.processing_hash, job.job_id)
            if count_attempt:
                await self._redis.hincrby(self.stats_key, "total_retried", 1)

            logger.debug(
                f"Requeued job {job.job_id} "
                f"(attempts={job.attempts}) in {delay_ms}ms"
            )
            return True

        except RedisError as e:
            logger.error(f"Failed to requeue job {job.job_id}: {e}")
            return False

    async def promote_due_jobs(self) -> int:
        """
        Move due scheduled jobs back to the ready list.

        Called on every worker tick.

        Returns:
            Number of jobs moved
        """
        if not self._available:
            return 0

        try:
            due_jobs = await self._redis.zrangebyscore(self.scheduled_zset, 0, time.time())

            count = 0
            for job_data in due_jobs:
                # Another worker may have promoted it already
                removed = await self._redis.zrem(self.scheduled_zset, job_data)
                if removed:
                    await self._redis.lpush(self.ready_queue, job_data)
                    count += 1

            if count > 0:
                logger.debug(f"Moved {count} scheduled jobs to ready queue")

            return count

        except RedisError as e:
            logger.error(f"Failed to promote scheduled jobs: {e}")
            return 0

    async def recover_leases(self, stale_after_seconds: Optional[float] = None) -> int:
        """
        Return orphaned leases (held by a worker that died) to the ready list.

        Returns:
            Number of leases recovered
        """
        if not self._initialized:
            await self.initialize()
        if not self._available:
            return 0

        stale_after = self.STALE_LEASE_SECONDS if stale_after_seconds is None else stale_after_seconds
        cutoff = time.time() - stale_after

        try:
            leases = await self._redis.hgetall(self.processing_hash) or {}
            count = 0
            for job_id, raw in leases.items():
                lease = json.loads(raw)
                if lease.get("leased_at", 0) > cutoff:
                    continue
                if await self._redis.hdel(self.processing_hash, job_id):
                    await self._redis.lpush(self.ready_queue, json.dumps(lease["job"]))
                    count += 1

            if count > 0:
                logger.warning(f"Recovered {count} orphaned leases")
            return count

        except RedisError as e:
            logger.error(f"Failed to recover leases: {e}")
            return 0

    async def get_queue_stats(self) -> dict:
        """Get queue statistics."""
        if not self._available:
            return {"available": False}

        try:
            ready = await self._redis.llen(self.ready_queue)
            scheduled = await self._redis.zcard(self.scheduled_zset)
            leased = await self._redis.hlen(self.processing_hash)
            stats = await self._redis.hgetall(self.stats_key) or {}

            return {
                "available": True,
                "ready_jobs": ready,
                "scheduled_jobs": scheduled,
                "leased_jobs": leased,
                "total_enqueued": int(stats.get("total_enqueued", 0)),
                "total_leased": int(stats.get("total_leased", 0)),
                "total_acked": int(stats.get("total_acked", 0)),
                "total_retried": int(stats.get("total_retried", 0)),
            }

        except RedisError as e:
            logger.error(f"Failed to get queue stats: {e}")
            return {"available": self._available}

    async def get_queue_length(self) -> int:
        """Number of ready jobs."""
        if not self._available:
            return 0
        try:
            return await self._redis.llen(self.ready_queue)
        except RedisError as e:
            logger.error(f"Failed to get queue length: {e}")
            return 0

    async def clear_queue(self) -> int:
        """
        Clear all ready, scheduled and leased jobs (for testing/debugging).

        Returns:
            Number of ready jobs cleared
        """
        if not self._available:
            return 0

        try:
            count = await self._redis.llen(self.ready_queue)
            await self._redis.delete(self.ready_queue, self.scheduled_zset, self.processing_hash)
            logger.info(f"Cleared {count} jobs from queue")
            return count
        except RedisError as e:
            logger.error(f"Failed to clear queue: {e}")
            return 0

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._initialized = False
            self._available = False
