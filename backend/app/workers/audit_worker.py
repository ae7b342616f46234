"""
Audit Worker
Background worker pool that transcribes and scores queued campaign jobs

Run as separate process:
    python -m app.workers.audit_worker

or in-process from the FastAPI lifespan (QUEUE_WORKER_ENABLED=true).
"""
import asyncio
import logging
import math
import signal
import time
from datetime import datetime
from typing import List, Optional, Tuple

from app.core.config import Settings, get_settings
from app.domain.exceptions import JobFailure, TransientProcessingError
from app.domain.interfaces.audio_storage import AudioStorage
from app.domain.interfaces.scoring_provider import ScoringProvider
from app.domain.interfaces.transcription_provider import TranscriptionProvider
from app.domain.models.audit_job import AuditJob
from app.domain.models.call_audit import AuditReportPayload, CallAudit, ParameterSet
from app.domain.models.campaign import Campaign, CampaignJobStatus, CampaignStatus
from app.domain.services.campaign_manager import CampaignManager
from app.infrastructure.reporting.usage_reporter import UsageReporter

logger = logging.getLogger(__name__)


class JobOutcome:
    """What happened to a leased job"""
    COMPLETED = "completed"
    RETRIED = "retried"
    FAILED = "failed"
    DEFERRED = "deferred"  # paused or rate limited, requeued without an attempt
    DROPPED = "dropped"  # cancelled, deleted or duplicate delivery


class AuditWorker:
    """
    Supervisor plus a fixed pool of pipeline tasks.

    The supervisor leases jobs while fewer than `concurrency` pipelines are
    in flight and hands them to the pool through an asyncio.Queue; it never
    waits on a pipeline itself. Each pool task runs one job at a time.

    Per leased job:
    - Gate: drop jobs of deleted/cancelled campaigns and duplicate
      deliveries, defer jobs of paused or rate-limited campaigns
    - Pipeline: mark processing, transcribe, score, persist the audit,
      mark completed, ack
    - Failures: exponential backoff requeue, permanent failure after
      max_retries
    - Afterwards: usage report, audio cleanup, auto-pause and completion checks
    """

    MAX_CONSECUTIVE_ERRORS = 10
    SHUTDOWN_TIMEOUT_SECONDS = 30

    def __init__(
        self,
        manager: CampaignManager,
        transcriber: TranscriptionProvider,
        scorer: ScoringProvider,
        audio_storage: Optional[AudioStorage] = None,
        usage_reporter: Optional[UsageReporter] = None,
        settings: Optional[Settings] = None
    ):
        self.manager = manager
        self.store = manager.store
        self.queue = manager.queue
        self.transcriber = transcriber
        self.scorer = scorer
        self.audio_storage = audio_storage
        self.usage_reporter = usage_reporter
        self.settings = settings or manager.settings or get_settings()

        self.concurrency = max(1, self.settings.queue_concurrency)
        self.poll_interval = self.settings.queue_poll_interval_ms / 1000.0

        self.running = False
        self.in_flight = 0
        self._dispatch: Optional[asyncio.Queue] = None
        self._slot_freed: Optional[asyncio.Event] = None
        self._pool: List[asyncio.Task] = []
        self._supervisor: Optional[asyncio.Task] = None
        self._last_reconcile: Optional[float] = None

        # Stats
        self._started_at: Optional[datetime] = None
        self._jobs_completed = 0
        self._jobs_failed = 0
        self._jobs_retried = 0
        self._jobs_deferred = 0
        self._jobs_dropped = 0

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start the supervisor and the pool in the current event loop."""
        if self.running:
            return

        self.running = True
        self._started_at = datetime.utcnow()
        self._dispatch = asyncio.Queue()
        self._slot_freed = asyncio.Event()

        if self.queue.is_available():
            await self.queue.recover_leases()

        self._pool = [
            asyncio.create_task(self._pool_worker(n), name=f"audit-pipeline-{n}")
            for n in range(self.concurrency)
        ]
        self._supervisor = asyncio.create_task(self._supervise(), name="audit-supervisor")
        logger.info(f"Audit Worker started - concurrency={self.concurrency}, poll={self.poll_interval}s")

    async def run(self) -> None:
        """Run until the supervisor stops (signal or too many errors)."""
        await self.start()
        try:
            await self._supervisor
        except asyncio.CancelledError:
            logger.info("Worker received cancellation signal")
        await self.shutdown()

    async def shutdown(self) -> None:
        """
        Stop leasing, let in-flight pipelines finish, then stop the pool.

        Pipelines still running after SHUTDOWN_TIMEOUT_SECONDS are cancelled;
        their leases are picked up by recover_leases on the next start.
        """
        if not self.running and not self._pool:
            return

        logger.info("Shutting down Audit Worker...")
        self.running = False

        if self._supervisor and not self._supervisor.done():
            self._supervisor.cancel()
            await asyncio.gather(self._supervisor, return_exceptions=True)

        if self._dispatch is not None and self.in_flight > 0:
            try:
                await asyncio.wait_for(self._dispatch.join(), timeout=self.SHUTDOWN_TIMEOUT_SECONDS)
            except asyncio.TimeoutError:
                logger.warning(f"{self.in_flight} pipelines still running at shutdown, cancelling")

        for task in self._pool:
            task.cancel()
        await asyncio.gather(*self._pool, return_exceptions=True)
        self._pool = []

        logger.info(
            f"Audit Worker stopped. Completed: {self._jobs_completed}, "
            f"Failed: {self._jobs_failed}, Retried: {self._jobs_retried}"
        )

    def stop(self) -> None:
        """Signal the supervisor to stop after the current tick."""
        self.running = False
        if self._slot_freed is not None:
            self._slot_freed.set()

    # =========================================================================
    # Supervisor
    # =========================================================================

    async def _supervise(self) -> None:
        consecutive_errors = 0

        while self.running:
            try:
                self._slot_freed.clear()
                await self.tick()
                consecutive_errors = 0
                await self._wait_for_slot()

            except asyncio.CancelledError:
                break

            except Exception as e:
                consecutive_errors += 1
                logger.error(f"Supervisor error ({consecutive_errors}): {e}", exc_info=True)

                if consecutive_errors >= self.MAX_CONSECUTIVE_ERRORS:
                    logger.critical("Too many consecutive errors, stopping worker")
                    self.running = False
                    break

                await asyncio.sleep(min(5 * consecutive_errors, 60))

    async def tick(self) -> int:
        """
        One supervisor pass: reconnect, reconcile, promote, fill free slots.

        Returns:
            Number of jobs handed to the pool
        """
        if not self.queue.is_available():
            if not await self.queue.ensure_connection():
                return 0

        await self._maybe_reconcile()
        await self.queue.promote_due_jobs()

        dispatched = 0
        while self.running and self.in_flight < self.concurrency:
            job = await self.queue.lease()
            if job is None:
                break
            self.in_flight += 1
            self._dispatch.put_nowait(job)
            dispatched += 1

        return dispatched

    async def _wait_for_slot(self) -> None:
        """Sleep until the next poll tick or until a pipeline frees a slot."""
        try:
            await asyncio.wait_for(self._slot_freed.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            pass

    async def _maybe_reconcile(self) -> None:
        now = time.monotonic()
        if (
            self._last_reconcile is not None
            and now - self._last_reconcile < self.settings.reconcile_interval_seconds
        ):
            return
        self._last_reconcile = now
        await self.queue.recover_leases()
        await self.manager.requeue_pending_campaigns()

    async def _recover_crashed(self, job: AuditJob, error: Exception) -> None:
        """
        Put a job whose pipeline crashed outside the retry path (store or
        queue outage) back through backoff.

        If that fails too, the lease stays in the processing hash and is
        returned by recover_leases once it is stale.
        """
        try:
            await self._handle_failure(job, error)
        except Exception as e:
            logger.error(f"Could not reschedule crashed {job!r}, leaving lease for recovery: {e}")

    async def _pool_worker(self, n: int) -> None:
        while True:
            job = await self._dispatch.get()
            try:
                await self.process_job(job)
            except Exception as e:
                logger.error(f"Pipeline {n} crashed on {job!r}: {e}", exc_info=True)
                await self._recover_crashed(job, e)
            finally:
                self.in_flight -= 1
                self._dispatch.task_done()
                self._slot_freed.set()

    # =========================================================================
    # Per-job processing
    # =========================================================================

    async def process_job(self, job: AuditJob) -> str:
        """
        Process one leased job end to end.

        Returns:
            A JobOutcome value
        """
        campaign = await self.store.get_campaign(job.campaign_id)

        outcome = await self._gate(job, campaign)
        if outcome is not None:
            return outcome

        logger.info(
            f"Processing job {job.job_index} of campaign {job.campaign_id} "
            f"(attempt {job.attempts + 1})"
        )

        try:
            result = await self._run_pipeline(job)
        except JobFailure as e:
            return await self._fail_permanently(job, str(e))
        except Exception as e:
            return await self._handle_failure(job, e)

        if result is None:
            # Already settled by another delivery; its side effects ran there
            return await self._drop(job)

        audit, parameter_set = result
        await self.queue.ack(job)
        self._jobs_completed += 1
        logger.info(
            f"Job {job.job_index} of campaign {job.campaign_id} completed "
            f"(score={audit.overall_score}, {audit.audit_duration_ms}ms)"
        )

        self._report_usage(audit, parameter_set, campaign)
        await self._delete_audio(job.audio_url)
        await self.manager.check_completion(job.campaign_id)
        return JobOutcome.COMPLETED

    async def _gate(self, job: AuditJob, campaign: Optional[Campaign]) -> Optional[str]:
        """Lease-time checks. Returns an outcome if the job must not run now."""
        if campaign is None:
            logger.info(f"Campaign {job.campaign_id} no longer exists, dropping job {job.job_index}")
            return await self._drop(job)

        if campaign.status == CampaignStatus.CANCELLED:
            logger.debug(f"Campaign {campaign.id} cancelled, dropping job {job.job_index}")
            return await self._drop(job)

        state = campaign.get_job(job.job_index)
        if state is None or state.status in (CampaignJobStatus.COMPLETED, CampaignJobStatus.FAILED):
            logger.debug(f"Duplicate delivery of job {job.job_index} of campaign {campaign.id}")
            outcome = await self._drop(job)
            if campaign.is_finished and not campaign.is_terminal:
                # The delivery that settled the job crashed before settling the campaign
                await self.manager.check_completion(campaign.id)
            return outcome

        if campaign.status == CampaignStatus.PAUSED:
            await self.queue.requeue(job, delay_ms=self.settings.paused_requeue_delay_ms, count_attempt=False)
            self._jobs_deferred += 1
            return JobOutcome.DEFERRED

        if campaign.apply_rate_limit and campaign.config.rpm > 0:
            wait_ms = await self.store.reserve_rate_slot(campaign.id, campaign.config.min_interval_ms())
            if wait_ms > 0:
                logger.debug(f"Rate limit for campaign {campaign.id}, deferring job {job.job_index} by {wait_ms:.0f}ms")
                await self.queue.requeue(job, delay_ms=int(math.ceil(wait_ms)), count_attempt=False)
                self._jobs_deferred += 1
                return JobOutcome.DEFERRED

        return None

    async def _drop(self, job: AuditJob) -> str:
        await self.queue.ack(job)
        self._jobs_dropped += 1
        return JobOutcome.DROPPED

    async def _run_pipeline(self, job: AuditJob) -> Optional[Tuple[CallAudit, ParameterSet]]:
        """
        Transcribe, score and persist one job.

        Returns:
            (audit, parameter set), or None if the job was already settled

        Raises:
            JobFailure: permanent, do not retry
            Exception: anything else is retried
        """
        started = time.monotonic()

        previous = await self.store.transition_job(
            job.campaign_id, job.job_index, CampaignJobStatus.PROCESSING
        )
        if previous is None or previous in (CampaignJobStatus.COMPLETED, CampaignJobStatus.FAILED):
            return None

        parameter_set = await self.store.get_parameter_set(job.parameter_set_id)
        if parameter_set is None:
            raise JobFailure(f"QA parameter set {job.parameter_set_id} not found")

        transcription = await self._with_timeout(
            self.transcriber.transcribe(job.audio_url),
            self.settings.transcription_timeout_seconds,
            "Transcription"
        )
        scoring = await self._with_timeout(
            self.scorer.audit_call(transcription.transcript, parameter_set.parameters, transcription.language),
            self.settings.scoring_timeout_seconds,
            "Scoring"
        )

        audit = CallAudit(
            id=CallAudit.make_id(job.campaign_id, job.job_index),
            campaign_id=job.campaign_id,
            job_index=job.job_index,
            call_id=job.call_id or f"{job.campaign_id}-{job.job_index}",
            agent_name=job.agent_name or "Unknown",
            parameter_set_id=parameter_set.id,
            audio_url=job.audio_url,
            transcript=transcription.transcript,
            language=transcription.language,
            overall_score=scoring.overall_score,
            audit_results=scoring.audit_results,
            sentiment=scoring.sentiment,
            call_summary=scoring.call_summary,
            token_usage=scoring.token_usage,
            audit_duration_ms=int((time.monotonic() - started) * 1000),
        )
        await self.store.save_audit(audit)

        previous = await self.store.transition_job(
            job.campaign_id, job.job_index, CampaignJobStatus.COMPLETED, audit_id=audit.id
        )
        if previous not in (CampaignJobStatus.PENDING, CampaignJobStatus.PROCESSING):
            # A concurrent delivery settled it first (or the campaign is gone)
            return None
        return audit, parameter_set

    async def _with_timeout(self, coro, timeout: float, label: str):
        try:
            return await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise TransientProcessingError(f"{label} timed out after {timeout}s") from e

    async def _handle_failure(self, job: AuditJob, error: Exception) -> str:
        """Requeue with backoff, or fail permanently once retries are used up."""
        should_retry, reason = job.should_retry(self.settings.max_retries)

        if should_retry:
            delay_ms = job.get_retry_delay(
                self.settings.retry_delay_ms,
                self.settings.retry_backoff_multiplier,
                self.settings.max_retry_delay_ms
            )
            logger.warning(
                f"Job {job.job_index} of campaign {job.campaign_id} failed "
                f"(attempt {job.attempts + 1}): {error}. Retrying in {delay_ms}ms"
            )
            if not await self.queue.requeue(job, delay_ms=delay_ms):
                logger.error(f"Could not reschedule {job!r}, leaving lease for recovery")
            self._jobs_retried += 1
            return JobOutcome.RETRIED

        logger.error(f"Job {job.job_index} of campaign {job.campaign_id} failed permanently ({reason}): {error}")
        return await self._fail_permanently(job, str(error))

    async def _fail_permanently(self, job: AuditJob, error: str) -> str:
        previous = await self.store.transition_job(
            job.campaign_id, job.job_index, CampaignJobStatus.FAILED, error=error
        )
        if previous not in (CampaignJobStatus.PENDING, CampaignJobStatus.PROCESSING):
            return await self._drop(job)

        await self.queue.ack(job)
        self._jobs_failed += 1

        await self._delete_audio(job.audio_url)
        await self.manager.check_failure_threshold(job.campaign_id)
        await self.manager.check_completion(job.campaign_id)
        return JobOutcome.FAILED

    def _report_usage(self, audit: CallAudit, parameter_set: ParameterSet, campaign: Campaign) -> None:
        if self.usage_reporter is None:
            return
        try:
            payload = AuditReportPayload.from_audit(
                audit,
                processing_duration_ms=audit.audit_duration_ms,
                parameters_count=len(parameter_set.parameters),
                campaign_name=campaign.name,
            )
            self.usage_reporter.report_in_background(payload)
        except Exception as e:
            logger.warning(f"Failed to report usage for audit {audit.id}: {e}")

    async def _delete_audio(self, audio_url: str) -> None:
        if self.audio_storage is None:
            return
        try:
            await self.audio_storage.delete(audio_url)
        except Exception as e:
            logger.warning(f"Failed to delete audio {audio_url}: {e}")

    # =========================================================================
    # Status
    # =========================================================================

    async def get_status(self) -> dict:
        """Worker and queue status for the health and status endpoints."""
        return {
            "running": self.running,
            "concurrency": self.concurrency,
            "in_flight": self.in_flight,
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "jobs_completed": self._jobs_completed,
            "jobs_failed": self._jobs_failed,
            "jobs_retried": self._jobs_retried,
            "jobs_deferred": self._jobs_deferred,
            "jobs_dropped": self._jobs_dropped,
            "queue": await self.queue.get_queue_stats(),
        }


async def main():
    """Entry point for running the worker as a separate process."""
    from app.core.container import ServiceContainer

    container = await ServiceContainer.get_instance()
    if container.worker is None:
        raise RuntimeError("Audit worker could not be created, check provider configuration")

    worker = container.worker

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        worker.stop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    try:
        await worker.run()
    finally:
        await container.shutdown()


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    asyncio.run(main())
