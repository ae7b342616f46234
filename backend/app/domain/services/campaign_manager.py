"""
Campaign Manager
Creates bulk audit campaigns, feeds their jobs into the audit queue and
exposes the operator actions (pause/resume/cancel/retry) on them
"""
import logging
import uuid
from datetime import datetime
from typing import List, Optional

from app.core.config import Settings, get_settings
from app.domain.exceptions import InvalidState, NotFound, ValidationError
from app.domain.models.audit_job import AuditJob
from app.domain.models.campaign import (
    ACTIVE_STATUSES,
    Campaign,
    CampaignConfig,
    CampaignJob,
    CampaignJobStatus,
    CampaignStats,
    CampaignStatus,
    JobInput,
    PaginatedCampaigns,
    Pagination,
)
from app.domain.services.campaign_store import CampaignStore
from app.domain.services.queue_service import AuditQueueService

logger = logging.getLogger(__name__)


class CampaignManager:
    """
    Campaign lifecycle operations.

    Status transitions:
        pending -> processing -> completed | failed
        processing <-> paused
        any -> cancelled (absorbing)
        completed | failed -> processing (add_job / retry only)

    The manager never touches counters directly; every change goes through
    the store's per-job transitions.

    A job is handed to the broker once: jobs that were enqueued are flagged
    `queued`, and the reconciliation sweep only enqueues pending jobs that
    never were.
    """

    # Minimum size before the failure threshold can auto-pause a campaign
    AUTO_PAUSE_MIN_JOBS = 5

    def __init__(
        self,
        store: CampaignStore,
        queue: AuditQueueService,
        settings: Optional[Settings] = None
    ):
        self.store = store
        self.queue = queue
        self.settings = settings or get_settings()

    # =========================================================================
    # Creation
    # =========================================================================

    async def create(
        self,
        name: str,
        parameter_set_id: str,
        jobs: List[JobInput],
        config: Optional[CampaignConfig] = None,
        description: Optional[str] = None,
        project_id: Optional[str] = None,
        created_by: Optional[str] = None,
        apply_rate_limit: bool = True
    ) -> Campaign:
        """
        Create a campaign and queue all of its jobs.

        If the queue is unreachable the campaign is persisted as pending and
        picked up later by `requeue_pending_campaigns`.

        Raises:
            ValidationError: empty or oversized batch, unknown parameter set
        """
        if not name or not name.strip():
            raise ValidationError("Campaign name is required")
        if not jobs:
            raise ValidationError("A campaign needs at least one job")
        if len(jobs) > self.settings.max_bulk_rows:
            raise ValidationError(
                f"Maximum {self.settings.max_bulk_rows} jobs allowed per campaign "
                f"(got {len(jobs)})"
            )

        parameter_set = await self.store.get_parameter_set(parameter_set_id)
        if parameter_set is None:
            raise ValidationError(f"QA parameter set {parameter_set_id} not found")

        campaign = Campaign(
            id=str(uuid.uuid4()),
            name=name.strip(),
            description=description,
            project_id=project_id,
            created_by=created_by,
            status=CampaignStatus.PENDING,
            parameter_set_id=parameter_set_id,
            total_jobs=len(jobs),
            jobs=[CampaignJob.from_input(job) for job in jobs],
            apply_rate_limit=apply_rate_limit,
            config=config or CampaignConfig(),
        )
        campaign = await self.store.create_campaign(campaign)

        if not self.queue.is_available():
            logger.warning(
                f"Audit queue not available, campaign {campaign.id} left pending "
                f"with {campaign.total_jobs} jobs"
            )
            return campaign

        started = await self._start(campaign)
        return started or campaign

    async def add_job(self, campaign_id: str, job: JobInput) -> Campaign:
        """
        Append a single job to an existing campaign and queue it immediately.

        Completed/failed campaigns are reopened to processing. A job that
        cannot be queued keeps the campaign status and is left to the
        reconciliation sweep.

        Raises:
            NotFound: unknown campaign
            InvalidState: campaign was cancelled
        """
        campaign = await self.find_by_id(campaign_id)
        if campaign.status == CampaignStatus.CANCELLED:
            raise InvalidState(f"Campaign {campaign_id} is cancelled")

        result = await self.store.append_job(campaign_id, CampaignJob.from_input(job))
        if result is None:
            raise NotFound(f"Campaign with ID {campaign_id} not found")
        campaign, index = result

        if campaign.status == CampaignStatus.PENDING:
            # Never started; queue it together with the jobs still waiting
            await self._start(campaign)
        elif await self._enqueue_jobs(campaign, [index]):
            logger.info(f"Added and queued job {index} for campaign {campaign_id}")
        else:
            logger.warning(f"Job {index} of campaign {campaign_id} stored but not queued")

        return await self.find_by_id(campaign_id)

    # =========================================================================
    # Queries
    # =========================================================================

    async def find_by_id(self, campaign_id: str) -> Campaign:
        campaign = await self.store.get_campaign(campaign_id)
        if campaign is None:
            raise NotFound(f"Campaign with ID {campaign_id} not found")
        return campaign

    async def find_all(
        self,
        project_id: Optional[str] = None,
        status: Optional[CampaignStatus] = None,
        page: int = 1,
        limit: Optional[int] = None
    ) -> PaginatedCampaigns:
        limit = limit or self.settings.default_page_size
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")

        campaigns, total = await self.store.list_campaigns(
            project_id=project_id,
            status=status,
            page=page,
            limit=limit
        )
        return PaginatedCampaigns(
            data=campaigns,
            pagination=Pagination.build(page, limit, total)
        )

    # =========================================================================
    # Operator actions
    # =========================================================================

    async def cancel(self, campaign_id: str) -> Campaign:
        """
        Cancel a campaign, whatever its current status.

        In-flight jobs run to completion; new leases for the campaign are
        dropped by the worker and completion no longer changes its status.
        A finished campaign keeps its completed_at and stats.
        """
        campaign = await self.find_by_id(campaign_id)
        if campaign.status == CampaignStatus.CANCELLED:
            return campaign

        updated = await self.store.set_status(
            campaign_id,
            CampaignStatus.CANCELLED,
            completed_at=campaign.completed_at or datetime.utcnow()
        )
        if updated is None:
            raise NotFound(f"Campaign with ID {campaign_id} not found")

        logger.info(f"Campaign {campaign_id} cancelled (was {campaign.status.value})")
        return updated

    async def pause(self, campaign_id: str) -> Campaign:
        """Pause a processing campaign. Already-leased jobs are not retracted."""
        await self.find_by_id(campaign_id)
        updated = await self.store.set_status(
            campaign_id,
            CampaignStatus.PAUSED,
            allowed_from={CampaignStatus.PROCESSING}
        )
        if updated is None:
            raise InvalidState(f"Campaign {campaign_id} is not processing")

        logger.info(f"Campaign {campaign_id} paused")
        return updated

    async def resume(self, campaign_id: str) -> Campaign:
        """Resume a paused campaign."""
        await self.find_by_id(campaign_id)
        updated = await self.store.set_status(
            campaign_id,
            CampaignStatus.PROCESSING,
            allowed_from={CampaignStatus.PAUSED}
        )
        if updated is None:
            raise InvalidState(f"Campaign {campaign_id} is not paused")

        logger.info(f"Campaign {campaign_id} resumed")
        return updated

    async def retry(self, campaign_id: str) -> int:
        """
        Re-queue every failed job of a campaign.

        Returns:
            Number of jobs retried
        """
        campaign = await self.find_by_id(campaign_id)
        if campaign.status == CampaignStatus.CANCELLED:
            raise InvalidState(f"Campaign {campaign_id} is cancelled")

        reset = []
        for index, job in enumerate(campaign.jobs):
            if job.status != CampaignJobStatus.FAILED:
                continue
            if await self.store.reset_failed_job(campaign_id, index):
                reset.append(index)

        if reset:
            campaign = await self._mark_processing(campaign, reopen=True) or campaign
            queued = await self._enqueue_jobs(campaign, reset)
            if len(queued) < len(reset):
                logger.warning(
                    f"Queued {len(queued)}/{len(reset)} retried jobs of campaign {campaign_id}, "
                    f"the rest is left for reconciliation"
                )

        logger.info(f"Retried {len(reset)} failed jobs for campaign {campaign_id}")
        return len(reset)

    async def retry_job(self, campaign_id: str, job_index: int) -> Campaign:
        """
        Re-queue one failed job.

        Raises:
            NotFound: unknown campaign or index out of range
            InvalidState: job is not failed, or campaign is cancelled
        """
        campaign = await self.find_by_id(campaign_id)
        job = campaign.get_job(job_index)
        if job is None:
            raise NotFound(f"Job {job_index} not found in campaign {campaign_id}")
        if campaign.status == CampaignStatus.CANCELLED:
            raise InvalidState(f"Campaign {campaign_id} is cancelled")
        if job.status != CampaignJobStatus.FAILED:
            raise InvalidState(f"Job {job_index} is {job.status.value}, only failed jobs can be retried")

        if not await self.store.reset_failed_job(campaign_id, job_index):
            raise InvalidState(f"Job {job_index} is no longer failed")

        campaign = await self._mark_processing(campaign, reopen=True) or campaign
        if not await self._enqueue_jobs(campaign, [job_index]):
            logger.warning(f"Retried job {job_index} of campaign {campaign_id} not queued, left for reconciliation")

        logger.info(f"Retried job {job_index} of campaign {campaign_id}")
        return await self.find_by_id(campaign_id)

    async def update_config(
        self,
        campaign_id: str,
        rpm: Optional[int] = None,
        failure_threshold: Optional[float] = None
    ) -> Campaign:
        """Replace rate-limit settings; applies from the next lease."""
        campaign = await self.find_by_id(campaign_id)

        changes = {}
        if rpm is not None:
            changes["rpm"] = rpm
        if failure_threshold is not None:
            changes["failure_threshold"] = failure_threshold
        try:
            config = CampaignConfig(**{**campaign.config.model_dump(), **changes})
        except ValueError as e:
            raise ValidationError(str(e)) from e

        updated = await self.store.update_config(campaign_id, config)
        if updated is None:
            raise NotFound(f"Campaign with ID {campaign_id} not found")
        return updated

    async def delete(self, campaign_id: str) -> None:
        """
        Hard-delete a campaign.

        Jobs still in the queue are left alone; the worker drops them once
        it finds no campaign for them.
        """
        if not await self.store.delete_campaign(campaign_id):
            raise NotFound(f"Campaign with ID {campaign_id} not found")
        logger.info(f"Campaign {campaign_id} deleted")

    # =========================================================================
    # Completion and housekeeping (used by the worker pool)
    # =========================================================================

    async def check_completion(self, campaign_id: str) -> Optional[Campaign]:
        """
        Settle the campaign if every job is completed or failed.

        Stats are computed from the persisted audits of completed jobs, so
        redelivered jobs never count twice.

        Returns:
            The finished campaign, or None if it is not done (or cancelled/deleted)
        """
        campaign = await self.store.get_campaign(campaign_id)
        if campaign is None or campaign.status == CampaignStatus.CANCELLED:
            return None
        if not campaign.is_finished:
            return None

        completed = {
            index for index, job in enumerate(campaign.jobs)
            if job.status == CampaignJobStatus.COMPLETED
        }
        audits = [
            audit for audit in await self.store.list_audits(campaign_id)
            if audit.job_index in completed
        ]
        finished = await self.store.finish_campaign(campaign_id, CampaignStats.from_audits(audits))
        if finished is not None:
            logger.info(
                f"Campaign {campaign_id} {finished.status.value}: "
                f"{finished.completed_jobs} succeeded, {finished.failed_jobs} failed"
            )
        return finished

    async def check_failure_threshold(self, campaign_id: str) -> bool:
        """
        Auto-pause a processing campaign whose failure rate exceeds its threshold.

        Returns:
            True if the campaign was paused
        """
        campaign = await self.store.get_campaign(campaign_id)
        if campaign is None or campaign.status != CampaignStatus.PROCESSING:
            return False
        if campaign.total_jobs <= self.AUTO_PAUSE_MIN_JOBS:
            return False
        if campaign.failure_rate <= campaign.config.failure_threshold:
            return False

        paused = await self.store.set_status(
            campaign_id,
            CampaignStatus.PAUSED,
            allowed_from={CampaignStatus.PROCESSING}
        )
        if paused is not None:
            logger.warning(
                f"Campaign {campaign_id} paused due to high failure rate "
                f"({campaign.failure_rate:.1f}% > {campaign.config.failure_threshold}%)"
            )
        return paused is not None

    async def requeue_pending_campaigns(self) -> int:
        """
        Reconciliation sweep for jobs that never reached the broker.

        Pending campaigns (created while the queue was down) are started.
        Processing and paused campaigns get their never-queued pending jobs
        enqueued (an add_job or retry that hit a broker outage). Jobs that
        were queued once are left alone.

        Returns:
            Number of campaigns that had jobs handed to the broker
        """
        if not self.queue.is_available():
            return 0

        # Collect first; starting a campaign moves it out of the pending pages
        candidates: List[Campaign] = []
        for status in ACTIVE_STATUSES:
            page = 1
            while True:
                campaigns, total = await self.store.list_campaigns(
                    status=status,
                    page=page,
                    limit=self.settings.default_page_size
                )
                candidates.extend(c for c in campaigns if self._unqueued_indexes(c))
                if not campaigns or page * self.settings.default_page_size >= total:
                    break
                page += 1

        handled = 0
        for candidate in candidates:
            campaign = await self.store.get_campaign(candidate.id)
            if campaign is None or campaign.status not in ACTIVE_STATUSES:
                continue
            if campaign.status == CampaignStatus.PENDING:
                if await self._start(campaign) is not None:
                    handled += 1
            elif await self._enqueue_jobs(campaign, self._unqueued_indexes(campaign)):
                handled += 1

        if handled:
            logger.info(f"Reconciliation queued jobs for {handled} campaigns")
        return handled

    # =========================================================================
    # Helpers
    # =========================================================================

    def _build_queue_job(self, campaign: Campaign, index: int) -> AuditJob:
        job = campaign.jobs[index]
        return AuditJob(
            campaign_id=campaign.id,
            job_index=index,
            audio_url=job.audio_url,
            agent_name=job.agent_name,
            call_id=job.call_id,
            parameter_set_id=campaign.parameter_set_id,
        )

    @staticmethod
    def _unqueued_indexes(campaign: Campaign) -> List[int]:
        return [
            index for index, job in enumerate(campaign.jobs)
            if job.status == CampaignJobStatus.PENDING and not job.queued
        ]

    async def _enqueue_jobs(self, campaign: Campaign, indexes: List[int]) -> List[int]:
        """
        Enqueue jobs by index and flag the ones the broker accepted.

        Returns:
            Indexes that were enqueued
        """
        enqueued = await self.queue.enqueue_many(
            [self._build_queue_job(campaign, index) for index in indexes]
        )
        queued = [job.job_index for job in enqueued]
        if queued:
            await self.store.mark_jobs_queued(campaign.id, queued)
        return queued

    async def _start(self, campaign: Campaign) -> Optional[Campaign]:
        """
        Queue the never-queued jobs of a pending campaign and flip it to processing.

        On a partial enqueue the campaign stays pending; the accepted jobs
        are flagged so the next sweep only sends the rest.
        """
        indexes = self._unqueued_indexes(campaign)
        queued = await self._enqueue_jobs(campaign, indexes)
        if len(queued) < len(indexes):
            logger.error(
                f"Queued only {len(queued)}/{len(indexes)} jobs for campaign {campaign.id}, "
                f"leaving it pending"
            )
            return None

        updated = await self._mark_processing(campaign)
        if updated is not None:
            logger.info(f"Campaign {campaign.id} started with {len(queued)} jobs")
        return updated

    async def _mark_processing(self, campaign: Campaign, reopen: bool = False) -> Optional[Campaign]:
        allowed = {CampaignStatus.PENDING}
        if reopen:
            allowed |= {CampaignStatus.PROCESSING, CampaignStatus.COMPLETED, CampaignStatus.FAILED}
        return await self.store.set_status(
            campaign.id,
            CampaignStatus.PROCESSING,
            allowed_from=allowed,
            started_at=campaign.started_at or datetime.utcnow(),
            clear_results=reopen
        )
