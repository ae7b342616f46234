"""
Campaign Store
Persistence for campaigns, their embedded jobs, scoring results and parameter sets

Counters (total/completed/failed/processing) are only ever changed through
guarded per-job transitions, never by writing a whole campaign back:
- InMemoryCampaignStore serializes every mutation of a campaign behind
  that campaign's asyncio.Lock (single writer per campaign)
- SupabaseCampaignStore runs each transition as one Postgres function
  (see database/campaign_pipeline.sql) that locks the campaign row
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from app.domain.models.campaign import (
    Campaign,
    CampaignConfig,
    CampaignJob,
    CampaignJobStatus,
    CampaignStats,
    CampaignStatus,
    CampaignUsage,
)
from app.domain.models.call_audit import CallAudit, ParameterSet

logger = logging.getLogger(__name__)


class CampaignStore(ABC):
    """Abstract campaign persistence"""

    # Campaign documents

    @abstractmethod
    async def create_campaign(self, campaign: Campaign) -> Campaign:
        pass

    @abstractmethod
    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        pass

    @abstractmethod
    async def list_campaigns(
        self,
        project_id: Optional[str] = None,
        status: Optional[CampaignStatus] = None,
        page: int = 1,
        limit: int = 50
    ) -> Tuple[List[Campaign], int]:
        """Page of campaigns (newest first) and the total count"""
        pass

    @abstractmethod
    async def delete_campaign(self, campaign_id: str) -> bool:
        pass

    @abstractmethod
    async def set_status(
        self,
        campaign_id: str,
        status: CampaignStatus,
        allowed_from: Optional[set] = None,
        started_at: Optional[datetime] = None,
        completed_at: Optional[datetime] = None,
        clear_results: bool = False
    ) -> Optional[Campaign]:
        """
        Conditionally change the campaign status.

        clear_results drops completed_at and stats of a campaign being reopened.

        Returns:
            Updated campaign, or None if missing or current status not in allowed_from
        """
        pass

    @abstractmethod
    async def update_config(self, campaign_id: str, config: CampaignConfig) -> Optional[Campaign]:
        pass

    # Per-job transitions

    @abstractmethod
    async def append_job(self, campaign_id: str, job: CampaignJob) -> Optional[Tuple[Campaign, int]]:
        """
        Append a job and bump total_jobs. Reopens completed/failed campaigns
        (clearing completed_at and stats).

        Returns:
            (updated campaign, new job index), or None if the campaign is missing
        """
        pass

    @abstractmethod
    async def mark_jobs_queued(self, campaign_id: str, job_indexes: List[int]) -> None:
        """Record that these jobs were handed to the broker"""
        pass

    @abstractmethod
    async def transition_job(
        self,
        campaign_id: str,
        job_index: int,
        to_status: CampaignJobStatus,
        audit_id: Optional[str] = None,
        error: Optional[str] = None
    ) -> Optional[CampaignJobStatus]:
        """
        Guarded job transition with atomic counter adjustment.

        - processing: only from pending (processing_jobs += 1)
        - completed:  only from pending/processing (completed_jobs += 1,
                      processing_jobs -= 1 if it was processing)
        - failed:     only from pending/processing (failed_jobs += 1,
                      processing_jobs -= 1 if it was processing)

        Returns:
            The job status before the call (unchanged if the transition was
            not allowed), or None if campaign or job does not exist
        """
        pass

    @abstractmethod
    async def reset_failed_job(self, campaign_id: str, job_index: int) -> bool:
        """failed -> pending, clear error and queued, failed_jobs -= 1. False if job was not failed."""
        pass

    @abstractmethod
    async def reserve_rate_slot(self, campaign_id: str, min_interval_ms: float) -> float:
        """
        Claim the next job start for a rate-limited campaign.

        Returns:
            0 if the slot was taken (last_job_started_at updated), otherwise
            the milliseconds left until the next slot
        """
        pass

    @abstractmethod
    async def finish_campaign(self, campaign_id: str, stats: CampaignStats) -> Optional[Campaign]:
        """
        Settle a campaign whose jobs are all processed.

        Applies only if completed + failed >= total and the campaign is not
        cancelled; sets final status, completed_at, stats and
        processing_jobs = 0.

        Returns:
            Updated campaign, or None if the conditions did not hold
        """
        pass

    # Scoring results and rubrics

    @abstractmethod
    async def save_audit(self, audit: CallAudit) -> CallAudit:
        """Insert or overwrite an audit by id"""
        pass

    @abstractmethod
    async def list_audits(self, campaign_id: str) -> List[CallAudit]:
        pass

    @abstractmethod
    async def get_parameter_set(self, parameter_set_id: str) -> Optional[ParameterSet]:
        pass


def _apply_transition(
    job: CampaignJob,
    campaign: Campaign,
    to_status: CampaignJobStatus,
    audit_id: Optional[str],
    error: Optional[str]
) -> None:
    """Shared transition rules for the in-memory store (mirrors the SQL function)."""
    current = job.status

    if to_status == CampaignJobStatus.PROCESSING:
        if current == CampaignJobStatus.PENDING:
            job.status = CampaignJobStatus.PROCESSING
            campaign.processing_jobs += 1
        return

    if current not in (CampaignJobStatus.PENDING, CampaignJobStatus.PROCESSING):
        return

    if current == CampaignJobStatus.PROCESSING:
        campaign.processing_jobs = max(campaign.processing_jobs - 1, 0)

    job.status = to_status
    if to_status == CampaignJobStatus.COMPLETED:
        campaign.completed_jobs += 1
        job.audit_id = audit_id
        job.error = None
    elif to_status == CampaignJobStatus.FAILED:
        campaign.failed_jobs += 1
        job.error = error


class InMemoryCampaignStore(CampaignStore):
    """
    Process-local store.

    Used in development and tests. All mutations of one campaign run under
    its own lock, so concurrent pipelines never lose counter updates.
    """

    def __init__(self):
        self._campaigns: Dict[str, Campaign] = {}
        self._audits: Dict[str, CallAudit] = {}
        self._parameter_sets: Dict[str, ParameterSet] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def add_parameter_set(self, parameter_set: ParameterSet) -> None:
        """Seed a rubric (parameter sets are managed outside this pipeline)."""
        self._parameter_sets[parameter_set.id] = parameter_set.model_copy(deep=True)

    def remove_parameter_set(self, parameter_set_id: str) -> None:
        self._parameter_sets.pop(parameter_set_id, None)

    def _copy(self, campaign: Campaign) -> Campaign:
        return campaign.model_copy(deep=True)

    async def create_campaign(self, campaign: Campaign) -> Campaign:
        async with self._locks[campaign.id]:
            self._campaigns[campaign.id] = self._copy(campaign)
            return self._copy(campaign)

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        campaign = self._campaigns.get(campaign_id)
        return self._copy(campaign) if campaign else None

    async def list_campaigns(
        self,
        project_id: Optional[str] = None,
        status: Optional[CampaignStatus] = None,
        page: int = 1,
        limit: int = 50
    ) -> Tuple[List[Campaign], int]:
        campaigns = [
            c for c in self._campaigns.values()
            if (project_id is None or c.project_id == project_id)
            and (status is None or c.status == status)
        ]
        campaigns.sort(key=lambda c: c.created_at, reverse=True)
        start = (page - 1) * limit
        return [self._copy(c) for c in campaigns[start:start + limit]], len(campaigns)

    async def delete_campaign(self, campaign_id: str) -> bool:
        async with self._locks[campaign_id]:
            removed = self._campaigns.pop(campaign_id, None) is not None
        self._locks.pop(campaign_id, None)
        return removed

    async def set_status(
        self,
        campaign_id: str,
        status: CampaignStatus,
        allowed_from: Optional[set] = None,
        started_at: Optional[datetime] = None,
        completed_at: Optional[datetime] = None,
        clear_results: bool = False
    ) -> Optional[Campaign]:
        async with self._locks[campaign_id]:
            campaign = self._campaigns.get(campaign_id)
            if campaign is None:
                return None
            if allowed_from is not None and campaign.status not in allowed_from:
                return None

            campaign.status = status
            if started_at is not None:
                campaign.started_at = started_at
            if clear_results:
                campaign.completed_at = None
                campaign.stats = None
            if completed_at is not None:
                campaign.completed_at = completed_at
            return self._copy(campaign)

    async def update_config(self, campaign_id: str, config: CampaignConfig) -> Optional[Campaign]:
        async with self._locks[campaign_id]:
            campaign = self._campaigns.get(campaign_id)
            if campaign is None:
                return None
            campaign.config = config.model_copy()
            return self._copy(campaign)

    async def append_job(self, campaign_id: str, job: CampaignJob) -> Optional[Tuple[Campaign, int]]:
        async with self._locks[campaign_id]:
            campaign = self._campaigns.get(campaign_id)
            if campaign is None:
                return None

            campaign.jobs.append(job.model_copy())
            campaign.total_jobs += 1
            if campaign.status in (CampaignStatus.COMPLETED, CampaignStatus.FAILED):
                campaign.status = CampaignStatus.PROCESSING
                campaign.completed_at = None
                campaign.stats = None
            return self._copy(campaign), len(campaign.jobs) - 1

    async def mark_jobs_queued(self, campaign_id: str, job_indexes: List[int]) -> None:
        async with self._locks[campaign_id]:
            campaign = self._campaigns.get(campaign_id)
            if campaign is None:
                return
            for index in job_indexes:
                job = campaign.get_job(index)
                if job is not None:
                    job.queued = True

    async def transition_job(
        self,
        campaign_id: str,
        job_index: int,
        to_status: CampaignJobStatus,
        audit_id: Optional[str] = None,
        error: Optional[str] = None
    ) -> Optional[CampaignJobStatus]:
        async with self._locks[campaign_id]:
            campaign = self._campaigns.get(campaign_id)
            if campaign is None:
                return None
            job = campaign.get_job(job_index)
            if job is None:
                return None

            previous = job.status
            _apply_transition(job, campaign, to_status, audit_id, error)
            return previous

    async def reset_failed_job(self, campaign_id: str, job_index: int) -> bool:
        async with self._locks[campaign_id]:
            campaign = self._campaigns.get(campaign_id)
            job = campaign.get_job(job_index) if campaign else None
            if job is None or job.status != CampaignJobStatus.FAILED:
                return False

            job.status = CampaignJobStatus.PENDING
            job.error = None
            job.queued = False
            campaign.failed_jobs = max(campaign.failed_jobs - 1, 0)
            return True

    async def reserve_rate_slot(self, campaign_id: str, min_interval_ms: float) -> float:
        async with self._locks[campaign_id]:
            campaign = self._campaigns.get(campaign_id)
            if campaign is None:
                return 0.0

            now = datetime.utcnow()
            last = campaign.usage.last_job_started_at
            if last is not None and min_interval_ms > 0:
                elapsed_ms = (now - last).total_seconds() * 1000
                if elapsed_ms < min_interval_ms:
                    return min_interval_ms - elapsed_ms

            campaign.usage = CampaignUsage(last_job_started_at=now)
            return 0.0

    async def finish_campaign(self, campaign_id: str, stats: CampaignStats) -> Optional[Campaign]:
        async with self._locks[campaign_id]:
            campaign = self._campaigns.get(campaign_id)
            if campaign is None or campaign.status == CampaignStatus.CANCELLED:
                return None
            if not campaign.is_finished:
                return None

            campaign.status = campaign.final_status()
            campaign.completed_at = datetime.utcnow()
            campaign.processing_jobs = 0
            campaign.stats = stats
            return self._copy(campaign)

    async def save_audit(self, audit: CallAudit) -> CallAudit:
        self._audits[audit.id] = audit.model_copy(deep=True)
        return audit

    async def list_audits(self, campaign_id: str) -> List[CallAudit]:
        return [
            a.model_copy(deep=True)
            for a in self._audits.values()
            if a.campaign_id == campaign_id
        ]

    async def get_parameter_set(self, parameter_set_id: str) -> Optional[ParameterSet]:
        parameter_set = self._parameter_sets.get(parameter_set_id)
        return parameter_set.model_copy(deep=True) if parameter_set else None


class SupabaseCampaignStore(CampaignStore):
    """
    Supabase (PostgreSQL) backed store.

    Tables: campaigns, campaign_jobs, call_audits, qa_parameters.
    Counter-changing operations go through the RPC functions defined in
    database/campaign_pipeline.sql so each one is a single transaction.

    The supabase client is synchronous; every request runs in a worker
    thread so a slow round trip never stalls the event loop.
    """

    CAMPAIGNS = "campaigns"
    JOBS = "campaign_jobs"
    AUDITS = "call_audits"
    PARAMETER_SETS = "qa_parameters"

    def __init__(self, supabase_client):
        """
        Args:
            supabase_client: Initialized Supabase client
        """
        self._supabase = supabase_client

    # Row mapping

    @staticmethod
    def _campaign_to_row(campaign: Campaign) -> dict:
        data = campaign.model_dump(mode="json", exclude={"jobs"})
        return data

    @staticmethod
    def _job_to_row(campaign_id: str, index: int, job: CampaignJob) -> dict:
        return {
            "campaign_id": campaign_id,
            "job_index": index,
            **job.model_dump(mode="json"),
        }

    @staticmethod
    def _row_to_campaign(row: dict, job_rows: List[dict]) -> Campaign:
        jobs = [
            CampaignJob(
                audio_url=j["audio_url"],
                agent_name=j.get("agent_name"),
                call_id=j.get("call_id"),
                status=j.get("status", "pending"),
                error=j.get("error"),
                audit_id=j.get("audit_id"),
                queued=bool(j.get("queued", False)),
            )
            for j in sorted(job_rows, key=lambda j: j["job_index"])
        ]
        data = {k: v for k, v in row.items() if k in Campaign.model_fields and v is not None}
        return Campaign(**data, jobs=jobs)

    async def _execute(self, query):
        return await asyncio.to_thread(query.execute)

    async def _load_jobs(self, campaign_ids: List[str]) -> Dict[str, List[dict]]:
        if not campaign_ids:
            return {}
        response = await self._execute(
            self._supabase.table(self.JOBS).select("*").in_("campaign_id", campaign_ids)
        )

        grouped: Dict[str, List[dict]] = defaultdict(list)
        for row in response.data or []:
            grouped[row["campaign_id"]].append(row)
        return grouped

    async def _rpc(self, fn: str, params: dict):
        response = await self._execute(self._supabase.rpc(fn, params))
        return response.data

    # Campaign documents

    async def create_campaign(self, campaign: Campaign) -> Campaign:
        await self._execute(self._supabase.table(self.CAMPAIGNS).insert(self._campaign_to_row(campaign)))

        if campaign.jobs:
            job_rows = [self._job_to_row(campaign.id, i, job) for i, job in enumerate(campaign.jobs)]
            try:
                await self._execute(self._supabase.table(self.JOBS).insert(job_rows))
            except Exception:
                # No partial campaign without its jobs
                await self._execute(self._supabase.table(self.CAMPAIGNS).delete().eq("id", campaign.id))
                raise

        logger.debug(f"Stored campaign {campaign.id} with {len(campaign.jobs)} jobs")
        return campaign

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        response = await self._execute(
            self._supabase.table(self.CAMPAIGNS).select("*").eq("id", campaign_id)
        )
        if not response.data:
            return None
        jobs = await self._load_jobs([campaign_id])
        return self._row_to_campaign(response.data[0], jobs.get(campaign_id, []))

    async def list_campaigns(
        self,
        project_id: Optional[str] = None,
        status: Optional[CampaignStatus] = None,
        page: int = 1,
        limit: int = 50
    ) -> Tuple[List[Campaign], int]:
        query = self._supabase.table(self.CAMPAIGNS).select("*", count="exact")
        if project_id:
            query = query.eq("project_id", project_id)
        if status:
            query = query.eq("status", CampaignStatus(status).value)

        start = (page - 1) * limit
        response = await self._execute(
            query.order("created_at", desc=True).range(start, start + limit - 1)
        )

        rows = response.data or []
        jobs = await self._load_jobs([r["id"] for r in rows])
        campaigns = [self._row_to_campaign(r, jobs.get(r["id"], [])) for r in rows]
        return campaigns, response.count or 0

    async def delete_campaign(self, campaign_id: str) -> bool:
        # campaign_jobs rows cascade
        response = await self._execute(
            self._supabase.table(self.CAMPAIGNS).delete().eq("id", campaign_id)
        )
        return bool(response.data)

    async def set_status(
        self,
        campaign_id: str,
        status: CampaignStatus,
        allowed_from: Optional[set] = None,
        started_at: Optional[datetime] = None,
        completed_at: Optional[datetime] = None,
        clear_results: bool = False
    ) -> Optional[Campaign]:
        update_data = {"status": CampaignStatus(status).value}
        if started_at is not None:
            update_data["started_at"] = started_at.isoformat()
        if clear_results:
            update_data["completed_at"] = None
            update_data["stats"] = None
        if completed_at is not None:
            update_data["completed_at"] = completed_at.isoformat()

        query = self._supabase.table(self.CAMPAIGNS).update(update_data).eq("id", campaign_id)
        if allowed_from is not None:
            query = query.in_("status", [CampaignStatus(s).value for s in allowed_from])

        response = await self._execute(query)
        if not response.data:
            return None
        return await self.get_campaign(campaign_id)

    async def update_config(self, campaign_id: str, config: CampaignConfig) -> Optional[Campaign]:
        response = await self._execute(
            self._supabase.table(self.CAMPAIGNS).update(
                {"config": config.model_dump(mode="json")}
            ).eq("id", campaign_id)
        )
        if not response.data:
            return None
        return await self.get_campaign(campaign_id)

    # Per-job transitions

    async def append_job(self, campaign_id: str, job: CampaignJob) -> Optional[Tuple[Campaign, int]]:
        index = await self._rpc("append_campaign_job", {
            "p_campaign_id": campaign_id,
            "p_audio_url": job.audio_url,
            "p_agent_name": job.agent_name,
            "p_call_id": job.call_id,
        })
        if index is None:
            return None
        campaign = await self.get_campaign(campaign_id)
        if campaign is None:
            return None
        return campaign, int(index)

    async def mark_jobs_queued(self, campaign_id: str, job_indexes: List[int]) -> None:
        if not job_indexes:
            return
        await self._execute(
            self._supabase.table(self.JOBS).update({"queued": True}).eq(
                "campaign_id", campaign_id
            ).in_("job_index", job_indexes)
        )

    async def transition_job(
        self,
        campaign_id: str,
        job_index: int,
        to_status: CampaignJobStatus,
        audit_id: Optional[str] = None,
        error: Optional[str] = None
    ) -> Optional[CampaignJobStatus]:
        previous = await self._rpc("transition_campaign_job", {
            "p_campaign_id": campaign_id,
            "p_job_index": job_index,
            "p_to_status": CampaignJobStatus(to_status).value,
            "p_audit_id": audit_id,
            "p_error": error,
        })
        return CampaignJobStatus(previous) if previous else None

    async def reset_failed_job(self, campaign_id: str, job_index: int) -> bool:
        return bool(await self._rpc("reset_failed_campaign_job", {
            "p_campaign_id": campaign_id,
            "p_job_index": job_index,
        }))

    async def reserve_rate_slot(self, campaign_id: str, min_interval_ms: float) -> float:
        wait_ms = await self._rpc("reserve_campaign_rate_slot", {
            "p_campaign_id": campaign_id,
            "p_min_interval_ms": min_interval_ms,
        })
        return float(wait_ms or 0)

    async def finish_campaign(self, campaign_id: str, stats: CampaignStats) -> Optional[Campaign]:
        finished = await self._rpc("finish_campaign", {
            "p_campaign_id": campaign_id,
            "p_stats": stats.model_dump(mode="json"),
        })
        if not finished:
            return None
        return await self.get_campaign(campaign_id)

    # Scoring results and rubrics

    async def save_audit(self, audit: CallAudit) -> CallAudit:
        await self._execute(self._supabase.table(self.AUDITS).upsert(audit.model_dump(mode="json")))
        return audit

    async def list_audits(self, campaign_id: str) -> List[CallAudit]:
        response = await self._execute(
            self._supabase.table(self.AUDITS).select("*").eq("campaign_id", campaign_id)
        )
        return [CallAudit(**row) for row in response.data or []]

    async def get_parameter_set(self, parameter_set_id: str) -> Optional[ParameterSet]:
        response = await self._execute(
            self._supabase.table(self.PARAMETER_SETS).select("*").eq("id", parameter_set_id)
        )
        if not response.data:
            return None
        return ParameterSet(**response.data[0])
