"""
Campaign Domain Models
A campaign is a batch of call recordings audited against one parameter set
"""
from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime
from enum import Enum
import math


class CampaignStatus(str, Enum):
    """Campaign status"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PAUSED = "paused"


class CampaignJobStatus(str, Enum):
    """Status of a single job embedded in a campaign"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# Statuses from which no automatic processing happens
TERMINAL_STATUSES = {
    CampaignStatus.COMPLETED,
    CampaignStatus.FAILED,
    CampaignStatus.CANCELLED,
}

# Statuses whose pending jobs may still need handing to the broker
ACTIVE_STATUSES = (
    CampaignStatus.PENDING,
    CampaignStatus.PROCESSING,
    CampaignStatus.PAUSED,
)


class JobInput(BaseModel):
    """One audio file submitted for auditing"""
    audio_url: str = Field(..., min_length=1, description="URL of the call recording")
    agent_name: Optional[str] = None
    call_id: Optional[str] = None


class CampaignJob(BaseModel):
    """
    Per-file state embedded in a campaign.

    Identified by its index within Campaign.jobs.
    """
    audio_url: str
    agent_name: Optional[str] = None
    call_id: Optional[str] = None
    status: CampaignJobStatus = CampaignJobStatus.PENDING
    error: Optional[str] = None
    audit_id: Optional[str] = None
    # Handed to the broker at least once; reset when a failed job is retried
    queued: bool = False

    @classmethod
    def from_input(cls, job: JobInput) -> "CampaignJob":
        return cls(
            audio_url=job.audio_url,
            agent_name=job.agent_name,
            call_id=job.call_id,
        )


class CampaignConfig(BaseModel):
    """Rate limit and auto-pause configuration"""
    rpm: int = Field(default=10, ge=0, description="Max job starts per minute (0 = unlimited)")
    failure_threshold: float = Field(
        default=20.0,
        ge=0,
        le=100,
        description="Failure percentage above which the campaign is auto-paused"
    )

    def min_interval_ms(self) -> float:
        """Minimum spacing between job starts, 0 when unlimited"""
        if self.rpm <= 0:
            return 0.0
        return 60000.0 / self.rpm


class CampaignUsage(BaseModel):
    """Rate-limit bookkeeping"""
    last_job_started_at: Optional[datetime] = None


class CampaignStats(BaseModel):
    """Aggregate stats, written once the campaign reaches a terminal state"""
    avg_score: float = 0.0
    total_tokens: int = 0
    avg_duration_ms: float = 0.0

    @classmethod
    def from_audits(cls, audits: list) -> "CampaignStats":
        """
        Aggregate over every persisted audit of a campaign.

        Computed from the final list of audits, never incrementally, so a
        redelivered job that re-saved its audit is counted once.
        """
        if not audits:
            return cls()
        count = len(audits)
        return cls(
            avg_score=round(sum(a.overall_score for a in audits) / count, 2),
            total_tokens=sum(a.token_usage.total_tokens for a in audits),
            avg_duration_ms=round(sum(a.audit_duration_ms for a in audits) / count, 2),
        )


class Campaign(BaseModel):
    """Bulk audit campaign"""
    id: str
    name: str
    description: Optional[str] = None
    project_id: Optional[str] = None
    created_by: Optional[str] = None
    status: CampaignStatus = CampaignStatus.PENDING
    parameter_set_id: str

    # Counters (owned by the campaign store)
    total_jobs: int = Field(default=0, ge=0)
    completed_jobs: int = Field(default=0, ge=0)
    failed_jobs: int = Field(default=0, ge=0)
    processing_jobs: int = Field(default=0, ge=0)

    jobs: List[CampaignJob] = Field(default_factory=list)

    apply_rate_limit: bool = True
    config: CampaignConfig = Field(default_factory=CampaignConfig)
    usage: CampaignUsage = Field(default_factory=CampaignUsage)
    stats: Optional[CampaignStats] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def processed_jobs(self) -> int:
        """Jobs that reached a terminal job status"""
        return self.completed_jobs + self.failed_jobs

    @property
    def is_finished(self) -> bool:
        """All jobs either completed or permanently failed"""
        return self.processed_jobs >= self.total_jobs

    @property
    def failure_rate(self) -> float:
        """Failed jobs as a percentage of all jobs"""
        if self.total_jobs == 0:
            return 0.0
        return self.failed_jobs / self.total_jobs * 100

    def final_status(self) -> CampaignStatus:
        """
        Status a finished campaign settles in.

        Partial success is still COMPLETED; FAILED only when every job failed.
        """
        if self.total_jobs > 0 and self.failed_jobs == self.total_jobs:
            return CampaignStatus.FAILED
        return CampaignStatus.COMPLETED

    def get_job(self, index: int) -> Optional[CampaignJob]:
        if 0 <= index < len(self.jobs):
            return self.jobs[index]
        return None


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        return cls(
            page=page,
            limit=limit,
            total=total,
            total_pages=math.ceil(total / limit) if limit > 0 else 0,
        )


class PaginatedCampaigns(BaseModel):
    """Page of campaigns, newest first"""
    data: List[Campaign]
    pagination: Pagination
