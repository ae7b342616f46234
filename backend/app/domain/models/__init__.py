"""Domain models"""

# Campaign models
from .campaign import (
    CampaignStatus,
    CampaignJobStatus,
    JobInput,
    CampaignJob,
    CampaignConfig,
    CampaignUsage,
    CampaignStats,
    Campaign,
    Pagination,
    PaginatedCampaigns,
)

# Queue models
from .audit_job import (
    AuditJob,
    calculate_retry_delay,
)

# Scoring models
from .call_audit import (
    ParameterType,
    QAParameter,
    ParameterSet,
    TranscriptionResult,
    TokenUsage,
    Sentiment,
    AuditResultItem,
    ScoringResult,
    CallAudit,
    AuditReportPayload,
)

__all__ = [
    # Campaign models
    "CampaignStatus",
    "CampaignJobStatus",
    "JobInput",
    "CampaignJob",
    "CampaignConfig",
    "CampaignUsage",
    "CampaignStats",
    "Campaign",
    "Pagination",
    "PaginatedCampaigns",
    # Queue models
    "AuditJob",
    "calculate_retry_delay",
    # Scoring models
    "ParameterType",
    "QAParameter",
    "ParameterSet",
    "TranscriptionResult",
    "TokenUsage",
    "Sentiment",
    "AuditResultItem",
    "ScoringResult",
    "CallAudit",
    "AuditReportPayload",
]
