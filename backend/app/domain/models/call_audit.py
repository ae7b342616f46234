"""
Call Audit Models
Parameter sets, collaborator responses and persisted scoring results
"""
from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from datetime import datetime
from enum import Enum


PASS_MARK = 70  # overall score at or above which an audit passes
MAX_POSSIBLE_SCORE = 100


class ParameterType(str, Enum):
    """Severity class of a QA parameter"""
    FATAL = "Fatal"
    NON_FATAL = "Non-Fatal"
    ZTP = "ZTP"  # zero tolerance policy


class SubParameter(BaseModel):
    id: str
    name: str
    weight: float = Field(ge=0)
    description: Optional[str] = None


class QAParameter(BaseModel):
    """One weighted criterion of a scoring rubric"""
    id: str
    name: str
    weight: float = Field(ge=0)
    type: ParameterType = ParameterType.NON_FATAL
    description: Optional[str] = None
    sub_parameters: List[SubParameter] = Field(default_factory=list)


class ParameterSet(BaseModel):
    """Scoring rubric applied to every job of a campaign"""
    id: str
    name: str
    description: Optional[str] = None
    project_id: Optional[str] = None
    is_active: bool = True
    parameters: List[QAParameter] = Field(default_factory=list)


class TranscriptionResult(BaseModel):
    """Transcription collaborator response"""
    transcript: str
    language: str = "en"


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0


class SentimentLabel(str, Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


class Sentiment(BaseModel):
    overall: SentimentLabel = SentimentLabel.NEUTRAL
    customer: Optional[SentimentLabel] = None
    agent: Optional[SentimentLabel] = None

    @field_validator("overall", "customer", "agent", mode="before")
    @classmethod
    def normalize_label(cls, v):
        # Models answer "Positive", "NEGATIVE", ...
        if isinstance(v, str):
            return v.strip().lower()
        return v


class Evidence(BaseModel):
    text: str
    line_number: Optional[int] = None


class AuditResultItem(BaseModel):
    """Score for a single parameter"""
    parameter_id: str
    parameter_name: str
    score: float = Field(ge=0)
    weight: float = Field(default=0, ge=0)
    type: ParameterType = ParameterType.NON_FATAL
    comments: Optional[str] = None
    confidence: Optional[float] = Field(default=None, ge=0, le=100)
    evidence: List[Evidence] = Field(default_factory=list)


class ScoringResult(BaseModel):
    """
    AI scoring collaborator response.

    Validated at the boundary so that malformed model output fails the
    attempt (and is retried) instead of leaking into persisted audits.
    """
    overall_score: float = Field(ge=0, le=MAX_POSSIBLE_SCORE)
    audit_results: List[AuditResultItem] = Field(default_factory=list)
    sentiment: Sentiment = Field(default_factory=Sentiment)
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    call_summary: Optional[str] = None


class CallAudit(BaseModel):
    """Persisted scoring result of one campaign job"""
    id: str
    campaign_id: str
    job_index: int
    call_id: str
    agent_name: str = "Unknown"
    parameter_set_id: str
    audio_url: Optional[str] = None
    transcript: str
    language: Optional[str] = None
    overall_score: float
    max_possible_score: int = MAX_POSSIBLE_SCORE
    audit_results: List[AuditResultItem] = Field(default_factory=list)
    sentiment: Sentiment = Field(default_factory=Sentiment)
    call_summary: Optional[str] = None
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    audit_duration_ms: int = 0
    audit_type: str = "bulk"
    status: str = "completed"
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @staticmethod
    def make_id(campaign_id: str, job_index: int) -> str:
        """
        Deterministic audit id for a campaign job.

        Redelivered leases overwrite the same record instead of adding one.
        """
        return f"{campaign_id}:{job_index}"


class AuditReportPayload(BaseModel):
    """Usage report sent to the admin panel after each completed audit"""
    audit_id: str
    agent_name: Optional[str] = None
    call_id: Optional[str] = None
    campaign_name: Optional[str] = None
    audit_type: str = "bulk"
    overall_score: float
    max_possible_score: int = MAX_POSSIBLE_SCORE
    processing_duration_ms: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    parameters_count: int = 0
    sentiment: Optional[Sentiment] = None
    pass_status: str = "fail"

    @classmethod
    def from_audit(
        cls,
        audit: CallAudit,
        processing_duration_ms: int,
        parameters_count: int,
        campaign_name: Optional[str] = None
    ) -> "AuditReportPayload":
        return cls(
            audit_id=audit.id,
            agent_name=audit.agent_name,
            call_id=audit.call_id,
            campaign_name=campaign_name,
            audit_type=audit.audit_type,
            overall_score=audit.overall_score,
            max_possible_score=audit.max_possible_score,
            processing_duration_ms=processing_duration_ms,
            input_tokens=audit.token_usage.input_tokens,
            output_tokens=audit.token_usage.output_tokens,
            total_tokens=audit.token_usage.total_tokens,
            parameters_count=parameters_count,
            sentiment=audit.sentiment,
            pass_status="pass" if audit.overall_score >= PASS_MARK else "fail",
        )
