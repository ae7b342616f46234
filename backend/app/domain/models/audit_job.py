"""
Audit Job Model
Represents a single bulk-audit job in the Redis queue
"""
from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime
import uuid


# Module-level defaults for retry logic (overridable through Settings)
MAX_RETRIES = 3
RETRY_DELAY_MS = 1000
RETRY_BACKOFF_MULTIPLIER = 2
MAX_RETRY_DELAY_MS = 60000


def calculate_retry_delay(
    attempts: int,
    base_delay_ms: int = RETRY_DELAY_MS,
    multiplier: float = RETRY_BACKOFF_MULTIPLIER,
    max_delay_ms: int = MAX_RETRY_DELAY_MS
) -> int:
    """
    Exponential backoff with a ceiling.

    delay = min(base * multiplier ** attempts, max_delay)

    Args:
        attempts: Number of attempts already made before the failing one (0-based)
    """
    delay = base_delay_ms * (multiplier ** attempts)
    return int(min(delay, max_delay_ms))


class AuditJob(BaseModel):
    """
    Queue payload for one audio file of a campaign.

    The embedded campaign job is addressed by (campaign_id, job_index);
    `attempts` counts previous failed attempts and is bumped on requeue.
    """

    # Identity
    job_id: str = Field(default_factory=lambda: f"job:{uuid.uuid4().hex}")
    campaign_id: str = Field(..., description="Campaign this job belongs to")
    job_index: int = Field(..., ge=0, description="Index of the job within Campaign.jobs")

    # Work item
    audio_url: str
    agent_name: Optional[str] = None
    call_id: Optional[str] = None
    parameter_set_id: str = Field(..., description="Scoring rubric for the campaign")

    # Delivery tracking
    attempts: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    def should_retry(self, max_retries: int = MAX_RETRIES) -> tuple[bool, str]:
        """
        Determine if a failed attempt should be retried.

        Returns:
            (should_retry, reason)
        """
        if self.attempts < max_retries:
            return True, f"retrying_attempt_{self.attempts + 1}"
        return False, "max_attempts_reached"

    def get_retry_delay(
        self,
        base_delay_ms: int = RETRY_DELAY_MS,
        multiplier: float = RETRY_BACKOFF_MULTIPLIER,
        max_delay_ms: int = MAX_RETRY_DELAY_MS
    ) -> int:
        """Get delay in milliseconds before the next attempt."""
        return calculate_retry_delay(self.attempts, base_delay_ms, multiplier, max_delay_ms)

    def to_redis_dict(self) -> dict:
        """Serialize for Redis storage."""
        return {
            "job_id": self.job_id,
            "campaign_id": self.campaign_id,
            "job_index": self.job_index,
            "audio_url": self.audio_url,
            "agent_name": self.agent_name,
            "call_id": self.call_id,
            "parameter_set_id": self.parameter_set_id,
            "attempts": self.attempts,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    @classmethod
    def from_redis_dict(cls, data: dict) -> "AuditJob":
        """Deserialize from Redis storage."""
        if data.get("created_at") and isinstance(data["created_at"], str):
            data["created_at"] = datetime.fromisoformat(data["created_at"])

        return cls(**data)

    def __repr__(self) -> str:
        return (
            f"AuditJob(id={self.job_id}, "
            f"campaign={self.campaign_id}, "
            f"index={self.job_index}, "
            f"attempts={self.attempts})"
        )
