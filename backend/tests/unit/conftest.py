"""
Shared fixtures for campaign pipeline unit tests
"""
from collections import deque
from typing import Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.core.config import Settings
from app.domain.exceptions import TransientProcessingError
from app.domain.models.audit_job import AuditJob
from app.domain.models.call_audit import (
    ParameterSet,
    ParameterType,
    QAParameter,
    ScoringResult,
    Sentiment,
    TokenUsage,
    TranscriptionResult,
)
from app.domain.services.campaign_manager import CampaignManager
from app.domain.services.campaign_store import InMemoryCampaignStore
from app.workers.audit_worker import AuditWorker


class InMemoryQueue:
    """
    Queue double with the AuditQueueService surface used by the manager
    and the worker. Scheduled jobs are promoted regardless of their delay.
    """

    def __init__(self, available: bool = True):
        self.available = available
        self.ready: deque = deque()
        self.scheduled: List[AuditJob] = []
        self.leased: Dict[str, AuditJob] = {}
        self.acked: List[AuditJob] = []
        self.requeues: List[tuple] = []  # (job_index, delay_ms, count_attempt)

    def is_available(self) -> bool:
        return self.available

    async def ensure_connection(self) -> bool:
        return self.available

    async def enqueue(self, job: AuditJob) -> bool:
        if not self.available:
            return False
        self.ready.append(job.model_copy())
        return True

    async def enqueue_many(self, jobs: List[AuditJob]) -> List[AuditJob]:
        return [job for job in jobs if await self.enqueue(job)]

    async def lease(self) -> Optional[AuditJob]:
        if not self.available or not self.ready:
            return None
        job = self.ready.popleft()
        self.leased[job.job_id] = job
        return job

    async def ack(self, job: AuditJob) -> None:
        self.leased.pop(job.job_id, None)
        self.acked.append(job)

    async def requeue(self, job: AuditJob, delay_ms: int = 0, count_attempt: bool = True) -> bool:
        if count_attempt:
            job.attempts += 1
        self.leased.pop(job.job_id, None)
        self.scheduled.append(job)
        self.requeues.append((job.job_index, delay_ms, count_attempt))
        return True

    async def promote_due_jobs(self) -> int:
        count = len(self.scheduled)
        self.ready.extend(self.scheduled)
        self.scheduled = []
        return count

    async def recover_leases(self, stale_after_seconds: Optional[float] = None) -> int:
        return 0

    async def get_queue_stats(self) -> dict:
        return {
            "available": self.available,
            "ready_jobs": len(self.ready),
            "scheduled_jobs": len(self.scheduled),
            "leased_jobs": len(self.leased),
        }

    async def close(self) -> None:
        pass


async def drain(worker: AuditWorker, queue: InMemoryQueue, max_steps: int = 200) -> List[str]:
    """Process jobs one by one until ready and scheduled are both empty."""
    outcomes = []
    for _ in range(max_steps):
        job = await queue.lease()
        if job is None:
            if await queue.promote_due_jobs() == 0:
                break
            continue
        outcomes.append(await worker.process_job(job))
    return outcomes


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        campaign_store="memory",
        queue_concurrency=3,
        queue_poll_interval_ms=10,
        paused_requeue_delay_ms=2000,
        max_retries=3,
        retry_delay_ms=1000,
        retry_backoff_multiplier=2,
        max_retry_delay_ms=60000,
        max_bulk_rows=10000,
        default_page_size=50,
        transcription_timeout_seconds=5.0,
        scoring_timeout_seconds=5.0,
    )


@pytest.fixture
def parameter_set():
    return ParameterSet(
        id="ps-1",
        name="Inbound support",
        parameters=[
            QAParameter(id="greeting", name="Greeting", weight=20),
            QAParameter(id="resolution", name="Resolution", weight=60),
            QAParameter(id="compliance", name="Compliance", weight=20, type=ParameterType.FATAL),
        ],
    )


@pytest.fixture
def store(parameter_set):
    store = InMemoryCampaignStore()
    store.add_parameter_set(parameter_set)
    return store


@pytest.fixture
def queue():
    return InMemoryQueue()


@pytest.fixture
def make_queue():
    return InMemoryQueue


@pytest.fixture
def run_queue():
    return drain


@pytest.fixture
def manager(store, queue, settings):
    return CampaignManager(store, queue, settings)


def score_for(url: str) -> float:
    """Deterministic score from a URL like https://cdn/a-80.wav"""
    try:
        return float(url.rsplit("-", 1)[1].split(".")[0])
    except (IndexError, ValueError):
        return 75.0


@pytest.fixture
def transcriber():
    mock = MagicMock()
    mock.name = "fake-transcriber"

    async def transcribe(audio_url: str) -> TranscriptionResult:
        if "broken" in audio_url:
            raise TransientProcessingError(f"cannot fetch {audio_url}")
        return TranscriptionResult(transcript=f"Agent: hello ({audio_url})", language="en")

    mock.transcribe = AsyncMock(side_effect=transcribe)
    mock.cleanup = AsyncMock()
    return mock


@pytest.fixture
def scorer():
    mock = MagicMock()
    mock.name = "fake-scorer"

    async def audit_call(transcript: str, parameters, language: str = "en") -> ScoringResult:
        url = transcript.split("(", 1)[1].rstrip(")")
        return ScoringResult(
            overall_score=score_for(url),
            sentiment=Sentiment(overall="positive"),
            token_usage=TokenUsage(input_tokens=100, output_tokens=20, total_tokens=120),
            call_summary="Customer asked about billing",
        )

    mock.audit_call = AsyncMock(side_effect=audit_call)
    mock.cleanup = AsyncMock()
    return mock


@pytest.fixture
def worker(manager, transcriber, scorer, settings):
    return AuditWorker(
        manager=manager,
        transcriber=transcriber,
        scorer=scorer,
        audio_storage=None,
        usage_reporter=None,
        settings=settings,
    )
