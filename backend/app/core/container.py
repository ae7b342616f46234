"""
Service Container
Builds and owns the long-lived campaign pipeline services
"""
import asyncio
import logging
import os
from typing import Optional

from dotenv import load_dotenv
from supabase import create_client, Client

from app.core.config import ConfigManager, Settings, get_settings
from app.domain.interfaces.audio_storage import AudioStorage
from app.domain.services.campaign_manager import CampaignManager
from app.domain.services.campaign_store import (
    CampaignStore,
    InMemoryCampaignStore,
    SupabaseCampaignStore,
)
from app.domain.services.queue_service import AuditQueueService
from app.infrastructure.llm.factory import ScoringFactory
from app.infrastructure.reporting.usage_reporter import UsageReporter
from app.infrastructure.storage.audio_storage import LocalAudioStorage, SupabaseAudioStorage
from app.infrastructure.stt.factory import TranscriptionFactory
from app.workers.audit_worker import AuditWorker

load_dotenv()

logger = logging.getLogger(__name__)


def create_supabase_client() -> Client:
    """
    Create a Supabase client from the environment.

    Raises:
        RuntimeError: If SUPABASE_URL or SUPABASE_SERVICE_KEY is not configured
    """
    url = os.getenv("SUPABASE_URL")
    key = os.getenv("SUPABASE_SERVICE_KEY")

    if not url:
        raise RuntimeError(
            "SUPABASE_URL is not configured. "
            "Set SUPABASE_URL environment variable."
        )
    if not key:
        raise RuntimeError(
            "SUPABASE_SERVICE_KEY is not configured. "
            "Set SUPABASE_SERVICE_KEY environment variable."
        )

    return create_client(url, key)


class ServiceContainer:
    """
    Singleton holding store, queue, manager and worker.

    Shared by the FastAPI app (lifespan + dependencies) and the standalone
    worker process. The worker is None when the transcription or scoring
    provider cannot be configured; the API keeps working without it.
    """

    _instance: Optional["ServiceContainer"] = None
    _lock = asyncio.Lock()

    def __init__(self, settings: Optional[Settings] = None):
        """Private constructor - use get_instance()"""
        self.settings = settings or get_settings()
        self.config = ConfigManager(env=self.settings.environment)

        self._supabase: Optional[Client] = None
        self.store: Optional[CampaignStore] = None
        self.queue: Optional[AuditQueueService] = None
        self.manager: Optional[CampaignManager] = None
        self.audio_storage: Optional[AudioStorage] = None
        self.usage_reporter: Optional[UsageReporter] = None
        self.worker: Optional[AuditWorker] = None

    @classmethod
    async def get_instance(cls) -> "ServiceContainer":
        """Get singleton instance (async factory pattern)"""
        if cls._instance is None:
            async with cls._lock:
                if cls._instance is None:
                    instance = cls()
                    await instance._initialize()
                    cls._instance = instance
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Forget the singleton (tests)."""
        cls._instance = None

    def _get_supabase(self) -> Client:
        if self._supabase is None:
            self._supabase = create_supabase_client()
        return self._supabase

    async def _initialize(self) -> None:
        logger.info("Initializing campaign pipeline services...")

        if self.settings.campaign_store == "memory":
            self.store = InMemoryCampaignStore()
            logger.warning("Using in-memory campaign store, data is lost on restart")
        else:
            self.store = SupabaseCampaignStore(self._get_supabase())

        self.queue = AuditQueueService()
        await self.queue.initialize()

        self.manager = CampaignManager(self.store, self.queue, self.settings)

        if self.settings.audio_storage == "supabase":
            self.audio_storage = SupabaseAudioStorage(self._get_supabase(), self.settings.audio_bucket)
        else:
            self.audio_storage = LocalAudioStorage(self.settings.uploads_dir)

        self.usage_reporter = UsageReporter(
            admin_panel_url=self.settings.admin_panel_url,
            api_key=self.settings.instance_api_key,
        )

        try:
            transcriber = await TranscriptionFactory.create(
                self.config.get_active_provider("transcription"),
                self.config.get_provider_config("transcription"),
            )
            scorer = await ScoringFactory.create(
                self.config.get_active_provider("scoring"),
                self.config.get_provider_config("scoring"),
            )
        except ValueError as e:
            logger.warning(f"Audit worker disabled: {e}")
            return

        self.worker = AuditWorker(
            manager=self.manager,
            transcriber=transcriber,
            scorer=scorer,
            audio_storage=self.audio_storage,
            usage_reporter=self.usage_reporter,
            settings=self.settings,
        )
        logger.info(f"Audit worker ready (transcription={transcriber.name}, scoring={scorer.name})")

    async def shutdown(self) -> None:
        """Stop the worker and release connections."""
        if self.worker is not None:
            await self.worker.shutdown()
            await self.worker.transcriber.cleanup()
            await self.worker.scorer.cleanup()
        if self.usage_reporter is not None:
            await self.usage_reporter.close()
        if self.queue is not None:
            await self.queue.close()
        logger.info("Campaign pipeline services stopped")
