"""
Deepgram Batch Transcription Provider
Pre-recorded transcription of call recordings by URL (Deepgram listen v1)
"""
import os
import logging
from typing import Optional
from deepgram import AsyncDeepgramClient
from app.domain.exceptions import JobFailure, TransientProcessingError
from app.domain.interfaces.transcription_provider import TranscriptionProvider
from app.domain.models.call_audit import TranscriptionResult

logger = logging.getLogger(__name__)


class DeepgramBatchTranscriptionProvider(TranscriptionProvider):
    """
    Deepgram pre-recorded transcription

    Deepgram fetches the audio itself, so the URL must be reachable from
    the internet (local uploads are served under /uploads/).
    """

    def __init__(self):
        self._client: Optional[AsyncDeepgramClient] = None
        self._config: dict = {}
        self._model: str = "nova-2"
        self._smart_format: bool = True
        self._detect_language: bool = True

    async def initialize(self, config: dict) -> None:
        """Initialize Deepgram client"""
        self._config = config
        api_key = config.get("api_key") or os.getenv("DEEPGRAM_API_KEY")

        if not api_key or api_key.startswith("${"):
            raise ValueError("Deepgram API key not found in config or environment")

        self._client = AsyncDeepgramClient(api_key=api_key)

        self._model = config.get("model", "nova-2")
        self._smart_format = config.get("smart_format", True)
        self._detect_language = config.get("detect_language", True)

    async def transcribe(self, audio_url: str) -> TranscriptionResult:
        if not self._client:
            raise RuntimeError("Deepgram client not initialized. Call initialize() first.")

        try:
            response = await self._client.listen.v1.media.transcribe_url(
                url=audio_url,
                model=self._model,
                smart_format=self._smart_format,
                detect_language=self._detect_language,
                punctuate=True,
                diarize=True
            )
        except Exception as e:
            raise TransientProcessingError(f"Deepgram transcription failed: {e}") from e

        channels = response.results.channels if response.results else []
        if not channels or not channels[0].alternatives:
            raise TransientProcessingError(f"Deepgram returned no transcript for {audio_url}")

        channel = channels[0]
        transcript = (channel.alternatives[0].transcript or "").strip()
        if not transcript:
            # Silent recording
            raise JobFailure(f"Empty transcript for {audio_url}")

        language = getattr(channel, "detected_language", None) or "en"
        logger.debug(f"Transcribed {audio_url} ({len(transcript)} chars, language={language})")
        return TranscriptionResult(transcript=transcript, language=language)

    async def cleanup(self) -> None:
        """Release resources"""
        self._client = None

    @property
    def name(self) -> str:
        return "deepgram"
