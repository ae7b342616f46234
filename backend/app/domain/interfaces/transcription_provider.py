"""
Transcription Provider Interface
Abstract base class for batch (pre-recorded) speech-to-text providers
"""
from abc import ABC, abstractmethod
from app.domain.models.call_audit import TranscriptionResult


class TranscriptionProvider(ABC):
    """Abstract base class for transcribing a stored call recording"""

    @abstractmethod
    async def initialize(self, config: dict) -> None:
        """Initialize the provider with configuration"""
        pass

    @abstractmethod
    async def transcribe(self, audio_url: str) -> TranscriptionResult:
        """
        Transcribe a recording

        Args:
            audio_url: Publicly reachable URL of the audio file

        Returns:
            TranscriptionResult with transcript text and detected language
        """
        pass

    @abstractmethod
    async def cleanup(self) -> None:
        """Release resources"""
        pass

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name"""
        pass
