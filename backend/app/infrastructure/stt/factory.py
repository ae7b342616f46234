"""
Transcription Provider Factory
Creates transcription provider instances based on configuration
"""
from typing import Dict, Type
from app.domain.interfaces.transcription_provider import TranscriptionProvider
from app.infrastructure.stt.deepgram_batch import DeepgramBatchTranscriptionProvider


class TranscriptionFactory:
    """Factory for creating transcription provider instances"""

    _providers: Dict[str, Type[TranscriptionProvider]] = {}

    @classmethod
    async def create(cls, provider_name: str, config: dict) -> TranscriptionProvider:
        """
        Create and initialize a transcription provider

        Args:
            provider_name: Name of the provider (e.g., "deepgram")
            config: Provider-specific configuration

        Returns:
            Initialized TranscriptionProvider instance

        Raises:
            ValueError: If provider not found or misconfigured
        """
        if provider_name not in cls._providers:
            available = ", ".join(cls._providers.keys()) if cls._providers else "None"
            raise ValueError(
                f"Unknown transcription provider: {provider_name}. "
                f"Available: {available}"
            )

        instance = cls._providers[provider_name]()
        await instance.initialize(config)
        return instance

    @classmethod
    def register(cls, name: str, provider_class: Type[TranscriptionProvider]) -> None:
        """Register a custom provider"""
        cls._providers[name] = provider_class

    @classmethod
    def list_providers(cls) -> list[str]:
        """Get list of available provider names"""
        return list(cls._providers.keys())


TranscriptionFactory.register("deepgram", DeepgramBatchTranscriptionProvider)
TranscriptionFactory.register("nova-2", DeepgramBatchTranscriptionProvider)  # Alias
