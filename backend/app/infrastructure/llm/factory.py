"""
Scoring Provider Factory
"""
from typing import Dict, Type
from app.domain.interfaces.scoring_provider import ScoringProvider
from app.infrastructure.llm.groq_scoring import GroqScoringProvider


class ScoringFactory:
    """Factory for creating scoring provider instances"""

    _providers: Dict[str, Type[ScoringProvider]] = {}

    @classmethod
    async def create(cls, provider_name: str, config: dict) -> ScoringProvider:
        """Create and initialize a scoring provider"""
        if provider_name not in cls._providers:
            available = ", ".join(cls._providers.keys()) if cls._providers else "None"
            raise ValueError(f"Unknown scoring provider: {provider_name}. Available: {available}")

        instance = cls._providers[provider_name]()
        await instance.initialize(config)
        return instance

    @classmethod
    def register(cls, name: str, provider_class: Type[ScoringProvider]) -> None:
        """Register a provider"""
        cls._providers[name] = provider_class

    @classmethod
    def list_providers(cls) -> list[str]:
        """List available providers"""
        return list(cls._providers.keys())


ScoringFactory.register("groq", GroqScoringProvider)
