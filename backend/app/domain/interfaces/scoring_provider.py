"""
Scoring Provider Interface
Abstract base class for AI call-audit scoring providers
"""
from abc import ABC, abstractmethod
from typing import List
from app.domain.models.call_audit import QAParameter, ScoringResult


class ScoringProvider(ABC):
    """Abstract base class for scoring a transcript against a parameter set"""

    @abstractmethod
    async def initialize(self, config: dict) -> None:
        """Initialize the provider with configuration"""
        pass

    @abstractmethod
    async def audit_call(
        self,
        transcript: str,
        parameters: List[QAParameter],
        language: str = "en"
    ) -> ScoringResult:
        """
        Score a call transcript

        Args:
            transcript: Full call transcript
            parameters: Weighted criteria to score
            language: Language of the transcript

        Returns:
            ScoringResult with per-parameter scores, sentiment and token usage
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
