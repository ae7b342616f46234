"""
Audio Storage Interface
Where uploaded call recordings live until they have been audited
"""
from abc import ABC, abstractmethod


class AudioStorage(ABC):
    """Abstract base class for transient audio storage"""

    @abstractmethod
    async def delete(self, audio_url: str) -> bool:
        """
        Delete the file behind an audio URL.

        Best effort: implementations log and return False instead of raising.

        Returns:
            True if a file was removed
        """
        pass
