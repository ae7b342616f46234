"""
Audio Storage
Deletes audited call recordings from local uploads or a Supabase bucket
"""
import logging
from pathlib import Path
from typing import Optional
from urllib.parse import unquote, urlparse

from app.domain.interfaces.audio_storage import AudioStorage

logger = logging.getLogger(__name__)


class LocalAudioStorage(AudioStorage):
    """
    Recordings uploaded to this instance and served under /uploads/<name>.

    URLs pointing anywhere else are left alone.
    """

    URL_MARKER = "/uploads/"

    def __init__(self, uploads_dir: str = "uploads"):
        self.uploads_dir = Path(uploads_dir).resolve()

    def _resolve(self, audio_url: str) -> Optional[Path]:
        path = unquote(urlparse(audio_url).path or audio_url)
        if self.URL_MARKER not in path:
            return None

        name = path.split(self.URL_MARKER, 1)[1]
        if not name:
            return None

        target = (self.uploads_dir / name).resolve()
        # Stay inside the uploads directory
        if self.uploads_dir not in target.parents:
            logger.warning(f"Refusing to delete outside uploads dir: {audio_url}")
            return None
        return target

    async def delete(self, audio_url: str) -> bool:
        target = self._resolve(audio_url)
        if target is None:
            return False

        try:
            target.unlink()
            logger.info(f"Deleted audio file after audit: {target.name}")
            return True
        except FileNotFoundError:
            logger.debug(f"Audio file already gone: {target}")
            return False
        except OSError as e:
            logger.warning(f"Failed to delete audio file {target}: {e}")
            return False


class SupabaseAudioStorage(AudioStorage):
    """Recordings stored in a Supabase Storage bucket"""

    def __init__(self, supabase_client, bucket: str = "recordings"):
        self._supabase = supabase_client
        self.bucket = bucket

    def _object_path(self, audio_url: str) -> Optional[str]:
        path = unquote(urlparse(audio_url).path)
        marker = f"/{self.bucket}/"
        if "/storage/v1/object/" not in path or marker not in path:
            return None
        return path.split(marker, 1)[1] or None

    async def delete(self, audio_url: str) -> bool:
        object_path = self._object_path(audio_url)
        if object_path is None:
            return False

        try:
            self._supabase.storage.from_(self.bucket).remove([object_path])
            logger.info(f"Deleted recording {object_path} from bucket {self.bucket}")
            return True
        except Exception as e:
            logger.warning(f"Failed to delete recording {object_path}: {e}")
            return False
