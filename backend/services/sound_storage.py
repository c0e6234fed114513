"""
Custom alert sound storage

Custom sounds live in one directory under fixed names, one per alert type.
Every filename is reduced to its base component before use so requests can
never reach outside the directory.
"""

import logging
import os
from typing import Optional

import aiofiles
import aiofiles.os

logger = logging.getLogger(__name__)

CUSTOM_SOUNDS_DIR = os.getenv("KDS_CUSTOM_SOUNDS_DIR", os.path.join("public", "sounds", "custom"))
MAX_SOUND_BYTES = 5 * 1024 * 1024

NEW_ORDER_SOUND_NAME = "neworder.mp3"
NEAR_FINISH_SOUND_NAME = "nearfinish.mp3"
ALLOWED_SOUND_NAMES = (NEW_ORDER_SOUND_NAME, NEAR_FINISH_SOUND_NAME)


class InvalidSoundError(ValueError):
    """The upload is not an acceptable sound file."""


def safe_file_name(file_name: str) -> str:
    """Strip any directory part, including Windows separators."""
    return os.path.basename((file_name or "").replace("\\", "/")).strip()


def looks_like_mp3(content: bytes) -> bool:
    """Check for an ID3 tag or an MPEG audio frame sync at the start of the data."""
    if content[:3] == b"ID3":
        return True
    return len(content) >= 2 and content[0] == 0xFF and (content[1] & 0xE0) == 0xE0


class SoundStorage:
    """Save, probe, locate and delete custom sounds in a single directory."""

    def __init__(self, directory: str = CUSTOM_SOUNDS_DIR):
        self.directory = os.path.abspath(directory)
        os.makedirs(self.directory, exist_ok=True)

    def path_for(self, file_name: str) -> str:
        name = safe_file_name(file_name)
        if not name or name in (".", ".."):
            raise InvalidSoundError("fileName is required")
        return os.path.join(self.directory, name)

    async def save(self, content: bytes, file_name: str, content_type: Optional[str] = None) -> str:
        """
        Store an uploaded sound under one of the fixed names.

        Raises:
            InvalidSoundError: wrong name, not mp3 audio, empty or over 5MB
        """
        name = safe_file_name(file_name)
        if name not in ALLOWED_SOUND_NAMES:
            raise InvalidSoundError(f"fileName must be one of: {', '.join(ALLOWED_SOUND_NAMES)}")
        if content_type and not content_type.startswith("audio/"):
            raise InvalidSoundError("Invalid file type. Only audio files are allowed.")
        if not content:
            raise InvalidSoundError("Uploaded file is empty")
        if len(content) > MAX_SOUND_BYTES:
            raise InvalidSoundError("File size exceeds 5MB limit")
        if not looks_like_mp3(content):
            raise InvalidSoundError("Only .mp3 audio files are allowed.")

        target_path = self.path_for(name)
        tmp_path = f"{target_path}.upload"
        async with aiofiles.open(tmp_path, "wb") as f:
            await f.write(content)
        await aiofiles.os.replace(tmp_path, target_path)

        logger.info(f"Saved custom sound {name} ({len(content)} bytes)")
        return name

    async def exists(self, file_name: str) -> bool:
        try:
            path = self.path_for(file_name)
        except InvalidSoundError:
            return False
        return await aiofiles.os.path.isfile(path)

    async def resolve(self, file_name: str) -> Optional[str]:
        """Absolute path of a stored sound, or None if it is missing."""
        path = self.path_for(file_name)
        if not await aiofiles.os.path.isfile(path):
            return None
        return path

    async def delete(self, file_name: str) -> str:
        """
        Raises:
            FileNotFoundError: no such sound
        """
        path = self.path_for(file_name)
        await aiofiles.os.remove(path)
        name = os.path.basename(path)
        logger.info(f"Deleted custom sound {name}")
        return name
