"""
Custom alert sounds: upload, existence probe, playback and removal.

Displays probe check-audio before playing a custom sound and fall back to the
built-in default when it is missing. Playback goes through FileResponse, so
Range requests get partial content.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, UploadFile, File, Form, Query
from fastapi.responses import FileResponse
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from auth.jwt import CurrentUser, get_current_user
from services.activity_log import log_activity
from services.sound_storage import MAX_SOUND_BYTES, InvalidSoundError, SoundStorage

logger = logging.getLogger(__name__)
router = APIRouter()

_storage: Optional[SoundStorage] = None


def get_sound_storage() -> SoundStorage:
    global _storage
    if _storage is None:
        _storage = SoundStorage()
    return _storage


@router.post("/save-audio")
async def save_audio(
    file: UploadFile = File(...),
    fileName: str = Form(...),
    current_user: CurrentUser = Depends(get_current_user),
    storage: SoundStorage = Depends(get_sound_storage),
    db: AsyncSession = Depends(get_db),
):
    """Store an mp3 as one of the fixed custom sound names (max 5MB)."""
    # Read one byte past the limit so oversize uploads are caught without buffering them whole
    content = await file.read(MAX_SOUND_BYTES + 1)
    try:
        name = await storage.save(content, fileName, content_type=file.content_type)
    except InvalidSoundError as e:
        raise HTTPException(status_code=400, detail=str(e))

    await log_activity(
        db, current_user.id, current_user.name, "UPLOAD_SOUND",
        details={"file_name": name, "size": len(content)}, component="audio",
    )
    return {"message": "File uploaded successfully", "fileName": name}


@router.get("/check-audio")
async def check_audio(
    fileName: str = Query(...),
    storage: SoundStorage = Depends(get_sound_storage),
):
    return {"exists": await storage.exists(fileName)}


@router.get("/play-audio")
async def play_audio(
    fileName: str = Query(...),
    storage: SoundStorage = Depends(get_sound_storage),
):
    try:
        path = await storage.resolve(fileName)
    except InvalidSoundError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not path:
        raise HTTPException(status_code=404, detail="File not found")
    return FileResponse(path=path, media_type="audio/mpeg")


@router.delete("")
async def delete_audio(
    fileName: str = Query(...),
    current_user: CurrentUser = Depends(get_current_user),
    storage: SoundStorage = Depends(get_sound_storage),
    db: AsyncSession = Depends(get_db),
):
    try:
        name = await storage.delete(fileName)
    except InvalidSoundError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail="File not found")

    await log_activity(
        db, current_user.id, current_user.name, "DELETE_SOUND",
        details={"file_name": name}, component="audio",
    )
    return {"message": "File deleted successfully", "fileName": name}
