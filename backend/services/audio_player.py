"""
Audio output for the display client.

There is one output per process. Starting a sound stops whatever was playing.
The default implementation runs an external command-line player (ffplay)
and can loop a sound by restarting the player each time it finishes.
"""

import asyncio
import logging
import os
import shlex
from typing import Optional, Protocol

from services.errors import PlaybackError

logger = logging.getLogger(__name__)

PLAYER_COMMAND = os.getenv(
    "KDS_PLAYER_COMMAND",
    "ffplay -nodisp -autoexit -loglevel quiet -volume {volume} {source}",
)

# A player that dies this quickly refused the file or the device
STARTUP_CHECK_SECONDS = 0.2


class AudioOutput(Protocol):
    current_source: Optional[str]

    def is_playing(self) -> bool: ...

    async def play(self, source: str, volume: float = 1.0, loop: bool = False) -> None: ...

    async def stop(self) -> None: ...


class SubprocessAudioOutput:
    def __init__(self, command: str = PLAYER_COMMAND):
        self.command = command
        self.current_source: Optional[str] = None
        self._process: Optional[asyncio.subprocess.Process] = None
        self._loop_task: Optional[asyncio.Task] = None

    def is_playing(self) -> bool:
        if self._loop_task is not None and not self._loop_task.done():
            return True
        return self._process is not None and self._process.returncode is None

    def _argv(self, source: str, volume: float) -> list[str]:
        level = int(round(min(1.0, max(0.0, volume)) * 100))
        return [
            part.format(source=source, volume=level)
            for part in shlex.split(self.command)
        ]

    async def _spawn(self, source: str, volume: float) -> asyncio.subprocess.Process:
        argv = self._argv(source, volume)
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            raise PlaybackError(f"Could not start audio player '{argv[0]}': {e}") from e

        try:
            await asyncio.wait_for(process.wait(), timeout=STARTUP_CHECK_SECONDS)
        except asyncio.TimeoutError:
            return process
        if process.returncode != 0:
            raise PlaybackError(f"Audio player exited with code {process.returncode} for {source}")
        return process

    async def play(self, source: str, volume: float = 1.0, loop: bool = False) -> None:
        """
        Raises:
            PlaybackError: the player could not be started or rejected the sound
        """
        await self.stop()
        self._process = await self._spawn(source, volume)
        self.current_source = source
        if loop:
            self._loop_task = asyncio.create_task(self._keep_looping(source, volume))

    async def _keep_looping(self, source: str, volume: float):
        try:
            while True:
                if self._process is not None:
                    await self._process.wait()
                self._process = await self._spawn(source, volume)
        except PlaybackError as e:
            logger.error(f"Looping playback stopped: {e}")
            self.current_source = None

    async def stop(self) -> None:
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        process = self._process
        self._process = None
        self.current_source = None
        if process is not None and process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                return
            try:
                await asyncio.wait_for(process.wait(), timeout=2)
            except asyncio.TimeoutError:
                process.kill()
