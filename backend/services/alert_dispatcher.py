"""
Alert Dispatcher

Turns countdown thresholds and user actions into sounds on the single audio
output:

    60%  -> new order sound (single shot)
    80%  -> near finish sound (single shot)
    100% -> near finish sound, looping until the order is finished

Single shots need sound enabled, their own per-type flag and no mute. The
overdue loop needs sound enabled and the near finish flag, but starts even
while muted. Muting pauses running loops; un-muting inside the mute window
resumes them, anything later (including the automatic expiry) cancels them.

When the player keeps failing, the dispatcher closes a "needs interaction"
gate and stays silent until enable_audio() is called from a user action.
"""

import asyncio
import enum
import logging
from typing import Awaitable, Callable, Iterable, Optional

from services.audio_player import AudioOutput
from services.countdown import Threshold
from services.errors import KDSError, PlaybackError
from services.mute_state import MuteState
from services.sound_settings import DisplaySettings

logger = logging.getLogger(__name__)

DEFAULT_NEW_ORDER_SOUND = "/sounds/new_order.mp3"
DEFAULT_NEAR_FINISH_SOUND = "/sounds/order_completed.mp3"

PLAY_ATTEMPTS = 3
PLAY_RETRY_DELAY_SECONDS = 0.5


class SoundKind(str, enum.Enum):
    NEW_ORDER = "new_order"
    NEAR_FINISH = "near_finish"


class LoopState(str, enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"


class AlertDispatcher:
    def __init__(
        self,
        output: AudioOutput,
        settings: DisplaySettings,
        mute: MuteState,
        api=None,
        sound_base_url: str = "",
        retry_delay: float = PLAY_RETRY_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
    ):
        self.output = output
        self.settings = settings
        self.mute = mute
        self.api = api
        self.sound_base_url = sound_base_url.rstrip("/")
        self.retry_delay = retry_delay
        self._sleep = sleep

        self._loops: dict[str, LoopState] = {}
        self._pending: set[asyncio.Task] = set()

        mute.add_listener(self._on_mute_change)

    # ========== State ==========

    @property
    def needs_interaction(self) -> bool:
        return self.settings.audio_needs_interaction

    @property
    def active_loops(self) -> list[str]:
        return [key for key, state in self._loops.items() if state == LoopState.ACTIVE]

    @property
    def paused_loops(self) -> list[str]:
        return [key for key, state in self._loops.items() if state == LoopState.PAUSED]

    def has_loop(self, order_key) -> bool:
        return str(order_key) in self._loops

    # ========== Sound sources ==========

    async def resolve_source(self, kind: SoundKind) -> str:
        """
        Custom sound when one is registered and the server confirms it
        exists, otherwise the built-in default. Lookup failures are not errors.
        """
        sound = self.settings.sound
        if kind == SoundKind.NEW_ORDER:
            has_custom = sound.has_custom_new_order_sound
            file_name = sound.custom_new_order_file_name
            default = DEFAULT_NEW_ORDER_SOUND
        else:
            has_custom = sound.has_custom_near_finished_sound
            file_name = sound.custom_near_finished_file_name
            default = DEFAULT_NEAR_FINISH_SOUND

        if has_custom and file_name and self.api is not None:
            try:
                if await self.api.check_audio(file_name):
                    return self.api.play_audio_url(file_name)
                logger.debug(f"Custom sound {file_name} is not on the server, using default")
            except KDSError as e:
                logger.debug(f"Custom sound lookup for {file_name} failed, using default: {e}")

        return f"{self.sound_base_url}{default}"

    # ========== Playback ==========

    async def _play(self, source: str, loop: bool = False) -> bool:
        if self.needs_interaction:
            logger.debug(f"Audio locked until user interaction, skipping {source}")
            return False

        if self.output.current_source == source and self.output.is_playing():
            logger.debug(f"Sound already playing, skipping {source}")
            return True

        volume = self.settings.sound.volume
        for attempt in range(1, PLAY_ATTEMPTS + 1):
            try:
                await self.output.play(source, volume=volume, loop=loop)
                logger.debug(f"Playing {source}{' (loop)' if loop else ''}")
                return True
            except PlaybackError as e:
                logger.warning(f"Play attempt {attempt} for {source} failed: {e}")
                if attempt < PLAY_ATTEMPTS:
                    await self._sleep(self.retry_delay)

        logger.error(f"Playback failed {PLAY_ATTEMPTS} times, audio needs user interaction")
        self.settings.audio_needs_interaction = True
        return False

    async def play_sound(self, kind: SoundKind) -> bool:
        return await self._play(await self.resolve_source(kind))

    async def _sound_loop(self) -> bool:
        return await self._play(await self.resolve_source(SoundKind.NEAR_FINISH), loop=True)

    # ========== Triggers ==========

    async def trigger(self, order_key, threshold: Threshold):
        key = str(order_key)
        sound = self.settings.sound

        if threshold == Threshold.OVERDUE:
            if not (sound.enabled and sound.near_finished_sound):
                logger.debug(f"Overdue sound disabled, order {key} stays silent")
                return
            self._loops[key] = LoopState.ACTIVE
            logger.info(f"Order {key} overdue, starting alert loop")
            await self._sound_loop()
            return

        if not sound.enabled or self.mute.muted:
            logger.debug(f"Sound for order {key} at {threshold.value}% blocked (muted or disabled)")
            return

        if threshold == Threshold.APPROACHING and sound.new_order_sound:
            await self.play_sound(SoundKind.NEW_ORDER)
        elif threshold == Threshold.NEAR_FINISH and sound.near_finished_sound:
            await self.play_sound(SoundKind.NEAR_FINISH)

    async def announce_new_orders(self, order_keys: Iterable) -> bool:
        """One new-order sound for a whole batch of arrivals."""
        keys = [str(k) for k in order_keys]
        sound = self.settings.sound
        if not keys:
            return False
        if not (sound.enabled and sound.new_order_sound) or self.mute.muted or self.needs_interaction:
            logger.debug(f"New order announcement suppressed for {keys}")
            return False
        logger.info(f"New orders arrived: {', '.join(keys)}")
        return await self.play_sound(SoundKind.NEW_ORDER)

    async def stop_loop(self, order_key) -> bool:
        """Stop and forget the order's overdue loop, muted or not."""
        key = str(order_key)
        state = self._loops.pop(key, None)
        if state is None:
            return False
        if state == LoopState.ACTIVE and not self.active_loops:
            await self.output.stop()
        logger.info(f"Stopped alert loop for order {key}")
        return True

    async def teardown(self, order_key):
        await self.stop_loop(order_key)

    async def finish(self, order_key):
        """The order was finished by staff: silence it, then play the completion chime."""
        await self.stop_loop(order_key)
        sound = self.settings.sound
        if sound.enabled and sound.near_finished_sound and not self.mute.muted:
            await self.play_sound(SoundKind.NEAR_FINISH)

    async def maintain(self):
        """Restart the overdue loop if a single shot or a player crash ended it."""
        if self.active_loops and not self.needs_interaction and not self.output.is_playing():
            await self._sound_loop()

    async def enable_audio(self) -> bool:
        """User interaction unlocks audio; pending overdue loops start again."""
        self.settings.audio_needs_interaction = False
        logger.info("Audio enabled by user interaction")
        if self.active_loops:
            return await self._sound_loop()
        return True

    # ========== Mute ==========

    def _on_mute_change(self, muted: bool, within_window: bool):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("Mute changed outside the event loop, loops not updated")
            return
        task = loop.create_task(self.handle_mute_change(muted, within_window))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def handle_mute_change(self, muted: bool, within_window: bool):
        if muted:
            active = self.active_loops
            for key in active:
                self._loops[key] = LoopState.PAUSED
            if active:
                await self.output.stop()
                logger.info(f"Muted, paused alert loops for orders {active}")
            return

        paused = self.paused_loops
        if not paused:
            return
        if within_window and self.settings.sound.near_finished_sound:
            for key in paused:
                self._loops[key] = LoopState.ACTIVE
            logger.info(f"Unmuted within window, resuming alert loops for orders {paused}")
            await self._sound_loop()
        else:
            for key in paused:
                self._loops.pop(key, None)
            logger.info(f"Unmuted after the window, cancelled alert loops for orders {paused}")

    async def settle(self):
        """Wait for mute changes that are still being applied."""
        if self._pending:
            await asyncio.gather(*list(self._pending))
