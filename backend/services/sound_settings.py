"""
Display preferences kept in the client store: sound settings and the
categories this screen shows.
"""

import json
import logging
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

from services.timer_store import KeyValueStore

logger = logging.getLogger(__name__)

SOUND_SETTINGS_KEY = "kds_sound_settings"
SELECTED_CATEGORIES_KEY = "kds_selected_categories"
AUDIO_NEEDS_INTERACTION_KEY = "kds_audio_needs_interaction"


class SoundSettings(BaseModel):
    enabled: bool = True
    new_order_sound: bool = True
    near_finished_sound: bool = True
    volume: float = Field(default=1.0, ge=0.0, le=1.0)
    has_custom_new_order_sound: bool = False
    has_custom_near_finished_sound: bool = False
    custom_new_order_file_name: Optional[str] = None
    custom_near_finished_file_name: Optional[str] = None


class DisplaySettings:
    """Load once at start-up; every change is written straight back."""

    def __init__(self, store: KeyValueStore):
        self.store = store
        self.sound = self._load_sound()

    def _load_sound(self) -> SoundSettings:
        raw = self.store.get(SOUND_SETTINGS_KEY)
        if not raw:
            return SoundSettings()
        try:
            return SoundSettings.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Stored sound settings are invalid, using defaults: {e}")
            return SoundSettings()

    def update_sound(self, **changes) -> SoundSettings:
        data = self.sound.model_dump()
        data.update(changes)
        self.sound = SoundSettings.model_validate(data)
        self.store.set(SOUND_SETTINGS_KEY, self.sound.model_dump_json())
        logger.info(f"Sound settings updated: {', '.join(sorted(changes))}")
        return self.sound

    @property
    def selected_categories(self) -> list[int]:
        raw = self.store.get(SELECTED_CATEGORIES_KEY)
        if not raw:
            return []
        try:
            values = json.loads(raw)
            return [int(v) for v in values]
        except (ValueError, TypeError):
            logger.warning(f"Stored category selection is invalid: {raw!r}")
            return []

    def select_categories(self, codes: list[int]):
        codes = sorted({int(c) for c in codes})
        self.store.set(SELECTED_CATEGORIES_KEY, json.dumps(codes))
        logger.info(f"Selected categories: {codes}")

    @property
    def audio_needs_interaction(self) -> bool:
        return self.store.get(AUDIO_NEEDS_INTERACTION_KEY) == "1"

    @audio_needs_interaction.setter
    def audio_needs_interaction(self, value: bool):
        if value:
            self.store.set(AUDIO_NEEDS_INTERACTION_KEY, "1")
        else:
            self.store.delete(AUDIO_NEEDS_INTERACTION_KEY)
