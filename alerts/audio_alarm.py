"""
alerts/audio_alarm.py — In-cab audible alarm driven by the escalation ladder.

Local and independent of the dispatcher: the driver hears the alarm even if
the alert never reaches storage or supervisors.

Level IDLE:     silent
Level WARNING:  soft beep every ALERT_REPEAT_INTERVAL_L1 seconds
Level CRITICAL: loud alarm every ALERT_REPEAT_INTERVAL_L2 seconds
"""

import os
import threading
from typing import Dict, Optional

import numpy as np
import pygame
import pygame.sndarray

import config
from core.logger import get_logger

log = get_logger(__name__)

_LEVEL_NUMBER = {"IDLE": 0, "WARNING": 1, "CRITICAL": 2}


class InCabAlarm:
    """
    Plays the sound for the current escalation level.

    Usage:
        alarm = InCabAlarm()
        alarm.start()                  # initialises pygame mixer
        alarm.update("WARNING")        # once per frame with result.escalation_level
        alarm.stop()

    Without start() (or if the mixer cannot open an audio device) the level
    is still tracked but nothing is played.
    """

    def __init__(self):
        self._level: int = 0
        self._audio_thread: Optional[threading.Thread] = None
        self._stop_audio: threading.Event = threading.Event()
        self._mixer_ready: bool = False
        self._sounds: Dict[int, Optional[pygame.mixer.Sound]] = {1: None, 2: None}

    # ──────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────────────────────────────────

    def start(self) -> None:
        """Initialise pygame mixer and pre-load / generate alarm sounds."""
        try:
            pygame.mixer.pre_init(frequency=44100, size=-16, channels=1, buffer=512)
            pygame.mixer.init()
        except pygame.error as exc:
            log.warning(f"pygame mixer unavailable ({exc}); in-cab alarm muted.")
            self._mixer_ready = False
            return

        self._mixer_ready = True
        self._sounds[1] = self._load_or_generate_sound(
            config.ALERT_SOUND_L1, config.ALERT_L1_FREQ, config.ALERT_L1_DURATION,
        )
        self._sounds[2] = self._load_or_generate_sound(
            config.ALERT_SOUND_L2, config.ALERT_L2_FREQ, config.ALERT_L2_DURATION,
        )
        log.info("In-cab alarm ready.")

    def stop(self) -> None:
        """Stop any playing audio and tear down pygame mixer."""
        self._silence()
        if self._mixer_ready:
            pygame.mixer.stop()
            pygame.mixer.quit()
            self._mixer_ready = False

    # ──────────────────────────────────────────────────────────────────────────
    # Level tracking
    # ──────────────────────────────────────────────────────────────────────────

    def update(self, escalation_level: str) -> int:
        """
        Follow the escalation ladder. Call once per processed frame.

        Returns:
            Current alarm level (0 / 1 / 2).
        """
        new_level = _LEVEL_NUMBER[escalation_level]
        if new_level == self._level:
            return self._level

        self._level = new_level
        if new_level == 0:
            self._silence()
        else:
            self._trigger_audio(new_level)
        return self._level

    # ──────────────────────────────────────────────────────────────────────────
    # Audio helpers
    # ──────────────────────────────────────────────────────────────────────────

    def _silence(self) -> None:
        self._stop_audio.set()
        if self._audio_thread and self._audio_thread.is_alive():
            self._audio_thread.join(timeout=0.5)

    def _trigger_audio(self, level: int) -> None:
        """Start an audio thread for the given alarm level."""
        if not self._mixer_ready:
            return
        self._silence()
        self._stop_audio.clear()

        interval = (
            config.ALERT_REPEAT_INTERVAL_L1 if level == 1
            else config.ALERT_REPEAT_INTERVAL_L2
        )
        sound = self._sounds.get(level)
        if sound is None:
            return

        def _play_loop():
            while not self._stop_audio.is_set():
                sound.play()
                self._stop_audio.wait(timeout=interval)

        self._audio_thread = threading.Thread(
            target=_play_loop, daemon=True, name=f"in-cab-alarm-L{level}"
        )
        self._audio_thread.start()

    @staticmethod
    def generate_tone(
        freq: float = 880.0,
        duration: float = 0.4,
        sample_rate: int = 44100,
        volume: float = 0.6,
    ) -> np.ndarray:
        """
        Generate a sine-wave beep as int16 mono samples with 20 ms fades.
        """
        t = np.linspace(0, duration, int(sample_rate * duration), endpoint=False)
        wave = np.sin(2 * np.pi * freq * t)

        fade_samples = min(int(sample_rate * 0.02), len(wave) // 2)
        if fade_samples > 0:
            wave[:fade_samples] *= np.linspace(0, 1, fade_samples)
            wave[-fade_samples:] *= np.linspace(1, 0, fade_samples)

        return (wave * volume * 32767).astype(np.int16)

    def _load_or_generate_sound(self, path: str, freq: float, duration: float):
        """Load a .wav file from disk, or synthesize a tone if not found."""
        if os.path.exists(path):
            try:
                return pygame.mixer.Sound(path)
            except pygame.error as exc:
                log.warning(f"Could not load {path}: {exc}. Generating tone.")

        return pygame.sndarray.make_sound(self.generate_tone(freq=freq, duration=duration))

    # ──────────────────────────────────────────────────────────────────────────
    # Properties
    # ──────────────────────────────────────────────────────────────────────────

    @property
    def level(self) -> int:
        """Current alarm level (0 / 1 / 2)."""
        return self._level

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *_):
        self.stop()
