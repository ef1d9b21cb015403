"""
CHIP-8 Tone Output
===================
The only sound a CHIP-8 program can make is a fixed tone that plays
while the sound timer is nonzero.  The tone is a square wave generated
with numpy and looped through pygame.mixer.

If no audio device is available the beeper degrades to silence.
"""

from __future__ import annotations
import logging

import numpy as np

log = logging.getLogger(__name__)

TONE_HZ = 440
VOLUME = 0.25
SAMPLE_RATE = 44100


def square_wave(freq: int = TONE_HZ, sample_rate: int = SAMPLE_RATE,
                volume: float = VOLUME) -> np.ndarray:
    """One second of a square wave as int16 samples.

    A whole second holds a whole number of periods for any integer
    frequency, so the buffer loops without a click.
    """
    amp = int(32767 * max(0.0, min(1.0, volume)))
    t = np.arange(sample_rate)
    high = (t * freq * 2 // sample_rate) % 2 == 0
    return np.where(high, amp, -amp).astype(np.int16)


class Beeper:
    """Looping tone switched on and off by the sound timer."""

    def __init__(self, freq: int = TONE_HZ, volume: float = VOLUME,
                 sample_rate: int = SAMPLE_RATE):
        self.freq = freq
        self.volume = volume
        self.sample_rate = sample_rate
        self.available = False
        self.playing = False
        self._sound = None

    def open(self) -> bool:
        """Initialise the mixer.  Returns False (silent mode) on failure."""
        import pygame

        try:
            pygame.mixer.init(frequency=self.sample_rate, size=-16, channels=1)
            rate, _size, channels = pygame.mixer.get_init()
            wave = square_wave(self.freq, rate, self.volume)
            if channels > 1:
                wave = np.repeat(wave[:, np.newaxis], channels, axis=1)
            self._sound = pygame.sndarray.make_sound(wave)
        except pygame.error as e:
            log.warning("Audio unavailable, running silent: %s", e)
            return False
        self.available = True
        return True

    def update(self, active: bool):
        if not self.available:
            return
        if active and not self.playing:
            self._sound.play(loops=-1)
            self.playing = True
        elif not active and self.playing:
            self._sound.stop()
            self.playing = False

    def close(self):
        if not self.available:
            return
        import pygame

        self.update(False)
        pygame.mixer.quit()
        self.available = False
