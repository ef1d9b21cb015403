"""
CHIP-8 Peripheral / Device Layer
=================================
The pieces of machine state that live outside the CPU core:

  CountdownTimer / TimerController : delay + sound timers (60 Hz)
  Keypad                           : 16-key hex pad, written by the host
  Framebuffer                      : monochrome pixel grid (64x32 or 128x64)

Keypad and Framebuffer are shared with the host display thread, so each
guards its state with a lock.  The interpreter is the only writer of the
framebuffer; the host is the only writer of the keypad.
"""

from __future__ import annotations
import threading

import numpy as np

NUM_KEYS = 16

LORES = (64, 32)    # (width, height)
HIRES = (128, 64)


# ---------------------------------------------------------------------------
#  Device base class
# ---------------------------------------------------------------------------

class Device:
    """Abstract peripheral."""

    def __init__(self, name: str):
        self.name = name

    def reset(self):
        """Return the device to its power-on state."""
        pass

    def tick(self, n: int = 1):
        """Advance the device by N timer ticks.  Override for timers."""
        pass


# ---------------------------------------------------------------------------
#  Timers
# ---------------------------------------------------------------------------
# Both timers count down once per tick while nonzero and stop at 0.
# They know nothing about wall-clock time; the system scheduler decides
# when a tick happens.

class CountdownTimer(Device):
    """One 8-bit countdown register."""

    def __init__(self, name: str):
        super().__init__(name)
        self.value: int = 0

    def set(self, value: int):
        if not 0 <= value <= 0xFF:
            raise ValueError(f"{self.name} timer value {value} out of range 0..255")
        self.value = value

    def tick(self, n: int = 1):
        if n < 0:
            raise ValueError("tick count must be non-negative")
        self.value = max(0, self.value - n)

    def reset(self):
        self.value = 0

    @property
    def active(self) -> bool:
        return self.value > 0


class TimerController(Device):
    """Delay + sound timer pair."""

    def __init__(self):
        super().__init__("Timers")
        self.delay = CountdownTimer("delay")
        self.sound = CountdownTimer("sound")

    def tick(self, n: int = 1):
        self.delay.tick(n)
        self.sound.tick(n)

    def reset(self):
        self.delay.reset()
        self.sound.reset()

    @property
    def sound_active(self) -> bool:
        return self.sound.active


# ---------------------------------------------------------------------------
#  Keypad
# ---------------------------------------------------------------------------
# COSMAC VIP hex layout:
#     1 2 3 C
#     4 5 6 D
#     7 8 9 E
#     A 0 B F

class Keypad(Device):
    """16-key input state."""

    def __init__(self):
        super().__init__("Keypad")
        self._lock = threading.Lock()
        self._pressed: set[int] = set()

    @staticmethod
    def _check_key(key: int):
        if not 0 <= key < NUM_KEYS:
            raise ValueError(f"Key {key!r} out of range 0x0..0xF")

    def press(self, key: int):
        self._check_key(key)
        with self._lock:
            self._pressed.add(key)

    def release(self, key: int):
        self._check_key(key)
        with self._lock:
            self._pressed.discard(key)

    def is_pressed(self, key: int) -> bool:
        """True if *key* is held.  Values outside 0x0..0xF are never held."""
        with self._lock:
            return key in self._pressed

    def snapshot(self) -> frozenset[int]:
        with self._lock:
            return frozenset(self._pressed)

    def clear(self):
        with self._lock:
            self._pressed.clear()

    reset = clear


# ---------------------------------------------------------------------------
#  Framebuffer
# ---------------------------------------------------------------------------
# Pixels are stored as a (height, width) uint8 array of 0/1, indexed
# pixels[y, x].  Sprites are rows of 8 pixels, one byte per row, MSB
# leftmost, XORed onto the grid.

class Framebuffer(Device):
    """Monochrome pixel grid."""

    def __init__(self, width: int = LORES[0], height: int = LORES[1]):
        super().__init__("Framebuffer")
        self.width = width
        self.height = height
        self.pixels = np.zeros((height, width), dtype=np.uint8)
        self.dirty: bool = True
        self._lock = threading.Lock()

    def clear(self):
        with self._lock:
            self.pixels.fill(0)
            self.dirty = True

    reset = clear

    def draw_sprite(self, x: int, y: int, rows: bytes | bytearray,
                    clip: bool = True) -> bool:
        """XOR a sprite onto the grid.  Returns True on collision.

        The start position is always taken modulo the grid size.  Pixels
        that run past the right or bottom edge are dropped when *clip*
        is set and wrap to the opposite edge otherwise.  A collision is
        any pixel that goes from set to clear.
        """
        x %= self.width
        y %= self.height
        bits = np.unpackbits(np.frombuffer(bytes(rows), dtype=np.uint8))
        bits = bits.reshape(len(rows), 8)
        ys = y + np.arange(len(rows))
        xs = x + np.arange(8)
        if clip:
            bits = bits[:max(0, self.height - y), :self.width - x]
            ys = ys[:bits.shape[0]]
            xs = xs[:bits.shape[1]]
        else:
            ys %= self.height
            xs %= self.width
        with self._lock:
            idx = np.ix_(ys, xs)
            region = self.pixels[idx]
            collision = bool(np.any(region & bits))
            self.pixels[idx] = region ^ bits
            self.dirty = True
        return collision

    def pixel(self, x: int, y: int) -> int:
        return int(self.pixels[y, x])

    def snapshot(self) -> np.ndarray:
        """Consistent copy of the grid, safe to hand to another thread."""
        with self._lock:
            return self.pixels.copy()

    def take_dirty(self) -> bool:
        """Return and clear the dirty flag."""
        with self._lock:
            was, self.dirty = self.dirty, False
            return was

    def lit_count(self) -> int:
        with self._lock:
            return int(self.pixels.sum())

    def to_text(self, on: str = "#", off: str = ".") -> str:
        snap = self.snapshot()
        return "\n".join("".join(on if p else off for p in row) for row in snap)
