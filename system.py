"""
CHIP-8 System Emulator
=======================
Wires together:
  - the Chip8 interpreter core (chip8.py)
  - the timer pair, keypad and framebuffer (devices.py)
  - a 60 Hz frame scheduler tied to wall-clock time

One frame = vblank, a burst of ``cycles_per_frame`` instructions, one
timer tick.  When the host falls behind, every owed timer tick still
happens but surplus instruction bursts past MAX_CATCHUP are dropped, so
the timers keep exact 60 Hz time.

The run loop is cancelled through a threading.Event (window close,
Escape, Ctrl-C); waits inside the interpreter are states, never blocking
calls, so cancellation lands within one frame.
"""

from __future__ import annotations
import logging
import math
import os
import queue
import threading
import time
from typing import Callable, Optional

from chip8 import Chip8, HaltError, LoadError, RunState
from devices import Framebuffer, Keypad, TimerController, HIRES, LORES
from quirks import QuirkConfig

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
#  Timing constants
# ---------------------------------------------------------------------------

TIMER_HZ = 60
DEFAULT_CYCLES_PER_FRAME = 10   # ~600 instructions per second
MAX_CATCHUP = 4                 # instruction bursts replayed after a stall

ROM_EXTENSIONS = (".ch8", ".chip8", ".c8")


# ---------------------------------------------------------------------------
#  ROM files
# ---------------------------------------------------------------------------

def read_rom(path: str) -> bytes:
    """Read a program image from disk.

    Only .ch8 / .chip8 / .c8 files are accepted; anything else, an
    unreadable file, or an empty one raises LoadError.
    """
    ext = os.path.splitext(path)[1].lower()
    if ext not in ROM_EXTENSIONS:
        raise LoadError(f"Unsupported ROM type {ext or '(none)'!r}: {path} "
                        f"(expected one of {', '.join(ROM_EXTENSIONS)})")
    try:
        with open(path, "rb") as f:
            data = f.read()
    except OSError as e:
        raise LoadError(f"Cannot read {path}: {e}") from e
    if not data:
        raise LoadError(f"ROM file is empty: {path}")
    return data


# ---------------------------------------------------------------------------
#  Frame clock
# ---------------------------------------------------------------------------

class FrameClock:
    """Fixed-rate tick source.

    ``due()`` reports how many ticks have come due since it was last
    called; ``wait()`` sleeps until the next one, returning early (True)
    if the given event is set.  The clock function is injectable so tests
    can drive time by hand.
    """

    def __init__(self, hz: int = TIMER_HZ,
                 clock: Callable[[], float] = time.perf_counter):
        self.hz = hz
        self.clock = clock
        self._start: Optional[float] = None
        self._ticks = 0

    def start(self):
        self._start = self.clock()
        self._ticks = 0

    def _elapsed_ticks(self) -> int:
        # Small epsilon so exact multiples of the period count as due
        return math.floor((self.clock() - self._start) * self.hz + 1e-9)

    def due(self) -> int:
        if self._start is None:
            self.start()
        total = self._elapsed_ticks()
        owed = max(0, total - self._ticks)
        self._ticks = max(total, self._ticks)
        return owed

    def wait(self, event: threading.Event) -> bool:
        if self._start is None:
            self.start()
        next_at = self._start + (self._ticks + 1) / self.hz
        delay = next_at - self.clock()
        if delay > 0:
            return event.wait(delay)
        return event.is_set()


# ---------------------------------------------------------------------------
#  System
# ---------------------------------------------------------------------------

class Chip8System:
    """Interpreter plus devices plus scheduler."""

    def __init__(self, quirks: Optional[QuirkConfig] = None, hires: bool = False,
                 cycles_per_frame: int = DEFAULT_CYCLES_PER_FRAME,
                 rng=None, clock: Optional[Callable[[], float]] = None):
        if cycles_per_frame < 1:
            raise ValueError("cycles_per_frame must be at least 1")
        self.quirks = quirks or QuirkConfig()
        self.cycles_per_frame = cycles_per_frame
        self.keypad = Keypad()
        self.timers = TimerController()
        self.framebuffer = Framebuffer(*(HIRES if hires else LORES))
        self.cpu = Chip8(self.quirks, hires=hires, framebuffer=self.framebuffer,
                         keypad=self.keypad, timers=self.timers, rng=rng)
        self.frame_clock = FrameClock(clock=clock) if clock else FrameClock()
        self.frame_count: int = 0
        self.rom: bytes = b""
        self.rom_origin: Optional[int] = None
        self.rom_path: Optional[str] = None
        self._stop = threading.Event()
        self._pending_loads: queue.Queue[str] = queue.Queue()

    # -----------------------------------------------------------------
    #  Loading
    # -----------------------------------------------------------------

    def load_rom(self, data: bytes | bytearray, origin: Optional[int] = None):
        """Reset the machine and load a program image."""
        if not data:
            raise LoadError("Program is empty")
        self.cpu.load(data, origin)
        self.rom = bytes(data)
        self.rom_origin = self.cpu.pc
        self.frame_count = 0

    def load_rom_file(self, path: str):
        self.load_rom(read_rom(path))
        self.rom_path = path

    def reload(self):
        """Restart the current program from a clean machine."""
        if self.rom:
            self.cpu.load(self.rom, self.rom_origin)
        else:
            self.cpu.reset()
        self.frame_count = 0

    def request_load(self, path: str):
        """Queue a ROM swap; safe to call from the display thread.

        The swap happens between frames.  A file that fails to load is
        logged and the current program keeps running.
        """
        self._pending_loads.put(path)

    def _service_loads(self):
        while True:
            try:
                path = self._pending_loads.get_nowait()
            except queue.Empty:
                return
            try:
                self.load_rom_file(path)
            except LoadError as e:
                log.warning("Ignoring ROM %s: %s", path, e)
            else:
                log.info("Switched to ROM %s", path)

    # -----------------------------------------------------------------
    #  Execution
    # -----------------------------------------------------------------

    def run_frame(self) -> int:
        """Run one 60 Hz frame.  Returns the number of instructions stepped.

        Fatal interpreter errors propagate; the interpreter is left
        halted.
        """
        self._service_loads()
        if self.cpu.halted:
            raise HaltError("Interpreter is halted")
        self.cpu.vblank()
        stepped = 0
        for _ in range(self.cycles_per_frame):
            self.cpu.step()
            stepped += 1
            # Nothing can change before the next frame boundary
            if self.cpu.state is RunState.WAITING_FOR_VBLANK:
                break
        self.timers.tick(1)
        self.frame_count += 1
        return stepped

    def _skip_frame(self):
        """Owed frame beyond MAX_CATCHUP: keep timer time, drop the burst."""
        self.timers.tick(1)
        self.frame_count += 1

    def run(self, max_frames: Optional[int] = None, realtime: bool = True,
            on_frame: Optional[Callable[[Chip8System], None]] = None) -> int:
        """Run frames until stopped, halted, or *max_frames* have passed.

        With *realtime* off, frames run back to back (tests, headless
        runs).  Returns the number of frames processed.
        """
        self._stop.clear()
        self.frame_clock.start()
        frames = 0
        while not self._stop.is_set():
            if max_frames is not None and frames >= max_frames:
                break
            if realtime:
                owed = self.frame_clock.due()
                if owed == 0:
                    self.frame_clock.wait(self._stop)
                    continue
            else:
                owed = 1
            if max_frames is not None:
                owed = min(owed, max_frames - frames)
            if owed > MAX_CATCHUP:
                log.debug("Behind by %d frames; skipping %d bursts", owed, owed - MAX_CATCHUP)
            for k in range(owed):
                if k < MAX_CATCHUP:
                    self.run_frame()
                else:
                    self._skip_frame()
            frames += owed
            if on_frame is not None:
                on_frame(self)
        return frames

    def stop(self):
        self._stop.set()

    # -----------------------------------------------------------------
    #  State queries
    # -----------------------------------------------------------------

    @property
    def stop_event(self) -> threading.Event:
        return self._stop

    @property
    def halted(self) -> bool:
        return self.cpu.halted

    @property
    def sound_active(self) -> bool:
        return self.timers.sound_active

    # -----------------------------------------------------------------
    #  Convenience
    # -----------------------------------------------------------------

    def dump_state(self) -> str:
        """Full CPU + device state dump."""
        lines = ["=== Registers ===", self.cpu.dump_regs()]
        lines.append(f"  Cycles: {self.cpu.cycle_count}  Frames: {self.frame_count}  "
                     f"Unknown opcodes: {self.cpu.unknown_opcodes}")
        lines.append("")
        lines.append("=== Devices ===")
        keys = " ".join(f"{k:X}" for k in sorted(self.keypad.snapshot())) or "-"
        lines.append(f"  Keypad: {keys}")
        lines.append(f"  Framebuffer: {self.framebuffer.width}x{self.framebuffer.height} "
                     f"lit={self.framebuffer.lit_count()}")
        lines.append(f"  Sound: {'on' if self.sound_active else 'off'}")
        lines.append(f"  ROM: {self.rom_path or ('%d bytes' % len(self.rom) if self.rom else 'none')}")
        lines.append(f"  Quirks: {self.quirks.describe()}")
        return "\n".join(lines)
