"""
CHIP-8 Framebuffer Display
===========================
Renders the interpreter's framebuffer in a pygame window and feeds the
host keyboard into the hex keypad.  Runs in a background thread so it
doesn't block the system run loop or the debug monitor.

Keyboard layout (COSMAC VIP pad on the left of a QWERTY board):

    1 2 3 4        1 2 3 C
    Q W E R   ->   4 5 6 D
    A S D F        7 8 9 E
    Z X C V        A 0 B F

Escape or closing the window stops the system.  Dropping a .ch8 file on
the window, or pressing L and picking one in the file dialog, queues it
as the next program.

Usage (programmatic):
    from display import FramebufferDisplay
    disp = FramebufferDisplay(system)
    disp.start()       # launches background thread
    system.run()       # run emulator normally
    disp.stop()        # clean shutdown
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Callable, Optional

import numpy as np

if TYPE_CHECKING:
    from system import Chip8System

log = logging.getLogger(__name__)

# pygame key name -> CHIP-8 key
KEY_MAP = {
    "1": 0x1, "2": 0x2, "3": 0x3, "4": 0xC,
    "q": 0x4, "w": 0x5, "e": 0x6, "r": 0xD,
    "a": 0x7, "s": 0x8, "d": 0x9, "f": 0xE,
    "z": 0xA, "x": 0x0, "c": 0xB, "v": 0xF,
}

OPEN_ROM_KEY = "l"   # not on the keypad

COLOR_OFF = (16, 16, 24)
COLOR_ON  = (224, 240, 255)


def render_rgb(pixels: np.ndarray, scale: int = 1,
               on=COLOR_ON, off=COLOR_OFF) -> np.ndarray:
    """Framebuffer (h, w) of 0/1 -> surfarray-ready (w*scale, h*scale, 3) RGB."""
    lut = np.array([off, on], dtype=np.uint8)
    rgb = lut[pixels.T]
    if scale > 1:
        rgb = np.repeat(np.repeat(rgb, scale, axis=0), scale, axis=1)
    return rgb


class FramebufferDisplay:
    """Background-threaded pygame display for the CHIP-8 framebuffer."""

    def __init__(self, system: "Chip8System", scale: int = 10,
                 title: str = "CHIP-8",
                 pick_rom: Optional[Callable[[], Optional[str]]] = None):
        self.sys = system
        self.pick_rom = pick_rom
        self.scale = max(1, scale)
        self.title = title
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._started = threading.Event()
        self.fps = 60
        self.error: Exception | None = None

    # -- public API -------------------------------------------------------

    def start(self):
        """Start the display thread.  Returns once the window is open."""
        self._stop_event.clear()
        self._started.clear()
        self._thread = threading.Thread(target=self._run, daemon=True,
                                        name="chip8-display")
        self._thread.start()
        self._started.wait(timeout=5.0)

    def stop(self):
        """Signal the display thread to shut down and wait for it."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=3.0)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -- internals --------------------------------------------------------

    def _open_rom(self):
        """Ask the picker for a ROM and queue it.  No-op without a picker."""
        if self.pick_rom is None:
            return
        path = self.pick_rom()
        if path:
            self.sys.request_load(path)

    def _handle_key(self, name: str, down: bool):
        key = KEY_MAP.get(name)
        if key is None:
            return
        if down:
            self.sys.keypad.press(key)
        else:
            self.sys.keypad.release(key)

    def _run(self):
        """Main display loop (runs in background thread)."""
        import pygame

        fb = self.sys.framebuffer
        try:
            pygame.display.init()
            pygame.display.set_caption(self.title)
            size = (fb.width * self.scale, fb.height * self.scale)
            screen = pygame.display.set_mode(size)
        except pygame.error as e:
            self.error = e
            log.error("Cannot open display: %s", e)
            self._started.set()
            return
        clock = pygame.time.Clock()
        self._started.set()

        try:
            while not self._stop_event.is_set() and not self.sys.stop_event.is_set():
                for event in pygame.event.get():
                    if event.type == pygame.QUIT:
                        self.sys.stop()
                    elif event.type == pygame.KEYDOWN:
                        if event.key == pygame.K_ESCAPE:
                            self.sys.stop()
                        elif pygame.key.name(event.key) == OPEN_ROM_KEY:
                            self._open_rom()
                        else:
                            self._handle_key(pygame.key.name(event.key), True)
                    elif event.type == pygame.KEYUP:
                        self._handle_key(pygame.key.name(event.key), False)
                    elif event.type == pygame.DROPFILE:
                        self.sys.request_load(event.file)

                if fb.take_dirty():
                    rgb = render_rgb(fb.snapshot(), self.scale)
                    pygame.surfarray.blit_array(screen, rgb)
                    pygame.display.flip()
                clock.tick(self.fps)
        except pygame.error as e:
            self.error = e
            log.error("Display error: %s", e)
            self.sys.stop()
        finally:
            pygame.display.quit()


class HeadlessDisplay:
    """No-op display for tests and headless runs; records framebuffer snapshots."""

    def __init__(self, system: "Chip8System"):
        self.sys = system
        self.snapshots: list[np.ndarray] = []

    def start(self):
        pass

    def stop(self):
        pass

    def snapshot(self) -> np.ndarray:
        """Capture the current framebuffer."""
        frame = self.sys.framebuffer.snapshot()
        self.snapshots.append(frame)
        return frame

    def __call__(self, system: "Chip8System"):
        # Usable directly as a Chip8System.run on_frame hook
        self.snapshot()

    @property
    def running(self) -> bool:
        return False
