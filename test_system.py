#!/usr/bin/env python3
"""
Integration tests for the CHIP-8 system emulator.

Tests the full stack: interpreter + timers + keypad + framebuffer + the
60 Hz frame scheduler and ROM loading.

    python -m pytest test_system.py
    python -m pytest test_system.py -k TestScheduler
"""
import itertools
import os
import tempfile
import threading
import unittest

import numpy as np

from chip8 import HaltError, LoadError, RunState, StackFault
from devices import CountdownTimer, Framebuffer, Keypad, TimerController
from quirks import QuirkConfig
from system import MAX_CATCHUP, Chip8System, FrameClock, read_rom


# ---------------------------------------------------------------------------
#  Helpers
# ---------------------------------------------------------------------------

def program(*words: int) -> bytes:
    return b"".join(w.to_bytes(2, "big") for w in words)


def make_system(*words: int, cycles_per_frame: int = 10, **quirk_changes) -> Chip8System:
    """System with *words* loaded at 0x200."""
    quirks = QuirkConfig().with_overrides(**quirk_changes)
    sys = Chip8System(quirks, cycles_per_frame=cycles_per_frame)
    if words:
        sys.load_rom(program(*words))
    return sys


def run_frames(sys: Chip8System, n: int):
    for _ in range(n):
        sys.run_frame()


class FakeClock:
    """Manually advanced time source for FrameClock."""

    def __init__(self, t: float = 0.0):
        self.t = t

    def __call__(self) -> float:
        return self.t


# ---------------------------------------------------------------------------
#  Devices
# ---------------------------------------------------------------------------

class TestTimers(unittest.TestCase):
    def test_countdown_saturates(self):
        for start in (0, 1, 5, 255):
            for ticks in (0, 1, 4, 300):
                t = CountdownTimer("delay")
                t.set(start)
                t.tick(ticks)
                self.assertEqual(t.value, max(0, start - ticks), (start, ticks))

    def test_set_range(self):
        t = CountdownTimer("sound")
        with self.assertRaises(ValueError):
            t.set(256)
        with self.assertRaises(ValueError):
            t.set(-1)

    def test_controller_ticks_both(self):
        tc = TimerController()
        tc.delay.set(3)
        tc.sound.set(1)
        self.assertTrue(tc.sound_active)
        tc.tick()
        self.assertEqual((tc.delay.value, tc.sound.value), (2, 0))
        self.assertFalse(tc.sound_active)
        tc.reset()
        self.assertEqual(tc.delay.value, 0)


class TestKeypad(unittest.TestCase):
    def test_press_release(self):
        kp = Keypad()
        kp.press(0xA)
        kp.press(3)
        self.assertTrue(kp.is_pressed(0xA))
        self.assertEqual(kp.snapshot(), frozenset({3, 0xA}))
        kp.release(0xA)
        self.assertFalse(kp.is_pressed(0xA))
        kp.clear()
        self.assertEqual(kp.snapshot(), frozenset())

    def test_out_of_range(self):
        kp = Keypad()
        with self.assertRaises(ValueError):
            kp.press(16)
        with self.assertRaises(ValueError):
            kp.release(-1)
        self.assertFalse(kp.is_pressed(0x20))


class TestFramebuffer(unittest.TestCase):
    def test_text_render(self):
        fb = Framebuffer()
        fb.draw_sprite(0, 0, b"\x80")
        lines = fb.to_text().split("\n")
        self.assertEqual(len(lines), 32)
        self.assertTrue(all(len(line) == 64 for line in lines))
        self.assertEqual(lines[0][:2], "#.")

    def test_snapshot_is_a_copy(self):
        fb = Framebuffer()
        snap = fb.snapshot()
        fb.draw_sprite(0, 0, b"\xFF")
        self.assertEqual(int(snap.sum()), 0)
        self.assertEqual(fb.lit_count(), 8)

    def test_dirty_flag(self):
        fb = Framebuffer()
        self.assertTrue(fb.take_dirty())
        self.assertFalse(fb.take_dirty())
        fb.draw_sprite(1, 1, b"\x01")
        self.assertTrue(fb.take_dirty())


# ---------------------------------------------------------------------------
#  Frame clock
# ---------------------------------------------------------------------------

class TestFrameClock(unittest.TestCase):
    def test_due_counts_elapsed_ticks(self):
        clock = FakeClock()
        fc = FrameClock(clock=clock)
        fc.start()
        self.assertEqual(fc.due(), 0)
        clock.t = 1 / 60
        self.assertEqual(fc.due(), 1)
        self.assertEqual(fc.due(), 0)
        clock.t = 0.5
        self.assertEqual(fc.due(), 29)

    def test_wait_returns_early_when_stopped(self):
        fc = FrameClock(clock=FakeClock())
        fc.start()
        ev = threading.Event()
        ev.set()
        self.assertTrue(fc.wait(ev))

    def test_wait_when_overdue(self):
        clock = FakeClock()
        fc = FrameClock(clock=clock)
        fc.start()
        clock.t = 10.0
        self.assertFalse(fc.wait(threading.Event()))


# ---------------------------------------------------------------------------
#  Frames
# ---------------------------------------------------------------------------

class TestRunFrame(unittest.TestCase):
    def test_burst_length(self):
        sys = make_system(0x1200, cycles_per_frame=7)
        self.assertEqual(sys.run_frame(), 7)
        self.assertEqual(sys.cpu.cycle_count, 7)
        self.assertEqual(sys.frame_count, 1)

    def test_one_timer_tick_per_frame(self):
        sys = make_system(0x6030, 0xF015, 0x1204)
        sys.run_frame()
        self.assertEqual(sys.timers.delay.value, 0x2F)
        run_frames(sys, 4)
        self.assertEqual(sys.timers.delay.value, 0x2B)

    def test_display_wait_limits_draws(self):
        sys = make_system(0xA000, 0xD015, 0x1202, cycles_per_frame=20)
        self.assertEqual(sys.run_frame(), 4)
        self.assertIs(sys.cpu.state, RunState.WAITING_FOR_VBLANK)
        self.assertGreater(sys.framebuffer.lit_count(), 0)
        self.assertEqual(sys.run_frame(), 3)
        self.assertEqual(sys.framebuffer.lit_count(), 0)

    def test_without_display_wait_the_burst_runs_out(self):
        sys = make_system(0xA000, 0xD015, 0x1202, cycles_per_frame=20,
                          display_wait=False)
        self.assertEqual(sys.run_frame(), 20)

    def test_glyph_drawn_at_offset(self):
        code = program(0x00E0, 0x6005, 0xA2F0, 0xD015, 0x1208)
        glyph = bytes([0xF0, 0x90, 0x90, 0x90, 0xF0])
        rom = code + bytes(0xF0 - len(code)) + glyph
        sys = Chip8System()
        sys.load_rom(rom)
        sys.run_frame()

        expected = np.zeros((32, 64), dtype=np.uint8)
        expected[0:5, 5:13] = np.unpackbits(np.frombuffer(glyph, dtype=np.uint8)).reshape(5, 8)
        np.testing.assert_array_equal(sys.framebuffer.snapshot(), expected)
        self.assertEqual(sys.cpu.v[0xF], 0)

    def test_sound_follows_timer(self):
        sys = make_system(0x6002, 0xF018, 0x1204)
        sys.run_frame()
        self.assertTrue(sys.sound_active)
        sys.run_frame()
        self.assertFalse(sys.sound_active)

    def test_key_wait_spans_frames(self):
        sys = make_system(0xF20A, 0x1202)
        run_frames(sys, 3)
        self.assertIs(sys.cpu.state, RunState.WAITING_FOR_KEY)
        sys.keypad.press(0xB)
        sys.run_frame()
        self.assertEqual(sys.cpu.v[2], 0xB)
        self.assertIs(sys.cpu.state, RunState.RUNNING)

    def test_fatal_error_halts(self):
        sys = make_system(0x00EE)
        with self.assertRaises(StackFault):
            sys.run_frame()
        self.assertTrue(sys.halted)
        with self.assertRaises(HaltError):
            sys.run_frame()

    def test_hires_framebuffer_shared(self):
        sys = Chip8System(hires=True)
        self.assertEqual((sys.framebuffer.width, sys.framebuffer.height), (128, 64))
        self.assertIs(sys.cpu.framebuffer, sys.framebuffer)

    def test_bad_cycle_count(self):
        with self.assertRaises(ValueError):
            Chip8System(cycles_per_frame=0)


class TestScheduler(unittest.TestCase):
    def test_unpaced_run(self):
        sys = make_system(0x1200)
        self.assertEqual(sys.run(max_frames=3, realtime=False), 3)
        self.assertEqual(sys.frame_count, 3)

    def test_stop_from_frame_hook(self):
        sys = make_system(0x1200)
        frames = sys.run(realtime=False, on_frame=lambda s: s.stop())
        self.assertEqual(frames, 1)
        self.assertTrue(sys.stop_event.is_set())

    def test_catch_up_keeps_timer_time(self):
        # The clock jumps 10 frames ahead right after start
        times = itertools.chain([0.0], itertools.repeat(10 / 60))
        sys = Chip8System(clock=lambda: next(times))
        sys.load_rom(program(0x60FF, 0xF015, 0x1204))
        self.assertEqual(sys.run(max_frames=10), 10)
        self.assertEqual(sys.frame_count, 10)
        self.assertEqual(sys.cpu.cycle_count, MAX_CATCHUP * sys.cycles_per_frame)
        self.assertEqual(sys.timers.delay.value, 0xFF - 10)

    def test_headless_display_hook(self):
        from display import HeadlessDisplay

        sys = make_system(0x00E0, 0x1202)
        disp = HeadlessDisplay(sys)
        sys.run(max_frames=4, realtime=False, on_frame=disp)
        self.assertEqual(len(disp.snapshots), 4)
        self.assertEqual(disp.snapshots[0].shape, (32, 64))


# ---------------------------------------------------------------------------
#  ROM loading
# ---------------------------------------------------------------------------

class TestRomLoading(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = self._tmp.name

    def tearDown(self):
        self._tmp.cleanup()

    def _write(self, name: str, data: bytes) -> str:
        path = os.path.join(self.dir, name)
        with open(path, "wb") as f:
            f.write(data)
        return path

    def test_read_rom(self):
        path = self._write("pong.ch8", program(0x00E0))
        self.assertEqual(read_rom(path), b"\x00\xE0")
        self.assertEqual(read_rom(self._write("x.CHIP8", b"\x12\x00")), b"\x12\x00")

    def test_rejects_bad_files(self):
        with self.assertRaises(LoadError):
            read_rom(self._write("notes.txt", b"\x00\xE0"))
        with self.assertRaises(LoadError):
            read_rom(self._write("empty.ch8", b""))
        with self.assertRaises(LoadError):
            read_rom(os.path.join(self.dir, "missing.ch8"))

    def test_load_rom_file(self):
        path = self._write("loop.ch8", program(0x6007, 0x1202))
        sys = Chip8System()
        sys.load_rom_file(path)
        self.assertEqual(sys.rom_path, path)
        sys.run_frame()
        self.assertEqual(sys.cpu.v[0], 7)

    def test_empty_program(self):
        with self.assertRaises(LoadError):
            Chip8System().load_rom(b"")

    def test_oversized_program(self):
        with self.assertRaises(LoadError):
            Chip8System().load_rom(bytes(0xE01))

    def test_request_load_between_frames(self):
        sys = make_system(0x1200)
        path = self._write("next.ch8", program(0x6042, 0x1202))
        sys.request_load(path)
        sys.run_frame()
        self.assertEqual(sys.rom_path, path)
        self.assertEqual(sys.cpu.v[0], 0x42)

    def test_bad_request_is_ignored(self):
        sys = make_system(0x6001, 0x1202)
        sys.request_load(self._write("bad.bin", b"\x00"))
        with self.assertLogs("system", level="WARNING"):
            sys.run_frame()
        self.assertEqual(sys.rom, program(0x6001, 0x1202))
        self.assertEqual(sys.cpu.v[0], 1)

    def test_oversized_request_keeps_current_program(self):
        sys = make_system(0x6001, 0x7001, 0x1202)
        sys.run_frame()
        v0 = sys.cpu.v[0]
        sys.request_load(self._write("huge.ch8", bytes(0xE01)))
        with self.assertLogs("system", level="WARNING"):
            sys.run_frame()
        self.assertEqual(sys.cpu.memory.read_block(0x200, 6), program(0x6001, 0x7001, 0x1202))
        self.assertEqual(sys.rom, program(0x6001, 0x7001, 0x1202))
        self.assertIsNone(sys.rom_path)
        self.assertEqual(sys.frame_count, 2)
        self.assertGreater(sys.cpu.v[0], v0)

    def test_reload_keeps_origin(self):
        sys = make_system()
        sys.load_rom(program(0x6005, 0x1602), origin=0x600)
        self.assertEqual(sys.cpu.pc, 0x600)
        sys.run_frame()
        sys.reload()
        self.assertEqual(sys.cpu.pc, 0x600)
        sys.run_frame()
        self.assertEqual(sys.cpu.v[0], 5)

    def test_reload(self):
        sys = make_system(0x6001, 0x7001, 0x1202)
        run_frames(sys, 2)
        self.assertGreater(sys.cpu.v[0], 1)
        sys.reload()
        self.assertEqual(sys.cpu.pc, 0x200)
        self.assertEqual(sys.cpu.v[0], 0)
        self.assertEqual(sys.frame_count, 0)

    def test_dump_state(self):
        sys = make_system(0x1200)
        text = sys.dump_state()
        self.assertIn("=== Registers ===", text)
        self.assertIn("Quirks: vf_reset=on", text)
        self.assertIn("64x32", text)


if __name__ == "__main__":
    unittest.main()
