#!/usr/bin/env python3
"""
CHIP-8 Emulator / Debug Monitor CLI
====================================
Command-line front end for the CHIP-8 virtual machine.

Provides:
  - Running a ROM in a pygame window (with sound) or headless
  - Quirk selection (presets plus per-quirk overrides)
  - Disassembly of a ROM, assembly of a source file
  - An interactive debug monitor: step / run / breakpoints,
    register and memory inspection, keypad control

Usage:
  python cli.py [ROM] [--preset NAME] [--cycles N] [--scale N]
                [--headless --frames N] [--monitor] [--disasm]
                [--assemble SRC OUT]
"""

from __future__ import annotations
import argparse
import cmd
import logging
import os
import random
import shlex
import sys
from typing import Optional

from asm import AsmError, assemble
from chip8 import Chip8Error, CycleEffect, FatalExecutionError, HaltError, MemoryFault
from opcodes import disassemble
from quirks import PRESETS, preset
from system import DEFAULT_CYCLES_PER_FRAME, ROM_EXTENSIONS, Chip8System

log = logging.getLogger(__name__)

# Quirk flags exposed as --flag/--no-flag
QUIRK_FLAGS = {
    "vf_reset":         "AND/OR/XOR clear VF",
    "memory_increment": "Fx55/Fx65 advance I",
    "display_wait":     "draws wait for the next frame",
    "clipping":         "sprites clip at the edges instead of wrapping",
    "shifting":         "8xy6/8xyE shift Vx in place instead of Vy",
    "jumping":          "Bxnn jumps to xnn + Vx instead of nnn + V0",
}


# ---------------------------------------------------------------------------
#  ROM picker
# ---------------------------------------------------------------------------

def pick_rom_file() -> Optional[str]:
    """Ask for a ROM with a native file dialog.  None if cancelled or unavailable."""
    try:
        import tkinter
        from tkinter import filedialog
    except ImportError as e:
        log.warning("No file dialog available: %s", e)
        return None
    try:
        root = tkinter.Tk()
    except tkinter.TclError as e:
        log.warning("No file dialog available: %s", e)
        return None
    root.withdraw()
    try:
        patterns = " ".join(f"*{ext}" for ext in ROM_EXTENSIONS)
        path = filedialog.askopenfilename(
            title="Open CHIP-8 ROM",
            filetypes=[("CHIP-8 ROMs", patterns), ("All files", "*")])
    finally:
        root.destroy()
    return path or None


# ---------------------------------------------------------------------------
#  Debug monitor
# ---------------------------------------------------------------------------

class Chip8Monitor(cmd.Cmd):
    """Interactive debugger for a Chip8System."""

    intro = (
        "\n"
        "CHIP-8 Debug Monitor\n"
        "  Type 'help' for commands.  'quit' to exit.\n"
    )
    prompt = "CHIP8> "

    def __init__(self, system: Chip8System, stdout=None):
        super().__init__(stdout=stdout)
        self.sys = system
        self.breakpoints: set[int] = set()

    def _print(self, text: str = ""):
        self.stdout.write(text + "\n")

    # -- Parsing helpers --

    def _parse_addr(self, s: str) -> int:
        """Parse an address (0x hex, decimal, 'pc' or 'i')."""
        s = s.strip().lower()
        if s == "pc":
            return self.sys.cpu.pc
        if s == "i":
            return self.sys.cpu.regs.i
        return int(s, 0)

    def _parse_int(self, s: str) -> int:
        return int(s.strip(), 0)

    def _parse_key(self, s: str) -> int:
        return int(s.strip(), 16)

    # ================================================================
    #  Commands
    # ================================================================

    # -- Loading --

    def do_load(self, arg):
        """Load a ROM file (resets the machine): load <file>"""
        parts = shlex.split(arg)
        if not parts:
            self._print("Usage: load <file>")
            return
        try:
            self.sys.load_rom_file(parts[0])
        except Chip8Error as e:
            self._print(f"Error: {e}")
            return
        self._print(f"Loaded {len(self.sys.rom)} bytes from '{parts[0]}'")

    def do_asm(self, arg):
        """Assemble source and load: asm <file.asm>
        Or inline:  asm -e "ld v0, 5; drw v0, v0, 5" """
        parts = shlex.split(arg)
        if not parts:
            self._print("Usage: asm <file.asm>  OR  asm -e \"code\"")
            return
        if parts[0] == "-e":
            source = parts[1].replace(";", "\n") if len(parts) > 1 else ""
        else:
            try:
                with open(parts[0], "r") as f:
                    source = f.read()
            except OSError as e:
                self._print(f"Error reading '{parts[0]}': {e}")
                return
        try:
            code = assemble(source, self.sys.quirks.load_address)
            self.sys.load_rom(code)
        except AsmError as e:
            self._print(f"Assembly error: {e}")
            return
        except Chip8Error as e:
            self._print(f"Error: {e}")
            return
        self._print(f"Assembled {len(code)} bytes at {self.sys.quirks.load_address:#05x}")

    def do_reset(self, arg):
        """Restart the current ROM from a clean machine."""
        self.sys.reload()
        self._print("System reset.")

    # -- Execution --

    def do_step(self, arg):
        """Step N instructions: step [count]
        Frames do not advance; use 'vblank' to end a frame by hand."""
        count = self._parse_int(arg) if arg.strip() else 1
        cpu = self.sys.cpu
        for _ in range(count):
            addr = cpu.pc
            text = cpu.current_instruction()
            try:
                effect = cpu.step()
            except HaltError:
                self._print("CPU is halted.  'reset' to restart.")
                break
            except FatalExecutionError as e:
                self._print(f"Fatal: {e}")
                break
            self._print(f"  {addr:#05x}: {text:<18s} ({effect.value})")
            if effect is CycleEffect.WAIT:
                self._print(f"  [{cpu.state.value}]")
                break

    def do_vblank(self, arg):
        """End a frame by hand: signal vblank and tick the timers once."""
        self.sys.cpu.vblank()
        self.sys.timers.tick(1)

    def do_run(self, arg):
        """Run frames until breakpoint/halt/Ctrl-C: run [frames]"""
        max_frames = self._parse_int(arg) if arg.strip() else None
        cpu = self.sys.cpu
        cpf = self.sys.cycles_per_frame
        steps = 0
        try:
            while max_frames is None or steps < max_frames * cpf:
                if steps % cpf == 0:
                    cpu.vblank()
                if steps and cpu.pc in self.breakpoints:
                    self._print(f"Breakpoint hit at {cpu.pc:#05x}")
                    break
                cpu.step()
                steps += 1
                if steps % cpf == 0:
                    self.sys.timers.tick(1)
                    self.sys.frame_count += 1
            else:
                self._print(f"Stopped after {steps // cpf} frames.")
        except KeyboardInterrupt:
            self._print(f"\nInterrupted at {cpu.pc:#05x}.")
        except HaltError:
            self._print("CPU is halted.  'reset' to restart.")
        except FatalExecutionError as e:
            self._print(f"Fatal: {e}")
    do_c = do_run

    # -- Breakpoints --

    def do_break(self, arg):
        """Set breakpoint: break <address>  (no argument lists them)"""
        if not arg.strip():
            if self.breakpoints:
                self._print("Breakpoints:")
                for a in sorted(self.breakpoints):
                    self._print(f"  {a:#05x}")
            else:
                self._print("No breakpoints set.")
            return
        addr = self._parse_addr(arg)
        self.breakpoints.add(addr)
        self._print(f"Breakpoint set at {addr:#05x}")
    do_bp = do_break

    def do_bpd(self, arg):
        """Delete breakpoint: bpd <address|all>"""
        if arg.strip().lower() == "all":
            self.breakpoints.clear()
            self._print("All breakpoints cleared.")
            return
        addr = self._parse_addr(arg)
        self.breakpoints.discard(addr)
        self._print(f"Breakpoint at {addr:#05x} removed.")

    # -- Inspection --

    def do_regs(self, arg):
        """Show CPU registers."""
        self._print(self.sys.cpu.dump_regs())
        self._print(f"  Cycles: {self.sys.cpu.cycle_count}")

    def do_dump(self, arg):
        """Hex dump memory: dump [address] [count]
        Address defaults to I, count to 64 bytes."""
        parts = shlex.split(arg)
        addr = self._parse_addr(parts[0]) if parts else self.sys.cpu.regs.i
        count = self._parse_int(parts[1]) if len(parts) > 1 else 64
        mem = self.sys.cpu.memory
        try:
            for row_start in range(addr, addr + count, 16):
                row = mem.read_block(row_start, min(16, addr + count - row_start))
                hex_str = " ".join(f"{b:02x}" for b in row)
                self._print(f"  {row_start:#05x}: {hex_str}")
        except MemoryFault as e:
            self._print(f"Error: {e}")

    def do_disasm(self, arg):
        """Disassemble: disasm [address] [count]
        Defaults to current PC, 16 instructions."""
        parts = shlex.split(arg)
        addr = self._parse_addr(parts[0]) if parts else self.sys.cpu.pc
        count = self._parse_int(parts[1]) if len(parts) > 1 else 16
        mem = self.sys.cpu.memory
        end = min(mem.size, addr + 2 * count)
        for a, word, text in disassemble(mem.data[addr:end], addr):
            marker = ">>>" if a == self.sys.cpu.pc else "   "
            self._print(f"  {marker} {a:#05x}: {word:04x}  {text}")

    def do_screen(self, arg):
        """Print the framebuffer as text."""
        self._print(self.sys.framebuffer.to_text())

    def do_status(self, arg):
        """Show full system status (CPU + devices)."""
        self._print(self.sys.dump_state())

    # -- Keypad --

    def do_press(self, arg):
        """Hold a key down: press <0-F>"""
        try:
            self.sys.keypad.press(self._parse_key(arg))
        except ValueError as e:
            self._print(f"Error: {e}")

    def do_release(self, arg):
        """Release a key: release <0-F|all>"""
        if arg.strip().lower() == "all":
            self.sys.keypad.clear()
            return
        try:
            self.sys.keypad.release(self._parse_key(arg))
        except ValueError as e:
            self._print(f"Error: {e}")

    def do_keys(self, arg):
        """Show held keys."""
        held = sorted(self.sys.keypad.snapshot())
        self._print("  " + (" ".join(f"{k:X}" for k in held) or "(none)"))

    def do_quit(self, arg):
        """Exit the monitor."""
        self._print("Goodbye.")
        return True
    do_exit = do_quit
    do_q = do_quit

    def do_EOF(self, arg):
        self._print()
        return self.do_quit(arg)

    def default(self, line):
        """Handle unknown commands gracefully."""
        self._print(f"Unknown command: {line.split()[0]!r}. Type 'help' for available commands.")

    def emptyline(self):
        """Don't repeat the last command on empty input."""
        pass

    def onecmd(self, line):
        try:
            return super().onecmd(line)
        except ValueError as e:
            self._print(f"Error: {e}")
            return False


# ---------------------------------------------------------------------------
#  Run modes
# ---------------------------------------------------------------------------

def _report_fatal(system: Chip8System, err: Chip8Error):
    print(f"Error: {err}", file=sys.stderr)
    print(system.dump_state(), file=sys.stderr)


def run_headless(system: Chip8System, frames: int) -> int:
    """Run *frames* frames back to back and print the final screen."""
    try:
        system.run(max_frames=frames, realtime=False)
    except Chip8Error as e:
        _report_fatal(system, e)
        return 1
    print(system.framebuffer.to_text())
    return 0


def run_windowed(system: Chip8System, args) -> int:
    try:
        import pygame  # noqa: F401
    except ImportError as e:
        print(f"[display] pygame not available: {e}", file=sys.stderr)
        print("[display] Install with: pip install pygame", file=sys.stderr)
        return 1
    from audio import Beeper
    from display import FramebufferDisplay

    title = "CHIP-8"
    if system.rom_path:
        title += f" - {os.path.basename(system.rom_path)}"
    display = FramebufferDisplay(system, scale=args.scale, title=title,
                                 pick_rom=pick_rom_file)
    display.start()
    if display.error is not None:
        print(f"[display] cannot open window: {display.error}", file=sys.stderr)
        return 1

    beeper = None
    if not args.mute:
        beeper = Beeper()
        if not beeper.open():
            print("[audio] no audio device, running silent", file=sys.stderr)
            beeper = None

    def on_frame(s: Chip8System):
        if beeper is not None:
            beeper.update(s.sound_active)

    status = 0
    try:
        system.run(max_frames=args.frames, on_frame=on_frame)
    except KeyboardInterrupt:
        print()
    except Chip8Error as e:
        _report_fatal(system, e)
        status = 1
    finally:
        system.stop()
        display.stop()
        if beeper is not None:
            beeper.close()
    return status


# ---------------------------------------------------------------------------
#  Main
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chip8",
        description="CHIP-8 Emulator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
               "  python cli.py games/PONG.ch8\n"
               "  python cli.py games/PONG.ch8 --preset schip --cycles 30\n"
               "  python cli.py games/PONG.ch8 --no-display-wait --scale 12\n"
               "  python cli.py test.ch8 --headless --frames 300\n"
               "  python cli.py games/PONG.ch8 --disasm\n"
               "  python cli.py games/PONG.ch8 --monitor\n"
               "  python cli.py --assemble demo.asm demo.ch8 --listing\n"
    )
    parser.add_argument("rom", nargs="?", default=None,
                        help="ROM file (.ch8/.chip8/.c8); a file dialog opens if omitted")
    parser.add_argument("--cycles", type=int, default=DEFAULT_CYCLES_PER_FRAME, metavar="N",
                        help=f"Instructions per 60 Hz frame (default: {DEFAULT_CYCLES_PER_FRAME})")
    parser.add_argument("--preset", choices=sorted(PRESETS), default="chip8",
                        help="Quirk preset (default: chip8)")
    for name, desc in QUIRK_FLAGS.items():
        parser.add_argument(f"--{name.replace('_', '-')}", dest=name,
                            action=argparse.BooleanOptionalAction, default=None,
                            help=f"Quirk: {desc}")
    parser.add_argument("--load-address", type=lambda s: int(s, 0), default=None,
                        metavar="ADDR", help="Program origin, 0x200 or 0x600")
    parser.add_argument("--strict", action="store_true", default=None,
                        help="Treat unknown opcodes as fatal")
    parser.add_argument("--hires", action="store_true",
                        help="128x64 display instead of 64x32")
    parser.add_argument("--scale", type=int, default=10, metavar="N",
                        help="Pixel scale factor for the window (default: 10)")
    parser.add_argument("--seed", type=int, default=None,
                        help="Seed for the RND instruction")
    parser.add_argument("--mute", action="store_true",
                        help="No sound")
    parser.add_argument("--headless", action="store_true",
                        help="No window; run --frames frames and print the screen")
    parser.add_argument("--frames", type=int, default=None, metavar="N",
                        help="Stop after N frames (headless default: 600)")
    parser.add_argument("--monitor", action="store_true",
                        help="Enter the debug monitor instead of running")
    parser.add_argument("--disasm", action="store_true",
                        help="Print a disassembly of the ROM and exit")
    parser.add_argument("--assemble", nargs=2, metavar=("SRC", "OUT"),
                        help="Assemble SRC.asm to OUT.ch8 and exit")
    parser.add_argument("--listing", "-l", action="store_true",
                        help="Print assembly listing (with --assemble)")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Debug logging")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(levelname)s %(name)s: %(message)s")

    # ---- Assemble-only mode -------------------------------------------
    if args.assemble:
        src_path, out_path = args.assemble
        try:
            with open(src_path, "r") as f:
                source = f.read()
        except OSError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        try:
            code = assemble(source, listing=args.listing)
        except AsmError as e:
            print(f"Assembly error: {e}", file=sys.stderr)
            return 1
        with open(out_path, "wb") as f:
            f.write(code)
        print(f"Assembled {src_path} -> {out_path} ({len(code)} bytes)")
        return 0

    quirks = preset(args.preset).with_overrides(
        load_address=args.load_address, strict=args.strict,
        **{name: getattr(args, name) for name in QUIRK_FLAGS})
    rng = random.Random(args.seed) if args.seed is not None else None
    try:
        system = Chip8System(quirks, hires=args.hires, cycles_per_frame=args.cycles, rng=rng)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    log.debug("Quirks: %s", quirks.describe())

    rom = args.rom
    if rom is None and not args.monitor:
        rom = pick_rom_file()
        if rom is None:
            print("No ROM selected.", file=sys.stderr)
            return 1
    if rom is not None:
        try:
            system.load_rom_file(rom)
        except Chip8Error as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    if args.disasm:
        for addr, word, text in disassemble(system.rom, quirks.load_address):
            print(f"  {addr:#05x}: {word:04x}  {text}")
        return 0

    if args.monitor:
        monitor = Chip8Monitor(system)
        try:
            monitor.cmdloop()
        except KeyboardInterrupt:
            print("\nInterrupted. Goodbye.")
        return 0

    if args.headless:
        return run_headless(system, args.frames if args.frames is not None else 600)
    return run_windowed(system, args)


if __name__ == "__main__":
    sys.exit(main())
