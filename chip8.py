"""
CHIP-8 Interpreter Core
========================
Memory, register file and the fetch/decode/execute cycle for the CHIP-8
virtual machine.  All machine state lives in one ``Chip8`` instance, so
any number of independent VMs can coexist in a process.

One step = one instruction.  PC is advanced past the instruction before
its handler runs; jumps and calls overwrite it, skips bump it again.
Waiting for a key press or for the next frame (display-wait quirk) is an
explicit run state, never a blocking call: the handler leaves PC on the
instruction and reports ``CycleEffect.WAIT`` until it can complete.
"""

from __future__ import annotations
import enum
import logging
import random
from typing import Optional

from devices import Framebuffer, Keypad, TimerController, HIRES, LORES
from opcodes import Instruction, Op, decode, format_instruction
from quirks import LOAD_ADDRESSES, QuirkConfig

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
#  Constants
# ---------------------------------------------------------------------------

MEMORY_SIZE = 4096
NUM_REGS    = 16
STACK_DEPTH = 16
FONT_BASE   = 0x000
FONT_HEIGHT = 5
VF          = 0xF

# Hex digit glyphs 0-F, 4x5 pixels, one byte per row
FONTSET = bytes([
    0xF0, 0x90, 0x90, 0x90, 0xF0,  # 0
    0x20, 0x60, 0x20, 0x20, 0x70,  # 1
    0xF0, 0x10, 0xF0, 0x80, 0xF0,  # 2
    0xF0, 0x10, 0xF0, 0x10, 0xF0,  # 3
    0x90, 0x90, 0xF0, 0x10, 0x10,  # 4
    0xF0, 0x80, 0xF0, 0x10, 0xF0,  # 5
    0xF0, 0x80, 0xF0, 0x90, 0xF0,  # 6
    0xF0, 0x10, 0x20, 0x40, 0x40,  # 7
    0xF0, 0x90, 0xF0, 0x90, 0xF0,  # 8
    0xF0, 0x90, 0xF0, 0x10, 0xF0,  # 9
    0xF0, 0x90, 0xF0, 0x90, 0x90,  # A
    0xE0, 0x90, 0xE0, 0x90, 0xE0,  # B
    0xF0, 0x80, 0x80, 0x80, 0xF0,  # C
    0xE0, 0x90, 0x90, 0x90, 0xE0,  # D
    0xF0, 0x80, 0xF0, 0x80, 0xF0,  # E
    0xF0, 0x80, 0xF0, 0x80, 0x80,  # F
])


# ---------------------------------------------------------------------------
#  Errors
# ---------------------------------------------------------------------------

class Chip8Error(Exception):
    """Base for everything the VM raises."""
    pass

class LoadError(Chip8Error):
    """Program could not be loaded (too large, bad origin, bad file)."""
    pass

class HaltError(Chip8Error):
    """Step requested on an interpreter that already hit a fatal error."""
    pass

class FatalExecutionError(Chip8Error):
    """Unrecoverable machine-state corruption."""
    pass

class MemoryFault(FatalExecutionError):
    def __init__(self, addr: int, message: str = ""):
        self.addr = addr
        super().__init__(message or f"Memory fault @ {addr:#06x}")

class StackFault(FatalExecutionError):
    pass

class UnknownOpcode(FatalExecutionError):
    def __init__(self, word: int, addr: int):
        self.word = word
        self.addr = addr
        super().__init__(f"Unknown opcode {word:#06x} @ {addr:#05x}")


# ---------------------------------------------------------------------------
#  Memory
# ---------------------------------------------------------------------------

class Memory:
    """4 KiB byte-addressed RAM with the font image at 0x000."""

    def __init__(self, size: int = MEMORY_SIZE):
        self.size = size
        self.data = bytearray(size)
        self.reset()

    def reset(self):
        """Zero everything, then restore the font glyphs."""
        self.data[:] = bytes(self.size)
        self.data[FONT_BASE:FONT_BASE + len(FONTSET)] = FONTSET

    def _check_addr(self, addr: int, size: int = 1):
        if addr < 0 or addr >= self.size:
            raise MemoryFault(addr)
        if addr + size > self.size:
            raise MemoryFault(self.size)

    def read8(self, addr: int) -> int:
        self._check_addr(addr)
        return self.data[addr]

    def write8(self, addr: int, val: int):
        self._check_addr(addr)
        self.data[addr] = val & 0xFF

    def read16(self, addr: int) -> int:
        """Big-endian word."""
        self._check_addr(addr, 2)
        return (self.data[addr] << 8) | self.data[addr + 1]

    def read_block(self, addr: int, length: int) -> bytes:
        if length == 0:
            return b""
        self._check_addr(addr, length)
        return bytes(self.data[addr:addr + length])

    def write_block(self, addr: int, data: bytes | bytearray):
        if not data:
            return
        self._check_addr(addr, len(data))
        self.data[addr:addr + len(data)] = data

    def check_fits(self, program: bytes | bytearray, origin: int):
        """Raise LoadError unless *program* can be loaded at *origin*.  Touches nothing."""
        if origin not in LOAD_ADDRESSES:
            allowed = ", ".join(f"{a:#05x}" for a in LOAD_ADDRESSES)
            raise LoadError(f"Unsupported load address {origin:#05x} (expected {allowed})")
        room = self.size - origin
        if len(program) > room:
            raise LoadError(f"Program is {len(program)} bytes; only {room} fit at {origin:#05x}")

    def load(self, program: bytes | bytearray, origin: int):
        """Copy a program image in at *origin*."""
        self.check_fits(program, origin)
        self.data[origin:origin + len(program)] = program


# ---------------------------------------------------------------------------
#  Register file
# ---------------------------------------------------------------------------

class RegisterFile:
    """V0-VF, I, PC and the return-address stack."""

    def __init__(self):
        self.v: list[int] = [0] * NUM_REGS
        self._i: int = 0
        self._pc: int = 0
        self.stack: list[int] = []

    def reset(self, pc: int = 0):
        self.v = [0] * NUM_REGS
        self._i = 0
        self._pc = pc & 0xFFFF
        self.stack = []

    @property
    def pc(self) -> int:
        return self._pc

    @pc.setter
    def pc(self, value: int):
        self._pc = value & 0xFFFF

    @property
    def i(self) -> int:
        return self._i

    @i.setter
    def i(self, value: int):
        self._i = value & 0xFFFF

    @property
    def sp(self) -> int:
        """Number of return addresses currently held."""
        return len(self.stack)

    def get(self, idx: int) -> int:
        if not 0 <= idx < NUM_REGS:
            raise FatalExecutionError(f"Register index {idx} out of range")
        return self.v[idx]

    def set(self, idx: int, val: int):
        if not 0 <= idx < NUM_REGS:
            raise FatalExecutionError(f"Register index {idx} out of range")
        self.v[idx] = val & 0xFF

    def push(self, addr: int):
        if len(self.stack) >= STACK_DEPTH:
            raise StackFault(f"Stack overflow pushing {addr:#05x} (depth {STACK_DEPTH})")
        self.stack.append(addr & 0xFFFF)

    def pop(self) -> int:
        if not self.stack:
            raise StackFault("Stack underflow: RET with empty stack")
        return self.stack.pop()


# ---------------------------------------------------------------------------
#  Run state / cycle outcome
# ---------------------------------------------------------------------------

class RunState(enum.Enum):
    RUNNING            = "running"
    WAITING_FOR_KEY    = "waiting for key"
    WAITING_FOR_VBLANK = "waiting for vblank"
    HALTED             = "halted"


class CycleEffect(enum.Enum):
    NORMAL  = "normal"
    SKIP    = "skip"      # next instruction skipped
    JUMP    = "jump"      # PC redirected (JP, CALL, RET)
    DISPLAY = "display"   # framebuffer mutated
    WAIT    = "wait"      # no progress: key-wait or display-wait
    UNKNOWN = "unknown"   # unknown opcode stepped over


# ---------------------------------------------------------------------------
#  Interpreter
# ---------------------------------------------------------------------------

class Chip8:
    """CHIP-8 virtual machine."""

    def __init__(self, quirks: Optional[QuirkConfig] = None, hires: bool = False,
                 framebuffer: Optional[Framebuffer] = None,
                 keypad: Optional[Keypad] = None,
                 timers: Optional[TimerController] = None,
                 rng: Optional[random.Random] = None):
        self.quirks = quirks or QuirkConfig()
        self.hires = hires
        if framebuffer is None:
            framebuffer = Framebuffer(*(HIRES if hires else LORES))
        self.framebuffer = framebuffer
        self.keypad = keypad or Keypad()
        self.timers = timers or TimerController()
        self.rng = rng or random.Random()
        self.memory = Memory()
        self.regs = RegisterFile()

        self.state: RunState = RunState.RUNNING
        self.cycle_count: int = 0
        self.unknown_opcodes: int = 0
        self.last_pc: int = 0          # address of the most recent fetch
        self._vblank_ready: bool = False
        self._held_at_wait: frozenset[int] = frozenset()

        self._handlers = {
            Op.SYS:      self._op_sys,
            Op.CLS:      self._op_cls,
            Op.RET:      self._op_ret,
            Op.JP:       self._op_jp,
            Op.CALL:     self._op_call,
            Op.SE_IMM:   self._op_se_imm,
            Op.SNE_IMM:  self._op_sne_imm,
            Op.SE_REG:   self._op_se_reg,
            Op.LD_IMM:   self._op_ld_imm,
            Op.ADD_IMM:  self._op_add_imm,
            Op.LD_REG:   self._op_ld_reg,
            Op.OR:       self._op_or,
            Op.AND:      self._op_and,
            Op.XOR:      self._op_xor,
            Op.ADD_REG:  self._op_add_reg,
            Op.SUB:      self._op_sub,
            Op.SHR:      self._op_shr,
            Op.SUBN:     self._op_subn,
            Op.SHL:      self._op_shl,
            Op.SNE_REG:  self._op_sne_reg,
            Op.LD_I:     self._op_ld_i,
            Op.JP_V0:    self._op_jp_v0,
            Op.RND:      self._op_rnd,
            Op.DRW:      self._op_drw,
            Op.SKP:      self._op_skp,
            Op.SKNP:     self._op_sknp,
            Op.LD_VX_DT: self._op_ld_vx_dt,
            Op.LD_VX_K:  self._op_ld_vx_k,
            Op.LD_DT_VX: self._op_ld_dt_vx,
            Op.LD_ST_VX: self._op_ld_st_vx,
            Op.ADD_I:    self._op_add_i,
            Op.LD_F:     self._op_ld_f,
            Op.LD_B:     self._op_ld_b,
            Op.STORE:    self._op_store,
            Op.LOAD:     self._op_load,
            Op.UNKNOWN:  self._op_unknown,
        }
        self.reset()

    # -- Property shortcuts --

    @property
    def v(self) -> list[int]:
        return self.regs.v

    @property
    def pc(self) -> int:
        return self.regs.pc

    @property
    def halted(self) -> bool:
        return self.state is RunState.HALTED

    # -- Lifecycle --

    def reset(self):
        """Font-only memory, zeroed registers/timers/screen, PC at the load address."""
        self.memory.reset()
        self.regs.reset(pc=self.quirks.load_address)
        self.timers.reset()
        self.framebuffer.clear()
        self.state = RunState.RUNNING
        self.cycle_count = 0
        self.unknown_opcodes = 0
        self.last_pc = self.regs.pc
        self._vblank_ready = False
        self._held_at_wait = frozenset()

    def load(self, program: bytes | bytearray, origin: Optional[int] = None):
        """Reset, then copy *program* in and point PC at it.

        A program that cannot load raises LoadError before any state is
        touched, so the current program survives.
        """
        if origin is None:
            origin = self.quirks.load_address
        self.memory.check_fits(program, origin)
        self.reset()
        self.memory.load(program, origin)
        self.regs.pc = origin
        self.last_pc = origin
        log.info("Loaded %d-byte program at %#05x", len(program), origin)

    def vblank(self):
        """Frame boundary: lets one pending or future draw proceed."""
        self._vblank_ready = True
        if self.state is RunState.WAITING_FOR_VBLANK:
            self.state = RunState.RUNNING

    # =====================================================================
    #  STEP: fetch / decode / execute
    # =====================================================================

    def fetch(self) -> Instruction:
        self.last_pc = self.regs.pc
        return decode(self.memory.read16(self.regs.pc))

    def execute(self, instr: Instruction) -> CycleEffect:
        """Apply one decoded instruction.  PC moves past it first."""
        self.regs.pc += 2
        return self._handlers[instr.op](instr)

    def step(self) -> CycleEffect:
        """Execute one instruction.  Fatal errors halt the VM and propagate."""
        if self.state is RunState.HALTED:
            raise HaltError("Interpreter is halted")
        try:
            effect = self.execute(self.fetch())
        except FatalExecutionError as e:
            self.state = RunState.HALTED
            log.error("Fatal: %s (PC=%#05x)", e, self.last_pc)
            raise
        self.cycle_count += 1
        return effect

    def run(self, max_cycles: int = 1000) -> int:
        """Step until *max_cycles* have run or the VM blocks on a wait.

        Returns the number of steps taken.
        """
        done = 0
        while done < max_cycles:
            effect = self.step()
            done += 1
            if effect is CycleEffect.WAIT:
                break
        return done

    # =====================================================================
    #  Handlers
    # =====================================================================

    def _skip_if(self, cond: bool) -> CycleEffect:
        if cond:
            self.regs.pc += 2
            return CycleEffect.SKIP
        return CycleEffect.NORMAL

    # -- 0x0 --
    def _op_sys(self, ins: Instruction) -> CycleEffect:
        log.debug("Ignoring SYS %#05x @ %#05x", ins.nnn, self.last_pc)
        return CycleEffect.NORMAL

    def _op_cls(self, ins: Instruction) -> CycleEffect:
        self.framebuffer.clear()
        return CycleEffect.DISPLAY

    def _op_ret(self, ins: Instruction) -> CycleEffect:
        self.regs.pc = self.regs.pop()
        return CycleEffect.JUMP

    # -- 0x1 / 0x2 --
    def _op_jp(self, ins: Instruction) -> CycleEffect:
        self.regs.pc = ins.nnn
        return CycleEffect.JUMP

    def _op_call(self, ins: Instruction) -> CycleEffect:
        self.regs.push(self.regs.pc)
        self.regs.pc = ins.nnn
        return CycleEffect.JUMP

    # -- 0x3 / 0x4 / 0x5 / 0x9: skips --
    def _op_se_imm(self, ins: Instruction) -> CycleEffect:
        return self._skip_if(self.v[ins.x] == ins.kk)

    def _op_sne_imm(self, ins: Instruction) -> CycleEffect:
        return self._skip_if(self.v[ins.x] != ins.kk)

    def _op_se_reg(self, ins: Instruction) -> CycleEffect:
        return self._skip_if(self.v[ins.x] == self.v[ins.y])

    def _op_sne_reg(self, ins: Instruction) -> CycleEffect:
        return self._skip_if(self.v[ins.x] != self.v[ins.y])

    # -- 0x6 / 0x7 --
    def _op_ld_imm(self, ins: Instruction) -> CycleEffect:
        self.v[ins.x] = ins.kk
        return CycleEffect.NORMAL

    def _op_add_imm(self, ins: Instruction) -> CycleEffect:
        self.v[ins.x] = (self.v[ins.x] + ins.kk) & 0xFF
        return CycleEffect.NORMAL

    # -- 0x8: ALU.  The result is written before VF, so VF as a target
    #    ends up holding the flag. --
    def _op_ld_reg(self, ins: Instruction) -> CycleEffect:
        self.v[ins.x] = self.v[ins.y]
        return CycleEffect.NORMAL

    def _logic(self, ins: Instruction, result: int) -> CycleEffect:
        self.v[ins.x] = result
        if self.quirks.vf_reset:
            self.v[VF] = 0
        return CycleEffect.NORMAL

    def _op_or(self, ins: Instruction) -> CycleEffect:
        return self._logic(ins, self.v[ins.x] | self.v[ins.y])

    def _op_and(self, ins: Instruction) -> CycleEffect:
        return self._logic(ins, self.v[ins.x] & self.v[ins.y])

    def _op_xor(self, ins: Instruction) -> CycleEffect:
        return self._logic(ins, self.v[ins.x] ^ self.v[ins.y])

    def _op_add_reg(self, ins: Instruction) -> CycleEffect:
        total = self.v[ins.x] + self.v[ins.y]
        self.v[ins.x] = total & 0xFF
        self.v[VF] = 1 if total > 0xFF else 0
        return CycleEffect.NORMAL

    def _op_sub(self, ins: Instruction) -> CycleEffect:
        a, b = self.v[ins.x], self.v[ins.y]
        self.v[ins.x] = (a - b) & 0xFF
        self.v[VF] = 1 if a >= b else 0
        return CycleEffect.NORMAL

    def _op_subn(self, ins: Instruction) -> CycleEffect:
        a, b = self.v[ins.x], self.v[ins.y]
        self.v[ins.x] = (b - a) & 0xFF
        self.v[VF] = 1 if b >= a else 0
        return CycleEffect.NORMAL

    def _shift_source(self, ins: Instruction) -> int:
        return self.v[ins.x] if self.quirks.shifting else self.v[ins.y]

    def _op_shr(self, ins: Instruction) -> CycleEffect:
        src = self._shift_source(ins)
        self.v[ins.x] = src >> 1
        self.v[VF] = src & 1
        return CycleEffect.NORMAL

    def _op_shl(self, ins: Instruction) -> CycleEffect:
        src = self._shift_source(ins)
        self.v[ins.x] = (src << 1) & 0xFF
        self.v[VF] = src >> 7
        return CycleEffect.NORMAL

    # -- 0xA / 0xB / 0xC --
    def _op_ld_i(self, ins: Instruction) -> CycleEffect:
        self.regs.i = ins.nnn
        return CycleEffect.NORMAL

    def _op_jp_v0(self, ins: Instruction) -> CycleEffect:
        reg = (ins.nnn >> 8) if self.quirks.jumping else 0
        self.regs.pc = ins.nnn + self.v[reg]
        return CycleEffect.JUMP

    def _op_rnd(self, ins: Instruction) -> CycleEffect:
        self.v[ins.x] = self.rng.randrange(256) & ins.kk
        return CycleEffect.NORMAL

    # -- 0xD: draw --
    def _op_drw(self, ins: Instruction) -> CycleEffect:
        if self.quirks.display_wait:
            if not self._vblank_ready:
                self.regs.pc -= 2
                self.state = RunState.WAITING_FOR_VBLANK
                return CycleEffect.WAIT
            self._vblank_ready = False
        self.state = RunState.RUNNING
        rows = self.memory.read_block(self.regs.i, ins.n)
        hit = self.framebuffer.draw_sprite(self.v[ins.x], self.v[ins.y], rows,
                                           clip=self.quirks.clipping)
        self.v[VF] = 1 if hit else 0
        return CycleEffect.DISPLAY

    # -- 0xE: keys --
    def _op_skp(self, ins: Instruction) -> CycleEffect:
        return self._skip_if(self.keypad.is_pressed(self.v[ins.x]))

    def _op_sknp(self, ins: Instruction) -> CycleEffect:
        return self._skip_if(not self.keypad.is_pressed(self.v[ins.x]))

    # -- 0xF: timers, key-wait, I arithmetic, memory transfer --
    def _op_ld_vx_dt(self, ins: Instruction) -> CycleEffect:
        self.v[ins.x] = self.timers.delay.value
        return CycleEffect.NORMAL

    def _op_ld_vx_k(self, ins: Instruction) -> CycleEffect:
        keys = self.keypad.snapshot()
        if self.state is not RunState.WAITING_FOR_KEY:
            # Keys already down must be released and pressed again
            self._held_at_wait = keys
            self.state = RunState.WAITING_FOR_KEY
            self.regs.pc -= 2
            return CycleEffect.WAIT
        fresh = keys - self._held_at_wait
        self._held_at_wait &= keys
        if not fresh:
            self.regs.pc -= 2
            return CycleEffect.WAIT
        self.v[ins.x] = min(fresh)
        self.state = RunState.RUNNING
        self._held_at_wait = frozenset()
        return CycleEffect.NORMAL

    def _op_ld_dt_vx(self, ins: Instruction) -> CycleEffect:
        self.timers.delay.set(self.v[ins.x])
        return CycleEffect.NORMAL

    def _op_ld_st_vx(self, ins: Instruction) -> CycleEffect:
        self.timers.sound.set(self.v[ins.x])
        return CycleEffect.NORMAL

    def _op_add_i(self, ins: Instruction) -> CycleEffect:
        self.regs.i = self.regs.i + self.v[ins.x]
        return CycleEffect.NORMAL

    def _op_ld_f(self, ins: Instruction) -> CycleEffect:
        self.regs.i = FONT_BASE + FONT_HEIGHT * (self.v[ins.x] & 0xF)
        return CycleEffect.NORMAL

    def _op_ld_b(self, ins: Instruction) -> CycleEffect:
        val = self.v[ins.x]
        self.memory.write_block(self.regs.i, bytes([val // 100, (val // 10) % 10, val % 10]))
        return CycleEffect.NORMAL

    def _op_store(self, ins: Instruction) -> CycleEffect:
        self.memory.write_block(self.regs.i, bytes(self.v[:ins.x + 1]))
        if self.quirks.memory_increment:
            self.regs.i = self.regs.i + ins.x + 1
        return CycleEffect.NORMAL

    def _op_load(self, ins: Instruction) -> CycleEffect:
        data = self.memory.read_block(self.regs.i, ins.x + 1)
        self.v[:ins.x + 1] = list(data)
        if self.quirks.memory_increment:
            self.regs.i = self.regs.i + ins.x + 1
        return CycleEffect.NORMAL

    def _op_unknown(self, ins: Instruction) -> CycleEffect:
        if self.quirks.strict:
            raise UnknownOpcode(ins.raw, self.last_pc)
        self.unknown_opcodes += 1
        log.warning("Unknown opcode %#06x @ %#05x, skipping", ins.raw, self.last_pc)
        return CycleEffect.UNKNOWN

    # -- Debug / introspection --

    def current_instruction(self) -> str:
        """Disassembly of the word at PC, or '??' if PC is out of range."""
        try:
            return format_instruction(decode(self.memory.read16(self.regs.pc)))
        except MemoryFault:
            return "??"

    def dump_regs(self) -> str:
        lines = []
        for row in range(0, NUM_REGS, 4):
            lines.append("  " + "  ".join(f"V{r:X}={self.v[r]:#04x}"
                                           for r in range(row, row + 4)))
        lines.append(f"  I  = {self.regs.i:#06x}  PC = {self.regs.pc:#05x}  "
                     f"SP = {self.regs.sp}")
        lines.append(f"  DT = {self.timers.delay.value:<3d}  ST = {self.timers.sound.value:<3d}  "
                     f"state = {self.state.value}")
        if self.regs.stack:
            lines.append("  stack: " + " ".join(f"{a:#05x}" for a in self.regs.stack))
        return "\n".join(lines)
