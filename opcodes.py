"""
CHIP-8 Instruction Decoding
============================
Every CHIP-8 instruction is one big-endian 16-bit word.  The high nibble
selects the family; families 0x0, 0x5, 0x8, 0x9, 0xE and 0xF are further
split on the low nibble or the low byte.

    decode(word) -> Instruction     (never raises; unknown words -> Op.UNKNOWN)
    encode(instr) -> word           (exact inverse for the 35 real forms)
    format_instruction(instr)       (Cowgod-style mnemonic text)

Operand field names follow the usual notation:

    x   = bits 11..8   register index
    y   = bits  7..4   register index
    n   = bits  3..0   nibble (sprite height)
    kk  = bits  7..0   immediate byte
    nnn = bits 11..0   address
"""

from __future__ import annotations
import enum
from dataclasses import dataclass


class Op(enum.Enum):
    SYS      = "0nnn"
    CLS      = "00E0"
    RET      = "00EE"
    JP       = "1nnn"
    CALL     = "2nnn"
    SE_IMM   = "3xkk"
    SNE_IMM  = "4xkk"
    SE_REG   = "5xy0"
    LD_IMM   = "6xkk"
    ADD_IMM  = "7xkk"
    LD_REG   = "8xy0"
    OR       = "8xy1"
    AND      = "8xy2"
    XOR      = "8xy3"
    ADD_REG  = "8xy4"
    SUB      = "8xy5"
    SHR      = "8xy6"
    SUBN     = "8xy7"
    SHL      = "8xyE"
    SNE_REG  = "9xy0"
    LD_I     = "Annn"
    JP_V0    = "Bnnn"
    RND      = "Cxkk"
    DRW      = "Dxyn"
    SKP      = "Ex9E"
    SKNP     = "ExA1"
    LD_VX_DT = "Fx07"
    LD_VX_K  = "Fx0A"
    LD_DT_VX = "Fx15"
    LD_ST_VX = "Fx18"
    ADD_I    = "Fx1E"
    LD_F     = "Fx29"
    LD_B     = "Fx33"
    STORE    = "Fx55"
    LOAD     = "Fx65"
    UNKNOWN  = "????"


# Op -> (fixed bits, operand fields present in the word)
LAYOUT: dict[Op, tuple[int, str]] = {
    Op.SYS:      (0x0000, "nnn"),
    Op.CLS:      (0x00E0, ""),
    Op.RET:      (0x00EE, ""),
    Op.JP:       (0x1000, "nnn"),
    Op.CALL:     (0x2000, "nnn"),
    Op.SE_IMM:   (0x3000, "xkk"),
    Op.SNE_IMM:  (0x4000, "xkk"),
    Op.SE_REG:   (0x5000, "xy"),
    Op.LD_IMM:   (0x6000, "xkk"),
    Op.ADD_IMM:  (0x7000, "xkk"),
    Op.LD_REG:   (0x8000, "xy"),
    Op.OR:       (0x8001, "xy"),
    Op.AND:      (0x8002, "xy"),
    Op.XOR:      (0x8003, "xy"),
    Op.ADD_REG:  (0x8004, "xy"),
    Op.SUB:      (0x8005, "xy"),
    Op.SHR:      (0x8006, "xy"),
    Op.SUBN:     (0x8007, "xy"),
    Op.SHL:      (0x800E, "xy"),
    Op.SNE_REG:  (0x9000, "xy"),
    Op.LD_I:     (0xA000, "nnn"),
    Op.JP_V0:    (0xB000, "nnn"),
    Op.RND:      (0xC000, "xkk"),
    Op.DRW:      (0xD000, "xyn"),
    Op.SKP:      (0xE09E, "x"),
    Op.SKNP:     (0xE0A1, "x"),
    Op.LD_VX_DT: (0xF007, "x"),
    Op.LD_VX_K:  (0xF00A, "x"),
    Op.LD_DT_VX: (0xF015, "x"),
    Op.LD_ST_VX: (0xF018, "x"),
    Op.ADD_I:    (0xF01E, "x"),
    Op.LD_F:     (0xF029, "x"),
    Op.LD_B:     (0xF033, "x"),
    Op.STORE:    (0xF055, "x"),
    Op.LOAD:     (0xF065, "x"),
}

# Families selected by the high nibble alone
_FAMILY = {
    0x1: Op.JP, 0x2: Op.CALL, 0x3: Op.SE_IMM, 0x4: Op.SNE_IMM,
    0x6: Op.LD_IMM, 0x7: Op.ADD_IMM, 0xA: Op.LD_I, 0xB: Op.JP_V0,
    0xC: Op.RND, 0xD: Op.DRW,
}

# 8xyN, keyed by N
_ALU = {
    0x0: Op.LD_REG, 0x1: Op.OR, 0x2: Op.AND, 0x3: Op.XOR, 0x4: Op.ADD_REG,
    0x5: Op.SUB, 0x6: Op.SHR, 0x7: Op.SUBN, 0xE: Op.SHL,
}

# ExKK, keyed by KK
_KEY = {0x9E: Op.SKP, 0xA1: Op.SKNP}

# FxKK, keyed by KK
_MISC = {
    0x07: Op.LD_VX_DT, 0x0A: Op.LD_VX_K, 0x15: Op.LD_DT_VX, 0x18: Op.LD_ST_VX,
    0x1E: Op.ADD_I, 0x29: Op.LD_F, 0x33: Op.LD_B, 0x55: Op.STORE, 0x65: Op.LOAD,
}

_FIELD_LIMITS = {"x": 0xF, "y": 0xF, "n": 0xF, "kk": 0xFF, "nnn": 0xFFF}


@dataclass(frozen=True)
class Instruction:
    """One decoded instruction.

    Operand fields that the form does not use are always 0.  ``raw`` is
    the encoded word; for known forms it is derived from the operands,
    for ``Op.UNKNOWN`` it is the word that failed to decode.
    """
    op: Op
    x: int = 0
    y: int = 0
    n: int = 0
    kk: int = 0
    nnn: int = 0
    raw: int = 0

    def __post_init__(self):
        if self.op is not Op.UNKNOWN:
            object.__setattr__(self, "raw", encode(self))

    def __str__(self) -> str:
        return format_instruction(self)


def _operands(fmt: str) -> tuple[str, ...]:
    """'xkk' -> ('x', 'kk'), 'xyn' -> ('x', 'y', 'n')."""
    if fmt in ("nnn", ""):
        return (fmt,) if fmt else ()
    if fmt == "xkk":
        return ("x", "kk")
    return tuple(fmt)


def _classify(word: int) -> Op:
    f = word >> 12
    if f == 0x0:
        if word == 0x00E0:
            return Op.CLS
        if word == 0x00EE:
            return Op.RET
        return Op.SYS
    if f in _FAMILY:
        return _FAMILY[f]
    low = word & 0xF
    if f == 0x5:
        return Op.SE_REG if low == 0 else Op.UNKNOWN
    if f == 0x8:
        return _ALU.get(low, Op.UNKNOWN)
    if f == 0x9:
        return Op.SNE_REG if low == 0 else Op.UNKNOWN
    if f == 0xE:
        return _KEY.get(word & 0xFF, Op.UNKNOWN)
    return _MISC.get(word & 0xFF, Op.UNKNOWN)


def decode(word: int) -> Instruction:
    """Classify a 16-bit word and pull out the operands its form uses."""
    word &= 0xFFFF
    op = _classify(word)
    if op is Op.UNKNOWN:
        return Instruction(Op.UNKNOWN, raw=word)
    fields = {
        "x": (word >> 8) & 0xF,
        "y": (word >> 4) & 0xF,
        "n": word & 0xF,
        "kk": word & 0xFF,
        "nnn": word & 0xFFF,
    }
    wanted = _operands(LAYOUT[op][1])
    return Instruction(op, **{name: fields[name] for name in wanted})


def encode(instr: Instruction) -> int:
    """Pack an instruction back into its 16-bit word.

    Raises ValueError when an operand is out of range, when a field the
    form does not use is nonzero, or for a SYS address that collides
    with CLS/RET.
    """
    if instr.op is Op.UNKNOWN:
        return instr.raw & 0xFFFF
    base, fmt = LAYOUT[instr.op]
    used = _operands(fmt)
    for name, limit in _FIELD_LIMITS.items():
        val = getattr(instr, name)
        if name not in used:
            if val:
                raise ValueError(f"{instr.op.name} has no {name} operand (got {val:#x})")
            continue
        if not 0 <= val <= limit:
            raise ValueError(f"{instr.op.name}: {name}={val:#x} out of range 0..{limit:#x}")
    if instr.op is Op.SYS and instr.nnn in (0x0E0, 0x0EE):
        raise ValueError(f"SYS {instr.nnn:#05x} encodes as {'CLS' if instr.nnn == 0x0E0 else 'RET'}")
    word = base
    if "x" in used:
        word |= instr.x << 8
    if "y" in used:
        word |= instr.y << 4
    if "n" in used:
        word |= instr.n
    if "kk" in used:
        word |= instr.kk
    if "nnn" in used:
        word |= instr.nnn
    return word


# -- Mnemonics --

_TEXT = {
    Op.SYS:      "SYS {nnn:#05x}",
    Op.CLS:      "CLS",
    Op.RET:      "RET",
    Op.JP:       "JP {nnn:#05x}",
    Op.CALL:     "CALL {nnn:#05x}",
    Op.SE_IMM:   "SE V{x:X}, {kk:#04x}",
    Op.SNE_IMM:  "SNE V{x:X}, {kk:#04x}",
    Op.SE_REG:   "SE V{x:X}, V{y:X}",
    Op.LD_IMM:   "LD V{x:X}, {kk:#04x}",
    Op.ADD_IMM:  "ADD V{x:X}, {kk:#04x}",
    Op.LD_REG:   "LD V{x:X}, V{y:X}",
    Op.OR:       "OR V{x:X}, V{y:X}",
    Op.AND:      "AND V{x:X}, V{y:X}",
    Op.XOR:      "XOR V{x:X}, V{y:X}",
    Op.ADD_REG:  "ADD V{x:X}, V{y:X}",
    Op.SUB:      "SUB V{x:X}, V{y:X}",
    Op.SHR:      "SHR V{x:X}, V{y:X}",
    Op.SUBN:     "SUBN V{x:X}, V{y:X}",
    Op.SHL:      "SHL V{x:X}, V{y:X}",
    Op.SNE_REG:  "SNE V{x:X}, V{y:X}",
    Op.LD_I:     "LD I, {nnn:#05x}",
    Op.JP_V0:    "JP V0, {nnn:#05x}",
    Op.RND:      "RND V{x:X}, {kk:#04x}",
    Op.DRW:      "DRW V{x:X}, V{y:X}, {n}",
    Op.SKP:      "SKP V{x:X}",
    Op.SKNP:     "SKNP V{x:X}",
    Op.LD_VX_DT: "LD V{x:X}, DT",
    Op.LD_VX_K:  "LD V{x:X}, K",
    Op.LD_DT_VX: "LD DT, V{x:X}",
    Op.LD_ST_VX: "LD ST, V{x:X}",
    Op.ADD_I:    "ADD I, V{x:X}",
    Op.LD_F:     "LD F, V{x:X}",
    Op.LD_B:     "LD B, V{x:X}",
    Op.STORE:    "LD [I], V{x:X}",
    Op.LOAD:     "LD V{x:X}, [I]",
    Op.UNKNOWN:  ".dw {raw:#06x}",
}


def format_instruction(instr: Instruction) -> str:
    return _TEXT[instr.op].format(x=instr.x, y=instr.y, n=instr.n,
                                  kk=instr.kk, nnn=instr.nnn, raw=instr.raw)


def disassemble(code: bytes | bytearray, base_addr: int = 0x200) -> list[tuple[int, int, str]]:
    """Disassemble a byte string into (addr, word, text) rows.

    A trailing odd byte is shown as a ``.db``.
    """
    rows = []
    for off in range(0, len(code) - 1, 2):
        word = (code[off] << 8) | code[off + 1]
        rows.append((base_addr + off, word, format_instruction(decode(word))))
    if len(code) % 2:
        rows.append((base_addr + len(code) - 1, code[-1], f".db {code[-1]:#04x}"))
    return rows
