"""
CHIP-8 Assembler
=================
Translates Cowgod-style assembly text into a CHIP-8 program image.

Supports:
  - Labels ('name:' on its own line or in front of an instruction)
  - All 35 instruction forms (CLS, RET, SYS, JP, CALL, SE, SNE, LD, ADD,
    OR, AND, XOR, SUB, SHR, SUBN, SHL, RND, DRW, SKP, SKNP)
  - Immediate literals (decimal, hex with 0x prefix, binary with 0b)
  - Comments (';' to end of line)
  - .org, .db, .dw directives (.dw is big-endian, like opcodes)

Usage:
  from asm import assemble
  program = assemble(source_text)          # bytes for 0x200
"""

from __future__ import annotations
import re

from opcodes import Instruction, Op, encode

_LABEL_RE = re.compile(r"^([A-Za-z_.][\w.]*)\s*:(.*)$")

# Register-to-register ALU forms
ALU_OPS = {
    "or": Op.OR, "and": Op.AND, "xor": Op.XOR,
    "sub": Op.SUB, "subn": Op.SUBN,
}

# LD with a special left or right operand: (left, right) -> Op
_LD_SPECIAL = {
    ("V", "DT"): Op.LD_VX_DT,
    ("V", "K"): Op.LD_VX_K,
    ("DT", "V"): Op.LD_DT_VX,
    ("ST", "V"): Op.LD_ST_VX,
    ("F", "V"): Op.LD_F,
    ("B", "V"): Op.LD_B,
    ("[I]", "V"): Op.STORE,
    ("V", "[I]"): Op.LOAD,
}

# ---------------------------------------------------------------------------
#  Parser helpers
# ---------------------------------------------------------------------------

class AsmError(Exception):
    def __init__(self, line: int, msg: str):
        self.line = line
        super().__init__(f"Line {line}: {msg}")


def _parse_reg(tok: str) -> int:
    """Parse 'V0'-'VF' (either case). Returns register index."""
    tok = tok.strip().upper()
    if len(tok) == 2 and tok[0] == "V" and tok[1] in "0123456789ABCDEF":
        return int(tok[1], 16)
    raise ValueError(f"Invalid register: {tok!r}")


def _is_reg(tok: str) -> bool:
    try:
        _parse_reg(tok)
    except ValueError:
        return False
    return True


def _parse_imm(tok: str) -> int:
    """Parse an immediate value (decimal, 0x hex, 0b binary)."""
    tok = tok.strip()
    if tok.startswith("#"):
        return int(tok[1:], 16)
    return int(tok, 0)


def _split_ops(rest: str) -> list[str]:
    """Split operand string by comma, trimming whitespace."""
    return [s.strip() for s in rest.split(",") if s.strip()]


def _split_mnemonic(text: str) -> tuple[str, str]:
    """Split 'MNEM operands' -> (mnem, operands_str)."""
    parts = text.split(None, 1)
    if len(parts) == 1:
        return parts[0], ""
    return parts[0], parts[1]


def _operand_kind(tok: str) -> str:
    """Classify an LD operand: 'V', 'I', 'DT', 'ST', 'K', 'F', 'B', '[I]' or 'imm'."""
    up = tok.upper().replace(" ", "")
    if _is_reg(up):
        return "V"
    if up in ("I", "DT", "ST", "K", "F", "B", "[I]"):
        return up
    return "imm"


def _resolve(tok: str, labels: dict[str, int]) -> int:
    """Resolve a token that is either an immediate or a label reference."""
    tok = tok.strip()
    if tok in labels:
        return labels[tok]
    try:
        return _parse_imm(tok)
    except ValueError:
        raise ValueError(f"Unknown label or bad number: {tok!r}") from None


# ---------------------------------------------------------------------------
#  Assembler
# ---------------------------------------------------------------------------

def _clean(source: str) -> list[tuple[int, str]]:
    """Strip comments and blank lines; split leading labels onto their own line."""
    cleaned: list[tuple[int, str]] = []
    for i, raw in enumerate(source.split("\n"), 1):
        text = raw.split(";", 1)[0].strip()
        while text:
            m = _LABEL_RE.match(text)
            if not m:
                cleaned.append((i, text))
                break
            cleaned.append((i, m.group(1) + ":"))
            text = m.group(2).strip()
    return cleaned


def assemble(source: str, base_addr: int = 0x200, listing: bool = False) -> bytes:
    """
    Two-pass assembler.
    Pass 1: collect labels (every instruction is two bytes).
    Pass 2: emit words with resolved addresses.
    If listing=True, print an address/hex/source listing to stdout.
    """
    cleaned = _clean(source)

    # ---- Pass 1: label collection and size computation ----
    labels: dict[str, int] = {}
    sizes: list[tuple[int, str, int]] = []  # (line_no, text, size_bytes)
    pc = base_addr

    for lineno, text in cleaned:
        if text.endswith(":"):
            lbl = text[:-1].strip()
            if lbl in labels:
                raise AsmError(lineno, f"Duplicate label: {lbl}")
            labels[lbl] = pc
            continue

        lower = text.lower()
        try:
            if lower.startswith(".org"):
                target = _parse_imm(text[4:])
                if target < pc:
                    raise AsmError(lineno, f".org {target:#x} is behind current address {pc:#x}")
                sizes.append((lineno, text, target - pc))
                pc = target
                continue
            if lower.startswith(".db"):
                n = len(_split_ops(text[3:]))
            elif lower.startswith(".dw"):
                n = 2 * len(_split_ops(text[3:]))
            elif lower.startswith("."):
                raise AsmError(lineno, f"Unknown directive: {text.split()[0]}")
            else:
                n = 2
        except ValueError as e:
            raise AsmError(lineno, str(e)) from None
        sizes.append((lineno, text, n))
        pc += n

    # ---- Pass 2: emit bytes ----
    code = bytearray()
    pc = base_addr
    listing_lines = []  # (addr, hex_bytes, source_text)

    for lineno, text, sz in sizes:
        lower = text.lower()
        try:
            if lower.startswith(".org"):
                emitted = bytes(sz)
            elif lower.startswith(".db"):
                emitted = bytes(_byte(_resolve(tok, labels)) for tok in _split_ops(text[3:]))
            elif lower.startswith(".dw"):
                emitted = b"".join(_word(_resolve(tok, labels)).to_bytes(2, "big")
                                   for tok in _split_ops(text[3:]))
            else:
                emitted = encode(parse_instruction(text, labels)).to_bytes(2, "big")
        except ValueError as e:
            raise AsmError(lineno, str(e)) from None
        if listing and not lower.startswith(".org"):
            hexstr = " ".join(f"{b:02X}" for b in emitted[:8])
            if len(emitted) > 8:
                hexstr += " ..."
            listing_lines.append((pc, hexstr, text))
        code.extend(emitted)
        pc += sz

    if listing:
        addr_labels: dict[int, list[str]] = {}
        for lbl, addr in labels.items():
            addr_labels.setdefault(addr, []).append(lbl)
        for addr, hexstr, src in listing_lines:
            for lbl in addr_labels.pop(addr, []):
                print(f"              {lbl}:")
            print(f"  {addr:03X}  {hexstr:<12s}  {src}")

    return bytes(code)


def _byte(v: int) -> int:
    if not -0x80 <= v <= 0xFF:
        raise ValueError(f"Byte value {v} out of range")
    return v & 0xFF


def _word(v: int) -> int:
    if not -0x8000 <= v <= 0xFFFF:
        raise ValueError(f"Word value {v} out of range")
    return v & 0xFFFF


# ---------------------------------------------------------------------------
#  Instruction parsing (pass 2)
# ---------------------------------------------------------------------------

def _expect(ops: list[str], count: int, mnem: str):
    if len(ops) != count:
        raise ValueError(f"{mnem.upper()} takes {count} operand(s), got {len(ops)}")


def parse_instruction(text: str, labels: dict[str, int] | None = None) -> Instruction:
    """Parse one instruction line into an Instruction."""
    labels = labels or {}
    mnem, rest = _split_mnemonic(text)
    m = mnem.lower()
    ops = _split_ops(rest)

    if m in ("cls", "ret"):
        _expect(ops, 0, m)
        return Instruction(Op.CLS if m == "cls" else Op.RET)

    if m in ("sys", "call"):
        _expect(ops, 1, m)
        return Instruction(Op.SYS if m == "sys" else Op.CALL, nnn=_resolve(ops[0], labels))

    if m == "jp":
        if len(ops) == 2:
            if _parse_reg(ops[0]) != 0:
                raise ValueError("JP with an offset register must use V0")
            return Instruction(Op.JP_V0, nnn=_resolve(ops[1], labels))
        _expect(ops, 1, m)
        return Instruction(Op.JP, nnn=_resolve(ops[0], labels))

    if m in ("se", "sne"):
        _expect(ops, 2, m)
        x = _parse_reg(ops[0])
        if _is_reg(ops[1]):
            return Instruction(Op.SE_REG if m == "se" else Op.SNE_REG, x=x, y=_parse_reg(ops[1]))
        return Instruction(Op.SE_IMM if m == "se" else Op.SNE_IMM, x=x, kk=_byte(_resolve(ops[1], labels)))

    if m == "add":
        _expect(ops, 2, m)
        if ops[0].upper() == "I":
            return Instruction(Op.ADD_I, x=_parse_reg(ops[1]))
        x = _parse_reg(ops[0])
        if _is_reg(ops[1]):
            return Instruction(Op.ADD_REG, x=x, y=_parse_reg(ops[1]))
        return Instruction(Op.ADD_IMM, x=x, kk=_byte(_resolve(ops[1], labels)))

    if m in ALU_OPS:
        _expect(ops, 2, m)
        return Instruction(ALU_OPS[m], x=_parse_reg(ops[0]), y=_parse_reg(ops[1]))

    if m in ("shr", "shl"):
        if len(ops) not in (1, 2):
            raise ValueError(f"{m.upper()} takes 1 or 2 operands, got {len(ops)}")
        x = _parse_reg(ops[0])
        y = _parse_reg(ops[1]) if len(ops) == 2 else x
        return Instruction(Op.SHR if m == "shr" else Op.SHL, x=x, y=y)

    if m == "rnd":
        _expect(ops, 2, m)
        return Instruction(Op.RND, x=_parse_reg(ops[0]), kk=_byte(_resolve(ops[1], labels)))

    if m == "drw":
        _expect(ops, 3, m)
        return Instruction(Op.DRW, x=_parse_reg(ops[0]), y=_parse_reg(ops[1]),
                           n=_resolve(ops[2], labels))

    if m in ("skp", "sknp"):
        _expect(ops, 1, m)
        return Instruction(Op.SKP if m == "skp" else Op.SKNP, x=_parse_reg(ops[0]))

    if m == "ld":
        _expect(ops, 2, m)
        left, right = _operand_kind(ops[0]), _operand_kind(ops[1])
        if left == "V" and right == "V":
            return Instruction(Op.LD_REG, x=_parse_reg(ops[0]), y=_parse_reg(ops[1]))
        if left == "V" and right == "imm":
            return Instruction(Op.LD_IMM, x=_parse_reg(ops[0]), kk=_byte(_resolve(ops[1], labels)))
        if left == "I" and right == "imm":
            return Instruction(Op.LD_I, nnn=_resolve(ops[1], labels))
        op = _LD_SPECIAL.get((left, right))
        if op is None:
            raise ValueError(f"Unsupported LD form: {text}")
        reg = ops[0] if left == "V" else ops[1]
        return Instruction(op, x=_parse_reg(reg))

    raise ValueError(f"Unknown mnemonic: {mnem}")
