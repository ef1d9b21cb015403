"""
CHIP-8 Quirk Configuration
===========================
The historical CHIP-8 interpreters disagree on a handful of opcode
details.  Each disagreement is a named toggle here; the executor looks
them up on every affected instruction and never changes them.

Defaults reproduce the original COSMAC VIP interpreter, which is what
the CHIP-8 quirks test ROM expects from a plain "CHIP-8" target.

Usage:
    from quirks import QuirkConfig, preset
    q = preset("schip").with_overrides(clipping=False)
"""

from __future__ import annotations
from dataclasses import dataclass, fields, replace

PROGRAM_START = 0x200   # standard load origin
ETI660_START  = 0x600   # ETI-660 load origin
LOAD_ADDRESSES = (PROGRAM_START, ETI660_START)


@dataclass(frozen=True)
class QuirkConfig:
    """Immutable quirk selection, fixed for the lifetime of a VM."""

    vf_reset: bool = True          # 8xy1/8xy2/8xy3 clear VF
    memory_increment: bool = True  # Fx55/Fx65 leave I = I + x + 1
    display_wait: bool = True      # Dxyn waits for the next frame
    clipping: bool = True          # sprites clip at the edges (else wrap)
    shifting: bool = False         # 8xy6/8xyE shift Vx in place (else Vy)
    jumping: bool = False          # Bxnn adds Vx (else V0)
    load_address: int = PROGRAM_START
    strict: bool = False           # unknown opcodes are fatal

    def with_overrides(self, **changes) -> QuirkConfig:
        """Return a copy with some fields replaced.  ``None`` values are ignored."""
        changes = {k: v for k, v in changes.items() if v is not None}
        return replace(self, **changes)

    def describe(self) -> str:
        parts = []
        for f in fields(self):
            val = getattr(self, f.name)
            if f.name == "load_address":
                parts.append(f"{f.name}={val:#05x}")
            else:
                parts.append(f"{f.name}={'on' if val else 'off'}")
        return " ".join(parts)


# Quirk-only presets: none of them enable superset instructions.
PRESETS: dict[str, QuirkConfig] = {
    "chip8": QuirkConfig(),
    "schip": QuirkConfig(vf_reset=False, memory_increment=False,
                         display_wait=False, clipping=True,
                         shifting=True, jumping=True),
    "xochip": QuirkConfig(vf_reset=False, memory_increment=True,
                          display_wait=False, clipping=False,
                          shifting=False, jumping=False),
    "eti660": QuirkConfig(load_address=ETI660_START),
}


def preset(name: str) -> QuirkConfig:
    """Look up a named preset (case-insensitive)."""
    try:
        return PRESETS[name.lower()]
    except KeyError:
        known = ", ".join(sorted(PRESETS))
        raise ValueError(f"Unknown quirk preset {name!r} (known: {known})") from None
