#!/usr/bin/env python3
"""
Assembler tests: instruction forms, labels, directives and error reporting.

    python -m pytest test_asm.py
"""
import unittest

from asm import AsmError, assemble, parse_instruction
from opcodes import LAYOUT, Op, decode, format_instruction


def words(*ws: int) -> bytes:
    return b"".join(w.to_bytes(2, "big") for w in ws)


# Fill every operand field of a form with recognisable non-zero values
_FIELD_BITS = {"nnn": 0xABC, "xkk": 0xABC, "xyn": 0xABC, "xy": 0xAB0, "x": 0xA00, "": 0}


class TestInstructions(unittest.TestCase):
    def test_basic_program(self):
        src = """
            CLS
            LD V0, 5
            LD I, 0x2F0
            DRW V0, V1, 5
        """
        self.assertEqual(assemble(src), words(0x00E0, 0x6005, 0xA2F0, 0xD015))

    def test_every_form(self):
        cases = {
            "SYS 0x123": 0x0123,
            "RET": 0x00EE,
            "JP 0x345": 0x1345,
            "CALL 0x400": 0x2400,
            "SE V1, 0x10": 0x3110,
            "SNE V1, 0x10": 0x4110,
            "SE V1, V2": 0x5120,
            "SNE V1, V2": 0x9120,
            "ADD V3, 1": 0x7301,
            "LD V1, V2": 0x8120,
            "OR V1, V2": 0x8121,
            "AND V1, V2": 0x8122,
            "XOR V1, V2": 0x8123,
            "ADD V1, V2": 0x8124,
            "SUB V1, V2": 0x8125,
            "SHR V1, V2": 0x8126,
            "SUBN V1, V2": 0x8127,
            "SHL V1, V2": 0x812E,
            "JP V0, 0x300": 0xB300,
            "RND V2, 0xFF": 0xC2FF,
            "SKP VA": 0xEA9E,
            "SKNP VB": 0xEBA1,
            "LD V1, DT": 0xF107,
            "LD V1, K": 0xF10A,
            "LD DT, V2": 0xF215,
            "LD ST, V3": 0xF318,
            "ADD I, V8": 0xF81E,
            "LD F, V4": 0xF429,
            "LD B, V5": 0xF533,
            "LD [I], V6": 0xF655,
            "LD V7, [I]": 0xF765,
        }
        for text, word in cases.items():
            self.assertEqual(assemble(text), words(word), text)

    def test_single_operand_shift(self):
        self.assertEqual(assemble("SHR V1"), words(0x8116))
        self.assertEqual(assemble("shl vc"), words(0x8CCE))

    def test_number_formats(self):
        self.assertEqual(assemble("LD V0, 0b1010"), words(0x600A))
        self.assertEqual(assemble("LD V0, #1F"), words(0x601F))
        self.assertEqual(assemble("LD V0, 255"), words(0x60FF))

    def test_disassembly_text_reassembles(self):
        for op, (base, fmt) in LAYOUT.items():
            word = base | _FIELD_BITS[fmt]
            if op is Op.SYS:
                word = 0x0ABC
            ins = decode(word)
            self.assertIs(ins.op, op)
            self.assertEqual(parse_instruction(format_instruction(ins)), ins, op)


class TestLabelsAndDirectives(unittest.TestCase):
    def test_backward_label(self):
        self.assertEqual(assemble("loop:\n  JP loop"), words(0x1200))

    def test_forward_label(self):
        src = "JP end\nCLS\nend: RET"
        self.assertEqual(assemble(src), words(0x1204, 0x00E0, 0x00EE))

    def test_label_as_data(self):
        src = "LD I, sprite\nRET\nsprite: .db 0xF0, 0x90"
        self.assertEqual(assemble(src), words(0xA204, 0x00EE) + b"\xF0\x90")

    def test_base_address(self):
        self.assertEqual(assemble("here: JP here", base_addr=0x600), words(0x1600))

    def test_org_db_dw(self):
        src = """
            CLS           ; 0x200
            .org 0x206
            .db 1, 2
            .dw 0x1234
        """
        self.assertEqual(assemble(src), words(0x00E0) + bytes(4) + b"\x01\x02\x12\x34")

    def test_comments_and_blank_lines(self):
        self.assertEqual(assemble("; header\n\nCLS ; clear\n"), words(0x00E0))

    def test_listing(self):
        from contextlib import redirect_stdout
        import io

        out = io.StringIO()
        with redirect_stdout(out):
            assemble("start: CLS\nJP start", listing=True)
        text = out.getvalue()
        self.assertIn("start:", text)
        self.assertIn("200  00 E0", text)
        self.assertIn("202  12 00", text)


class TestErrors(unittest.TestCase):
    def assertAsmError(self, src: str, line: int = None):
        with self.assertRaises(AsmError) as cm:
            assemble(src)
        if line is not None:
            self.assertEqual(cm.exception.line, line)
        return cm.exception

    def test_byte_out_of_range(self):
        self.assertAsmError("LD V0, 0x100", line=1)

    def test_unknown_mnemonic(self):
        err = self.assertAsmError("CLS\nFOO V1", line=2)
        self.assertIn("FOO", str(err))

    def test_bad_register(self):
        self.assertAsmError("LD VG, 1")

    def test_duplicate_label(self):
        self.assertAsmError("a: CLS\na: RET", line=2)

    def test_unknown_label(self):
        self.assertAsmError("JP nowhere")

    def test_offset_jump_requires_v0(self):
        self.assertAsmError("JP V1, 0x200")

    def test_operand_count(self):
        self.assertAsmError("CLS V0")
        self.assertAsmError("DRW V0, V1")

    def test_org_backwards(self):
        self.assertAsmError("CLS\nCLS\n.org 0x200", line=3)

    def test_unknown_directive(self):
        self.assertAsmError(".text")

    def test_address_too_large(self):
        self.assertAsmError("JP 0x1000")

    def test_nibble_too_large(self):
        self.assertAsmError("DRW V0, V1, 16")


if __name__ == "__main__":
    unittest.main()
