"""Two-pass assembler for the exporter's own output.

Understands exactly what the exporter writes: labels, byte and word
directives with `$hex`, decimal, label, `label-N` and
`$hex+lo(FT_DPCM_PTR)` operands. Enough to link the music data without an
external assembler.
"""

import re

from .dialects import ASM6, Dialect, get_dialect
from .errors import AssemblerError

DPCM_SYMBOL = "FT_DPCM_PTR"
SYMBOL_RE = re.compile(r"[A-Za-z_.@][A-Za-z0-9_.@]*(-[0-9]+)?")


def _parse_number(token: str) -> int:
    try:
        if token.startswith("$"):
            return int(token[1:].strip(), 16)
        return int(token, 10)
    except ValueError:
        raise AssemblerError(f"bad operand '{token}'") from None


class Assembler:
    def __init__(self, dialect: Dialect | str = ASM6) -> None:
        self.dialect = get_dialect(dialect)
        self.labels: dict[str, int] = {}
        # (operand, offset in output, width in bytes)
        self.patches: list[tuple[str, int, int]] = []

    def assemble(self, text: str, song_offset: int = 0, dpcm_offset: int = 0) -> bytes:
        self.labels = {}
        self.patches = []
        out = bytearray()

        for raw in text.splitlines():
            line = raw.split(";", 1)[0].strip()
            if not line:
                continue

            directive, _, operands = line.partition(" ")
            if directive in (self.dialect.db, self.dialect.dw):
                width = 1 if directive == self.dialect.db else 2
                for operand in operands.split(","):
                    operand = operand.strip()
                    if not operand:
                        continue
                    value = self._operand(operand, len(out), width, dpcm_offset)
                    out.extend((value & 0xFFFF).to_bytes(2, "little")[:width])
            elif line.endswith(":"):
                self.labels[line[:-1]] = len(out) + song_offset
            else:
                raise AssemblerError(f"cannot assemble line '{raw.strip()}'")

        for operand, offset, width in self.patches:
            value = self._resolve(operand)
            out[offset:offset + width] = (value & 0xFFFF).to_bytes(2, "little")[:width]

        return bytes(out)

    def _operand(self, operand: str, offset: int, width: int, dpcm_offset: int) -> int:
        if operand in self.labels:
            return self.labels[operand]
        if DPCM_SYMBOL in operand:
            base = operand.split("+", 1)[0].strip()
            return _parse_number(base) + ((dpcm_offset & 0x3FFF) >> 6)
        if SYMBOL_RE.fullmatch(operand):
            self.patches.append((operand, offset, width))
            return 0
        return _parse_number(operand)

    def _resolve(self, operand: str) -> int:
        name, _, delta = operand.partition("-")
        if name not in self.labels:
            raise AssemblerError(f"undefined label '{name}'")
        return self.labels[name] - (int(delta) if delta else 0)


def assemble(
    text: str,
    song_offset: int = 0,
    dpcm_offset: int = 0,
    dialect: Dialect | str = ASM6,
) -> bytes:
    return Assembler(dialect).assemble(text, song_offset, dpcm_offset)
