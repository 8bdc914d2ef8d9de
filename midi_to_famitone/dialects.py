"""Assembler token vocabularies for the emitted music data.

Only the surface syntax changes between dialects; every byte is the same.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class Dialect:
    name: str
    db: str  # byte directive
    dw: str  # word directive
    local: str  # local label prefix
    lobyte: str  # low byte of an address

    def bytes_line(self, values, comment: str = "") -> str:
        line = f"\t{self.db} {format_bytes(values)}"
        return f"{line}\t;{comment}" if comment else line

    def words_line(self, operands) -> str:
        return f"\t{self.dw} " + ",".join(str(op) for op in operands)


NESASM = Dialect("nesasm", ".db", ".dw", ".", "LOW")
CA65 = Dialect("ca65", ".byte", ".word", "@", ".lobyte")
ASM6 = Dialect("asm6", "db", "dw", "@", "<")

DIALECTS = {d.name: d for d in (NESASM, CA65, ASM6)}


def get_dialect(name: str | Dialect) -> Dialect:
    if isinstance(name, Dialect):
        return name
    try:
        return DIALECTS[name.lower()]
    except KeyError:
        raise ValueError(
            f"unknown dialect '{name}' (expected one of {', '.join(DIALECTS)})"
        ) from None


def format_bytes(values) -> str:
    return ",".join(f"${b & 0xFF:02x}" for b in values)


def make_asm_name(name: str) -> str:
    out = "".join(c if c.isascii() and c.isalnum() else "_" for c in name.strip().lower())
    if not out or out[0].isdigit():
        out = "_" + out
    return out
