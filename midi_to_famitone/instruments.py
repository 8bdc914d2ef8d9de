"""Instrument, DPCM sample and envelope tables."""

from dataclasses import dataclass, field

from .dialects import Dialect, format_bytes
from .envelope import encode_envelope
from .errors import ExportError
from .kernel import Kernel
from .models import (
    ENVELOPE_ARPEGGIO,
    ENVELOPE_COUNT,
    ENVELOPE_PITCH,
    ENVELOPE_VOLUME,
    SAMPLE_MAPPING_COUNT,
    Project,
)

DEFAULT_ENVELOPE = bytes([0xC0, 0x00, 0x00])
INSTRUMENT_FLAGS = 0x30
INSTRUMENT_ENTRY_SIZE = 8
SAMPLE_ENTRY_SIZE = 3
MAX_INSTRUMENTS = 64  # index is stored in 6 bits of the change opcode
MAX_SAMPLE_UNITS = 0xFF  # length byte counts 16-byte units
MAX_SAMPLE_BANK = 0x4000  # offset byte counts 64-byte units


@dataclass
class InstrumentTables:
    envelopes: list[bytes] = field(default_factory=list)
    # Per instrument: (volume, arpeggio, pitch) indices into `envelopes`.
    instrument_envelopes: list[tuple[int, int, int]] = field(default_factory=list)


def build_instrument_tables(project: Project, kernel: Kernel) -> InstrumentTables:
    """Compile every envelope and share identical streams project-wide.

    The map is keyed by the compiled bytes and keeps insertion order, so the
    default envelope is always index 0 and the numbering is reproducible.
    """
    if len(project.instruments) > MAX_INSTRUMENTS:
        raise ExportError(
            f"{len(project.instruments)} instruments used, the driver supports {MAX_INSTRUMENTS}"
        )

    unique: dict[bytes, int] = {DEFAULT_ENVELOPE: 0}
    tables = InstrumentTables([DEFAULT_ENVELOPE])

    for instrument in project.instruments:
        indices = []
        for role in range(ENVELOPE_COUNT):
            allow_releases = role == ENVELOPE_VOLUME and kernel.supports_releases
            processed = encode_envelope(instrument.envelope(role), allow_releases)
            if processed is None:
                processed = DEFAULT_ENVELOPE
            if processed not in unique:
                unique[processed] = len(tables.envelopes)
                tables.envelopes.append(processed)
            indices.append(unique[processed])
        tables.instrument_envelopes.append(
            (indices[ENVELOPE_VOLUME], indices[ENVELOPE_ARPEGGIO], indices[ENVELOPE_PITCH])
        )

    return tables


def _comment_text(text: str) -> str:
    return "".join(c if c.isprintable() else " " for c in text)


def _check_sample_bank(project: Project) -> None:
    for sample in project.samples:
        if len(sample.data) >> 4 > MAX_SAMPLE_UNITS:
            raise ExportError(
                f"sample '{sample.name}' is {len(sample.data)} bytes, "
                f"the driver supports {(MAX_SAMPLE_UNITS << 4) + 15}"
            )
    total = project.get_total_sample_size()
    if total > MAX_SAMPLE_BANK:
        raise ExportError(f"samples use {total} bytes, the driver supports {MAX_SAMPLE_BANK}")


def emit_instruments(
    project: Project,
    tables: InstrumentTables,
    dialect: Dialect,
) -> tuple[list[str], int]:
    if project.uses_samples:
        _check_sample_bank(project)

    lines: list[str] = []
    size = 0
    ll = dialect.local

    lines.append(f"{ll}instruments:")
    for i, instrument in enumerate(project.instruments):
        vol, arp, pitch = tables.instrument_envelopes[i]
        flags = (instrument.duty << 6) | INSTRUMENT_FLAGS
        lines.append(dialect.bytes_line([flags], f"instrument {i:02x} ({_comment_text(instrument.name)})"))
        lines.append(dialect.words_line([f"{ll}env{vol}", f"{ll}env{arp}", f"{ll}env{pitch}"]))
        lines.append(dialect.bytes_line([0]))
        size += INSTRUMENT_ENTRY_SIZE
    lines.append("")

    lines.append(f"{ll}samples:")
    if project.uses_samples:
        for i in range(1, SAMPLE_MAPPING_COUNT):
            mapping = project.samples_mapping[i]
            offset = 0
            sample_size = 0
            pitch_and_loop = 0
            name = ""
            if mapping is not None and mapping.sample is not None:
                offset = project.get_address_for_sample(mapping.sample) >> 6
                sample_size = len(mapping.sample.data) >> 4
                pitch_and_loop = mapping.pitch | (int(mapping.loop) << 6)
                name = f"({_comment_text(mapping.sample.name)})"
            lines.append(
                f"\t{dialect.db} ${offset & 0xFF:02x}+{dialect.lobyte}(FT_DPCM_PTR),"
                f"${sample_size & 0xFF:02x},${pitch_and_loop:02x}\t;{i} {name}"
            )
            size += SAMPLE_ENTRY_SIZE
        lines.append("")

    for idx, env in enumerate(tables.envelopes):
        lines.append(f"{ll}env{idx}:")
        lines.append(f"\t{dialect.db} {format_bytes(env)}")
        size += len(env)

    return lines, size
