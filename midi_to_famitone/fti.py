"""FamiTracker instrument (.fti) reader, 2A03 instruments only.

Malformed or unsupported files give None instead of raising.
"""

import struct

from .models import (
    ENVELOPE_ARPEGGIO,
    ENVELOPE_PITCH,
    ENVELOPE_VOLUME,
    Envelope,
    Instrument,
)

FTI_HEADER = b"FTI"
FTI_VERSION = "2.4"
MAX_NAME_LENGTH = 256
MAX_SEQUENCE_ITEMS = 253

INST_NONE = 0
INST_2A03 = 1

SEQ_VOLUME = 0
SEQ_ARPEGGIO = 1
SEQ_PITCH = 2
SEQ_HIPITCH = 3
SEQ_DUTYCYCLE = 4

_SEQUENCE_ROLES = {
    SEQ_VOLUME: ENVELOPE_VOLUME,
    SEQ_ARPEGGIO: ENVELOPE_ARPEGGIO,
    SEQ_PITCH: ENVELOPE_PITCH,
}


class _Reader:
    def __init__(self, data: bytes, pos: int = 0) -> None:
        self.data = data
        self.pos = pos

    def read(self, length: int) -> bytes | None:
        if length < 0 or self.pos + length > len(self.data):
            return None
        chunk = self.data[self.pos:self.pos + length]
        self.pos += length
        return chunk

    def byte(self) -> int | None:
        chunk = self.read(1)
        return None if chunk is None else chunk[0]

    def int32(self) -> int | None:
        chunk = self.read(4)
        return None if chunk is None else struct.unpack("<i", chunk)[0]


def _check_format(data: bytes) -> bool:
    prefix = len(FTI_HEADER) + len(FTI_VERSION)
    if len(data) < prefix + 1 or not data.startswith(FTI_HEADER):
        return False
    try:
        version = float(data[len(FTI_HEADER):prefix].decode("ascii"))
    except (UnicodeDecodeError, ValueError):
        return False
    return version <= float(FTI_VERSION)


def _read_sequence(reader: _Reader) -> Envelope | None:
    count = reader.int32()
    if count is None or count < 0 or count > MAX_SEQUENCE_ITEMS:
        return None
    loop = reader.int32()
    release = reader.int32()
    setting = reader.int32()
    if loop is None or release is None or setting is None:
        return None
    raw = reader.read(count)
    if raw is None:
        return None
    values = list(struct.unpack(f"<{count}b", raw))
    loop = loop if 0 <= loop < count else -1
    release = release if 0 <= release < count else -1
    return Envelope(values, loop, release)


def _convert_2a03(reader: _Reader) -> Instrument | None:
    name_length = reader.int32()
    if name_length is None or not 0 <= name_length < MAX_NAME_LENGTH:
        return None
    name = reader.read(name_length)
    if name is None:
        return None
    instrument = Instrument(name.decode("ascii", errors="replace"))

    seq_count = reader.byte()
    if seq_count is None:
        return None
    for seq in range(seq_count):
        enabled = reader.byte()
        if enabled is None:
            return None
        if enabled != 1:
            continue
        env = _read_sequence(reader)
        if env is None:
            return None
        if seq in _SEQUENCE_ROLES:
            instrument.envelopes[_SEQUENCE_ROLES[seq]] = env
        elif seq == SEQ_DUTYCYCLE and env.values:
            instrument.duty = env.values[0] & 0x03

    return instrument


def load_fti(source) -> Instrument | None:
    """Read a .fti file (path or raw bytes) into an Instrument."""
    if isinstance(source, (bytes, bytearray)):
        data = bytes(source)
    else:
        with open(source, "rb") as f:
            data = f.read()

    if not _check_format(data):
        return None

    reader = _Reader(data, len(FTI_HEADER) + len(FTI_VERSION))
    inst_type = reader.byte()
    if inst_type == INST_NONE:
        inst_type = INST_2A03
    if inst_type != INST_2A03:
        return None
    return _convert_2a03(reader)
