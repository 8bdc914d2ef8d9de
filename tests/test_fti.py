import struct

from midi_to_famitone.fti import load_fti
from midi_to_famitone.models import ENVELOPE_ARPEGGIO, ENVELOPE_PITCH, ENVELOPE_VOLUME


def _sequence(values: list[int], loop: int = -1, release: int = -1) -> bytes:
    return bytes([1]) + struct.pack("<iiii", len(values), loop, release, 0) + struct.pack(f"<{len(values)}b", *values)


def _fti(version: bytes = b"2.4", inst_type: int = 1, name: bytes = b"lead") -> bytes:
    return (
        b"FTI"
        + version
        + bytes([inst_type])
        + struct.pack("<i", len(name))
        + name
        + bytes([5])
        + _sequence([15, 10, 5], loop=1)
        + bytes([0])
        + _sequence([0, -2], release=1)
        + bytes([0])
        + _sequence([2])
    )


def test_loads_2a03_instrument() -> None:
    inst = load_fti(_fti())

    assert inst is not None
    assert inst.name == "lead"
    assert inst.duty == 2
    volume = inst.envelope(ENVELOPE_VOLUME)
    assert (volume.values, volume.loop, volume.release) == ([15, 10, 5], 1, -1)
    assert inst.envelope(ENVELOPE_ARPEGGIO) is None
    pitch = inst.envelope(ENVELOPE_PITCH)
    assert (pitch.values, pitch.release) == ([0, -2], 1)


def test_type_none_is_read_as_2a03() -> None:
    assert load_fti(_fti(inst_type=0)) is not None


def test_loads_from_path(tmp_path) -> None:
    path = tmp_path / "lead.fti"
    path.write_bytes(_fti())
    assert load_fti(str(path)).name == "lead"


def test_soft_failures() -> None:
    assert load_fti(b"XYZ2.4\x01") is None
    assert load_fti(b"FTI") is None
    assert load_fti(_fti(version=b"2.5")) is None
    assert load_fti(_fti(version=b"x.y")) is None
    assert load_fti(_fti(inst_type=2)) is None
    assert load_fti(_fti()[:-3]) is None
    assert load_fti(b"FTI2.4\x01" + struct.pack("<i", 300) + b"x" * 300) is None
