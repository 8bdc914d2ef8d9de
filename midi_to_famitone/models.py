"""Song / pattern / instrument model consumed by the FamiTone2 exporter."""

import copy
from dataclasses import dataclass, field
from enum import IntEnum

NOTE_STOP = 0x00
NOTE_MIN = 1  # C0
NOTE_MAX = 96  # B7
NOTE_RELEASE = 0xF7
NOTE_INVALID = 0xFF  # empty row
VOLUME_MAX = 15

DPCM_NOTE_MIN = 0x0C
SAMPLE_MAPPING_COUNT = 64
SAMPLE_ALIGN = 64

MAX_SONG_LENGTH = 256

ENVELOPE_VOLUME = 0
ENVELOPE_ARPEGGIO = 1
ENVELOPE_PITCH = 2
ENVELOPE_COUNT = 3


class ChannelType(IntEnum):
    SQUARE1 = 0
    SQUARE2 = 1
    TRIANGLE = 2
    NOISE = 3
    DPCM = 4


CHANNEL_COUNT = len(ChannelType)


class Effect(IntEnum):
    NONE = 0
    JUMP = 1
    SKIP = 2
    SPEED = 3


@dataclass
class Envelope:
    values: list[int] = field(default_factory=list)
    loop: int = -1
    release: int = -1

    @property
    def length(self) -> int:
        return len(self.values)

    @property
    def is_empty(self) -> bool:
        return not self.values


@dataclass(eq=False)
class Instrument:
    """Duty cycle plus one envelope slot per role (volume, arpeggio, pitch).

    Instruments compare by identity: notes share them and the exporter maps
    each one to its table index.
    """

    name: str
    duty: int = 0
    envelopes: list[Envelope | None] = field(
        default_factory=lambda: [None] * ENVELOPE_COUNT
    )

    def envelope(self, role: int) -> Envelope | None:
        return self.envelopes[role]


@dataclass
class Note:
    value: int = NOTE_INVALID
    volume: int | None = None
    instrument: Instrument | None = None
    effect: Effect = Effect.NONE
    effect_param: int = 0

    @property
    def is_valid(self) -> bool:
        return self.value != NOTE_INVALID

    @property
    def is_stop(self) -> bool:
        return self.value == NOTE_STOP

    @property
    def is_release(self) -> bool:
        return self.value == NOTE_RELEASE

    @property
    def is_musical(self) -> bool:
        return NOTE_MIN <= self.value <= NOTE_MAX

    @property
    def has_volume(self) -> bool:
        return self.volume is not None


@dataclass(eq=False)
class Pattern:
    notes: list[Note]

    @classmethod
    def empty(cls, length: int) -> "Pattern":
        return cls([Note() for _ in range(length)])


@dataclass
class Channel:
    type: ChannelType
    pattern_instances: list[Pattern | None] = field(default_factory=list)

    def unique_patterns(self) -> list[Pattern]:
        seen: dict[int, Pattern] = {}
        for pattern in self.pattern_instances:
            if pattern is not None and id(pattern) not in seen:
                seen[id(pattern)] = pattern
        return list(seen.values())


@dataclass
class Song:
    id: int
    name: str
    tempo: int = 150
    speed: int = 6
    pattern_length: int = 64
    length: int = 1
    channels: list[Channel] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.channels:
            self.channels = [
                Channel(ChannelType(c), [None] * self.length) for c in range(CHANNEL_COUNT)
            ]

    def clone(self) -> "Song":
        # Instruments belong to the project, the copy keeps sharing them.
        memo: dict[int, object] = {}
        for channel in self.channels:
            for pattern in channel.unique_patterns():
                for note in pattern.notes:
                    if note.instrument is not None:
                        memo[id(note.instrument)] = note.instrument
        return copy.deepcopy(self, memo)

    def split(self, factor: int) -> bool:
        """Cut every pattern into `factor` equal sub-patterns.

        Sub-patterns cut from the same source pattern are shared, so slots
        that referenced one pattern still reference identical pieces.
        """
        if factor < 1 or self.pattern_length % factor != 0:
            return False
        if factor == 1:
            return True
        new_length = self.length * factor
        if new_length > MAX_SONG_LENGTH:
            return False

        sub_length = self.pattern_length // factor
        for channel in self.channels:
            pieces: dict[tuple[int, int], Pattern] = {}
            instances: list[Pattern | None] = []
            for pattern in channel.pattern_instances:
                for k in range(factor):
                    if pattern is None:
                        instances.append(None)
                        continue
                    key = (id(pattern), k)
                    if key not in pieces:
                        pieces[key] = Pattern(
                            pattern.notes[k * sub_length:(k + 1) * sub_length]
                        )
                    instances.append(pieces[key])
            channel.pattern_instances = instances

        self.pattern_length = sub_length
        self.length = new_length
        return True


@dataclass(eq=False)
class DPCMSample:
    name: str
    data: bytes


@dataclass
class SampleMapping:
    sample: DPCMSample | None = None
    pitch: int = 15
    loop: bool = False


@dataclass
class Project:
    name: str = "untitled"
    songs: list[Song] = field(default_factory=list)
    instruments: list[Instrument] = field(default_factory=list)
    samples: list[DPCMSample] = field(default_factory=list)
    samples_mapping: list[SampleMapping | None] = field(
        default_factory=lambda: [None] * SAMPLE_MAPPING_COUNT
    )

    def clone(self) -> "Project":
        # deepcopy memoizes, so notes keep sharing the copied instruments.
        return copy.deepcopy(self)

    def create_song(self, name: str, **kwargs) -> Song:
        song_id = max((s.id for s in self.songs), default=-1) + 1
        song = Song(song_id, name, **kwargs)
        self.songs.append(song)
        return song

    def create_instrument(self, name: str, duty: int = 0) -> Instrument:
        instrument = Instrument(name, duty)
        self.instruments.append(instrument)
        return instrument

    def delete_song(self, song: Song) -> None:
        self.songs.remove(song)

    def delete_unused_instruments(self) -> None:
        used: set[int] = set()
        for song in self.songs:
            for channel in song.channels:
                for pattern in channel.unique_patterns():
                    for note in pattern.notes:
                        if note.instrument is not None:
                            used.add(id(note.instrument))
        self.instruments = [inst for inst in self.instruments if id(inst) in used]

    def map_dpcm_sample(
        self, note_value: int, sample: DPCMSample, pitch: int = 15, loop: bool = False
    ) -> None:
        idx = note_value - DPCM_NOTE_MIN
        if idx < 1 or idx >= SAMPLE_MAPPING_COUNT:
            raise ValueError(f"note {note_value} has no DPCM mapping slot")
        if sample not in self.samples:
            self.samples.append(sample)
        self.samples_mapping[idx] = SampleMapping(sample, pitch, loop)

    @property
    def uses_samples(self) -> bool:
        return any(m is not None and m.sample is not None for m in self.samples_mapping)

    def get_address_for_sample(self, sample: DPCMSample) -> int:
        addr = 0
        for s in self.samples:
            if s is sample:
                return addr
            addr += _align(len(s.data), SAMPLE_ALIGN)
        raise ValueError(f"sample '{sample.name}' is not part of the project")

    def get_total_sample_size(self) -> int:
        return sum(_align(len(s.data), SAMPLE_ALIGN) for s in self.samples)

    def build_sample_blob(self) -> bytes:
        blob = bytearray(self.get_total_sample_size())
        for sample in self.samples:
            addr = self.get_address_for_sample(sample)
            blob[addr:addr + len(sample.data)] = sample.data
        return bytes(blob)


def _align(size: int, align: int) -> int:
    return (size + align - 1) // align * align
