"""Channel stream encoder and the song-wide packed pattern pool."""

from dataclasses import dataclass, field

from .dialects import CA65, Dialect
from .kernel import Kernel, encode_note_value
from .models import Effect, Instrument, Pattern, Song

OP_VOLUME = 0x70
OP_INSTRUMENT = 0x80
OP_EMPTY_RUN = 0x81
OP_SPEED = 0xFB
OP_LOOP = 0xFD
OP_REFERENCE = 0xFF

MIN_REF_SIZE = 4  # a reference costs 4 bytes
REFERENCE_SIZE = 4
LOOP_SIZE = 3

MAX_SONGS = (256 - 5) // 14
MAX_PATTERNS = 128 * MAX_SONGS
MAX_PACKED_PATTERNS = 5 * MAX_PATTERNS * MAX_SONGS

OVERFLOW = -1


class PatternPool:
    """Ordered list of every pattern buffer written so far in one export."""

    def __init__(self, buffers=None) -> None:
        self._buffers: list[bytes] = list(buffers or [])

    def __len__(self) -> int:
        return len(self._buffers)

    def __getitem__(self, idx: int) -> bytes:
        return self._buffers[idx]

    def copy(self) -> "PatternPool":
        return PatternPool(self._buffers)

    def find(self, buffer: bytes) -> int | None:
        for idx, existing in enumerate(self._buffers):
            if existing == buffer:
                return idx
        return None

    def add(self, buffer: bytes) -> int:
        self._buffers.append(bytes(buffer))
        return len(self._buffers) - 1


@dataclass
class SongEncoding:
    size: int
    pool: PatternPool
    lines: list[str] = field(default_factory=list)

    @property
    def overflow(self) -> bool:
        return self.size == OVERFLOW


class EffectIndex:
    """First effect parameter per (slot, row), scanning channels in order.

    Effects apply to the whole song row, whichever channel carries them.
    """

    def __init__(self, song: Song) -> None:
        self.pattern_length = song.pattern_length
        self.length = song.length
        self._params: dict[tuple[int, int, Effect], int] = {}
        for slot in range(song.length):
            for channel in song.channels:
                pattern = channel.pattern_instances[slot]
                if pattern is None:
                    continue
                for row, note in enumerate(pattern.notes[: song.pattern_length]):
                    if note.effect != Effect.NONE:
                        self._params.setdefault((slot, row, note.effect), note.effect_param)

    def param(self, slot: int, row: int, effect: Effect) -> int:
        return self._params.get((slot, row, effect), -1)

    def position(self, slot: int, effect: Effect) -> int:
        for row in range(self.pattern_length):
            if (slot, row, effect) in self._params:
                return row
        return -1

    def song_param(self, effect: Effect) -> int:
        for slot in range(self.length):
            for row in range(self.pattern_length):
                param = self.param(slot, row, effect)
                if param >= 0:
                    return param
        return -1


def encode_pattern(
    song: Song,
    slot: int,
    channel_idx: int,
    pattern_length: int,
    *,
    kernel: Kernel,
    instrument_index: dict[int, int],
    is_speed_channel: bool,
    instrument: Instrument | None,
    effects: EffectIndex | None = None,
) -> tuple[bytes, int, Instrument | None]:
    """Encode rows [0, pattern_length) of one channel slot.

    Returns the buffer, the number of rows the driver has to step through
    (written in back-references) and the instrument active afterwards.
    """
    if effects is None:
        effects = EffectIndex(song)
    channel = song.channels[channel_idx]
    pattern = channel.pattern_instances[slot] or Pattern.empty(song.pattern_length)
    notes = pattern.notes
    buf = bytearray()
    num_valid = pattern_length

    def speed_row(row: int) -> bool:
        return is_speed_channel and effects.param(slot, row, Effect.SPEED) >= 0

    i = 0
    while i < pattern_length:
        note = notes[i]

        if is_speed_channel:
            speed = effects.param(slot, i, Effect.SPEED)
            if speed >= 0:
                buf.append(OP_SPEED)
                buf.append(speed & 0xFF)

        i += 1

        if note.has_volume and kernel.supports_volume:
            buf.append(OP_VOLUME | (note.volume & 0x0F))

        if note.is_valid:
            if (
                note.is_musical
                and note.instrument is not None
                and note.instrument is not instrument
            ):
                buf.append(OP_INSTRUMENT | (instrument_index[id(note.instrument)] << 1))
                instrument = note.instrument

            repeat = 0
            if kernel is Kernel.FAMITONE2 and i < pattern_length - 1:
                # Note, empty, note: the empty row rides in the note's low bit.
                valid1 = notes[i].is_valid or speed_row(i)
                valid2 = notes[i + 1].is_valid or speed_row(i + 1)
                if not valid1 and valid2:
                    i += 1
                    num_valid -= 1
                    repeat = 1

            buf.append(encode_note_value(kernel, channel.type, note.value, repeat))
        else:
            num_empty = 0
            while i < pattern_length:
                empty = notes[i]
                if (
                    num_empty >= kernel.max_repeat_count
                    or empty.is_valid
                    or (empty.has_volume and kernel.supports_volume)
                    or speed_row(i)
                ):
                    break
                i += 1
                num_empty += 1

            num_valid -= num_empty
            buf.append(OP_EMPTY_RUN | (num_empty << 1))

    return bytes(buf), num_valid, instrument


def encode_song(
    song: Song,
    song_index: int,
    speed_channel: int,
    factor: int,
    pool: PatternPool,
    *,
    kernel: Kernel,
    instrument_index: dict[int, int],
    dialect: Dialect = CA65,
    emit: bool = False,
    max_packed_patterns: int = MAX_PACKED_PATTERNS,
) -> SongEncoding:
    """Encode every channel of `song` (already split by `factor`).

    In dry-run mode (`emit=False`) only the size is computed. The pool passed
    in is never modified; the returned encoding carries the extended copy.
    A size of OVERFLOW means the pool would exceed `max_packed_patterns`.
    """
    pool = pool.copy()
    lines: list[str] = []
    size = 0
    ll = dialect.local
    effects = EffectIndex(song)
    loop_point = max(0, effects.song_param(Effect.JUMP)) * factor
    if loop_point >= song.length:
        loop_point = 0

    for c in range(len(song.channels)):
        channel_label = f"song{song_index}ch{c}"
        if emit:
            lines.append("")
            lines.append(f"{ll}{channel_label}:")

        is_speed_channel = c == speed_channel
        instrument = None

        if is_speed_channel:
            if emit:
                lines.append(dialect.bytes_line([OP_SPEED, song.speed]))
            size += 2

        loop_line = len(lines)
        loop_emitted = False
        skipping = False

        for p in range(song.length):
            # After a skip, the remaining pieces of the split pattern are gone.
            if skipping and p % factor != 0:
                continue

            if emit and not loop_emitted and p >= loop_point:
                lines.append(f"{ll}{channel_label}loop:")
                loop_emitted = True

            jump_found = False
            pattern_length = effects.position(p, Effect.SKIP)
            if pattern_length >= 0:
                skipping = True
            else:
                skipping = False
                pattern_length = effects.position(p, Effect.JUMP)
                if pattern_length >= 0:
                    jump_found = True
                else:
                    pattern_length = song.pattern_length

            buffer, num_valid, instrument = encode_pattern(
                song,
                p,
                c,
                pattern_length,
                kernel=kernel,
                instrument_index=instrument_index,
                is_speed_channel=is_speed_channel,
                instrument=instrument,
                effects=effects,
            )

            if buffer:
                match = pool.find(buffer) if len(buffer) > MIN_REF_SIZE else None
                if match is None:
                    if len(pool) >= max_packed_patterns:
                        return SongEncoding(OVERFLOW, pool)
                    idx = pool.add(buffer)
                    size += len(buffer)
                    if emit:
                        lines.append(f"{ll}ref{idx}:")
                        lines.append(dialect.bytes_line(buffer))
                else:
                    if emit:
                        lines.append(dialect.bytes_line([OP_REFERENCE, num_valid]))
                        lines.append(dialect.words_line([f"{ll}ref{match}"]))
                    size += REFERENCE_SIZE

            if jump_found:
                break

        if emit:
            if not loop_emitted:
                # Forward jump past the end: loop the whole channel.
                lines.insert(loop_line, f"{ll}{channel_label}loop:")
            lines.append(dialect.bytes_line([OP_LOOP]))
            lines.append(dialect.words_line([f"{ll}{channel_label}loop"]))
        size += LOOP_SIZE

    return SongEncoding(size, pool, lines)
