from midi_to_famitone.dialects import CA65
from midi_to_famitone.kernel import Kernel, encode_note_value
from midi_to_famitone.models import NOTE_RELEASE, ChannelType, Effect, Instrument, Note, Pattern, Song
from midi_to_famitone.patterns import OVERFLOW, PatternPool, encode_pattern, encode_song


def _pattern(values: list[int | None], instrument: Instrument | None = None) -> Pattern:
    return Pattern([Note() if v is None else Note(v, instrument=instrument) for v in values])


def _encode(song: Song, kernel: Kernel, slot: int = 0, channel: int = 0, **kwargs):
    kwargs.setdefault("instrument_index", {})
    kwargs.setdefault("is_speed_channel", False)
    kwargs.setdefault("instrument", None)
    return encode_pattern(song, slot, channel, song.pattern_length, kernel=kernel, **kwargs)


def test_note_values_per_kernel() -> None:
    assert encode_note_value(Kernel.FAMITONE2_FS, ChannelType.SQUARE1, 30) == 21
    assert encode_note_value(Kernel.FAMITONE2_FS, ChannelType.SQUARE1, 1) == 1
    assert encode_note_value(Kernel.FAMITONE2_FS, ChannelType.NOISE, 5) == 5
    assert encode_note_value(Kernel.FAMITONE2_FS, ChannelType.DPCM, 25) == 13
    assert encode_note_value(Kernel.FAMITONE2_FS, ChannelType.SQUARE1, NOTE_RELEASE) == 0xF7
    assert encode_note_value(Kernel.FAMITONE2_FS, ChannelType.SQUARE1, 0) == 0
    assert encode_note_value(Kernel.FAMITONE2, ChannelType.SQUARE1, 30) == 36
    assert encode_note_value(Kernel.FAMITONE2, ChannelType.SQUARE1, 30, 1) == 37
    assert encode_note_value(Kernel.FAMITONE2, ChannelType.NOISE, 5) == 10


def test_empty_pattern_is_one_run() -> None:
    song = Song(0, "s", pattern_length=6)
    buffer, num_valid, _ = _encode(song, Kernel.FAMITONE2_FS)
    assert buffer == bytes([0x81 | (5 << 1)])
    assert num_valid == 1


def test_empty_runs_are_capped() -> None:
    song = Song(0, "s", pattern_length=64)
    buffer, _, _ = _encode(song, Kernel.FAMITONE2_FS)
    assert buffer == bytes([0x81 | (58 << 1), 0x81 | (4 << 1)])

    buffer, _, _ = _encode(song, Kernel.FAMITONE2)
    assert buffer == bytes([0x81 | (60 << 1), 0x81 | (2 << 1)])


def test_extended_notes_and_runs() -> None:
    song = Song(0, "s", pattern_length=6)
    song.channels[0].pattern_instances[0] = _pattern([30, None, 32, None, None, None])
    buffer, num_valid, _ = _encode(song, Kernel.FAMITONE2_FS)
    assert buffer == bytes([0x15, 0x81, 0x17, 0x85])
    assert num_valid == 4


def test_legacy_packs_note_empty_note() -> None:
    song = Song(0, "s", pattern_length=6)
    song.channels[0].pattern_instances[0] = _pattern([30, None, 32, None, None, None])
    buffer, num_valid, _ = _encode(song, Kernel.FAMITONE2)
    assert buffer == bytes([0x25, 0x28, 0x85])
    assert num_valid == 3


def test_instrument_change_only_when_different() -> None:
    lead = Instrument("lead")
    bass = Instrument("bass")
    song = Song(0, "s", pattern_length=6)
    song.channels[0].pattern_instances[0] = Pattern(
        [Note(30, instrument=lead), Note(31, instrument=lead), Note(32, instrument=bass)]
        + [Note(33), Note(), Note()]
    )
    buffer, _, instrument = _encode(
        song, Kernel.FAMITONE2_FS, instrument_index={id(lead): 0, id(bass): 3}, instrument=lead
    )
    assert buffer == bytes([21, 22, 0x80 | (3 << 1), 23, 24, 0x83])
    assert instrument is bass


def test_volume_column_only_in_extended_kernel() -> None:
    song = Song(0, "s", pattern_length=6)
    song.channels[0].pattern_instances[0] = Pattern(
        [Note(30, volume=8), Note(), Note(volume=4), Note(), Note(), Note()]
    )
    buffer, _, _ = _encode(song, Kernel.FAMITONE2_FS)
    assert buffer == bytes([0x78, 0x15, 0x81, 0x74, 0x87])

    buffer, _, _ = _encode(song, Kernel.FAMITONE2)
    assert buffer == bytes([0x24, 0x89])


def test_speed_command_on_speed_channel_only() -> None:
    song = Song(0, "s", pattern_length=6)
    song.channels[1].pattern_instances[0] = Pattern(
        [Note(), Note(), Note(effect=Effect.SPEED, effect_param=3), Note(), Note(), Note()]
    )
    buffer, _, _ = _encode(song, Kernel.FAMITONE2_FS, is_speed_channel=True)
    assert buffer == bytes([0x83, 0xFB, 0x03, 0x87])

    buffer, _, _ = _encode(song, Kernel.FAMITONE2_FS)
    assert buffer == bytes([0x8B])


def _dedup_song(first: list[int], repeated: list[int]) -> Song:
    song = Song(0, "s", pattern_length=6, length=3)
    shared = _pattern(repeated)
    song.channels[0].pattern_instances = [_pattern(first), shared, shared]
    return song


def test_repeated_pattern_becomes_back_reference() -> None:
    song = _dedup_song([30, 31, 32, 33, 34, 35], [40, 41, 42, 43, 44, 45])
    encoding = encode_song(
        song, 0, 0, 1, PatternPool(), kernel=Kernel.FAMITONE2_FS, instrument_index={}, emit=True
    )
    text = "\n".join(encoding.lines)

    assert text.count("@ref1:") == 1
    assert "\t.byte $ff,$06\n\t.word @ref1" in text
    assert encoding.pool[1] == bytes(range(31, 37))
    # speed 2 + 6 + 6 + backref 4 + loop 3, then 3 one-byte runs + loop per other channel
    assert encoding.size == 2 + 6 + 6 + 4 + 3 + 4 * (3 + 3)


def test_short_buffers_stay_inline() -> None:
    song = Song(0, "s", pattern_length=6, length=3)
    shared = _pattern([30, None, None, None, None, None])
    song.channels[0].pattern_instances = [shared, shared, shared]
    encoding = encode_song(
        song, 0, 0, 1, PatternPool(), kernel=Kernel.FAMITONE2_FS, instrument_index={}, emit=True
    )

    assert not any(line.startswith("\t.byte $ff") for line in encoding.lines)
    assert encoding.lines.count("\t.byte $15,$89") == 3


def test_dry_run_matches_emit_size_and_leaves_pool() -> None:
    song = _dedup_song([30, 31, 32, 33, 34, 35], [40, 41, 42, 43, 44, 45])
    pool = PatternPool()
    dry = encode_song(song, 0, 2, 1, pool, kernel=Kernel.FAMITONE2_FS, instrument_index={})
    real = encode_song(
        song, 0, 2, 1, pool, kernel=Kernel.FAMITONE2_FS, instrument_index={}, dialect=CA65, emit=True
    )
    assert dry.lines == []
    assert dry.size == real.size
    assert len(pool) == 0
    assert len(real.pool) > 0


def test_pool_is_shared_across_songs() -> None:
    song = _dedup_song([30, 31, 32, 33, 34, 35], [40, 41, 42, 43, 44, 45])
    first = encode_song(song, 0, 0, 1, PatternPool(), kernel=Kernel.FAMITONE2_FS, instrument_index={})
    second = encode_song(
        song, 1, 0, 1, first.pool, kernel=Kernel.FAMITONE2_FS, instrument_index={}, emit=True
    )
    assert "\t.word @ref0" in second.lines
    assert second.size < first.size


def test_pool_capacity_overflow() -> None:
    song = Song(0, "s", pattern_length=6)
    encoding = encode_song(
        song, 0, 0, 1, PatternPool(), kernel=Kernel.FAMITONE2_FS, instrument_index={}, max_packed_patterns=2
    )
    assert encoding.size == OVERFLOW
    assert encoding.overflow


def test_skip_truncates_pattern() -> None:
    song = Song(0, "s", pattern_length=6, length=2)
    song.channels[2].pattern_instances[0] = Pattern(
        [Note(30), Note(), Note(), Note(effect=Effect.SKIP), Note(), Note()]
    )
    encoding = encode_song(
        song, 0, 1, 1, PatternPool(), kernel=Kernel.FAMITONE2_FS, instrument_index={}, emit=True
    )
    # Channel 0, slot 0 covers the 3 rows before the skip.
    assert encoding.lines[2] == "@song0ch0loop:"
    assert encoding.lines[3] == "@ref0:"
    assert encoding.lines[4] == "\t.byte $85"


def test_jump_sets_loop_label_and_ends_channel() -> None:
    song = Song(0, "s", pattern_length=6, length=3)
    song.channels[0].pattern_instances = [
        _pattern([30, 31, 32, 33, 34, 35]),
        _pattern([40, 41, 42, 43, 44, 45]),
        Pattern([Note(effect=Effect.JUMP, effect_param=1)] + [Note() for _ in range(5)]),
    ]
    encoding = encode_song(
        song, 0, 1, 1, PatternPool(), kernel=Kernel.FAMITONE2_FS, instrument_index={}, emit=True
    )
    channel0 = encoding.lines[: encoding.lines.index("@song0ch1:")]
    assert channel0 == [
        "",
        "@song0ch0:",
        "@ref0:",
        "\t.byte $15,$16,$17,$18,$19,$1a",
        "@song0ch0loop:",
        "@ref1:",
        "\t.byte $1f,$20,$21,$22,$23,$24",
        "\t.byte $fd",
        "\t.word @song0ch0loop",
        "",
    ]


def test_split_song_skip_and_jump() -> None:
    song = Song(0, "s", pattern_length=12, length=3)
    song.channels[0].pattern_instances = [
        Pattern([Note(30), Note(), Note(), Note(effect=Effect.SKIP)] + [Note() for _ in range(8)]),
        _pattern(list(range(40, 52))),
        Pattern([Note(effect=Effect.JUMP, effect_param=1)] + [Note() for _ in range(11)]),
    ]
    assert song.split(2)
    encoding = encode_song(
        song, 0, 1, 2, PatternPool(), kernel=Kernel.FAMITONE2_FS, instrument_index={}, emit=True
    )
    channel0 = encoding.lines[: encoding.lines.index("@song0ch1:")]
    # The second half of the skipped pattern is dropped and the loop
    # lands on the first piece of source pattern 1.
    assert channel0 == [
        "",
        "@song0ch0:",
        "@ref0:",
        "\t.byte $15,$83",
        "@song0ch0loop:",
        "@ref1:",
        "\t.byte $1f,$20,$21,$22,$23,$24",
        "@ref2:",
        "\t.byte $25,$26,$27,$28,$29,$2a",
        "\t.byte $fd",
        "\t.word @song0ch0loop",
        "",
    ]
