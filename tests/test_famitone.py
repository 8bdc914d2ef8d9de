import pytest

from midi_to_famitone.assembler import Assembler
from midi_to_famitone.dialects import ASM6
from midi_to_famitone.errors import ExportError, SongTooComplexError
from midi_to_famitone.famitone import export_text, get_bytes, prepare_project, save_asm, tempo_words
from midi_to_famitone.kernel import Kernel
from midi_to_famitone.models import (
    ENVELOPE_VOLUME,
    NOTE_INVALID,
    NOTE_RELEASE,
    DPCMSample,
    Envelope,
    Note,
    Pattern,
    Project,
)

BASE = 0x8000


def _one_note_project(name: str = "demo") -> Project:
    project = Project(name)
    lead = project.create_instrument("lead", duty=2)
    song = project.create_song("tune", pattern_length=16)
    song.channels[0].pattern_instances[0] = Pattern(
        [Note(30, instrument=lead)] + [Note() for _ in range(15)]
    )
    return project


def _word(data: bytes, offset: int) -> int:
    return data[offset] | (data[offset + 1] << 8)


def test_tempo_words() -> None:
    assert tempo_words(150) == (307, 256)
    text = export_text(_one_note_project()).text
    assert "\t.word @song0ch0,@song0ch1,@song0ch2,@song0ch3,@song0ch4,307,256" in text


def test_header_layout() -> None:
    text = export_text(_one_note_project()).text
    lines = text.splitlines()
    start = lines.index("demo_music_data:")
    assert lines[start + 1:start + 4] == ["\t.byte 1", "\t.word @instruments", "\t.word @samples-3"]
    assert lines[0].startswith(";this file for FamiTone2 library")
    assert ";song 0 'tune': speed channel 0, split factor 1," in text


def test_round_trip_header_fields() -> None:
    song_bytes, dmc = get_bytes(_one_note_project(), song_offset=BASE)

    assert dmc is None
    assert song_bytes[0] == 1
    assert _word(song_bytes, 1) == BASE + 19
    assert _word(song_bytes, 3) == BASE + 24
    assert _word(song_bytes, 15) == 307
    assert _word(song_bytes, 17) == 256

    # instrument 0: flags, volume env1, arpeggio env0, pitch env0
    assert song_bytes[19] == 0xB0
    assert _word(song_bytes, 20) == BASE + 30
    assert _word(song_bytes, 22) == BASE + 27
    assert song_bytes[27:34] == bytes([0xC0, 0x00, 0x00, 0x00, 0xCF, 0x00, 0x01])

    ch0 = _word(song_bytes, 5) - BASE
    assert ch0 == 34
    assert song_bytes[ch0:ch0 + 6] == bytes([0xFB, 0x06, 0x80, 0x15, 0x9D, 0xFD])
    assert _word(song_bytes, ch0 + 6) == BASE + ch0 + 2


def test_round_trip_matches_labels_and_size() -> None:
    project = _one_note_project()
    result = export_text(project, dialect=ASM6)
    assembler = Assembler(ASM6)
    song_bytes = assembler.assemble(result.text, BASE)

    assert song_bytes == get_bytes(project, song_offset=BASE)[0]
    assert len(song_bytes) == result.size
    for c in range(5):
        assert _word(song_bytes, 5 + 2 * c) == assembler.labels[f"@song0ch{c}"]


@pytest.mark.parametrize("dialect", ["ca65", "nesasm", "asm6"])
def test_dialects_assemble_to_same_bytes(dialect: str) -> None:
    project = _one_note_project()
    expected = get_bytes(project, song_offset=BASE)[0]
    text = export_text(project, dialect=dialect).text
    assert Assembler(dialect).assemble(text, BASE) == expected


def test_dialect_surface_syntax() -> None:
    project = _one_note_project()
    nesasm = export_text(project, dialect="nesasm").text
    asm6 = export_text(project, dialect="asm6").text
    assert ".song0ch0:" in nesasm
    assert "\t.dw .instruments" in nesasm
    assert "\tdw @instruments" in asm6
    assert "\tdb $b0" in asm6


def test_samples_are_linked_at_dpcm_offset() -> None:
    project = _one_note_project()
    project.map_dpcm_sample(25, DPCMSample("kick", b"\x11" * 32))
    song_bytes, dmc = get_bytes(project, song_offset=BASE, dpcm_offset=0xC040)

    assert dmc == b"\x11" * 32 + bytes(32)
    # empty slots still carry the sample bank offset
    assert song_bytes[27:27 + 3 * 13] == bytes([1, 0, 0]) * 12 + bytes([1, 2, 15])


def test_legacy_kernel_strips_releases() -> None:
    project = _one_note_project()
    lead = project.instruments[0]
    lead.envelopes[ENVELOPE_VOLUME] = Envelope([15, 12, 10, 8], release=2)
    pattern = project.songs[0].channels[0].pattern_instances[0]
    pattern.notes[4] = Note(NOTE_RELEASE)

    prepared = prepare_project(project, kernel=Kernel.FAMITONE2)
    env = prepared.instruments[0].envelope(ENVELOPE_VOLUME)
    assert env.values == [15, 12]
    assert env.release == -1
    assert prepared.songs[0].channels[0].pattern_instances[0].notes[4].value == NOTE_INVALID

    # the caller's project is untouched
    assert lead.envelope(ENVELOPE_VOLUME).release == 2
    assert pattern.notes[4].value == NOTE_RELEASE


def test_extended_kernel_keeps_valid_release() -> None:
    project = _one_note_project()
    project.instruments[0].envelopes[ENVELOPE_VOLUME] = Envelope([15, 12, 10], loop=0, release=2)
    prepared = prepare_project(project, kernel=Kernel.FAMITONE2_FS)
    assert prepared.instruments[0].envelope(ENVELOPE_VOLUME).release == 2

    project.instruments[0].envelopes[ENVELOPE_VOLUME] = Envelope([15, 12, 10], loop=2, release=1)
    prepared = prepare_project(project, kernel=Kernel.FAMITONE2_FS)
    assert prepared.instruments[0].envelope(ENVELOPE_VOLUME).release == -1


def test_prepare_prunes_songs_and_instruments() -> None:
    project = _one_note_project()
    project.create_instrument("unused")
    project.create_song("second", pattern_length=16)

    prepared = prepare_project(project, song_ids=[1])
    assert [s.name for s in prepared.songs] == ["second"]
    assert prepared.instruments == []

    prepared = prepare_project(project)
    assert [i.name for i in prepared.instruments] == ["lead"]
    assert prepared.instruments[0].envelope(ENVELOPE_VOLUME).values == [15]


def test_too_many_songs() -> None:
    project = _one_note_project()
    for i in range(17):
        project.create_song(f"extra{i}", pattern_length=16)
    with pytest.raises(ExportError, match="songs"):
        export_text(project)


def test_no_songs() -> None:
    with pytest.raises(ExportError, match="no songs"):
        export_text(Project("empty"))


def test_capacity_overflow_is_reported() -> None:
    with pytest.raises(SongTooComplexError, match="tune"):
        export_text(_one_note_project(), max_packed_patterns=2)


def test_export_is_deterministic() -> None:
    project = _one_note_project()
    first = export_text(project)
    second = export_text(project)
    assert first.text == second.text
    assert first.songs == second.songs


def test_separate_songs_uses_song_name() -> None:
    text = export_text(_one_note_project(), separate_songs=True).text
    assert "tune_music_data:" in text


def test_save_asm_writes_text_and_samples(tmp_path) -> None:
    project = _one_note_project("My Song")
    project.map_dpcm_sample(25, DPCMSample("kick", b"\x11" * 10))
    out = tmp_path / "music.s"

    result = save_asm(project, str(out))
    assert out.read_text(encoding="utf-8") == result.text
    assert "my_song_music_data:" in result.text
    assert (tmp_path / "my_song.dmc").read_bytes() == result.dmc


def test_save_asm_without_samples(tmp_path) -> None:
    out = tmp_path / "music.s"
    result = save_asm(_one_note_project(), str(out), dmc_path=str(tmp_path / "x.dmc"))
    assert result.dmc is None
    assert not (tmp_path / "x.dmc").exists()
