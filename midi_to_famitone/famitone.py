"""FamiTone2 music data export.

Turns a Project into assembly text for one of the supported dialects plus
a raw DPCM sample blob, or into linked bytes through the built-in
assembler.
"""

import os
from dataclasses import dataclass, field

from .assembler import assemble
from .dialects import ASM6, CA65, Dialect, get_dialect, make_asm_name
from .errors import ExportError
from .instruments import build_instrument_tables, emit_instruments
from .kernel import Kernel, get_kernel
from .models import (
    CHANNEL_COUNT,
    ENVELOPE_VOLUME,
    NOTE_INVALID,
    VOLUME_MAX,
    Envelope,
    Project,
)
from .optimizer import MIN_PATTERN_LENGTH, CompiledSong, compile_song
from .patterns import MAX_PACKED_PATTERNS, MAX_SONGS, PatternPool

HEADER_SIZE = 5
SONG_HEADER_SIZE = 14
FRAMES_PAL = 50 * 60 // 24
FRAMES_NTSC = 60 * 60 // 24


@dataclass
class SongInfo:
    name: str
    speed_channel: int
    factor: int
    size: int


@dataclass
class ExportResult:
    text: str
    dmc: bytes | None
    songs: list[SongInfo] = field(default_factory=list)
    size: int = 0


def tempo_words(tempo: int) -> tuple[int, int]:
    """(pal, ntsc) tempo accumulator steps for a song tempo."""
    return 256 * tempo // FRAMES_PAL, 256 * tempo // FRAMES_NTSC


def _strip_releases(project: Project) -> None:
    for song in project.songs:
        for channel in song.channels:
            for pattern in channel.unique_patterns():
                for note in pattern.notes:
                    if note.is_release:
                        note.value = NOTE_INVALID

    for instrument in project.instruments:
        env = instrument.envelope(ENVELOPE_VOLUME)
        if env is not None and env.release >= 0:
            del env.values[env.release:]
            env.release = -1
            if env.loop >= env.length:
                env.loop = -1


def _sanitize_releases(project: Project) -> None:
    # A release must land after the loop point and leave a sustain value.
    for instrument in project.instruments:
        env = instrument.envelope(ENVELOPE_VOLUME)
        if env is None or env.release < 0:
            continue
        if env.release == 0 or env.release >= env.length or env.release <= env.loop:
            env.release = -1


def _cleanup_envelopes(project: Project) -> None:
    for instrument in project.instruments:
        env = instrument.envelope(ENVELOPE_VOLUME)
        if env is None:
            env = Envelope()
            instrument.envelopes[ENVELOPE_VOLUME] = env
        if env.is_empty:
            env.values = [VOLUME_MAX]
            env.loop = -1
            env.release = -1


def prepare_project(
    project: Project,
    song_ids: list[int] | None = None,
    kernel: Kernel = Kernel.FAMITONE2_FS,
) -> Project:
    """Scratch copy of `project` restricted to `song_ids` and fit for `kernel`."""
    prepared = project.clone()

    if song_ids is not None:
        wanted = set(song_ids)
        for song in list(prepared.songs):
            if song.id not in wanted:
                prepared.delete_song(song)

    if kernel.supports_releases:
        _sanitize_releases(prepared)
    else:
        _strip_releases(prepared)

    prepared.delete_unused_instruments()
    _cleanup_envelopes(prepared)
    return prepared


def _emit_header(project: Project, name: str, dialect: Dialect) -> tuple[list[str], int]:
    ll = dialect.local
    lines = [
        ";this file for FamiTone2 library generated by midi-to-famitone",
        "",
        f"{name}_music_data:",
        f"\t{dialect.db} {len(project.songs)}",
        dialect.words_line([f"{ll}instruments"]),
        dialect.words_line([f"{ll}samples-3"]),
    ]
    size = HEADER_SIZE

    for i, song in enumerate(project.songs):
        pal, ntsc = tempo_words(song.tempo)
        operands = [f"{ll}song{i}ch{c}" for c in range(CHANNEL_COUNT)]
        lines.append(dialect.words_line(operands + [pal, ntsc]))
        size += SONG_HEADER_SIZE

    lines.append("")
    return lines, size


def export_text(
    project: Project,
    *,
    kernel: Kernel | str = Kernel.FAMITONE2_FS,
    dialect: Dialect | str = CA65,
    song_ids: list[int] | None = None,
    separate_songs: bool = False,
    max_packed_patterns: int = MAX_PACKED_PATTERNS,
    min_pattern_length: int = MIN_PATTERN_LENGTH,
) -> ExportResult:
    kernel = get_kernel(kernel)
    dialect = get_dialect(dialect)
    prepared = prepare_project(project, song_ids, kernel)

    if not prepared.songs:
        raise ExportError("no songs to export")
    if len(prepared.songs) > MAX_SONGS:
        raise ExportError(
            f"{len(prepared.songs)} songs requested, the driver supports {MAX_SONGS}"
        )

    name = make_asm_name(prepared.songs[0].name if separate_songs else prepared.name)
    lines, size = _emit_header(prepared, name, dialect)

    tables = build_instrument_tables(prepared, kernel)
    instrument_lines, instrument_size = emit_instruments(prepared, tables, dialect)
    lines.extend(instrument_lines)
    size += instrument_size

    instrument_index = {id(inst): i for i, inst in enumerate(prepared.instruments)}
    pool = PatternPool()
    compiled: list[CompiledSong] = []
    for i, song in enumerate(prepared.songs):
        result = compile_song(
            song,
            i,
            pool,
            kernel=kernel,
            instrument_index=instrument_index,
            dialect=dialect,
            max_packed_patterns=max_packed_patterns,
            min_pattern_length=min_pattern_length,
        )
        pool = result.encoding.pool
        lines.extend(result.encoding.lines)
        size += result.size
        compiled.append(result)

    infos = [
        SongInfo(song.name, result.speed_channel, result.factor, result.size)
        for song, result in zip(prepared.songs, compiled)
    ]
    summary = [
        f";song {i} '{info.name}': speed channel {info.speed_channel}, "
        f"split factor {info.factor}, {info.size} bytes"
        for i, info in enumerate(infos)
    ]
    lines[1:1] = summary

    dmc = prepared.build_sample_blob() if prepared.uses_samples else None
    return ExportResult("\n".join(lines) + "\n", dmc, infos, size)


def default_dmc_path(project: Project, path: str) -> str:
    folder = os.path.dirname(os.path.abspath(path))
    return os.path.join(folder, make_asm_name(project.name) + ".dmc")


def save_asm(
    project: Project,
    path: str,
    dmc_path: str | None = None,
    **export_kwargs,
) -> ExportResult:
    """Export and write the text file, plus the sample blob when one is used."""
    result = export_text(project, **export_kwargs)

    with open(path, "w", encoding="utf-8") as f:
        f.write(result.text)
    if result.dmc is not None:
        with open(dmc_path or default_dmc_path(project, path), "wb") as f:
            f.write(result.dmc)
    return result


def get_bytes(
    project: Project,
    song_ids: list[int] | None = None,
    song_offset: int = 0,
    dpcm_offset: int = 0,
    **export_kwargs,
) -> tuple[bytes, bytes | None]:
    """Song data linked at `song_offset` and the sample blob, if any."""
    export_kwargs["dialect"] = ASM6
    result = export_text(project, song_ids=song_ids, **export_kwargs)
    song_bytes = assemble(result.text, song_offset, dpcm_offset, dialect=ASM6)
    return song_bytes, result.dmc
