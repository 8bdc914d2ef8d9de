"""Brute-force choice of speed channel and pattern split factor.

Which channel carries the speed commands, and how finely patterns are cut,
changes how much the packed pattern pool can share. There is no closed form,
so every candidate is encoded in dry-run mode and the smallest one wins.
"""

from dataclasses import dataclass

from .dialects import CA65, Dialect
from .errors import SongTooComplexError
from .kernel import Kernel
from .models import Song
from .patterns import MAX_PACKED_PATTERNS, PatternPool, SongEncoding, encode_song

MIN_PATTERN_LENGTH = 6


@dataclass
class CompiledSong:
    encoding: SongEncoding
    speed_channel: int
    factor: int

    @property
    def size(self) -> int:
        return self.encoding.size


def split_candidates(song: Song, min_pattern_length: int = MIN_PATTERN_LENGTH) -> list[tuple[int, int]]:
    """(channel, factor) pairs in search order: channel, then factor, ascending."""
    factors = [
        f
        for f in range(1, song.pattern_length + 1)
        if song.pattern_length % f == 0 and song.pattern_length // f >= min_pattern_length
    ] or [1]
    return [(c, f) for c in range(len(song.channels)) for f in factors]


def search_split(
    song: Song,
    song_index: int,
    pool: PatternPool,
    *,
    kernel: Kernel,
    instrument_index: dict[int, int],
    max_packed_patterns: int = MAX_PACKED_PATTERNS,
    min_pattern_length: int = MIN_PATTERN_LENGTH,
) -> tuple[int, int, int]:
    """Return (speed_channel, factor, size) of the smallest dry-run encoding.

    Each candidate starts from the same `pool`; the earliest candidate wins
    ties. Candidates whose split is impossible or that overflow are skipped.
    """
    best: tuple[int, int, int] | None = None

    for channel, factor in split_candidates(song, min_pattern_length):
        split_song = song.clone()
        if not split_song.split(factor):
            continue
        encoding = encode_song(
            split_song,
            song_index,
            channel,
            factor,
            pool,
            kernel=kernel,
            instrument_index=instrument_index,
            max_packed_patterns=max_packed_patterns,
        )
        if encoding.overflow:
            continue
        if best is None or encoding.size < best[2]:
            best = (channel, factor, encoding.size)

    if best is None:
        raise SongTooComplexError(song.name)
    return best


def compile_song(
    song: Song,
    song_index: int,
    pool: PatternPool,
    *,
    kernel: Kernel,
    instrument_index: dict[int, int],
    dialect: Dialect = CA65,
    max_packed_patterns: int = MAX_PACKED_PATTERNS,
    min_pattern_length: int = MIN_PATTERN_LENGTH,
) -> CompiledSong:
    """Search, then encode the winning configuration for real.

    The returned encoding's pool is the one to carry into the next song.
    """
    channel, factor, _ = search_split(
        song,
        song_index,
        pool,
        kernel=kernel,
        instrument_index=instrument_index,
        max_packed_patterns=max_packed_patterns,
        min_pattern_length=min_pattern_length,
    )

    best_song = song.clone()
    best_song.split(factor)
    encoding = encode_song(
        best_song,
        song_index,
        channel,
        factor,
        pool,
        kernel=kernel,
        instrument_index=instrument_index,
        dialect=dialect,
        emit=True,
        max_packed_patterns=max_packed_patterns,
    )
    if encoding.overflow:
        raise SongTooComplexError(song.name)
    return CompiledSong(encoding, channel, factor)
