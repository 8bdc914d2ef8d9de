"""MIDI -> FamiTone2 music data (ca65 / nesasm / asm6 text, or linked binary)."""

import argparse
import os
import sys

from .dialects import DIALECTS
from .errors import ExportError, MidiImportError
from .famitone import default_dmc_path, export_text, get_bytes
from .kernel import Kernel
from .midi_import import (
    DEFAULT_MAX_CHANNELS,
    DEFAULT_PATTERN_LENGTH,
    DEFAULT_ROWS_PER_BEAT,
    DEFAULT_SPEED,
    GM_DRUM_CHANNEL,
    import_midi,
    load_instrument_map,
)
from .models import MAX_SONG_LENGTH
from .optimizer import MIN_PATTERN_LENGTH
from .patterns import MAX_PACKED_PATTERNS


def _int_auto(value: str) -> int:
    # Accepts 0x8000, $8000 or plain decimal.
    if value.startswith("$"):
        return int(value[1:], 16)
    return int(value, 0)


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="MIDI -> FamiTone2 music data for the NES")
    parser.add_argument("input_mid")
    parser.add_argument("output")
    parser.add_argument(
        "--dialect",
        choices=sorted(DIALECTS),
        default="ca65",
        help="Assembler syntax of the text output (default ca65)",
    )
    parser.add_argument(
        "--kernel",
        choices=[k.value for k in Kernel],
        default=Kernel.FAMITONE2_FS.value,
        help="Target driver: famitone2 (legacy) or famitone2fs (releases, volume column)",
    )
    parser.add_argument("--rows-per-beat", type=int, default=DEFAULT_ROWS_PER_BEAT, help="Tracker rows per quarter note")
    parser.add_argument("--pattern-length", type=int, default=DEFAULT_PATTERN_LENGTH, help="Rows per pattern")
    parser.add_argument("--speed", type=int, default=DEFAULT_SPEED, help="Frames per row at tempo 150 (default 6)")
    parser.add_argument("--tempo", type=int, default=None, help="Song tempo (default: from the MIDI tempo)")
    parser.add_argument("--channels", type=int, default=DEFAULT_MAX_CHANNELS, help="Tone channels to fill (1..3)")
    parser.add_argument("--noise-channel", type=int, default=GM_DRUM_CHANNEL, help="MIDI channel used for drums (default 9, GM drums)")
    parser.add_argument(
        "--instrument-map",
        type=str,
        default=None,
        help="JSON instrument map (Program Change -> instrument, drum note -> DPCM sample)",
    )
    parser.add_argument("--use-velocity", action="store_true", default=False, help="Emit the volume column from velocity")
    parser.add_argument("--loop-start-row", type=int, default=None, help="Loop start position in rows (optional)")
    parser.add_argument("--name", type=str, default=None, help="Project name used for the data label")
    parser.add_argument("--dmc-output", type=str, default=None, help="DPCM sample blob path (default next to output)")
    parser.add_argument("--binary", action="store_true", default=False, help="Write linked bytes instead of text")
    parser.add_argument("--song-offset", type=_int_auto, default=0, help="Link address of the song data (--binary)")
    parser.add_argument("--dpcm-offset", type=_int_auto, default=0xC000, help="Link address of the samples (--binary)")
    parser.add_argument(
        "--max-packed-patterns",
        type=int,
        default=MAX_PACKED_PATTERNS,
        help="Cap on distinct packed pattern buffers",
    )
    return parser.parse_args(argv[1:])


def _write(path: str, data, mode: str) -> None:
    encoding = "utf-8" if "b" not in mode else None
    with open(path, mode, encoding=encoding) as f:
        f.write(data)


def main(argv: list[str]) -> int:
    args = _parse_args(argv)

    if args.rows_per_beat <= 0:
        print("Error: --rows-per-beat must be > 0.")
        return 2
    if not MIN_PATTERN_LENGTH <= args.pattern_length <= MAX_SONG_LENGTH:
        print(f"Error: --pattern-length must be {MIN_PATTERN_LENGTH}..{MAX_SONG_LENGTH}.")
        return 2
    if args.speed <= 0:
        print("Error: --speed must be > 0.")
        return 2
    if args.tempo is not None and not 32 <= args.tempo <= 255:
        print("Error: --tempo must be 32..255.")
        return 2
    if not 1 <= args.channels <= 3:
        print("Error: --channels must be 1..3.")
        return 2
    if args.max_packed_patterns <= 0:
        print("Error: --max-packed-patterns must be > 0.")
        return 2
    if not os.path.isfile(args.input_mid):
        print(f"Error: input not found: {args.input_mid}")
        return 2

    instrument_map = None
    if args.instrument_map:
        try:
            instrument_map = load_instrument_map(args.instrument_map)
        except (OSError, MidiImportError) as exc:
            print(f"Error: {exc}")
            return 2

    try:
        project, warnings = import_midi(
            args.input_mid,
            name=args.name,
            rows_per_beat=args.rows_per_beat,
            pattern_length=args.pattern_length,
            speed=args.speed,
            tempo=args.tempo,
            channels=args.channels,
            noise_channel=args.noise_channel,
            instrument_map=instrument_map,
            use_velocity=args.use_velocity,
            loop_start_row=args.loop_start_row,
        )
    except (OSError, EOFError, MidiImportError) as exc:
        print(f"Error: {exc}")
        return 2

    for warning in warnings:
        print(f"Warning: {warning}")

    export_kwargs = {
        "kernel": args.kernel,
        "max_packed_patterns": args.max_packed_patterns,
    }
    dmc_path = args.dmc_output or default_dmc_path(project, args.output)
    try:
        if args.binary:
            song_bytes, dmc = get_bytes(
                project,
                song_offset=args.song_offset,
                dpcm_offset=args.dpcm_offset,
                **export_kwargs,
            )
            _write(args.output, song_bytes, "wb")
            size = len(song_bytes)
        else:
            result = export_text(project, dialect=args.dialect, **export_kwargs)
            text = result.text
            if warnings:
                text = "".join(f";warning: {w}\n" for w in warnings) + text
            _write(args.output, text, "w")
            dmc = result.dmc
            size = result.size
            for i, info in enumerate(result.songs):
                print(
                    f"Song {i} '{info.name}': speed channel {info.speed_channel}, "
                    f"split factor {info.factor}, {info.size} bytes"
                )
    except ExportError as exc:
        print(f"Error: {exc}")
        return 1

    if dmc is not None:
        _write(dmc_path, dmc, "wb")
        print(f"Wrote {len(dmc)} sample bytes to {dmc_path}")
    print(f"Wrote {size} bytes of music data to {args.output}")
    return 0


def run() -> None:
    raise SystemExit(main(sys.argv))


if __name__ == "__main__":
    run()
