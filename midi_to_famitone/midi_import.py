"""MIDI -> FamiTone2 project.

Stage 1: MIDI parsing + note/program extraction.
Stage 2: Quantize to tracker rows, pick the tone channels, mono per voice.
Stage 3: Fill patterns (shared when identical), instruments from an
optional JSON map, drums on noise or DPCM.
"""

import json
import os
from bisect import bisect_right
from collections import defaultdict
from dataclasses import dataclass, field

import mido

from .errors import MidiImportError
from .fti import load_fti
from .models import (
    ENVELOPE_ARPEGGIO,
    ENVELOPE_PITCH,
    ENVELOPE_VOLUME,
    MAX_SONG_LENGTH,
    NOTE_MAX,
    NOTE_MIN,
    NOTE_STOP,
    VOLUME_MAX,
    ChannelType,
    DPCMSample,
    Effect,
    Envelope,
    Instrument,
    Note,
    Pattern,
    Project,
    Song,
)

DEFAULT_ROWS_PER_BEAT = 4
DEFAULT_PATTERN_LENGTH = 64
DEFAULT_SPEED = 6
DEFAULT_MAX_CHANNELS = 3
DEFAULT_TEMPO_US = 500000  # 120 BPM
GM_DRUM_CHANNEL = 9
MIDI_NOTE_OFFSET = 11  # MIDI 12 (C0) -> note 1
TEMPO_MIN = 32
TEMPO_MAX = 255

TONE_CHANNELS = (ChannelType.SQUARE1, ChannelType.SQUARE2, ChannelType.TRIANGLE)

# GM drum note -> noise period (1..16, higher is brighter)
DRUM_NOISE_MAP = {
    35: 3, 36: 3,  # kick
    38: 8, 40: 8,  # snare
    37: 10, 39: 10,  # stick, clap
    41: 5, 43: 5, 45: 6, 47: 6, 48: 7, 50: 7,  # toms
    42: 14, 44: 14, 46: 13,  # hats
    49: 12, 51: 13, 52: 12, 55: 12, 57: 12, 59: 13,  # cymbals
}


@dataclass
class InstrumentMap:
    default: dict
    programs: dict[int, dict] = field(default_factory=dict)
    default_program: int = 0
    samples: dict[int, dict] = field(default_factory=dict)


def _clamp_int(value: int, low: int, high: int) -> int:
    return max(low, min(high, int(value)))


def _normalize_envelope(raw, low: int, high: int) -> dict | None:
    if raw is None:
        return None
    if isinstance(raw, list):
        raw = {"values": raw}
    values = [_clamp_int(v, low, high) for v in raw.get("values", [])]
    if not values:
        return None
    loop = int(raw.get("loop", -1))
    release = int(raw.get("release", -1))
    return {
        "values": values,
        "loop": loop if 0 <= loop < len(values) else -1,
        "release": release if 0 < release < len(values) else -1,
    }


def _normalize_instrument(raw: dict | None, defaults: dict, base_dir: str) -> dict:
    inst = dict(defaults)
    if not raw:
        return inst
    if "duty" in raw:
        inst["duty"] = _clamp_int(raw["duty"], 0, 3)
    if "volume" in raw:
        inst["volume"] = _normalize_envelope(raw["volume"], 0, VOLUME_MAX)
    if "arpeggio" in raw:
        inst["arpeggio"] = _normalize_envelope(raw["arpeggio"], -64, 63)
    if "pitch" in raw:
        inst["pitch"] = _normalize_envelope(raw["pitch"], -64, 63)
    if raw.get("fti"):
        inst["fti"] = os.path.join(base_dir, raw["fti"])
    return inst


def _normalize_sample(raw: dict, base_dir: str) -> dict:
    if "file" not in raw:
        raise MidiImportError("sample entry without 'file'")
    return {
        "file": os.path.join(base_dir, raw["file"]),
        "pitch": _clamp_int(raw.get("pitch", 15), 0, 15),
        "loop": bool(raw.get("loop", False)),
    }


def load_instrument_map(path: str) -> InstrumentMap:
    with open(path, "r", encoding="utf-8") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as exc:
            raise MidiImportError(f"bad instrument map '{path}': {exc}") from exc
    base_dir = os.path.dirname(os.path.abspath(path))
    defaults = {"duty": 2, "volume": None, "arpeggio": None, "pitch": None, "fti": None}
    defaults = _normalize_instrument(data.get("default"), defaults, base_dir)

    programs: dict[int, dict] = {}
    for key, raw in data.get("programs", {}).items():
        try:
            prog = int(key)
        except ValueError:
            continue
        programs[prog] = _normalize_instrument(raw, {**defaults, "fti": None}, base_dir)

    samples: dict[int, dict] = {}
    for key, raw in data.get("samples", {}).items():
        try:
            note = int(key)
        except ValueError:
            continue
        samples[note] = _normalize_sample(raw, base_dir)

    default_program = int(data.get("default_program", 0))
    return InstrumentMap(defaults, programs, default_program, samples)


def _to_envelope(entry: dict | None) -> Envelope | None:
    if entry is None:
        return None
    return Envelope(list(entry["values"]), entry["loop"], entry["release"])


def _build_instrument(name: str, entry: dict, warnings: list[str]) -> Instrument:
    if entry.get("fti"):
        loaded = load_fti(entry["fti"])
        if loaded is not None:
            loaded.name = loaded.name or name
            return loaded
        warnings.append(f"could not load instrument '{entry['fti']}', using map values")
    inst = Instrument(name, entry["duty"])
    inst.envelopes[ENVELOPE_VOLUME] = _to_envelope(entry["volume"])
    inst.envelopes[ENVELOPE_ARPEGGIO] = _to_envelope(entry["arpeggio"])
    inst.envelopes[ENVELOPE_PITCH] = _to_envelope(entry["pitch"])
    return inst


def _extract_note_events(
    mid: mido.MidiFile,
) -> tuple[list[dict], dict[int, list[tuple[int, int]]], int]:
    merged = mido.merge_tracks(mid.tracks)
    abs_tick = 0
    last_tick = 0

    # (channel, note) -> (start_tick, velocity)
    active: dict[tuple[int, int], tuple[int, int]] = {}
    program_events_by_channel: dict[int, list[tuple[int, int]]] = defaultdict(list)
    events: list[dict] = []

    def close(key: tuple[int, int], end_tick: int) -> None:
        start_tick, velocity = active.pop(key)
        events.append(
            {
                "start": start_tick,
                "duration": max(0, end_tick - start_tick),
                "note": key[1],
                "channel": key[0],
                "velocity": velocity,
            }
        )

    for msg in merged:
        abs_tick += msg.time
        last_tick = abs_tick

        if msg.type == "program_change":
            program_events_by_channel[msg.channel].append((abs_tick, int(msg.program)))
            continue
        if msg.type not in ("note_on", "note_off"):
            continue

        key = (msg.channel, msg.note)
        if msg.type == "note_on" and msg.velocity > 0:
            if key in active:
                close(key, abs_tick)
            active[key] = (abs_tick, int(msg.velocity))
        elif key in active:
            close(key, abs_tick)

    # Close any hanging notes at end-of-track.
    for key in list(active):
        close(key, last_tick)

    events.sort(key=lambda e: (e["start"], e["channel"], e["note"]))
    return events, program_events_by_channel, last_tick


def _get_tempo_events(mid: mido.MidiFile) -> list[tuple[int, int]]:
    events: list[tuple[int, int]] = []
    for track in mid.tracks:
        tick = 0
        for msg in track:
            tick += msg.time
            if msg.type == "set_tempo":
                events.append((tick, int(msg.tempo)))
    events.sort(key=lambda x: x[0])
    if not events or events[0][0] != 0:
        events.insert(0, (0, DEFAULT_TEMPO_US))
    return events


def bpm_to_tempo(bpm: float, rows_per_beat: int, speed: int) -> int:
    # The driver advances tempo * 24 / speed rows per minute.
    return _clamp_int(round(bpm * rows_per_beat * speed / 24), TEMPO_MIN, TEMPO_MAX)


def _quantize_events(events: list[dict], ticks_per_row: float) -> list[dict]:
    quantized = []
    for ev in events:
        start = int(round(ev["start"] / ticks_per_row))
        end = int(round((ev["start"] + ev["duration"]) / ticks_per_row))
        if end <= start:
            end = start + 1
        quantized.append({**ev, "start": start, "duration": end - start})
    quantized.sort(key=lambda e: (e["start"], e["channel"], e["note"]))
    return quantized


def _pick_channels(events: list[dict], max_channels: int, exclude: set[int] | None = None) -> list[int]:
    counts = defaultdict(int)
    exclude = exclude or set()
    for ev in events:
        if ev["channel"] not in exclude:
            counts[ev["channel"]] += 1
    ordered = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
    return [ch for ch, _ in ordered[:max_channels]]


def _build_mono_events(events: list[dict]) -> list[dict]:
    # Keep one note per row, preferring higher velocity.
    ordered = sorted(events, key=lambda e: (e["start"], -e["velocity"], e["channel"], e["note"]))
    mono = []
    cursor = -1
    for ev in ordered:
        if ev["start"] == cursor:
            continue
        mono.append(ev)
        cursor = ev["start"]
    return mono


def _velocity_to_volume(velocity: int) -> int:
    return _clamp_int(round(velocity * VOLUME_MAX / 127), 1, VOLUME_MAX)


def _note_value(midi_note: int) -> int:
    return _clamp_int(midi_note - MIDI_NOTE_OFFSET, NOTE_MIN, NOTE_MAX)


def _fill_rows(
    events: list[dict],
    total_rows: int,
    make_note,
) -> list[Note]:
    rows = [Note() for _ in range(total_rows)]
    for i, ev in enumerate(events):
        start = ev["start"]
        if start >= total_rows:
            continue
        rows[start] = make_note(ev)
        end = start + ev["duration"]
        next_start = events[i + 1]["start"] if i + 1 < len(events) else total_rows
        if end < total_rows and end <= next_start and not rows[end].is_valid:
            rows[end] = Note(NOTE_STOP)
    return rows


def _note_key(note: Note) -> tuple:
    return (note.value, note.volume, id(note.instrument), note.effect, note.effect_param)


def _rows_to_patterns(rows: list[Note], pattern_length: int, length: int) -> list[Pattern | None]:
    shared: dict[tuple, Pattern] = {}
    instances: list[Pattern | None] = []
    for slot in range(length):
        notes = rows[slot * pattern_length:(slot + 1) * pattern_length]
        notes += [Note() for _ in range(pattern_length - len(notes))]
        if not any(n.is_valid or n.effect != Effect.NONE for n in notes):
            instances.append(None)
            continue
        key = tuple(_note_key(n) for n in notes)
        if key not in shared:
            shared[key] = Pattern(notes)
        instances.append(shared[key])
    return instances


def import_midi(
    source,
    *,
    name: str | None = None,
    rows_per_beat: int = DEFAULT_ROWS_PER_BEAT,
    pattern_length: int = DEFAULT_PATTERN_LENGTH,
    speed: int = DEFAULT_SPEED,
    tempo: int | None = None,
    channels: int = DEFAULT_MAX_CHANNELS,
    noise_channel: int = GM_DRUM_CHANNEL,
    instrument_map: InstrumentMap | None = None,
    use_velocity: bool = False,
    loop_start_row: int | None = None,
) -> tuple[Project, list[str]]:
    """Build a one-song project from a MIDI file path or mido.MidiFile.

    Returns the project and a list of warnings.
    """
    if rows_per_beat <= 0 or pattern_length <= 0 or speed <= 0:
        raise MidiImportError("rows per beat, pattern length and speed must be > 0")
    if not 1 <= channels <= len(TONE_CHANNELS):
        raise MidiImportError(f"channels must be 1..{len(TONE_CHANNELS)}")

    mid = source if isinstance(source, mido.MidiFile) else mido.MidiFile(source)
    if mid.type not in (0, 1):
        raise MidiImportError("unsupported MIDI type, use Type 0 or Type 1")

    warnings: list[str] = []
    events, program_events_by_channel, last_tick = _extract_note_events(mid)
    if not events:
        raise MidiImportError("no note events found in MIDI")

    tempo_events = _get_tempo_events(mid)
    if len({t for _, t in tempo_events}) > 1:
        warnings.append("tempo changes ignored, using the first tempo")
    if tempo is None:
        bpm = 60_000_000 / tempo_events[0][1]
        tempo = bpm_to_tempo(bpm, rows_per_beat, speed)

    ticks_per_row = mid.ticks_per_beat / rows_per_beat
    events = _quantize_events(events, ticks_per_row)
    total_rows = max(
        max(ev["start"] + ev["duration"] for ev in events),
        int(round(last_tick / ticks_per_row)),
    )

    max_length = MAX_SONG_LENGTH - (1 if loop_start_row else 0)
    length = max(1, -(-total_rows // pattern_length))
    if length > max_length:
        warnings.append(f"song truncated to {max_length} patterns")
        length = max_length
    total_rows = length * pattern_length

    project = Project(name or _default_name(source))
    song = project.create_song(
        project.name, tempo=tempo, speed=speed, pattern_length=pattern_length, length=length
    )

    instrument_map = instrument_map or InstrumentMap(
        {"duty": 2, "volume": None, "arpeggio": None, "pitch": None, "fti": None}
    )
    instruments: dict[int | None, Instrument] = {}
    program_rows = {
        ch: ([int(round(t / ticks_per_row)) for t, _ in timeline], [p for _, p in timeline])
        for ch, timeline in program_events_by_channel.items()
    }

    def instrument_for(channel: int, row: int) -> Instrument:
        rows, programs = program_rows.get(channel, ([], []))
        idx = bisect_right(rows, row) - 1
        program = programs[idx] if idx >= 0 else instrument_map.default_program
        key = program if program in instrument_map.programs else None
        if key not in instruments:
            entry = instrument_map.programs[key] if key is not None else instrument_map.default
            label = f"program {key}" if key is not None else "default"
            instruments[key] = _build_instrument(label, entry, warnings)
            project.instruments.append(instruments[key])
        return instruments[key]

    def tone_note(ev: dict) -> Note:
        volume = _velocity_to_volume(ev["velocity"]) if use_velocity else None
        return Note(_note_value(ev["note"]), volume, instrument_for(ev["channel"], ev["start"]))

    out_of_range = sum(1 for ev in events if ev["note"] - MIDI_NOTE_OFFSET not in range(NOTE_MIN, NOTE_MAX + 1))
    if out_of_range:
        warnings.append(f"{out_of_range} notes clamped to the playable range")

    picked = _pick_channels(events, channels, exclude={noise_channel})
    unused = {ev["channel"] for ev in events} - set(picked) - {noise_channel}
    if unused:
        warnings.append(f"MIDI channels dropped: {', '.join(str(c + 1) for c in sorted(unused))}")

    for voice, midi_channel in zip(TONE_CHANNELS, picked):
        mono = _build_mono_events([ev for ev in events if ev["channel"] == midi_channel])
        rows = _fill_rows(mono, total_rows, tone_note)
        song.channels[voice].pattern_instances = _rows_to_patterns(rows, pattern_length, length)

    drums = [ev for ev in events if ev["channel"] == noise_channel]
    if drums:
        _import_drums(project, song, drums, total_rows, instrument_map, instrument_for, use_velocity, warnings)

    if loop_start_row:
        _add_loop(song, loop_start_row, total_rows, warnings)

    return project, warnings


def _import_drums(
    project: Project,
    song: Song,
    drums: list[dict],
    total_rows: int,
    instrument_map: InstrumentMap,
    instrument_for,
    use_velocity: bool,
    warnings: list[str],
) -> None:
    samples: dict[int, DPCMSample] = {}
    for midi_note, entry in sorted(instrument_map.samples.items()):
        try:
            with open(entry["file"], "rb") as f:
                data = f.read()
        except OSError as exc:
            raise MidiImportError(f"cannot read sample '{entry['file']}': {exc}") from exc
        sample = DPCMSample(os.path.splitext(os.path.basename(entry["file"]))[0], data)
        try:
            project.map_dpcm_sample(_note_value(midi_note), sample, entry["pitch"], entry["loop"])
        except ValueError as exc:
            raise MidiImportError(str(exc)) from exc
        samples[midi_note] = sample

    dpcm_events = [ev for ev in drums if ev["note"] in samples]
    noise_events = [ev for ev in drums if ev["note"] not in samples and ev["note"] in DRUM_NOISE_MAP]
    dropped = len(drums) - len(dpcm_events) - len(noise_events)
    if dropped:
        warnings.append(f"{dropped} drum hits have no noise or sample mapping")

    def noise_note(ev: dict) -> Note:
        volume = _velocity_to_volume(ev["velocity"]) if use_velocity else None
        return Note(DRUM_NOISE_MAP[ev["note"]], volume, instrument_for(ev["channel"], ev["start"]))

    def dpcm_note(ev: dict) -> Note:
        return Note(_note_value(ev["note"]))

    pattern_length = song.pattern_length
    if noise_events:
        rows = _fill_rows(_build_mono_events(noise_events), total_rows, noise_note)
        song.channels[ChannelType.NOISE].pattern_instances = _rows_to_patterns(
            rows, pattern_length, song.length
        )
    if dpcm_events:
        rows = _fill_rows(_build_mono_events(dpcm_events), total_rows, dpcm_note)
        song.channels[ChannelType.DPCM].pattern_instances = _rows_to_patterns(
            rows, pattern_length, song.length
        )


def _add_loop(song: Song, loop_start_row: int, total_rows: int, warnings: list[str]) -> None:
    if loop_start_row >= total_rows:
        warnings.append(f"loop start row {loop_start_row} is past the end, ignored")
        return
    loop_slot = loop_start_row // song.pattern_length
    if loop_start_row % song.pattern_length:
        warnings.append(
            f"loop start row {loop_start_row} moved to pattern boundary {loop_slot * song.pattern_length}"
        )
    if loop_slot == 0:
        return

    # An extra slot whose first row jumps back; the channels end there.
    jump = Pattern.empty(song.pattern_length)
    jump.notes[0].effect = Effect.JUMP
    jump.notes[0].effect_param = loop_slot
    song.length += 1
    for channel in song.channels:
        channel.pattern_instances.append(None)
    song.channels[0].pattern_instances[-1] = jump


def _default_name(source) -> str:
    filename = getattr(source, "filename", None) if isinstance(source, mido.MidiFile) else source
    if not filename:
        return "music"
    return os.path.splitext(os.path.basename(str(filename)))[0]
