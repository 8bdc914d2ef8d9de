"""FamiTone2 music data compiler for the NES, with a MIDI front end."""

from .assembler import Assembler, assemble
from .dialects import ASM6, CA65, NESASM, Dialect, get_dialect
from .errors import AssemblerError, ExportError, FamitoneError, MidiImportError, SongTooComplexError
from .famitone import ExportResult, export_text, get_bytes, prepare_project, save_asm
from .fti import load_fti
from .kernel import Kernel
from .midi_import import import_midi, load_instrument_map
from .models import (
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

__version__ = "0.1.0"
