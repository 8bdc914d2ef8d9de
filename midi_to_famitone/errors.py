"""Exceptions raised by the FamiTone2 exporter."""


class FamitoneError(Exception):
    """Base class for exporter failures."""


class ExportError(FamitoneError):
    """The project cannot be exported as requested."""


class SongTooComplexError(ExportError):
    """A song needs more packed patterns than the driver can address."""

    def __init__(self, song_name: str, message: str | None = None) -> None:
        self.song_name = song_name
        super().__init__(message or f"song '{song_name}' is too complex to export")


class AssemblerError(FamitoneError):
    """The self-assembler met an operand or label it cannot resolve."""


class MidiImportError(FamitoneError):
    """The MIDI file or the instrument map cannot be turned into a project."""
