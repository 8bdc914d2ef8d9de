"""Driver variants and their note encodings."""

from enum import Enum

from .models import DPCM_NOTE_MIN, NOTE_RELEASE, NOTE_STOP, ChannelType

MAX_REPEAT_COUNT_FT2 = 60
MAX_REPEAT_COUNT_FT2FS = 58  # two codes fewer, 0xF7 is the release note


class Kernel(Enum):
    FAMITONE2 = "famitone2"  # legacy, no releases or volume column
    FAMITONE2_FS = "famitone2fs"

    @property
    def max_repeat_count(self) -> int:
        if self is Kernel.FAMITONE2_FS:
            return MAX_REPEAT_COUNT_FT2FS
        return MAX_REPEAT_COUNT_FT2

    @property
    def supports_releases(self) -> bool:
        return self is Kernel.FAMITONE2_FS

    @property
    def supports_volume(self) -> bool:
        return self is Kernel.FAMITONE2_FS


def get_kernel(name: str | Kernel) -> Kernel:
    if isinstance(name, Kernel):
        return name
    try:
        return Kernel(name.lower())
    except ValueError:
        choices = ", ".join(k.value for k in Kernel)
        raise ValueError(f"unknown kernel '{name}' (expected one of {choices})") from None


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def _legacy_note(channel: ChannelType, value: int, repeat: int) -> int:
    # 0 = stop, 1 = C-1 ... 63 = D-6
    if value != NOTE_STOP and channel != ChannelType.NOISE:
        value = max(1, value - 12)
    return ((value & 63) << 1) | repeat


def _extended_note(channel: ChannelType, value: int) -> int:
    if value == NOTE_RELEASE:
        return value
    # 0 = stop, 1 = A0 ... 87 = B7
    if value != NOTE_STOP:
        if channel == ChannelType.DPCM:
            value = _clamp(value - DPCM_NOTE_MIN, 1, 63)
        elif channel != ChannelType.NOISE:
            value = _clamp(value - 9, 1, 87)
    return value


def encode_note_value(kernel: Kernel, channel: ChannelType, value: int, repeat: int = 0) -> int:
    if kernel is Kernel.FAMITONE2:
        return _legacy_note(channel, value, repeat)
    return _extended_note(channel, value)
