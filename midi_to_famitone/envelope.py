"""Run-length envelope compiler.

Stream layout read by the driver:

    [release_ptr]            only when releases are enabled
    value | count ...        value bytes are >= 0x80 (sample + 192),
                             count bytes (< 0x80) hold the previous value
    0x00, loop_ptr           jump back to loop_ptr

A release inserts its own `0x00, loop_ptr` pair and the leading byte points
just past it.
"""

from .errors import ExportError
from .models import Envelope

ENV_MIN = -64
ENV_MAX = 63
ENV_BIAS = 192
MAX_RUN = 126
MAX_ENVELOPE_BYTES = 256


def _bias(value: int) -> int:
    return max(ENV_MIN, min(ENV_MAX, value)) + ENV_BIAS


def encode_envelope(env: Envelope | None, allow_releases: bool = False) -> bytes | None:
    if env is None or env.is_empty:
        return None

    data: list[int] = [0] if allow_releases else []
    ptr_loop: int | None = None
    last_value_ptr: int | None = None
    rle_cnt = 0
    prev_val = _bias(env.values[0]) + 1  # never matches the first sample
    found_release = False
    length = env.length

    for j in range(length):
        val = _bias(env.values[j])
        is_loop = j == env.loop
        is_release = allow_releases and j == env.release

        if prev_val != val or is_loop or is_release or j == length - 1:
            if rle_cnt == 1:
                data.append(prev_val)
            elif rle_cnt > 1:
                while rle_cnt > MAX_RUN:
                    data.append(MAX_RUN)
                    rle_cnt -= MAX_RUN
                data.append(rle_cnt)
            rle_cnt = 0

            if is_loop:
                ptr_loop = len(data)

            if is_release:
                # Without a loop the release sustains the value before it.
                target = ptr_loop if ptr_loop is not None else last_value_ptr
                assert target is not None and data[target] >= 0x80, "release jumps into a run"
                found_release = True
                data.append(0)
                data.append(target)
                data[0] = len(data)

            last_value_ptr = len(data)
            data.append(val)
            prev_val = val
        else:
            rle_cnt += 1

    if ptr_loop is None or found_release:
        ptr_loop = len(data) - 1
    else:
        assert data[ptr_loop] >= 0x80, "loop jumps into a run"

    data.append(0)
    data.append(ptr_loop)

    if len(data) > MAX_ENVELOPE_BYTES:
        raise ExportError(
            f"envelope compiles to {len(data)} bytes, the driver addresses {MAX_ENVELOPE_BYTES}"
        )
    return bytes(data)
