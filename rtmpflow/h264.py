"""Locating NAL units in an H.264 Annex B byte stream."""

from __future__ import annotations

from typing import Optional, Tuple


def find_nal(data: bytes) -> Optional[Tuple[int, int]]:
    """Find the first NAL unit after a start code.

    Returns ``(start, end)`` so that ``data[start:end]`` is the NAL unit
    without its start code, or None when no start code is found or the
    data is shorter than five bytes. Without a following start code the
    unit runs to the end of the data.
    """
    size = len(data)
    if size < 5:
        return None

    begin: Optional[int] = None
    last = size - 1

    for pos in range(2, size - 1):
        window = data[pos - 2:pos + 1]
        if window == b"\x00\x00\x01":
            if begin is None:
                begin = pos + 1
            elif pos > begin + 3:
                last = pos - 3
                break
        elif window == b"\x00\x00\x00" and data[pos + 1] == 0x01:
            if begin is None:
                if pos > size - 3:
                    break
                begin = pos + 2
            else:
                last = pos - 3
                break

    if begin is None:
        return None
    return begin, last + 1