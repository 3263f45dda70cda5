"""Scatter-gather segments and their coalescing."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

_U32_MASK = 0xFFFFFFFF


@dataclass(frozen=True)
class Iovec:
    """One contiguous memory segment: a base address and a length in bytes."""

    base: int
    length: int

    @property
    def end(self) -> int:
        return self.base + self.length


def _would_add_overflow(len1: int, len2: int) -> bool:
    """True when adding two lengths wraps around a 32-bit counter."""
    return (len1 & _U32_MASK) + (len2 & _U32_MASK) > _U32_MASK


def coalesce_iovecs(iovecs: Iterable[Iovec]) -> list[Iovec]:
    """Merge adjacent, contiguous segments without reordering them.

    Two neighbours are merged when the first ends exactly where the second
    begins and their combined length still fits in 32 bits.
    """
    merged: list[Iovec] = []
    for vec in iovecs:
        if merged:
            last = merged[-1]
            if last.end == vec.base and not _would_add_overflow(
                last.length, vec.length
            ):
                merged[-1] = Iovec(last.base, last.length + vec.length)
                continue
        merged.append(vec)
    return merged