from __future__ import annotations

import numpy as np


class BlockArena:
    """
    Append-only storage for fixed-size float64 blocks.

    Slots live in preallocated segments and a new segment is added when the
    last one is full, so `arena[i]` is a view whose memory never moves. The
    solver writes through these views. Appends must be serialized by the caller.
    """

    def __init__(self, block_size: int, segment_size: int = 64):
        if block_size < 1 or segment_size < 1:
            raise ValueError("block_size and segment_size must be >= 1")
        self.block_size = int(block_size)
        self.segment_size = int(segment_size)
        self._segments: list[np.ndarray] = []
        self._count = 0

    def append(self, values: np.ndarray) -> int:
        values = np.asarray(values, dtype=np.float64).reshape(-1)
        if values.size != self.block_size:
            raise ValueError(f"expected a block of {self.block_size} values, got {values.size}")
        seg, slot = divmod(self._count, self.segment_size)
        if seg == len(self._segments):
            self._segments.append(np.zeros((self.segment_size, self.block_size), dtype=np.float64))
        self._segments[seg][slot] = values
        self._count += 1
        return self._count - 1

    def __getitem__(self, index: int) -> np.ndarray:
        index = int(index)
        if not 0 <= index < self._count:
            raise IndexError(f"slot {index} out of range [0, {self._count})")
        seg, slot = divmod(index, self.segment_size)
        return self._segments[seg][slot]

    def __len__(self) -> int:
        return self._count
