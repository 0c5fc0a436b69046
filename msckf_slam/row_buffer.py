"""Growable row buffers for stacking per-track Jacobian/residual blocks.

The number of rows an update produces is only known once every track has
been gated, so blocks are appended into an over-allocated buffer (capacity
doubling) and trimmed once at the end of the pass.
"""

from __future__ import annotations

import numpy as np


class RowBlockBuilder:
    """
    Append-only stack of row blocks with a fixed column count.

    Each append returns the offset just past the new block, so successive
    blocks occupy contiguous, non-overlapping row ranges in append order.
    """

    def __init__(self, cols: int, initial_rows: int = 16):
        if cols < 0:
            raise ValueError(f"cols must be >= 0, got {cols}")
        self.cols = int(cols)
        self._buf = np.zeros((max(int(initial_rows), 1), self.cols))
        self._offset = 0

    @property
    def offset(self) -> int:
        """Rows written so far (start row of the next block)."""
        return self._offset

    def __len__(self) -> int:
        return self._offset

    def append(self, rows) -> int:
        """
        Append a block of rows.

        Args:
            rows: (m, cols) array. A 1-D array is taken as m rows of a
                single-column buffer when cols == 1, else as one row.

        Returns:
            New offset (one past the last appended row).
        """
        rows = np.asarray(rows, dtype=float)
        if rows.ndim == 1:
            rows = rows.reshape(-1, 1) if self.cols == 1 else rows.reshape(1, -1)
        if rows.ndim != 2 or rows.shape[1] != self.cols:
            raise ValueError(
                f"row block has shape {rows.shape}, buffer expects {self.cols} columns")

        m = rows.shape[0]
        needed = self._offset + m
        if needed > self._buf.shape[0]:
            capacity = self._buf.shape[0]
            while capacity < needed:
                capacity *= 2
            grown = np.zeros((capacity, self.cols))
            grown[:self._offset] = self._buf[:self._offset]
            self._buf = grown

        self._buf[self._offset:needed] = rows
        self._offset = needed
        return self._offset

    def finalize(self) -> np.ndarray:
        """Trimmed copy of the appended rows, shape (offset, cols)."""
        return self._buf[:self._offset].copy()
