"""
Dimension reduction for compact index vectors.
"""

from typing import List, Optional

import numpy as np

DEFAULT_COMPACT_DIMENSION = 512


class DimensionReducer:
    """Reduce a full vector to a compact one by averaging contiguous windows.

    Window i covers source positions [floor(i*n/d), floor((i+1)*n/d)). The
    window means are L2-normalized, except for an all-zero input which is
    returned as zeros.
    """

    def __init__(self, target_dimension: int = DEFAULT_COMPACT_DIMENSION):
        if target_dimension < 1:
            raise ValueError("target_dimension must be >= 1")
        self.target_dimension = target_dimension

    def reduce(self, vector: List[float], target_dim: Optional[int] = None) -> List[float]:
        d = target_dim if target_dim is not None else self.target_dimension
        if d < 1:
            raise ValueError("target_dim must be >= 1")

        n = len(vector)
        if n <= d:
            return list(vector)

        source = np.asarray(vector, dtype=np.float64)
        # Integer boundaries avoid float drift in i * (n / d)
        bounds = [(i * n) // d for i in range(d + 1)]
        reduced = np.array([source[bounds[i]:bounds[i + 1]].mean() for i in range(d)])

        norm = np.linalg.norm(reduced)
        if norm == 0:
            return reduced.tolist()
        return (reduced / norm).tolist()
