# data_pipeline/preprocessing/vectorize.py
"""
Multi-hot vectorization of word-index sequences.

Each sequence becomes one row of a binary matrix: column j is 1 when the
value ``j + index_base`` occurs anywhere in the sequence, 0 otherwise.
Order and repetition are ignored (bag-of-words presence, not counts).

With the default ``index_base=1``:

    vectorize_sequences([[1, 3], [2]], dimension=4)
    -> [[1, 0, 1, 0],
        [0, 1, 0, 0]]
"""

from numbers import Integral
from typing import Iterable, Sequence

import numpy as np


def _check_int(name: str, value, positive: bool = False) -> int:
    if isinstance(value, bool) or not isinstance(value, Integral):
        raise ValueError(f"{name} must be an integer, got {value!r}")
    value = int(value)
    if positive and value <= 0:
        raise ValueError(f"{name} must be a positive integer, got {value}")
    return value


def _as_index_array(seq, row: int) -> np.ndarray:
    arr = np.asarray(seq)
    if arr.ndim != 1:
        raise ValueError(f"sequence {row} must be one-dimensional, got shape {arr.shape}")
    if arr.size == 0:
        return np.empty(0, dtype=np.int64)
    if arr.dtype == object and all(isinstance(v, Integral) and not isinstance(v, bool) for v in arr):
        # Python ints beyond int64 land in an object array
        info = np.iinfo(np.int64)
        for v in arr:
            if not info.min <= v <= info.max:
                raise IndexError(f"sequence {row} contains index {v}, outside the int64 range")
        return arr.astype(np.int64)
    if arr.dtype.kind not in "iu":
        raise ValueError(f"sequence {row} must contain integers, got dtype {arr.dtype}")
    return arr.astype(np.int64, copy=False)


def vectorize_sequences(
    sequences: Iterable[Sequence[int]],
    dimension: int,
    index_base: int = 1,
    dtype=np.float32,
) -> np.ndarray:
    """
    sequences:  iterable of integer sequences (lists, tuples or 1-D arrays)
    dimension:  width of every output row
    index_base: sequence value mapped to column 0

    Returns an array of shape (len(sequences), dimension) holding only 0 and 1.

    Raises ValueError for a bad dimension/index_base or non-integer values,
    IndexError when a value falls outside [index_base, index_base + dimension - 1].
    """
    dimension = _check_int("dimension", dimension, positive=True)
    index_base = _check_int("index_base", index_base)

    rows, cols = [], []
    n = 0
    for i, seq in enumerate(sequences):
        idx = _as_index_array(seq, i) - index_base
        if idx.size:
            bad = (idx < 0) | (idx >= dimension)
            if bad.any():
                value = int(idx[bad][0]) + index_base
                raise IndexError(
                    f"sequence {i} contains index {value}, outside "
                    f"[{index_base}, {index_base + dimension - 1}]"
                )
            rows.append(np.full(idx.size, i, dtype=np.int64))
            cols.append(idx)
        n = i + 1

    results = np.zeros((n, dimension), dtype=dtype)
    if rows:
        # assignment is idempotent, duplicates collapse to a single 1
        results[np.concatenate(rows), np.concatenate(cols)] = 1
    return results


def infer_dimension(sequences: Iterable[Sequence[int]], index_base: int = 1) -> int:
    """Smallest dimension covering every value in the corpus (1 if all sequences are empty)."""
    index_base = _check_int("index_base", index_base)
    top = None
    for i, seq in enumerate(sequences):
        idx = _as_index_array(seq, i)
        if idx.size:
            m = int(idx.max())
            top = m if top is None else max(top, m)
    if top is None:
        return 1
    if top < index_base:
        raise IndexError(f"max index {top} is below index_base {index_base}")
    return top - index_base + 1


def vectorize_labels(labels: Iterable[int]) -> np.ndarray:
    """Binary labels as a float32 column vector of shape (N, 1)."""
    y = np.asarray(list(labels))
    if y.size and not np.isin(y, (0, 1)).all():
        raise ValueError(f"labels must be 0 or 1, got {sorted(set(y.tolist()))}")
    return y.astype(np.float32).reshape(-1, 1)
