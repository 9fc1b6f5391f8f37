"""Small pure helpers for matrix handling."""

from __future__ import annotations

from typing import Any

import numpy as np
import scipy.sparse as sp


def as_dense(matrix: Any, dtype=float) -> np.ndarray:
    if sp.issparse(matrix):
        return np.asarray(matrix.toarray(), dtype=dtype)
    return np.asarray(matrix, dtype=dtype)


def finite_2d(name: str, values: Any) -> np.ndarray:
    arr = as_dense(values)
    if arr.ndim != 2:
        raise ValueError(f"{name} must be 2D, got shape {arr.shape}.")
    if arr.size and not np.isfinite(arr).all():
        raise ValueError(f"{name} contains NaN/inf values.")
    return arr


def row_sums(matrix: Any) -> np.ndarray:
    if sp.issparse(matrix):
        return np.asarray(matrix.sum(axis=1)).ravel().astype(float)
    return np.asarray(matrix, dtype=float).sum(axis=1)


def row_nnz(matrix: Any) -> np.ndarray:
    if sp.issparse(matrix):
        return np.asarray(matrix.getnnz(axis=1)).ravel().astype(np.int64)
    return np.sum(np.asarray(matrix) > 0, axis=1).astype(np.int64)


def l2_normalize_rows(arr: np.ndarray) -> np.ndarray:
    x = np.asarray(arr, dtype=float)
    norms = np.linalg.norm(x, axis=1, keepdims=True)
    norms[norms == 0.0] = 1.0
    return x / norms
