"""Exact k-nearest-neighbour search and shared-neighbour graphs."""

from __future__ import annotations

import numpy as np
import scipy.sparse as sp
from sklearn.metrics import pairwise_distances_chunked

from anchormap.core.utils import finite_2d

SNN_PRUNE = 1.0 / 15.0


def knn_indices(
    data: np.ndarray,
    query: np.ndarray | None = None,
    *,
    k: int,
    n_jobs: int | None = None,
) -> tuple[np.ndarray, np.ndarray]:
    """Return `(indices, distances)` of the `k` nearest rows of `data`.

    Neighbours are searched for every row of `query` (or of `data` itself,
    in which case each row is its own first neighbour). Distances are
    Euclidean. Ties keep the lower row index, and rows are processed
    independently, so the result does not depend on `n_jobs`.
    """
    ref = finite_2d("data", data)
    qry = ref if query is None else finite_2d("query", query)
    k_i = int(k)
    if k_i <= 0:
        raise ValueError("k must be positive.")
    if k_i > ref.shape[0]:
        raise ValueError(f"k={k_i} exceeds the {ref.shape[0]} searchable rows.")
    if qry.shape[1] != ref.shape[1]:
        raise ValueError(
            f"query has {qry.shape[1]} columns but data has {ref.shape[1]}."
        )

    def _reduce(chunk: np.ndarray, start: int) -> tuple[np.ndarray, np.ndarray]:
        order = np.argsort(chunk, axis=1, kind="stable")[:, :k_i]
        return order, np.take_along_axis(chunk, order, axis=1)

    if qry.shape[0] == 0:
        return np.zeros((0, k_i), dtype=np.int64), np.zeros((0, k_i), dtype=float)

    idx_parts: list[np.ndarray] = []
    dist_parts: list[np.ndarray] = []
    for order, dist in pairwise_distances_chunked(
        qry,
        ref,
        reduce_func=_reduce,
        metric="euclidean",
        n_jobs=n_jobs,
    ):
        idx_parts.append(order)
        dist_parts.append(dist)
    return (
        np.vstack(idx_parts).astype(np.int64),
        np.vstack(dist_parts).astype(float),
    )


def membership_matrix(indices: np.ndarray, n_columns: int) -> sp.csr_matrix:
    """Sparse 0/1 matrix with row i marking the neighbours of sample i."""
    idx = np.asarray(indices, dtype=np.int64)
    n_rows, k = idx.shape
    rows = np.repeat(np.arange(n_rows, dtype=np.int64), k)
    data = np.ones(rows.size, dtype=float)
    return sp.csr_matrix((data, (rows, idx.ravel())), shape=(n_rows, int(n_columns)))


def shared_neighbor_graph(
    embedding: np.ndarray,
    *,
    k: int,
    n_dims: int | None = None,
    prune: float = SNN_PRUNE,
    n_jobs: int | None = None,
) -> sp.csr_matrix:
    """Symmetric shared-nearest-neighbour graph.

    Edge weight is the Jaccard overlap of the two samples' kNN sets (self
    included); edges below `prune` are dropped and the diagonal is empty.
    """
    emb = finite_2d("embedding", embedding)
    if n_dims is not None:
        if int(n_dims) <= 0:
            raise ValueError("n_dims must be positive.")
        emb = emb[:, : int(n_dims)]
    idx, _ = knn_indices(emb, k=k, n_jobs=n_jobs)
    member = membership_matrix(idx, emb.shape[0])
    shared = (member @ member.T).tocoo()
    k_f = float(idx.shape[1])
    weight = shared.data / (2.0 * k_f - shared.data)
    keep = (weight >= float(prune)) & (shared.row != shared.col)
    graph = sp.csr_matrix(
        (weight[keep], (shared.row[keep], shared.col[keep])),
        shape=shared.shape,
    )
    graph.eliminate_zeros()
    return graph
