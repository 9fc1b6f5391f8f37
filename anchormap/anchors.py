"""Anchor finding between a reference and a query dataset.

Both datasets are restricted to their shared features, projected into one
joint space (CCA by default), and paired by mutual nearest neighbours in that
space. Each anchor is scored by how much the two samples' neighbourhoods
agree, which downweights anchors from ambiguous or boundary regions.
"""

from __future__ import annotations

import logging
from typing import Sequence

import numpy as np
import scipy.sparse as sp
from scipy.sparse.linalg import LinearOperator, svds

from anchormap.core.capabilities import JointEmbedder
from anchormap.core.features import shared_features
from anchormap.core.neighbors import knn_indices, membership_matrix
from anchormap.core.types import NORMALIZED, AnchorSet, Dataset
from anchormap.core.utils import as_dense, finite_2d, l2_normalize_rows
from anchormap.errors import InsufficientSamplesError

logger = logging.getLogger(__name__)

EPS = 1e-12


def _fix_signs(u: np.ndarray, v: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    # Largest-magnitude entry of each left vector is made positive.
    pivot = np.argmax(np.abs(u), axis=0)
    signs = np.sign(u[pivot, np.arange(u.shape[1])])
    signs[signs == 0] = 1.0
    return u * signs, v * signs


class CCAJointEmbedder:
    """Canonical-correlation joint embedding.

    Both matrices are standardized with pooled per-feature mean and sd. The
    top singular triplets of `R @ Q.T` are found without forming that matrix
    (ARPACK with a seeded start vector). The reference and query canonical
    loadings (`R.T @ u`, `Q.T @ v`) are summed into one feature-space
    projection, so a reference and a query sample with identical profiles
    land on identical joint coordinates. Rows are L2-normalized.
    """

    def embed(
        self,
        reference: np.ndarray,
        query: np.ndarray,
        n_components: int,
        seed: int,
    ) -> tuple[np.ndarray, np.ndarray]:
        ref = finite_2d("reference", reference)
        qry = finite_2d("query", query)
        if ref.shape[1] != qry.shape[1]:
            raise ValueError(
                f"reference has {ref.shape[1]} features but query has {qry.shape[1]}."
            )
        stacked = np.vstack([ref, qry])
        mean = stacked.mean(axis=0)
        sd = stacked.std(axis=0)
        sd[sd < EPS] = 1.0
        stacked = (stacked - mean) / sd
        a = stacked[: ref.shape[0]]
        b = stacked[ref.shape[0]:]

        max_rank = min(a.shape[0] - 1, b.shape[0] - 1, a.shape[1])
        n_comp = min(int(n_components), max_rank)
        if n_comp < 1:
            raise ValueError(
                f"Joint embedding needs at least 2 samples per dataset and 1 feature, got "
                f"{a.shape[0]} reference / {b.shape[0]} query samples and {a.shape[1]} features."
            )
        if n_comp < int(n_components):
            logger.warning(
                "CCA: requested %d components, using %d (reference %d, query %d, features %d).",
                int(n_components),
                n_comp,
                a.shape[0],
                b.shape[0],
                a.shape[1],
            )

        cross = LinearOperator(
            (a.shape[0], b.shape[0]),
            matvec=lambda x: a @ (b.T @ x),
            rmatvec=lambda y: b @ (a.T @ y),
            matmat=lambda x: a @ (b.T @ x),
            rmatmat=lambda y: b @ (a.T @ y),
            dtype=float,
        )
        rng = np.random.default_rng(int(seed))
        v0 = rng.uniform(-1.0, 1.0, size=min(cross.shape))
        u, s, vt = svds(cross, k=n_comp, v0=v0, solver="arpack")
        order = np.argsort(-s, kind="stable")
        u, v = _fix_signs(u[:, order], vt[order].T)

        ref_load = a.T @ u
        qry_load = b.T @ v
        ref_load /= np.maximum(np.linalg.norm(ref_load, axis=0), EPS)
        qry_load /= np.maximum(np.linalg.norm(qry_load, axis=0), EPS)
        projection, _ = np.linalg.qr(ref_load + qry_load)

        joint = l2_normalize_rows(stacked @ projection)
        return joint[: a.shape[0]], joint[a.shape[0]:]


def _row_overlap(left: sp.csr_matrix, right: sp.csr_matrix, li: np.ndarray, ri: np.ndarray) -> np.ndarray:
    """|row li of left ∩ row ri of right| for each pair of 0/1 rows."""
    if li.size == 0:
        return np.zeros(0, dtype=float)
    return np.asarray(left[li].multiply(right[ri]).sum(axis=1)).ravel().astype(float)


def score_anchors(
    reference_embedding: np.ndarray,
    query_embedding: np.ndarray,
    reference_index: np.ndarray,
    query_index: np.ndarray,
    *,
    k_score: int,
    score_quantiles: tuple[float, float] | None = None,
    n_jobs: int | None = None,
) -> np.ndarray:
    """Neighbourhood-agreement score of each anchor, in [0, 1].

    For anchor (r, q): `|nn_R(r) ∩ nn_R(q)| + |nn_Q(q) ∩ nn_Q(r)|` over
    `2 * k_score`, where `nn_X(s)` is the `k_score` samples of dataset X
    nearest to s in the joint space (a sample is its own first neighbour).
    `score_quantiles=(low, high)` linearly rescales that quantile range onto
    [0, 1]; the result is always clipped to [0, 1].
    """
    ref = np.asarray(reference_embedding, dtype=float)
    qry = np.asarray(query_embedding, dtype=float)
    r_idx = np.asarray(reference_index, dtype=np.int64)
    q_idx = np.asarray(query_index, dtype=np.int64)
    if r_idx.size == 0:
        return np.zeros(0, dtype=float)
    k = int(k_score)

    ref_in_ref, _ = knn_indices(ref, k=k, n_jobs=n_jobs)
    qry_in_ref, _ = knn_indices(ref, qry, k=k, n_jobs=n_jobs)
    qry_in_qry, _ = knn_indices(qry, k=k, n_jobs=n_jobs)
    ref_in_qry, _ = knn_indices(qry, ref, k=k, n_jobs=n_jobs)

    n_ref, n_qry = ref.shape[0], qry.shape[0]
    shared_ref = _row_overlap(
        membership_matrix(ref_in_ref, n_ref), membership_matrix(qry_in_ref, n_ref), r_idx, q_idx
    )
    shared_qry = _row_overlap(
        membership_matrix(qry_in_qry, n_qry), membership_matrix(ref_in_qry, n_qry), q_idx, r_idx
    )
    raw = (shared_ref + shared_qry) / (2.0 * k)

    if score_quantiles is not None:
        low_q, high_q = (float(x) for x in score_quantiles)
        if not 0.0 <= low_q < high_q <= 1.0:
            raise ValueError("score_quantiles must satisfy 0 <= low < high <= 1.")
        low, high = np.quantile(raw, [low_q, high_q])
        if high - low > EPS:
            raw = (raw - low) / (high - low)
    return np.clip(raw, 0.0, 1.0)


def mutual_neighbors(
    reference_embedding: np.ndarray,
    query_embedding: np.ndarray,
    *,
    k: int,
    n_jobs: int | None = None,
) -> tuple[np.ndarray, np.ndarray]:
    """Return `(reference_index, query_index)` of all mutual kNN pairs.

    Pairs are ordered by query index, then reference index.
    """
    ref = np.asarray(reference_embedding, dtype=float)
    qry = np.asarray(query_embedding, dtype=float)
    ref_for_query, _ = knn_indices(ref, qry, k=k, n_jobs=n_jobs)
    query_for_ref, _ = knn_indices(qry, ref, k=k, n_jobs=n_jobs)
    forward = membership_matrix(ref_for_query, ref.shape[0])
    backward = membership_matrix(query_for_ref, qry.shape[0]).T.tocsr()
    mutual = forward.multiply(backward).tocoo()
    order = np.lexsort((mutual.col, mutual.row))
    return mutual.col[order].astype(np.int64), mutual.row[order].astype(np.int64)


def _require_samples(dataset: Dataset, k: int) -> None:
    if dataset.n_samples < int(k):
        raise InsufficientSamplesError(
            f"Anchor finding: dataset '{dataset.name}' has {dataset.n_samples} samples, "
            f"fewer than k_anchor={int(k)}."
        )


def find_anchors(
    reference: Dataset,
    query: Dataset,
    *,
    features: Sequence[str] | None = None,
    layer: str = NORMALIZED,
    n_components: int = 30,
    k_anchor: int = 5,
    k_score: int = 30,
    score_quantiles: tuple[float, float] | None = None,
    joint_embedder: JointEmbedder | None = None,
    seed: int = 0,
    n_jobs: int | None = None,
) -> AnchorSet:
    """Find scored mutual-nearest-neighbour anchors from `reference` to `query`.

    Raises `IncompatibleFeatureSpaceError` when the datasets share no
    features and `InsufficientSamplesError` when either has fewer than
    `k_anchor` samples. If no mutual pairs exist an empty AnchorSet is
    returned.
    """
    if int(k_anchor) <= 0 or int(k_score) <= 0:
        raise ValueError("k_anchor and k_score must be positive.")
    feats = shared_features(reference, query, restrict_to=features)
    _require_samples(reference, k_anchor)
    _require_samples(query, k_anchor)
    k_s = min(int(k_score), reference.n_samples, query.n_samples)
    if k_s < int(k_score):
        logger.warning(
            "Anchor scoring: k_score=%d clamped to %d (reference %d, query %d samples).",
            int(k_score),
            k_s,
            reference.n_samples,
            query.n_samples,
        )
    logger.info(
        "Anchor finding: %s (%d) -> %s (%d) on %d shared features",
        reference.name,
        reference.n_samples,
        query.name,
        query.n_samples,
        len(feats),
    )

    embedder = joint_embedder if joint_embedder is not None else CCAJointEmbedder()
    ref_z, qry_z = embedder.embed(
        as_dense(reference.matrix(layer, feats)),
        as_dense(query.matrix(layer, feats)),
        int(n_components),
        int(seed),
    )
    ref_z = np.asarray(ref_z, dtype=float)
    qry_z = np.asarray(qry_z, dtype=float)
    if ref_z.shape[0] != reference.n_samples or qry_z.shape[0] != query.n_samples:
        raise ValueError(
            f"Joint embedder returned {ref_z.shape[0]} / {qry_z.shape[0]} rows for "
            f"{reference.n_samples} / {query.n_samples} samples."
        )

    r_idx, q_idx = mutual_neighbors(ref_z, qry_z, k=int(k_anchor), n_jobs=n_jobs)
    if r_idx.size == 0:
        logger.warning(
            "Anchor finding: no mutual nearest neighbours between %s and %s (k_anchor=%d).",
            reference.name,
            query.name,
            int(k_anchor),
        )
    scores = score_anchors(
        ref_z,
        qry_z,
        r_idx,
        q_idx,
        k_score=k_s,
        score_quantiles=score_quantiles,
        n_jobs=n_jobs,
    )
    anchor_set = AnchorSet(
        reference_name=reference.name,
        query_name=query.name,
        reference_ids=reference.sample_ids,
        query_ids=query.sample_ids,
        features=feats,
        reference_embedding=ref_z,
        query_embedding=qry_z,
        reference_index=r_idx,
        query_index=q_idx,
        scores=scores,
        k_anchor=int(k_anchor),
        k_score=k_s,
        metadata={
            "layer": layer,
            "n_components": int(ref_z.shape[1]),
            "seed": int(seed),
            "score_quantiles": None if score_quantiles is None else list(score_quantiles),
        },
    )
    logger.info(
        "Anchor finding: %d anchors touching %d / %d query samples",
        len(anchor_set),
        int(np.unique(q_idx).size),
        query.n_samples,
    )
    return anchor_set
