"""Sample filtering, normalization and PCA for one dataset."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Sequence

import anndata as ad
import numpy as np
import pandas as pd
import scipy.sparse as sp

from anchormap.core.capabilities import Embedder, Normalizer
from anchormap.core.types import COUNTS, NORMALIZED, PCA, Dataset
from anchormap.core.utils import as_dense, row_sums

logger = logging.getLogger(__name__)


def _get_scanpy():
    import scanpy as sc

    return sc


class LogNormalizer:
    """Depth normalization to `target_sum` followed by `log1p` (scanpy)."""

    def __init__(self, target_sum: float = 1e4):
        self.target_sum = float(target_sum)

    def fit(self, counts: Any) -> "LogNormalizer":
        return self

    def transform(self, counts: Any) -> np.ndarray:
        sc = _get_scanpy()
        adata = ad.AnnData(X=sp.csr_matrix(counts, dtype=np.float32))
        sc.pp.normalize_total(adata, target_sum=self.target_sum)
        sc.pp.log1p(adata)
        return as_dense(adata.X)


class PearsonResidualsNormalizer:
    """Analytic Pearson residuals under a negative-binomial null.

    `fit` estimates each feature's share of total counts; `transform` computes
    `(x - mu) / sqrt(mu + mu^2 / theta)` with `mu = depth * share`, clipped to
    `+/- clip` (default `sqrt(n_fit)`). Features unseen during fitting get 0.
    """

    def __init__(self, theta: float = 100.0, clip: float | None = None):
        if float(theta) <= 0:
            raise ValueError("theta must be positive.")
        self.theta = float(theta)
        self.clip = clip
        self.feature_share_: np.ndarray | None = None
        self.n_fit_: int = 0

    def fit(self, counts: Any) -> "PearsonResidualsNormalizer":
        if sp.issparse(counts):
            feature_totals = np.asarray(counts.sum(axis=0)).ravel().astype(float)
        else:
            feature_totals = np.asarray(counts, dtype=float).sum(axis=0)
        grand = float(feature_totals.sum())
        if grand <= 0:
            raise ValueError("Cannot fit Pearson residuals on an all-zero count matrix.")
        self.feature_share_ = feature_totals / grand
        self.n_fit_ = int(counts.shape[0])
        return self

    def transform(self, counts: Any) -> np.ndarray:
        if self.feature_share_ is None:
            raise RuntimeError("PearsonResidualsNormalizer.transform called before fit.")
        x = as_dense(counts)
        if x.shape[1] != self.feature_share_.size:
            raise ValueError(
                f"counts have {x.shape[1]} features but the normalizer was fitted on "
                f"{self.feature_share_.size}."
            )
        depth = row_sums(x)
        mu = np.outer(depth, self.feature_share_)
        denom = np.sqrt(mu + mu * mu / self.theta)
        out = np.zeros_like(x, dtype=float)
        np.divide(x - mu, denom, out=out, where=denom > 0)
        clip = float(self.clip) if self.clip is not None else float(np.sqrt(max(1, self.n_fit_)))
        return np.clip(out, -clip, clip)


class PCAEmbedder:
    """PCA through `scanpy.tl.pca` (centred, arpack solver by default)."""

    def __init__(self, svd_solver: str = "arpack"):
        self.svd_solver = svd_solver

    def embed(self, matrix: np.ndarray, n_components: int, seed: int) -> np.ndarray:
        sc = _get_scanpy()
        x = as_dense(matrix, dtype=np.float32)
        n_comps = min(int(n_components), max(1, min(x.shape) - 1))
        if n_comps < int(n_components):
            logger.warning(
                "PCA: requested %d components but matrix is %d x %d; using %d.",
                int(n_components),
                x.shape[0],
                x.shape[1],
                n_comps,
            )
        adata = ad.AnnData(X=x)
        sc.tl.pca(adata, n_comps=n_comps, svd_solver=self.svd_solver, random_state=int(seed))
        return np.asarray(adata.obsm["X_pca"], dtype=float)


def filter_samples(
    dataset: Dataset,
    bounds: Mapping[str, Sequence[float | None]],
) -> Dataset:
    """Keep samples strictly inside every `(low, high)` bound on an obs field.

    A `None` side is unbounded. Example: `{"volume": (100, 2500)}` keeps
    `100 < volume < 2500`.
    """
    keep = np.ones(dataset.n_samples, dtype=bool)
    for field_name, pair in bounds.items():
        if field_name not in dataset.obs.columns:
            raise KeyError(
                f"Dataset '{dataset.name}': filter field '{field_name}' not in obs. "
                f"Available: {list(dataset.obs.columns)}"
            )
        if len(pair) != 2:
            raise ValueError(f"Bounds for '{field_name}' must be a (low, high) pair.")
        low, high = pair
        values = pd.to_numeric(dataset.obs[field_name], errors="coerce").to_numpy(dtype=float)
        field_mask = np.isfinite(values)
        if low is not None:
            field_mask &= values > float(low)
        if high is not None:
            field_mask &= values < float(high)
        logger.info(
            "%s: %s in (%s, %s) keeps %d / %d samples",
            dataset.name,
            field_name,
            low,
            high,
            int(field_mask.sum()),
            dataset.n_samples,
        )
        keep &= field_mask
    filtered = dataset.subset(keep)
    logger.info(
        "%s: filtering kept %d samples, dropped %d",
        dataset.name,
        filtered.n_samples,
        dataset.n_samples - filtered.n_samples,
    )
    return filtered


def select_variable_features(
    dataset: Dataset,
    n_top: int,
    *,
    layer: str = NORMALIZED,
) -> tuple[str, ...]:
    """Top `n_top` features by variance of `layer` (ties keep vocabulary order)."""
    if int(n_top) <= 0:
        raise ValueError("n_top must be positive.")
    mat = dataset.layer(layer)
    if sp.issparse(mat):
        mean = np.asarray(mat.mean(axis=0)).ravel()
        mean_sq = np.asarray(mat.multiply(mat).mean(axis=0)).ravel()
        var = mean_sq - mean * mean
    else:
        var = np.asarray(mat, dtype=float).var(axis=0)
    order = np.argsort(-var, kind="stable")[: int(n_top)]
    return tuple(str(dataset.feature_ids[i]) for i in order)


def preprocess(
    dataset: Dataset,
    *,
    normalizer: Normalizer | None = None,
    embedder: Embedder | None = None,
    features: Sequence[str] | None = None,
    n_top_features: int = 2000,
    n_components: int = 30,
    max_fit_samples: int | None = None,
    seed: int = 0,
) -> Dataset:
    """Add a `"normalized"` layer and an `"X_pca"` embedding.

    The normalizer is fitted on at most `max_fit_samples` samples (seeded
    draw) and applied to all of them. PCA uses `features` when given,
    otherwise the `n_top_features` most variable normalized features; the
    subset is recorded as `uns["variable_features"]`.
    """
    normalizer = normalizer if normalizer is not None else PearsonResidualsNormalizer()
    embedder = embedder if embedder is not None else PCAEmbedder()
    counts = dataset.layer(COUNTS)

    if max_fit_samples is not None and int(max_fit_samples) < dataset.n_samples:
        rng = np.random.default_rng(int(seed))
        fit_idx = np.sort(rng.choice(dataset.n_samples, size=int(max_fit_samples), replace=False))
        logger.info(
            "%s: fitting normalizer on %d / %d samples",
            dataset.name,
            fit_idx.size,
            dataset.n_samples,
        )
        fit_counts = counts[fit_idx]
    else:
        fit_counts = counts
    normalizer.fit(fit_counts)
    normalized = np.asarray(normalizer.transform(counts), dtype=float)
    if normalized.shape != dataset.shape:
        raise ValueError(
            f"Dataset '{dataset.name}': normalizer returned shape {normalized.shape}, "
            f"expected {dataset.shape}."
        )
    out = dataset.with_layer(NORMALIZED, normalized)

    if features is None:
        selected = select_variable_features(out, min(int(n_top_features), out.n_features))
    else:
        selected = tuple(str(f) for f in features)
        out.feature_positions(selected)
    if not selected:
        raise ValueError(f"Dataset '{dataset.name}': empty feature subset for PCA.")
    pcs = embedder.embed(out.matrix(NORMALIZED, selected), int(n_components), int(seed))
    logger.info(
        "%s: PCA on %d features -> %d components",
        dataset.name,
        len(selected),
        pcs.shape[1],
    )
    return out.with_embedding(PCA, pcs).with_uns(variable_features=list(selected))
