"""Shared-neighbour clustering and 2-D projection of one dataset."""

from __future__ import annotations

import logging

import anndata as ad
import numpy as np
import pandas as pd
import scipy.sparse as sp

from anchormap.core.capabilities import GraphClusterer, Projector
from anchormap.core.neighbors import SNN_PRUNE, shared_neighbor_graph
from anchormap.core.types import PCA, UMAP, Dataset

logger = logging.getLogger(__name__)


def _get_scanpy():
    import scanpy as sc

    return sc


class LeidenClusterer:
    """Leiden modularity clustering via `scanpy.tl.leiden` (igraph flavor)."""

    def __init__(self, n_iterations: int = 2):
        self.n_iterations = int(n_iterations)

    def cluster(self, adjacency, resolution: float, seed: int) -> np.ndarray:
        sc = _get_scanpy()
        graph = sp.csr_matrix(adjacency)
        adata = ad.AnnData(X=sp.csr_matrix((graph.shape[0], 1), dtype=np.float32))
        sc.tl.leiden(
            adata,
            resolution=float(resolution),
            random_state=int(seed),
            adjacency=graph,
            key_added="leiden",
            flavor="igraph",
            n_iterations=self.n_iterations,
            directed=False,
        )
        return adata.obs["leiden"].astype(str).to_numpy()


class UMAPProjector:
    """UMAP through `scanpy.pp.neighbors` + `scanpy.tl.umap`."""

    def __init__(self, min_dist: float = 0.3, spread: float = 1.0):
        self.min_dist = float(min_dist)
        self.spread = float(spread)

    def project(self, embedding: np.ndarray, n_neighbors: int, seed: int) -> np.ndarray:
        sc = _get_scanpy()
        emb = np.asarray(embedding, dtype=np.float32)
        adata = ad.AnnData(X=sp.csr_matrix((emb.shape[0], 1), dtype=np.float32))
        adata.obsm["X_rep"] = emb
        sc.pp.neighbors(
            adata,
            n_neighbors=int(n_neighbors),
            use_rep="X_rep",
            random_state=int(seed),
        )
        sc.tl.umap(
            adata,
            random_state=int(seed),
            min_dist=self.min_dist,
            spread=self.spread,
        )
        return np.asarray(adata.obsm["X_umap"], dtype=float)


def cluster_dataset(
    dataset: Dataset,
    *,
    k: int = 20,
    n_dims: int | None = None,
    resolution: float = 0.8,
    seed: int = 0,
    key: str = "cluster",
    embedding: str = PCA,
    prune: float = SNN_PRUNE,
    clusterer: GraphClusterer | None = None,
    n_jobs: int | None = None,
) -> Dataset:
    """Cluster on the SNN graph of the first `n_dims` columns of `embedding`.

    Labels are opaque strings; only the grouping is meaningful. A fixed
    `seed` gives the same partition on every run, while different seeds can
    give different partitions (the Leiden optimizer is randomized).
    """
    clusterer = clusterer if clusterer is not None else LeidenClusterer()
    coords = dataset.embedding(embedding)
    if int(k) > dataset.n_samples:
        raise ValueError(
            f"Dataset '{dataset.name}': k={int(k)} exceeds {dataset.n_samples} samples."
        )
    graph = shared_neighbor_graph(coords, k=int(k), n_dims=n_dims, prune=prune, n_jobs=n_jobs)
    labels = np.asarray(clusterer.cluster(graph, float(resolution), int(seed))).astype(str)
    if labels.size != dataset.n_samples:
        raise ValueError(
            f"Dataset '{dataset.name}': clusterer returned {labels.size} labels "
            f"for {dataset.n_samples} samples."
        )
    categories = sorted(set(labels.tolist()), key=lambda v: (len(v), v))
    logger.info(
        "%s: %d clusters (k=%d, resolution=%s, seed=%d)",
        dataset.name,
        len(categories),
        int(k),
        resolution,
        int(seed),
    )
    return dataset.with_obs(**{key: pd.Categorical(labels, categories=categories)})


def project_dataset(
    dataset: Dataset,
    *,
    k: int = 15,
    n_dims: int | None = None,
    seed: int = 0,
    embedding: str = PCA,
    projector: Projector | None = None,
) -> Dataset:
    """Add a 2-D `"X_umap"` embedding (observational only)."""
    projector = projector if projector is not None else UMAPProjector()
    coords = np.asarray(dataset.embedding(embedding), dtype=float)
    if n_dims is not None:
        coords = coords[:, : int(n_dims)]
    xy = np.asarray(projector.project(coords, int(k), int(seed)), dtype=float)
    if xy.shape != (dataset.n_samples, 2):
        raise ValueError(
            f"Dataset '{dataset.name}': projector returned shape {xy.shape}, "
            f"expected ({dataset.n_samples}, 2)."
        )
    return dataset.with_embedding(UMAP, xy)
