"""Typed dataset, anchor and result containers for anchormap."""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Sequence

import anndata as ad
import numpy as np
import pandas as pd
import scipy.sparse as sp

from anchormap.errors import FormatError, UnanchoredSampleWarning

COUNTS = "counts"
NORMALIZED = "normalized"
PCA = "X_pca"
UMAP = "X_umap"
IMPUTED = "imputed"


def _unique_index(name: str, kind: str, values: Sequence[Any]) -> pd.Index:
    idx = pd.Index([str(v) for v in values], dtype=object)
    if idx.has_duplicates:
        dup = idx[idx.duplicated()].unique().tolist()
        raise FormatError(
            f"Dataset '{name}': {kind} identifiers must be unique; "
            f"{len(dup)} duplicated (e.g. {dup[:3]})."
        )
    return idx


def _readonly(arr: np.ndarray) -> np.ndarray:
    out = np.array(arr, copy=True)
    out.setflags(write=False)
    return out


@dataclass(frozen=True)
class Dataset:
    """Immutable snapshot of one dataset.

    Representation layers are addressed by explicit tag (`"counts"`,
    `"normalized"`); every transform returns a new Dataset and layers are only
    ever added. All layers are samples x features; all embeddings have one row
    per sample; `obs` is indexed by `sample_ids`.
    """

    name: str
    sample_ids: pd.Index
    feature_ids: pd.Index
    layers: Mapping[str, Any]
    obs: pd.DataFrame = None
    embeddings: Mapping[str, np.ndarray] = field(default_factory=dict)
    spatial: np.ndarray | None = None
    uns: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        samples = _unique_index(self.name, "sample", self.sample_ids)
        features = _unique_index(self.name, "feature", self.feature_ids)
        object.__setattr__(self, "sample_ids", samples)
        object.__setattr__(self, "feature_ids", features)

        if COUNTS not in self.layers:
            raise FormatError(f"Dataset '{self.name}' requires a '{COUNTS}' layer.")
        expected = (len(samples), len(features))
        for tag, mat in self.layers.items():
            if tuple(mat.shape) != expected:
                raise FormatError(
                    f"Dataset '{self.name}': layer '{tag}' has shape {tuple(mat.shape)}, "
                    f"expected {expected} (samples x features)."
                )
        for tag, emb in self.embeddings.items():
            if np.ndim(emb) != 2 or np.shape(emb)[0] != expected[0]:
                raise FormatError(
                    f"Dataset '{self.name}': embedding '{tag}' has shape {np.shape(emb)}, "
                    f"expected {expected[0]} rows."
                )
        if self.spatial is not None:
            xy = np.asarray(self.spatial, dtype=float)
            if xy.ndim != 2 or xy.shape[0] != expected[0] or xy.shape[1] not in (2, 3):
                raise FormatError(
                    f"Dataset '{self.name}': spatial coordinates have shape {xy.shape}, "
                    f"expected ({expected[0]}, 2|3)."
                )
            object.__setattr__(self, "spatial", _readonly(xy))

        obs = self.obs
        if obs is None:
            obs = pd.DataFrame(index=samples)
        elif not obs.index.astype(str).equals(samples):
            raise FormatError(
                f"Dataset '{self.name}': obs index does not match sample_ids "
                f"({obs.shape[0]} rows vs {len(samples)} samples)."
            )
        obs = obs.copy()
        obs.index = samples
        object.__setattr__(self, "obs", obs)
        object.__setattr__(self, "layers", MappingProxyType(dict(self.layers)))
        object.__setattr__(
            self,
            "embeddings",
            MappingProxyType({k: _readonly(np.asarray(v, dtype=float)) for k, v in self.embeddings.items()}),
        )
        object.__setattr__(self, "uns", MappingProxyType(dict(self.uns)))

    @property
    def n_samples(self) -> int:
        return int(len(self.sample_ids))

    @property
    def n_features(self) -> int:
        return int(len(self.feature_ids))

    @property
    def shape(self) -> tuple[int, int]:
        return self.n_samples, self.n_features

    def layer(self, tag: str):
        if tag not in self.layers:
            raise KeyError(
                f"Dataset '{self.name}' has no layer '{tag}'. Available: {sorted(self.layers)}."
            )
        return self.layers[tag]

    def embedding(self, tag: str) -> np.ndarray:
        if tag not in self.embeddings:
            raise KeyError(
                f"Dataset '{self.name}' has no embedding '{tag}'. "
                f"Available: {sorted(self.embeddings)}."
            )
        return self.embeddings[tag]

    def feature_positions(self, features: Sequence[str]) -> np.ndarray:
        pos = self.feature_ids.get_indexer([str(f) for f in features])
        if np.any(pos < 0):
            missing = [str(f) for f, p in zip(features, pos) if p < 0]
            raise KeyError(
                f"Dataset '{self.name}': {len(missing)} features not in vocabulary "
                f"(e.g. {missing[:3]})."
            )
        return pos.astype(np.int64)

    def matrix(self, tag: str, features: Sequence[str] | None = None):
        """Return layer `tag`, optionally restricted to `features` in that order."""
        mat = self.layer(tag)
        if features is None:
            return mat
        cols = self.feature_positions(features)
        if sp.issparse(mat):
            return sp.csr_matrix(mat)[:, cols]
        return np.asarray(mat)[:, cols]

    def _replace(self, **changes: Any) -> "Dataset":
        state = {
            "name": self.name,
            "sample_ids": self.sample_ids,
            "feature_ids": self.feature_ids,
            "layers": dict(self.layers),
            "obs": self.obs,
            "embeddings": dict(self.embeddings),
            "spatial": self.spatial,
            "uns": dict(self.uns),
        }
        state.update(changes)
        return Dataset(**state)

    def with_layer(self, tag: str, matrix: Any) -> "Dataset":
        if tag in self.layers:
            raise ValueError(f"Dataset '{self.name}' already has layer '{tag}'.")
        layers = dict(self.layers)
        layers[tag] = matrix
        return self._replace(layers=layers)

    def with_embedding(self, tag: str, coords: np.ndarray) -> "Dataset":
        embeddings = dict(self.embeddings)
        embeddings[tag] = coords
        return self._replace(embeddings=embeddings)

    def with_obs(self, **columns: Any) -> "Dataset":
        obs = self.obs.copy()
        for key, values in columns.items():
            obs[key] = values
        return self._replace(obs=obs)

    def with_spatial(self, coords: np.ndarray) -> "Dataset":
        return self._replace(spatial=coords)

    def with_uns(self, **entries: Any) -> "Dataset":
        uns = dict(self.uns)
        uns.update(entries)
        return self._replace(uns=uns)

    def subset(self, mask: Any) -> "Dataset":
        """Keep the samples selected by a boolean mask or positional indices."""
        sel = np.asarray(mask)
        if sel.dtype == bool:
            if sel.size != self.n_samples:
                raise ValueError(
                    f"Dataset '{self.name}': mask length {sel.size} != {self.n_samples} samples."
                )
            sel = np.flatnonzero(sel)
        sel = sel.astype(np.int64)
        layers = {}
        for tag, mat in self.layers.items():
            layers[tag] = sp.csr_matrix(mat)[sel] if sp.issparse(mat) else np.asarray(mat)[sel]
        uns = {}
        for key, val in self.uns.items():
            if isinstance(val, pd.DataFrame) and val.index.equals(self.sample_ids):
                val = val.iloc[sel]
            uns[key] = val
        return Dataset(
            name=self.name,
            sample_ids=self.sample_ids[sel],
            feature_ids=self.feature_ids,
            layers=layers,
            obs=self.obs.iloc[sel],
            embeddings={k: v[sel] for k, v in self.embeddings.items()},
            spatial=None if self.spatial is None else self.spatial[sel],
            uns=uns,
        )

    def to_anndata(self) -> ad.AnnData:
        """Export to AnnData (`X` = counts, other layers under `layers`)."""
        counts = self.layers[COUNTS]
        adata = ad.AnnData(
            X=counts.copy() if sp.issparse(counts) else np.array(counts, copy=True),
            obs=self.obs.copy(),
            var=pd.DataFrame(index=self.feature_ids.copy()),
        )
        for tag, mat in self.layers.items():
            adata.layers[tag] = mat.copy() if sp.issparse(mat) else np.array(mat, copy=True)
        for tag, emb in self.embeddings.items():
            adata.obsm[tag] = np.array(emb, copy=True)
        if self.spatial is not None:
            adata.obsm["spatial"] = np.array(self.spatial, copy=True)
        for key, val in self.uns.items():
            if isinstance(val, pd.DataFrame) and val.index.equals(self.sample_ids):
                adata.obsm[key] = val.copy()
            else:
                adata.uns[key] = list(val) if isinstance(val, tuple) else val
        adata.uns["dataset_name"] = self.name
        return adata

    @classmethod
    def from_anndata(
        cls,
        adata: ad.AnnData,
        *,
        name: str | None = None,
        counts_layer: str | None = None,
    ) -> "Dataset":
        if counts_layer is None:
            counts = adata.X
        else:
            if counts_layer not in adata.layers:
                raise KeyError(f"Layer '{counts_layer}' not found in adata.layers.")
            counts = adata.layers[counts_layer]
        counts = sp.csr_matrix(counts) if sp.issparse(counts) else np.asarray(counts)
        layers = {COUNTS: counts}
        for tag in adata.layers.keys():
            if tag not in (COUNTS, counts_layer):
                layers[tag] = adata.layers[tag]
        embeddings = {}
        spatial = None
        for key in adata.obsm.keys():
            if key == "spatial":
                spatial = np.asarray(adata.obsm[key], dtype=float)
            elif not isinstance(adata.obsm[key], pd.DataFrame):
                embeddings[key] = np.asarray(adata.obsm[key], dtype=float)
        return cls(
            name=str(name or adata.uns.get("dataset_name", "dataset")),
            sample_ids=adata.obs_names,
            feature_ids=adata.var_names,
            layers=layers,
            obs=adata.obs.copy(),
            embeddings=embeddings,
            spatial=spatial,
        )


@dataclass(frozen=True)
class Anchor:
    reference_id: str
    query_id: str
    score: float
    reference_index: int
    query_index: int


@dataclass(frozen=True)
class AnchorSet:
    """Mutual-nearest-neighbour anchors between a reference and a query.

    - `reference_embedding` / `query_embedding`: joint coordinates of every
      sample of each dataset (rows follow `reference_ids` / `query_ids`).
    - `reference_index[i]`, `query_index[i]`, `scores[i]`: the i-th anchor.
    """

    reference_name: str
    query_name: str
    reference_ids: pd.Index
    query_ids: pd.Index
    features: tuple[str, ...]
    reference_embedding: np.ndarray
    query_embedding: np.ndarray
    reference_index: np.ndarray
    query_index: np.ndarray
    scores: np.ndarray
    k_anchor: int
    k_score: int
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        ref_idx = np.asarray(self.reference_index, dtype=np.int64).ravel()
        qry_idx = np.asarray(self.query_index, dtype=np.int64).ravel()
        scores = np.asarray(self.scores, dtype=float).ravel()
        if not (ref_idx.size == qry_idx.size == scores.size):
            raise ValueError(
                "AnchorSet index and score arrays must have equal length "
                f"({ref_idx.size}, {qry_idx.size}, {scores.size})."
            )
        if ref_idx.size:
            if ref_idx.min() < 0 or ref_idx.max() >= len(self.reference_ids):
                raise ValueError("AnchorSet reference_index outside the reference dataset.")
            if qry_idx.min() < 0 or qry_idx.max() >= len(self.query_ids):
                raise ValueError("AnchorSet query_index outside the query dataset.")
            if scores.min() < 0.0 or scores.max() > 1.0:
                raise ValueError("Anchor scores must lie in [0, 1].")
        ref_emb = np.asarray(self.reference_embedding, dtype=float)
        qry_emb = np.asarray(self.query_embedding, dtype=float)
        if ref_emb.shape[0] != len(self.reference_ids) or qry_emb.shape[0] != len(self.query_ids):
            raise ValueError("Joint embedding rows must match the dataset sample counts.")
        object.__setattr__(self, "reference_ids", pd.Index(self.reference_ids, dtype=object))
        object.__setattr__(self, "query_ids", pd.Index(self.query_ids, dtype=object))
        object.__setattr__(self, "features", tuple(str(f) for f in self.features))
        object.__setattr__(self, "reference_embedding", _readonly(ref_emb))
        object.__setattr__(self, "query_embedding", _readonly(qry_emb))
        object.__setattr__(self, "reference_index", _readonly(ref_idx))
        object.__setattr__(self, "query_index", _readonly(qry_idx))
        object.__setattr__(self, "scores", _readonly(scores))
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    def __len__(self) -> int:
        return int(self.scores.size)

    @property
    def is_empty(self) -> bool:
        return self.scores.size == 0

    @property
    def anchors(self) -> list[Anchor]:
        return [
            Anchor(
                reference_id=str(self.reference_ids[r]),
                query_id=str(self.query_ids[q]),
                score=float(s),
                reference_index=int(r),
                query_index=int(q),
            )
            for r, q, s in zip(self.reference_index, self.query_index, self.scores)
        ]

    def distances(self) -> np.ndarray:
        """Joint-space Euclidean distance of each anchor pair."""
        if self.is_empty:
            return np.zeros(0, dtype=float)
        diff = self.reference_embedding[self.reference_index] - self.query_embedding[self.query_index]
        return np.linalg.norm(diff, axis=1)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "reference_id": [str(self.reference_ids[r]) for r in self.reference_index],
                "query_id": [str(self.query_ids[q]) for q in self.query_index],
                "score": self.scores.astype(float),
                "distance": self.distances(),
            }
        )


@dataclass(frozen=True)
class LabelTransferResult:
    """Per-query-sample label predictions.

    `predictions` is indexed by query id with columns `predicted` (missing for
    unanchored samples), `score` (weight share of the winning label) and
    `n_anchors`.
    """

    predictions: pd.DataFrame
    unanchored: tuple[str, ...] = ()
    warning: UnanchoredSampleWarning | None = None


@dataclass(frozen=True)
class FeatureTransferResult:
    """Transferred expression: query ids x features, NaN rows when unanchored."""

    values: pd.DataFrame
    unanchored: tuple[str, ...] = ()
    warning: UnanchoredSampleWarning | None = None
