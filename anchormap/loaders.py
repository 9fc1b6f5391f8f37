"""Matrix and spatial loaders.

Readers for a droplet reference (Matrix Market triplet or `.h5ad`) and for a
Vizgen Merscope query (`cell_by_gene.csv` + `cell_metadata.csv`). All loaders
return a `Dataset` whose `obs` carries `total_counts` and `n_features`.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Sequence

import anndata as ad
import numpy as np
import pandas as pd
import scipy.io
import scipy.sparse as sp

from anchormap.core.features import SYMBOL_COLUMNS, make_unique
from anchormap.core.types import COUNTS, Dataset
from anchormap.core.utils import row_nnz, row_sums
from anchormap.errors import FormatError, MissingFileError, SchemaError

logger = logging.getLogger(__name__)

ORIENTATIONS = ("features_by_samples", "samples_by_features")
CENTROID_COLUMNS = ("center_x", "center_y")
BLANK_PREFIX = "Blank-"

MATRIX_NAMES = ("matrix.mtx.gz", "matrix.mtx")
FEATURE_NAMES = ("features.tsv.gz", "features.tsv", "genes.tsv.gz", "genes.tsv")
BARCODE_NAMES = ("barcodes.tsv.gz", "barcodes.tsv")


def _require_file(path: str | Path, what: str) -> Path:
    p = Path(path)
    if not p.exists():
        raise MissingFileError(f"Required {what} not found: {p}")
    return p


def _first_existing(directory: Path, names: Sequence[str], what: str) -> Path:
    for name in names:
        candidate = directory / name
        if candidate.exists():
            return candidate
    raise MissingFileError(
        f"No {what} found in {directory}. Tried: {', '.join(names)}"
    )


def _qc_obs(counts: Any, index: pd.Index, obs: pd.DataFrame | None = None) -> pd.DataFrame:
    out = pd.DataFrame(index=index) if obs is None else obs.copy()
    out["total_counts"] = row_sums(counts)
    out["n_features"] = row_nnz(counts)
    return out


def dataset_from_matrix(
    matrix: Any,
    feature_ids: Sequence[str],
    sample_ids: Sequence[str],
    *,
    name: str = "reference",
    orientation: str = "features_by_samples",
    obs: pd.DataFrame | None = None,
) -> Dataset:
    """Build a Dataset from an in-memory count matrix and identifier lists.

    `orientation="features_by_samples"` is the 10x / Matrix Market layout
    (rows are genes); the matrix is transposed to samples x features.
    """
    if orientation not in ORIENTATIONS:
        raise ValueError(f"orientation must be one of {ORIENTATIONS}, got '{orientation}'.")
    shape = tuple(np.shape(matrix)) if not sp.issparse(matrix) else tuple(matrix.shape)
    if len(shape) != 2:
        raise FormatError(f"Dataset '{name}': count matrix must be 2D, got shape {shape}.")
    n_rows, n_cols = shape
    if orientation == "features_by_samples":
        expected_features, expected_samples = n_rows, n_cols
    else:
        expected_samples, expected_features = n_rows, n_cols
    if len(feature_ids) != expected_features or len(sample_ids) != expected_samples:
        raise FormatError(
            f"Dataset '{name}': matrix is {n_rows} x {n_cols} ({orientation}) but got "
            f"{len(feature_ids)} feature ids and {len(sample_ids)} sample ids."
        )

    if sp.issparse(matrix):
        counts = sp.csr_matrix(matrix.T if orientation == "features_by_samples" else matrix)
        counts = counts.astype(np.float32)
    else:
        arr = np.asarray(matrix, dtype=np.float32)
        counts = sp.csr_matrix(arr.T if orientation == "features_by_samples" else arr)
    if counts.nnz and (not np.isfinite(counts.data).all() or counts.data.min() < 0):
        raise FormatError(f"Dataset '{name}': counts must be finite and non-negative.")

    index = pd.Index([str(s) for s in sample_ids], dtype=object)
    return Dataset(
        name=name,
        sample_ids=index,
        feature_ids=[str(f) for f in feature_ids],
        layers={COUNTS: counts},
        obs=_qc_obs(counts, index, obs),
    )


def _read_id_table(path: Path, name: str, what: str) -> pd.DataFrame:
    try:
        return pd.read_csv(path, sep="\t", header=None, dtype=str, compression="infer")
    except pd.errors.EmptyDataError as exc:
        raise FormatError(f"Dataset '{name}': {what} is empty: {path}") from exc


def load_count_matrix(
    matrix_path: str | Path,
    features_path: str | Path,
    barcodes_path: str | Path,
    *,
    name: str = "reference",
) -> Dataset:
    """Read a Matrix Market count matrix (features x cells) with its id lists.

    The feature file's second column (gene symbol) is used when present,
    otherwise the first (gene id).
    """
    mtx = _require_file(matrix_path, "count matrix")
    feats = _require_file(features_path, "feature list")
    barcodes = _require_file(barcodes_path, "barcode list")

    try:
        matrix = scipy.io.mmread(str(mtx))
    except ValueError as exc:
        raise FormatError(f"Dataset '{name}': could not parse Matrix Market file {mtx}: {exc}") from exc

    feat_df = _read_id_table(feats, name, "feature list")
    feature_ids = feat_df.iloc[:, 1] if feat_df.shape[1] > 1 else feat_df.iloc[:, 0]
    feature_ids = make_unique(feature_ids.fillna("").tolist(), source=f"{name} features")
    sample_ids = _read_id_table(barcodes, name, "barcode list").iloc[:, 0].tolist()

    dataset = dataset_from_matrix(
        sp.csr_matrix(matrix),
        feature_ids,
        sample_ids,
        name=name,
        orientation="features_by_samples",
    )
    logger.info(
        "Loaded %s: %d samples x %d features from %s",
        name,
        dataset.n_samples,
        dataset.n_features,
        mtx.parent,
    )
    return dataset


def load_10x_directory(directory: str | Path, *, name: str = "reference") -> Dataset:
    root = Path(directory)
    if not root.is_dir():
        raise MissingFileError(f"10x directory not found: {root}")
    return load_count_matrix(
        _first_existing(root, MATRIX_NAMES, "matrix file"),
        _first_existing(root, FEATURE_NAMES, "feature file"),
        _first_existing(root, BARCODE_NAMES, "barcode file"),
        name=name,
    )


def load_h5ad(
    path: str | Path,
    *,
    name: str = "reference",
    counts_layer: str | None = None,
) -> Dataset:
    """Read a reference from `.h5ad`, preferring a symbol column for var names."""
    h5ad_path = _require_file(path, "h5ad file")
    adata = ad.read_h5ad(h5ad_path)
    for col in SYMBOL_COLUMNS:
        if col in adata.var.columns:
            adata.var_names = make_unique(
                adata.var[col].astype(str).tolist(), source=f"{name} {col}"
            )
            break
    else:
        adata.var_names = make_unique(adata.var_names, source=f"{name} var_names")
    dataset = Dataset.from_anndata(adata, name=name, counts_layer=counts_layer)
    counts = dataset.layer(COUNTS)
    return dataset.with_obs(
        total_counts=row_sums(counts),
        n_features=row_nnz(counts),
    )


def _index_mismatch(left: pd.Index, right: pd.Index) -> tuple[int, int]:
    return int(left.difference(right).size), int(right.difference(left).size)


def spatial_dataset_from_tables(
    counts: pd.DataFrame,
    coordinates: pd.DataFrame,
    metadata: pd.DataFrame | None = None,
    *,
    name: str = "query",
) -> Dataset:
    """Build a spatial Dataset from three tables indexed by sample id.

    `counts` is samples x features, `coordinates` holds 2 or 3 centroid
    columns and `metadata` named scalar fields. All three must index exactly
    the same samples; rows are aligned to the order of `counts`.
    """
    count_idx = pd.Index(counts.index.astype(str))
    if count_idx.has_duplicates:
        raise FormatError(f"Dataset '{name}': duplicated sample ids in the count table.")
    tables = {"coordinates": coordinates}
    if metadata is not None:
        tables["metadata"] = metadata
    aligned: dict[str, pd.DataFrame] = {}
    for label, table in tables.items():
        idx = pd.Index(table.index.astype(str))
        if idx.has_duplicates:
            raise FormatError(f"Dataset '{name}': duplicated sample ids in the {label} table.")
        only_counts, only_table = _index_mismatch(count_idx, idx)
        if only_counts or only_table:
            raise SchemaError(
                f"Dataset '{name}': count table ({count_idx.size} samples) and {label} table "
                f"({idx.size} samples) disagree: {only_counts} only in counts, "
                f"{only_table} only in {label}."
            )
        frame = table.copy()
        frame.index = idx
        aligned[label] = frame.loc[count_idx]

    coords = aligned["coordinates"]
    if coords.shape[1] not in (2, 3):
        raise FormatError(
            f"Dataset '{name}': expected 2 or 3 coordinate columns, got {coords.shape[1]}."
        )
    obs = aligned.get("metadata")
    if obs is not None:
        obs = obs.drop(columns=[c for c in coords.columns if c in obs.columns])
    return dataset_from_matrix(
        sp.csr_matrix(counts.to_numpy(dtype=np.float32)),
        [str(c) for c in counts.columns],
        count_idx.tolist(),
        name=name,
        orientation="samples_by_features",
        obs=obs,
    ).with_spatial(coords.to_numpy(dtype=float))


def load_vizgen(
    directory: str | Path,
    *,
    name: str = "query",
    cell_by_gene: str = "cell_by_gene.csv",
    cell_metadata: str = "cell_metadata.csv",
    drop_blank_probes: bool = True,
) -> Dataset:
    """Read a Merscope output directory.

    Centroids come from `center_x`/`center_y`; the remaining numeric metadata
    columns (e.g. `volume`) become obs fields. `Blank-*` control probes are
    dropped by default. A `log_umi` column (log10 total counts) is added for
    inspection only.
    """
    root = Path(directory)
    if not root.is_dir():
        raise MissingFileError(f"Vizgen directory not found: {root}")
    counts_path = _require_file(root / cell_by_gene, "Vizgen cell-by-gene table")
    meta_path = _require_file(root / cell_metadata, "Vizgen cell metadata table")

    counts = pd.read_csv(counts_path, index_col=0)
    meta = pd.read_csv(meta_path, index_col=0)
    missing_cols = [c for c in CENTROID_COLUMNS if c not in meta.columns]
    if missing_cols:
        raise SchemaError(
            f"Dataset '{name}': {meta_path.name} lacks centroid columns {missing_cols}."
        )

    if drop_blank_probes:
        blanks = [c for c in counts.columns if str(c).startswith(BLANK_PREFIX)]
        if blanks:
            logger.info("%s: dropping %d blank control probes", name, len(blanks))
            counts = counts.drop(columns=blanks)

    scalar = meta.drop(columns=list(CENTROID_COLUMNS)).select_dtypes(include=[np.number])
    dataset = spatial_dataset_from_tables(
        counts,
        meta[list(CENTROID_COLUMNS)],
        scalar,
        name=name,
    )
    log_umi = np.log10(np.maximum(dataset.obs["total_counts"].to_numpy(dtype=float), 1.0))
    logger.info(
        "Loaded %s: %d samples x %d features from %s",
        name,
        dataset.n_samples,
        dataset.n_features,
        root,
    )
    return dataset.with_obs(log_umi=log_umi)
