"""Pipeline I/O, logging, and export helpers."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd
import scipy.sparse as sp

from anchormap.core.types import COUNTS, IMPUTED, NORMALIZED, AnchorSet, Dataset


def ensure_dir(path: str | Path) -> None:
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)


def write_json(path: str | Path, payload: dict[str, Any]) -> None:
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    with out.open("w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, sort_keys=True)


def setup_logger(log_path: Path, logger_name: str) -> logging.Logger:
    ensure_dir(log_path.parent)
    logger = logging.getLogger(logger_name)
    logger.setLevel(logging.INFO)
    logger.handlers.clear()
    formatter = logging.Formatter("%(asctime)s | %(levelname)s | %(message)s")
    fh = logging.FileHandler(log_path, mode="w", encoding="utf-8")
    fh.setFormatter(formatter)
    logger.addHandler(fh)
    sh = logging.StreamHandler()
    sh.setFormatter(formatter)
    logger.addHandler(sh)
    return logger


def _json_scalar(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (np.integer,)):
        return int(value)
    if isinstance(value, (np.floating, float)):
        return None if not np.isfinite(value) else float(value)
    if pd.isna(value):
        return None
    return value if isinstance(value, (int, str, bool)) else str(value)


def export_records(
    dataset: Dataset,
    *,
    label_key: str = "cluster",
) -> dict[str, dict[str, Any]]:
    """Per-sample JSON-ready view of a dataset.

    Each record holds the non-zero raw counts, the normalized vector (in
    `feature_ids` order), every embedding, the cluster label, the transferred
    label with its confidence, and the transferred expression vector.
    """
    counts = sp.csr_matrix(dataset.layer(COUNTS))
    normalized = dataset.layers.get(NORMALIZED)
    if normalized is not None and sp.issparse(normalized):
        normalized = normalized.toarray()
    imputed = dataset.uns.get(IMPUTED)
    features = dataset.feature_ids
    obs = dataset.obs
    pred_col = f"predicted_{label_key}"

    records: dict[str, dict[str, Any]] = {}
    for i, sample in enumerate(dataset.sample_ids):
        row = counts.getrow(i)
        record: dict[str, Any] = {
            "counts": {str(features[j]): float(v) for j, v in zip(row.indices, row.data)},
            "normalized": None if normalized is None else [float(v) for v in normalized[i]],
            "embeddings": {tag: [float(v) for v in emb[i]] for tag, emb in dataset.embeddings.items()},
            "cluster": _json_scalar(obs[label_key].iloc[i]) if label_key in obs.columns else None,
            "predicted_label": _json_scalar(obs[pred_col].iloc[i]) if pred_col in obs.columns else None,
            "predicted_score": (
                _json_scalar(obs[f"{pred_col}_score"].iloc[i])
                if f"{pred_col}_score" in obs.columns
                else None
            ),
            "imputed": None,
        }
        if dataset.spatial is not None:
            record["spatial"] = [float(v) for v in dataset.spatial[i]]
        if isinstance(imputed, pd.DataFrame):
            values = imputed.iloc[i]
            record["imputed"] = {str(k): _json_scalar(v) for k, v in values.items()}
        records[str(sample)] = record
    return records


def write_outputs(
    outdir: Path,
    *,
    reference: Dataset,
    query: Dataset,
    anchors: AnchorSet | None,
    summary: dict[str, Any],
) -> dict[str, Path]:
    """Write both datasets (.h5ad), the anchor table, predictions and a summary."""
    results_dir = outdir / "results"
    ensure_dir(results_dir)
    paths = {
        "reference_h5ad": results_dir / f"{reference.name}.h5ad",
        "query_h5ad": results_dir / f"{query.name}.h5ad",
        "summary": results_dir / "summary.json",
    }
    reference.to_anndata().write_h5ad(paths["reference_h5ad"])
    query.to_anndata().write_h5ad(paths["query_h5ad"])
    if anchors is not None:
        paths["anchors"] = results_dir / "anchors.csv"
        anchors.to_frame().to_csv(paths["anchors"], index=False)
    pred_cols = [c for c in query.obs.columns if c.startswith("predicted_")]
    if pred_cols:
        paths["predictions"] = results_dir / "predictions.csv"
        query.obs[pred_cols].to_csv(paths["predictions"], index_label="sample_id")
    imputed = query.uns.get(IMPUTED)
    if isinstance(imputed, pd.DataFrame):
        paths["imputed"] = results_dir / "imputed.csv"
        imputed.to_csv(paths["imputed"], index_label="sample_id")
    write_json(paths["summary"], summary)
    return paths
