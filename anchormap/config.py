"""Configuration loading utilities for anchormap pipelines."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from anchormap.errors import MissingFileError

REFERENCE_FORMATS = {"10x", "h5ad"}
NORMALIZERS = {"pearson", "log"}


def load_json_config(path: str | Path) -> dict[str, Any]:
    """Load and validate a pipeline config from a JSON file."""
    config_path = Path(path)
    if not config_path.exists():
        raise MissingFileError(f"Config file not found: {config_path}")
    if config_path.suffix.lower() != ".json":
        raise ValueError(
            f"Unsupported config format for '{config_path}'. Use a .json config file."
        )

    try:
        with open(config_path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except json.JSONDecodeError as exc:
        raise ValueError(
            f"Invalid JSON in config '{config_path}' at line {exc.lineno}, "
            f"column {exc.colno}: {exc.msg}"
        ) from exc

    if not isinstance(data, dict):
        raise ValueError(
            f"Invalid config root in '{config_path}': expected JSON object, got {type(data).__name__}."
        )
    return data


@dataclass(frozen=True)
class PipelineParams:
    reference_path: str
    reference_format: str
    query_dir: str
    outdir: str
    reference_name: str
    query_name: str
    query_cell_by_gene: str
    query_cell_metadata: str
    reference_bounds: dict[str, tuple[float | None, float | None]]
    query_bounds: dict[str, tuple[float | None, float | None]]
    normalizer: str
    reference_max_fit_samples: int | None
    query_max_fit_samples: int | None
    n_top_features: int
    n_components: int
    cluster_k: int
    cluster_dims: int
    reference_resolution: float
    query_resolution: float
    run_umap: bool
    umap_k: int
    anchor_dims: int
    k_anchor: int
    k_score: int
    score_quantiles: tuple[float, float] | None
    distance_weighting: bool
    weight_sd: float
    transfer_features: tuple[str, ...] | None
    label_key: str
    seed: int
    n_jobs: int | None


def _bounds(raw: Any, key: str) -> dict[str, tuple[float | None, float | None]]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValueError(f"'{key}' must map field names to [low, high] pairs.")
    out: dict[str, tuple[float | None, float | None]] = {}
    for field_name, pair in raw.items():
        if not isinstance(pair, (list, tuple)) or len(pair) != 2:
            raise ValueError(f"'{key}.{field_name}' must be a [low, high] pair.")
        low, high = pair
        out[str(field_name)] = (
            None if low is None else float(low),
            None if high is None else float(high),
        )
    return out


def _optional_int(value: Any) -> int | None:
    return None if value is None else int(value)


def build_params(cfg: dict[str, Any]) -> PipelineParams:
    """Resolve a raw config dict into `PipelineParams`, filling defaults."""
    missing = [k for k in ("reference_path", "query_dir") if not cfg.get(k)]
    if missing:
        raise ValueError(f"Config is missing required keys: {', '.join(missing)}.")

    reference_format = str(cfg.get("reference_format", "10x")).strip().lower()
    if reference_format not in REFERENCE_FORMATS:
        raise ValueError(
            f"reference_format must be one of {sorted(REFERENCE_FORMATS)}, got '{reference_format}'."
        )
    normalizer = str(cfg.get("normalizer", "pearson")).strip().lower()
    if normalizer not in NORMALIZERS:
        raise ValueError(f"normalizer must be one of {sorted(NORMALIZERS)}, got '{normalizer}'.")

    quantiles = cfg.get("score_quantiles")
    if quantiles is not None:
        if not isinstance(quantiles, (list, tuple)) or len(quantiles) != 2:
            raise ValueError("score_quantiles must be a [low, high] pair or null.")
        quantiles = (float(quantiles[0]), float(quantiles[1]))

    transfer = cfg.get("transfer_features")
    if isinstance(transfer, str):
        if transfer.strip().lower() != "all":
            raise ValueError("transfer_features must be a list of features, \"all\", or null.")
        transfer = ()
    elif transfer is not None:
        transfer = tuple(str(f) for f in transfer)

    n_components = int(cfg.get("n_components", 30))
    return PipelineParams(
        reference_path=str(cfg["reference_path"]),
        reference_format=reference_format,
        query_dir=str(cfg["query_dir"]),
        outdir=str(cfg.get("outdir", ".")),
        reference_name=str(cfg.get("reference_name", "reference")),
        query_name=str(cfg.get("query_name", "query")),
        query_cell_by_gene=str(cfg.get("query_cell_by_gene", "cell_by_gene.csv")),
        query_cell_metadata=str(cfg.get("query_cell_metadata", "cell_metadata.csv")),
        reference_bounds=_bounds(cfg.get("reference_bounds"), "reference_bounds"),
        query_bounds=_bounds(cfg.get("query_bounds"), "query_bounds"),
        normalizer=normalizer,
        reference_max_fit_samples=_optional_int(cfg.get("reference_max_fit_samples")),
        query_max_fit_samples=_optional_int(cfg.get("query_max_fit_samples")),
        n_top_features=int(cfg.get("n_top_features", 2000)),
        n_components=n_components,
        cluster_k=int(cfg.get("cluster_k", 20)),
        cluster_dims=int(cfg.get("cluster_dims", n_components)),
        reference_resolution=float(cfg.get("reference_resolution", 0.8)),
        query_resolution=float(cfg.get("query_resolution", 0.3)),
        run_umap=bool(cfg.get("run_umap", True)),
        umap_k=int(cfg.get("umap_k", 15)),
        anchor_dims=int(cfg.get("anchor_dims", n_components)),
        k_anchor=int(cfg.get("k_anchor", 5)),
        k_score=int(cfg.get("k_score", 30)),
        score_quantiles=quantiles,
        distance_weighting=bool(cfg.get("distance_weighting", False)),
        weight_sd=float(cfg.get("weight_sd", 1.0)),
        transfer_features=transfer,
        label_key=str(cfg.get("label_key", "cluster")),
        seed=int(cfg.get("seed", 0)),
        n_jobs=_optional_int(cfg.get("n_jobs")),
    )
