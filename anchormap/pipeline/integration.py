"""Reference -> spatial query integration pipeline."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import numpy as np

from anchormap._version import __version__
from anchormap.anchors import find_anchors
from anchormap.clustering import cluster_dataset, project_dataset
from anchormap.config import PipelineParams, build_params, load_json_config
from anchormap.core.types import (
    AnchorSet,
    Dataset,
    FeatureTransferResult,
    LabelTransferResult,
)
from anchormap.errors import (
    IncompatibleFeatureSpaceError,
    InsufficientSamplesError,
    NoAnchorsError,
)
from anchormap.loaders import load_10x_directory, load_h5ad, load_vizgen
from anchormap.pipeline.io import ensure_dir, setup_logger, write_outputs
from anchormap.preprocessing import (
    LogNormalizer,
    PearsonResidualsNormalizer,
    filter_samples,
    preprocess,
)
from anchormap.transfer import annotate_query, transfer_features, transfer_labels


@dataclass(frozen=True)
class IntegrationResult:
    reference: Dataset
    query: Dataset
    anchors: AnchorSet
    labels: LabelTransferResult
    features: FeatureTransferResult | None


def _make_normalizer(name: str):
    if name == "log":
        return LogNormalizer()
    return PearsonResidualsNormalizer()


def load_inputs(params: PipelineParams) -> tuple[Dataset, Dataset]:
    if params.reference_format == "h5ad":
        reference = load_h5ad(params.reference_path, name=params.reference_name)
    else:
        reference = load_10x_directory(params.reference_path, name=params.reference_name)
    query = load_vizgen(
        params.query_dir,
        name=params.query_name,
        cell_by_gene=params.query_cell_by_gene,
        cell_metadata=params.query_cell_metadata,
    )
    return reference, query


def prepare_dataset(
    dataset: Dataset,
    *,
    params: PipelineParams,
    bounds: dict[str, tuple[float | None, float | None]],
    max_fit_samples: int | None,
    resolution: float,
    logger: logging.Logger,
) -> Dataset:
    """Filter, normalize, embed, cluster and (optionally) project one dataset."""
    if bounds:
        dataset = filter_samples(dataset, bounds)
    logger.info("%s: %d samples x %d features", dataset.name, dataset.n_samples, dataset.n_features)
    dataset = preprocess(
        dataset,
        normalizer=_make_normalizer(params.normalizer),
        n_top_features=params.n_top_features,
        n_components=params.n_components,
        max_fit_samples=max_fit_samples,
        seed=params.seed,
    )
    dataset = cluster_dataset(
        dataset,
        k=min(params.cluster_k, dataset.n_samples),
        n_dims=params.cluster_dims,
        resolution=resolution,
        seed=params.seed,
        key=params.label_key,
        n_jobs=params.n_jobs,
    )
    if params.run_umap:
        dataset = project_dataset(
            dataset,
            k=min(params.umap_k, dataset.n_samples - 1),
            n_dims=params.cluster_dims,
            seed=params.seed,
        )
    return dataset


def integrate(
    reference: Dataset,
    query: Dataset,
    params: PipelineParams,
    logger: logging.Logger,
) -> IntegrationResult:
    """Find anchors and transfer reference clusters (and features) onto the query."""
    anchors = find_anchors(
        reference,
        query,
        n_components=params.anchor_dims,
        k_anchor=params.k_anchor,
        k_score=params.k_score,
        score_quantiles=params.score_quantiles,
        seed=params.seed,
        n_jobs=params.n_jobs,
    )
    logger.info("Anchors: %d", len(anchors))
    labels = transfer_labels(
        anchors,
        reference.obs[params.label_key],
        distance_weighting=params.distance_weighting,
        sd=params.weight_sd,
    )
    features = None
    if params.transfer_features is not None:
        features = transfer_features(
            anchors,
            reference,
            features=params.transfer_features or None,
            distance_weighting=params.distance_weighting,
            sd=params.weight_sd,
        )
    annotated = annotate_query(query, labels=labels, features=features, key=params.label_key)
    return IntegrationResult(
        reference=reference,
        query=annotated,
        anchors=anchors,
        labels=labels,
        features=features,
    )


def _summary(
    params: PipelineParams,
    reference: Dataset,
    query: Dataset,
    anchors: AnchorSet | None,
    labels: LabelTransferResult | None,
    status: str,
) -> dict[str, Any]:
    out: dict[str, Any] = {
        "anchormap_version": __version__,
        "status": status,
        "seed": params.seed,
        "reference": {
            "name": reference.name,
            "n_samples": reference.n_samples,
            "n_features": reference.n_features,
            "n_clusters": int(reference.obs[params.label_key].nunique())
            if params.label_key in reference.obs.columns
            else 0,
        },
        "query": {
            "name": query.name,
            "n_samples": query.n_samples,
            "n_features": query.n_features,
        },
    }
    if anchors is not None:
        out["anchors"] = {
            "n_anchors": len(anchors),
            "n_shared_features": len(anchors.features),
            "k_anchor": anchors.k_anchor,
            "k_score": anchors.k_score,
            "mean_score": float(np.mean(anchors.scores)) if len(anchors) else None,
        }
    if labels is not None:
        counts = labels.predictions["predicted"].value_counts()
        out["transfer"] = {
            "n_unanchored": len(labels.unanchored),
            "predicted_counts": {str(k): int(v) for k, v in counts.items()},
        }
    return out


def run_pipeline(config_path: str) -> IntegrationResult:
    cfg = load_json_config(config_path)
    params = build_params(cfg)

    outdir = Path(params.outdir)
    logs_dir = outdir / "logs"
    ensure_dir(logs_dir)
    logger = setup_logger(logs_dir / "anchormap.log", "anchormap")

    reference, query = load_inputs(params)
    reference = prepare_dataset(
        reference,
        params=params,
        bounds=params.reference_bounds,
        max_fit_samples=params.reference_max_fit_samples,
        resolution=params.reference_resolution,
        logger=logger,
    )
    query = prepare_dataset(
        query,
        params=params,
        bounds=params.query_bounds,
        max_fit_samples=params.query_max_fit_samples,
        resolution=params.query_resolution,
        logger=logger,
    )

    try:
        result = integrate(reference, query, params, logger)
    except (IncompatibleFeatureSpaceError, InsufficientSamplesError, NoAnchorsError) as exc:
        write_outputs(
            outdir,
            reference=reference,
            query=query,
            anchors=None,
            summary=_summary(params, reference, query, None, None, status="integration_failed"),
        )
        logger.error("Integration failed; per-dataset results were written. %s", exc)
        raise

    write_outputs(
        outdir,
        reference=result.reference,
        query=result.query,
        anchors=result.anchors,
        summary=_summary(
            params, result.reference, result.query, result.anchors, result.labels, status="ok"
        ),
    )
    logger.info("Pipeline complete. Results in %s", (outdir / "results").as_posix())
    return result
