"""anchormap public API."""

from anchormap._version import __version__
from anchormap.anchors import CCAJointEmbedder, find_anchors
from anchormap.clustering import cluster_dataset, project_dataset
from anchormap.core.types import AnchorSet, Dataset
from anchormap.errors import (
    FormatError,
    IncompatibleFeatureSpaceError,
    InsufficientSamplesError,
    MissingFileError,
    NoAnchorsError,
    SchemaError,
    UnanchoredSampleWarning,
)
from anchormap.loaders import (
    dataset_from_matrix,
    load_10x_directory,
    load_count_matrix,
    load_h5ad,
    load_vizgen,
    spatial_dataset_from_tables,
)
from anchormap.preprocessing import filter_samples, preprocess
from anchormap.transfer import annotate_query, transfer_features, transfer_labels


def run_pipeline(*args, **kwargs):
    """Lazy wrapper to avoid importing pipeline I/O at import time."""
    from anchormap.pipeline.integration import run_pipeline as _run_pipeline

    return _run_pipeline(*args, **kwargs)


__all__ = [
    "__version__",
    "AnchorSet",
    "Dataset",
    "CCAJointEmbedder",
    "find_anchors",
    "cluster_dataset",
    "project_dataset",
    "dataset_from_matrix",
    "load_10x_directory",
    "load_count_matrix",
    "load_h5ad",
    "load_vizgen",
    "spatial_dataset_from_tables",
    "filter_samples",
    "preprocess",
    "transfer_labels",
    "transfer_features",
    "annotate_query",
    "run_pipeline",
    "FormatError",
    "MissingFileError",
    "SchemaError",
    "IncompatibleFeatureSpaceError",
    "InsufficientSamplesError",
    "NoAnchorsError",
    "UnanchoredSampleWarning",
]
