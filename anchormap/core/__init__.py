"""Core containers and neighbour utilities."""

from anchormap.core.capabilities import (
    Embedder,
    GraphClusterer,
    JointEmbedder,
    Normalizer,
    Projector,
)
from anchormap.core.features import make_unique, shared_features
from anchormap.core.neighbors import knn_indices, shared_neighbor_graph
from anchormap.core.types import (
    Anchor,
    AnchorSet,
    Dataset,
    FeatureTransferResult,
    LabelTransferResult,
)

__all__ = [
    "Anchor",
    "AnchorSet",
    "Dataset",
    "FeatureTransferResult",
    "LabelTransferResult",
    "Normalizer",
    "Embedder",
    "GraphClusterer",
    "Projector",
    "JointEmbedder",
    "make_unique",
    "shared_features",
    "knn_indices",
    "shared_neighbor_graph",
]
