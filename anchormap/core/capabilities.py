"""Pluggable capability interfaces for the statistical black boxes.

The anchor finder and transfer logic only depend on these contracts, so any
backend (scanpy, scikit-learn, a custom implementation in a test) can be
swapped in.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

import numpy as np


@runtime_checkable
class Normalizer(Protocol):
    """Variance-stabilizing normalization fitted on counts, applied to counts.

    `transform` must return an array with the same shape as its input.
    """

    def fit(self, counts: Any) -> "Normalizer": ...

    def transform(self, counts: Any) -> np.ndarray: ...


@runtime_checkable
class Embedder(Protocol):
    """Linear dimensionality reduction of a samples x features matrix."""

    def embed(self, matrix: np.ndarray, n_components: int, seed: int) -> np.ndarray: ...


@runtime_checkable
class GraphClusterer(Protocol):
    """Partition a symmetric weighted sample graph into opaque labels."""

    def cluster(self, adjacency: Any, resolution: float, seed: int) -> np.ndarray: ...


@runtime_checkable
class Projector(Protocol):
    """2-D visualization embedding of an existing embedding."""

    def project(self, embedding: np.ndarray, n_neighbors: int, seed: int) -> np.ndarray: ...


@runtime_checkable
class JointEmbedder(Protocol):
    """Shared low-dimensional space for two matrices over the same features."""

    def embed(
        self,
        reference: np.ndarray,
        query: np.ndarray,
        n_components: int,
        seed: int,
    ) -> tuple[np.ndarray, np.ndarray]: ...
