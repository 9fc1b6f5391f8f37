from __future__ import annotations

import warnings

import numpy as np
import pandas as pd

from anchormap.anchors import find_anchors
from anchormap.clustering import cluster_dataset
from anchormap.errors import UnanchoredSampleWarning
from anchormap.loaders import dataset_from_matrix
from anchormap.preprocessing import preprocess
from anchormap.transfer import transfer_labels

N_SHARED = 200
N_MARKERS = 30


def _simulate(rng, n_samples, truth, base, gene_factor, depth, extra_features, prefix, name):
    rates = np.tile(base * gene_factor, (3, 1))
    for c in range(3):
        rates[c, c * N_MARKERS : (c + 1) * N_MARKERS] *= 6.0
    size = rng.uniform(0.6, 1.4, size=n_samples) * depth
    counts = rng.poisson(rates[truth] * size[:, None])
    extra = rng.poisson(1.0, size=(n_samples, extra_features))
    features = [f"gene{j}" for j in range(N_SHARED)] + [f"{prefix}_only{j}" for j in range(extra_features)]
    return dataset_from_matrix(
        np.hstack([counts, extra]).astype(float),
        features,
        [f"{prefix}{i}" for i in range(n_samples)],
        name=name,
        orientation="samples_by_features",
    )


def test_reference_clusters_transfer_to_query():
    rng = np.random.default_rng(0)
    base = rng.gamma(2.0, 0.5, size=N_SHARED) + 0.2
    ref_truth = np.repeat(np.arange(3), [170, 165, 165])
    qry_truth = rng.permutation(np.repeat(np.arange(3), 100))
    platform = np.exp(rng.normal(0.0, 0.25, size=N_SHARED))

    reference = _simulate(rng, 500, ref_truth, base, 1.0, 1.0, 40, "r", "reference")
    query = _simulate(rng, 300, qry_truth, base, platform, 0.6, 20, "q", "query")

    reference = preprocess(reference, n_top_features=200, n_components=20, seed=0)
    query = preprocess(query, n_top_features=200, n_components=20, seed=0)
    reference = cluster_dataset(reference, k=20, resolution=0.1, seed=0)

    ref_clusters = reference.obs["cluster"].astype(str)
    assert ref_clusters.nunique() == 3
    to_truth = (
        pd.DataFrame({"cluster": ref_clusters.to_numpy(), "truth": ref_truth})
        .groupby("cluster")["truth"]
        .agg(lambda s: s.value_counts().idxmax())
    )
    assert sorted(to_truth.tolist()) == [0, 1, 2]

    anchors = find_anchors(reference, query, n_components=10, k_anchor=5, k_score=30, seed=0)
    assert len(anchors.features) == N_SHARED
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", UnanchoredSampleWarning)
        result = transfer_labels(anchors, ref_clusters)

    pred = result.predictions["predicted"]
    labelled = pred.notna().to_numpy()
    assert labelled.mean() >= 0.5
    mapped = pred[labelled].map(to_truth).to_numpy()
    accuracy = float(np.mean(mapped == qry_truth[labelled]))
    assert accuracy >= 0.9
    assert result.predictions.loc[labelled, "score"].between(0.0, 1.0).all()
