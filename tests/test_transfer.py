from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from anchormap.core.types import COUNTS, IMPUTED, NORMALIZED, AnchorSet, Dataset
from anchormap.errors import NoAnchorsError, UnanchoredSampleWarning
from anchormap.transfer import anchor_weights, annotate_query, transfer_features, transfer_labels

LABELS = pd.Series({"r0": "A", "r1": "A", "r2": "B", "r3": "B"})
PROFILES = np.array(
    [
        [1.0, 0.0, 2.0],
        [0.0, 4.0, 2.0],
        [3.0, 2.0, 0.0],
        [5.0, 5.0, 5.0],
    ]
)


def _anchor_set(
    reference_index=(0, 2, 1, 2),
    query_index=(0, 0, 1, 1),
    scores=(0.9, 0.3, 0.5, 0.5),
    n_query: int = 3,
    reference_embedding=None,
    query_embedding=None,
) -> AnchorSet:
    return AnchorSet(
        reference_name="ref",
        query_name="qry",
        reference_ids=["r0", "r1", "r2", "r3"],
        query_ids=[f"q{i}" for i in range(n_query)],
        features=("g0", "g1", "g2"),
        reference_embedding=np.zeros((4, 2)) if reference_embedding is None else reference_embedding,
        query_embedding=np.zeros((n_query, 2)) if query_embedding is None else query_embedding,
        reference_index=list(reference_index),
        query_index=list(query_index),
        scores=list(scores),
        k_anchor=2,
        k_score=2,
    )


def _reference(scale: float = 1.0) -> Dataset:
    return Dataset(
        name="ref",
        sample_ids=["r0", "r1", "r2", "r3"],
        feature_ids=["g0", "g1", "g2"],
        layers={COUNTS: np.abs(PROFILES), NORMALIZED: PROFILES * scale},
    )


def test_weighted_vote_and_confidence():
    with pytest.warns(UnanchoredSampleWarning):
        result = transfer_labels(_anchor_set(), LABELS)
    pred = result.predictions
    assert pred.loc["q0", "predicted"] == "A"
    assert pred.loc["q0", "score"] == pytest.approx(0.75)
    assert pred.loc["q0", "n_anchors"] == 2


def test_equal_weights_go_to_label_with_lowest_reference_id():
    with pytest.warns(UnanchoredSampleWarning):
        result = transfer_labels(_anchor_set(), LABELS)
    assert result.predictions.loc["q1", "predicted"] == "A"
    assert result.predictions.loc["q1", "score"] == pytest.approx(0.5)


def test_unanchored_samples_are_reported_not_guessed():
    with pytest.warns(UnanchoredSampleWarning, match="1 of 3 query samples") as record:
        result = transfer_labels(_anchor_set(), LABELS)
    assert result.unanchored == ("q2",)
    assert pd.isna(result.predictions.loc["q2", "predicted"])
    assert np.isnan(result.predictions.loc["q2", "score"])
    assert result.predictions.loc["q2", "n_anchors"] == 0
    assert result.warning is not None
    emitted = [w.message for w in record if isinstance(w.message, UnanchoredSampleWarning)]
    assert emitted[0].sample_ids == ("q2",)


def test_fully_anchored_query_emits_no_warning(recwarn):
    anchors = _anchor_set(reference_index=(0, 3), query_index=(0, 1), scores=(0.2, 1.0), n_query=2)
    result = transfer_labels(anchors, LABELS.to_dict())
    assert result.unanchored == ()
    assert result.warning is None
    assert not [w for w in recwarn if issubclass(w.category, UnanchoredSampleWarning)]
    assert result.predictions["predicted"].tolist() == ["A", "B"]


def test_transfer_is_deterministic():
    with pytest.warns(UnanchoredSampleWarning):
        a = transfer_labels(_anchor_set(), LABELS)
    with pytest.warns(UnanchoredSampleWarning):
        b = transfer_labels(_anchor_set(), LABELS)
    pd.testing.assert_frame_equal(a.predictions, b.predictions)


def test_empty_anchor_set_raises_no_anchors():
    empty = _anchor_set(reference_index=(), query_index=(), scores=())
    with pytest.raises(NoAnchorsError, match="0 anchors"):
        transfer_labels(empty, LABELS)
    with pytest.raises(NoAnchorsError):
        transfer_features(empty, _reference())


def test_missing_reference_labels_raise_key_error():
    with pytest.raises(KeyError, match="no label"):
        transfer_labels(_anchor_set(), LABELS.drop("r2"))


def test_distance_weighting_downweights_far_anchors():
    ref_emb = np.array([[2.0, 0.0], [0.0, 0.0], [0.0, 0.0], [0.0, 0.0]])
    anchors = _anchor_set(
        reference_index=(0, 2),
        query_index=(0, 0),
        scores=(0.9, 0.3),
        n_query=1,
        reference_embedding=ref_emb,
        query_embedding=np.zeros((1, 2)),
    )
    np.testing.assert_allclose(anchor_weights(anchors), [0.9, 0.3])
    np.testing.assert_allclose(
        anchor_weights(anchors, distance_weighting=True, sd=1.0), [0.9 * np.exp(-4.0), 0.3]
    )
    plain = transfer_labels(anchors, LABELS)
    weighted = transfer_labels(anchors, LABELS, distance_weighting=True, sd=1.0)
    assert plain.predictions.loc["q0", "predicted"] == "A"
    assert weighted.predictions.loc["q0", "predicted"] == "B"


def test_feature_transfer_is_weighted_average():
    with pytest.warns(UnanchoredSampleWarning):
        result = transfer_features(_anchor_set(), _reference())
    values = result.values
    np.testing.assert_allclose(values.loc["q0"], (0.9 * PROFILES[0] + 0.3 * PROFILES[2]) / 1.2)
    np.testing.assert_allclose(values.loc["q1"], (PROFILES[1] + PROFILES[2]) / 2.0)
    assert values.loc["q2"].isna().all()
    assert result.unanchored == ("q2",)


def test_feature_transfer_is_linear_in_reference_values():
    with pytest.warns(UnanchoredSampleWarning):
        base = transfer_features(_anchor_set(), _reference(), features=["g2", "g0"])
    with pytest.warns(UnanchoredSampleWarning):
        scaled = transfer_features(_anchor_set(), _reference(scale=-3.5), features=["g2", "g0"])
    assert list(base.values.columns) == ["g2", "g0"]
    np.testing.assert_allclose(scaled.values.to_numpy(), -3.5 * base.values.to_numpy())


def test_feature_transfer_rejects_foreign_reference():
    other = Dataset(
        name="other",
        sample_ids=["x0", "x1", "x2", "x3"],
        feature_ids=["g0", "g1", "g2"],
        layers={COUNTS: np.abs(PROFILES), NORMALIZED: PROFILES},
    )
    with pytest.raises(ValueError, match="not the reference"):
        transfer_features(_anchor_set(), other)


def test_annotate_query_attaches_predictions_and_imputed_values():
    query = Dataset(
        name="qry",
        sample_ids=["q0", "q1", "q2"],
        feature_ids=["g0", "g1"],
        layers={COUNTS: np.ones((3, 2))},
    )
    with pytest.warns(UnanchoredSampleWarning):
        labels = transfer_labels(_anchor_set(), LABELS)
    with pytest.warns(UnanchoredSampleWarning):
        features = transfer_features(_anchor_set(), _reference())
    out = annotate_query(query, labels=labels, features=features, key="cluster")
    assert "predicted_cluster" not in query.obs.columns
    assert out.obs["predicted_cluster"].astype(object).tolist()[:2] == ["A", "A"]
    assert pd.isna(out.obs["predicted_cluster"].iloc[2])
    assert out.obs["predicted_cluster_score"].iloc[0] == pytest.approx(0.75)
    assert out.obs["predicted_cluster_n_anchors"].tolist() == [2, 2, 0]
    assert list(out.uns[IMPUTED].columns) == ["g0", "g1", "g2"]


def test_query_ids_restrict_the_prediction_table():
    result = transfer_labels(_anchor_set(), LABELS, query_ids=["q1", "q0"])
    assert list(result.predictions.index) == ["q1", "q0"]
    assert result.unanchored == ()
    with pytest.raises(KeyError, match="requested query ids"):
        transfer_labels(_anchor_set(), LABELS, query_ids=["q9"])


def test_anchors_with_zero_weight_vote_equally():
    anchors = _anchor_set(reference_index=(0, 2, 1), query_index=(0, 0, 1), scores=(0.0, 0.0, 0.5), n_query=2)
    labels = transfer_labels(anchors, LABELS)
    assert labels.unanchored == ()
    assert labels.predictions.loc["q0", "predicted"] == "A"
    assert labels.predictions.loc["q0", "score"] == pytest.approx(0.5)
    features = transfer_features(anchors, _reference())
    assert features.unanchored == ()
    np.testing.assert_allclose(features.values.loc["q0"], (PROFILES[0] + PROFILES[2]) / 2.0)
    np.testing.assert_allclose(features.values.loc["q1"], PROFILES[1])


def test_ties_compare_reference_ids_as_strings():
    anchors = AnchorSet(
        reference_name="ref",
        query_name="qry",
        reference_ids=["r2", "r10"],
        query_ids=["q0"],
        features=("g0",),
        reference_embedding=np.zeros((2, 2)),
        query_embedding=np.zeros((1, 2)),
        reference_index=[0, 1],
        query_index=[0, 0],
        scores=[0.4, 0.4],
        k_anchor=2,
        k_score=2,
    )
    result = transfer_labels(anchors, {"r2": "A", "r10": "B"})
    assert result.predictions.loc["q0", "predicted"] == "B"
