"""Transfer of labels and expression profiles along anchors."""

from __future__ import annotations

import logging
import warnings
from typing import Mapping, Sequence

import numpy as np
import pandas as pd
import scipy.sparse as sp

from anchormap.core.types import (
    IMPUTED,
    NORMALIZED,
    AnchorSet,
    Dataset,
    FeatureTransferResult,
    LabelTransferResult,
)
from anchormap.core.utils import as_dense
from anchormap.errors import NoAnchorsError, UnanchoredSampleWarning

logger = logging.getLogger(__name__)


def _require_anchors(anchors: AnchorSet, what: str) -> None:
    if anchors.is_empty:
        raise NoAnchorsError(
            f"{what}: AnchorSet {anchors.reference_name} -> {anchors.query_name} is empty "
            f"(0 anchors over {len(anchors.reference_ids)} reference / "
            f"{len(anchors.query_ids)} query samples)."
        )


def anchor_weights(
    anchors: AnchorSet,
    *,
    distance_weighting: bool = False,
    sd: float = 1.0,
) -> np.ndarray:
    """Anchor score, optionally times `exp(-(d / sd)^2)` of the joint distance."""
    weights = np.asarray(anchors.scores, dtype=float).copy()
    if distance_weighting:
        if float(sd) <= 0:
            raise ValueError("sd must be positive.")
        weights *= np.exp(-np.square(anchors.distances() / float(sd)))
    return weights


def _vote_weights(anchors: AnchorSet, weights: np.ndarray) -> np.ndarray:
    """Anchors of a query sample whose weights sum to 0 count equally instead."""
    totals = np.bincount(
        anchors.query_index, weights=weights, minlength=len(anchors.query_ids)
    )
    flat = totals[anchors.query_index] <= 0
    if not flat.any():
        return weights
    out = weights.copy()
    out[flat] = 1.0
    return out


def _unanchored_warning(
    anchors: AnchorSet,
    missing: Sequence[str],
    what: str,
) -> UnanchoredSampleWarning | None:
    if not missing:
        return None
    warning = UnanchoredSampleWarning(
        f"{what}: {len(missing)} of {len(anchors.query_ids)} query samples in "
        f"'{anchors.query_name}' have no weighted anchor and received no prediction.",
        tuple(missing),
    )
    warnings.warn(warning, stacklevel=3)
    logger.warning("%s", warning)
    return warning


def transfer_labels(
    anchors: AnchorSet,
    labels: Mapping[str, str] | pd.Series,
    *,
    query_ids: Sequence[str] | None = None,
    distance_weighting: bool = False,
    sd: float = 1.0,
) -> LabelTransferResult:
    """Predict one label per query sample from the labels of its anchors.

    Each label collects the weights of the anchors whose reference sample
    carries it; the heaviest label wins and its share of the total weight is
    the confidence. A sample whose anchors all weigh 0 (e.g. after quantile
    rescaling) votes with equal weights. Equal label weights go to the label
    whose lowest contributing reference id sorts first; ids compare as strings,
    so "r10" sorts before "r2". `query_ids` restricts the output to those query
    samples, in that order.
    """
    _require_anchors(anchors, "Label transfer")
    lookup = pd.Series(labels).copy()
    lookup.index = lookup.index.astype(str)
    ref_ids = anchors.reference_ids[anchors.reference_index]
    missing = pd.Index(ref_ids).difference(lookup.index)
    if missing.size:
        raise KeyError(
            f"Label transfer: {missing.size} anchored reference samples have no label "
            f"(e.g. {missing[:3].tolist()})."
        )
    anchor_labels = lookup.loc[ref_ids]
    if anchor_labels.isna().any():
        raise ValueError("Label transfer: anchored reference samples carry missing labels.")

    frame = pd.DataFrame(
        {
            "query": anchors.query_index,
            "label": anchor_labels.astype(str).to_numpy(),
            "reference_id": np.asarray(ref_ids, dtype=str),
            "weight": _vote_weights(
                anchors, anchor_weights(anchors, distance_weighting=distance_weighting, sd=sd)
            ),
        }
    )
    per_label = (
        frame.groupby(["query", "label"], sort=True)
        .agg(weight=("weight", "sum"), first_ref=("reference_id", "min"))
        .reset_index()
    )
    totals = frame.groupby("query")["weight"].sum()
    counts = frame.groupby("query").size()
    per_label["rank_weight"] = per_label["weight"].round(12)
    winners = (
        per_label.sort_values(
            ["query", "rank_weight", "first_ref"],
            ascending=[True, False, True],
            kind="mergesort",
        )
        .drop_duplicates(subset="query", keep="first")
        .set_index("query")
    )

    n_query = len(anchors.query_ids)
    predicted = pd.Series([None] * n_query, dtype=object)
    score = np.full(n_query, np.nan, dtype=float)
    n_anchors = np.zeros(n_query, dtype=np.int64)
    n_anchors[counts.index.to_numpy()] = counts.to_numpy()
    total = totals.reindex(winners.index).to_numpy()
    has_weight = total > 0
    q_win = winners.index.to_numpy()[has_weight]
    predicted.iloc[q_win] = winners["label"].to_numpy()[has_weight]
    score[q_win] = winners["weight"].to_numpy()[has_weight] / total[has_weight]

    predictions = pd.DataFrame(
        {"predicted": predicted.to_numpy(), "score": score, "n_anchors": n_anchors},
        index=pd.Index(anchors.query_ids, name="query_id"),
    )
    if query_ids is not None:
        wanted = pd.Index([str(q) for q in query_ids], name="query_id")
        unknown = wanted.difference(predictions.index)
        if unknown.size:
            raise KeyError(
                f"Label transfer: {unknown.size} requested query ids are not in "
                f"'{anchors.query_name}' (e.g. {unknown[:3].tolist()})."
            )
        predictions = predictions.loc[wanted]
    unanchored = tuple(str(q) for q in predictions.index[predictions["n_anchors"] == 0])
    warning = _unanchored_warning(anchors, unanchored, "Label transfer")
    logger.info(
        "Label transfer: %d / %d query samples labelled",
        len(predictions) - len(unanchored),
        len(predictions),
    )
    return LabelTransferResult(predictions=predictions, unanchored=unanchored, warning=warning)


def transfer_features(
    anchors: AnchorSet,
    reference: Dataset,
    *,
    layer: str = NORMALIZED,
    features: Sequence[str] | None = None,
    distance_weighting: bool = False,
    sd: float = 1.0,
) -> FeatureTransferResult:
    """Weighted average of anchored reference profiles for every query sample.

    Each feature is averaged independently with weights normalized over the
    anchors touching that query sample (equal weights when they all weigh 0).
    Unanchored samples get NaN rows.
    """
    _require_anchors(anchors, "Feature transfer")
    if not reference.sample_ids.equals(anchors.reference_ids):
        raise ValueError(
            f"Feature transfer: dataset '{reference.name}' ({reference.n_samples} samples) "
            f"is not the reference of this AnchorSet ({len(anchors.reference_ids)} samples)."
        )
    feats = tuple(str(f) for f in (features if features is not None else reference.feature_ids))
    values = as_dense(reference.matrix(layer, feats))

    n_query = len(anchors.query_ids)
    weights = _vote_weights(
        anchors, anchor_weights(anchors, distance_weighting=distance_weighting, sd=sd)
    )
    w = sp.csr_matrix(
        (weights, (anchors.query_index, anchors.reference_index)),
        shape=(n_query, reference.n_samples),
    )
    totals = np.asarray(w.sum(axis=1)).ravel()
    has_weight = totals > 0
    inv = np.zeros(n_query, dtype=float)
    inv[has_weight] = 1.0 / totals[has_weight]
    out = np.asarray(sp.diags(inv) @ w @ values, dtype=float)
    out[~has_weight] = np.nan

    result = pd.DataFrame(out, index=pd.Index(anchors.query_ids, name="query_id"), columns=list(feats))
    unanchored = tuple(str(q) for q in result.index[~has_weight])
    warning = _unanchored_warning(anchors, unanchored, "Feature transfer")
    logger.info(
        "Feature transfer: %d features onto %d / %d query samples",
        len(feats),
        int(has_weight.sum()),
        n_query,
    )
    return FeatureTransferResult(values=result, unanchored=unanchored, warning=warning)


def annotate_query(
    query: Dataset,
    *,
    labels: LabelTransferResult | None = None,
    features: FeatureTransferResult | None = None,
    key: str = "cluster",
) -> Dataset:
    """Attach transfer results to the query as `predicted_<key>` columns and `uns["imputed"]`."""
    out = query
    if labels is not None:
        pred = labels.predictions.reindex(query.sample_ids)
        if pred["n_anchors"].isna().any():
            raise ValueError(
                f"Label predictions do not cover dataset '{query.name}' "
                f"({int(pred['n_anchors'].isna().sum())} samples missing)."
            )
        out = out.with_obs(
            **{
                f"predicted_{key}": pd.Categorical(pred["predicted"].to_numpy()),
                f"predicted_{key}_score": pred["score"].to_numpy(dtype=float),
                f"predicted_{key}_n_anchors": pred["n_anchors"].to_numpy(dtype=np.int64),
            }
        )
    if features is not None:
        if not features.values.index.equals(query.sample_ids):
            raise ValueError(
                f"Feature predictions do not match the samples of dataset '{query.name}'."
            )
        imputed = features.values.copy()
        imputed.index = query.sample_ids
        out = out.with_uns(**{IMPUTED: imputed})
    return out
