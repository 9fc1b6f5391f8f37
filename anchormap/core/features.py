"""Feature vocabulary resolution utilities."""

from __future__ import annotations

import warnings
from typing import Iterable, Sequence

import pandas as pd

from anchormap.core.types import Dataset
from anchormap.errors import IncompatibleFeatureSpaceError

SYMBOL_COLUMNS: tuple[str, ...] = ("gene_symbol", "gene_name", "hugo_symbol")


def make_unique(names: Iterable[str], *, source: str = "features") -> list[str]:
    """Suffix repeated names with `-1`, `-2`, ... keeping the first occurrence."""
    raw = [str(n).strip() for n in names]
    counts = pd.Series(raw).value_counts()
    dup = counts[counts > 1]
    if dup.empty:
        return raw
    warnings.warn(
        (
            f"Duplicate names detected in {source} ({int(dup.size)} distinct); "
            "later occurrences are suffixed."
        ),
        RuntimeWarning,
        stacklevel=2,
    )
    seen: dict[str, int] = {}
    taken = set(raw)
    out: list[str] = []
    for name in raw:
        if name not in seen:
            seen[name] = 0
            out.append(name)
            continue
        n = seen[name]
        while True:
            n += 1
            candidate = f"{name}-{n}"
            if candidate not in taken:
                break
        seen[name] = n
        taken.add(candidate)
        out.append(candidate)
    return out


def shared_features(
    reference: Dataset,
    query: Dataset,
    restrict_to: Sequence[str] | None = None,
) -> tuple[str, ...]:
    """Ordered intersection of two vocabularies (reference order).

    `restrict_to` further limits the result to the listed features.
    """
    query_vocab = set(query.feature_ids)
    shared = [f for f in reference.feature_ids if f in query_vocab]
    if restrict_to is not None:
        wanted = {str(f) for f in restrict_to}
        shared = [f for f in shared if f in wanted]
    if not shared:
        raise IncompatibleFeatureSpaceError(
            f"Anchor finding: reference '{reference.name}' ({reference.n_features} features) "
            f"and query '{query.name}' ({query.n_features} features) share 0 features"
            + (
                f" within the {len(set(restrict_to))} requested."
                if restrict_to is not None
                else "."
            )
        )
    return tuple(str(f) for f in shared)
