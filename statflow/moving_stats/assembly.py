"""
Assembly of per-stratum window tables into the final result, and the long-form reshape.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .statistics import COUNT_LABEL, StatLabel

X_COLUMN = "__x__"
TYPE_COLUMN = "Type"
STATISTIC_COLUMN = "Statistic"


@dataclass
class StratumResult:
    key: Tuple[Any, ...]
    frame: pd.DataFrame                      # X_COLUMN, statistic columns, optional N
    labels: Dict[str, StatLabel] = field(default_factory=dict)
    info: Dict[str, float] = field(default_factory=dict)


def _merge_labels(results: Sequence[StratumResult]) -> Dict[str, StatLabel]:
    merged: Dict[str, StatLabel] = {}
    for res in results:
        for col, lab in res.labels.items():
            merged.setdefault(col, lab)
    return merged


def assemble(
        results: Sequence[StratumResult],
        x_name: str,
        by_names: Sequence[str],
        itrans: Callable = lambda v: v,
) -> Tuple[pd.DataFrame, Dict[str, StatLabel]]:
    """Concatenate stratum tables, restore the stratifier columns and back-transform x.

    Column order: x, statistics in production order, N, stratifiers.
    """
    labels = _merge_labels(results)
    frames = []
    for res in results:
        frame = res.frame.copy()
        for name, value in zip(by_names, res.key):
            frame[name] = value
        frames.append(frame)

    stat_cols = list(labels)
    has_count = any(COUNT_LABEL in res.frame.columns for res in results)
    columns = [X_COLUMN] + stat_cols + ([COUNT_LABEL] if has_count else []) + list(by_names)

    if frames:
        out = pd.concat(frames, ignore_index=True, sort=False)
        out = out.reindex(columns=columns)
    else:
        out = pd.DataFrame({c: pd.Series(dtype=float) for c in columns})

    x = out[X_COLUMN]
    if x.dtype == object:
        x = x.infer_objects()
    out[X_COLUMN] = itrans(x)
    out = out.rename(columns={X_COLUMN: x_name})
    if has_count and not out[COUNT_LABEL].isna().any():
        out[COUNT_LABEL] = out[COUNT_LABEL].astype(np.int64)
    return out, labels


def melt_moving_stats(
        result: pd.DataFrame,
        x_name: Optional[str] = None,
        by_names: Optional[Sequence[str]] = None,
        value_name: Optional[str] = None,
        labels: Optional[Dict[str, StatLabel]] = None,
) -> pd.DataFrame:
    """Reshape a wide moving-statistics table to one row per (x, strata, statistic).

    ``Type`` holds the estimator family and ``Statistic`` the quantity, both taken
    from the structured labels (``result.attrs["statistics"]`` by default). The
    count column ``N`` is dropped. The long table has rows(wide) times the
    number of statistic columns rows.
    """
    attrs = result.attrs
    if labels is None:
        if "statistics" not in attrs:
            raise ValueError("statistic labels are required when the result carries no metadata")
        labels = {c: StatLabel(*v) for c, v in attrs["statistics"].items()}
    x_name = x_name or attrs.get("x_name")
    by_names = list(by_names if by_names is not None else attrs.get("by_names", []))
    value_name = value_name or attrs.get("value_name", "value")
    if x_name is None:
        raise ValueError("x_name is required when the result carries no metadata")

    id_vars = [x_name] + by_names
    value_vars = [c for c in labels if c in result.columns]
    if not value_vars:
        return pd.DataFrame(columns=id_vars + [TYPE_COLUMN, STATISTIC_COLUMN, value_name])
    wide = result[id_vars + value_vars]
    wide.attrs = {}
    long = wide.melt(
        id_vars=id_vars, value_vars=value_vars, var_name="__stat__", value_name=value_name
    )
    families = {c: lab.family for c, lab in labels.items()}
    kinds = {c: lab.kind for c, lab in labels.items()}
    long[TYPE_COLUMN] = long["__stat__"].map(families)
    long[STATISTIC_COLUMN] = long["__stat__"].map(kinds)
    long = long[id_vars + [TYPE_COLUMN, STATISTIC_COLUMN, value_name]]
    return long
