"""
Per-window statistics.

The response kind is decided once per call (``detect_response_kind``) and picks
the default statistic function. Every statistic a window produces is labelled
with a ``StatLabel(family, kind)`` pair: the family names the estimator
("Moving", "Loess", "QR", ...) and the kind names the quantity ("Mean", "Q1",
"5-year", ...). The pair travels with the value up to the melted output.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, NamedTuple, Optional, Sequence, Tuple, Union

import numpy as np
from lifelines import KaplanMeierFitter

COUNT_LABEL = "N"
MOVING_FAMILY = "Moving"

_QUANTILE_NAMES = {
    0.05: "P5",
    0.1: "P10",
    0.25: "Q1",
    0.5: "Median",
    0.75: "Q3",
    0.9: "P90",
    0.95: "P95",
}


class ResponseKind(Enum):
    CONTINUOUS = "continuous"
    BINARY = "binary"
    SURVIVAL = "survival"


class StatLabel(NamedTuple):
    family: str
    kind: str

    @property
    def name(self) -> str:
        """Column name used in the wide result."""
        if not self.family:
            return self.kind
        if self.family == self.kind:
            return self.kind
        return f"{self.family} {self.kind}"

    @classmethod
    def parse(cls, label: Union[str, Tuple[str, str], "StatLabel"]) -> "StatLabel":
        """Build a label from a (family, kind) tuple or a display string.

        A string with a space is split at its first space; a single word is
        used as both family and kind.
        """
        if isinstance(label, StatLabel):
            return label
        if isinstance(label, tuple):
            if len(label) != 2:
                raise ValueError(f"statistic label tuple must be (family, kind), got {label!r}")
            return cls(str(label[0]), str(label[1]))
        text = str(label)
        if " " in text:
            family, kind = text.split(" ", 1)
            return cls(family, kind)
        return cls(text, text)


StatFunction = Callable[..., Mapping[Any, Any]]


def quantile_label(tau: float) -> str:
    """Short name of a quantile level: 0.25 -> 'Q1', 0.5 -> 'Median', 0.3 -> '0.3'."""
    for level, name in _QUANTILE_NAMES.items():
        if np.isclose(tau, level):
            return name
    return f"{tau:g}"


def time_label(t: float, tunits: str) -> str:
    return f"{t:g}-{tunits}"


def detect_response_kind(y: np.ndarray, event: Optional[np.ndarray] = None) -> ResponseKind:
    if event is not None:
        return ResponseKind.SURVIVAL
    values = np.asarray(y)
    if values.dtype == bool:
        return ResponseKind.BINARY
    if np.issubdtype(values.dtype, np.number) and np.isin(values, (0, 1)).all():
        return ResponseKind.BINARY
    return ResponseKind.CONTINUOUS


def km_incidence(durations: np.ndarray, events: np.ndarray, times: Sequence[float]) -> np.ndarray:
    """One minus the Kaplan-Meier survival estimate at each of ``times``."""
    kmf = KaplanMeierFitter()
    kmf.fit(durations=np.asarray(durations, dtype=float), event_observed=np.asarray(events))
    surv = kmf.survival_function_at_times(list(times)).to_numpy(dtype=float)
    return 1.0 - surv


def default_stat(
        kind: ResponseKind,
        discrete: bool = False,
        times: Optional[Sequence[float]] = None,
        tunits: str = "year",
) -> StatFunction:
    """Return the default statistic function for a response kind.

    BINARY     -> proportion of ones and N
    SURVIVAL   -> cumulative incidence (1 - Kaplan-Meier) at each time, and N
    CONTINUOUS -> mean, median, quartiles and N
    """
    def lab(kind_name: str) -> StatLabel:
        if discrete:
            return StatLabel(kind_name, kind_name)
        return StatLabel(MOVING_FAMILY, kind_name)

    if kind is ResponseKind.BINARY:
        def stat_binary(y: np.ndarray) -> Dict[StatLabel, float]:
            return {
                lab("Proportion"): float(np.mean(y)),
                COUNT_LABEL: len(y),
            }
        return stat_binary

    if kind is ResponseKind.SURVIVAL:
        if not times:
            raise ValueError("times are required for the survival statistic")
        labels = [lab(time_label(t, tunits)) for t in times]

        def stat_survival(y: np.ndarray, event: np.ndarray) -> Dict[StatLabel, float]:
            inc = km_incidence(y, event, times)
            out: Dict[Any, float] = {label: float(v) for label, v in zip(labels, inc)}
            out[COUNT_LABEL] = len(y)
            return out
        return stat_survival

    def stat_continuous(y: np.ndarray) -> Dict[StatLabel, float]:
        if len(y) == 0:
            return {
                lab("Mean"): np.nan,
                lab("Median"): np.nan,
                lab("Q1"): np.nan,
                lab("Q3"): np.nan,
            }
        q1, med, q3 = np.quantile(y, [0.25, 0.5, 0.75])
        return {
            lab("Mean"): float(np.mean(y)),
            lab("Median"): float(med),
            lab("Q1"): float(q1),
            lab("Q3"): float(q3),
            COUNT_LABEL: len(y),
        }
    return stat_continuous


def normalize_stat_output(result: Mapping[Any, Any]) -> Tuple[Dict[StatLabel, float], Optional[int]]:
    """Split a statistic function result into labelled values and the count.

    The count is the entry keyed ``"N"``; every other key becomes a StatLabel.
    """
    if not isinstance(result, Mapping):
        raise TypeError(f"statistic function must return a mapping, got {type(result).__name__}")
    values: Dict[StatLabel, float] = {}
    count: Optional[int] = None
    for key, value in result.items():
        if key == COUNT_LABEL:
            count = int(value)
            continue
        values[StatLabel.parse(key)] = float(value) if value is not None else np.nan
    return values, count


def evaluate_windows(
        stat: StatFunction,
        kind: ResponseKind,
        y: np.ndarray,
        event: np.ndarray,
        members: Iterable[np.ndarray],
) -> Tuple[List[StatLabel], np.ndarray, np.ndarray]:
    """Run ``stat`` over each window.

    Returns the statistic labels in production order, a (windows x labels)
    value matrix and the per-window counts (NaN when the function reports none).
    """
    labels: List[StatLabel] = []
    rows: List[Dict[StatLabel, float]] = []
    counts: List[float] = []
    for idx in members:
        if kind is ResponseKind.SURVIVAL:
            out = stat(y[idx], event[idx])
        else:
            out = stat(y[idx])
        values, count = normalize_stat_output(out)
        for lab in values:
            if lab not in labels:
                labels.append(lab)
        rows.append(values)
        counts.append(np.nan if count is None else count)

    matrix = np.full((len(rows), len(labels)), np.nan)
    for i, values in enumerate(rows):
        for j, lab in enumerate(labels):
            matrix[i, j] = values.get(lab, np.nan)
    return labels, matrix, np.asarray(counts, dtype=float)
