"""
Window construction for one stratum.

Count mode ("n"): observations sorted by x, targets are ranks, a window holds
the ranks within +-eps of its target and is represented by the mean x of its
members.

Distance mode ("x"): targets are evenly spaced x values, a window holds the
observations with x within +-eps of its target and is represented by the
target itself.

Discrete mode: every distinct x level is its own window.

Membership depends only on the distance to the target, so windows overlap
and one observation may sit in many of them.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

# rank (1-based) of the first and last count-mode target, counted from each end
EDGE_RANK = 10


@dataclass
class WindowPlan:
    targets: np.ndarray           # nominal targets of the non-empty windows
    members: List[np.ndarray]     # row positions (into the sorted stratum) per window
    window_x: np.ndarray          # representative x per window
    eps: Optional[float] = None
    xinc: Optional[float] = None
    xinc_computed: bool = False
    all_targets: np.ndarray = field(default_factory=lambda: np.array([]))

    @property
    def sizes(self) -> np.ndarray:
        return np.array([len(m) for m in self.members], dtype=np.int64)

    def __len__(self) -> int:
        return len(self.members)


def regular_sequence(start: float, stop: float, step: float) -> np.ndarray:
    """start, start+step, ... up to and including stop (within rounding)."""
    if step <= 0 or stop < start:
        return np.array([start], dtype=float)
    n_steps = int(math.floor((stop - start) / step + 1e-10))
    return start + np.arange(n_steps + 1, dtype=float) * step


def default_count_xinc(n: int) -> int:
    return max(int(math.floor(n / 200.0)), 1)


def count_targets(n: int, xinc: float) -> np.ndarray:
    """Target ranks 10, 10+xinc, ..., n-9.

    Strata with fewer than 19 observations get a single target at the middle rank.
    """
    first = min(EDGE_RANK, (n + 1) // 2)
    last = max(n - EDGE_RANK + 1, first)
    return regular_sequence(first, last, xinc)


def vary_eps(targets: np.ndarray, xinc: float, eps: float) -> float:
    """Shrink eps so that the first and last windows still leave room for 3 target points.

    The first window reaches min(targets) + eps on the right, the last window
    reaches max(targets) - eps on the left; those must be at least 2*xinc apart.
    eps is never increased.
    """
    lowest = math.floor((np.max(targets) - np.min(targets) - 2 * xinc) / 2.0)
    if lowest < eps:
        return float(max(lowest, 0))
    return eps


def distance_limits(x_sorted: np.ndarray, xlim: Optional[Sequence[float]] = None) -> Tuple[float, float]:
    """Evaluation range: xlim, else the 10th smallest to 10th largest x (rounded if wide)."""
    if xlim is not None:
        return float(xlim[0]), float(xlim[1])
    n = len(x_sorted)
    first = min(EDGE_RANK - 1, (n - 1) // 2)
    last = max(n - EDGE_RANK, first)
    lo, hi = float(x_sorted[first]), float(x_sorted[last])
    if hi - lo >= 25:
        lo, hi = float(np.round(lo)), float(np.round(hi))
    return lo, hi


def count_windows(n: int, targets: np.ndarray, eps: float) -> List[np.ndarray]:
    """0-based positions of the ranks within [r - eps, r + eps] of each target rank r."""
    out = []
    for r in targets:
        lo = max(int(math.ceil(r - eps)), 1)
        hi = min(int(math.floor(r + eps)), n)
        out.append(np.arange(lo - 1, hi, dtype=np.int64))
    return out


def distance_windows(x_sorted: np.ndarray, targets: np.ndarray, eps: float) -> List[np.ndarray]:
    """0-based positions of the observations with x within [t - eps, t + eps] of each target t."""
    lo = np.searchsorted(x_sorted, targets - eps, side="left")
    hi = np.searchsorted(x_sorted, targets + eps, side="right")
    return [np.arange(a, b, dtype=np.int64) for a, b in zip(lo, hi)]


def discrete_levels(x: pd.Series) -> list:
    if isinstance(x.dtype, pd.CategoricalDtype):
        return list(x.cat.categories)
    return sorted(pd.unique(x))


def build_windows(
        x_sorted: np.ndarray,
        space: str,
        eps: Optional[float],
        xinc: Optional[float] = None,
        xlim: Optional[Sequence[float]] = None,
        varyeps: bool = False,
) -> WindowPlan:
    """Construct the windows of one stratum whose x values are already sorted."""
    n = len(x_sorted)
    xinc_computed = False

    if space == "n":
        if xinc is None:
            xinc = default_count_xinc(n)
            xinc_computed = True
        targets = count_targets(n, xinc)
        if varyeps:
            eps = vary_eps(targets, xinc, eps)
        members = count_windows(n, targets, eps)
    else:
        lo, hi = distance_limits(x_sorted, xlim)
        if xinc is None:
            xinc = (hi - lo) / 100.0
        targets = regular_sequence(lo, hi, xinc)
        members = distance_windows(x_sorted, targets, eps)

    keep = [i for i, m in enumerate(members) if len(m) > 0]
    kept_targets = targets[keep]
    kept_members = [members[i] for i in keep]
    if space == "n":
        window_x = np.array([x_sorted[m].mean() for m in kept_members], dtype=float)
    else:
        window_x = kept_targets.astype(float)

    return WindowPlan(
        targets=kept_targets,
        members=kept_members,
        window_x=window_x,
        eps=eps,
        xinc=xinc,
        xinc_computed=xinc_computed,
        all_targets=targets,
    )


def build_discrete_groups(x: pd.Series) -> WindowPlan:
    """One exact group per distinct x level, in level order; absent levels are dropped."""
    values = x.to_numpy()
    targets = []
    members = []
    for level in discrete_levels(x):
        idx = np.flatnonzero(values == level)
        if len(idx):
            targets.append(level)
            members.append(idx.astype(np.int64))
    targets_arr = np.empty(len(targets), dtype=object)
    targets_arr[:] = targets
    return WindowPlan(targets=targets_arr, members=members, window_x=targets_arr, all_targets=targets_arr)
