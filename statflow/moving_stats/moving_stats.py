"""
Moving estimates using overlapping windows.

Computes moving averages and other statistics of a response as a function of a
continuous x, possibly stratified by other variables. Overlapping windows are
built along x and the statistic function is evaluated in each of them.

With the default ``space="n"`` every window holds ``2*eps + 1`` observations
(fewer in the outer windows) and estimates are made every ``xinc``
observations, from the 10th to the (n-9)th; the mean x of a window stands for
the window. With ``space="x"`` windows are ``+-eps`` wide in x units around
targets running by default from the 10th smallest to the 10th largest x. By
default the moving estimates are then smoothed with the super smoother.

Example:
    >>> res = moving_stats("crea ~ age + sex", df, melt=True)
    >>> res.attrs["infon"]          # window diagnostics per stratum
"""
from __future__ import annotations

import itertools
import logging
import re
import sys
import time
import warnings
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import statsmodels
from joblib import Parallel, delayed

from .assembly import X_COLUMN, StratumResult, assemble, melt_moving_stats
from .config import MIN_STRATUM_SIZE, MovingStatsConfig, identity, make_config
from .diagnostics import format_window_info, window_info, window_size_summary
from .exceptions import InsufficientDataWarning, InsufficientWindowError, MovingStatsConfigError
from .overlays import compute_overlays
from .smoothing import approx, smooth_series
from .statistics import (
    COUNT_LABEL,
    ResponseKind,
    StatFunction,
    StatLabel,
    default_stat,
    detect_response_kind,
    evaluate_windows,
)
from .windowing import build_discrete_groups, build_windows

logger = logging.getLogger(__name__)

STRATUM_SEP = "::"
INCIDENCE_NAME = "incidence"
SMOOTHED_FAMILY = "Moving-smoothed"

_SURV_RE = re.compile(r"^Surv\(\s*([^,\s]+)\s*,\s*([^,\s)]+)\s*\)$")


def parse_formula(formula: str) -> Tuple[List[str], str, List[str]]:
    """Split ``"y ~ x + s1 + s2"`` or ``"Surv(time, event) ~ x"`` into (responses, x, strata)."""
    if "~" not in formula:
        raise MovingStatsConfigError(f"formula must look like 'y ~ x [+ strata]', got {formula!r}")
    lhs, rhs = (part.strip() for part in formula.split("~", 1))
    match = _SURV_RE.match(lhs)
    responses = [match.group(1), match.group(2)] if match else [lhs]
    terms = [t.strip() for t in rhs.split("+") if t.strip()]
    if not lhs or not terms:
        raise MovingStatsConfigError(f"formula must name a response and an x variable, got {formula!r}")
    return responses, terms[0], terms[1:]


def _smoothed_label(lab: StatLabel) -> StatLabel:
    if lab.family.startswith("Moving"):
        return StatLabel(lab.family.replace("Moving", SMOOTHED_FAMILY, 1), lab.kind)
    return StatLabel(f"{lab.family}-smoothed", lab.kind)


def _stratum_name(key: Tuple[Any, ...]) -> str:
    return STRATUM_SEP.join(str(v) for v in key)


def stratum_positions(
        frame: pd.DataFrame,
        by_names: Sequence[str],
) -> List[Tuple[Tuple[Any, ...], np.ndarray]]:
    """Every combination of stratifier levels with the row positions it holds.

    Levels are the categories of a categorical column, otherwise its sorted
    observed values. Unobserved combinations are kept with no rows.
    """
    if not by_names:
        return [((), np.arange(len(frame)))]
    levels = []
    for name in by_names:
        col = frame[name]
        if isinstance(col.dtype, pd.CategoricalDtype):
            levels.append(list(col.cat.categories))
        else:
            levels.append(sorted(pd.unique(col)))
    observed = {
        (key if isinstance(key, tuple) else (key,)): sub.index.to_numpy()
        for key, sub in frame.groupby(list(by_names), sort=True, observed=True)
    }
    empty = np.array([], dtype=np.int64)
    return [(key, observed.get(key, empty)) for key in itertools.product(*levels)]


def _process_stratum(
        key: Tuple[Any, ...],
        x: Any,
        y: np.ndarray,
        event: np.ndarray,
        kind: ResponseKind,
        stat: StatFunction,
        config: MovingStatsConfig,
) -> StratumResult:
    """Windows, statistics, smoothing and overlays of one stratum."""
    name = _stratum_name(key)
    n = len(y)

    if config.discrete:
        plan = build_discrete_groups(pd.Series(x))
    else:
        order = np.argsort(x, kind="mergesort")
        x, y, event = x[order], y[order], event[order]
        plan = build_windows(
            x,
            space=config.space,
            eps=config.effective_eps,
            xinc=config.xinc,
            xlim=config.xlim,
            varyeps=config.varyeps,
        )
    logger.debug("stratum %r: n=%d windows=%d eps=%s xinc=%s", name, n, len(plan), plan.eps, plan.xinc)

    labels, matrix, counts = evaluate_windows(stat, kind, y, event, plan.members)

    frame = pd.DataFrame({X_COLUMN: plan.window_x})
    label_map: Dict[str, StatLabel] = {}
    for j, lab in enumerate(labels):
        frame[lab.name] = matrix[:, j]
        label_map[lab.name] = lab
    has_count = len(counts) > 0 and np.isfinite(counts).all()
    if has_count:
        frame[COUNT_LABEL] = counts.astype(np.int64)

    info: Dict[str, float] = {"N": n}
    if has_count and not config.discrete:
        info.update(window_size_summary(counts))
    if config.varyeps:
        info["eps"] = plan.eps
    if plan.xinc_computed:
        info["xinc"] = plan.xinc

    msmooth = config.effective_msmooth
    if msmooth != "raw":
        wx = plan.window_x.astype(float)
        for lab in labels:
            col = lab.name
            sx, sy = smooth_series(wx, frame[col].to_numpy(dtype=float), method=config.tsmooth,
                                   bass=config.bass, span=config.span)
            if len(sx) < 2:
                raise InsufficientWindowError(
                    f"Only {len(sx)} x point for stratum {name!r} with {n} observations. "
                    "Consider specifying varyeps=True."
                )
            smoothed = approx(sx, sy, wx)
            if msmooth == "smoothed":
                frame[col] = smoothed
            else:
                new = _smoothed_label(lab)
                frame[new.name] = smoothed
                label_map[new.name] = new

    if config.any_overlay:
        if kind is ResponseKind.SURVIVAL:
            data = pd.DataFrame({"x": x, "time": y, "event": event})
        else:
            data = pd.DataFrame({"x": x, "y": y})
        for lab, values in compute_overlays(data, plan.window_x.astype(float), kind, config):
            frame[lab.name] = values
            label_map[lab.name] = lab

    return StratumResult(key=key, frame=frame, labels=label_map, info=info)


def moving_stats(
        formula: str,
        data: pd.DataFrame,
        stat: Optional[StatFunction] = None,
        discrete: bool = False,
        space: str = "n",
        eps: Optional[float] = None,
        varyeps: bool = False,
        xinc: Optional[float] = None,
        xlim: Optional[Sequence[float]] = None,
        times: Optional[Sequence[float]] = None,
        tunits: str = "year",
        msmooth: str = "smoothed",
        tsmooth: str = "supsmu",
        bass: float = 8.0,
        span: float = 0.25,
        maxdim: int = 6,
        penalty: Optional[float] = None,
        trans: Optional[Callable] = None,
        itrans: Optional[Callable] = None,
        loess: bool = False,
        ols: bool = False,
        qreg: bool = False,
        lrm: bool = False,
        orm: bool = False,
        hazard: bool = False,
        family: str = "logistic",
        k: int = 5,
        tau: Sequence[float] = (0.25, 0.5, 0.75),
        melt: bool = False,
        pr: str = "none",
        n_jobs: int = 1,
) -> pd.DataFrame:
    """Moving statistics of a response along x, within strata.

    Parameters:
        formula: ``"y ~ x + strata..."``; a time-to-event response is written
            ``"Surv(time, event) ~ x"``.
        data: input DataFrame. Rows with a missing response, x or stratum are dropped.
        stat: function of the window responses (``stat(y)``, or ``stat(time, event)``)
            returning a mapping label -> value; labels are strings ("Moving Mean")
            or (family, kind) tuples; an ``"N"`` entry is the window count.
            Defaults to mean/median/quartiles, a proportion for a 0/1 response,
            or one minus Kaplan-Meier at ``times`` for a time-to-event response.
        discrete: treat x as categorical: one exact group per level, no smoothing.
        space: "n" (windows of 2*eps+1 observations) or "x" (windows +-eps in x units).
        eps: window half-width; defaults to 15 for space="n", required for space="x".
        varyeps: shrink eps in small strata so that at least three x points remain (space="n").
        xinc: increment between targets; defaults to max(n/200, 1) observations
            for space="n" and to range/100 for space="x".
        xlim: evaluation range for space="x"; defaults to the 10th smallest to 10th largest x.
        times, tunits: times (and their units, for labels) at which to estimate incidence.
        msmooth: "smoothed" (replace by the smoothed curve), "raw" or "both".
        tsmooth: "supsmu" (super smoother, ``bass``) or "lowess" (``span``).
        maxdim, penalty: dimension limit and per-dimension penalty (default log n) of the hazard overlay.
        trans, itrans: transformation of x and its inverse; window x means are taken on the
            transformed scale and back-transformed.
        loess, ols, qreg, lrm, orm, hazard: add overlay estimates from local regression,
            spline least squares, spline quantile regression at ``tau``, spline logistic
            regression, spline ordinal regression (mean and quantiles at ``tau``, link
            ``family``) and spline proportional hazards incidence at ``times``.
        k: number of spline knots.
        melt: return the long form with ``Type`` and ``Statistic`` columns.
        pr: "none", "plain", "kable" or "margin": print the window diagnostics.
        n_jobs: parallel jobs over strata (joblib).

    Returns:
        DataFrame with attrs ``infon`` (window diagnostics per stratum), ``info``
        (its rendering per ``pr``) and ``statistics`` (column -> (family, kind)).
    """
    t0 = time.time()
    responses, x_name, by_names = parse_formula(formula)
    columns = responses + [x_name] + by_names
    missing = [c for c in columns if c not in data.columns]
    if missing:
        raise MovingStatsConfigError(f"columns not found in data: {missing}")

    config = make_config(
        times=times, tau=tau, xlim=xlim, trans=trans, itrans=itrans,
        stat=stat, discrete=discrete, space=space, eps=eps, varyeps=varyeps, xinc=xinc,
        tunits=tunits, msmooth=msmooth, tsmooth=tsmooth, bass=bass, span=span, maxdim=maxdim,
        penalty=penalty, loess=loess, ols=ols, qreg=qreg, lrm=lrm, orm=orm, hazard=hazard,
        family=family, k=k, melt=melt, pr=pr, n_jobs=n_jobs,
    )

    frame = data[columns].reset_index(drop=True)
    # non-numeric discrete levels cannot be transformed, nor back-transformed
    x_transformed = not discrete or pd.api.types.is_numeric_dtype(frame[x_name])
    if discrete:
        xvals = frame[x_name]
        if x_transformed:
            xvals = pd.Series(config.trans(xvals.to_numpy()), index=xvals.index)
        keep = xvals.notna()
    else:
        xvals = pd.Series(np.asarray(config.trans(pd.to_numeric(frame[x_name]).to_numpy(dtype=float)),
                                     dtype=float))
        keep = pd.Series(np.isfinite(xvals.to_numpy()))
    keep &= frame[responses + by_names].notna().all(axis=1)
    frame = frame.loc[keep].reset_index(drop=True)
    xvals = xvals.loc[keep].reset_index(drop=True)

    y_all = frame[responses[0]].to_numpy()
    survival = len(responses) == 2
    event_all = frame[responses[1]].to_numpy(dtype=float) if survival else np.ones(len(frame))
    kind = detect_response_kind(y_all, event_all if survival else None)
    config.validate(kind)
    if config.discrete and config.any_overlay:
        raise MovingStatsConfigError("overlays do not apply with discrete=True")
    y_all = y_all.astype(float)

    stat_fn = config.stat or default_stat(kind, discrete=config.discrete, times=config.times,
                                          tunits=config.tunits)

    strata = stratum_positions(frame, by_names)

    jobs = []
    for key, idx in strata:
        if len(idx) < MIN_STRATUM_SIZE:
            warnings.warn(
                f"Stratum {_stratum_name(key)!r} has < {MIN_STRATUM_SIZE} observations and is ignored",
                InsufficientDataWarning,
                stacklevel=2,
            )
            continue
        x_s = xvals.iloc[idx] if config.discrete else xvals.to_numpy()[idx]
        jobs.append((key, x_s, y_all[idx], event_all[idx]))

    if config.n_jobs == 1:
        results = [_process_stratum(key, x_s, y_s, e_s, kind, stat_fn, config)
                   for key, x_s, y_s, e_s in jobs]
    else:
        results = Parallel(n_jobs=config.n_jobs)(
            delayed(_process_stratum)(key, x_s, y_s, e_s, kind, stat_fn, config)
            for key, x_s, y_s, e_s in jobs
        )

    wide, labels = assemble(results, x_name=x_name, by_names=by_names,
                            itrans=config.itrans if x_transformed else identity)

    strata_names = [_stratum_name(key) for key, _ in strata]
    infon = window_info(
        strata_names,
        {_stratum_name(r.key): r.info for r in results},
        discrete=config.discrete,
        with_eps=config.varyeps,
        with_xinc=(config.space == "n" and config.xinc is None and not config.discrete),
        labelled=bool(by_names),
    )
    info = format_window_info(infon, config.pr, labelled=bool(by_names))

    value_name = INCIDENCE_NAME if survival else responses[0]
    out = melt_moving_stats(wide, x_name, by_names, value_name, labels) if config.melt else wide

    out.attrs.update(
        {
            "infon": infon,
            "info": info,
            "statistics": {c: tuple(lab) for c, lab in labels.items()},
            "x_name": x_name,
            "by_names": list(by_names),
            "value_name": value_name,
            "response_kind": kind.value,
            "space": "discrete" if config.discrete else config.space,
            "python_version": sys.version,
            "statsmodels_version": statsmodels.__version__,
            "computation_time_sec": time.time() - t0,
        }
    )
    logger.info("moving_stats: %d of %d strata, %d rows in %.2fs",
                len(results), len(strata), len(out), out.attrs["computation_time_sec"])
    return out
