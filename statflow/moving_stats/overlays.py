"""
Auxiliary regression overlays.

Each overlay is fitted on the full (unwindowed) data of a stratum and predicted
at the window x values. Spline terms are natural cubic regression splines from
patsy (``cr``) with ``k`` knots, i.e. ``k - 1`` basis columns; the spline
boundaries cover both the data and the prediction points.

Fit failures are not caught here; they abort the call.
"""
from __future__ import annotations

import logging
import math
from typing import List, Sequence, Tuple

import numpy as np
import pandas as pd
import patsy
import statsmodels.formula.api as smf
from lifelines import CoxPHFitter
from scipy import stats as sps
from statsmodels.miscmodels.ordinal_model import OrderedModel
from statsmodels.nonparametric.smoothers_lowess import lowess as sm_lowess

from .config import MovingStatsConfig
from .statistics import ResponseKind, StatLabel, quantile_label, time_label

logger = logging.getLogger(__name__)

Overlay = Tuple[StatLabel, np.ndarray]

LOESS_SPAN = 0.75

# Families are named for Prob(Y >= y) = F(alpha + xb); OrderedModel fits
# Prob(Y <= y) = G(cut - xb), so G(w) = 1 - F(-w).
_ORDINAL_DISTR = {
    "logistic": "logit",
    "probit": "probit",
    "cloglog": sps.gumbel_r,
    "loglog": sps.gumbel_l,
}


def spline_term(var: str, n_columns: int, lower: float, upper: float) -> str:
    """patsy term for a centred natural cubic spline with ``n_columns`` basis columns."""
    return (
        f"cr({var}, df={int(n_columns)}, constraints='center', "
        f"lower_bound={float(lower)!r}, upper_bound={float(upper)!r})"
    )


def _bounds(x: np.ndarray, xnew: np.ndarray) -> Tuple[float, float]:
    both = np.concatenate([np.asarray(x, dtype=float), np.asarray(xnew, dtype=float)])
    return float(np.min(both)), float(np.max(both))


def fit_loess(data: pd.DataFrame, xnew: np.ndarray, kind: ResponseKind) -> List[Overlay]:
    pred = sm_lowess(data["y"].to_numpy(dtype=float), data["x"].to_numpy(dtype=float),
                     frac=LOESS_SPAN, it=0, xvals=np.asarray(xnew, dtype=float))
    label = StatLabel("Loess", "Proportion" if kind is ResponseKind.BINARY else "Mean")
    return [(label, np.asarray(pred, dtype=float))]


def fit_ols(data: pd.DataFrame, xnew: np.ndarray, k: int) -> List[Overlay]:
    lo, hi = _bounds(data["x"], xnew)
    res = smf.ols(f"y ~ {spline_term('x', k - 1, lo, hi)}", data=data).fit()
    pred = res.predict(pd.DataFrame({"x": xnew}))
    return [(StatLabel("OLS", "Mean"), np.asarray(pred, dtype=float))]


def fit_lrm(data: pd.DataFrame, xnew: np.ndarray, k: int) -> List[Overlay]:
    lo, hi = _bounds(data["x"], xnew)
    res = smf.logit(f"y ~ {spline_term('x', k - 1, lo, hi)}", data=data).fit(disp=0)
    pred = res.predict(pd.DataFrame({"x": xnew}))
    return [(StatLabel("LR", "Proportion"), np.asarray(pred, dtype=float))]


def fit_qreg(data: pd.DataFrame, xnew: np.ndarray, k: int, tau: Sequence[float]) -> List[Overlay]:
    lo, hi = _bounds(data["x"], xnew)
    formula = f"y ~ {spline_term('x', k - 1, lo, hi)}"
    newdata = pd.DataFrame({"x": xnew})
    out: List[Overlay] = []
    for ta in tau:
        res = smf.quantreg(formula, data=data).fit(q=ta)
        out.append((StatLabel("QR", quantile_label(ta)), np.asarray(res.predict(newdata), dtype=float)))
    return out


def ordinal_quantiles(probs: np.ndarray, levels: np.ndarray, tau: float) -> np.ndarray:
    """Smallest response level whose cumulative probability reaches tau, per row."""
    cum = np.cumsum(probs, axis=1)
    idx = np.argmax(cum >= tau - 1e-12, axis=1)
    return levels[idx].astype(float)


def fit_orm(data: pd.DataFrame, xnew: np.ndarray, k: int, tau: Sequence[float],
            family: str = "logistic") -> List[Overlay]:
    lo, hi = _bounds(data["x"], xnew)
    model = OrderedModel.from_formula(
        f"y ~ 0 + {spline_term('x', k - 1, lo, hi)}", data=data, distr=_ORDINAL_DISTR[family]
    )
    res = model.fit(method="bfgs", disp=False)
    probs = np.asarray(res.predict(pd.DataFrame({"x": xnew})), dtype=float)
    levels = np.unique(data["y"].to_numpy(dtype=float))
    out: List[Overlay] = [(StatLabel("ORM", "Mean"), probs @ levels)]
    for ta in tau:
        out.append((StatLabel("ORM", quantile_label(ta)), ordinal_quantiles(probs, levels, ta)))
    return out


def _hazard_basis(x: np.ndarray, dim: int, lo: float, hi: float):
    """Linear term for dim 1, otherwise a centred natural spline with dim columns."""
    if dim == 1:
        return None, pd.DataFrame({"b0": np.asarray(x, dtype=float)})
    design = patsy.dmatrix(f"0 + {spline_term('x', dim, lo, hi)}", {"x": np.asarray(x, dtype=float)},
                           return_type="dataframe")
    design.columns = [f"b{i}" for i in range(design.shape[1])]
    return design.design_info, design


def select_hazard_model(data: pd.DataFrame, lo: float, hi: float, maxdim: int = 6, penalty=None):
    """Fit Cox models in x for dimensions 1 (linear) to maxdim - 1.

    Returns (dim, design_info, fitted model) of the one minimising
    -2 logL + penalty * dim; penalty defaults to log(n), i.e. BIC.
    """
    x = data["x"].to_numpy(dtype=float)
    pen = math.log(len(x)) if penalty is None else float(penalty)

    best = None
    for dim in range(1, int(maxdim)):
        design_info, basis = _hazard_basis(x, dim, lo, hi)
        frame = basis.assign(time=data["time"].to_numpy(dtype=float),
                             event=data["event"].to_numpy(dtype=float))
        cph = CoxPHFitter()
        cph.fit(frame, duration_col="time", event_col="event")
        crit = -2.0 * cph.log_likelihood_ + pen * dim
        logger.debug("hazard dim=%d criterion=%.3f", dim, crit)
        if best is None or crit < best[0]:
            best = (crit, dim, design_info, cph)

    return best[1:]


def fit_hazard(data: pd.DataFrame, xnew: np.ndarray, times: Sequence[float], tunits: str,
               maxdim: int = 6, penalty=None) -> List[Overlay]:
    """Proportional hazards model in a spline of x, dimension chosen by penalised likelihood."""
    lo, hi = _bounds(data["x"], xnew)
    dim, design_info, cph = select_hazard_model(data, lo, hi, maxdim, penalty)
    if design_info is None:
        newbasis = pd.DataFrame({"b0": np.asarray(xnew, dtype=float)})
    else:
        newbasis = pd.DataFrame(
            np.asarray(patsy.build_design_matrices([design_info], {"x": np.asarray(xnew, dtype=float)})[0]),
            columns=[f"b{i}" for i in range(dim)],
        )
    surv = cph.predict_survival_function(newbasis, times=list(times)).to_numpy(dtype=float)
    return [
        (StatLabel("Hazard", time_label(t, tunits)), 1.0 - surv[i, :])
        for i, t in enumerate(times)
    ]


def compute_overlays(
        data: pd.DataFrame,
        xnew: np.ndarray,
        kind: ResponseKind,
        config: MovingStatsConfig,
) -> List[Overlay]:
    """All requested overlays for one stratum, in a fixed order.

    ``data`` holds columns ``x`` and ``y`` (and ``time``/``event`` for a
    survival response); x is on the transformed scale.
    """
    out: List[Overlay] = []
    if config.loess:
        out.extend(fit_loess(data, xnew, kind))
    if config.ols:
        out.extend(fit_ols(data, xnew, config.k))
    if config.lrm:
        out.extend(fit_lrm(data, xnew, config.k))
    if config.orm:
        out.extend(fit_orm(data, xnew, config.k, config.tau, config.family))
    if config.qreg:
        out.extend(fit_qreg(data, xnew, config.k, config.tau))
    if config.hazard:
        out.extend(fit_hazard(data, xnew, config.times, config.tunits, config.maxdim, config.penalty))
    return out
