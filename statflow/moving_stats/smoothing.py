"""
Smoothers applied to a windowed series (window x, statistic value).

``supsmu`` is Friedman's super smoother: running-lines smooths at three spans
(tweeter 0.05, midrange 0.2, woofer 0.5) whose cross-validated residuals choose
a local span; ``bass`` (0-10) pushes the choice towards the woofer.
``lowess`` is statsmodels' locally weighted regression.
Both return the curve on the distinct sorted x values; ``approx`` maps it back
onto arbitrary x values.
"""
from __future__ import annotations

from typing import Optional, Tuple

import numpy as np
from statsmodels.nonparametric.smoothers_lowess import lowess as sm_lowess

SPANS = (0.05, 0.2, 0.5)
_BIG = 1.0e20
_SML = 1.0e-7
_EPS = 1.0e-3


def _running_lines(
        x: np.ndarray,
        y: np.ndarray,
        w: np.ndarray,
        span: float,
        vsmlsq: float,
        want_cv: bool,
) -> Tuple[np.ndarray, Optional[np.ndarray]]:
    """Local linear fit over a symmetric neighbourhood of span*n points.

    x must be sorted. Returns the smooth and, if ``want_cv``, the absolute
    leave-one-out residuals.
    """
    n = len(x)
    smo = np.zeros(n)
    acvr = np.zeros(n) if want_cv else None

    ibw = int(0.5 * span * n + 0.5)
    if ibw < 2:
        ibw = 2
    it = min(2 * ibw + 1, n)

    xm = ym = var = cvar = fbw = 0.0
    for j in range(it):
        wt = w[j]
        fbo = fbw
        fbw += wt
        if fbw > 0:
            xm = (fbo * xm + wt * x[j]) / fbw
            ym = (fbo * ym + wt * y[j]) / fbw
        tmp = fbw * wt * (x[j] - xm) / fbo if fbo > 0 else 0.0
        var += tmp * (x[j] - xm)
        cvar += tmp * (y[j] - ym)

    for j in range(n):
        out = j - ibw - 1
        inn = j + ibw
        if out >= 0 and inn < n:
            # drop the leftmost point
            wt = w[out]
            fbo = fbw
            fbw -= wt
            tmp = fbo * wt * (x[out] - xm) / fbw if fbw > 0 else 0.0
            var -= tmp * (x[out] - xm)
            cvar -= tmp * (y[out] - ym)
            if fbw > 0:
                xm = (fbo * xm - wt * x[out]) / fbw
                ym = (fbo * ym - wt * y[out]) / fbw
            # add the next point on the right
            wt = w[inn]
            fbo = fbw
            fbw += wt
            if fbw > 0:
                xm = (fbo * xm + wt * x[inn]) / fbw
                ym = (fbo * ym + wt * y[inn]) / fbw
            tmp = fbw * wt * (x[inn] - xm) / fbo if fbo > 0 else 0.0
            var += tmp * (x[inn] - xm)
            cvar += tmp * (y[inn] - ym)

        a = cvar / var if var > vsmlsq else 0.0
        smo[j] = a * (x[j] - xm) + ym
        if want_cv:
            h = 1.0 / fbw if fbw > 0 else 0.0
            if var > vsmlsq:
                h += (x[j] - xm) ** 2 / var
            a = 1.0 - w[j] * h
            if a > 0:
                acvr[j] = abs(y[j] - smo[j]) / a
            elif j > 0:
                acvr[j] = acvr[j - 1]

    # tied x values share the average smooth
    j = 0
    while j < n:
        j0 = j
        sy = smo[j] * w[j]
        fbw = w[j]
        while j < n - 1 and x[j + 1] <= x[j]:
            j += 1
            sy += w[j] * smo[j]
            fbw += w[j]
        if j > j0:
            smo[j0:j + 1] = sy / fbw if fbw > 0 else 0.0
        j += 1
    return smo, acvr


def _scale(x: np.ndarray) -> float:
    """Spread between the (n/4)th and 3*(n/4)th sorted x (1-based), widened past ties."""
    n = len(x)
    i = max(n // 4 - 1, 0)
    j = max(3 * (n // 4) - 1, 0)
    scale = x[j] - x[i]
    while scale <= 0:
        if j < n - 1:
            j += 1
        if i > 0:
            i -= 1
        scale = x[j] - x[i]
    return float(scale)


def _super_smooth_sorted(x: np.ndarray, y: np.ndarray, w: np.ndarray, bass: float) -> np.ndarray:
    n = len(x)
    if x[-1] <= x[0]:
        return np.full(n, np.sum(w * y) / np.sum(w))

    vsmlsq = (_EPS * _scale(x)) ** 2

    smooths = []
    residuals = []
    for span in SPANS:
        smo, acvr = _running_lines(x, y, w, span, vsmlsq, want_cv=True)
        res, _ = _running_lines(x, acvr, w, SPANS[1], vsmlsq, want_cv=False)
        smooths.append(smo)
        residuals.append(res)

    chosen = np.empty(n)
    for k in range(n):
        resmin = _BIG
        for s, span in enumerate(SPANS):
            if residuals[s][k] < resmin:
                resmin = residuals[s][k]
                chosen[k] = span
        if 0 < bass <= 10 and 0 < resmin < residuals[2][k]:
            chosen[k] += (SPANS[2] - chosen[k]) * max(_SML, resmin / residuals[2][k]) ** (10.0 - bass)

    chosen, _ = _running_lines(x, chosen, w, SPANS[1], vsmlsq, want_cv=False)
    chosen = np.clip(chosen, SPANS[0], SPANS[2])

    blended = np.empty(n)
    for k in range(n):
        f = chosen[k] - SPANS[1]
        if f >= 0:
            f /= SPANS[2] - SPANS[1]
            blended[k] = (1.0 - f) * smooths[1][k] + f * smooths[2][k]
        else:
            f = -f / (SPANS[1] - SPANS[0])
            blended[k] = (1.0 - f) * smooths[1][k] + f * smooths[0][k]

    out, _ = _running_lines(x, blended, w, SPANS[0], vsmlsq, want_cv=False)
    return out


def supsmu(x, y, bass: float = 0.0, weights=None) -> Tuple[np.ndarray, np.ndarray]:
    """Friedman's super smoother with cross-validated spans.

    Non-finite pairs are dropped. Returns (distinct sorted x, smooth at those x).
    """
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    w = np.ones_like(x) if weights is None else np.asarray(weights, dtype=float)
    ok = np.isfinite(x) & np.isfinite(y) & np.isfinite(w)
    x, y, w = x[ok], y[ok], w[ok]
    if len(x) == 0:
        return x, y
    order = np.argsort(x, kind="mergesort")
    x, y, w = x[order], y[order], w[order]
    smo = _super_smooth_sorted(x, y, w, bass)
    first = np.concatenate([[True], np.diff(x) > 0])
    return x[first], smo[first]


def lowess(x, y, span: float = 2.0 / 3.0, iterations: int = 3) -> Tuple[np.ndarray, np.ndarray]:
    """Robust locally weighted regression; returns sorted x with the fitted values."""
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    ok = np.isfinite(x) & np.isfinite(y)
    x, y = x[ok], y[ok]
    if len(x) == 0:
        return x, y
    delta = 0.01 * (np.max(x) - np.min(x))
    fitted = sm_lowess(y, x, frac=span, it=iterations, delta=delta, return_sorted=True)
    return fitted[:, 0], fitted[:, 1]


def approx(x: np.ndarray, y: np.ndarray, xout: np.ndarray) -> np.ndarray:
    """Linear interpolation of (x, y) at xout; tied x are averaged, NaN outside the range."""
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    xout = np.asarray(xout, dtype=float)
    ux, inverse = np.unique(x, return_inverse=True)
    uy = np.bincount(inverse, weights=y) / np.bincount(inverse)
    out = np.interp(xout, ux, uy)
    out[(xout < ux[0]) | (xout > ux[-1])] = np.nan
    return out


def smooth_series(x: np.ndarray, y: np.ndarray, method: str = "supsmu", bass: float = 8.0,
                  span: float = 0.25) -> Tuple[np.ndarray, np.ndarray]:
    if method == "lowess":
        return lowess(x, y, span=span)
    if method == "supsmu":
        return supsmu(x, y, bass=bass)
    raise ValueError(f"unknown smoother {method!r}")
