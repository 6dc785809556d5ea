"""Options of one moving statistics call, validated once at entry."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence, Tuple

import numpy as np

from .exceptions import MovingStatsConfigError
from .statistics import ResponseKind, StatFunction

MIN_STRATUM_SIZE = 10
DEFAULT_EPS_N = 15

SPACES = ("n", "x")
MSMOOTH_MODES = ("smoothed", "raw", "both")
TSMOOTH_METHODS = ("supsmu", "lowess")
PRINT_MODES = ("none", "kable", "plain", "margin")
ORDINAL_FAMILIES = ("logistic", "probit", "cloglog", "loglog")


def identity(x):
    return x


@dataclass(frozen=True)
class MovingStatsConfig:
    """All options of ``moving_stats``.

    Windowing:    space, eps, varyeps, xinc, xlim, discrete
    Statistics:   stat, times, tunits
    Smoothing:    msmooth, tsmooth, bass, span
    Overlays:     loess, ols, lrm, orm, qreg, hazard, family, k, tau, maxdim, penalty
    Output:       melt, pr
    Execution:    n_jobs
    """
    stat: Optional[StatFunction] = None
    discrete: bool = False
    space: str = "n"
    eps: Optional[float] = None
    varyeps: bool = False
    xinc: Optional[float] = None
    xlim: Optional[Tuple[float, float]] = None
    times: Optional[Tuple[float, ...]] = None
    tunits: str = "year"
    msmooth: str = "smoothed"
    tsmooth: str = "supsmu"
    bass: float = 8.0
    span: float = 0.25
    maxdim: int = 6
    penalty: Optional[float] = None
    trans: Callable = field(default=identity)
    itrans: Callable = field(default=identity)
    loess: bool = False
    ols: bool = False
    qreg: bool = False
    lrm: bool = False
    orm: bool = False
    hazard: bool = False
    family: str = "logistic"
    k: int = 5
    tau: Tuple[float, ...] = (0.25, 0.5, 0.75)
    melt: bool = False
    pr: str = "none"
    n_jobs: int = 1

    @property
    def effective_eps(self) -> Optional[float]:
        """eps with the count-mode default filled in."""
        if self.eps is None and self.space == "n":
            return DEFAULT_EPS_N
        return self.eps

    @property
    def effective_msmooth(self) -> str:
        return "raw" if self.discrete else self.msmooth

    @property
    def any_overlay(self) -> bool:
        return any((self.loess, self.ols, self.qreg, self.lrm, self.orm, self.hazard))

    def validate(self, kind: ResponseKind) -> None:
        """Raise MovingStatsConfigError for malformed or incompatible options."""
        if self.space not in SPACES:
            raise MovingStatsConfigError(f"space must be one of {SPACES}, got {self.space!r}")
        if self.msmooth not in MSMOOTH_MODES:
            raise MovingStatsConfigError(f"msmooth must be one of {MSMOOTH_MODES}, got {self.msmooth!r}")
        if self.tsmooth not in TSMOOTH_METHODS:
            raise MovingStatsConfigError(f"tsmooth must be one of {TSMOOTH_METHODS}, got {self.tsmooth!r}")
        if self.pr not in PRINT_MODES:
            raise MovingStatsConfigError(f"pr must be one of {PRINT_MODES}, got {self.pr!r}")
        if self.family not in ORDINAL_FAMILIES:
            raise MovingStatsConfigError(f"family must be one of {ORDINAL_FAMILIES}, got {self.family!r}")

        survival = kind is ResponseKind.SURVIVAL
        if survival and not self.times:
            raise MovingStatsConfigError("when the response has two columns you must specify times")
        if self.times and not survival:
            raise MovingStatsConfigError("times apply only to a two-column (time, event) response")
        if survival and (self.loess or self.ols or self.qreg or self.lrm or self.orm):
            raise MovingStatsConfigError(
                "loess, ols, qreg, lrm, orm do not apply when the response has two columns"
            )
        if self.hazard and not survival:
            raise MovingStatsConfigError("hazard requires a two-column (time, event) response")
        if self.lrm and kind is not ResponseKind.BINARY:
            raise MovingStatsConfigError("lrm requires a binary (0/1) response")

        if self.varyeps and self.space == "x":
            raise MovingStatsConfigError('varyeps applies only to space="n"')
        if not self.discrete:
            if self.space == "x" and self.eps is None:
                raise MovingStatsConfigError('eps must be given for space="x"')
            eps = self.effective_eps
            if eps is None or not np.isfinite(eps) or eps < 0:
                raise MovingStatsConfigError(f"eps must be a non-negative number, got {self.eps!r}")
        if self.xinc is not None and not self.xinc > 0:
            raise MovingStatsConfigError(f"xinc must be positive, got {self.xinc!r}")
        if self.xlim is not None:
            if len(self.xlim) != 2 or not self.xlim[0] < self.xlim[1]:
                raise MovingStatsConfigError(f"xlim must be an increasing pair, got {self.xlim!r}")

        if not 0 <= self.bass <= 10:
            raise MovingStatsConfigError(f"bass must be within [0, 10], got {self.bass!r}")
        if not 0 < self.span <= 1:
            raise MovingStatsConfigError(f"span must be within (0, 1], got {self.span!r}")
        if (self.ols or self.qreg or self.lrm or self.orm) and int(self.k) < 3:
            raise MovingStatsConfigError(f"k (number of knots) must be at least 3, got {self.k!r}")
        if self.hazard and int(self.maxdim) < 2:
            raise MovingStatsConfigError(f"maxdim must be at least 2, got {self.maxdim!r}")
        for ta in self.tau:
            if not 0 < ta < 1:
                raise MovingStatsConfigError(f"tau values must be within (0, 1), got {ta!r}")
        if not isinstance(self.n_jobs, (int, np.integer)) or self.n_jobs == 0:
            raise MovingStatsConfigError("n_jobs must be a non-zero integer")


def make_config(
        times: Optional[Sequence[float]] = None,
        tau: Optional[Sequence[float]] = None,
        xlim: Optional[Sequence[float]] = None,
        trans: Optional[Callable] = None,
        itrans: Optional[Callable] = None,
        **kwargs,
) -> MovingStatsConfig:
    """Build a config from user keyword arguments, normalising sequences to tuples."""
    if times is not None:
        kwargs["times"] = tuple(float(t) for t in np.atleast_1d(times))
    if tau is not None:
        kwargs["tau"] = tuple(float(t) for t in np.atleast_1d(tau))
    if xlim is not None:
        kwargs["xlim"] = tuple(float(v) for v in xlim)
    if trans is not None:
        kwargs["trans"] = trans
    if itrans is not None:
        kwargs["itrans"] = itrans
    return MovingStatsConfig(**kwargs)
