"""
Moving statistics package

Moving estimates of a response along a continuous x using overlapping windows,
optionally stratified, smoothed, and compared with regression overlays.

Quick Start:
    from statflow.moving_stats import moving_stats
    res = moving_stats("y ~ age + sex", df, melt=True)
    res.attrs["infon"]      # window diagnostics per stratum
"""

from .moving_stats import moving_stats, parse_formula
from .config import MovingStatsConfig, make_config
from .assembly import melt_moving_stats
from .diagnostics import format_window_info
from .statistics import ResponseKind, StatLabel, default_stat
from .exceptions import InsufficientDataWarning, InsufficientWindowError, MovingStatsConfigError
from .plotting import plot_moving_stats

__all__ = [
    'moving_stats',
    'parse_formula',
    'MovingStatsConfig',
    'make_config',
    'melt_moving_stats',
    'format_window_info',
    'ResponseKind',
    'StatLabel',
    'default_stat',
    'plot_moving_stats',
    'MovingStatsConfigError',
    'InsufficientWindowError',
    'InsufficientDataWarning',
]
