"""
statflow: windowed descriptive statistics and data checks for pandas DataFrames.
"""

from .moving_stats import moving_stats, melt_moving_stats, format_window_info, plot_moving_stats
from .data_check import data_check

__version__ = '0.1.0'

__all__ = [
    'moving_stats',
    'melt_moving_stats',
    'format_window_info',
    'plot_moving_stats',
    'data_check',
]
