import numpy as np
import pandas as pd
import matplotlib.pyplot as plt

from .assembly import STATISTIC_COLUMN, TYPE_COLUMN, melt_moving_stats


def plot_moving_stats(
        result,
        x=None,
        y=None,
        color=TYPE_COLUMN,       # column mapped to line colour
        facet=STATISTIC_COLUMN,  # column mapped to panels; None for a single panel
        linestyle=None,          # optional column (e.g. a stratifier) mapped to line style
        ncols=3,
        cmap="tab10",
        show=False               # if False, don't plt.show(); always return (fig, axes)
):
    """
    Draw moving statistics as lines, one panel per facet value.

    Parameters
    ----------
    result : pandas.DataFrame
        Output of ``moving_stats``; a wide result is melted first.
    x, y : str, optional
        x and value columns (default: taken from ``result.attrs``).
    color, facet, linestyle : str, optional
        Columns mapped to colour, panel and line style.
    ncols : int
        Maximum number of panels per row.
    show : bool, optional
        Display the figure if True.

    Returns
    -------
    tuple
        (fig, axes) : matplotlib Figure and flat array of Axes.
    """
    if TYPE_COLUMN not in result.columns:
        result = melt_moving_stats(result)
    x = x or result.attrs.get("x_name")
    y = y or result.attrs.get("value_name")
    if x is None or y is None:
        raise ValueError("x and y must be given when the result carries no metadata")

    panels = list(pd.unique(result[facet])) if facet else [None]
    ncols = max(1, min(ncols, len(panels)))
    nrows = int(np.ceil(len(panels) / ncols))
    fig, axes = plt.subplots(nrows, ncols, figsize=(4.5 * ncols, 3.5 * nrows), squeeze=False)
    axes = axes.ravel()

    colours = list(pd.unique(result[color])) if color else [None]
    base = plt.get_cmap(cmap)
    colour_of = {c: base(i % base.N) for i, c in enumerate(colours)}
    styles = ["-", "--", ":", "-."]
    style_of = {}
    if linestyle:
        style_of = {s: styles[i % len(styles)] for i, s in enumerate(pd.unique(result[linestyle]))}

    group_cols = [c for c in (color, linestyle) if c]
    for ax, panel in zip(axes, panels):
        sub = result if panel is None else result[result[facet] == panel]
        groups = sub.groupby(group_cols, sort=False) if group_cols else [((), sub)]
        for key, g in groups:
            key = key if isinstance(key, tuple) else (key,)
            named = dict(zip(group_cols, key))
            g = g.sort_values(x)
            ax.plot(
                g[x], g[y],
                color=colour_of.get(named.get(color), "tab:blue"),
                linestyle=style_of.get(named.get(linestyle), "-"),
                label=" ".join(str(v) for v in key) or None,
            )
        if panel is not None:
            ax.set_title(str(panel))
        ax.set_xlabel(x)
        ax.set_ylabel(y)
        ax.grid(True, alpha=0.3)
        if group_cols:
            ax.legend(fontsize=8)

    for ax in axes[len(panels):]:
        ax.set_visible(False)
    fig.tight_layout()
    if show:
        plt.show()
    return fig, axes
