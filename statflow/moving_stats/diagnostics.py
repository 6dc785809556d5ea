"""
Window diagnostics: one row per stratum with the number of observations, the
mean/min/max window size, the effective eps (variable-eps only) and the
computed x increment (count mode without an explicit increment).

Presentation only; nothing here feeds back into the estimates.
"""
from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd

WINDOW_SIZE_COLUMNS = ("Wmean", "Wmin", "Wmax")
_DISPLAY_NAMES = {"N": "N", "Wmean": "Mean", "Wmin": "Min", "Wmax": "Max", "eps": "eps", "xinc": "xinc"}
GROUP_HEADER = "Window Sample Sizes"


def window_info(
        strata: Sequence[str],
        records: Dict[str, Dict[str, float]],
        discrete: bool = False,
        with_eps: bool = False,
        with_xinc: bool = False,
        labelled: bool = True,
) -> pd.DataFrame:
    """Build the diagnostics table; strata without a record (skipped) stay NaN."""
    if discrete:
        columns: List[str] = ["N"]
    else:
        columns = ["N", *WINDOW_SIZE_COLUMNS]
        if with_eps:
            columns.append("eps")
        if with_xinc:
            columns.append("xinc")
    info = pd.DataFrame(np.nan, index=pd.Index(list(strata), dtype=object), columns=columns)
    for stratum, rec in records.items():
        for col in columns:
            if col in rec:
                info.loc[stratum, col] = rec[col]
    if not labelled:
        info = info.reset_index(drop=True)
    return info


def window_size_summary(sizes: np.ndarray) -> Dict[str, float]:
    sizes = np.asarray(sizes, dtype=float)
    sizes = sizes[np.isfinite(sizes)]
    if sizes.size == 0:
        return {}
    return {"Wmean": round(float(sizes.mean()), 1), "Wmin": float(sizes.min()), "Wmax": float(sizes.max())}


def _styled_html(infon: pd.DataFrame, labelled: bool) -> str:
    table = infon.rename(columns=_DISPLAY_NAMES)
    if set(WINDOW_SIZE_COLUMNS).issubset(infon.columns):
        table.columns = pd.MultiIndex.from_tuples(
            [(GROUP_HEADER if c in WINDOW_SIZE_COLUMNS else "", _DISPLAY_NAMES[c]) for c in infon.columns]
        )
    styler = table.style.format(precision=1, na_rep="").set_table_attributes('style="font-size: 9pt"')
    if not labelled:
        styler = styler.hide(axis="index")
    return styler.to_html()


def format_window_info(
        infon: pd.DataFrame,
        pr: str = "plain",
        labelled: Optional[bool] = None,
        echo: bool = True,
) -> Union[pd.DataFrame, str]:
    """Render the diagnostics table.

    pr='none'   -> the table itself
    pr='plain'  -> plain text
    pr='kable'  -> styled HTML table with a grouped "Window Sample Sizes" header
    pr='margin' -> the HTML table inside a Quarto right-margin block
    The rendering is printed unless ``echo`` is False.
    """
    if labelled is None:
        labelled = not isinstance(infon.index, pd.RangeIndex)
    if pr == "none":
        return infon
    if pr == "plain":
        text = infon.to_string(index=labelled)
    elif pr == "kable":
        text = _styled_html(infon, labelled)
    elif pr == "margin":
        text = "::: {.column-margin}\n" + _styled_html(infon, labelled) + "\n:::\n"
    else:
        raise ValueError(f"unknown print mode {pr!r}")
    if echo:
        print(text)
    return text
