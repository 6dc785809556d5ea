"""
Record-level data checks.

Each check is a pandas query expression that is true for a suspicious record,
e.g. ``"age < 0"`` or ``"sbp > 250 | dbp > sbp"``. For every check the
offending records are listed with the id columns and every variable the
expression mentions.
"""
from __future__ import annotations

import ast
import html as html_lib
import logging
import re
from typing import List, Sequence, Union

import pandas as pd

logger = logging.getLogger(__name__)

SEPARATOR = "-" * 71

_BETWEEN_RE = re.compile(r"\.between\(\s*(.*?)\s*\)")


def expression_variables(expr: str) -> List[str]:
    """Names referenced by a query expression, in order of appearance.

    Function and method names are not variables; ``@local`` references are
    ignored.
    """
    class VarExtractor(ast.NodeVisitor):
        def __init__(self):
            self.vars = []
            self.funcs = set()

        def visit_Name(self, node):
            if node.id not in self.vars:
                self.vars.append(node.id)

        def visit_Call(self, node):
            if isinstance(node.func, ast.Name):
                self.funcs.add(node.func.id)
            else:
                self.visit(node.func)
            for arg in node.args:
                self.visit(arg)
            for kw in node.keywords:
                self.visit(kw.value)

    text = re.sub(r"@\w+", "0", expr)
    text = re.sub(r"`([^`]*)`", lambda m: re.sub(r"\W", "_", m.group(1)), text)
    # pandas query spells boolean operators as & | and "and"/"or"/"not"; both parse
    tree = ast.parse(text, mode="eval")
    extractor = VarExtractor()
    extractor.visit(tree)
    return [v for v in extractor.vars if v not in extractor.funcs and v not in ("True", "False")]


def display_expression(expr: str) -> str:
    """``x.between(a, b)`` is shown as ``x [a, b]``."""
    return _BETWEEN_RE.sub(r" [\1]", expr)


def data_check(
        df: pd.DataFrame,
        checks: Union[str, Sequence[str]],
        id_cols: Sequence[str] = ("id",),
        html: bool = False,
        echo: bool = True,
) -> pd.DataFrame:
    """Run data checks and list the records satisfying each expression.

    Returns a DataFrame with one row per check (``check``, ``n``). With
    ``html=True`` the listings are rendered as HTML tables inside a Quarto
    tabset, stored in ``attrs["html"]`` (and printed when ``echo``); otherwise
    each listing is printed as plain text under a separator.
    """
    if isinstance(checks, str):
        checks = [checks]
    id_cols = [c for c in id_cols if c in df.columns]

    summary = []
    tabs = []
    for expr in checks:
        label = display_expression(expr)
        variables = [v for v in expression_variables(expr) if v in df.columns and v not in id_cols]
        hits = df.query(expr, engine="python")[id_cols + variables]
        n = len(hits)
        logger.debug("check %r: %d records", expr, n)

        if html:
            body = "n=0" if n == 0 else hits.to_html(index=False)
            tabs.append((label, n, body))
        elif echo:
            lines = [SEPARATOR, f"{label}    n={n}"]
            if n > 0:
                lines.append(SEPARATOR)
                lines.append(hits.to_string(index=False))
            print("\n".join(lines))
        summary.append({"check": label, "n": n})

    out = pd.DataFrame(summary, columns=["check", "n"])
    if html:
        out.attrs["html"] = quarto_tabset(tabs)
        if echo:
            print(out.attrs["html"])
    return out


def quarto_tabset(tabs) -> str:
    """Quarto panel-tabset with an initial blank tab and one tab per (label, n, body)."""
    parts = ["::: {.panel-tabset}", "", "## ", ""]
    for label, n, body in tabs:
        parts.append(f"## {html_lib.escape(label)}")
        parts.append("")
        parts.append(f"<p><em>{html_lib.escape(label)}   n={n}</em></p>" if n else "")
        parts.append(body)
        parts.append("")
    parts.append(":::")
    return "\n".join(parts) + "\n"
