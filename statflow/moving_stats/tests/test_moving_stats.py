# test_moving_stats.py
#
# End-to-end behaviour of moving_stats(): window contents, strata handling,
# smoothing, overlays, reshaping and configuration errors.
# Each test documents WHAT is checked and WHY it matters.

import warnings

import numpy as np
import pandas as pd
import pytest
from lifelines import KaplanMeierFitter

from ..exceptions import InsufficientDataWarning, InsufficientWindowError, MovingStatsConfigError
from ..moving_stats import moving_stats, parse_formula


def _binary_frame(n=200, seed=0):
    rng = np.random.default_rng(seed)
    x = rng.uniform(20, 80, n)
    p = 1 / (1 + np.exp(-(x - 50) / 10))
    return pd.DataFrame({"age": x, "dead": (rng.uniform(size=n) < p).astype(int)})


def _continuous_frame(n=300, seed=1):
    rng = np.random.default_rng(seed)
    rows = []
    for sex, shift in (("female", 0.0), ("male", 0.3)):
        age = rng.uniform(20, 80, n)
        crea = 0.7 + shift + 0.01 * (age - 20) + rng.normal(0, 0.2, n)
        rows.append(pd.DataFrame({"age": age, "sex": sex, "crea": crea}))
    return pd.concat(rows, ignore_index=True)


def test_parse_formula():
    assert parse_formula("y ~ x") == (["y"], "x", [])
    assert parse_formula("crea ~ age + sex + race") == (["crea"], "age", ["sex", "race"])
    assert parse_formula("Surv(dt, ev) ~ age") == (["dt", "ev"], "age", [])
    with pytest.raises(MovingStatsConfigError):
        parse_formula("y x")


def test_binary_count_mode_window_proportions():
    """WHAT: each proportion equals the mean of exactly the ranks within +-15 of its target.
    WHY: core contract of count-mode windowing."""
    df = _binary_frame()
    res = moving_stats("dead ~ age", df, eps=15, msmooth="raw")
    assert list(res.columns) == ["age", "Moving Proportion", "N"]

    order = np.argsort(df["age"].to_numpy(), kind="mergesort")
    x = df["age"].to_numpy()[order]
    y = df["dead"].to_numpy()[order]
    n = len(x)
    assert len(res) == n - 18                    # targets 10..n-9
    for i, r in enumerate(range(10, n - 8)):
        lo, hi = max(r - 15, 1), min(r + 15, n)
        assert res["Moving Proportion"].iloc[i] == pytest.approx(y[lo - 1:hi].mean())
        assert res["age"].iloc[i] == pytest.approx(x[lo - 1:hi].mean())
        assert res["N"].iloc[i] == hi - lo + 1


def test_continuous_x_mode_two_strata():
    """WHAT: x-mode with xlim [30, 70] and xinc 5 gives 9 targets per stratum.
    WHY: statistics must come only from the stratum's rows within +-eps of the target."""
    df = _continuous_frame()
    res = moving_stats("crea ~ age + sex", df, space="x", eps=5, xlim=(30, 70), xinc=5, msmooth="raw")
    assert list(res.columns) == ["age", "Moving Mean", "Moving Median", "Moving Q1", "Moving Q3", "N", "sex"]
    for sex in ("female", "male"):
        sub = res[res["sex"] == sex]
        np.testing.assert_allclose(sub["age"], np.arange(30, 71, 5))
        rows = df[(df["sex"] == sex) & ((df["age"] - 40).abs() <= 5)]["crea"]
        at40 = sub[np.isclose(sub["age"], 40)].iloc[0]
        assert at40["Moving Mean"] == pytest.approx(rows.mean())
        assert at40["Moving Median"] == pytest.approx(rows.median())
        assert at40["Moving Q1"] == pytest.approx(rows.quantile(0.25))
        assert at40["N"] == len(rows)
    infon = res.attrs["infon"]
    assert list(infon.index) == ["female", "male"]
    assert list(infon["N"]) == [300, 300]


def test_survival_incidence_matches_kaplan_meier():
    """WHAT: Moving 5-year equals 1 - KM(5) computed on each window's members."""
    rng = np.random.default_rng(5)
    n = 150
    x = rng.uniform(0, 1, n)
    t = rng.exponential(8.0, n)
    c = rng.uniform(2, 15, n)
    df = pd.DataFrame({"x": x, "dt": np.minimum(t, c), "ev": (t <= c).astype(int)})
    res = moving_stats("Surv(dt, ev) ~ x", df, times=[5], msmooth="raw", eps=20, xinc=10)
    assert "Moving 5-year" in res.columns
    assert res.attrs["value_name"] == "incidence"

    order = np.argsort(x, kind="mergesort")
    dt, ev = df["dt"].to_numpy()[order], df["ev"].to_numpy()[order]
    for i, r in enumerate(range(10, n - 8, 10)):
        lo, hi = max(r - 20, 1), min(r + 20, n)
        kmf = KaplanMeierFitter().fit(dt[lo - 1:hi], ev[lo - 1:hi])
        expected = 1 - kmf.survival_function_at_times([5.0]).iloc[0]
        assert res["Moving 5-year"].iloc[i] == pytest.approx(expected)


def test_varyeps_stratum_of_40():
    """WHAT: n=40 with default eps=15 runs with eps=9, reported in the diagnostics."""
    rng = np.random.default_rng(6)
    df = pd.DataFrame({"x": rng.uniform(0, 1, 40), "y": rng.normal(size=40)})
    res = moving_stats("y ~ x", df, varyeps=True, msmooth="raw")
    infon = res.attrs["infon"]
    assert infon["eps"].iloc[0] == 9
    assert infon["Wmax"].iloc[0] == 19
    assert len(res) == 22


def test_stratum_of_9_dropped_and_10_kept():
    """WHAT: 9 observations -> warning and no rows; 10 observations -> retained."""
    rng = np.random.default_rng(7)
    df = pd.DataFrame({
        "x": rng.uniform(size=19),
        "y": rng.normal(size=19),
        "g": ["a"] * 9 + ["b"] * 10,
    })
    with pytest.warns(InsufficientDataWarning, match="'a'"):
        res = moving_stats("y ~ x + g", df, msmooth="raw")
    assert set(res["g"]) == {"b"}
    assert len(res) == 1
    assert res["N"].iloc[0] == 10
    infon = res.attrs["infon"]
    assert np.isnan(infon.loc["a", "N"])
    assert infon.loc["b", "N"] == 10


def test_melt_row_count_and_uniqueness():
    df = _continuous_frame(n=120)
    wide = moving_stats("crea ~ age + sex", df)
    long = moving_stats("crea ~ age + sex", df, melt=True)
    stat_cols = [c for c in wide.columns if c not in ("age", "sex", "N")]
    assert len(long) == len(wide) * len(stat_cols)
    assert list(long.columns) == ["age", "sex", "Type", "Statistic", "crea"]
    assert not long.duplicated(["age", "sex", "Type", "Statistic"]).any()
    assert set(long["Statistic"]) == {"Mean", "Median", "Q1", "Q3"}
    assert set(long["Type"]) == {"Moving"}


def test_idempotent():
    df = _continuous_frame(n=100)
    first = moving_stats("crea ~ age + sex", df, melt=True)
    second = moving_stats("crea ~ age + sex", df, melt=True)
    first.attrs, second.attrs = {}, {}
    pd.testing.assert_frame_equal(first, second)


def test_transform_round_trip():
    """WHAT: an affine trans/itrans pair reports the same x and statistics as no transform."""
    df = _continuous_frame(n=100)
    plain = moving_stats("crea ~ age + sex", df, msmooth="raw")
    trans = moving_stats("crea ~ age + sex", df, msmooth="raw",
                         trans=lambda v: 10 * v + 3, itrans=lambda v: (v - 3) / 10)
    np.testing.assert_allclose(trans["age"], plain["age"])
    np.testing.assert_allclose(trans["Moving Mean"], plain["Moving Mean"])


def test_smoothed_and_both():
    df = _continuous_frame(n=150)
    raw = moving_stats("crea ~ age", df, msmooth="raw")
    both = moving_stats("crea ~ age", df, msmooth="both")
    smoothed = moving_stats("crea ~ age", df)
    np.testing.assert_allclose(both["Moving Mean"], raw["Moving Mean"])
    np.testing.assert_allclose(both["Moving-smoothed Mean"], smoothed["Moving Mean"])
    assert both.attrs["statistics"]["Moving-smoothed Mean"] == ("Moving-smoothed", "Mean")
    # smoothing reduces window-to-window jitter
    assert np.abs(np.diff(smoothed["Moving Mean"])).sum() < np.abs(np.diff(raw["Moving Mean"])).sum()


def test_lowess_time_smoother():
    df = _continuous_frame(n=150)
    res = moving_stats("crea ~ age", df, tsmooth="lowess", span=0.5)
    assert res["Moving Mean"].notna().all()


def test_single_window_cannot_be_smoothed():
    df = _continuous_frame(n=100)
    with pytest.raises(InsufficientWindowError, match="varyeps"):
        moving_stats("crea ~ age", df, space="x", eps=5, xlim=(50, 50.5), xinc=1)


def test_overlays_added_as_columns():
    df = _continuous_frame(n=200)
    res = moving_stats("crea ~ age + sex", df, ols=True, qreg=True, loess=True, k=4, tau=[0.5])
    for col in ("OLS Mean", "QR Median", "Loess Mean"):
        assert res[col].notna().all()
    long = moving_stats("crea ~ age", df, ols=True, melt=True)
    assert set(long["Type"]) == {"Moving", "OLS"}


def test_lrm_and_hazard_overlays():
    df = _binary_frame(n=300)
    res = moving_stats("dead ~ age", df, lrm=True, k=4)
    assert res["LR Proportion"].between(0, 1).all()

    rng = np.random.default_rng(8)
    x = rng.uniform(0, 1, 300)
    t = rng.exponential(1.0 / np.exp(x))
    sdf = pd.DataFrame({"x": x, "dt": np.minimum(t, 2.0), "ev": (t <= 2.0).astype(int)})
    res = moving_stats("Surv(dt, ev) ~ x", sdf, times=[1], hazard=True, maxdim=3, tunits="month")
    assert "Hazard 1-month" in res.columns
    assert "Moving 1-month" in res.columns


def test_discrete_mode():
    rng = np.random.default_rng(9)
    df = pd.DataFrame({
        "grade": rng.choice(["low", "mid", "high"], 90),
        "y": rng.normal(size=90),
    })
    res = moving_stats("y ~ grade", df, discrete=True)
    assert list(res["grade"]) == ["high", "low", "mid"]
    assert "Mean" in res.columns and "Moving Mean" not in res.columns
    expected = df.groupby("grade")["y"].mean()
    np.testing.assert_allclose(res["Mean"], expected.loc[["high", "low", "mid"]])
    assert list(res.attrs["infon"].columns) == ["N"]


def test_custom_stat_function():
    df = _continuous_frame(n=100)
    res = moving_stats("crea ~ age", df, msmooth="raw",
                       stat=lambda y: {("Moving", "SD"): np.std(y, ddof=1), "N": len(y)})
    assert list(res.columns) == ["age", "Moving SD", "N"]


def test_missing_rows_dropped():
    df = _binary_frame(n=60)
    df.loc[:4, "age"] = np.nan
    res = moving_stats("dead ~ age", df, msmooth="raw")
    assert res.attrs["infon"]["N"].iloc[0] == 55


def test_parallel_matches_sequential():
    df = _continuous_frame(n=100)
    seq = moving_stats("crea ~ age + sex", df)
    par = moving_stats("crea ~ age + sex", df, n_jobs=2)
    seq.attrs, par.attrs = {}, {}
    pd.testing.assert_frame_equal(seq, par)


def test_print_plain_diagnostics(capsys):
    df = _continuous_frame(n=100)
    res = moving_stats("crea ~ age + sex", df, pr="plain")
    out = capsys.readouterr().out
    assert "Wmean" in out and "female" in out
    assert isinstance(res.attrs["info"], str)


@pytest.mark.parametrize(
    "formula, kwargs",
    [
        ("Surv(dt, ev) ~ x", {}),                               # survival without times
        ("y ~ x", {"times": [1]}),                              # times without survival
        ("Surv(dt, ev) ~ x", {"times": [1], "ols": True}),      # regression overlay on survival
        ("y ~ x", {"hazard": True}),                            # hazard without survival
        ("y ~ x", {"lrm": True}),                               # lrm on a continuous response
        ("y ~ x", {"varyeps": True, "space": "x", "eps": 1}),   # varyeps in x space
        ("y ~ x", {"space": "x"}),                              # x space without eps
        ("y ~ x", {"msmooth": "sometimes"}),
        ("y ~ x", {"pr": "html"}),
        ("y ~ x", {"ols": True, "k": 2}),
        ("y ~ x", {"qreg": True, "tau": [1.5]}),
        ("y ~ missing", {}),
    ],
)
def test_configuration_errors(formula, kwargs):
    rng = np.random.default_rng(10)
    df = pd.DataFrame({
        "x": rng.uniform(size=50),
        "y": rng.normal(size=50),
        "dt": rng.exponential(size=50),
        "ev": rng.integers(0, 2, 50),
    })
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        with pytest.raises(MovingStatsConfigError):
            moving_stats(formula, df, **kwargs)


def test_discrete_transform_round_trip():
    """WHAT: numeric discrete levels go through trans and come back through itrans.
    WHY: the reported levels must not depend on the transform."""
    rng = np.random.default_rng(11)
    df = pd.DataFrame({"dose": rng.choice([1, 2, 4], 90), "y": rng.normal(size=90)})
    plain = moving_stats("y ~ dose", df, discrete=True)
    logged = moving_stats("y ~ dose", df, discrete=True, trans=np.log, itrans=np.exp)
    np.testing.assert_allclose(plain["dose"].astype(float), [1, 2, 4])
    np.testing.assert_allclose(logged["dose"].astype(float), [1, 2, 4])
    np.testing.assert_allclose(logged["Mean"], plain["Mean"])


def test_melt_when_every_stratum_is_skipped():
    rng = np.random.default_rng(12)
    df = pd.DataFrame({"x": rng.uniform(size=9), "y": rng.normal(size=9)})
    with pytest.warns(InsufficientDataWarning):
        res = moving_stats("y ~ x", df, melt=True)
    assert len(res) == 0
    assert list(res.columns) == ["x", "Type", "Statistic", "y"]
    assert res.attrs["infon"]["N"].isna().all()


def test_both_with_custom_family():
    """WHAT: a custom family F keeps its raw column and gains an F-smoothed copy."""
    df = _continuous_frame(n=100)
    res = moving_stats("crea ~ age", df, msmooth="both",
                       stat=lambda y: {("Trimmed", "Mean"): np.mean(np.sort(y)[1:-1]), "N": len(y)})
    assert list(res.columns) == ["age", "Trimmed Mean", "Trimmed-smoothed Mean", "N"]
    assert res.attrs["statistics"]["Trimmed-smoothed Mean"] == ("Trimmed-smoothed", "Mean")
    long = moving_stats("crea ~ age", df, msmooth="both", melt=True,
                        stat=lambda y: {("Trimmed", "Mean"): np.mean(y), "N": len(y)})
    assert set(long["Type"]) == {"Trimmed", "Trimmed-smoothed"}


def test_unobserved_categorical_stratum_is_reported():
    """WHAT: a category with no rows is warned about and keeps a NaN diagnostics row."""
    df = _continuous_frame(n=60)
    df["sex"] = pd.Categorical(df["sex"], categories=["female", "male", "other"])
    with pytest.warns(InsufficientDataWarning, match="'other'"):
        res = moving_stats("crea ~ age + sex", df, msmooth="raw")
    assert set(res["sex"]) == {"female", "male"}
    infon = res.attrs["infon"]
    assert list(infon.index) == ["female", "male", "other"]
    assert np.isnan(infon.loc["other", "N"])


def test_unobserved_combination_of_two_stratifiers():
    df = _continuous_frame(n=60)
    df["site"] = np.where(df["sex"] == "female", "north", "south")
    with pytest.warns(InsufficientDataWarning):
        res = moving_stats("crea ~ age + sex + site", df, msmooth="raw")
    assert list(res.attrs["infon"].index) == ["female::north", "female::south", "male::north", "male::south"]
    assert len(res.drop_duplicates(["sex", "site"])) == 2
