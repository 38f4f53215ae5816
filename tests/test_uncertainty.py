""" Unit test for uncertainty.py """

import pytest
import numpy as np
from scipy import stats

from CodaMomentMag.config import UncertaintyConfig
from CodaMomentMag.uncertainty import (
    bootstrap_mean_std,
    build_uncertainty_report,
    confidence_interval,
    interval_from_error,
    make_rng,
    standard_error,
    summarize_residuals,
    weighted_mean,
)

from conftest import BAND


@pytest.fixture
def bootstrap_config():
    "Fixture providing a seeded bootstrap configuration."
    return UncertaintyConfig(METHOD="bootstrap", N_RESAMPLES=400, SEED=7)


def test_analytic_interval():
    """ Test the analytic interval is the Student-t interval of the mean."""
    interval = confidence_interval([1.0, 2.0, 3.0], UncertaintyConfig())

    half = stats.t.ppf(0.975, 2) * 1.0 / np.sqrt(3)
    assert interval.center == pytest.approx(2.0)
    assert interval.lower == pytest.approx(2.0 - half)
    assert interval.upper == pytest.approx(2.0 + half)
    assert interval.n == 3
    assert interval.method == "analytic"


def test_interval_single_value():
    """ Test one value gives NaN bounds but still reports its count."""
    interval = confidence_interval([4.2, np.nan], UncertaintyConfig())

    assert interval.center == 4.2
    assert np.isnan(interval.lower) and np.isnan(interval.upper)
    assert interval.n == 1


def test_bootstrap_interval_deterministic(bootstrap_config):
    """ Test bootstrap intervals repeat for the same key and contain the mean."""
    values = np.random.default_rng(0).normal(3.0, 0.2, size=30)

    first = confidence_interval(values, bootstrap_config, make_rng(bootstrap_config, ("EV1", BAND)))
    second = confidence_interval(values, bootstrap_config, make_rng(bootstrap_config, ("EV1", BAND)))

    assert first == second
    assert first.lower < first.center < first.upper
    assert first.method == "bootstrap"


def test_bootstrap_standard_error_close_to_analytic(bootstrap_config):
    """ Test the bootstrap standard error approximates s / sqrt(n)."""
    values = np.random.default_rng(1).normal(0.0, 1.0, size=200)

    analytic = standard_error(values, UncertaintyConfig())
    bootstrap = standard_error(values, bootstrap_config)
    mean, spread = bootstrap_mean_std(values, bootstrap_config)

    assert bootstrap == pytest.approx(analytic, rel=0.2)
    assert spread == bootstrap
    assert mean == pytest.approx(np.mean(values))


def test_standard_error_needs_two_values():
    """ Test the standard error is undefined for a single value."""
    assert np.isnan(standard_error([1.0], UncertaintyConfig()))


def test_interval_from_error():
    """ Test the normal interval around a propagated standard error."""
    interval = interval_from_error(3.0, 0.1, 12, UncertaintyConfig(CONFIDENCE_LEVEL=0.95))

    assert interval.lower == pytest.approx(3.0 - 1.959964 * 0.1, abs=1e-6)
    assert interval.n == 12
    assert np.isnan(interval_from_error(3.0, np.nan, 1, UncertaintyConfig()).lower)


def test_summarize_residuals():
    """ Test residual statistics of a stage."""
    summary = summarize_residuals("site", [-0.2, 0.0, 0.2, np.inf], UncertaintyConfig())

    assert summary.n == 3
    assert summary.mean == pytest.approx(0.0, abs=1e-12)
    assert summary.std == pytest.approx(0.2)
    assert summary.rms == pytest.approx(np.sqrt(0.08 / 3))
    assert summary.mad == pytest.approx(0.2)


def test_build_uncertainty_report():
    """ Test the report keeps the stage and band nesting."""
    report = build_uncertainty_report({"path": {BAND: [0.1, -0.1]}, "site": {BAND: []}}, UncertaintyConfig())

    assert report["path"][BAND].n == 2
    assert report["site"][BAND].n == 0


def test_weighted_mean():
    """ Test inverse-variance weighting and its equal-weight fallback."""
    mean, se, used = weighted_mean([1.0, 2.0], [1.0, 1.0])
    assert (mean, used) == (1.5, True)
    assert se == pytest.approx(np.sqrt(0.5))

    mean, se, used = weighted_mean([1.0, 2.0], [1.0, 0.0])
    assert (mean, used) == (1.5, False)
