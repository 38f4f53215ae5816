""" Unit test for path.py """

import pytest
import numpy as np

from CodaMomentMag.config import PathConfig
from CodaMomentMag.errors import InsufficientCoverage
from CodaMomentMag.path import apply_path, estimate_event_levels, path_residuals, solve_path
from CodaMomentMag.synthetics import full_coverage_distances

from conftest import BAND, make_fit


@pytest.fixture
def trend_fits():
    "Fixture providing fits of one station following 2.0 - 1.5 * log10(r)."
    distances = [15.0, 30.0, 60.0, 90.0, 150.0, 220.0]
    return [make_fit(f"EV{i}", "STA1", r, 2.0 - 1.5 * np.log10(r)) for i, r in enumerate(distances)]


def test_solve_path_recovers_trend(trend_fits):
    """ Test OLS recovers the injected slope and intercept."""
    correction = solve_path(trend_fits, "STA1", BAND, PathConfig())

    assert correction.slope == pytest.approx(-1.5, abs=1e-9)
    assert correction.intercept == pytest.approx(2.0, abs=1e-9)
    assert correction.residual_std == pytest.approx(0.0, abs=1e-9)
    assert correction.n_events == 6
    assert correction.n_measurements == 6
    assert correction.method == "ols"


def test_solve_path_reference_distance(trend_fits):
    """ Test the intercept refers to the configured reference distance."""
    correction = solve_path(trend_fits, "STA1", BAND, PathConfig(REFERENCE_DISTANCE_KM=10.0))

    assert correction.slope == pytest.approx(-1.5, abs=1e-9)
    assert correction.intercept == pytest.approx(2.0 - 1.5, abs=1e-9)
    assert float(correction.correction(10.0)) == pytest.approx(0.0)


def test_solve_path_ignores_other_groups(trend_fits):
    """ Test fits of other stations and bands are not used."""
    others = [make_fit("EVX", "STA2", 40.0, 9.0), make_fit("EVY", "STA2", 80.0, -9.0)]

    correction = solve_path(trend_fits + others, "STA1", BAND, PathConfig())

    assert correction.n_measurements == 6
    assert correction.slope == pytest.approx(-1.5, abs=1e-9)


def test_theil_sen_resists_outlier(trend_fits):
    """ Test Theil-Sen recovers the trend despite one outlier event."""
    fits = trend_fits + [make_fit("EVOUT", "STA1", 45.0, 2.0 - 1.5 * np.log10(45.0) + 1.0)]

    correction = solve_path(fits, "STA1", BAND, PathConfig(METHOD="theil_sen"))

    assert correction.slope == pytest.approx(-1.5, abs=1e-9)
    assert correction.intercept == pytest.approx(2.0, abs=1e-9)


def test_irls_reduces_outlier_bias(trend_fits):
    """ Test the Huber IRLS slope is closer to the truth than OLS with an outlier."""
    fits = trend_fits + [make_fit("EVOUT", "STA1", 200.0, 2.0 - 1.5 * np.log10(200.0) + 1.0)]

    ols = solve_path(fits, "STA1", BAND, PathConfig(METHOD="ols"))
    irls = solve_path(fits, "STA1", BAND, PathConfig(METHOD="irls"))

    assert abs(irls.slope + 1.5) < abs(ols.slope + 1.5)


def test_solve_path_depth_term():
    """ Test the optional depth coefficient is recovered."""
    rows = [(20.0, 3.0), (35.0, 12.0), (50.0, 7.0), (80.0, 20.0), (120.0, 5.0), (160.0, 15.0)]
    fits = [
        make_fit(f"EV{i}", "STA1", r, 1.0 - 1.2 * np.log10(r) + 0.01 * (z - 10.0), depth_km=z)
        for i, (r, z) in enumerate(rows)
    ]

    correction = solve_path(fits, "STA1", BAND, PathConfig(USE_DEPTH=True, REFERENCE_DEPTH_KM=10.0))

    assert correction.slope == pytest.approx(-1.2, abs=1e-9)
    assert correction.depth_coefficient == pytest.approx(0.01, abs=1e-9)
    assert correction.intercept == pytest.approx(1.0, abs=1e-9)
    assert max(abs(r) for r in path_residuals(fits, correction)) < 1e-9


def test_solve_path_insufficient_events(trend_fits):
    """ Test fewer than MIN_EVENTS events raises InsufficientCoverage for the group."""
    with pytest.raises(InsufficientCoverage) as info:
        solve_path(trend_fits[:2], "STA1", BAND, PathConfig(MIN_EVENTS=3))
    assert info.value.group == ("STA1", BAND)


def test_solve_path_no_distance_spread():
    """ Test events at a single distance raise InsufficientCoverage."""
    fits = [make_fit(f"EV{i}", "STA1", 50.0, 2.0 + 0.1 * i) for i in range(4)]

    with pytest.raises(InsufficientCoverage):
        solve_path(fits, "STA1", BAND, PathConfig())


def test_apply_path(trend_fits):
    """ Test apply_path removes only the distance trend, keeping the intercept."""
    correction = solve_path(trend_fits, "STA1", BAND, PathConfig())

    for fit in trend_fits:
        assert apply_path(fit, correction) == pytest.approx(2.0, abs=1e-9)


@pytest.fixture
def sized_fits():
    "Fixture providing a 5 x 4 network whose event sizes grow with distance."
    levels = {"EV1": 1.5, "EV2": 1.8, "EV3": 2.0, "EV4": 2.3, "EV5": 2.6}
    intercepts = {"STA1": 0.3, "STA2": -0.1, "STA3": -0.25, "STA4": 0.05}
    distances = full_coverage_distances(sorted(levels), sorted(intercepts))
    fits = [
        make_fit(e, s, r, levels[e] + intercepts[s] - 1.0 * np.log10(r))
        for (e, s), r in sorted(distances.items())
    ]
    return fits, levels


def test_estimate_event_levels_recovers_differences(sized_fits):
    """ Test event levels are recovered up to a common constant."""
    fits, levels = sized_fits

    estimated = estimate_event_levels(fits, BAND, PathConfig())

    assert sorted(estimated) == sorted(levels)
    for event_id, level in levels.items():
        assert estimated[event_id] - estimated["EV1"] == pytest.approx(level - levels["EV1"], abs=1e-9)


def test_estimate_event_levels_irls_and_lsqr_agree(sized_fits):
    """ Test the iterative sparse solver and the robust method give the dense answer on clean data."""
    fits, levels = sized_fits

    for config in (PathConfig(DENSE_LIMIT=1), PathConfig(METHOD="irls")):
        estimated = estimate_event_levels(fits, BAND, config)
        for event_id, level in levels.items():
            assert estimated[event_id] - estimated["EV1"] == pytest.approx(level - levels["EV1"], abs=1e-6)


def test_estimate_event_levels_skips_single_station_events(sized_fits):
    """ Test events recorded by one covered station, or by uncovered stations only, get no level."""
    fits, _ = sized_fits
    fits = fits + [
        make_fit("EV6", "STA1", 300.0, 1.0),
        make_fit("EV7", "STA9", 40.0, 1.0),
        make_fit("EV7", "STA8", 80.0, 1.0),
    ]

    estimated = estimate_event_levels(fits, BAND, PathConfig())

    assert "EV6" not in estimated
    assert "EV7" not in estimated
    assert estimate_event_levels([], BAND, PathConfig()) == {}


def test_solve_path_removes_event_levels(sized_fits):
    """ Test source sizes growing with distance bias the raw slope but not the level-free one."""
    fits, _ = sized_fits
    config = PathConfig()
    levels = estimate_event_levels(fits, BAND, config)

    for station in ("STA1", "STA2", "STA3", "STA4"):
        raw = solve_path(fits, station, BAND, config)
        corrected = solve_path(fits, station, BAND, config, event_levels=levels)

        assert abs(raw.slope + 1.0) > 0.1
        assert corrected.slope == pytest.approx(-1.0, abs=1e-9)
        assert corrected.residual_std == pytest.approx(0.0, abs=1e-9)
        station_fits = [f for f in fits if f.station == station]
        assert max(abs(r) for r in path_residuals(station_fits, corrected, levels)) < 1e-9


def test_solve_path_drops_events_without_level(sized_fits):
    """ Test fits of events without a level are left out of the regression."""
    fits, _ = sized_fits
    levels = estimate_event_levels(fits, BAND, PathConfig())
    fits = fits + [make_fit("EV6", "STA1", 300.0, 9.0)]

    correction = solve_path(fits, "STA1", BAND, PathConfig(), event_levels=levels)

    assert correction.n_events == 5
    assert correction.slope == pytest.approx(-1.0, abs=1e-9)

    with pytest.raises(InsufficientCoverage) as info:
        solve_path(fits, "STA1", BAND, PathConfig(), event_levels={"EV1": 0.0, "EV2": 0.0})
    assert "shared with other stations" in info.value.message
