""" Unit test for shape.py """

import pytest
import numpy as np
from scipy.optimize import OptimizeResult

from CodaMomentMag import shape as shape_module
from CodaMomentMag.config import ShapeConfig
from CodaMomentMag.errors import FitDivergence, InsufficientCoverage, InsufficientSamples
from CodaMomentMag.models import Measurement
from CodaMomentMag.shape import fit_band_shape, fit_shape, model_log10_amplitude, shape_residuals
from CodaMomentMag.synthetics import synthetic_measurement

from conftest import BAND, make_fit


@pytest.fixture
def clean_measurement():
    "Fixture providing a noise-free envelope with known decay parameters."
    return synthetic_measurement("EV1", "STA1", BAND, 50.0, log10_a0=3.0, nu=1.2, gamma=0.03)


def test_fit_shape_recovers_parameters(clean_measurement):
    """ Test fit_shape recovers nu, gamma and A0 from a noise-free envelope."""
    fit = fit_shape(clean_measurement, ShapeConfig())

    assert fit.nu == pytest.approx(1.2, abs=1e-6)
    assert fit.gamma == pytest.approx(0.03, abs=1e-6)
    assert fit.log10_a0 == pytest.approx(3.0, abs=1e-6)
    assert fit.rms == pytest.approx(0.0, abs=1e-8)
    assert fit.n_used == len(clean_measurement)
    assert fit.key == clean_measurement.key
    assert fit.distance_km == 50.0


def test_fit_shape_linear_residuals(clean_measurement):
    """ Test the linear amplitude residual space gives the same answer on clean data."""
    fit = fit_shape(clean_measurement, ShapeConfig(RESIDUAL_SPACE="linear"))

    assert fit.nu == pytest.approx(1.2, abs=1e-5)
    assert fit.gamma == pytest.approx(0.03, abs=1e-5)


def test_fit_shape_rejects_outliers():
    """ Test outlier samples are down-weighted and the clean parameters recovered."""
    times = np.linspace(5.0, 80.0, 60)
    log_amp = model_log10_amplitude(times, 2.5, 0.8, 0.025)
    log_amp[[10, 30, 50]] += 1.0
    measurement = Measurement("EV1", "STA1", BAND, "Z", times, 10.0 ** log_amp, 40.0)

    fit = fit_shape(measurement, ShapeConfig())

    assert fit.n_used == 57
    assert fit.nu == pytest.approx(0.8, abs=1e-4)
    assert fit.gamma == pytest.approx(0.025, abs=1e-5)


@pytest.fixture
def single_outlier():
    "Fixture providing a 40 sample envelope with one sample raised by 2 in log10."
    times = np.linspace(5.0, 80.0, 40)
    log_amp = model_log10_amplitude(times, 2.0, 1.0, 0.02)
    log_amp[20] += 2.0
    return Measurement("EV1", "STA1", BAND, "Z", times, 10.0 ** log_amp, 40.0)


def test_fit_shape_without_reweighting_reports_all_samples(single_outlier):
    """ Test with no reweighting pass the outlier stays in n_used and in the RMS."""
    fit = fit_shape(single_outlier, ShapeConfig(MAX_REWEIGHT_PASSES=0))

    log_amp = np.log10(single_outlier.amplitudes)
    residuals = log_amp - model_log10_amplitude(single_outlier.times, fit.log10_a0, fit.nu, fit.gamma)
    assert fit.n_used == 40
    assert fit.rms == pytest.approx(np.sqrt(np.mean(residuals ** 2)))
    assert abs(fit.nu - 1.0) > 0.05


def test_fit_shape_one_reweighting_pass(single_outlier):
    """ Test one reweighting pass refits without the outlier it flagged."""
    fit = fit_shape(single_outlier, ShapeConfig(MAX_REWEIGHT_PASSES=1))

    assert fit.n_used <= 39
    assert fit.nu == pytest.approx(1.0, abs=1e-6)
    assert fit.gamma == pytest.approx(0.02, abs=1e-6)
    assert fit.rms == pytest.approx(0.0, abs=1e-8)


def test_fit_shape_no_convergence_diverges(clean_measurement, monkeypatch):
    """ Test an optimizer stopping at MAX_ITERATIONS is reported as FitDivergence."""
    def stopped(fun, x0, **kwargs):
        return OptimizeResult(x=np.asarray(x0), success=False, nfev=kwargs["max_nfev"],
                              message="The maximum number of function evaluations is exceeded.")

    monkeypatch.setattr(shape_module, "least_squares", stopped)

    with pytest.raises(FitDivergence) as info:
        fit_shape(clean_measurement, ShapeConfig(MAX_ITERATIONS=1))
    assert info.value.group == clean_measurement.key
    assert "no convergence after 1 evaluations" in info.value.message


def test_fit_shape_drops_unusable_samples():
    """ Test non-positive and non-finite samples are ignored."""
    times = np.linspace(5.0, 60.0, 30)
    amps = 10.0 ** model_log10_amplitude(times, 2.0, 1.0, 0.02)
    amps[3] = 0.0
    amps[7] = np.nan
    measurement = Measurement("EV1", "STA1", BAND, "Z", times, amps, 10.0)

    fit = fit_shape(measurement, ShapeConfig())

    assert fit.n_samples == 30
    assert fit.n_used == 28
    assert fit.nu == pytest.approx(1.0, abs=1e-6)


def test_fit_shape_insufficient_samples():
    """ Test fewer than MIN_SAMPLES usable samples raises InsufficientSamples."""
    measurement = synthetic_measurement("EV1", "STA1", BAND, 50.0, 3.0, n_samples=4)

    with pytest.raises(InsufficientSamples) as info:
        fit_shape(measurement, ShapeConfig())
    assert info.value.group == measurement.key


def test_fit_shape_flat_envelope_diverges():
    """ Test a constant envelope is reported as FitDivergence."""
    times = np.linspace(5.0, 60.0, 20)
    measurement = Measurement("EV1", "STA1", BAND, "Z", times, np.full(20, 7.5), 30.0)

    with pytest.raises(FitDivergence):
        fit_shape(measurement, ShapeConfig())


def test_shape_residuals_zero_for_exact_fit(clean_measurement):
    """ Test residuals of an exact fit are numerically zero."""
    fit = fit_shape(clean_measurement, ShapeConfig())
    residuals = shape_residuals(clean_measurement, fit)

    assert len(residuals) == len(clean_measurement)
    assert np.max(np.abs(residuals)) < 1e-8


def test_fit_band_shape_constant():
    """ Test the constant band shape uses the population median."""
    fits = [make_fit(f"EV{i}", "STA1", 10.0 + i, 2.0, nu=nu, gamma=g)
            for i, (nu, g) in enumerate([(0.9, 0.01), (1.0, 0.02), (1.4, 0.05)])]

    shape = fit_band_shape(fits, BAND, ShapeConfig())

    assert shape.model == "constant"
    assert shape.n_fits == 3
    assert float(shape.nu(100.0)) == pytest.approx(1.0)
    assert float(shape.gamma(5.0)) == pytest.approx(0.02)


def test_fit_band_shape_hyperbolic():
    """ Test a hyperbolic distance trend of nu is fitted when enough fits exist."""
    distances = np.linspace(10.0, 250.0, 25)
    nus = 1.5 - 10.0 / (5.0 + distances)
    fits = [make_fit(f"EV{i}", "STA1", r, 2.0, nu=nu, gamma=0.02) for i, (r, nu) in enumerate(zip(distances, nus))]

    shape = fit_band_shape(fits, BAND, ShapeConfig(DISTANCE_MODEL="hyperbolic"))

    assert shape.model == "hyperbolic"
    assert shape.gamma.is_constant
    assert shape.nu(distances) == pytest.approx(nus, abs=1e-3)


def test_fit_band_shape_too_few_points_falls_back():
    """ Test the hyperbolic model falls back to constant below MIN_CURVE_POINTS."""
    fits = [make_fit(f"EV{i}", "STA1", 10.0 * (i + 1), 2.0, nu=1.0 + 0.1 * i) for i in range(5)]

    shape = fit_band_shape(fits, BAND, ShapeConfig(DISTANCE_MODEL="hyperbolic"))

    assert shape.model == "constant"


def test_fit_band_shape_empty():
    """ Test an empty population raises InsufficientCoverage."""
    with pytest.raises(InsufficientCoverage):
        fit_band_shape([], BAND, ShapeConfig())
