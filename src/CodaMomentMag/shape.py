#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Coda shape fitting engine.

Fits the coda decay model

    A(t) = A0 * t^(-nu) * exp(-gamma * t)

to every envelope measurement independently. Each fit is seeded by a linear
regression of log10 amplitude, refined with a Levenberg-Marquardt least squares
solver, and re-run after down-weighting outlier samples (iteratively
reweighted least squares) for a bounded number of passes.

The band level shape normalization (nu and gamma as functions of distance)
is derived from the population of per-measurement fits.

References:
- Mayeda, K., Hofstetter, A., O'Boyle, J. L., & Walter, W. R. (2003). Stable and
  transportable regional magnitudes based on coda-derived moment-rate spectra.
  Bulletin of the Seismological Society of America, 93(1), 224-239.
"""

import logging
import warnings
from typing import List, Sequence, Tuple

import numpy as np
from scipy.optimize import OptimizeWarning, curve_fit, least_squares

from .config import ShapeConfig
from .errors import FitDivergence, InsufficientCoverage, InsufficientSamples
from .models import LOG10_E, BandShape, DistanceCurve, FrequencyBand, Measurement, ShapeFit

logger = logging.getLogger("coda_mw_calc")

# Residual scale below which a sample is never treated as an outlier (log10 units)
MIN_ROBUST_SIGMA = 1e-6


def model_log10_amplitude(times, log10_a0: float, nu: float, gamma: float) -> np.ndarray:
    """
    Evaluate the decay model in log10 amplitude.

    Args:
        times: Time(s) since origin in seconds, must be positive.
        log10_a0 (float): Log10 of the amplitude scale A0.
        nu (float): Geometric spreading exponent.
        gamma (float): Decay rate in 1/s.

    Returns:
        np.ndarray: log10 A(t).
    """
    t = np.asarray(times, dtype=float)
    return log10_a0 - nu * np.log10(t) - gamma * t * LOG10_E


def _design_matrix(times: np.ndarray) -> np.ndarray:
    return np.column_stack([np.ones_like(times), -np.log10(times), -times * LOG10_E])


def _usable_samples(measurement: Measurement) -> Tuple[np.ndarray, np.ndarray]:
    t, a = measurement.times, measurement.amplitudes
    usable = np.isfinite(t) & np.isfinite(a) & (t > 0) & (a > 0)
    return t[usable], a[usable]


def _seed_parameters(design: np.ndarray, log_amps: np.ndarray, weights: np.ndarray) -> np.ndarray:
    """ Weighted linear regression of log10 amplitude on the model terms. """
    root_w = np.sqrt(weights)
    params, *_ = np.linalg.lstsq(design * root_w[:, None], log_amps * root_w, rcond=None)
    return params


def _refine_parameters(
    design: np.ndarray,
    log_amps: np.ndarray,
    amps: np.ndarray,
    weights: np.ndarray,
    start: np.ndarray,
    config: ShapeConfig,
    key,
    ) -> Tuple[np.ndarray, int]:
    """
    Refine the model parameters with Levenberg-Marquardt.

    Returns:
        Tuple[np.ndarray, int]: Fitted parameters and the number of function evaluations.

    Raises:
        FitDivergence: If the solver stops without converging.
    """
    root_w = np.sqrt(weights)
    if config.RESIDUAL_SPACE == "linear":
        scale = float(np.median(amps))

        def residuals(p):
            return root_w * (10.0 ** (design @ p) - amps) / scale
    else:
        def residuals(p):
            return root_w * (design @ p - log_amps)

    try:
        with np.errstate(over="ignore", invalid="ignore"):
            result = least_squares(
                residuals, start, method="lm",
                max_nfev=config.MAX_ITERATIONS, xtol=1e-12, ftol=1e-12, gtol=1e-12,
            )
    except (ValueError, np.linalg.LinAlgError) as e:
        raise FitDivergence(f"Measurement {key}: optimizer failed: {e}", group=key) from e

    if not result.success:
        raise FitDivergence(
            f"Measurement {key}: no convergence after {result.nfev} evaluations ({result.message})", group=key
        )
    if not np.all(np.isfinite(result.x)):
        raise FitDivergence(f"Measurement {key}: optimizer returned non-finite parameters", group=key)
    return result.x, int(result.nfev)


def _outlier_weights(residuals: np.ndarray, config: ShapeConfig) -> np.ndarray:
    """ Down-weight samples beyond OUTLIER_SIGMA robust standard deviations. """
    center = np.median(residuals)
    sigma = max(1.4826 * np.median(np.abs(residuals - center)), MIN_ROBUST_SIGMA)
    outliers = np.abs(residuals - center) > config.OUTLIER_SIGMA * sigma
    return np.where(outliers, config.OUTLIER_WEIGHT, 1.0)


def fit_shape(measurement: Measurement, config: ShapeConfig) -> ShapeFit:
    """
    Fit the coda decay model to one envelope measurement.

    Args:
        measurement (Measurement): Envelope samples (time since origin, linear amplitude).
        config (ShapeConfig): Shape fitting parameters.

    Returns:
        ShapeFit: Fitted log10 A0, nu, gamma and the log10 RMS misfit.

    Raises:
        InsufficientSamples: If fewer than MIN_SAMPLES usable samples remain.
        FitDivergence: If the envelope is degenerate or the optimizer does not converge.
    """
    key = measurement.key
    times, amps = _usable_samples(measurement)
    if len(times) < config.MIN_SAMPLES:
        raise InsufficientSamples(
            f"Measurement {key}: {len(times)} usable samples, at least {config.MIN_SAMPLES} required", group=key
        )

    log_amps = np.log10(amps)
    if np.var(log_amps) < config.MIN_LOG_VARIANCE:
        raise FitDivergence(f"Measurement {key}: near-zero amplitude variance, decay is unconstrained", group=key)

    design = _design_matrix(times)
    if np.linalg.matrix_rank(design) < design.shape[1]:
        raise FitDivergence(f"Measurement {key}: sample times do not constrain all model terms", group=key)

    weights = np.ones_like(times)
    params = _seed_parameters(design, log_amps, weights)
    evaluations = 0
    # weights always match the last refinement
    for reweight in range(config.MAX_REWEIGHT_PASSES + 1):
        params, nfev = _refine_parameters(design, log_amps, amps, weights, params, config, key)
        evaluations += nfev
        if reweight == config.MAX_REWEIGHT_PASSES:
            break
        new_weights = _outlier_weights(log_amps - design @ params, config)
        if np.array_equal(new_weights, weights):
            break
        if np.count_nonzero(new_weights) < config.MIN_SAMPLES:
            logger.warning(f"Measurement {key}: outlier rejection would leave too few samples, keeping previous weights")
            break
        weights = new_weights

    used = weights > 0
    fit_residuals = log_amps[used] - design[used] @ params
    rms = float(np.sqrt(np.mean(fit_residuals ** 2)))
    return ShapeFit(
        key=key,
        log10_a0=float(params[0]),
        nu=float(params[1]),
        gamma=float(params[2]),
        rms=rms,
        n_samples=len(measurement),
        n_used=int(np.count_nonzero(used)),
        iterations=evaluations,
        distance_km=measurement.distance_km,
        depth_km=measurement.depth_km,
    )


def shape_residuals(measurement: Measurement, fit: ShapeFit) -> np.ndarray:
    """ Log10 residuals of every usable sample against its fitted model. """
    times, amps = _usable_samples(measurement)
    return np.log10(amps) - model_log10_amplitude(times, fit.log10_a0, fit.nu, fit.gamma)


def _hyperbolic(distance, p0, p1, p2):
    return p0 - p1 / (p2 + distance)


def _fit_distance_curve(distances: np.ndarray, values: np.ndarray, min_points: int) -> Tuple[DistanceCurve, str]:
    """
    Fit p0 - p1 / (p2 + r) to a shape parameter, falling back to the median.

    Returns:
        Tuple[DistanceCurve, str]: Curve and the model name actually used.
    """
    constant = DistanceCurve(float(np.median(values)))
    if len(values) < min_points or np.ptp(distances) == 0 or np.ptp(values) < 1e-12:
        return constant, "constant"
    # linear seed of p0 and p1 with p2 fixed at the median distance
    p2_seed = float(np.median(distances))
    seed_design = np.column_stack([np.ones_like(distances), -1.0 / (p2_seed + distances)])
    (p0_seed, p1_seed), *_ = np.linalg.lstsq(seed_design, values, rcond=None)
    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", OptimizeWarning)
            popt, _ = curve_fit(
                _hyperbolic, distances, values,
                p0=[float(p0_seed), float(p1_seed), p2_seed],
                bounds=([-np.inf, -np.inf, 1e-3], [np.inf, np.inf, np.inf]),
                maxfev=5000,
            )
    except (RuntimeError, ValueError) as e:
        logger.warning(f"Distance curve fit failed, using the population median: {e}")
        return constant, "constant"
    if not np.all(np.isfinite(popt)):
        return constant, "constant"
    return DistanceCurve(float(popt[0]), float(popt[1]), float(popt[2])), "hyperbolic"


def fit_band_shape(fits: Sequence[ShapeFit], band: FrequencyBand, config: ShapeConfig) -> BandShape:
    """
    Build the band level shape normalization from a population of fits.

    With DISTANCE_MODEL = "constant" the band uses the median nu and gamma.
    With "hyperbolic", each parameter is fitted as p0 - p1 / (p2 + distance)
    when at least MIN_CURVE_POINTS fits span a range of distances.

    Raises:
        InsufficientCoverage: If the band has no shape fits.
    """
    fits: List[ShapeFit] = list(fits)
    if not fits:
        raise InsufficientCoverage(f"Band {band}: no shape fits to build the band shape", group=band)

    distances = np.array([f.distance_km for f in fits])
    nus = np.array([f.nu for f in fits])
    gammas = np.array([f.gamma for f in fits])

    if config.DISTANCE_MODEL == "hyperbolic":
        nu_curve, nu_model = _fit_distance_curve(distances, nus, config.MIN_CURVE_POINTS)
        gamma_curve, gamma_model = _fit_distance_curve(distances, gammas, config.MIN_CURVE_POINTS)
        model = "hyperbolic" if "hyperbolic" in (nu_model, gamma_model) else "constant"
    else:
        nu_curve, gamma_curve, model = DistanceCurve(float(np.median(nus))), DistanceCurve(float(np.median(gammas))), "constant"

    return BandShape(band=band, nu=nu_curve, gamma=gamma_curve, model=model, n_fits=len(fits))
