"""
Uncertainty estimator.

Residual statistics for every stage boundary and confidence intervals for the
quantities derived from them. Intervals are analytic (Student-t on the sample
mean, normal on a propagated standard error) or bootstrap percentile intervals
over the station/event population, selected by ``UncertaintyConfig.METHOD``.
Bootstrap generators are seeded from the configured seed and the item key, so
results do not depend on worker scheduling.
"""

import zlib
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

import numpy as np
from scipy import stats

from .config import UncertaintyConfig
from .models import FrequencyBand


@dataclass(frozen=True)
class Interval:
    center: float
    lower: float
    upper: float
    n: int
    method: str


@dataclass(frozen=True)
class ResidualSummary:
    """ Residual distribution of one stage (and band), with the count behind it. """
    stage: str
    n: int
    mean: float
    std: float
    rms: float
    mad: float
    ci_lower: float
    ci_upper: float


def make_rng(config: UncertaintyConfig, key: Any = None) -> np.random.Generator:
    """ Deterministic generator for one item, independent of execution order. """
    return np.random.default_rng([config.SEED, zlib.crc32(repr(key).encode("utf-8"))])


def _as_array(values: Sequence[float]) -> np.ndarray:
    array = np.asarray(list(values), dtype=float)
    return array[np.isfinite(array)]


def _resampled_means(array: np.ndarray, n_resamples: int, rng: np.random.Generator) -> np.ndarray:
    n = len(array)
    return array[rng.integers(0, n, size=(n_resamples, n))].mean(axis=1)


def bootstrap_mean_std(values: Sequence[float], config: UncertaintyConfig, rng: Optional[np.random.Generator] = None) -> Tuple[float, float]:
    """
    Bootstrap the mean of a station or event population.

    Returns:
        Tuple[float, float]: Sample mean and the standard deviation of the
            N_RESAMPLES resampled means (NaN with fewer than two values).
    """
    array = _as_array(values)
    if len(array) == 0:
        return float("nan"), float("nan")
    if len(array) < 2:
        return float(array[0]), float("nan")
    rng = rng if rng is not None else make_rng(config)
    means = _resampled_means(array, config.N_RESAMPLES, rng)
    return float(np.mean(array)), float(np.std(means, ddof=1))


def standard_error(values: Sequence[float], config: UncertaintyConfig, rng: Optional[np.random.Generator] = None) -> float:
    """
    Standard error of the mean of ``values``.

    Analytic: sample standard deviation / sqrt(n). Bootstrap: standard deviation
    of N_RESAMPLES resampled means. NaN when fewer than two values.
    """
    array = _as_array(values)
    n = len(array)
    if n < 2:
        return float("nan")
    if config.METHOD == "bootstrap":
        return bootstrap_mean_std(array, config, rng)[1]
    return float(np.std(array, ddof=1) / np.sqrt(n))


def confidence_interval(values: Sequence[float], config: UncertaintyConfig, rng: Optional[np.random.Generator] = None) -> Interval:
    """
    Confidence interval of the mean of ``values`` at CONFIDENCE_LEVEL.

    Returns:
        Interval: Center (the mean), bounds and the count of values behind it.
            Bounds are NaN with fewer than two values.
    """
    array = _as_array(values)
    n = len(array)
    if n == 0:
        return Interval(float("nan"), float("nan"), float("nan"), 0, config.METHOD)
    center = float(np.mean(array))
    if n < 2:
        return Interval(center, float("nan"), float("nan"), n, config.METHOD)

    alpha = 1.0 - config.CONFIDENCE_LEVEL
    if config.METHOD == "bootstrap":
        rng = rng if rng is not None else make_rng(config)
        means = _resampled_means(array, config.N_RESAMPLES, rng)
        lower, upper = np.percentile(means, [100 * alpha / 2, 100 * (1 - alpha / 2)])
        return Interval(center, float(lower), float(upper), n, "bootstrap")

    se = float(np.std(array, ddof=1) / np.sqrt(n))
    half = float(stats.t.ppf(1 - alpha / 2, n - 1)) * se
    return Interval(center, center - half, center + half, n, "analytic")


def interval_from_error(center: float, std_error: float, n: int, config: UncertaintyConfig) -> Interval:
    """ Normal interval around a propagated estimate with a known standard error. """
    if not np.isfinite(std_error):
        return Interval(center, float("nan"), float("nan"), n, config.METHOD)
    z = float(stats.norm.ppf(1 - (1.0 - config.CONFIDENCE_LEVEL) / 2))
    return Interval(center, center - z * std_error, center + z * std_error, n, config.METHOD)


def summarize_residuals(stage: str, values: Sequence[float], config: UncertaintyConfig) -> ResidualSummary:
    """ Residual statistics of one stage, with the confidence interval of their mean. """
    array = _as_array(values)
    if len(array) == 0:
        nan = float("nan")
        return ResidualSummary(stage, 0, nan, nan, nan, nan, nan, nan)
    interval = confidence_interval(array, config, make_rng(config, stage))
    return ResidualSummary(
        stage=stage,
        n=len(array),
        mean=float(np.mean(array)),
        std=float(np.std(array, ddof=1)) if len(array) > 1 else 0.0,
        rms=float(np.sqrt(np.mean(array ** 2))),
        mad=float(np.median(np.abs(array - np.median(array)))),
        ci_lower=interval.lower,
        ci_upper=interval.upper,
    )


def build_uncertainty_report(
    residuals: Mapping[str, Mapping[FrequencyBand, Sequence[float]]],
    config: UncertaintyConfig,
    ) -> Dict[str, Dict[FrequencyBand, ResidualSummary]]:
    """
    Summarize the residuals of every stage, per band.

    Args:
        residuals: Stage name -> band -> residual values of that stage.
        config (UncertaintyConfig): Interval method and level.

    Returns:
        Dict[str, Dict[FrequencyBand, ResidualSummary]]: The same nesting, summarized.
    """
    return {
        stage: {band: summarize_residuals(f"{stage}:{band}", values, config) for band, values in by_band.items()}
        for stage, by_band in residuals.items()
    }


def weighted_mean(values: Sequence[float], variances: Sequence[float]) -> Tuple[float, float, bool]:
    """
    Inverse-variance weighted mean and its standard error.

    Falls back to equal weights when any variance is missing, non-finite or zero.

    Returns:
        Tuple[float, float, bool]: Mean, standard error (NaN for one equally
            weighted value) and whether inverse-variance weights were used.
    """
    x = np.asarray(values, dtype=float)
    v = np.asarray(variances, dtype=float)
    if len(x) and np.all(np.isfinite(v)) and np.all(v > 0):
        w = 1.0 / v
        return float(np.sum(w * x) / np.sum(w)), float(np.sqrt(1.0 / np.sum(w))), True
    mean = float(np.mean(x))
    se = float(np.std(x, ddof=1) / np.sqrt(len(x))) if len(x) > 1 else float("nan")
    return mean, se, False
