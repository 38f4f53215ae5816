"""
Magnitude and moment estimator.

Applies a band's calibration curve to every measurement of the band, converts
the corrected log10 moment to moment magnitude with the configured scaling
relation, and combines band estimates into one magnitude per event.
"""

import logging
from collections import defaultdict
from typing import Dict, List, Sequence, Tuple

import numpy as np

from .config import MagnitudeConfig, UncertaintyConfig
from .errors import NoValidBands
from .models import CalibrationCurve, FrequencyBand, MagnitudeEstimate, Measurement, ScalingRelation
from .uncertainty import confidence_interval, interval_from_error, make_rng, standard_error, weighted_mean

logger = logging.getLogger("coda_mw_calc")


def scaling_relation(config: MagnitudeConfig) -> ScalingRelation:
    """ Moment magnitude scaling relation from the configuration. """
    return ScalingRelation(slope=config.MW_SLOPE, intercept=config.MW_INTERCEPT)


def measurement_magnitude(measurement: Measurement, curve: CalibrationCurve, scaling: ScalingRelation) -> float:
    """ Mw of one measurement, NaN when it has no usable samples. """
    log10_moment = curve.correct_series(
        measurement.times, measurement.amplitudes, measurement.distance_km,
        measurement.station, measurement.depth_km,
    )
    if not np.isfinite(log10_moment):
        return float("nan")
    return float(scaling.to_mw(log10_moment))


def estimate_band_magnitudes(
    measurements: Sequence[Measurement],
    curve: CalibrationCurve,
    config: MagnitudeConfig,
    uncertainty: UncertaintyConfig,
    ) -> Dict[Tuple[str, FrequencyBand], MagnitudeEstimate]:
    """
    Per-event moment magnitudes of one band.

    Every measurement of the band is corrected through the curve; the event
    magnitude is the mean over its stations.

    Args:
        measurements (Sequence[Measurement]): Measurements to estimate, other bands are ignored.
        curve (CalibrationCurve): Calibration curve of the band.
        config (MagnitudeConfig): Scaling relation.
        uncertainty (UncertaintyConfig): Interval method and level.

    Returns:
        Dict[Tuple[str, FrequencyBand], MagnitudeEstimate]: Keyed by (event id, band).

    Raises:
        IncompleteCalibration: If a measurement's station is not covered by the curve.
    """
    scaling = scaling_relation(config)
    by_event: Dict[str, List[float]] = defaultdict(list)
    for measurement in measurements:
        if measurement.band != curve.band:
            continue
        mw = measurement_magnitude(measurement, curve, scaling)
        if np.isfinite(mw):
            by_event[measurement.event_id].append(mw)
        else:
            logger.warning(f"Measurement {measurement.key}: no usable samples for the magnitude estimate")

    estimates = {}
    for event_id in sorted(by_event):
        values = np.array(by_event[event_id])
        key = (event_id, curve.band)
        interval = confidence_interval(values, uncertainty, make_rng(uncertainty, key))
        mw = float(np.mean(values))
        estimates[key] = MagnitudeEstimate(
            event_id=event_id,
            band=curve.band,
            mw=mw,
            std_error=standard_error(values, uncertainty, make_rng(uncertainty, key)),
            n_measurements=len(values),
            ci_lower=interval.lower,
            ci_upper=interval.upper,
            residual_std=float(np.std(values, ddof=1)) if len(values) > 1 else float("nan"),
            log10_moment=float(scaling.to_log10_moment(mw)),
        )
    return estimates


def aggregate_event(
    event_id: str,
    band_estimates: Sequence[MagnitudeEstimate],
    config: MagnitudeConfig,
    uncertainty: UncertaintyConfig,
    ) -> MagnitudeEstimate:
    """
    Combine the band estimates of one event.

    Bands deviating from the median by more than BAND_MAD_MULTIPLIER times the
    median absolute deviation (and by more than BAND_MAD_FLOOR) are excluded.
    The rest are combined with inverse-variance weights, or equal weights when
    any band lacks a usable standard error.

    Raises:
        NoValidBands: If no band estimate remains.
    """
    candidates = sorted(
        (e for e in band_estimates if e.event_id == event_id and np.isfinite(e.mw)),
        key=lambda e: e.band,
    )
    if not candidates:
        raise NoValidBands(f"Event {event_id}: no band magnitude available", group=event_id)

    mws = np.array([e.mw for e in candidates])
    median = float(np.median(mws))
    mad = float(np.median(np.abs(mws - median)))
    threshold = max(config.BAND_MAD_MULTIPLIER * mad, config.BAND_MAD_FLOOR)
    keep = np.abs(mws - median) <= threshold
    used = [e for e, k in zip(candidates, keep) if k]
    excluded = [e for e, k in zip(candidates, keep) if not k]
    if excluded:
        logger.info(
            f"Event {event_id}: excluded bands {', '.join(str(e.band) for e in excluded)} "
            f"deviating more than {threshold:.3f} from the median Mw {median:.3f}"
        )
    if not used:
        raise NoValidBands(f"Event {event_id}: every band was excluded as an outlier", group=event_id)

    values = [e.mw for e in used]
    mw, std_error, inverse_variance = weighted_mean(values, [e.std_error ** 2 for e in used])
    n_measurements = sum(e.n_measurements for e in used)
    if inverse_variance:
        interval = interval_from_error(mw, std_error, n_measurements, uncertainty)
    else:
        interval = confidence_interval(values, uncertainty, make_rng(uncertainty, event_id))

    return MagnitudeEstimate(
        event_id=event_id,
        band=None,
        mw=mw,
        std_error=std_error,
        n_measurements=n_measurements,
        ci_lower=interval.lower,
        ci_upper=interval.upper,
        residual_std=float(np.std(values, ddof=1)) if len(values) > 1 else float("nan"),
        log10_moment=float(scaling_relation(config).to_log10_moment(mw)),
        bands_used=tuple(e.band for e in used),
        bands_excluded=tuple(e.band for e in excluded),
    )
