"""
Calibration curve builder.

Composes a band's shape normalization, per-station path corrections and site
terms into one CalibrationCurve, and fixes the moment offset that maps the
corrected amplitude onto absolute log10 moment, either from the configuration
or from reference events with known moment magnitudes.
"""

import hashlib
import logging
from typing import Dict, Mapping, Optional, Sequence, Tuple

import numpy as np

from .config import MagnitudeConfig
from .errors import IncompleteCalibration
from .magnitude import scaling_relation
from .models import BandShape, CalibrationCurve, FrequencyBand, PathCorrection, ShapeFit, SiteSolution

logger = logging.getLogger("coda_mw_calc")


def curve_version(band: FrequencyBand, shape: BandShape, paths: Mapping[str, PathCorrection], sites: Mapping, moment_offset: float) -> str:
    """ Stable digest of everything that determines the curve's output. """
    parts = [
        band.label,
        shape.model,
        repr((shape.nu.p0, shape.nu.p1, shape.nu.p2, shape.gamma.p0, shape.gamma.p1, shape.gamma.p2)),
        repr(float(moment_offset)),
    ]
    for station in sorted(paths):
        p = paths[station]
        parts.append(repr((station, p.slope, p.depth_coefficient, p.reference_distance_km, p.reference_depth_km)))
    for station in sorted(sites):
        parts.append(repr((station, sites[station].term)))
    return hashlib.sha1("|".join(parts).encode("utf-8")).hexdigest()[:16]


def reference_moment_offset(
    curve: CalibrationCurve,
    fits: Sequence[ShapeFit],
    reference_mws: Mapping[str, float],
    config: MagnitudeConfig,
    ) -> Tuple[Optional[float], int]:
    """
    Moment offset that ties the curve to reference event magnitudes.

    For every reference event recorded in the band, the corrected amplitude
    (offset excluded) is averaged over its stations and compared to the log10
    moment of its reference Mw. The offset is the median difference.

    Returns:
        Tuple[Optional[float], int]: Offset (None when fewer than
            MIN_REFERENCE_EVENTS events contribute) and the number of events used.
    """
    scaling = scaling_relation(config)
    corrected: Dict[str, list] = {}
    for fit in fits:
        if fit.event_id not in reference_mws:
            continue
        value = curve.correct_normalized(fit.log10_a0, fit.distance_km, fit.station, fit.depth_km) - curve.moment_offset
        corrected.setdefault(fit.event_id, []).append(float(value))

    differences = [
        float(scaling.to_log10_moment(reference_mws[event_id])) - float(np.mean(values))
        for event_id, values in sorted(corrected.items())
    ]
    if len(differences) < config.MIN_REFERENCE_EVENTS:
        return None, len(differences)
    return float(np.median(differences)), len(differences)


def build_calibration_curve(
    band: FrequencyBand,
    fits: Sequence[ShapeFit],
    band_shape: BandShape,
    paths: Mapping[str, PathCorrection],
    site_solution: SiteSolution,
    config: MagnitudeConfig,
    reference_mws: Optional[Mapping[str, float]] = None,
    ) -> CalibrationCurve:
    """
    Build the calibration curve of one band.

    Args:
        band (FrequencyBand): Band of the curve.
        fits (Sequence[ShapeFit]): Shape fits the curve must be able to correct.
        band_shape (BandShape): Band shape normalization.
        paths (Mapping[str, PathCorrection]): Station code to path correction.
        site_solution (SiteSolution): Site inversion result of the band.
        config (MagnitudeConfig): Scaling relation and moment offsets.
        reference_mws (Mapping[str, float], optional): Event id to reference Mw.

    Returns:
        CalibrationCurve: Versioned curve of the band.

    Raises:
        IncompleteCalibration: If a station referenced by the fits has no path or site correction.
    """
    stations = sorted({f.station for f in fits if f.band == band})
    missing_path = [s for s in stations if s not in paths]
    missing_site = [s for s in stations if s not in site_solution.corrections]
    if missing_path or missing_site:
        details = []
        if missing_path:
            details.append(f"no path correction for {', '.join(missing_path)}")
        if missing_site:
            details.append(f"no site correction for {', '.join(missing_site)}")
        raise IncompleteCalibration(f"Band {band}: {'; '.join(details)}", group=band)

    curve_paths = {s: paths[s] for s in stations}
    curve_sites = {s: site_solution.corrections[s] for s in stations}
    offset = config.moment_offset(band)
    curve = CalibrationCurve(
        band=band, shape=band_shape, paths=curve_paths, sites=curve_sites,
        moment_offset=offset, version="",
    )

    n_reference = 0
    if reference_mws:
        band_fits = [f for f in fits if f.band == band]
        reference_offset, n_reference = reference_moment_offset(curve, band_fits, reference_mws, config)
        if reference_offset is None:
            logger.warning(
                f"Band {band}: {n_reference} reference events, {config.MIN_REFERENCE_EVENTS} required, "
                f"keeping configured moment offset {offset}"
            )
            n_reference = 0
        else:
            offset = reference_offset
            logger.info(f"Band {band}: moment offset {offset:.4f} from {n_reference} reference events")

    return CalibrationCurve(
        band=band,
        shape=band_shape,
        paths=curve_paths,
        sites=curve_sites,
        moment_offset=offset,
        version=curve_version(band, band_shape, curve_paths, curve_sites, offset),
        n_reference_events=n_reference,
    )


def curve_residuals(curve: CalibrationCurve, fits: Sequence[ShapeFit], event_terms: Mapping[str, float]) -> Tuple[float, ...]:
    """ Corrected fit amplitudes minus their event term, offset excluded. """
    return tuple(
        float(curve.correct_normalized(f.log10_a0, f.distance_km, f.station, f.depth_km) - curve.moment_offset - event_terms[f.event_id])
        for f in fits
        if f.station in curve.sites and f.event_id in event_terms
    )
