"""
Path correction solver.

For one station and band, regresses the shape-normalized amplitude (the fitted
log10 A0 of every measurement at that station) against log10 distance, and
optionally source depth, across all events the station recorded. The fitted
trend is the distance-dependent path term removed before the site inversion.

The fitted log10 A0 still carries the source level of each event. When event
sizes correlate with distance at a station, a plain per-station regression
absorbs the source sizes into the slope, so the band's event levels are first
estimated jointly with every station's trend (``estimate_event_levels``) and
removed before each station is regressed on its own.
"""

import logging
from collections import defaultdict
from typing import Callable, Dict, Mapping, Optional, Sequence, Tuple

import numpy as np
from scipy import sparse, stats
from scipy.sparse.linalg import lsqr

from .config import PathConfig
from .errors import InsufficientCoverage
from .models import FrequencyBand, PathCorrection, ShapeFit

logger = logging.getLogger("coda_mw_calc")


def _robust_sigma(residuals: np.ndarray) -> float:
    return max(1.4826 * float(np.median(np.abs(residuals - np.median(residuals)))), 1e-9)


def _ols(design: np.ndarray, y: np.ndarray, weights: np.ndarray = None) -> np.ndarray:
    if weights is None:
        params, *_ = np.linalg.lstsq(design, y, rcond=None)
        return params
    root_w = np.sqrt(weights)
    params, *_ = np.linalg.lstsq(design * root_w[:, None], y * root_w, rcond=None)
    return params


def _irls(design, y: np.ndarray, huber_k: float, max_passes: int, solver: Callable = _ols) -> np.ndarray:
    """ Huber-weighted iteratively reweighted least squares. """
    params = solver(design, y)
    for _ in range(max_passes):
        residuals = y - design @ params
        threshold = huber_k * _robust_sigma(residuals)
        abs_res = np.abs(residuals)
        weights = np.where(abs_res <= threshold, 1.0, threshold / np.maximum(abs_res, 1e-300))
        new_params = solver(design, y, weights)
        if np.allclose(new_params, params, rtol=0.0, atol=1e-10):
            params = new_params
            break
        params = new_params
    return params


def _has_coverage(fits: Sequence[ShapeFit], config: PathConfig) -> bool:
    if len({f.event_id for f in fits}) < config.MIN_EVENTS:
        return False
    return np.ptp([f.distance_km for f in fits]) > 0


def estimate_event_levels(fits: Sequence[ShapeFit], band: FrequencyBand, config: PathConfig) -> Dict[str, float]:
    """
    Estimate the source level of every event shared by the covered stations of a band.

    Solves, over all stations with enough coverage,

        log10 A0[e, s] = level[e] + intercept[s] + slope[s] * log10(r / r_ref) (+ depth term)

    by least squares (Huber IRLS when the path method is robust). Events recorded
    by a single covered station carry no path information and are left out.

    Args:
        fits (Sequence[ShapeFit]): Successful shape fits of the band.
        band (FrequencyBand): Frequency band.
        config (PathConfig): Path regression parameters.

    Returns:
        Dict[str, float]: Event id to level. Levels are defined up to a constant per
        connected group of stations, which the station intercepts absorb.
    """
    by_station = defaultdict(list)
    for fit in fits:
        if fit.band == band:
            by_station[fit.station].append(fit)
    covered = {s: station_fits for s, station_fits in sorted(by_station.items()) if _has_coverage(station_fits, config)}

    stations_of_event = defaultdict(set)
    for station, station_fits in covered.items():
        for fit in station_fits:
            stations_of_event[fit.event_id].add(station)
    events = sorted(e for e, stations in stations_of_event.items() if len(stations) > 1)
    if not events:
        return {}
    event_col = {e: i for i, e in enumerate(events)}

    rows, cols, vals, y = [], [], [], []
    n_cols = len(events)
    for station, station_fits in covered.items():
        shared = [f for f in station_fits if f.event_id in event_col]
        if not shared:
            continue
        depths = np.array([f.depth_km for f in shared]) - config.REFERENCE_DEPTH_KM
        use_depth = config.USE_DEPTH and np.ptp(depths) > 0
        intercept_col, slope_col, depth_col = n_cols, n_cols + 1, n_cols + 2
        n_cols += 3 if use_depth else 2
        for fit, depth in zip(shared, depths):
            row = len(y)
            terms = [(event_col[fit.event_id], 1.0), (intercept_col, 1.0),
                     (slope_col, np.log10(fit.distance_km / config.REFERENCE_DISTANCE_KM))]
            if use_depth:
                terms.append((depth_col, depth))
            for col, value in terms:
                rows.append(row)
                cols.append(col)
                vals.append(value)
            y.append(fit.log10_a0)

    matrix = sparse.csr_matrix((vals, (rows, cols)), shape=(len(y), n_cols))
    y = np.array(y)

    def solve(design, rhs, weights=None):
        if weights is not None:
            root_w = np.sqrt(weights)
            design = sparse.diags(root_w) @ design
            rhs = rhs * root_w
        if design.shape[1] <= config.DENSE_LIMIT:
            solution, *_ = np.linalg.lstsq(design.toarray(), rhs, rcond=None)
            return solution
        return lsqr(design, rhs, atol=config.LSQR_TOL, btol=config.LSQR_TOL, iter_lim=20 * design.shape[1])[0]

    if config.METHOD == "ols":
        params = solve(matrix, y)
    else:
        params = _irls(matrix, y, config.HUBER_K, config.MAX_IRLS_PASSES, solver=solve)

    logger.info(f"Band {band}: event levels of {len(events)} events from {len(covered)} stations")
    return {event_id: float(params[i]) for event_id, i in event_col.items()}


def solve_path(
    fits: Sequence[ShapeFit],
    station: str,
    band: FrequencyBand,
    config: PathConfig,
    event_levels: Optional[Mapping[str, float]] = None,
    ) -> PathCorrection:
    """
    Solve the path correction of one station and band.

    Args:
        fits (Sequence[ShapeFit]): Every successful shape fit of the station in the band.
        station (str): Station code.
        band (FrequencyBand): Frequency band.
        config (PathConfig): Path regression parameters.
        event_levels (Mapping[str, float], optional): Event source levels removed from
            log10 A0 before the regression (see ``estimate_event_levels``). Fits of
            events without a level are left out. None regresses the raw log10 A0.

    Returns:
        PathCorrection: Intercept, log-distance slope, optional depth coefficient and residual spread.

    Raises:
        InsufficientCoverage: If fewer than MIN_EVENTS distinct events, or no distance spread.
    """
    group = (station, band)
    fits = [f for f in fits if f.station == station and f.band == band]
    if event_levels is not None:
        fits = [f for f in fits if f.event_id in event_levels]
    n_events = len({f.event_id for f in fits})
    if n_events < config.MIN_EVENTS:
        shared = " shared with other stations" if event_levels is not None else ""
        raise InsufficientCoverage(
            f"Station {station} band {band}: {n_events} events{shared}, at least {config.MIN_EVENTS} required",
            group=group,
        )

    x = np.log10(np.array([f.distance_km for f in fits]) / config.REFERENCE_DISTANCE_KM)
    y = np.array([_level_free(f, event_levels) for f in fits])
    if np.ptp(x) == 0:
        raise InsufficientCoverage(f"Station {station} band {band}: all events at the same distance", group=group)

    columns = [np.ones_like(x), x]
    use_depth = config.USE_DEPTH
    if use_depth:
        z = np.array([f.depth_km for f in fits]) - config.REFERENCE_DEPTH_KM
        if np.ptp(z) == 0:
            logger.info(f"Station {station} band {band}: no depth spread, solving distance term only")
            use_depth = False
        else:
            columns.append(z)
    design = np.column_stack(columns)

    if config.METHOD == "theil_sen":
        slope, intercept, _, _ = stats.theilslopes(y, x, method="joint")
        params = np.array([intercept, slope])
    elif config.METHOD == "irls":
        params = _irls(design, y, config.HUBER_K, config.MAX_IRLS_PASSES)
    else:
        params = _ols(design, y)

    residuals = y - design @ params
    dof = len(y) - len(params)
    residual_std = float(np.sqrt(np.sum(residuals ** 2) / dof)) if dof > 0 else 0.0

    return PathCorrection(
        station=station,
        band=band,
        intercept=float(params[0]),
        slope=float(params[1]),
        residual_std=residual_std,
        n_events=n_events,
        n_measurements=len(fits),
        reference_distance_km=config.REFERENCE_DISTANCE_KM,
        depth_coefficient=float(params[2]) if use_depth else 0.0,
        reference_depth_km=config.REFERENCE_DEPTH_KM,
        method=config.METHOD,
    )


def _level_free(fit: ShapeFit, event_levels: Optional[Mapping[str, float]]) -> float:
    if event_levels is None:
        return fit.log10_a0
    return fit.log10_a0 - event_levels[fit.event_id]


def apply_path(fit: ShapeFit, correction: PathCorrection) -> float:
    """ Path-corrected amplitude of one fit: log10 A0 minus the station distance trend. """
    depth = fit.depth_km if correction.depth_coefficient != 0.0 else None
    return float(fit.log10_a0 - correction.correction(fit.distance_km, depth))


def path_residuals(
    fits: Sequence[ShapeFit],
    correction: PathCorrection,
    event_levels: Optional[Mapping[str, float]] = None,
    ) -> Tuple[float, ...]:
    """ Residuals of the fits against the full path regression (intercept included). """
    depth_aware = correction.depth_coefficient != 0.0
    if event_levels is not None:
        fits = [f for f in fits if f.event_id in event_levels]
    return tuple(
        float(_level_free(f, event_levels) - correction.predict(f.distance_km, f.depth_km if depth_aware else None))
        for f in fits
    )
