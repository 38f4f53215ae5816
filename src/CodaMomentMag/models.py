#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Data model of the coda calibration pipeline.

Every entity is an immutable dataclass. Derived entities (ShapeFit,
PathCorrection, SiteCorrection, CalibrationCurve, MagnitudeEstimate) are
produced once per PipelineRun and never mutated afterwards, so repeated runs
over the same measurement snapshot never share state.

Amplitudes travel through the pipeline as log10 values. The coda decay model
used throughout is

    A(t) = A0 * t^(-nu) * exp(-gamma * t)
    log10 A(t) = log10 A0 - nu * log10(t) - gamma * t * log10(e)

with t in seconds after the event origin.
"""

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

import numpy as np
import pandas as pd

from .errors import CalibrationError, IncompleteCalibration

LOG10_E = float(np.log10(np.e))

MeasurementKey = Tuple[str, str, "FrequencyBand", str]


@dataclass(frozen=True, order=True)
class FrequencyBand:
    """ Frequency band of an envelope, in Hz. """
    low_hz: float
    high_hz: float

    def __post_init__(self):
        if not (0 < self.low_hz < self.high_hz):
            raise ValueError(f"Invalid frequency band {self.low_hz}-{self.high_hz} Hz")

    @property
    def center_hz(self) -> float:
        return float(np.sqrt(self.low_hz * self.high_hz))

    @property
    def label(self) -> str:
        return f"{self.low_hz:g}-{self.high_hz:g}"

    @classmethod
    def from_label(cls, label: str) -> "FrequencyBand":
        """ Parse a band written as ``"low-high"`` (e.g. ``"1.0-2.0"``). """
        try:
            low, high = (float(x) for x in label.strip().split("-"))
        except ValueError as e:
            raise ValueError(f"Invalid frequency band label '{label}'") from e
        return cls(low, high)

    def __str__(self) -> str:
        return self.label


@dataclass(frozen=True, eq=False)
class Measurement:
    """
    One normalized envelope for an (event, station, band, component).

    The sample arrays are copied on construction and made read-only, so a
    measurement snapshot can be shared between worker threads without locks.
    """
    event_id: str
    station: str
    band: FrequencyBand
    component: str
    times: np.ndarray
    amplitudes: np.ndarray
    distance_km: float
    depth_km: float = 0.0
    valid: bool = True

    def __post_init__(self):
        times = np.array(self.times, dtype=float)
        amplitudes = np.array(self.amplitudes, dtype=float)
        if times.shape != amplitudes.shape or times.ndim != 1:
            raise ValueError(f"Measurement {self.key}: times and amplitudes must be 1-D arrays of equal length")
        if not np.isfinite(self.distance_km) or self.distance_km <= 0:
            raise ValueError(f"Measurement {self.key}: distance must be positive, got {self.distance_km}")
        order = np.argsort(times, kind="stable")
        times, amplitudes = times[order], amplitudes[order]
        times.setflags(write=False)
        amplitudes.setflags(write=False)
        object.__setattr__(self, "times", times)
        object.__setattr__(self, "amplitudes", amplitudes)
        object.__setattr__(self, "event_id", str(self.event_id))
        object.__setattr__(self, "station", str(self.station))
        object.__setattr__(self, "distance_km", float(self.distance_km))
        object.__setattr__(self, "depth_km", float(self.depth_km))

    @property
    def key(self) -> MeasurementKey:
        return (self.event_id, self.station, self.band, self.component)

    def __len__(self) -> int:
        return len(self.times)


@dataclass(frozen=True)
class ShapeFit:
    """ Fitted decay parameters of one measurement. """
    key: MeasurementKey
    log10_a0: float
    nu: float
    gamma: float
    rms: float
    n_samples: int
    n_used: int
    iterations: int
    distance_km: float
    depth_km: float = 0.0
    converged: bool = True

    @property
    def event_id(self) -> str:
        return self.key[0]

    @property
    def station(self) -> str:
        return self.key[1]

    @property
    def band(self) -> FrequencyBand:
        return self.key[2]

    @property
    def component(self) -> str:
        return self.key[3]


@dataclass(frozen=True)
class DistanceCurve:
    """ Distance dependent shape parameter, p0 - p1 / (p2 + r). """
    p0: float
    p1: float = 0.0
    p2: float = 1.0

    def __call__(self, distance_km):
        return self.p0 - self.p1 / (self.p2 + np.asarray(distance_km, dtype=float))

    @property
    def is_constant(self) -> bool:
        return self.p1 == 0.0


@dataclass(frozen=True)
class BandShape:
    """ Band level shape normalization built from a ShapeFit population. """
    band: FrequencyBand
    nu: DistanceCurve
    gamma: DistanceCurve
    model: str
    n_fits: int

    def log10_shape(self, time, distance_km):
        """ Shape term of the decay model, without the log10 A0 intercept. """
        t = np.asarray(time, dtype=float)
        return -self.nu(distance_km) * np.log10(t) - self.gamma(distance_km) * t * LOG10_E

    def normalize(self, log10_amplitude, time, distance_km):
        """ Reduce log10 amplitudes at ``time`` to the decay-model intercept. """
        return np.asarray(log10_amplitude, dtype=float) - self.log10_shape(time, distance_km)


@dataclass(frozen=True)
class PathCorrection:
    """ Distance (and optionally depth) trend of one station and band. """
    station: str
    band: FrequencyBand
    intercept: float
    slope: float
    residual_std: float
    n_events: int
    n_measurements: int
    reference_distance_km: float = 1.0
    depth_coefficient: float = 0.0
    reference_depth_km: float = 0.0
    method: str = "ols"

    def correction(self, distance_km, depth_km=None):
        """ Amount (log10) removed from a shape-normalized amplitude. """
        value = self.slope * np.log10(np.asarray(distance_km, dtype=float) / self.reference_distance_km)
        if depth_km is not None and self.depth_coefficient != 0.0:
            value = value + self.depth_coefficient * (np.asarray(depth_km, dtype=float) - self.reference_depth_km)
        return value

    def predict(self, distance_km, depth_km=None):
        return self.intercept + self.correction(distance_km, depth_km)


@dataclass(frozen=True)
class SiteCorrection:
    """ Site amplification term of one station and band. """
    station: str
    band: FrequencyBand
    term: float
    uncertainty: float
    n_measurements: int
    cluster: int = 0
    normalization: str = "mean"


@dataclass(frozen=True)
class SiteSolution:
    """ Result of the joint event/station inversion for one band. """
    band: FrequencyBand
    corrections: Mapping[str, SiteCorrection]
    event_terms: Mapping[str, float]
    clusters: Tuple[Tuple[str, ...], ...]
    residuals: Tuple[float, ...]
    n_observations: int


@dataclass(frozen=True)
class CalibrationCurve:
    """
    Per-band calibration: raw coda amplitude + distance + station to a
    corrected log10 moment-scale amplitude.

    Composition is fixed: shape-normalize, remove the station path trend,
    subtract the station site term, then add the band moment offset.
    """
    band: FrequencyBand
    shape: BandShape
    paths: Mapping[str, PathCorrection]
    sites: Mapping[str, SiteCorrection]
    moment_offset: float
    version: str
    n_reference_events: int = 0

    @property
    def stations(self) -> Tuple[str, ...]:
        return tuple(sorted(self.sites))

    def _terms(self, station: str) -> Tuple[PathCorrection, SiteCorrection]:
        path = self.paths.get(station)
        site = self.sites.get(station)
        if path is None or site is None:
            missing = "path" if path is None else "site"
            raise IncompleteCalibration(
                f"Band {self.band}: station {station} has no {missing} correction", group=(station, self.band)
            )
        return path, site

    def apply(self, amplitude, time, distance_km: float, station: str, depth_km: Optional[float] = None):
        """
        Correct raw (linear) amplitudes sampled at ``time`` seconds after origin.

        Args:
            amplitude: Raw envelope amplitude(s), linear units.
            time: Time(s) since origin in seconds, same shape as amplitude.
            distance_km (float): Source-station distance.
            station (str): Station code.
            depth_km (float, optional): Source depth, used by depth-aware path terms.

        Returns:
            Corrected log10 moment-scale amplitude(s).

        Raises:
            IncompleteCalibration: If the station has no path or site term.
        """
        with np.errstate(divide="ignore", invalid="ignore"):
            log10_amp = np.log10(np.asarray(amplitude, dtype=float))
        normalized = self.shape.normalize(log10_amp, time, distance_km)
        return self.correct_normalized(normalized, distance_km, station, depth_km)

    def correct_normalized(self, log10_a0, distance_km: float, station: str, depth_km: Optional[float] = None):
        """ Apply path, site and offset to an already shape-normalized amplitude. """
        path, site = self._terms(station)
        return np.asarray(log10_a0, dtype=float) - path.correction(distance_km, depth_km) - site.term + self.moment_offset

    def correct_series(self, times, amplitudes, distance_km: float, station: str, depth_km: Optional[float] = None) -> float:
        """ Median corrected amplitude over every usable sample of an envelope. """
        times = np.asarray(times, dtype=float)
        amplitudes = np.asarray(amplitudes, dtype=float)
        usable = np.isfinite(times) & np.isfinite(amplitudes) & (times > 0) & (amplitudes > 0)
        if not usable.any():
            return float("nan")
        values = self.apply(amplitudes[usable], times[usable], distance_km, station, depth_km)
        return float(np.median(values))


@dataclass(frozen=True)
class ScalingRelation:
    """ Linear moment magnitude relation, Mw = slope * log10(M0) + intercept. """
    slope: float = 2.0 / 3.0
    intercept: float = -6.07

    def to_mw(self, log10_moment):
        return self.slope * np.asarray(log10_moment, dtype=float) + self.intercept

    def to_log10_moment(self, mw):
        return (np.asarray(mw, dtype=float) - self.intercept) / self.slope


@dataclass(frozen=True)
class MagnitudeEstimate:
    """ Moment magnitude of one event, for one band or aggregated (band is None). """
    event_id: str
    band: Optional[FrequencyBand]
    mw: float
    std_error: float
    n_measurements: int
    ci_lower: float
    ci_upper: float
    residual_std: float = float("nan")
    log10_moment: float = float("nan")
    bands_used: Tuple[FrequencyBand, ...] = ()
    bands_excluded: Tuple[FrequencyBand, ...] = ()


@dataclass(frozen=True)
class ItemResult:
    """ Tagged outcome of one work item: a value, or the error that excluded it. """
    key: Any
    value: Any = None
    error: Optional[CalibrationError] = None
    stage: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def kind(self) -> str:
        return "ok" if self.error is None else self.error.kind


@dataclass(frozen=True)
class StageProgress:
    stage: str
    completed: int
    failed: int
    total: int


@dataclass(frozen=True)
class GroupFailure:
    """ A station, band or event that failed as a whole in one stage. """
    stage: str
    group: Any
    kind: str
    message: str


class RunState(enum.Enum):
    PENDING = "PENDING"
    FITTING = "FITTING"
    PATH_SOLVED = "PATH_SOLVED"
    SITE_SOLVED = "SITE_SOLVED"
    CURVE_BUILT = "CURVE_BUILT"
    MAGNITUDES_ESTIMATED = "MAGNITUDES_ESTIMATED"
    DONE = "DONE"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


@dataclass(frozen=True)
class PipelineRun:
    """ One immutable generation of the staged calibration computation. """
    run_id: str
    state: RunState
    config: Any
    n_measurements: int
    shape_fits: Mapping[MeasurementKey, ShapeFit] = field(default_factory=dict)
    band_shapes: Mapping[FrequencyBand, BandShape] = field(default_factory=dict)
    path_corrections: Mapping[Tuple[str, FrequencyBand], PathCorrection] = field(default_factory=dict)
    site_solutions: Mapping[FrequencyBand, SiteSolution] = field(default_factory=dict)
    curves: Mapping[FrequencyBand, CalibrationCurve] = field(default_factory=dict)
    band_estimates: Mapping[Tuple[str, FrequencyBand], MagnitudeEstimate] = field(default_factory=dict)
    event_estimates: Mapping[str, MagnitudeEstimate] = field(default_factory=dict)
    item_failures: Tuple[ItemResult, ...] = ()
    group_failures: Tuple[GroupFailure, ...] = ()
    progress: Tuple[StageProgress, ...] = ()
    history: Tuple[RunState, ...] = ()
    uncertainty: Mapping[str, Any] = field(default_factory=dict)

    @property
    def site_corrections(self) -> Dict[Tuple[str, FrequencyBand], SiteCorrection]:
        return {
            (station, band): correction
            for band, solution in self.site_solutions.items()
            for station, correction in solution.corrections.items()
        }

    @property
    def failed_bands(self) -> Tuple[FrequencyBand, ...]:
        bands = {f.group for f in self.group_failures if isinstance(f.group, FrequencyBand)}
        return tuple(sorted(bands))

    def failure_report(self) -> pd.DataFrame:
        """ Every recorded item and group failure, one row each. """
        rows = [
            {"stage": r.stage, "level": "item", "group": _format_group(r.key), "kind": r.kind, "message": r.error.message}
            for r in self.item_failures
        ]
        rows += [
            {"stage": f.stage, "level": "group", "group": _format_group(f.group), "kind": f.kind, "message": f.message}
            for f in self.group_failures
        ]
        return pd.DataFrame(rows, columns=["stage", "level", "group", "kind", "message"])

    def to_dataframes(self) -> Dict[str, pd.DataFrame]:
        """ Serialize the run outputs as tidy DataFrames keyed by table name. """
        shape_df = pd.DataFrame(
            [
                {
                    "event_id": fit.event_id, "station": fit.station, "band": fit.band.label,
                    "component": fit.component, "distance_km": fit.distance_km, "depth_km": fit.depth_km,
                    "log10_a0": fit.log10_a0, "nu": fit.nu, "gamma": fit.gamma, "rms": fit.rms,
                    "n_samples": fit.n_samples, "n_used": fit.n_used, "iterations": fit.iterations,
                }
                for fit in self.shape_fits.values()
            ]
        )
        path_df = pd.DataFrame(
            [
                {
                    "station": p.station, "band": p.band.label, "intercept": p.intercept, "slope": p.slope,
                    "depth_coefficient": p.depth_coefficient, "reference_distance_km": p.reference_distance_km,
                    "residual_std": p.residual_std, "n_events": p.n_events,
                    "n_measurements": p.n_measurements, "method": p.method,
                }
                for p in self.path_corrections.values()
            ]
        )
        site_df = pd.DataFrame(
            [
                {
                    "station": s.station, "band": s.band.label, "site_term": s.term, "uncertainty": s.uncertainty,
                    "n_measurements": s.n_measurements, "cluster": s.cluster, "normalization": s.normalization,
                }
                for s in self.site_corrections.values()
            ]
        )
        curve_df = pd.DataFrame(
            [
                {
                    "band": c.band.label, "version": c.version, "shape_model": c.shape.model,
                    "nu_p0": c.shape.nu.p0, "nu_p1": c.shape.nu.p1, "nu_p2": c.shape.nu.p2,
                    "gamma_p0": c.shape.gamma.p0, "gamma_p1": c.shape.gamma.p1, "gamma_p2": c.shape.gamma.p2,
                    "moment_offset": c.moment_offset, "n_stations": len(c.sites),
                    "n_reference_events": c.n_reference_events,
                }
                for c in self.curves.values()
            ]
        )
        band_mw_df = pd.DataFrame([_estimate_row(e) for e in self.band_estimates.values()])
        event_mw_df = pd.DataFrame([_estimate_row(e) for e in self.event_estimates.values()])
        return {
            "shape_fits": shape_df,
            "path_corrections": path_df,
            "site_corrections": site_df,
            "calibration_curves": curve_df,
            "band_magnitudes": band_mw_df,
            "event_magnitudes": event_mw_df,
            "failures": self.failure_report(),
        }


def _format_group(group: Any) -> str:
    if isinstance(group, tuple):
        return "/".join(str(g) for g in group)
    return str(group)


def _estimate_row(estimate: MagnitudeEstimate) -> Dict[str, Any]:
    return {
        "event_id": estimate.event_id,
        "band": estimate.band.label if estimate.band is not None else "all",
        "mw": estimate.mw,
        "std_error": estimate.std_error,
        "ci_lower": estimate.ci_lower,
        "ci_upper": estimate.ci_upper,
        "residual_std": estimate.residual_std,
        "log10_moment": estimate.log10_moment,
        "n_measurements": estimate.n_measurements,
        "bands_used": ";".join(b.label for b in estimate.bands_used),
        "bands_excluded": ";".join(b.label for b in estimate.bands_excluded),
    }
