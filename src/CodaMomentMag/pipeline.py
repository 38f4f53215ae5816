#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Batch orchestrator of the coda calibration.

Drives the staged computation

    FITTING -> PATH_SOLVED -> SITE_SOLVED -> CURVE_BUILT -> MAGNITUDES_ESTIMATED -> DONE

over one measurement snapshot. Work items of a stage (one per measurement,
station/band or band) run on a thread pool and their tagged results are
collected by item key; a stage only starts once every item of the previous
stage has finished. Item failures are recorded and excluded, group failures
fail only their station, band or event, and every run ends with a complete
PipelineRun carrying its failure report.
"""

import logging
import sys
import threading
import uuid
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from tqdm import tqdm

from .config import Config
from .curve import build_calibration_curve, curve_residuals
from .errors import CalibrationError, ExclusionThresholdExceeded, IncompleteCalibration, InsufficientCoverage
from .magnitude import aggregate_event, estimate_band_magnitudes
from .models import (
    FrequencyBand,
    GroupFailure,
    ItemResult,
    Measurement,
    PipelineRun,
    RunState,
    StageProgress,
)
from .path import estimate_event_levels, path_residuals, solve_path
from .shape import fit_band_shape, fit_shape
from .site import observations_from_fits, solve_site_terms
from .uncertainty import build_uncertainty_report

logger = logging.getLogger("coda_mw_calc")

ProgressCallback = Callable[[StageProgress], None]


def _guarded(stage: str, func: Callable, key: Any, args: tuple) -> ItemResult:
    """ Run one work item, turning calibration errors into a failed ItemResult. """
    try:
        return ItemResult(key=key, value=func(*args), stage=stage)
    except CalibrationError as e:
        return ItemResult(key=key, error=e, stage=stage)


class _RunCancelled(Exception):
    """Raised inside the orchestrator when a stage observed a cancel request."""


class CalibrationPipeline:
    """
    Runs the full calibration over a measurement snapshot.

    Args:
        config (Config): Configuration, copied at construction; later changes to
            the passed object do not affect the pipeline.
        progress_callback (Callable[[StageProgress], None], optional): Called from the
            orchestrating thread with (stage, completed, failed, total) after every item.
        max_workers (int, optional): Worker threads, defaults to the pipeline configuration.
        show_progress (bool, optional): Show tqdm bars on stderr, defaults to the pipeline configuration.
    """

    def __init__(
        self,
        config: Config,
        progress_callback: Optional[ProgressCallback] = None,
        max_workers: Optional[int] = None,
        show_progress: Optional[bool] = None,
        ):
        self.config = config.copy()
        self.progress_callback = progress_callback
        self.max_workers = max_workers if max_workers is not None else self.config.pipeline.MAX_WORKERS
        self.show_progress = show_progress if show_progress is not None else self.config.pipeline.SHOW_PROGRESS
        self._cancel_event = threading.Event()

    def cancel(self) -> None:
        """ Request cancellation; in-flight items finish and the current stage is discarded. """
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def _report(self, run: "_RunBuilder", progress: StageProgress) -> None:
        run.progress[progress.stage] = progress
        if self.progress_callback is not None:
            self.progress_callback(progress)

    def _run_stage(self, run: "_RunBuilder", stage: str, items: Mapping[Any, tuple], func: Callable) -> Dict[Any, ItemResult]:
        """
        Fan the items of one stage out to the worker pool and wait for all of them.

        Returns:
            Dict[Any, ItemResult]: Results in the order of ``items``.

        Raises:
            _RunCancelled: If cancellation was requested while the stage ran.
        """
        total = len(items)
        results: Dict[Any, ItemResult] = {}
        failed = 0
        self._report(run, StageProgress(stage, 0, 0, total))
        with tqdm(
            total=total,
            file=sys.stderr,
            position=0,
            leave=True,
            desc=f"{stage.title()}",
            bar_format="{l_bar}{bar}| {n_fmt}/{total_fmt} [{elapsed}<{remaining}, {rate_fmt}{postfix}]",
            ncols=80,
            smoothing=0.1,
            disable=not self.show_progress,
        ) as pbar, ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {executor.submit(_guarded, stage, func, key, args): key for key, args in items.items()}
            for future in as_completed(futures):
                result = future.result()
                results[futures[future]] = result
                if not result.ok:
                    failed += 1
                    logger.warning(f"{stage}: {result.kind} for {result.key}: {result.error.message}")
                pbar.set_postfix({"Failed": failed})
                pbar.update(1)
                self._report(run, StageProgress(stage, len(results), failed, total))
                if self._cancel_event.is_set():
                    for pending in futures:
                        pending.cancel()
                    break
        if self._cancel_event.is_set():
            logger.warning(f"{stage}: cancelled after {len(results)} of {total} items, stage results discarded")
            raise _RunCancelled(stage)
        return {key: results[key] for key in items}

    def run(self, measurements: Iterable[Measurement], reference_mws: Optional[Mapping[str, float]] = None) -> PipelineRun:
        """
        Run the calibration over one measurement snapshot.

        Args:
            measurements (Iterable[Measurement]): Input snapshot, read once at run start.
            reference_mws (Mapping[str, float], optional): Event id to reference Mw used
                to tie the calibration curves to absolute moment.

        Returns:
            PipelineRun: Outputs of every completed stage, failures, progress and final state.

        Raises:
            ConfigurationError: If the configuration is invalid, before any computation.
        """
        config = self.config.copy()
        config.validate()
        self._cancel_event.clear()

        snapshot = self._snapshot(measurements)
        run = _RunBuilder(uuid.uuid4().hex, config, snapshot, dict(reference_mws) if reference_mws else {})
        logger.info(f"Run {run.run_id}: {len(snapshot)} measurements, {len({m.band for m in snapshot})} bands")

        stages = [
            (RunState.FITTING, self._fitting_stage),
            (RunState.PATH_SOLVED, self._path_stage),
            (RunState.SITE_SOLVED, self._site_stage),
            (RunState.CURVE_BUILT, self._curve_stage),
            (RunState.MAGNITUDES_ESTIMATED, self._magnitude_stage),
        ]
        try:
            for state, stage in stages:
                if self._cancel_event.is_set():
                    raise _RunCancelled(state.value)
                stage(run)
                run.history.append(state)
                if not run.active_bands:
                    logger.error(f"Run {run.run_id}: no band survived stage {state.value}")
                    return run.finish(RunState.FAILED)
            run.uncertainty = self._uncertainty_report(run)
        except _RunCancelled:
            return run.finish(RunState.CANCELLED)
        except Exception as e:
            logger.error(f"Run {run.run_id}: unexpected error, run failed: {e}", exc_info=True)
            run.group_failures.append(GroupFailure("RUN", None, type(e).__name__, str(e)))
            return run.finish(RunState.FAILED)

        return run.finish(RunState.DONE)

    @staticmethod
    def _snapshot(measurements: Iterable[Measurement]) -> Tuple[Measurement, ...]:
        """ Valid measurements with unique keys, first occurrence kept. """
        snapshot = {}
        n_invalid = 0
        for measurement in measurements:
            if not measurement.valid:
                n_invalid += 1
                continue
            if measurement.key in snapshot:
                logger.warning(f"Duplicate measurement {measurement.key} ignored")
                continue
            snapshot[measurement.key] = measurement
        if n_invalid:
            logger.info(f"{n_invalid} measurements flagged invalid were skipped")
        return tuple(snapshot.values())

    def _fitting_stage(self, run: "_RunBuilder") -> None:
        config = run.config
        results = self._run_stage(run, "FITTING", {m.key: (m, config.shape) for m in run.snapshot}, fit_shape)

        fits = {key: r.value for key, r in results.items() if r.ok}
        failures = [r for r in results.values() if not r.ok]

        # exclusion rate per (station, band)
        counts: Dict[Tuple[str, FrequencyBand], List[int]] = defaultdict(lambda: [0, 0])
        for key, result in results.items():
            group = (key[1], key[2])
            counts[group][0] += 1
            counts[group][1] += 0 if result.ok else 1
        bands = sorted({m.band for m in run.snapshot})
        failed_bands = set()
        for (station, band), (total, n_failed) in sorted(counts.items()):
            rate = n_failed / total
            if rate > config.pipeline.MAX_EXCLUSION_RATE:
                error = ExclusionThresholdExceeded(
                    f"Station {station} band {band}: {n_failed} of {total} measurements excluded "
                    f"({rate:.0%} > {config.pipeline.MAX_EXCLUSION_RATE:.0%})",
                    group=band,
                )
                run.fail_group("FITTING", band, error)
                failed_bands.add(band)

        band_shapes = {}
        for band in bands:
            if band in failed_bands:
                continue
            band_fits = [f for f in fits.values() if f.band == band]
            try:
                band_shapes[band] = fit_band_shape(band_fits, band, config.shape)
            except CalibrationError as e:
                run.fail_group("FITTING", band, e)

        run.shape_fits = fits
        run.item_failures = failures
        run.band_shapes = band_shapes
        run.active_bands = sorted(band_shapes)

    def _path_stage(self, run: "_RunBuilder") -> None:
        config = run.config
        fits_by_band = run.fits_by_band()
        items = {}
        for band in run.active_bands:
            levels = estimate_event_levels(fits_by_band[band], band, config.path)
            if not levels:
                logger.warning(f"Band {band}: no event shared between covered stations, path regression keeps source levels")
            run.event_levels[band] = levels or None
            for station in sorted({f.station for f in fits_by_band[band]}):
                station_fits = [f for f in fits_by_band[band] if f.station == station]
                items[(station, band)] = (station_fits, station, band, config.path, run.event_levels[band])
        results = self._run_stage(run, "PATH", items, solve_path)

        paths = {}
        for key, result in results.items():
            if result.ok:
                paths[key] = result.value
            else:
                run.fail_group("PATH", key, result.error)
        for band in list(run.active_bands):
            if not any(b == band for _, b in paths):
                run.fail_group("PATH", band, InsufficientCoverage(f"Band {band}: no station has a path correction", group=band))
                run.active_bands.remove(band)
        run.path_corrections = paths

    def _site_stage(self, run: "_RunBuilder") -> None:
        config = run.config
        fits_by_band = run.fits_by_band()
        items = {}
        for band in run.active_bands:
            observations = observations_from_fits(fits_by_band[band], run.band_paths(band))
            items[band] = (observations, band, config.site, config.uncertainty)
        results = self._run_stage(run, "SITE", items, solve_site_terms)

        solutions = {}
        for band, result in results.items():
            if result.ok:
                solutions[band] = result.value
            else:
                run.fail_group("SITE", band, result.error)
                run.active_bands.remove(band)
        run.site_solutions = solutions

    def _curve_stage(self, run: "_RunBuilder") -> None:
        config = run.config
        fits_by_band = run.fits_by_band()
        items = {}
        for band in run.active_bands:
            band_paths = run.band_paths(band)
            covered = [f for f in fits_by_band[band] if f.station in band_paths]
            items[band] = (
                band, covered, run.band_shapes[band], band_paths, run.site_solutions[band],
                config.magnitude, run.reference_mws,
            )
        results = self._run_stage(run, "CURVE", items, build_calibration_curve)

        curves = {}
        for band, result in results.items():
            if result.ok:
                curves[band] = result.value
            else:
                run.fail_group("CURVE", band, result.error)
                run.active_bands.remove(band)
        run.curves = curves

    def _magnitude_stage(self, run: "_RunBuilder") -> None:
        config = run.config
        items = {}
        uncalibrated = []
        for band in run.active_bands:
            curve = run.curves[band]
            band_measurements = []
            for m in run.snapshot:
                if m.band != band or m.key not in run.shape_fits:
                    continue
                if m.station not in curve.sites:
                    uncalibrated.append((m.key, IncompleteCalibration(
                        f"Measurement {m.key}: station {m.station} has no path or site correction in band {band}",
                        group=m.key,
                    )))
                    continue
                band_measurements.append(m)
            items[band] = (band_measurements, curve, config.magnitude, config.uncertainty)
        results = self._run_stage(run, "MAGNITUDE", items, estimate_band_magnitudes)
        for key, error in uncalibrated:
            run.exclude_item("MAGNITUDE", key, error)

        band_estimates = {}
        for band, result in results.items():
            if result.ok:
                band_estimates.update(result.value)
            else:
                run.fail_group("MAGNITUDE", band, result.error)
                run.active_bands.remove(band)

        by_event = defaultdict(list)
        for (event_id, _), estimate in band_estimates.items():
            by_event[event_id].append(estimate)
        event_results = self._run_stage(
            run, "EVENTS",
            {event_id: (event_id, estimates, config.magnitude, config.uncertainty) for event_id, estimates in sorted(by_event.items())},
            aggregate_event,
        )
        event_estimates = {}
        for event_id, result in event_results.items():
            if result.ok:
                event_estimates[event_id] = result.value
            else:
                run.fail_group("MAGNITUDE", event_id, result.error)
        run.band_estimates = band_estimates
        run.event_estimates = event_estimates

    @staticmethod
    def _uncertainty_report(run: "_RunBuilder") -> Dict[str, Any]:
        """ Residual summaries of every stage, per band. """
        fits_by_band = run.fits_by_band()
        residuals: Dict[str, Dict[FrequencyBand, List[float]]] = defaultdict(dict)
        for band in run.active_bands:
            band_fits = fits_by_band[band]
            residuals["shape_rms"][band] = [f.rms for f in band_fits]
            residuals["path"][band] = [
                r
                for (station, b), correction in run.path_corrections.items() if b == band
                for r in path_residuals(
                    [f for f in band_fits if f.station == station], correction, run.event_levels.get(band)
                )
            ]
            solution = run.site_solutions[band]
            residuals["site"][band] = list(solution.residuals)
            residuals["curve"][band] = list(curve_residuals(run.curves[band], band_fits, solution.event_terms))
            residuals["magnitude"][band] = [
                estimate.mw - run.event_estimates[event_id].mw
                for (event_id, b), estimate in run.band_estimates.items()
                if b == band and event_id in run.event_estimates
            ]
        return build_uncertainty_report(residuals, run.config.uncertainty)


class _RunBuilder:
    """ Mutable accumulator of one run, frozen into a PipelineRun at the end. """

    def __init__(self, run_id: str, config: Config, snapshot: Tuple[Measurement, ...], reference_mws: Dict[str, float]):
        self.run_id = run_id
        self.config = config
        self.snapshot = snapshot
        self.reference_mws = reference_mws
        self.n_measurements = len(snapshot)
        self.shape_fits = {}
        self.band_shapes = {}
        self.path_corrections = {}
        self.event_levels: Dict[FrequencyBand, Optional[Dict[str, float]]] = {}
        self.site_solutions = {}
        self.curves = {}
        self.band_estimates = {}
        self.event_estimates = {}
        self.item_failures = []
        self.group_failures: List[GroupFailure] = []
        self.progress: Dict[str, StageProgress] = {}
        self.history: List[RunState] = [RunState.PENDING]
        self.uncertainty = {}
        self.active_bands: List[FrequencyBand] = []

    def fail_group(self, stage: str, group: Any, error: CalibrationError) -> None:
        logger.error(f"{stage}: group {group} failed with {error.kind}: {error.message}")
        self.group_failures.append(GroupFailure(stage, group, error.kind, error.message))

    def exclude_item(self, stage: str, key: Any, error: CalibrationError) -> None:
        logger.warning(f"{stage}: {error.kind} for {key}: {error.message}")
        self.item_failures.append(ItemResult(key=key, error=error, stage=stage))

    def fits_by_band(self) -> Dict[FrequencyBand, list]:
        grouped = defaultdict(list)
        for fit in self.shape_fits.values():
            grouped[fit.band].append(fit)
        return grouped

    def band_paths(self, band: FrequencyBand) -> Dict[str, Any]:
        return {station: p for (station, b), p in self.path_corrections.items() if b == band}

    def finish(self, state: RunState) -> PipelineRun:
        if state is RunState.CANCELLED:
            logger.warning(f"Run {self.run_id}: cancelled after {self.history[-1].value}")
        history = tuple(self.history) + (state,)
        logger.info(
            f"Run {self.run_id} finished {state.value}: {len(self.curves)} curves, "
            f"{len(self.event_estimates)} event magnitudes, {len(self.item_failures)} item failures, "
            f"{len(self.group_failures)} group failures"
        )
        return PipelineRun(
            run_id=self.run_id,
            state=state,
            config=self.config,
            n_measurements=self.n_measurements,
            shape_fits=dict(self.shape_fits),
            band_shapes=dict(self.band_shapes),
            path_corrections=dict(self.path_corrections),
            site_solutions=dict(self.site_solutions),
            curves=dict(self.curves),
            band_estimates=dict(self.band_estimates),
            event_estimates=dict(self.event_estimates),
            item_failures=tuple(self.item_failures),
            group_failures=tuple(self.group_failures),
            progress=tuple(self.progress.values()),
            history=history,
            uncertainty=self.uncertainty,
        )
