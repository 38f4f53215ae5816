#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Diagnostic figures of a calibration run.

Pre-requisite modules:
->[matplotlib, numpy, pathlib]
"""

import logging
from pathlib import Path
from typing import List

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np

from .models import Measurement, PipelineRun, ShapeFit
from .shape import model_log10_amplitude

logger = logging.getLogger("coda_mw_calc")


def plot_shape_fit(measurement: Measurement, fit: ShapeFit, figure_path: Path) -> Path:
    """
    Plot an envelope against its fitted decay model.

    Args:
        measurement (Measurement): Envelope samples.
        fit (ShapeFit): Fit of the measurement.
        figure_path (Path): Directory to save the plot.

    Returns:
        Path: Saved figure file.
    """
    usable = (measurement.times > 0) & (measurement.amplitudes > 0)
    times = measurement.times[usable]
    fig, ax = plt.subplots(figsize=(8, 5))
    ax.plot(times, np.log10(measurement.amplitudes[usable]), "k.", label="Envelope")
    ax.plot(times, model_log10_amplitude(times, fit.log10_a0, fit.nu, fit.gamma), "r-",
            label=f"Fit: nu={fit.nu:.3f}, gamma={fit.gamma:.4f}, rms={fit.rms:.3f}")
    ax.set_xlabel("Time since origin (s)")
    ax.set_ylabel("log10 amplitude")
    ax.set_title(f"{measurement.event_id} {measurement.station} {measurement.band} Hz {measurement.component}")
    ax.legend()
    ax.grid(True, linestyle=":")

    figure_path = Path(figure_path)
    figure_path.mkdir(parents=True, exist_ok=True)
    output = figure_path / f"shape_{measurement.event_id}_{measurement.station}_{measurement.band.label}_{measurement.component}.png"
    fig.savefig(output, dpi=100)
    plt.close(fig)
    return output


def plot_site_terms(run: PipelineRun, figure_path: Path) -> List[Path]:
    """
    Plot the site terms of every solved band with their uncertainty.

    Args:
        run (PipelineRun): Run holding the site solutions.
        figure_path (Path): Directory to save the plots.

    Returns:
        List[Path]: One figure per band.
    """
    figure_path = Path(figure_path)
    figure_path.mkdir(parents=True, exist_ok=True)
    outputs = []
    for band, solution in sorted(run.site_solutions.items()):
        stations = sorted(solution.corrections)
        terms = [solution.corrections[s].term for s in stations]
        errors = [np.nan_to_num(solution.corrections[s].uncertainty) for s in stations]

        fig, ax = plt.subplots(figsize=(max(6, len(stations) * 0.6), 4))
        ax.errorbar(range(len(stations)), terms, yerr=errors, fmt="o", color="k", capsize=3)
        ax.axhline(0.0, color="gray", linestyle="--")
        ax.set_xticks(range(len(stations)))
        ax.set_xticklabels(stations, rotation=45, ha="right")
        ax.set_ylabel("Site term (log10)")
        ax.set_title(f"Site terms {band} Hz, {len(solution.clusters)} cluster(s)")
        fig.tight_layout()

        output = figure_path / f"site_terms_{band.label}.png"
        fig.savefig(output, dpi=100)
        plt.close(fig)
        outputs.append(output)
    logger.info(f"Saved {len(outputs)} site term figures to {figure_path}")
    return outputs


def plot_event_magnitudes(run: PipelineRun, figure_path: Path) -> Path:
    """ Band magnitudes of every event next to the aggregated event value. """
    figure_path = Path(figure_path)
    figure_path.mkdir(parents=True, exist_ok=True)
    events = sorted(run.event_estimates)
    fig, ax = plt.subplots(figsize=(max(6, len(events) * 0.6), 4))
    for (event_id, band), estimate in sorted(run.band_estimates.items()):
        if event_id in run.event_estimates:
            ax.plot(events.index(event_id), estimate.mw, ".", color="gray")
    ax.errorbar(
        range(len(events)),
        [run.event_estimates[e].mw for e in events],
        yerr=[np.nan_to_num(run.event_estimates[e].std_error) for e in events],
        fmt="o", color="r", capsize=3, label="Event Mw",
    )
    ax.set_xticks(range(len(events)))
    ax.set_xticklabels(events, rotation=45, ha="right")
    ax.set_ylabel("Mw")
    ax.legend()
    fig.tight_layout()
    output = figure_path / "event_magnitudes.png"
    fig.savefig(output, dpi=100)
    plt.close(fig)
    return output
