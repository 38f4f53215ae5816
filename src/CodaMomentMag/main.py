#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Main entry point for the CodaMomentMag package.

Runs the complete coda calibration over an envelope measurement table and
writes the calibration and magnitude tables as CSV files.

Dependencies:
    - pandas: For measurement and result tables.
    - numpy: For numerical calculation.
    - scipy: For optimization and sparse inversion.
    - obspy: For epicentral distances.
    - matplotlib: For generating figures.
    - tqdm: For progress feedback

Usage:
    CodaMwCalc --measurements data/envelopes.csv
    CodaMwCalc --measurements data/envelopes.csv --reference-mw data/reference_mw.csv --config path/to/new_config.ini
"""

import sys
import argparse
import logging
from pathlib import Path
from typing import Optional, List

from .config import CONFIG
from .catalog import read_measurement_table, read_reference_mws
from .errors import ConfigurationError
from .models import RunState
from .pipeline import CalibrationPipeline
from .plotting import plot_event_magnitudes, plot_site_terms

logger = logging.getLogger("coda_mw_calc")


def main(args: Optional[List[str]] = None) -> None:
    """
    Calibrate coda amplitudes and estimate moment magnitudes.

    This function serves as the entry point for the CodaMwCalc command-line tool.
    It parses arguments, loads the measurement table, runs the calibration and
    saves one CSV file per result table.

    Args:
        args (List[str], Optional): Command-line arguments. Defaults to sys.argv[1:] if None.

    Returns:
        None: This function saves results to CSV files and logs the process.

    Raises:
        FileNotFoundError: If required input paths do not exist.
        PermissionError: If directories cannot be created.
        ConfigurationError: If the configuration is invalid.
        RuntimeError: If the run does not complete or results cannot be saved.
    """
    parser = argparse.ArgumentParser(description="Calibrate coda envelopes and estimate moment magnitudes.")
    parser.add_argument(
        "--measurements",
        type=Path,
        default="data/envelopes.csv",
        help="Long-format envelope measurement table (CSV or Excel)")
    parser.add_argument(
        "--reference-mw",
        type=Path,
        help="Reference moment magnitude table with event_id and mw columns")
    parser.add_argument(
        "--output-dir",
        type=Path,
        default="results",
        help="Output directory for results")
    parser.add_argument(
        "--fig-dir",
        type=Path,
        help="Directory to save diagnostic figures, no figures when omitted")
    parser.add_argument(
        "--workers",
        type=int,
        help="Number of worker threads")
    parser.add_argument(
        "--config",
        type=Path,
        help="Path to custom config.ini file to reload")
    parser.add_argument(
        "--log-file",
        type=Path,
        default="coda_runtime.log",
        help="Runtime log file")
    args = parser.parse_args(args if args is not None else sys.argv[1:])

    logging.basicConfig(
        filename=args.log_file,
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    # Log input parameters.
    logger.info("Starting coda calibration with the following parameters:")
    logger.info(f"Measurement table: {args.measurements}")
    logger.info(f"Reference Mw table: {args.reference_mw}")
    logger.info(f"Output directory: {args.output_dir}")
    logger.info(f"Figure directory: {args.fig_dir}")

    # Reload configuration if specified
    if args.config and args.config.exists():
        try:
            CONFIG.reload(args.config)
            logger.info(f"Configuration reloaded successfully from {args.config}")
        except (FileNotFoundError, ValueError) as e:
            logger.error(f"Failed to reload configuration: {e}")
            raise
    elif args.config and not args.config.exists():
        logger.warning(f"Config file {args.config} not found, using default configuration")
    else:
        logger.info("Using default configuration from config.ini")

    # Validate input paths
    for path in [args.measurements, args.reference_mw]:
        if path is not None and not path.exists():
            logger.error(f"Path not found: {path}")
            raise FileNotFoundError(f"Path not found: {path}")

    # Create output directories
    try:
        args.output_dir.mkdir(parents=True, exist_ok=True)
        if args.fig_dir:
            args.fig_dir.mkdir(parents=True, exist_ok=True)
    except PermissionError as e:
        logger.error(f"Permission denied creating directories: {e}")
        raise

    measurements = read_measurement_table(args.measurements)
    reference_mws = read_reference_mws(args.reference_mw) if args.reference_mw else None

    try:
        pipeline = CalibrationPipeline(CONFIG, max_workers=args.workers, show_progress=True)
        run = pipeline.run(measurements, reference_mws)
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e.message}")
        raise

    # save result tables
    try:
        for name, df in run.to_dataframes().items():
            df.to_csv(args.output_dir / f"{name}.csv", index=False)
    except OSError as e:
        logger.error(f"Failed to save results: {e}")
        raise RuntimeError(f"Failed to save results: {e}") from e

    if args.fig_dir and run.site_solutions:
        plot_site_terms(run, args.fig_dir)
        if run.event_estimates:
            plot_event_magnitudes(run, args.fig_dir)

    logger.info(f"Results saved to {args.output_dir}")
    sys.stdout.write(
        f"Run {run.run_id} finished {run.state.value}: {len(run.curves)} calibrated bands, "
        f"{len(run.event_estimates)} event magnitudes, {len(run.item_failures)} excluded measurements, "
        f"{len(run.group_failures)} failed groups. Results in {args.output_dir}\n"
    )
    if run.state is not RunState.DONE:
        raise RuntimeError(f"Calibration run ended {run.state.value}, see {args.output_dir / 'failures.csv'}")

    return None


if __name__ == "__main__":
    main()
