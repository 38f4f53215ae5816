"""
Library entry points of CodaMomentMag.

Example:
    >>> from CodaMomentMag import calibrate
    >>> run = calibrate(measurement_file="data/envelopes.csv", reference_file="data/reference_mw.csv")
    >>> tables = run.to_dataframes()
"""

import logging
from pathlib import Path
from typing import Iterable, Mapping, Optional

from .catalog import read_measurement_table, read_reference_mws
from .config import CONFIG, Config
from .models import Measurement, PipelineRun
from .pipeline import CalibrationPipeline, ProgressCallback

logger = logging.getLogger("coda_mw_calc")


def reload_configuration(config_file: Path) -> None:
    """
    Reload the package default configuration from an INI file.

    Raises:
        FileNotFoundError: If the configuration file does not exist.
        ValueError: If a value in the file cannot be parsed.
    """
    CONFIG.reload(config_file)
    logger.info(f"Configuration reloaded from {config_file}")


def calibrate(
    measurements: Optional[Iterable[Measurement]] = None,
    measurement_file: Optional[Path] = None,
    reference_mws: Optional[Mapping[str, float]] = None,
    reference_file: Optional[Path] = None,
    config: Optional[Config] = None,
    config_file: Optional[Path] = None,
    progress_callback: Optional[ProgressCallback] = None,
    max_workers: Optional[int] = None,
    show_progress: Optional[bool] = None,
    ) -> PipelineRun:
    """
    Run the full coda calibration.

    Args:
        measurements (Iterable[Measurement], optional): Measurements, or
        measurement_file (Path, optional): a long-format envelope table to read them from.
        reference_mws (Mapping[str, float], optional): Event id to reference Mw, or
        reference_file (Path, optional): a table with event_id and mw columns.
        config (Config, optional): Configuration; defaults to the package configuration.
        config_file (Path, optional): INI file loaded on top of a fresh default configuration.
        progress_callback (Callable, optional): Receives StageProgress updates.
        max_workers (int, optional): Worker threads.
        show_progress (bool, optional): Show tqdm progress bars.

    Returns:
        PipelineRun: Complete run record.

    Raises:
        ValueError: If neither or both of measurements and measurement_file are given.
        ConfigurationError: If the configuration is invalid.
    """
    if (measurements is None) == (measurement_file is None):
        raise ValueError("Provide exactly one of measurements or measurement_file")
    if measurement_file is not None:
        measurements = read_measurement_table(measurement_file)
    if reference_file is not None:
        reference_mws = read_reference_mws(reference_file)

    if config_file is not None:
        config = Config()
        config.reload(config_file)
    elif config is None:
        config = CONFIG

    pipeline = CalibrationPipeline(
        config, progress_callback=progress_callback, max_workers=max_workers, show_progress=show_progress
    )
    return pipeline.run(measurements, reference_mws)
