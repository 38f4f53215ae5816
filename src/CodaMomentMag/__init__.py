"""
CodaMomentMag: A Python package for calibrating coda envelope amplitudes and estimating moment magnitude.

This package fits coda decay shapes, solves per-station path and site corrections,
builds per-band calibration curves and converts corrected amplitudes into moment magnitudes.
For coder use, import 'calibrate' or 'reload_configuration' from this module.
For command-liner use, run 'CodaMwCalc'.

Example:
    >>> from CodaMomentMag import calibrate
    >>> run = calibrate(
    ...         measurement_file="user_dir/data/envelopes.csv",
    ...         reference_file="user_dir/data/reference_mw.csv",
    ...         config_file="user_dir/config.ini"
    ...         )
    >>> run.to_dataframes()["event_magnitudes"]
"""

from .main import main
from .api import calibrate, reload_configuration
from .pipeline import CalibrationPipeline

__version__ = "1.0.0"
__author__ = "Arham Zakki Edelo"
__email__ = "edelo.arham@gmail.com"
__all__ = [
    "main",
    "calibrate",
    "reload_configuration",
    "CalibrationPipeline",
    ]
