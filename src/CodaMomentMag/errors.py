"""
Exception taxonomy for the coda calibration pipeline.

Per-item errors (``InsufficientSamples``, ``FitDivergence``) are recovered by
excluding the item. Group errors (``InsufficientCoverage``,
``UnderdeterminedSystem``, ``IncompleteCalibration``, ``NoValidBands``,
``ExclusionThresholdExceeded``) fail only the station, band or event they are
raised for. ``ConfigurationError`` is fatal and is raised before any
computation starts.
"""

from typing import Any, Optional


class CalibrationError(Exception):
    """Base class of every error raised by the calibration core."""

    def __init__(self, message: str, group: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.group = group

    @property
    def kind(self) -> str:
        return type(self).__name__


class ConfigurationError(CalibrationError):
    """Invalid or degenerate configuration, detected at run start."""


class InsufficientSamples(CalibrationError):
    """A measurement has too few usable samples to constrain the decay model."""


class FitDivergence(CalibrationError):
    """The shape optimizer did not converge or produced a degenerate fit."""


class InsufficientCoverage(CalibrationError):
    """A station/band has fewer distinct events than the path solver needs."""


class UnderdeterminedSystem(CalibrationError):
    """The site inversion cannot resolve the requested station terms."""


class IncompleteCalibration(CalibrationError):
    """A station referenced by the band population lacks a correction term."""


class NoValidBands(CalibrationError):
    """Every band estimate of an event was excluded or missing."""


class ExclusionThresholdExceeded(CalibrationError):
    """Too many items of a group were excluded for the group to be trusted."""
