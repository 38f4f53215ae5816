import copy
from dataclasses import dataclass
from configparser import ConfigParser
from typing import Dict
from pathlib import Path

from .errors import ConfigurationError
from .models import FrequencyBand


@dataclass
class ShapeConfig:
    """ Class of coda shape fitting parameters with defaults. """
    MIN_SAMPLES: int = 5
    OUTLIER_SIGMA: float = 3.0
    OUTLIER_WEIGHT: float = 0.0
    MAX_REWEIGHT_PASSES: int = 2
    MAX_ITERATIONS: int = 200
    MIN_LOG_VARIANCE: float = 1e-10
    RESIDUAL_SPACE: str = "log"
    DISTANCE_MODEL: str = "constant"
    MIN_CURVE_POINTS: int = 20


@dataclass
class PathConfig:
    """ Class of path correction parameters with defaults. """
    MIN_EVENTS: int = 3
    METHOD: str = "ols"
    USE_DEPTH: bool = False
    REFERENCE_DISTANCE_KM: float = 1.0
    REFERENCE_DEPTH_KM: float = 0.0
    HUBER_K: float = 1.345
    MAX_IRLS_PASSES: int = 10
    DENSE_LIMIT: int = 2000
    LSQR_TOL: float = 1e-12


@dataclass
class SiteConfig:
    """ Class of site inversion parameters with defaults. """
    NORMALIZATION: str = "mean"
    REFERENCE_STATION: str = ""
    REQUIRE_CONNECTED: bool = False
    DENSE_LIMIT: int = 2000
    LSQR_TOL: float = 1e-12


@dataclass
class MagnitudeConfig:
    """ Class of magnitude scaling and band aggregation parameters with defaults. """
    MW_SLOPE: float = 2.0 / 3.0
    MW_INTERCEPT: float = -6.07
    MOMENT_OFFSET: float = 0.0
    BAND_MOMENT_OFFSETS: Dict[FrequencyBand, float] = None # Initialized in __post_init__
    BAND_MAD_MULTIPLIER: float = 3.0
    BAND_MAD_FLOOR: float = 0.05
    MIN_REFERENCE_EVENTS: int = 1

    def __post_init__(self):
        if self.BAND_MOMENT_OFFSETS is None:
            self.BAND_MOMENT_OFFSETS = {}

    def moment_offset(self, band: FrequencyBand) -> float:
        return self.BAND_MOMENT_OFFSETS.get(band, self.MOMENT_OFFSET)


@dataclass
class UncertaintyConfig:
    """ Class of uncertainty estimation parameters with defaults. """
    METHOD: str = "analytic"
    CONFIDENCE_LEVEL: float = 0.95
    N_RESAMPLES: int = 500
    SEED: int = 0


@dataclass
class PipelineConfig:
    """ Class of batch orchestration parameters with defaults. """
    MAX_WORKERS: int = 4
    MAX_EXCLUSION_RATE: float = 0.5
    SHOW_PROGRESS: bool = False


def _parse_band_offsets(text: str) -> Dict[FrequencyBand, float]:
    """ Parse ``"1-2:0.3, 2-4:0.1"`` into a band to moment offset mapping. """
    offsets = {}
    for item in text.split(","):
        if not item.strip():
            continue
        label, _, value = item.partition(":")
        offsets[FrequencyBand.from_label(label)] = float(value)
    return offsets


class Config:
    """ Combines shape, path, site, magnitude, uncertainty and pipeline configurations. """
    def __init__(self):
        self.shape = ShapeConfig()
        self.path = PathConfig()
        self.site = SiteConfig()
        self.magnitude = MagnitudeConfig()
        self.uncertainty = UncertaintyConfig()
        self.pipeline = PipelineConfig()

    def load_from_file(self, config_file: str = None) -> None:
        """Load configuration from an INI file, with fallback to defaults."""
        config = ConfigParser()
        if config_file is None:
            config_file = Path(__file__).parent / "config.ini"
        if not config.read(config_file):
            return

        # load shape config section
        if "Shape" in config:
            shape_section = config["Shape"]
            self.shape.MIN_SAMPLES = shape_section.getint("min_samples", fallback=self.shape.MIN_SAMPLES)
            self.shape.OUTLIER_SIGMA = shape_section.getfloat("outlier_sigma", fallback=self.shape.OUTLIER_SIGMA)
            self.shape.OUTLIER_WEIGHT = shape_section.getfloat("outlier_weight", fallback=self.shape.OUTLIER_WEIGHT)
            self.shape.MAX_REWEIGHT_PASSES = shape_section.getint("max_reweight_passes", fallback=self.shape.MAX_REWEIGHT_PASSES)
            self.shape.MAX_ITERATIONS = shape_section.getint("max_iterations", fallback=self.shape.MAX_ITERATIONS)
            self.shape.MIN_LOG_VARIANCE = shape_section.getfloat("min_log_variance", fallback=self.shape.MIN_LOG_VARIANCE)
            self.shape.RESIDUAL_SPACE = shape_section.get("residual_space", fallback=self.shape.RESIDUAL_SPACE).strip().lower()
            self.shape.DISTANCE_MODEL = shape_section.get("distance_model", fallback=self.shape.DISTANCE_MODEL).strip().lower()
            self.shape.MIN_CURVE_POINTS = shape_section.getint("min_curve_points", fallback=self.shape.MIN_CURVE_POINTS)

        # load path config section
        if "Path" in config:
            path_section = config["Path"]
            self.path.MIN_EVENTS = path_section.getint("min_events", fallback=self.path.MIN_EVENTS)
            self.path.METHOD = path_section.get("method", fallback=self.path.METHOD).strip().lower()
            self.path.USE_DEPTH = path_section.getboolean("use_depth", fallback=self.path.USE_DEPTH)
            self.path.REFERENCE_DISTANCE_KM = path_section.getfloat("reference_distance_km", fallback=self.path.REFERENCE_DISTANCE_KM)
            self.path.REFERENCE_DEPTH_KM = path_section.getfloat("reference_depth_km", fallback=self.path.REFERENCE_DEPTH_KM)
            self.path.HUBER_K = path_section.getfloat("huber_k", fallback=self.path.HUBER_K)
            self.path.MAX_IRLS_PASSES = path_section.getint("max_irls_passes", fallback=self.path.MAX_IRLS_PASSES)
            self.path.DENSE_LIMIT = path_section.getint("dense_limit", fallback=self.path.DENSE_LIMIT)
            self.path.LSQR_TOL = path_section.getfloat("lsqr_tol", fallback=self.path.LSQR_TOL)

        # load site config section
        if "Site" in config:
            site_section = config["Site"]
            self.site.NORMALIZATION = site_section.get("normalization", fallback=self.site.NORMALIZATION).strip().lower()
            self.site.REFERENCE_STATION = site_section.get("reference_station", fallback=self.site.REFERENCE_STATION).strip()
            self.site.REQUIRE_CONNECTED = site_section.getboolean("require_connected", fallback=self.site.REQUIRE_CONNECTED)
            self.site.DENSE_LIMIT = site_section.getint("dense_limit", fallback=self.site.DENSE_LIMIT)
            self.site.LSQR_TOL = site_section.getfloat("lsqr_tol", fallback=self.site.LSQR_TOL)

        # load magnitude config section
        if "Magnitude" in config:
            mag_section = config["Magnitude"]
            self.magnitude.MW_SLOPE = mag_section.getfloat("mw_slope", fallback=self.magnitude.MW_SLOPE)
            self.magnitude.MW_INTERCEPT = mag_section.getfloat("mw_intercept", fallback=self.magnitude.MW_INTERCEPT)
            self.magnitude.MOMENT_OFFSET = mag_section.getfloat("moment_offset", fallback=self.magnitude.MOMENT_OFFSET)
            self.magnitude.BAND_MOMENT_OFFSETS = _parse_band_offsets(mag_section.get("band_moment_offsets", fallback=""))
            self.magnitude.BAND_MAD_MULTIPLIER = mag_section.getfloat("band_mad_multiplier", fallback=self.magnitude.BAND_MAD_MULTIPLIER)
            self.magnitude.BAND_MAD_FLOOR = mag_section.getfloat("band_mad_floor", fallback=self.magnitude.BAND_MAD_FLOOR)
            self.magnitude.MIN_REFERENCE_EVENTS = mag_section.getint("min_reference_events", fallback=self.magnitude.MIN_REFERENCE_EVENTS)

        # load uncertainty config section
        if "Uncertainty" in config:
            unc_section = config["Uncertainty"]
            self.uncertainty.METHOD = unc_section.get("method", fallback=self.uncertainty.METHOD).strip().lower()
            self.uncertainty.CONFIDENCE_LEVEL = unc_section.getfloat("confidence_level", fallback=self.uncertainty.CONFIDENCE_LEVEL)
            self.uncertainty.N_RESAMPLES = unc_section.getint("n_resamples", fallback=self.uncertainty.N_RESAMPLES)
            self.uncertainty.SEED = unc_section.getint("seed", fallback=self.uncertainty.SEED)

        # load pipeline config section
        if "Pipeline" in config:
            pipe_section = config["Pipeline"]
            self.pipeline.MAX_WORKERS = pipe_section.getint("max_workers", fallback=self.pipeline.MAX_WORKERS)
            self.pipeline.MAX_EXCLUSION_RATE = pipe_section.getfloat("max_exclusion_rate", fallback=self.pipeline.MAX_EXCLUSION_RATE)
            self.pipeline.SHOW_PROGRESS = pipe_section.getboolean("show_progress", fallback=self.pipeline.SHOW_PROGRESS)

    def reload(self, config_file: str) -> None:
        """
        Reset to defaults and load a new INI file.

        Raises:
            FileNotFoundError: If the configuration file does not exist.
            ValueError: If a value in the file cannot be parsed.
        """
        if not Path(config_file).exists():
            raise FileNotFoundError(f"Configuration file not found: {config_file}")
        self.__init__()
        self.load_from_file(config_file)

    def copy(self) -> "Config":
        return copy.deepcopy(self)

    def validate(self) -> None:
        """
        Check that the configuration describes a solvable calibration.

        Raises:
            ConfigurationError: On the first invalid or degenerate setting found.
        """
        checks = [
            (self.shape.MIN_SAMPLES >= 3, "shape min_samples must be at least 3 (three model parameters)"),
            (self.shape.OUTLIER_SIGMA > 0, "shape outlier_sigma must be positive"),
            (0.0 <= self.shape.OUTLIER_WEIGHT < 1.0, "shape outlier_weight must be in [0, 1)"),
            (self.shape.MAX_REWEIGHT_PASSES >= 0, "shape max_reweight_passes cannot be negative"),
            (self.shape.MAX_ITERATIONS > 0, "shape max_iterations must be positive"),
            (self.shape.RESIDUAL_SPACE in ("log", "linear"), f"unknown shape residual_space '{self.shape.RESIDUAL_SPACE}'"),
            (self.shape.DISTANCE_MODEL in ("constant", "hyperbolic"), f"unknown shape distance_model '{self.shape.DISTANCE_MODEL}'"),
            (self.path.MIN_EVENTS >= (3 if self.path.USE_DEPTH else 2), "path min_events too small to constrain the regression"),
            (self.path.METHOD in ("ols", "theil_sen", "irls"), f"unknown path method '{self.path.METHOD}'"),
            (not (self.path.METHOD == "theil_sen" and self.path.USE_DEPTH), "theil_sen path regression does not support depth terms"),
            (self.path.REFERENCE_DISTANCE_KM > 0, "path reference_distance_km must be positive"),
            (self.path.HUBER_K > 0, "path huber_k must be positive"),
            (self.path.DENSE_LIMIT > 0, "path dense_limit must be positive"),
            (self.site.NORMALIZATION in ("mean", "reference"), f"unknown site normalization '{self.site.NORMALIZATION}'"),
            (self.site.NORMALIZATION != "reference" or bool(self.site.REFERENCE_STATION),
             "site normalization 'reference' requires a reference_station"),
            (self.site.DENSE_LIMIT > 0, "site dense_limit must be positive"),
            (self.magnitude.MW_SLOPE != 0, "magnitude mw_slope cannot be zero"),
            (self.magnitude.BAND_MAD_MULTIPLIER > 0, "magnitude band_mad_multiplier must be positive"),
            (self.magnitude.BAND_MAD_FLOOR >= 0, "magnitude band_mad_floor cannot be negative"),
            (self.magnitude.MIN_REFERENCE_EVENTS >= 1, "magnitude min_reference_events must be at least 1"),
            (self.uncertainty.METHOD in ("analytic", "bootstrap"), f"unknown uncertainty method '{self.uncertainty.METHOD}'"),
            (0.0 < self.uncertainty.CONFIDENCE_LEVEL < 1.0, "uncertainty confidence_level must be in (0, 1)"),
            (self.uncertainty.METHOD != "bootstrap" or self.uncertainty.N_RESAMPLES >= 10,
             "bootstrap uncertainty needs at least 10 resamples"),
            (self.pipeline.MAX_WORKERS >= 1, "pipeline max_workers must be at least 1"),
            (0.0 <= self.pipeline.MAX_EXCLUSION_RATE <= 1.0, "pipeline max_exclusion_rate must be in [0, 1]"),
        ]
        for passed, message in checks:
            if not passed:
                raise ConfigurationError(message)


# singleton instance for easy access
CONFIG = Config()
CONFIG.load_from_file()
