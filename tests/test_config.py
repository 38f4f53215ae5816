""" Unit test for config.py """

import pytest

from CodaMomentMag.config import CONFIG, Config
from CodaMomentMag.errors import ConfigurationError
from CodaMomentMag.models import FrequencyBand


@pytest.fixture
def custom_ini(tmp_path):
    "Fixture providing a configuration file overriding a few options."
    path = tmp_path / "custom.ini"
    path.write_text(
        "[Shape]\n"
        "min_samples = 8\n"
        "residual_space = Linear\n"
        "[Site]\n"
        "normalization = reference\n"
        "reference_station = STA2\n"
        "[Magnitude]\n"
        "moment_offset = 11.0\n"
        "band_moment_offsets = 1-2:10.5, 2-4:10.8\n"
        "[Uncertainty]\n"
        "method = bootstrap\n"
        "n_resamples = 50\n"
    )
    return path


def test_package_defaults_loaded():
    """ Test the packaged config.ini matches the dataclass defaults."""
    default = Config()

    assert CONFIG.shape.MIN_SAMPLES == default.shape.MIN_SAMPLES
    assert CONFIG.path.METHOD == "ols"
    assert CONFIG.site.NORMALIZATION == "mean"
    assert CONFIG.magnitude.MW_INTERCEPT == pytest.approx(-6.07)
    assert CONFIG.magnitude.BAND_MOMENT_OFFSETS == {}
    assert CONFIG.uncertainty.METHOD == "analytic"


def test_reload_custom_file(custom_ini):
    """ Test reload applies overrides and keeps defaults elsewhere."""
    config = Config()
    config.reload(custom_ini)

    assert config.shape.MIN_SAMPLES == 8
    assert config.shape.RESIDUAL_SPACE == "linear"
    assert config.shape.OUTLIER_SIGMA == 3.0
    assert config.site.REFERENCE_STATION == "STA2"
    assert config.magnitude.moment_offset(FrequencyBand(1.0, 2.0)) == 10.5
    assert config.magnitude.moment_offset(FrequencyBand(4.0, 8.0)) == 11.0
    assert config.uncertainty.N_RESAMPLES == 50
    config.validate()


def test_reload_resets_previous_values(custom_ini, tmp_path):
    """ Test reloading starts again from the defaults."""
    config = Config()
    config.reload(custom_ini)
    empty = tmp_path / "empty.ini"
    empty.write_text("[Shape]\n")
    config.reload(empty)

    assert config.shape.MIN_SAMPLES == 5
    assert config.site.NORMALIZATION == "mean"


def test_reload_missing_file(tmp_path):
    """ Test reloading a missing file raises FileNotFoundError."""
    with pytest.raises(FileNotFoundError):
        Config().reload(tmp_path / "missing.ini")


def test_reload_bad_value(tmp_path):
    """ Test an unparsable value raises ValueError."""
    path = tmp_path / "bad.ini"
    path.write_text("[Shape]\nmin_samples = many\n")

    with pytest.raises(ValueError):
        Config().reload(path)


def test_copy_is_independent():
    """ Test a copied configuration does not share state."""
    config = Config()
    snapshot = config.copy()
    config.shape.MIN_SAMPLES = 12
    config.magnitude.BAND_MOMENT_OFFSETS[FrequencyBand(1.0, 2.0)] = 1.0

    assert snapshot.shape.MIN_SAMPLES == 5
    assert snapshot.magnitude.BAND_MOMENT_OFFSETS == {}


@pytest.mark.parametrize(
    "section, field, value",
    [
        ("site", "NORMALIZATION", "reference"),
        ("path", "METHOD", "lasso"),
        ("shape", "MIN_SAMPLES", 2),
        ("uncertainty", "CONFIDENCE_LEVEL", 1.5),
        ("pipeline", "MAX_EXCLUSION_RATE", -0.1),
    ],
)
def test_validate_rejects_degenerate_settings(section, field, value):
    """ Test validate raises ConfigurationError for invalid settings."""
    config = Config()
    setattr(getattr(config, section), field, value)

    with pytest.raises(ConfigurationError):
        config.validate()


def test_validate_theil_sen_with_depth():
    """ Test Theil-Sen combined with a depth term is rejected."""
    config = Config()
    config.path.METHOD = "theil_sen"
    config.path.USE_DEPTH = True

    with pytest.raises(ConfigurationError):
        config.validate()
