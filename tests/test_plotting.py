""" Unit test for plotting.py """

import pytest

from CodaMomentMag.pipeline import CalibrationPipeline
from CodaMomentMag.plotting import plot_event_magnitudes, plot_shape_fit, plot_site_terms
from CodaMomentMag.shape import fit_shape

from conftest import BAND


@pytest.fixture
def scenario_run(scenario_measurements, config):
    "Fixture providing a finished run of the scenario network."
    return CalibrationPipeline(config, show_progress=False).run(scenario_measurements)


def test_plot_shape_fit(tmp_path, scenario_measurements, config):
    """ Test the shape figure is written under the measurement's name."""
    measurement = scenario_measurements[0]
    fit = fit_shape(measurement, config.shape)

    output = plot_shape_fit(measurement, fit, tmp_path / "figures")

    assert output.exists()
    assert output.name == f"shape_{measurement.event_id}_{measurement.station}_{BAND.label}_Z.png"


def test_plot_site_terms(tmp_path, scenario_run):
    """ Test one site term figure per solved band."""
    outputs = plot_site_terms(scenario_run, tmp_path)

    assert [p.name for p in outputs] == [f"site_terms_{BAND.label}.png"]
    assert outputs[0].exists()


def test_plot_event_magnitudes(tmp_path, scenario_run):
    """ Test the event magnitude summary figure is written."""
    output = plot_event_magnitudes(scenario_run, tmp_path)

    assert output.exists()
    assert output.name == "event_magnitudes.png"
