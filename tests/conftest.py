""" Shared fixtures: a small synthetic station network with known terms. """

import pytest
import numpy as np

from CodaMomentMag.config import Config
from CodaMomentMag.models import FrequencyBand, ShapeFit
from CodaMomentMag.synthetics import full_coverage_distances, synthetic_network

BAND = FrequencyBand(1.0, 2.0)
EVENTS = ["EV1", "EV2", "EV3"]
STATIONS = ["STA1", "STA2", "STA3", "STA4"]
SITE_TERMS = {"STA1": 0.3, "STA2": -0.1, "STA3": -0.25, "STA4": 0.05}
SOURCE_LEVEL = 2.0
PATH_SLOPE = -1.0
REFERENCE_MW = 3.5


def make_fit(event_id, station, distance_km, log10_a0, band=BAND, depth_km=0.0, nu=1.0, gamma=0.02):
    """ ShapeFit built directly, bypassing the optimizer. """
    return ShapeFit(
        key=(event_id, station, band, "Z"),
        log10_a0=log10_a0,
        nu=nu,
        gamma=gamma,
        rms=0.0,
        n_samples=60,
        n_used=60,
        iterations=1,
        distance_km=distance_km,
        depth_km=depth_km,
    )


@pytest.fixture
def config():
    "Fixture providing a fresh default configuration."
    return Config()


@pytest.fixture
def distances():
    "Fixture providing distinct distances for every event/station pair."
    return full_coverage_distances(EVENTS, STATIONS)


@pytest.fixture
def scenario_measurements(distances):
    "Fixture providing the 3 events x 4 stations x 1 band clean synthetic network."
    return synthetic_network(
        source_levels={e: SOURCE_LEVEL for e in EVENTS},
        site_terms=SITE_TERMS,
        distances=distances,
        bands=[BAND],
        path_slope=PATH_SLOPE,
    )


@pytest.fixture
def scenario_fits(distances):
    "Fixture providing exact shape fits of the scenario network."
    return [
        make_fit(e, s, r, SOURCE_LEVEL + PATH_SLOPE * np.log10(r) + SITE_TERMS[s])
        for (e, s), r in sorted(distances.items())
    ]
