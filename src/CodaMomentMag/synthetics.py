"""
Synthetic coda envelopes.

Generates measurements that follow the decay model exactly (optionally with
Gaussian noise in log10 amplitude), built from a source level per event, a
log-distance path slope and a site term per station. Used by the tests and
for checking a calibration end to end on a known network.
"""

from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from .models import FrequencyBand, Measurement
from .shape import model_log10_amplitude


def synthetic_envelope(
    times,
    log10_a0: float,
    nu: float,
    gamma: float,
    noise_std: float = 0.0,
    rng: Optional[np.random.Generator] = None,
    ) -> np.ndarray:
    """
    Linear envelope amplitudes following the decay model.

    Args:
        times: Sample times in seconds after origin.
        log10_a0 (float): Log10 amplitude scale.
        nu (float): Geometric spreading exponent.
        gamma (float): Decay rate in 1/s.
        noise_std (float): Standard deviation of Gaussian noise added in log10 units.
        rng (np.random.Generator, optional): Noise generator, required for reproducible noise.

    Returns:
        np.ndarray: Linear amplitudes.
    """
    log_amp = model_log10_amplitude(times, log10_a0, nu, gamma)
    if noise_std > 0:
        rng = rng if rng is not None else np.random.default_rng(0)
        log_amp = log_amp + rng.normal(0.0, noise_std, size=log_amp.shape)
    return 10.0 ** log_amp


def synthetic_measurement(
    event_id: str,
    station: str,
    band: FrequencyBand,
    distance_km: float,
    log10_a0: float,
    nu: float = 1.0,
    gamma: float = 0.02,
    depth_km: float = 5.0,
    t_start: float = 5.0,
    t_end: float = 80.0,
    n_samples: int = 60,
    component: str = "Z",
    noise_std: float = 0.0,
    rng: Optional[np.random.Generator] = None,
    ) -> Measurement:
    """ One envelope measurement sampled uniformly between t_start and t_end. """
    times = np.linspace(t_start, t_end, n_samples)
    amplitudes = synthetic_envelope(times, log10_a0, nu, gamma, noise_std, rng)
    return Measurement(
        event_id=event_id,
        station=station,
        band=band,
        component=component,
        times=times,
        amplitudes=amplitudes,
        distance_km=distance_km,
        depth_km=depth_km,
    )


def synthetic_network(
    source_levels: Mapping[str, float],
    site_terms: Mapping[str, float],
    distances: Mapping[Tuple[str, str], float],
    bands: Sequence[FrequencyBand],
    path_slope: float = 0.0,
    reference_distance_km: float = 1.0,
    nu: float = 1.0,
    gamma: float = 0.02,
    noise_std: float = 0.0,
    seed: int = 0,
    ) -> List[Measurement]:
    """
    Measurements for every (event, station) pair listed in ``distances``.

    The intercept of each envelope is

        log10 A0 = source_level[event] + path_slope * log10(r / r_ref) + site_term[station]

    so a calibration with the same reference distance should recover the
    injected path slope, the site terms (up to their mean) and the source levels.

    Args:
        source_levels (Mapping[str, float]): Event id to log10 source level.
        site_terms (Mapping[str, float]): Station code to site term (log10).
        distances (Mapping[Tuple[str, str], float]): (event id, station) to distance in km.
        bands (Sequence[FrequencyBand]): Bands to generate, same terms in each band.
        path_slope (float): Log-distance slope of the path term.
        reference_distance_km (float): Distance at which the path term is zero.
        nu (float): Geometric spreading exponent of every envelope.
        gamma (float): Decay rate of every envelope.
        noise_std (float): Log10 noise standard deviation.
        seed (int): Seed of the noise generator.

    Returns:
        List[Measurement]: Ordered by band, event, then station.
    """
    rng = np.random.default_rng(seed)
    measurements = []
    for band in bands:
        for (event_id, station), distance in sorted(distances.items()):
            log10_a0 = (
                source_levels[event_id]
                + path_slope * np.log10(distance / reference_distance_km)
                + site_terms[station]
            )
            measurements.append(
                synthetic_measurement(
                    event_id, station, band, distance, float(log10_a0),
                    nu=nu, gamma=gamma, noise_std=noise_std, rng=rng,
                )
            )
    return measurements


def full_coverage_distances(events: Sequence[str], stations: Sequence[str], start_km: float = 20.0, step_km: float = 7.5) -> Dict[Tuple[str, str], float]:
    """ Distinct distances for every event/station pair of a fully connected network. """
    distances = {}
    for i, event_id in enumerate(events):
        for j, station in enumerate(stations):
            distances[(event_id, station)] = start_km + step_km * (i * len(stations) + j)
    return distances
