#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Site correction solver.

Joint inversion of the path-corrected amplitudes of one band for an event term
per event and a site term per station:

    event_term[i] + site_term[j] = path_corrected_amplitude[i, j]

one equation per measurement. The system is built as an explicit sparse
matrix, split into the connected components of the station/event coverage
graph, and each component is solved by least squares. The constant offset
left free between event and site terms is fixed by a normalization: mean site
term of the component equal to zero, or a pinned reference station.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Sequence, Tuple

import numpy as np
from scipy import sparse
from scipy.sparse.csgraph import connected_components
from scipy.sparse.linalg import lsqr

from .config import SiteConfig, UncertaintyConfig
from .errors import UnderdeterminedSystem
from .models import FrequencyBand, PathCorrection, ShapeFit, SiteCorrection, SiteSolution
from .path import apply_path
from .uncertainty import make_rng, standard_error

logger = logging.getLogger("coda_mw_calc")


@dataclass(frozen=True)
class SiteObservation:
    """ One equation of the site inversion. """
    event_id: str
    station: str
    value: float


@dataclass(frozen=True)
class SiteSystem:
    """ Sparse design matrix with events in the first columns, then stations. """
    matrix: sparse.csr_matrix
    rhs: np.ndarray
    events: Tuple[str, ...]
    stations: Tuple[str, ...]
    rows: Tuple[SiteObservation, ...]

    @property
    def n_events(self) -> int:
        return len(self.events)


def observations_from_fits(fits: Iterable[ShapeFit], paths: Mapping[str, PathCorrection]) -> List[SiteObservation]:
    """ Path-corrected amplitudes of every fit whose station has a path correction. """
    return [
        SiteObservation(fit.event_id, fit.station, apply_path(fit, paths[fit.station]))
        for fit in fits
        if fit.station in paths
    ]


def build_site_system(observations: Sequence[SiteObservation]) -> SiteSystem:
    """
    Build the sparse event/station design matrix.

    Each row holds a one in the column of its event and a one in the column of
    its station. Events and stations are ordered by name so the system does not
    depend on input order.
    """
    rows = tuple(sorted(observations, key=lambda o: (o.event_id, o.station)))
    events = tuple(sorted({o.event_id for o in rows}))
    stations = tuple(sorted({o.station for o in rows}))
    event_idx = {e: i for i, e in enumerate(events)}
    station_idx = {s: len(events) + j for j, s in enumerate(stations)}

    n_rows = len(rows)
    row_ids = np.repeat(np.arange(n_rows), 2)
    col_ids = np.array([c for o in rows for c in (event_idx[o.event_id], station_idx[o.station])], dtype=int)
    matrix = sparse.csr_matrix(
        (np.ones(2 * n_rows), (row_ids, col_ids)), shape=(n_rows, len(events) + len(stations))
    )
    rhs = np.array([o.value for o in rows], dtype=float)
    return SiteSystem(matrix=matrix, rhs=rhs, events=events, stations=stations, rows=rows)


def coverage_clusters(system: SiteSystem) -> List[Tuple[Tuple[str, ...], Tuple[str, ...]]]:
    """
    Connected components of the station/event bipartite coverage graph.

    Returns:
        List of (events, stations) per component, ordered by their first station.
    """
    incidence = (system.matrix.T @ system.matrix).tocsr()
    n_components, labels = connected_components(incidence, directed=False)
    clusters = []
    for label in range(n_components):
        nodes = np.flatnonzero(labels == label)
        events = tuple(system.events[i] for i in nodes if i < system.n_events)
        stations = tuple(system.stations[i - system.n_events] for i in nodes if i >= system.n_events)
        clusters.append((events, stations))
    return sorted(clusters, key=lambda c: (c[1], c[0]))


def _least_squares(matrix: sparse.csr_matrix, rhs: np.ndarray, config: SiteConfig) -> np.ndarray:
    """ Minimum-norm least squares solution, dense SVD for small systems, LSQR otherwise. """
    if matrix.shape[1] <= config.DENSE_LIMIT:
        solution, *_ = np.linalg.lstsq(matrix.toarray(), rhs, rcond=None)
        return solution
    result = lsqr(matrix, rhs, atol=config.LSQR_TOL, btol=config.LSQR_TOL, iter_lim=20 * matrix.shape[1])
    return result[0]


def solve_site_terms(
    observations: Sequence[SiteObservation],
    band: FrequencyBand,
    config: SiteConfig,
    uncertainty: UncertaintyConfig,
    ) -> SiteSolution:
    """
    Jointly solve event and site terms for one band.

    Args:
        observations (Sequence[SiteObservation]): Path-corrected amplitudes, one per measurement.
        band (FrequencyBand): Band being solved.
        config (SiteConfig): Normalization mode, connectivity requirement and solver limits.
        uncertainty (UncertaintyConfig): Method for the per-station term uncertainty.

    Returns:
        SiteSolution: Site corrections per station, event terms, coverage clusters and residuals.

    Raises:
        UnderdeterminedSystem: If there is nothing to solve, or REQUIRE_CONNECTED is set and
            the coverage graph splits into several clusters.
    """
    if not observations:
        raise UnderdeterminedSystem(f"Band {band}: no path-corrected measurements to invert", group=band)

    system = build_site_system(observations)
    clusters = coverage_clusters(system)
    if config.REQUIRE_CONNECTED and len(clusters) > 1:
        raise UnderdeterminedSystem(
            f"Band {band}: coverage graph has {len(clusters)} disconnected clusters", group=band
        )
    if len(clusters) > 1:
        logger.warning(f"Band {band}: solving {len(clusters)} disconnected coverage clusters independently")

    event_col = {e: i for i, e in enumerate(system.events)}
    station_col = {s: system.n_events + j for j, s in enumerate(system.stations)}
    solution = np.zeros(system.matrix.shape[1])
    normalization_by_cluster: Dict[int, str] = {}

    for cluster_id, (events, stations) in enumerate(clusters):
        columns = [event_col[e] for e in events] + [station_col[s] for s in stations]
        event_set = set(events)
        row_mask = np.array([o.event_id in event_set for o in system.rows])
        sub_matrix = system.matrix[row_mask][:, columns]
        terms = _least_squares(sub_matrix, system.rhs[row_mask], config)

        event_terms, site_terms = terms[:len(events)], terms[len(events):]
        normalization = config.NORMALIZATION
        if normalization == "reference" and config.REFERENCE_STATION in stations:
            offset = site_terms[stations.index(config.REFERENCE_STATION)]
        else:
            if normalization == "reference":
                logger.warning(
                    f"Band {band}: reference station {config.REFERENCE_STATION} not in cluster {cluster_id} "
                    f"({len(stations)} stations), using mean-zero normalization"
                )
                normalization = "mean"
            offset = float(np.mean(site_terms))
        solution[columns] = np.concatenate([event_terms + offset, site_terms - offset])
        normalization_by_cluster[cluster_id] = normalization

    residuals = system.rhs - system.matrix @ solution
    station_cluster = {s: cid for cid, (_, stations) in enumerate(clusters) for s in stations}

    corrections = {}
    for station in system.stations:
        station_rows = np.array([o.station == station for o in system.rows])
        station_residuals = residuals[station_rows]
        error = standard_error(station_residuals, uncertainty, make_rng(uncertainty, (station, band)))
        cluster_id = station_cluster[station]
        corrections[station] = SiteCorrection(
            station=station,
            band=band,
            term=float(solution[station_col[station]]),
            uncertainty=error,
            n_measurements=int(np.count_nonzero(station_rows)),
            cluster=cluster_id,
            normalization=normalization_by_cluster[cluster_id],
        )

    return SiteSolution(
        band=band,
        corrections=corrections,
        event_terms={e: float(solution[event_col[e]]) for e in system.events},
        clusters=tuple(stations for _, stations in clusters),
        residuals=tuple(float(r) for r in residuals),
        n_observations=len(system.rows),
    )
