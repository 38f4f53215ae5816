#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Measurement and reference event tables.

Reads long-format envelope tables (one row per envelope sample) into
Measurement objects, and reference moment magnitude tables into an event id
to Mw mapping. Tables are CSV or Excel files read with pandas.

Required measurement columns:
    event_id, station, time_s, amplitude, and either ``band`` ("low-high")
    or ``low_hz`` and ``high_hz``.

Optional columns:
    component (default "Z"), distance_km, depth_km or source_depth_m, valid.
    When distance_km is missing, source_lat, source_lon, station_lat and
    station_lon are required and the epicentral distance is computed with
    obspy.geodetics.gps2dist_azimuth.
"""

import logging
from pathlib import Path
from typing import Dict, List

import numpy as np
import pandas as pd
from obspy.geodetics import gps2dist_azimuth

from .models import FrequencyBand, Measurement

logger = logging.getLogger("coda_mw_calc")

REQUIRED_COLUMNS = ["event_id", "station", "time_s", "amplitude"]
COORDINATE_COLUMNS = ["source_lat", "source_lon", "station_lat", "station_lon"]


def read_table(path: Path) -> pd.DataFrame:
    """
    Read a CSV or Excel table.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file extension is not supported or the table is empty.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Table not found: {path}")
    if path.suffix.lower() in (".xlsx", ".xls"):
        df = pd.read_excel(path, index_col=None)
    elif path.suffix.lower() in (".csv", ".txt"):
        df = pd.read_csv(path)
    else:
        raise ValueError(f"Unsupported table format: {path.suffix}")
    if df.empty:
        raise ValueError(f"Table {path} is empty")
    df.columns = [str(c).strip().lower() for c in df.columns]
    return df


def _band_column(df: pd.DataFrame) -> pd.Series:
    if "band" in df.columns:
        return df["band"].astype(str).map(FrequencyBand.from_label)
    if "low_hz" in df.columns and "high_hz" in df.columns:
        return pd.Series(
            [FrequencyBand(float(lo), float(hi)) for lo, hi in zip(df["low_hz"], df["high_hz"])],
            index=df.index,
        )
    raise ValueError("Measurement table needs a 'band' column or 'low_hz' and 'high_hz' columns")


def epicentral_distance_km(source_lat: float, source_lon: float, station_lat: float, station_lon: float) -> float:
    """ Great-circle distance on the WGS84 ellipsoid, in km. """
    distance_m, _, _ = gps2dist_azimuth(source_lat, source_lon, station_lat, station_lon)
    return distance_m / 1000.0


def measurements_from_frame(df: pd.DataFrame) -> List[Measurement]:
    """
    Group a long-format sample table into measurements.

    Args:
        df (pd.DataFrame): One row per envelope sample, columns as described in the module docstring.

    Returns:
        List[Measurement]: One measurement per (event, station, band, component), sorted by key.

    Raises:
        ValueError: If required columns are missing, or a measurement has no usable distance.
    """
    df = df.copy()
    df.columns = [str(c).strip().lower() for c in df.columns]
    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"Measurement table missing required columns: {missing}")
    if "distance_km" not in df.columns and not all(c in df.columns for c in COORDINATE_COLUMNS):
        raise ValueError(f"Measurement table needs 'distance_km' or coordinate columns {COORDINATE_COLUMNS}")

    df["event_id"] = df["event_id"].astype(str)
    df["station"] = df["station"].astype(str)
    df["band_obj"] = _band_column(df)
    df["component"] = df["component"].astype(str) if "component" in df.columns else "Z"
    if "depth_km" not in df.columns:
        df["depth_km"] = df["source_depth_m"] / 1000.0 if "source_depth_m" in df.columns else 0.0

    measurements = []
    for (event_id, station, band, component), group in df.groupby(
        ["event_id", "station", "band_obj", "component"], sort=True
    ):
        first = group.iloc[0]
        distance = first["distance_km"] if "distance_km" in group.columns else np.nan
        if pd.isna(distance):
            if not all(c in group.columns and pd.notna(first[c]) for c in COORDINATE_COLUMNS):
                raise ValueError(f"Measurement {event_id}/{station}/{band}/{component}: no distance and no coordinates")
            distance = epicentral_distance_km(
                float(first["source_lat"]), float(first["source_lon"]),
                float(first["station_lat"]), float(first["station_lon"]),
            )
        valid = bool(group["valid"].astype(bool).all()) if "valid" in group.columns else True
        depth = float(first["depth_km"]) if pd.notna(first["depth_km"]) else 0.0
        measurements.append(
            Measurement(
                event_id=event_id,
                station=station,
                band=band,
                component=component,
                times=group["time_s"].to_numpy(dtype=float),
                amplitudes=group["amplitude"].to_numpy(dtype=float),
                distance_km=float(distance),
                depth_km=depth,
                valid=valid,
            )
        )
    logger.info(f"Loaded {len(measurements)} measurements from {len(df)} samples")
    return measurements


def read_measurement_table(path: Path) -> List[Measurement]:
    """ Read a long-format envelope sample table into measurements. """
    return measurements_from_frame(read_table(path))


def read_reference_mws(path: Path) -> Dict[str, float]:
    """
    Read reference moment magnitudes.

    The table needs ``event_id`` and ``mw`` columns; rows with a missing Mw are skipped.
    """
    df = read_table(path)
    if "event_id" not in df.columns or "mw" not in df.columns:
        raise ValueError("Reference table needs 'event_id' and 'mw' columns")
    df = df.dropna(subset=["mw"])
    return {str(event_id): float(mw) for event_id, mw in zip(df["event_id"], df["mw"])}


def measurements_to_frame(measurements: List[Measurement]) -> pd.DataFrame:
    """ Long-format sample table of measurements, readable by measurements_from_frame. """
    rows = []
    for m in measurements:
        for t, a in zip(m.times, m.amplitudes):
            rows.append(
                {
                    "event_id": m.event_id, "station": m.station, "band": m.band.label,
                    "component": m.component, "time_s": float(t), "amplitude": float(a),
                    "distance_km": m.distance_km, "depth_km": m.depth_km, "valid": m.valid,
                }
            )
    return pd.DataFrame(rows)
