"""
Derived quantities for models that do not publish a variable directly.

Relative humidity is computed from specific humidity, 2 m temperature, sea level pressure and surface elevation.
Results are not clamped to 0..100 %; bounding is left to whoever interpolates the series later.
"""

from __future__ import annotations

import numpy as np

from cmip6.base_values import ELEVATION_OCEAN_SENTINEL
from cmip6.errors import InputMismatch
from cmip6.layout import SpaceMajorArray


def land_mask(elevation: np.ndarray) -> np.ndarray:
    """True for land cells, False where the elevation carries the ocean sentinel."""
    return elevation != ELEVATION_OCEAN_SENTINEL


def surface_pressure(temperature: np.ndarray, pressure: np.ndarray, elevation: np.ndarray) -> np.ndarray:
    """
    Reduce sea level pressure (hPa) to surface pressure with the barometric formula.

    `temperature` is the 2 m air temperature in °C, `elevation` in metres. Ocean cells (sentinel elevation)
    are treated as sea level.
    """
    height = np.where(land_mask(elevation), elevation, 0).astype(np.float32)
    return pressure * (1 - 0.0065 * height / (temperature + 273.15 + 0.0065 * height)) ** 5.257


def _relative_humidity(qair: np.ndarray, temperature: np.ndarray, pressure: np.ndarray) -> np.ndarray:
    # qair in kg/kg, temperature in °C, pressure in hPa
    es = 6.112 * np.exp((17.67 * temperature) / (temperature + 243.5))
    e = qair * pressure / (0.378 * qair + 0.622)
    return e / es * 100


def specific_to_relative_humidity(
    specific_humidity: SpaceMajorArray,
    temperature: SpaceMajorArray,
    sea_level_pressure: SpaceMajorArray,
    elevation: np.ndarray,
) -> SpaceMajorArray:
    """
    Relative humidity in % from specific humidity (g/kg), 2 m temperature (°C), sea level pressure (hPa) and a
    static per-location elevation (m, ocean cells marked with the sentinel).

    All inputs must share the same locations and time axis, otherwise InputMismatch is raised. Works one time
    step at a time to keep temporaries small.
    """
    shapes = {
        "specific humidity": specific_humidity.data.shape,
        "temperature": temperature.data.shape,
        "sea level pressure": sea_level_pressure.data.shape,
    }
    if len(set(shapes.values())) != 1:
        raise InputMismatch(f"Input arrays do not share grid and time axis: {shapes}")
    elevation = np.asarray(elevation, dtype=np.float32).ravel()
    if elevation.shape[0] != specific_humidity.n_locations:
        raise InputMismatch(
            f"Elevation has {elevation.shape[0]} cells, inputs have {specific_humidity.n_locations} locations"
        )

    out = np.empty_like(specific_humidity.data, dtype=np.float32)
    for t in range(specific_humidity.n_time):
        temp = temperature.data[t]
        pressure = surface_pressure(temp, sea_level_pressure.data[t], elevation)
        out[t] = _relative_humidity(specific_humidity.data[t] / 1000, temp, pressure)
    return SpaceMajorArray(out, units="%")
