"""
In-memory layouts for gridded time series.

Decoded archives are space-major (one full grid per time step), the output store is time-major (one full
time series per location). Both are 2-D float32 numpy arrays, the wrappers only carry which axis is which.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np


@dataclass
class SpaceMajorArray:
    """Indexed ``[time, location]``."""

    data: np.ndarray
    units: str | None = None

    def __post_init__(self):
        if self.data.ndim != 2:
            raise ValueError(f"Expected a 2-D array, got shape {self.data.shape}")

    @property
    def n_time(self) -> int:
        return self.data.shape[0]

    @property
    def n_locations(self) -> int:
        return self.data.shape[1]

    def transpose(self) -> TimeMajorArray:
        """Copy into time-major order. Drop the reference to `self` afterwards to release the source buffer."""
        return TimeMajorArray(np.ascontiguousarray(self.data.T), units=self.units)


@dataclass
class TimeMajorArray:
    """Indexed ``[location, time]``."""

    data: np.ndarray
    units: str | None = None

    def __post_init__(self):
        if self.data.ndim != 2:
            raise ValueError(f"Expected a 2-D array, got shape {self.data.shape}")

    @property
    def n_time(self) -> int:
        return self.data.shape[1]

    @property
    def n_locations(self) -> int:
        return self.data.shape[0]

    def transpose(self) -> SpaceMajorArray:
        return SpaceMajorArray(np.ascontiguousarray(self.data.T), units=self.units)
