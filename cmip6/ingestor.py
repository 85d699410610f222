from __future__ import annotations

from pathlib import Path

import numpy as np
import xarray as xr

from cmip6.base_values import RegularGrid
from cmip6.errors import FieldNotFound, UnexpectedDimensionality
from cmip6.layout import SpaceMajorArray


def shift_180_longitude(data: np.ndarray, nx: int) -> None:
    """
    Rotate every latitude row of a ``[time, ny * nx]`` array in place by half its width.

    CMIP6 archives run from 0° to 360°, the canonical layout from -180° to 180°. For an even `nx` applying this
    twice restores the input. Only one time step is copied at a time.
    """
    nt = data.shape[0]
    rows = data.reshape(nt, -1, nx)
    for t in range(nt):
        rows[t] = np.roll(rows[t], -(nx // 2), axis=1)


def multiply_add(data: np.ndarray, multiply: float, add: float) -> None:
    """Unit conversion `data * multiply + add`, in place. E.g. Kelvin to Celsius is (1, -273.15)."""
    if multiply != 1:
        data *= np.float32(multiply)
    if add != 0:
        data += np.float32(add)


def read_archive(
    path: Path,
    short: str,
    fma: tuple[float, float] | None = None,
    grid: RegularGrid | None = None,
) -> SpaceMajorArray:
    """
    Read variable `short` from a NetCDF archive into a space-major float32 array.

    A 2-D field (fixed fields like orography) is treated as a single time step. Longitudes are rewrapped to
    start at -180° and the optional (multiply, add) unit conversion is applied.

    Raises FieldNotFound if the variable is missing and UnexpectedDimensionality if it is neither 2-D nor 3-D
    or does not match `grid`.
    """
    with xr.open_dataset(path, decode_times=False) as ds:
        if short not in ds.data_vars:
            raise FieldNotFound("Variable not found in archive", path=path, field=short)
        da = ds[short]
        if da.ndim not in (2, 3):
            raise UnexpectedDimensionality(
                f"Expected 2 or 3 dimensions, got {da.dims}", path=path, field=short
            )
        ny, nx = da.shape[-2:]
        nt = da.shape[0] if da.ndim == 3 else 1
        if grid is not None and (nx, ny) != (grid.nx, grid.ny):
            raise UnexpectedDimensionality(
                f"Grid is {nx}x{ny}, expected {grid.nx}x{grid.ny}", path=path, field=short
            )
        units = da.attrs.get("units")
        data = np.ascontiguousarray(da.values, dtype=np.float32).reshape(nt, ny * nx)

    if not data.flags.writeable:
        data = data.copy()
    shift_180_longitude(data, nx)
    if fma is not None:
        multiply_add(data, *fma)
    return SpaceMajorArray(data, units=units)
