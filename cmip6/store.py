"""
Compressed time-series store backed by local Zarr v3 directories.

Every artifact is a Zarr group holding one float32 array named after the variable. Yearly outputs and monthly
intermediates are time-major ``(location, time)`` so a single location's series is read from few chunks; the
static elevation is ``(latitude, longitude)``.

Artifacts are written to a hidden sibling directory and renamed into place once complete. The presence of an
artifact therefore always means it is complete, which is what the pipeline relies on to resume.
"""

from __future__ import annotations

import os
import shutil
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, Sequence

import numpy as np
import zarr
from zarr.codecs import BloscCodec, BloscShuffle

from cmip6.errors import InputMismatch
from cmip6.layout import TimeMajorArray

COMPRESSOR = BloscCodec(cname="zstd", clevel=5, shuffle=BloscShuffle.bitshuffle)

#: (location, time) chunks of yearly outputs: a few locations, half a year of daily values.
YEARLY_CHUNKS = (6, 183)
ELEVATION_CHUNKS = (20, 20)
#: Locations per slice when an in-memory array is written, a multiple of the yearly chunk rows.
WRITE_BATCH_LOCATIONS = 6_000


def quantize(data: np.ndarray, scalefactor: float, out: np.ndarray | None = None) -> np.ndarray:
    """
    Round to a precision of `1 / scalefactor`. NaN stays NaN.

    All steps run in `out` (float32, same shape as `data`), so at most one buffer of the size of `data` is
    allocated. Pass `out=data` to quantize in place.
    """
    if out is None:
        out = np.empty(data.shape, dtype=np.float32)
    np.multiply(data, scalefactor, out=out, casting="unsafe")
    np.round(out, out=out)
    np.divide(out, scalefactor, out=out)
    return out


@contextmanager
def atomic_store(path: Path) -> Iterator[Path]:
    """Yield a temporary directory that is renamed to `path` if the block finishes without error."""
    tmp = path.with_name(f".{path.name}.tmp")
    if tmp.exists():
        # left over from a killed run
        shutil.rmtree(tmp)
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        yield tmp
    except BaseException:
        shutil.rmtree(tmp, ignore_errors=True)
        raise
    os.replace(tmp, path)


def _create_array(
    directory: Path,
    name: str,
    shape: tuple[int, int],
    chunks: tuple[int, int],
    dimension_names: Sequence[str],
    attributes: dict | None,
) -> zarr.Array:
    root = zarr.open_group(str(directory), mode="w")
    # chunks larger than the array only waste fill values
    chunks = tuple(max(1, min(c, s)) for c, s in zip(chunks, shape))
    return root.create_array(
        name=name,
        shape=shape,
        chunks=chunks,
        dtype="float32",
        fill_value=np.nan,
        compressors=[COMPRESSOR],
        dimension_names=list(dimension_names),
        attributes=attributes or {},
    )


def write_time_series(
    path: Path,
    name: str,
    batches: Iterable[np.ndarray],
    n_locations: int,
    n_time: int,
    scalefactor: float,
    chunks: tuple[int, int] = YEARLY_CHUNKS,
    attributes: dict | None = None,
) -> Path:
    """
    Write a time-major ``(n_locations, n_time)`` array by consuming `batches` one at a time.

    Every batch holds the complete series of the next consecutive locations. The batches have to cover exactly
    `n_locations` rows, otherwise InputMismatch is raised and nothing is written.
    """
    attributes = {**(attributes or {}), "scale_factor": scalefactor}
    with atomic_store(path) as tmp:
        array = _create_array(tmp, name, (n_locations, n_time), chunks, ("location", "time"), attributes)
        offset = 0
        buffer = None
        for batch in batches:
            if batch.ndim != 2 or batch.shape[1] != n_time:
                raise InputMismatch(f"Batch of shape {batch.shape} does not have {n_time} time steps")
            if offset + batch.shape[0] > n_locations:
                raise InputMismatch(f"Batches exceed {n_locations} locations")
            # batches may be views into the caller's data, never quantize them in place
            if buffer is None or buffer.shape != batch.shape:
                buffer = np.empty(batch.shape, dtype=np.float32)
            array[offset : offset + batch.shape[0], :] = quantize(batch, scalefactor, out=buffer)
            offset += batch.shape[0]
        if offset != n_locations:
            raise InputMismatch(f"Batches covered {offset} of {n_locations} locations")
    return path


def write_all(
    path: Path,
    name: str,
    array: TimeMajorArray,
    scalefactor: float,
    chunks: tuple[int, int] = YEARLY_CHUNKS,
    attributes: dict | None = None,
    batch_size: int = WRITE_BATCH_LOCATIONS,
) -> Path:
    """
    Bulk write of an array that is already fully in memory.

    The array is handed to the writer in slices of `batch_size` locations, so encoding needs one slice sized
    buffer on top of the array itself.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be positive")
    data = array.data
    return write_time_series(
        path,
        name,
        (data[start : start + batch_size] for start in range(0, array.n_locations, batch_size)),
        n_locations=array.n_locations,
        n_time=array.n_time,
        scalefactor=scalefactor,
        chunks=chunks,
        attributes=attributes,
    )


def write_elevation(path: Path, elevation: np.ndarray, ny: int, nx: int) -> Path:
    """Store a static elevation grid, rounded to full metres."""
    with atomic_store(path) as tmp:
        array = _create_array(
            tmp, "elevation", (ny, nx), ELEVATION_CHUNKS, ("latitude", "longitude"), {"units": "m"}
        )
        array[:, :] = quantize(np.asarray(elevation, dtype=np.float32).reshape(ny, nx), 1)
    return path


class TimeSeriesReader:
    """Random access reads by location range from an artifact written by this module."""

    def __init__(self, path: Path, name: str | None = None):
        self.path = path
        self._group = zarr.open_group(str(path), mode="r")
        if name is None:
            names = list(self._group.array_keys())
            if len(names) != 1:
                raise ValueError(f"{path} holds {names}, pass the array name explicitly")
            name = names[0]
        self.array = self._group[name]

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def close(self):
        self._group.store.close()

    @property
    def n_locations(self) -> int:
        return self.array.shape[0]

    @property
    def n_time(self) -> int:
        return self.array.shape[1]

    @property
    def attrs(self) -> dict:
        return dict(self.array.attrs)

    def read(self, locations: slice = slice(None), times: slice = slice(None)) -> np.ndarray:
        return self.array[locations, times]

    def read_locations(self, start: int, stop: int) -> np.ndarray:
        """Complete series of locations `start` to `stop`, shape ``(stop - start, n_time)``."""
        return self.array[start:stop, :]

    def will_need(self, start: int, stop: int):
        """
        Prefetch hint for locations `start` to `stop`.

        Local directory stores read chunk files on demand through the OS page cache, so there is nothing to
        schedule ahead and this is a no-op.
        """


class ElevationRegistry:
    """
    Lazily loaded static elevation grids, one per artifact path, kept until `close`.

    Returns flat arrays indexed by location.
    """

    def __init__(self):
        self._cache: dict[Path, np.ndarray] = {}

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def get(self, path: Path) -> np.ndarray:
        if path not in self._cache:
            with TimeSeriesReader(path, name="elevation") as reader:
                self._cache[path] = np.asarray(reader.read()).ravel()
        return self._cache[path]

    def close(self):
        self._cache.clear()
