"""
Stitch consecutive sub-period time series (e.g. twelve months) into one full-period time-major array.

The full array of a yearly daily series over a 2 million cell grid is several GB, so it is never materialised.
Instead `iter_location_batches` yields the complete series of a few thousand locations at a time and the store
writer consumes them one by one.
"""

from __future__ import annotations

from typing import Iterator, Protocol, Sequence

import numpy as np

from cmip6.errors import InputMismatch
from cmip6.layout import SpaceMajorArray
from etl_scripts.grabbag import ProgressTracker

#: 6k locations of a yearly daily series take around 200 MB
N_LOCATIONS_PER_CHUNK = 6_000


class LocationReader(Protocol):
    """A sub-period source that can read the series of a location range."""

    n_time: int

    def read_locations(self, start: int, stop: int) -> np.ndarray:
        """Time-major block of shape ``(stop - start, n_time)``."""
        ...

    def will_need(self, start: int, stop: int) -> None:
        """Hint that `read_locations(start, stop)` follows next."""
        ...


class SpaceMajorReader:
    """Adapter that serves location ranges from a decoded, space-major archive."""

    def __init__(self, array: SpaceMajorArray):
        self.array = array

    @property
    def n_time(self) -> int:
        return self.array.n_time

    def read_locations(self, start: int, stop: int) -> np.ndarray:
        return self.array.data[:, start:stop].T

    def will_need(self, start: int, stop: int):
        pass


def iter_location_batches(
    readers: Sequence[LocationReader],
    n_locations: int,
    n_time: int,
    batch_size: int = N_LOCATIONS_PER_CHUNK,
    label: str = "Assemble",
) -> Iterator[np.ndarray]:
    """
    Yield time-major batches of shape ``(locations_in_batch, n_time)`` covering all `n_locations`.

    Readers are consumed in the given order, each contributing its `n_time` steps right after the previous one.
    The generator is single pass; only one batch buffer is alive at a time as long as the consumer drops it.

    Raises InputMismatch if the readers' time steps do not add up to `n_time`.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be positive")
    total = sum(reader.n_time for reader in readers)
    if total != n_time:
        raise InputMismatch(f"Sources provide {total} time steps, expected {n_time}")

    progress = ProgressTracker(total=n_locations, label=label)
    if n_locations > 0:
        for reader in readers:
            reader.will_need(0, min(batch_size, n_locations))
    for start in range(0, n_locations, batch_size):
        stop = min(start + batch_size, n_locations)
        if stop < n_locations:
            for reader in readers:
                reader.will_need(stop, min(stop + batch_size, n_locations))
        batch = np.full((stop - start, n_time), np.nan, dtype=np.float32)
        time_offset = 0
        for reader in readers:
            block = reader.read_locations(start, stop)
            if block.shape != (stop - start, reader.n_time):
                raise InputMismatch(
                    f"Reader returned {block.shape} for locations {start}..{stop}, expected "
                    f"{(stop - start, reader.n_time)}"
                )
            batch[:, time_offset : time_offset + reader.n_time] = block
            time_offset += reader.n_time
        progress.add(stop - start)
        yield batch
    progress.finish()
