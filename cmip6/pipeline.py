"""
Download CMIP6 HighResMIP archives and convert them to yearly time-major Zarr stores.

Every (variable, year) is one task. A task whose yearly output already exists is skipped before anything is
downloaded, which is the only state the pipeline keeps: kill it at any point and the next run picks up where it
stopped. Intermediate files (raw NetCDF, converted months) are reused when present and rebuilt when missing.
"""

from __future__ import annotations

import enum
import shutil
import time
from contextlib import ExitStack
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Sequence

import numpy as np

from cmip6.assembler import N_LOCATIONS_PER_CHUNK, iter_location_batches
from cmip6.base_values import (
    ELEVATION_OCEAN_SENTINEL,
    LAND_FRACTION_THRESHOLD,
    VARIABLES,
    Cmip6Domain,
    Cmip6Variable,
    TimeType,
    days_in_month,
    time_steps_in_stitched_year,
)
from cmip6.fetcher import MirroredFetcher, archive_uri, fixed_field_uri
from cmip6.ingestor import read_archive
from cmip6.layout import SpaceMajorArray
from cmip6.meteorology import specific_to_relative_humidity
from cmip6.store import (
    YEARLY_CHUNKS,
    ElevationRegistry,
    TimeSeriesReader,
    write_all,
    write_elevation,
    write_time_series,
)
from etl_scripts.grabbag import eprint

#: Yearly archives a derived variable is computed from, besides its own downloaded field.
DERIVED_INPUTS = {"relative_humidity_2m_mean": ("pressure_msl", "temperature_2m_mean")}


class TaskResult(enum.Enum):
    CONVERTED = "converted"
    EXISTS = "exists"
    UNSUPPORTED = "unsupported"


@dataclass(frozen=True)
class DomainPaths:
    """Directory layout below the data root for one model."""

    root: Path
    domain: str

    @property
    def download_directory(self) -> Path:
        return self.root / f"download-{self.domain}"

    @property
    def archive_directory(self) -> Path:
        return self.root / f"archive-{self.domain}"

    @property
    def omfile_directory(self) -> Path:
        return self.root / f"omfile-{self.domain}"

    @property
    def surface_elevation(self) -> Path:
        return self.omfile_directory / "HSURF.zarr"

    def yearly_output(self, variable: Cmip6Variable, year: int) -> Path:
        return self.archive_directory / f"{variable.name}_{year}.zarr"

    def yearly_archive(self, short: str, year: int) -> Path:
        return self.download_directory / f"{short}_{year}.nc"

    def monthly_archive(self, short: str, year: int, month: int) -> Path:
        return self.download_directory / f"{short}_{year}{month:02d}.nc"

    def monthly_intermediate(self, short: str, year: int, month: int) -> Path:
        return self.download_directory / f"{short}_{year}{month:02d}.zarr"


class ConversionPipeline:
    """
    Convert one model's archives.

    Parameters
    ----------
    domain
        Catalog entry of the model.
    data_root
        Directory below which download, archive and elevation directories are created.
    fetcher
        Anything with a `download(uri, target)` method, usually a MirroredFetcher.
    delete_intermediates
        Remove downloaded archives and monthly intermediates once the yearly output is written.
    max_parallel
        Number of years converted at the same time. Each one needs about one location batch of memory plus the
        decoded archive of a direct yearly download, so keep this low for large grids.
    batch_size
        Locations per batch when stitching months and writing outputs.
    """

    def __init__(
        self,
        domain: Cmip6Domain,
        data_root: Path,
        fetcher: MirroredFetcher | None = None,
        delete_intermediates: bool = True,
        max_parallel: int = 1,
        batch_size: int = N_LOCATIONS_PER_CHUNK,
    ):
        if max_parallel < 1:
            raise ValueError("max_parallel must be at least 1")
        self.domain = domain
        self.paths = DomainPaths(Path(data_root), domain.name)
        self.fetcher = fetcher if fetcher is not None else MirroredFetcher()
        self.delete_intermediates = delete_intermediates
        self.max_parallel = max_parallel
        self.batch_size = batch_size
        self.elevation = ElevationRegistry()
        self._selected: list[Cmip6Variable] = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def close(self):
        self.elevation.close()

    # ── entry points ─────────────────────────────────────────────────
    def run(
        self, variables: Sequence[Cmip6Variable] | None = None, years: Iterable[int] = ()
    ) -> dict[tuple[str, int], TaskResult]:
        """
        Convert all `variables` (default: the whole catalog) for all `years`.

        Years are distributed over up to `max_parallel` threads, the variables of one year are converted in
        order by the same thread.
        """
        variables = list(VARIABLES.values()) if variables is None else list(variables)
        years = list(years)
        # yearly archives are only deleted once no selected task needs them any more
        self._selected = variables
        for directory in (
            self.paths.download_directory,
            self.paths.archive_directory,
            self.paths.omfile_directory,
        ):
            directory.mkdir(parents=True, exist_ok=True)
        self.ensure_elevation()

        def _convert_year(year: int) -> dict[tuple[str, int], TaskResult]:
            return {(variable.name, year): self.convert(variable, year) for variable in variables}

        results: dict[tuple[str, int], TaskResult] = {}
        if self.max_parallel == 1:
            for year in years:
                results.update(_convert_year(year))
        else:
            with ThreadPoolExecutor(max_workers=self.max_parallel) as executor:
                for year_results in executor.map(_convert_year, years):
                    results.update(year_results)
        return results

    def convert(self, variable: Cmip6Variable, year: int) -> TaskResult:
        """Produce the yearly output of one variable, unless it exists or the model does not publish it."""
        time_type = self.domain.time_type(variable)
        if time_type is TimeType.UNSUPPORTED:
            return TaskResult.UNSUPPORTED
        output = self.paths.yearly_output(variable, year)
        if output.exists():
            return TaskResult.EXISTS

        eprint(f"Converting {variable.name} for year {year} ({time_type.value})")
        start = time.time()
        match time_type:
            case TimeType.MONTHLY:
                self._monthly_stitch(variable, year, output)
            case TimeType.YEARLY:
                self._direct_yearly(variable, year, output)
        eprint(f"✓ Wrote {output.name} in {time.time() - start:.2f}s")
        return TaskResult.CONVERTED

    # ── elevation ────────────────────────────────────────────────────
    def ensure_elevation(self) -> Path | None:
        """
        Make sure the static surface elevation exists, downloading altitude and land fraction once per model.

        Cells that are less than half land get the ocean sentinel. Returns None for models without orography.
        """
        versions = self.domain.orography_versions
        target = self.paths.surface_elevation
        if versions is None:
            return None
        if target.exists():
            return target

        eprint(f"Creating surface elevation for {self.domain.source}")
        altitude_version, landmask_version = versions
        altitude_file = self.paths.download_directory / "orog_fx.nc"
        land_fraction_file = self.paths.download_directory / "sftlf_fx.nc"
        self.fetcher.download(fixed_field_uri(self.domain, "orog", altitude_version), altitude_file)
        self.fetcher.download(fixed_field_uri(self.domain, "sftlf", landmask_version), land_fraction_file)

        altitude = read_archive(altitude_file, "orog", grid=self.domain.grid)
        land_fraction = read_archive(land_fraction_file, "sftlf", grid=self.domain.grid)
        fraction = land_fraction.data
        # sftlf is published in percent, the threshold is a fraction
        if land_fraction.units == "%":
            fraction = fraction / 100
        elevation = np.where(fraction < LAND_FRACTION_THRESHOLD, ELEVATION_OCEAN_SENTINEL, altitude.data)
        write_elevation(target, elevation, ny=self.domain.grid.ny, nx=self.domain.grid.nx)

        if self.delete_intermediates:
            altitude_file.unlink()
            land_fraction_file.unlink()
        return target

    # ── monthly archives ─────────────────────────────────────────────
    def _monthly_stitch(self, variable: Cmip6Variable, year: int, output: Path):
        short = variable.shortname
        months = range(1, 13)
        for month in months:
            self._convert_month(variable, year, month)

        with ExitStack() as stack:
            readers = [
                stack.enter_context(TimeSeriesReader(self.paths.monthly_intermediate(short, year, month)))
                for month in months
            ]
            n_time = time_steps_in_stitched_year(year)
            batches = iter_location_batches(
                readers,
                n_locations=self.domain.grid.count,
                n_time=n_time,
                batch_size=self.batch_size,
                label=f"Convert {variable.name} {year}",
            )
            write_time_series(
                output,
                variable.name,
                batches,
                n_locations=self.domain.grid.count,
                n_time=n_time,
                scalefactor=variable.scalefactor,
                chunks=YEARLY_CHUNKS,
                attributes=self._attributes(variable, year),
            )

        if self.delete_intermediates:
            for month in months:
                shutil.rmtree(self.paths.monthly_intermediate(short, year, month))

    def _convert_month(self, variable: Cmip6Variable, year: int, month: int):
        """Download one month and store it time-major, unless that was done before."""
        short = variable.shortname
        intermediate = self.paths.monthly_intermediate(short, year, month)
        if intermediate.exists():
            return
        archive = self.paths.monthly_archive(short, year, month)
        # Feb 29 is ignored
        last_day = days_in_month(year, month)
        uri = archive_uri(
            self.domain,
            short,
            experiment=self.domain.experiment(year),
            version=self.domain.version(variable, is_future=self._is_future(year)),
            start=f"{year}{month:02d}01",
            end=f"{year}{month:02d}{last_day:02d}",
        )
        self.fetcher.download(uri, archive)
        array = read_archive(archive, short, variable.multiply_add, grid=self.domain.grid).transpose()
        write_all(
            intermediate,
            variable.name,
            array,
            scalefactor=variable.scalefactor,
            chunks=(self.batch_size, array.n_time),
            batch_size=self.batch_size,
        )
        if self.delete_intermediates:
            archive.unlink()

    # ── yearly archives ──────────────────────────────────────────────
    def _direct_yearly(self, variable: Cmip6Variable, year: int, output: Path):
        derived_from = self.domain.derived_variables.get(variable.name)
        short = derived_from or variable.shortname
        archive = self._fetch_yearly(variable, short, year)
        downloaded = [(variable, archive)]

        if derived_from is None:
            array = read_archive(archive, short, variable.multiply_add, grid=self.domain.grid)
        else:
            array, inputs = self._derive_relative_humidity(variable, archive, year)
            downloaded.extend(inputs)

        time_major = array.transpose()
        del array
        write_all(
            output,
            variable.name,
            time_major,
            scalefactor=variable.scalefactor,
            chunks=YEARLY_CHUNKS,
            attributes=self._attributes(variable, year),
            batch_size=self.batch_size,
        )
        if self.delete_intermediates:
            for source, path in downloaded:
                if path.exists() and not self._archive_still_needed(source, year):
                    path.unlink()

    def _archive_still_needed(self, source: Cmip6Variable, year: int) -> bool:
        """
        True if a task selected in the current run still has to read the yearly archive of `source`: its own
        conversion, or a derived variable computed from it.
        """
        for variable in self._selected:
            if self.paths.yearly_output(variable, year).exists():
                continue
            if self.domain.time_type(variable) is not TimeType.YEARLY:
                continue
            if variable.name == source.name:
                return True
            if variable.name in self.domain.derived_variables and source.name in DERIVED_INPUTS.get(
                variable.name, ()
            ):
                return True
        return False

    def _fetch_yearly(self, variable: Cmip6Variable, short: str, year: int) -> Path:
        archive = self.paths.yearly_archive(short, year)
        uri = archive_uri(
            self.domain,
            short,
            experiment=self.domain.experiment(year),
            version=self.domain.version(variable, is_future=self._is_future(year)),
            start=f"{year}0101",
            end=f"{year}{self.domain.yearly_last_day}",
        )
        return self.fetcher.download(uri, archive)

    def _derive_relative_humidity(
        self, variable: Cmip6Variable, archive: Path, year: int
    ) -> tuple[SpaceMajorArray, list[tuple[Cmip6Variable, Path]]]:
        """
        Relative humidity from the specific humidity in `archive` plus temperature, pressure and elevation.

        Also returns the yearly input archives it read, the caller decides when to delete them.
        """
        elevation_file = self.ensure_elevation()
        if elevation_file is None:
            raise ValueError(f"{self.domain.source} has no surface elevation to derive {variable.name}")
        # specific humidity kg/kg to g/kg
        specific_humidity = read_archive(archive, "huss", (1000, 0), grid=self.domain.grid)

        inputs: dict[str, SpaceMajorArray] = {}
        downloaded: list[tuple[Cmip6Variable, Path]] = []
        for name in DERIVED_INPUTS[variable.name]:
            source = VARIABLES[name]
            path = self._fetch_yearly(source, source.shortname, year)
            inputs[name] = read_archive(path, source.shortname, source.multiply_add, grid=self.domain.grid)
            downloaded.append((source, path))

        humidity = specific_to_relative_humidity(
            specific_humidity,
            temperature=inputs["temperature_2m_mean"],
            sea_level_pressure=inputs["pressure_msl"],
            elevation=self.elevation.get(elevation_file),
        )
        return humidity, downloaded

    # ── helpers ──────────────────────────────────────────────────────
    def _is_future(self, year: int) -> bool:
        return self.domain.experiment(year).endswith("future")

    def _attributes(self, variable: Cmip6Variable, year: int) -> dict:
        return {
            "variable": variable.name,
            "units": variable.unit,
            "model": self.domain.source,
            "year": year,
            "time_step_seconds": self.domain.dt_seconds,
        }
