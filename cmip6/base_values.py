"""
Static catalog for the HighResMIP CMIP6 downloads: grids, variables, source versions and which temporal
resolution each model publishes a variable in.

Candidate models and what they publish, as surveyed on the ESGF search portals
(https://esgf-data.dkrz.de/search/cmip6-dkrz/ and https://esgf-node.llnl.gov/search/cmip6/):

* CMCC-CM2-VHR4 (0.3125°): daily 2m temp, humidity, wind, precip. No near surface RH (only specific humidity)
  and no daily min/max. Only precipitation is published in yearly files, wind in monthly files.
* FGOALS-f3-H (0.25°): daily clouds, wind, humidity, precip, shortwave. No near surface RH, it has to be
  derived from specific humidity. Temperature min/max only from 3-hourly values.
* HiRAM-SIT-HR (0.23°): daily 2m temp incl. min/max, clouds, precip, wind, snow, shortwave. No u/v wind
  components and no daily RH min/max.
* MRI-AGCM3-2-S (0.1875°): everything daily.
* HadGEM3-GC31-HM: everything daily, 360 day calendar.

Raw sizes for orientation: MRI 2.15 TB (413 GB compressed), HiRAM-SIT-HR 1.3 TB (210 GB), FGOALS 1.2 TB (120 GB).
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

import numpy as np
import pandas as pd

#: Mirrors tried in order, fastest first. Every entry ends with a slash, URIs are appended verbatim.
SERVERS: tuple[str, ...] = (
    "https://esgf3.dkrz.de/thredds/fileServer/cmip6/",
    "https://esgf.ceda.ac.uk/thredds/fileServer/esg_cmip6/CMIP6/",
    "https://esgf-data1.llnl.gov/thredds/fileServer/css03_data/CMIP6/",
    "https://esgf-data04.diasjp.net/thredds/fileServer/esg_dataroot/CMIP6/",
    "https://esgf-data03.diasjp.net/thredds/fileServer/esg_dataroot/CMIP6/",
    "https://esg.lasg.ac.cn/thredds/fileServer/esg_dataroot/CMIP6/",
)

#: First year that is published under the "future" experiment.
FUTURE_CUTOVER_YEAR = 2015
DEFAULT_YEARS = range(1950, 2051)

#: Elevation written for cells that are mostly ocean.
ELEVATION_OCEAN_SENTINEL = -999.0
LAND_FRACTION_THRESHOLD = 0.5


@dataclass(frozen=True)
class RegularGrid:
    """Regular latitude/longitude mesh. Locations are indexed row-major: latitude first, then longitude."""

    nx: int
    ny: int
    lat_min: float
    lon_min: float
    dx: float
    dy: float

    @property
    def count(self) -> int:
        return self.nx * self.ny

    @property
    def latitudes(self) -> np.ndarray:
        return self.lat_min + self.dy * np.arange(self.ny)

    @property
    def longitudes(self) -> np.ndarray:
        return self.lon_min + self.dx * np.arange(self.nx)


class TimeType(enum.Enum):
    MONTHLY = "monthly"
    """Only one archive per month is published, twelve of them are stitched to a year."""
    YEARLY = "yearly"
    """One daily archive covers the full year."""
    UNSUPPORTED = "unsupported"
    """The model does not publish this variable. Tasks are skipped silently."""


@dataclass(frozen=True)
class Cmip6Variable:
    name: str
    shortname: str
    unit: str
    scalefactor: float
    multiply_add: tuple[float, float] | None = None
    is_elevation_correctable: bool = False


_VARIABLE_LIST = [
    Cmip6Variable("pressure_msl", "psl", "hPa", 10, multiply_add=(1 / 100, 0)),
    Cmip6Variable("temperature_2m_min", "tasmin", "°C", 20, multiply_add=(1, -273.15), is_elevation_correctable=True),
    Cmip6Variable("temperature_2m_max", "tasmax", "°C", 20, multiply_add=(1, -273.15), is_elevation_correctable=True),
    Cmip6Variable("temperature_2m_mean", "tas", "°C", 20, multiply_add=(1, -273.15), is_elevation_correctable=True),
    Cmip6Variable("cloudcover_mean", "clt", "%", 1),
    # kg m-2 s-1 daily mean to mm per day
    Cmip6Variable("precipitation_sum", "pr", "mm", 10, multiply_add=(3600 * 24, 0)),
    Cmip6Variable("snowfall_water_equivalent_sum", "prsn", "mm", 10, multiply_add=(3600 * 24, 0)),
    Cmip6Variable("relative_humidity_2m_min", "hursmin", "%", 1),
    Cmip6Variable("relative_humidity_2m_max", "hursmax", "%", 1),
    Cmip6Variable("relative_humidity_2m_mean", "hurs", "%", 1),
    Cmip6Variable("windspeed_10m_mean", "sfcWind", "m/s", 10),
    Cmip6Variable("windspeed_10m_max", "sfcWindmax", "m/s", 10),
    # Moisture in upper portion of soil column
    Cmip6Variable("soil_moisture_0_to_10cm", "mrsos", "g/kg", 1000),
    # mean W/m2 to MJ/m2 daily sum
    Cmip6Variable("shortwave_radiation_sum", "rsds", "MJ/m²", 10, multiply_add=(24 * 0.0036, 0)),
]

#: All variables in processing order. Dict order matters: pressure and temperature come before humidity.
VARIABLES: Mapping[str, Cmip6Variable] = MappingProxyType({v.name: v for v in _VARIABLE_LIST})


@dataclass(frozen=True)
class Cmip6Domain:
    name: str
    source: str
    institute: str
    grid_label: str
    grid: RegularGrid
    versions: tuple[str, str]
    """Source version for (present, future) experiments."""
    time_types: Mapping[str, TimeType]
    version_overrides: Mapping[str, str] = field(default_factory=dict)
    orography_versions: tuple[str, str] | None = None
    """Versions of the (altitude, land fraction) fixed fields, None if the model does not publish them."""
    orography_experiment: str = "highresSST-present"
    derived_variables: Mapping[str, str] = field(default_factory=dict)
    """Variables that are computed instead of downloaded, mapped to the short name that is downloaded instead."""
    yearly_last_day: str = "1231"
    activity: str = "HighResMIP"
    variant: str = "r1i1p1f1"
    frequency: str = "day"
    dt_seconds: int = 24 * 3600

    def version(self, variable: Cmip6Variable, is_future: bool) -> str:
        if variable.name in self.version_overrides:
            return self.version_overrides[variable.name]
        return self.versions[1] if is_future else self.versions[0]

    def time_type(self, variable: Cmip6Variable) -> TimeType:
        return self.time_types.get(variable.name, TimeType.UNSUPPORTED)

    def experiment(self, year: int) -> str:
        return experiment_for_year(year)


def _yearly(*names: str) -> dict[str, TimeType]:
    return {name: TimeType.YEARLY for name in names}


DOMAINS: Mapping[str, Cmip6Domain] = MappingProxyType(
    {
        "CMCC_CM2_VHR4": Cmip6Domain(
            name="CMCC_CM2_VHR4",
            source="CMCC-CM2-VHR4",
            institute="CMCC",
            grid_label="gn",
            grid=RegularGrid(nx=1152, ny=768, lat_min=-90, lon_min=-180, dx=0.3125, dy=180 / 768),
            versions=("20170927", "20190725"),
            version_overrides={"precipitation_sum": "20210308"},
            orography_versions=("20210330", "20210330"),
            # Temperature, humidity and pressure would need 6 hourly values, only precip is in yearly files
            time_types={
                "precipitation_sum": TimeType.YEARLY,
                "windspeed_10m_mean": TimeType.MONTHLY,
                "windspeed_10m_max": TimeType.MONTHLY,
            },
        ),
        "FGOALS_f3_H": Cmip6Domain(
            name="FGOALS_f3_H",
            source="FGOALS-f3-H",
            institute="CAS",
            grid_label="gr",
            grid=RegularGrid(nx=1440, ny=720, lat_min=-90, lon_min=-180, dx=0.25, dy=0.25),
            versions=("20190817", "20190817"),
            orography_versions=("20201204", "20210121"),
            time_types=_yearly(
                "relative_humidity_2m_mean",
                "cloudcover_mean",
                "temperature_2m_mean",
                "pressure_msl",
                "snowfall_water_equivalent_sum",
                "shortwave_radiation_sum",
                "windspeed_10m_mean",
                "windspeed_10m_max",
                "precipitation_sum",
            ),
            derived_variables={"relative_humidity_2m_mean": "huss"},
        ),
        "HiRAM_SIT_HR": Cmip6Domain(
            name="HiRAM_SIT_HR",
            source="HiRAM-SIT-HR",
            institute="AS-RCEC",
            grid_label="gn",
            grid=RegularGrid(nx=1536, ny=768, lat_min=-90, lon_min=-180, dx=360 / 1536, dy=180 / 768),
            versions=("20210713", "20210707"),
            time_types=_yearly(
                "temperature_2m_mean",
                "temperature_2m_max",
                "temperature_2m_min",
                "cloudcover_mean",
                "precipitation_sum",
                "snowfall_water_equivalent_sum",
                "relative_humidity_2m_mean",
                "shortwave_radiation_sum",
                "windspeed_10m_mean",
            ),
        ),
        "MRI_AGCM3_2_S": Cmip6Domain(
            name="MRI_AGCM3_2_S",
            source="MRI-AGCM3-2-S",
            institute="MRI",
            grid_label="gn",
            grid=RegularGrid(nx=1920, ny=960, lat_min=-90, lon_min=-180, dx=0.1875, dy=0.1875),
            versions=("20190711", "20200619"),
            orography_versions=("20200305", "20200305"),
            time_types=_yearly(*VARIABLES),
        ),
        "HadGEM3_GC31_HM": Cmip6Domain(
            name="HadGEM3_GC31_HM",
            source="HadGEM3-GC31-HM",
            institute="MOHC",
            grid_label="gn",
            grid=RegularGrid(nx=1024, ny=768, lat_min=-90, lon_min=-180, dx=360 / 1024, dy=180 / 768),
            versions=("20170831", "20190315"),
            orography_versions=("20200910", "20200910"),
            orography_experiment="hist-1950",
            time_types=_yearly(*VARIABLES),
            # MetOffice 360 day calendar, the year ends on the 30th of December
            yearly_last_day="1230",
        ),
    }
)


def experiment_for_year(year: int) -> str:
    return "highresSST-future" if year >= FUTURE_CUTOVER_YEAR else "highresSST-present"


def days_in_month(year: int, month: int) -> int:
    """Days in a month archive. February is always 28 days, leap days are dropped."""
    if month == 2:
        return 28
    return pd.Period(year=year, month=month, freq="M").days_in_month


def time_steps_in_stitched_year(year: int) -> int:
    """Number of daily time steps in a year assembled from twelve monthly archives."""
    return sum(days_in_month(year, month) for month in range(1, 13))
