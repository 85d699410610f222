import pytest

from cmip6.base_values import (
    DOMAINS,
    SERVERS,
    VARIABLES,
    TimeType,
    days_in_month,
    experiment_for_year,
    time_steps_in_stitched_year,
)
from cmip6.fetcher import archive_uri, fixed_field_uri


def test_servers_end_with_slash():
    assert len(SERVERS) == 6
    assert all(server.endswith("/") for server in SERVERS)


def test_variables_order():
    names = list(VARIABLES)
    assert names.index("pressure_msl") < names.index("relative_humidity_2m_mean")
    assert names.index("temperature_2m_mean") < names.index("relative_humidity_2m_mean")
    assert len(names) == 14


@pytest.mark.parametrize(
    "year,experiment",
    [(1950, "highresSST-present"), (2014, "highresSST-present"), (2015, "highresSST-future"), (2050, "highresSST-future")],
)
def test_experiment_cutover(year, experiment):
    assert experiment_for_year(year) == experiment


def test_february_is_always_28_days():
    assert days_in_month(2000, 2) == 28
    assert days_in_month(2001, 2) == 28
    assert days_in_month(2000, 1) == 31
    assert days_in_month(2000, 4) == 30


@pytest.mark.parametrize("year", [1999, 2000, 2016])
def test_stitched_year_has_365_steps(year):
    assert time_steps_in_stitched_year(year) == 365


def test_version_present_future_and_override():
    cmcc = DOMAINS["CMCC_CM2_VHR4"]
    tas = VARIABLES["temperature_2m_mean"]
    assert cmcc.version(tas, is_future=False) == "20170927"
    assert cmcc.version(tas, is_future=True) == "20190725"
    assert cmcc.version(VARIABLES["precipitation_sum"], is_future=True) == "20210308"


def test_time_types():
    cmcc = DOMAINS["CMCC_CM2_VHR4"]
    assert cmcc.time_type(VARIABLES["windspeed_10m_mean"]) is TimeType.MONTHLY
    assert cmcc.time_type(VARIABLES["precipitation_sum"]) is TimeType.YEARLY
    assert cmcc.time_type(VARIABLES["soil_moisture_0_to_10cm"]) is TimeType.UNSUPPORTED
    assert DOMAINS["HiRAM_SIT_HR"].orography_versions is None


def test_archive_uri():
    mri = DOMAINS["MRI_AGCM3_2_S"]
    uri = archive_uri(mri, "tas", "highresSST-present", "20190711", "19500101", "19501231")
    assert uri == (
        "HighResMIP/MRI/MRI-AGCM3-2-S/highresSST-present/r1i1p1f1/day/tas/gn/v20190711/"
        "tas_day_MRI-AGCM3-2-S_highresSST-present_r1i1p1f1_gn_19500101-19501231.nc"
    )


def test_fixed_field_uri_uses_orography_experiment():
    hadgem = DOMAINS["HadGEM3_GC31_HM"]
    uri = fixed_field_uri(hadgem, "orog", "20200910")
    assert uri == (
        "HighResMIP/MOHC/HadGEM3-GC31-HM/hist-1950/r1i1p1f1/fx/orog/gn/v20200910/"
        "orog_fx_HadGEM3-GC31-HM_hist-1950_r1i1p1f1_gn.nc"
    )


def test_grid_coordinates():
    grid = DOMAINS["FGOALS_f3_H"].grid
    assert grid.count == 1440 * 720
    assert grid.longitudes[0] == -180
    assert grid.latitudes[0] == -90
