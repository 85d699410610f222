import shutil
from pathlib import Path

import numpy as np
import pytest
import xarray as xr

from cmip6.base_values import VARIABLES, Cmip6Domain, RegularGrid, TimeType, days_in_month
from cmip6.pipeline import ConversionPipeline, TaskResult
from cmip6.store import ElevationRegistry, TimeSeriesReader

NX, NY = 4, 2

# raw archives run 0°..360°, the first half of every row is shifted to the end on ingest
LAND_FRACTION = np.array([[100, 100, 0, 0], [100, 100, 0, 0]], dtype=np.float32)

TEST_DOMAIN = Cmip6Domain(
    name="TEST",
    source="TEST-MODEL",
    institute="TI",
    grid_label="gn",
    grid=RegularGrid(nx=NX, ny=NY, lat_min=-90, lon_min=-180, dx=90, dy=90),
    versions=("20200101", "20210101"),
    orography_versions=("20190101", "20190101"),
    time_types={
        "windspeed_10m_mean": TimeType.MONTHLY,
        "pressure_msl": TimeType.YEARLY,
        "temperature_2m_mean": TimeType.YEARLY,
        "relative_humidity_2m_mean": TimeType.YEARLY,
    },
    derived_variables={"relative_humidity_2m_mean": "huss"},
)


class FakeFetcher:
    """Writes a synthetic archive for every requested URI and records the URIs."""

    def __init__(self):
        self.uris = []

    def download(self, uri: str, target: Path) -> Path:
        if target.exists():
            return target
        self.uris.append(uri)
        filename = uri.rsplit("/", 1)[-1]
        short = filename.split("_", 1)[0]
        if "_fx_" in filename:
            if short == "orog":
                data, units = np.full((NY, NX), 500, dtype=np.float32), "m"
            else:
                data, units = LAND_FRACTION, "%"
            da = xr.DataArray(data, dims=("lat", "lon"), attrs={"units": units})
        else:
            start, end = filename[: -len(".nc")].rsplit("_", 1)[-1].split("-")
            if start[4:6] == end[4:6]:
                # monthly archive, filled with its month number
                nt = int(end[6:])
                value = int(start[4:6])
            else:
                nt = 365
                value = {"tas": 288.15, "psl": 101325.0, "huss": 0.008}[short]
            da = xr.DataArray(np.full((nt, NY, NX), value, dtype=np.float32), dims=("time", "lat", "lon"))
        target.parent.mkdir(parents=True, exist_ok=True)
        xr.Dataset({short: da}).to_netcdf(target)
        return target


@pytest.fixture
def fetcher():
    return FakeFetcher()


def make_pipeline(tmp_path, fetcher, **kwargs):
    kwargs.setdefault("batch_size", 3)
    return ConversionPipeline(TEST_DOMAIN, tmp_path, fetcher=fetcher, **kwargs)


def read_output(tmp_path, name, year):
    with TimeSeriesReader(tmp_path / "archive-TEST" / f"{name}_{year}.zarr") as reader:
        return reader.read(), reader.attrs


def test_monthly_archives_are_stitched_into_a_year(tmp_path, fetcher):
    with make_pipeline(tmp_path, fetcher) as pipeline:
        results = pipeline.run([VARIABLES["windspeed_10m_mean"]], [2001])
    assert results == {("windspeed_10m_mean", 2001): TaskResult.CONVERTED}

    data, attrs = read_output(tmp_path, "windspeed_10m_mean", 2001)
    assert data.shape == (NX * NY, 365)
    expected = np.repeat(np.arange(1, 13), [days_in_month(2001, month) for month in range(1, 13)])
    for location in range(NX * NY):
        np.testing.assert_array_equal(data[location], expected)
    assert attrs["scale_factor"] == 10
    assert attrs["model"] == "TEST-MODEL"
    # elevation + land fraction, then twelve months
    assert len(fetcher.uris) == 14
    assert "windspeed_10m_mean_2001.zarr" in {p.name for p in (tmp_path / "archive-TEST").iterdir()}
    assert list((tmp_path / "download-TEST").iterdir()) == []


def test_leap_year_drops_february_29(tmp_path, fetcher):
    with make_pipeline(tmp_path, fetcher) as pipeline:
        pipeline.run([VARIABLES["windspeed_10m_mean"]], [2000])
    data, _ = read_output(tmp_path, "windspeed_10m_mean", 2000)
    assert data.shape[1] == 365
    assert data[0, 31 + 27] == 2
    assert data[0, 31 + 28] == 3
    assert any(uri.endswith("20000201-20000228.nc") for uri in fetcher.uris)


def test_second_run_fetches_nothing(tmp_path, fetcher):
    variables = [VARIABLES["windspeed_10m_mean"], VARIABLES["temperature_2m_mean"]]
    with make_pipeline(tmp_path, fetcher) as pipeline:
        pipeline.run(variables, [2001])
    fetcher.uris.clear()
    with make_pipeline(tmp_path, fetcher) as pipeline:
        results = pipeline.run(variables, [2001])
    assert fetcher.uris == []
    assert set(results.values()) == {TaskResult.EXISTS}


def test_kept_intermediates_are_reused(tmp_path, fetcher):
    variable = VARIABLES["windspeed_10m_mean"]
    with make_pipeline(tmp_path, fetcher, delete_intermediates=False) as pipeline:
        pipeline.run([variable], [2001])
    first, _ = read_output(tmp_path, variable.name, 2001)
    shutil.rmtree(tmp_path / "archive-TEST" / "windspeed_10m_mean_2001.zarr")
    fetcher.uris.clear()

    with make_pipeline(tmp_path, fetcher, delete_intermediates=False) as pipeline:
        assert pipeline.convert(variable, 2001) is TaskResult.CONVERTED
    assert fetcher.uris == []
    second, _ = read_output(tmp_path, variable.name, 2001)
    np.testing.assert_array_equal(first, second)


def test_unsupported_variable_is_skipped(tmp_path, fetcher):
    with make_pipeline(tmp_path, fetcher) as pipeline:
        assert pipeline.convert(VARIABLES["soil_moisture_0_to_10cm"], 2001) is TaskResult.UNSUPPORTED
    assert fetcher.uris == []
    assert not (tmp_path / "archive-TEST" / "soil_moisture_0_to_10cm_2001.zarr").exists()


def test_direct_yearly_conversion(tmp_path, fetcher):
    with make_pipeline(tmp_path, fetcher) as pipeline:
        pipeline.run([VARIABLES["temperature_2m_mean"]], [2015])
    data, attrs = read_output(tmp_path, "temperature_2m_mean", 2015)
    assert data.shape == (NX * NY, 365)
    np.testing.assert_allclose(data, 15.0)
    assert attrs["units"] == "°C"
    yearly = [uri for uri in fetcher.uris if "/tas/" in uri]
    assert yearly == [
        "HighResMIP/TI/TEST-MODEL/highresSST-future/r1i1p1f1/day/tas/gn/v20210101/"
        "tas_day_TEST-MODEL_highresSST-future_r1i1p1f1_gn_20150101-20151231.nc"
    ]


def test_elevation_is_created_once_with_ocean_mask(tmp_path, fetcher):
    with make_pipeline(tmp_path, fetcher) as pipeline:
        target = pipeline.ensure_elevation()
        assert pipeline.ensure_elevation() == target
    assert len(fetcher.uris) == 2
    assert all("/fx/" in uri for uri in fetcher.uris)
    with ElevationRegistry() as registry:
        elevation = registry.get(target)
    np.testing.assert_array_equal(elevation, [-999, -999, 500, 500, -999, -999, 500, 500])


def test_no_elevation_without_orography(tmp_path, fetcher):
    domain = Cmip6Domain(
        name="NOORO",
        source="NOORO",
        institute="TI",
        grid_label="gn",
        grid=TEST_DOMAIN.grid,
        versions=("1", "1"),
        time_types={},
    )
    with ConversionPipeline(domain, tmp_path, fetcher=fetcher) as pipeline:
        assert pipeline.ensure_elevation() is None
    assert fetcher.uris == []


def test_relative_humidity_is_derived(tmp_path, fetcher):
    variables = [VARIABLES[name] for name in ("pressure_msl", "temperature_2m_mean", "relative_humidity_2m_mean")]
    with make_pipeline(tmp_path, fetcher) as pipeline:
        results = pipeline.run(variables, [2001])
    assert set(results.values()) == {TaskResult.CONVERTED}

    data, attrs = read_output(tmp_path, "relative_humidity_2m_mean", 2001)
    assert attrs["units"] == "%"
    assert data.shape == (NX * NY, 365)
    assert np.all(np.isfinite(data))
    # ocean cells are evaluated at sea level pressure, land cells 500 m higher
    assert data[0, 0] > data[2, 0]
    assert 70 < data[0, 0] < 82
    assert any("/huss/" in uri for uri in fetcher.uris)
    assert list((tmp_path / "download-TEST").iterdir()) == []


def test_years_in_parallel(tmp_path, fetcher):
    with make_pipeline(tmp_path, fetcher, max_parallel=3) as pipeline:
        results = pipeline.run([VARIABLES["temperature_2m_mean"]], [2001, 2002, 2003])
    assert list(results) == [("temperature_2m_mean", year) for year in (2001, 2002, 2003)]
    for year in (2001, 2002, 2003):
        data, attrs = read_output(tmp_path, "temperature_2m_mean", year)
        assert attrs["year"] == year
        np.testing.assert_allclose(data, 15.0)


def fetched(fetcher, short):
    return [uri for uri in fetcher.uris if f"/{short}/" in uri]


def test_humidity_inputs_are_downloaded_once(tmp_path, fetcher):
    variables = [VARIABLES[name] for name in ("pressure_msl", "temperature_2m_mean", "relative_humidity_2m_mean")]
    with make_pipeline(tmp_path, fetcher) as pipeline:
        pipeline.run(variables, [2001])
    assert len(fetched(fetcher, "psl")) == 1
    assert len(fetched(fetcher, "tas")) == 1
    assert list((tmp_path / "download-TEST").iterdir()) == []


def test_humidity_before_its_inputs_downloads_them_once(tmp_path, fetcher):
    variables = [VARIABLES[name] for name in ("relative_humidity_2m_mean", "pressure_msl", "temperature_2m_mean")]
    with make_pipeline(tmp_path, fetcher) as pipeline:
        results = pipeline.run(variables, [2001])
    assert set(results.values()) == {TaskResult.CONVERTED}
    assert len(fetched(fetcher, "psl")) == 1
    assert len(fetched(fetcher, "tas")) == 1
    assert list((tmp_path / "download-TEST").iterdir()) == []


def test_humidity_alone_cleans_up_its_inputs(tmp_path, fetcher):
    with make_pipeline(tmp_path, fetcher) as pipeline:
        pipeline.run([VARIABLES["relative_humidity_2m_mean"]], [2001])
    assert (tmp_path / "archive-TEST" / "relative_humidity_2m_mean_2001.zarr").exists()
    assert not (tmp_path / "archive-TEST" / "pressure_msl_2001.zarr").exists()
    assert list((tmp_path / "download-TEST").iterdir()) == []


def test_humidity_inputs_are_kept_with_intermediates(tmp_path, fetcher):
    with make_pipeline(tmp_path, fetcher, delete_intermediates=False) as pipeline:
        pipeline.run([VARIABLES["relative_humidity_2m_mean"]], [2001])
    left = {p.name for p in (tmp_path / "download-TEST").iterdir()}
    assert {"huss_2001.nc", "psl_2001.nc", "tas_2001.nc"} <= left


def test_month_readers_are_closed_when_one_fails_to_open(tmp_path, fetcher, monkeypatch):
    opened = []
    closed = []

    class FailingReader:
        def __init__(self, path):
            if path.name.endswith("03.zarr"):
                raise FileNotFoundError(path)
            opened.append(path)

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            closed.append(self)

    monkeypatch.setattr("cmip6.pipeline.TimeSeriesReader", FailingReader)
    with make_pipeline(tmp_path, fetcher) as pipeline:
        monkeypatch.setattr(pipeline, "_convert_month", lambda variable, year, month: None)
        with pytest.raises(FileNotFoundError):
            pipeline.convert(VARIABLES["windspeed_10m_mean"], 2001)
    assert len(opened) == 2
    assert len(closed) == 2


def test_inputs_are_not_kept_for_unpublished_tasks(tmp_path, fetcher):
    domain = Cmip6Domain(
        name="TEST",
        source="TEST-MODEL",
        institute="TI",
        grid_label="gn",
        grid=TEST_DOMAIN.grid,
        versions=TEST_DOMAIN.versions,
        orography_versions=TEST_DOMAIN.orography_versions,
        time_types={"relative_humidity_2m_mean": TimeType.YEARLY},
        derived_variables=TEST_DOMAIN.derived_variables,
    )
    variables = [VARIABLES[name] for name in ("relative_humidity_2m_mean", "pressure_msl")]
    with ConversionPipeline(domain, tmp_path, fetcher=fetcher) as pipeline:
        results = pipeline.run(variables, [2001])
    assert results[("pressure_msl", 2001)] is TaskResult.UNSUPPORTED
    assert list((tmp_path / "download-TEST").iterdir()) == []
