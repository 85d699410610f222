from __future__ import annotations

import os
import tempfile
from contextlib import suppress
from pathlib import Path
from typing import Sequence

import requests

from cmip6.base_values import SERVERS, Cmip6Domain
from cmip6.errors import (
    DataNotAvailableError,
    FetchFailed,
    ServerError,
    TransientNetworkError,
)
from etl_scripts.grabbag import eprint

#: Yearly daily archives are several GB, the slower mirrors need hours.
READ_TIMEOUT = 3 * 3600
CONNECT_TIMEOUT = 60


def archive_uri(domain: Cmip6Domain, short: str, experiment: str, version: str, start: str, end: str) -> str:
    """
    Path of a daily archive below a mirror root, e.g.
    ``HighResMIP/MRI/MRI-AGCM3-2-S/highresSST-present/r1i1p1f1/day/tas/gn/v20190711/tas_day_MRI-AGCM3-2-S_highresSST-present_r1i1p1f1_gn_19500101-19501231.nc``
    """
    filename = (
        f"{short}_{domain.frequency}_{domain.source}_{experiment}_{domain.variant}_{domain.grid_label}"
        f"_{start}-{end}.nc"
    )
    return (
        f"{domain.activity}/{domain.institute}/{domain.source}/{experiment}/{domain.variant}/{domain.frequency}"
        f"/{short}/{domain.grid_label}/v{version}/{filename}"
    )


def fixed_field_uri(domain: Cmip6Domain, short: str, version: str) -> str:
    """Path of a time invariant ("fx") field like orography or land fraction."""
    experiment = domain.orography_experiment
    filename = f"{short}_fx_{domain.source}_{experiment}_{domain.variant}_{domain.grid_label}.nc"
    return (
        f"{domain.activity}/{domain.institute}/{domain.source}/{experiment}/{domain.variant}/fx"
        f"/{short}/{domain.grid_label}/v{version}/{filename}"
    )


class MirroredFetcher:
    """
    Download archives through an ordered list of ESGF mirrors.

    A 404 moves on to the next mirror, any other failure is raised immediately. Files are streamed to a
    temporary name next to the target and renamed on success, so an existing target is always complete and
    downloading it again is a no-op.
    """

    def __init__(
        self,
        servers: Sequence[str] = SERVERS,
        session: requests.Session | None = None,
        timeout: tuple[float, float] = (CONNECT_TIMEOUT, READ_TIMEOUT),
    ):
        if not servers:
            raise ValueError("At least one mirror is required")
        self.servers = list(servers)
        self.session = session if session is not None else requests.Session()
        self.timeout = timeout

    def download(self, uri: str, target: Path) -> Path:
        """
        Fetch `uri` from the first mirror that has it and store it at `target`.

        Raises
        ------
        FetchFailed
            Every mirror answered 404.
        ServerError
            A mirror answered with another HTTP error.
        TransientNetworkError
            The connection failed or timed out.
        """
        if target.exists():
            eprint(f"✓ {target.name} already exists")
            return target

        target.parent.mkdir(parents=True, exist_ok=True)
        last_error: DataNotAvailableError | None = None
        for server in self.servers:
            url = f"{server}{uri}"
            try:
                self._download_url(url, target)
                return target
            except DataNotAvailableError as exc:
                eprint(f"✗ Not found (404) on {server}")
                last_error = exc
        raise FetchFailed(f"{uri} not found on any of {len(self.servers)} mirrors", url=uri) from last_error

    def _download_url(self, url: str, target: Path):
        eprint(f"⇣ Downloading {url}")
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
        tmp = Path(tmp_name)
        finished = False
        try:
            with os.fdopen(fd, "wb") as fh:
                with self.session.get(url, stream=True, timeout=self.timeout) as resp:
                    if resp.status_code == 404:
                        raise DataNotAvailableError(f"Not found (404): {url}", url=url)
                    try:
                        resp.raise_for_status()
                    except requests.HTTPError as http_err:
                        raise ServerError(
                            f"HTTP {resp.status_code} for {url}", url=url, status_code=resp.status_code
                        ) from http_err
                    for chunk in resp.iter_content(chunk_size=2**20):
                        fh.write(chunk)
            os.replace(tmp, target)
            finished = True
        except (requests.ConnectionError, requests.Timeout, requests.exceptions.ChunkedEncodingError) as exc:
            raise TransientNetworkError(f"Could not fetch {url}", url=url) from exc
        finally:
            if not finished:
                # purge incomplete fragment
                with suppress(FileNotFoundError):
                    tmp.unlink()
        eprint(f"✓ Downloaded {target.name}")
