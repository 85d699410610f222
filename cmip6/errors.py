class Cmip6Error(RuntimeError):
    """Base class for everything the CMIP6 ETL raises on purpose."""


# ── fetching ─────────────────────────────────────────────────────────
class FetchError(Cmip6Error):
    """A remote archive could not be retrieved."""

    def __init__(self, message: str, url: str | None = None):
        super().__init__(message)
        self.url = url


class DataNotAvailableError(FetchError):
    """The mirror answered 404 for this archive. The next mirror may still have it."""


class FetchFailed(FetchError):
    """Every mirror answered 404."""


class TransientNetworkError(FetchError):
    """Connection dropped, timed out or was refused. Not retried within a run."""


class ServerError(FetchError):
    """The mirror answered with an HTTP error other than 404."""

    def __init__(self, message: str, url: str | None = None, status_code: int | None = None):
        super().__init__(message, url=url)
        self.status_code = status_code


# ── decoding ─────────────────────────────────────────────────────────
class DecodeError(Cmip6Error):
    """An archive does not look the way the catalog says it should."""

    def __init__(self, message: str, path=None, field: str | None = None):
        super().__init__(f"{message} (file={path}, field={field})")
        self.path = path
        self.field = field


class FieldNotFound(DecodeError):
    pass


class UnexpectedDimensionality(DecodeError):
    pass


# ── derived variables / assembly ─────────────────────────────────────
class InputMismatch(Cmip6Error):
    """Arrays that must share a grid and time axis do not."""
