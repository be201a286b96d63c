"""Error kinds raised by the store, the schema guardian and the routes."""

from __future__ import annotations

from typing import Sequence


class HomeReaderError(Exception):
    """Base class; ``status_code`` is what the HTTP layer reports."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigurationMissing(HomeReaderError):
    """A required binding (store, blob store, feedback model) is not configured."""

    status_code = 500


class ValidationFailed(HomeReaderError):
    status_code = 400


class SchemaNotReady(HomeReaderError):
    """Required columns are still missing after ``ensure_schema``."""

    status_code = 500

    def __init__(self, table: str, missing: Sequence[str]) -> None:
        self.table = table
        self.missing = list(missing)
        super().__init__("schema not ready: missing " + ",".join(self.missing))


class NotFound(HomeReaderError):
    status_code = 404


class Forbidden(HomeReaderError):
    status_code = 403


class StoreUnavailable(HomeReaderError):
    """A query or DDL statement failed outside the self-healing paths."""

    status_code = 500

    def __init__(self, message: str, original_error: Exception | None = None) -> None:
        super().__init__(message)
        self.original_error = original_error

    def __str__(self) -> str:
        if self.original_error:
            return f"{self.message}: {self.original_error}"
        return self.message
