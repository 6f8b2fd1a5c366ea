from __future__ import annotations


class ProcessingError(Exception):
    """Base class for pipeline failures."""


class StorageError(ProcessingError):
    """Object Storage could not read or write an object."""

    def __init__(self, message: str, *, key: str | None = None) -> None:
        super().__init__(message)
        self.key = key


class StoreUnavailableError(ProcessingError):
    """The Job Store rejected a read or write."""


class UnsupportedMediaError(ProcessingError):
    def __init__(self, message: str = "Unsupported document type", *, mime_type: str | None = None) -> None:
        super().__init__(message)
        self.mime_type = mime_type


class RenderError(ProcessingError):
    """A renderer failed on input it claims to support."""


class MediaProbeError(ProcessingError):
    """Metadata could not be read from the stored object."""
