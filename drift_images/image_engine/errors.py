from __future__ import annotations

from .types import ResourceRef


class ImageError(Exception):
    """Base class for image engine failures."""

    def __init__(self, message: str, resource: ResourceRef | None = None):
        super().__init__(message)
        self.resource = resource


class NetworkError(ImageError):
    """Fetching the encoded bytes failed (connectivity, timeout, bad status)."""

    def __init__(self, message: str, resource: ResourceRef | None = None, status_code: int | None = None):
        super().__init__(message, resource)
        self.status_code = status_code


class DecodeError(ImageError):
    """The bytes did not decode into an image (or thumbnailing failed)."""
