"""HTTP transport for encoded image bytes.

The fetch coordinator only needs an object with ``get(resource) -> bytes``;
this is the production implementation over a shared ``httpx.Client``.
It never retries: retry is the caller's decision.
"""

from __future__ import annotations

from collections.abc import Mapping

import httpx

from drift_images.logger import get_logger

from .errors import NetworkError
from .types import ResourceRef

_logger = get_logger("transport")

DEFAULT_TIMEOUT = 15.0


class HttpTransport:
    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        headers: Mapping[str, str] | None = None,
        client: httpx.Client | None = None,
    ):
        self._owns_client = client is None
        self._client = client or httpx.Client(
            timeout=timeout,
            headers=dict(headers or {}),
            follow_redirects=True,
        )

    def get(self, resource: ResourceRef) -> bytes:
        url = resource.location
        try:
            response = self._client.get(url)
        except httpx.HTTPError as e:
            _logger.debug("GET %s failed: %s", url, e)
            raise NetworkError(f"request failed: {e}", resource) from e
        if not response.is_success:
            _logger.debug("GET %s -> HTTP %d", url, response.status_code)
            raise NetworkError(
                f"unexpected status {response.status_code}",
                resource,
                status_code=response.status_code,
            )
        data = response.content
        _logger.debug("GET %s -> %d bytes", url, len(data))
        return data

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> HttpTransport:
        return self

    def __exit__(self, *exc) -> None:
        self.close()
