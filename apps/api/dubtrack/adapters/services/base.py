"""Shared HTTP plumbing for opaque request/response services."""

from __future__ import annotations

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class UpstreamServiceError(Exception):
    """Raised when an external service fails or returns an unusable response."""


class UpstreamTimeoutError(UpstreamServiceError):
    """Raised when an external service does not answer within its timeout."""


class ServiceClient:
    """POSTs JSON to one service endpoint with an explicit timeout."""

    service_name = "service"

    def __init__(
        self,
        base_url: str | None,
        *,
        timeout: float,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/") if base_url else None
        self._timeout = timeout
        self._transport = transport

    @property
    def timeout(self) -> float:
        return self._timeout

    def _post_json(self, path: str, payload: dict[str, Any]) -> Any:
        if not self._base_url:
            raise UpstreamServiceError(f"{self.service_name} URL is not configured")

        url = f"{self._base_url}{path}"
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                response = client.post(url, json=payload)
                response.raise_for_status()
                return response.json()
        except httpx.TimeoutException as exc:
            logger.warning("upstream.timeout service=%s timeout_seconds=%s", self.service_name, self._timeout)
            raise UpstreamTimeoutError(f"{self.service_name} timed out after {self._timeout:g}s") from exc
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "upstream.failed service=%s status_code=%s",
                self.service_name,
                exc.response.status_code,
            )
            raise UpstreamServiceError(
                f"{self.service_name} responded with status {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("upstream.failed service=%s reason=%s", self.service_name, type(exc).__name__)
            raise UpstreamServiceError(f"{self.service_name} request failed: {exc}") from exc
        except ValueError as exc:
            raise UpstreamServiceError(f"{self.service_name} returned invalid JSON") from exc
