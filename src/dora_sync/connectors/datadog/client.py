"""Datadog REST API collector.

Provides an async httpx-based client for the Datadog v2 incidents and service
catalog APIs with API/application key auth. Incidents use offset-based
pagination (``page[offset]`` / ``page[size]`` with ``meta.pagination``).

Reference: https://docs.datadoghq.com/api/latest/incidents/
"""

import asyncio
import logging
import random
from datetime import datetime
from typing import Any, Optional

import httpx

from dora_sync.models import IncidentBatch, IncidentRecord, format_timestamp

logger = logging.getLogger("dora_sync.datadog.client")


class DatadogClientError(Exception):
    """Raised when a Datadog API request fails.

    Wraps httpx errors and HTTP errors for consistent error handling.
    """

    pass


class DatadogClient:
    """Datadog API client using httpx with DD-API-KEY / DD-APPLICATION-KEY headers.

    Example:
        >>> async with DatadogClient("api-key", "app-key") as client:
        ...     batch = await client.get_incidents(since, "checkout-service")
    """

    BASE_URL = "https://us5.datadoghq.com"
    PAGE_SIZE = 100
    MAX_PAGES = 50

    MAX_RETRIES = 3
    BASE_BACKOFF = 2  # seconds
    MAX_BACKOFF = 60  # seconds

    def __init__(
        self,
        api_key: str,
        app_key: str,
        base_url: Optional[str] = None,
        delay_ms: int = 100,
    ) -> None:
        """Initialize Datadog client.

        Args:
            api_key: Datadog API key
            app_key: Datadog application key
            base_url: Datadog site URL (default: https://us5.datadoghq.com)
            delay_ms: Delay between page requests in milliseconds
        """
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.delay_ms = delay_ms

        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(connect=3.0, read=15.0, write=5.0, pool=3.0),
            limits=httpx.Limits(
                max_keepalive_connections=10,
                max_connections=20,
                keepalive_expiry=10.0,
            ),
            headers={
                "DD-API-KEY": api_key,
                "DD-APPLICATION-KEY": app_key,
                "Accept": "application/json",
            },
        )

    async def get_incidents(
        self, since: datetime, service_name: Optional[str] = None
    ) -> IncidentBatch:
        """Fetch incidents modified since a timestamp, optionally for one service.

        Items that cannot be mapped are kept in ``IncidentBatch.rejected`` so one
        bad incident never drops the rest of the response.

        Raises:
            DatadogClientError: If any page request fails
        """
        params: dict[str, Any] = {"filter[since]": format_timestamp(since)}
        if service_name:
            params["filter[query]"] = f"service:{service_name}"

        batch = IncidentBatch()
        offset = 0

        for _ in range(self.MAX_PAGES):
            page_params = {
                **params,
                "page[size]": self.PAGE_SIZE,
                "page[offset]": offset,
            }
            data = await self._get("/api/v2/incidents", page_params)

            items = data.get("data") or []
            for item in items:
                try:
                    batch.incidents.append(IncidentRecord.from_api(item))
                except (AttributeError, KeyError, TypeError, ValueError) as e:
                    incident_id = item.get("id") if isinstance(item, dict) else None
                    logger.warning(
                        "datadog_incident_rejected",
                        extra={"incident_id": incident_id, "error": str(e)},
                    )
                    batch.rejected.append(item)

            pagination = (data.get("meta") or {}).get("pagination") or {}
            next_offset = pagination.get("next_offset")
            logger.debug(
                "datadog_incidents_page",
                extra={
                    "service": service_name,
                    "offset": offset,
                    "page_items": len(items),
                    "next_offset": next_offset,
                },
            )
            if not items or next_offset is None or next_offset <= offset:
                break
            offset = next_offset

            if self.delay_ms > 0:
                await asyncio.sleep(self.delay_ms / 1000.0)

        logger.info(
            "datadog_incidents_complete",
            extra={
                "service": service_name,
                "incidents": len(batch.incidents),
                "rejected": len(batch.rejected),
            },
        )
        return batch

    async def list_services(self) -> list[str]:
        """List service names defined in the Datadog service catalog."""
        data = await self._get("/api/v2/services/definitions", {"page[size]": 100})
        names = []
        for item in data.get("data") or []:
            schema = (item.get("attributes") or {}).get("schema") or {}
            name = schema.get("dd-service")
            if name:
                names.append(name)
        return names

    async def _get(self, path: str, params: dict[str, Any]) -> dict[str, Any]:
        """GET with retries on 429, 5xx and timeouts."""
        for attempt in range(self.MAX_RETRIES + 1):
            try:
                response = await self.client.get(path, params=params)
                if response.status_code == 429 or response.status_code >= 500:
                    if attempt < self.MAX_RETRIES:
                        backoff = min(
                            self.MAX_BACKOFF, self.BASE_BACKOFF ** (attempt + 1)
                        ) + random.uniform(0, 1)
                        logger.warning(
                            "datadog_retry",
                            extra={
                                "path": path,
                                "status_code": response.status_code,
                                "attempt": attempt + 1,
                            },
                        )
                        await asyncio.sleep(backoff)
                        continue
                response.raise_for_status()
                try:
                    return response.json()
                except ValueError as e:
                    logger.error("datadog_invalid_json", extra={"path": path, "error": str(e)})
                    raise DatadogClientError(f"DATADOG_INVALID_RESPONSE: {path}") from e

            except httpx.TimeoutException as e:
                if attempt < self.MAX_RETRIES:
                    await asyncio.sleep(
                        min(self.MAX_BACKOFF, self.BASE_BACKOFF ** (attempt + 1))
                    )
                    continue
                logger.error("datadog_timeout", extra={"path": path, "error": str(e)})
                raise DatadogClientError(f"DATADOG_TIMEOUT: {path}") from e
            except httpx.HTTPError as e:
                logger.error("datadog_request_error", extra={"path": path, "error": str(e)})
                raise DatadogClientError(f"DATADOG_REQUEST_ERROR: {e}") from e

        raise DatadogClientError(f"DATADOG_REQUEST_ERROR: {path} failed after retries")

    async def close(self) -> None:
        """Close the HTTP client connection."""
        if self.client is not None:
            await self.client.aclose()

    async def __aenter__(self) -> "DatadogClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
