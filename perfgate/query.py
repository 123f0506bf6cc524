"""Client for the Metrics Query Service."""

import logging
import os
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

API_KEY_ENV = "PERFGATE_QUERY_API_KEY"


class QueryError(Exception):
    """Raised when the Metrics Query Service cannot answer a query."""


class MetricsQueryClient:
    """Fetch windowed aggregate values for a target.

    The service answers ``GET {base_url}/query?metric=&target=&since=`` with
    either ``{"value": x}`` or ``{"facets": [{"facet", "value", "count"}]}``.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        api_key = api_key if api_key is not None else os.environ.get(API_KEY_ENV)
        headers = {"X-Api-Key": api_key} if api_key else {}
        self._client = httpx.Client(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    def query(self, metric: str, target: str, window_seconds: int, facet: Optional[str] = None):
        """Run one query and return the decoded JSON payload.

        Raises:
            QueryError: On transport failure, non-2xx status, or a non-JSON body.
        """
        params = {"metric": metric, "target": target, "since": window_seconds}
        if facet:
            params["facet"] = facet
        logger.debug("querying %s for %s over %ss", metric, target, window_seconds)

        try:
            response = self._client.get("/query", params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise QueryError(
                f"query for {metric!r} failed with status {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise QueryError(f"query for {metric!r} failed: {exc}") from exc

        try:
            return response.json()
        except ValueError as exc:
            raise QueryError(f"query for {metric!r} returned a non-JSON body") from exc

    def close(self) -> None:
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()
