"""GraphQL client for a source instance.

Every request is a POST of ``{"query", "variables"}``. HTTP and GraphQL
failures are translated into the source error taxonomy so the extraction
engine can decide what to retry:

- connection errors, timeouts, 5xx  -> TransientSourceError
- 429                               -> RateLimitedError (with Retry-After)
- other 4xx, GraphQL ``errors``     -> SourceQueryError
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Optional

import httpx

from graphetl.config import EtlConfig
from graphetl.errors import RateLimitedError, SourceProtocolError, SourceQueryError, TransientSourceError

logger = logging.getLogger(__name__)


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Parse a Retry-After header (delta-seconds or HTTP-date) into seconds."""
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


class SourceClient:
    """Synchronous GraphQL client bound to one endpoint.

    One client is created per extraction worker, so no connection pool is
    shared between threads.

    Example:
        ```python
        with SourceClient("http://localhost:4000/graphql") as client:
            data = client.execute("{ __typename }")
        ```
    """

    def __init__(
        self,
        endpoint: str,
        token: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.endpoint = endpoint
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(timeout=timeout, headers=headers, transport=transport)

    @classmethod
    def from_config(cls, config: EtlConfig, transport: Optional[httpx.BaseTransport] = None) -> "SourceClient":
        config.require("source_url")
        return cls(
            endpoint=config.source_url,  # type: ignore[arg-type]
            token=config.source_token,
            timeout=config.request_timeout,
            transport=transport,
        )

    def execute(self, query: str, variables: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """Run one GraphQL operation and return its ``data`` object.

        Raises:
            TransientSourceError: Network failure, timeout or 5xx.
            RateLimitedError: 429 response.
            SourceQueryError: Other 4xx responses or GraphQL errors.
            SourceProtocolError: The body is not a GraphQL response.
        """
        payload: dict[str, Any] = {"query": query}
        if variables:
            payload["variables"] = variables

        try:
            response = self._client.post(self.endpoint, json=payload)
        except httpx.TimeoutException as e:
            raise TransientSourceError(f"Timeout calling {self.endpoint}: {e}") from e
        except httpx.TransportError as e:
            raise TransientSourceError(f"Network error calling {self.endpoint}: {e}") from e

        status = response.status_code
        if status == 429:
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            raise RateLimitedError(f"Rate limited by {self.endpoint}", retry_after=retry_after)
        if status >= 500:
            raise TransientSourceError(f"{self.endpoint} returned HTTP {status}", status_code=status)
        if status >= 400:
            raise SourceQueryError(f"{self.endpoint} returned HTTP {status}: {response.text[:200]}", status_code=status)

        try:
            body = response.json()
        except ValueError as e:
            raise SourceProtocolError(f"{self.endpoint} returned a non-JSON body") from e
        if not isinstance(body, dict):
            raise SourceProtocolError(f"{self.endpoint} returned a non-object JSON body")

        if body.get("errors"):
            messages = [e.get("message", str(e)) if isinstance(e, dict) else str(e) for e in body["errors"]]
            raise SourceQueryError(f"GraphQL errors: {'; '.join(messages)}")

        data = body.get("data")
        if not isinstance(data, dict):
            raise SourceProtocolError(f"{self.endpoint} returned no data object")
        return data

    def ping(self) -> bool:
        """Health check with the trivial ``{__typename}`` query."""
        try:
            self.execute("{ __typename }")
        except (TransientSourceError, SourceQueryError, SourceProtocolError) as e:
            logger.debug("Health check of %s failed: %s", self.endpoint, e)
            return False
        return True

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "SourceClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
