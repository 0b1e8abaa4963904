from typing import Any, Protocol

import httpx
import structlog

from llm_cost_exporter.errors import (
    AuthenticationError,
    NetworkError,
    ParseError,
    RateLimitError,
)
from llm_cost_exporter.models import Credentials, RawResponse, TimeWindow

logger = structlog.get_logger()


class UsageProvider(Protocol):
    """
    UsageProvider stands as a common protocol that all
    LLM providers must satisfy.

    Providers fetch usage and cost data for a time window and
    return the decoded payload, leaving interpretation to the
    normalizer. Failures are raised as NetworkError, RateLimitError,
    ParseError or AuthenticationError.
    """

    @property
    def name(self) -> "str": ...

    async def fetch_usage(
        self,
        credentials: "Credentials",
        window: "TimeWindow",
    ) -> "RawResponse": ...

    async def close(self) -> "None": ...


def parse_retry_after(value: "str | None") -> "float | None":
    """
    parses a Retry-After header given in seconds. HTTP-date values
    are not honored and yield None.
    """
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return max(seconds, 0.0)


async def get_json(
    client: "httpx.AsyncClient",
    provider: "str",
    url: "str",
    params: "Any" = None,
    headers: "dict[str, str] | None" = None,
) -> "dict[str, Any]":
    """
    performs a GET and decodes the JSON object body, translating
    transport and status failures into provider errors.
    """
    try:
        resp = await client.get(url, params=params, headers=headers)
    except httpx.TimeoutException as exc:
        raise NetworkError(f"{provider}: request to {url} timed out") from exc
    except httpx.HTTPError as exc:
        raise NetworkError(f"{provider}: request to {url} failed: {exc}") from exc

    if resp.status_code == 429:
        retry_after = parse_retry_after(resp.headers.get("retry-after"))
        logger.debug(
            "provider_rate_limited", provider=provider, retry_after=retry_after
        )
        raise RateLimitError(f"{provider}: rate limited", retry_after=retry_after)
    if resp.status_code in (401, 403):
        raise AuthenticationError(
            f"{provider}: credentials rejected with status {resp.status_code}"
        )
    if resp.status_code >= 500:
        raise NetworkError(f"{provider}: server error {resp.status_code}")
    if resp.status_code >= 400:
        raise ParseError(f"{provider}: request rejected with status {resp.status_code}")

    try:
        data = resp.json()
    except ValueError as exc:
        raise ParseError(f"{provider}: response body is not JSON") from exc
    if not isinstance(data, dict):
        raise ParseError(f"{provider}: expected a JSON object")
    return data
