import asyncio
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

from llm_cost_exporter.errors import AuthenticationError, ParseError
from llm_cost_exporter.models import (
    ApiKeyCredentials,
    Credentials,
    RawResponse,
    TimeWindow,
)
from llm_cost_exporter.provider.base import get_json

logger = structlog.get_logger()

ANTHROPIC_BASE_URL = "https://api.anthropic.com/v1"
ANTHROPIC_VERSION = "2023-06-01"

USAGE_PATH = "organizations/usage_report/messages"
COST_PATH = "organizations/cost_report"

_PAGE_LIMIT = 31


def _rfc3339(timestamp: "int") -> "str":
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime(
        "%Y-%m-%dT%H:%M:%SZ"
    )


class AnthropicProvider:
    """
    AnthropicProvider reads the Admin API usage and cost reports.
    Both reports are day bucketed and paginated; usage is grouped
    by model and cost by description, which carries the model.
    """

    def __init__(
        self,
        base_url: "str" = ANTHROPIC_BASE_URL,
        timeout: "float" = 10.0,
    ) -> "None":
        self._base_url = base_url.rstrip("/")
        self._client: "httpx.AsyncClient" = httpx.AsyncClient(timeout=timeout)

    @property
    def name(self) -> "str":
        return "anthropic"

    async def close(self) -> "None":
        await self._client.aclose()

    def _headers(self, credentials: "Credentials") -> "dict[str, str]":
        if not isinstance(credentials, ApiKeyCredentials):
            raise AuthenticationError("anthropic: an admin API key is required")
        return {
            "x-api-key": credentials.secret,
            "anthropic-version": ANTHROPIC_VERSION,
        }

    async def fetch_usage(
        self,
        credentials: "Credentials",
        window: "TimeWindow",
    ) -> "RawResponse":
        headers = self._headers(credentials)
        usage, costs = await asyncio.gather(
            self._fetch_pages(USAGE_PATH, window, headers, group_by="model"),
            self._fetch_pages(COST_PATH, window, headers, group_by="description"),
        )
        return RawResponse(
            provider=self.name,
            window=window,
            payload={"usage": usage, "costs": costs},
        )

    async def _fetch_pages(
        self,
        path: "str",
        window: "TimeWindow",
        headers: "dict[str, str]",
        group_by: "str",
    ) -> "list[Any]":
        buckets: "list[Any]" = []
        next_page = ""

        while True:
            params: "dict[str, Any]" = {
                "starting_at": _rfc3339(window.start),
                "ending_at": _rfc3339(window.end),
                "bucket_width": "1d",
                "limit": _PAGE_LIMIT,
                "group_by[]": [group_by],
            }
            if next_page:
                params["page"] = next_page

            url = f"{self._base_url}/{path}"
            logger.debug("anthropic_fetch", url=url, page=next_page or None)
            data = await get_json(self._client, self.name, url, params, headers)

            page = data.get("data")
            if not isinstance(page, list):
                raise ParseError(f"anthropic: {path} response has no data list")
            buckets.extend(page)

            if not data.get("has_more"):
                break

            next_page = data.get("next_page") or ""
            if not next_page:
                raise ParseError(f"anthropic: {path} has_more without next_page")

        logger.debug("anthropic_fetch_done", path=path, bucket_count=len(buckets))
        return buckets
