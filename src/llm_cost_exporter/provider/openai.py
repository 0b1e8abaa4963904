import asyncio
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

OPENAI_BASE_URL = "https://api.openai.com/v1/organization"

# usage endpoints that report tokens and requests per model
USAGE_ENDPOINTS: "tuple[str, ...]" = ("completions", "embeddings")

# daily buckets; the API caps 1d buckets at 31 per page
_BUCKET_WIDTH = "1d"
_PAGE_LIMIT = 31


class OpenAIProvider:
    """
    OpenAIProvider implements the UsageProvider protocol for OpenAI's
    organization usage and costs APIs. Usage is grouped by model,
    costs by line item; both are paginated and returned untouched
    under the "usage" and "costs" keys of the payload.
    """

    def __init__(
        self,
        base_url: "str" = OPENAI_BASE_URL,
        org_id: "str" = "",
        timeout: "float" = 10.0,
    ) -> "None":
        self._base_url = base_url.rstrip("/")
        self._org_id = org_id
        self._client: "httpx.AsyncClient" = httpx.AsyncClient(timeout=timeout)

    @property
    def name(self) -> "str":
        return "openai"

    async def close(self) -> "None":
        """
        closes the underlying HTTP client.
        """
        await self._client.aclose()

    def _headers(self, credentials: "Credentials") -> "dict[str, str]":
        if not isinstance(credentials, ApiKeyCredentials):
            raise AuthenticationError("openai: an API key is required")
        headers: "dict[str, str]" = {"Authorization": f"Bearer {credentials.secret}"}
        if self._org_id:
            headers["OpenAI-Organization"] = self._org_id
        return headers

    async def fetch_usage(
        self,
        credentials: "Credentials",
        window: "TimeWindow",
    ) -> "RawResponse":
        """
        fetches usage from every usage endpoint and the costs
        endpoint concurrently.
        """
        headers = self._headers(credentials)
        usage_tasks = [
            self._fetch_pages(
                f"usage/{path}",
                window,
                headers,
                group_by="model",
            )
            for path in USAGE_ENDPOINTS
        ]
        costs_task = self._fetch_pages("costs", window, headers, group_by="line_item")

        *usage_pages, cost_buckets = await asyncio.gather(*usage_tasks, costs_task)

        usage_buckets: "list[Any]" = []
        for buckets in usage_pages:
            usage_buckets.extend(buckets)

        return RawResponse(
            provider=self.name,
            window=window,
            payload={"usage": usage_buckets, "costs": cost_buckets},
        )

    async def _fetch_pages(
        self,
        path: "str",
        window: "TimeWindow",
        headers: "dict[str, str]",
        group_by: "str",
    ) -> "list[Any]":
        """
        fetches every page of a bucketed OpenAI endpoint.
        """
        buckets: "list[Any]" = []
        next_page = ""

        # while structure to handle pagination until no more
        # pages are available
        while True:
            params: "dict[str, Any]" = {
                "start_time": window.start,
                "end_time": window.end,
                "bucket_width": _BUCKET_WIDTH,
                "limit": _PAGE_LIMIT,
                "group_by": group_by,
            }
            if next_page:
                params["page"] = next_page

            url = f"{self._base_url}/{path}"
            logger.debug("openai_fetch", url=url, page=next_page or None)
            data = await get_json(self._client, self.name, url, params, headers)

            page = data.get("data")
            if not isinstance(page, list):
                raise ParseError(f"openai: {path} response has no data list")
            buckets.extend(page)

            # break if there are no more pages to fetch
            if not data.get("has_more"):
                break

            next_page = data.get("next_page") or ""
            if not next_page:
                raise ParseError(f"openai: {path} has_more without next_page")

        logger.debug("openai_fetch_done", path=path, bucket_count=len(buckets))
        return buckets
