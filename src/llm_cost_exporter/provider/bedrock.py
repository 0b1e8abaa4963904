import asyncio
from datetime import datetime, timezone
from typing import Any, Callable

import boto3
import structlog
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from llm_cost_exporter.errors import (
    AuthenticationError,
    NetworkError,
    ParseError,
    RateLimitError,
)
from llm_cost_exporter.models import (
    AwsCredentials,
    Credentials,
    RawResponse,
    TimeWindow,
)

logger = structlog.get_logger()

NAMESPACE = "AWS/Bedrock"
METRIC_NAMES: "tuple[str, ...]" = ("Invocations", "InputTokenCount", "OutputTokenCount")

# hourly sums are accepted by CloudWatch for any data age
_PERIOD_SECONDS = 3600
# get_metric_data accepts at most 500 queries per call
_MAX_QUERIES = 500

THROTTLING_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "TooManyRequestsException",
        "RequestLimitExceeded",
    }
)
AUTH_CODES = frozenset(
    {
        "ExpiredToken",
        "ExpiredTokenException",
        "InvalidClientTokenId",
        "UnrecognizedClientException",
        "SignatureDoesNotMatch",
        "AccessDenied",
        "AccessDeniedException",
    }
)


def default_cloudwatch_client(
    credentials: "AwsCredentials",
    region: "str",
    timeout: "float",
) -> "Any":
    session = boto3.Session(
        aws_access_key_id=credentials.access_key_id,
        aws_secret_access_key=credentials.secret_access_key,
        aws_session_token=credentials.session_token,
    )
    return session.client(
        "cloudwatch",
        region_name=region,
        config=BotoConfig(
            connect_timeout=timeout,
            read_timeout=timeout,
            retries={"max_attempts": 1},
        ),
    )


def translate_client_error(exc: "ClientError") -> "Exception":
    """
    maps a botocore ClientError onto the provider error taxonomy.
    """
    error = exc.response.get("Error", {})
    code = error.get("Code", "Unknown")
    status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
    message = f"bedrock: {code}: {error.get('Message', '')}"

    if code in THROTTLING_CODES:
        return RateLimitError(message)
    if code in AUTH_CODES:
        return AuthenticationError(message)
    if status >= 500:
        return NetworkError(message)
    return ParseError(message)


class BedrockProvider:
    """
    BedrockProvider reads Bedrock runtime metrics from CloudWatch.
    Model ids are discovered from the Invocations metric; for each
    one the hourly sums of invocations and input/output tokens over
    the window are returned. boto3 is blocking, so calls run on a
    worker thread.
    """

    def __init__(
        self,
        region: "str",
        timeout: "float" = 10.0,
        client_factory: "Callable[[AwsCredentials, str, float], Any]" = (
            default_cloudwatch_client
        ),
    ) -> "None":
        self._region = region
        self._timeout = timeout
        self._client_factory = client_factory

    @property
    def name(self) -> "str":
        return "bedrock"

    async def close(self) -> "None":
        # boto3 clients hold no resources that need explicit release
        return None

    async def fetch_usage(
        self,
        credentials: "Credentials",
        window: "TimeWindow",
    ) -> "RawResponse":
        if not isinstance(credentials, AwsCredentials):
            raise AuthenticationError("bedrock: AWS credentials are required")

        try:
            metrics = await asyncio.to_thread(self._collect, credentials, window)
        except ClientError as exc:
            raise translate_client_error(exc) from exc
        except BotoCoreError as exc:
            raise NetworkError(f"bedrock: {exc}") from exc

        return RawResponse(
            provider=self.name,
            window=window,
            payload={"metrics": metrics},
        )

    def _collect(
        self,
        credentials: "AwsCredentials",
        window: "TimeWindow",
    ) -> "list[dict[str, Any]]":
        client = self._client_factory(credentials, self._region, self._timeout)
        model_ids = self._list_model_ids(client)
        if not model_ids:
            logger.debug("bedrock_no_models", region=self._region)
            return []

        queries: "list[dict[str, Any]]" = []
        index: "dict[str, tuple[str, str]]" = {}
        for i, model_id in enumerate(model_ids):
            for j, metric_name in enumerate(METRIC_NAMES):
                query_id = f"q{i}_{j}"
                index[query_id] = (model_id, metric_name)
                queries.append(
                    {
                        "Id": query_id,
                        "MetricStat": {
                            "Metric": {
                                "Namespace": NAMESPACE,
                                "MetricName": metric_name,
                                "Dimensions": [{"Name": "ModelId", "Value": model_id}],
                            },
                            "Period": _PERIOD_SECONDS,
                            "Stat": "Sum",
                        },
                        "ReturnData": True,
                    }
                )

        values: "dict[str, list[float]]" = {query_id: [] for query_id in index}
        start = datetime.fromtimestamp(window.start, tz=timezone.utc)
        end = datetime.fromtimestamp(window.end, tz=timezone.utc)

        for offset in range(0, len(queries), _MAX_QUERIES):
            chunk = queries[offset : offset + _MAX_QUERIES]
            next_token = ""
            while True:
                params: "dict[str, Any]" = {
                    "MetricDataQueries": chunk,
                    "StartTime": start,
                    "EndTime": end,
                }
                if next_token:
                    params["NextToken"] = next_token
                response = client.get_metric_data(**params)

                for result in response.get("MetricDataResults", []):
                    query_id = result.get("Id")
                    if query_id in values:
                        values[query_id].extend(result.get("Values", []))

                next_token = response.get("NextToken") or ""
                if not next_token:
                    break

        return [
            {"model": model_id, "metric": metric_name, "values": values[query_id]}
            for query_id, (model_id, metric_name) in index.items()
        ]

    @staticmethod
    def _list_model_ids(client: "Any") -> "list[str]":
        model_ids: "set[str]" = set()
        paginator = client.get_paginator("list_metrics")
        for page in paginator.paginate(Namespace=NAMESPACE, MetricName="Invocations"):
            for metric in page.get("Metrics", []):
                dimensions = metric.get("Dimensions", [])
                # only the per-model series, not the per-model-and-other splits
                if len(dimensions) == 1 and dimensions[0].get("Name") == "ModelId":
                    model_ids.add(dimensions[0]["Value"])
        return sorted(model_ids)
