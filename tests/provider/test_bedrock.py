from datetime import datetime, timezone
from typing import Any

import boto3
import pytest
from botocore.stub import ANY, Stubber

from llm_cost_exporter.errors import (
    AuthenticationError,
    NetworkError,
    RateLimitError,
)
from llm_cost_exporter.models import ApiKeyCredentials, AwsCredentials, TimeWindow
from llm_cost_exporter.provider.bedrock import BedrockProvider

WINDOW = TimeWindow(start=1700000000, end=1700003600)
CREDENTIALS = AwsCredentials(
    access_key_id="ASIAEXAMPLEEXAMPLE01",
    secret_access_key="secret",
    session_token="token",
)
HAIKU = "anthropic.claude-3-haiku-20240307-v1:0"


class StubbedCloudWatch:
    """
    A CloudWatch client factory handing out a single stubbed client.
    """

    def __init__(self) -> "None":
        self.client = boto3.client(
            "cloudwatch",
            region_name="us-east-1",
            aws_access_key_id="AKIATESTTESTTEST",
            aws_secret_access_key="test",
        )
        self.stubber = Stubber(self.client)
        self.calls: "list[tuple[AwsCredentials, str, float]]" = []

    def __call__(
        self,
        credentials: "AwsCredentials",
        region: "str",
        timeout: "float",
    ) -> "Any":
        self.calls.append((credentials, region, timeout))
        return self.client


def _list_metrics(*model_ids: "str") -> "dict[str, Any]":
    return {
        "Metrics": [
            {
                "Namespace": "AWS/Bedrock",
                "MetricName": "Invocations",
                "Dimensions": [{"Name": "ModelId", "Value": model_id}],
            }
            for model_id in model_ids
        ]
    }


class TestBedrockProviderFetchUsage:
    @pytest.mark.asyncio
    async def test_collects_sums_per_model(self) -> "None":
        cloudwatch = StubbedCloudWatch()
        metrics = _list_metrics(HAIKU)
        # per-model-and-region series are ignored
        metrics["Metrics"].append(
            {
                "Namespace": "AWS/Bedrock",
                "MetricName": "Invocations",
                "Dimensions": [
                    {"Name": "ModelId", "Value": HAIKU},
                    {"Name": "Region", "Value": "us-east-1"},
                ],
            }
        )
        cloudwatch.stubber.add_response(
            "list_metrics",
            metrics,
            {"Namespace": "AWS/Bedrock", "MetricName": "Invocations"},
        )
        cloudwatch.stubber.add_response(
            "get_metric_data",
            {
                "MetricDataResults": [
                    {"Id": "q0_0", "Values": [2.0, 3.0]},
                    {"Id": "q0_1", "Values": [1200.0]},
                ],
                "NextToken": "more",
            },
            {
                "MetricDataQueries": ANY,
                "StartTime": datetime.fromtimestamp(WINDOW.start, tz=timezone.utc),
                "EndTime": datetime.fromtimestamp(WINDOW.end, tz=timezone.utc),
            },
        )
        cloudwatch.stubber.add_response(
            "get_metric_data",
            {"MetricDataResults": [{"Id": "q0_2", "Values": [300.0]}]},
            {
                "MetricDataQueries": ANY,
                "StartTime": ANY,
                "EndTime": ANY,
                "NextToken": "more",
            },
        )

        provider = BedrockProvider(
            region="eu-central-1", timeout=5.0, client_factory=cloudwatch
        )
        with cloudwatch.stubber:
            raw = await provider.fetch_usage(CREDENTIALS, WINDOW)

        assert raw.provider == "bedrock"
        assert raw.payload["metrics"] == [
            {"model": HAIKU, "metric": "Invocations", "values": [2.0, 3.0]},
            {"model": HAIKU, "metric": "InputTokenCount", "values": [1200.0]},
            {"model": HAIKU, "metric": "OutputTokenCount", "values": [300.0]},
        ]
        assert cloudwatch.calls == [(CREDENTIALS, "eu-central-1", 5.0)]
        cloudwatch.stubber.assert_no_pending_responses()

    @pytest.mark.asyncio
    async def test_no_models_skips_metric_data(self) -> "None":
        cloudwatch = StubbedCloudWatch()
        cloudwatch.stubber.add_response("list_metrics", {"Metrics": []})

        provider = BedrockProvider(region="us-east-1", client_factory=cloudwatch)
        with cloudwatch.stubber:
            raw = await provider.fetch_usage(CREDENTIALS, WINDOW)

        assert raw.payload == {"metrics": []}

    @pytest.mark.asyncio
    async def test_requires_aws_credentials(self) -> "None":
        provider = BedrockProvider(region="us-east-1")
        with pytest.raises(AuthenticationError):
            await provider.fetch_usage(ApiKeyCredentials("sk-test"), WINDOW)


class TestBedrockProviderErrors:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "code,status,error",
        [
            ("Throttling", 400, RateLimitError),
            ("ExpiredToken", 403, AuthenticationError),
            ("AccessDenied", 403, AuthenticationError),
            ("InternalFailure", 500, NetworkError),
        ],
    )
    async def test_client_errors_are_translated(
        self,
        code: "str",
        status: "int",
        error: "type[Exception]",
    ) -> "None":
        cloudwatch = StubbedCloudWatch()
        cloudwatch.stubber.add_client_error(
            "list_metrics",
            service_error_code=code,
            service_message="failed",
            http_status_code=status,
        )

        provider = BedrockProvider(region="us-east-1", client_factory=cloudwatch)
        with cloudwatch.stubber:
            with pytest.raises(error):
                await provider.fetch_usage(CREDENTIALS, WINDOW)
