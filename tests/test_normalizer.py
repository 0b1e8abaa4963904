from typing import Any

import pytest

from llm_cost_exporter.config import ModelPrice
from llm_cost_exporter.errors import ParseError
from llm_cost_exporter.models import (
    CanonicalMetricRecord,
    MetricKind,
    RawResponse,
    TimeWindow,
    TokenType,
    UsageType,
)
from llm_cost_exporter.normalizer import Normalizer

WINDOW = TimeWindow(start=1700000000, end=1700003600)


def _raw(provider: "str", payload: "dict[str, Any]") -> "RawResponse":
    return RawResponse(provider=provider, window=WINDOW, payload=payload)


def _usage(model: "str", prompt: "int", completion: "int") -> "dict[str, Any]":
    return {"model": model, "input_tokens": prompt, "output_tokens": completion}


def _by_key(
    records: "list[CanonicalMetricRecord]",
) -> "dict[tuple[str, str, str], CanonicalMetricRecord]":
    return {
        (r.model, r.usage_type.value, r.token_type.value if r.token_type else ""): r
        for r in records
    }


class TestNormalizerOpenAI:
    def test_tokens_requests_and_cost(self) -> "None":
        normalizer = Normalizer(clock=lambda: 1234.0)
        raw = _raw(
            "openai",
            {
                "usage": [
                    {
                        "results": [
                            {
                                "model": "gpt-4",
                                "input_tokens": 600,
                                "output_tokens": 400,
                                "num_model_requests": 3,
                            }
                        ]
                    }
                ],
                "costs": [
                    {
                        "results": [
                            {
                                "line_item": "gpt-4, input",
                                "amount": {"value": 0.012, "currency": "usd"},
                            },
                            {
                                "line_item": "gpt-4, output",
                                "amount": {"value": 0.008, "currency": "usd"},
                            },
                        ]
                    }
                ],
            },
        )

        batch = normalizer.normalize("openai", raw, account_label="prod")
        records = _by_key(batch.records)

        assert batch.skipped == 0
        assert records[("gpt-4", "tokens", "prompt")].value == 600
        assert records[("gpt-4", "tokens", "completion")].value == 400
        assert records[("gpt-4", "tokens", "total")].value == 1000
        assert records[("gpt-4", "requests", "")].value == 3
        assert records[("gpt-4", "cost", "")].value == pytest.approx(0.02)
        assert records[("gpt-4", "cost", "")].kind is MetricKind.GAUGE
        assert records[("gpt-4", "tokens", "total")].kind is MetricKind.COUNTER
        for record in batch.records:
            assert record.provider == "openai"
            assert record.account_label == "prod"
            assert record.observed_at == 1234.0

    def test_usage_summed_across_buckets_and_endpoints(self) -> "None":
        normalizer = Normalizer()
        raw = _raw(
            "openai",
            {
                "usage": [
                    {"results": [_usage("gpt-4o", 10, 5)]},
                    {"results": [_usage("gpt-4o", 20, 15)]},
                    {"results": [_usage("text-embedding-3-small", 7, 0)]},
                ],
                "costs": [],
            },
        )

        records = _by_key(normalizer.normalize("openai", raw).records)

        assert records[("gpt-4o", "tokens", "total")].value == 50
        assert records[("text-embedding-3-small", "tokens", "completion")].value == 0
        assert ("gpt-4o", "cost", "") not in records

    def test_missing_model_becomes_unknown(self) -> "None":
        normalizer = Normalizer()
        raw = _raw(
            "openai",
            {
                "usage": [{"results": [{"model": None, "input_tokens": 1}]}],
                "costs": [],
            },
        )

        records = _by_key(normalizer.normalize("openai", raw).records)

        assert ("unknown", "tokens", "prompt") in records

    def test_malformed_items_are_skipped(self) -> "None":
        normalizer = Normalizer()
        raw = _raw(
            "openai",
            {
                "usage": [
                    {
                        "results": [
                            {"model": "gpt-4", "input_tokens": 10, "output_tokens": 5},
                            {"model": "gpt-4", "input_tokens": -1},
                            {"model": "gpt-4", "input_tokens": "lots"},
                            "garbage",
                        ]
                    },
                    {"no_results": True},
                ],
                "costs": [
                    {
                        "results": [
                            {
                                "line_item": "gpt-4",
                                "amount": {"value": 1, "currency": "eur"},
                            },
                            {"line_item": "gpt-4", "amount": 3},
                        ]
                    }
                ],
            },
        )

        batch = normalizer.normalize("openai", raw)
        records = _by_key(batch.records)

        assert batch.skipped == 6
        assert records[("gpt-4", "tokens", "total")].value == 15
        assert ("gpt-4", "cost", "") not in records

    def test_missing_top_level_list_raises(self) -> "None":
        normalizer = Normalizer()
        with pytest.raises(ParseError):
            normalizer.normalize("openai", _raw("openai", {"costs": []}))

    def test_unknown_provider_raises(self) -> "None":
        normalizer = Normalizer()
        with pytest.raises(ParseError):
            normalizer.normalize("cohere", _raw("cohere", {}))


class TestNormalizerAnthropic:
    def test_prompt_includes_cache_tokens_and_cost_in_cents(self) -> "None":
        normalizer = Normalizer()
        raw = _raw(
            "anthropic",
            {
                "usage": [
                    {
                        "results": [
                            {
                                "model": "claude-3-5-sonnet-20241022",
                                "uncached_input_tokens": 100,
                                "cache_read_input_tokens": 20,
                                "cache_creation": {
                                    "ephemeral_1h_input_tokens": 5,
                                    "ephemeral_5m_input_tokens": 15,
                                },
                                "output_tokens": 60,
                            }
                        ]
                    }
                ],
                "costs": [
                    {
                        "results": [
                            {
                                "model": "claude-3-5-sonnet-20241022",
                                "amount": "123.45",
                                "currency": "USD",
                            }
                        ]
                    }
                ],
            },
        )

        batch = normalizer.normalize("anthropic", raw)
        records = _by_key(batch.records)
        model = "claude-3-5-sonnet-20241022"

        assert records[(model, "tokens", "prompt")].value == 140
        assert records[(model, "tokens", "completion")].value == 60
        assert records[(model, "tokens", "total")].value == 200
        assert records[(model, "cost", "")].value == pytest.approx(1.2345)
        # the usage report carries no request counts
        assert (model, "requests", "") not in records


class TestNormalizerBedrock:
    def test_metrics_and_price_table(self) -> "None":
        normalizer = Normalizer(
            price_table={
                "anthropic.claude-3-haiku": ModelPrice(prompt=0.25, completion=1.25)
            }
        )
        raw = _raw(
            "bedrock",
            {
                "metrics": [
                    {
                        "model": "anthropic.claude-3-haiku",
                        "metric": "Invocations",
                        "values": [2.0, 3.0],
                    },
                    {
                        "model": "anthropic.claude-3-haiku",
                        "metric": "InputTokenCount",
                        "values": [1000.0, 1000.0],
                    },
                    {
                        "model": "anthropic.claude-3-haiku",
                        "metric": "OutputTokenCount",
                        "values": [400.0],
                    },
                    {
                        "model": "meta.llama3-8b",
                        "metric": "InputTokenCount",
                        "values": [50.0],
                    },
                    {"model": "meta.llama3-8b", "metric": "Latency", "values": [1.0]},
                ]
            },
        )

        batch = normalizer.normalize("bedrock", raw)
        records = _by_key(batch.records)

        assert batch.skipped == 1
        assert records[("anthropic.claude-3-haiku", "requests", "")].value == 5
        assert records[("anthropic.claude-3-haiku", "tokens", "total")].value == 2400
        # 2000 prompt tokens at 0.25/1k plus 400 completion at 1.25/1k
        assert records[("anthropic.claude-3-haiku", "cost", "")].value == pytest.approx(
            1.0
        )
        # no price configured, no cost record
        assert ("meta.llama3-8b", "cost", "") not in records


class TestTokenTotals:
    @pytest.mark.parametrize(
        "prompt,completion",
        [(0, 0), (1, 0), (0, 7), (123, 456), (10**9, 10**9)],
    )
    def test_total_is_prompt_plus_completion(
        self, prompt: "int", completion: "int"
    ) -> "None":
        normalizer = Normalizer()
        raw = _raw(
            "openai",
            {
                "usage": [
                    {
                        "results": [
                            {
                                "model": "gpt-4",
                                "input_tokens": prompt,
                                "output_tokens": completion,
                            }
                        ]
                    }
                ],
                "costs": [],
            },
        )

        records = normalizer.normalize("openai", raw).records
        tokens = {
            r.token_type: r.value for r in records if r.usage_type is UsageType.TOKENS
        }

        assert (
            tokens[TokenType.TOTAL]
            == tokens[TokenType.PROMPT] + tokens[TokenType.COMPLETION]
        )
