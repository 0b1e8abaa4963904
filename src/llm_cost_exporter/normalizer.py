import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

import structlog

from llm_cost_exporter.config import ModelPrice
from llm_cost_exporter.errors import ParseError
from llm_cost_exporter.models import (
    CanonicalMetricRecord,
    MetricKind,
    RawResponse,
    TokenType,
    UsageType,
)

logger = structlog.get_logger()

UNKNOWN_MODEL = "unknown"


class _MalformedItem(Exception):
    pass


@dataclass
class _ModelTotals:
    prompt_tokens: "float" = 0.0
    completion_tokens: "float" = 0.0
    requests: "float" = 0.0
    cost_usd: "float" = 0.0
    has_usage: "bool" = False
    has_requests: "bool" = False
    has_cost: "bool" = False


_Parser = Callable[[Mapping[str, Any]], "tuple[dict[str, _ModelTotals], int]"]


@dataclass
class NormalizedBatch:
    """
    NormalizedBatch holds the records produced from one raw response
    and the number of line items that were skipped as malformed.
    """

    records: "list[CanonicalMetricRecord]" = field(default_factory=list)
    skipped: "int" = 0


def _to_number(value: "Any", key: "str") -> "float":
    """
    converts a non-negative numeric field; null means zero.
    """
    if value is None:
        return 0.0
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise _MalformedItem(f"{key} is not numeric")
    try:
        number = float(value)
    except ValueError:
        raise _MalformedItem(f"{key} is not numeric") from None
    if number < 0 or number != number:
        raise _MalformedItem(f"{key} is negative or NaN")
    return number


def _number(item: "Mapping[str, Any]", key: "str") -> "float":
    return _to_number(item.get(key), key)


def _model(item: "Mapping[str, Any]", key: "str" = "model") -> "str":
    value = item.get(key)
    if value is None or value == "":
        return UNKNOWN_MODEL
    if not isinstance(value, str):
        raise _MalformedItem(f"{key} is not a string")
    return value


def _results(payload: "Mapping[str, Any]", key: "str") -> "tuple[list[Any], int]":
    """
    flattens the results of every bucket under payload[key]. Buckets
    without a results list are counted as skipped.
    """
    buckets = payload.get(key)
    if not isinstance(buckets, list):
        raise ParseError(f"payload has no {key!r} bucket list")

    results: "list[Any]" = []
    skipped = 0
    for bucket in buckets:
        if not isinstance(bucket, dict) or not isinstance(bucket.get("results"), list):
            skipped += 1
            continue
        results.extend(bucket["results"])
    return results, skipped


class Normalizer:
    """
    Normalizer turns a provider's raw response into canonical records:
    per model token counters (prompt, completion, total), a request
    counter where the provider reports one, and a cost gauge.

    Cost is the provider reported amount. Where a provider reports
    none for a model, the configured price table is used; models
    without either get no cost record. A malformed line item is
    skipped and counted, an unusable top-level payload raises
    ParseError.
    """

    def __init__(
        self,
        price_table: "Mapping[str, ModelPrice] | None" = None,
        clock: "Callable[[], float]" = time.time,
    ) -> "None":
        self._prices = dict(price_table or {})
        self._clock = clock
        self._parsers: "dict[str, _Parser]" = {
            "openai": self._parse_openai,
            "anthropic": self._parse_anthropic,
            "bedrock": self._parse_bedrock,
        }

    def normalize(
        self,
        provider_id: "str",
        raw: "RawResponse",
        account_label: "str" = "",
    ) -> "NormalizedBatch":
        parser = self._parsers.get(provider_id)
        if parser is None:
            raise ParseError(f"no normalizer for provider {provider_id!r}")
        if not isinstance(raw.payload, dict):
            raise ParseError(f"{provider_id}: payload is not an object")

        totals, skipped = parser(raw.payload)
        if skipped:
            logger.warning(
                "normalizer_items_skipped",
                provider=provider_id,
                skipped=skipped,
            )

        observed_at = self._clock()
        records: "list[CanonicalMetricRecord]" = []
        for model in sorted(totals):
            records.extend(
                self._records(
                    provider_id, model, totals[model], account_label, observed_at
                )
            )
        return NormalizedBatch(records=records, skipped=skipped)

    def _records(
        self,
        provider_id: "str",
        model: "str",
        totals: "_ModelTotals",
        account_label: "str",
        observed_at: "float",
    ) -> "list[CanonicalMetricRecord]":
        def record(
            usage_type: "UsageType",
            value: "float",
            kind: "MetricKind",
            token_type: "TokenType | None" = None,
        ) -> "CanonicalMetricRecord":
            return CanonicalMetricRecord(
                provider=provider_id,
                model=model,
                usage_type=usage_type,
                value=value,
                kind=kind,
                observed_at=observed_at,
                account_label=account_label,
                token_type=token_type,
            )

        records: "list[CanonicalMetricRecord]" = []
        if totals.has_usage:
            prompt = totals.prompt_tokens
            completion = totals.completion_tokens
            records.append(
                record(UsageType.TOKENS, prompt, MetricKind.COUNTER, TokenType.PROMPT)
            )
            records.append(
                record(
                    UsageType.TOKENS,
                    completion,
                    MetricKind.COUNTER,
                    TokenType.COMPLETION,
                )
            )
            records.append(
                record(
                    UsageType.TOKENS,
                    prompt + completion,
                    MetricKind.COUNTER,
                    TokenType.TOTAL,
                )
            )
        if totals.has_requests:
            records.append(
                record(UsageType.REQUESTS, totals.requests, MetricKind.COUNTER)
            )

        cost: "float | None" = totals.cost_usd if totals.has_cost else None
        if cost is None and totals.has_usage and model in self._prices:
            price = self._prices[model]
            cost = (
                totals.prompt_tokens / 1000.0 * price.prompt
                + totals.completion_tokens / 1000.0 * price.completion
            )
        if cost is not None:
            records.append(record(UsageType.COST, cost, MetricKind.GAUGE))
        return records

    @staticmethod
    def _parse_openai(
        payload: "Mapping[str, Any]",
    ) -> "tuple[dict[str, _ModelTotals], int]":
        totals: "dict[str, _ModelTotals]" = {}
        usage, skipped = _results(payload, "usage")
        costs, skipped_costs = _results(payload, "costs")
        skipped += skipped_costs

        for item in usage:
            try:
                if not isinstance(item, dict):
                    raise _MalformedItem("usage result is not an object")
                model = _model(item)
                prompt = _number(item, "input_tokens")
                completion = _number(item, "output_tokens")
                requests = _number(item, "num_model_requests")
            except _MalformedItem:
                skipped += 1
                continue
            entry = totals.setdefault(model, _ModelTotals())
            entry.prompt_tokens += prompt
            entry.completion_tokens += completion
            entry.requests += requests
            entry.has_usage = True
            entry.has_requests = True

        for item in costs:
            try:
                if not isinstance(item, dict):
                    raise _MalformedItem("cost result is not an object")
                amount = item.get("amount")
                if not isinstance(amount, dict):
                    raise _MalformedItem("amount is not an object")
                currency = str(amount.get("currency") or "usd").lower()
                if currency != "usd":
                    raise _MalformedItem(f"unsupported currency {currency}")
                value = _number(amount, "value")
                # line items look like "gpt-4o-2024-08-06, input"
                line_item = _model(item, "line_item")
                model = line_item.split(",", 1)[0].strip() or UNKNOWN_MODEL
            except _MalformedItem:
                skipped += 1
                continue
            entry = totals.setdefault(model, _ModelTotals())
            entry.cost_usd += value
            entry.has_cost = True

        return totals, skipped

    @staticmethod
    def _parse_anthropic(
        payload: "Mapping[str, Any]",
    ) -> "tuple[dict[str, _ModelTotals], int]":
        totals: "dict[str, _ModelTotals]" = {}
        usage, skipped = _results(payload, "usage")
        costs, skipped_costs = _results(payload, "costs")
        skipped += skipped_costs

        for item in usage:
            try:
                if not isinstance(item, dict):
                    raise _MalformedItem("usage result is not an object")
                model = _model(item)
                cache_creation = item.get("cache_creation") or {}
                if not isinstance(cache_creation, dict):
                    raise _MalformedItem("cache_creation is not an object")
                prompt = (
                    _number(item, "uncached_input_tokens")
                    + _number(item, "cache_read_input_tokens")
                    + _number(cache_creation, "ephemeral_1h_input_tokens")
                    + _number(cache_creation, "ephemeral_5m_input_tokens")
                )
                completion = _number(item, "output_tokens")
            except _MalformedItem:
                skipped += 1
                continue
            entry = totals.setdefault(model, _ModelTotals())
            entry.prompt_tokens += prompt
            entry.completion_tokens += completion
            entry.has_usage = True

        for item in costs:
            try:
                if not isinstance(item, dict):
                    raise _MalformedItem("cost result is not an object")
                currency = str(item.get("currency") or "USD").upper()
                if currency != "USD":
                    raise _MalformedItem(f"unsupported currency {currency}")
                # amounts are decimal strings in cents
                value = _number(item, "amount") / 100.0
                model = _model(item)
            except _MalformedItem:
                skipped += 1
                continue
            entry = totals.setdefault(model, _ModelTotals())
            entry.cost_usd += value
            entry.has_cost = True

        return totals, skipped

    @staticmethod
    def _parse_bedrock(
        payload: "Mapping[str, Any]",
    ) -> "tuple[dict[str, _ModelTotals], int]":
        metrics = payload.get("metrics")
        if not isinstance(metrics, list):
            raise ParseError("payload has no 'metrics' list")

        totals: "dict[str, _ModelTotals]" = {}
        skipped = 0
        for item in metrics:
            try:
                if not isinstance(item, dict):
                    raise _MalformedItem("metric is not an object")
                model = _model(item)
                values = item.get("values")
                if not isinstance(values, list):
                    raise _MalformedItem("values is not a list")
                value = sum(_to_number(v, "values") for v in values)
                metric = item.get("metric")
                if metric not in ("Invocations", "InputTokenCount", "OutputTokenCount"):
                    raise _MalformedItem(f"unknown metric {metric!r}")
            except _MalformedItem:
                skipped += 1
                continue

            entry = totals.setdefault(model, _ModelTotals())
            if metric == "Invocations":
                entry.requests += value
                entry.has_requests = True
            elif metric == "InputTokenCount":
                entry.prompt_tokens += value
                entry.has_usage = True
            else:
                entry.completion_tokens += value
                entry.has_usage = True

        return totals, skipped
