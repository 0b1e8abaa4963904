import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, Mapping

import structlog
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram
from prometheus_client.exposition import generate_latest
from prometheus_client.metrics_core import (
    CounterMetricFamily,
    GaugeMetricFamily,
    Metric,
)

from llm_cost_exporter.models import CanonicalMetricRecord, MetricKind, UsageType

logger = structlog.get_logger()

SampleKey = tuple[str, str, str, str, str]

# usage type -> (sample name, help text)
FAMILIES: "dict[UsageType, tuple[str, str]]" = {
    UsageType.COST: ("llm_cost_usd", "Latest observed LLM API cost in USD"),
    UsageType.REQUESTS: ("llm_requests_total", "Total LLM API requests"),
    UsageType.TOKENS: ("llm_tokens_total", "Total LLM API tokens by type"),
}


@dataclass(frozen=True, slots=True)
class MetricSample:
    """
    MetricSample is the stored form of a canonical record.
    """

    usage_type: "UsageType"
    labels: "tuple[tuple[str, str], ...]"
    value: "float"
    kind: "MetricKind"
    observed_at: "float"

    @property
    def provider(self) -> "str":
        return dict(self.labels)["provider"]


def _labels(record: "CanonicalMetricRecord") -> "tuple[tuple[str, str], ...]":
    labels: "list[tuple[str, str]]" = [
        ("provider", record.provider),
        ("model", record.model),
    ]
    if record.usage_type is UsageType.TOKENS and record.token_type is not None:
        labels.append(("type", record.token_type.value))
    # account is only emitted for labelled accounts
    if record.account_label:
        labels.append(("account", record.account_label))
    return tuple(labels)


class MetricsRegistry:
    """
    MetricsRegistry holds the latest value of every canonical metric
    and renders it in the Prometheus text format.

    Gauges are latest-wins, except that a record observed earlier
    than the stored one is ignored. Counters only move up: a lower
    value is a regression, it is logged and reported through
    on_regression while the higher value is kept.

    Writers are serialized by a lock and publish a new mapping on
    every update. Readers use whatever mapping is current, so
    scrapes never wait on a poll.
    """

    def __init__(
        self,
        registry: "CollectorRegistry | None" = None,
        budgets: "Mapping[str, float] | None" = None,
        on_regression: "Callable[[str, int], None] | None" = None,
    ) -> "None":
        if registry is None:
            registry = CollectorRegistry()
        self._registry: "CollectorRegistry" = registry
        self._budgets = dict(budgets or {})
        self._on_regression = on_regression
        self._write_lock: "threading.Lock" = threading.Lock()
        self._samples: "Mapping[SampleKey, MetricSample]" = {}
        self._initialized = False
        self._registry.register(self)

    @property
    def registry(self) -> "CollectorRegistry":
        return self._registry

    def is_registry_initialized(self) -> "bool":
        """
        True once at least one update has been applied.
        """
        return self._initialized

    def snapshot(self) -> "Mapping[SampleKey, MetricSample]":
        """
        the current published mapping. It is never mutated after
        publication, so it is safe to read from any thread.
        """
        return self._samples

    def update(self, records: "Iterable[CanonicalMetricRecord]") -> "None":
        """
        merges records into the store: gauges latest-wins, counters
        keep the maximum seen.
        """
        regressions: "defaultdict[str, int]" = defaultdict(int)

        with self._write_lock:
            samples = dict(self._samples)
            for record in records:
                key = record.key
                current = samples.get(key)

                if record.kind is MetricKind.GAUGE:
                    if current is not None and record.observed_at < current.observed_at:
                        logger.debug(
                            "stale_gauge_ignored",
                            provider=record.provider,
                            model=record.model,
                        )
                        continue
                elif current is not None:
                    if record.value < current.value:
                        regressions[record.provider] += 1
                        logger.warning(
                            "counter_regression",
                            provider=record.provider,
                            model=record.model,
                            usage_type=record.usage_type.value,
                            previous=current.value,
                            observed=record.value,
                        )
                        continue
                    if record.value == current.value:
                        continue

                samples[key] = MetricSample(
                    usage_type=record.usage_type,
                    labels=_labels(record),
                    value=record.value,
                    kind=record.kind,
                    observed_at=record.observed_at,
                )

            # publish the new mapping in one assignment
            self._samples = samples
            self._initialized = True

        if self._on_regression is not None:
            for provider, count in regressions.items():
                self._on_regression(provider, count)

    def render(self) -> "str":
        """
        renders every metric on the underlying registry, including
        exporter self-metrics, in the Prometheus text format.
        """
        return generate_latest(self._registry).decode("utf-8")

    def describe(self) -> "Iterator[Metric]":
        return iter(self._families({}))

    def collect(self) -> "Iterator[Metric]":
        return iter(self._families(self.snapshot()))

    def _families(
        self,
        samples: "Mapping[SampleKey, MetricSample]",
    ) -> "list[Metric]":
        cost_name, cost_help = FAMILIES[UsageType.COST]
        requests_name, requests_help = FAMILIES[UsageType.REQUESTS]
        tokens_name, tokens_help = FAMILIES[UsageType.TOKENS]
        families: "dict[UsageType, Metric]" = {
            UsageType.COST: GaugeMetricFamily(cost_name, cost_help),
            UsageType.REQUESTS: CounterMetricFamily(requests_name, requests_help),
            UsageType.TOKENS: CounterMetricFamily(tokens_name, tokens_help),
        }
        total_cost = GaugeMetricFamily(
            "llm_total_cost_usd",
            "Sum of the latest observed cost across all providers",
        )
        remaining = GaugeMetricFamily(
            "llm_remaining_budget_usd",
            "Configured budget minus the latest observed cost per provider",
            labels=["provider"],
        )

        cost_by_provider: "defaultdict[str, float]" = defaultdict(float)
        for sample in sorted(samples.values(), key=lambda s: s.labels):
            name = FAMILIES[sample.usage_type][0]
            families[sample.usage_type].add_sample(
                name, dict(sample.labels), sample.value
            )
            if sample.usage_type is UsageType.COST:
                cost_by_provider[sample.provider] += sample.value

        if cost_by_provider:
            total_cost.add_metric([], sum(cost_by_provider.values()))
        for provider, budget in sorted(self._budgets.items()):
            if provider in cost_by_provider:
                remaining.add_metric([provider], budget - cost_by_provider[provider])

        return [*families.values(), total_cost, remaining]


class ExporterMetrics:
    """
    ExporterMetrics tracks the exporter's own health per provider.
    """

    def __init__(self, registry: "CollectorRegistry") -> "None":
        self._poll_duration: "Histogram" = Histogram(
            "llm_exporter_poll_duration_seconds",
            "Duration of provider poll cycles",
            ["provider"],
            registry=registry,
        )
        self._poll_errors: "Counter" = Counter(
            "llm_exporter_poll_errors_total",
            "Total number of poll errors by provider and stage",
            ["provider", "stage"],
            registry=registry,
        )
        self._last_poll_success: "Gauge" = Gauge(
            "llm_exporter_last_poll_success_timestamp_seconds",
            "Unix timestamp of the last successful poll per provider",
            ["provider"],
            registry=registry,
        )
        self._circuit_state: "Gauge" = Gauge(
            "llm_exporter_circuit_state",
            "Circuit breaker state per provider (0 closed, 1 half-open, 2 open)",
            ["provider"],
            registry=registry,
        )
        self._skipped_items: "Counter" = Counter(
            "llm_exporter_skipped_items_total",
            "Malformed provider line items skipped during normalization",
            ["provider"],
            registry=registry,
        )
        self._counter_regressions: "Counter" = Counter(
            "llm_exporter_counter_regressions_total",
            "Provider counters observed lower than the stored value",
            ["provider"],
            registry=registry,
        )

    def observe_poll_duration(
        self, provider: "str", duration_seconds: "float"
    ) -> "None":
        self._poll_duration.labels(provider=provider).observe(duration_seconds)

    def inc_poll_error(self, provider: "str", stage: "str") -> "None":
        self._poll_errors.labels(provider=provider, stage=stage).inc()

    def set_last_poll_success(self, provider: "str", timestamp: "float") -> "None":
        self._last_poll_success.labels(provider=provider).set(timestamp)

    def set_circuit_state(self, provider: "str", state: "int") -> "None":
        self._circuit_state.labels(provider=provider).set(state)

    def inc_skipped_items(self, provider: "str", count: "int") -> "None":
        if count > 0:
            self._skipped_items.labels(provider=provider).inc(count)

    def inc_counter_regressions(self, provider: "str", count: "int") -> "None":
        if count > 0:
            self._counter_regressions.labels(provider=provider).inc(count)
