import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable

import structlog

from llm_cost_exporter.config import ProviderConfig
from llm_cost_exporter.credentials import CredentialResolver
from llm_cost_exporter.errors import (
    AuthConfigError,
    AuthenticationError,
    CircuitOpenError,
    ParseError,
    ProviderError,
    RetryAbortedError,
)
from llm_cost_exporter.metrics import ExporterMetrics, MetricsRegistry
from llm_cost_exporter.models import TimeWindow
from llm_cost_exporter.normalizer import Normalizer
from llm_cost_exporter.provider.base import UsageProvider
from llm_cost_exporter.provider.factory import create_provider
from llm_cost_exporter.resilience import CircuitBreaker, CircuitState, RetryPolicy

logger = structlog.get_logger()


@dataclass
class PollTarget:
    """
    PollTarget binds a provider config to its client and the
    retry policy guarding it.
    """

    config: "ProviderConfig"
    provider: "UsageProvider"
    retry: "RetryPolicy"

    @property
    def name(self) -> "str":
        return self.config.id


def build_targets(
    configs: "Iterable[ProviderConfig]",
    exporter_metrics: "ExporterMetrics",
    provider_factory: "Callable[[ProviderConfig], UsageProvider]" = create_provider,
) -> "list[PollTarget]":
    """
    creates the client, circuit breaker and retry policy of every
    enabled provider.
    """

    def on_state_change(provider: "str", state: "CircuitState") -> "None":
        exporter_metrics.set_circuit_state(provider, state.value)

    targets: "list[PollTarget]" = []
    for config in configs:
        if not config.enabled:
            continue
        breaker = CircuitBreaker(config.id, on_state_change=on_state_change)
        exporter_metrics.set_circuit_state(config.id, CircuitState.CLOSED.value)
        targets.append(
            PollTarget(
                config=config,
                provider=provider_factory(config),
                retry=RetryPolicy(breaker, attempt_timeout=config.attempt_deadline),
            )
        )
    return targets


def window_anchor(now: "float") -> "int":
    """
    start of the UTC day containing now.
    """
    day = datetime.fromtimestamp(now, tz=timezone.utc).replace(
        hour=0, minute=0, second=0, microsecond=0
    )
    return int(day.timestamp())


class Scheduler:
    """
    Scheduler runs one independent polling loop per provider. Each
    loop polls immediately on start and then once per the provider's
    interval until stop() is called.

    A poll resolves credentials, fetches usage through the provider's
    retry policy, normalizes it and updates the registry. Every
    failure is contained in its own provider's loop: it is logged,
    counted by stage and the registry keeps its previous values.

    Windows start at the beginning of the UTC day polling started
    and end at the time of the poll, so reported totals only grow.
    """

    def __init__(
        self,
        targets: "list[PollTarget]",
        resolver: "CredentialResolver",
        normalizer: "Normalizer",
        registry: "MetricsRegistry",
        exporter_metrics: "ExporterMetrics",
        clock: "Callable[[], float]" = time.time,
    ) -> "None":
        self._targets = targets
        self._resolver = resolver
        self._normalizer = normalizer
        self._registry = registry
        self._metrics = exporter_metrics
        self._clock = clock
        self._window_start = window_anchor(clock())
        self._stop_event: "asyncio.Event" = asyncio.Event()

    def stop(self) -> "None":
        """
        signals every polling loop to stop after its current cycle. A
        call waiting to be retried is abandoned rather than waited out.
        """
        self._stop_event.set()

    async def close(self) -> "None":
        """
        closes all provider clients.
        """
        for target in self._targets:
            await target.provider.close()

    async def run(self) -> "None":
        """
        runs every provider loop until stop() is called.
        """
        tasks = [
            asyncio.create_task(self._run_provider(target), name=f"poll-{target.name}")
            for target in self._targets
        ]
        await asyncio.gather(*tasks)

    def current_window(self) -> "TimeWindow":
        end = int(self._clock())
        return TimeWindow(
            start=self._window_start, end=max(end, self._window_start + 1)
        )

    async def _run_provider(self, target: "PollTarget") -> "None":
        interval = target.config.poll_interval
        logger.info("polling_started", provider=target.name, interval=interval)

        while not self._stop_event.is_set():
            started = time.monotonic()
            await self.poll_once(target)

            delay = max(0.0, interval - (time.monotonic() - started))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except TimeoutError:
                pass

        logger.info("polling_stopped", provider=target.name)

    async def poll_once(self, target: "PollTarget") -> "bool":
        """
        runs one poll cycle for a provider. Returns True when the
        registry was updated.
        """
        name = target.name
        cycle_start = time.monotonic()
        try:
            return await self._poll(target)
        except Exception:
            logger.exception("poll_unexpected_error", provider=name)
            self._metrics.inc_poll_error(name, "internal")
            return False
        finally:
            self._metrics.observe_poll_duration(name, time.monotonic() - cycle_start)

    async def _poll(self, target: "PollTarget") -> "bool":
        name = target.name
        window = self.current_window()

        # an open circuit skips credential refresh as well as the fetch
        if target.retry.breaker.is_rejecting():
            logger.debug("poll_skipped_circuit_open", provider=name)
            self._metrics.inc_poll_error(name, "circuit_open")
            return False

        try:
            credentials = await self._resolver.resolve(name)
        except AuthConfigError as exc:
            logger.error("credentials_unresolved", provider=name, error=str(exc))
            self._metrics.inc_poll_error(name, "credentials")
            return False

        try:
            raw = await target.retry.call(
                lambda: target.provider.fetch_usage(credentials, window),
                stop_event=self._stop_event,
            )
        except RetryAbortedError:
            logger.info("poll_aborted_for_shutdown", provider=name)
            return False
        except CircuitOpenError as exc:
            logger.debug("poll_skipped_circuit_open", provider=name, reason=str(exc))
            self._metrics.inc_poll_error(name, "circuit_open")
            return False
        except AuthenticationError as exc:
            logger.warning("provider_auth_failed", provider=name, error=str(exc))
            self._resolver.invalidate(name)
            self._metrics.inc_poll_error(name, "auth")
            return False
        except ProviderError as exc:
            logger.error(
                "usage_fetch_error",
                provider=name,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            self._metrics.inc_poll_error(name, "fetch")
            return False

        try:
            batch = self._normalizer.normalize(name, raw, target.config.account_label)
        except ParseError as exc:
            logger.error("normalize_error", provider=name, error=str(exc))
            self._metrics.inc_poll_error(name, "normalize")
            return False

        self._metrics.inc_skipped_items(name, batch.skipped)
        self._registry.update(batch.records)
        self._metrics.set_last_poll_success(name, self._clock())
        logger.info(
            "poll_complete",
            provider=name,
            record_count=len(batch.records),
            skipped=batch.skipped,
        )
        return True
