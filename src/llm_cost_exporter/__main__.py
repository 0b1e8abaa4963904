import asyncio
import signal

import structlog
from prometheus_client import CollectorRegistry, start_http_server

from llm_cost_exporter.cli import parse_args
from llm_cost_exporter.credentials import CredentialResolver
from llm_cost_exporter.errors import FatalConfigError
from llm_cost_exporter.logging import setup_logging
from llm_cost_exporter.metrics import ExporterMetrics, MetricsRegistry
from llm_cost_exporter.normalizer import Normalizer
from llm_cost_exporter.scheduler import Scheduler, build_targets

logger = structlog.get_logger()


def _parse_listen_address(addr: "str") -> "tuple[str, int]":
    """
    parses listen address in format ':8000' or '0.0.0.0:8000'.
    """
    if addr.startswith(":"):
        return ("0.0.0.0", int(addr[1:]))

    host, port = addr.rsplit(":", 1)
    return (host, int(port))


def main() -> "None":
    try:
        config = parse_args()
    except FatalConfigError as exc:
        raise SystemExit(f"invalid configuration: {exc}") from exc
    setup_logging(config.log_level, config.log_format)

    try:
        provider_configs = config.provider_configs()
    except FatalConfigError as exc:
        logger.error("invalid_configuration", error=str(exc))
        raise SystemExit(f"invalid configuration: {exc}") from exc

    if not provider_configs:
        raise SystemExit(
            "No providers configured. Set OPENAI_ADMIN_KEY, ANTHROPIC_ADMIN_KEY "
            "or AWS credentials for Bedrock."
        )

    registry = CollectorRegistry()
    exporter_metrics = ExporterMetrics(registry)
    metrics_registry = MetricsRegistry(
        registry,
        budgets={
            c.id: c.budget_usd for c in provider_configs if c.budget_usd is not None
        },
        on_regression=exporter_metrics.inc_counter_regressions,
    )
    resolver = CredentialResolver({c.id: c for c in provider_configs})
    normalizer = Normalizer(config.price_table)
    targets = build_targets(provider_configs, exporter_metrics)
    for target in targets:
        logger.info(
            "provider_enabled",
            provider=target.name,
            interval=target.config.poll_interval,
        )

    host, port = _parse_listen_address(config.listen_address)
    start_http_server(port, addr=host, registry=registry)
    logger.info("metrics_server_started", host=host, port=port)

    scheduler = Scheduler(
        targets, resolver, normalizer, metrics_registry, exporter_metrics
    )

    async def _run() -> "None":
        loop = asyncio.get_running_loop()
        # for SIGINT and SIGTERM, signal the scheduler
        # to stop gracefully
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, scheduler.stop)

        try:
            await scheduler.run()
        finally:
            logger.info("shutting_down")
            await scheduler.close()
            logger.info("shutdown_complete")

    asyncio.run(_run())


if __name__ == "__main__":
    main()
