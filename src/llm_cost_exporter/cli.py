import argparse

from llm_cost_exporter.config import Config


def parse_args(argv: "list[str] | None" = None) -> "Config":
    parser = argparse.ArgumentParser(
        prog="llm-cost-exporter",
        description="Prometheus exporter for LLM API usage and cost",
    )
    parser.add_argument(
        "--web.listen-address",
        dest="listen_address",
        default=":8000",
        help="Address to listen on (default: :8000)",
    )
    parser.add_argument(
        "--poll.interval",
        dest="poll_interval",
        type=float,
        default=300.0,
        help="Default provider poll interval in seconds (default: 300)",
    )
    parser.add_argument(
        "--log.level",
        dest="log_level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)",
    )
    parser.add_argument(
        "--log.format",
        dest="log_format",
        default="console",
        choices=["console", "json"],
        help="Log output format (default: console)",
    )

    args = parser.parse_args(argv)
    config = Config.from_env()
    config.listen_address = args.listen_address
    config.poll_interval = args.poll_interval
    config.log_level = args.log_level
    config.log_format = args.log_format
    return config
