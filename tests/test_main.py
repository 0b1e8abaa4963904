import sys

import pytest
import structlog

from llm_cost_exporter.__main__ import _parse_listen_address, main
from llm_cost_exporter.logging import setup_logging


class TestParseListenAddress:
    def test_port_only(self) -> "None":
        assert _parse_listen_address(":8000") == ("0.0.0.0", 8000)

    def test_host_and_port(self) -> "None":
        assert _parse_listen_address("127.0.0.1:9100") == ("127.0.0.1", 9100)


class TestMain:
    def test_exits_without_providers(self, monkeypatch: "pytest.MonkeyPatch") -> "None":
        for name in (
            "OPENAI_ADMIN_KEY",
            "OPENAI_API_KEY",
            "ANTHROPIC_ADMIN_KEY",
            "ANTHROPIC_API_KEY",
            "AWS_ACCESS_KEY_ID",
            "BEDROCK_ROLE_ARN",
            "OPENAI_ENABLED",
            "ANTHROPIC_ENABLED",
            "BEDROCK_ENABLED",
            "LLM_PRICE_TABLE",
        ):
            monkeypatch.delenv(name, raising=False)
        monkeypatch.setattr(sys, "argv", ["llm-cost-exporter"])

        with pytest.raises(SystemExit, match="No providers configured"):
            main()

    def test_invalid_config_exits(self, monkeypatch: "pytest.MonkeyPatch") -> "None":
        monkeypatch.setenv("ANTHROPIC_ENABLED", "true")
        monkeypatch.delenv("ANTHROPIC_ADMIN_KEY", raising=False)
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        monkeypatch.setattr(sys, "argv", ["llm-cost-exporter"])

        with pytest.raises(SystemExit, match="invalid configuration"):
            main()


class TestSetupLogging:
    @pytest.mark.parametrize("fmt", ["console", "json"])
    def test_configures_structlog(self, fmt: "str") -> "None":
        setup_logging("debug", fmt)
        assert structlog.is_configured()
        structlog.reset_defaults()
