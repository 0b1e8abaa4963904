from llm_cost_exporter.config import ProviderConfig
from llm_cost_exporter.errors import FatalConfigError
from llm_cost_exporter.provider.anthropic import ANTHROPIC_BASE_URL, AnthropicProvider
from llm_cost_exporter.provider.base import UsageProvider
from llm_cost_exporter.provider.bedrock import BedrockProvider
from llm_cost_exporter.provider.openai import OPENAI_BASE_URL, OpenAIProvider


def create_provider(config: "ProviderConfig") -> "UsageProvider":
    """
    binds a provider config to its client variant. Called once per
    provider at startup.
    """
    if config.id == "openai":
        return OpenAIProvider(
            base_url=config.endpoint or OPENAI_BASE_URL,
            org_id=config.organization,
            timeout=config.timeout,
        )
    if config.id == "anthropic":
        return AnthropicProvider(
            base_url=config.endpoint or ANTHROPIC_BASE_URL,
            timeout=config.timeout,
        )
    if config.id == "bedrock":
        return BedrockProvider(
            region=config.endpoint or "us-east-1",
            timeout=config.timeout,
        )
    raise FatalConfigError(f"unknown provider {config.id!r}")
