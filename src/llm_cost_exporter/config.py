import json
import os
from dataclasses import dataclass, field
from typing import Union

from llm_cost_exporter.errors import FatalConfigError

PROVIDER_IDS: "tuple[str, ...]" = ("openai", "anthropic", "bedrock")

DEFAULT_ENDPOINTS: "dict[str, str]" = {
    "openai": "https://api.openai.com/v1/organization",
    "anthropic": "https://api.anthropic.com/v1",
    "bedrock": "us-east-1",
}

_TRUTHY = ("1", "true", "yes", "on")


@dataclass(frozen=True, slots=True)
class StaticKey:
    secret: "str"

    def __repr__(self) -> "str":
        return "StaticKey(secret=***)"


@dataclass(frozen=True, slots=True)
class AwsStaticCreds:
    access_key: "str"
    secret_key: "str"

    def __repr__(self) -> "str":
        return f"AwsStaticCreds(access_key={self.access_key!r})"


@dataclass(frozen=True, slots=True)
class AwsRoleChain:
    role_arn: "str"
    external_id: "str | None" = None
    session_name: "str" = "llm-cost-exporter"
    # identity used to call STS; None means the default AWS credential chain
    source: "AwsStaticCreds | None" = None


CredentialStrategy = Union[StaticKey, AwsStaticCreds, AwsRoleChain]


@dataclass(frozen=True)
class ModelPrice:
    # USD per 1000 tokens
    prompt: "float" = 0.0
    completion: "float" = 0.0


@dataclass(frozen=True)
class ProviderConfig:
    """
    ProviderConfig describes one provider instance. Several credential
    fields may be populated; the active strategy is picked by priority,
    role chain first, then static AWS keys, then a static API key.
    """

    id: "str"
    enabled: "bool" = True
    # seconds between polls
    poll_interval: "float" = 300.0
    # base URL for HTTP providers, AWS region for bedrock
    endpoint: "str" = ""
    api_key: "StaticKey | None" = None
    aws_static: "AwsStaticCreds | None" = None
    role_chain: "AwsRoleChain | None" = None
    account_label: "str" = ""
    # per network request timeout in seconds
    timeout: "float" = 10.0
    # upper bound in seconds on one whole fetch, across all of its requests
    attempt_deadline: "float" = 300.0
    organization: "str" = ""
    budget_usd: "float | None" = None

    @property
    def strategy(self) -> "CredentialStrategy | None":
        if self.role_chain is not None:
            # complete static keys become the identity that assumes the role
            static = self.aws_static
            if (
                self.role_chain.source is None
                and static is not None
                and static.access_key
                and static.secret_key
            ):
                return AwsRoleChain(
                    role_arn=self.role_chain.role_arn,
                    external_id=self.role_chain.external_id,
                    session_name=self.role_chain.session_name,
                    source=static,
                )
            return self.role_chain
        if self.aws_static is not None:
            return self.aws_static
        return self.api_key

    def validate(self) -> "None":
        """
        raises FatalConfigError when an enabled provider cannot run.
        """
        if not self.enabled:
            return
        if self.id not in PROVIDER_IDS:
            raise FatalConfigError(f"unknown provider {self.id!r}")
        if self.poll_interval <= 0:
            raise FatalConfigError(
                f"{self.id}: poll interval must be positive, got {self.poll_interval}"
            )
        if self.timeout <= 0:
            raise FatalConfigError(
                f"{self.id}: timeout must be positive, got {self.timeout}"
            )
        if self.attempt_deadline < self.timeout:
            raise FatalConfigError(
                f"{self.id}: attempt deadline {self.attempt_deadline} is shorter "
                f"than the request timeout {self.timeout}"
            )

        strategy = self.strategy
        if strategy is None:
            raise FatalConfigError(f"{self.id}: enabled but no credentials configured")
        if self.id == "bedrock" and isinstance(strategy, StaticKey):
            raise FatalConfigError("bedrock: requires AWS keys or a role ARN")
        if self.id != "bedrock" and not isinstance(strategy, StaticKey):
            raise FatalConfigError(f"{self.id}: requires an API key")


def _env_float(name: "str", default: "float | None") -> "float | None":
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise FatalConfigError(f"{name} must be a number, got {raw!r}") from None


def _env_enabled(prefix: "str", has_credentials: "bool") -> "bool":
    raw = os.environ.get(f"{prefix}_ENABLED", "").strip().lower()
    # unset flag: enable whenever credentials are present
    if not raw:
        return has_credentials
    return raw in _TRUTHY


def _interval(value: "float | None", default: "float") -> "float":
    return default if value is None else value


def parse_price_table(raw: "str") -> "dict[str, ModelPrice]":
    """
    parses the JSON price table, mapping model id to
    {"prompt": usd_per_1k, "completion": usd_per_1k}.
    """
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise FatalConfigError(f"LLM_PRICE_TABLE is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise FatalConfigError("LLM_PRICE_TABLE must be a JSON object")

    table: "dict[str, ModelPrice]" = {}
    for model, prices in data.items():
        if not isinstance(prices, dict):
            raise FatalConfigError(
                f"LLM_PRICE_TABLE entry for {model!r} must be an object"
            )
        try:
            table[model] = ModelPrice(
                prompt=float(prices.get("prompt", 0.0)),
                completion=float(prices.get("completion", 0.0)),
            )
        except (TypeError, ValueError):
            raise FatalConfigError(
                f"LLM_PRICE_TABLE entry for {model!r} has a non-numeric price"
            ) from None
    return table


@dataclass
class Config:
    # listen_address: format ":8000" or
    # "0.0.0.0:8000"
    listen_address: "str" = ":8000"
    # default poll interval in seconds
    poll_interval: "float" = 300.0
    log_level: "str" = "info"
    log_format: "str" = "console"
    request_timeout: "float" = 10.0
    attempt_deadline: "float" = 300.0

    openai_api_key: "str" = ""
    openai_org_id: "str" = ""
    openai_enabled: "bool" = False
    openai_poll_interval: "float | None" = None
    openai_account_label: "str" = ""
    openai_budget_usd: "float | None" = None
    openai_base_url: "str" = DEFAULT_ENDPOINTS["openai"]

    anthropic_api_key: "str" = ""
    anthropic_enabled: "bool" = False
    anthropic_poll_interval: "float | None" = None
    anthropic_account_label: "str" = ""
    anthropic_budget_usd: "float | None" = None
    anthropic_base_url: "str" = DEFAULT_ENDPOINTS["anthropic"]

    bedrock_enabled: "bool" = False
    bedrock_region: "str" = DEFAULT_ENDPOINTS["bedrock"]
    aws_access_key_id: "str" = ""
    aws_secret_access_key: "str" = ""
    bedrock_role_arn: "str" = ""
    bedrock_external_id: "str" = ""
    bedrock_poll_interval: "float | None" = None
    bedrock_account_label: "str" = ""
    bedrock_budget_usd: "float | None" = None

    price_table: "dict[str, ModelPrice]" = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> "Config":
        env = os.environ.get
        openai_key = env("OPENAI_ADMIN_KEY") or env("OPENAI_API_KEY", "")
        anthropic_key = env("ANTHROPIC_ADMIN_KEY") or env("ANTHROPIC_API_KEY", "")
        access_key = env("AWS_ACCESS_KEY_ID", "")
        secret_key = env("AWS_SECRET_ACCESS_KEY", "")
        role_arn = env("BEDROCK_ROLE_ARN", "")

        return cls(
            request_timeout=_env_float("LLM_REQUEST_TIMEOUT", 10.0),
            attempt_deadline=_env_float("LLM_ATTEMPT_DEADLINE", 300.0),
            openai_api_key=openai_key,
            openai_org_id=env("OPENAI_ORG_ID", ""),
            openai_enabled=_env_enabled("OPENAI", bool(openai_key)),
            openai_poll_interval=_env_float("OPENAI_POLL_INTERVAL", None),
            openai_account_label=env("OPENAI_ACCOUNT_LABEL", ""),
            openai_budget_usd=_env_float("OPENAI_BUDGET_USD", None),
            openai_base_url=env("OPENAI_BASE_URL") or DEFAULT_ENDPOINTS["openai"],
            anthropic_api_key=anthropic_key,
            anthropic_enabled=_env_enabled("ANTHROPIC", bool(anthropic_key)),
            anthropic_poll_interval=_env_float("ANTHROPIC_POLL_INTERVAL", None),
            anthropic_account_label=env("ANTHROPIC_ACCOUNT_LABEL", ""),
            anthropic_budget_usd=_env_float("ANTHROPIC_BUDGET_USD", None),
            anthropic_base_url=env("ANTHROPIC_BASE_URL")
            or DEFAULT_ENDPOINTS["anthropic"],
            bedrock_enabled=_env_enabled("BEDROCK", bool(role_arn or access_key)),
            bedrock_region=env("BEDROCK_REGION")
            or env("AWS_REGION")
            or DEFAULT_ENDPOINTS["bedrock"],
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            bedrock_role_arn=role_arn,
            bedrock_external_id=env("BEDROCK_EXTERNAL_ID", ""),
            bedrock_poll_interval=_env_float("BEDROCK_POLL_INTERVAL", None),
            bedrock_account_label=env("BEDROCK_ACCOUNT_LABEL", ""),
            bedrock_budget_usd=_env_float("BEDROCK_BUDGET_USD", None),
            price_table=parse_price_table(env("LLM_PRICE_TABLE", "")),
        )

    def provider_configs(self) -> "list[ProviderConfig]":
        """
        builds and validates the ProviderConfig of every enabled provider.
        """
        configs: "list[ProviderConfig]" = []

        if self.openai_enabled:
            configs.append(
                ProviderConfig(
                    id="openai",
                    poll_interval=_interval(
                        self.openai_poll_interval, self.poll_interval
                    ),
                    endpoint=self.openai_base_url,
                    api_key=StaticKey(self.openai_api_key)
                    if self.openai_api_key
                    else None,
                    account_label=self.openai_account_label,
                    timeout=self.request_timeout,
                    attempt_deadline=self.attempt_deadline,
                    organization=self.openai_org_id,
                    budget_usd=self.openai_budget_usd,
                )
            )

        if self.anthropic_enabled:
            configs.append(
                ProviderConfig(
                    id="anthropic",
                    poll_interval=_interval(
                        self.anthropic_poll_interval, self.poll_interval
                    ),
                    endpoint=self.anthropic_base_url,
                    api_key=StaticKey(self.anthropic_api_key)
                    if self.anthropic_api_key
                    else None,
                    account_label=self.anthropic_account_label,
                    timeout=self.request_timeout,
                    attempt_deadline=self.attempt_deadline,
                    budget_usd=self.anthropic_budget_usd,
                )
            )

        if self.bedrock_enabled:
            aws_static = None
            if self.aws_access_key_id or self.aws_secret_access_key:
                aws_static = AwsStaticCreds(
                    access_key=self.aws_access_key_id,
                    secret_key=self.aws_secret_access_key,
                )
            role_chain = None
            if self.bedrock_role_arn:
                role_chain = AwsRoleChain(
                    role_arn=self.bedrock_role_arn,
                    external_id=self.bedrock_external_id or None,
                )
            configs.append(
                ProviderConfig(
                    id="bedrock",
                    poll_interval=_interval(
                        self.bedrock_poll_interval, self.poll_interval
                    ),
                    endpoint=self.bedrock_region,
                    aws_static=aws_static,
                    role_chain=role_chain,
                    account_label=self.bedrock_account_label,
                    timeout=self.request_timeout,
                    attempt_deadline=self.attempt_deadline,
                    budget_usd=self.bedrock_budget_usd,
                )
            )

        for config in configs:
            config.validate()
        return configs
