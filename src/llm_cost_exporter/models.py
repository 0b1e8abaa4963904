from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


class UsageType(str, Enum):
    TOKENS = "tokens"
    REQUESTS = "requests"
    COST = "cost"


class MetricKind(str, Enum):
    GAUGE = "gauge"
    COUNTER = "counter"


class TokenType(str, Enum):
    PROMPT = "prompt"
    COMPLETION = "completion"
    TOTAL = "total"


@dataclass(frozen=True, slots=True)
class TimeWindow:
    """
    TimeWindow is the period a provider is asked to report on.
    """

    # unix timestamp marking the start of the window
    start: "int"
    # unix timestamp marking the end of the window
    end: "int"


@dataclass(frozen=True, slots=True)
class ApiKeyCredentials:
    secret: "str"

    def __repr__(self) -> "str":
        return "ApiKeyCredentials(secret=***)"


@dataclass(frozen=True, slots=True)
class AwsCredentials:
    """
    AwsCredentials holds either long-lived keys or an assumed
    role session. Session credentials carry a token and expiry.
    """

    access_key_id: "str"
    secret_access_key: "str"
    session_token: "str | None" = None
    # unix timestamp, None for credentials that never expire
    expiration: "float | None" = None

    def __repr__(self) -> "str":
        return (
            f"AwsCredentials(access_key_id={self.access_key_id!r}, "
            f"expiration={self.expiration!r})"
        )


Credentials = Union[ApiKeyCredentials, AwsCredentials]


@dataclass(frozen=True, slots=True)
class RawResponse:
    """
    RawResponse is a provider's decoded payload for one window,
    before normalization.
    """

    provider: "str"
    window: "TimeWindow"
    payload: "dict[str, Any]" = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class CanonicalMetricRecord:
    """
    CanonicalMetricRecord is the provider-agnostic unit produced
    by the normalizer and consumed by the metrics registry.
    """

    provider: "str"
    model: "str"
    usage_type: "UsageType"
    value: "float"
    kind: "MetricKind"
    observed_at: "float"
    # distinguishes several accounts under one provider
    account_label: "str" = ""
    # only set for token records
    token_type: "TokenType | None" = None

    @property
    def key(self) -> "tuple[str, str, str, str, str]":
        token_type = self.token_type.value if self.token_type else ""
        return (
            self.provider,
            self.model,
            self.usage_type.value,
            token_type,
            self.account_label,
        )
