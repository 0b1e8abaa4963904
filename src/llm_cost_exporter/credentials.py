import asyncio
import time
from typing import Any, Callable, Mapping

import boto3
import structlog
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from llm_cost_exporter.config import (
    AwsRoleChain,
    AwsStaticCreds,
    ProviderConfig,
    StaticKey,
)
from llm_cost_exporter.errors import AuthConfigError
from llm_cost_exporter.models import ApiKeyCredentials, AwsCredentials, Credentials

logger = structlog.get_logger()

# refresh assumed role sessions this many seconds before they expire
DEFAULT_REFRESH_MARGIN_SECONDS = 300.0
DEFAULT_SESSION_DURATION_SECONDS = 3600


def default_sts_client(source: "AwsStaticCreds | None", timeout: "float") -> "Any":
    """
    builds an STS client, from the given static keys when present,
    otherwise from the default AWS credential chain.
    """
    boto_config = BotoConfig(
        connect_timeout=timeout,
        read_timeout=timeout,
        retries={"max_attempts": 1},
    )
    if source is not None:
        session = boto3.Session(
            aws_access_key_id=source.access_key,
            aws_secret_access_key=source.secret_key,
        )
        return session.client("sts", config=boto_config)
    return boto3.client("sts", config=boto_config)


class CredentialResolver:
    """
    CredentialResolver materializes working credentials for each
    provider from its configured strategy and caches them for the
    process lifetime.

    Assumed role sessions are refreshed once they come within the
    refresh margin of their expiry. invalidate() drops a cached
    entry after the provider rejected it.
    """

    def __init__(
        self,
        configs: "Mapping[str, ProviderConfig]",
        sts_client_factory: "Callable[[AwsStaticCreds | None, float], Any]" = (
            default_sts_client
        ),
        refresh_margin_seconds: "float" = DEFAULT_REFRESH_MARGIN_SECONDS,
        clock: "Callable[[], float]" = time.time,
    ) -> "None":
        self._configs = dict(configs)
        self._sts_client_factory = sts_client_factory
        self._refresh_margin = refresh_margin_seconds
        self._clock = clock
        self._cache: "dict[str, Credentials]" = {}
        self._locks: "dict[str, asyncio.Lock]" = {}

    async def resolve(self, provider_id: "str") -> "Credentials":
        """
        returns cached credentials for the provider, resolving them
        first when missing or about to expire.
        """
        cached = self._cache.get(provider_id)
        if cached is not None and self._is_fresh(cached):
            return cached

        lock = self._locks.setdefault(provider_id, asyncio.Lock())
        async with lock:
            # re-check after acquiring lock (another task may have resolved it)
            cached = self._cache.get(provider_id)
            if cached is not None and self._is_fresh(cached):
                return cached

            credentials = await self._resolve_uncached(provider_id)
            self._cache[provider_id] = credentials
            return credentials

    def invalidate(self, provider_id: "str") -> "None":
        if self._cache.pop(provider_id, None) is not None:
            logger.info("credentials_invalidated", provider=provider_id)

    def _is_fresh(self, credentials: "Credentials") -> "bool":
        if not isinstance(credentials, AwsCredentials):
            return True
        if credentials.expiration is None:
            return True
        return self._clock() < credentials.expiration - self._refresh_margin

    async def _resolve_uncached(self, provider_id: "str") -> "Credentials":
        config = self._configs.get(provider_id)
        if config is None:
            raise AuthConfigError(f"{provider_id}: no provider config")

        strategy = config.strategy
        if isinstance(strategy, AwsRoleChain):
            return await self._assume_role(provider_id, strategy, config.timeout)

        if isinstance(strategy, AwsStaticCreds):
            if not strategy.access_key or not strategy.secret_key:
                raise AuthConfigError(
                    f"{provider_id}: AWS access key and secret key are both required"
                )
            return AwsCredentials(
                access_key_id=strategy.access_key,
                secret_access_key=strategy.secret_key,
            )

        if isinstance(strategy, StaticKey):
            if not strategy.secret:
                raise AuthConfigError(f"{provider_id}: API key is empty")
            return ApiKeyCredentials(secret=strategy.secret)

        raise AuthConfigError(f"{provider_id}: no credential strategy configured")

    async def _assume_role(
        self,
        provider_id: "str",
        strategy: "AwsRoleChain",
        timeout: "float",
    ) -> "AwsCredentials":
        if not strategy.role_arn:
            raise AuthConfigError(f"{provider_id}: role ARN is empty")

        params: "dict[str, Any]" = {
            "RoleArn": strategy.role_arn,
            "RoleSessionName": strategy.session_name,
            "DurationSeconds": DEFAULT_SESSION_DURATION_SECONDS,
        }
        if strategy.external_id:
            params["ExternalId"] = strategy.external_id

        def _call() -> "dict[str, Any]":
            client = self._sts_client_factory(strategy.source, timeout)
            return client.assume_role(**params)

        logger.debug("assume_role", provider=provider_id, role_arn=strategy.role_arn)
        try:
            response = await asyncio.to_thread(_call)
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "Unknown")
            raise AuthConfigError(
                f"{provider_id}: assume role {strategy.role_arn} failed: {code}"
            ) from exc
        except BotoCoreError as exc:
            raise AuthConfigError(
                f"{provider_id}: assume role {strategy.role_arn} failed: {exc}"
            ) from exc

        try:
            creds = response["Credentials"]
            credentials = AwsCredentials(
                access_key_id=creds["AccessKeyId"],
                secret_access_key=creds["SecretAccessKey"],
                session_token=creds["SessionToken"],
                expiration=creds["Expiration"].timestamp(),
            )
        except (KeyError, AttributeError, TypeError) as exc:
            raise AuthConfigError(
                f"{provider_id}: malformed assume role response"
            ) from exc

        logger.info(
            "role_assumed",
            provider=provider_id,
            role_arn=strategy.role_arn,
            expires_at=credentials.expiration,
        )
        return credentials
