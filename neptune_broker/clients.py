"""AWS client factories with dependency injection.

Provides typed client factories that are injected into the Neptune and IAM
adapters, so tests can swap in fakes without touching the adapters.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from contextlib import contextmanager
from typing import Any, TypeAlias

import aioboto3
from botocore.exceptions import ClientError
from injector import Binder, Module, inject, provider, singleton
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from neptune_broker.config import BrokerConfig
from neptune_broker.constants import THROTTLE_CODES
from neptune_broker.exceptions import UpstreamError, error_code
from neptune_broker.store import PoolStore

# =============================================================================
# Client Type
# =============================================================================

ClientFactory: TypeAlias = Callable[[], AbstractAsyncContextManager[Any]]
"""Factory that returns an async context manager for a client."""

# =============================================================================
# Wrapper Classes for DI (each needs a unique type)
# =============================================================================


class _ClientFactory:
    def __init__(self, factory: ClientFactory) -> None:
        self._factory = factory

    def __call__(self) -> AbstractAsyncContextManager[Any]:
        return self._factory()


class NeptuneClientFactory(_ClientFactory):
    """Wrapper for Neptune client factory."""


class IAMClientFactory(_ClientFactory):
    """Wrapper for IAM client factory."""


class STSClientFactory(_ClientFactory):
    """Wrapper for STS client factory."""


def session_factory(session: aioboto3.Session, service: str, region: str) -> ClientFactory:
    @asynccontextmanager
    async def factory() -> AsyncIterator[Any]:
        async with session.client(service, region_name=region) as client:
            yield client
    return factory


# =============================================================================
# Error Handling
# =============================================================================


def _is_throttle(exc: BaseException) -> bool:
    return error_code(exc) in THROTTLE_CODES


aws_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, max=8),
    retry=retry_if_exception(_is_throttle),
    reraise=True,
)
"""Retry a coroutine on AWS throttling, re-raising the last error."""


@contextmanager
def upstream(service: str, operation: str) -> Iterator[None]:
    """Translate botocore ClientError into UpstreamError."""
    try:
        yield
    except ClientError as e:
        raise UpstreamError.from_client_error(service, operation, e) from e


# =============================================================================
# Account
# =============================================================================


@singleton
class AccountResolver:
    """Resolves the AWS account number used in ARNs.

    Uses the configured account when present and asks STS otherwise.
    The answer is cached for the life of the resolver.
    """

    @inject
    def __init__(self, config: BrokerConfig, sts: STSClientFactory) -> None:
        self._account = config.account_id
        self._sts = sts

    @aws_retry
    async def account_id(self) -> str:
        if not self._account:
            with upstream("sts", "GetCallerIdentity"):
                async with self._sts() as sts:
                    identity = await sts.get_caller_identity()
            self._account = identity["Account"]
        return self._account


# =============================================================================
# Broker Module
# =============================================================================


class BrokerModule(Module):
    """DI module that provides config, store and AWS client factories.

    Usage:
        >>> from injector import Injector
        >>> from neptune_broker.broker import Broker
        >>>
        >>> injector = Injector([BrokerModule(config)])
        >>> broker = injector.get(Broker)
    """

    def __init__(self, config: BrokerConfig) -> None:
        self._config = config

    def configure(self, binder: Binder) -> None:
        binder.bind(BrokerConfig, to=self._config)

    @singleton
    @provider
    def provide_session(self) -> aioboto3.Session:
        """Provide singleton aioboto3 session."""
        return aioboto3.Session()

    @singleton
    @provider
    def provide_neptune(self, session: aioboto3.Session, config: BrokerConfig) -> NeptuneClientFactory:
        return NeptuneClientFactory(session_factory(session, "neptune", config.region))

    @singleton
    @provider
    def provide_iam(self, session: aioboto3.Session, config: BrokerConfig) -> IAMClientFactory:
        return IAMClientFactory(session_factory(session, "iam", config.region))

    @singleton
    @provider
    def provide_sts(self, session: aioboto3.Session, config: BrokerConfig) -> STSClientFactory:
        return STSClientFactory(session_factory(session, "sts", config.region))

    @singleton
    @provider
    def provide_store(self, config: BrokerConfig) -> PoolStore:
        return PoolStore.from_url(config.async_database_url, timezone=config.timezone)


__all__ = [
    "AccountResolver",
    "BrokerModule",
    "ClientFactory",
    "IAMClientFactory",
    "NeptuneClientFactory",
    "STSClientFactory",
    "aws_retry",
    "upstream",
]
