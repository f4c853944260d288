"""AWS client factories with dependency injection.

Provides typed client factories that can be injected into components.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Any

import aioboto3
from botocore.config import Config
from injector import Binder, Module, provider, singleton

from .config import AWS

DEFAULT_REGION = "us-east-1"


class EC2ClientFactory:
    """Wrapper for EC2 client factory."""

    def __init__(self, factory: Callable[[], AbstractAsyncContextManager[Any]]) -> None:
        self._factory = factory

    def __call__(self) -> AbstractAsyncContextManager[Any]:
        return self._factory()


class AWSModule(Module):
    """DI module that provides AWS client factories.

    Usage:
        >>> from injector import Injector
        >>> injector = Injector([AWSModule(AWS(region="us-east-1"))])
        >>> provider = injector.get(EC2Provider)
    """

    def __init__(self, config: AWS) -> None:
        self._config = config

    def configure(self, binder: Binder) -> None:
        binder.bind(AWS, to=self._config)

    @singleton
    @provider
    def provide_session(self) -> aioboto3.Session:
        """Provide singleton aioboto3 session."""
        return aioboto3.Session()

    @singleton
    @provider
    def provide_ec2(self, session: aioboto3.Session, config: AWS) -> EC2ClientFactory:
        """Provide EC2 client factory."""
        region = config.region or session.region_name or DEFAULT_REGION
        client_config = Config(
            connect_timeout=config.request_timeout,
            read_timeout=config.request_timeout,
            retries={"mode": "standard"},
        )

        @asynccontextmanager
        async def factory() -> AsyncIterator[Any]:
            async with session.client("ec2", region_name=region, config=client_config) as client:
                yield client
        return EC2ClientFactory(factory)


__all__ = [
    "AWSModule",
    "EC2ClientFactory",
]
