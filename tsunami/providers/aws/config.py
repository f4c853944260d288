"""AWS provider configuration.

Immutable configuration dataclass for the EC2 provider.
"""

from __future__ import annotations

import typing
from dataclasses import dataclass

if typing.TYPE_CHECKING:
    from tsunami.providers.aws.provider import EC2Provider


@dataclass(frozen=True, slots=True)
class AWS:
    """AWS provider configuration.

    Example:
        >>> from tsunami.providers.aws import AWS
        >>> config = AWS(region="us-west-2")

    Args:
        region: AWS region. If None, uses the default region of the
            boto credential chain, falling back to us-east-1.
        request_timeout: Timeout in seconds for a single EC2 API call.
    """

    region: str | None = None
    request_timeout: float = 30.0

    @property
    def type(self) -> str: return "aws"

    async def create_provider(self) -> EC2Provider:
        from injector import Injector

        from tsunami.providers.aws.clients import AWSModule
        from tsunami.providers.aws.provider import EC2Provider

        return Injector([AWSModule(self)]).get(EC2Provider)
