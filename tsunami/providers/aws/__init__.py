"""AWS EC2 provider for Tsunami.

Example:
    from tsunami import Tsunami
    from tsunami.providers.aws import AWS

    tsunami = Tsunami(provider=AWS(region="us-east-1"))
"""

from tsunami.providers.aws.config import AWS
from tsunami.providers.aws.provider import EC2Provider

__all__ = ["AWS", "EC2Provider"]
