"""AWS adapter (aioboto3)."""

from adapters.aws.provider import AwsCloudAccountProvider

__all__ = ["AwsCloudAccountProvider"]
