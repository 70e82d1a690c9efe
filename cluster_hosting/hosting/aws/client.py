"""boto3 access for the AWS hosting manager.

Every call made through ``AwsClient`` translates botocore failures into the
cluster hosting exception hierarchy and retries transient ones.
"""

from functools import wraps
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    ParamValidationError,
    ReadTimeoutError,
)

from cluster_hosting.exceptions import (
    CapacityError,
    ClusterHostingError,
    ProviderError,
    TransientProviderError,
)
from cluster_hosting.logging_config import get_logger
from cluster_hosting.models.cluster import AwsHostingOptions
from cluster_hosting.waiting import retry_transient

logger = get_logger(__name__)

AUTH_ERROR_CODES = {
    "AuthFailure",
    "UnauthorizedOperation",
    "InvalidClientTokenId",
    "SignatureDoesNotMatch",
    "AccessDenied",
    "AccessDeniedException",
}

TRANSIENT_ERROR_CODES = {
    "RequestLimitExceeded",
    "Throttling",
    "ThrottlingException",
    "TooManyRequestsException",
    "ServiceUnavailable",
    "Unavailable",
    "InternalError",
    "InternalFailure",
    "DependencyViolation",
    "IncorrectState",
    "IncorrectInstanceState",
    "ResourceInUse",
}

CAPACITY_ERROR_CODES = {
    "InsufficientInstanceCapacity",
    "InstanceLimitExceeded",
    "VcpuLimitExceeded",
    "Unsupported",
    "VolumeLimitExceeded",
    "AddressLimitExceeded",
    "NatGatewayLimitExceeded",
    "VpcLimitExceeded",
    "TooManyLoadBalancers",
    "TooManyTargetGroups",
}


def parse_aws_error(error: ClientError, operation: str) -> ClusterHostingError:
    """Map a botocore ClientError to a cluster hosting exception.

    Args:
        error: The botocore ClientError
        operation: Description of the operation that failed

    Returns:
        Specific exception type based on the error code
    """
    error_code = error.response.get("Error", {}).get("Code", "")
    error_message = error.response.get("Error", {}).get("Message", str(error))

    if error_code in AUTH_ERROR_CODES:
        return ProviderError(
            f"{operation} - Authentication failed: {error_message}",
            "Check the AWS access key, secret key and IAM permissions.",
            code=error_code,
        )

    if error_code in TRANSIENT_ERROR_CODES:
        return TransientProviderError(
            f"{operation} - AWS is temporarily unable to complete the request: {error_message}",
            code=error_code,
        )

    if error_code in CAPACITY_ERROR_CODES:
        return CapacityError(
            f"{operation} - AWS capacity or quota exceeded: {error_message}",
            "Request a quota increase or choose a different instance type or zone.",
        )

    return ProviderError(f"{operation} - AWS error [{error_code}]: {error_message}", code=error_code)


def translate_error(error: Exception, operation: str) -> ClusterHostingError:
    """Map any botocore exception to a cluster hosting exception."""
    if isinstance(error, ClientError):
        return parse_aws_error(error, operation)
    if isinstance(error, (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError)):
        return TransientProviderError(f"{operation} - Could not reach AWS: {error}")
    if isinstance(error, NoCredentialsError):
        return ProviderError(
            f"{operation} - AWS credentials were not found",
            "Set access_key_id/secret_access_key or AWS_ACCESS_KEY_ID/AWS_SECRET_ACCESS_KEY.",
        )
    if isinstance(error, ParamValidationError):
        return ProviderError(f"{operation} - Invalid request parameters", str(error))
    return ProviderError(f"{operation} - AWS SDK error: {error}")


class ServiceClient:
    """Wraps one boto3 service client.

    Attribute access returns the boto3 operation wrapped with error
    translation and bounded retry of transient failures.
    """

    def __init__(self, client: Any, service_name: str, max_attempts: int = 5, retry_delay: float = 1.0):
        self._client = client
        self.service_name = service_name
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay

    def __getattr__(self, operation: str):
        method = getattr(self._client, operation)
        label = f"{self.service_name}.{operation}"

        @retry_transient(max_attempts=self.max_attempts, initial_delay=self.retry_delay)
        @wraps(method)
        def call(**kwargs):
            try:
                return method(**kwargs)
            except (ClientError, BotoCoreError) as e:
                raise translate_error(e, label) from e

        return call

    def paginate(self, operation: str, result_key: str, **kwargs) -> list[dict]:
        """Collect ``result_key`` items across every page of an operation."""
        if not self._client.can_paginate(operation):
            return list(getattr(self, operation)(**kwargs).get(result_key, []))

        @retry_transient(max_attempts=self.max_attempts, initial_delay=self.retry_delay)
        def collect():
            items = []
            try:
                for page in self._client.get_paginator(operation).paginate(**kwargs):
                    items.extend(page.get(result_key, []))
            except (ClientError, BotoCoreError) as e:
                raise translate_error(e, f"{self.service_name}.{operation}") from e
            return items

        return collect()


class AwsClient:
    """The EC2, ELBv2 and Resource Groups clients for one region."""

    def __init__(self, ec2: Any, elb: Any, resource_groups: Any, region: str, retry_delay: float = 1.0):
        self.region = region
        self.ec2 = ServiceClient(ec2, "ec2", retry_delay=retry_delay)
        self.elb = ServiceClient(elb, "elbv2", retry_delay=retry_delay)
        self.resource_groups = ServiceClient(resource_groups, "resource-groups", retry_delay=retry_delay)

    @classmethod
    def connect(cls, options: AwsHostingOptions) -> "AwsClient":
        """Create clients from the hosting options.

        Explicit credentials in the options win; otherwise boto3's default
        credential chain applies.
        """
        logger.debug(f"Connecting to AWS region {options.region}")
        session = boto3.Session(
            aws_access_key_id=options.access_key_id,
            aws_secret_access_key=options.secret_access_key,
            region_name=options.region,
        )
        config = Config(retries={"max_attempts": 10, "mode": "adaptive"})
        return cls(
            ec2=session.client("ec2", config=config),
            elb=session.client("elbv2", config=config),
            resource_groups=session.client("resource-groups", config=config),
            region=options.region,
        )
