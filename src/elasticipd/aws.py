"""
Amazon EC2 Integration Module for Elastic IP Management

This module provides the production implementations of the two collaborator
contracts the reconciler depends on:

1. Ec2AddressService: describe / associate / disassociate an Elastic IP
2. InstanceMetadataSource: "who am I" via the instance metadata service (IMDSv2)
   plus the instance's attached network interfaces via DescribeInstances

Every provider failure is translated at this boundary into the daemon's error
taxonomy (see errors.py), so the reconciler never sees botocore or requests
exceptions.

Key AWS APIs Used:
    - ec2:DescribeAddresses: current association of the Elastic IP
    - ec2:AssociateAddress / ec2:DisassociateAddress: mutations
    - ec2:DescribeInstances: attached network interfaces of the local instance
    - ec2:DescribeRegions: startup connectivity/credentials validation
    - IMDSv2 (PUT /latest/api/token, GET /latest/dynamic/instance-identity/document)

Error Handling Strategy:
    - Permanent errors (auth, unknown address, bad parameters): logged at ERROR
      with a hint that configuration or IAM is likely wrong
    - Transient errors (throttling, 5xx, network): logged at WARNING
    - Either way a single attempt is made per cycle; the scheduler retries on
      the next tick and exits once the retry budget is spent

Authentication and Permissions:
    Credentials come from the standard boto3 chain (environment, shared config,
    instance profile). The instance role needs:
      * ec2:DescribeAddresses, ec2:AssociateAddress, ec2:DisassociateAddress
      * ec2:DescribeInstances, ec2:DescribeRegions

Example Usage:
    ec2 = build_ec2_client('us-east-1')
    validate_aws_connectivity(ec2, 'us-east-1')

    addresses = Ec2AddressService(ec2)
    metadata = InstanceMetadataSource(ec2)

    binding = addresses.describe('203.0.113.10')
    identity = metadata.current_identity()
"""

import logging
from typing import Optional, Tuple

import boto3
import requests
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import resolve_logger_name
from .errors import (
    AddressNotFound,
    BindFailed,
    LookupFailed,
    MetadataUnavailable,
    MissingAllocation,
    UnbindFailed,
)
from .models import Binding, Identity

logger = logging.getLogger(resolve_logger_name())

# EC2 API configuration constants
DEFAULT_API_TIMEOUT = 10                  # Connect/read timeout for EC2 calls (seconds)

# Instance metadata service (IMDSv2) constants
IMDS_BASE_URL = "http://169.254.169.254"
IMDS_TOKEN_PATH = "/latest/api/token"
IMDS_IDENTITY_PATH = "/latest/dynamic/instance-identity/document"
IMDS_TOKEN_TTL_SECONDS = 300
DEFAULT_METADATA_TIMEOUT = 2

# EC2 error codes that indicate configuration or permission problems rather
# than a transient outage
PERMANENT_ERROR_CODES = [
    "AuthFailure",
    "UnauthorizedOperation",
    "InvalidAddress.NotFound",
    "InvalidAllocationID.NotFound",
    "InvalidAssociationID.NotFound",
    "InvalidInstanceID.NotFound",
    "InvalidNetworkInterfaceID.NotFound",
    "InvalidParameterValue",
    "InvalidParameterCombination",
    "Resource.AlreadyAssociated",
    "OptInRequired",
]
TRANSIENT_ERROR_CODES = [
    "RequestLimitExceeded",
    "Throttling",
    "ThrottlingException",
    "InternalError",
    "ServiceUnavailable",
    "Unavailable",
]
ADDRESS_NOT_FOUND_CODES = ["InvalidAddress.NotFound"]


def build_ec2_client(region: str, timeout: float = DEFAULT_API_TIMEOUT, session=None):
    """
    Create a boto3 EC2 client for the given region.

    Retries inside botocore are disabled (one attempt per call); retrying is the
    poll scheduler's job across ticks.

    Args:
        region (str): AWS region hosting the Elastic IP and instance.
        timeout (float): Connect and read timeout in seconds.
        session (boto3.session.Session, optional): Session to build the client from.

    Returns:
        botocore.client.EC2: Configured EC2 client.
    """
    if not region:
        raise ValueError("Region cannot be empty")

    client_config = BotoConfig(
        region_name=region,
        connect_timeout=timeout,
        read_timeout=timeout,
        retries={"mode": "standard", "total_max_attempts": 1},
    )
    factory = session or boto3
    logger.debug(f"Building EC2 client for region {region} (timeout={timeout}s)")
    return factory.client("ec2", region_name=region, config=client_config)


def classify_error(error: Exception) -> Tuple[str, bool]:
    """
    Return (error_code, permanent) for a botocore/requests exception.

    Unknown client error codes are treated as transient.
    """
    if isinstance(error, ClientError):
        code = error.response.get("Error", {}).get("Code", "Unknown")
        return code, code in PERMANENT_ERROR_CODES
    return type(error).__name__, False


def _log_api_error(operation: str, error: Exception, **context) -> str:
    code, permanent = classify_error(error)
    ctx = ", ".join(f"{k}={v}" for k, v in context.items() if v)
    if permanent:
        logger.error(f"EC2 {operation} failed with permanent error {code} ({ctx}): {error} "
                     f"- check configuration and IAM permissions")
    else:
        logger.warning(f"EC2 {operation} failed with transient error {code} ({ctx}): {error}")
    return code


def validate_aws_connectivity(ec2_client, region: str) -> None:
    """
    Validate credentials and region access before the daemon starts polling.

    Raises:
        ValueError: If the region is empty or not available to the account.
        ClientError / BotoCoreError: If the API call fails (auth, network).
    """
    if not region:
        raise ValueError("Region cannot be empty")

    logger.info(f"Validating AWS connectivity for region '{region}'")
    try:
        resp = ec2_client.describe_regions(RegionNames=[region])
    except ClientError as e:
        code, _ = classify_error(e)
        if code in ("AuthFailure", "UnauthorizedOperation"):
            logger.error(f"Authentication failed for EC2 API in {region}: {e}")
        elif code == "InvalidParameterValue":
            raise ValueError(f"Region '{region}' is not valid: {e}") from e
        else:
            logger.error(f"EC2 API error validating region {region}: {e}")
        raise
    except BotoCoreError as e:
        logger.error(f"Could not reach the EC2 API in {region}: {e}")
        raise

    if not resp.get("Regions"):
        raise ValueError(f"Region '{region}' is not available to this account")
    logger.info(f"✓ AWS connectivity validated for region {region}")


class Ec2AddressService:
    """Elastic IP describe/associate/disassociate backed by the EC2 API."""

    def __init__(self, ec2_client):
        self.ec2 = ec2_client

    def describe(self, public_ip: str) -> Binding:
        try:
            resp = self.ec2.describe_addresses(PublicIps=[public_ip])
        except ClientError as e:
            code = _log_api_error("DescribeAddresses", e, public_ip=public_ip)
            if code in ADDRESS_NOT_FOUND_CODES:
                raise AddressNotFound("failed to find address info", public_ip=public_ip) from e
            raise LookupFailed(f"error describing address: {e}", public_ip=public_ip) from e
        except BotoCoreError as e:
            _log_api_error("DescribeAddresses", e, public_ip=public_ip)
            raise LookupFailed(f"error describing address: {e}", public_ip=public_ip) from e

        addresses = resp.get("Addresses") or []
        if not addresses:
            raise AddressNotFound("failed to find address info", public_ip=public_ip)

        addr = addresses[0]
        if not addr.get("AllocationId"):
            raise MissingAllocation("allocation id is nil", public_ip=public_ip,
                                    association_id=addr.get("AssociationId"))

        return Binding(
            allocation_id=addr["AllocationId"],
            association_id=addr.get("AssociationId") or "",
            instance_id=addr.get("InstanceId") or "",
            network_interface_id=addr.get("NetworkInterfaceId") or "",
            public_ip=addr.get("PublicIp") or public_ip,
        )

    def bind(self, allocation_id: str, *, instance_id: Optional[str] = None,
             network_interface_id: Optional[str] = None,
             allow_reassociation: bool = True) -> str:
        """Associate the allocation with exactly one of instance_id / network_interface_id."""
        if bool(instance_id) == bool(network_interface_id):
            raise ValueError("exactly one of instance_id or network_interface_id is required")

        params = {
            "AllocationId": allocation_id,
            "AllowReassociation": allow_reassociation,
        }
        if network_interface_id:
            params["NetworkInterfaceId"] = network_interface_id
        else:
            params["InstanceId"] = instance_id

        try:
            resp = self.ec2.associate_address(**params)
        except (ClientError, BotoCoreError) as e:
            _log_api_error("AssociateAddress", e, allocation_id=allocation_id,
                           instance_id=instance_id, network_interface_id=network_interface_id)
            raise BindFailed(f"failed to associate address: {e}", allocation_id=allocation_id,
                             instance_id=instance_id,
                             network_interface_id=network_interface_id) from e
        return resp.get("AssociationId", "")

    def unbind(self, association_id: str) -> None:
        if not association_id:
            return
        try:
            self.ec2.disassociate_address(AssociationId=association_id)
        except (ClientError, BotoCoreError) as e:
            _log_api_error("DisassociateAddress", e, association_id=association_id)
            raise UnbindFailed(f"failed to disassociate address: {e}",
                               association_id=association_id) from e


class InstanceMetadataSource:
    """
    Resolves the local instance identity.

    The instance id comes from the IMDSv2 identity document; the attached network
    interfaces come from DescribeInstances, ordered by device index so the
    primary interface (device index 0) is always first.
    """

    def __init__(self, ec2_client, http_session: Optional[requests.Session] = None,
                 timeout: float = DEFAULT_METADATA_TIMEOUT, base_url: str = IMDS_BASE_URL):
        self.ec2 = ec2_client
        self.http = http_session or requests.Session()
        self.timeout = timeout
        self.base_url = base_url.rstrip("/")

    def _token(self) -> str:
        resp = self.http.put(
            f"{self.base_url}{IMDS_TOKEN_PATH}",
            headers={"X-aws-ec2-metadata-token-ttl-seconds": str(IMDS_TOKEN_TTL_SECONDS)},
            timeout=self.timeout,
        )
        resp.raise_for_status()
        return resp.text

    def identity_document(self) -> dict:
        try:
            token = self._token()
            resp = self.http.get(
                f"{self.base_url}{IMDS_IDENTITY_PATH}",
                headers={"X-aws-ec2-metadata-token": token},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            return resp.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Instance metadata request failed: {e}")
            raise MetadataUnavailable(f"error getting instance identity document: {e}") from e

    def current_identity(self) -> Identity:
        document = self.identity_document()
        instance_id = document.get("instanceId")
        if not instance_id:
            raise MetadataUnavailable("instance identity document has no instanceId")

        try:
            resp = self.ec2.describe_instances(InstanceIds=[instance_id])
        except (ClientError, BotoCoreError) as e:
            _log_api_error("DescribeInstances", e, instance_id=instance_id)
            raise MetadataUnavailable(f"error describing instance: {e}",
                                      instance_id=instance_id) from e

        reservations = resp.get("Reservations") or []
        if len(reservations) != 1:
            raise MetadataUnavailable("invalid instance description: no reservations",
                                      instance_id=instance_id)
        instances = reservations[0].get("Instances") or []
        if len(instances) != 1:
            raise MetadataUnavailable("instance not found in reservation", instance_id=instance_id)

        interfaces = sorted(
            instances[0].get("NetworkInterfaces") or [],
            key=lambda ni: ni.get("Attachment", {}).get("DeviceIndex", 0),
        )
        return Identity(
            instance_id=instance_id,
            network_interface_ids=tuple(ni["NetworkInterfaceId"] for ni in interfaces
                                        if ni.get("NetworkInterfaceId")),
        )
