"""
Unit Tests for the EC2 and Instance Metadata Collaborators

EC2 calls are exercised through botocore's Stubber so that request parameters
are validated against the real service model; IMDS calls use a mocked
requests session.

Test Coverage:
    - DescribeAddresses mapping to Binding and the not-found / missing allocation cases
    - AssociateAddress target selection and AllowReassociation
    - DisassociateAddress no-op on an empty association id
    - Error translation into the daemon's error hierarchy
    - IMDSv2 token + identity document and DescribeInstances interface ordering
    - Region/credential validation at startup
"""

import unittest
from unittest.mock import Mock, patch

import boto3
import requests
from botocore.exceptions import ClientError, EndpointConnectionError
from botocore.stub import Stubber

from elasticipd import aws as aws_mod
from elasticipd.aws import Ec2AddressService, InstanceMetadataSource, classify_error, validate_aws_connectivity
from elasticipd.errors import (
    AddressNotFound,
    BindFailed,
    LookupFailed,
    MetadataUnavailable,
    MissingAllocation,
    UnbindFailed,
)


TARGET_IP = "203.0.113.10"


def make_client():
    return boto3.client("ec2", region_name="us-east-1",
                        aws_access_key_id="testing", aws_secret_access_key="testing")


class StubbedClientTestCase(unittest.TestCase):
    def setUp(self):
        self.ec2 = make_client()
        self.stubber = Stubber(self.ec2)
        self.stubber.activate()

    def tearDown(self):
        self.stubber.deactivate()


class TestDescribe(StubbedClientTestCase):
    """Test suite for Ec2AddressService.describe."""

    def test_maps_associated_address(self):
        self.stubber.add_response(
            "describe_addresses",
            {"Addresses": [{
                "PublicIp": TARGET_IP,
                "AllocationId": "eipalloc-123",
                "AssociationId": "eipassoc-1",
                "InstanceId": "i-999",
                "NetworkInterfaceId": "eni-9",
                "Domain": "vpc",
            }]},
            {"PublicIps": [TARGET_IP]},
        )

        binding = Ec2AddressService(self.ec2).describe(TARGET_IP)

        self.assertEqual(binding.allocation_id, "eipalloc-123")
        self.assertEqual(binding.association_id, "eipassoc-1")
        self.assertEqual(binding.instance_id, "i-999")
        self.assertEqual(binding.network_interface_id, "eni-9")
        self.assertTrue(binding.associated)
        self.stubber.assert_no_pending_responses()

    def test_maps_unassociated_address(self):
        self.stubber.add_response(
            "describe_addresses",
            {"Addresses": [{"PublicIp": TARGET_IP, "AllocationId": "eipalloc-123", "Domain": "vpc"}]},
        )

        binding = Ec2AddressService(self.ec2).describe(TARGET_IP)

        self.assertEqual(binding.association_id, "")
        self.assertEqual(binding.instance_id, "")
        self.assertFalse(binding.associated)

    def test_empty_result_is_not_found(self):
        self.stubber.add_response("describe_addresses", {"Addresses": []})

        with self.assertRaises(AddressNotFound) as ctx:
            Ec2AddressService(self.ec2).describe(TARGET_IP)
        self.assertIn("failed to find address info", str(ctx.exception))

    def test_not_found_error_code(self):
        self.stubber.add_client_error("describe_addresses", service_error_code="InvalidAddress.NotFound",
                                      service_message="Address not found")

        with self.assertRaises(AddressNotFound):
            Ec2AddressService(self.ec2).describe(TARGET_IP)

    def test_missing_allocation_id(self):
        """A classic (non-VPC) address has no allocation id and cannot be bound."""
        self.stubber.add_response(
            "describe_addresses",
            {"Addresses": [{"PublicIp": TARGET_IP, "Domain": "standard"}]},
        )

        with self.assertRaises(MissingAllocation) as ctx:
            Ec2AddressService(self.ec2).describe(TARGET_IP)
        self.assertIn("allocation id is nil", str(ctx.exception))

    def test_throttling_is_lookup_failure(self):
        self.stubber.add_client_error("describe_addresses", service_error_code="RequestLimitExceeded",
                                      http_status_code=503)

        with self.assertRaises(LookupFailed):
            Ec2AddressService(self.ec2).describe(TARGET_IP)

    def test_connection_error_is_lookup_failure(self):
        ec2 = Mock()
        ec2.describe_addresses.side_effect = EndpointConnectionError(endpoint_url="https://ec2.us-east-1.amazonaws.com")

        with self.assertRaises(LookupFailed):
            Ec2AddressService(ec2).describe(TARGET_IP)


class TestBind(StubbedClientTestCase):
    """Test suite for Ec2AddressService.bind."""

    def test_bind_by_instance(self):
        self.stubber.add_response(
            "associate_address",
            {"AssociationId": "eipassoc-2"},
            {"AllocationId": "eipalloc-123", "InstanceId": "i-123", "AllowReassociation": True},
        )

        association_id = Ec2AddressService(self.ec2).bind("eipalloc-123", instance_id="i-123")

        self.assertEqual(association_id, "eipassoc-2")
        self.stubber.assert_no_pending_responses()

    def test_bind_by_network_interface(self):
        self.stubber.add_response(
            "associate_address",
            {"AssociationId": "eipassoc-3"},
            {"AllocationId": "eipalloc-123", "NetworkInterfaceId": "eni-1", "AllowReassociation": False},
        )

        Ec2AddressService(self.ec2).bind("eipalloc-123", network_interface_id="eni-1",
                                         allow_reassociation=False)
        self.stubber.assert_no_pending_responses()

    def test_requires_exactly_one_target(self):
        service = Ec2AddressService(self.ec2)
        with self.assertRaises(ValueError):
            service.bind("eipalloc-123")
        with self.assertRaises(ValueError):
            service.bind("eipalloc-123", instance_id="i-123", network_interface_id="eni-1")

    def test_api_error_is_bind_failure(self):
        self.stubber.add_client_error("associate_address", service_error_code="Resource.AlreadyAssociated")

        with self.assertRaises(BindFailed) as ctx:
            Ec2AddressService(self.ec2).bind("eipalloc-123", instance_id="i-123",
                                             allow_reassociation=False)
        self.assertEqual(ctx.exception.context["allocation_id"], "eipalloc-123")


class TestUnbind(StubbedClientTestCase):
    """Test suite for Ec2AddressService.unbind."""

    def test_unbind(self):
        self.stubber.add_response("disassociate_address", {}, {"AssociationId": "eipassoc-1"})

        Ec2AddressService(self.ec2).unbind("eipassoc-1")
        self.stubber.assert_no_pending_responses()

    def test_empty_association_makes_no_call(self):
        """No response is queued, so any API call would fail the stubber."""
        Ec2AddressService(self.ec2).unbind("")

    def test_api_error_is_unbind_failure(self):
        self.stubber.add_client_error("disassociate_address", service_error_code="UnauthorizedOperation",
                                      http_status_code=403)

        with self.assertRaises(UnbindFailed):
            Ec2AddressService(self.ec2).unbind("eipassoc-1")


class TestInstanceMetadataSource(StubbedClientTestCase):
    """Test suite for InstanceMetadataSource.current_identity."""

    def make_http(self, document=None, token_error=None):
        http = Mock()
        if token_error is not None:
            http.put.side_effect = token_error
        else:
            http.put.return_value = Mock(text="token-abc")
        http.get.return_value = Mock(json=Mock(return_value=document or {"instanceId": "i-123"}))
        return http

    def test_identity_with_interfaces_ordered_by_device_index(self):
        self.stubber.add_response(
            "describe_instances",
            {"Reservations": [{"Instances": [{
                "InstanceId": "i-123",
                "NetworkInterfaces": [
                    {"NetworkInterfaceId": "eni-2", "Attachment": {"DeviceIndex": 1}},
                    {"NetworkInterfaceId": "eni-1", "Attachment": {"DeviceIndex": 0}},
                ],
            }]}]},
            {"InstanceIds": ["i-123"]},
        )
        http = self.make_http()

        identity = InstanceMetadataSource(self.ec2, http_session=http, timeout=2).current_identity()

        self.assertEqual(identity.instance_id, "i-123")
        self.assertEqual(identity.network_interface_ids, ("eni-1", "eni-2"))
        self.assertEqual(http.put.call_args.kwargs["headers"],
                         {"X-aws-ec2-metadata-token-ttl-seconds": "300"})
        self.assertEqual(http.get.call_args.kwargs["headers"], {"X-aws-ec2-metadata-token": "token-abc"})
        self.assertEqual(http.get.call_args.kwargs["timeout"], 2)

    def test_metadata_unreachable(self):
        http = self.make_http(token_error=requests.ConnectionError("connection refused"))

        with self.assertRaises(MetadataUnavailable):
            InstanceMetadataSource(self.ec2, http_session=http).current_identity()

    def test_document_without_instance_id(self):
        http = self.make_http(document={"region": "us-east-1"})

        with self.assertRaises(MetadataUnavailable):
            InstanceMetadataSource(self.ec2, http_session=http).current_identity()

    def test_no_reservations(self):
        self.stubber.add_response("describe_instances", {"Reservations": []})

        with self.assertRaises(MetadataUnavailable) as ctx:
            InstanceMetadataSource(self.ec2, http_session=self.make_http()).current_identity()
        self.assertIn("no reservations", str(ctx.exception))

    def test_instance_missing_from_reservation(self):
        self.stubber.add_response("describe_instances", {"Reservations": [{"Instances": []}]})

        with self.assertRaises(MetadataUnavailable) as ctx:
            InstanceMetadataSource(self.ec2, http_session=self.make_http()).current_identity()
        self.assertIn("instance not found in reservation", str(ctx.exception))

    def test_describe_instances_error(self):
        self.stubber.add_client_error("describe_instances", service_error_code="UnauthorizedOperation",
                                      http_status_code=403)

        with self.assertRaises(MetadataUnavailable):
            InstanceMetadataSource(self.ec2, http_session=self.make_http()).current_identity()


class TestConnectivityValidation(StubbedClientTestCase):
    """Test suite for validate_aws_connectivity."""

    def test_valid_region(self):
        self.stubber.add_response(
            "describe_regions",
            {"Regions": [{"RegionName": "us-east-1", "Endpoint": "ec2.us-east-1.amazonaws.com"}]},
            {"RegionNames": ["us-east-1"]},
        )
        validate_aws_connectivity(self.ec2, "us-east-1")

    def test_empty_region(self):
        with self.assertRaises(ValueError):
            validate_aws_connectivity(self.ec2, "")

    def test_invalid_region(self):
        self.stubber.add_client_error("describe_regions", service_error_code="InvalidParameterValue")
        with self.assertRaises(ValueError):
            validate_aws_connectivity(self.ec2, "us-east-1")

    def test_auth_failure_propagates(self):
        self.stubber.add_client_error("describe_regions", service_error_code="AuthFailure",
                                      http_status_code=401)
        with self.assertRaises(ClientError):
            validate_aws_connectivity(self.ec2, "us-east-1")

    def test_region_not_returned(self):
        self.stubber.add_response("describe_regions", {"Regions": []})
        with self.assertRaises(ValueError):
            validate_aws_connectivity(self.ec2, "us-east-1")


class TestClientBuilder(unittest.TestCase):
    """Test suite for build_ec2_client and classify_error."""

    def test_timeouts_and_single_attempt(self):
        session = Mock()
        aws_mod.build_ec2_client("eu-west-1", timeout=7, session=session)

        args, kwargs = session.client.call_args
        self.assertEqual(args, ("ec2",))
        self.assertEqual(kwargs["region_name"], "eu-west-1")
        config = kwargs["config"]
        self.assertEqual(config.connect_timeout, 7)
        self.assertEqual(config.read_timeout, 7)
        self.assertEqual(config.retries["total_max_attempts"], 1)

    def test_uses_boto3_without_session(self):
        with patch.object(aws_mod.boto3, "client") as client:
            aws_mod.build_ec2_client("eu-west-1")
        client.assert_called_once()

    def test_empty_region(self):
        with self.assertRaises(ValueError):
            aws_mod.build_ec2_client("")

    def test_classify_error(self):
        permanent = ClientError({"Error": {"Code": "UnauthorizedOperation", "Message": "no"}}, "AssociateAddress")
        transient = ClientError({"Error": {"Code": "RequestLimitExceeded", "Message": "slow"}}, "AssociateAddress")
        self.assertEqual(classify_error(permanent), ("UnauthorizedOperation", True))
        self.assertEqual(classify_error(transient), ("RequestLimitExceeded", False))
        self.assertEqual(classify_error(requests.Timeout("t")), ("Timeout", False))


if __name__ == '__main__':
    unittest.main()
