"""
Tests for connectors.aws — boto3 clients are MagicMocks behind a fake session.
"""

from __future__ import annotations

import base64
import json
import os
import sys
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from connectors.aws import (
    ComputeProvisioner,
    ManagementPlane,
    SecretStore,
    build_bootstrap_script,
    registration_document_content,
)
from provisioner.errors import ComputeError, ProvisionerError, SecretAccessDenied, SecretNotFound
from provisioner.models import INSTANCE_RUNNING, INSTANCE_TERMINATED, PublisherUnit


def _client_error(code, operation="Op"):
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


def _session(client):
    session = MagicMock()
    session.client.return_value = client
    return session


UNIT = PublisherUnit(key="pub-2", display_name="npa-2", ordinal=1)


# =========================================================================
# Tests: SecretStore
# =========================================================================

class TestSecretStore:

    def test_put_is_secure_string(self):
        ssm = MagicMock()
        SecretStore(_session(ssm), kms_key_id="alias/npa").put_secret("/npa/p", "v")
        ssm.put_parameter.assert_called_once_with(
            Name="/npa/p", Value="v", Type="SecureString", Overwrite=True, KeyId="alias/npa",
        )

    def test_get_decrypts(self):
        ssm = MagicMock()
        ssm.get_parameter.return_value = {"Parameter": {"Value": "tok"}}
        assert SecretStore(_session(ssm)).get_secret("/npa/p") == "tok"
        ssm.get_parameter.assert_called_once_with(Name="/npa/p", WithDecryption=True)

    def test_get_missing(self):
        ssm = MagicMock()
        ssm.get_parameter.side_effect = _client_error("ParameterNotFound")
        with pytest.raises(SecretNotFound):
            SecretStore(_session(ssm)).get_secret("/npa/p")

    def test_get_denied(self):
        ssm = MagicMock()
        ssm.get_parameter.side_effect = _client_error("AccessDeniedException")
        with pytest.raises(SecretAccessDenied):
            SecretStore(_session(ssm)).get_secret("/npa/p")

    def test_delete_missing_is_silent(self):
        ssm = MagicMock()
        ssm.delete_parameter.side_effect = _client_error("ParameterNotFound")
        SecretStore(_session(ssm)).delete_secret("/npa/p")

    def test_exists(self):
        ssm = MagicMock()
        ssm.get_parameter.side_effect = [{"Parameter": {"Value": "x"}}, _client_error("ParameterNotFound")]
        store = SecretStore(_session(ssm))
        assert store.exists("/a") is True
        assert store.exists("/b") is False

    def test_exists_network_failure_is_translated(self):
        ssm = MagicMock()
        ssm.get_parameter.side_effect = EndpointConnectionError(endpoint_url="https://ssm.us-east-1.amazonaws.com")
        with pytest.raises(ProvisionerError):
            SecretStore(_session(ssm)).exists("/npa/p")


# =========================================================================
# Tests: ComputeProvisioner
# =========================================================================

class TestComputeProvisioner:

    def _compute(self, ec2, sleeps=None, **kwargs):
        kwargs.setdefault("ami_id", "ami-123")
        kwargs.setdefault("sleep", (sleeps if sleeps is not None else []).append)
        return ComputeProvisioner(_session(ec2), security_group_ids=["sg-1"], **kwargs)

    def test_launch_parameters(self):
        ec2 = MagicMock()
        ec2.run_instances.return_value = {"Instances": [{"InstanceId": "i-abc"}]}
        compute = self._compute(ec2, instance_profile="npa-publisher")

        instance = compute.launch(UNIT, "subnet-b", "#!/bin/bash\necho hi\n")

        assert instance.instance_id == "i-abc"
        assert instance.subnet_id == "subnet-b"
        params = ec2.run_instances.call_args.kwargs
        assert params["ImageId"] == "ami-123"
        assert params["NetworkInterfaces"][0]["SubnetId"] == "subnet-b"
        assert params["NetworkInterfaces"][0]["AssociatePublicIpAddress"] is False
        assert params["MetadataOptions"]["HttpTokens"] == "required"
        assert params["BlockDeviceMappings"][0]["Ebs"]["Encrypted"] is True
        assert params["IamInstanceProfile"] == {"Name": "npa-publisher"}
        assert "KeyName" not in params
        assert base64.b64decode(params["UserData"]).decode() == "#!/bin/bash\necho hi\n"
        tags = {t["Key"]: t["Value"] for t in params["TagSpecifications"][0]["Tags"]}
        assert tags["Name"] == "npa-2"
        assert tags["npa:publisher-key"] == "pub-2"

    def test_launch_failure(self):
        ec2 = MagicMock()
        ec2.run_instances.side_effect = _client_error("InsufficientInstanceCapacity")
        with pytest.raises(ComputeError):
            self._compute(ec2).launch(UNIT, "subnet-a", "")

    def test_ami_lookup_picks_newest(self):
        ec2 = MagicMock()
        ec2.describe_images.return_value = {"Images": [
            {"ImageId": "ami-old", "CreationDate": "2024-01-01T00:00:00.000Z"},
            {"ImageId": "ami-new", "CreationDate": "2025-06-01T00:00:00.000Z"},
        ]}
        compute = ComputeProvisioner(_session(ec2))
        assert compute.resolve_ami() == "ami-new"
        assert compute.resolve_ami() == "ami-new"
        assert ec2.describe_images.call_count == 1

    def test_ami_lookup_no_match(self):
        ec2 = MagicMock()
        ec2.describe_images.return_value = {"Images": []}
        with pytest.raises(ComputeError):
            ComputeProvisioner(_session(ec2)).resolve_ami()

    def test_describe_missing_instance(self):
        ec2 = MagicMock()
        ec2.describe_instances.side_effect = _client_error("InvalidInstanceID.NotFound")
        sleeps = []
        assert self._compute(ec2, sleeps).describe("i-gone") is None
        assert ec2.describe_instances.call_count == 4
        assert sleeps == [1.0, 2.0, 4.0]

    def test_describe_rides_out_fresh_instance_not_found(self):
        ec2 = MagicMock()
        ec2.describe_instances.side_effect = [
            _client_error("InvalidInstanceID.NotFound"),
            {"Reservations": [{"Instances": [{"State": {"Name": "pending"}, "SubnetId": "subnet-a"}]}]},
        ]
        sleeps = []
        instance = self._compute(ec2, sleeps).describe("i-new")
        assert instance is not None
        assert sleeps == [1.0]

    def test_terminate_rides_out_fresh_instance_not_found(self):
        ec2 = MagicMock()
        ec2.terminate_instances.side_effect = [
            _client_error("InvalidInstanceID.NotFound"),
            {"TerminatingInstances": [{"CurrentState": {"Name": "shutting-down"}}]},
        ]
        assert self._compute(ec2).terminate("i-new") == INSTANCE_RUNNING
        assert ec2.terminate_instances.call_count == 2

    def test_describe_maps_state(self):
        ec2 = MagicMock()
        ec2.describe_instances.return_value = {"Reservations": [{"Instances": [
            {"State": {"Name": "running"}, "SubnetId": "subnet-a"},
        ]}]}
        instance = self._compute(ec2).describe("i-1")
        assert instance.state == INSTANCE_RUNNING
        assert instance.subnet_id == "subnet-a"

    def test_terminate_reports_state(self):
        ec2 = MagicMock()
        ec2.terminate_instances.return_value = {
            "TerminatingInstances": [{"CurrentState": {"Name": "shutting-down"}}],
        }
        assert self._compute(ec2).terminate("i-1") == INSTANCE_RUNNING

    def test_terminate_missing_instance(self):
        ec2 = MagicMock()
        ec2.terminate_instances.side_effect = _client_error("InvalidInstanceID.NotFound")
        assert self._compute(ec2).terminate("i-1") == INSTANCE_TERMINATED


# =========================================================================
# Tests: ManagementPlane
# =========================================================================

class TestManagementPlane:

    def test_ping_status(self):
        ssm = MagicMock()
        ssm.describe_instance_information.return_value = {
            "InstanceInformationList": [{"InstanceId": "i-1", "PingStatus": "Online"}],
        }
        assert ManagementPlane(_session(ssm)).ping_status("i-1") == "Online"

    def test_ping_status_unknown_instance(self):
        ssm = MagicMock()
        ssm.describe_instance_information.return_value = {"InstanceInformationList": []}
        assert ManagementPlane(_session(ssm)).ping_status("i-1") is None

    def test_send_command_error_hides_parameters(self):
        ssm = MagicMock()
        ssm.send_command.side_effect = _client_error("InvalidInstanceId")
        with pytest.raises(ProvisionerError) as exc_info:
            ManagementPlane(_session(ssm)).send_command("i-1", "Doc", {"token": ["secret-value"]})
        assert "secret-value" not in str(exc_info.value)
        assert exc_info.value.__cause__ is None

    def test_command_invocation_not_visible(self):
        ssm = MagicMock()
        ssm.get_command_invocation.side_effect = _client_error("InvocationDoesNotExist")
        assert ManagementPlane(_session(ssm)).get_command_status("cmd", "i-1") is None

    def test_command_invocation_output(self):
        ssm = MagicMock()
        ssm.get_command_invocation.return_value = {
            "Status": "Failed", "StandardOutputContent": "out", "StandardErrorContent": "err",
        }
        assert ManagementPlane(_session(ssm)).get_command_status("cmd", "i-1") == {
            "status": "Failed", "stdout": "out", "stderr": "err",
        }

    def test_document_created_when_missing(self):
        ssm = MagicMock()
        ssm.describe_document.side_effect = _client_error("InvalidDocument")
        created = ManagementPlane(_session(ssm)).ensure_registration_document("Doc", "/opt/wizard -token")
        assert created is True
        content = json.loads(ssm.create_document.call_args.kwargs["Content"])
        assert content["parameters"]["token"]["type"] == "String"

    def test_document_already_present(self):
        ssm = MagicMock()
        assert ManagementPlane(_session(ssm)).ensure_registration_document("Doc", "x") is False
        ssm.create_document.assert_not_called()


# =========================================================================
# Tests: scripts
# =========================================================================

class TestScripts:

    def test_document_passes_token_as_parameter(self):
        content = registration_document_content("/home/ubuntu/npa_publisher_wizard -token")
        assert content["mainSteps"][0]["inputs"]["runCommand"] == [
            '/home/ubuntu/npa_publisher_wizard -token "{{ token }}"'
        ]

    def test_bootstrap_starts_agent(self):
        script = build_bootstrap_script()
        assert script.startswith("#!/bin/bash")
        assert "amazon-ssm-agent" in script
        assert "cloudwatch" not in script

    def test_bootstrap_with_cloudwatch(self):
        assert "amazon-cloudwatch-agent.deb" in build_bootstrap_script(install_cloudwatch_agent=True)
