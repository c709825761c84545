"""
AWS adapters for publisher provisioning.

* ``SecretStore``      — SSM Parameter Store, SecureString per publisher.
* ``ComputeProvisioner`` — EC2 launch / describe / terminate.
* ``ManagementPlane``  — SSM heartbeat and Run Command.

Every boto3 call here is a literal method invocation on a client built from
an explicitly passed ``boto3.Session``; nothing reads ambient provider
configuration behind the caller's back.
"""

from __future__ import annotations

import base64
import json
import logging
import time
from typing import Any, Callable

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from provisioner.errors import (
    ComputeError,
    ProvisionerError,
    SecretAccessDenied,
    SecretNotFound,
)
from provisioner.models import (
    INSTANCE_PENDING,
    INSTANCE_RUNNING,
    INSTANCE_TERMINATED,
    ComputeInstance,
    PublisherUnit,
)

logger = logging.getLogger(__name__)

DEFAULT_AMI_NAME_FILTER = "Netskope Private Access Publisher*"
DEFAULT_AMI_OWNER = "aws-marketplace"

_ACCESS_DENIED_CODES = {"AccessDeniedException", "AccessDenied", "UnauthorizedOperation"}
_INSTANCE_NOT_FOUND = "InvalidInstanceID.NotFound"
_INSTANCE_STATES = {
    "pending": INSTANCE_PENDING,
    "running": INSTANCE_RUNNING,
    "stopping": INSTANCE_RUNNING,
    "stopped": INSTANCE_RUNNING,
    "shutting-down": INSTANCE_RUNNING,
    "terminated": INSTANCE_TERMINATED,
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


def build_session(
    profile: str | None = None,
    region: str | None = None,
    role_arn: str | None = None,
    session_name: str = "npa-provisioner",
) -> boto3.Session:
    """Return a boto3 session, optionally assuming *role_arn* first.

    The registration executor runs under its own assumed role so that the
    token-decrypt permission never has to be granted to the operator or to
    the publisher instance profile.
    """
    session_kwargs: dict[str, str] = {}
    if profile:
        session_kwargs["profile_name"] = profile
    if region:
        session_kwargs["region_name"] = region
    session = boto3.Session(**session_kwargs)
    if not role_arn:
        return session

    sts = session.client("sts")
    creds = sts.assume_role(RoleArn=role_arn, RoleSessionName=session_name)["Credentials"]
    logger.info("Assumed %s for %s", role_arn, session_name)
    return boto3.Session(
        aws_access_key_id=creds["AccessKeyId"],
        aws_secret_access_key=creds["SecretAccessKey"],
        aws_session_token=creds["SessionToken"],
        region_name=session.region_name,
    )


# ---------------------------------------------------------------------------
# Secret store
# ---------------------------------------------------------------------------

class SecretStore:
    """Encrypted key-value store on SSM Parameter Store."""

    def __init__(self, session: boto3.Session, kms_key_id: str | None = None) -> None:
        self._ssm = session.client("ssm")
        self._kms_key_id = kms_key_id

    def put_secret(self, path: str, value: str) -> None:
        params: dict[str, Any] = {
            "Name": path,
            "Value": value,
            "Type": "SecureString",
            "Overwrite": True,
        }
        if self._kms_key_id:
            params["KeyId"] = self._kms_key_id
        try:
            self._ssm.put_parameter(**params)
        except ClientError as exc:
            if _error_code(exc) in _ACCESS_DENIED_CODES:
                raise SecretAccessDenied(f"not allowed to write {path}") from exc
            raise ProvisionerError(f"put_parameter {path} failed: {exc}") from exc
        except BotoCoreError as exc:
            raise ProvisionerError(f"put_parameter {path} failed: {exc}") from exc
        logger.info("Stored secret at %s", path)

    def get_secret(self, path: str, decrypt: bool = True) -> str:
        try:
            resp = self._ssm.get_parameter(Name=path, WithDecryption=decrypt)
        except ClientError as exc:
            code = _error_code(exc)
            if code == "ParameterNotFound":
                raise SecretNotFound(f"no secret at {path}") from exc
            if code in _ACCESS_DENIED_CODES:
                raise SecretAccessDenied(f"not allowed to read {path}") from exc
            raise ProvisionerError(f"get_parameter {path} failed: {exc}") from exc
        except BotoCoreError as exc:
            raise ProvisionerError(f"get_parameter {path} failed: {exc}") from exc
        return resp["Parameter"]["Value"]

    def delete_secret(self, path: str) -> None:
        try:
            self._ssm.delete_parameter(Name=path)
        except ClientError as exc:
            if _error_code(exc) == "ParameterNotFound":
                logger.info("Secret %s already absent", path)
                return
            raise ProvisionerError(f"delete_parameter {path} failed: {exc}") from exc
        except BotoCoreError as exc:
            raise ProvisionerError(f"delete_parameter {path} failed: {exc}") from exc
        logger.info("Deleted secret %s", path)

    def exists(self, path: str) -> bool:
        try:
            self._ssm.get_parameter(Name=path, WithDecryption=False)
        except ClientError as exc:
            if _error_code(exc) == "ParameterNotFound":
                return False
            raise ProvisionerError(f"get_parameter {path} failed: {exc}") from exc
        except BotoCoreError as exc:
            raise ProvisionerError(f"get_parameter {path} failed: {exc}") from exc
        return True


# ---------------------------------------------------------------------------
# Compute
# ---------------------------------------------------------------------------

def build_bootstrap_script(install_cloudwatch_agent: bool = False) -> str:
    """Minimal user data: make sure the SSM agent runs.

    Must never contain the registration token; user data is readable by
    anyone who can call DescribeInstanceAttribute.
    """
    lines = [
        "#!/bin/bash",
        "set -euo pipefail",
        "",
        "if command -v snap >/dev/null 2>&1 && snap list amazon-ssm-agent >/dev/null 2>&1; then",
        "  snap start amazon-ssm-agent || true",
        "elif command -v systemctl >/dev/null 2>&1; then",
        "  systemctl enable amazon-ssm-agent || true",
        "  systemctl start amazon-ssm-agent || true",
        "fi",
    ]
    if install_cloudwatch_agent:
        lines += [
            "",
            "cd /tmp",
            "curl -fsSLO https://amazoncloudwatch-agent.s3.amazonaws.com/ubuntu/amd64/latest/amazon-cloudwatch-agent.deb",
            "dpkg -i -E ./amazon-cloudwatch-agent.deb",
            "rm -f ./amazon-cloudwatch-agent.deb",
        ]
    return "\n".join(lines) + "\n"


class ComputeProvisioner:
    """Launches and terminates publisher instances."""

    def __init__(
        self,
        session: boto3.Session,
        instance_type: str = "t3.medium",
        security_group_ids: list[str] | None = None,
        instance_profile: str | None = None,
        root_volume_size: int = 32,
        key_name: str | None = None,
        ami_id: str | None = None,
        ami_name_filter: str = DEFAULT_AMI_NAME_FILTER,
        ami_owner: str = DEFAULT_AMI_OWNER,
        app: str = "npa",
        tags: dict[str, str] | None = None,
        not_found_retries: int = 3,
        not_found_backoff: float = 1.0,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> None:
        self._ec2 = session.client("ec2")
        self.instance_type = instance_type
        self.security_group_ids = list(security_group_ids or [])
        self.instance_profile = instance_profile
        self.root_volume_size = root_volume_size
        self.key_name = key_name
        self._ami_id = ami_id
        self.ami_name_filter = ami_name_filter
        self.ami_owner = ami_owner
        self.app = app
        self.tags = dict(tags or {})
        self.not_found_retries = not_found_retries
        self.not_found_backoff = not_found_backoff
        self._sleep = sleep

    def _call_instance_api(self, operation, instance_id: str):
        """Call an EC2 instance API, riding out NotFound for fresh instances.

        A just-launched instance id can be invisible to describe and
        terminate for a few seconds.  The last NotFound is re-raised.
        """
        for attempt in range(self.not_found_retries + 1):
            try:
                return operation(InstanceIds=[instance_id])
            except ClientError as exc:
                if _error_code(exc) != _INSTANCE_NOT_FOUND or attempt >= self.not_found_retries:
                    raise
                delay = self.not_found_backoff * (2 ** attempt)
                logger.info("%s not visible yet, retrying in %ss", instance_id, delay)
                self._sleep(delay)

    def resolve_ami(self) -> str:
        """Return the configured AMI, or the newest one matching the name filter."""
        if self._ami_id:
            return self._ami_id
        try:
            resp = self._ec2.describe_images(
                Owners=[self.ami_owner],
                Filters=[
                    {"Name": "name", "Values": [self.ami_name_filter]},
                    {"Name": "state", "Values": ["available"]},
                ],
            )
        except (ClientError, BotoCoreError) as exc:
            raise ComputeError(f"describe_images failed: {exc}") from exc
        images = sorted(resp.get("Images", []), key=lambda i: i.get("CreationDate", ""), reverse=True)
        if not images:
            raise ComputeError(f"no AMI matches {self.ami_name_filter!r} (owner {self.ami_owner})")
        self._ami_id = images[0]["ImageId"]
        logger.info("Resolved publisher AMI %s (%s)", self._ami_id, images[0].get("Name"))
        return self._ami_id

    def _tag_list(self, unit: PublisherUnit) -> list[dict[str, str]]:
        tags = {
            **self.tags,
            "Name": unit.display_name,
            "npa:publisher-key": unit.key,
            "npa:app": self.app,
        }
        return [{"Key": k, "Value": v} for k, v in tags.items()]

    def launch(self, unit: PublisherUnit, subnet_id: str, bootstrap_script: str) -> ComputeInstance:
        tag_list = self._tag_list(unit)
        params: dict[str, Any] = {
            "ImageId": self.resolve_ami(),
            "InstanceType": self.instance_type,
            "MinCount": 1,
            "MaxCount": 1,
            "UserData": base64.b64encode(bootstrap_script.encode("utf-8")).decode("ascii"),
            "NetworkInterfaces": [{
                "DeviceIndex": 0,
                "SubnetId": subnet_id,
                "AssociatePublicIpAddress": False,
                "Groups": self.security_group_ids,
            }],
            "BlockDeviceMappings": [{
                "DeviceName": "/dev/sda1",
                "Ebs": {
                    "VolumeSize": self.root_volume_size,
                    "VolumeType": "gp3",
                    "Encrypted": True,
                    "DeleteOnTermination": True,
                },
            }],
            "MetadataOptions": {"HttpTokens": "required", "HttpEndpoint": "enabled"},
            "TagSpecifications": [
                {"ResourceType": "instance", "Tags": tag_list},
                {"ResourceType": "volume", "Tags": tag_list},
            ],
        }
        if self.instance_profile:
            params["IamInstanceProfile"] = {"Name": self.instance_profile}
        if self.key_name:
            params["KeyName"] = self.key_name

        try:
            resp = self._ec2.run_instances(**params)
        except (ClientError, BotoCoreError) as exc:
            raise ComputeError(f"run_instances for {unit.key} failed: {exc}") from exc

        instance_id = resp["Instances"][0]["InstanceId"]
        logger.info("Launched %s for %s in %s", instance_id, unit.key, subnet_id)
        return ComputeInstance(instance_id=instance_id, subnet_id=subnet_id)

    def describe(self, instance_id: str) -> ComputeInstance | None:
        """Return the instance, or None if the provider no longer knows it."""
        try:
            resp = self._call_instance_api(self._ec2.describe_instances, instance_id)
        except ClientError as exc:
            if _error_code(exc) == _INSTANCE_NOT_FOUND:
                return None
            raise ComputeError(f"describe_instances {instance_id} failed: {exc}") from exc
        except BotoCoreError as exc:
            raise ComputeError(f"describe_instances {instance_id} failed: {exc}") from exc

        reservations = resp.get("Reservations", [])
        if not reservations or not reservations[0].get("Instances"):
            return None
        info = reservations[0]["Instances"][0]
        raw_state = info.get("State", {}).get("Name", "pending")
        return ComputeInstance(
            instance_id=instance_id,
            state=_INSTANCE_STATES.get(raw_state, INSTANCE_PENDING),
            subnet_id=info.get("SubnetId"),
        )

    def terminate(self, instance_id: str) -> str:
        """Request termination; returns the state the provider reports.

        Best effort: the caller re-checks with ``describe`` until the
        instance is gone.
        """
        try:
            resp = self._call_instance_api(self._ec2.terminate_instances, instance_id)
        except ClientError as exc:
            if _error_code(exc) == _INSTANCE_NOT_FOUND:
                return INSTANCE_TERMINATED
            raise ComputeError(f"terminate_instances {instance_id} failed: {exc}") from exc
        except BotoCoreError as exc:
            raise ComputeError(f"terminate_instances {instance_id} failed: {exc}") from exc

        changes = resp.get("TerminatingInstances", [])
        raw_state = changes[0].get("CurrentState", {}).get("Name") if changes else "terminated"
        logger.info("Terminate %s requested (now %s)", instance_id, raw_state)
        return _INSTANCE_STATES.get(raw_state, INSTANCE_RUNNING)


# ---------------------------------------------------------------------------
# Management plane (heartbeat + remote execution)
# ---------------------------------------------------------------------------

def registration_document_content(command: str) -> dict:
    """SSM Command document that runs *command* with the token parameter."""
    return {
        "schemaVersion": "2.2",
        "description": "Register a Netskope Private Access publisher with its one-time token.",
        "parameters": {
            "token": {
                "type": "String",
                "description": "One-time publisher registration token",
            },
        },
        "mainSteps": [{
            "action": "aws:runShellScript",
            "name": "registerPublisher",
            "inputs": {
                "timeoutSeconds": "600",
                "runCommand": [f"{command} \"{{{{ token }}}}\""],
            },
        }],
    }


class ManagementPlane:
    """SSM heartbeat lookups and Run Command for registration."""

    def __init__(self, session: boto3.Session) -> None:
        self._ssm = session.client("ssm")

    def ping_status(self, instance_id: str) -> str | None:
        try:
            resp = self._ssm.describe_instance_information(
                Filters=[{"Key": "InstanceIds", "Values": [instance_id]}]
            )
        except (ClientError, BotoCoreError) as exc:
            raise ProvisionerError(f"describe_instance_information {instance_id} failed: {exc}") from exc
        info = resp.get("InstanceInformationList", [])
        if not info:
            return None
        return info[0].get("PingStatus")

    def ensure_registration_document(self, name: str, command: str) -> bool:
        """Create the registration document if missing.  Returns True if created."""
        try:
            self._ssm.describe_document(Name=name)
            return False
        except ClientError as exc:
            if _error_code(exc) != "InvalidDocument":
                raise ProvisionerError(f"describe_document {name} failed: {exc}") from exc
        try:
            self._ssm.create_document(
                Name=name,
                DocumentType="Command",
                DocumentFormat="JSON",
                Content=json.dumps(registration_document_content(command)),
            )
        except (ClientError, BotoCoreError) as exc:
            raise ProvisionerError(f"create_document {name} failed: {exc}") from exc
        logger.info("Created SSM document %s", name)
        return True

    def send_command(self, instance_id: str, document_name: str, parameters: dict) -> str:
        try:
            resp = self._ssm.send_command(
                InstanceIds=[instance_id],
                DocumentName=document_name,
                Parameters=parameters,
                Comment="npa publisher registration",
            )
        except (ClientError, BotoCoreError) as exc:
            # Do not echo the exception's request parameters; they hold the token.
            code = _error_code(exc) if isinstance(exc, ClientError) else type(exc).__name__
            raise ProvisionerError(f"send_command to {instance_id} failed ({code})") from None
        return resp["Command"]["CommandId"]

    def get_command_status(self, command_id: str, instance_id: str) -> dict | None:
        """Return {status, stdout, stderr}, or None while the invocation is not visible."""
        try:
            out = self._ssm.get_command_invocation(CommandId=command_id, InstanceId=instance_id)
        except ClientError as exc:
            if _error_code(exc) == "InvocationDoesNotExist":
                return None
            raise ProvisionerError(f"get_command_invocation {command_id} failed: {exc}") from exc
        except BotoCoreError as exc:
            raise ProvisionerError(f"get_command_invocation {command_id} failed: {exc}") from exc
        return {
            "status": out.get("Status"),
            "stdout": out.get("StandardOutputContent", ""),
            "stderr": out.get("StandardErrorContent", ""),
        }

    def cancel_command(self, command_id: str, instance_id: str) -> None:
        try:
            self._ssm.cancel_command(CommandId=command_id, InstanceIds=[instance_id])
        except (ClientError, BotoCoreError) as exc:
            raise ProvisionerError(f"cancel_command {command_id} failed: {exc}") from exc
