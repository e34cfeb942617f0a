from __future__ import annotations

import json
import subprocess
from typing import List

import pytest

from stackrunner.backend import AwsCliBackend, JobStatus, LocalBackend, render_template
from stackrunner.errors import ProvisioningFailedError, TransientBackendError
from stackrunner.model import ResourceDescriptor

VPC = ResourceDescriptor("Vpc", "AWS::EC2::VPC", properties={"CidrBlock": "10.0.0.0/16"})


class FakeRunner:
  """Stands in for subprocess.run, replaying scripted AWS CLI responses in order."""

  def __init__(self, *responses) -> None:
    self.responses = list(responses)
    self.commands: List[List[str]] = []

  def __call__(self, command, check=False, capture_output=True, text=True):
    self.commands.append(list(command))
    returncode, stdout, stderr = self.responses.pop(0)
    return subprocess.CompletedProcess(command, returncode, stdout=stdout, stderr=stderr)


def _stack(status, outputs=None, reason=None):
  stack = {"StackId": "arn:stack/Network/1", "StackStatus": status}
  if outputs is not None:
    stack["Outputs"] = [{"OutputKey": key, "OutputValue": value} for key, value in outputs.items()]
  if reason:
    stack["StackStatusReason"] = reason
  return (0, json.dumps({"Stacks": [stack]}), "")


MISSING = (255, "", "An error occurred (ValidationError): Stack with id Network does not exist")


class TestRenderTemplate:
  def test_resources_and_outputs(self):
    resources = [VPC, ResourceDescriptor("Subnet", "AWS::EC2::Subnet", depends_on=("Vpc",))]

    body = render_template("Network", resources, {"VpcId": {"Ref": "Vpc"}})

    assert body["Resources"]["Vpc"] == {"Type": "AWS::EC2::VPC", "Properties": {"CidrBlock": "10.0.0.0/16"}}
    assert body["Resources"]["Subnet"] == {"Type": "AWS::EC2::Subnet", "DependsOn": ["Vpc"]}
    assert body["Outputs"] == {"VpcId": {"Value": {"Ref": "Vpc"}}}


class TestLocalBackend:
  def test_outputs_are_materialized(self, backend):
    job_id = backend.submit("Network", {"Environment": "dev"}, [VPC], {"VpcId": {"Ref": "Vpc"}, "Name": "net"})

    result = backend.poll(job_id)

    assert result.status is JobStatus.SUCCEEDED
    assert result.outputs == {"VpcId": "network-vpc", "Name": "net"}
    assert backend.submitted_stacks() == ["Network"]
    assert backend.submissions[0].parameters == {"Environment": "dev"}

  def test_outputs_of_custom_resources_are_left_out(self, backend):
    job_id = backend.submit("Tags", {}, [], {"TagList": {"Fn::GetAtt": ["TagMacro", "Tags"]}})

    assert backend.poll(job_id).outputs == {}

  def test_pending_until_polled_enough(self):
    backend = LocalBackend(polls_until_complete=2)
    job_id = backend.submit("Network", {})

    statuses = [backend.poll(job_id).status for _ in range(3)]

    assert statuses == [JobStatus.PENDING, JobStatus.PENDING, JobStatus.SUCCEEDED]

  def test_scripted_failure(self):
    backend = LocalBackend(failures={"Network": "quota exceeded"})

    result = backend.poll(backend.submit("Network", {}))

    assert result.status is JobStatus.FAILED
    assert result.error == "quota exceeded"

  def test_throttling(self):
    backend = LocalBackend(throttle={"Network": 1})

    with pytest.raises(TransientBackendError):
      backend.submit("Network", {})
    assert backend.submit("Network", {})

  def test_unknown_job(self, backend):
    with pytest.raises(ProvisioningFailedError):
      backend.poll("nope")


class TestAwsCliBackend:
  def test_create_when_stack_is_missing(self):
    runner = FakeRunner(MISSING, (0, json.dumps({"StackId": "arn:stack/Network/1"}), ""))
    backend = AwsCliBackend(region="eu-west-2", runner=runner)

    job_id = backend.submit("Network", {}, [VPC])

    assert job_id == "arn:stack/Network/1"
    describe, create = runner.commands
    assert describe[:3] == ["aws", "cloudformation", "describe-stacks"]
    assert describe[-2:] == ["--region", "eu-west-2"]
    assert create[2] == "create-stack"
    template = json.loads(create[create.index("--template-body") + 1])
    assert "Vpc" in template["Resources"]
    assert "CAPABILITY_NAMED_IAM" in create

  def test_update_without_changes_reuses_stack(self):
    runner = FakeRunner(
      _stack("CREATE_COMPLETE"),
      (255, "", "An error occurred (ValidationError): No updates are to be performed."),
    )

    job_id = AwsCliBackend(runner=runner).submit("Network", {}, [VPC])

    assert job_id == "arn:stack/Network/1"
    assert runner.commands[1][2] == "update-stack"

  def test_throttling_is_transient(self):
    runner = FakeRunner((255, "", "An error occurred (Throttling): Rate exceeded"))

    with pytest.raises(TransientBackendError):
      AwsCliBackend(runner=runner).submit("Network", {})

  def test_missing_cli(self):
    def runner(command, **kwargs):
      raise FileNotFoundError(2, "No such file or directory")

    with pytest.raises(ProvisioningFailedError):
      AwsCliBackend(aws_cli="missing-aws", runner=runner).poll("Network")

  @pytest.mark.parametrize(
    "response,expected",
    [
      (_stack("CREATE_IN_PROGRESS"), JobStatus.PENDING),
      (_stack("UPDATE_COMPLETE_CLEANUP_IN_PROGRESS"), JobStatus.PENDING),
      (_stack("CREATE_COMPLETE", {"VpcId": "vpc-1"}), JobStatus.SUCCEEDED),
      (_stack("ROLLBACK_COMPLETE", reason="Resource creation cancelled"), JobStatus.FAILED),
      (MISSING, JobStatus.FAILED),
    ],
  )
  def test_poll_maps_stack_status(self, response, expected):
    result = AwsCliBackend(runner=FakeRunner(response)).poll("Network")

    assert result.status is expected

  def test_poll_returns_outputs(self):
    result = AwsCliBackend(runner=FakeRunner(_stack("UPDATE_COMPLETE", {"VpcId": "vpc-1"}))).poll("Network")

    assert result.outputs == {"VpcId": "vpc-1"}

  def test_cancel_in_progress_update(self):
    runner = FakeRunner(_stack("UPDATE_IN_PROGRESS"), (0, "", ""))

    AwsCliBackend(runner=runner).cancel("Network")

    assert runner.commands[1][2] == "cancel-update-stack"

  def test_cancel_in_progress_create(self):
    runner = FakeRunner(_stack("CREATE_IN_PROGRESS"), (0, "", ""))

    AwsCliBackend(runner=runner).cancel("Network")

    assert runner.commands[1][2] == "delete-stack"
