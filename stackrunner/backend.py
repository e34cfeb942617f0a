"""Provisioning backends: the API that materializes a stack's resources."""
from __future__ import annotations

import abc
import json
import logging
import subprocess
import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from stackrunner.errors import ProvisioningFailedError, TransientBackendError
from stackrunner.model import ResourceDescriptor
from stackrunner.parameters import function_name, is_resolved, split_get_att

LOG = logging.getLogger(__name__)

THROTTLING_MARKERS = ("Throttling", "Rate exceeded", "RequestLimitExceeded", "TooManyRequests")
NO_UPDATES_MARKER = "No updates are to be performed"


class JobStatus(str, Enum):
  PENDING = "Pending"
  SUCCEEDED = "Succeeded"
  FAILED = "Failed"


@dataclass(frozen=True)
class JobResult:
  status: JobStatus
  outputs: Mapping[str, Any] = field(default_factory=dict)
  error: Optional[str] = None

  @property
  def terminal(self) -> bool:
    return self.status is not JobStatus.PENDING


class ProvisioningBackend(abc.ABC):
  """Asynchronous job interface; completion is only observed through ``poll``."""

  @abc.abstractmethod
  def submit(
    self,
    stack_name: str,
    parameters: Mapping[str, Any],
    resources: Sequence[ResourceDescriptor] = (),
    outputs: Optional[Mapping[str, Any]] = None,
  ) -> str:
    ...

  @abc.abstractmethod
  def poll(self, job_id: str) -> JobResult:
    ...

  @abc.abstractmethod
  def cancel(self, job_id: str) -> None:
    ...


def render_template(
  stack_name: str,
  resources: Iterable[ResourceDescriptor],
  outputs: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
  body: Dict[str, Any] = {
    "AWSTemplateFormatVersion": "2010-09-09",
    "Description": f"{stack_name} (rendered by stackrunner)",
    "Resources": {},
  }
  for resource in resources:
    entry: Dict[str, Any] = {"Type": resource.type}
    if resource.properties:
      entry["Properties"] = dict(resource.properties)
    if resource.depends_on:
      entry["DependsOn"] = list(resource.depends_on)
    body["Resources"][resource.name] = entry
  if outputs:
    body["Outputs"] = {name: {"Value": value} for name, value in outputs.items()}
  return body


@dataclass
class Submission:
  job_id: str
  stack_name: str
  parameters: Dict[str, Any]
  resources: List[ResourceDescriptor]
  outputs: Dict[str, Any]
  polls: int = 0


class LocalBackend(ProvisioningBackend):
  """In-process backend that completes every job without touching a cloud API."""

  def __init__(
    self,
    *,
    polls_until_complete: int = 0,
    failures: Optional[Mapping[str, str]] = None,
    throttle: Optional[Mapping[str, int]] = None,
    extra_outputs: Optional[Mapping[str, Mapping[str, Any]]] = None,
    never_complete: Iterable[str] = (),
  ) -> None:
    self.polls_until_complete = polls_until_complete
    self.failures = dict(failures or {})
    self.extra_outputs = {name: dict(values) for name, values in (extra_outputs or {}).items()}
    self.never_complete = set(never_complete)
    self.submissions: List[Submission] = []
    self.cancelled: List[str] = []
    self._throttle = dict(throttle or {})
    self._jobs: Dict[str, Submission] = {}
    self._lock = threading.Lock()

  def submitted_stacks(self) -> List[str]:
    with self._lock:
      return [submission.stack_name for submission in self.submissions]

  def submit(
    self,
    stack_name: str,
    parameters: Mapping[str, Any],
    resources: Sequence[ResourceDescriptor] = (),
    outputs: Optional[Mapping[str, Any]] = None,
  ) -> str:
    with self._lock:
      remaining = self._throttle.get(stack_name, 0)
      if remaining > 0:
        self._throttle[stack_name] = remaining - 1
        raise TransientBackendError(f"Rate exceeded while submitting '{stack_name}'")
      job_id = f"{stack_name}-{uuid.uuid4().hex[:8]}"
      submission = Submission(
        job_id=job_id,
        stack_name=stack_name,
        parameters=dict(parameters),
        resources=list(resources),
        outputs=dict(outputs or {}),
      )
      self.submissions.append(submission)
      self._jobs[job_id] = submission
    LOG.debug("Local job %s accepted for stack '%s'", job_id, stack_name)
    return job_id

  def _materialize(self, submission: Submission, value: Any) -> Any:
    name = function_name(value)
    if name == "Ref":
      return f"{submission.stack_name}-{value['Ref']}".lower()
    if name == "GetAtt":
      target, attribute = split_get_att(value["Fn::GetAtt"])
      return f"{submission.stack_name}-{target}.{attribute}".lower()
    if isinstance(value, Mapping):
      return {key: self._materialize(submission, item) for key, item in value.items()}
    if isinstance(value, list):
      return [self._materialize(submission, item) for item in value]
    return value

  def poll(self, job_id: str) -> JobResult:
    with self._lock:
      submission = self._jobs.get(job_id)
      if submission is None:
        raise ProvisioningFailedError(f"Unknown job '{job_id}'")
      submission.polls += 1
      if submission.stack_name in self.never_complete or submission.polls <= self.polls_until_complete:
        return JobResult(JobStatus.PENDING)
      if submission.stack_name in self.failures:
        return JobResult(JobStatus.FAILED, error=self.failures[submission.stack_name])
      outputs: Dict[str, Any] = {}
      for output_name, value in submission.outputs.items():
        if is_resolved(value):
          outputs[output_name] = value
        elif function_name(value) in ("Ref", "GetAtt") and not self._targets_custom(submission, value):
          outputs[output_name] = self._materialize(submission, value)
      outputs.update(self.extra_outputs.get(submission.stack_name, {}))
      return JobResult(JobStatus.SUCCEEDED, outputs=outputs)

  def _targets_custom(self, submission: Submission, value: Mapping[str, Any]) -> bool:
    declarative = {resource.name for resource in submission.resources}
    if function_name(value) == "Ref":
      return value["Ref"] not in declarative
    target, _ = split_get_att(value["Fn::GetAtt"])
    return target not in declarative

  def cancel(self, job_id: str) -> None:
    with self._lock:
      self.cancelled.append(job_id)


class AwsCliBackend(ProvisioningBackend):
  """Drives CloudFormation through the AWS CLI, one rendered template per stack."""

  def __init__(
    self,
    *,
    aws_cli: str = "aws",
    region: Optional[str] = None,
    capabilities: Sequence[str] = ("CAPABILITY_NAMED_IAM",),
    runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
  ) -> None:
    self._aws_cli = aws_cli
    self._region = region
    self._capabilities = list(capabilities)
    self._runner = runner

  def build_command(self, arguments: Sequence[str]) -> List[str]:
    command = [self._aws_cli, "cloudformation", *arguments, "--output", "json"]
    if self._region:
      command.extend(["--region", self._region])
    return command

  def _run(self, arguments: Sequence[str]) -> subprocess.CompletedProcess:
    command = self.build_command(arguments)
    try:
      completed = self._runner(command, check=False, capture_output=True, text=True)
    except FileNotFoundError as exc:
      raise ProvisioningFailedError(
        f"Command '{command[0]}' could not be executed ({exc.strerror or 'file not found'}). "
        "Ensure it is installed and available on PATH."
      ) from exc
    if completed.returncode != 0 and any(marker in (completed.stderr or "") for marker in THROTTLING_MARKERS):
      raise TransientBackendError((completed.stderr or "").strip())
    return completed

  @staticmethod
  def _payload(completed: subprocess.CompletedProcess) -> Dict[str, Any]:
    try:
      return json.loads(completed.stdout or "{}")
    except json.JSONDecodeError as exc:
      raise ProvisioningFailedError(f"Unexpected AWS CLI output: {completed.stdout!r}") from exc

  def _describe(self, stack_name: str) -> Optional[Dict[str, Any]]:
    completed = self._run(["describe-stacks", "--stack-name", stack_name])
    if completed.returncode != 0:
      if "does not exist" in (completed.stderr or ""):
        return None
      raise ProvisioningFailedError((completed.stderr or "").strip())
    stacks = self._payload(completed).get("Stacks") or []
    return stacks[0] if stacks else None

  def submit(
    self,
    stack_name: str,
    parameters: Mapping[str, Any],
    resources: Sequence[ResourceDescriptor] = (),
    outputs: Optional[Mapping[str, Any]] = None,
  ) -> str:
    existing = self._describe(stack_name)
    action = "update-stack" if existing is not None else "create-stack"
    template = json.dumps(render_template(stack_name, resources, outputs))
    arguments = [action, "--stack-name", stack_name, "--template-body", template]
    if self._capabilities:
      arguments.extend(["--capabilities", *self._capabilities])

    completed = self._run(arguments)
    if completed.returncode != 0:
      if action == "update-stack" and NO_UPDATES_MARKER in (completed.stderr or ""):
        LOG.info("Stack '%s' is already up to date", stack_name)
        return existing["StackId"]
      raise ProvisioningFailedError((completed.stderr or "").strip())
    return self._payload(completed)["StackId"]

  def poll(self, job_id: str) -> JobResult:
    stack = self._describe(job_id)
    if stack is None:
      return JobResult(JobStatus.FAILED, error=f"Stack '{job_id}' does not exist")
    status = stack.get("StackStatus", "")
    if status.endswith("_IN_PROGRESS"):
      return JobResult(JobStatus.PENDING)
    if status in ("CREATE_COMPLETE", "UPDATE_COMPLETE", "IMPORT_COMPLETE"):
      outputs = {
        row["OutputKey"]: row.get("OutputValue")
        for row in stack.get("Outputs") or []
        if "OutputKey" in row
      }
      return JobResult(JobStatus.SUCCEEDED, outputs=outputs)
    reason = stack.get("StackStatusReason") or status
    return JobResult(JobStatus.FAILED, error=f"{status}: {reason}")

  def cancel(self, job_id: str) -> None:
    stack = self._describe(job_id)
    if stack is None:
      return
    status = stack.get("StackStatus", "")
    if status == "UPDATE_IN_PROGRESS":
      self._run(["cancel-update-stack", "--stack-name", job_id])
    elif status == "CREATE_IN_PROGRESS":
      self._run(["delete-stack", "--stack-name", job_id])
