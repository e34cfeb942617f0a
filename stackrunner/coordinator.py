"""Deploys a stack graph one ready set at a time."""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, TypeVar

from stackrunner.backend import JobResult, JobStatus, ProvisioningBackend
from stackrunner.custom_resources import CustomResourceLifecycleManager, InvocationOutcome
from stackrunner.errors import (
  DependencyFailedError,
  OrchestratorError,
  ProvisioningFailedError,
  StackCancelledError,
  StackError,
  StackTimeoutError,
  StateTransitionError,
  TransientBackendError,
  ValidationError,
)
from stackrunner.graph import StackGraph
from stackrunner.model import StackDefinition, StackInputs
from stackrunner.parameters import DeferredOutputs, ParameterResolver, finalize_outputs

LOG = logging.getLogger(__name__)

T = TypeVar("T")


class StackState(str, Enum):
  PENDING = "Pending"
  RESOLVING = "Resolving"
  PROVISIONING = "Provisioning"
  SUCCEEDED = "Succeeded"
  FAILED = "Failed"


class DeploymentState(str, Enum):
  RUNNING = "Running"
  COMPLETED = "Completed"
  ABORTED = "Aborted"


_TRANSITIONS = {
  StackState.PENDING: {StackState.RESOLVING, StackState.FAILED},
  StackState.RESOLVING: {StackState.PROVISIONING, StackState.FAILED},
  StackState.PROVISIONING: {StackState.SUCCEEDED, StackState.FAILED},
  StackState.SUCCEEDED: set(),
  StackState.FAILED: set(),
}


class StackNode:
  """Runtime state of one stack; only the owning worker may move it forward."""

  def __init__(self, definition: StackDefinition) -> None:
    self.definition = definition
    self.state = StackState.PENDING
    self.history: List[StackState] = [StackState.PENDING]
    self.outputs: Mapping[str, Any] = MappingProxyType({})
    self.parameters: Optional[Mapping[str, Any]] = None
    self.inputs: Optional[StackInputs] = None
    self.error: Optional[OrchestratorError] = None
    self.attempts = 0
    self.job_id: Optional[str] = None
    self.custom_resources: Dict[str, InvocationOutcome] = {}
    self._owner: Optional[int] = None
    self._lock = threading.Lock()

  @property
  def name(self) -> str:
    return self.definition.name

  @property
  def terminal(self) -> bool:
    return self.state in (StackState.SUCCEEDED, StackState.FAILED)

  def claim(self) -> None:
    with self._lock:
      current = threading.get_ident()
      if self._owner is not None and self._owner != current:
        raise StateTransitionError(f"Stack '{self.name}' is already owned by another worker.")
      self._owner = current

  def release(self) -> None:
    with self._lock:
      self._owner = None

  def transition(
    self,
    new_state: StackState,
    *,
    outputs: Optional[Mapping[str, Any]] = None,
    error: Optional[OrchestratorError] = None,
  ) -> None:
    with self._lock:
      if self._owner is not None and self._owner != threading.get_ident():
        raise StateTransitionError(f"Stack '{self.name}' can only be changed by its owning worker.")
      if new_state not in _TRANSITIONS[self.state]:
        raise StateTransitionError(f"Stack '{self.name}' cannot move from {self.state.value} to {new_state.value}.")
      self.state = new_state
      self.history.append(new_state)
      if new_state is StackState.SUCCEEDED:
        self.outputs = MappingProxyType(dict(outputs or {}))
      elif new_state is StackState.FAILED:
        self.error = error
    LOG.debug("Stack '%s' -> %s", self.name, new_state.value)


@dataclass(frozen=True)
class RetryPolicy:
  max_attempts: int = 5
  base_delay: float = 1.0
  max_delay: float = 30.0
  multiplier: float = 2.0

  def delay(self, attempt: int) -> float:
    return min(self.max_delay, self.base_delay * self.multiplier ** max(0, attempt - 1))


@dataclass(frozen=True)
class StackResult:
  name: str
  state: StackState
  outputs: Dict[str, Any] = field(default_factory=dict)
  error_kind: Optional[str] = None
  message: Optional[str] = None
  unknown_side_effects: bool = False
  attempts: int = 0
  submitted: bool = False
  invalid_input: bool = False


@dataclass
class DeploymentReport:
  state: DeploymentState
  stacks: List[StackResult]

  @property
  def failed(self) -> List[StackResult]:
    return [result for result in self.stacks if result.state is StackState.FAILED]

  @property
  def exit_code(self) -> int:
    if any(result.invalid_input for result in self.stacks):
      return 2
    return 0 if self.state is DeploymentState.COMPLETED else 1

  def result(self, name: str) -> StackResult:
    for result in self.stacks:
      if result.name == name:
        return result
    raise KeyError(name)


@dataclass
class PlannedStack:
  name: str
  level: int
  parameters: Dict[str, Any] = field(default_factory=dict)
  resources: List[str] = field(default_factory=list)
  skipped_resources: List[str] = field(default_factory=list)
  custom_resources: List[str] = field(default_factory=list)
  error: Optional[ValidationError] = None


class DeploymentCoordinator:
  def __init__(
    self,
    graph: StackGraph,
    backend: ProvisioningBackend,
    *,
    resolver: Optional[ParameterResolver] = None,
    lifecycle: Optional[CustomResourceLifecycleManager] = None,
    parallelism: int = 1,
    retry: Optional[RetryPolicy] = None,
    poll_interval: float = 5.0,
  ) -> None:
    self.graph = graph
    self.backend = backend
    self.resolver = resolver or ParameterResolver()
    self.lifecycle = lifecycle or CustomResourceLifecycleManager()
    self.parallelism = max(1, parallelism)
    self.retry = retry or RetryPolicy()
    self.poll_interval = poll_interval
    self.state: Optional[DeploymentState] = None
    self.nodes: Dict[str, StackNode] = {}
    self._cancelled = threading.Event()

  @property
  def cancelled(self) -> bool:
    return self._cancelled.is_set()

  def abort(self) -> None:
    """Cancel in-flight stacks and stop scheduling new ones."""
    if not self._cancelled.is_set():
      LOG.warning("Abort requested; cancelling in-flight stacks")
    self._cancelled.set()

  def plan(self, parameters: Mapping[str, Any]) -> List[PlannedStack]:
    """Resolve every stack without touching the backend."""
    self.graph.validate()
    planned: List[PlannedStack] = []
    for level, names in enumerate(self.graph.topological_order(), 1):
      for name in names:
        definition = self.graph.get(name)
        entry = PlannedStack(name=name, level=level)
        try:
          resolved = self.resolver.resolve(
            definition, parameters, DeferredOutputs(self.graph.dependencies(name))
          )
          inputs = self.resolver.prepare(definition, resolved)
        except ValidationError as exc:
          entry.error = exc
        else:
          entry.parameters = dict(resolved)
          entry.resources = [resource.name for resource in inputs.resources]
          entry.custom_resources = [resource.name for resource in inputs.custom_resources]
          included = set(entry.resources) | set(entry.custom_resources)
          entry.skipped_resources = [
            resource.name for resource in definition.resources if resource.name not in included
          ]
        planned.append(entry)
    return planned

  def deploy(self, parameters: Mapping[str, Any]) -> DeploymentReport:
    """Run one deployment; an abort requested during an earlier run does not carry over."""
    self.graph.validate()
    if self.state is not None:
      self._cancelled.clear()
    self.nodes = {definition.name: StackNode(definition) for definition in self.graph}
    self.state = DeploymentState.RUNNING
    deployment_parameters = MappingProxyType(dict(parameters))

    executor: Optional[ThreadPoolExecutor] = None
    try:
      if self.parallelism > 1:
        executor = ThreadPoolExecutor(max_workers=self.parallelism, thread_name_prefix="stack")

      for level in self.graph.topological_order():
        runnable: List[StackNode] = []
        for name in level:
          node = self.nodes[name]
          failed = [
            dependency
            for dependency in self.graph.dependencies(name)
            if self.nodes[dependency].state is not StackState.SUCCEEDED
          ]
          if failed:
            error = DependencyFailedError(name, failed)
            LOG.error("%s", error)
            node.transition(StackState.FAILED, error=error)
          elif self._cancelled.is_set():
            error = StackCancelledError(f"Stack '{name}' was not started: deployment aborted.")
            node.transition(StackState.FAILED, error=error)
          else:
            runnable.append(node)
        self._run_level(runnable, deployment_parameters, executor)
    finally:
      if executor is not None:
        executor.shutdown(wait=True)

    succeeded = all(node.state is StackState.SUCCEEDED for node in self.nodes.values())
    self.state = DeploymentState.COMPLETED if succeeded else DeploymentState.ABORTED
    LOG.info("Deployment %s", self.state.value.lower())
    return self.report()

  def report(self) -> DeploymentReport:
    results: List[StackResult] = []
    for name in self.graph.names:
      node = self.nodes.get(name)
      if node is None:
        continue
      error = node.error
      results.append(StackResult(
        name=name,
        state=node.state,
        outputs=dict(node.outputs),
        error_kind=error.kind if error is not None else None,
        message=str(error) if error is not None else None,
        unknown_side_effects=bool(getattr(error, "unknown_side_effects", False)),
        attempts=node.attempts,
        submitted=node.job_id is not None,
        invalid_input=isinstance(error, ValidationError),
      ))
    return DeploymentReport(state=self.state or DeploymentState.RUNNING, stacks=results)

  def _run_level(
    self,
    level: List[StackNode],
    parameters: Mapping[str, Any],
    executor: Optional[ThreadPoolExecutor],
  ) -> None:
    if not level:
      return

    if executor is None:
      for node in level:
        self._deploy_stack(node, parameters)
      return

    future_map = {executor.submit(self._deploy_stack, node, parameters): node for node in level}
    for future in as_completed(future_map):
      node = future_map[future]
      try:
        future.result()
      except Exception as exc:  # pylint: disable=broad-except
        LOG.error("Stack '%s' raised an unexpected error: %s", node.name, exc)
        if not node.terminal:
          node.transition(StackState.FAILED, error=StackError(f"Unexpected error: {exc}"))

  def _deploy_stack(self, node: StackNode, parameters: Mapping[str, Any]) -> None:
    node.claim()
    try:
      self._provision(node, parameters)
    except OrchestratorError as exc:
      LOG.error("Stack '%s' failed: %s", node.name, exc)
      node.transition(StackState.FAILED, error=exc)
    except Exception as exc:  # pylint: disable=broad-except
      LOG.exception("Stack '%s' raised an unexpected error", node.name)
      node.transition(StackState.FAILED, error=StackError(f"Unexpected error: {exc}"))
    finally:
      node.release()

  def _provision(self, node: StackNode, parameters: Mapping[str, Any]) -> None:
    definition = node.definition
    if self._cancelled.is_set():
      raise StackCancelledError(f"Stack '{node.name}' was not started: deployment aborted.")

    node.transition(StackState.RESOLVING)
    dependency_outputs = {
      dependency: self.nodes[dependency].outputs for dependency in self.graph.dependencies(node.name)
    }
    resolved = self.resolver.resolve(definition, parameters, dependency_outputs)
    inputs = self.resolver.prepare(definition, resolved)
    node.parameters = resolved
    node.inputs = inputs

    node.transition(StackState.PROVISIONING)
    deadline = time.monotonic() + definition.timeout
    LOG.info("Deploying stack '%s'", node.name)

    def submit() -> str:
      node.attempts += 1
      return self.backend.submit(node.name, resolved, inputs.resources, inputs.outputs)

    node.job_id = self._with_retry(node, "submit", submit)
    result = self._await_job(node, node.job_id, deadline)
    if result.status is JobStatus.FAILED:
      raise ProvisioningFailedError(f"Stack '{node.name}' failed: {result.error or 'no reason reported'}")

    node.custom_resources = self.lifecycle.apply(node.name, inputs.custom_resources, self._cancelled)
    custom_results = {
      logical_id: {"physicalId": outcome.physical_id, "data": dict(outcome.data)}
      for logical_id, outcome in node.custom_resources.items()
    }
    outputs = finalize_outputs(inputs, result.outputs, custom_results)
    node.transition(StackState.SUCCEEDED, outputs=outputs)
    LOG.info("Stack '%s' succeeded", node.name)

  def _with_retry(self, node: StackNode, action: str, operation: Callable[[], T]) -> T:
    attempt = 0
    while True:
      attempt += 1
      try:
        return operation()
      except TransientBackendError as exc:
        if attempt >= self.retry.max_attempts:
          LOG.error("Giving up on %s for stack '%s' after %d attempts", action, node.name, attempt)
          raise
        delay = self.retry.delay(attempt)
        LOG.warning(
          "Transient error during %s for stack '%s' (attempt %d/%d): %s; retrying in %.1fs",
          action,
          node.name,
          attempt,
          self.retry.max_attempts,
          exc,
          delay,
        )
        if self._cancelled.wait(delay):
          if node.job_id is not None:
            self._cancel_job(node)
          raise StackCancelledError(f"Stack '{node.name}' cancelled while retrying {action}.") from exc

  def _await_job(self, node: StackNode, job_id: str, deadline: float) -> JobResult:
    while True:
      result = self._with_retry(node, "poll", lambda: self.backend.poll(job_id))
      if result.terminal:
        return result
      remaining = deadline - time.monotonic()
      if remaining <= 0:
        self._cancel_job(node)
        raise StackTimeoutError(
          f"Stack '{node.name}' did not finish within {node.definition.timeout:.0f}s."
        )
      if self._cancelled.wait(min(self.poll_interval, remaining)):
        self._cancel_job(node)
        raise StackCancelledError(f"Stack '{node.name}' cancelled while provisioning.")

  def _cancel_job(self, node: StackNode) -> None:
    if node.job_id is None:
      return
    try:
      self.backend.cancel(node.job_id)
      LOG.info("Requested cancellation of job %s for stack '%s'", node.job_id, node.name)
    except Exception as exc:  # pylint: disable=broad-except
      LOG.warning("Best-effort cancel of stack '%s' failed: %s", node.name, exc)
