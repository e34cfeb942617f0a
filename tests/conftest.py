from __future__ import annotations

import threading
from typing import Any, Dict, List, Mapping, Optional, Tuple

import pytest

from stackrunner.backend import LocalBackend
from stackrunner.conditions import parse_condition
from stackrunner.coordinator import DeploymentCoordinator, RetryPolicy
from stackrunner.custom_resources import CustomResourceHandler, CustomResourceLifecycleManager, HandlerEvent
from stackrunner.graph import StackGraph
from stackrunner.model import ParameterSpec, ResourceDescriptor, StackDefinition


def make_stack(
  name: str,
  *,
  depends_on=(),
  parameters: Optional[Mapping[str, Any]] = None,
  parameter_values: Optional[Mapping[str, Any]] = None,
  conditions: Optional[Mapping[str, Any]] = None,
  mappings: Optional[Mapping[str, Any]] = None,
  resources: Optional[Mapping[str, Mapping[str, Any]]] = None,
  outputs: Optional[Mapping[str, Any]] = None,
  timeout: float = 3600.0,
) -> StackDefinition:
  specs = {}
  for key, value in (parameters or {}).items():
    specs[key] = value if isinstance(value, ParameterSpec) else ParameterSpec(key, **value)
  return StackDefinition(
    name=name,
    parameters=specs,
    parameter_values=dict(parameter_values or {}),
    conditions={key: parse_condition(value) for key, value in (conditions or {}).items()},
    mappings=dict(mappings or {}),
    resources=tuple(ResourceDescriptor(key, **value) for key, value in (resources or {}).items()),
    outputs=dict(outputs or {}),
    depends_on=tuple(depends_on),
    timeout=timeout,
  )


class RecordingHandler(CustomResourceHandler):
  """Handler that records every event and answers with scripted results."""

  def __init__(
    self,
    physical_id: Optional[str] = "p-123",
    data: Optional[Mapping[str, Any]] = None,
    fail: Optional[str] = None,
    replace_with: Optional[str] = None,
  ) -> None:
    self.physical_id = physical_id
    self.data = dict(data or {})
    self.fail = fail
    self.replace_with = replace_with
    self.events: List[HandlerEvent] = []

  def create(self, event: HandlerEvent) -> Tuple[Optional[str], Mapping[str, Any]]:
    self.events.append(event)
    if self.fail:
      raise RuntimeError(self.fail)
    return self.physical_id, self.data

  def update(self, event: HandlerEvent) -> Tuple[Optional[str], Mapping[str, Any]]:
    self.events.append(event)
    if self.fail:
      raise RuntimeError(self.fail)
    return self.replace_with or event.physical_id, self.data

  def delete(self, event: HandlerEvent) -> Tuple[Optional[str], Mapping[str, Any]]:
    self.events.append(event)
    return event.physical_id, {}


class SilentHandler(CustomResourceHandler):
  """Accepts events but never signals."""

  def __init__(self) -> None:
    self.events: List[HandlerEvent] = []
    self.received = threading.Event()

  def __call__(self, event, respond) -> None:
    self.events.append(event)
    self.received.set()

  def create(self, event: HandlerEvent) -> Tuple[Optional[str], Mapping[str, Any]]:
    raise AssertionError("not reached")


@pytest.fixture
def backend() -> LocalBackend:
  return LocalBackend()


@pytest.fixture
def fast_retry() -> RetryPolicy:
  return RetryPolicy(max_attempts=3, base_delay=0.01, max_delay=0.01)


@pytest.fixture
def make_coordinator(backend, fast_retry):
  def factory(
    *definitions: StackDefinition,
    handlers: Optional[Dict[str, CustomResourceHandler]] = None,
    handler_timeout: float = 5.0,
    **kwargs: Any,
  ) -> DeploymentCoordinator:
    kwargs.setdefault("retry", fast_retry)
    kwargs.setdefault("poll_interval", 0.01)
    lifecycle = CustomResourceLifecycleManager(handlers or {}, timeout=handler_timeout)
    return DeploymentCoordinator(
      StackGraph(definitions),
      kwargs.pop("backend", backend),
      lifecycle=lifecycle,
      **kwargs,
    )

  return factory
