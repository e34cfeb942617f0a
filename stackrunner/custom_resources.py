"""Create / Update / Delete protocol for custom resource handlers.

A custom resource is delegated to a handler that receives a typed event and
must answer with exactly one terminal signal. The manager binds events to
signals with a correlation token, records the handler-assigned physical id so
later Update and Delete requests reuse it, and bounds every wait with a
timeout.
"""
from __future__ import annotations

import abc
import collections
import json
import logging
import os
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import yaml

from stackrunner.errors import (
  HandlerError,
  HandlerSignaledFailure,
  HandlerTimeoutError,
  StackCancelledError,
)
from stackrunner.model import CUSTOM_RESOURCE_TYPE, ResourceDescriptor

LOG = logging.getLogger(__name__)

DEFAULT_HANDLER_TIMEOUT = 300.0
RETIRED_INVOCATION_LIMIT = 1024


class RequestType(str, Enum):
  CREATE = "Create"
  UPDATE = "Update"
  DELETE = "Delete"


class SignalStatus(str, Enum):
  SUCCESS = "Success"
  FAILED = "Failed"


class InvocationState(str, Enum):
  INVOKED = "Invoked"
  SIGNALED_SUCCESS = "SignaledSuccess"
  SIGNALED_FAILURE = "SignaledFailure"
  TIMED_OUT = "TimedOut"


@dataclass(frozen=True)
class HandlerEvent:
  request_type: RequestType
  correlation_token: str
  properties: Mapping[str, Any] = field(default_factory=dict)
  physical_id: Optional[str] = None

  def to_wire(self) -> Dict[str, Any]:
    return {
      "requestType": self.request_type.value,
      "physicalId": self.physical_id,
      "properties": dict(self.properties),
      "correlationToken": self.correlation_token,
    }

  @classmethod
  def from_wire(cls, payload: Mapping[str, Any]) -> "HandlerEvent":
    return cls(
      request_type=RequestType(payload["requestType"]),
      correlation_token=payload["correlationToken"],
      properties=payload.get("properties") or {},
      physical_id=payload.get("physicalId"),
    )


@dataclass(frozen=True)
class Signal:
  correlation_token: str
  status: SignalStatus
  data: Mapping[str, Any] = field(default_factory=dict)
  physical_id: Optional[str] = None

  def to_wire(self) -> Dict[str, Any]:
    return {
      "correlationToken": self.correlation_token,
      "status": self.status.value,
      "data": dict(self.data),
      "physicalId": self.physical_id,
    }

  @classmethod
  def from_wire(cls, payload: Mapping[str, Any]) -> "Signal":
    return cls(
      correlation_token=payload["correlationToken"],
      status=SignalStatus(payload["status"]),
      data=payload.get("data") or {},
      physical_id=payload.get("physicalId"),
    )


Responder = Callable[[Signal], bool]


class CustomResourceHandler(abc.ABC):
  """One implementation per custom resource concern.

  Subclasses implement ``create`` and may override ``update`` and ``delete``;
  each returns ``(physical_id, data)``. Any exception becomes a ``Failed``
  signal, so the manager always receives exactly one answer.
  """

  def __call__(self, event: HandlerEvent, respond: Responder) -> None:
    try:
      if event.request_type is RequestType.CREATE:
        physical_id, data = self.create(event)
      elif event.request_type is RequestType.UPDATE:
        physical_id, data = self.update(event)
      else:
        physical_id, data = self.delete(event)
    except Exception as exc:  # pylint: disable=broad-except
      LOG.error("Handler %s failed for %s: %s", type(self).__name__, event.request_type.value, exc)
      respond(Signal(event.correlation_token, SignalStatus.FAILED, {"Error": str(exc)}, event.physical_id))
      return
    respond(Signal(event.correlation_token, SignalStatus.SUCCESS, data or {}, physical_id))

  @abc.abstractmethod
  def create(self, event: HandlerEvent) -> Tuple[Optional[str], Mapping[str, Any]]:
    ...

  def update(self, event: HandlerEvent) -> Tuple[Optional[str], Mapping[str, Any]]:
    _, data = self.create(event)
    return event.physical_id, data

  def delete(self, event: HandlerEvent) -> Tuple[Optional[str], Mapping[str, Any]]:
    return event.physical_id, {}


@dataclass
class CustomResourceInvocation:
  stack_name: str
  logical_id: str
  resource_type: str
  request_type: RequestType
  properties: Dict[str, Any]
  correlation_token: str
  physical_id: Optional[str] = None
  state: InvocationState = InvocationState.INVOKED
  data: Dict[str, Any] = field(default_factory=dict)
  signaled_physical_id: Optional[str] = None

  @property
  def terminal(self) -> bool:
    return self.state is not InvocationState.INVOKED


@dataclass(frozen=True)
class InvocationOutcome:
  logical_id: str
  request_type: RequestType
  state: InvocationState
  physical_id: Optional[str] = None
  data: Mapping[str, Any] = field(default_factory=dict)
  reason: Optional[str] = None
  replaced_physical_id: Optional[str] = None
  unchanged: bool = False

  @property
  def succeeded(self) -> bool:
    return self.state is InvocationState.SIGNALED_SUCCESS

  @property
  def unknown_side_effects(self) -> bool:
    return self.state is InvocationState.TIMED_OUT


def _plain(value: Any) -> Any:
  return json.loads(json.dumps(value, default=str))


class PhysicalIdRegistry:
  """Physical ids of custom resources by stack and logical id, optionally persisted as YAML."""

  def __init__(self, path: Optional[Union[str, Path]] = None) -> None:
    self._path = Path(path) if path else None
    self._records: Dict[str, Dict[str, Dict[str, Any]]] = {}
    self._lock = threading.Lock()
    if self._path is not None and self._path.exists():
      self.load()

  def load(self) -> None:
    if self._path is None:
      raise ValueError("PhysicalIdRegistry has no state file to load.")
    with self._path.open("r", encoding="utf-8") as handle:
      loaded = yaml.safe_load(handle) or {}
    if not isinstance(loaded, dict):
      raise ValueError(f"State file {self._path} must contain a mapping.")
    with self._lock:
      self._records = {stack: dict(entries or {}) for stack, entries in loaded.items()}

  def save(self) -> None:
    if self._path is None:
      return
    # Snapshot and write share one lock; files land in snapshot order.
    with self._lock:
      snapshot = {stack: dict(entries) for stack, entries in self._records.items() if entries}
      self._path.parent.mkdir(parents=True, exist_ok=True)
      staging = self._path.with_name(f".{self._path.name}.tmp")
      with staging.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(snapshot, handle, sort_keys=True)
      os.replace(staging, self._path)

  def get(self, stack_name: str, logical_id: str) -> Optional[Dict[str, Any]]:
    with self._lock:
      record = self._records.get(stack_name, {}).get(logical_id)
      return dict(record) if record is not None else None

  def logical_ids(self, stack_name: str) -> List[str]:
    with self._lock:
      return list(self._records.get(stack_name, {}))

  def record(
    self,
    stack_name: str,
    logical_id: str,
    physical_id: str,
    resource_type: str,
    properties: Mapping[str, Any],
    data: Optional[Mapping[str, Any]] = None,
  ) -> None:
    with self._lock:
      self._records.setdefault(stack_name, {})[logical_id] = {
        "physicalId": physical_id,
        "type": resource_type,
        "properties": _plain(dict(properties)),
        "data": _plain(dict(data or {})),
      }
    self.save()

  def forget(self, stack_name: str, logical_id: str) -> None:
    with self._lock:
      self._records.get(stack_name, {}).pop(logical_id, None)
    self.save()


class CustomResourceLifecycleManager:
  def __init__(
    self,
    handlers: Optional[Mapping[str, CustomResourceHandler]] = None,
    registry: Optional[PhysicalIdRegistry] = None,
    timeout: float = DEFAULT_HANDLER_TIMEOUT,
  ) -> None:
    self._handlers = dict(handlers or {})
    self.registry = registry or PhysicalIdRegistry()
    self.timeout = timeout
    self.stale_signals: Deque[str] = collections.deque(maxlen=RETIRED_INVOCATION_LIMIT)
    self._invocations: Dict[str, CustomResourceInvocation] = {}
    # Concluded invocations, oldest first; kept only to recognise late signals.
    self._retired: "collections.OrderedDict[str, CustomResourceInvocation]" = collections.OrderedDict()
    self._condition = threading.Condition()

  def register(self, resource_type: str, handler: CustomResourceHandler) -> None:
    self._handlers[resource_type] = handler

  def handler_for(self, resource_type: str, properties: Mapping[str, Any]) -> CustomResourceHandler:
    handler = self._handlers.get(resource_type)
    if handler is None and resource_type == CUSTOM_RESOURCE_TYPE:
      handler = self._handlers.get(str(properties.get("ServiceToken")))
    if handler is None:
      raise HandlerError(f"No handler registered for custom resource type '{resource_type}'.")
    return handler

  def invocation(self, correlation_token: str) -> Optional[CustomResourceInvocation]:
    with self._condition:
      return self._invocations.get(correlation_token) or self._retired.get(correlation_token)

  @property
  def pending(self) -> int:
    with self._condition:
      return len(self._invocations)

  def _retire(self, invocation: CustomResourceInvocation) -> None:
    self._invocations.pop(invocation.correlation_token, None)
    self._retired[invocation.correlation_token] = invocation
    while len(self._retired) > RETIRED_INVOCATION_LIMIT:
      self._retired.popitem(last=False)

  def invoke(
    self,
    stack_name: str,
    logical_id: str,
    request_type: Union[RequestType, str],
    resource_type: str,
    properties: Mapping[str, Any],
    physical_id: Optional[str] = None,
  ) -> str:
    request_type = RequestType(request_type)
    if request_type is not RequestType.CREATE and not physical_id:
      raise HandlerError(f"{request_type.value} of '{logical_id}' requires a physical id.", logical_id)
    if request_type is RequestType.CREATE:
      physical_id = None
    handler = self.handler_for(resource_type, properties)

    token = uuid.uuid4().hex
    invocation = CustomResourceInvocation(
      stack_name=stack_name,
      logical_id=logical_id,
      resource_type=resource_type,
      request_type=request_type,
      properties=_plain(dict(properties)),
      correlation_token=token,
      physical_id=physical_id,
    )
    with self._condition:
      self._invocations[token] = invocation

    event = HandlerEvent(request_type, token, invocation.properties, physical_id)
    LOG.info(
      "Invoking %s for custom resource '%s' in stack '%s' (token %s)",
      request_type.value,
      logical_id,
      stack_name,
      token,
    )
    worker = threading.Thread(
      target=self._dispatch,
      args=(handler, event),
      name=f"custom-resource-{logical_id}",
      daemon=True,
    )
    worker.start()
    return token

  def _dispatch(self, handler: CustomResourceHandler, event: HandlerEvent) -> None:
    try:
      handler(event, self.accept)
    except Exception as exc:  # pylint: disable=broad-except
      LOG.error("Handler raised outside its response path: %s", exc)
      self.signal(event.correlation_token, SignalStatus.FAILED, {"Error": str(exc)}, event.physical_id)

  def accept(self, signal: Signal) -> bool:
    return self.signal(signal.correlation_token, signal.status, signal.data, signal.physical_id)

  def signal(
    self,
    correlation_token: str,
    status: Union[SignalStatus, str],
    data: Optional[Mapping[str, Any]] = None,
    physical_id: Optional[str] = None,
  ) -> bool:
    """Record the terminal signal for an invocation; returns False when the signal is stale."""
    status = SignalStatus(status)
    with self._condition:
      invocation = self._invocations.get(correlation_token) or self._retired.get(correlation_token)
      if invocation is None or invocation.terminal:
        state = "unknown" if invocation is None else invocation.state.value
        LOG.warning("Discarding stale %s signal for correlation token %s (%s)", status.value, correlation_token, state)
        self.stale_signals.append(correlation_token)
        return False
      invocation.state = (
        InvocationState.SIGNALED_SUCCESS if status is SignalStatus.SUCCESS else InvocationState.SIGNALED_FAILURE
      )
      invocation.data = dict(data or {})
      invocation.signaled_physical_id = physical_id
      self._retire(invocation)
      self._condition.notify_all()
    return True

  def wait(self, correlation_token: str, timeout: Optional[float] = None) -> InvocationOutcome:
    limit = self.timeout if timeout is None else timeout
    deadline = time.monotonic() + limit
    with self._condition:
      invocation = self._invocations.get(correlation_token) or self._retired[correlation_token]
      while not invocation.terminal:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
          invocation.state = InvocationState.TIMED_OUT
          LOG.error(
            "Custom resource '%s' in stack '%s' timed out after %.1fs; side effects are in an unknown state",
            invocation.logical_id,
            invocation.stack_name,
            limit,
          )
          break
        self._condition.wait(remaining)
      self._retire(invocation)
    return self._conclude(invocation)

  def _conclude(self, invocation: CustomResourceInvocation) -> InvocationOutcome:
    if invocation.state is InvocationState.TIMED_OUT:
      return InvocationOutcome(
        invocation.logical_id,
        invocation.request_type,
        invocation.state,
        physical_id=invocation.physical_id,
        reason="No signal received before timeout; side-effect state unknown",
      )
    if invocation.state is InvocationState.SIGNALED_FAILURE:
      reason = str(invocation.data.get("Error") or "Handler reported failure")
      return InvocationOutcome(
        invocation.logical_id,
        invocation.request_type,
        invocation.state,
        physical_id=invocation.physical_id,
        data=invocation.data,
        reason=reason,
      )

    replaced: Optional[str] = None
    physical_id = invocation.signaled_physical_id or invocation.physical_id
    if invocation.request_type is RequestType.CREATE and not physical_id:
      LOG.warning(
        "Handler for '%s' returned no physical id on Create; using the logical id",
        invocation.logical_id,
      )
      physical_id = invocation.logical_id
    if (
      invocation.request_type is RequestType.UPDATE
      and invocation.signaled_physical_id
      and invocation.signaled_physical_id != invocation.physical_id
    ):
      replaced = invocation.physical_id
      LOG.warning(
        "Custom resource '%s' in stack '%s' was replaced (%s -> %s); %s is orphaned and must be cleaned up",
        invocation.logical_id,
        invocation.stack_name,
        replaced,
        physical_id,
        replaced,
      )

    if invocation.request_type is RequestType.DELETE:
      self.registry.forget(invocation.stack_name, invocation.logical_id)
    else:
      self.registry.record(
        invocation.stack_name,
        invocation.logical_id,
        physical_id,
        invocation.resource_type,
        invocation.properties,
        invocation.data,
      )
    return InvocationOutcome(
      invocation.logical_id,
      invocation.request_type,
      invocation.state,
      physical_id=physical_id,
      data=invocation.data,
      replaced_physical_id=replaced,
    )

  def run(
    self,
    stack_name: str,
    logical_id: str,
    request_type: Union[RequestType, str],
    resource_type: str,
    properties: Mapping[str, Any],
    physical_id: Optional[str] = None,
  ) -> InvocationOutcome:
    token = self.invoke(stack_name, logical_id, request_type, resource_type, properties, physical_id)
    return self.wait(token)

  @staticmethod
  def raise_for(outcome: InvocationOutcome) -> None:
    if outcome.state is InvocationState.TIMED_OUT:
      raise HandlerTimeoutError(
        f"Custom resource '{outcome.logical_id}' {outcome.request_type.value} timed out "
        "(unknown side-effect state)",
        outcome.logical_id,
      )
    if outcome.state is InvocationState.SIGNALED_FAILURE:
      raise HandlerSignaledFailure(
        f"Custom resource '{outcome.logical_id}' {outcome.request_type.value} failed: {outcome.reason}",
        outcome.logical_id,
      )

  def apply(
    self,
    stack_name: str,
    resources: Sequence[ResourceDescriptor],
    cancelled: Optional[threading.Event] = None,
  ) -> Dict[str, InvocationOutcome]:
    """Bring a stack's custom resources in line with ``resources``.

    New resources are created, changed ones updated, unchanged ones left alone
    and recorded ones that are no longer present deleted.
    """
    outcomes: Dict[str, InvocationOutcome] = {}
    plan: List[Tuple[RequestType, str, str, Dict[str, Any], Optional[str]]] = []

    for resource in resources:
      properties = _plain(dict(resource.properties))
      record = self.registry.get(stack_name, resource.name)
      if record is None:
        plan.append((RequestType.CREATE, resource.name, resource.type, properties, None))
      elif record.get("properties") == properties and record.get("type") == resource.type:
        LOG.debug("Custom resource '%s' in stack '%s' is unchanged", resource.name, stack_name)
        outcomes[resource.name] = InvocationOutcome(
          resource.name,
          RequestType.UPDATE,
          InvocationState.SIGNALED_SUCCESS,
          physical_id=record["physicalId"],
          data=record.get("data") or {},
          unchanged=True,
        )
      else:
        plan.append((RequestType.UPDATE, resource.name, resource.type, properties, record["physicalId"]))

    current = {resource.name for resource in resources}
    for logical_id in self.registry.logical_ids(stack_name):
      if logical_id in current:
        continue
      record = self.registry.get(stack_name, logical_id) or {}
      plan.append((
        RequestType.DELETE,
        logical_id,
        record.get("type", CUSTOM_RESOURCE_TYPE),
        record.get("properties") or {},
        record.get("physicalId"),
      ))

    for request_type, logical_id, resource_type, properties, physical_id in plan:
      if cancelled is not None and cancelled.is_set():
        raise StackCancelledError(f"Stack '{stack_name}' cancelled before {request_type.value} of '{logical_id}'.")
      outcome = self.run(stack_name, logical_id, request_type, resource_type, properties, physical_id)
      outcomes[logical_id] = outcome
      self.raise_for(outcome)
    return outcomes
