from __future__ import annotations

import logging
import threading

import pytest
import yaml

from conftest import RecordingHandler, SilentHandler
from stackrunner import custom_resources
from stackrunner.custom_resources import (
  CustomResourceLifecycleManager,
  HandlerEvent,
  InvocationState,
  PhysicalIdRegistry,
  RequestType,
  Signal,
  SignalStatus,
)
from stackrunner.errors import HandlerError, HandlerSignaledFailure, HandlerTimeoutError, StackCancelledError
from stackrunner.model import ResourceDescriptor


def _manager(handler, **kwargs):
  kwargs.setdefault("timeout", 5.0)
  return CustomResourceLifecycleManager({"Custom::Thing": handler}, **kwargs)


class TestWireFormat:
  def test_event_keys(self):
    event = HandlerEvent(RequestType.UPDATE, "tok-1", {"Size": 3}, "p-123")

    assert event.to_wire() == {
      "requestType": "Update",
      "physicalId": "p-123",
      "properties": {"Size": 3},
      "correlationToken": "tok-1",
    }
    assert HandlerEvent.from_wire(event.to_wire()) == event

  def test_signal_keys(self):
    signal = Signal.from_wire({"correlationToken": "tok-1", "status": "Failed", "data": {"Error": "x"}, "physicalId": None})

    assert signal.status is SignalStatus.FAILED
    assert signal.to_wire() == {"correlationToken": "tok-1", "status": "Failed", "data": {"Error": "x"}, "physicalId": None}


class TestLifecycle:
  def test_update_receives_the_recorded_physical_id(self):
    handler = RecordingHandler(physical_id="p-123")
    manager = _manager(handler)

    created = manager.run("Stack", "Thing", "Create", "Custom::Thing", {"Size": 1})
    updated = manager.run("Stack", "Thing", "Update", "Custom::Thing", {"Size": 2}, created.physical_id)

    assert created.succeeded and created.physical_id == "p-123"
    assert handler.events[0].physical_id is None
    assert handler.events[1].request_type is RequestType.UPDATE
    assert handler.events[1].physical_id == "p-123"
    assert updated.physical_id == "p-123"
    assert manager.registry.get("Stack", "Thing")["properties"] == {"Size": 2}

  def test_update_requires_a_physical_id(self):
    with pytest.raises(HandlerError):
      _manager(RecordingHandler()).invoke("Stack", "Thing", "Update", "Custom::Thing", {})

  def test_delete_of_unknown_resource_succeeds(self):
    manager = _manager(RecordingHandler())

    outcome = manager.run("Stack", "Thing", "Delete", "Custom::Thing", {}, "p-does-not-exist")

    assert outcome.succeeded
    assert manager.registry.get("Stack", "Thing") is None

  def test_create_without_physical_id_falls_back_to_logical_id(self, caplog):
    manager = _manager(RecordingHandler(physical_id=None))

    with caplog.at_level(logging.WARNING):
      outcome = manager.run("Stack", "Thing", "Create", "Custom::Thing", {})

    assert outcome.physical_id == "Thing"
    assert "no physical id" in caplog.text

  def test_replacement_is_reported(self, caplog):
    handler = RecordingHandler(physical_id="p-123", replace_with="p-456")
    manager = _manager(handler)
    manager.run("Stack", "Thing", "Create", "Custom::Thing", {})

    with caplog.at_level(logging.WARNING):
      outcome = manager.run("Stack", "Thing", "Update", "Custom::Thing", {"Size": 2}, "p-123")

    assert outcome.physical_id == "p-456"
    assert outcome.replaced_physical_id == "p-123"
    assert "orphaned" in caplog.text
    assert manager.registry.get("Stack", "Thing")["physicalId"] == "p-456"

  def test_handler_exception_becomes_failed_signal(self):
    manager = _manager(RecordingHandler(fail="bucket not found"))

    outcome = manager.run("Stack", "Thing", "Create", "Custom::Thing", {})

    assert outcome.state is InvocationState.SIGNALED_FAILURE
    assert outcome.reason == "bucket not found"
    with pytest.raises(HandlerSignaledFailure):
      manager.raise_for(outcome)

  def test_timeout_leaves_unknown_state(self, caplog):
    handler = SilentHandler()
    manager = _manager(handler)

    with caplog.at_level(logging.ERROR):
      outcome = manager.wait(manager.invoke("Stack", "Thing", "Create", "Custom::Thing", {}), timeout=0.05)

    assert outcome.state is InvocationState.TIMED_OUT
    assert outcome.unknown_side_effects
    assert "unknown state" in caplog.text
    assert manager.registry.get("Stack", "Thing") is None
    with pytest.raises(HandlerTimeoutError) as excinfo:
      manager.raise_for(outcome)
    assert excinfo.value.unknown_side_effects

  def test_late_signal_after_timeout_is_stale(self, caplog):
    handler = SilentHandler()
    manager = _manager(handler)
    token = manager.invoke("Stack", "Thing", "Create", "Custom::Thing", {})
    manager.wait(token, timeout=0.01)

    with caplog.at_level(logging.WARNING):
      accepted = manager.signal(token, "Success", {}, "p-late")

    assert accepted is False
    assert manager.invocation(token).state is InvocationState.TIMED_OUT
    assert list(manager.stale_signals) == [token]
    assert "stale" in caplog.text

  def test_duplicate_signal_is_stale(self, caplog):
    manager = _manager(RecordingHandler(physical_id="p-123", data={"Arn": "a"}))
    token = manager.invoke("Stack", "Thing", "Create", "Custom::Thing", {})
    manager.wait(token)

    with caplog.at_level(logging.WARNING):
      accepted = manager.signal(token, SignalStatus.FAILED, {"Error": "late"})

    invocation = manager.invocation(token)
    assert accepted is False
    assert invocation.state is InvocationState.SIGNALED_SUCCESS
    assert invocation.data == {"Arn": "a"}
    assert "stale" in caplog.text

  def test_signal_for_unknown_token(self, caplog):
    manager = _manager(RecordingHandler())

    with caplog.at_level(logging.WARNING):
      assert manager.signal("never-issued", "Success") is False
    assert list(manager.stale_signals) == ["never-issued"]

  def test_generic_type_is_routed_by_service_token(self):
    handler = RecordingHandler()
    manager = CustomResourceLifecycleManager({"index-template": handler}, timeout=5.0)

    outcome = manager.run(
      "Stack", "Index", "Create", "AWS::CloudFormation::CustomResource", {"ServiceToken": "index-template"}
    )

    assert outcome.succeeded
    assert len(handler.events) == 1

  def test_unregistered_type(self):
    with pytest.raises(HandlerError):
      CustomResourceLifecycleManager().invoke("Stack", "Thing", "Create", "Custom::Unknown", {})


class TestApply:
  def _resources(self, **properties):
    return [ResourceDescriptor("Thing", "Custom::Thing", properties=properties)]

  def test_create_then_unchanged_then_update_then_delete(self):
    handler = RecordingHandler(physical_id="p-123", data={"Arn": "arn:thing"})
    manager = _manager(handler)

    created = manager.apply("Stack", self._resources(Size=1))
    unchanged = manager.apply("Stack", self._resources(Size=1))
    updated = manager.apply("Stack", self._resources(Size=2))
    deleted = manager.apply("Stack", [])

    assert created["Thing"].request_type is RequestType.CREATE
    assert unchanged["Thing"].unchanged
    assert unchanged["Thing"].data == {"Arn": "arn:thing"}
    assert updated["Thing"].request_type is RequestType.UPDATE
    assert deleted["Thing"].request_type is RequestType.DELETE
    assert [event.request_type for event in handler.events] == [
      RequestType.CREATE,
      RequestType.UPDATE,
      RequestType.DELETE,
    ]
    assert handler.events[1].physical_id == "p-123"
    assert handler.events[2].physical_id == "p-123"
    assert manager.registry.logical_ids("Stack") == []

  def test_failure_raises(self):
    manager = _manager(RecordingHandler(fail="boom"))

    with pytest.raises(HandlerSignaledFailure):
      manager.apply("Stack", self._resources())

  def test_cancelled_before_invocation(self):
    cancelled = threading.Event()
    cancelled.set()
    handler = RecordingHandler()

    with pytest.raises(StackCancelledError):
      _manager(handler).apply("Stack", self._resources(), cancelled)
    assert handler.events == []


class TestPhysicalIdRegistry:
  def test_records_survive_a_restart(self, tmp_path):
    path = tmp_path / "state" / "custom-resources.yaml"
    registry = PhysicalIdRegistry(path)
    registry.record("Stack", "Thing", "p-123", "Custom::Thing", {"Subnets": ("a", "b")}, {"Arn": "x"})

    reloaded = PhysicalIdRegistry(path)

    assert reloaded.get("Stack", "Thing") == {
      "physicalId": "p-123",
      "type": "Custom::Thing",
      "properties": {"Subnets": ["a", "b"]},
      "data": {"Arn": "x"},
    }
    assert yaml.safe_load(path.read_text(encoding="utf-8"))["Stack"]["Thing"]["physicalId"] == "p-123"

  def test_forget(self, tmp_path):
    path = tmp_path / "state.yaml"
    registry = PhysicalIdRegistry(path)
    registry.record("Stack", "Thing", "p-123", "Custom::Thing", {})

    registry.forget("Stack", "Thing")

    assert PhysicalIdRegistry(path).get("Stack", "Thing") is None

  def test_manager_reuses_persisted_ids(self, tmp_path):
    path = tmp_path / "state.yaml"
    _manager(RecordingHandler(physical_id="p-123"), registry=PhysicalIdRegistry(path)).apply(
      "Stack", [ResourceDescriptor("Thing", "Custom::Thing", properties={"Size": 1})]
    )
    handler = RecordingHandler()

    _manager(handler, registry=PhysicalIdRegistry(path)).apply(
      "Stack", [ResourceDescriptor("Thing", "Custom::Thing", properties={"Size": 2})]
    )

    assert handler.events[0].request_type is RequestType.UPDATE
    assert handler.events[0].physical_id == "p-123"

  def test_concurrent_records_all_reach_the_state_file(self, tmp_path):
    path = tmp_path / "state.yaml"
    registry = PhysicalIdRegistry(path)

    def record_many(stack_name):
      for index in range(10):
        registry.record(stack_name, f"Thing{index}", f"{stack_name}-p-{index}", "Custom::Thing", {})

    workers = [threading.Thread(target=record_many, args=(f"Stack{number}",)) for number in range(8)]
    for worker in workers:
      worker.start()
    for worker in workers:
      worker.join()

    reloaded = PhysicalIdRegistry(path)
    assert sum(len(reloaded.logical_ids(f"Stack{number}")) for number in range(8)) == 80
    assert sorted(item.name for item in tmp_path.iterdir()) == ["state.yaml"]

  def test_load_without_a_path(self):
    with pytest.raises(ValueError):
      PhysicalIdRegistry().load()


class TestInvocationRetention:
  def test_concluded_invocations_leave_the_pending_set(self):
    manager = _manager(RecordingHandler(physical_id="p-123"))

    token = manager.invoke("Stack", "Thing", "Create", "Custom::Thing", {})
    outcome = manager.wait(token)

    assert outcome.succeeded
    assert manager.pending == 0
    assert manager.invocation(token).state is InvocationState.SIGNALED_SUCCESS

  def test_history_is_bounded(self, monkeypatch):
    monkeypatch.setattr(custom_resources, "RETIRED_INVOCATION_LIMIT", 2)
    manager = _manager(RecordingHandler(physical_id="p-123"))

    tokens = []
    for index in range(3):
      tokens.append(manager.invoke("Stack", f"Thing{index}", "Create", "Custom::Thing", {}))
      manager.wait(tokens[-1])

    assert manager.invocation(tokens[0]) is None
    assert manager.invocation(tokens[2]) is not None
    assert manager.signal(tokens[0], "Success") is False
    assert list(manager.stale_signals) == [tokens[0]]
