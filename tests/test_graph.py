from __future__ import annotations

import pytest

from conftest import make_stack
from stackrunner.errors import (
  CyclicDependencyError,
  ImplicitDependencyMissingError,
  InputError,
  TemplateError,
  UnknownStackError,
)
from stackrunner.graph import StackGraph


def _graph(*definitions):
  return StackGraph(definitions)


class TestTopologicalOrder:
  def test_fan_out(self):
    graph = _graph(
      make_stack("A"),
      make_stack("B", depends_on=["A"]),
      make_stack("C", depends_on=["A"]),
    )

    assert list(graph.topological_order()) == [["A"], ["B", "C"]]

  def test_every_stack_once_after_its_dependencies(self):
    graph = _graph(
      make_stack("App", depends_on=["Network", "Database"]),
      make_stack("Database", depends_on=["Network"]),
      make_stack("Network"),
      make_stack("Monitoring", depends_on=["App"]),
      make_stack("Storage"),
    )

    levels = list(graph.topological_order())
    flattened = [name for level in levels for name in level]
    position = {name: index for index, name in enumerate(flattened)}

    assert sorted(flattened) == sorted(graph.names)
    for name in graph.names:
      for dependency in graph.dependencies(name):
        assert position[dependency] < position[name]
    assert levels[0] == ["Network", "Storage"]

  def test_ready_sets_keep_declaration_order(self):
    graph = _graph(make_stack("Z"), make_stack("M"), make_stack("A"))

    assert list(graph.topological_order()) == [["Z", "M", "A"]]


class TestValidate:
  def test_cycle(self):
    graph = _graph(
      make_stack("A", depends_on=["C"]),
      make_stack("B", depends_on=["A"]),
      make_stack("C", depends_on=["B"]),
    )

    with pytest.raises(CyclicDependencyError) as excinfo:
      graph.validate()

    assert excinfo.value.cycle[0] == excinfo.value.cycle[-1]
    assert set(excinfo.value.cycle) == {"A", "B", "C"}

  def test_self_dependency(self):
    with pytest.raises(CyclicDependencyError):
      _graph(make_stack("A", depends_on=["A"])).validate()

  def test_unknown_dependency(self):
    with pytest.raises(UnknownStackError) as excinfo:
      _graph(make_stack("A", depends_on=["Ghost"])).validate()

    assert excinfo.value.missing == "Ghost"

  def test_output_reference_requires_declared_dependency(self):
    graph = _graph(
      make_stack("Network", outputs={"VpcId": "vpc-1"}),
      make_stack(
        "App",
        parameters={"VpcId": {}},
        parameter_values={"VpcId": {"Fn::GetAtt": ["Network", "Outputs.VpcId"]}},
      ),
    )

    with pytest.raises(ImplicitDependencyMissingError) as excinfo:
      graph.validate()

    assert excinfo.value.parameter == "VpcId"
    assert excinfo.value.referenced == "Network"

  def test_output_reference_to_unknown_stack(self):
    graph = _graph(
      make_stack(
        "App",
        parameters={"VpcId": {}},
        parameter_values={"VpcId": {"Fn::GetAtt": ["Ghost", "Outputs.VpcId"]}},
      ),
    )

    with pytest.raises(UnknownStackError):
      graph.validate()

  def test_implicit_dependencies_are_tracked(self):
    graph = _graph(
      make_stack("Network"),
      make_stack(
        "App",
        depends_on=["Network"],
        parameters={"VpcId": {}, "SubnetId": {}},
        parameter_values={
          "VpcId": {"Fn::GetAtt": ["Network", "Outputs.VpcId"]},
          "SubnetId": {"Fn::GetAtt": ["Network", "Outputs.SubnetId"]},
        },
      ),
    )

    graph.validate()

    assert graph.implicit_dependencies("App") == {"Network": {"VpcId", "SubnetId"}}
    assert graph.dependents("Network") == {"App"}

  def test_condition_on_undeclared_parameter(self):
    graph = _graph(make_stack("A", conditions={"IsProd": {"Fn::Equals": [{"Ref": "Environment"}, "prod"]}}))

    with pytest.raises(TemplateError):
      graph.validate()

  def test_condition_cycle(self):
    graph = _graph(make_stack("A", conditions={"X": {"Condition": "Y"}, "Y": {"Fn::Not": [{"Condition": "X"}]}}))

    with pytest.raises(TemplateError):
      graph.validate()

  def test_resource_with_undeclared_condition(self):
    graph = _graph(make_stack("A", resources={"Bucket": {"type": "AWS::S3::Bucket", "condition": "IsProd"}}))

    with pytest.raises(TemplateError):
      graph.validate()

  def test_value_for_undeclared_parameter(self):
    with pytest.raises(TemplateError):
      _graph(make_stack("A", parameter_values={"Name": "x"})).validate()

  def test_duplicate_stack(self):
    with pytest.raises(InputError):
      _graph(make_stack("A"), make_stack("A"))


class TestSelect:
  def test_targets_include_dependencies(self):
    graph = _graph(
      make_stack("A"),
      make_stack("B", depends_on=["A"]),
      make_stack("C", depends_on=["A"]),
      make_stack("D", depends_on=["B"]),
    )

    selected = graph.select(["D"])

    assert selected.names == ["A", "B", "D"]
    assert graph.transitive_dependents("A") == {"B", "C", "D"}

  def test_no_targets_is_everything(self):
    graph = _graph(make_stack("A"))

    assert graph.select(None) is graph

  def test_unknown_target(self):
    with pytest.raises(InputError):
      _graph(make_stack("A")).select(["B"])
