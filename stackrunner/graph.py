from __future__ import annotations

from collections import defaultdict
from typing import Dict, Iterable, Iterator, List, Optional, Set

from stackrunner.conditions import condition_references, references
from stackrunner.errors import (
  CyclicDependencyError,
  ImplicitDependencyMissingError,
  InputError,
  TemplateError,
  UnknownStackError,
)
from stackrunner.model import StackDefinition
from stackrunner.parameters import output_references


def _check_template(definition: StackDefinition) -> None:
  declared = set(definition.parameters)
  for name in definition.parameter_values:
    if name not in declared:
      raise TemplateError(f"Stack '{definition.name}': value supplied for undeclared parameter '{name}'.")

  for name, expression in definition.conditions.items():
    unknown_parameters = references(expression) - declared
    if unknown_parameters:
      raise TemplateError(
        f"Stack '{definition.name}': condition '{name}' references undeclared parameters "
        f"{', '.join(sorted(unknown_parameters))}."
      )
    unknown_conditions = condition_references(expression) - set(definition.conditions)
    if unknown_conditions:
      raise TemplateError(
        f"Stack '{definition.name}': condition '{name}' references undeclared conditions "
        f"{', '.join(sorted(unknown_conditions))}."
      )

  visiting: Set[str] = set()
  visited: Set[str] = set()

  def visit(name: str) -> None:
    if name in visited:
      return
    if name in visiting:
      raise TemplateError(f"Stack '{definition.name}': condition '{name}' is part of a reference cycle.")
    visiting.add(name)
    for child in condition_references(definition.conditions[name]):
      visit(child)
    visiting.remove(name)
    visited.add(name)

  for name in definition.conditions:
    visit(name)

  for resource in definition.resources:
    if resource.condition is not None and resource.condition not in definition.conditions:
      raise TemplateError(
        f"Stack '{definition.name}': resource '{resource.name}' uses undeclared condition "
        f"'{resource.condition}'."
      )


class StackGraph:
  """Stacks and their dependencies, in declaration order."""

  def __init__(self, definitions: Iterable[StackDefinition] = ()) -> None:
    self._stacks: Dict[str, StackDefinition] = {}
    for definition in definitions:
      self.add_stack(definition)

  def add_stack(self, definition: StackDefinition) -> None:
    if definition.name in self._stacks:
      raise InputError(f"Duplicate stack name '{definition.name}'.")
    self._stacks[definition.name] = definition

  def __contains__(self, name: object) -> bool:
    return name in self._stacks

  def __len__(self) -> int:
    return len(self._stacks)

  def __iter__(self) -> Iterator[StackDefinition]:
    return iter(self._stacks.values())

  @property
  def names(self) -> List[str]:
    return list(self._stacks)

  def get(self, name: str) -> StackDefinition:
    return self._stacks[name]

  def order_index(self, name: str) -> int:
    return self.names.index(name)

  def implicit_dependencies(self, name: str) -> Dict[str, Set[str]]:
    """Stacks whose outputs are read by ``name``'s parameters, with the parameters that read them."""
    found: Dict[str, Set[str]] = defaultdict(set)
    for parameter, expression in self._stacks[name].parameter_values.items():
      for stack_name, _ in output_references(expression):
        found[stack_name].add(parameter)
    return dict(found)

  def dependencies(self, name: str) -> Set[str]:
    return set(self._stacks[name].depends_on) | set(self.implicit_dependencies(name))

  def dependents(self, name: str) -> Set[str]:
    return {candidate for candidate in self._stacks if name in self.dependencies(candidate)}

  def transitive_dependents(self, name: str) -> Set[str]:
    result: Set[str] = set()
    pending = [name]
    while pending:
      for child in self.dependents(pending.pop()):
        if child not in result:
          result.add(child)
          pending.append(child)
    return result

  def validate(self) -> None:
    for definition in self._stacks.values():
      for dependency in definition.depends_on:
        if dependency not in self._stacks:
          raise UnknownStackError(definition.name, dependency)
      for referenced, parameters in sorted(self.implicit_dependencies(definition.name).items()):
        if referenced not in self._stacks:
          raise UnknownStackError(definition.name, referenced)
        if referenced not in definition.depends_on:
          raise ImplicitDependencyMissingError(definition.name, sorted(parameters)[0], referenced)
      _check_template(definition)

    state: Dict[str, int] = {}
    path: List[str] = []

    def visit(name: str) -> None:
      marker = state.get(name)
      if marker == 2:
        return
      if marker == 1:
        start = path.index(name)
        raise CyclicDependencyError(path[start:] + [name])
      state[name] = 1
      path.append(name)
      for dependency in sorted(self.dependencies(name), key=self.order_index):
        visit(dependency)
      path.pop()
      state[name] = 2

    for name in self._stacks:
      visit(name)

  def topological_order(self) -> Iterator[List[str]]:
    """Yield ready sets: groups of stacks whose dependencies all appear in earlier sets."""
    indegree = {name: len(self.dependencies(name)) for name in self._stacks}
    children: Dict[str, Set[str]] = defaultdict(set)
    for name in self._stacks:
      for dependency in self.dependencies(name):
        children[dependency].add(name)

    ready = [name for name in self._stacks if indegree[name] == 0]
    emitted = 0
    while ready:
      level = sorted(ready, key=self.order_index)
      yield level
      emitted += len(level)
      ready = []
      for name in level:
        for child in children.get(name, set()):
          indegree[child] -= 1
          if indegree[child] == 0:
            ready.append(child)

    if emitted != len(self._stacks):
      blocked = [name for name in self._stacks if indegree[name] > 0]
      raise CyclicDependencyError(blocked)

  def select(self, targets: Optional[Iterable[str]]) -> "StackGraph":
    """Sub-graph holding ``targets`` and everything they depend on."""
    if targets is None:
      return self
    wanted = list(targets)
    missing = [name for name in wanted if name not in self._stacks]
    if missing:
      raise InputError(f"Requested stacks were not found in the manifest set: {', '.join(sorted(missing))}")

    needed: Set[str] = set()

    def collect(name: str) -> None:
      if name in needed or name not in self._stacks:
        return
      needed.add(name)
      for dependency in self.dependencies(name):
        collect(dependency)

    for name in wanted:
      collect(name)
    return StackGraph(definition for name, definition in self._stacks.items() if name in needed)
