"""Boolean condition expressions evaluated against resolved parameters.

Conditions are a small tagged AST built from CloudFormation intrinsic syntax
(``Fn::Equals``, ``Fn::And``, ``Fn::Or``, ``Fn::Not``, ``Condition``) so they
can be validated statically before any deployment starts.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterator, Mapping, Optional, Set, Tuple, Union

from stackrunner.errors import TemplateError, UnresolvedReferenceError


@dataclass(frozen=True)
class Literal:
  value: Any


@dataclass(frozen=True)
class Ref:
  name: str


@dataclass(frozen=True)
class ConditionRef:
  name: str


@dataclass(frozen=True)
class Equals:
  left: Union[Literal, Ref]
  right: Union[Literal, Ref]


@dataclass(frozen=True)
class And:
  operands: Tuple["Condition", ...]


@dataclass(frozen=True)
class Or:
  operands: Tuple["Condition", ...]


@dataclass(frozen=True)
class Not:
  operand: "Condition"


Condition = Union[Literal, ConditionRef, Equals, And, Or, Not]

_INTRINSICS = {
  "Fn::Equals": "Equals",
  "Fn::And": "And",
  "Fn::Or": "Or",
  "Fn::Not": "Not",
}


def canonical_text(value: Any) -> str:
  """Text form used for equality, mirroring CloudFormation string comparison."""
  if isinstance(value, bool):
    return "true" if value else "false"
  if isinstance(value, float) and value.is_integer():
    return str(int(value))
  if isinstance(value, (list, tuple)):
    return ",".join(canonical_text(item) for item in value)
  return str(value)


def _single_key(document: Mapping[str, Any]) -> Tuple[str, Any]:
  if len(document) != 1:
    raise TemplateError(f"Condition expression must have exactly one key: {dict(document)!r}")
  key, value = next(iter(document.items()))
  return _INTRINSICS.get(key, key), value


def _parse_operand(document: Any) -> Union[Literal, Ref]:
  if isinstance(document, Mapping):
    key, value = _single_key(document)
    if key == "Ref" and isinstance(value, str):
      return Ref(value)
    raise TemplateError(f"Unsupported operand in Equals: {dict(document)!r}")
  if isinstance(document, (list, tuple)):
    raise TemplateError(f"Equals operands must be scalars or Ref, got {document!r}")
  return Literal(document)


def parse_condition(document: Any) -> Condition:
  if isinstance(document, bool):
    return Literal(document)
  if isinstance(document, str):
    return ConditionRef(document)
  if not isinstance(document, Mapping):
    raise TemplateError(f"Unsupported condition expression: {document!r}")

  key, value = _single_key(document)
  if key == "Equals":
    if not isinstance(value, (list, tuple)) or len(value) != 2:
      raise TemplateError("Equals requires exactly two operands.")
    return Equals(_parse_operand(value[0]), _parse_operand(value[1]))
  if key in ("And", "Or"):
    if not isinstance(value, (list, tuple)) or not value:
      raise TemplateError(f"{key} requires a non-empty list of conditions.")
    operands = tuple(parse_condition(item) for item in value)
    return And(operands) if key == "And" else Or(operands)
  if key == "Not":
    if isinstance(value, (list, tuple)):
      if len(value) != 1:
        raise TemplateError("Not takes exactly one condition.")
      value = value[0]
    return Not(parse_condition(value))
  if key == "Condition" and isinstance(value, str):
    return ConditionRef(value)
  raise TemplateError(f"Unsupported condition function '{key}'.")


def _walk(expression: Condition) -> Iterator[Any]:
  yield expression
  if isinstance(expression, Equals):
    yield expression.left
    yield expression.right
  elif isinstance(expression, (And, Or)):
    for operand in expression.operands:
      yield from _walk(operand)
  elif isinstance(expression, Not):
    yield from _walk(expression.operand)


def references(expression: Condition) -> Set[str]:
  """Parameter names the expression reads."""
  return {node.name for node in _walk(expression) if isinstance(node, Ref)}


def condition_references(expression: Condition) -> Set[str]:
  return {node.name for node in _walk(expression) if isinstance(node, ConditionRef)}


class _Evaluator:
  def __init__(
    self,
    parameters: Mapping[str, Any],
    named: Optional[Mapping[str, Condition]] = None,
    known: Optional[Mapping[str, bool]] = None,
  ) -> None:
    self._parameters = parameters
    self._named = named or {}
    self._cache: Dict[str, bool] = dict(known or {})
    self._visiting: Set[str] = set()

  def condition(self, name: str) -> bool:
    if name in self._cache:
      return self._cache[name]
    if name not in self._named:
      raise UnresolvedReferenceError(name, "conditions")
    if name in self._visiting:
      raise TemplateError(f"Condition '{name}' refers to itself.")
    self._visiting.add(name)
    try:
      result = self.evaluate(self._named[name])
    finally:
      self._visiting.discard(name)
    self._cache[name] = result
    return result

  def operand(self, node: Union[Literal, Ref]) -> str:
    if isinstance(node, Ref):
      if node.name not in self._parameters:
        raise UnresolvedReferenceError(node.name, "condition")
      return canonical_text(self._parameters[node.name])
    return canonical_text(node.value)

  def evaluate(self, expression: Condition) -> bool:
    if isinstance(expression, Literal):
      return canonical_text(expression.value).lower() == "true"
    if isinstance(expression, ConditionRef):
      return self.condition(expression.name)
    if isinstance(expression, Equals):
      return self.operand(expression.left) == self.operand(expression.right)
    # Every operand is evaluated so an unresolved reference always raises.
    if isinstance(expression, And):
      return all([self.evaluate(operand) for operand in expression.operands])
    if isinstance(expression, Or):
      return any([self.evaluate(operand) for operand in expression.operands])
    if isinstance(expression, Not):
      return not self.evaluate(expression.operand)
    raise TemplateError(f"Unknown condition node {expression!r}")


def evaluate(
  expression: Condition,
  parameters: Mapping[str, Any],
  conditions: Optional[Mapping[str, bool]] = None,
) -> bool:
  return _Evaluator(parameters, known=conditions).evaluate(expression)


def evaluate_conditions(named: Mapping[str, Condition], parameters: Mapping[str, Any]) -> Dict[str, bool]:
  """Evaluate a stack's whole condition table, following Condition references."""
  evaluator = _Evaluator(parameters, named)
  return {name: evaluator.condition(name) for name in named}


def evaluate_condition(name: str, named: Mapping[str, Condition], parameters: Mapping[str, Any]) -> bool:
  return _Evaluator(parameters, named).condition(name)
