"""Per-stack parameter resolution and property rendering."""
from __future__ import annotations

import logging
import re
from collections import ChainMap
from dataclasses import replace
from types import MappingProxyType
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple

from stackrunner.conditions import canonical_text, evaluate_condition, evaluate_conditions
from stackrunner.errors import (
  MissingDependencyOutputError,
  ParameterValidationError,
  TemplateError,
  UnresolvedReferenceError,
)
from stackrunner.model import ParameterSpec, ResourceDescriptor, StackDefinition, StackInputs

LOG = logging.getLogger(__name__)

NO_VALUE = "AWS::NoValue"
_SUB_TOKEN = re.compile(r"\$\{([^}]+)\}")

_PHASE_MAPPING = 0
_PHASE_OUTPUT = 1
_PHASE_DIRECT = 2
_PHASE_CONDITIONAL = 3


class _Omitted:
  def __repr__(self) -> str:
    return "<NoValue>"


OMITTED = _Omitted()


class DeferredOutput(str):
  """Placeholder for a dependency output that only exists once the dependency is deployed."""

  @classmethod
  def of(cls, stack_name: str, output: str) -> "DeferredOutput":
    return cls(f"<{stack_name}.Outputs.{output}>")


class DeferredOutputs(Mapping[str, Mapping[str, Any]]):
  """Dependency outputs for dry runs: every lookup yields a ``DeferredOutput``."""

  def __init__(self, stack_names: Iterable[str]) -> None:
    self._names = list(stack_names)

  def __getitem__(self, stack_name: str) -> Mapping[str, Any]:
    if stack_name not in self._names:
      raise KeyError(stack_name)
    return _DeferredStackOutputs(stack_name)

  def __iter__(self) -> Iterator[str]:
    return iter(self._names)

  def __len__(self) -> int:
    return len(self._names)


class _DeferredStackOutputs(Mapping[str, Any]):
  def __init__(self, stack_name: str) -> None:
    self._stack_name = stack_name

  def __getitem__(self, output: str) -> Any:
    return DeferredOutput.of(self._stack_name, output)

  def __contains__(self, output: object) -> bool:
    return isinstance(output, str)

  def __iter__(self) -> Iterator[str]:
    return iter(())

  def __len__(self) -> int:
    return 0


def function_name(expression: Any) -> Optional[str]:
  """Return the intrinsic function name of a one-key mapping, without the ``Fn::`` prefix."""
  if isinstance(expression, Mapping) and len(expression) == 1:
    key = next(iter(expression))
    if isinstance(key, str) and (key == "Ref" or key.startswith("Fn::")):
      return key[4:] if key.startswith("Fn::") else key
  return None


def _iter_expressions(value: Any) -> Iterator[Any]:
  yield value
  if isinstance(value, Mapping):
    for item in value.values():
      yield from _iter_expressions(item)
  elif isinstance(value, (list, tuple)):
    for item in value:
      yield from _iter_expressions(item)


def split_get_att(argument: Any) -> Tuple[str, str]:
  if isinstance(argument, str):
    target, _, attribute = argument.partition(".")
  elif isinstance(argument, (list, tuple)) and len(argument) == 2:
    target, attribute = argument
  else:
    raise TemplateError(f"Malformed Fn::GetAtt argument: {argument!r}")
  if not target or not attribute:
    raise TemplateError(f"Malformed Fn::GetAtt argument: {argument!r}")
  return str(target), str(attribute)


def output_references(expression: Any) -> Set[Tuple[str, str]]:
  """(stack, output) pairs read by a parameter binding."""
  found: Set[Tuple[str, str]] = set()
  for node in _iter_expressions(expression):
    if function_name(node) == "GetAtt":
      stack_name, attribute = split_get_att(next(iter(node.values())))
      found.add((stack_name, _output_name(attribute)))
  return found


def _output_name(attribute: str) -> str:
  return attribute[len("Outputs."):] if attribute.startswith("Outputs.") else attribute


def _binding_phase(expression: Any) -> int:
  name = function_name(expression)
  if name == "FindInMap":
    return _PHASE_MAPPING
  if name == "GetAtt":
    return _PHASE_OUTPUT
  if name == "If":
    return _PHASE_CONDITIONAL
  return _PHASE_DIRECT


def is_resolved(value: Any) -> bool:
  return not any(function_name(node) for node in _iter_expressions(value))


class _Renderer:
  def __init__(
    self,
    stack_name: str,
    parameters: Mapping[str, Any],
    *,
    mappings: Optional[Mapping[str, Any]] = None,
    conditions: Optional[Mapping[str, Any]] = None,
    condition_values: Optional[Mapping[str, bool]] = None,
    dependency_outputs: Optional[Mapping[str, Mapping[str, Any]]] = None,
    resource_names: Optional[Set[str]] = None,
    pseudo_parameters: Optional[Mapping[str, Any]] = None,
    stack_outputs: bool = False,
  ) -> None:
    self._stack_name = stack_name
    self._parameters = parameters
    self._mappings = mappings or {}
    self._conditions = conditions or {}
    self._condition_values = condition_values
    self._dependency_outputs = dependency_outputs or {}
    self._resource_names = resource_names or set()
    self._pseudo = dict(pseudo_parameters or {})
    self._pseudo.setdefault("AWS::StackName", stack_name)
    self._stack_outputs = stack_outputs

  def render(self, value: Any) -> Any:
    name = function_name(value)
    if name is not None:
      handler = getattr(self, f"_fn_{name.lower()}", None)
      if handler is None:
        return value
      return handler(next(iter(value.values())), value)
    if isinstance(value, Mapping):
      rendered = {key: self.render(item) for key, item in value.items()}
      return {key: item for key, item in rendered.items() if item is not OMITTED}
    if isinstance(value, (list, tuple)):
      return [item for item in (self.render(entry) for entry in value) if item is not OMITTED]
    return value

  def _lookup(self, name: str) -> Any:
    if name in self._parameters:
      return self._parameters[name]
    if name in self._pseudo:
      return self._pseudo[name]
    raise KeyError(name)

  def _fn_ref(self, argument: Any, original: Any) -> Any:
    if argument == NO_VALUE:
      return OMITTED
    try:
      value = self._lookup(argument)
      return list(value) if isinstance(value, tuple) else value
    except KeyError:
      if argument in self._resource_names:
        return original
      raise UnresolvedReferenceError(str(argument), f"stack '{self._stack_name}'") from None

  def _fn_getatt(self, argument: Any, original: Any) -> Any:
    target, attribute = split_get_att(argument)
    if not self._stack_outputs:
      return original
    output = _output_name(attribute)
    outputs = self._dependency_outputs.get(target)
    if outputs is None or output not in outputs:
      raise MissingDependencyOutputError(target, output)
    return outputs[output]

  def _fn_findinmap(self, argument: Any, original: Any) -> Any:
    if not isinstance(argument, (list, tuple)) or len(argument) != 3:
      raise TemplateError(f"Fn::FindInMap takes three arguments in stack '{self._stack_name}'.")
    map_name, key, attribute = (canonical_text(self.render(item)) for item in argument)
    try:
      return self._mappings[map_name][key][attribute]
    except (KeyError, TypeError):
      raise UnresolvedReferenceError(
        f"{map_name}.{key}.{attribute}", f"mappings of stack '{self._stack_name}'"
      ) from None

  def _condition(self, name: str) -> bool:
    if self._condition_values is not None and name in self._condition_values:
      return self._condition_values[name]
    return evaluate_condition(name, self._conditions, self._parameters)

  def _fn_if(self, argument: Any, original: Any) -> Any:
    if not isinstance(argument, (list, tuple)) or len(argument) != 3:
      raise TemplateError(f"Fn::If takes three arguments in stack '{self._stack_name}'.")
    condition_name, when_true, when_false = argument
    return self.render(when_true if self._condition(str(condition_name)) else when_false)

  def _fn_join(self, argument: Any, original: Any) -> Any:
    if not isinstance(argument, (list, tuple)) or len(argument) != 2:
      raise TemplateError(f"Fn::Join takes a delimiter and a list in stack '{self._stack_name}'.")
    delimiter, items = argument
    rendered = self.render(items)
    if isinstance(rendered, list) and is_resolved(rendered):
      return str(delimiter).join(canonical_text(item) for item in rendered)
    return {"Fn::Join": [delimiter, rendered]}

  def _fn_select(self, argument: Any, original: Any) -> Any:
    if not isinstance(argument, (list, tuple)) or len(argument) != 2:
      raise TemplateError(f"Fn::Select takes an index and a list in stack '{self._stack_name}'.")
    index, items = self.render(argument[0]), self.render(argument[1])
    if isinstance(index, DeferredOutput) or not is_resolved(index):
      return {"Fn::Select": [index, items]}
    try:
      index = int(index)
    except (TypeError, ValueError):
      raise TemplateError(f"Fn::Select index {index!r} is not an integer in stack '{self._stack_name}'.") from None
    if isinstance(items, str):
      items = [item.strip() for item in items.split(",")]
    if isinstance(items, (list, tuple)):
      if not 0 <= index < len(items):
        raise TemplateError(f"Fn::Select index {index} out of range in stack '{self._stack_name}'.")
      return items[index]
    return {"Fn::Select": [index, items]}

  def _fn_sub(self, argument: Any, original: Any) -> Any:
    variables: Dict[str, Any] = {}
    if isinstance(argument, (list, tuple)):
      template, raw_variables = argument
      variables = {key: self.render(item) for key, item in (raw_variables or {}).items()}
    else:
      template = argument

    def substitute(match: "re.Match[str]") -> str:
      token = match.group(1)
      if token.startswith("!"):
        return "${" + token[1:] + "}"
      if token in variables and is_resolved(variables[token]):
        return canonical_text(variables[token])
      try:
        return canonical_text(self._lookup(token))
      except KeyError:
        return match.group(0)

    return _SUB_TOKEN.sub(substitute, str(template))


def _coerce_number(spec: ParameterSpec, value: Any) -> Any:
  if isinstance(value, bool):
    raise ParameterValidationError(spec.name, "Type", f"{value!r} is not a Number")
  if isinstance(value, (int, float)):
    return value
  text = str(value).strip()
  try:
    return int(text)
  except ValueError:
    pass
  try:
    return float(text)
  except ValueError:
    raise ParameterValidationError(spec.name, "Type", f"{value!r} is not a Number") from None


def _check_item(spec: ParameterSpec, value: Any) -> Any:
  item_is_number = spec.type in ("Number", "List<Number>")
  value = _coerce_number(spec, value) if item_is_number else canonical_text(value)
  text = canonical_text(value)

  if spec.allowed_values is not None:
    allowed = {canonical_text(candidate) for candidate in spec.allowed_values}
    if text not in allowed:
      raise ParameterValidationError(
        spec.name, "AllowedValues", f"{text!r} is not one of {sorted(allowed)}"
      )
  if spec.allowed_pattern is not None and re.fullmatch(spec.allowed_pattern, text) is None:
    raise ParameterValidationError(
      spec.name, "AllowedPattern", f"{text!r} does not match {spec.allowed_pattern}"
    )
  if item_is_number:
    if spec.min_value is not None and value < spec.min_value:
      raise ParameterValidationError(spec.name, "MinValue", f"{value} < {spec.min_value}")
    if spec.max_value is not None and value > spec.max_value:
      raise ParameterValidationError(spec.name, "MaxValue", f"{value} > {spec.max_value}")
  else:
    if spec.min_length is not None and len(text) < spec.min_length:
      raise ParameterValidationError(spec.name, "MinLength", f"length {len(text)} < {spec.min_length}")
    if spec.max_length is not None and len(text) > spec.max_length:
      raise ParameterValidationError(spec.name, "MaxLength", f"length {len(text)} > {spec.max_length}")
  return value


def validate_value(spec: ParameterSpec, value: Any) -> Any:
  """Coerce ``value`` to the declared type and check every declared constraint."""
  if isinstance(value, DeferredOutput):
    return value
  if spec.is_list:
    if isinstance(value, str):
      items: List[Any] = [item.strip() for item in value.split(",")] if value else []
    elif isinstance(value, (list, tuple)):
      items = list(value)
    else:
      items = [value]
    return tuple(_check_item(spec, item) for item in items)
  if isinstance(value, (list, tuple, Mapping)):
    raise ParameterValidationError(spec.name, "Type", f"expected a {spec.type}, got {type(value).__name__}")
  return _check_item(spec, value)


class ParameterResolver:
  def __init__(self, pseudo_parameters: Optional[Mapping[str, Any]] = None) -> None:
    self._pseudo = dict(pseudo_parameters or {})

  def resolve(
    self,
    definition: StackDefinition,
    deployment_parameters: Mapping[str, Any],
    dependency_outputs: Optional[Mapping[str, Mapping[str, Any]]] = None,
  ) -> Mapping[str, Any]:
    resolved: Dict[str, Any] = {}
    scope = ChainMap(resolved, dict(deployment_parameters))
    renderer = _Renderer(
      definition.name,
      scope,
      mappings=definition.mappings,
      conditions=definition.conditions,
      dependency_outputs=dependency_outputs or {},
      pseudo_parameters=self._pseudo,
      stack_outputs=True,
    )

    bindings = sorted(definition.parameter_values.items(), key=lambda item: _binding_phase(item[1]))
    deferred: List[Tuple[str, Any]] = []
    for name, expression in bindings:
      if _binding_phase(expression) == _PHASE_CONDITIONAL:
        deferred.append((name, expression))
        continue
      resolved[name] = renderer.render(expression)

    for name, spec in definition.parameters.items():
      if name in resolved or name in definition.parameter_values:
        continue
      if name in deployment_parameters:
        resolved[name] = deployment_parameters[name]
      elif spec.has_default:
        resolved[name] = spec.default

    for name, expression in deferred:
      resolved[name] = renderer.render(expression)

    final: Dict[str, Any] = {}
    for name, spec in definition.parameters.items():
      value = resolved.get(name, OMITTED)
      if value is OMITTED or value is None:
        raise ParameterValidationError(name, "Required", "no value supplied and no default declared")
      if not is_resolved(value):
        raise UnresolvedReferenceError(name, f"stack '{definition.name}' parameters")
      final[name] = validate_value(spec, value)
    LOG.debug("Resolved %d parameters for stack '%s'", len(final), definition.name)
    return MappingProxyType(final)

  def prepare(self, definition: StackDefinition, parameters: Mapping[str, Any]) -> StackInputs:
    """Evaluate conditions and render the resources and outputs that will be submitted."""
    conditions = evaluate_conditions(definition.conditions, parameters)
    renderer = _Renderer(
      definition.name,
      parameters,
      mappings=definition.mappings,
      conditions=definition.conditions,
      condition_values=conditions,
      resource_names={resource.name for resource in definition.resources},
      pseudo_parameters=self._pseudo,
    )

    included: List[ResourceDescriptor] = []
    for resource in definition.resources:
      if resource.condition is not None and not conditions[resource.condition]:
        LOG.debug(
          "Skipping resource '%s' in stack '%s': condition '%s' is false",
          resource.name,
          definition.name,
          resource.condition,
        )
        continue
      included.append(replace(resource, properties=renderer.render(dict(resource.properties))))

    outputs: Dict[str, Any] = {}
    for name, expression in definition.outputs.items():
      rendered = renderer.render(expression)
      if rendered is not OMITTED:
        outputs[name] = rendered

    return StackInputs(
      stack_name=definition.name,
      parameters=parameters,
      conditions=MappingProxyType(conditions),
      resources=tuple(resource for resource in included if not resource.is_custom),
      custom_resources=tuple(resource for resource in included if resource.is_custom),
      outputs=outputs,
    )


def finalize_outputs(
  inputs: StackInputs,
  backend_outputs: Mapping[str, Any],
  custom_results: Mapping[str, Mapping[str, Any]],
) -> Dict[str, Any]:
  """Merge backend outputs with outputs that read custom resource results."""
  result = dict(backend_outputs)

  def substitute(value: Any) -> Any:
    name = function_name(value)
    if name == "Ref" and value["Ref"] in custom_results:
      return custom_results[value["Ref"]].get("physicalId")
    if name == "GetAtt":
      target, attribute = split_get_att(value["Fn::GetAtt"])
      if target in custom_results:
        return (custom_results[target].get("data") or {}).get(attribute, value)
      return value
    if isinstance(value, Mapping):
      return {key: substitute(item) for key, item in value.items()}
    if isinstance(value, list):
      return [substitute(item) for item in value]
    return value

  for name, expression in inputs.outputs.items():
    if name in result:
      continue
    value = substitute(expression)
    if is_resolved(value):
      result[name] = value
  return result
