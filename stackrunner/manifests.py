"""Loads stack manifests and deployment parameter files."""
from __future__ import annotations

import copy
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

import yaml

from stackrunner.conditions import parse_condition
from stackrunner.errors import ManifestError
from stackrunner.model import DEFAULT_STACK_TIMEOUT, ParameterSpec, ResourceDescriptor, StackDefinition
from stackrunner.parameters import NO_VALUE

DEFAULT_GLOB = "**/*.stack.yaml"
TEMPLATE_SECTIONS = ("Parameters", "Mappings", "Conditions", "Resources", "Outputs")


class TemplateLoader(yaml.SafeLoader):
  """Safe loader that understands CloudFormation short-form tags such as ``!Ref``."""


def _construct_intrinsic(loader: yaml.SafeLoader, suffix: str, node: yaml.Node) -> Dict[str, Any]:
  if isinstance(node, yaml.ScalarNode):
    value: Any = loader.construct_scalar(node)
  elif isinstance(node, yaml.SequenceNode):
    value = loader.construct_sequence(node, deep=True)
  else:
    value = loader.construct_mapping(node, deep=True)
  if suffix in ("Ref", "Condition"):
    return {suffix: value}
  if suffix == "GetAtt" and isinstance(value, str):
    value = value.split(".", 1)
  return {f"Fn::{suffix}": value}


TemplateLoader.add_multi_constructor("!", _construct_intrinsic)


def _sequence_key(item: Any) -> Optional[str]:
  if not isinstance(item, dict):
    return None
  for field_name in ("name", "Key"):
    value = item.get(field_name)
    if isinstance(value, str) and value:
      return value
  return None


def _merge_sequences(base: List[Any], override: List[Any]) -> List[Any]:
  if not base:
    return copy.deepcopy(override)
  if not override:
    return copy.deepcopy(base)

  if all(isinstance(item, dict) for item in base + override):
    keys: List[str] = []
    base_map: Dict[str, Any] = {}
    for item in base:
      key = _sequence_key(item)
      if key is None or key in base_map:
        return copy.deepcopy(override)
      keys.append(key)
      base_map[key] = copy.deepcopy(item)

    for item in override:
      key = _sequence_key(item)
      if key is None:
        return copy.deepcopy(override)
      if key in base_map:
        base_map[key] = deep_merge(base_map[key], item)
      else:
        base_map[key] = copy.deepcopy(item)
        keys.append(key)
    return [base_map[key] for key in keys]

  return copy.deepcopy(override)


def deep_merge(base: Any, override: Any) -> Any:
  if isinstance(base, dict) and isinstance(override, dict):
    result = copy.deepcopy(base)
    for key, value in override.items():
      if key in result:
        result[key] = deep_merge(result[key], value)
      else:
        result[key] = copy.deepcopy(value)
    return result
  if isinstance(base, list) and isinstance(override, list):
    return _merge_sequences(base, override)
  return copy.deepcopy(override)


def load_yaml(path: Path) -> Any:
  try:
    with path.open("r", encoding="utf-8") as handle:
      return yaml.load(handle, Loader=TemplateLoader)
  except yaml.YAMLError as exc:
    raise ManifestError(f"{path}: invalid YAML: {exc}") from exc


def _string_list(value: Any, where: str) -> List[str]:
  if value is None:
    return []
  if isinstance(value, str):
    return [value]
  if isinstance(value, list) and all(isinstance(item, str) for item in value):
    return list(value)
  raise ManifestError(f"{where} must be a string or a list of strings.")


def _mapping(value: Any, where: str) -> Dict[str, Any]:
  if value is None:
    return {}
  if not isinstance(value, dict):
    raise ManifestError(f"{where} must be a mapping.")
  return value


def _optional_number(value: Any, name: str, where: str) -> Optional[float]:
  if value is None:
    return None
  try:
    return float(value)
  except (TypeError, ValueError):
    raise ManifestError(f"{where}: {name} must be numeric, got {value!r}") from None


def parse_parameter(name: str, document: Any, where: str) -> ParameterSpec:
  document = _mapping(document, f"{where}: parameter '{name}'")
  allowed_values = document.get("AllowedValues")
  if allowed_values is not None and not isinstance(allowed_values, list):
    raise ManifestError(f"{where}: parameter '{name}' AllowedValues must be a list.")
  min_length = document.get("MinLength")
  max_length = document.get("MaxLength")
  return ParameterSpec(
    name=name,
    type=str(document.get("Type", "String")),
    default=document.get("Default"),
    allowed_values=tuple(allowed_values) if allowed_values is not None else None,
    allowed_pattern=document.get("AllowedPattern"),
    min_value=_optional_number(document.get("MinValue"), "MinValue", where),
    max_value=_optional_number(document.get("MaxValue"), "MaxValue", where),
    min_length=int(min_length) if min_length is not None else None,
    max_length=int(max_length) if max_length is not None else None,
    description=document.get("Description"),
  )


def parse_resource(name: str, document: Any, where: str) -> ResourceDescriptor:
  document = _mapping(document, f"{where}: resource '{name}'")
  resource_type = document.get("Type")
  if not resource_type:
    raise ManifestError(f"{where}: resource '{name}' requires a Type.")
  return ResourceDescriptor(
    name=name,
    type=str(resource_type),
    condition=document.get("Condition"),
    properties=_mapping(document.get("Properties"), f"{where}: resource '{name}' Properties"),
    depends_on=tuple(_string_list(document.get("DependsOn"), f"{where}: resource '{name}' DependsOn")),
  )


def parse_output(document: Any) -> Any:
  if isinstance(document, dict) and "Value" in document:
    value = document["Value"]
    condition = document.get("Condition")
    if condition:
      return {"Fn::If": [condition, value, {"Ref": NO_VALUE}]}
    return value
  return document


class ManifestRepository:
  def __init__(self, root: Path, glob_pattern: str = DEFAULT_GLOB) -> None:
    self._root = root
    self._glob = glob_pattern

  def load(self) -> List[StackDefinition]:
    """Return stack definitions in declaration (path-sorted) order."""
    definitions: Dict[str, StackDefinition] = {}
    for manifest_path in sorted(self._root.glob(self._glob)):
      if not manifest_path.is_file():
        continue
      definition = self.parse(manifest_path)
      existing = definitions.get(definition.name)
      if existing:
        replacement = self._resolve_duplicate(existing, definition)
        if replacement is None:
          raise ManifestError(
            f"Duplicate stack name '{definition.name}' found in {manifest_path} and {existing.source}"
          )
        definitions[definition.name] = replacement
        continue
      definitions[definition.name] = definition
    if not definitions:
      raise ManifestError(f"No manifest files found under '{self._root}' using pattern '{self._glob}'.")
    return list(definitions.values())

  def parse(self, manifest_path: Path) -> StackDefinition:
    data = self._load_manifest_data(manifest_path)
    where = f"Manifest {manifest_path}"

    stack_section = data.get("stack")
    if not isinstance(stack_section, dict):
      raise ManifestError(f"{where} must contain a 'stack' mapping.")
    name = stack_section.get("name")
    if not name:
      raise ManifestError(f"{where}: stack.name is required.")

    template_section = _mapping(stack_section.get("template"), f"{where}: stack.template")
    if template_section.get("file"):
      data = deep_merge(self._load_template_sections(Path(template_section["file"]), where), data)

    timeout = DEFAULT_STACK_TIMEOUT
    if stack_section.get("timeoutInMinutes") is not None:
      timeout = _optional_number(stack_section["timeoutInMinutes"], "timeoutInMinutes", where) * 60.0

    parameters = {
      parameter_name: parse_parameter(parameter_name, document, where)
      for parameter_name, document in _mapping(data.get("parameters"), f"{where}: parameters").items()
    }
    conditions = {
      condition_name: parse_condition(document)
      for condition_name, document in _mapping(data.get("conditions"), f"{where}: conditions").items()
    }
    resources = tuple(
      parse_resource(resource_name, document, where)
      for resource_name, document in _mapping(data.get("resources"), f"{where}: resources").items()
    )
    outputs = {
      output_name: parse_output(document)
      for output_name, document in _mapping(data.get("outputs"), f"{where}: outputs").items()
    }

    return StackDefinition(
      name=str(name),
      parameters=parameters,
      parameter_values=_mapping(data.get("parameterValues"), f"{where}: parameterValues"),
      conditions=conditions,
      mappings=_mapping(data.get("mappings"), f"{where}: mappings"),
      resources=resources,
      outputs=outputs,
      depends_on=tuple(_string_list(data.get("dependsOn"), f"{where}: dependsOn")),
      timeout=timeout,
      description=stack_section.get("description"),
      source=manifest_path,
    )

  def _load_template_sections(self, template_path: Path, where: str) -> Dict[str, Any]:
    if not template_path.exists():
      raise ManifestError(f"{where}: template file '{template_path}' does not exist.")
    template = load_yaml(template_path) or {}
    if not isinstance(template, dict):
      raise ManifestError(f"Template {template_path} must parse to a mapping.")
    return {
      section[0].lower() + section[1:]: copy.deepcopy(template[section])
      for section in TEMPLATE_SECTIONS
      if section in template
    }

  def _resolve_duplicate(self, existing: StackDefinition, candidate: StackDefinition) -> Optional[StackDefinition]:
    existing_kind = self._classify_manifest(existing.source)
    candidate_kind = self._classify_manifest(candidate.source)
    if existing_kind == candidate_kind:
      return None
    if candidate_kind == "overlay":
      return candidate
    if existing_kind == "overlay":
      return existing
    return None

  def _classify_manifest(self, manifest_path: Optional[Path]) -> str:
    if manifest_path is None:
      return "base"
    try:
      relative_parts = manifest_path.resolve().relative_to(self._root.resolve()).parts
    except ValueError:
      relative_parts = manifest_path.resolve().parts
    return "overlay" if "environments" in relative_parts else "base"

  def _load_manifest_data(self, manifest_path: Path, seen: Optional[Set[Path]] = None) -> Dict[str, Any]:
    if seen is None:
      seen = set()

    resolved_manifest_path = manifest_path.resolve()
    if resolved_manifest_path in seen:
      raise ManifestError(f"Cyclic 'extends' reference detected at {manifest_path}.")
    seen.add(resolved_manifest_path)

    loaded = load_yaml(manifest_path) or {}
    if not isinstance(loaded, dict):
      raise ManifestError(f"Manifest {manifest_path} must parse to a mapping.")

    extends_value = loaded.pop("extends", None)
    merged: Dict[str, Any] = {}
    for entry in _string_list(extends_value, f"Manifest {manifest_path}: 'extends'"):
      base_path = (manifest_path.parent / entry).resolve()
      if not base_path.exists():
        raise ManifestError(f"Manifest {manifest_path}: extended file '{entry}' was not found.")
      merged = deep_merge(merged, self._load_manifest_data(base_path, seen))

    merged = deep_merge(merged, loaded)
    self._ensure_absolute_template_path(merged, manifest_path)
    seen.remove(resolved_manifest_path)
    return merged

  def _ensure_absolute_template_path(self, data: Dict[str, Any], manifest_path: Path) -> None:
    stack_section = data.get("stack")
    if not isinstance(stack_section, dict):
      return
    template_section = stack_section.get("template")
    if not isinstance(template_section, dict):
      return
    value = template_section.get("file")
    if isinstance(value, str) and value and not Path(value).is_absolute():
      template_section["file"] = str((manifest_path.parent / value).resolve())


def load_parameter_file(path: Path) -> Dict[str, Any]:
  """Read a deployment parameter file: a flat mapping or a ParameterKey/ParameterValue list."""
  document = load_yaml(path)
  if document is None:
    return {}
  if isinstance(document, dict) and isinstance(document.get("Parameters"), dict) and len(document) == 1:
    document = document["Parameters"]
  if isinstance(document, dict):
    return dict(document)
  if isinstance(document, list):
    parameters: Dict[str, Any] = {}
    for row in document:
      if not isinstance(row, dict) or "ParameterKey" not in row:
        raise ManifestError(f"Parameter file {path}: list entries need ParameterKey and ParameterValue.")
      parameters[str(row["ParameterKey"])] = row.get("ParameterValue")
    return parameters
  raise ManifestError(f"Parameter file {path} must be a mapping or a list of ParameterKey entries.")


def load_stacks(root: Path, glob_pattern: str = DEFAULT_GLOB) -> List[StackDefinition]:
  return ManifestRepository(root, glob_pattern).load()
