from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from stackrunner.conditions import Condition

CUSTOM_RESOURCE_TYPE = "AWS::CloudFormation::CustomResource"
DEFAULT_STACK_TIMEOUT = 60 * 60.0


@dataclass(frozen=True)
class ParameterSpec:
  name: str
  type: str = "String"
  default: Any = None
  allowed_values: Optional[Tuple[Any, ...]] = None
  allowed_pattern: Optional[str] = None
  min_value: Optional[float] = None
  max_value: Optional[float] = None
  min_length: Optional[int] = None
  max_length: Optional[int] = None
  description: Optional[str] = None

  @property
  def has_default(self) -> bool:
    return self.default is not None

  @property
  def is_list(self) -> bool:
    return self.type == "CommaDelimitedList" or self.type.startswith("List<")

  @property
  def is_number(self) -> bool:
    return self.type in ("Number", "List<Number>")


@dataclass(frozen=True)
class ResourceDescriptor:
  name: str
  type: str
  condition: Optional[str] = None
  properties: Mapping[str, Any] = field(default_factory=dict)
  depends_on: Tuple[str, ...] = ()

  @property
  def is_custom(self) -> bool:
    return self.type == CUSTOM_RESOURCE_TYPE or self.type.startswith("Custom::")


@dataclass(frozen=True)
class StackDefinition:
  name: str
  parameters: Mapping[str, ParameterSpec] = field(default_factory=dict)
  parameter_values: Mapping[str, Any] = field(default_factory=dict)
  conditions: Mapping[str, Condition] = field(default_factory=dict)
  mappings: Mapping[str, Mapping[str, Mapping[str, Any]]] = field(default_factory=dict)
  resources: Tuple[ResourceDescriptor, ...] = ()
  outputs: Mapping[str, Any] = field(default_factory=dict)
  depends_on: Tuple[str, ...] = ()
  timeout: float = DEFAULT_STACK_TIMEOUT
  description: Optional[str] = None
  source: Optional[Path] = None

  def resource(self, name: str) -> Optional[ResourceDescriptor]:
    for resource in self.resources:
      if resource.name == name:
        return resource
    return None


@dataclass(frozen=True)
class StackInputs:
  """Everything submitted for one stack in one deployment attempt."""

  stack_name: str
  parameters: Mapping[str, Any]
  conditions: Mapping[str, bool]
  resources: Tuple[ResourceDescriptor, ...]
  custom_resources: Tuple[ResourceDescriptor, ...]
  outputs: Dict[str, Any] = field(default_factory=dict)
