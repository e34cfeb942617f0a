"""Error taxonomy shared by the orchestration engine."""
from __future__ import annotations

from typing import Iterable, List, Optional


class OrchestratorError(Exception):
  """Base class for every error raised by stackrunner."""

  @property
  def kind(self) -> str:
    return type(self).__name__


class InputError(OrchestratorError):
  """Problem with the supplied definitions; fatal before any provisioning."""


class ManifestError(InputError):
  pass


class TemplateError(InputError):
  pass


class UnknownStackError(InputError):
  def __init__(self, stack_name: str, missing: str) -> None:
    super().__init__(f"Stack '{stack_name}' depends on unknown stack '{missing}'.")
    self.stack_name = stack_name
    self.missing = missing


class CyclicDependencyError(InputError):
  def __init__(self, cycle: Iterable[str]) -> None:
    self.cycle: List[str] = list(cycle)
    super().__init__(f"Cyclic dependency detected: {' -> '.join(self.cycle)}")


class ImplicitDependencyMissingError(InputError):
  def __init__(self, stack_name: str, parameter: str, referenced: str) -> None:
    super().__init__(
      f"Stack '{stack_name}' parameter '{parameter}' references outputs of '{referenced}' "
      f"but '{referenced}' is not listed in dependsOn."
    )
    self.stack_name = stack_name
    self.parameter = parameter
    self.referenced = referenced


class StackError(OrchestratorError):
  """Error scoped to a single stack; never aborts unrelated stacks."""

  unknown_side_effects = False


class ValidationError(StackError):
  pass


class ParameterValidationError(ValidationError):
  def __init__(self, parameter: str, constraint: str, detail: str = "") -> None:
    message = f"Parameter '{parameter}' violates {constraint}"
    if detail:
      message = f"{message}: {detail}"
    super().__init__(message)
    self.parameter = parameter
    self.constraint = constraint


class UnresolvedReferenceError(ValidationError):
  def __init__(self, reference: str, context: Optional[str] = None) -> None:
    message = f"Reference '{reference}' cannot be resolved"
    if context:
      message = f"{message} in {context}"
    super().__init__(message)
    self.reference = reference


class MissingDependencyOutputError(StackError):
  def __init__(self, stack_name: str, output: str) -> None:
    super().__init__(f"Output '{output}' of stack '{stack_name}' is not available.")
    self.stack_name = stack_name
    self.output = output


class StateTransitionError(OrchestratorError):
  pass


class BackendError(StackError):
  pass


class TransientBackendError(BackendError):
  """Retryable backend failure such as throttling."""


class ProvisioningFailedError(BackendError):
  pass


class StackTimeoutError(StackError):
  pass


class StackCancelledError(StackError):
  pass


class DependencyFailedError(StackError):
  def __init__(self, stack_name: str, failed: Iterable[str]) -> None:
    self.failed = sorted(failed)
    super().__init__(
      f"Stack '{stack_name}' was not started because dependencies failed: {', '.join(self.failed)}"
    )


class HandlerError(StackError):
  def __init__(self, message: str, logical_id: Optional[str] = None) -> None:
    super().__init__(message)
    self.logical_id = logical_id


class HandlerSignaledFailure(HandlerError):
  pass


class HandlerTimeoutError(HandlerError):
  unknown_side_effects = True
