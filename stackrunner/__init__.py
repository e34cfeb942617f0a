"""Declarative multi-stack orchestration."""
from __future__ import annotations

from stackrunner.backend import AwsCliBackend, JobResult, JobStatus, LocalBackend, ProvisioningBackend
from stackrunner.coordinator import DeploymentCoordinator, DeploymentReport, RetryPolicy, StackState
from stackrunner.custom_resources import CustomResourceHandler, CustomResourceLifecycleManager, PhysicalIdRegistry
from stackrunner.graph import StackGraph
from stackrunner.parameters import ParameterResolver

__version__ = "0.1.0"

__all__ = [
  "AwsCliBackend",
  "CustomResourceHandler",
  "CustomResourceLifecycleManager",
  "DeploymentCoordinator",
  "DeploymentReport",
  "JobResult",
  "JobStatus",
  "LocalBackend",
  "ParameterResolver",
  "PhysicalIdRegistry",
  "ProvisioningBackend",
  "RetryPolicy",
  "StackGraph",
  "StackState",
]
