"""Command line entry point: ``stackrunner deploy`` and ``stackrunner plan``."""
from __future__ import annotations

import argparse
import logging
import os
import shutil
import signal
import sys
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from stackrunner.backend import AwsCliBackend, LocalBackend, ProvisioningBackend
from stackrunner.coordinator import DeploymentCoordinator, DeploymentReport, PlannedStack, RetryPolicy, StackState
from stackrunner.custom_resources import DEFAULT_HANDLER_TIMEOUT, CustomResourceLifecycleManager, PhysicalIdRegistry
from stackrunner.errors import InputError
from stackrunner.graph import StackGraph
from stackrunner.handlers import default_handlers
from stackrunner.manifests import DEFAULT_GLOB, ManifestRepository, load_parameter_file
from stackrunner.parameters import ParameterResolver

LOG = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2

PALETTE_KEYS = ("heading", "root", "dependent", "arrow", "ok", "error", "reset")


class ColorMode(str, Enum):
  AUTO = "auto"
  ALWAYS = "always"
  NEVER = "never"


def _supports_color_output() -> bool:
  stream = getattr(sys.stdout, "isatty", None)
  return bool(stream and stream()) and os.environ.get("NO_COLOR") is None


def build_console_palette(requested_mode: str) -> Dict[str, str]:
  try:
    mode = ColorMode(requested_mode or ColorMode.AUTO.value)
  except ValueError:
    mode = ColorMode.AUTO

  use_color = mode is ColorMode.ALWAYS or (mode is ColorMode.AUTO and _supports_color_output())
  palette = {key: "" for key in PALETTE_KEYS}
  if use_color:
    palette.update({
      "heading": "\033[1m",
      "root": "\033[32m",
      "dependent": "\033[36m",
      "arrow": "\033[90m",
      "ok": "\033[32m",
      "error": "\033[31m",
      "reset": "\033[0m",
    })
  return palette


def _env_int(name: str, default: int) -> int:
  raw = os.environ.get(name)
  if raw is None or not raw.strip():
    return default
  try:
    return int(raw)
  except ValueError:
    LOG.warning("Ignoring %s=%r: not an integer", name, raw)
    return default


def _origin(graph: StackGraph, name: str) -> str:
  source = graph.get(name).source
  if source is None:
    return "inline"
  try:
    return str(source.relative_to(Path.cwd()))
  except ValueError:
    return str(source)


def print_dependency_summary(graph: StackGraph, palette: Optional[Dict[str, str]] = None) -> None:
  if not len(graph):
    print("No stacks selected for deployment.")
    return
  if palette is None:
    palette = {key: "" for key in PALETTE_KEYS}

  heading = palette.get("heading", "")
  reset = palette.get("reset", "")
  roots = [name for name in graph.names if not graph.dependencies(name)]
  dependents = [name for name in graph.names if graph.dependencies(name)]

  print(f"{heading}Dependency map:{reset}")
  print(f"  {heading}Root stacks:{reset}")
  if roots:
    for name in roots:
      print(f"    - {palette.get('root', '')}{name}{reset}")
  else:
    print("    (none)")

  print(f"  {heading}Dependent stacks:{reset}")
  if dependents:
    for name in dependents:
      print(f"    {palette.get('dependent', '')}{name}{reset}")
      implicit = graph.implicit_dependencies(name)
      for dependency in sorted(graph.dependencies(name), key=graph.order_index):
        suffix = ""
        if dependency in implicit:
          suffix = f" {palette.get('arrow', '')}(outputs -> {', '.join(sorted(implicit[dependency]))}){reset}"
        print(f"      {palette.get('arrow', '')}-> {reset}{palette.get('root', '')}{dependency}{reset}{suffix}")
  else:
    print("    (none)")
  print()

  print(f"{heading}Ready sets:{reset}")
  for level, names in enumerate(graph.topological_order(), 1):
    print(f"  {level}. " + ", ".join(f"{palette.get('dependent', '')}{name}{reset} ({_origin(graph, name)})" for name in names))
  print()


def _format_value(value: Any) -> str:
  if isinstance(value, (list, tuple)):
    return "[" + ", ".join(str(item) for item in value) + "]"
  return str(value)


def print_plan(planned: List[PlannedStack], palette: Optional[Dict[str, str]] = None) -> None:
  if palette is None:
    palette = {key: "" for key in PALETTE_KEYS}
  heading = palette.get("heading", "")
  reset = palette.get("reset", "")

  print(f"{heading}Plan:{reset}")
  for entry in planned:
    print(f"  [{entry.level}] {palette.get('dependent', '')}{entry.name}{reset}")
    if entry.error is not None:
      print(f"      {palette.get('error', '')}{entry.error.kind}: {entry.error}{reset}")
      continue
    if entry.parameters:
      print("      parameters:")
      for key, value in entry.parameters.items():
        print(f"        {key} = {_format_value(value)}")
    if entry.resources:
      print(f"      resources: {', '.join(entry.resources)}")
    if entry.custom_resources:
      print(f"      custom resources: {', '.join(entry.custom_resources)}")
    if entry.skipped_resources:
      print(f"      {palette.get('arrow', '')}skipped (condition false): {', '.join(entry.skipped_resources)}{reset}")
  print()


def print_report(report: DeploymentReport, palette: Optional[Dict[str, str]] = None) -> None:
  if palette is None:
    palette = {key: "" for key in PALETTE_KEYS}
  heading = palette.get("heading", "")
  reset = palette.get("reset", "")

  print(f"{heading}Deployment {report.state.value.lower()}:{reset}")
  for result in report.stacks:
    if result.state is StackState.SUCCEEDED:
      print(f"  {palette.get('ok', '')}{result.name}: {result.state.value}{reset}")
      for key, value in result.outputs.items():
        print(f"      {key} = {_format_value(value)}")
      continue
    line = f"  {palette.get('error', '')}{result.name}: {result.state.value}{reset}"
    if result.error_kind:
      line += f" ({result.error_kind}) {result.message}"
    if result.unknown_side_effects:
      line += " [side effects unknown]"
    print(line)
  print()

  for result in report.stacks:
    if result.invalid_input:
      print(f"Invalid input for {result.name}: {result.message}", file=sys.stderr)
  if report.failed:
    print(f"Completed with failures in: {', '.join(result.name for result in report.failed)}", file=sys.stderr)
  else:
    print("All stacks processed successfully.")


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
  parser.add_argument(
    "--stacks",
    default=".",
    help="Directory to search for stack manifests (default: current directory).",
  )
  parser.add_argument(
    "--glob",
    default=DEFAULT_GLOB,
    help=f"Glob pattern for manifest discovery relative to --stacks (default: {DEFAULT_GLOB}).",
  )
  parser.add_argument(
    "--parameters",
    help="Deployment parameter file: a flat mapping or a ParameterKey/ParameterValue list.",
  )
  parser.add_argument(
    "--target",
    nargs="*",
    help="Only these stacks (their dependencies are included automatically).",
  )
  parser.add_argument(
    "--region",
    default=os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION"),
    help="Region passed to the backend and exposed as AWS::Region.",
  )
  parser.add_argument(
    "--color",
    choices=[mode.value for mode in ColorMode],
    default=ColorMode.AUTO.value,
    help="Color output mode: auto (default), always, or never.",
  )
  parser.add_argument(
    "--verbose",
    action="store_true",
    help="Log at DEBUG level.",
  )


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
  parser = argparse.ArgumentParser(prog="stackrunner", description="Declarative stack orchestrator")
  subparsers = parser.add_subparsers(dest="command", required=True)

  deploy = subparsers.add_parser("deploy", help="Deploy every stack in dependency order.")
  _add_common_arguments(deploy)
  deploy.add_argument(
    "--backend",
    choices=["local", "aws"],
    default=os.environ.get("STACKRUNNER_BACKEND", "local"),
    help="Provisioning backend (default: $STACKRUNNER_BACKEND or local).",
  )
  deploy.add_argument(
    "--aws-cli",
    default="aws",
    help="AWS CLI executable name used by the aws backend (default: aws).",
  )
  deploy.add_argument(
    "--parallelism",
    type=int,
    default=_env_int("STACKRUNNER_PARALLELISM", 1),
    help="Maximum number of stacks to deploy in parallel (default: $STACKRUNNER_PARALLELISM or 1).",
  )
  deploy.add_argument(
    "--max-attempts",
    type=int,
    default=_env_int("STACKRUNNER_MAX_ATTEMPTS", RetryPolicy.max_attempts),
    help="Attempts per backend call before a throttled stack fails.",
  )
  deploy.add_argument(
    "--poll-interval",
    type=float,
    default=5.0,
    help="Seconds between backend status polls (default: 5).",
  )
  deploy.add_argument(
    "--handler-timeout",
    type=float,
    default=DEFAULT_HANDLER_TIMEOUT,
    help=f"Seconds to wait for a custom resource signal (default: {DEFAULT_HANDLER_TIMEOUT:.0f}).",
  )
  deploy.add_argument(
    "--state-file",
    default=os.environ.get("STACKRUNNER_STATE_FILE"),
    help="YAML file recording custom resource physical ids between runs.",
  )

  plan = subparsers.add_parser("plan", help="Resolve parameters and print the ready sets without deploying.")
  _add_common_arguments(plan)
  return parser.parse_args(argv)


def configure_logging(verbose: bool) -> None:
  logging.basicConfig(
    level=logging.DEBUG if verbose else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    stream=sys.stderr,
  )


def load_graph(args: argparse.Namespace) -> StackGraph:
  repository = ManifestRepository(Path(args.stacks).resolve(), args.glob)
  graph = StackGraph(repository.load()).select(args.target or None)
  graph.validate()
  return graph


def load_parameters(args: argparse.Namespace) -> Mapping[str, Any]:
  if not args.parameters:
    return {}
  path = Path(args.parameters)
  if not path.exists():
    raise FileNotFoundError(f"Parameter file '{args.parameters}' does not exist.")
  return load_parameter_file(path)


def build_resolver(args: argparse.Namespace) -> ParameterResolver:
  pseudo: Dict[str, Any] = {}
  if args.region:
    pseudo["AWS::Region"] = args.region
  return ParameterResolver(pseudo)


def build_backend(args: argparse.Namespace) -> ProvisioningBackend:
  if args.backend == "aws":
    aws_cli_path = shutil.which(args.aws_cli)
    if aws_cli_path is None:
      raise InputError(
        f"AWS CLI executable '{args.aws_cli}' was not found on PATH. "
        "Install the AWS CLI or supply --aws-cli with the full path to the executable."
      )
    return AwsCliBackend(aws_cli=aws_cli_path, region=args.region)
  return LocalBackend()


def run_plan(args: argparse.Namespace) -> int:
  graph = load_graph(args)
  parameters = load_parameters(args)
  palette = build_console_palette(args.color)
  print_dependency_summary(graph, palette)

  planned = DeploymentCoordinator(graph, LocalBackend(), resolver=build_resolver(args)).plan(parameters)
  print_plan(planned, palette)
  invalid = [entry for entry in planned if entry.error is not None]
  if invalid:
    print(f"Validation failed for: {', '.join(entry.name for entry in invalid)}", file=sys.stderr)
    return EXIT_INVALID
  return EXIT_OK


def run_deploy(args: argparse.Namespace) -> int:
  graph = load_graph(args)
  parameters = load_parameters(args)
  palette = build_console_palette(args.color)
  print_dependency_summary(graph, palette)

  lifecycle = CustomResourceLifecycleManager(
    default_handlers(),
    PhysicalIdRegistry(args.state_file),
    timeout=args.handler_timeout,
  )
  coordinator = DeploymentCoordinator(
    graph,
    build_backend(args),
    resolver=build_resolver(args),
    lifecycle=lifecycle,
    parallelism=args.parallelism,
    retry=RetryPolicy(max_attempts=max(1, args.max_attempts)),
    poll_interval=args.poll_interval,
  )

  def interrupt(signum: int, frame: Any) -> None:
    print("Interrupted; cancelling in-flight stacks.", file=sys.stderr)
    coordinator.abort()

  previous = signal.signal(signal.SIGINT, interrupt)
  try:
    report = coordinator.deploy(parameters)
  finally:
    signal.signal(signal.SIGINT, previous)

  print_report(report, palette)
  return report.exit_code


def main(argv: Optional[List[str]] = None) -> int:
  args = parse_arguments(argv)
  configure_logging(args.verbose)
  try:
    if args.command == "plan":
      return run_plan(args)
    return run_deploy(args)
  except (InputError, FileNotFoundError, yaml.YAMLError) as exc:
    print(f"Error: {exc}", file=sys.stderr)
    return EXIT_INVALID
  except Exception as exc:  # pylint: disable=broad-except
    print(f"Unhandled error: {exc}", file=sys.stderr)
    return EXIT_FAILED


if __name__ == "__main__":
  sys.exit(main())
