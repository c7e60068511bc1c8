"""ciliumctl CLI implementation."""

import json
import logging
from typing import Any, Dict, Optional, Tuple

import click
from rich.console import Console
from rich.table import Table

from ciliumctl.config import get_config_manager
from ciliumctl.features import initialize_features
from ciliumctl.features.base import BaseFeature, FeatureContext, async_to_sync, feature_registry
from ciliumctl.shared import debug
from ciliumctl.shared.errors import FeatureError, PlanOrderError
from ciliumctl.shared.models import DesiredState, FeatureKind, ObservedState
from ciliumctl.teardown import TeardownOrchestrator, uninstall_plan

logger = logging.getLogger(__name__)

# Parameters that shape the DesiredState rather than the feature options.
_DESIRED_FIELDS = (
    "version",
    "values",
    "wait",
    "wait_timeout",
    "reuse_values",
    "reset_values",
    "reset_then_reuse_values",
)


def _fail(message: str) -> None:
    click.echo(f"Error: {message}", err=True)
    raise SystemExit(1)


def _parse_params(params: Optional[str], param: Tuple[str, ...]) -> Dict[str, Any]:
    kwargs: Dict[str, Any] = {}

    if params and param:
        _fail("Provide parameters either via --params JSON or -P key=value, not both.")

    if params:
        try:
            kwargs = json.loads(params)
        except json.JSONDecodeError as e:
            _fail(f"Invalid JSON parameters: {e}")
        if not isinstance(kwargs, dict):
            _fail("--params must be a JSON object")

    for p in param:
        if "=" not in p:
            _fail(f"Invalid parameter format '{p}'. Use key=value")
        key, value = p.split("=", 1)
        # Try to parse as JSON, fallback to string
        try:
            kwargs[key] = json.loads(value)
        except json.JSONDecodeError:
            kwargs[key] = value
    return kwargs


def _get_feature(name: str) -> BaseFeature:
    try:
        kind = FeatureKind.from_string(name)
    except ValueError as e:
        _fail(f"{e}. Use 'list-features' to see available features.")
    return feature_registry.require(kind)


def _feature_context(obj: Dict[str, Any]) -> FeatureContext:
    settings = get_config_manager().load_config()
    for key in ("kubeconfig", "context"):
        if obj.get(key):
            settings[key] = obj[key]
    ctx = FeatureContext.from_config(settings, backend=obj.get("backend"))
    if obj.get("waiter") is not None:
        ctx.waiter = obj["waiter"]
    return ctx


def _build_desired(
    feature: BaseFeature, kwargs: Dict[str, Any], ctx: FeatureContext
) -> DesiredState:
    kwargs = dict(kwargs)
    namespace = kwargs.pop("namespace", None) or ctx.namespace
    release = kwargs.pop("release", "")
    if not release and feature.kind is FeatureKind.INSTALL:
        release = ctx.settings.get("helm_release", "")

    overrides = kwargs.pop("set", [])
    if isinstance(overrides, str):
        overrides = [overrides]

    fields = {name: kwargs.pop(name) for name in _DESIRED_FIELDS if name in kwargs}
    if not any(
        fields.get(name) for name in ("reuse_values", "reset_values", "reset_then_reuse_values")
    ):
        fields["reset_then_reuse_values"] = feature.reset_then_reuse_by_default
    fields["overrides"] = [str(item) for item in overrides]

    return feature.desired_state(namespace, kwargs, release=release, **fields)


def _echo_state(observed: ObservedState) -> None:
    click.echo(json.dumps(observed.to_dict(), indent=2, default=str))


@click.group(help="ciliumctl - Reconcile Cilium features on a Kubernetes cluster.")
@click.option("--verbose", "-v", is_flag=True, help="Trace every backend command.")
@click.option("--kubeconfig", default=None, help="Path to the kubeconfig file.")
@click.option("--context", "kube_context", default=None, help="kubeconfig context to use.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, kubeconfig: Optional[str], kube_context: Optional[str]) -> None:
    """Root command for the ciliumctl CLI."""
    debug.configure_root()
    if verbose:
        debug.enable()
    initialize_features()
    ctx.ensure_object(dict)
    if kubeconfig:
        ctx.obj["kubeconfig"] = kubeconfig
    if kube_context:
        ctx.obj["context"] = kube_context


@cli.command(help="List manageable features and their options.")
def list_features() -> None:
    """Display the feature catalog with option descriptions."""
    features = feature_registry.list_all()
    if not features:
        click.echo("No features registered.")
        return

    click.echo("Available features:")
    for feature in features:
        click.echo(f"\n- {feature.kind.value}")
        click.echo(f"  Description: {feature.description}")
        schema = feature.get_schema()
        if schema.get("properties"):
            click.echo("  Options:")
            for option, details in schema["properties"].items():
                required = option in schema.get("required", [])
                req_str = " (required)" if required else " (optional)"
                click.echo(f"    - {option}: {details.get('type', 'any')}{req_str}")
                if "description" in details:
                    click.echo(f"      {details['description']}")


@cli.command(help="Show the option schema of a feature.")
@click.argument("feature_name")
def describe(feature_name: str) -> None:
    """Display detailed information about a feature."""
    feature = _get_feature(feature_name)

    click.echo(f"Feature: {feature.kind.value}")
    click.echo(f"Description: {feature.description}")
    if feature.default_version:
        click.echo(f"Default version: {feature.default_version}")
    click.echo("\nSchema:")
    click.echo(json.dumps(feature.get_schema(), indent=2))


_params_option = click.option(
    "--params",
    "-p",
    help="JSON body, e.g. -p '{\"key\":\"enable-l7-proxy\",\"value\":\"true\"}'",
)
_param_option = click.option(
    "--param",
    "-P",
    multiple=True,
    help="Add key=value parameters (repeat for multiple values).",
)


@cli.command(help="Create a feature, or update it when it already exists.")
@click.argument("feature_name")
@_params_option
@_param_option
@click.option(
    "--mode",
    type=click.Choice(["auto", "create", "update"]),
    default="auto",
    show_default=True,
    help="auto reads the feature first and updates it if present.",
)
@click.option("--values-file", type=click.File("r"), default=None, help="Helm values YAML file.")
@click.pass_obj
def apply(
    obj: Dict[str, Any],
    feature_name: str,
    params: Optional[str],
    param: Tuple[str, ...],
    mode: str,
    values_file,
) -> None:
    """Apply desired state for a feature."""
    feature = _get_feature(feature_name)
    kwargs = _parse_params(params, param)
    if values_file is not None:
        kwargs["values"] = values_file.read()

    async def run() -> ObservedState:
        ctx = _feature_context(obj)
        desired = _build_desired(feature, kwargs, ctx)
        action = mode
        if action == "auto":
            current = await feature.read(ctx, desired.identity, desired.options)
            action = "create" if current.gone else "update"
        logger.debug("%s %s", action, desired.identity)
        if action == "create":
            return await feature.create(ctx, desired)
        return await feature.update(ctx, desired)

    try:
        observed = async_to_sync(run)()
    except FeatureError as e:
        _fail(str(e))
    _echo_state(observed)


@cli.command(help="Show the live state of a feature.")
@click.argument("feature_name")
@_params_option
@_param_option
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of a table.")
@click.pass_obj
def read(obj: Dict[str, Any], feature_name: str, params: Optional[str], param: Tuple[str, ...], as_json: bool) -> None:
    """Read a feature and render it."""
    feature = _get_feature(feature_name)
    kwargs = _parse_params(params, param)

    async def run() -> ObservedState:
        ctx = _feature_context(obj)
        desired = _build_desired(feature, kwargs, ctx)
        return await feature.read(ctx, desired.identity, desired.options)

    try:
        observed = async_to_sync(run)()
    except FeatureError as e:
        _fail(str(e))

    if as_json:
        _echo_state(observed)
        return

    table = Table()
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("identity", str(observed.identity))
    table.add_row("status", observed.status.value)
    table.add_row("lifecycle", observed.lifecycle.value)
    table.add_row("present", "no" if observed.gone else "yes")
    if observed.version:
        table.add_row("version", observed.version)
    for key, value in sorted(observed.details.items()):
        table.add_row(key, str(value))
    for warning in observed.warnings:
        table.add_row("warning", f"[yellow]{warning}[/yellow]")
    Console().print(table)


@cli.command(help="Print the user supplied Helm values of the Cilium release.")
@click.option("--namespace", "-n", default=None, help="Namespace of the release.")
@click.option("--release", default=None, help="Helm release name.")
@click.pass_obj
def values(obj: Dict[str, Any], namespace: Optional[str], release: Optional[str]) -> None:
    """Dump release values as YAML."""
    feature = feature_registry.require(FeatureKind.INSTALL)

    async def run() -> str:
        ctx = _feature_context(obj)
        identity = feature.identity_for(
            namespace or ctx.namespace, release=release or ctx.settings.get("helm_release", "")
        )
        return await ctx.backend.read_values(identity)

    try:
        click.echo(async_to_sync(run)())
    except FeatureError as e:
        _fail(str(e))


@cli.command(help="Remove a single feature.")
@click.argument("feature_name")
@_params_option
@_param_option
@click.pass_obj
def delete(obj: Dict[str, Any], feature_name: str, params: Optional[str], param: Tuple[str, ...]) -> None:
    """Delete a feature; already absent features are fine."""
    feature = _get_feature(feature_name)
    kwargs = _parse_params(params, param)

    async def run() -> str:
        ctx = _feature_context(obj)
        desired = _build_desired(feature, kwargs, ctx)
        await feature.delete(ctx, desired.identity, desired.options)
        return str(desired.identity)

    try:
        identity = async_to_sync(run)()
    except FeatureError as e:
        _fail(str(e))
    click.echo(f"Deleted {identity}")


@cli.command(help="Tear Cilium down: test namespace, Hubble relay, then the release.")
@click.option("--namespace", "-n", default=None, help="Namespace of the Cilium release.")
@click.option("--release", default=None, help="Helm release name.")
@click.option("--test-namespace", default=None, help="Connectivity test namespace to remove first.")
@click.option("--timeout", type=float, default=None, help="Deadline for the whole teardown in seconds.")
@click.pass_obj
def uninstall(
    obj: Dict[str, Any],
    namespace: Optional[str],
    release: Optional[str],
    test_namespace: Optional[str],
    timeout: Optional[float],
) -> None:
    """Run the standard teardown plan."""
    feature = feature_registry.require(FeatureKind.INSTALL)

    async def run():
        ctx = _feature_context(obj)
        install_identity = feature.identity_for(
            namespace or ctx.namespace, release=release or ctx.settings.get("helm_release", "")
        )
        plan = uninstall_plan(ctx, install_identity, test_namespace=test_namespace)
        deadline = timeout if timeout is not None else float(ctx.settings.get("teardown_timeout", 300.0))
        return await TeardownOrchestrator(ctx).teardown(plan, deadline)

    try:
        completed = async_to_sync(run)()
    except (FeatureError, PlanOrderError) as e:
        _fail(str(e))
    for name in completed:
        click.echo(f"✓ {name}")
    click.echo("Cilium uninstalled.")


@cli.group(help="Inspect and change persisted settings.")
def config() -> None:
    """Configuration commands."""


@config.command("show")
def show_config() -> None:
    """Show current configuration."""
    config_manager = get_config_manager()
    try:
        current = config_manager.load_config()
    except FeatureError as e:
        _fail(str(e))

    click.echo("Current configuration:")
    click.echo(json.dumps(current, indent=2))


@config.command("set", help="Persist a setting, e.g. 'config set wait_timeouts.install 90'.")
@click.argument("key")
@click.argument("value")
def set_config(key: str, value: str) -> None:
    """Store one setting in the config file."""
    config_manager = get_config_manager()
    try:
        config_manager.set_value(key, value)
    except (FeatureError, ValueError) as e:
        _fail(str(e))
    click.echo(f"Set {key} = {value}")


def main():
    """Main entry point for CLI."""
    cli()


if __name__ == "__main__":
    main()
