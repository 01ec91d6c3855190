#!/usr/bin/env python
"""Command-line interface for impersonation-controller.

This module provides the main CLI entry point, handling option parsing and
wiring the controller to the cluster.
"""

import sys
from collections.abc import Callable
from typing import Any

import click
from icecream import ic

from impersonation_controller import __version__, console, handlers
from impersonation_controller.cluster import Cluster, load_kubernetes_config
from impersonation_controller.controller import ImpersonatorConfigController
from impersonation_controller.dynamiccert import DynamicCertProvider
from impersonation_controller.exceptions import ImpersonationError
from impersonation_controller.models import (
    APP_LABEL_KEY,
    IMPERSONATION_PROXY_PORT,
    ControllerSettings,
    ReconciliationStatus,
    StrategyStatus,
)
from impersonation_controller.parsing import parse_credential_issuer_file
from impersonation_controller.proxy import tls_server_factory
from impersonation_controller.resolver import load_desired_spec, resolve_desired_state

SIGNING_CERT_PROVIDER_NAME = "impersonation-proxy-signer-ca"
_ENV_PREFIX = "IMPERSONATION"


def _parse_labels(_ctx: click.Context, _param: click.Parameter, values: tuple[str, ...]) -> dict[str, str]:
    labels: dict[str, str] = {}
    for value in values:
        key, sep, label_value = value.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected key=value, got {value!r}")
        labels[key] = label_value
    return labels


def _name_option(flag: str, default: str, help_text: str) -> Callable[..., Any]:
    envvar = f"{_ENV_PREFIX}_{flag.lstrip('-').replace('-', '_').upper()}"
    return click.option(flag, default=default, show_default=True, envvar=envvar, help=help_text)


def _settings_options(fn: Callable[..., Any]) -> Callable[..., Any]:
    """Attach the options that name the managed resources."""
    options = [
        _name_option("--namespace", "pinniped-concierge", "namespace of the managed Services and Secrets"),
        _name_option("--credential-issuer", "pinniped-concierge-config", "name of the CredentialIssuer to reconcile"),
        _name_option(
            "--load-balancer-name",
            "pinniped-concierge-impersonation-proxy-load-balancer",
            "name of the generated LoadBalancer Service",
        ),
        _name_option(
            "--cluster-ip-name",
            "pinniped-concierge-impersonation-proxy-cluster-ip",
            "name of the generated ClusterIP Service",
        ),
        _name_option(
            "--tls-secret-name",
            "pinniped-concierge-impersonation-proxy-tls-serving-certificate",
            "name of the TLS serving certificate Secret",
        ),
        _name_option(
            "--ca-secret-name",
            "pinniped-concierge-impersonation-proxy-ca-certificate",
            "name of the impersonation CA Secret",
        ),
        _name_option(
            "--signer-secret-name",
            "pinniped-concierge-impersonation-proxy-signer-ca-certificate",
            "name of the credential signing CA Secret",
        ),
        click.option(
            "--label",
            "labels",
            multiple=True,
            callback=_parse_labels,
            default=(f"{APP_LABEL_KEY}=pinniped-concierge",),
            show_default=True,
            help="label for generated objects, key=value (repeatable)",
        ),
        click.option(
            "--port",
            default=IMPERSONATION_PROXY_PORT,
            show_default=True,
            type=click.IntRange(1, 65535),
            envvar=f"{_ENV_PREFIX}_PORT",
            help="port the proxy listens on",
        ),
        click.option(
            "--context",
            required=False,
            envvar=f"{_ENV_PREFIX}_KUBE_CONTEXT",
            help="kubeconfig context when running outside the cluster",
        ),
    ]
    for option in reversed(options):
        fn = option(fn)
    return fn


def build_settings(options: dict[str, Any]) -> ControllerSettings:
    """Collect the resource naming options into ControllerSettings."""
    return ControllerSettings(
        namespace=options["namespace"],
        credential_issuer_name=options["credential_issuer"],
        load_balancer_service_name=options["load_balancer_name"],
        cluster_ip_service_name=options["cluster_ip_name"],
        tls_secret_name=options["tls_secret_name"],
        ca_secret_name=options["ca_secret_name"],
        signer_secret_name=options["signer_secret_name"],
        labels=dict(options["labels"]),
        port=options["port"],
    )


def build_controller(options: dict[str, Any]) -> ImpersonatorConfigController:
    """Connect to the cluster and create the controller."""
    settings = build_settings(options)
    ic(settings)
    load_kubernetes_config(context=options.get("context"))
    return ImpersonatorConfigController(
        settings,
        Cluster(settings.namespace),
        tls_server_factory,
        DynamicCertProvider(SIGNING_CERT_PROVIDER_NAME),
    )


def print_status(status: ReconciliationStatus) -> None:
    """Print a summary panel for a published status."""
    items = {
        "Status": status.status.value,
        "Reason": status.reason.value,
        "Message": status.message,
    }
    if status.endpoint:
        items["Endpoint"] = status.endpoint
    console.newline()
    console.summary_panel("Impersonation Proxy", items, failed=status.status != StrategyStatus.SUCCESS)


@click.group(help="Reconcile the impersonation proxy of a Kubernetes cluster", invoke_without_command=True)
@click.option("--version", "-v", required=False, is_flag=True, help="print version")
@click.option("--debug", required=False, is_flag=True, help="print debug information")
@click.pass_context
def cli(ctx: click.Context, version: bool, debug: bool) -> None:
    """Process global options.

    Args:
        ctx: Click context.
        version: Print version and exit.
        debug: Enable debug output.

    """
    if not debug:
        ic.disable()
    else:
        ic.enable()

    if version:
        click.echo(__version__)
        ctx.exit(0)

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command(help="Run the controller until interrupted")
@_settings_options
def run(**options: Any) -> None:
    """Run the controller as a kopf operator.

    Args:
        **options: Resource naming options.

    """
    try:
        controller = build_controller(options)
    except ImpersonationError as e:
        console.error(f"Cluster connection failed: {e}")
        sys.exit(1)

    handlers.run(controller)


@cli.command(help="Run a single sync pass and print the resulting status")
@_settings_options
def sync(**options: Any) -> None:
    """Run one sync pass; the proxy server is stopped again before exiting.

    Args:
        **options: Resource naming options.

    """
    try:
        controller = build_controller(options)
    except ImpersonationError as e:
        console.error(f"Cluster connection failed: {e}")
        sys.exit(1)

    failed = False
    try:
        controller.sync()
    except Exception as e:  # noqa: BLE001
        console.error(f"Sync failed: {e}")
        failed = True

    try:
        controller.proxy.ensure_stopped()
    except Exception as e:  # noqa: BLE001
        console.error(f"Stopping impersonation proxy failed: {e}")
        failed = True

    if controller.last_status is not None:
        print_status(controller.last_status)
    if failed:
        sys.exit(1)


@cli.command(help="Validate a CredentialIssuer manifest offline")
@click.argument("file", type=click.Path(dir_okay=False))
@click.option(
    "--control-plane/--no-control-plane",
    default=False,
    show_default=True,
    help="assume the cluster has visible control plane nodes",
)
def validate(file: str, control_plane: bool) -> None:
    """Validate a CredentialIssuer manifest and print the resolved desired state.

    Args:
        file: Path to the manifest.
        control_plane: Whether auto mode should see a control plane.

    Raises:
        click.ClickException: If the manifest is invalid.

    """
    try:
        spec = load_desired_spec(parse_credential_issuer_file(file))
    except ImpersonationError as e:
        raise click.ClickException(str(e)) from None

    state = resolve_desired_state(spec, has_control_plane=control_plane)
    ic(spec, state)

    console.summary_panel(
        "Desired State",
        {
            "Mode": spec.mode,
            "Service type": spec.service_type,
            "External endpoint": spec.external_endpoint or "-",
            "Impersonator": str(state.should_have_impersonator),
            "LoadBalancer": str(state.should_have_load_balancer),
            "ClusterIP": str(state.should_have_cluster_ip),
            "TLS secret": str(state.should_have_tls_secret),
        },
    )


if __name__ == "__main__":
    cli()
