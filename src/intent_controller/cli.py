"""AppIntent operator CLI (intentctl).

Usage:
    intentctl run                        # Run the operator
    intentctl reconcile NAMESPACE NAME   # Run one reconciliation pass
    intentctl render FILE                # Print the resources an intent produces
    intentctl config                     # Print the effective configuration
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import sys
from pathlib import Path
from typing import Any

import click
import yaml

from .auth import build_security_policy_spec
from .config import Config, ConfigurationError
from .conditions import REASON_INVALID_TLS_MODE
from .errors import PreconditionError, ReconcileError
from .main import build_reconciler, main, setup_logging
from .manifest import ManifestLoadError, load_intent
from .models import AppIntent, TLSMode
from .naming import (
    COMPONENT_AUTH,
    COMPONENT_ROUTING,
    COMPONENT_TLS,
    certificate_name,
    certificate_secret_name,
    route_name,
    security_policy_name,
    standard_labels,
)
from .platform import CERTIFICATE, HTTP_ROUTE, SECURITY_POLICY, ResourceKind
from .reconciler import build_providers
from .routing import (
    build_certificate_spec,
    build_route_spec,
    route_annotations,
    tls_enabled,
    tls_mode,
    wildcard_tls_secret,
)

EXIT_CONFIG_ERROR = 2


def _load_config() -> Config:
    try:
        return Config.from_env()
    except ConfigurationError as e:
        click.echo(str(e), err=True)
        sys.exit(EXIT_CONFIG_ERROR)


def _manifest(
    kind: ResourceKind,
    intent: AppIntent,
    name: str,
    component: str,
    spec: dict[str, Any],
    annotations: dict[str, str] | None = None,
) -> dict[str, Any]:
    metadata: dict[str, Any] = {
        "name": name,
        "namespace": intent.namespace,
        "labels": standard_labels(intent, component),
    }
    if annotations:
        metadata["annotations"] = annotations
    return {"apiVersion": kind.api_version, "kind": kind.kind, "metadata": metadata, "spec": spec}


def render_intent(intent: AppIntent, config: Config) -> list[dict[str, Any]]:
    """Build the downstream resources an intent converges to.

    Secrets and identity provider state are not rendered.

    Raises:
        ReconcileError: If the intent names an unknown provider or an invalid TLS mode.
    """
    documents: list[dict[str, Any]] = []
    if intent.spec.routing is not None:
        tls_secret = None
        if tls_enabled(intent):
            mode = tls_mode(intent)
            if mode == TLSMode.PER_HOST.value:
                documents.append(
                    _manifest(
                        CERTIFICATE,
                        intent,
                        certificate_name(intent),
                        COMPONENT_TLS,
                        build_certificate_spec(intent),
                    )
                )
                tls_secret = f"{intent.namespace}/{certificate_secret_name(intent)}"
            elif mode == TLSMode.WILDCARD.value:
                tls_secret = wildcard_tls_secret()
            else:
                raise PreconditionError(REASON_INVALID_TLS_MODE, f"unsupported TLS mode {mode!r}")
        documents.append(
            _manifest(
                HTTP_ROUTE,
                intent,
                route_name(intent),
                COMPONENT_ROUTING,
                build_route_spec(intent),
                route_annotations(intent, tls_secret),
            )
        )

    auth = intent.spec.auth
    if auth is not None and auth.enabled:
        provider = build_providers(config).resolve(auth.provider)
        scopes = list(auth.scopes) or list(config.default_scopes)
        documents.append(
            _manifest(
                SECURITY_POLICY,
                intent,
                security_policy_name(intent),
                COMPONENT_AUTH,
                build_security_policy_spec(
                    intent,
                    provider.get_issuer_url(intent),
                    provider.get_client_id(intent),
                    scopes,
                ),
            )
        )
    return documents


@click.group()
@click.version_option(version="0.1.0", prog_name="intentctl")
def cli() -> None:
    """AppIntent operator CLI (intentctl).

    Runs the operator and inspects what it would do.

    \b
    Quick Start:
        intentctl render app.yaml           # Preview generated resources
        intentctl reconcile my-ns my-app    # Converge one intent now
    """
    pass


@cli.command()
@click.pass_context
def run(ctx: click.Context) -> None:
    """Run the operator until interrupted."""
    ctx.exit(asyncio.run(main()))


@cli.command()
@click.argument("namespace")
@click.argument("name")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
def reconcile(namespace: str, name: str, as_json: bool) -> None:
    """Run a single reconciliation pass for NAMESPACE/NAME."""
    config = _load_config()
    setup_logging(json_output=config.enable_json_logging)
    try:
        config, reconciler = build_reconciler(config)
    except ConfigurationError as e:
        click.echo(str(e), err=True)
        sys.exit(EXIT_CONFIG_ERROR)

    result = reconciler.reconcile(namespace, name)
    summary: dict[str, Any] = {
        "intent": result.key,
        "state": result.state.value,
        "requeue_after": result.requeue_after,
        "status_written": result.status_written,
        "duration_seconds": round(result.duration_seconds, 3),
    }
    if result.error is not None:
        summary["reason"] = result.error.reason
        summary["error"] = result.error.message

    if as_json:
        click.echo(json.dumps(summary))
    else:
        for key, value in summary.items():
            click.echo(f"{key}: {value}")

    if not result.success:
        sys.exit(1)


@cli.command()
@click.argument("manifest", type=click.Path(path_type=Path))
def render(manifest: Path) -> None:
    """Print the HTTPRoute, Certificate and SecurityPolicy for MANIFEST."""
    config = _load_config()
    try:
        intent = load_intent(manifest)
        documents = render_intent(intent, config)
    except ManifestLoadError as e:
        raise click.ClickException(str(e)) from e
    except ReconcileError as e:
        raise click.ClickException(f"{e.reason}: {e.message}") from e

    click.echo(yaml.safe_dump_all(documents, sort_keys=False), nl=False)


@cli.command(name="config")
def show_config() -> None:
    """Print the effective configuration (credentials redacted)."""
    config = _load_config()
    data = dataclasses.asdict(config)
    data["default_scopes"] = list(config.default_scopes)
    keycloak = data["keycloak"]
    keycloak["admin_password"] = "***" if keycloak["admin_password"] else ""
    keycloak["issuer_url"] = config.keycloak.issuer_url()
    click.echo(yaml.safe_dump(data, sort_keys=False), nl=False)


def entrypoint() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    entrypoint()
