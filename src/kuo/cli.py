"""Command line entry point.

Example:
    $ kuo operator --kube-addr https://10.0.0.1:6443 --smtp-url smtps://mail.example.com
    $ kuo crds deploy/crds.yaml
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Any

import click
import kopf
import pydantic
import structlog

from kuo.config import OperatorConfig, load_config
from kuo.controller.context import OperatorContext
from kuo.controller.csr import CSRReconciler
from kuo.controller.managed_user import ManagedUserReconciler
from kuo.controller.runtime import register_controllers, register_startup
from kuo.crd import build_crd, render_crds
from kuo.errors import KuoError
from kuo.kube.client import ResourceClient
from kuo.logging import configure_logging
from kuo.mail import Mailer
from kuo.server import serve

logger = structlog.get_logger(__name__)


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(package_name="kuo", prog_name="kuo")
def cli() -> None:
    """kuo - Kubernetes User Operator.

    Provisions certificate-based cluster users declared as ManagedUser objects.
    """


# =============================================================================
# kuo operator
# =============================================================================


@cli.command("operator")
@click.option("--signer-name", help="Signer that should sign every CSR created by the operator.")
@click.option("--kube-addr", help="Kubernetes API server address written into kubeconfigs.")
@click.option("--cluster-name", help="Display name of the cluster.")
@click.option("--default-cert-name", help="ConfigMap holding the cluster root certificate authority.")
@click.option("--default-cert-key", help="Key of the root certificate authority in the ConfigMap.")
@click.option("--namespace", help="Namespace of user Secrets and the root CA ConfigMap.")
@click.option("--csr-prefix", help="Prefix of CSR names.")
@click.option("--key-size", type=int, help="RSA key size in bits.")
@click.option("--kubeconfig", "kubeconfig_path", type=click.Path(dir_okay=False), help="Kubeconfig to use.")
@click.option("--context", help="Kubeconfig context to use.")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    help="Minimum log level.",
)
@click.option("--log-json/--log-console", default=None, help="Log format.")
@click.option("--smtp-url", help="smtp:// or smtps:// server URL. Enables mail delivery.")
@click.option("--smtp-port", type=int, help="SMTP server port.")
@click.option("--smtp-user", help="SMTP username.")
@click.option("--smtp-password", help="SMTP password.")
@click.option("--smtp-from-email", help="Sender address.")
@click.option("--smtp-from-name", help="Sender display name.")
@click.option("--server-host", help="Health endpoint bind host.")
@click.option("--server-port", type=int, help="Health endpoint bind port.")
def operator_command(**options: Any) -> None:
    """Run the ManagedUser and CSR controllers.

    Every option can also be set through a KUO_OPERATOR_* environment
    variable (KUO_OPERATOR_SMTP_* and KUO_OPERATOR_SERVER_* for the
    grouped ones).
    """
    smtp_overrides = {
        key.removeprefix("smtp_"): options.pop(key) for key in list(options) if key.startswith("smtp_")
    }
    server_overrides = {
        key.removeprefix("server_"): options.pop(key) for key in list(options) if key.startswith("server_")
    }
    if options.get("log_level"):
        options["log_level"] = options["log_level"].upper()

    try:
        config = load_config(options, smtp_overrides=smtp_overrides, server_overrides=server_overrides)
    except pydantic.ValidationError as e:
        click.echo(f"Error: Invalid configuration:\n{e}", err=True)
        raise SystemExit(1) from e

    configure_logging(config.log_level, json_output=config.log_json)

    try:
        asyncio.run(run_operator(config))
    except KuoError as e:
        logger.error("operator_startup_failed", error=e.message)
        click.echo(f"Error: {e.message}", err=True)
        raise SystemExit(1) from e
    except KeyboardInterrupt:
        logger.info("operator_interrupted")


async def run_operator(config: OperatorConfig) -> None:
    """Connect to the cluster and run the controllers and the health server.

    Returns when either the operator or the health server stops.

    Raises:
        ResourceClientError: If the cluster cannot be reached.
        EmailDeliveryError: If SMTP verification fails.
    """
    client = ResourceClient(config)
    client.connect()
    try:
        await client.verify()

        mailer: Mailer | None = None
        if config.smtp is not None:
            mailer = Mailer(config.smtp, cluster_name=config.cluster_name)
            if config.smtp.verify_on_startup:
                await mailer.verify()
        else:
            logger.warning("smtp_not_configured")

        ctx = OperatorContext(config=config, client=client, mailer=mailer)
        registry = kopf.OperatorRegistry()
        register_startup(registry)
        register_controllers(
            registry,
            managed_users=ManagedUserReconciler(ctx),
            csrs=CSRReconciler(ctx),
            operator_name=config.operator_name,
        )

        # kopf authenticates through the kubernetes client's default loader
        if config.kubeconfig_path:
            os.environ["KUBECONFIG"] = config.kubeconfig_path

        logger.info(
            "operator_starting",
            namespace=client.namespace,
            signer_name=config.signer_name,
            mail_enabled=mailer is not None,
        )
        tasks = {
            asyncio.create_task(kopf.operator(registry=registry, clusterwide=True, standalone=True)),
            asyncio.create_task(serve(config.server)),
        }
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            task.result()
        logger.info("operator_stopped")
    finally:
        client.close()


# =============================================================================
# kuo crds
# =============================================================================


@cli.command("crds")
@click.argument("out_file", required=False, type=click.Path(dir_okay=False, path_type=Path))
def crds_command(out_file: Path | None) -> None:
    """Print the CustomResourceDefinitions, or write them to OUT_FILE."""
    crd = build_crd()
    click.echo(f"- Adding {crd['spec']['group']}/{crd['spec']['names']['kind']}", err=True)
    rendered = render_crds()
    if out_file is None:
        click.echo(rendered, nl=False)
        return
    out_file.write_text(rendered)


__all__ = ["cli", "run_operator"]
