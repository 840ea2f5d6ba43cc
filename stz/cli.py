"""
CLI interface for the CloudNativePG scale-to-zero sidecar.
"""

import asyncio
import json
import sys
from datetime import timedelta
from io import StringIO
from typing import List, Optional

import click
import yaml
from loguru import logger
from rich.console import Console
from rich.table import Table

from . import __version__
from .errors import ClusterNotFoundError
from .injection import PluginConfig, ResourceConfig, reconcile_pod
from .models import (
    CNPG_GROUP,
    CNPG_VERSION,
    Backup,
    ClusterRef,
    PostgresCluster,
    ScaleToZeroConfig,
    ScheduledBackup,
    SidecarSettings,
)

console = Console()

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def setup_logging(log_level: str) -> str:
    """
    Set up logging configuration.

    Args:
        log_level: Log level to use, case-insensitive

    Returns:
        The log level that was set
    """
    log_level = log_level.upper()
    logger.remove()  # Remove default handler

    # Format string depends on log level
    if log_level == "DEBUG":
        format_string = (
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
        )
    else:
        format_string = "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <level>{message}</level>"

    logger.add(
        sys.stderr,
        level=log_level,
        format=format_string,
        backtrace=log_level == "DEBUG",  # Only show tracebacks in DEBUG mode
        diagnose=log_level == "DEBUG",  # Only show variables in DEBUG mode
    )

    return log_level


def generate_status_report(
    cluster: PostgresCluster,
    scheduled_backup: Optional[ScheduledBackup],
    backups: List[Backup],
    output_format: str = "text",
) -> str:
    """
    Generate a report of the scale-to-zero state of a cluster.

    Args:
        cluster: The cluster as read from the API
        scheduled_backup: The cluster's scheduled backup, if any
        backups: Backups taken for the cluster
        output_format: Output format (text, json, yaml)

    Returns:
        Report string
    """
    config = ScaleToZeroConfig.from_annotations(cluster.annotations)

    if output_format in ("json", "yaml"):
        report_data = {
            "cluster": {
                "name": cluster.name,
                "namespace": cluster.namespace,
                "phase": cluster.phase,
                "current_primary": cluster.current_primary,
                "hibernated": cluster.is_hibernated,
            },
            "scale_to_zero": {
                "enabled": config.enabled,
                "inactivity_minutes": config.inactivity_minutes,
            },
            "scheduled_backup": {
                "name": scheduled_backup.name,
                "schedule": scheduled_backup.schedule,
                "suspended": bool(scheduled_backup.suspend),
            } if scheduled_backup else None,
            "backups": [
                {
                    "name": b.name,
                    "phase": b.phase,
                    "method": b.method,
                    "started_at": b.started_at.isoformat() if b.started_at else None,
                    "stopped_at": b.stopped_at.isoformat() if b.stopped_at else None,
                }
                for b in backups
            ],
        }
        if output_format == "json":
            return json.dumps(report_data, indent=2)
        return yaml.dump(report_data, default_flow_style=False, sort_keys=False)

    # text format
    summary_table = Table(title=f"Scale to Zero: {cluster.namespace}/{cluster.name}", show_header=True, header_style="bold magenta")
    summary_table.add_column("Property", style="cyan")
    summary_table.add_column("Value", style="green")

    summary_table.add_row("Phase", cluster.phase or "unknown")
    summary_table.add_row("Current Primary", cluster.current_primary or "not set")
    summary_table.add_row("Scale to Zero", "enabled" if config.enabled else "disabled")
    summary_table.add_row("Inactivity Minutes", str(config.inactivity_minutes))
    summary_table.add_row("Hibernated", "[yellow]yes[/yellow]" if cluster.is_hibernated else "no")
    if scheduled_backup:
        summary_table.add_row(
            "Scheduled Backup",
            f"{scheduled_backup.name} ({'suspended' if scheduled_backup.suspend else 'active'})",
        )
    else:
        summary_table.add_row("Scheduled Backup", "none")

    backups_table = Table(title="Backups", show_header=True, header_style="bold magenta")
    backups_table.add_column("Name", style="cyan")
    backups_table.add_column("Phase", style="green")
    backups_table.add_column("Method", style="blue")
    backups_table.add_column("Started", style="yellow")
    backups_table.add_column("Stopped", style="yellow")

    for b in sorted(backups, key=lambda b: b.started_at.timestamp() if b.started_at else 0, reverse=True):
        backups_table.add_row(
            b.name,
            b.phase,
            b.method or "",
            b.started_at.strftime("%Y-%m-%d %H:%M:%S") if b.started_at else "",
            b.stopped_at.strftime("%Y-%m-%d %H:%M:%S") if b.stopped_at else "",
        )

    # Render tables to string
    temp_console = Console(file=StringIO(), width=120)
    temp_console.print(summary_table)
    temp_console.print("\n")
    temp_console.print(backups_table)
    return temp_console.file.getvalue()


def _exit_with_error(e: Exception, log_level: str) -> None:
    # Simplified error message without tracebacks outside DEBUG mode
    error_msg = str(e)
    if hasattr(e, "__module__") and e.__module__ != "builtins":
        error_msg = f"{e.__class__.__name__}: {error_msg}"

    logger.error(f"Error: {error_msg}")
    if log_level == "DEBUG":
        logger.exception("Detailed traceback:")
    sys.exit(1)


@click.group(invoke_without_command=True)
@click.version_option(version=__version__, prog_name="stz")
@click.pass_context
def cli(ctx):
    """Scale-to-zero sidecar for CloudNativePG clusters."""
    pass


@cli.command()
@click.option("--namespace", required=True, envvar="NAMESPACE", help="Namespace of the monitored cluster")
@click.option("--cluster-name", required=True, envvar="CLUSTER_NAME", help="Name of the monitored cluster")
@click.option("--pod-name", required=True, envvar="POD_NAME", help="Name of the pod this sidecar runs in")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="INFO",
    envvar="LOG_LEVEL",
    help="Log level",
)
@click.option(
    "--check-interval",
    type=click.IntRange(min=1),
    default=60,
    envvar="CHECK_INTERVAL",
    help="Seconds between activity checks",
)
@click.option(
    "--cluster-refresh-interval",
    type=click.IntRange(min=1),
    default=30,
    envvar="CLUSTER_REFRESH_INTERVAL",
    help="Seconds a fetched cluster object is reused before reading it again",
)
@click.option("--cnpg-group", default="", envvar="CUSTOM_CNPG_GROUP", help=f"CNPG API group (default: {CNPG_GROUP})")
@click.option("--cnpg-version", default="", envvar="CUSTOM_CNPG_VERSION", help=f"CNPG API version (default: {CNPG_VERSION})")
@click.option("--kubeconfig", default=None, envvar="KUBECONFIG", help="Path to kubeconfig file (default: in-cluster)")
@click.option("--context", default=None, envvar="K8S_CONTEXT", help="Kubernetes context to use")
def sidecar(namespace, cluster_name, pod_name, log_level, check_interval, cluster_refresh_interval,
            cnpg_group, cnpg_version, kubeconfig, context):
    """Run the scale-to-zero sidecar next to a PostgreSQL instance.

    Examples:
      stz sidecar --namespace db --cluster-name pg1 --pod-name pg1-1
      NAMESPACE=db CLUSTER_NAME=pg1 POD_NAME=pg1-1 stz sidecar
    """
    from .sidecar import run_sidecar

    current_log_level = setup_logging(log_level)

    settings = SidecarSettings(
        pod_name=pod_name,
        cluster=ClusterRef(namespace=namespace, name=cluster_name),
        check_interval=timedelta(seconds=check_interval),
        cluster_refresh_interval=timedelta(seconds=cluster_refresh_interval),
        cnpg_group=cnpg_group or CNPG_GROUP,
        cnpg_version=cnpg_version or CNPG_VERSION,
        kubeconfig=kubeconfig,
        context=context,
        log_level=current_log_level,
    )

    try:
        asyncio.run(run_sidecar(settings))
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down...")
    except Exception as e:
        _exit_with_error(e, current_log_level)


@cli.command()
@click.option("--namespace", required=True, envvar="NAMESPACE", help="Namespace of the cluster")
@click.option("--cluster-name", required=True, envvar="CLUSTER_NAME", help="Name of the cluster")
@click.option("--kubeconfig", default=None, envvar="KUBECONFIG", help="Path to kubeconfig file")
@click.option("--context", default=None, envvar="K8S_CONTEXT", help="Kubernetes context to use")
@click.option("--cnpg-group", default=CNPG_GROUP, envvar="CUSTOM_CNPG_GROUP", help="CNPG API group")
@click.option("--cnpg-version", default=CNPG_VERSION, envvar="CUSTOM_CNPG_VERSION", help="CNPG API version")
@click.option(
    "--output-format",
    type=click.Choice(["text", "json", "yaml"]),
    default="text",
    help="Output format for the report",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    help="Log level",
)
def status(namespace, cluster_name, kubeconfig, context, cnpg_group, cnpg_version, output_format, log_level):
    """Show the scale-to-zero configuration and hibernation state of a cluster."""
    from kubernetes import client

    from .cluster_client import FORCE_REFRESH, KubeClusterStore
    from .kubeconfig import KubeConfigHandler

    current_log_level = setup_logging(log_level)

    async def collect():
        KubeConfigHandler(kubeconfig).load_context(context)
        api_client = client.ApiClient()
        try:
            store = KubeClusterStore(
                custom_api=client.CustomObjectsApi(api_client),
                core_v1=client.CoreV1Api(api_client),
                cluster_ref=ClusterRef(namespace=namespace, name=cluster_name),
                pod_name="",
                group=cnpg_group,
                version=cnpg_version,
            )
            cluster = await store.get_cluster(force_refresh=FORCE_REFRESH)
            try:
                scheduled_backup = await store.get_scheduled_backup()
            except ClusterNotFoundError:
                scheduled_backup = None
            backups = await store.get_cluster_backups()
        finally:
            api_client.close()
        return cluster, scheduled_backup, backups

    try:
        cluster, scheduled_backup, backups = asyncio.run(collect())
    except Exception as e:
        _exit_with_error(e, current_log_level)
        return

    console.print(generate_status_report(cluster, scheduled_backup, backups, output_format))


@cli.command()
@click.option("--cluster", "cluster_file", required=True, type=click.File("r"), help="Cluster manifest (YAML or JSON)")
@click.option("--pod", "pod_file", required=True, type=click.File("r"), help="Pod manifest (YAML or JSON)")
@click.option("--sidecar-image", default="", envvar="SIDECAR_IMAGE", help="Sidecar container image")
@click.option("--cpu-request", default=None, envvar="SIDECAR_CPU_REQUEST", help="Sidecar CPU request")
@click.option("--cpu-limit", default=None, envvar="SIDECAR_CPU_LIMIT", help="Sidecar CPU limit")
@click.option("--memory-request", default=None, envvar="SIDECAR_MEMORY_REQUEST", help="Sidecar memory request")
@click.option("--memory-limit", default=None, envvar="SIDECAR_MEMORY_LIMIT", help="Sidecar memory limit")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="INFO",
    envvar="LOG_LEVEL",
    help="Log level, also passed to the injected sidecar",
)
def inject(cluster_file, pod_file, sidecar_image, cpu_request, cpu_limit, memory_request, memory_limit, log_level):
    """Print the JSON patch that injects the sidecar into a pod.

    Examples:
      stz inject --cluster cluster.yaml --pod pod.yaml
      stz inject --cluster cluster.json --pod pod.json --sidecar-image registry/sidecar:v1
    """
    current_log_level = setup_logging(log_level)

    try:
        cluster = yaml.safe_load(cluster_file)
        pod = yaml.safe_load(pod_file)
        config = PluginConfig(
            sidecar_image=sidecar_image,
            log_level=log_level.lower(),
            resources=ResourceConfig(
                cpu_request=cpu_request,
                cpu_limit=cpu_limit,
                memory_request=memory_request,
                memory_limit=memory_limit,
            ),
        )
        patch = reconcile_pod(cluster or {}, pod or {}, config)
    except Exception as e:
        _exit_with_error(e, current_log_level)
        return

    click.echo(json.dumps(patch, indent=2))


if __name__ == "__main__":
    cli()
