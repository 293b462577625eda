"""
Command-line interface for the Package operator.

This module provides the CLI for running the controller, validating its
configuration and rendering the resources a Package manifest produces.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
import typer
import yaml
from pydantic import ValidationError

from .controllers.egress import build_workload_egress_resources, create_host_resource_map
from .controllers.network_policies import build_network_policies
from .controllers.package_controller import PackageController
from .controllers.virtual_services import build_virtual_services
from .models.config import ControllerConfiguration
from .models.package import Allow, Direction, Package

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

app = typer.Typer(
    name="package-operator",
    help="Kubernetes operator reconciling Package resources",
    no_args_is_help=True
)

logger = structlog.get_logger()


def load_configuration(config_path: str, quiet: bool = False) -> ControllerConfiguration:
    """
    Load and validate configuration from file.

    A missing file yields the default configuration.

    Args:
        config_path: Path to a YAML or JSON configuration file
        quiet: Suppress informational output

    Returns:
        Validated configuration object

    Raises:
        typer.Exit: If configuration is invalid
    """
    config_file = Path(config_path)
    if not config_file.exists():
        if not quiet:
            typer.echo(f"Configuration file {config_path} not found, using defaults")
        return ControllerConfiguration()

    try:
        with open(config_file, "r") as f:
            if config_path.endswith(".json"):
                config_data = json.load(f)
            else:
                config_data = yaml.safe_load(f) or {}

        config = ControllerConfiguration(**config_data)
        if not quiet:
            typer.echo(f"Configuration loaded successfully from {config_path}")
        return config

    except ValidationError as e:
        typer.echo("Configuration validation error:", err=True)
        for error in e.errors():
            typer.echo(f"  {error['loc']}: {error['msg']}", err=True)
        raise typer.Exit(1)
    except (OSError, ValueError, yaml.YAMLError) as e:
        typer.echo(f"Error loading configuration: {e}", err=True)
        raise typer.Exit(1)


def setup_logging(log_level: str, log_format: str = "json") -> None:
    """Setup structured logging with specified level and format."""
    logging.basicConfig(level=getattr(logging, log_level.upper()), format="%(message)s")

    if log_format == "console":
        structlog.configure(
            processors=[
                structlog.stdlib.filter_by_level,
                structlog.stdlib.add_logger_name,
                structlog.stdlib.add_log_level,
                structlog.stdlib.PositionalArgumentsFormatter(),
                structlog.processors.TimeStamper(fmt="%H:%M:%S"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.UnicodeDecoder(),
                structlog.dev.ConsoleRenderer()
            ]
        )


@app.command()
def run(
    config: str = typer.Option(
        "config.yaml",
        "--config", "-c",
        help="Path to configuration file",
        envvar="PACKAGE_OPERATOR_CONFIG"
    ),
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level", "-l",
        help="Logging level, overrides the configuration file",
        envvar="LOG_LEVEL"
    ),
    log_format: Optional[str] = typer.Option(
        None,
        "--log-format",
        help="Log format (json or console), overrides the configuration file",
        envvar="LOG_FORMAT"
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Validate configuration without starting controller"
    )
) -> None:
    """
    Start the Package operator.

    Loads configuration and runs the watch loop until interrupted.
    """
    controller_config = load_configuration(config)
    setup_logging(log_level or controller_config.log_level, log_format or controller_config.log_format)

    if dry_run:
        typer.echo("✅ Configuration validation successful (dry run)")
        _print_summary(controller_config)
        return

    typer.echo("🚀 Starting Package operator")
    try:
        controller = PackageController(controller_config)
        asyncio.run(_run_controller(controller))
    except KeyboardInterrupt:
        typer.echo("\n🛑 Shutdown requested by user")
    except Exception as e:
        typer.echo(f"❌ Controller failed: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def validate(
    config: str = typer.Option(
        "config.yaml",
        "--config", "-c",
        help="Path to configuration file"
    )
) -> None:
    """Validate a configuration file without starting the controller."""
    typer.echo("🔍 Validating configuration...")
    controller_config = load_configuration(config)
    typer.echo("✅ Configuration validation successful")
    _print_summary(controller_config)


@app.command()
def generate_config(
    output: str = typer.Option(
        "config.yaml",
        "--output", "-o",
        help="Output configuration file path"
    ),
    format: str = typer.Option(
        "yaml",
        "--format", "-f",
        help="Configuration format (yaml or json)"
    )
) -> None:
    """Generate a sample configuration file with the default settings."""
    sample_config = ControllerConfiguration().model_dump()

    try:
        with open(Path(output), "w") as f:
            if format.lower() == "json":
                json.dump(sample_config, f, indent=2)
            else:
                yaml.safe_dump(sample_config, f, default_flow_style=False, indent=2)
    except OSError as e:
        typer.echo(f"❌ Failed to generate configuration: {e}", err=True)
        raise typer.Exit(1)

    typer.echo(f"✅ Sample configuration generated: {output}")
    typer.echo("🔧 Update domain and egress gateway settings to match the cluster")


@app.command()
def render(
    manifest: str = typer.Argument(
        ...,
        help="Path to a YAML file holding one or more Package manifests"
    ),
    config: str = typer.Option(
        "config.yaml",
        "--config", "-c",
        help="Path to configuration file"
    ),
    kube_api_cidr: Optional[str] = typer.Option(
        None,
        "--kube-api-cidr",
        help="CIDR used for KubeAPI peers, allows all addresses when unset"
    )
) -> None:
    """
    Print the resources the given Packages would produce.

    Renders NetworkPolicies, VirtualServices, Sidecars and ServiceEntries
    as multi-document YAML. Nothing is sent to the cluster.
    """
    controller_config = load_configuration(config, quiet=True)

    try:
        with open(manifest, "r") as f:
            documents = [doc for doc in yaml.safe_load_all(f) if doc]
    except (OSError, yaml.YAMLError) as e:
        typer.echo(f"❌ Unable to read {manifest}: {e}", err=True)
        raise typer.Exit(1)

    cidr = kube_api_cidr or controller_config.kube_api_cidr
    peers = [{"ipBlock": {"cidr": cidr}}] if cidr else None

    rendered: List[Dict[str, Any]] = []
    for doc in documents:
        if doc.get("kind") != "Package":
            continue
        try:
            pkg = Package.from_resource(doc)
        except ValidationError as e:
            typer.echo(f"❌ Invalid Package in {manifest}: {e}", err=True)
            raise typer.Exit(1)
        rendered.extend(_render_package(pkg, controller_config, peers))

    # a JSON round trip drops shared references so the YAML carries no aliases
    documents = json.loads(json.dumps(rendered))
    typer.echo(yaml.safe_dump_all(documents, default_flow_style=False, sort_keys=False), nl=False)


def _render_package(pkg: Package,
                    controller_config: ControllerConfiguration,
                    peers: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    namespace = pkg.namespace
    resources = build_network_policies(
        pkg, namespace, peers, controller_config.egress_gateway_namespace
    )
    resources.extend(build_virtual_services(
        pkg, namespace, controller_config.domain, controller_config.admin_domain
    ))

    host_map = create_host_resource_map(pkg)
    if host_map:
        allow_entries: List[Allow] = [
            allow for allow in pkg.spec.network.allow
            if allow.direction == Direction.EGRESS and allow.remote_host
        ]
        sidecars, service_entries = build_workload_egress_resources(
            host_map, allow_entries, pkg.name, namespace, pkg.generation
        )
        resources.extend(sidecars)
        resources.extend(service_entries)

    return resources


def _print_summary(controller_config: ControllerConfiguration) -> None:
    typer.echo(f"🌐 Domain: {controller_config.domain}")
    typer.echo(f"🔑 Admin domain: {controller_config.admin_domain}")
    typer.echo(
        f"🚪 Egress gateway: {controller_config.egress_gateway_namespace}/"
        f"{controller_config.egress_gateway_service}"
    )
    typer.echo(f"📡 KubeAPI CIDR: {controller_config.kube_api_cidr or 'discovered'}")
    typer.echo(f"📊 Metrics enabled: {controller_config.enable_metrics}")


async def _run_controller(controller: PackageController) -> None:
    """Run the controller with proper async handling."""
    try:
        await controller.start()
    except KeyboardInterrupt:
        logger.info("Shutdown signal received")
    except Exception as e:
        logger.error("Controller error", error=str(e))
        raise
    finally:
        try:
            await controller.stop()
        except Exception as e:
            logger.error("Error during controller shutdown", error=str(e))


def main() -> None:
    """Main entry point for the CLI application."""
    app()


if __name__ == "__main__":
    main()
