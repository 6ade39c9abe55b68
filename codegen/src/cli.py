"""
Command line entry point.

Usage:
    dx init                 Create the configuration of a new project
    dx generate             Generate base and specialisation classes
    dx check                Check that every base class has been generated
    dx sync-db              Create missing database tables
    dx serve                Start the web service
"""

import asyncio
import os
import sys
from pathlib import Path
from typing import Optional, Tuple

import click
import uvicorn
from rich.console import Console

from api.src.config import Settings, clear_settings_cache, get_settings
from api.src.services.dx_app import apply_web_config, load_project_data_model
from codegen.src.generator import CodeGenerator
from codegen.src.scaffold import PACKAGES_DIR, init_project
from orm.src.db_connector import DbConnector
from orm.src.schema_sync import sync_database
from shared.errors import DxError
from shared.logging import configure_logging
from shared.models.data_model import DataModel
from shared.models.dx_config import DxConfig, load_dx_config


console = Console()


def get_settings_for(config_path: Optional[str]) -> Settings:
    """Settings with config_path overridden when --config is given."""
    settings = get_settings()
    if config_path:
        settings = settings.model_copy(update={"config_path": config_path})
    return settings


def load_project(settings: Settings) -> Tuple[DxConfig, DataModel]:
    """
    Load dxconfig.json and the merged data model of the project in the
    working directory.

    Raises:
        click.ClickException: If the configuration or data model is invalid
    """
    try:
        dx_config = load_dx_config(Path.cwd() / settings.config_path)
        return dx_config, load_project_data_model(dx_config, Path.cwd())
    except DxError as e:
        raise click.ClickException(e.message) from e


@click.group()
@click.option("--config", "-c", help="Path to dxconfig.json")
@click.pass_context
def cli(ctx, config):
    """Data-model-driven application framework."""
    ctx.ensure_object(dict)
    settings = get_settings_for(config)
    ctx.obj["config_path"] = config
    ctx.obj["settings"] = settings

    configure_logging(
        log_level=settings.log_level,
        json_logs=False,
        app_name=settings.app_name,
        environment=settings.environment,
    )


@cli.command()
@click.option("--app-name", default="dx-app", show_default=True, help="Application name")
@click.option("--force", is_flag=True, help="Overwrite existing files")
def init(app_name, force):
    """Create the configuration of a new project."""
    console.print("[bold blue]Initializing project...[/bold blue]")

    created = init_project(Path.cwd(), app_name=app_name, force=force)
    for path in created:
        console.print(f"  Created: {path}")

    if not created:
        console.print("  Nothing to do, every file already exists")
    console.print("[bold green]Project initialized![/bold green]")


@cli.command()
@click.option("--entity", "-e", "entities", multiple=True, help="Entity to generate; all package entities if omitted")
@click.option(
    "--specialisations/--no-specialisations",
    default=True,
    show_default=True,
    help="Also write specialisation classes that do not exist yet",
)
@click.pass_context
def generate(ctx, entities, specialisations):
    """Generate base and specialisation classes for the data model."""
    _, data_model = load_project(ctx.obj["settings"])
    generator = CodeGenerator(data_model, Path.cwd(), Path.cwd() / PACKAGES_DIR)

    try:
        written = generator.generate_base_files(list(entities) or None)
        if specialisations:
            written += generator.generate_specialisation_files(list(entities) or None)
    except ValueError as e:
        raise click.ClickException(str(e)) from e

    for path in written:
        console.print(f"  Written: {path}")
    console.print(f"[bold green]Generated {len(written)} files[/bold green]")


@cli.command()
@click.pass_context
def check(ctx):
    """Check that base classes exist for every package entity."""
    _, data_model = load_project(ctx.obj["settings"])
    generator = CodeGenerator(data_model, Path.cwd(), Path.cwd() / PACKAGES_DIR)

    if generator.check_base_generation_complete():
        console.print("[green]Base generation is complete[/green]")
        return

    console.print("[red]Base generation is incomplete. Run 'dx generate'.[/red]")
    sys.exit(1)


async def _sync_database(settings: Settings, dx_config: DxConfig, data_model: DataModel) -> None:
    connector = DbConnector(
        dx_config.get_module_configs(settings.environment),
        min_pool_size=1,
        max_pool_size=settings.database_max_pool_size,
        command_timeout=settings.database_command_timeout,
    )
    await connector.connect()
    try:
        await sync_database(connector, data_model)
    finally:
        await connector.close()


@cli.command("sync-db")
@click.pass_context
def sync_db(ctx):
    """Create the tables of every entity that does not have one yet."""
    settings = ctx.obj["settings"]
    dx_config, data_model = load_project(settings)

    console.print(f"[bold blue]Synchronizing database ({settings.environment})...[/bold blue]")
    try:
        asyncio.run(_sync_database(settings, dx_config, data_model))
    except DxError as e:
        raise click.ClickException(e.message) from e
    console.print("[bold green]Database synchronized[/bold green]")


@cli.command()
@click.option("--host", default=None, help="Bind address; DX_HOST if omitted")
@click.option("--port", default=None, type=int, help="Port; DX_WEB_SERVER_PORT or webConfig.port if omitted")
@click.option("--reload", is_flag=True, help="Restart when source files change")
@click.pass_context
def serve(ctx, host, port, reload):
    """Start the web service."""
    settings = ctx.obj["settings"]
    try:
        dx_config = load_dx_config(Path.cwd() / settings.config_path)
    except DxError as e:
        raise click.ClickException(e.message) from e
    settings = apply_web_config(settings, dx_config.web_config)

    # The application factory reads its settings from the environment
    if ctx.obj["config_path"]:
        os.environ["DX_CONFIG_PATH"] = ctx.obj["config_path"]
        clear_settings_cache()

    uvicorn.run(
        "api.src.main:create_app",
        factory=True,
        host=host or settings.host,
        port=port or settings.web_server_port,
        log_level=settings.log_level.lower(),
        reload=reload,
        # Generated packages and generated_base live in the project directory
        app_dir=str(Path.cwd()),
    )


if __name__ == "__main__":
    cli()
