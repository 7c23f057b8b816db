# cli.py
import json
import logging

import click
import pydantic
import uvicorn

from finder_api.config.settings import Settings

# Configure logging
logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def load_settings(config_path=None, **overrides) -> Settings:
    """Build settings, turning invalid configuration into a CLI error."""
    try:
        return Settings.from_config_file(config_path, **overrides)
    except (pydantic.ValidationError, ValueError, OSError) as e:
        raise click.ClickException(f"Invalid configuration: {e}") from e


@click.group()
def cli():
    """Finder API: file manager backend over local and S3 storages"""
    pass


@cli.command()
@click.option("--host", default=None, help="Interface to bind [default: 127.0.0.1]")
@click.option("--port", type=int, default=None, help="Port to bind [default: 8080]")
@click.option("--local-storage", default=None, help="Root directory of the `local` storage")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help="JSON config file, e.g. with public_links and cors settings")
@click.option("--log-level", default=None, help="DEBUG, INFO, WARNING, ...")
def serve(host, port, local_storage, config_path, log_level):
    """Run the API server"""
    settings = load_settings(
        config_path, host=host, port=port, local_storage=local_storage, log_level=log_level
    )
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)

    from finder_api.main import create_app

    app = create_app(settings)
    logger.info(f"Starting {settings.app_name} on {settings.host}:{settings.port}")
    # uvicorn exits with status 1 when the address cannot be bound
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


@cli.command()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help="JSON config file")
def show_config(config_path):
    """Show current configuration"""
    settings = load_settings(config_path)

    click.echo("Current Configuration:")
    click.echo(f"  Bind: {settings.host}:{settings.port}{settings.api_path}")
    click.echo(f"  Storages: {', '.join(settings.storage_keys)}")
    if settings.local_storage:
        click.echo(f"  Local Storage Root: {settings.local_storage}")
    for key, backend in settings.storages.items():
        click.echo(f"  Storage {key}: {backend.model_dump_json()}")
    click.echo(f"  AWS Region: {settings.aws_region}")
    click.echo(f"  AWS Endpoint: {settings.aws_endpoint_url}")
    click.echo(f"  Max Upload Size: {settings.max_upload_size}")
    click.echo(f"  Max Extract Size: {settings.max_extract_size}")
    click.echo(f"  Max Extract Entries: {settings.max_extract_entries}")
    click.echo(f"  Public Links: {json.dumps(settings.public_links)}")
    click.echo(f"  CORS Origins: {', '.join(settings.cors_allowed_origins)}")
    click.echo(f"  Log Level: {settings.log_level}")


if __name__ == "__main__":
    cli()
