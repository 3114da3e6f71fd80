"""Worker CLI for serving benchmark runners."""

import asyncio
import sys
import uuid

import click
from rich.console import Console

from ..api.worker_api import run_worker_server
from ..core.config import ConfigLoader, WorkerServerConfig
from ..utils.logging import setup_logging
from .service import WorkerService

console = Console(stderr=True)


@click.group()
@click.option('--log-level', default='INFO', help='Logging level')
@click.option('--log-file', help='Log file path')
@click.pass_context
def cli(ctx, log_level, log_file):
    """benchorch worker CLI."""
    ctx.ensure_object(dict)
    ctx.obj['log_level'] = log_level
    ctx.obj['log_file'] = log_file

    # Setup logging
    setup_logging(level=log_level, log_file=log_file, component="worker")


@cli.command()
@click.option('--config', '-f', 'config_file', help='Worker configuration file')
@click.option('--worker-id', '-i', help='Unique worker identifier')
@click.option('--host', help='Worker host address')
@click.option('--port', type=int, help='Worker port')
@click.option('--simulate/--no-simulate', default=None, help='Serve every suite with the simulated runner')
@click.option('--runner', '-r', 'runners', multiple=True, metavar='SUITE=CLASS',
              help='Runner class for a suite, e.g. mteb=mypkg.runners:MtebRunner')
@click.pass_context
def serve(ctx, config_file, worker_id, host, port, simulate, runners):
    """Start a worker serving the runner API."""
    try:
        config = _build_config(config_file, worker_id, host, port, simulate, runners, ctx.obj['log_level'])
        service = WorkerService.from_config(config)
    except Exception as e:
        console.print(f"[red]✗ Invalid worker configuration: {e}[/red]")
        sys.exit(1)

    console.print(f"[green]✓[/green] Worker {config.worker_id} serving: {', '.join(service.capabilities)}")
    console.print(f"[green]✓[/green] Listening on: {config.host}:{config.port}")

    try:
        asyncio.run(run_worker_server(service, config.host, config.port, log_level=config.log_level))
    except KeyboardInterrupt:
        console.print("\n[yellow]Received interrupt signal, shutting down...[/yellow]")


def _build_config(config_file, worker_id, host, port, simulate, runners, log_level) -> WorkerServerConfig:
    """Merge the optional config file with command line overrides."""
    data = {}
    if config_file:
        data = ConfigLoader.load_worker(config_file).model_dump()
    data.setdefault('worker_id', f"worker-{uuid.uuid4().hex[:8]}")
    data.setdefault('log_level', log_level)

    if worker_id:
        data['worker_id'] = worker_id
    if host:
        data['host'] = host
    if port is not None:
        data['port'] = port
    if simulate is not None:
        data['simulate'] = simulate

    runner_map = dict(data.get('runners') or {})
    for entry in runners:
        suite, sep, path = entry.partition('=')
        if not sep or not suite or not path:
            raise click.BadParameter(f"expected SUITE=CLASS, got '{entry}'", param_hint='--runner')
        runner_map[suite.strip()] = path.strip()
    data['runners'] = runner_map

    if not runner_map and 'simulate' not in data:
        data['simulate'] = True
    return WorkerServerConfig(**data)


def worker_main():
    """Entry point for worker CLI."""
    cli()


if __name__ == '__main__':
    worker_main()
