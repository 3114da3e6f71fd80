"""Command line interface for the benchmark orchestrator."""

import asyncio
import json
import sys
from typing import Dict, List, Optional, Tuple

import click
from rich.console import Console
from rich.table import Table

from .core.config import ConfigLoader, EndpointConfig, OrchestratorConfig, load_env_config, merge_configs
from .core.errors import OrchestratorError
from .core.jobs import BenchmarkJob, ProgressEvent
from .core.results import JsonlResultStore, ResultFilter, RunResult, RunStatus, to_dataframe
from .core.scheduler import BenchmarkScheduler
from .core.suites import SUITES, resolve_suite
from .core.transport import TransportClient
from .utils.logging import setup_logging


console = Console()

STATUS_STYLES = {
    RunStatus.SUCCESS: "[green]✓ success[/green]",
    RunStatus.FAILURE: "[red]✗ failure[/red]",
    RunStatus.CANCELLED: "[yellow]⊘ cancelled[/yellow]",
}


@click.group()
@click.option('--log-level', default=None, help='Logging level')
@click.option('--log-file', help='Log file path')
@click.option('--config', '-f', 'config_file', help='Orchestrator configuration file')
@click.pass_context
def cli(ctx, log_level, log_file, config_file):
    """benchorch: run benchmark suites on a pool of workers."""
    ctx.ensure_object(dict)
    try:
        config = _load_config(config_file)
    except Exception as e:
        console.print(f"[red]✗ Invalid configuration: {e}[/red]")
        sys.exit(1)

    ctx.obj['config'] = config
    ctx.obj['config_file'] = config_file

    # Setup logging
    setup_logging(level=log_level or config.log_level, log_file=log_file or config.log_file, component="cli")


def _load_config(config_file: Optional[str]) -> OrchestratorConfig:
    """File configuration overlaid with BENCHORCH_* environment variables."""
    base = ConfigLoader.load_orchestrator(config_file) if config_file else OrchestratorConfig()
    overrides = load_env_config()
    return merge_configs(base, overrides) if overrides else base


def _with_workers(config: OrchestratorConfig, workers: Tuple[str, ...], simulated: int) -> OrchestratorConfig:
    """Replace configured endpoints with command line ones."""
    endpoints: List[EndpointConfig] = []
    for i, url in enumerate(workers):
        endpoints.append(EndpointConfig(name=f"cli-{i}", url=url))
    if simulated:
        endpoints.append(EndpointConfig(
            name="local",
            command=[sys.executable, "-m", "benchorch.worker.cli", "--log-level", "WARNING", "serve",
                     "--simulate", "--host", "{host}", "--port", "{port}", "--worker-id", "{worker_id}"],
        ))
    if not endpoints:
        return config

    override: Dict[str, object] = {'endpoints': [e.model_dump() for e in endpoints]}
    if simulated:
        override['max_workers'] = len(workers) + simulated
    return merge_configs(config, override)


def _parse_params(params: Tuple[str, ...]) -> Dict[str, object]:
    """Parse ``key=value`` pairs, values decoded as JSON when possible."""
    parsed: Dict[str, object] = {}
    for entry in params:
        key, sep, raw = entry.partition('=')
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got '{entry}'", param_hint='--param')
        try:
            parsed[key] = json.loads(raw)
        except ValueError:
            parsed[key] = raw
    return parsed


@cli.command()
@click.option('--jobs', '-j', 'jobs_file', help='YAML file with a list of jobs')
@click.option('--benchmark', '-b', help='Benchmark suite of a single job')
@click.option('--model', '-m', help='Target model of a single job')
@click.option('--param', '-p', 'params', multiple=True, metavar='KEY=VALUE', help='Job parameter')
@click.option('--workers', '-W', multiple=True, help='Worker URLs')
@click.option('--simulate-workers', type=int, default=0, help='Spawn N local simulated workers')
@click.option('--quiet', '-q', is_flag=True, help='Do not print progress events')
@click.pass_context
def run(ctx, jobs_file, benchmark, model, params, workers, simulate_workers, quiet):
    """Run one job or a job list and wait for the results."""
    try:
        jobs = _collect_jobs(jobs_file, benchmark, model, params)
        config = _with_workers(ctx.obj['config'], workers, simulate_workers)
    except (click.BadParameter, OrchestratorError, ValueError) as e:
        console.print(f"[red]✗ {e}[/red]")
        sys.exit(1)

    if not config.endpoints:
        console.print("[red]✗ No worker endpoints configured (use --workers, --simulate-workers or a config file)[/red]")
        sys.exit(1)

    try:
        results = asyncio.run(_run_jobs(config, jobs, quiet))
    except OrchestratorError as e:
        console.print(f"[red]✗ Run failed: {e}[/red]")
        sys.exit(1)

    _display_results(results)
    if any(not r.succeeded for r in results):
        sys.exit(1)


def _collect_jobs(jobs_file, benchmark, model, params) -> List[BenchmarkJob]:
    jobs: List[BenchmarkJob] = []
    if jobs_file:
        for request in ConfigLoader.load_jobs(jobs_file).jobs:
            jobs.append(BenchmarkJob(benchmark=request.benchmark, model=request.model,
                                     parameters=request.parameters))
    if benchmark or model:
        if not (benchmark and model):
            raise click.BadParameter("--benchmark and --model must be given together")
        jobs.append(BenchmarkJob(benchmark=benchmark, model=model, parameters=_parse_params(params)))
    if not jobs:
        raise click.BadParameter("nothing to run: give --jobs or --benchmark/--model")
    return jobs


async def _run_jobs(config: OrchestratorConfig, jobs: List[BenchmarkJob], quiet: bool) -> List[RunResult]:
    """Run jobs implementation."""

    def show(event: ProgressEvent) -> None:
        if quiet:
            return
        progress = f" {event.progress:6.1%}" if event.progress is not None else ""
        console.print(f"[dim]{event.job_id}[/dim] {event.kind}{progress} {event.message}")

    console.print(f"[bold blue]Running {len(jobs)} job(s) on up to {config.max_workers} worker(s)...[/bold blue]")
    async with BenchmarkScheduler.from_config(config, on_event=show) as scheduler:
        return await scheduler.run_many(jobs)


def _display_results(results: List[RunResult]) -> None:
    """Display run results summary."""
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Job", style="cyan")
    table.add_column("Benchmark", style="white")
    table.add_column("Model", style="white")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("Metrics / Error", style="green")

    for result in results:
        if result.error:
            detail = f"[red]{result.error.get('type')}: {result.error.get('message')}[/red]"
        else:
            detail = ", ".join(
                f"{k}={v:.4g}" if isinstance(v, float) else f"{k}={v}"
                for k, v in result.metrics.items() if not isinstance(v, dict)
            )
        table.add_row(
            result.job_id,
            result.benchmark,
            result.model,
            STATUS_STYLES[result.status],
            str(result.attempts),
            f"{result.duration_seconds:.1f}s",
            detail,
        )

    console.print(table)


@cli.command()
@click.option('--results-path', help='Result store file (defaults to the configured one)')
@click.option('--job-id', help='Filter by job id')
@click.option('--benchmark', '-b', help='Filter by benchmark suite')
@click.option('--model', '-m', help='Filter by model')
@click.option('--status', type=click.Choice([s.value for s in RunStatus]), help='Filter by status')
@click.option('--limit', '-n', type=int, help='Only the most recent N results')
@click.option('--csv', 'csv_path', help='Export matching results to CSV')
@click.pass_context
def results(ctx, results_path, job_id, benchmark, model, status, limit, csv_path):
    """Query recorded run results."""
    store = JsonlResultStore(results_path or ctx.obj['config'].results_path)
    matched = store.query(ResultFilter(
        job_id=job_id,
        benchmark=benchmark,
        model=model,
        status=RunStatus(status) if status else None,
        limit=limit,
    ))

    if not matched:
        console.print("[yellow]No results found[/yellow]")
        return

    _display_results(matched)
    if csv_path:
        to_dataframe(matched).to_csv(csv_path, index=False)
        console.print(f"Results exported to: {csv_path}")


@cli.command()
@click.option('--workers', '-W', multiple=True, help='Worker URLs to check')
@click.option('--timeout', type=float, default=5.0, help='Health check timeout in seconds')
@click.pass_context
def health_check(ctx, workers, timeout):
    """Check health of workers."""
    urls = list(workers) or [e.url for e in ctx.obj['config'].endpoints if e.url]
    if not urls:
        console.print("[yellow]No worker URLs to check[/yellow]")
        return
    healthy = asyncio.run(_check_workers_health(urls, timeout))
    if not healthy:
        sys.exit(1)


async def _check_workers_health(urls: List[str], timeout: float) -> bool:
    """Check workers health implementation."""
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Worker URL", style="cyan")
    table.add_column("Status", style="white")
    table.add_column("Worker ID", style="green")
    table.add_column("Current Job", style="yellow")
    table.add_column("Capabilities", style="white")
    table.add_column("CPU", justify="right")

    all_healthy = True
    async with TransportClient(request_timeout=timeout) as transport:
        for url in urls:
            try:
                info = await transport.health_check(url.rstrip('/'), timeout=timeout)
            except OrchestratorError as e:
                all_healthy = False
                table.add_row(url, f"[red]✗ {type(e).__name__}[/red]", "N/A", "N/A", str(e), "")
                continue

            stats = info.get('system_stats') or {}
            cpu = stats.get('cpu_percent')
            table.add_row(
                url,
                "[green]✓ Healthy[/green]" if not info.get('busy') else "[yellow]● Busy[/yellow]",
                str(info.get('worker_id', 'unknown')),
                str(info.get('current_job') or "-"),
                ", ".join(info.get('capabilities') or []),
                f"{cpu:.1f}%" if isinstance(cpu, (int, float)) else "",
            )

    console.print(table)
    return all_healthy


@cli.command()
@click.option('--jobs', '-j', 'jobs_file', help='Job list file to validate')
@click.pass_context
def validate(ctx, jobs_file):
    """Validate the configuration and an optional job list."""
    config = ctx.obj['config']
    try:
        source = ctx.obj['config_file'] or "defaults"
        console.print(f"[green]✓ Valid orchestrator configuration ({source})[/green]")

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Property", style="cyan")
        table.add_column("Value", style="green")

        table.add_row("Endpoints", ", ".join(e.name for e in config.endpoints) or "none")
        table.add_row("Max Workers", str(config.max_workers))
        table.add_row("Min Workers", str(config.min_workers))
        table.add_row("Backpressure", config.backpressure.value)
        table.add_row("Max Retries", str(config.max_retries))
        table.add_row("Health Check", f"every {config.health_check_interval}s, timeout {config.health_check_timeout}s")
        table.add_row("Cancel Grace", f"{config.cancel_grace_timeout}s")
        table.add_row("Results", config.results_path)

        console.print(table)

        if jobs_file:
            console.print(f"\n[blue]Validating jobs: {jobs_file}[/blue]")
            requests = ConfigLoader.load_jobs(jobs_file).jobs

            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("#", style="cyan")
            table.add_column("Benchmark", style="white")
            table.add_column("Model", style="white")
            table.add_column("Parameters", style="green")

            for i, request in enumerate(requests, start=1):
                parameters = resolve_suite(request.benchmark).prepare(request.parameters)
                table.add_row(str(i), request.benchmark, request.model, json.dumps(parameters, default=str))

            console.print(table)
            console.print(f"[green]✓ {len(requests)} valid job(s)[/green]")

    except Exception as e:
        console.print(f"[red]✗ Validation failed: {e}[/red]")
        sys.exit(1)


@cli.command()
def suites():
    """List the supported benchmark suites."""
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Suite", style="cyan")
    table.add_column("Description", style="white")
    table.add_column("Required", style="yellow")
    table.add_column("Defaults", style="green")
    table.add_column("Attempt Timeout", justify="right")

    for spec in SUITES.values():
        table.add_row(
            spec.capability,
            spec.description,
            ", ".join(spec.required_parameters) or "-",
            json.dumps(dict(spec.default_parameters)),
            f"{spec.attempt_timeout / 3600:.0f}h" if spec.attempt_timeout else "-",
        )

    console.print(table)


def coordinator_main():
    """Entry point for coordinator CLI."""
    cli()


if __name__ == '__main__':
    coordinator_main()
