"""
Main CLI entry point for the Conversion Job Orchestrator

Runs job manifests through the orchestrator, inspects persisted job history
and shows the effective configuration.
"""

import asyncio
import importlib
import inspect
import json
import sys
from pathlib import Path
from typing import Any, Dict, List

import click
import yaml

from ..core.exceptions import ConversionOrchestratorError
from ..core.orchestrator import ConversionOrchestrator
from ..executors.base import JobExecutor
from ..services.job_history import read_history_file
from ..utils.config import SchedulerConfig, dump_config, load_config
from ..utils.logger import setup_logger

JOB_OPTION_KEYS = ("max_retries", "timeout", "resource_requirements")


@click.group()
@click.option('--config', '-c', type=click.Path(exists=True, dir_okay=False), help='Configuration file path')
@click.option('--log-level', '-l', default=None, help='Log level (overrides the configuration)')
@click.option('--verbose', '-v', is_flag=True, help='Human-readable log lines instead of JSON')
@click.pass_context
def cli(ctx, config, log_level, verbose):
    """Conversion Job Orchestrator CLI"""

    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config
    ctx.obj['log_level'] = log_level
    ctx.obj['verbose'] = verbose


def _get_config(ctx) -> SchedulerConfig:
    if 'config' not in ctx.obj:
        try:
            ctx.obj['config'] = load_config(ctx.obj.get('config_path'))
        except ConversionOrchestratorError as e:
            raise click.ClickException(e.message)

        settings = ctx.obj['config'].logging
        setup_logger(
            "conversion_job_orchestrator",
            level=ctx.obj.get('log_level') or settings.level,
            structured=settings.structured and not ctx.obj.get('verbose'),
            log_file=settings.log_file
        )
    return ctx.obj['config']


@cli.command('run')
@click.argument('jobs_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--executor', '-e', 'executor_ref', required=True,
              help='Executor to use, as module:attribute (a JobExecutor, its class, or a callable)')
@click.option('--timeout', '-t', type=float, default=None, help='Seconds to wait for all jobs to finish')
@click.option('--history-path', type=click.Path(dir_okay=False), help='Persist job history to this file')
@click.pass_context
def run_jobs(ctx, jobs_file, executor_ref, timeout, history_path):
    """Run every job in JOBS_FILE (JSON or YAML) to completion"""

    config = _get_config(ctx)
    if history_path:
        config = config.model_copy(update={
            "history": config.history.model_copy(update={"path": history_path})
        })

    try:
        jobs = _load_manifest(Path(jobs_file))
        executor = _resolve_executor(executor_ref)
    except (ValueError, ImportError, AttributeError) as e:
        raise click.ClickException(str(e))

    async def _run() -> List[Dict[str, Any]]:
        orchestrator = ConversionOrchestrator.from_config(config, executor)
        await orchestrator.start()
        try:
            job_ids = []
            for entry in jobs:
                options = {key: entry[key] for key in JOB_OPTION_KEYS if key in entry}
                job_ids.append(orchestrator.enqueue(entry['type'], entry.get('payload'), entry.get('priority'), **options))

            waits = [orchestrator.wait_for(job_id) for job_id in job_ids]
            try:
                await asyncio.wait_for(asyncio.gather(*waits), timeout)
            except asyncio.TimeoutError:
                click.echo(f"Timed out after {timeout}s; cancelling unfinished jobs", err=True)
                for job_id in job_ids:
                    orchestrator.cancel(job_id)

            return [orchestrator.get_status(job_id) for job_id in job_ids]
        finally:
            await orchestrator.stop()

    try:
        results = asyncio.run(_run())
    except ConversionOrchestratorError as e:
        raise click.ClickException(e.message)

    _display_run_summary(results)
    if any(result['status'] != 'completed' for result in results):
        sys.exit(1)


@cli.command('history')
@click.option('--path', '-p', type=click.Path(dir_okay=False), help='History file (defaults to history.path)')
@click.option('--job-id', help='Only show entries for this job')
@click.option('--limit', type=int, default=50, help='Show at most this many of the latest entries')
@click.option('--json', 'as_json', is_flag=True, help='Print raw JSON lines')
@click.pass_context
def show_history(ctx, path, job_id, limit, as_json):
    """Show persisted job history"""

    path = path or _get_config(ctx).history.path
    if not path:
        raise click.ClickException("No history file configured; pass --path or set history.path")
    if not Path(path).exists():
        raise click.ClickException(f"History file {path} does not exist")

    entries = asyncio.run(read_history_file(path, job_id=job_id, limit=limit))
    if not entries:
        click.echo("No history entries found")
        return

    for entry in entries:
        if as_json:
            click.echo(json.dumps(entry, default=str))
        else:
            error = f"  error={entry['error']}" if entry.get('error') else ""
            click.echo(f"{entry.get('timestamp', ''):<34} {entry.get('event', ''):<15} "
                       f"{entry.get('job_id', '')}  {entry.get('status') or '-'}{error}")


@cli.group()
def config():
    """Configuration commands"""
    pass


@config.command('show')
@click.pass_context
def show_config(ctx):
    """Print the effective configuration as YAML"""
    click.echo(dump_config(_get_config(ctx)), nl=False)


def _load_manifest(path: Path) -> List[Dict[str, Any]]:
    """Read a job manifest: a list of jobs, or a mapping with a ``jobs`` list."""
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        data = json.loads(text)
    else:
        data = yaml.safe_load(text)

    if isinstance(data, dict):
        data = data.get('jobs')
    if not isinstance(data, list):
        raise ValueError(f"{path} must contain a list of jobs or a mapping with a 'jobs' list")

    for index, entry in enumerate(data):
        if not isinstance(entry, dict) or 'type' not in entry:
            raise ValueError(f"Job #{index + 1} in {path} needs at least a 'type'")
    return data


def _resolve_executor(reference: str) -> Any:
    """Import ``module:attribute``; JobExecutor classes are instantiated."""
    module_name, _, attribute = reference.partition(':')
    if not module_name or not attribute:
        raise ValueError(f"Executor must be given as module:attribute, got {reference!r}")

    target = getattr(importlib.import_module(module_name), attribute)
    if inspect.isclass(target) and issubclass(target, JobExecutor):
        return target()
    return target


def _display_run_summary(results: List[Dict[str, Any]]):
    """Display one line per job and totals"""
    click.echo(f"{'JOB ID':<38} {'TYPE':<11} {'STATUS':<10} {'ATTEMPTS':>8}  ERROR")
    for result in results:
        error = (result.get('error') or {}).get('message', '')
        click.echo(f"{result['job_id']:<38} {result['job_type']:<11} {result['status']:<10} "
                   f"{result['attempts']:>8}  {error}")

    counts: Dict[str, int] = {}
    for result in results:
        counts[result['status']] = counts.get(result['status'], 0) + 1
    click.echo()
    click.echo("Summary: " + ", ".join(f"{status}={count}" for status, count in sorted(counts.items())))


def main():
    """Main CLI entry point"""
    cli()


if __name__ == '__main__':
    main()
