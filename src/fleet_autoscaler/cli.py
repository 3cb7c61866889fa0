"""Command-line interface for the fleet autoscaler."""

import asyncio
import json
import logging
from typing import Optional

import click
import yaml

from .core.config import AutoscalingConfig, load_config
from .core.exceptions import AutoscalerError
from .core.logging_config import setup_logging
from .scaling.auto_scaler import AutoscalingManager


logger = logging.getLogger(__name__)


def _load(ctx: click.Context) -> AutoscalingConfig:
    try:
        config = load_config(ctx.obj.get('config_path'))
    except AutoscalerError as e:
        raise click.ClickException(str(e))

    setup_logging(
        log_level=ctx.obj.get('log_level') or config.log_level,
        log_file=config.log_file,
        structured=config.structured_logging
    )
    return config


@click.group()
@click.version_option(version="0.1.0")
@click.option('--config', '-c', 'config_path', type=click.Path(dir_okay=False),
              help='JSON or YAML configuration file')
@click.option('--log-level', '-l', default=None,
              type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False),
              help='Override the configured log level')
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str], log_level: Optional[str]):
    """fleet-autoscaler: metric-driven autoscaling for containerized services."""
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config_path
    ctx.obj['log_level'] = log_level


@cli.command()
@click.option('--stats-interval', default=60.0, help='Seconds between status lines')
@click.option('--duration', default=None, type=float, help='Stop after this many seconds')
@click.pass_context
def run(ctx: click.Context, stats_interval: float, duration: Optional[float]):
    """Run the autoscaler until interrupted."""
    config = _load(ctx)

    async def run_manager():
        manager = AutoscalingManager(config)
        await manager.start()
        click.echo(f"Autoscaling '{config.service_name}' "
                   f"({config.min_instances}-{config.max_instances} instances)")
        click.echo("Press Ctrl+C to stop")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + duration if duration else None
        try:
            while deadline is None or loop.time() < deadline:
                wait = stats_interval
                if deadline is not None:
                    wait = max(0.0, min(wait, deadline - loop.time()))
                await asyncio.sleep(wait)

                stats = manager.get_stats()
                lb = stats['load_balancer']
                metrics = stats['current_metrics']
                click.echo(
                    f"[{stats['service_name']}] instances={stats['current_instances']} "
                    f"healthy={lb['healthy_instances']}/{lb['total_instances']} "
                    f"cpu={metrics['cpu_usage']:.0%} memory={metrics['memory_usage']:.0%} "
                    f"alerts={len(manager.get_active_alerts())}"
                )
        finally:
            await manager.stop()

    try:
        asyncio.run(run_manager())
    except KeyboardInterrupt:
        click.echo("\nStopping autoscaler...")


@cli.command()
@click.argument('target', type=int)
@click.option('--reason', '-r', default='manual scale via CLI', help='Reason recorded with the scale event')
@click.pass_context
def scale(ctx: click.Context, target: int, reason: str):
    """Scale the service to TARGET instances once."""
    config = _load(ctx)

    async def run_scale():
        manager = AutoscalingManager(config)
        try:
            before = await manager.refresh_instances()
            changed = await manager.manual_scale(target, reason=reason)
            return before, manager.current_instances, changed
        finally:
            await manager.load_balancer.close()

    try:
        before, after, changed = asyncio.run(run_scale())
    except AutoscalerError as e:
        raise click.ClickException(str(e))

    if changed:
        click.echo(f"Scaled '{config.service_name}' from {before} to {after} instances")
    else:
        click.echo(f"'{config.service_name}' already at {after} instances")


@cli.command()
@click.option('--json', 'as_json', is_flag=True, help='Print raw JSON')
@click.pass_context
def status(ctx: click.Context, as_json: bool):
    """Show orchestrator health and running instances."""
    config = _load(ctx)

    async def run_status():
        orchestrator = config.build_orchestrator()
        health = await orchestrator.health_check()
        instances = []
        if health.get('status') == 'healthy':
            instances = await orchestrator.get_running_instances(config.service_name)
        return health, instances

    try:
        health, instances = asyncio.run(run_status())
    except AutoscalerError as e:
        raise click.ClickException(str(e))

    if as_json:
        click.echo(json.dumps({
            'orchestrator': health,
            'instances': [
                {'id': i.id, 'url': i.url, 'index': i.index, 'status': i.status, 'healthy': i.healthy}
                for i in instances
            ],
        }, indent=2, default=str))
        return

    click.echo(f"Orchestrator: {health.get('status')}")
    if 'error' in health:
        click.echo(f"  Error: {health['error']}")
    for key, value in health.get('details', {}).items():
        click.echo(f"  {key}: {value}")

    click.echo(f"\nRunning instances of '{config.service_name}': {len(instances)}")
    for instance in instances:
        marker = "healthy" if instance.healthy else instance.status
        click.echo(f"  #{instance.index} {instance.id} {instance.url} ({marker})")


@cli.command(name='show-config')
@click.option('--format', '-f', 'output_format', default='yaml',
              type=click.Choice(['yaml', 'json']), help='Output format')
@click.pass_context
def show_config(ctx: click.Context, output_format: str):
    """Print the effective configuration."""
    config = _load(ctx)
    data = config.to_dict()
    if output_format == 'json':
        click.echo(json.dumps(data, indent=2))
    else:
        click.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=False))


def main():
    """Main entry point for the CLI."""
    cli(obj={})


if __name__ == '__main__':
    main()
